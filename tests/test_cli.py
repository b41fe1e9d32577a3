import json
import os

import pytest

gtsam = pytest.importorskip("gtsam")

from main import main, parse_args

from conftest import ground_truth, noise


def _write_chain(path, n=20, loop=(2, 15)):
    poses = list(ground_truth("a", n).values())
    graph = gtsam.NonlinearFactorGraph()
    values = gtsam.Values()
    for k, pose in enumerate(poses):
        values.insert(k, pose)
    for k in range(n - 1):
        graph.add(gtsam.BetweenFactorPose3(k, k + 1, poses[k].between(poses[k + 1]), noise()))
    i, j = loop
    graph.add(gtsam.BetweenFactorPose3(i, j, poses[i].between(poses[j]), noise()))
    gtsam.writeG2o(graph, values, str(path))


def test_cli_writes_result_and_stats(tmp_path):
    g2o = tmp_path / "chain.g2o"
    _write_chain(g2o)
    out = tmp_path / "out"
    main(["--g2o", str(g2o), "--export-path", str(out), "--log", "WARNING"])
    assert os.path.exists(out / "result.g2o")
    with open(out / "stats.json", encoding="utf-8") as f:
        stats = json.load(f)
    assert stats["accepted"] == 21
    assert stats["poses"] == 20
    assert stats["rejected"] == []
    assert stats["factors"]["separators"] == 1


@pytest.mark.parametrize("flags, is_3d", [([], True), (["--is-3d"], True), (["--2d"], False)])
def test_cli_pose_dimension_flags(flags, is_3d):
    args = parse_args(["--g2o", "g.g2o", "--export-path", "out"] + flags)
    assert args.is_3d is is_3d
