import numpy as np
import pytest

gtsam = pytest.importorskip("gtsam")

from robust_pgo.geometry import PoseWithCovariance
from robust_pgo.graph import classify, is_odometry, key_label, trajectory_of
from robust_pgo.lie import POSE3
from robust_pgo.models import GraphStructureError, Transform, TransformSet
from robust_pgo.trajectory import build_trajectory, extend_trajectory

from conftest import make_robot


def _step(x=1.0):
    return PoseWithCovariance(gtsam.Pose3(gtsam.Rot3.Yaw(0.1), gtsam.Point3(x, 0.0, 0.0)),
                              np.eye(6) * 0.01)


def _a(k):
    return gtsam.symbol("a", k)


def _chain(n, skip=()):
    return [Transform(_a(k), _a(k + 1), _step()) for k in range(n - 1) if k not in skip]


def test_key_helpers():
    assert trajectory_of(_a(3)) == ord("a")
    assert trajectory_of(gtsam.symbol("b", 3)) == ord("b")
    assert is_odometry(_a(3), _a(4))
    assert not is_odometry(_a(4), _a(3))
    assert not is_odometry(_a(3), _a(5))
    assert not is_odometry(_a(3), gtsam.symbol("b", 4))
    assert key_label(_a(12)) == "a12"
    assert key_label(7) == "7"


def test_classify_splits_priors_odometry_and_separators():
    graph, values, _ = make_robot("a", 10, loops=((1, 8),))
    graph.add(gtsam.PriorFactorPose3(_a(0), gtsam.Pose3(), gtsam.noiseModel.Isotropic.Sigma(6, 0.1)))
    group, priors, odometry, separators = classify(graph)
    assert group is POSE3
    assert len(priors) == 1
    assert len(odometry) == 9
    assert [tuple(f.keys()) for f in separators] == [(_a(1), _a(8))]


def test_transform_set_rejects_duplicates():
    ts = TransformSet()
    for t in _chain(4):
        ts.add(t)
    assert len(ts) == 3
    assert (_a(0), _a(1)) in ts
    assert ts.start_id == _a(0) and ts.end_id == _a(3)
    with pytest.raises(GraphStructureError, match="Duplicate"):
        ts.add(Transform(_a(1), _a(2), _step()))
    assert len(ts) == 3


def test_transform_set_queries():
    ts = TransformSet()
    for t in _chain(6):
        ts.add(t)
    ts.add(Transform(_a(0), _a(4), _step(4.0), is_separator=True))
    assert [t.id for t in ts.separators()] == [(_a(0), _a(4))]
    assert len(ts.odometry()) == 5
    assert {t.id for t in ts.in_range(_a(1), _a(3))} == {(_a(1), _a(2)), (_a(2), _a(3))}
    assert ts.get(_a(0), _a(4)).is_separator
    assert ts.get(_a(4), _a(0)) is None


def test_build_trajectory_is_a_fold_of_compose():
    anchor = PoseWithCovariance.identity(POSE3)
    chain = _chain(5)
    traj = build_trajectory(_a(0), anchor, reversed(chain))
    assert len(traj) == 5
    assert traj.start_id == _a(0) and traj.end_id == _a(4)
    expected = anchor
    for t in chain:
        expected = expected.compose(t.pose)
    assert traj.get(_a(4)).pose.equals(expected.pose, 1e-12)
    assert np.allclose(traj.get(_a(4)).covariance, expected.covariance)
    assert [p.id for p in traj.in_range(_a(1), _a(2))] == [_a(1), _a(2)]
    assert [p.id for p in traj.in_range(_a(3), _a(9))] == [_a(3), _a(4)]


def test_relative_pose_between_trajectory_nodes():
    traj = build_trajectory(_a(0), PoseWithCovariance.identity(POSE3), _chain(5))
    rel = traj.relative(_a(1), _a(3))
    two = _step().compose(_step())
    assert rel.pose.equals(two.pose, 1e-9)
    assert np.allclose(rel.covariance, two.covariance, atol=1e-9)
    same = traj.relative(_a(2), _a(2))
    assert np.array_equal(same.covariance, np.zeros((6, 6)))


def test_non_contiguous_chain_names_missing_link():
    with pytest.raises(GraphStructureError, match="a2 -> a3"):
        build_trajectory(_a(0), PoseWithCovariance.identity(POSE3), _chain(6, skip=(2,)))


def test_extend_trajectory_keeps_original():
    traj = build_trajectory(_a(0), PoseWithCovariance.identity(POSE3), _chain(3))
    longer = extend_trajectory(traj, [Transform(_a(2), _a(3), _step())])
    assert len(traj) == 3 and len(longer) == 4
    with pytest.raises(GraphStructureError, match="overlaps"):
        extend_trajectory(longer, [Transform(_a(1), _a(2), _step())])
    with pytest.raises(GraphStructureError):
        extend_trajectory(longer, [Transform(_a(5), _a(6), _step())])


def test_unknown_pose_in_trajectory():
    traj = build_trajectory(_a(0), PoseWithCovariance.identity(POSE3), _chain(3))
    with pytest.raises(GraphStructureError, match="outside"):
        traj.get(_a(9))
