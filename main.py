import argparse, os, json, logging
import numpy as np

try:
    import gtsam
except Exception:  # pragma: no cover - CLI will fail later if bindings missing
    gtsam = None

from robust_pgo.graph import iter_factors, key_label
from robust_pgo.lie import POSE2, POSE3
from robust_pgo.orchestrator import RobustPGO, RobustPGOConfig
from robust_pgo.robust import gaussian_from_covariance


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Outlier-robust pose-graph optimisation of g2o datasets.")
    ap.add_argument("--g2o", required=True, help="Path to the g2o graph to load")
    ap.add_argument("--g2o-add", default=None, help="Optional second g2o graph merged through a bridge")
    ap.add_argument("--export-path", required=True, help="Directory to write outputs")
    ap.add_argument("--is-3d", dest="is_3d", action="store_true", help="Graphs hold Pose3 (default)")
    ap.add_argument("--2d", dest="is_3d", action="store_false", help="Graphs hold Pose2 instead of Pose3")
    ap.set_defaults(is_3d=True)
    ap.add_argument("--odom-th", type=float, default=10.0, help="Odometry consistency threshold")
    ap.add_argument("--lc-th", type=float, default=10.0, help="Pairwise loop-closure consistency threshold")
    ap.add_argument("--use-distance", action="store_true",
                    help="Normalise errors by travelled distance instead of tracking covariance")
    ap.add_argument("--solver", choices=["batch", "isam2"], default="batch",
                    help="Choose LM (batch) or iSAM2 (incremental) solver")
    ap.add_argument("--max-iters", type=int, default=100, help="LM iteration cap")
    ap.add_argument("--prior-sigma", type=float, default=0.1,
                    help="Isotropic sigma of the anchoring prior (and bridge)")
    ap.add_argument("--verbose", action="store_true", help="Report PCM decisions")
    ap.add_argument("--log", default="INFO", help="Logging level")
    return ap.parse_args(argv)


def ensure_dir(p):
    os.makedirs(p, exist_ok=True)


def _isotropic(group, sigma: float):
    return gaussian_from_covariance(np.eye(group.dim) * sigma ** 2)


def _first_key(values) -> int:
    return min(int(k) for k in values.keys())


def export_stats_json(pgo: RobustPGO, out_path: str):
    stats = pgo.outlier_removal.stats() if hasattr(pgo.outlier_removal, "stats") else {}
    rejected = [f"{key_label(i)}->{key_label(j)}" for i, j in pgo.rejected()]
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump({
            "factors": stats,
            "accepted": int(pgo.get_factors().size()),
            "poses": int(pgo.calculate_estimate().size()),
            "rejected": rejected,
            "final_error": float(pgo.get_factors().error(pgo.calculate_estimate())),
        }, f, indent=2)


def run(args):
    log = logging.getLogger("robust_pgo.cli")
    group = POSE3 if args.is_3d else POSE2
    cfg = RobustPGOConfig(odom_threshold=args.odom_th,
                          lc_threshold=args.lc_th,
                          verbose=args.verbose,
                          use_distance=args.use_distance,
                          solver=args.solver,
                          max_iters=args.max_iters)
    pgo = RobustPGO.from_config(cfg)

    graph, values = gtsam.readG2o(args.g2o, args.is_3d)
    noise = _isotropic(group, args.prior_sigma)
    anchor = _first_key(values)
    prior = group.prior_factor(anchor, group.at(values, anchor), noise)
    pgo.load_graph(graph, values, prior)
    log.info("Loaded %s: %d factors accepted, %d poses",
             args.g2o, pgo.get_factors().size(), pgo.calculate_estimate().size())

    if args.g2o_add:
        graph_b, values_b = gtsam.readG2o(args.g2o_add, args.is_3d)
        anchor_b = _first_key(values_b)
        # Bridge measured from the two initial estimates of the graph origins.
        rel = group.between(group.at(values, anchor), group.at(values_b, anchor_b))
        bridge = group.between_factor(anchor, anchor_b, rel, noise)
        pgo.add_graph(list(iter_factors(graph_b)), values_b, bridge)
        log.info("Added %s: %d factors accepted, %d poses",
                 args.g2o_add, pgo.get_factors().size(), pgo.calculate_estimate().size())

    out_dir = os.path.abspath(args.export_path)
    ensure_dir(out_dir)
    g2o_path = os.path.join(out_dir, "result.g2o")
    gtsam.writeG2o(pgo.get_factors(), pgo.calculate_estimate(), g2o_path)
    stats_path = os.path.join(out_dir, "stats.json")
    export_stats_json(pgo, stats_path)
    log.info("Wrote %s and %s", g2o_path, stats_path)
    return pgo


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=args.log.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if gtsam is None:
        raise RuntimeError("GTSAM not available; install the gtsam wheel")
    run(args)


if __name__ == "__main__":
    main()
