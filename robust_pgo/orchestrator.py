"""Robust pose-graph orchestrator: outlier rejection in front of a solver."""
from dataclasses import dataclass
from typing import List, Optional
import logging

try:
    import gtsam
except Exception:
    gtsam = None

from .graph import iter_factors, factor_keys, merge_values
from .lie import group_of_factor
from .models import EdgeId, GraphNotLoadedError
from .pcm import PCM, OutlierRemoval
from .solver import Solver, make_solver

logger = logging.getLogger("robust_pgo.orchestrator")


@dataclass
class RobustPGOConfig:
    odom_threshold: float = 10.0   # Mahalanobis units
    lc_threshold: float = 10.0     # Mahalanobis units
    verbose: bool = False
    use_distance: bool = False
    solver: str = "batch"          # "batch" (LM) | "isam2"
    max_iters: int = 100


class RobustPGO:
    """Owns the accepted factor graph and the current estimate.

    Two states: empty until ``load_graph`` anchors the problem with a prior,
    loaded afterwards. Odometry and priors are always kept; every other
    between factor goes through ``outlier_removal`` first.
    """

    def __init__(self, outlier_removal: OutlierRemoval,
                 solver: Optional[Solver] = None,
                 verbose: bool = False):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot build the pose graph")
        self.outlier_removal = outlier_removal
        self.solver = solver if solver is not None else make_solver("batch")
        self.verbose = verbose
        self._graph = gtsam.NonlinearFactorGraph()
        self._values = gtsam.Values()      # every initial estimate seen so far
        self._estimate = gtsam.Values()
        self._group = None
        self._loaded = False

    @classmethod
    def from_config(cls, cfg: RobustPGOConfig) -> "RobustPGO":
        pcm = PCM(cfg.odom_threshold, cfg.lc_threshold,
                  verbose=cfg.verbose, use_distance=cfg.use_distance)
        kwargs = {"max_iters": cfg.max_iters} if cfg.solver in ("batch", "lm") else {}
        return cls(pcm, make_solver(cfg.solver, **kwargs), verbose=cfg.verbose)

    def _report(self, msg: str, *args) -> None:
        (logger.info if self.verbose else logger.debug)(msg, *args)

    @property
    def loaded(self) -> bool:
        return self._loaded

    def _require_loaded(self, op: str) -> None:
        if not self._loaded:
            logger.error("%s called before load_graph", op)
            raise GraphNotLoadedError(f"{op} called before load_graph")

    # State transitions -------------------------------------------------

    def load_graph(self, factors, values, prior) -> None:
        """Anchor the problem with ``prior`` and ingest an initial graph."""
        if self._loaded:
            logger.error("load_graph called twice")
            raise GraphNotLoadedError("Graph already loaded; use add_graph or update")
        batch = [prior] + list(iter_factors(factors))
        self.outlier_removal.process(batch, values)
        self._group = group_of_factor(prior)
        self._loaded = True
        self._merge_values(values)
        prior_key = factor_keys(prior)[0]
        if not self._values.exists(prior_key):
            self._values.insert(prior_key, prior.prior())
        self._report("Loaded graph: %d input factors", len(batch) - 1)
        self._optimize()

    def add_graph(self, factors, values, bridge) -> None:
        """Merge a new subgraph through ``bridge``, itself vetted as a loop closure."""
        self._require_loaded("add_graph")
        batch = list(iter_factors(factors)) + [bridge]
        self.outlier_removal.process(batch, values)
        self._merge_values(values)
        bridge_id = factor_keys(bridge)
        accepted = bridge_id not in set(self.rejected())
        self._report("Bridge %s %s", bridge_id, "accepted" if accepted else "rejected")
        self._optimize()

    def update(self, factors, values=None) -> bool:
        """Ingest new measurements; re-optimise only if the accepted graph changed."""
        self._require_loaded("update")
        changed = self.outlier_removal.process(list(iter_factors(factors)), values)
        if values is not None:
            changed = self._merge_values(values) > 0 or changed
        if changed:
            self._optimize()
        return changed

    def force_update(self, factors, values=None) -> None:
        """Ingest new measurements without outlier rejection."""
        self._require_loaded("force_update")
        self.outlier_removal.force_add(list(iter_factors(factors)), values)
        if values is not None:
            self._merge_values(values)
        self._optimize()

    # Queries -----------------------------------------------------------

    def get_factors(self) -> "gtsam.NonlinearFactorGraph":
        """Accepted graph: priors, odometry and inlier loop closures."""
        return self._graph

    def calculate_estimate(self) -> "gtsam.Values":
        return self._estimate

    def rejected(self) -> List[EdgeId]:
        if hasattr(self.outlier_removal, "rejected"):
            return self.outlier_removal.rejected()
        return []

    # Internals ---------------------------------------------------------

    def _merge_values(self, values) -> int:
        if values is None or self._group is None:
            return 0
        return merge_values(self._values, values, self._group)

    def _initial(self, graph) -> "gtsam.Values":
        """Initial guess for the solver: last estimate first, raw inputs otherwise."""
        keys = []
        for factor in iter_factors(graph):
            keys.extend(factor_keys(factor))
        initial = gtsam.Values()
        merge_values(initial, self._estimate, self._group, keys)
        missing = merge_values(initial, self._values, self._group, keys)
        if missing:
            self._report("%d poses initialised from input estimates", missing)
        return initial

    def _optimize(self) -> None:
        graph = self.outlier_removal.accepted_factors()
        initial = self._initial(graph)
        estimate = self.solver.optimize(graph, initial)
        self._graph = graph
        self._estimate = estimate
        self._report("Optimized: %d factors, %d poses", graph.size(), estimate.size())
