"""Nonlinear solvers behind the narrow ``optimize(graph, initial)`` interface."""
from typing import Dict, List, Optional, Tuple
import logging
import math
import time

try:
    import gtsam
except Exception:
    gtsam = None

from .lie import LieGroup, group_of_factor

logger = logging.getLogger("robust_pgo.solver")


def _update_translation_cache(cache: Dict[int, tuple], estimate: "gtsam.Values",
                              group: LieGroup) -> float:
    """Update translation cache and return max Euclidean delta between estimates."""
    if estimate is None:
        return 0.0
    max_delta = 0.0
    for key in estimate.keys():
        key = int(key)
        trans = tuple(float(v) for v in group.at(estimate, key).translation())
        prev = cache.get(key)
        if prev is not None:
            delta = math.sqrt(sum((a - b) ** 2 for a, b in zip(trans, prev)))
            if delta > max_delta:
                max_delta = delta
        cache[key] = trans
    return max_delta


class Solver:
    """Black-box ``optimize(accepted_graph, initial) -> estimate`` service."""

    def optimize(self, graph: "gtsam.NonlinearFactorGraph",
                 initial: "gtsam.Values") -> "gtsam.Values":  # pragma: no cover - interface method
        raise NotImplementedError


class LevenbergMarquardtSolver(Solver):
    """Batch Levenberg–Marquardt over the whole accepted graph."""

    def __init__(self, max_iters: int = 100, lambda_initial: float = 1e-3):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot run Levenberg-Marquardt")
        self.max_iters = max_iters
        self.lambda_initial = lambda_initial
        self._cache: Dict[int, tuple] = {}

    def optimize(self, graph, initial):
        if graph.size() == 0:
            return gtsam.Values()
        params = gtsam.LevenbergMarquardtParams()
        params.setlambdaInitial(self.lambda_initial)
        params.setMaxIterations(self.max_iters)
        start = time.perf_counter()
        estimate = gtsam.LevenbergMarquardtOptimizer(graph, initial, params).optimize()
        duration = time.perf_counter() - start
        max_delta = _update_translation_cache(self._cache, estimate, group_of_factor(graph.at(0)))
        logger.debug("LM solve: %d factors, %d poses, %.3fs, max translation delta %.4f",
                     graph.size(), estimate.size(), duration, max_delta)
        return estimate


def _signature(factor) -> Tuple:
    return (type(factor).__name__,) + tuple(int(k) for k in factor.keys())


class ISAM2Solver(Solver):
    """Incremental solve; only the new tail of the accepted graph is fed to iSAM2.

    When the accepted graph is not an extension of the previously solved one
    (a loop closure left the inlier set), iSAM2 is rebuilt from scratch.
    """

    def __init__(self,
                 relinearize_threshold: float = 0.1,
                 relinearize_skip: int = 10,
                 cache_linearized: bool = True):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot run iSAM2")
        self.relinearize_threshold = relinearize_threshold
        self.relinearize_skip = relinearize_skip
        self.cache_linearized = cache_linearized
        self._cache: Dict[int, tuple] = {}
        self.resets = 0
        self._reset()

    def _reset(self) -> None:
        params = gtsam.ISAM2Params()

        # Compat helpers (some wheels use setters, others properties)
        def _set(obj, prop: str, value, setter: Optional[str] = None):
            if hasattr(obj, prop):
                try:
                    setattr(obj, prop, value)
                    return
                except (AttributeError, TypeError):
                    pass
            if setter and hasattr(obj, setter):
                getattr(obj, setter)(value)

        _set(params, "relinearizeThreshold", self.relinearize_threshold, "setRelinearizeThreshold")
        _set(params, "relinearizeSkip", self.relinearize_skip, "setRelinearizeSkip")
        _set(params, "cacheLinearizedFactors", self.cache_linearized, "setCacheLinearizedFactors")
        _set(params, "enableRelinearization", True, "setEnableRelinearization")
        self.isam = gtsam.ISAM2(params)
        self._signatures: List[Tuple] = []
        self._keys = set()

    def optimize(self, graph, initial):
        if graph.size() == 0:
            return gtsam.Values()
        signatures = [_signature(graph.at(i)) for i in range(graph.size())]
        n_old = len(self._signatures)
        if signatures[:n_old] != self._signatures:
            logger.info("Accepted graph no longer extends the solved one; resetting iSAM2")
            self._reset()
            self.resets += 1
            n_old = 0

        group = group_of_factor(graph.at(0))
        new_graph = gtsam.NonlinearFactorGraph()
        new_values = gtsam.Values()
        for i in range(n_old, graph.size()):
            factor = graph.at(i)
            new_graph.add(factor)
            for key in factor.keys():
                key = int(key)
                if key in self._keys:
                    continue
                if not initial.exists(key):
                    raise KeyError(f"No initial estimate for key {key}")
                self._keys.add(key)
                new_values.insert(key, group.at(initial, key))

        start = time.perf_counter()
        self.isam.update(new_graph, new_values)
        estimate = self.isam.calculateEstimate()
        duration = time.perf_counter() - start
        self._signatures = signatures
        max_delta = _update_translation_cache(self._cache, estimate, group)
        logger.debug("iSAM2 update: %d new factors, %d poses, %.3fs, max translation delta %.4f",
                     new_graph.size(), estimate.size(), duration, max_delta)
        return estimate


def make_solver(kind: str = "batch", **kwargs) -> Solver:
    kind = (kind or "batch").lower()
    if kind in ("batch", "lm"):
        return LevenbergMarquardtSolver(**kwargs)
    if kind == "isam2":
        return ISAM2Solver(**kwargs)
    raise ValueError(f"Unsupported solver: {kind}")
