"""Pairwise Consistency Maximization (PCM) outlier rejection.

Odometry and priors are trusted. Every other between factor (a loop
closure, or a "separator" joining two trajectories) is vetted in two steps:

1. ``check_odometry``: the measurement must agree with the relative pose
   predicted by odometry (skipped when the endpoints lie on different
   trajectories, there is no prediction to compare against).
2. ``check_loop_closure``: the measurement becomes a node of a consistency
   graph, linked to every earlier loop closure it is pairwise consistent
   with. The inliers are the maximum clique of that graph.

Loop closures are grouped by the (unordered) pair of trajectories they
join, each group with its own consistency graph. The clique is maintained
incrementally: a clique that does not contain the new node is a clique of
the old graph, so the only candidate to beat the current maximum is
``{new} + maxclique(neighbours(new))``.
"""
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Set, Tuple
import logging

import networkx as nx

try:
    import gtsam
except Exception:
    gtsam = None

from .geometry import PoseWithCovariance, PoseWithDistance
from .graph import classify, factor_keys, key_label, trajectory_of
from .lie import LieGroup
from .models import (EdgeId, GraphStructureError, Trajectory, Transform,
                     TransformSet, UncertainPose)
from .trajectory import build_trajectory, extend_trajectory

logger = logging.getLogger("robust_pgo.pcm")

# Round-off allowance so a zero threshold still admits exact matches.
THRESHOLD_TOL = 1e-9


def _edge_label(edge_id: EdgeId) -> str:
    return f"{key_label(edge_id[0])}->{key_label(edge_id[1])}"


def _within(dist: float, threshold: float) -> bool:
    return dist <= threshold + THRESHOLD_TOL


class OutlierRemoval:
    """Interface between the orchestrator and an outlier rejection scheme."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def _report(self, msg: str, *args) -> None:
        (logger.info if self.verbose else logger.debug)(msg, *args)

    def process(self, factors, values) -> bool:  # pragma: no cover - interface method
        """Ingest new factors; return True when the accepted graph changed."""
        raise NotImplementedError

    def force_add(self, factors, values) -> bool:  # pragma: no cover - interface method
        """Ingest new factors without vetting any of them."""
        raise NotImplementedError

    def accepted_factors(self):  # pragma: no cover - interface method
        raise NotImplementedError


@dataclass
class ConsistencyGroup:
    """Consistency graph and current maximum clique for one trajectory pair."""
    trajectories: Tuple[int, int]
    edges: Dict[EdgeId, Transform] = field(default_factory=dict)
    graph: nx.Graph = field(default_factory=nx.Graph)
    clique: Set[EdgeId] = field(default_factory=set)

    def add(self, edge_id: EdgeId, transform: Transform, neighbours: List[EdgeId]) -> bool:
        """Insert a node; returns True when the maximum clique changed."""
        self.edges[edge_id] = transform
        self.graph.add_node(edge_id)
        self.graph.add_edges_from((edge_id, n) for n in neighbours)
        best = [edge_id]
        if neighbours:
            sub = self.graph.subgraph(neighbours)
            clique, _ = nx.max_weight_clique(sub, weight=None)
            best.extend(clique)
        if len(best) > len(self.clique):
            self.clique = set(best)
            return True
        return False


class PCM(OutlierRemoval):
    """Pairwise consistency maximization over incrementally arriving factors.

    ``odom_threshold`` bounds the disagreement between a loop closure and
    odometry; ``lc_threshold`` bounds the disagreement around the cycle
    formed by two loop closures. Both are Mahalanobis distances (or error per
    metre travelled when ``use_distance`` is set).
    """

    def __init__(self, odom_threshold: float, lc_threshold: float,
                 verbose: bool = False, use_distance: bool = False):
        super().__init__(verbose)
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot run PCM")
        self.odom_threshold = float(odom_threshold)
        self.lc_threshold = float(lc_threshold)
        self.pose_cls = PoseWithDistance if use_distance else PoseWithCovariance
        self.group: Optional[LieGroup] = None
        self.transforms = TransformSet()
        self.trajectories: Dict[int, Trajectory] = {}
        self._groups: Dict[Tuple[int, int], ConsistencyGroup] = {}
        self._factors: Dict[EdgeId, object] = {}
        self._priors: List[object] = []
        # ("prior", index into _priors) or ("edge", edge id), in arrival order.
        self._order: List[Tuple[str, object]] = []
        self._odom_rejected: List[EdgeId] = []
        self._forced: Set[EdgeId] = set()

    # Queries -----------------------------------------------------------

    def inliers(self) -> FrozenSet[EdgeId]:
        out: Set[EdgeId] = set(self._forced)
        for grp in self._groups.values():
            out |= grp.clique
        return frozenset(out)

    def rejected(self) -> List[EdgeId]:
        """Separators currently excluded from the accepted graph, in arrival order."""
        inliers = self.inliers()
        return [t.id for t in self.transforms.separators() if t.id not in inliers]

    def stats(self) -> Dict[str, int]:
        separators = self.transforms.separators()
        inliers = self.inliers()
        return {
            "priors": len(self._priors),
            "odometry": len(self.transforms) - len(separators),
            "separators": len(separators),
            "inliers": sum(1 for t in separators if t.id in inliers),
            "odom_rejected": len(self._odom_rejected),
            "groups": len(self._groups),
        }

    def accepted_factors(self):
        """Priors, odometry and inlier separators as a fresh factor graph."""
        graph = gtsam.NonlinearFactorGraph()
        inliers = self.inliers()
        for kind, ref in self._order:
            if kind == "prior":
                f = self._priors[ref]
                graph.add(self.group.prior_factor(factor_keys(f)[0], f.prior(), f.noiseModel()))
                continue
            if self.transforms.get(*ref).is_separator and ref not in inliers:
                continue
            f = self._factors[ref]
            graph.add(self.group.between_factor(ref[0], ref[1], f.measured(), f.noiseModel()))
        return graph

    # Ingest ------------------------------------------------------------

    def process(self, factors, values) -> bool:
        return self._ingest(factors, values, vet=True)

    def force_add(self, factors, values) -> bool:
        return self._ingest(factors, values, vet=False)

    def _ingest(self, factors, values, vet: bool) -> bool:
        group, priors, odometry, separators = classify(factors)
        if group is None:
            return False
        if self.group is not None and group is not self.group:
            raise GraphStructureError(
                f"Expected {self.group.name} factors, got {group.name}")

        # Validate everything before touching state.
        edges: Dict[EdgeId, Tuple[object, Transform]] = {}
        tagged = [(f, False) for f in odometry] + [(f, True) for f in separators]
        for f, is_separator in tagged:
            i, j = factor_keys(f)
            if (i, j) in self.transforms or (i, j) in edges:
                logger.error("Duplicate edge %s", _edge_label((i, j)))
                raise GraphStructureError(f"Duplicate edge {_edge_label((i, j))}")
            if i == j:
                raise GraphStructureError(f"Self loop on {key_label(i)}")
            edges[(i, j)] = (f, Transform(i, j, self.pose_cls.from_between(f), is_separator))
        try:
            trajectories = self._plan_trajectories(
                group, priors, [edges[factor_keys(f)][1] for f in odometry],
                [factor_keys(f) for f in separators], values)
        except GraphStructureError as e:
            logger.error("Rejecting batch: %s", e)
            raise

        # Commit.
        self.group = group
        self.trajectories = trajectories
        for f in priors:
            self._order.append(("prior", len(self._priors)))
            self._priors.append(f)
        for edge_id, (f, transform) in edges.items():
            self.transforms.add(transform)
            self._factors[edge_id] = f
            self._order.append(("edge", edge_id))

        changed = bool(priors or odometry)
        for f in separators:
            edge_id = factor_keys(f)
            transform = edges[edge_id][1]
            if not vet:
                self._forced.add(edge_id)
                changed = True
                continue
            before = self.inliers()
            self.check_loop_closure(transform)
            changed = changed or self.inliers() != before
        self._report("PCM: %s", self.stats())
        return changed

    def _plan_trajectories(self, group: LieGroup, priors, odometry: List[Transform],
                           separator_ids: List[EdgeId], values) -> Dict[int, Trajectory]:
        """Return the trajectories after this batch, without mutating state."""
        trajectories = dict(self.trajectories)
        prior_poses = {factor_keys(f)[0]: f for f in self._priors + list(priors)}

        def anchor(key: int) -> UncertainPose:
            if key in prior_poses:
                return self.pose_cls.from_prior(prior_poses[key])
            if values is not None and values.exists(key):
                return self.pose_cls.anchored(group.at(values, key), group)
            return self.pose_cls.identity(group)

        by_traj: Dict[int, List[Transform]] = {}
        for t in odometry:
            by_traj.setdefault(trajectory_of(t.i), []).append(t)
        for traj_id, chain in by_traj.items():
            if traj_id in trajectories:
                trajectories[traj_id] = extend_trajectory(trajectories[traj_id], chain)
            else:
                start = min(t.i for t in chain)
                trajectories[traj_id] = build_trajectory(start, anchor(start), chain)

        # Poses touched only by priors or separators start a one-pose trajectory.
        loose = [factor_keys(f)[0] for f in priors]
        for i, j in separator_ids:
            loose.extend((i, j))
        for key in loose:
            traj_id = trajectory_of(key)
            if traj_id not in trajectories:
                if values is None or not values.exists(key):
                    if key not in prior_poses:
                        raise GraphStructureError(
                            f"Pose {key_label(key)} has no odometry, prior or initial estimate")
                trajectories[traj_id] = build_trajectory(key, anchor(key), [])
            elif key not in trajectories[traj_id]:
                raise GraphStructureError(
                    f"Pose {key_label(key)} lies outside trajectory "
                    f"[{key_label(trajectories[traj_id].start_id)}, "
                    f"{key_label(trajectories[traj_id].end_id)}]")
        return trajectories

    # Consistency checks -----------------------------------------------

    def check_odometry(self, edge: Transform, threshold: Optional[float] = None) -> bool:
        """Compare a measurement with the odometry-predicted relative pose."""
        threshold = self.odom_threshold if threshold is None else threshold
        traj_id = trajectory_of(edge.i)
        if trajectory_of(edge.j) != traj_id:
            return True
        trajectory = self.trajectories.get(traj_id)
        if trajectory is None:
            raise GraphStructureError(f"No trajectory for {_edge_label(edge.id)}")
        predicted = trajectory.relative(edge.i, edge.j)
        # Pose is between(predicted, measured); the two estimates are independent.
        residual = predicted.inverse().compose(edge.pose)
        dist = residual.norm()
        if not predicted.psd:
            self._report("Odometry prediction %s has a non-PSD covariance", _edge_label(edge.id))
        accepted = _within(dist, threshold)
        self._report("Odometry check %s: %.4f %s %.4f", _edge_label(edge.id), dist,
                     "<=" if accepted else ">", threshold)
        return accepted

    def _consistent(self, a: Transform, b: Transform, threshold: float) -> bool:
        if {a.i, a.j} == {b.i, b.j}:
            # Same two poses: no odometry in between to test against.
            return True
        traj_i = self.trajectories.get(trajectory_of(a.i))
        traj_j = self.trajectories.get(trajectory_of(a.j))
        if (traj_i is None or traj_j is None or b.i not in traj_i or a.i not in traj_i
                or b.j not in traj_j or a.j not in traj_j):
            self._report("No odometry between %s and %s; assuming consistent",
                         _edge_label(a.id), _edge_label(b.id))
            return True
        odom_i = traj_i.relative(a.i, b.i)
        odom_j = traj_j.relative(a.j, b.j)
        if not (odom_i.psd and odom_j.psd):
            self._report("Non-PSD odometry covariance between %s and %s",
                         _edge_label(a.id), _edge_label(b.id))
        # a.i -> a.j -> b.j -> b.i -> a.i should close to identity.
        cycle = a.pose.compose(odom_j).compose(b.pose.inverse()).compose(odom_i.inverse())
        return _within(cycle.norm(), threshold)

    def check_loop_closure(self, edge: Transform, threshold: Optional[float] = None
                           ) -> Tuple[bool, FrozenSet[EdgeId]]:
        """Vet one separator and update the inlier set.

        Returns ``(accepted, inliers)``; rejection is not an error, rejected
        edges stay recorded and can re-enter the inliers later if a larger
        clique forms around them.
        """
        threshold = self.lc_threshold if threshold is None else threshold
        edge_id = edge.id
        if not self.check_odometry(edge):
            self._odom_rejected.append(edge_id)
            self._report("Loop closure %s rejected by odometry check", _edge_label(edge_id))
            return False, self.inliers()

        ti, tj = trajectory_of(edge.i), trajectory_of(edge.j)
        canonical = edge if ti <= tj else edge.reversed()
        key = (min(ti, tj), max(ti, tj))
        grp = self._groups.get(key)
        if grp is None:
            grp = self._groups[key] = ConsistencyGroup(key)

        neighbours = [other_id for other_id, other in grp.edges.items()
                      if self._consistent(canonical, other, threshold)]
        changed = grp.add(edge_id, canonical, neighbours)
        accepted = edge_id in grp.clique
        self._report("Loop closure %s consistent with %d/%d; clique size %d%s; %s",
                     _edge_label(edge_id), len(neighbours), len(grp.edges) - 1,
                     len(grp.clique), " (updated)" if changed else "",
                     "accepted" if accepted else "rejected")
        return accepted, self.inliers()
