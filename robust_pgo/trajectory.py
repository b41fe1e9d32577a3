"""Build trajectories by folding odometry edges from an anchored pose."""
from typing import Iterable, List
import logging

from .graph import key_label
from .models import GraphStructureError, Trajectory, TrajectoryPose, Transform, UncertainPose

logger = logging.getLogger("robust_pgo.trajectory")


def _sorted_chain(odometry: Iterable[Transform]) -> List[Transform]:
    chain = sorted(odometry, key=lambda t: t.i)
    for t in chain:
        if t.is_separator:
            raise GraphStructureError(
                f"Separator {key_label(t.i)} -> {key_label(t.j)} passed as odometry")
    return chain


def extend_trajectory(trajectory: Trajectory, odometry: Iterable[Transform]) -> Trajectory:
    """Return a new trajectory with ``odometry`` appended at its end.

    Every edge must link ``end_id`` to ``end_id + 1`` in turn; a gap or an
    overlap raises :class:`GraphStructureError` and leaves ``trajectory``
    untouched.
    """
    poses = dict(trajectory.poses)
    end = trajectory.end_id
    for t in _sorted_chain(odometry):
        if t.i != end or t.j != end + 1:
            if t.j in poses:
                raise GraphStructureError(
                    f"Odometry {key_label(t.i)} -> {key_label(t.j)} overlaps trajectory "
                    f"ending at {key_label(end)}")
            raise GraphStructureError(
                f"Odometry chain is not contiguous: missing {key_label(end)} -> "
                f"{key_label(end + 1)} before {key_label(t.i)} -> {key_label(t.j)}")
        poses[t.j] = TrajectoryPose(t.j, poses[end].pose.compose(t.pose))
        end = t.j
    return Trajectory(trajectory.start_id, end, poses)


def build_trajectory(anchor_id: int, anchor: UncertainPose,
                     odometry: Iterable[Transform]) -> Trajectory:
    """Fold ``trajectory[k+1] = trajectory[k].compose(odom(k, k+1))`` from the anchor."""
    start = Trajectory(anchor_id, anchor_id, {anchor_id: TrajectoryPose(anchor_id, anchor)})
    trajectory = extend_trajectory(start, odometry)
    logger.debug("Built trajectory %s..%s (%d poses)",
                 key_label(trajectory.start_id), key_label(trajectory.end_id), len(trajectory))
    return trajectory
