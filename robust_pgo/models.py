from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .geometry import PoseWithCovariance, PoseWithDistance

UncertainPose = Union[PoseWithCovariance, PoseWithDistance]
EdgeId = Tuple[int, int]


class RobustPGOError(RuntimeError):
    """Base class for errors raised by the robust pose-graph back-end."""


class GraphStructureError(RobustPGOError):
    """Raised when incoming measurements do not form a valid pose graph.

    Duplicate edges, gaps in an odometry chain and references to unknown
    poses all end up here. The offending call is aborted before it mutates
    any state.
    """


class GraphNotLoadedError(RobustPGOError):
    """Raised when the orchestrator is used out of order."""


@dataclass(frozen=True)
class Transform:
    """Directed edge ``i -> j``; separators are loop closures under vetting."""
    i: int
    j: int
    pose: UncertainPose
    is_separator: bool = False

    @property
    def id(self) -> EdgeId:
        return (self.i, self.j)

    def reversed(self) -> "Transform":
        return Transform(self.j, self.i, self.pose.inverse(), self.is_separator)


@dataclass
class TransformSet:
    """Edges keyed by ``(i, j)``, kept in insertion order."""
    start_id: Optional[int] = None
    end_id: Optional[int] = None
    transforms: Dict[EdgeId, Transform] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.transforms)

    def __contains__(self, edge_id: EdgeId) -> bool:
        return tuple(edge_id) in self.transforms

    def __iter__(self) -> Iterator[Transform]:
        return iter(self.transforms.values())

    def add(self, transform: Transform) -> None:
        if transform.id in self.transforms:
            raise GraphStructureError(
                f"Duplicate edge {transform.i} -> {transform.j}")
        self.transforms[transform.id] = transform
        lo, hi = min(transform.i, transform.j), max(transform.i, transform.j)
        self.start_id = lo if self.start_id is None else min(self.start_id, lo)
        self.end_id = hi if self.end_id is None else max(self.end_id, hi)

    def get(self, i: int, j: int) -> Optional[Transform]:
        return self.transforms.get((i, j))

    def in_range(self, start: int, end: int) -> List[Transform]:
        """Edges whose both endpoints lie in ``[start, end]``."""
        return [t for t in self.transforms.values()
                if start <= t.i <= end and start <= t.j <= end]

    def separators(self) -> List[Transform]:
        return [t for t in self.transforms.values() if t.is_separator]

    def odometry(self) -> List[Transform]:
        return [t for t in self.transforms.values() if not t.is_separator]


@dataclass(frozen=True)
class TrajectoryPose:
    id: int
    pose: UncertainPose


@dataclass
class Trajectory:
    """Absolute poses over the contiguous id range ``[start_id, end_id]``."""
    start_id: int
    end_id: int
    poses: Dict[int, TrajectoryPose] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.poses)

    def __contains__(self, key: int) -> bool:
        return key in self.poses

    def get(self, key: int) -> UncertainPose:
        try:
            return self.poses[key].pose
        except KeyError:
            raise GraphStructureError(
                f"Pose {key} is outside trajectory [{self.start_id}, {self.end_id}]") from None

    def in_range(self, start: int, end: int) -> List[TrajectoryPose]:
        return [self.poses[k] for k in range(max(start, self.start_id), min(end, self.end_id) + 1)]

    def relative(self, i: int, j: int) -> UncertainPose:
        """Odometry-predicted pose of ``j`` in the frame of ``i``."""
        pi = self.get(i)
        if i == j:
            return type(pi).identity(pi.group)
        return pi.between(self.get(j))
