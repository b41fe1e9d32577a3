"""Lie group adapters over the GTSAM pose types.

The rest of the package never touches ``gtsam.Pose2``/``gtsam.Pose3``
directly; it asks a :class:`LieGroup` for composition, inversion, the
logarithm map and the exact Jacobians of those operations. Jacobians come
from the adjoint map, which is what GTSAM itself returns for these ops:

    compose(a, b):  Ha = Ad(b^-1),  Hb = I
    inverse(a):     H  = -Ad(a)
    between(a, b):  Ha = -Ad(d^-1), Hb = I    with d = a^-1 * b
"""
from typing import Any, Tuple
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None


class LieGroup:
    """Capability set shared by every pose type the estimator supports."""

    name = "abstract"
    dim = 0
    rotation_dim = 0
    translation_dim = 0
    # Tangent-space positions of the rotational and translational coordinates.
    rotation_index: Tuple[int, ...] = ()
    translation_index: Tuple[int, ...] = ()

    def pose_type(self):  # pragma: no cover - interface method
        raise NotImplementedError

    def prior_factor_type(self):  # pragma: no cover - interface method
        raise NotImplementedError

    def between_factor_type(self):  # pragma: no cover - interface method
        raise NotImplementedError

    def identity(self):
        return self.pose_type()()

    def compose(self, a, b):
        return a.compose(b)

    def inverse(self, a):
        return a.inverse()

    def between(self, a, b):
        return a.between(b)

    def logmap(self, a) -> np.ndarray:
        return np.asarray(self.pose_type().Logmap(a), dtype=float).reshape(self.dim)

    def adjoint(self, a) -> np.ndarray:
        return np.asarray(a.AdjointMap(), dtype=float)

    def translation_norm(self, a) -> float:
        return float(np.linalg.norm(np.asarray(a.translation(), dtype=float)))

    # Jacobians ---------------------------------------------------------

    def compose_jacobians(self, a, b) -> Tuple[np.ndarray, np.ndarray]:
        return self.adjoint(self.inverse(b)), np.eye(self.dim)

    def inverse_jacobian(self, a) -> np.ndarray:
        return -self.adjoint(a)

    def between_jacobians(self, a, b) -> Tuple[np.ndarray, np.ndarray]:
        d = self.between(a, b)
        return -self.adjoint(self.inverse(d)), np.eye(self.dim)

    # Factor / Values helpers ------------------------------------------

    def is_prior(self, factor) -> bool:
        return isinstance(factor, self.prior_factor_type())

    def is_between(self, factor) -> bool:
        return isinstance(factor, self.between_factor_type())

    def prior_factor(self, key: int, pose, noise):
        return self.prior_factor_type()(key, pose, noise)

    def between_factor(self, key1: int, key2: int, pose, noise):
        return self.between_factor_type()(key1, key2, pose, noise)

    def at(self, values, key: int):  # pragma: no cover - interface method
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class Pose3Group(LieGroup):
    name = "Pose3"
    dim = 6
    rotation_dim = 3
    translation_dim = 3
    rotation_index = (0, 1, 2)
    translation_index = (3, 4, 5)

    def pose_type(self):
        return gtsam.Pose3

    def prior_factor_type(self):
        return gtsam.PriorFactorPose3

    def between_factor_type(self):
        return gtsam.BetweenFactorPose3

    def at(self, values, key: int):
        return values.atPose3(key)


class Pose2Group(LieGroup):
    name = "Pose2"
    dim = 3
    rotation_dim = 1
    translation_dim = 2
    # GTSAM orders the Pose2 tangent as [x, y, theta].
    rotation_index = (2,)
    translation_index = (0, 1)

    def pose_type(self):
        return gtsam.Pose2

    def prior_factor_type(self):
        return gtsam.PriorFactorPose2

    def between_factor_type(self):
        return gtsam.BetweenFactorPose2

    def at(self, values, key: int):
        return values.atPose2(key)


POSE2 = Pose2Group()
POSE3 = Pose3Group()
_GROUPS = (POSE3, POSE2)


def _require_gtsam() -> None:
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot resolve pose group")


def group_of(pose: Any) -> LieGroup:
    """Return the group adapter for a gtsam pose instance."""
    _require_gtsam()
    for group in _GROUPS:
        if isinstance(pose, group.pose_type()):
            return group
    raise TypeError(f"Unsupported pose type {type(pose).__name__}")


def group_of_factor(factor: Any) -> LieGroup:
    """Return the group adapter for a gtsam prior/between factor."""
    _require_gtsam()
    for group in _GROUPS:
        if group.is_prior(factor) or group.is_between(factor):
            return group
    raise TypeError(f"Unsupported factor type {type(factor).__name__}")
