"""Uncertain poses: a Lie group pose plus covariance or travelled distance.

Both classes are immutable and expose the same interface
(``compose``/``inverse``/``between``/``norm`` and the factor constructors),
so the consistency checks never need to know which one they are handed.
Covariance is propagated to first order with the exact Jacobians from
:mod:`robust_pgo.lie`.
"""
from dataclasses import dataclass, field
import logging
import math
from typing import Any, Optional
import numpy as np

from .lie import LieGroup, group_of, group_of_factor
from .robust import covariance_of, is_psd, sanitize_rotation_block, symmetrize

logger = logging.getLogger("robust_pgo.geometry")


@dataclass(frozen=True, eq=False)
class PoseWithCovariance:
    """Pose together with a tangent-space covariance.

    ``psd`` is False when ``between`` could not produce a positive
    semi-definite covariance even with the symmetric fallback; the matrix is
    still returned so callers can carry on.
    """
    pose: Any
    covariance: np.ndarray
    group: Optional[LieGroup] = None
    psd: bool = True

    def __post_init__(self):
        if self.group is None:
            object.__setattr__(self, "group", group_of(self.pose))
        cov = np.array(self.covariance, dtype=float)
        if cov.shape != (self.group.dim, self.group.dim):
            raise ValueError(
                f"Expected {self.group.dim}x{self.group.dim} covariance for "
                f"{self.group.name}, got shape {cov.shape}")
        cov.setflags(write=False)
        object.__setattr__(self, "covariance", cov)

    @classmethod
    def identity(cls, group: LieGroup) -> "PoseWithCovariance":
        return cls(group.identity(), np.zeros((group.dim, group.dim)), group)

    @classmethod
    def anchored(cls, pose, group: Optional[LieGroup] = None) -> "PoseWithCovariance":
        group = group or group_of(pose)
        return cls(pose, np.zeros((group.dim, group.dim)), group)

    @classmethod
    def from_prior(cls, factor) -> "PoseWithCovariance":
        """Anchor pose; the prior's own noise is not carried into the trajectory."""
        group = group_of_factor(factor)
        return cls(factor.prior(), np.zeros((group.dim, group.dim)), group)

    @classmethod
    def from_measurement(cls, pose, covariance: np.ndarray,
                         group: Optional[LieGroup] = None) -> "PoseWithCovariance":
        """Measured relative pose; a NaN rotation block keeps only translation."""
        group = group or group_of(pose)
        cov = sanitize_rotation_block(covariance, group.rotation_index, group.translation_index)
        return cls(pose, cov, group)

    @classmethod
    def from_between(cls, factor) -> "PoseWithCovariance":
        return cls.from_measurement(factor.measured(), covariance_of(factor.noiseModel()),
                                    group_of_factor(factor))

    def compose(self, other: "PoseWithCovariance") -> "PoseWithCovariance":
        g = self.group
        Ha, Hb = g.compose_jacobians(self.pose, other.pose)
        cov = Ha @ self.covariance @ Ha.T + Hb @ other.covariance @ Hb.T
        return PoseWithCovariance(g.compose(self.pose, other.pose), cov, g)

    def inverse(self) -> "PoseWithCovariance":
        g = self.group
        H = g.inverse_jacobian(self.pose)
        return PoseWithCovariance(g.inverse(self.pose), H @ self.covariance @ H.T, g)

    def between(self, other: "PoseWithCovariance") -> "PoseWithCovariance":
        g = self.group
        pose = g.between(self.pose, other.pose)
        Ha, _ = g.between_jacobians(self.pose, other.pose)
        cov = other.covariance - Ha @ self.covariance @ Ha.T
        if is_psd(cov):
            return PoseWithCovariance(pose, cov, g)

        # Same relative pose, covariance anchored at `other` instead.
        Hb, _ = g.between_jacobians(other.pose, self.pose)
        cov = self.covariance - Hb @ other.covariance @ Hb.T
        psd = is_psd(cov)
        if not psd:
            logger.debug("between covariance is not PSD after symmetric fallback")
        return PoseWithCovariance(pose, cov, g, psd=psd)

    def norm(self) -> float:
        """Mahalanobis length of the tangent-space error.

        A singular covariance falls back to the pseudo-inverse; a negative
        quadratic form (non-PSD covariance) yields ``inf``.
        """
        xi = self.group.logmap(self.pose)
        cov = symmetrize(self.covariance)
        try:
            info = np.linalg.inv(cov)
        except np.linalg.LinAlgError:
            logger.debug("singular covariance in Mahalanobis norm; using pseudo-inverse")
            info = np.linalg.pinv(cov)
        q = float(xi @ info @ xi)
        if not math.isfinite(q) or q < 0.0:
            logger.debug("Mahalanobis quadratic form is %s; treating as infinite", q)
            return math.inf
        return math.sqrt(q)

    def __repr__(self) -> str:
        return (f"PoseWithCovariance({self.group.name}, "
                f"log={np.round(self.group.logmap(self.pose), 4).tolist()}, psd={self.psd})")


@dataclass(frozen=True, eq=False)
class PoseWithDistance:
    """Pose together with the distance travelled to reach it."""
    pose: Any
    distance: float = 0.0
    group: Optional[LieGroup] = field(default=None)
    psd: bool = True

    def __post_init__(self):
        if self.group is None:
            object.__setattr__(self, "group", group_of(self.pose))
        object.__setattr__(self, "distance", float(self.distance))

    @classmethod
    def identity(cls, group: LieGroup) -> "PoseWithDistance":
        return cls(group.identity(), 0.0, group)

    @classmethod
    def anchored(cls, pose, group: Optional[LieGroup] = None) -> "PoseWithDistance":
        return cls(pose, 0.0, group or group_of(pose))

    @classmethod
    def from_prior(cls, factor) -> "PoseWithDistance":
        return cls(factor.prior(), 0.0, group_of_factor(factor))

    @classmethod
    def from_between(cls, factor) -> "PoseWithDistance":
        group = group_of_factor(factor)
        measured = factor.measured()
        return cls(measured, group.translation_norm(measured), group)

    def compose(self, other: "PoseWithDistance") -> "PoseWithDistance":
        g = self.group
        return PoseWithDistance(g.compose(self.pose, other.pose),
                                self.distance + g.translation_norm(other.pose), g)

    def inverse(self) -> "PoseWithDistance":
        return PoseWithDistance(self.group.inverse(self.pose), self.distance, self.group)

    def between(self, other: "PoseWithDistance") -> "PoseWithDistance":
        return PoseWithDistance(self.group.between(self.pose, other.pose),
                                abs(self.distance - other.distance), self.group)

    def norm(self) -> float:
        err = float(np.linalg.norm(self.group.logmap(self.pose)))
        if self.distance > 0.0:
            return err / self.distance
        # No travel to normalise by: only an exact match is consistent.
        return 0.0 if err == 0.0 else math.inf

    def __repr__(self) -> str:
        return f"PoseWithDistance({self.group.name}, distance={self.distance:.4f})"
