"""Covariance hygiene helpers shared by the pose algebra and the CLI."""
from typing import Sequence
import logging
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

logger = logging.getLogger("robust_pgo.robust")


def symmetrize(cov: np.ndarray) -> np.ndarray:
    cov = np.asarray(cov, dtype=float)
    return 0.5 * (cov + cov.T)


def is_psd(cov: np.ndarray, eps: float = 1e-9) -> bool:
    """Cholesky-based positive-semi-definiteness test.

    A tiny diagonal jitter lets exactly-singular but valid matrices (e.g. the
    zero covariance of an anchored pose) pass; anything with a clearly
    negative direction fails the factorisation.
    """
    cov = symmetrize(cov)
    if not np.all(np.isfinite(cov)):
        return False
    scale = max(1.0, float(np.max(np.abs(np.diag(cov)))) if cov.size else 1.0)
    try:
        np.linalg.cholesky(cov + np.eye(cov.shape[0]) * eps * scale)
    except np.linalg.LinAlgError:
        return False
    return True


def make_spd(cov: np.ndarray, eps: float = 1e-9) -> np.ndarray:
    """Jitter a covariance to be SPD if needed.

    Real datasets sometimes include nearly singular covariances; GTSAM needs a
    positive-definite matrix to build a Gaussian noise model.
    """
    cov = symmetrize(cov)
    dim = cov.shape[0]
    jitter = eps
    for _ in range(8):
        try:
            np.linalg.cholesky(cov + np.eye(dim) * jitter)
            return cov + np.eye(dim) * jitter
        except np.linalg.LinAlgError:
            jitter *= 10.0
    # Last resort
    return cov + np.eye(dim) * jitter


def sanitize_rotation_block(cov: np.ndarray,
                            rotation_index: Sequence[int],
                            translation_index: Sequence[int]) -> np.ndarray:
    """Drop an unobservable (NaN) rotation block, keeping translation only.

    Returns a new matrix; the input is never modified.
    """
    cov = np.array(cov, dtype=float)
    rot = np.ix_(rotation_index, rotation_index)
    if not np.isnan(np.trace(cov[rot])):
        return cov
    trans = np.ix_(translation_index, translation_index)
    out = np.zeros_like(cov)
    out[trans] = cov[trans]
    logger.debug("NaN rotation covariance; keeping translation block only")
    return out


def covariance_of(noise_model) -> np.ndarray:
    """Extract the covariance matrix of a gtsam Gaussian noise model."""
    if not hasattr(noise_model, "covariance"):
        raise TypeError(f"Noise model {type(noise_model).__name__} exposes no covariance")
    return np.array(noise_model.covariance(), dtype=float)


def gaussian_from_covariance(cov: np.ndarray):
    """Create a GTSAM Gaussian noise model from a square covariance.

    Ensures symmetric positive-definite (via jitter), float64 and contiguous
    row-major memory.
    """
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build noise model")
    cov = make_spd(cov)
    cov = np.array(cov, dtype=np.float64, order="C")
    return gtsam.noiseModel.Gaussian.Covariance(cov)
