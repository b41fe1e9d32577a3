"""Key and factor bookkeeping on top of gtsam graphs.

Poses are keyed by gtsam ``Symbol``s: the character names the trajectory
(one per robot) and the index orders poses along it. Plain integer keys
all fall into the trajectory with character 0.
"""
from typing import Iterable, Iterator, List, Tuple
import logging

try:
    import gtsam
except Exception:
    gtsam = None

from .lie import LieGroup, group_of_factor
from .models import GraphStructureError

logger = logging.getLogger("robust_pgo.graph")


def split_key(key: int) -> Tuple[int, int]:
    """Return ``(trajectory, index)`` for a gtsam key."""
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot decode keys")
    sym = gtsam.Symbol(int(key))
    chr_ = sym.chr()
    if isinstance(chr_, str):
        chr_ = ord(chr_) if chr_ else 0
    return int(chr_), int(sym.index())


def trajectory_of(key: int) -> int:
    return split_key(key)[0]


def key_label(key: int) -> str:
    """Human readable key (``a12``) for log messages."""
    traj, index = split_key(key)
    if traj == 0:
        return str(int(key))
    return f"{chr(traj)}{index}"


def is_odometry(key1: int, key2: int) -> bool:
    """Consecutive poses of the same trajectory."""
    t1, i1 = split_key(key1)
    t2, i2 = split_key(key2)
    return t1 == t2 and i2 == i1 + 1


def iter_factors(factors) -> Iterator:
    """Iterate a ``gtsam.NonlinearFactorGraph`` or any iterable of factors."""
    if factors is None:
        return
    if hasattr(factors, "size") and hasattr(factors, "at"):
        for idx in range(factors.size()):
            factor = factors.at(idx)
            if factor is not None:
                yield factor
        return
    for factor in factors:
        yield factor


def classify(factors) -> Tuple[LieGroup, List, List, List]:
    """Split factors into ``(group, priors, odometry, separators)``.

    Order within each list follows the input order.
    """
    group = None
    priors, odometry, separators = [], [], []
    for factor in iter_factors(factors):
        try:
            g = group_of_factor(factor)
        except TypeError as e:
            raise GraphStructureError(str(e)) from None
        if group is not None and g is not group:
            raise GraphStructureError(
                f"Mixed pose types in one graph: {group.name} and {g.name}")
        group = g
        if g.is_prior(factor):
            priors.append(factor)
            continue
        k1, k2 = factor.keys()[0], factor.keys()[1]
        if is_odometry(k1, k2):
            odometry.append(factor)
        else:
            separators.append(factor)
    return group, priors, odometry, separators


def factor_keys(factor) -> Tuple[int, ...]:
    return tuple(int(k) for k in factor.keys())


def merge_values(dst, src, group: LieGroup, keys: Iterable[int] = None) -> int:
    """Insert poses from ``src`` that ``dst`` lacks; returns how many were added."""
    added = 0
    for key in (keys if keys is not None else src.keys()):
        key = int(key)
        if dst.exists(key) or not src.exists(key):
            continue
        dst.insert(key, group.at(src, key))
        added += 1
    return added
