"""Key / factor classification helpers.

GTSAM symbol keys pack a one-character prefix into the top 8 bits and a
56-bit index into the rest; the prefix identifies the robot (or landmark
family) a variable belongs to.
"""
from typing import Iterable, List
import logging

try:
    import gtsam
except Exception:
    gtsam = None

logger = logging.getLogger("robust_pgo.keys")

_CHR_BITS = 8
_INDEX_BITS = 64 - _CHR_BITS
_INDEX_MASK = (1 << _INDEX_BITS) - 1

PRIOR = "prior"
ODOMETRY = "odometry"
LOOP_CLOSURE = "loop_closure"
LANDMARK = "landmark"
OTHER = "other"


def key_prefix(key: int) -> str:
    return chr((int(key) >> _INDEX_BITS) & 0xFF)


def key_index(key: int) -> int:
    return int(key) & _INDEX_MASK


def make_key(prefix: str, index: int) -> int:
    """Same encoding as gtsam.symbol(prefix, index)."""
    return (ord(prefix) << _INDEX_BITS) | (int(index) & _INDEX_MASK)


def key_label(key: int) -> str:
    c = key_prefix(key)
    if c.isprintable() and c.strip():
        return f"{c}{key_index(key)}"
    return str(int(key))


def factor_keys(factor) -> List[int]:
    return [int(k) for k in factor.keys()]


def is_special(key: int, special_symbols: Iterable[str]) -> bool:
    return key_prefix(key) in special_symbols


def _is_between(factor) -> bool:
    if gtsam is None:
        return False
    return isinstance(factor, (gtsam.BetweenFactorPose2, gtsam.BetweenFactorPose3))


def _is_prior(factor) -> bool:
    if gtsam is None:
        return False
    return isinstance(factor, (gtsam.PriorFactorPose2, gtsam.PriorFactorPose3))


def is_odometry(factor) -> bool:
    """Between factor on one trajectory linking consecutive indices (either direction)."""
    keys = factor_keys(factor)
    if len(keys) != 2 or not _is_between(factor):
        return False
    k1, k2 = keys
    return key_prefix(k1) == key_prefix(k2) and abs(key_index(k2) - key_index(k1)) == 1


def factor_kind(factor, special_symbols: Iterable[str] = ()) -> str:
    """Classify a factor as prior / odometry / loop_closure / landmark / other."""
    if _is_prior(factor):
        return PRIOR
    keys = factor_keys(factor)
    if any(is_special(k, special_symbols) for k in keys):
        return LANDMARK
    if len(keys) == 2 and _is_between(factor):
        if is_odometry(factor):
            return ODOMETRY
        return LOOP_CLOSURE
    return OTHER
