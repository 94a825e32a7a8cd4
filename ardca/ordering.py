"""Choice of the autoregressive order.

The order is a permutation `idxperm` of the L positions: `idxperm[r]` is the
position conditioned on at rank r. Conditioning on conserved (low entropy)
columns first is the default.
"""
import numpy as np
from numpy.typing import NDArray
from typing import Optional, Sequence, Union

from .exceptions import InvalidOrderError
from .utils import entropy

ALL_PERMORDER = ["NATURAL", "ENTROPIC", "REV_ENTROPIC", "RANDOM"]

PermOrder = Union[str, Sequence[int], NDArray]


def checkpermorder(permorder: PermOrder, L: Optional[int] = None):
    if isinstance(permorder, str):
        if permorder not in ALL_PERMORDER:
            raise InvalidOrderError(
                permorder, f"permorder {permorder!r} not implemented, pick one of {ALL_PERMORDER}")
    elif isinstance(permorder, (list, tuple, np.ndarray)):
        if not is_permutation(permorder, L):
            raise InvalidOrderError(permorder, "permorder is not a permutation of the positions")
    else:
        raise InvalidOrderError(
            permorder, "permorder must be a string or a sequence of integers")


def is_permutation(permorder, L: Optional[int] = None) -> bool:
    n = len(permorder)
    if L is not None and n != L:
        return False
    seen = set()
    for x in permorder:
        if isinstance(x, (bool, np.bool_)) or not isinstance(x, (int, np.integer)):
            return False
        if x < 0 or x >= n or x in seen:
            return False
        seen.add(int(x))
    return True


def compute_permorder(Z: NDArray, W: NDArray, q: int, permorder: PermOrder = "ENTROPIC",
                      seed=None) -> NDArray:
    """
    Compute the autoregressive order of an (M, L) alignment.

    Args:
        Z: alignment, one sequence per row
        W: sequence weights
        q: alphabet size
        permorder: one of ALL_PERMORDER, or an explicit permutation of range(L)
        seed: seed of the RANDOM policy

    Returns:
        int64 array of length L, rank -> position
    """
    L = Z.shape[1]
    checkpermorder(permorder, L)

    if not isinstance(permorder, str):
        return np.asarray(permorder, dtype=np.int64).copy()
    if permorder == "NATURAL":
        return np.arange(L, dtype=np.int64)
    if permorder == "RANDOM":
        return np.random.default_rng(seed).permutation(L).astype(np.int64)

    S = entropy(Z, W, q)
    if permorder == "ENTROPIC":
        return np.argsort(S, kind="stable").astype(np.int64)
    # REV_ENTROPIC
    return np.argsort(-S, kind="stable").astype(np.int64)
