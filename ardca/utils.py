import numpy as np
from numpy.typing import NDArray
from scipy.special import log_softmax as _log_softmax
from typing import Optional, Tuple

from .exceptions import InvalidInputError

# smallest log-probability handed out downstream, log(0) is clamped here
LOG_FLOOR = float(np.log(np.finfo(np.float64).tiny))


def check_alignment(Z, W=None, q: Optional[int] = None) -> Tuple[NDArray, NDArray, int]:
    """Validate an (M, L) alignment and its weights.

    Returns the alignment as int64, the weights as float64 (uniform if `W` is None)
    and the alphabet size (inferred as max(Z) + 1 if `q` is None).
    """
    try:
        Z = np.asarray(Z)
    except ValueError as err:
        raise InvalidInputError(f"alignment rows have different lengths: {err}", "Z") from err
    if Z.dtype == object:
        raise InvalidInputError("alignment rows have different lengths", "Z")
    if Z.ndim != 2:
        raise InvalidInputError(f"alignment should be a (M, L) matrix, got shape {Z.shape}", "Z")
    if not np.issubdtype(Z.dtype, np.integer):
        raise InvalidInputError(f"alignment entries should be integers, got {Z.dtype}", "Z")
    M, L = Z.shape
    if M == 0 or L == 0:
        raise InvalidInputError(f"alignment should have M > 0 and L > 0, got ({M}, {L})", "Z")
    Z = Z.astype(np.int64)

    if q is None:
        q = int(Z.max()) + 1
    q = int(q)
    if q <= 0:
        raise InvalidInputError(f"alphabet size q should be positive, got {q}", "q")
    if Z.min() < 0 or Z.max() >= q:
        raise InvalidInputError(
            f"alignment entries should lie in [0, {q - 1}], found [{Z.min()}, {Z.max()}]", "Z")

    if W is None:
        W = np.ones(M, dtype=np.float64)
    W = np.asarray(W, dtype=np.float64)
    if W.shape != (M,):
        raise InvalidInputError(f"weights should have shape ({M},), got {W.shape}", "W")
    if not np.all(np.isfinite(W)) or (W < 0).any():
        raise InvalidInputError("weights should be finite and non-negative", "W")
    if not W.sum() > 0:
        raise InvalidInputError("effective sample size (sum of weights) should be positive", "W")

    return Z, W, q


def check_sequences(X, L: int, q: int) -> NDArray:
    """Validate one (L,) sequence or a (n, L) batch of sequences against a model of size (L, q)."""
    X = np.asarray(X)
    if X.ndim not in (1, 2) or X.shape[-1] != L or X.dtype == object:
        raise InvalidInputError(f"sequences should have shape (L,) or (n, L) with L = {L}, got {X.shape}", "X")
    if not np.issubdtype(X.dtype, np.integer):
        raise InvalidInputError(f"sequence entries should be integers, got {X.dtype}", "X")
    if X.size and (X.min() < 0 or X.max() >= q):
        raise InvalidInputError(f"sequence entries should lie in [0, {q - 1}]", "X")
    return X.astype(np.int64)


def compute_empirical_freqs(Z: NDArray, W: NDArray, q: int) -> NDArray:
    """
    Weighted single-site frequencies of an (M, L) alignment.

    Returns:
      A (L, q) matrix, each row summing to one.
    """
    _, L = Z.shape
    f = np.zeros((L, q), dtype=np.float64)
    for i in range(L):
        f[i] = np.bincount(Z[:, i], weights=W, minlength=q)
    return f / W.sum()


def entropy(Z: NDArray, W: NDArray, q: Optional[int] = None) -> NDArray:
    """Per-position entropy of the weighted empirical marginals, 0 log 0 = 0."""
    if q is None:
        q = int(Z.max() + 1)
    f = compute_empirical_freqs(Z, W, q)
    mask = f > 0
    return -np.sum(f * np.log(np.where(mask, f, 1.0)), axis=1)


def log_softmax(x: NDArray, axis: int = -1) -> NDArray:
    """Normalized log-probabilities along `axis`, clamped at LOG_FLOOR."""
    return np.maximum(_log_softmax(x, axis=axis), LOG_FLOOR)


def softmax(x: NDArray, axis: int = -1) -> NDArray:
    u = np.max(x, axis=axis, keepdims=True)
    r = np.exp(x - u)
    r /= np.sum(r, axis=axis, keepdims=True)
    return r
