"""Ancestral sampling and exact likelihoods of a fitted ArNet.

Both walk the sites in the model's order and use `ArNet.log_conditional`, so the
log-likelihood reported while sampling equals `loglikelihood` of the sampled
sequence.
"""
from concurrent.futures import ThreadPoolExecutor
from typing import Tuple

import numpy as np
from numpy.typing import NDArray

from .ar_types import ArNet
from .exceptions import InvalidInputError
from .utils import check_sequences


def _draw_uniforms(msamples: int, L: int, seed) -> NDArray:
    """One private stream per sequence: row d only depends on the seed and d."""
    ss = seed if isinstance(seed, np.random.SeedSequence) else np.random.SeedSequence(seed)
    U = np.empty((msamples, L), dtype=np.float64)
    for d, child in enumerate(ss.spawn(msamples)):
        U[d] = np.random.default_rng(child).random(L)
    return U


def _ancestral(arnet: ArNet, uniforms: NDArray) -> Tuple[NDArray, NDArray]:
    """Inverse-CDF ancestral sampling, returns states in rank order (n, L) and log-likelihoods."""
    n, L = uniforms.shape
    res = np.empty((n, L), dtype=np.int64)
    logw = np.zeros(n, dtype=np.float64)
    rows = np.arange(n)

    for site in range(L):
        logp = arnet.log_conditional(res[:, :site])  # (n, q)
        cdf = np.cumsum(np.exp(logp), axis=1)
        cdf /= cdf[:, -1:]
        state = np.minimum((cdf <= uniforms[:, site, None]).sum(axis=1), arnet.q - 1)
        res[:, site] = state
        logw += logp[rows, state]

    return res, logw


def _sample(arnet: ArNet, msamples: int, seed, n_jobs: int) -> Tuple[NDArray, NDArray]:
    if msamples < 0:
        raise InvalidInputError(f"number of samples should be non-negative, got {msamples}", "msamples")
    if n_jobs < 1:
        raise InvalidInputError(f"n_jobs should be at least 1, got {n_jobs}", "n_jobs")

    L = arnet.L
    U = _draw_uniforms(msamples, L, seed)
    chunks = [c for c in np.array_split(U, n_jobs) if c.shape[0] > 0]

    if len(chunks) > 1:
        with ThreadPoolExecutor(max_workers=len(chunks)) as executor:
            parts = list(executor.map(lambda u: _ancestral(arnet, u), chunks))
    else:
        parts = [_ancestral(arnet, U)]

    res = np.concatenate([p[0] for p in parts], axis=0)
    logw = np.concatenate([p[1] for p in parts])

    # back to position order, one sequence per column
    out = np.empty((L, msamples), dtype=np.int64)
    out[arnet.idxperm, :] = res.T
    return logw, out


def sample(arnet: ArNet, msamples: int, seed=None, n_jobs: int = 1) -> NDArray:
    """
    Generate an alignment from the model.

    Args:
        arnet: fitted model
        msamples: number of sequences to generate
        seed: int, None or np.random.SeedSequence
        n_jobs: number of worker threads; the result does not depend on it

    Returns:
        Array of shape (L, msamples), one sequence per column
    """
    _, res = _sample(arnet, msamples, seed, n_jobs)
    return res


def sample_with_weights(arnet: ArNet, msamples: int, seed=None,
                        n_jobs: int = 1) -> Tuple[NDArray, NDArray]:
    """
    Return the log-likelihoods under the model of `msamples` generated sequences
    and the generated alignment as a (L, msamples) matrix.
    """
    return _sample(arnet, msamples, seed, n_jobs)


def siteloglikelihood(arnet: ArNet, X: NDArray) -> NDArray:
    """
    log P(x_i | x_<i) for each position i of one (L,) or several (n, L) sequences,
    in position order.
    """
    X = check_sequences(X, arnet.L, arnet.q)
    squeeze = X.ndim == 1
    Xr = np.atleast_2d(X)[:, arnet.idxperm]
    n = Xr.shape[0]
    rows = np.arange(n)

    out = np.empty((n, arnet.L), dtype=np.float64)
    for site in range(arnet.L):
        logp = arnet.log_conditional(Xr[:, :site])
        out[:, arnet.idxperm[site]] = logp[rows, Xr[:, site]]
    return out[0] if squeeze else out


def loglikelihood(arnet: ArNet, X: NDArray):
    """Exact log-likelihood of one (L,) or several (n, L) sequences."""
    X = check_sequences(X, arnet.L, arnet.q)
    squeeze = X.ndim == 1
    Xr = np.atleast_2d(X)[:, arnet.idxperm]
    n = Xr.shape[0]
    rows = np.arange(n)

    logw = np.zeros(n, dtype=np.float64)
    for site in range(arnet.L):
        logp = arnet.log_conditional(Xr[:, :site])
        logw += logp[rows, Xr[:, site]]
    return float(logw[0]) if squeeze else logw
