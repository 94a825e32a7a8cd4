"""Scores derived from a fitted ArNet around a reference sequence.

Energies are E(x) = -log P(x). Mutating the state of rank s only changes the
logits of the ranks after s, by J[r][s, a] - J[r][s, x_s], so single and double
mutant energies are computed incrementally from the logits of the reference.
"""
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from .ar_types import ArNet
from .exceptions import InvalidInputError
from .utils import check_sequences, log_softmax

Reference = Union[int, NDArray]


def _reference_sequence(arnet: ArNet, reference: Reference, Z: Optional[NDArray]) -> NDArray:
    if isinstance(reference, (int, np.integer)) and not isinstance(reference, (bool, np.bool_)):
        if Z is None:
            raise InvalidInputError("a sequence id as reference needs the alignment Z", "Z")
        Z = np.asarray(Z)
        if Z.ndim != 2:
            raise InvalidInputError(f"alignment should be a (M, L) matrix, got shape {Z.shape}", "Z")
        M = Z.shape[0]
        if not 0 <= reference < M:
            raise InvalidInputError(f"seqid {reference} should be in the interval [0, ..., {M - 1}]", "seqid")
        reference = Z[reference]
    x = check_sequences(reference, arnet.L, arnet.q)
    if x.ndim != 1:
        raise InvalidInputError("reference should be a single sequence", "reference")
    return x


def _check_gap(arnet: ArNet, gap: Optional[int]):
    if gap is not None and not 0 <= gap < arnet.q:
        raise InvalidInputError(f"gap state {gap} should be in [0, {arnet.q - 1}]", "gap")


class _Landscape:
    """Logits and log-probabilities of a reference sequence, in rank order."""

    def __init__(self, arnet: ArNet, x: NDArray):
        self.arnet = arnet
        self.L, self.q = arnet.L, arnet.q
        self.xr = x[arnet.idxperm]
        self.B = np.stack([arnet.logits(self.xr[:site]) for site in range(self.L)])  # (L, q)
        self.lp = log_softmax(self.B)
        self.base = self.lp[np.arange(self.L), self.xr]

    def shifts(self, site: int) -> NDArray:
        """Change of the logits of the later ranks per state at `site`: (q, L-site-1, q)"""
        if site == self.L - 1:
            return np.zeros((self.q, 0, self.q))
        Js = np.stack([self.arnet.J[r][site] for r in range(site + 1, self.L)], axis=1)
        return Js - Js[self.xr[site]][None]

    def single(self, site: int, sh: NDArray) -> Tuple[NDArray, NDArray, NDArray]:
        """
        Single mutants at rank `site`.
        Returns log-probabilities of the later ranks (q, n_down, q), the same taken at
        the reference states (q, n_down), and the energy changes (q,)
        """
        n_down = self.L - site - 1
        Ls = log_softmax(self.B[site + 1:][None] + sh)
        G = Ls[:, np.arange(n_down), self.xr[site + 1:]]
        dE = -((self.lp[site] - self.base[site]) + (G - self.base[site + 1:]).sum(axis=1))
        dE[self.xr[site]] = 0.0
        return Ls, G, dE


def dms_single_site(arnet: ArNet, reference: Reference, Z: Optional[NDArray] = None,
                    gap: Optional[int] = 0) -> Tuple[NDArray, List[int]]:
    """
    Single-site mutational scan of a reference sequence.

    Args:
        arnet: fitted model
        reference: sequence id in `Z` or a (L,) sequence
        Z: (M, L) alignment, needed when `reference` is an id
        gap: gap state, None if the alphabet has none

    Returns:
        D: (q, L) with D[a, i] = E(x with a at i) - E(x) = log P(x) - log P(x with a at i).
           Negative values are mutations more probable than the reference, zero the
           reference state itself. Columns of gapped reference positions are +inf.
        gapped: positions where the reference holds the gap state
    """
    _check_gap(arnet, gap)
    x = _reference_sequence(arnet, reference, Z)
    land = _Landscape(arnet, x)

    D = np.empty((arnet.q, arnet.L), dtype=np.float64)
    for site in range(arnet.L):
        _, _, dE = land.single(site, land.shifts(site))
        D[:, arnet.idxperm[site]] = dE

    gapped = [] if gap is None else np.flatnonzero(x == gap).tolist()
    D[:, gapped] = np.inf
    return D, gapped


def apc(matrix: NDArray) -> NDArray:
    """
    Average product correction (Dunn et al., Bioinformatics, 2008) of a
    symmetric L x L matrix. An all-zero matrix is returned unchanged.
    """
    L = matrix.shape[0]
    if L != matrix.shape[1]:
        raise InvalidInputError(f"Input matrix is not symmetric: {matrix.shape}")
    if L < 2:
        return matrix.copy()

    col_means = np.mean(matrix, axis=0) * L / (L - 1)
    matrix_mean = np.mean(matrix) * L / (L - 1)
    if matrix_mean == 0:
        return matrix.copy()

    corrected = matrix - np.outer(col_means, col_means) / matrix_mean
    corrected[np.diag_indices(L)] = 0
    return corrected


def _frobenius(ddE: NDArray, gap: Optional[int]) -> float:
    """Frobenius norm of the zero-sum gauge of a q x q epistasis matrix."""
    C = ddE - ddE.mean(axis=0, keepdims=True) - ddE.mean(axis=1, keepdims=True) + ddE.mean()
    if gap is not None and C.shape[0] > 2:
        C = np.delete(np.delete(C, gap, axis=0), gap, axis=1)
    return float(np.linalg.norm(C, "fro"))


def epistasis_matrices(land: _Landscape, s: int, shifts: List[NDArray], dE: NDArray):
    """
    Yield (t, ddE) for every rank t > s, with
    ddE[a, b] = E(x^{s:a, t:b}) - E(x^{s:a}) - E(x^{t:b}) + E(x),
    zero whenever the model factorizes over the two sites.
    """
    L, xr, B, base = land.L, land.xr, land.B, land.base
    sh_s = shifts[s]
    Ls, G, _ = land.single(s, sh_s)
    own = land.lp[s] - land.base[s]
    mid_terms = np.cumsum(G - base[s + 1:], axis=1)  # (q, n_s)

    for t in range(s + 1, L):
        k = t - s - 1
        mid = mid_terms[:, k - 1] if k > 0 else np.zeros(land.q)
        at_t = Ls[:, k, :] - base[t]  # (q_a, q_b)

        n_t = L - t - 1
        if n_t > 0:
            logits = B[t + 1:][None, None] + sh_s[:, k + 1:, :][:, None] + shifts[t][None]
            lpd = log_softmax(logits)[:, :, np.arange(n_t), xr[t + 1:]]
            down = (lpd - base[t + 1:]).sum(axis=-1)
        else:
            down = 0.0

        dE2 = -(own[:, None] + mid[:, None] + at_t + down)
        yield t, dE2 - dE[s][:, None] - dE[t][None, :]


def epistatic_score(arnet: ArNet, reference: Reference, Z: Optional[NDArray] = None,
                    min_separation: int = 1, apc_correction: bool = True, gap: Optional[int] = 0,
                    n_jobs: int = 1) -> List[Tuple[int, int, float]]:
    """
    Rank pairs of positions by the epistasis of double mutants of a reference sequence.

    The score of (i, j) is the Frobenius norm of the zero-sum gauged q x q matrix
    of deviations from additivity of the mutant energies (gap state excluded),
    optionally average-product corrected.

    Args:
        arnet: fitted model
        reference: sequence id in `Z` or a (L,) sequence
        Z: (M, L) alignment, needed when `reference` is an id
        min_separation: keep pairs with j - i >= min_separation
        apc_correction: apply the average product correction
        gap: gap state, None if the alphabet has none
        n_jobs: number of worker threads

    Returns:
        list of (i, j, score) with i < j, sorted by decreasing score then increasing (i, j)
    """
    if min_separation < 1:
        raise InvalidInputError(f"min_separation should be at least 1, got {min_separation}", "min_separation")
    if n_jobs < 1:
        raise InvalidInputError(f"n_jobs should be at least 1, got {n_jobs}", "n_jobs")

    _check_gap(arnet, gap)
    x = _reference_sequence(arnet, reference, Z)
    land = _Landscape(arnet, x)
    L, idxperm = arnet.L, arnet.idxperm

    shifts = [land.shifts(site) for site in range(L)]
    dE = np.stack([land.single(site, shifts[site])[2] for site in range(L)])  # (L, q)

    def score_rank(s: int):
        return [(s, t, _frobenius(ddE, gap)) for t, ddE in epistasis_matrices(land, s, shifts, dE)]

    if n_jobs > 1:
        with ThreadPoolExecutor(max_workers=n_jobs) as executor:
            rows = list(executor.map(score_rank, range(L - 1)))
    else:
        rows = [score_rank(s) for s in range(L - 1)]

    score = np.zeros((L, L), dtype=np.float64)
    for row in rows:
        for s, t, value in row:
            i, j = idxperm[s], idxperm[t]
            score[i, j] = score[j, i] = value
    if apc_correction:
        score = apc(score)

    ranking = [(i, j, float(score[i, j]))
               for i in range(L - 1) for j in range(i + 1, L) if j - i >= min_separation]
    ranking.sort(key=lambda e: (-e[2], e[0], e[1]))
    return ranking
