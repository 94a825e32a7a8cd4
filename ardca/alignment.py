"""FASTA alignments to integer matrices, and identity-based sequence reweighting."""
import gzip
import logging
from typing import Optional, Tuple

import numpy as np
from Bio import AlignIO
from numpy.typing import NDArray

from .exceptions import InvalidInputError

logger = logging.getLogger(__name__)

ALPHABET = "-ACDEFGHIKLMNPQRSTVWY"
AA2IDX = {aa: i for i, aa in enumerate(ALPHABET)}

# byte -> state, anything outside ALPHABET is a gap
_LOOKUP = np.zeros(256, dtype=np.int64)
for _aa, _i in AA2IDX.items():
    _LOOKUP[ord(_aa)] = _LOOKUP[ord(_aa.lower())] = _i


def aa2idx(aa: str) -> int:
    return AA2IDX.get(aa.upper(), 0)


def _encode(seq: str) -> NDArray:
    return _LOOKUP[np.frombuffer(seq.encode("ascii", errors="replace"), dtype=np.uint8)]


def read_fasta_alignment(filename: str, max_gap_fraction: float,
                         max_col_gap_fraction: Optional[float] = None) -> NDArray:
    """
    Read a FASTA alignment (optionally gzipped) into an (M, L) matrix of states.

    Sequences whose fraction of '-' exceeds `max_gap_fraction` are dropped (1 keeps
    all of them); if `max_col_gap_fraction` is set, so are the columns whose
    fraction of gap states exceeds it.
    """
    opener = gzip.open if str(filename).endswith(".gz") else open
    with opener(filename, "rt") as handle:
        alignment = AlignIO.read(handle, "fasta")

    L = alignment.get_alignment_length()
    seqs = [str(rec.seq) for rec in alignment]
    kept = [s for s in seqs if s.count("-") / L <= max_gap_fraction]
    if not kept:
        raise InvalidInputError(
            f"no sequence passed the gap filter (max_gap_fraction={max_gap_fraction})",
            "max_gap_fraction")

    Z = np.stack([_encode(s) for s in kept])
    if max_col_gap_fraction is not None:
        Z = Z[:, (Z == 0).mean(axis=0) <= max_col_gap_fraction]

    logger.debug("read %d of %d sequences (%d columns) from %s", Z.shape[0], len(seqs),
                 Z.shape[1], filename)
    return Z


def remove_duplicate_sequences(Z: NDArray) -> NDArray:
    """Drop repeated rows, the first copy of each stays where it was."""
    _, first = np.unique(Z, axis=0, return_index=True)
    return Z[np.sort(first)]


def _identity(X_i: NDArray, X_j: NDArray, gap_idx: Optional[int],
              count_gaps_as_match: bool) -> NDArray:
    """Fraction of identical states over comparable columns, for every pair of rows."""
    same = X_i[:, None, :] == X_j[None, :, :]
    if gap_idx is None:
        return same.mean(axis=-1)

    gap_i, gap_j = X_i[:, None, :] == gap_idx, X_j[None, :, :] == gap_idx
    if count_gaps_as_match:
        comparable = ~(gap_i ^ gap_j)
    else:
        comparable = ~(gap_i | gap_j)
    matches = (same & comparable).sum(axis=-1)
    n = comparable.sum(axis=-1)
    return np.divide(matches, n, out=np.zeros(matches.shape), where=n > 0)


def compute_weights(
    Z: NDArray,
    theta: Optional[float],
    gap_idx: Optional[int] = None,
    count_gaps_as_match: bool = False,
    block_size: int = 512,
) -> Tuple[NDArray, float]:
    """
    Sequence reweighting with identity threshold theta in [0,1]:
    w_m = 1 / #{m' : seqid(m, m') >= theta}, no reweighting if theta is None or <= 0.

    Args:
        Z: (M, L) integer alignment
        theta: identity threshold
        gap_idx: gap state, columns where either sequence has it are not compared
            (None compares gaps like any other state)
        count_gaps_as_match: compare gap-gap columns as identical
        block_size: rows compared at once, bounds memory to block_size^2 * L

    Returns:
        W: (M,) weights
        meff: their sum, the effective number of sequences
    """
    M = Z.shape[0]
    if theta is None or theta <= 0:
        return np.ones(M, dtype=np.float64), float(M)

    neighbours = np.zeros(M, dtype=np.int64)
    for i in range(0, M, block_size):
        for j in range(0, M, block_size):
            ident = _identity(Z[i:i + block_size], Z[j:j + block_size], gap_idx, count_gaps_as_match)
            if i == j:
                np.fill_diagonal(ident, 1.0)  # a sequence is always its own neighbour
            neighbours[i:i + block_size] += (ident >= theta).sum(axis=1)

    W = 1.0 / neighbours
    return W, float(W.sum())
