"""
arDCA: autoregressive models of protein families.

Fit an autoregressive model to a reweighted multiple sequence alignment, then
sample from it, rank residue pairs by epistasis, or scan single mutations.
"""

from .alignment import ALPHABET, aa2idx, compute_weights, read_fasta_alignment, remove_duplicate_sequences
from .ar import ardca, ardca_fasta, minimize_arnet
from .ar_types import ALL_METHODS, ArAlg, ArNet, ArVar, FitDiagnostics, SiteDiagnostics
from .dca import apc, dms_single_site, epistatic_score
from .exceptions import (
    ArDCAError,
    ConvergenceWarning,
    DegenerateColumnError,
    InvalidInputError,
    InvalidOrderError,
)
from .ordering import ALL_PERMORDER, compute_permorder
from .sampling import loglikelihood, sample, sample_with_weights, siteloglikelihood

__all__ = [
    "ardca",
    "ardca_fasta",
    "minimize_arnet",
    "ArAlg",
    "ArNet",
    "ArVar",
    "FitDiagnostics",
    "SiteDiagnostics",
    "ALL_METHODS",
    "ALL_PERMORDER",
    "compute_permorder",
    "sample",
    "sample_with_weights",
    "loglikelihood",
    "siteloglikelihood",
    "epistatic_score",
    "dms_single_site",
    "apc",
    "ALPHABET",
    "aa2idx",
    "read_fasta_alignment",
    "remove_duplicate_sequences",
    "compute_weights",
    "ArDCAError",
    "InvalidInputError",
    "InvalidOrderError",
    "ConvergenceWarning",
    "DegenerateColumnError",
]
