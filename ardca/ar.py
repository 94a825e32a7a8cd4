import logging
import warnings
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Tuple

import numpy as np
from numpy.typing import NDArray
from tqdm import tqdm

from .alignment import compute_weights, read_fasta_alignment, remove_duplicate_sequences
from .ar_types import ArAlg, ArNet, ArVar, FitDiagnostics, SiteDiagnostics
from .exceptions import ConvergenceWarning, DegenerateColumnError
from .optim import SiteProblem, SiteResult, minimize_site
from .ordering import PermOrder, checkpermorder, compute_permorder
from .utils import check_alignment, compute_empirical_freqs

logger = logging.getLogger(__name__)


def ardca(Z: NDArray, W: Optional[NDArray] = None,
          q: Optional[int] = None,
          lambdaJ: float = 0.01,
          lambdaH: float = 0.01,
          epsconv: float = 1.0e-5,
          maxit: int = 1000,
          verbose: bool = False,
          method: str = "LD_LBFGS",
          permorder: PermOrder = "ENTROPIC",
          n_jobs: int = 1,
          seed=None) -> Tuple[ArNet, FitDiagnostics]:
    """
    Fit an autoregressive model to an alignment.

    Args:
        Z: (M, L) integer alignment, one sequence per row, states in [0, q-1]
        W: (M,) non-negative sequence weights, uniform if None. Their sum is
           the effective sample size; they are normalized before fitting.
        q: alphabet size, max(Z) + 1 if None
        lambdaJ, lambdaH: L2 regularization of couplings and fields
        epsconv: convergence tolerance of the optimizer
        maxit: maximum number of optimizer iterations per site
        verbose: log per-site diagnostics and show a progress bar
        method: one of ALL_METHODS
        permorder: one of ALL_PERMORDER or an explicit permutation of range(L)
        n_jobs: number of worker threads fitting sites in parallel
        seed: seed of the RANDOM order

    The first site in the order has no history: its distribution p0 = softmax(H[0])
    is fitted like every other site, and lambdaH keeps it away from zero
    probabilities without a separate pseudocount.

    Returns:
        (ArNet, FitDiagnostics)
    """
    Z, W, q = check_alignment(Z, W, q)
    M, L = Z.shape
    checkpermorder(permorder, L)

    # Initialize algorithm parameters in ArAlg object
    aralg = ArAlg(method=method, verbose=verbose, epsconv=epsconv, maxit=maxit, n_jobs=n_jobs)

    meff = float(W.sum())
    Wn = W / meff
    idxperm = compute_permorder(Z, Wn, q, permorder, seed)

    # Initialize model variables in ArVar object
    arvar = ArVar(L=L, M=M, q=q, lambdaJ=lambdaJ, lambdaH=lambdaH, Z=Z, W=Wn, meff=meff,
                  idxperm=idxperm)

    return minimize_arnet(aralg, arvar)


def ardca_fasta(filename: str, max_gap_fraction: float = 0.9, theta: Optional[float] = 0.8,
                remove_dups: bool = True, **kwargs) -> Tuple[ArNet, FitDiagnostics]:
    """Read, deduplicate and reweight a FASTA alignment, then fit it with `ardca`."""
    Z = read_fasta_alignment(filename, max_gap_fraction)
    if remove_dups:
        Z = remove_duplicate_sequences(Z)
    W, _ = compute_weights(Z, theta, gap_idx=0)
    kwargs.setdefault("q", 21)
    return ardca(Z, W, **kwargs)


def minimize_arnet(alg: ArAlg, var: ArVar) -> Tuple[ArNet, FitDiagnostics]:
    """Site-by-site nonlinear optimization to fit parameters of autoregressive model"""
    L, q, idxperm = var.L, var.q, var.idxperm
    Zperm = var.Z[:, idxperm]  # columns in rank order

    f1 = compute_empirical_freqs(var.Z, var.W, q)
    degenerate = np.count_nonzero(f1 > 0, axis=1) == 1

    def fit_site(site: int) -> SiteResult:
        problem = SiteProblem(history=Zperm[:, :site], y=Zperm[:, site], w=var.W, q=q,
                              lambdaJ=var.lambdaJ, lambdaH=var.lambdaH)
        return minimize_site(problem, alg)

    progress = tqdm(total=L, desc="Fitting sites", disable=not alg.verbose)
    results = []
    if alg.n_jobs == 1:
        for site in range(L):
            results.append(fit_site(site))
            progress.update()
    else:
        with ThreadPoolExecutor(max_workers=alg.n_jobs) as executor:
            # map keeps rank order, each site writes only its own slot
            for result in executor.map(fit_site, range(L)):
                results.append(result)
                progress.update()
    progress.close()

    H, J, sites = [], [], []
    for site, res in enumerate(results):
        position = int(idxperm[site])
        nJ = site * q * q
        J.append(res.x[:nJ].reshape(site, q, q).copy())
        H.append(res.x[nJ:].copy())
        sites.append(SiteDiagnostics(position=position, rank=site, status=res.status,
                                     converged=res.converged, objective=res.objective,
                                     iterations=res.iterations, elapsed=res.elapsed,
                                     degenerate=bool(degenerate[position])))
        if alg.verbose:
            logger.info("site = %d\tpl = %.4f\ttime = %.4f\tstatus: %s",
                        position, res.objective, res.elapsed, res.status)

    for s in sites:
        if not s.converged:
            logger.warning("site %d did not converge within %d iterations (status: %s)",
                           s.position, alg.maxit, s.status)
            warnings.warn(f"site {s.position} hit the iteration cap ({alg.maxit}) before "
                          f"reaching tolerance {alg.epsconv}", ConvergenceWarning, stacklevel=2)

    if degenerate.any():
        positions = np.flatnonzero(degenerate).tolist()
        logger.warning("single-category columns at positions %s", positions)
        warnings.warn(f"columns {positions} hold a single category across all weighted sequences",
                      DegenerateColumnError, stacklevel=2)

    arnet = ArNet(idxperm=np.array(idxperm), H=H, J=J)
    return arnet, FitDiagnostics(sites=sites, meff=var.meff, idxperm=arnet.idxperm)
