"""Per-site minimization of the regularized negative log-pseudo-likelihood.

Every site of the order is an independent multinomial logistic regression of the
site's state on the one-hot states of the sites before it. Two backends solve it:
NLopt gradient-based algorithms (the `LD_*` methods) and `torch.optim.LBFGS`
(`TORCH_LBFGS`). Both start from zero and are deterministic.
"""
import time
from dataclasses import dataclass
from functools import cached_property

import nlopt
import numpy as np
import torch
from numpy.typing import NDArray
from scipy.sparse import csr_matrix
from scipy.special import logsumexp

from .ar_types import ALL_METHODS, ArAlg
from .torch_model import ArSite

__all__ = ["ALL_METHODS", "SiteProblem", "SiteResult", "compute_pslikeandgrad", "minimize_site"]

_NLOPT_STATUS = {
    nlopt.SUCCESS: "SUCCESS",
    nlopt.STOPVAL_REACHED: "STOPVAL_REACHED",
    nlopt.FTOL_REACHED: "FTOL_REACHED",
    nlopt.XTOL_REACHED: "XTOL_REACHED",
    nlopt.MAXEVAL_REACHED: "MAXEVAL_REACHED",
    nlopt.MAXTIME_REACHED: "MAXTIME_REACHED",
}


@dataclass
class SiteProblem:
    history: NDArray  # (M, n_prev) states of the previous sites, in rank order
    y: NDArray  # (M,) states of the site
    w: NDArray  # (M,) normalized weights
    q: int
    lambdaJ: float
    lambdaH: float

    @property
    def n_prev(self) -> int:
        return self.history.shape[1]

    @property
    def size(self) -> int:
        """n_prev*q^2 coupling weights + q local fields"""
        return self.n_prev * self.q * self.q + self.q

    @cached_property
    def onehot(self) -> csr_matrix:
        """Sparse (M, n_prev*q) one-hot encoding of the history."""
        M, n_prev = self.history.shape
        cols = (np.arange(n_prev) * self.q + self.history).ravel()
        rows = np.repeat(np.arange(M), n_prev)
        return csr_matrix((np.ones(M * n_prev), (rows, cols)), shape=(M, n_prev * self.q))


@dataclass
class SiteResult:
    x: NDArray  # minimizer, couplings first then fields
    objective: float
    status: str
    converged: bool
    iterations: int
    elapsed: float


def compute_pslikeandgrad(x: NDArray, grad: NDArray, problem: SiteProblem) -> float:
    """Penalized negative log-pseudo-likelihood at x.

    Also writes into grad[:] (when non-empty) the gradient of that same objective.
    """
    q, w, y = problem.q, problem.w, problem.y
    M = y.shape[0]
    nJ = x.shape[0] - q
    J, h = x[:nJ], x[nJ:]

    if nJ > 0:
        energies = problem.onehot @ J.reshape(-1, q) + h
    else:
        energies = np.broadcast_to(h, (M, q))
    lnorm = logsumexp(energies, axis=1)
    rows = np.arange(M)

    pseudolike = -np.dot(w, energies[rows, y] - lnorm)
    pseudolike += problem.lambdaJ * np.dot(J, J) + problem.lambdaH * np.dot(h, h)

    if grad.size > 0:
        G = np.exp(energies - lnorm[:, None])
        G[rows, y] -= 1.0
        G *= w[:, None]
        if nJ > 0:
            grad[:nJ] = (problem.onehot.T @ G).ravel() + 2.0 * problem.lambdaJ * J
        grad[nJ:] = G.sum(axis=0) + 2.0 * problem.lambdaH * h

    return float(pseudolike)


def _minimize_nlopt(problem: SiteProblem, alg: ArAlg) -> SiteResult:
    x0 = np.zeros(problem.size, dtype=np.float64)

    opt = nlopt.opt(getattr(nlopt, alg.method), x0.size)

    # tolerances on absolute/relative function and parameter values
    opt.set_ftol_abs(alg.epsconv)
    opt.set_ftol_rel(alg.epsconv)
    opt.set_xtol_abs(alg.epsconv)
    opt.set_xtol_rel(alg.epsconv)

    # stop after at most maxit evaluations
    opt.set_maxeval(alg.maxit)

    nevals = 0
    best_f, best_x = np.inf, x0.copy()

    def objective(x, grad):
        nonlocal nevals, best_f, best_x
        nevals += 1
        f = compute_pslikeandgrad(x, grad, problem)
        if f < best_f:
            best_f, best_x = f, x.copy()
        return f

    opt.set_min_objective(objective)

    start_time = time.perf_counter()
    try:
        minx = opt.optimize(x0)
        minf = opt.last_optimum_value()
        result = opt.last_optimize_result()
        status = _NLOPT_STATUS.get(result, str(result))
    except nlopt.RoundoffLimited:
        # no further progress possible at machine precision, keep the best point seen
        minx, minf, status = best_x, best_f, "ROUNDOFF_LIMITED"
    elapsed = time.perf_counter() - start_time

    return SiteResult(x=np.asarray(minx, dtype=np.float64), objective=float(minf), status=status,
                      converged=status != "MAXEVAL_REACHED", iterations=nevals, elapsed=elapsed)


def _minimize_torch(problem: SiteProblem, alg: ArAlg) -> SiteResult:
    site = ArSite(problem.n_prev, problem.q, lambda_h=problem.lambdaH, lambda_J=problem.lambdaJ)
    history_oh = site.encode(torch.tensor(problem.history, dtype=torch.long))
    y = torch.tensor(problem.y, dtype=torch.long)
    w = torch.tensor(problem.w, dtype=torch.float64)

    params = [site.J, site.h] if problem.n_prev > 0 else [site.h]
    max_eval = alg.maxit * 5 // 4
    opt = torch.optim.LBFGS(params, lr=1, max_iter=alg.maxit, max_eval=max_eval,
                            tolerance_grad=alg.epsconv, tolerance_change=alg.epsconv,
                            line_search_fn="strong_wolfe")

    def closure():
        opt.zero_grad(set_to_none=True)
        loss, _, _ = site(history_oh, y, w)
        loss.backward()
        return loss.detach()

    start_time = time.perf_counter()
    opt.step(closure)
    elapsed = time.perf_counter() - start_time

    state = opt.state[params[0]]
    n_iter, n_evals = int(state["n_iter"]), int(state["func_evals"])

    # LBFGS stops silently on either budget, tell those apart from a tolerance stop
    loss = closure()
    grad_max = max(float(p.grad.abs().max()) for p in params)
    if grad_max <= alg.epsconv:
        status = "SUCCESS"
    elif n_iter >= alg.maxit:
        status = "MAXITER_REACHED"
    elif n_evals >= max_eval:
        status = "MAXEVAL_REACHED"
    else:
        status = "SUCCESS"
    x = np.concatenate([site.J.detach().numpy().ravel(), site.h.detach().numpy()])

    return SiteResult(x=x, objective=float(loss), status=status, converged=status == "SUCCESS",
                      iterations=n_iter, elapsed=elapsed)


def minimize_site(problem: SiteProblem, alg: ArAlg) -> SiteResult:
    if alg.method == "TORCH_LBFGS":
        return _minimize_torch(problem, alg)
    return _minimize_nlopt(problem, alg)
