import json
import os
from dataclasses import dataclass, field
from typing import List, Optional, Union

import numpy as np
from numpy.typing import NDArray

from .exceptions import InvalidInputError
from .utils import log_softmax, softmax

ALL_METHODS = [
    "LD_LBFGS",
    "LD_TNEWTON",
    "LD_TNEWTON_PRECOND_RESTART",
    "LD_VAR1",
    "LD_VAR2",
    "LD_MMA",
    "LD_CCSAQ",
    "TORCH_LBFGS",
]


@dataclass
class ArVar:  # holds data and regularization, shared read-only by all sites
    L: int  # length of sequence
    M: int  # number of sequences
    q: int  # alphabet size
    lambdaJ: float  # coupling regularization
    lambdaH: float  # field regularization
    Z: NDArray  # MSA matrix (M, L)
    W: NDArray  # weights vector, normalized to sum 1
    meff: float  # sum of the raw weights
    idxperm: NDArray  # autoregressive order, rank -> position

    def __post_init__(self):
        if self.lambdaJ < 0 or self.lambdaH < 0:
            raise InvalidInputError(
                f"regularization should be non-negative, got lambdaJ={self.lambdaJ}, "
                f"lambdaH={self.lambdaH}", "lambda")
        self.Z.setflags(write=False)
        self.W.setflags(write=False)
        self.idxperm.setflags(write=False)


@dataclass
class ArAlg:  # stores algorithm config
    method: str = "LD_LBFGS"
    verbose: bool = False
    epsconv: float = 1.0e-5
    maxit: int = 1000
    n_jobs: int = 1

    def __post_init__(self):
        if self.method not in ALL_METHODS:
            raise InvalidInputError(
                f"method {self.method!r} not implemented, pick one of {ALL_METHODS}", "method")
        if not self.epsconv > 0:
            raise InvalidInputError(f"epsconv should be positive, got {self.epsconv}", "epsconv")
        if self.maxit < 1:
            raise InvalidInputError(f"maxit should be at least 1, got {self.maxit}", "maxit")
        if self.n_jobs < 1:
            raise InvalidInputError(f"n_jobs should be at least 1, got {self.n_jobs}", "n_jobs")


@dataclass(frozen=True)
class ArNet:
    """
    Fitted autoregressive model.

    P(x) = prod_r P(x_{idxperm[r]} | x_{idxperm[0]}, ..., x_{idxperm[r-1]})
    with P(. | prefix) = softmax(H[r] + sum_{j<r} J[r][j, prefix[j], :])

    idxperm: (L,) rank -> position
    H: list of L arrays of shape (q,)
    J: list of L arrays, J[r] of shape (r, q, q), axes (previous rank, previous state, state)
    """
    idxperm: NDArray
    H: List[NDArray]
    J: List[NDArray]

    def __post_init__(self):
        object.__setattr__(self, "idxperm", np.asarray(self.idxperm, dtype=np.int64))
        object.__setattr__(self, "H", [np.asarray(h, dtype=np.float64) for h in self.H])
        object.__setattr__(self, "J", [np.asarray(Jr, dtype=np.float64) for Jr in self.J])
        L = len(self.idxperm)
        if len(self.H) != L or len(self.J) != L:
            raise InvalidInputError(
                f"expected {L} field and coupling blocks, got {len(self.H)} and {len(self.J)}")
        q = self.H[0].shape[0]
        for r in range(L):
            if self.H[r].shape != (q,) or self.J[r].shape != (r, q, q):
                raise InvalidInputError(f"parameter block of rank {r} has the wrong shape")
        for arr in [self.idxperm, *self.H, *self.J]:
            arr.setflags(write=False)

    @property
    def L(self) -> int:
        return len(self.idxperm)

    @property
    def q(self) -> int:
        return self.H[0].shape[0]

    @property
    def p0(self) -> NDArray:
        """Distribution of the first site in the order."""
        return softmax(self.H[0])

    def logits(self, prefix: NDArray) -> NDArray:
        """
        Unnormalized log-potentials of rank k given the states of ranks 0..k-1.
        prefix: (k,) or (n, k) states, in rank order
        Returns: (q,) or (n, q)
        """
        prefix = np.asarray(prefix)
        squeeze = prefix.ndim == 1
        prefix = np.atleast_2d(prefix)
        n, k = prefix.shape
        if k >= self.L:
            raise InvalidInputError(f"prefix of length {k} leaves no site to predict (L = {self.L})")
        z = np.broadcast_to(self.H[k], (n, self.q))
        if k > 0:
            z = z + self.J[k][np.arange(k)[None, :], prefix].sum(axis=1)
        return z[0] if squeeze else z

    def log_conditional(self, prefix: NDArray) -> NDArray:
        """log P(x_{idxperm[k]} = . | prefix), clamped at LOG_FLOOR"""
        return log_softmax(self.logits(prefix), axis=-1)

    def conditional(self, prefix: NDArray) -> NDArray:
        """P(x_{idxperm[k]} = . | prefix)"""
        return softmax(self.logits(prefix), axis=-1)

    def save(self, path: Union[str, "os.PathLike[str]"], *, metadata: Optional[dict] = None) -> None:
        """
        Save to NPZ without pickled objects.
        """
        payload = {
            "idxperm": np.asarray(self.idxperm, dtype=np.int64),
            "q": np.array([self.q], dtype=np.int64),
            "L": np.array([self.L], dtype=np.int64),
        }
        for r in range(self.L):
            payload[f"H_{r}"] = np.asarray(self.H[r], dtype=np.float64)
            payload[f"J_{r}"] = np.asarray(self.J[r], dtype=np.float64)
        if metadata:
            payload["metadata_json"] = np.array([json.dumps(metadata)], dtype=str)
        np.savez_compressed(path, **payload)

    @classmethod
    def load(cls, path: Union[str, "os.PathLike[str]"]) -> "ArNet":
        with np.load(path, allow_pickle=False) as npz:
            L = int(npz["L"][0])
            q = int(npz["q"][0])
            idxperm = np.array(npz["idxperm"], dtype=np.int64)
            H = [np.array(npz[f"H_{r}"]) for r in range(L)]
            J = [np.array(npz[f"J_{r}"]).reshape(r, q, q) for r in range(L)]
        return cls(idxperm=idxperm, H=H, J=J)

    @staticmethod
    def load_metadata(path: Union[str, "os.PathLike[str]"]) -> Optional[dict]:
        """Metadata stored by `save`, None if there is none."""
        with np.load(path, allow_pickle=False) as npz:
            if "metadata_json" not in npz.files:
                return None
            return json.loads(str(npz["metadata_json"][0]))


@dataclass
class SiteDiagnostics:
    position: int
    rank: int
    status: str
    converged: bool
    objective: float  # minimized negative log-pseudo-likelihood + penalty
    iterations: int
    elapsed: float
    degenerate: bool = False


@dataclass
class FitDiagnostics:
    sites: List[SiteDiagnostics]  # one entry per rank
    meff: float
    idxperm: NDArray = field(repr=False)

    @property
    def converged(self) -> bool:
        return all(s.converged for s in self.sites)

    @property
    def unconverged_positions(self) -> List[int]:
        return [s.position for s in self.sites if not s.converged]

    @property
    def degenerate_positions(self) -> List[int]:
        return sorted(s.position for s in self.sites if s.degenerate)

    @property
    def objectives(self) -> NDArray:
        """Minimized objective per position."""
        out = np.empty(len(self.sites))
        for s in self.sites:
            out[s.position] = s.objective
        return out
