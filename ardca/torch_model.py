import torch
import torch.nn as nn
import torch.nn.functional as F
from typing import Optional, Tuple


class ArSite(nn.Module):
    """Conditional model of one site given the sites before it in the order."""

    def __init__(self, n_prev: int, q: int, lambda_h: float = 0.01, lambda_J: float = 0.01,
                 dtype: torch.dtype = torch.float64):
        super().__init__()
        self.n_prev, self.q = n_prev, q
        self.lambda_h = lambda_h
        self.lambda_J = lambda_J

        # rows ordered (previous rank, previous state), columns the state of this site
        self.J = nn.Parameter(torch.zeros((n_prev * q, q), dtype=dtype))
        self.h = nn.Parameter(torch.zeros(q, dtype=dtype))

    def encode(self, history: torch.Tensor) -> Optional[torch.Tensor]:
        """
        Convert index-encoded history [M, n_prev] into flattened one-hot [M, n_prev*q].
        """
        if self.n_prev == 0:
            return None
        M = history.size(0)
        return F.one_hot(history, num_classes=self.q).to(self.h.dtype).reshape(M, self.n_prev * self.q)

    def logits(self, history_oh: Optional[torch.Tensor], M: int) -> torch.Tensor:
        """
        z[m,a] = h[a] + sum_{j,b} J[(j,b),a] * X[m,(j,b)]
        returns: (M, q)
        """
        if history_oh is None:
            return self.h.unsqueeze(0).expand(M, self.q)
        return history_oh @ self.J + self.h.unsqueeze(0)

    def forward(self, history_oh: Optional[torch.Tensor], y: torch.Tensor,
                weights: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """
        Weighted negative log-pseudo-likelihood + L2 reg
        weights are expected to sum to one
        """
        M = y.size(0)
        logp = torch.log_softmax(self.logits(history_oh, M), dim=-1)
        nll = -(weights * logp.gather(1, y.unsqueeze(1)).squeeze(1)).sum()

        reg_h = self.lambda_h * (self.h ** 2).sum()
        reg_J = self.lambda_J * (self.J ** 2).sum()

        loss = nll + reg_h + reg_J
        return loss, nll.detach(), (reg_h + reg_J).detach()
