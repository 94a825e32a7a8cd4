import numpy as np
import pytest

from ardca import ArNet


def generate_random_params(q, L, seed=42, coupling_scale=0.5):
    """Random ArNet with a random order"""
    rng = np.random.default_rng(seed)

    idxperm = rng.permutation(L)
    H = [rng.uniform(-1.0, 1.0, q) for _ in range(L)]
    J = [rng.uniform(-coupling_scale, coupling_scale, (r, q, q)) for r in range(L)]

    return ArNet(idxperm=idxperm, H=H, J=J)


def generate_synthetic_msa(M=100, L=5, q=4, seed=0):
    """
    Alignment with a few correlated columns: column 1 mostly copies column 0,
    column 3 mostly equals (column 2 + 1) mod q.
    """
    rng = np.random.default_rng(seed)
    Z = rng.integers(0, q, size=(M, L))
    copy = rng.random(M) < 0.8
    Z[copy, 1] = Z[copy, 0]
    shift = rng.random(M) < 0.7
    Z[shift, 3] = (Z[shift, 2] + 1) % q
    W = rng.uniform(0.2, 1.0, M)
    return Z, W


@pytest.fixture
def synthetic_msa():
    return generate_synthetic_msa()


@pytest.fixture
def random_arnet():
    return generate_random_params(4, 6)
