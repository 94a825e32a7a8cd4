import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from ardca import ArNet, InvalidInputError, apc, ardca, dms_single_site, epistatic_score, loglikelihood
from ardca.dca import _Landscape, epistasis_matrices

from conftest import generate_random_params, generate_synthetic_msa


def energy(arnet, x):
    return -loglikelihood(arnet, x)


def mutate(x, *subs):
    xm = x.copy()
    for pos, a in subs:
        xm[pos] = a
    return xm


def raw_epistasis(arnet, x):
    """ddE matrices keyed by (position_i, position_j) in the model order"""
    land = _Landscape(arnet, x)
    shifts = [land.shifts(s) for s in range(arnet.L)]
    dE = np.stack([land.single(s, shifts[s])[2] for s in range(arnet.L)])
    out = {}
    for s in range(arnet.L - 1):
        for t, ddE in epistasis_matrices(land, s, shifts, dE):
            out[(arnet.idxperm[s], arnet.idxperm[t])] = ddE
    return out


def test_dms_single_site(random_arnet):
    x = np.array([1, 2, 0, 3, 1, 0])
    D, gapped = dms_single_site(random_arnet, x)

    assert D.shape == (random_arnet.q, random_arnet.L)
    assert gapped == [2, 5]
    assert np.all(np.isinf(D[:, gapped]) & (D[:, gapped] > 0))

    E0 = energy(random_arnet, x)
    for k in range(random_arnet.L):
        if k in gapped:
            continue
        assert D[x[k], k] == 0.0
        for a in range(random_arnet.q):
            assert_allclose(D[a, k], energy(random_arnet, mutate(x, (k, a))) - E0, atol=1e-10)


def test_dms_without_gap_state(random_arnet):
    x = np.array([1, 2, 0, 3, 1, 0])
    D, gapped = dms_single_site(random_arnet, x, gap=None)
    assert gapped == []
    assert np.all(np.isfinite(D))
    assert_array_equal(D[x, np.arange(random_arnet.L)], 0.0)


def test_dms_reference_by_id(random_arnet):
    Z = np.array([[1, 1, 1, 1, 1, 1],
                  [2, 0, 3, 3, 1, 2]])
    D, gapped = dms_single_site(random_arnet, 1, Z=Z)
    D_seq, gapped_seq = dms_single_site(random_arnet, Z[1])
    assert_array_equal(D, D_seq)
    assert gapped == gapped_seq == [1]

    with pytest.raises(InvalidInputError):
        dms_single_site(random_arnet, 1)
    with pytest.raises(InvalidInputError):
        dms_single_site(random_arnet, 2, Z=Z)
    with pytest.raises(InvalidInputError):
        dms_single_site(random_arnet, np.array([1, 2, 3]))
    with pytest.raises(InvalidInputError):
        dms_single_site(random_arnet, Z[1], gap=7)


def test_epistasis_matches_mutant_energies(random_arnet):
    x = np.array([3, 1, 2, 0, 1, 2])
    E0 = energy(random_arnet, x)
    for (i, j), ddE in raw_epistasis(random_arnet, x).items():
        for a in range(random_arnet.q):
            for b in range(random_arnet.q):
                expected = (energy(random_arnet, mutate(x, (i, a), (j, b)))
                            - energy(random_arnet, mutate(x, (i, a)))
                            - energy(random_arnet, mutate(x, (j, b))) + E0)
                assert_allclose(ddE[a, b], expected, atol=1e-10)


def test_epistasis_vanishes_without_couplings():
    q, L = 4, 5
    rng = np.random.default_rng(0)
    arnet = ArNet(idxperm=rng.permutation(L), H=[rng.normal(size=q) for _ in range(L)],
                  J=[np.zeros((r, q, q)) for r in range(L)])
    x = np.array([1, 0, 2, 3, 1])

    for ddE in raw_epistasis(arnet, x).values():
        assert_allclose(ddE, 0.0, atol=1e-12)
    for _, _, score in epistatic_score(arnet, x, apc_correction=False):
        assert score == pytest.approx(0.0, abs=1e-10)


def test_epistasis_is_local_to_coupled_pair():
    # only rank 1 depends on rank 0, the model factorizes over every other pair
    q, L = 3, 4
    rng = np.random.default_rng(1)
    J = [np.zeros((r, q, q)) for r in range(L)]
    J[1] = rng.normal(size=(1, q, q))
    idxperm = np.array([2, 0, 3, 1])
    arnet = ArNet(idxperm=idxperm, H=[rng.normal(size=q) for _ in range(L)], J=J)

    ranking = epistatic_score(arnet, np.array([1, 2, 0, 1]), apc_correction=False, gap=None)
    (i, j, top), *rest = ranking
    assert (i, j) == (0, 2)
    assert top > 0
    assert all(score == pytest.approx(0.0, abs=1e-10) for _, _, score in rest)


def test_epistatic_score_is_exhaustive_and_sorted(random_arnet):
    L = random_arnet.L
    x = np.array([3, 1, 2, 0, 1, 2])
    ranking = epistatic_score(random_arnet, x)

    assert len(ranking) == L * (L - 1) // 2
    pairs = {(i, j) for i, j, _ in ranking}
    assert pairs == {(i, j) for i in range(L) for j in range(i + 1, L)}

    scores = [s for _, _, s in ranking]
    assert all(s1 >= s2 for s1, s2 in zip(scores, scores[1:]))
    assert all(np.isfinite(scores))


def test_raw_scores_of_coupled_model(random_arnet):
    x = np.array([3, 1, 2, 0, 1, 2])
    raw = epistatic_score(random_arnet, x, apc_correction=False)
    scores = {(i, j): s for i, j, s in raw}
    raw_matrix = np.zeros((6, 6))
    for (i, j), s in scores.items():
        raw_matrix[i, j] = raw_matrix[j, i] = s
    assert_array_equal(raw_matrix, raw_matrix.T)
    assert np.all(raw_matrix[np.triu_indices(6, 1)] > 0)


def test_epistatic_score_ties_are_deterministic():
    q, L = 3, 4
    arnet = ArNet(idxperm=np.arange(L), H=[np.zeros(q) for _ in range(L)],
                  J=[np.zeros((r, q, q)) for r in range(L)])
    ranking = epistatic_score(arnet, np.zeros(L, dtype=int), gap=None)
    assert [(i, j) for i, j, _ in ranking] == [(0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3)]


def test_epistatic_score_threads_and_separation(random_arnet):
    x = np.array([3, 1, 2, 0, 1, 2])
    serial = epistatic_score(random_arnet, x, n_jobs=1)
    parallel = epistatic_score(random_arnet, x, n_jobs=3)
    assert serial == parallel

    far = epistatic_score(random_arnet, x, min_separation=3)
    assert all(j - i >= 3 for i, j, _ in far)
    assert len(far) == 6
    with pytest.raises(InvalidInputError):
        epistatic_score(random_arnet, x, min_separation=0)


def test_apc():
    rng = np.random.default_rng(4)
    A = rng.random((6, 6))
    A = A + A.T
    np.fill_diagonal(A, 0)
    C = apc(A)
    assert_allclose(C, C.T)
    assert_array_equal(np.diag(C), 0)
    assert_array_equal(apc(np.zeros((4, 4))), 0)
    with pytest.raises(InvalidInputError):
        apc(np.zeros((3, 4)))


def test_fitted_model_ranks_correlated_pairs_first():
    Z, W = generate_synthetic_msa(M=400, L=6, q=4, seed=2)
    arnet, _ = ardca(Z, W, q=4, lambdaJ=1e-3, lambdaH=1e-4)
    ranking = epistatic_score(arnet, 0, Z=Z, apc_correction=False, gap=None)
    top_two = {(i, j) for i, j, _ in ranking[:2]}
    assert top_two == {(0, 1), (2, 3)}

    D, gapped = dms_single_site(arnet, 0, Z=Z, gap=None)
    assert gapped == []
    assert_array_equal(D[Z[0], np.arange(6)], 0.0)


def test_random_model_scores_are_finite():
    arnet = generate_random_params(21, 4, seed=3, coupling_scale=3.0)
    x = np.array([0, 5, 20, 11])
    D, gapped = dms_single_site(arnet, x)
    assert gapped == [0]
    assert np.all(np.isfinite(D[:, 1:]))
    assert all(np.isfinite(s) for _, _, s in epistatic_score(arnet, x))
