from mnn_integration.correction import (
    average_pair_vectors,
    compute_correction_vectors,
    estimate_bandwidth,
    estimate_translation,
)
from mnn_integration.matching import MutualPairs, find_mutual_pairs
from mnn_integration.neighbors import cross_knn
from .fixtures import plane_batch
import numpy as np
import numpy.testing as npt


def _pairs(first, second):
    return MutualPairs(first=np.array(first), second=np.array(second))


def test_diagonal_scenario_correction(diagonal_batches):
    (_, _, a), (_, _, b) = diagonal_batches
    pairs = find_mutual_pairs(*cross_knn(a, b, k=1))

    field = compute_correction_vectors(a, b, pairs)

    npt.assert_allclose(field.vectors, np.full((3, 2), -0.1), atol=1e-12)
    npt.assert_allclose(b + field.vectors, a, atol=1e-12)
    assert field.n_mnn_cells == 3


def test_constant_offset_is_recovered_along_offset():
    reference = plane_batch()
    batch = plane_batch(offset=(0.0, 0.0, 2.0))
    pairs = find_mutual_pairs(*cross_knn(reference, batch, k=5))

    field = compute_correction_vectors(reference, batch, pairs)

    # every raw vector carries the full offset along z
    npt.assert_allclose(field.vectors[:, 2], -2.0, atol=1e-10)
    assert np.linalg.norm(field.average[:2]) < 0.5


def test_empty_pairs_give_zero_field(random_points):
    field = compute_correction_vectors(
        random_points, random_points + 1.0, _pairs([], [])
    )
    npt.assert_equal(field.vectors, np.zeros_like(random_points))
    assert field.sigma is None
    assert field.n_mnn_cells == 0


def test_isolated_cell_inherits_nearest_pair_vector():
    batch = np.array([[0.0, 0.0], [0.1, 0.0], [100.0, 0.0]])
    reference = np.array([[1.0, 0.0], [0.1, 2.0]])
    pairs = _pairs([0, 1], [0, 1])

    field = compute_correction_vectors(reference, batch, pairs, sigma=0.5)

    npt.assert_allclose(field.vectors[2], [0.0, 2.0], atol=1e-8)
    assert np.all(np.linalg.norm(field.vectors, axis=1) > 0)


def test_k_smooth_one_uses_nearest_mnn_cell_only():
    batch = np.array([[0.0, 0.0], [1.0, 0.0], [0.9, 0.0]])
    reference = np.array([[0.0, 1.0], [1.0, -1.0]])
    field = compute_correction_vectors(reference, batch, _pairs([0, 1], [0, 1]), k_smooth=1)

    npt.assert_allclose(field.vectors, [[0.0, 1.0], [0.0, -1.0], [0.0, -1.0]])


def test_average_pair_vectors_per_cell():
    reference = np.array([[1.0, 0.0], [3.0, 0.0], [0.0, 5.0]])
    batch = np.array([[0.0, 0.0], [0.0, 1.0]])
    cells, vectors = average_pair_vectors(reference, batch, _pairs([0, 1, 2], [0, 0, 1]))

    npt.assert_equal(cells, [0, 1])
    npt.assert_allclose(vectors, [[2.0, 0.0], [0.0, 4.0]])


def test_estimate_bandwidth():
    assert estimate_bandwidth(np.zeros((3, 2))) == 1.0
    assert estimate_bandwidth(np.array([[0.0, 1.0], [0.0, 3.0]])) == 2.0


def test_own_neighbors_recover_full_offset():
    reference = plane_batch()
    batch = plane_batch(offset=(0.0, 0.0, 2.0))
    pairs = find_mutual_pairs(*cross_knn(reference, batch, k=5))

    field = compute_correction_vectors(reference, batch, pairs, k=5)

    npt.assert_allclose(field.vectors, np.tile([0.0, 0.0, -2.0], (36, 1)), atol=1e-10)


def test_identical_batches_get_zero_field_at_large_k(gaussian_points):
    copy = gaussian_points.copy()
    pairs = find_mutual_pairs(*cross_knn(gaussian_points, copy, k=20))

    field = compute_correction_vectors(gaussian_points, copy, pairs, k=20)

    assert len(pairs) > 200
    npt.assert_allclose(field.vectors, 0.0, atol=1e-12)


def test_estimate_translation_uses_closest_partner(gaussian_points):
    offset = np.array([0.05, -0.02, 0.0, 0.01, 0.0])
    batch = gaussian_points + offset
    pairs = find_mutual_pairs(*cross_knn(gaussian_points, batch, k=20))

    npt.assert_allclose(estimate_translation(gaussian_points, batch, pairs), -offset, atol=1e-10)


def test_estimate_translation_ties_and_empty_pairs():
    reference = np.array([[1.0, 0.0], [-1.0, 0.0], [0.0, 5.0]])
    batch = np.array([[0.0, 0.0], [0.0, 4.0]])

    # both partners of cell 0 are equally close; the lower reference row wins
    shift = estimate_translation(reference, batch, _pairs([0, 1, 2], [0, 0, 1]))
    npt.assert_allclose(shift, [0.5, 0.5])

    npt.assert_equal(estimate_translation(reference, batch, _pairs([], [])), [0.0, 0.0])
