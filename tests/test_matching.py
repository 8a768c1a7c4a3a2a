from mnn_integration.matching import MutualPairs, find_mutual_pairs
from mnn_integration.neighbors import KNNResult, cross_knn
import numpy as np
import numpy.testing as npt


def _knn(indices):
    indices = np.asarray(indices)
    return KNNResult(indices=indices, distances=np.zeros(indices.shape))


def test_mutual_pairs_diagonal(diagonal_batches):
    (_, _, a), (_, _, b) = diagonal_batches
    pairs = find_mutual_pairs(*cross_knn(a, b, k=1))

    npt.assert_equal(pairs.first, [0, 1, 2])
    npt.assert_equal(pairs.second, [0, 1, 2])
    assert len(pairs) == 3


def test_mutual_pairs_is_intersection_not_union():
    # a0 -> b0, a1 -> b1 but b0 -> a1, b1 -> a1
    pairs = find_mutual_pairs(_knn([[0], [1]]), _knn([[1], [1]]))
    assert pairs.as_set() == {(1, 1)}


def test_mutual_pairs_may_be_empty():
    pairs = find_mutual_pairs(_knn([[0], [1]]), _knn([[1], [0]]))
    assert pairs.is_empty
    assert len(pairs) == 0


def test_cell_can_take_part_in_several_pairs():
    pairs = find_mutual_pairs(_knn([[0, 1]]), _knn([[0], [0]]))
    assert pairs.as_set() == {(0, 0), (0, 1)}


def test_mutual_pairs_symmetric_in_reference_choice(random_points):
    a, b = random_points[:20], random_points[20:] + 0.05
    knn_ab, knn_ba = cross_knn(a, b, k=5)

    forward = find_mutual_pairs(knn_ab, knn_ba)
    backward = find_mutual_pairs(knn_ba, knn_ab)

    assert forward.as_set() == backward.swapped().as_set()
    for i, j in forward.as_set():
        assert j in knn_ab.indices[i]
        assert i in knn_ba.indices[j]


def test_swapped_keeps_sorted_order():
    pairs = MutualPairs(first=np.array([0, 1, 2]), second=np.array([2, 0, 0]))
    swapped = pairs.swapped()
    npt.assert_equal(swapped.first, [0, 0, 2])
    npt.assert_equal(swapped.second, [1, 2, 0])
