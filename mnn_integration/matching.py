"""
Mutual Pair Matching
====================

Extracts mutual nearest neighbor (MNN) pairs from the two directions of a
cross-batch k-NN search.

Author: Alfred3005
"""

from typing import NamedTuple

import numpy as np

from .neighbors import KNNResult


class MutualPairs(NamedTuple):
    """Row indices of matched cells; ``first[i]`` pairs with ``second[i]``."""

    first: np.ndarray
    second: np.ndarray

    def __len__(self) -> int:
        return int(self.first.size)

    @property
    def is_empty(self) -> bool:
        return self.first.size == 0

    def swapped(self) -> "MutualPairs":
        order = np.lexsort((self.first, self.second))
        return MutualPairs(first=self.second[order], second=self.first[order])

    def as_set(self) -> set:
        return set(zip(self.first.tolist(), self.second.tolist()))


def _edges(knn: KNNResult) -> np.ndarray:
    n_query, k = knn.indices.shape
    rows = np.repeat(np.arange(n_query, dtype=np.int64), k)
    return np.column_stack([rows, knn.indices.ravel().astype(np.int64)])


def find_mutual_pairs(knn_ab: KNNResult, knn_ba: KNNResult) -> MutualPairs:
    """
    Intersect the two neighbor relations between batches A and B.

    A pair (a, b) is mutual when b is among the neighbors of a in B *and*
    a is among the neighbors of b in A. A cell may take part in several
    pairs.

    Parameters
    ----------
    knn_ab : KNNResult
        Neighbors in B of every cell of A
    knn_ba : KNNResult
        Neighbors in A of every cell of B

    Returns
    -------
    MutualPairs
        Pairs sorted by (a, b); possibly empty

    Examples
    --------
    >>> knn_ab, knn_ba = cross_knn(reference, batch, k=20)
    >>> pairs = find_mutual_pairs(knn_ab, knn_ba)
    >>> len(pairs)
    """
    forward = _edges(knn_ab)
    backward = _edges(knn_ba)[:, ::-1]

    if forward.size == 0 or backward.size == 0:
        empty = np.empty(0, dtype=np.int64)
        return MutualPairs(first=empty, second=empty.copy())

    # k-NN lists have no repeated entries, so each (a, b) appears at most
    # once per direction and a count of 2 means both directions agree
    both = np.concatenate([np.unique(forward, axis=0), np.unique(backward, axis=0)])
    pairs, counts = np.unique(both, axis=0, return_counts=True)
    mutual = pairs[counts == 2]

    return MutualPairs(first=mutual[:, 0].copy(), second=mutual[:, 1].copy())
