"""
Neighbor Search Module
======================

k-nearest-neighbor search between two point sets in a shared embedding:
- Exact search (scikit-learn `pairwise_distances_chunked`, stable top-k per row)
- Approximate search (Annoy random projection forest)

Both directions of a cross-batch search are computed independently and
read-only over the two point sets, so queries may run on several workers.

Author: Alfred3005
"""

import logging
from typing import NamedTuple, Optional, Tuple

import numpy as np
from annoy import AnnoyIndex
from sklearn.metrics import pairwise_distances_chunked

from .utils import ConfigurationError, KNN_METHODS


class KNNResult(NamedTuple):
    """Neighbors of every query point, ordered by distance then index."""

    indices: np.ndarray
    distances: np.ndarray

    @property
    def k(self) -> int:
        return self.indices.shape[1]


def as_points(x, name: str = "points") -> np.ndarray:
    """
    Validate a cells x dimensions matrix and return it as float64.

    Raises
    ------
    ConfigurationError
        If the matrix is not 2D, has no rows or columns, or contains
        NaN/Inf values
    """
    arr = np.asarray(x, dtype=np.float64)

    if arr.ndim != 2:
        raise ConfigurationError(f"{name} must be a 2D matrix, got {arr.ndim}D")
    if arr.shape[0] == 0:
        raise ConfigurationError(f"{name} is empty")
    if arr.shape[1] == 0:
        raise ConfigurationError(f"{name} has zero dimensions")

    bad_rows = np.flatnonzero(~np.isfinite(arr).all(axis=1))
    if bad_rows.size:
        shown = ", ".join(str(i) for i in bad_rows[:10])
        raise ConfigurationError(
            f"{name} has {bad_rows.size} rows with non-finite coordinates "
            f"(rows {shown}{'...' if bad_rows.size > 10 else ''})"
        )

    return arr


def _stable_topk(distances: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
    # stable sort keeps lower reference index first among equal distances
    order = np.argsort(distances, axis=1, kind='stable')[:, :k]
    return order, np.take_along_axis(distances, order, axis=1)


def _exact_knn(query, reference, k, n_jobs):
    def reduce_func(chunk, start):
        return _stable_topk(chunk, k)

    indices, distances = [], []
    for idx, dist in pairwise_distances_chunked(
        query,
        reference,
        reduce_func=reduce_func,
        metric='euclidean',
        n_jobs=n_jobs,
    ):
        indices.append(idx)
        distances.append(dist)

    return np.vstack(indices), np.vstack(distances)


def _approximate_knn(query, reference, k, n_trees, n_jobs, random_state):
    index = AnnoyIndex(reference.shape[1], 'euclidean')
    index.set_seed(random_state)
    for i, row in enumerate(reference):
        index.add_item(i, row)
    index.build(n_trees, n_jobs=1 if n_jobs is None else n_jobs)

    indices = np.empty((query.shape[0], k), dtype=np.int64)
    distances = np.empty((query.shape[0], k), dtype=np.float64)

    for i, row in enumerate(query):
        nns, dists = index.get_nns_by_vector(row, k, include_distances=True)
        nns = np.asarray(nns, dtype=np.int64)
        dists = np.asarray(dists, dtype=np.float64)
        # Annoy may return fewer than k hits on tiny forests
        if nns.size < k:
            nns, dists = _fill_missing(row, reference, nns, dists, k)
        order = np.lexsort((nns, dists))
        indices[i] = nns[order]
        distances[i] = dists[order]

    return indices, distances


def _fill_missing(row, reference, nns, dists, k):
    all_dists = np.linalg.norm(reference - row, axis=1)
    all_dists[nns] = np.inf
    extra = np.argsort(all_dists, kind='stable')[:k - nns.size]
    return (
        np.concatenate([nns, extra]),
        np.concatenate([dists, all_dists[extra]]),
    )


def find_knn(
    query,
    reference,
    k: int,
    method: str = 'exact',
    n_jobs: Optional[int] = None,
    n_trees: int = 50,
    random_state: int = 0,
    logger: Optional[logging.Logger] = None
) -> KNNResult:
    """
    Find the k nearest reference points of every query point.

    Parameters
    ----------
    query : array-like
        Query coordinates (n_query, n_dims)
    reference : array-like
        Reference coordinates (n_reference, n_dims)
    k : int
        Number of neighbors, 1 <= k <= n_reference
    method : {'exact', 'approximate'}, default 'exact'
        Exact brute-force search or Annoy approximate search
    n_jobs : int, optional
        Parallel workers for distance chunks (exact) or the index build
        (approximate). None runs one worker for both; -1 uses all cores.
    n_trees : int, default 50
        Number of Annoy trees (approximate search only)
    random_state : int, default 0
        Annoy seed (approximate search only)
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    KNNResult
        ``indices`` and ``distances``, both (n_query, k), sorted by
        distance with ties broken by lower reference index

    Examples
    --------
    >>> knn = find_knn(batch_b, batch_a, k=20)
    >>> knn.indices[0]  # rows of batch_a closest to the first cell of batch_b
    """
    query = as_points(query, "query")
    reference = as_points(reference, "reference")

    if query.shape[1] != reference.shape[1]:
        raise ConfigurationError(
            f"Dimensionality mismatch: query has {query.shape[1]} dimensions, "
            f"reference has {reference.shape[1]}"
        )

    if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or k < 1:
        raise ConfigurationError(f"k must be a positive integer, got {k!r}")
    if k > reference.shape[0]:
        raise ConfigurationError(
            f"k={k} exceeds the size of the searched set ({reference.shape[0]} points)"
        )

    if method == 'exact':
        indices, distances = _exact_knn(query, reference, k, n_jobs)
    elif method == 'approximate':
        indices, distances = _approximate_knn(
            query, reference, k, n_trees, n_jobs, random_state
        )
    else:
        raise ConfigurationError(
            f"Unknown neighbor search method '{method}'. Expected one of {KNN_METHODS}"
        )

    if logger is not None:
        logger.debug(
            f"{method} {k}-NN search: {query.shape[0]} queries against "
            f"{reference.shape[0]} points"
        )

    return KNNResult(indices=indices, distances=distances)


def cross_knn(
    a,
    b,
    k: int,
    **kwargs
) -> Tuple[KNNResult, KNNResult]:
    """
    k-NN search in both directions between two point sets.

    Returns
    -------
    tuple
        (neighbors in ``b`` of each point of ``a``,
         neighbors in ``a`` of each point of ``b``)
    """
    knn_ab = find_knn(a, b, k, **kwargs)
    knn_ba = find_knn(b, a, k, **kwargs)
    return knn_ab, knn_ba
