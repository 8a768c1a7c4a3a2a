"""
Correction Estimation
=====================

Turns mutual nearest neighbor pairs into a correction for the batch being
merged:
- A rigid translation, from each MNN cell to its closest mutual partner
- A smooth per-cell correction field, from all mutual partners

For the field, each MNN cell compares the mean position of its partners in
the reference with the mean position of its own mutual neighbors inside the
batch. Every cell of the batch then receives a Gaussian-kernel weighted mean
of the vectors of its nearest MNN cells.

Author: Alfred3005
"""

import logging
from typing import NamedTuple, Optional

import numpy as np
import scipy.sparse

from .matching import MutualPairs, find_mutual_pairs
from .neighbors import as_points, find_knn

# Upper bound on MNN cells averaged per cell when k_smooth is not given
MAX_SMOOTHING_NEIGHBORS = 100


class CorrectionField(NamedTuple):
    """Per-cell correction vectors and the kernel bandwidth used."""

    vectors: np.ndarray
    sigma: Optional[float]
    n_mnn_cells: int

    @property
    def average(self) -> np.ndarray:
        return self.vectors.mean(axis=0)


def _grouped_sums(values, groups, n_groups):
    sums = np.zeros((n_groups, values.shape[1]))
    np.add.at(sums, groups, values)
    return sums, np.bincount(groups, minlength=n_groups)


def batch_mutual_pairs(batch, k: int, n_jobs: Optional[int] = None) -> MutualPairs:
    """Mutual k-nearest neighbors of a batch with itself (each cell included)."""
    knn = find_knn(batch, batch, k, n_jobs=n_jobs)
    return find_mutual_pairs(knn, knn)


def average_pair_vectors(reference, batch, pairs: MutualPairs,
                         batch_pairs: Optional[MutualPairs] = None):
    """
    Average the pair displacements per participating batch cell.

    Without ``batch_pairs`` each cell gets the mean of ``reference[a] - batch[b]``
    over its pairs. With them, the mean of the partners is compared with
    the mean of the cell's mutual neighbors in its own batch instead of the
    cell itself, so the pull towards denser regions seen by both sides
    cancels out.

    Returns
    -------
    tuple
        (sorted unique batch rows taking part in a pair,
         mean displacement for each of those rows)
    """
    mnn_cells, inverse = np.unique(pairs.second, return_inverse=True)
    sums, counts = _grouped_sums(reference[pairs.first], inverse.ravel(), mnn_cells.size)
    partner_means = sums / counts[:, None]

    if batch_pairs is None or batch_pairs.is_empty:
        return mnn_cells, partner_means - batch[mnn_cells]

    own_sums, own_counts = _grouped_sums(
        batch[batch_pairs.first], batch_pairs.second, batch.shape[0]
    )
    own_sums, own_counts = own_sums[mnn_cells], own_counts[mnn_cells]
    # heavily duplicated cells can miss their own neighbor list
    own_means = np.where(
        own_counts[:, None] > 0,
        own_sums / np.maximum(own_counts, 1)[:, None],
        batch[mnn_cells],
    )

    return mnn_cells, partner_means - own_means


def estimate_translation(reference, batch, pairs: MutualPairs) -> np.ndarray:
    """
    Mean displacement from each MNN cell to its closest mutual partner.

    Ties between equally close partners go to the lower reference row. A
    zero vector is returned when there are no pairs.

    Examples
    --------
    >>> shift = estimate_translation(reference, batch, pairs)
    >>> batch = batch + shift
    """
    reference = as_points(reference, "reference")
    batch = as_points(batch, "batch")

    if pairs.is_empty:
        return np.zeros(batch.shape[1])

    raw = reference[pairs.first] - batch[pairs.second]
    sq = np.einsum('ij,ij->i', raw, raw)

    order = np.lexsort((pairs.first, sq, pairs.second))
    _, closest = np.unique(pairs.second[order], return_index=True)

    return raw[order[closest]].mean(axis=0)


def estimate_bandwidth(distances: np.ndarray) -> float:
    """
    Median cell-to-MNN-cell distance, ignoring exact zeros.

    Falls back to 1.0 when every distance is zero (all cells sit on MNN
    cells, so the bandwidth has no effect).
    """
    positive = distances[distances > 0]
    if positive.size == 0:
        return 1.0
    return float(np.median(positive))


def compute_correction_vectors(
    reference,
    batch,
    pairs: MutualPairs,
    k: Optional[int] = None,
    k_smooth: Optional[int] = None,
    sigma: Optional[float] = None,
    n_jobs: Optional[int] = None,
    logger: Optional[logging.Logger] = None
) -> CorrectionField:
    """
    Estimate the correction vector of every cell in ``batch``.

    Parameters
    ----------
    reference : array-like
        Current (already corrected) reference coordinates (n_ref, n_dims)
    batch : array-like
        Coordinates of the batch being merged (n_cells, n_dims)
    pairs : MutualPairs
        Mutual pairs; ``first`` indexes ``reference``, ``second`` ``batch``
    k : int, optional
        Neighbors used to find ``pairs``. When above 1, each MNN cell's
        partners are compared with its mutual neighbors inside ``batch``
        at the same k, so batches that already overlap get no correction.
        Otherwise raw pair displacements are averaged.
    k_smooth : int, optional
        Number of nearest MNN cells averaged for each cell. Defaults to all
        MNN cells, capped at 100.
    sigma : float, optional
        Gaussian kernel bandwidth. Defaults to the median distance between
        cells and their nearest MNN cells.
    n_jobs : int, optional
        Parallel workers for the neighbor searches
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    CorrectionField
        ``vectors`` (n_cells, n_dims); corrected coordinates are
        ``batch + vectors``. All zeros when ``pairs`` is empty.

    Examples
    --------
    >>> field = compute_correction_vectors(reference, batch, pairs, k=20)
    >>> corrected = batch + field.vectors
    """
    reference = as_points(reference, "reference")
    batch = as_points(batch, "batch")

    if pairs.is_empty:
        return CorrectionField(
            vectors=np.zeros_like(batch), sigma=None, n_mnn_cells=0
        )

    batch_pairs = None
    if k is not None and k > 1:
        batch_pairs = batch_mutual_pairs(batch, k, n_jobs=n_jobs)

    mnn_cells, mnn_vectors = average_pair_vectors(reference, batch, pairs, batch_pairs)

    n_smooth = min(MAX_SMOOTHING_NEIGHBORS, mnn_cells.size) if k_smooth is None else k_smooth
    n_smooth = max(1, min(n_smooth, mnn_cells.size))

    knn = find_knn(batch, batch[mnn_cells], n_smooth, n_jobs=n_jobs)

    if sigma is None:
        sigma = estimate_bandwidth(knn.distances)

    # weights relative to the closest MNN cell, which always gets weight 1,
    # so isolated cells inherit the vectors of their nearest pairs
    sq = knn.distances ** 2
    weights = np.exp(-(sq - sq[:, :1]) / (2.0 * sigma ** 2))
    weights /= weights.sum(axis=1, keepdims=True)

    n_cells = batch.shape[0]
    kernel = scipy.sparse.csr_matrix(
        (
            weights.ravel(),
            knn.indices.ravel(),
            np.arange(0, n_cells * n_smooth + 1, n_smooth),
        ),
        shape=(n_cells, mnn_cells.size),
    )
    vectors = np.asarray(kernel @ mnn_vectors)

    if logger is not None:
        logger.debug(
            f"Correction field from {len(pairs)} pairs over {mnn_cells.size} MNN cells "
            f"(k_smooth={n_smooth}, sigma={sigma:.4g})"
        )

    return CorrectionField(vectors=vectors, sigma=float(sigma), n_mnn_cells=int(mnn_cells.size))
