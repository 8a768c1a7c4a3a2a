"""
Orthogonalization and Variance-Loss Accounting
==============================================

Measures how much within-batch variance lies along the average correction
vector of a merge step. Variance along that direction cannot be told apart
from the batch effect, so it is reported as "lost" when the direction is
projected out.

Author: Alfred3005
"""

from typing import Optional

import numpy as np

# Average correction vectors shorter than this are treated as "no direction"
DIRECTION_TOL = 1e-12
# ... or shorter than this fraction of the batch spread (sqrt of total variance)
DIRECTION_RTOL = 1e-2


def average_correction_direction(corrections, coords=None) -> Optional[np.ndarray]:
    """
    Unit vector of the mean correction, or None if the mean is ~0.

    With ``coords`` (the batch being corrected), a mean correction that is
    negligible next to the spread of the batch also counts as ~0.
    """
    mean = np.asarray(corrections, dtype=np.float64).mean(axis=0)
    norm = np.linalg.norm(mean)

    threshold = DIRECTION_TOL
    if coords is not None:
        threshold = max(threshold, DIRECTION_RTOL * np.sqrt(total_variance(coords)))

    if norm < threshold:
        return None
    return mean / norm


def total_variance(coords) -> float:
    coords = np.asarray(coords, dtype=np.float64)
    if coords.shape[0] < 2:
        return 0.0
    return float(coords.var(axis=0, ddof=1).sum())


def lost_variance_fraction(coords, direction: Optional[np.ndarray]) -> float:
    """
    Fraction of total within-batch variance lying along ``direction``.

    Parameters
    ----------
    coords : array-like
        Batch coordinates (n_cells, n_dims)
    direction : np.ndarray or None
        Unit vector, usually from :func:`average_correction_direction`

    Returns
    -------
    float
        Value in [0, 1]; 0 when there is no direction or no variance
    """
    coords = np.asarray(coords, dtype=np.float64)
    total = total_variance(coords)
    if direction is None or total <= 0:
        return 0.0

    projected = (coords - coords.mean(axis=0)) @ direction
    removed = float(projected.var(ddof=1))

    return float(np.clip(removed / total, 0.0, 1.0))


def remove_direction(coords, direction: Optional[np.ndarray]) -> np.ndarray:
    """
    Project the centered component along ``direction`` out of ``coords``.

    The batch mean is kept, so the batch stays where the correction put it.
    """
    coords = np.asarray(coords, dtype=np.float64)
    if direction is None:
        return coords.copy()

    projected = (coords - coords.mean(axis=0)) @ direction
    return coords - np.outer(projected, direction)
