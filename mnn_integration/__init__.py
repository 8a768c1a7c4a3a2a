"""
MNN Batch Integration
=====================

Mutual-nearest-neighbor batch correction for single-cell RNA-seq
embeddings, with a scanpy/AnnData front end.

Modules:
--------
- neighbors: Exact and approximate k-NN search between batches
- matching: Mutual nearest neighbor pair extraction
- correction: Smoothed per-cell correction vectors
- variance: Orthogonalization and lost-variance accounting
- integration: Merge orchestration and AnnData integration
- preprocessing: Normalization, HVG selection and shared PCA
- utils: Helper functions, configuration and logging

Author: Alfred3005
License: MIT
Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "Alfred3005"

from . import utils
from . import neighbors
from . import matching
from . import correction
from . import variance
from . import integration
from . import preprocessing

from .integration import Batch, MNNResult, correct, mnn_correct, integrate_mnn
from .utils import ConfigurationError

__all__ = [
    "utils",
    "neighbors",
    "matching",
    "correction",
    "variance",
    "integration",
    "preprocessing",
    "Batch",
    "MNNResult",
    "ConfigurationError",
    "correct",
    "mnn_correct",
    "integrate_mnn",
]

__description__ = "MNN Batch Integration"
