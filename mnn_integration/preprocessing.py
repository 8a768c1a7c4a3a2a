"""
Preprocessing Module
====================

This module produces the shared low-dimensional embedding consumed by MNN
correction:
- Normalization (library size, log transformation)
- Highly variable gene (HVG) selection (batch-aware)
- Dimensionality reduction (PCA on all batches jointly)

Author: Alfred3005
"""

import logging
from typing import Dict, Optional, Any

import numpy as np
import scanpy as sc
import anndata as ad

from .utils import setup_logging, log_memory_usage

DEFAULT_PREPROCESSING_PARAMS: Dict[str, Any] = {
    'target_sum': 1e4,
    'n_top_genes': 2000,
    'flavor': 'seurat',
    'n_comps': 50,
}


def normalize_total(
    adata: ad.AnnData,
    target_sum: float = 1e4,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Normalize counts per cell (library size normalization).

    Raw counts are kept in ``adata.layers['counts']``.

    Parameters
    ----------
    adata : AnnData
        Input AnnData with raw counts
    target_sum : float, default 10000
        Target sum for normalization
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        Normalized AnnData
    """
    if logger is None:
        logger = setup_logging()

    logger.info(f"Normalizing to {target_sum:.0f} counts per cell...")

    if 'counts' not in adata.layers:
        adata.layers['counts'] = adata.X.copy()
        logger.info("Raw counts stored in adata.layers['counts']")

    sc.pp.normalize_total(adata, target_sum=target_sum)

    return adata


def log_transform(
    adata: ad.AnnData,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """Log-transform normalized counts: log(count + 1), once."""
    if logger is None:
        logger = setup_logging()

    if 'log1p' in adata.uns:
        logger.warning("Data already log-transformed. Skipping log transformation.")
        return adata

    logger.info("Applying log transformation: log(count + 1)...")
    sc.pp.log1p(adata)

    return adata


def select_highly_variable_genes(
    adata: ad.AnnData,
    n_top_genes: int = 2000,
    flavor: str = 'seurat',
    batch_key: Optional[str] = None,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Select highly variable genes (HVGs), per batch when ``batch_key`` is set.

    Parameters
    ----------
    adata : AnnData
        Input AnnData (log-normalized)
    n_top_genes : int, default 2000
        Number of HVGs to select
    flavor : str, default 'seurat'
        scanpy HVG flavor
    batch_key : str, optional
        Column of ``.obs`` for batch-aware selection
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        AnnData with 'highly_variable' in .var

    Examples
    --------
    >>> adata = select_highly_variable_genes(adata, batch_key='batch', logger=logger)
    >>> hvgs = adata.var_names[adata.var['highly_variable']]
    """
    if logger is None:
        logger = setup_logging()

    n_top_genes = min(n_top_genes, adata.n_vars)
    batch_aware = batch_key is not None and batch_key in adata.obs.columns

    logger.info(
        f"Selecting {n_top_genes} highly variable genes "
        f"(flavor={flavor}, batch_aware={batch_aware})..."
    )

    if batch_key is not None and not batch_aware:
        logger.warning(f"Batch key '{batch_key}' not found. Selecting HVGs on all cells.")

    sc.pp.highly_variable_genes(
        adata,
        n_top_genes=n_top_genes,
        flavor=flavor,
        batch_key=batch_key if batch_aware else None,
        subset=False
    )

    if batch_aware and 'highly_variable_nbatches' in adata.var.columns:
        hvg_batch_dist = adata.var['highly_variable_nbatches'].value_counts().sort_index()
        logger.info(f"HVG distribution across {adata.obs[batch_key].nunique()} batches:")
        for n_batch, count in hvg_batch_dist.items():
            logger.info(f"  HVG in {n_batch} batches: {count} genes")

    n_hvgs = adata.var['highly_variable'].sum()
    logger.info(
        f"Selected {n_hvgs} highly variable genes "
        f"({n_hvgs/adata.n_vars*100:.1f}% of {adata.n_vars} total genes)"
    )

    return adata


def run_pca(
    adata: ad.AnnData,
    n_comps: int = 50,
    use_highly_variable: bool = True,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Compute a PCA shared by all batches.

    Cells of every batch are projected on the same components, so their
    coordinates differ only by biology and batch effect.

    Parameters
    ----------
    adata : AnnData
        Input AnnData (log-normalized, HVGs flagged)
    n_comps : int, default 50
        Number of principal components; lowered when the data is smaller
    use_highly_variable : bool, default True
        Whether to use only HVGs for PCA
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        AnnData with PCA in .obsm['X_pca']
    """
    if logger is None:
        logger = setup_logging()

    if use_highly_variable and 'highly_variable' not in adata.var.columns:
        logger.warning("No HVGs selected. Using all genes for PCA.")
        use_highly_variable = False

    n_features = int(adata.var['highly_variable'].sum()) if use_highly_variable else adata.n_vars
    max_comps = min(adata.n_obs, n_features) - 1
    if n_comps > max_comps:
        logger.warning(f"Reducing n_comps from {n_comps} to {max_comps} to fit the data")
        n_comps = max_comps

    logger.info(f"Computing PCA ({n_comps} components on {n_features} genes)...")

    if use_highly_variable:
        sc.pp.pca(adata, n_comps=n_comps, mask_var='highly_variable',
                  svd_solver='arpack', random_state=42)
    else:
        sc.pp.pca(adata, n_comps=n_comps, mask_var=None,
                  svd_solver='arpack', random_state=42)

    cumsum = np.cumsum(adata.uns['pca']['variance_ratio'])
    logger.info(f"Variance explained by first {n_comps} PCs: {cumsum[-1]*100:.1f}%")

    return adata


def prepare_embedding(
    adata: ad.AnnData,
    config: Optional[Dict[str, Any]] = None,
    batch_key: Optional[str] = 'batch',
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Run the preprocessing steps that feed MNN correction.

    Steps:
    1. Normalize to target sum
    2. Log-transform
    3. Select HVGs (batch-aware)
    4. PCA

    Parameters
    ----------
    adata : AnnData
        Input AnnData with raw counts, all batches concatenated
    config : dict, optional
        Configuration from mnn_params.yaml (``preprocessing`` section)
    batch_key : str, default 'batch'
        Batch column for HVG selection
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        AnnData with the shared embedding in .obsm['X_pca']

    Examples
    --------
    >>> config = load_config("config/mnn_params.yaml")
    >>> adata = prepare_embedding(adata, config, batch_key='batch', logger=logger)
    >>> adata = integrate_mnn(adata, config, batch_key='batch', logger=logger)
    """
    if logger is None:
        logger = setup_logging()

    params = dict(DEFAULT_PREPROCESSING_PARAMS)
    if config:
        params.update(config.get('preprocessing') or {})

    logger.info("="*60)
    logger.info("Starting preprocessing")
    logger.info("="*60)

    adata = normalize_total(adata, target_sum=params['target_sum'], logger=logger)
    adata = log_transform(adata, logger=logger)
    adata = select_highly_variable_genes(
        adata,
        n_top_genes=params['n_top_genes'],
        flavor=params['flavor'],
        batch_key=batch_key,
        logger=logger
    )
    adata = run_pca(adata, n_comps=params['n_comps'], logger=logger)

    log_memory_usage(logger)

    return adata
