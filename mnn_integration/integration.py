"""
Integration Module
==================

This module implements mutual nearest neighbor (MNN) batch correction on a
shared low-dimensional embedding:
- Sequential merge orchestration (input, largest-first, auto or explicit order)
- Per-step MNN pair discovery, correction and variance-loss accounting
- AnnData front end storing the corrected embedding in .obsm['X_mnn']

Batches are merged one at a time into a growing reference. At every step
the new batch is matched against the reference's corrected coordinates,
moved by a smoothed correction field, and then folded into the reference.

Author: Alfred3005
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple, Union
from pathlib import Path

import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad
from tqdm import tqdm

from .correction import compute_correction_vectors, estimate_translation
from .matching import MutualPairs, find_mutual_pairs
from .neighbors import as_points, cross_knn
from .utils import (
    ConfigurationError,
    KNN_METHODS,
    MERGE_ORDER_POLICIES,
    cleanup_memory,
    ensure_dir,
    get_mnn_params,
    log_memory_usage,
    setup_logging,
)
from .variance import (
    average_correction_direction,
    lost_variance_fraction,
    remove_direction,
    total_variance,
)

LOST_VARIANCE_COLUMNS = ['step', 'batch', 'lost_variance']
MERGE_REPORT_COLUMNS = [
    'step', 'batch', 'reference_batches', 'n_cells', 'n_pairs',
    'n_mnn_cells', 'sigma', 'n_iter', 'converged', 'correction_norm', 'fallback',
    'orthogonalized',
]


class MergeState(Enum):
    PENDING = "pending"
    MERGING = "merging"
    MERGED = "merged"
    DONE = "done"


@dataclass(frozen=True, eq=False)
class Batch:
    """One batch of cells in the shared embedding."""

    label: Hashable
    cell_ids: Sequence
    embedding: np.ndarray

    @property
    def n_cells(self) -> int:
        return int(np.shape(self.embedding)[0])


@dataclass(eq=False)
class MNNResult:
    """Output of :func:`mnn_correct`. Rows follow the input batch order."""

    corrected: np.ndarray
    cell_ids: np.ndarray
    batch_labels: np.ndarray
    lost_variance: pd.DataFrame
    merge_report: pd.DataFrame
    merge_order: List[Hashable]

    def to_frame(self) -> pd.DataFrame:
        """Corrected coordinates indexed by cell id, with a ``batch`` column."""
        df = pd.DataFrame(
            self.corrected,
            index=pd.Index(self.cell_ids, name='cell_id'),
            columns=[f"MNN_{i + 1}" for i in range(self.corrected.shape[1])],
        )
        df.insert(0, 'batch', self.batch_labels)
        return df

    def lost_variance_matrix(self) -> pd.DataFrame:
        """Lost variance as a step x batch matrix (NaN where not merged yet)."""
        return self.lost_variance.pivot(
            index='step', columns='batch', values='lost_variance'
        )


BatchInput = Union[Batch, Tuple[Hashable, Sequence, Any]]


def _coerce_batches(batches: Sequence[BatchInput]) -> List[Batch]:
    coerced = []
    for item in batches:
        if isinstance(item, Batch):
            label, cell_ids, embedding = item.label, item.cell_ids, item.embedding
        else:
            label, cell_ids, embedding = item

        embedding = as_points(embedding, f"batch '{label}'")
        if cell_ids is None:
            cell_ids = [f"{label}_{i}" for i in range(embedding.shape[0])]
        cell_ids = np.asarray(list(cell_ids), dtype=object)

        if cell_ids.shape[0] != embedding.shape[0]:
            raise ConfigurationError(
                f"Batch '{label}' has {embedding.shape[0]} cells "
                f"but {cell_ids.shape[0]} cell ids"
            )

        coerced.append(Batch(label=label, cell_ids=cell_ids, embedding=embedding))

    labels = pd.Index([b.label for b in coerced])
    if labels.has_duplicates:
        duplicated = labels[labels.duplicated()].unique()
        raise ConfigurationError(f"Duplicate batch labels: {list(duplicated)}")

    dims = {b.embedding.shape[1] for b in coerced}
    if len(dims) > 1:
        detail = ", ".join(f"{b.label}={b.embedding.shape[1]}" for b in coerced)
        raise ConfigurationError(f"Dimensionality mismatch between batches: {detail}")

    return coerced


def _validate_k(k, batches: List[Batch]) -> None:
    if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or k < 1:
        raise ConfigurationError(f"k must be a positive integer, got {k!r}")

    smallest = min(b.n_cells for b in batches)
    if len(batches) > 1 and k >= smallest:
        raise ConfigurationError(
            f"k={k} must be smaller than the smallest batch ({smallest} cells)"
        )


def _initial_order(batches: List[Batch], merge_order) -> Optional[List[Hashable]]:
    """Static merge order, or None for the 'auto' policy."""
    labels = [b.label for b in batches]

    if isinstance(merge_order, str):
        if merge_order == 'input':
            return labels
        if merge_order == 'largest_first':
            # stable sort keeps input order among equal sizes
            return [b.label for b in sorted(batches, key=lambda b: -b.n_cells)]
        if merge_order == 'auto':
            return None
        raise ConfigurationError(
            f"Unknown merge order policy '{merge_order}'. "
            f"Expected one of {MERGE_ORDER_POLICIES} or a list of batch labels"
        )

    order = list(merge_order)
    if len(order) != len(labels) or set(order) != set(labels):
        raise ConfigurationError(
            f"Explicit merge order {order} must list every batch label exactly once"
        )
    return order


class _MergeRun:
    """Mutable state of one correction run; nothing outlives the run."""

    def __init__(self, batches, k, knn_kwargs, logger):
        self.batches = {b.label: b for b in batches}
        self.input_order = [b.label for b in batches]
        self.coords = {b.label: b.embedding.copy() for b in batches}
        self.state = {b.label: MergeState.PENDING for b in batches}
        self.reference: List[Hashable] = []
        self.k = k
        self.knn_kwargs = knn_kwargs
        self.logger = logger
        self._pairs_cache: Dict[Hashable, MutualPairs] = {}

    def reference_coords(self) -> np.ndarray:
        return np.vstack([self.coords[label] for label in self.reference])

    def pending(self) -> List[Hashable]:
        return [l for l in self.input_order if self.state[l] is MergeState.PENDING]

    def mutual_pairs(self, reference: np.ndarray, label: Hashable) -> MutualPairs:
        knn_ref, knn_batch = cross_knn(
            reference, self.coords[label], self.k,
            logger=self.logger, **self.knn_kwargs
        )
        return find_mutual_pairs(knn_ref, knn_batch)

    def seed(self, label: Hashable) -> None:
        self.reference.append(label)
        self.state[label] = MergeState.MERGED

    def seed_auto(self) -> None:
        """Start from the pair of batches sharing the most mutual pairs."""
        best = None
        for i, first in enumerate(self.input_order):
            for second in self.input_order[i + 1:]:
                pairs = self.mutual_pairs(self.coords[first], second)
                if best is None or len(pairs) > len(best[2]):
                    best = (first, second, pairs)

        first, second, pairs = best
        self.seed(first)
        self._pairs_cache[second] = pairs

    def next_auto(self) -> Hashable:
        """Pending batch with the most mutual pairs against the reference."""
        reference = self.reference_coords()
        best_label, best_pairs = None, None
        for label in self.pending():
            pairs = self._pairs_cache.pop(label, None)
            if pairs is None:
                pairs = self.mutual_pairs(reference, label)
            if best_pairs is None or len(pairs) > len(best_pairs):
                best_label, best_pairs = label, pairs

        self._pairs_cache = {best_label: best_pairs}
        return best_label

    def pairs_for(self, reference: np.ndarray, label: Hashable) -> MutualPairs:
        cached = self._pairs_cache.pop(label, None)
        if cached is not None:
            return cached
        return self.mutual_pairs(reference, label)


def mnn_correct(
    batches: Sequence[BatchInput],
    k: int = 20,
    merge_order: Union[str, Sequence[Hashable]] = 'input',
    k_smooth: Optional[int] = None,
    sigma: Optional[float] = None,
    knn_method: str = 'exact',
    n_jobs: Optional[int] = None,
    n_trees: int = 50,
    orthogonalize: bool = False,
    min_batch_skip: float = 0.0,
    max_iter: int = 20,
    tol: float = 1e-3,
    show_progress: bool = True,
    logger: Optional[logging.Logger] = None
) -> MNNResult:
    """
    Correct batch effects in a shared embedding with mutual nearest neighbors.

    Parameters
    ----------
    batches : sequence
        ``Batch`` objects or ``(label, cell_ids, embedding)`` tuples. All
        embeddings must have the same number of dimensions.
    k : int, default 20
        Neighbors searched in each direction; must be smaller than the
        smallest batch
    merge_order : str or list, default 'input'
        'input', 'largest_first', 'auto' (batches sharing the most mutual
        pairs first) or an explicit list of batch labels
    k_smooth : int, optional
        Nearest MNN cells averaged per cell for the correction field
    sigma : float, optional
        Gaussian kernel bandwidth; median cell-to-MNN distance by default
    knn_method : {'exact', 'approximate'}, default 'exact'
        Neighbor search backend (Annoy for 'approximate')
    n_jobs : int, optional
        Parallel workers for neighbor search
    n_trees : int, default 50
        Annoy trees (approximate search only)
    orthogonalize : bool, default False
        Also project the average correction direction out of the merged
        coordinates. Off by default, where lost variance is diagnostic only.
    min_batch_skip : float, default 0.0
        Skip orthogonalization when the average correction is shorter
    max_iter : int, default 20
        Rounds of rigid translation per merge step before the local
        correction field is applied; 0 applies the field alone
    tol : float, default 1e-3
        Translation rounds stop once the shift is shorter than ``tol`` times
        the spread (sqrt of total variance) of the batch
    show_progress : bool, default True
        Show a tqdm progress bar over merge steps
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    MNNResult
        Corrected coordinates (input row order), lost-variance table with
        one row per (step, batch) and a per-step merge report

    Raises
    ------
    ConfigurationError
        For invalid k, mismatched dimensions, non-finite coordinates,
        duplicate labels or an unknown merge order, before any merge

    Examples
    --------
    >>> result = mnn_correct(
    ...     [("A", ids_a, pca_a), ("B", ids_b, pca_b)],
    ...     k=20,
    ...     logger=logger
    ... )
    >>> result.lost_variance
    """
    if logger is None:
        logger = setup_logging()

    batches = _coerce_batches(batches)
    if not batches:
        raise ConfigurationError("No batches supplied")
    _validate_k(k, batches)
    order = _initial_order(batches, merge_order)
    if k_smooth is not None and k_smooth < 1:
        raise ConfigurationError(f"k_smooth must be positive, got {k_smooth}")
    if sigma is not None and sigma <= 0:
        raise ConfigurationError(f"sigma must be positive, got {sigma}")
    if knn_method not in KNN_METHODS:
        raise ConfigurationError(
            f"Unknown knn_method '{knn_method}'. Expected one of {KNN_METHODS}"
        )
    if isinstance(max_iter, bool) or not isinstance(max_iter, (int, np.integer)) or max_iter < 0:
        raise ConfigurationError(f"max_iter must be a non-negative integer, got {max_iter!r}")
    if tol <= 0:
        raise ConfigurationError(f"tol must be positive, got {tol}")

    lost_rows: List[Dict[str, Any]] = []
    report_rows: List[Dict[str, Any]] = []

    if len(batches) < 2:
        logger.info("Fewer than 2 batches supplied; nothing to correct")
        return _build_result(batches, {b.label: b.embedding.copy() for b in batches},
                             lost_rows, report_rows, [b.label for b in batches])

    logger.info("="*60)
    logger.info(f"Starting MNN correction of {len(batches)} batches (k={k})")
    logger.info("="*60)
    log_memory_usage(logger)

    knn_kwargs = {'method': knn_method, 'n_jobs': n_jobs}
    if knn_method == 'approximate':
        knn_kwargs['n_trees'] = n_trees

    run = _MergeRun(batches, k, knn_kwargs, logger)

    if order is None:
        run.seed_auto()
    else:
        run.seed(order[0])
    logger.info(f"Reference batch: {run.reference[0]}")

    n_steps = len(batches) - 1
    for step in tqdm(range(1, n_steps + 1), desc="Merging batches", disable=not show_progress):
        label = run.next_auto() if order is None else order[step]
        run.state[label] = MergeState.MERGING

        reference = run.reference_coords()
        original = run.coords[label]
        pairs = first_pairs = run.pairs_for(reference, label)

        if pairs.is_empty:
            logger.warning(
                f"Step {step}: no mutual nearest neighbors between batch '{label}' "
                f"and the reference; batch passes through uncorrected"
            )

        # slide the whole batch onto the reference until the shift vanishes,
        # then let the smoothed field handle what a translation cannot
        spread = np.sqrt(total_variance(original))
        n_iter, converged = 0, pairs.is_empty
        while not converged and n_iter < max_iter:
            shift = estimate_translation(reference, run.coords[label], pairs)
            run.coords[label] = run.coords[label] + shift
            n_iter += 1
            pairs = run.mutual_pairs(reference, label)
            converged = np.linalg.norm(shift) <= tol * spread or pairs.is_empty

        if max_iter and not converged:
            logger.warning(
                f"Step {step}: translation of batch '{label}' did not converge "
                f"after {max_iter} rounds"
            )

        field = compute_correction_vectors(
            reference, run.coords[label], pairs, k=k,
            k_smooth=k_smooth, sigma=sigma, n_jobs=n_jobs, logger=logger
        )
        run.coords[label] = run.coords[label] + field.vectors

        total = run.coords[label] - original
        direction = average_correction_direction(total, coords=original)
        correction_norm = float(np.linalg.norm(total.mean(axis=0)))

        involved = run.reference + [label]
        for name in involved:
            lost_rows.append({
                'step': step,
                'batch': name,
                'lost_variance': lost_variance_fraction(run.coords[name], direction),
            })

        do_orthogonalize = (
            orthogonalize and direction is not None and correction_norm >= min_batch_skip
        )
        if do_orthogonalize:
            for name in involved:
                run.coords[name] = remove_direction(run.coords[name], direction)
        elif orthogonalize:
            logger.debug(f"Step {step}: orthogonalization skipped")

        report_rows.append({
            'step': step,
            'batch': label,
            'reference_batches': ", ".join(str(l) for l in run.reference),
            'n_cells': run.batches[label].n_cells,
            'n_pairs': len(first_pairs),
            'n_mnn_cells': field.n_mnn_cells,
            'sigma': np.nan if field.sigma is None else field.sigma,
            'n_iter': n_iter,
            'converged': bool(converged),
            'correction_norm': correction_norm,
            'fallback': first_pairs.is_empty,
            'orthogonalized': do_orthogonalize,
        })

        logger.info(
            f"Step {step}: merged '{label}' ({run.batches[label].n_cells} cells), "
            f"{len(first_pairs)} mutual pairs, {n_iter} translation rounds, "
            f"|mean correction|={correction_norm:.4g}"
        )

        run.reference.append(label)
        run.state[label] = MergeState.MERGED

    for label in run.state:
        run.state[label] = MergeState.DONE

    n_fallback = sum(row['fallback'] for row in report_rows)
    if n_fallback:
        logger.warning(
            f"{n_fallback} of {n_steps} merge steps found no mutual pairs; "
            f"integration quality is likely poor"
        )

    logger.info("="*60)
    logger.info(f"MNN correction complete (merge order: {', '.join(str(l) for l in run.reference)})")
    logger.info("="*60)

    log_memory_usage(logger)
    cleanup_memory(logger)

    return _build_result(batches, run.coords, lost_rows, report_rows, list(run.reference))


def _build_result(batches, coords, lost_rows, report_rows, merge_order) -> MNNResult:
    return MNNResult(
        corrected=np.vstack([coords[b.label] for b in batches]),
        cell_ids=np.concatenate([np.asarray(b.cell_ids, dtype=object) for b in batches]),
        batch_labels=np.concatenate(
            [np.full(b.n_cells, b.label, dtype=object) for b in batches]
        ),
        lost_variance=pd.DataFrame(lost_rows, columns=LOST_VARIANCE_COLUMNS),
        merge_report=pd.DataFrame(report_rows, columns=MERGE_REPORT_COLUMNS),
        merge_order=merge_order,
    )


def correct(
    batches: Sequence[BatchInput],
    k: int = 20,
    merge_order_policy: Union[str, Sequence[Hashable]] = 'input',
    **kwargs
) -> Tuple[np.ndarray, pd.DataFrame]:
    """
    Merged corrected embedding and lost-variance table.

    Shorthand for :func:`mnn_correct` returning only its two main outputs.
    """
    result = mnn_correct(batches, k=k, merge_order=merge_order_policy, **kwargs)
    return result.corrected, result.lost_variance


def batches_from_adata(
    adata: ad.AnnData,
    batch_key: str = 'batch',
    use_rep: str = 'X_pca'
) -> List[Batch]:
    """
    Split an AnnData embedding into batches.

    Batches follow category order for categorical batch columns and order
    of first appearance otherwise. Cell ids are the obs names.
    """
    if batch_key not in adata.obs.columns:
        raise KeyError(
            f"Batch key '{batch_key}' not found in adata.obs. "
            f"Available columns: {list(adata.obs.columns)}"
        )
    if use_rep not in adata.obsm.keys():
        raise ValueError(f"Embedding '{use_rep}' not found in adata.obsm")

    labels = adata.obs[batch_key]
    missing = labels.isna()
    if missing.any():
        shown = ", ".join(str(name) for name in adata.obs_names[missing.to_numpy()][:10])
        raise ConfigurationError(
            f"{int(missing.sum())} cells have no '{batch_key}' label ({shown}); "
            f"every cell must belong to a batch"
        )

    if isinstance(labels.dtype, pd.CategoricalDtype):
        present = set(labels.unique())
        order = [c for c in labels.cat.categories if c in present]
    else:
        order = list(pd.unique(labels))

    embedding = np.asarray(adata.obsm[use_rep])
    batches = []
    for label in order:
        mask = (labels == label).to_numpy()
        batches.append(Batch(
            label=label,
            cell_ids=adata.obs_names[mask].to_numpy(),
            embedding=embedding[mask],
        ))

    return batches


def integrate_mnn(
    adata: ad.AnnData,
    config: Optional[Dict[str, Any]] = None,
    batch_key: str = 'batch',
    use_rep: str = 'X_pca',
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Integrate data using MNN correction on a precomputed embedding.

    Parameters
    ----------
    adata : AnnData
        Input AnnData with the embedding in ``.obsm[use_rep]``
    config : dict, optional
        Configuration from mnn_params.yaml (``integration.mnn`` section)
    batch_key : str, default 'batch'
        Column of ``.obs`` holding batch labels
    use_rep : str, default 'X_pca'
        Embedding to correct
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        AnnData with the corrected embedding in .obsm['X_mnn'] and
        diagnostics in .uns['mnn']

    Examples
    --------
    >>> config = load_config("config/mnn_params.yaml")
    >>> adata = integrate_mnn(adata, config, batch_key='batch', logger=logger)
    """
    if logger is None:
        logger = setup_logging()

    if not adata.obs_names.is_unique:
        raise ConfigurationError("Obs names not unique; cell ids must identify cells")

    params = get_mnn_params(config)
    compute_umap = params.pop('compute_umap')

    logger.info(f"Running MNN integration on '{use_rep}' (batch_key={batch_key})...")

    batches = batches_from_adata(adata, batch_key=batch_key, use_rep=use_rep)
    result = mnn_correct(batches, logger=logger, **params)

    corrected = result.to_frame().drop(columns='batch')
    adata.obsm['X_mnn'] = corrected.loc[adata.obs_names].to_numpy()

    adata.uns['mnn'] = {
        'params': {key: value for key, value in params.items()
                   if value is not None and not isinstance(value, (list, tuple))},
        'use_rep': use_rep,
        'merge_order': [str(label) for label in result.merge_order],
        'lost_variance': result.lost_variance.assign(
            batch=result.lost_variance['batch'].astype(str)
        ),
        'merge_report': result.merge_report.assign(
            batch=result.merge_report['batch'].astype(str)
        ),
    }

    if compute_umap:
        logger.info("Computing UMAP on MNN-corrected embedding...")
        sc.pp.neighbors(adata, use_rep='X_mnn', n_neighbors=15)
        sc.tl.umap(adata, min_dist=0.3)

    return adata


def save_lost_variance(
    lost_variance: pd.DataFrame,
    output_path: Union[str, Path],
    logger: Optional[logging.Logger] = None
) -> Path:
    """Write a lost-variance table (``MNNResult.lost_variance``) to CSV."""
    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    lost_variance.to_csv(output_path, index=False)

    if logger is not None:
        logger.info(f"Lost variance table saved: {output_path}")

    return output_path


def save_integrated_data(
    adata: ad.AnnData,
    output_dir: Path,
    method: str = 'mnn',
    logger: Optional[logging.Logger] = None
) -> Path:
    """
    Save integrated AnnData object.

    Parameters
    ----------
    adata : AnnData
        Integrated AnnData
    output_dir : Path
        Output directory
    method : str, default 'mnn'
        Integration method name, used in the file name
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    Path
        Path to saved file
    """
    if logger is None:
        logger = setup_logging()

    output_dir = ensure_dir(output_dir)
    output_path = output_dir / f"integrated_{method}.h5ad"

    logger.info(f"Saving integrated data to: {output_path}")

    adata.write_h5ad(output_path, compression='gzip')

    file_size = output_path.stat().st_size / (1024 ** 2)  # MB
    logger.info(f"File saved ({file_size:.1f} MB)")

    return output_path
