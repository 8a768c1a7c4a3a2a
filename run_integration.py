#!/usr/bin/env python
"""
Run MNN integration on a concatenated h5ad file.

Usage:
    python run_integration.py data/raw/merged.h5ad [config/mnn_params.yaml] [batch_key]

The input holds raw counts for all batches with a batch column in .obs.
Writes data/processed/integrated_mnn.h5ad and
results/reports/lost_variance.csv.
"""

import sys
import os
from pathlib import Path

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import anndata as ad

from mnn_integration import utils, preprocessing, integration


def main(argv):
    if len(argv) < 2:
        print(__doc__)
        return 1

    input_path = Path(argv[1])
    config_path = argv[2] if len(argv) > 2 else "config/mnn_params.yaml"
    batch_key = argv[3] if len(argv) > 3 else "batch"

    config = utils.load_config(config_path)
    log_config = config.get('logging', {})
    logger = utils.setup_logging(
        log_file=log_config.get('log_file'),
        log_level=log_config.get('log_level', 'INFO')
    )
    utils.set_random_seeds(config.get('seed', 42))

    if not input_path.exists():
        raise FileNotFoundError(f"Input file not found: {input_path}")

    logger.info(f"Loading {input_path}")
    adata = ad.read_h5ad(input_path)
    logger.info(f"Loaded {adata.n_obs:,} cells x {adata.n_vars:,} genes")

    if 'X_pca' not in adata.obsm:
        adata = preprocessing.prepare_embedding(adata, config, batch_key=batch_key, logger=logger)

    adata = integration.integrate_mnn(adata, config, batch_key=batch_key, logger=logger)
    integration.save_integrated_data(adata, Path("data/processed"), method="mnn", logger=logger)

    lost_variance = adata.uns["mnn"]["lost_variance"]
    integration.save_lost_variance(lost_variance, Path("results/reports/lost_variance.csv"), logger=logger)

    print(lost_variance.pivot(index="step", columns="batch", values="lost_variance").to_string())
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
