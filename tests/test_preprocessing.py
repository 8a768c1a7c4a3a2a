from mnn_integration.preprocessing import prepare_embedding, log_transform, run_pca
from mnn_integration.integration import integrate_mnn
from anndata import AnnData
import numpy as np
import pandas as pd
import pytest


@pytest.fixture
def adata_counts():
    rng = np.random.default_rng(11)
    counts = rng.poisson(5, size=(60, 120)).astype(np.float32)
    # second batch carries extra counts in the first genes
    counts[30:, :10] += 10
    return AnnData(
        X=counts,
        obs=pd.DataFrame(index=[f"cell{i}" for i in range(60)]).assign(
            batch=["b1"] * 30 + ["b2"] * 30
        ),
        var=pd.DataFrame(index=[f"gene{i}" for i in range(120)]),
    )


def test_prepare_embedding(adata_counts):
    config = {"preprocessing": {"n_top_genes": 50, "n_comps": 10}}
    adata = prepare_embedding(adata_counts, config, batch_key="batch")

    assert adata.obsm["X_pca"].shape == (60, 10)
    assert "counts" in adata.layers
    assert adata.var["highly_variable"].sum() > 0
    assert "highly_variable_nbatches" in adata.var.columns


def test_log_transform_runs_once(adata_counts):
    adata = log_transform(adata_counts)
    once = adata.X.copy()
    adata = log_transform(adata)
    np.testing.assert_array_equal(adata.X, once)


def test_run_pca_caps_components(adata_counts):
    adata = run_pca(adata_counts, n_comps=500, use_highly_variable=False)
    assert adata.obsm["X_pca"].shape == (60, 59)


def test_prepare_then_integrate(adata_counts):
    config = {
        "preprocessing": {"n_top_genes": 50, "n_comps": 10},
        "integration": {"mnn": {"k": 5, "compute_umap": False}},
    }
    adata = prepare_embedding(adata_counts, config, batch_key="batch")
    adata = integrate_mnn(adata, config, batch_key="batch")

    assert adata.obsm["X_mnn"].shape == (60, 10)
    assert np.isfinite(adata.obsm["X_mnn"]).all()
    assert adata.uns["mnn"]["merge_order"] == ["b1", "b2"]
