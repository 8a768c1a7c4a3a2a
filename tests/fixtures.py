from anndata import AnnData
import numpy as np
import pandas as pd
import pytest


def plane_batch(n_side=6, offset=(0.0, 0.0, 0.0)):
    """Grid in the z=0 plane, shifted by ``offset``."""
    xs, ys = np.meshgrid(np.arange(n_side, dtype=float), np.arange(n_side, dtype=float))
    coords = np.column_stack([xs.ravel(), ys.ravel(), np.zeros(n_side * n_side)])
    return coords + np.asarray(offset, dtype=float)


@pytest.fixture
def diagonal_batches():
    a = np.array([[0.0, 0.0], [1.0, 1.0], [2.0, 2.0]])
    b = np.array([[0.1, 0.1], [1.1, 1.1], [2.1, 2.1]])
    return [("A", ["a0", "a1", "a2"], a), ("B", ["b0", "b1", "b2"], b)]


@pytest.fixture
def random_points():
    rng = np.random.default_rng(0)
    return rng.normal(size=(40, 4))


@pytest.fixture
def adata_two_batches():
    """Interleaved cells of two batches; batch 'b' is 'a' shifted along z."""
    rng = np.random.default_rng(1)
    base = np.column_stack([rng.uniform(0, 10, size=(20, 2)), np.zeros(20)])
    shifted = base + np.array([0.0, 0.0, 3.0])

    coords = np.empty((40, 3))
    coords[0::2] = base
    coords[1::2] = shifted
    batch = ["a", "b"] * 20

    return AnnData(
        X=rng.poisson(2, size=(40, 5)).astype(np.float32),
        obs=pd.DataFrame(index=[f"c{i}" for i in range(40)]).assign(
            batch=pd.Categorical(batch, categories=["a", "b"])
        ),
        obsm={"X_pca": coords},
    )


@pytest.fixture
def gaussian_points():
    rng = np.random.default_rng(11)
    return rng.normal(size=(200, 5))
