from .fixtures import (  # noqa: F401
    adata_two_batches,
    diagonal_batches,
    gaussian_points,
    random_points,
)
