# tests/conftest.py

import argparse

import matplotlib
matplotlib.use("Agg")

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from scqc_report.data.dataset import Dataset


def make_level(counts: np.ndarray, var_names=None, obs_names=None, **layers) -> ad.AnnData:
    """AnnData with samples as rows; `counts` becomes the 'count' layer."""
    counts = np.asarray(counts, dtype=np.float64)
    n_obs, n_vars = counts.shape
    obs_names = obs_names or [f"sample_{i}" for i in range(n_obs)]
    var_names = var_names or [f"gene_{j}" for j in range(n_vars)]
    adata = ad.AnnData(
        X=counts.copy(),
        obs=pd.DataFrame(index=obs_names),
        var=pd.DataFrame(index=var_names),
    )
    adata.layers["count"] = counts.copy()
    for name, matrix in layers.items():
        adata.layers[name] = np.asarray(matrix, dtype=np.float64)
    return adata


def make_dataset(level: ad.AnnData, annotations: pd.DataFrame, **metadata) -> Dataset:
    meta = {"organism": "Homo sapiens", "genome": "GRCh38"}
    meta.update(metadata)
    return Dataset({"gene": level}, annotations, meta)


def make_params(output_dir, /, **overrides) -> argparse.Namespace:
    params = dict(
        id="test", phenoid=["batch"], nrw=1, lps="bottom", level="gene",
        control_prefix="ERCC-", min_features=5, percent_top=200, jitter_sd=1e-4,
        n_pca_comps=10, random_seed=0, plot_format="png", plot_dpi=50,
        input_path=None, output_dir=str(output_dir),
    )
    params.update(overrides)
    return argparse.Namespace(**params)


@pytest.fixture
def simulated_dataset() -> Dataset:
    """40 samples x 60 features: 3 ERCC spike-ins detected everywhere and one all-zero gene."""
    rng = np.random.default_rng(42)
    n_obs, n_genes = 40, 57
    means = rng.uniform(0.5, 20, size=n_genes)
    genes = rng.poisson(means, size=(n_obs, n_genes)).astype(float)
    genes[:, 0] = 0.0
    spikes = rng.poisson(50, size=(n_obs, 3)).astype(float) + 1.0
    counts = np.hstack([genes, spikes])
    var_names = [f"gene_{j}" for j in range(n_genes)] + ["ERCC-00002", "ERCC-00003", "ERCC-00004"]
    obs_names = [f"cell_{i}" for i in range(n_obs)]
    level = make_level(counts, var_names=var_names, obs_names=obs_names)
    annotations = pd.DataFrame(
        {
            "batch": np.repeat(["b1", "b2"], n_obs // 2),
            "condition": np.tile(["ctrl", "treated"], n_obs // 2),
        },
        index=obs_names,
    )
    return make_dataset(level, annotations)


@pytest.fixture
def tiny_dataset() -> Dataset:
    """3 samples x 10 features; gene_9 is never detected and sample_2 detects only 3 features."""
    counts = np.array([
        [5, 3, 2, 8, 1, 4, 6, 2, 7, 0],
        [2, 6, 1, 3, 9, 2, 4, 5, 1, 0],
        [4, 0, 7, 0, 0, 3, 0, 0, 0, 0],
    ], dtype=float)
    level = make_level(counts)
    annotations = pd.DataFrame(
        {"batch": ["A", "B", "A"], "condition": ["x", "y", "y"]},
        index=[f"sample_{i}" for i in range(3)],
    )
    return make_dataset(level, annotations)
