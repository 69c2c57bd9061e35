# scqc_report/analysis/dimred.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np
import pandas as pd
import warnings

from ..exceptions import PlotUnavailable
from .qc import ExpressionSource

log = logging.getLogger(__name__)

JITTER_SD = 1e-4
JITTER_CLIP = 4.0
CPM_TARGET = 1e6
DEFAULT_PERPLEXITY = 30.0


def normalize_cpm(adata: ad.AnnData, layer_added: str = "logcpm") -> None:
    """Stores log1p counts-per-million of adata.X in adata.layers[layer_added]. X is left untouched."""
    log.info(f"Normalizing counts to CPM (target_sum={CPM_TARGET:g}) and log1p transforming.")
    normalized = sc.pp.normalize_total(adata, target_sum=CPM_TARGET, inplace=False)["X"]
    adata.layers[layer_added] = sc.pp.log1p(np.asarray(normalized, dtype=np.float64))


def has_duplicates(matrix: np.ndarray) -> bool:
    """True if any two rows or any two columns of `matrix` are identical."""
    matrix = np.asarray(matrix)
    if matrix.ndim != 2:
        raise ValueError(f"Expected a 2D matrix, got shape {matrix.shape}.")
    n_rows, n_cols = matrix.shape
    return (
        np.unique(matrix, axis=0).shape[0] < n_rows
        or np.unique(matrix, axis=1).shape[1] < n_cols
    )


def deduplicate_for_embedding(
    matrix: np.ndarray,
    sd: float = JITTER_SD,
    random_state: int | None = 0,
) -> np.ndarray:
    """
    Returns a copy of `matrix` that is safe to embed.

    If any two rows or any two columns are identical, zero-mean normal jitter
    with standard deviation `sd` is added to every entry. Each draw is clipped
    to +/- JITTER_CLIP * sd, so no entry moves by more than that bound.
    The input matrix is never modified.

    Args:
        matrix: 2D expression matrix (samples x features).
        sd: Standard deviation of the jitter. Defaults to 1e-4.
        random_state: Seed for the jitter. Defaults to 0.

    Returns:
        A float copy of the matrix, jittered only if duplicates were found.
    """
    if sd <= 0:
        raise ValueError("Argument 'sd' must be positive.")
    work = np.array(matrix.toarray() if hasattr(matrix, "toarray") else matrix, dtype=np.float64)
    if not has_duplicates(work):
        return work

    log.warning(f"Duplicate rows or columns found in embedding input {work.shape}. Adding jitter (sd={sd:g}).")
    rng = np.random.default_rng(random_state)
    bound = JITTER_CLIP * sd
    work += np.clip(rng.normal(0.0, sd, size=work.shape), -bound, bound)
    return work


def embedding_input(adata: ad.AnnData) -> np.ndarray:
    """
    Expression matrix used for PCA and t-SNE: log1p(abundance) when abundance
    values exist, log1p CPM otherwise.
    """
    source = ExpressionSource(adata.uns.get("expression_source", ExpressionSource.NORMALIZED.value))
    if source is ExpressionSource.ABUNDANCE and "abundance" in adata.layers:
        log.info("Using log1p abundance values as embedding input.")
        return np.log1p(np.asarray(adata.layers["abundance"], dtype=np.float64))
    if "logcpm" not in adata.layers:
        normalize_cpm(adata)
    log.info("Using log1p CPM values as embedding input.")
    return np.asarray(adata.layers["logcpm"], dtype=np.float64)


def build_expression_set(adata: ad.AnnData) -> ad.AnnData:
    """AnnData with the same obs as `adata` and X = embedding_input(adata), without jitter."""
    return ad.AnnData(
        X=embedding_input(adata).copy(),
        obs=adata.obs.copy(),
        var=pd.DataFrame(index=adata.var_names.copy()),
    )


def build_embedding_set(
    adata: ad.AnnData,
    sd: float = JITTER_SD,
    random_state: int = 0,
) -> ad.AnnData:
    """
    Throwaway AnnData for the embeddings: same obs as `adata`, X = de-duplicated
    embedding input. Counts and metrics of `adata` are not touched.
    """
    embedding = build_expression_set(adata)
    embedding.X = deduplicate_for_embedding(embedding.X, sd=sd, random_state=random_state)
    return embedding


def reduce_dimensionality(
    adata: ad.AnnData,
    n_comps: int = 50,
    random_state: int = 0,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Performs principal component analysis (PCA) on adata.X.

    Uses scanpy.tl.pca. Stores PCA results in adata.obsm['X_pca'] and
    variance info in adata.uns['pca']. `n_comps` is lowered to
    min(n_obs, n_vars) - 1 if needed.

    Args:
        adata: The embedding AnnData (see build_embedding_set).
        n_comps: Number of principal components to compute. Defaults to 50.
        random_state: Random seed for the SVD solver. Defaults to 0.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified AnnData.

    Raises:
        TypeError: If input `adata` is not an AnnData object.
        ValueError: If `n_comps` is not a positive integer.
        PlotUnavailable: If the data has too few samples/features or the PCA fails.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if not isinstance(n_comps, int) or n_comps <= 0:
        raise ValueError("Argument 'n_comps' must be a positive integer.")

    min_dim = min(adata.shape)
    if n_comps >= min_dim:
        adjusted_n_comps = min_dim - 1
        if adjusted_n_comps <= 0:
            raise PlotUnavailable(f"Cannot compute PCA on data of shape {adata.shape}.")
        warning_message = (
            f"Requested n_comps ({n_comps}) >= smallest dimension ({min_dim}). "
            f"Adjusting n_comps to {adjusted_n_comps}."
        )
        warnings.warn(warning_message, UserWarning, stacklevel=2)
        log.warning(warning_message)
        n_comps = adjusted_n_comps

    adata_work = adata if inplace else adata.copy()
    log.info(f"Performing PCA with n_comps={n_comps}, random_state={random_state}...")

    try:
        sc.tl.pca(
            adata_work, n_comps=n_comps, svd_solver='arpack',
            random_state=random_state, zero_center=True, copy=False
        )
    except Exception as e:
        log.error(f"PCA failed: {e}", exc_info=True)
        raise PlotUnavailable(f"PCA failed: {e}") from e

    if 'X_pca' not in adata_work.obsm:
        raise PlotUnavailable("PCA finished but 'X_pca' not found.")
    log.info(f"PCA completed. Results in .obsm['X_pca'] ({adata_work.obsm['X_pca'].shape}).")

    if not inplace:
        return adata_work
    return None


def compute_tsne(
    adata: ad.AnnData,
    perplexity: float = DEFAULT_PERPLEXITY,
    random_state: int = 0,
) -> None:
    """
    Computes a 2D t-SNE embedding of adata.X into adata.obsm['X_tsne'].

    Perplexity is capped at (n_obs - 1) / 3.

    Raises:
        PlotUnavailable: If there are fewer than 4 samples or scanpy fails.
    """
    if adata.n_obs < 4:
        raise PlotUnavailable(f"t-SNE needs at least 4 samples, got {adata.n_obs}.")
    perplexity = min(perplexity, (adata.n_obs - 1) / 3)
    log.info(f"Computing t-SNE (perplexity={perplexity:.2f}, random_state={random_state})...")
    try:
        sc.tl.tsne(adata, use_rep="X", perplexity=perplexity, random_state=random_state)
    except Exception as e:
        log.error(f"t-SNE failed: {e}", exc_info=True)
        raise PlotUnavailable(f"t-SNE failed: {e}") from e
    log.info(f"t-SNE completed. Results in .obsm['X_tsne'] ({adata.obsm['X_tsne'].shape}).")


def variance_explained(values: np.ndarray, variable: pd.Series) -> np.ndarray:
    """
    R² of each column of `values` explained by `variable`, in percent.

    Numeric variables use a simple linear fit (squared Pearson correlation);
    categorical variables use the between-group share of the sum of squares.
    Columns without variance give NaN. A variable with a single distinct value
    raises PlotUnavailable.
    """
    values = np.asarray(values, dtype=np.float64)
    if variable.nunique(dropna=True) < 2:
        raise PlotUnavailable(f"Variable '{variable.name}' has fewer than two distinct values.")

    centered = values - values.mean(axis=0)
    total_ss = (centered ** 2).sum(axis=0)

    if pd.api.types.is_numeric_dtype(variable) and not isinstance(variable.dtype, pd.CategoricalDtype):
        x = variable.to_numpy(dtype=np.float64)
        x = x - x.mean()
        with np.errstate(divide="ignore", invalid="ignore"):
            r = (x @ centered) / np.sqrt((x ** 2).sum() * total_ss)
        r2 = r ** 2
    else:
        groups = pd.Series(variable.astype(str).to_numpy())
        group_means = pd.DataFrame(centered).groupby(groups).transform("mean").to_numpy()
        between_ss = (group_means ** 2).sum(axis=0)
        with np.errstate(divide="ignore", invalid="ignore"):
            r2 = between_ss / total_ss

    r2 = np.where(total_ss > 0, r2, np.nan)
    return 100.0 * r2
