# scqc_report/visualization/plotting.py

import scanpy as sc
import anndata as ad
import logging
import math
import os
import matplotlib.pyplot as plt
import pandas as pd
import numpy as np
from dataclasses import dataclass
from pathlib import Path

from ..exceptions import PlotUnavailable
from ..analysis.dimred import variance_explained

log = logging.getLogger(__name__)

LEGEND_POSITIONS = ("top", "bottom", "left", "right", "none")
COMPOSITION_TOP = 500
HIGHEST_EXPR_TOP = 50
MAX_PCS = 10


# --- Plot results ---

@dataclass(frozen=True)
class PlotOk:
    name: str
    path: str


@dataclass(frozen=True)
class PlotOmitted:
    name: str
    reason: str


PlotResult = PlotOk | PlotOmitted


def run_plot(name: str, plot_func, *args, **kwargs) -> PlotResult:
    """
    Calls `plot_func(*args, **kwargs)`, which must return the saved file path.

    Any failure is logged and turned into PlotOmitted; it never propagates.
    """
    try:
        path = plot_func(*args, **kwargs)
        log.info(f"Saved plot '{name}' to {path}")
        return PlotOk(name=name, path=str(path))
    except PlotUnavailable as e:
        log.warning(f"Plot '{name}' omitted: {e}")
        return PlotOmitted(name=name, reason=str(e))
    except Exception as e:
        log.error(f"Plot '{name}' failed and was omitted: {e}", exc_info=True)
        return PlotOmitted(name=name, reason=f"{type(e).__name__}: {e}")
    finally:
        plt.close("all")


# --- Helpers ---

def plot_path(output_dir: str, file_prefix: str, name: str, file_format: str = "png") -> str:
    if not output_dir:
        raise ValueError("output_dir must be provided")
    Path(output_dir).mkdir(parents=True, exist_ok=True)
    safe_name = name.replace('/', '_').replace('\\', '_').replace(' ', '_')
    return os.path.join(output_dir, f"{file_prefix}_{safe_name}.{file_format}")


def _first_axes(axs):
    if isinstance(axs, (list, tuple, np.ndarray)):
        return np.ravel(axs)[0]
    return axs


def _save_figure(fig, output_path: str, dpi: int = 150) -> str:
    fig.savefig(output_path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return output_path


def place_legend(ax, position: str = "bottom", nrow: int = 1) -> None:
    """
    Moves the legend of `ax` to `position` ('top', 'bottom', 'left', 'right'
    or 'none'), laid out in `nrow` rows. Colorbars are not affected.
    """
    if position not in LEGEND_POSITIONS:
        raise ValueError(f"Legend position must be one of {LEGEND_POSITIONS}, got '{position}'.")
    handles, labels = ax.get_legend_handles_labels()
    if ax.get_legend() is not None:
        ax.get_legend().remove()
    if position == "none" or not handles:
        return

    ncol = max(1, math.ceil(len(labels) / max(1, nrow)))
    anchors = {
        "top": ("lower center", (0.5, 1.02)),
        "bottom": ("upper center", (0.5, -0.15)),
        "left": ("center right", (-0.15, 0.5)),
        "right": ("center left", (1.02, 0.5)),
    }
    loc, anchor = anchors[position]
    ax.legend(handles, labels, loc=loc, bbox_to_anchor=anchor, ncol=ncol, frameon=False)


def _group_colors(categories) -> dict:
    cmap = plt.get_cmap("tab20" if len(categories) > 10 else "tab10")
    return {cat: cmap(i % cmap.N) for i, cat in enumerate(categories)}


def _check_groupby(adata: ad.AnnData, groupby: str) -> None:
    if groupby not in adata.obs.columns:
        raise KeyError(f"Group key '{groupby}' not found in adata.obs")


# --- Plotting Functions ---

def plot_library_composition(
    adata: ad.AnnData,
    groupby: str,
    output_path: str,
    n_top: int = COMPOSITION_TOP,
    legend_position: str = "bottom",
    legend_nrow: int = 1,
    dpi: int = 150,
) -> str:
    """Cumulative fraction of each sample's library held by its top `n_top` features, coloured by group."""
    if not isinstance(adata, ad.AnnData): raise TypeError("adata must be AnnData")
    _check_groupby(adata, groupby)

    counts = adata.layers["counts"] if "counts" in adata.layers else adata.X
    counts = np.asarray(counts.toarray() if hasattr(counts, "toarray") else counts, dtype=np.float64)
    totals = counts.sum(axis=1)
    if not np.any(totals > 0):
        raise PlotUnavailable("All libraries are empty.")

    n_top = min(n_top, adata.n_vars)
    ranked = -np.sort(-counts, axis=1)[:, :n_top]
    with np.errstate(divide="ignore", invalid="ignore"):
        cumulative = np.cumsum(ranked, axis=1) / totals[:, None]

    groups = adata.obs[groupby].astype(str).to_numpy()
    colors = _group_colors(sorted(set(groups)))
    fig, ax = plt.subplots(figsize=(7, 5))
    x = np.arange(1, n_top + 1)
    seen = set()
    for i in range(adata.n_obs):
        if totals[i] <= 0:
            continue
        label = groups[i] if groups[i] not in seen else None
        seen.add(groups[i])
        ax.plot(x, 100 * cumulative[i], color=colors[groups[i]], alpha=0.6, linewidth=0.8, label=label)

    ax.set_xscale("log")
    ax.set_xlabel("Number of top features")
    ax.set_ylabel("Cumulative proportion of library (%)")
    ax.set_ylim(0, 100)
    place_legend(ax, legend_position, legend_nrow)
    return _save_figure(fig, output_path, dpi)


def plot_highest_expression(
    adata: ad.AnnData,
    output_path: str,
    n_top: int = HIGHEST_EXPR_TOP,
    dpi: int = 150,
) -> str:
    """Features holding the largest share of counts across samples (scanpy.pl.highest_expr_genes)."""
    if not isinstance(adata, ad.AnnData): raise TypeError("adata must be AnnData")
    n_top = min(n_top, adata.n_vars)
    ax = sc.pl.highest_expr_genes(adata, n_top=n_top, show=False)
    return _save_figure(_first_axes(ax).figure, output_path, dpi)


def plot_pc_correlations(
    adata: ad.AnnData,
    variables: list[str],
    output_path: str,
    n_pcs: int = MAX_PCS,
    legend_position: str = "bottom",
    legend_nrow: int = 1,
    dpi: int = 150,
) -> str:
    """
    Variance of each principal component explained by each explanatory variable.

    Requires adata.obsm['X_pca']. Variables with a single value are skipped.

    Raises:
        PlotUnavailable: If PCA results are missing or no variable can be assessed.
    """
    if 'X_pca' not in adata.obsm:
        raise PlotUnavailable("PCA results not found; run reduce_dimensionality first.")
    pcs = adata.obsm['X_pca'][:, :n_pcs]
    table = _variance_table(pcs, adata.obs, variables)

    fig, ax = plt.subplots(figsize=(7, 5))
    x = np.arange(1, pcs.shape[1] + 1)
    for variable in table.columns:
        ax.plot(x, table[variable].to_numpy(), marker="o", label=variable)
    ax.set_xlabel("Principal component")
    ax.set_ylabel("Variance explained (%)")
    ax.set_xticks(x)
    place_legend(ax, legend_position, legend_nrow)
    return _save_figure(fig, output_path, dpi)


def plot_explanatory_variables(
    adata: ad.AnnData,
    variables: list[str],
    output_path: str,
    legend_position: str = "bottom",
    legend_nrow: int = 1,
    dpi: int = 150,
) -> str:
    """
    Distribution over features of the variance each explanatory variable explains
    in the expression values of adata.X, on a log10 scale.

    Raises:
        PlotUnavailable: If no variable explains a positive share of any feature.
    """
    expression = adata.X.toarray() if hasattr(adata.X, "toarray") else adata.X
    table = _variance_table(expression, adata.obs, variables)

    fig, ax = plt.subplots(figsize=(7, 5))
    drawn = 0
    for variable in table.columns:
        r2 = table[variable].to_numpy()
        r2 = r2[np.isfinite(r2) & (r2 > 0)]
        if r2.size < 2:
            log.debug(f"Not enough finite R² values for '{variable}'.")
            continue
        density, edges = np.histogram(np.log10(r2), bins=min(40, r2.size), density=True)
        ax.plot(10 ** ((edges[:-1] + edges[1:]) / 2), density, label=variable)
        drawn += 1
    if drawn == 0:
        plt.close(fig)
        raise PlotUnavailable("No explanatory variable explains variance in any feature.")

    ax.set_xscale("log")
    ax.set_xlabel("% variance explained")
    ax.set_ylabel("Density")
    place_legend(ax, legend_position, legend_nrow)
    return _save_figure(fig, output_path, dpi)


def _variance_table(values: np.ndarray, obs: pd.DataFrame, variables: list[str]) -> pd.DataFrame:
    columns = {}
    for variable in variables:
        if variable not in obs.columns:
            log.warning(f"Explanatory variable '{variable}' not found in obs. Skipping.")
            continue
        try:
            columns[variable] = variance_explained(values, obs[variable])
        except PlotUnavailable as e:
            log.info(f"Skipping explanatory variable: {e}")
    if not columns:
        raise PlotUnavailable(f"None of the explanatory variables {variables} can be assessed.")
    return pd.DataFrame(columns)


def plot_pheno_scatter(
    adata: ad.AnnData,
    x: str,
    y: str,
    color: str,
    output_path: str,
    legend_position: str = "bottom",
    legend_nrow: int = 1,
    dpi: int = 150,
) -> str:
    """Scatter of two sample annotation / QC columns, coloured by `color` (scanpy.pl.scatter)."""
    missing = [k for k in (x, y, color) if k not in adata.obs.columns]
    if missing:
        raise PlotUnavailable(f"Columns {missing} not found in adata.obs.")
    axs = sc.pl.scatter(adata, x=x, y=y, color=color, show=False)
    ax = _first_axes(axs)
    place_legend(ax, legend_position, legend_nrow)
    return _save_figure(ax.figure, output_path, dpi)


def plot_embedding(
    adata: ad.AnnData,
    basis: str,
    color: str,
    output_path: str,
    legend_position: str = "bottom",
    legend_nrow: int = 1,
    dpi: int = 150,
) -> str:
    """PCA or t-SNE embedding coloured by an obs column (scanpy.pl.embedding)."""
    if not isinstance(adata, ad.AnnData): raise TypeError("adata must be AnnData")
    if f"X_{basis}" not in adata.obsm:
        raise PlotUnavailable(f"Embedding 'X_{basis}' not found.")
    if color not in adata.obs.columns:
        raise PlotUnavailable(f"Column '{color}' not found in adata.obs.")
    axs = sc.pl.embedding(adata, basis=basis, color=color, show=False)
    ax = _first_axes(axs)
    place_legend(ax, legend_position, legend_nrow)
    return _save_figure(ax.figure, output_path, dpi)
