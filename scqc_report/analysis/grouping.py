# scqc_report/analysis/grouping.py

import anndata as ad
import pandas as pd
import logging

from ..exceptions import ConfigurationError

log = logging.getLogger(__name__)

GROUP_KEY = "group"
GROUP_SEP = "."


def check_grouping_columns(obs: pd.DataFrame, columns: list[str]) -> None:
    """Raises ConfigurationError if `columns` is empty or any column is absent from `obs`."""
    if isinstance(columns, str):
        columns = [columns]
    if not columns:
        raise ConfigurationError("At least one grouping column (phenoid) is required.")
    missing = [c for c in columns if c not in obs.columns]
    if missing:
        raise ConfigurationError(
            f"Grouping column(s) {missing} not found in sample annotations. "
            f"Available columns: {list(obs.columns)}"
        )


def build_grouping_key(
    adata: ad.AnnData,
    columns: list[str],
    key_added: str = GROUP_KEY,
    sep: str = GROUP_SEP,
) -> pd.Series:
    """
    Derives a categorical grouping label per sample from annotation columns.

    The label is the values of `columns`, in the given order, joined with `sep`
    (e.g. batch 'A' and condition 'x' give 'A.x'). Only `adata.obs[key_added]`
    is written; the label is for stratifying and colouring plots.

    Args:
        adata: Working AnnData whose .obs holds the sample annotations.
        columns: Ordered annotation column names, at least one.
        key_added: Name of the new obs column. Defaults to 'group'.
        sep: Separator between column values. Defaults to '.'.

    Returns:
        The new categorical Series (also stored in adata.obs[key_added]).

    Raises:
        ConfigurationError: If `columns` is empty or a column is missing.
                            Nothing is written in that case.
    """
    if isinstance(columns, str):
        columns = [columns]
    check_grouping_columns(adata.obs, columns)

    values = adata.obs[list(columns)].astype(str)
    key = values.apply(lambda row: sep.join(row.tolist()), axis=1) if len(columns) > 1 else values.iloc[:, 0]
    key = pd.Categorical(key, categories=sorted(pd.unique(key)))
    adata.obs[key_added] = key

    log.info(f"Grouping key '{key_added}' built from {list(columns)}: {len(key.categories)} groups.")
    return adata.obs[key_added]


def min_group_size(adata: ad.AnnData, key: str = GROUP_KEY) -> int:
    """Size of the smallest non-empty group defined by `adata.obs[key]`."""
    if key not in adata.obs.columns:
        raise KeyError(f"Grouping key '{key}' not found in adata.obs. Run build_grouping_key first.")
    counts = adata.obs[key].value_counts()
    counts = counts[counts > 0]
    return int(counts.min()) if len(counts) else 0
