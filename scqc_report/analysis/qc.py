# scqc_report/analysis/qc.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from enum import Enum

from ..data.dataset import Dataset
from ..exceptions import DatasetError, EmptyResultError
from .grouping import GROUP_KEY, min_group_size

log = logging.getLogger(__name__)

COUNT_MATRIX = "count"
SCALED_COUNT_MATRIX = "count_lstpm"
ABUNDANCE_MATRIX = "TPM"
CONTROL_PREFIX = "ERCC-"
CONTROL_VAR = "control"
PERCENT_TOP = 200
MIN_FEATURES = 5
DETECTED_KEY = "n_genes_by_counts"


class ExpressionSource(Enum):
    """Which matrix feeds the embeddings: abundance values, or CPM-normalised counts."""
    ABUNDANCE = "abundance"
    NORMALIZED = "normalized"


@dataclass
class PrimaryMatrices:
    counts: np.ndarray
    abundance: np.ndarray | None
    counts_name: str
    source: ExpressionSource

    @property
    def has_abundance(self) -> bool:
        return self.source is ExpressionSource.ABUNDANCE


@dataclass
class ControlFeatures:
    """Spike-in control candidates and whether they are usable as a control set."""
    eligible: bool
    features: list[str] = field(default_factory=list)
    qualifying: list[str] = field(default_factory=list)


@dataclass
class QcMetrics:
    """Names of the per-sample metric columns written to adata.obs."""
    detected: str
    total: str
    pct_top: str
    control_total: str | None = None
    control_pct: str | None = None

    @property
    def base(self) -> list[str]:
        return [self.detected, self.total, self.pct_top]

    @property
    def control(self) -> list[str]:
        return [m for m in (self.control_total, self.control_pct) if m is not None]

    @property
    def all(self) -> list[str]:
        return self.base + self.control


def select_primary_matrices(dataset: Dataset, level: str = "gene") -> PrimaryMatrices:
    """
    Chooses the count and abundance matrices of a feature level.

    If both the length-scaled count matrix ('count_lstpm') and the abundance
    matrix ('TPM') exist they are used as (counts, abundance). Otherwise the
    plain 'count' matrix is used and abundance is absent, which is a valid state:
    downstream steps then fall back to CPM-normalised counts.

    Args:
        dataset: The loaded Dataset.
        level: Feature level to read from. Defaults to 'gene'.

    Returns:
        PrimaryMatrices with the selected arrays and the expression source tag.

    Raises:
        DatasetError: If the level is missing or has no usable count matrix.
    """
    adata = dataset.experiment(level)
    if dataset.has_matrix(level, SCALED_COUNT_MATRIX) and dataset.has_matrix(level, ABUNDANCE_MATRIX):
        log.info(f"Using '{SCALED_COUNT_MATRIX}' as counts and '{ABUNDANCE_MATRIX}' as abundance.")
        return PrimaryMatrices(
            counts=adata.layers[SCALED_COUNT_MATRIX],
            abundance=adata.layers[ABUNDANCE_MATRIX],
            counts_name=SCALED_COUNT_MATRIX,
            source=ExpressionSource.ABUNDANCE,
        )
    if not dataset.has_matrix(level, COUNT_MATRIX):
        raise DatasetError(
            f"Level '{level}' has no '{COUNT_MATRIX}' matrix. Available: {dataset.matrix_names(level)}"
        )
    log.warning(f"No '{SCALED_COUNT_MATRIX}'/'{ABUNDANCE_MATRIX}' pair at level '{level}'. "
                f"Using '{COUNT_MATRIX}' and CPM-normalised counts for embeddings.")
    return PrimaryMatrices(
        counts=adata.layers[COUNT_MATRIX],
        abundance=None,
        counts_name=COUNT_MATRIX,
        source=ExpressionSource.NORMALIZED,
    )


def build_working_set(dataset: Dataset, primary: PrimaryMatrices, level: str = "gene") -> ad.AnnData:
    """
    Assembles the working AnnData: X and layers['counts'] hold the primary counts,
    layers['abundance'] the abundance values (if any), obs the sample annotations.
    """
    experiment = dataset.experiment(level)
    adata = ad.AnnData(
        X=_to_float(primary.counts),
        obs=dataset.sample_annotations.copy(),
        var=pd.DataFrame(index=experiment.var_names.copy()),
    )
    adata.layers["counts"] = adata.X.copy()
    if primary.abundance is not None:
        adata.layers["abundance"] = _to_float(primary.abundance)
    adata.uns["expression_source"] = primary.source.value
    adata.uns["counts_matrix"] = primary.counts_name
    log.info(f"Working set built from level '{level}'. Shape: {adata.shape}")
    return adata


def _to_float(matrix):
    if hasattr(matrix, "toarray"):
        matrix = matrix.toarray()
    return np.asarray(matrix, dtype=np.float64).copy()


def find_control_features(
    adata: ad.AnnData,
    prefix: str = CONTROL_PREFIX,
    group_key: str = GROUP_KEY,
) -> ControlFeatures:
    """
    Decides whether spike-in control features can be used as a control set.

    Candidates are features whose name starts with `prefix`. A candidate
    qualifies if it has a nonzero count in strictly more samples than the size
    of the smallest group of `group_key`. The controls are eligible only if
    more than one candidate qualifies.

    Writes the boolean column adata.var['control'] (all False unless eligible).

    Args:
        adata: Working AnnData with counts in .X and the grouping key in .obs.
        prefix: Feature name prefix of control candidates. Defaults to 'ERCC-'.
        group_key: Obs column defining the groups. Defaults to 'group'.

    Returns:
        ControlFeatures with the eligibility flag, all candidates and the qualifying ones.
    """
    is_candidate = np.asarray(adata.var_names.str.startswith(prefix))
    candidates = adata.var_names[is_candidate].tolist()
    adata.var[CONTROL_VAR] = False

    if not candidates:
        log.info(f"No control features found with prefix '{prefix}'.")
        return ControlFeatures(eligible=False)

    smallest = min_group_size(adata, group_key)
    nonzero_samples = np.asarray((adata[:, is_candidate].X > 0).sum(axis=0)).ravel()
    qualifying = [f for f, n in zip(candidates, nonzero_samples) if n > smallest]
    eligible = len(qualifying) > 1

    if eligible:
        adata.var[CONTROL_VAR] = is_candidate
        log.info(f"{len(qualifying)}/{len(candidates)} control features detected in more than "
                 f"{smallest} samples. Control metrics enabled.")
    else:
        log.warning(f"Only {len(qualifying)}/{len(candidates)} control features detected in more than "
                    f"{smallest} samples. Control metrics disabled.")
    return ControlFeatures(eligible=eligible, features=candidates, qualifying=qualifying)


def calculate_qc_metrics(
    adata: ad.AnnData,
    controls: ControlFeatures | None = None,
    percent_top: int = PERCENT_TOP,
) -> QcMetrics:
    """
    Calculates per-sample and per-feature QC metrics using scanpy.

    Adds to adata.obs:
        - 'n_genes_by_counts', 'total_counts'
        - 'pct_counts_in_top_{K}_genes' (K = percent_top, clamped to n_vars)
        - 'total_counts_control', 'pct_counts_control' (only if controls are eligible)
    Adds per-feature metrics to adata.var.

    Args:
        adata: Working AnnData with counts in .X.
        controls: Result of find_control_features. None means no controls.
        percent_top: Number of top features for the percentage metric. Defaults to 200.

    Returns:
        QcMetrics naming the obs columns that were written.

    Raises:
        TypeError: If `adata` is not an AnnData object.
        ValueError: If `percent_top` is not a positive integer.
        RuntimeError: If the underlying scanpy call fails.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")
    if not isinstance(percent_top, int) or percent_top <= 0:
        raise ValueError("Argument 'percent_top' must be a positive integer.")

    top_k = min(percent_top, adata.n_vars)
    if top_k < percent_top:
        log.warning(f"percent_top ({percent_top}) exceeds the number of features; using {top_k}.")

    use_controls = controls is not None and controls.eligible
    qc_vars = [CONTROL_VAR] if use_controls else []
    log.info(f"Calculating QC metrics (percent_top={top_k}, controls={'yes' if use_controls else 'no'}).")

    try:
        sc.pp.calculate_qc_metrics(
            adata,
            qc_vars=qc_vars,
            percent_top=[top_k],
            log1p=False,
            inplace=True,
        )
    except Exception as e:
        log.error(f"Error calculating QC metrics: {e}", exc_info=True)
        raise RuntimeError(f"Failed to calculate QC metrics: {e}") from e

    metrics = QcMetrics(
        detected=DETECTED_KEY,
        total="total_counts",
        pct_top=f"pct_counts_in_top_{top_k}_genes",
    )
    if use_controls:
        metrics.control_total = f"total_counts_{CONTROL_VAR}"
        metrics.control_pct = f"pct_counts_{CONTROL_VAR}"

    missing = [m for m in metrics.all if m not in adata.obs.columns]
    if missing:
        raise RuntimeError(f"QC calculation finished but metrics {missing} were not found in adata.obs.")

    adata.uns["qc_metrics"] = metrics.all
    log.info(f"Finished QC metrics calculation: {metrics.all}")
    return metrics


def filter_dataset(adata: ad.AnnData, min_features: int = MIN_FEATURES) -> ad.AnnData:
    """
    Removes undetected features, then low-quality samples.

    1. Feature filter: keep features whose summed count is > 0.
    2. Detected-feature counts are recomputed on the surviving features.
    3. Sample filter: keep samples with strictly more than `min_features`
       detected features.
    4. Features left without counts in the kept samples are removed. This
       does not change any detected-feature count, so both filters hold.

    Per-feature metrics already in adata.var are recomputed on the filtered
    samples. The input is not modified. Filtering an already filtered object
    returns the same features and samples.

    Args:
        adata: Working AnnData with counts in .X (QC metrics may be present).
        min_features: Detected-feature threshold. Defaults to 5.

    Returns:
        A new, filtered AnnData. obs['n_genes_by_counts'] holds the recomputed counts.

    Raises:
        EmptyResultError: If no feature or no sample would survive.
    """
    log.info(f"Starting filtering with {adata.n_obs} samples and {adata.n_vars} features.")

    feature_mask = _detected_features(adata)
    if not feature_mask.any():
        raise EmptyResultError("Feature filter removed all features: every feature has zero counts.")
    adata_work = adata[:, feature_mask].copy()
    log.info(f"Applied feature filter (count > 0). Features remaining: {adata_work.n_vars}/{adata.n_vars}")

    _, detected = sc.pp.filter_cells(adata_work, min_genes=0, inplace=False)
    detected = np.asarray(detected).ravel()
    sample_mask = detected > min_features
    if not sample_mask.any():
        raise EmptyResultError(
            f"Sample filter removed all samples: none has more than {min_features} detected features."
        )
    adata_work.obs[DETECTED_KEY] = detected
    adata_work = adata_work[sample_mask, :].copy()
    log.info(f"Applied sample filter (detected features > {min_features}). "
             f"Samples remaining: {adata_work.n_obs}/{adata.n_obs}")

    orphaned = ~_detected_features(adata_work)
    if orphaned.any():
        log.info(f"Removing {int(orphaned.sum())} features only detected in removed samples.")
        adata_work = adata_work[:, ~orphaned].copy()

    _refresh_feature_metrics(adata_work)
    return adata_work


def _detected_features(adata: ad.AnnData) -> np.ndarray:
    _, feature_totals = sc.pp.filter_genes(adata, min_counts=0, inplace=False)
    return np.asarray(feature_totals).ravel() > 0


def _refresh_feature_metrics(adata: ad.AnnData) -> None:
    # Only columns written by an earlier calculate_qc_metrics call are updated
    _, var_metrics = sc.pp.calculate_qc_metrics(adata, percent_top=None, log1p=False, inplace=False)
    stale = [c for c in var_metrics.columns if c in adata.var.columns]
    if stale:
        adata.var[stale] = var_metrics.loc[adata.var_names, stale].to_numpy()
        log.debug(f"Recomputed per-feature metrics on filtered samples: {stale}")


def explanatory_variables(
    group_columns: list[str],
    metrics: QcMetrics,
    controls: ControlFeatures | None = None,
) -> list[str]:
    """Grouping columns and base metrics, plus control metrics when the controls are eligible."""
    variables = list(dict.fromkeys(group_columns))
    variables += [m for m in metrics.base if m not in variables]
    if controls is not None and controls.eligible:
        variables += [m for m in metrics.control if m not in variables]
    return variables
