# scqc_report/data/dataset.py

import logging
from dataclasses import dataclass, field

import anndata as ad
import pandas as pd

from ..exceptions import DatasetError

log = logging.getLogger(__name__)

REQUIRED_METADATA = ("organism", "genome")


@dataclass
class Dataset:
    """
    Multi-level expression dataset for one report run.

    Each feature level ("gene", "transcript", ...) is an AnnData object with
    samples as observations and features as variables. The named numeric
    matrices of a level ("count", "count_lstpm", "TPM", ...) live in its
    `.layers`, so they share one feature and one sample index by construction.

    Attributes:
        experiments: Mapping of feature level to AnnData.
        sample_annotations: One row per sample, shared by every level.
        metadata: Free-form run metadata. Must contain 'organism' and 'genome';
                  may contain 'salmon' / 'rapmap' summary tables.

    Raises:
        DatasetError: If any of the invariants above does not hold.
    """
    experiments: dict[str, ad.AnnData]
    sample_annotations: pd.DataFrame
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        if not self.experiments:
            raise DatasetError("Dataset must contain at least one feature level.")

        missing_meta = [k for k in REQUIRED_METADATA if k not in self.metadata]
        if missing_meta:
            raise DatasetError(f"Missing required metadata fields: {missing_meta}")

        if self.sample_annotations.index.has_duplicates:
            raise DatasetError("Sample annotation index contains duplicate sample names.")
        samples = pd.Index(self.sample_annotations.index.astype(str))
        self.sample_annotations = self.sample_annotations.copy()
        self.sample_annotations.index = samples

        for level, adata in list(self.experiments.items()):
            if not isinstance(adata, ad.AnnData):
                raise DatasetError(f"Level '{level}' must be an AnnData object, got {type(adata)}.")
            if not adata.layers:
                raise DatasetError(f"Level '{level}' holds no named matrices in .layers.")
            if set(adata.obs_names) != set(samples):
                extra = sorted(set(adata.obs_names) - set(samples))[:5]
                missing = sorted(set(samples) - set(adata.obs_names))[:5]
                raise DatasetError(
                    f"Samples of level '{level}' do not match the sample annotations "
                    f"(unannotated: {extra}, absent: {missing})."
                )
            if adata.var_names.has_duplicates:
                raise DatasetError(f"Level '{level}' has duplicate feature names.")
            # Align every level to the annotation order
            if not adata.obs_names.equals(samples):
                self.experiments[level] = adata[samples, :].copy()
            log.debug(f"Level '{level}': {adata.n_vars} features, matrices {list(adata.layers.keys())}")

    @property
    def levels(self) -> list[str]:
        return list(self.experiments.keys())

    @property
    def n_samples(self) -> int:
        return self.sample_annotations.shape[0]

    def matrix_names(self, level: str) -> list[str]:
        return list(self.experiment(level).layers.keys())

    def has_matrix(self, level: str, name: str) -> bool:
        return level in self.experiments and name in self.experiments[level].layers

    def experiment(self, level: str) -> ad.AnnData:
        if level not in self.experiments:
            raise DatasetError(f"Feature level '{level}' not found. Available: {self.levels}")
        return self.experiments[level]

    def summary(self) -> pd.DataFrame:
        """One row per feature level: number of features, samples and the matrices present."""
        rows = []
        for level, adata in self.experiments.items():
            rows.append({
                "level": level,
                "features": adata.n_vars,
                "samples": adata.n_obs,
                "matrices": ", ".join(adata.layers.keys()),
            })
        return pd.DataFrame(rows).set_index("level")
