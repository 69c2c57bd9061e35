# scqc_report/workflow.py

import logging
from enum import Enum
from pathlib import Path

import anndata as ad
import pandas as pd
import scanpy as sc

from .data.dataset import Dataset
from .data.loader import load_dataset
from .exceptions import ConfigurationError, PlotUnavailable
from .analysis.grouping import GROUP_KEY, build_grouping_key, check_grouping_columns
from .analysis.qc import (
    select_primary_matrices,
    build_working_set,
    find_control_features,
    calculate_qc_metrics,
    filter_dataset,
    explanatory_variables,
)
from .analysis.dimred import build_expression_set, build_embedding_set, reduce_dimensionality, compute_tsne
from .visualization.plotting import (
    LEGEND_POSITIONS,
    PlotOmitted,
    plot_path,
    run_plot,
    plot_library_composition,
    plot_highest_expression,
    plot_pc_correlations,
    plot_explanatory_variables,
    plot_pheno_scatter,
    plot_embedding,
)
from .visualization.report import ReportSection, render_report, session_info

log = logging.getLogger(__name__)


class WorkflowStage(Enum):
    RAW = 0
    PRIMARY_SELECTED = 1
    METRICS_COMPUTED = 2
    FILTERED = 3
    EMBEDDED = 4


def validate_params(params) -> None:
    """Checks the run parameters that do not depend on the data. Raises ConfigurationError."""
    if not getattr(params, "id", None):
        raise ConfigurationError("Parameter 'id' must be a non-empty string.")
    phenoid = getattr(params, "phenoid", None)
    if not phenoid or not isinstance(phenoid, (list, tuple)):
        raise ConfigurationError("Parameter 'phenoid' must be a non-empty list of annotation columns.")
    nrw = getattr(params, "nrw", None)
    if not isinstance(nrw, int) or isinstance(nrw, bool) or nrw < 1:
        raise ConfigurationError(f"Parameter 'nrw' must be an integer >= 1, got {nrw!r}.")
    lps = getattr(params, "lps", None)
    if lps not in LEGEND_POSITIONS:
        raise ConfigurationError(f"Parameter 'lps' must be one of {LEGEND_POSITIONS}, got {lps!r}.")
    if not getattr(params, "output_dir", None):
        raise ConfigurationError("Missing required parameter 'output_dir'.")


class QcReportWorkflow:
    """Runs the QC report: select matrices, compute metrics, filter, embed, plot, render."""

    def __init__(self, params, dataset: Dataset | None = None):
        validate_params(params)
        self.params = params
        self.dataset = dataset
        self.adata: ad.AnnData | None = None
        self.expression: ad.AnnData | None = None
        self.embedding: ad.AnnData | None = None
        self.controls = None
        self.metrics = None
        self.stage = WorkflowStage.RAW
        self.output_dir = Path(self.params.output_dir)
        self.prefix = self.params.id
        self.phenoid = list(self.params.phenoid)
        self.plots = []
        self._n_before_filter = None
        self._embedding_errors = {}
        self.report_path = None
        log.info("QcReportWorkflow initialized.")
        log.debug(f"Workflow parameters: {vars(self.params)}")

    def run(self) -> ad.AnnData:
        """Executes the report steps in order and returns the filtered working set."""
        log.info(f"Starting QC report run: {self.prefix}")
        try:
            self._setup_environment()        # Step 0
            self._load_data()                # Step 1
            self._select_matrices()          # Step 2
            self._build_groups()             # Step 3
            self._run_qc()                   # Step 4
            self._filter()                   # Step 5
            self._embed()                    # Step 6
            self._plot_results()             # Step 7
            self._write_report()             # Step 8
            self._save_results()             # Step 9
            log.info(f"QC report run '{self.prefix}' completed successfully.")
            return self.adata
        except Exception as e:
            log.error(f"QC report run '{self.prefix}' failed: {e}", exc_info=True)
            raise

    def _require(self, expected: WorkflowStage, step: str) -> None:
        if self.stage is not expected:
            raise RuntimeError(f"Cannot run '{step}' at stage {self.stage.name}; expected {expected.name}.")

    def _setup_environment(self):
        log.debug("Setting up environment...")
        self.output_dir.mkdir(parents=True, exist_ok=True)
        sc.settings.figdir = str(self.output_dir)
        log.info(f"Output directory set to: {self.output_dir}")

    def _load_data(self):
        self._require(WorkflowStage.RAW, "load")
        log.info("Step 1: Loading dataset...")
        if self.dataset is None:
            self.dataset = load_dataset(self.params.input_path)
        # Grouping columns are checked before anything is computed
        check_grouping_columns(self.dataset.sample_annotations, self.phenoid)
        log.info(f"Dataset levels: {self.dataset.levels}; samples: {self.dataset.n_samples}")

    def _select_matrices(self):
        self._require(WorkflowStage.RAW, "select matrices")
        if self.dataset is None:
            raise RuntimeError("Dataset not loaded before selecting matrices.")
        log.info("Step 2: Selecting primary matrices...")
        level = self.params.level
        primary = select_primary_matrices(self.dataset, level=level)
        self.adata = build_working_set(self.dataset, primary, level=level)
        self.stage = WorkflowStage.PRIMARY_SELECTED

    def _build_groups(self):
        self._require(WorkflowStage.PRIMARY_SELECTED, "grouping key")
        log.info("Step 3: Building grouping key...")
        build_grouping_key(self.adata, self.phenoid, key_added=GROUP_KEY)

    def _run_qc(self):
        self._require(WorkflowStage.PRIMARY_SELECTED, "QC metrics")
        log.info("Step 4: Finding control features and calculating QC metrics...")
        self.controls = find_control_features(self.adata, prefix=self.params.control_prefix, group_key=GROUP_KEY)
        self.metrics = calculate_qc_metrics(self.adata, self.controls, percent_top=self.params.percent_top)
        self.stage = WorkflowStage.METRICS_COMPUTED

    def _filter(self):
        self._require(WorkflowStage.METRICS_COMPUTED, "filter")
        log.info("Step 5: Filtering features and samples...")
        self._n_before_filter = self.adata.shape
        self.adata = filter_dataset(self.adata, min_features=self.params.min_features)
        self.stage = WorkflowStage.FILTERED

    def _embed(self):
        self._require(WorkflowStage.FILTERED, "embed")
        log.info("Step 6: Computing embeddings...")
        self.expression = build_expression_set(self.adata)
        self.embedding = build_embedding_set(
            self.adata, sd=self.params.jitter_sd, random_state=self.params.random_seed
        )
        try:
            reduce_dimensionality(
                self.embedding, n_comps=self.params.n_pca_comps,
                random_state=self.params.random_seed, inplace=True
            )
        except PlotUnavailable as e:
            log.warning(f"PCA unavailable: {e}")
            self._embedding_errors["pca"] = str(e)
        try:
            compute_tsne(self.embedding, random_state=self.params.random_seed)
        except PlotUnavailable as e:
            log.warning(f"t-SNE unavailable: {e}")
            self._embedding_errors["tsne"] = str(e)
        self.stage = WorkflowStage.EMBEDDED

    def _path(self, name: str) -> str:
        return plot_path(str(self.output_dir), self.prefix, name, self.params.plot_format)

    def _plot(self, section: str, name: str, plot_func, *args, **kwargs):
        result = run_plot(name, plot_func, *args, output_path=self._path(name), **kwargs)
        self.plots.append((section, result))
        return result

    def _plot_results(self):
        self._require(WorkflowStage.EMBEDDED, "plots")
        log.info("Step 7: Generating plots...")
        legend = dict(legend_position=self.params.lps, legend_nrow=self.params.nrw, dpi=self.params.plot_dpi)
        variables = explanatory_variables(self.phenoid, self.metrics, self.controls)
        log.info(f"Explanatory variables: {variables}")

        self._plot("composition", "library_composition", plot_library_composition, self.adata, GROUP_KEY, **legend)
        self._plot("highest", "highest_expression", plot_highest_expression, self.adata, dpi=self.params.plot_dpi)

        if "pca" in self._embedding_errors:
            self.plots.append(("pc_correlation", PlotOmitted("pc_correlation", self._embedding_errors["pca"])))
        else:
            self._plot("pc_correlation", "pc_correlation", plot_pc_correlations, self.embedding, variables, **legend)
        self._plot("explanatory", "explanatory_variables", plot_explanatory_variables, self.expression, variables, **legend)

        self._plot("pheno", "counts_vs_features", plot_pheno_scatter, self.adata,
                   self.metrics.total, self.metrics.detected, GROUP_KEY, **legend)
        if self.controls.eligible:
            self._plot("pheno", "control_pct_vs_counts", plot_pheno_scatter, self.adata,
                       self.metrics.total, self.metrics.control_pct, GROUP_KEY, **legend)

        for basis in ("pca", "tsne"):
            for column in self.phenoid:
                name = f"{basis}_{column}"
                if basis in self._embedding_errors:
                    self.plots.append((basis, PlotOmitted(name, self._embedding_errors[basis])))
                    continue
                self._plot(basis, name, plot_embedding, self.embedding, basis, column, **legend)

        n_omitted = sum(isinstance(r, PlotOmitted) for _, r in self.plots)
        log.info(f"Plot generation complete: {len(self.plots) - n_omitted} drawn, {n_omitted} omitted.")

    def summary_table(self) -> pd.DataFrame:
        """Key facts of the run: dataset, expression source, controls and filtering."""
        rows = {
            "id": self.prefix,
            "organism": self.dataset.metadata.get("organism"),
            "genome": self.dataset.metadata.get("genome"),
            "feature levels": ", ".join(self.dataset.levels),
            "counts matrix": self.adata.uns.get("counts_matrix"),
            "expression source": self.adata.uns.get("expression_source"),
            "grouping columns": ", ".join(self.phenoid),
            "control features": len(self.controls.features) if self.controls else 0,
            "controls eligible": bool(self.controls and self.controls.eligible),
        }
        if self._n_before_filter is not None:
            rows["samples (before / after filter)"] = f"{self._n_before_filter[0]} / {self.adata.n_obs}"
            rows["features (before / after filter)"] = f"{self._n_before_filter[1]} / {self.adata.n_vars}"
        return pd.DataFrame({"value": pd.Series(rows, dtype=object)})

    def _write_report(self):
        log.info("Step 8: Writing report...")
        sections = [ReportSection("Dataset summary", tables=[self.summary_table(), self.dataset.summary()])]
        for key in ("salmon", "rapmap"):
            if key in self.dataset.metadata:
                sections.append(ReportSection(f"{key} summary", tables=[pd.DataFrame(self.dataset.metadata[key])]))

        titles = [
            ("composition", "Library composition"),
            ("highest", "Highest expressed features"),
            ("pc_correlation", "Principal components vs. explanatory variables"),
            ("explanatory", "Explanatory variables"),
            ("pheno", "Phenotype scatter plots"),
            ("pca", "PCA"),
            ("tsne", "t-SNE"),
        ]
        for key, title in titles:
            results = [r for s, r in self.plots if s == key]
            if results:
                sections.append(ReportSection(title, plots=results))
        sections.append(ReportSection("Session info", tables=[session_info()]))

        self.report_path = render_report(
            f"QC report: {self.prefix}", sections, str(self.output_dir / f"{self.prefix}_qc_report.html")
        )

    def _save_results(self):
        log.info("Step 9: Saving filtered working set...")
        path = self.output_dir / f"{self.prefix}_qc_filtered.h5ad"
        try:
            self.adata.write_h5ad(path, compression="gzip")
            log.info(f"Filtered AnnData saved to: {path}")
        except Exception as e:
            log.error(f"Failed to save filtered AnnData: {e}", exc_info=True)
            raise
