# tests/test_workflow.py

import pytest
import numpy as np
import pandas as pd

from scqc_report.workflow import QcReportWorkflow, WorkflowStage, validate_params
from scqc_report.visualization.plotting import PlotOk, PlotOmitted
from scqc_report.exceptions import ConfigurationError, EmptyResultError

from conftest import make_level, make_dataset, make_params


def test_workflow_full_run(simulated_dataset, tmp_path):
    params = make_params(tmp_path, phenoid=["batch", "condition"], lps="right", nrw=2)
    workflow = QcReportWorkflow(params, dataset=simulated_dataset)

    adata = workflow.run()

    assert workflow.stage is WorkflowStage.EMBEDDED
    # gene_0 is never detected
    assert adata.shape == (40, 59)
    assert "gene_0" not in adata.var_names
    assert workflow.controls.eligible
    assert "pct_counts_control" in adata.obs.columns
    assert adata.obs["group"].cat.categories.tolist() == ["b1.ctrl", "b1.treated", "b2.ctrl", "b2.treated"]

    names = [result.name for _, result in workflow.plots]
    assert names[:2] == ["library_composition", "highest_expression"]
    assert "control_pct_vs_counts" in names
    for basis in ("pca", "tsne"):
        for column in ("batch", "condition"):
            assert f"{basis}_{column}" in names
    assert all(isinstance(r, (PlotOk, PlotOmitted)) for _, r in workflow.plots)
    assert isinstance(workflow.plots[0][1], PlotOk)

    report = tmp_path / "test_qc_report.html"
    assert report.is_file()
    text = report.read_text()
    assert text.index("Dataset summary") < text.index("Library composition") < text.index("Session info")
    assert (tmp_path / "test_qc_filtered.h5ad").is_file()


def test_workflow_does_not_modify_dataset(simulated_dataset, tmp_path):
    counts_before = simulated_dataset.experiment("gene").layers["count"].copy()
    QcReportWorkflow(make_params(tmp_path), dataset=simulated_dataset).run()
    np.testing.assert_array_equal(simulated_dataset.experiment("gene").layers["count"], counts_before)


def test_workflow_tiny_dataset_omits_tsne(tiny_dataset, tmp_path):
    workflow = QcReportWorkflow(make_params(tmp_path), dataset=tiny_dataset)

    adata = workflow.run()

    assert adata.shape == (2, 9)
    assert not workflow.controls.eligible
    names = [r.name for _, r in workflow.plots]
    assert "control_pct_vs_counts" not in names
    tsne = [r for s, r in workflow.plots if s == "tsne"]
    assert tsne and all(isinstance(r, PlotOmitted) for r in tsne)
    assert (tmp_path / "test_qc_report.html").is_file()


def test_workflow_missing_grouping_column(simulated_dataset, tmp_path):
    workflow = QcReportWorkflow(make_params(tmp_path, phenoid=["batch", "tissue"]), dataset=simulated_dataset)

    with pytest.raises(ConfigurationError, match="tissue"):
        workflow.run()

    assert workflow.adata is None
    assert workflow.metrics is None
    assert workflow.stage is WorkflowStage.RAW
    assert "n_genes_by_counts" not in simulated_dataset.sample_annotations.columns


def test_workflow_empty_after_filtering(simulated_dataset, tmp_path):
    workflow = QcReportWorkflow(make_params(tmp_path, min_features=1000), dataset=simulated_dataset)
    with pytest.raises(EmptyResultError):
        workflow.run()
    assert workflow.stage is WorkflowStage.METRICS_COMPUTED


def test_workflow_steps_out_of_order(simulated_dataset, tmp_path):
    workflow = QcReportWorkflow(make_params(tmp_path), dataset=simulated_dataset)
    workflow._load_data()
    with pytest.raises(RuntimeError):
        workflow._filter()


@pytest.mark.parametrize("override, message", [
    ({"id": ""}, "id"),
    ({"phenoid": []}, "phenoid"),
    ({"nrw": 0}, "nrw"),
    ({"lps": "middle"}, "lps"),
    ({"output_dir": ""}, "output_dir"),
])
def test_validate_params(tmp_path, override, message):
    with pytest.raises(ConfigurationError, match=message):
        validate_params(make_params(tmp_path, **override))


def test_explanatory_plot_reads_unjittered_expression(tmp_path, monkeypatch):
    rng = np.random.default_rng(5)
    counts = rng.poisson(6, size=(8, 20)).astype(float) + 1.0
    counts[1] = counts[0]  # duplicate samples force jitter on the embedding input
    level = make_level(counts)
    annotations = pd.DataFrame({"batch": ["a", "b"] * 4}, index=level.obs_names)
    captured = {}

    def fake_plot(adata, variables, output_path, **kwargs):
        captured["X"] = np.array(adata.X)
        return output_path

    monkeypatch.setattr("scqc_report.workflow.plot_explanatory_variables", fake_plot)
    workflow = QcReportWorkflow(make_params(tmp_path), dataset=make_dataset(level, annotations))
    workflow.run()

    filtered = workflow.adata.layers["counts"]
    logcpm = np.log1p(filtered / filtered.sum(axis=1, keepdims=True) * 1e6)
    np.testing.assert_allclose(captured["X"], logcpm)
    assert not np.array_equal(workflow.embedding.X, workflow.expression.X)
