# tests/test_loader.py

import pytest
import anndata as ad
import numpy as np
import pandas as pd
import yaml

from scqc_report.data.dataset import Dataset
from scqc_report.data.loader import load_dataset
from scqc_report.exceptions import DatasetError

from conftest import make_level


def _annotated_level():
    level = make_level(np.arange(12, dtype=float).reshape(3, 4), obs_names=["c1", "c2", "c3"])
    level.obs["batch"] = ["A", "B", "A"]
    return level


# --- Dataset invariants ---

def test_dataset_requires_metadata():
    level = _annotated_level()
    with pytest.raises(DatasetError, match="organism"):
        Dataset({"gene": level}, level.obs.copy(), {"genome": "GRCh38"})


def test_dataset_rejects_sample_mismatch():
    level = _annotated_level()
    annotations = pd.DataFrame({"batch": ["A", "B"]}, index=["c1", "c2"])
    with pytest.raises(DatasetError, match="do not match"):
        Dataset({"gene": level}, annotations, {"organism": "Mus musculus", "genome": "GRCm39"})


def test_dataset_rejects_level_without_matrices():
    adata = ad.AnnData(X=np.ones((2, 2)), obs=pd.DataFrame(index=["a", "b"]))
    with pytest.raises(DatasetError, match="no named matrices"):
        Dataset({"gene": adata}, pd.DataFrame(index=["a", "b"]), {"organism": "x", "genome": "y"})


def test_dataset_reorders_levels_to_annotations():
    level = _annotated_level()
    annotations = pd.DataFrame({"batch": ["A", "A", "B"]}, index=["c3", "c1", "c2"])
    dataset = Dataset({"gene": level}, annotations, {"organism": "x", "genome": "y"})

    gene = dataset.experiment("gene")
    assert list(gene.obs_names) == ["c3", "c1", "c2"]
    np.testing.assert_array_equal(gene.layers["count"][0], level.layers["count"][2])


def test_dataset_summary_and_lookups():
    level = _annotated_level()
    level.layers["TPM"] = level.layers["count"] * 2
    dataset = Dataset({"gene": level}, level.obs.copy(), {"organism": "x", "genome": "y"})

    assert dataset.levels == ["gene"]
    assert dataset.n_samples == 3
    assert dataset.has_matrix("gene", "TPM")
    assert not dataset.has_matrix("transcript", "TPM")
    assert dataset.summary().loc["gene", "features"] == 4
    with pytest.raises(DatasetError, match="not found"):
        dataset.experiment("transcript")


# --- Loading ---

def test_load_h5ad(tmp_path):
    level = _annotated_level()
    del level.layers["count"]
    level.uns["organism"] = "Homo sapiens"
    level.uns["genome"] = "GRCh38"
    level.uns["salmon"] = {"sample": ["c1", "c2", "c3"], "percent_mapped": [80.0, 75.5, 90.1]}
    path = tmp_path / "data.h5ad"
    level.write_h5ad(path)

    dataset = load_dataset(str(path))

    assert dataset.levels == ["gene"]
    gene = dataset.experiment("gene")
    np.testing.assert_array_equal(gene.layers["count"], np.arange(12).reshape(3, 4))
    assert dataset.metadata["organism"] == "Homo sapiens"
    assert isinstance(dataset.metadata["salmon"], pd.DataFrame)
    assert list(dataset.sample_annotations["batch"]) == ["A", "B", "A"]


def test_load_directory(tmp_path):
    gene = _annotated_level()
    transcript = make_level(np.ones((3, 6)), obs_names=["c1", "c2", "c3"])
    gene.write_h5ad(tmp_path / "gene.h5ad")
    transcript.write_h5ad(tmp_path / "transcript.h5ad")
    with open(tmp_path / "metadata.yaml", "w") as f:
        yaml.safe_dump({"organism": "Mus musculus", "genome": "GRCm39",
                        "rapmap": {"reads": 1000, "mapped": 900}}, f)
    pd.DataFrame({"batch": ["A", "B", "A"], "condition": ["x", "x", "y"]},
                 index=["c1", "c2", "c3"]).to_csv(tmp_path / "sample_annotations.csv")

    dataset = load_dataset(str(tmp_path))

    assert sorted(dataset.levels) == ["gene", "transcript"]
    assert dataset.experiment("transcript").n_vars == 6
    assert dataset.metadata["genome"] == "GRCm39"
    assert dataset.metadata["rapmap"].shape == (1, 2)
    assert list(dataset.sample_annotations.columns) == ["batch", "condition"]


def test_load_missing_path():
    with pytest.raises(FileNotFoundError):
        load_dataset("path/that/does/not/exist")


def test_load_wrong_format(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("not a dataset")
    with pytest.raises(ValueError, match="Unrecognized file format"):
        load_dataset(str(path))


def test_load_empty_directory(tmp_path):
    with pytest.raises(ValueError, match="No .h5ad files"):
        load_dataset(str(tmp_path))


def test_load_invalid_type():
    with pytest.raises(TypeError):
        load_dataset(123)
