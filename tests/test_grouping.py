# tests/test_grouping.py

import pytest
import anndata as ad
import numpy as np
import pandas as pd

from scqc_report.analysis.grouping import build_grouping_key, min_group_size
from scqc_report.exceptions import ConfigurationError


@pytest.fixture
def annotated_adata():
    obs = pd.DataFrame(
        {"batch": ["A", "B", "A"], "condition": ["x", "y", "y"], "replicate": [1, 1, 2]},
        index=["s1", "s2", "s3"],
    )
    return ad.AnnData(X=np.ones((3, 4)), obs=obs)


def test_grouping_key_joins_columns_in_order(annotated_adata):
    key = build_grouping_key(annotated_adata, ["batch", "condition"])
    assert key.tolist() == ["A.x", "B.y", "A.y"]
    assert isinstance(annotated_adata.obs["group"].dtype, pd.CategoricalDtype)

    reversed_key = build_grouping_key(annotated_adata, ["condition", "batch"], key_added="rev")
    assert reversed_key.tolist() == ["x.A", "y.B", "y.A"]


def test_grouping_key_single_column(annotated_adata):
    key = build_grouping_key(annotated_adata, ["replicate"])
    assert key.tolist() == ["1", "1", "2"]
    assert min_group_size(annotated_adata) == 1


def test_grouping_key_custom_separator(annotated_adata):
    key = build_grouping_key(annotated_adata, ["batch", "condition"], sep="_")
    assert key.tolist() == ["A_x", "B_y", "A_y"]


def test_grouping_key_does_not_touch_other_columns(annotated_adata):
    before = annotated_adata.obs.copy()
    X_before = annotated_adata.X.copy()
    build_grouping_key(annotated_adata, ["batch", "condition"])
    pd.testing.assert_frame_equal(annotated_adata.obs[before.columns], before)
    np.testing.assert_array_equal(annotated_adata.X, X_before)


def test_grouping_key_missing_column(annotated_adata):
    before = list(annotated_adata.obs.columns)
    with pytest.raises(ConfigurationError, match=r"\['tissue'\]"):
        build_grouping_key(annotated_adata, ["batch", "tissue"])
    assert list(annotated_adata.obs.columns) == before


def test_grouping_key_empty_columns(annotated_adata):
    with pytest.raises(ConfigurationError):
        build_grouping_key(annotated_adata, [])


def test_min_group_size(annotated_adata):
    build_grouping_key(annotated_adata, ["batch"])
    assert min_group_size(annotated_adata) == 1
    with pytest.raises(KeyError):
        min_group_size(annotated_adata, key="missing")
