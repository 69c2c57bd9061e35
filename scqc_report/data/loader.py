# scqc_report/data/loader.py

import scanpy as sc
import anndata as ad
import pandas as pd
import os
import logging
import yaml

from .dataset import Dataset

log = logging.getLogger(__name__)

DEFAULT_LEVEL = "gene"
COUNT_MATRIX = "count"
METADATA_FILE = "metadata.yaml"
ANNOTATION_FILE = "sample_annotations.csv"
SUMMARY_TABLES = ("salmon", "rapmap")


def _as_level(adata: ad.AnnData) -> ad.AnnData:
    """Makes sure the plain count matrix is available as a named layer."""
    adata.var_names_make_unique()
    if COUNT_MATRIX not in adata.layers:
        if adata.X is None:
            raise ValueError("AnnData has neither a 'count' layer nor an .X matrix.")
        adata.layers[COUNT_MATRIX] = adata.X.copy()
    return adata


def _as_table(value) -> pd.DataFrame:
    if isinstance(value, pd.DataFrame):
        return value
    try:
        return pd.DataFrame(value)
    except ValueError:
        # Scalar-valued summaries become a single-row table
        return pd.DataFrame([value])


def _metadata_from_uns(uns) -> dict:
    metadata = {}
    for key, value in uns.items():
        metadata[key] = _as_table(value) if key in SUMMARY_TABLES else value
    return metadata


def load_dataset(data_path: str) -> Dataset:
    """
    Loads a pre-computed expression dataset for the QC report.

    Supports:
        - A single AnnData (.h5ad) file. It becomes the 'gene' level; its .obs
          is the sample annotation table and its .uns the metadata.
        - A directory of '<level>.h5ad' files (e.g. gene.h5ad, transcript.h5ad),
          with optional 'metadata.yaml' and 'sample_annotations.csv'.

    In both cases `.X` is stored as the 'count' layer when no such layer exists.

    Args:
        data_path: Path to the .h5ad file or the dataset directory.

    Returns:
        A validated Dataset.

    Raises:
        FileNotFoundError: If the data_path does not exist.
        ValueError: If the format is not recognized or no level file is found.
        TypeError: If data_path is not a string.
        DatasetError: If the loaded pieces violate the Dataset invariants.
    """
    log.info(f"Attempting to load dataset from: {data_path}")

    if not isinstance(data_path, (str, os.PathLike)):
        raise TypeError(f"Expected data_path to be a string, but got {type(data_path)}")

    expanded_path = os.path.expanduser(str(data_path))
    if not os.path.exists(expanded_path):
        raise FileNotFoundError(f"Data path not found: {expanded_path}")

    if os.path.isfile(expanded_path) and expanded_path.lower().endswith(".h5ad"):
        log.info("Detected .h5ad file, loading as the 'gene' level.")
        adata = _as_level(sc.read_h5ad(expanded_path))
        metadata = _metadata_from_uns(adata.uns)
        annotations = adata.obs.copy()
        log.info(f"Successfully loaded .h5ad file. Shape: {adata.shape}")
        return Dataset({DEFAULT_LEVEL: adata}, annotations, metadata)

    if os.path.isdir(expanded_path):
        log.info("Detected directory, loading one level per .h5ad file.")
        experiments = {}
        for filename in sorted(os.listdir(expanded_path)):
            if filename.lower().endswith(".h5ad"):
                level = os.path.splitext(filename)[0]
                experiments[level] = _as_level(sc.read_h5ad(os.path.join(expanded_path, filename)))
                log.info(f"Loaded level '{level}'. Shape: {experiments[level].shape}")
        if not experiments:
            raise ValueError(f"No .h5ad files found in directory: {expanded_path}")

        metadata = {}
        metadata_path = os.path.join(expanded_path, METADATA_FILE)
        if os.path.exists(metadata_path):
            with open(metadata_path, "r") as f:
                metadata = yaml.safe_load(f) or {}
            for key in SUMMARY_TABLES:
                if key in metadata:
                    metadata[key] = _as_table(metadata[key])
            log.info(f"Loaded metadata fields: {list(metadata.keys())}")
        else:
            first = experiments.get(DEFAULT_LEVEL, next(iter(experiments.values())))
            metadata = _metadata_from_uns(first.uns)

        annotation_path = os.path.join(expanded_path, ANNOTATION_FILE)
        if os.path.exists(annotation_path):
            annotations = pd.read_csv(annotation_path, index_col=0)
            log.info(f"Loaded sample annotations for {annotations.shape[0]} samples.")
        else:
            first = experiments.get(DEFAULT_LEVEL, next(iter(experiments.values())))
            annotations = first.obs.copy()

        return Dataset(experiments, annotations, metadata)

    raise ValueError(
        f"Unrecognized file format or path type: {expanded_path}. "
        "Expecting an .h5ad file or a directory of <level>.h5ad files."
    )
