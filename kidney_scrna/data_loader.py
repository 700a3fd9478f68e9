#!/usr/bin/env python3
"""
Data loading utilities for the kidney scRNA-seq analysis
Handles 10x / CellBender count matrices, sample sheets and merging
"""

import pandas as pd
import h5py
import scanpy as sc
from scipy import sparse
import anndata
from pathlib import Path


def load_cellbender_h5(file_path):
    """Load CellBender processed h5 file

    Args:
        file_path: Path to the CellBender H5 file

    Returns:
        AnnData object with loaded data
    """
    with h5py.File(file_path, "r") as f:
        matrix = f["matrix"]
        features = matrix["features"]

        shape = tuple(matrix["shape"][:])
        X = sparse.csc_matrix(
            (matrix["data"][:], matrix["indices"][:], matrix["indptr"][:]),
            shape=shape,
        )

        gene_names = [x.decode("utf-8") for x in features["name"][:]]
        gene_ids = [x.decode("utf-8") for x in features["id"][:]]
        cell_barcodes = [x.decode("utf-8") for x in matrix["barcodes"][:]]

        # CellBender stores genes x cells
        if X.shape[0] == len(gene_names) and X.shape[1] == len(cell_barcodes):
            adata = anndata.AnnData(X.T.tocsr())
        else:
            adata = anndata.AnnData(X.tocsr())

        adata.var_names = gene_names
        adata.var["gene_ids"] = gene_ids
        adata.obs_names = cell_barcodes

        adata.var_names_make_unique()

    return adata


def load_10x(path):
    """Load a Cell Ranger count matrix (.h5 file or matrix directory)

    Args:
        path: Path to a ``*.h5`` file or a directory holding
            matrix.mtx(.gz), features/genes.tsv(.gz) and barcodes.tsv(.gz)

    Returns:
        AnnData object (cells x genes) with unique gene symbols
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Count matrix not found: {path}")

    if path.is_dir():
        adata = sc.read_10x_mtx(path, var_names="gene_symbols", make_unique=True)
    elif path.suffix == ".h5":
        adata = sc.read_10x_h5(path)
    else:
        raise ValueError(
            f"Unrecognised count matrix format: {path} (expected .h5 or a directory)"
        )

    adata.var_names_make_unique()
    return adata


def load_sample_sheet(path):
    """Read the sample sheet describing each library

    The sheet needs a ``sample`` column; every other column (condition, sex,
    batch, ...) becomes per-cell metadata in ``add_metadata``.
    """
    sheet = pd.read_csv(path)
    if "sample" not in sheet.columns:
        raise ValueError(f"Sample sheet {path} has no 'sample' column")

    duplicated = sheet["sample"][sheet["sample"].duplicated()].tolist()
    if duplicated:
        raise ValueError(f"Duplicated samples in sample sheet: {duplicated}")

    sheet["sample"] = sheet["sample"].astype(str)
    return sheet


def load_and_merge_samples(base_path, sample_names, file_name, cell_caller=None):
    """Load and merge per-sample count matrices

    Args:
        base_path: Base directory path; sample ``s`` is read from
            ``base_path/s/file_name``
        sample_names: List of sample names
        file_name: Matrix file or directory name inside each sample folder.
            CellBender outputs (h5 files carrying ``droplet_latents``) are
            read with ``load_cellbender_h5``.
        cell_caller: Optional callable ``adata -> adata`` applied to each raw
            sample before merging (see ``cell_calling.call_cells``); the
            sample name is already in ``obs["sample"]``

    Returns:
        Merged AnnData object
    """
    print("Loading count matrices...")

    adatas = []
    for sample in sample_names:
        file_path = Path(base_path) / sample / file_name
        print(f"Loading {file_path}")

        if _is_cellbender_output(file_path):
            adata = load_cellbender_h5(file_path)
        else:
            adata = load_10x(file_path)

        adata.obs["sample"] = sample
        adata.obs["orig.ident"] = sample

        if cell_caller is not None:
            print(f"  Calling cells for {sample} ({adata.n_obs:,} barcodes)")
            adata = cell_caller(adata)

        # Barcodes repeat across libraries
        adata.obs_names = [f"{sample}_{barcode}" for barcode in adata.obs_names]

        adatas.append(adata)

    adata_merged = anndata.concat(adatas, join="outer", fill_value=0)
    adata_merged.var_names_make_unique()

    print(f"Merged {len(adatas)} samples: {adata_merged.n_obs:,} cells x {adata_merged.n_vars:,} genes")

    return adata_merged


def _is_cellbender_output(file_path):
    if file_path.suffix != ".h5" or not file_path.is_file():
        return False
    with h5py.File(file_path, "r") as f:
        # CellBender writes its latent variables next to the count matrix
        return "droplet_latents" in f


def add_metadata(adata, sample_sheet):
    """Add experimental metadata to AnnData object

    Args:
        adata: AnnData object with ``obs["orig.ident"]``
        sample_sheet: DataFrame from ``load_sample_sheet``

    Returns:
        AnnData object with added metadata
    """
    print("Adding metadata...")

    sheet = sample_sheet.set_index("sample")
    missing = sorted(set(adata.obs["orig.ident"].astype(str)) - set(sheet.index))
    if missing:
        print(f"  Warning: no sample sheet entry for {missing}")

    for col in sheet.columns:
        if col == "path":
            continue
        adata.obs[col] = adata.obs["orig.ident"].astype(str).map(sheet[col])

    return adata
