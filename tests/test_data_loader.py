import h5py
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from kidney_scrna.data_loader import (
    add_metadata,
    load_10x,
    load_and_merge_samples,
    load_cellbender_h5,
    load_sample_sheet,
)
from conftest import write_10x_mtx


def _write_cellbender_h5(path, counts, barcodes, genes):
    """CellBender layout: genes x cells CSC matrix plus droplet_latents"""
    matrix = sparse.csc_matrix(np.asarray(counts).T)
    with h5py.File(path, "w") as f:
        grp = f.create_group("matrix")
        grp.create_dataset("data", data=matrix.data)
        grp.create_dataset("indices", data=matrix.indices)
        grp.create_dataset("indptr", data=matrix.indptr)
        grp.create_dataset("shape", data=np.array(matrix.shape))
        grp.create_dataset("barcodes", data=np.array(barcodes, dtype="S"))
        features = grp.create_group("features")
        features.create_dataset("name", data=np.array(genes, dtype="S"))
        features.create_dataset("id", data=np.array([f"ENSMUSG{i}" for i in range(len(genes))], dtype="S"))
        f.create_group("droplet_latents")


def test_load_sample_sheet(tmp_path):
    path = tmp_path / "samples.csv"
    pd.DataFrame({"sample": [1, 2], "condition": ["Sham", "IRI"]}).to_csv(path, index=False)

    sheet = load_sample_sheet(path)

    assert sheet["sample"].tolist() == ["1", "2"]
    assert "condition" in sheet.columns


def test_load_sample_sheet_rejects_duplicates(tmp_path):
    path = tmp_path / "samples.csv"
    pd.DataFrame({"sample": ["A", "A"], "condition": ["Sham", "IRI"]}).to_csv(path, index=False)

    with pytest.raises(ValueError, match="Duplicated samples"):
        load_sample_sheet(path)


def test_load_sample_sheet_requires_sample_column(tmp_path):
    path = tmp_path / "samples.csv"
    pd.DataFrame({"library": ["A"], "condition": ["Sham"]}).to_csv(path, index=False)

    with pytest.raises(ValueError, match="no 'sample' column"):
        load_sample_sheet(path)


def test_load_10x_matrix_directory(tmp_path):
    counts = np.array([[1, 0, 3], [0, 2, 0]])
    write_10x_mtx(tmp_path / "mtx", counts, ["AAAC-1", "AAAG-1"], ["Lrp2", "Umod", "mt-Co1"])

    adata = load_10x(tmp_path / "mtx")

    assert adata.shape == (2, 3)
    assert list(adata.var_names) == ["Lrp2", "Umod", "mt-Co1"]
    assert list(adata.obs_names) == ["AAAC-1", "AAAG-1"]
    np.testing.assert_array_equal(adata.X.toarray(), counts)


def test_load_10x_missing_path(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_10x(tmp_path / "does_not_exist.h5")


def test_load_10x_unknown_format(tmp_path):
    path = tmp_path / "counts.txt"
    path.write_text("not a matrix")
    with pytest.raises(ValueError, match="Unrecognised count matrix format"):
        load_10x(path)


def test_load_cellbender_h5(tmp_path):
    counts = np.array([[5, 0, 1, 0], [0, 3, 0, 2], [1, 1, 1, 1]])
    path = tmp_path / "cellbender.h5"
    _write_cellbender_h5(path, counts, ["c1", "c2", "c3"], ["Lrp2", "Umod", "Lrp2", "Cd68"])

    adata = load_cellbender_h5(path)

    assert adata.shape == (3, 4)
    assert list(adata.obs_names) == ["c1", "c2", "c3"]
    # Duplicate symbols are made unique
    assert adata.var_names.is_unique
    np.testing.assert_array_equal(adata.X.toarray(), counts)


def test_load_and_merge_samples_prefixes_barcodes(tmp_path):
    genes = ["Lrp2", "Umod", "Cd68"]
    write_10x_mtx(tmp_path / "S1" / "filtered", np.array([[1, 2, 0], [0, 1, 4]]), ["AAA-1", "CCC-1"], genes)
    write_10x_mtx(tmp_path / "S2" / "filtered", np.array([[3, 0, 1]]), ["AAA-1"], genes)

    adata = load_and_merge_samples(tmp_path, ["S1", "S2"], "filtered")

    assert adata.n_obs == 3
    assert list(adata.obs_names) == ["S1_AAA-1", "S1_CCC-1", "S2_AAA-1"]
    assert adata.obs["orig.ident"].tolist() == ["S1", "S1", "S2"]
    assert adata.obs["sample"].tolist() == ["S1", "S1", "S2"]


def test_load_and_merge_samples_reads_cellbender_and_calls_cells(tmp_path):
    genes = ["Lrp2", "Umod", "Cd68"]
    for sample in ("S1", "S2"):
        (tmp_path / sample).mkdir()
        _write_cellbender_h5(
            tmp_path / sample / "cellbender.h5",
            np.array([[10, 2, 0], [0, 0, 1]]),
            ["AAA-1", "CCC-1"],
            genes,
        )

    seen = []

    def keep_first(adata):
        seen.append(adata.obs["sample"].iloc[0])
        return adata[:1].copy()

    adata = load_and_merge_samples(tmp_path, ["S1", "S2"], "cellbender.h5", cell_caller=keep_first)

    assert seen == ["S1", "S2"]
    assert list(adata.obs_names) == ["S1_AAA-1", "S2_AAA-1"]
    np.testing.assert_array_equal(adata.X.toarray(), [[10, 2, 0], [10, 2, 0]])


def test_add_metadata_maps_sheet_columns(counts_adata):
    sheet = pd.DataFrame(
        {
            "sample": ["S1", "S2", "S3", "S4"],
            "genotype": ["WT", "WT", "KO", "KO"],
            "path": ["a", "b", "c", "d"],
        }
    )

    adata = add_metadata(counts_adata, sheet)

    assert "path" not in adata.obs
    s3 = adata.obs["orig.ident"] == "S3"
    assert (adata.obs.loc[s3, "genotype"] == "KO").all()
    assert (adata.obs.loc[~s3 & (adata.obs["orig.ident"] != "S4"), "genotype"] == "WT").all()
