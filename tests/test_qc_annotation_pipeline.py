import numpy as np
import pandas as pd
import pytest

import kidney_qc_annotation
from kidney_scrna.annotation import map_subtype_to_major
from conftest import CONDITIONS, MARKERS, PT_SEGMENTS, make_kidney_counts, write_10x_mtx

GROUPS = {**PT_SEGMENTS, **{k: MARKERS[k] for k in ("LOH", "Endo", "Macro")}}


def _write_samples(data_dir, matrix_name, n_empty=0, seed=0):
    """One 10x matrix directory per sample

    Cells get 400 background genes so they clear the default QC filters.
    With ``n_empty`` each sample also gets ambient droplets of 101-300 and
    1-50 UMIs. Returns the true type per merged barcode.
    """
    adata = make_kidney_counts(
        groups=GROUPS,
        n_cells_per_group=15,
        n_background=400,
        background_rate=8.0,
        marker_rate=60.0,
        seed=seed,
    )
    rng = np.random.default_rng(seed)
    X = adata.X.toarray().astype(np.float64)
    ambient = X.sum(axis=0) / X.sum()

    expected = {}
    for sample in adata.obs["orig.ident"].unique():
        mask = (adata.obs["orig.ident"] == sample).to_numpy()
        counts = X[mask]
        barcodes = [f"CELL{i:04d}-1" for i in range(counts.shape[0])]
        expected.update(
            zip(
                (f"{sample}_{b}" for b in barcodes),
                adata.obs.loc[mask, "true_type"].astype(str),
            )
        )

        if n_empty:
            totals = np.concatenate(
                [rng.integers(101, 300, size=n_empty), rng.integers(1, 50, size=n_empty)]
            )
            empties = np.vstack([rng.multinomial(total, ambient) for total in totals])
            counts = np.vstack([counts, empties])
            barcodes += [f"EMPTY{i:04d}-1" for i in range(len(totals))]

        write_10x_mtx(data_dir / sample / matrix_name, counts, barcodes, adata.var_names)

    return pd.Series(expected)


def _write_sample_sheet(path):
    pd.DataFrame(
        {"sample": list(CONDITIONS), "condition": list(CONDITIONS.values())}
    ).to_csv(path, index=False)
    return path


def _run(tmp_path, matrix_name, droplet_method):
    return kidney_qc_annotation.main(
        tmp_path / "data",
        _write_sample_sheet(tmp_path / "samples.csv"),
        file_name=matrix_name,
        droplet_method=droplet_method,
        normalization="total",
        label_mode="cell",
        plots_dir_path=tmp_path / "plots",
        output_dir=tmp_path / "outputs",
    )


def _assert_annotation(adata, expected):
    truth = expected.reindex(adata.obs_names)
    assert truth.notna().all()

    major = truth.map(map_subtype_to_major)
    assert (adata.obs["celltype"].astype(str) == major).mean() > 0.9

    pt = truth.str.startswith("PT_").to_numpy()
    detail = adata.obs["celltype_detail"].astype(str)
    assert (detail[pt] == truth[pt]).mean() > 0.85
    assert "celltype_pt" in adata.obs


def test_qc_annotation_pipeline_on_filtered_matrices(tmp_path):
    expected = _write_samples(tmp_path / "data", "filtered_feature_bc_matrix")

    adata = _run(tmp_path, "filtered_feature_bc_matrix", "none")

    assert adata.n_obs == len(expected)
    assert set(adata.obs["condition"].astype(str)) == {"Sham", "IRI"}
    _assert_annotation(adata, expected)
    assert adata.uns["pipeline_params"]["droplet_method"] == "none"

    outputs = tmp_path / "outputs"
    for name in (
        "kidney_annotated.h5ad",
        "cell_metadata.csv",
        "analysis_summary.csv",
        "celltype_counts.csv",
    ):
        assert (outputs / name).exists(), name
    for name in ("qc_retention_by_sample.csv", "celltype_proportions.csv", "umap_celltypes.png"):
        assert (tmp_path / "plots" / name).exists(), name

    metadata = pd.read_csv(outputs / "cell_metadata.csv", index_col=0)
    assert {"celltype", "celltype_detail", "celltype_pt", "doublet_score"} <= set(metadata.columns)


def test_qc_annotation_pipeline_calls_cells_by_inflection(tmp_path):
    expected = _write_samples(tmp_path / "data", "raw_feature_bc_matrix", n_empty=300)

    adata = _run(tmp_path, "raw_feature_bc_matrix", "inflection")

    assert set(adata.obs_names) == set(expected.index)
    assert (adata.obs["droplet_total"] > 300).all()
    _assert_annotation(adata, expected)
    for sample in CONDITIONS:
        assert (tmp_path / "plots" / f"barcode_ranks_{sample}.png").exists()


def test_qc_annotation_pipeline_manual_mode_needs_mapping(tmp_path):
    with pytest.raises(ValueError, match="CLUSTER_ANNOTATIONS"):
        kidney_qc_annotation.main(
            tmp_path / "data", tmp_path / "samples.csv", label_mode="manual"
        )
