import anndata
import pandas as pd

from kidney_scrna.export import analysis_summary, export_results, sanitize_obs_for_h5ad


def test_sanitize_obs_converts_object_columns(normalized_adata):
    normalized_adata.obs["note"] = pd.Series(
        ["ok", None] * (normalized_adata.n_obs // 2), index=normalized_adata.obs_names, dtype=object
    )

    sanitize_obs_for_h5ad(normalized_adata)

    note = normalized_adata.obs["note"]
    assert isinstance(note.dtype, pd.CategoricalDtype)
    assert set(note.cat.categories) == {"", "ok"}


def test_analysis_summary(normalized_adata):
    normalized_adata.obs["celltype"] = normalized_adata.obs["true_type"]

    summary = analysis_summary(normalized_adata).set_index("Metric")["Value"]

    assert summary["Total cells"] == normalized_adata.n_obs
    assert summary["Samples"] == 4
    assert summary["Cell types"] == 4
    # No clustering was run on the fixture
    assert "Clusters" not in summary.index


def test_export_results_writes_outputs(normalized_adata, tmp_path):
    normalized_adata.obs["celltype"] = normalized_adata.obs["true_type"].astype(str)

    paths = export_results(
        normalized_adata, tmp_path / "out", prefix="test",
        params={"cell_calling": "inflection", "normalization": "total", "unused": None},
    )

    for path in paths.values():
        assert path.exists()
    assert paths["h5ad"].name == "test_annotated.h5ad"

    reloaded = anndata.read_h5ad(paths["h5ad"])
    assert reloaded.uns["pipeline_params"]["normalization"] == "total"
    assert "unused" not in reloaded.uns["pipeline_params"]
    assert "counts" in reloaded.layers

    metadata = pd.read_csv(paths["metadata"], index_col=0)
    assert {"celltype", "orig.ident", "condition"} <= set(metadata.columns)

    counts = pd.read_csv(paths["celltype_counts"], index_col=0)
    assert counts["count"].sum() == normalized_adata.n_obs
