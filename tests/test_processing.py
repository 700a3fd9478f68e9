import numpy as np
import pytest
import scanpy as sc

from kidney_scrna.processing import (
    choose_leiden_resolution,
    normalize,
    plot_embeddings,
    run_pca,
    run_pca_umap_clustering,
    select_variable_genes,
)
from conftest import make_kidney_counts, require_r_package


def test_total_normalization_keeps_counts(counts_adata):
    raw = counts_adata.X.toarray().copy()

    adata = normalize(counts_adata, method="total", target_sum=1e4)

    np.testing.assert_array_equal(adata.layers["counts"].toarray(), raw)
    np.testing.assert_allclose(adata.obs["size_factors"], raw.sum(axis=1) / 1e4, rtol=1e-5)
    np.testing.assert_allclose(np.expm1(adata.X.toarray()).sum(axis=1), 1e4, rtol=1e-3)


def test_unknown_normalization_method(counts_adata):
    with pytest.raises(ValueError, match="Unknown normalization method"):
        normalize(counts_adata, method="sctransform")


def test_variable_genes_are_flagged_not_subset(normalized_adata):
    n_vars = normalized_adata.n_vars

    adata = select_variable_genes(normalized_adata, n_top_genes=50)

    assert adata.n_vars == n_vars
    assert 0 < adata.var["highly_variable"].sum() < n_vars


def test_run_pca_leaves_log_normalized_x(normalized_adata):
    adata = select_variable_genes(normalized_adata, n_top_genes=50)
    before = adata.X.toarray().copy()

    adata = run_pca(adata, n_comps=10)

    assert adata.obsm["X_pca"].shape == (adata.n_obs, 10)
    assert "variance_ratio" in adata.uns["pca"]
    np.testing.assert_array_equal(adata.X.toarray(), before)


def test_pca_umap_clustering(normalized_adata, tmp_path):
    adata = select_variable_genes(normalized_adata, n_top_genes=100)

    adata = run_pca_umap_clustering(adata, n_pcs=10, resolution=0.5, save_dir=tmp_path)

    assert adata.obsm["X_umap"].shape == (adata.n_obs, 2)
    assert adata.obs["leiden"].nunique() >= 2
    assert (tmp_path / "pca_elbow_plot.png").exists()


def test_auto_resolution_records_choice(normalized_adata, tmp_path):
    adata = select_variable_genes(normalized_adata, n_top_genes=100)
    grid = [0.1, 0.5, 1.0]

    adata = run_pca_umap_clustering(
        adata, n_pcs=10, auto_resolution=True, resolution_grid=grid, save_dir=tmp_path
    )

    assert adata.uns["leiden_optimal_resolution"] in grid
    assert (tmp_path / "leiden_resolution_sweep.csv").exists()
    assert (tmp_path / "clustree_leiden_labels.csv").exists()
    assert (tmp_path / "leiden_sweep_diagnostics.png").exists()


def test_choose_leiden_resolution_adds_sweep_columns(normalized_adata):
    adata = select_variable_genes(normalized_adata, n_top_genes=100)
    adata = run_pca(adata, n_comps=10)
    sc.pp.neighbors(adata, n_pcs=10)

    chosen = choose_leiden_resolution(adata, resolution_grid=[0.2, 0.8])

    assert chosen in (0.2, 0.8)
    assert {"leiden_0.20", "leiden_0.80"} <= set(adata.obs.columns)


def test_plot_embeddings_custom_filename(normalized_adata, tmp_path):
    adata = select_variable_genes(normalized_adata, n_top_genes=100)
    adata = run_pca_umap_clustering(adata, n_pcs=10)

    plot_embeddings(adata, color=("leiden", "condition"), save_dir=tmp_path, filename="umap_test.png")
    plot_embeddings(adata, color=("not_a_column",), save_dir=tmp_path, filename="skipped.png")

    assert (tmp_path / "umap_test.png").exists()
    assert not (tmp_path / "skipped.png").exists()


def test_scran_size_factors():
    require_r_package("scran")
    adata = make_kidney_counts(n_cells_per_group=40)
    totals = np.asarray(adata.X.sum(axis=1)).ravel()

    adata = normalize(adata, method="scran")

    size_factors = adata.obs["size_factors"].to_numpy()
    assert (size_factors > 0).all()
    # Deconvolution factors track library size on this data
    assert np.corrcoef(size_factors, totals)[0, 1] > 0.5
    assert "counts" in adata.layers
