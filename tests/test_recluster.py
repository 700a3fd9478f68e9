import numpy as np
import pandas as pd

from kidney_scrna.annotation import assign_celltypes_by_scores
from kidney_scrna.processing import normalize
from kidney_scrna.recluster import _map_subset_labels_to_parent, recluster_subset
from conftest import MARKERS, PT_SEGMENTS, make_kidney_counts


def test_empty_mask_returns_none(normalized_adata):
    mask = np.zeros(normalized_adata.n_obs, dtype=bool)

    assert recluster_subset(normalized_adata, mask, "pt", parent_type="PT") is None
    assert "leiden_pt" not in normalized_adata.obs


def test_map_subset_labels_to_parent(normalized_adata):
    subset = normalized_adata.obs_names[:3]
    labels = pd.Series(["a", "b", "a"], index=subset)

    _map_subset_labels_to_parent(normalized_adata, labels, "leiden_pt")

    column = normalized_adata.obs["leiden_pt"]
    assert column.iloc[:3].tolist() == ["a", "b", "a"]
    assert (column.iloc[3:] == "").all()


def test_recluster_assigns_pt_segments(tmp_path):
    adata = make_kidney_counts(groups=PT_SEGMENTS, n_cells_per_group=25)
    adata = normalize(adata, method="total")
    adata.obs["celltype"] = "PT"
    adata.obs["celltype_detail"] = "PT"
    # Unrelated cells outside the subset keep their labels
    adata.obs.iloc[:5, adata.obs.columns.get_loc("celltype")] = "Endo"
    adata.obs.iloc[:5, adata.obs.columns.get_loc("celltype_detail")] = "Endo"
    mask = (adata.obs["celltype"] == "PT").to_numpy()

    sub = recluster_subset(
        adata, mask, "pt", parent_type="PT", n_pcs=10, resolution=0.5, save_dir=tmp_path
    )

    assert sub.n_obs == mask.sum()
    assert sub.obs["leiden_pt"].nunique() >= 3
    agreement = (sub.obs["celltype_detail"] == sub.obs["true_type"].astype(str)).mean()
    assert agreement > 0.8

    parent = adata.obs
    assert (parent["celltype_detail"].iloc[:5] == "Endo").all()
    assert (parent["leiden_pt"].iloc[:5] == "").all()
    assert set(parent.loc[mask, "celltype_detail"]) <= {"PT", "PT_S1", "PT_S2", "PT_S3"}
    assert (tmp_path / "umap_pt_leiden_pt.png").exists()
    assert (tmp_path / "umap_pt_celltype_detail.png").exists()
    assert (tmp_path / "umap_pt_celltype_pt.png").exists()
    assert (parent.loc[mask, "celltype_detail"] == parent.loc[mask, "celltype_pt"]).all()


def test_recluster_without_parent_type_only_adds_clusters(normalized_adata):
    mask = (normalized_adata.obs["true_type"] == "PT").to_numpy()

    sub = recluster_subset(normalized_adata, mask, "pt", n_pcs=10)

    assert "celltype_detail" not in normalized_adata.obs
    assert (normalized_adata.obs.loc[mask, "leiden_pt"] != "").all()
    assert sub.n_obs == mask.sum()


def test_recluster_keeps_per_cell_subtypes():
    groups = {**PT_SEGMENTS, **{k: MARKERS[k] for k in ("LOH", "Endo", "Macro")}}
    adata = make_kidney_counts(groups=groups, n_cells_per_group=30)
    adata = normalize(adata, method="total")
    assign_celltypes_by_scores(adata, mode="cell")
    before = adata.obs["celltype_detail"].astype(str).copy()
    pt_mask = (adata.obs["celltype"] == "PT").to_numpy()

    # Coarse clusters mix segments
    recluster_subset(adata, pt_mask, "pt", parent_type="PT", n_pcs=10, resolution=0.01)

    after = adata.obs["celltype_detail"].astype(str)
    assert (after == before).all()
    assert set(adata.obs.loc[pt_mask, "celltype_pt"]) <= {"PT", "PT_S1", "PT_S2", "PT_S3", "Injured_PT"}
    pt_obs = adata.obs[pt_mask]
    accuracy = (after[pt_mask] == pt_obs["true_type"].astype(str)).mean()
    assert accuracy > 0.85
