import scanpy as sc
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from pathlib import Path

from kidney_scrna.annotation import MARKER_GENES, SUBTYPES
from kidney_scrna.processing import choose_leiden_resolution, run_pca


def _assign_subtypes_to_clusters(sub, cluster_key, subtype_labels, marker_genes, confidence_margin):
    """Assign one subtype per subset cluster from median marker scores.

    Returns:
        dict of cluster id -> subtype for confidently assigned clusters
    """
    score_cols = []
    for label in subtype_labels:
        genes = [g for g in marker_genes.get(label, []) if g in sub.var_names]
        if not genes:
            continue
        score_name = f"score_{label}"
        sc.tl.score_genes(sub, gene_list=genes, score_name=score_name, use_raw=False)
        score_cols.append(score_name)

    if not score_cols:
        return {}

    score_labels = np.array([c.replace("score_", "") for c in score_cols])
    cluster_scores = sub.obs.groupby(cluster_key, observed=True)[score_cols].median()

    assignments = {}
    for cluster_id in cluster_scores.index:
        scores = cluster_scores.loc[cluster_id].to_numpy()
        top_idx = np.argmax(scores)
        if len(scores) > 1:
            confidence = scores[top_idx] - np.partition(scores, -2)[-2]
        else:
            confidence = np.inf
        if confidence >= confidence_margin:
            assignments[str(cluster_id)] = score_labels[top_idx]

    return assignments


def _map_subset_labels_to_parent(adata, labels, col_name):
    """Write subset labels back to the parent as plain strings (h5py-safe)"""
    if col_name in adata.obs:
        column = adata.obs[col_name].astype(str).replace("nan", "").to_numpy(dtype=object)
    else:
        column = np.full(adata.n_obs, "", dtype=object)

    positions = adata.obs_names.get_indexer(labels.index)
    column[positions] = labels.astype(str).to_numpy()
    adata.obs[col_name] = column


def recluster_subset(
    adata,
    mask,
    subset_name,
    parent_type=None,
    n_top_genes=2000,
    n_pcs=20,
    n_neighbors=15,
    resolution=0.3,
    auto_resolution=False,
    resolution_grid=None,
    marker_genes=MARKER_GENES,
    confidence_margin=0.05,
    random_state=0,
    save_dir=None,
):
    """Re-cluster and UMAP a subset of cells and map labels back to parent AnnData.

    Args:
        adata: Parent AnnData with log-normalized ``X`` over all genes.
        mask: Boolean array-like for cells to include in the subset.
        subset_name: Short name used in output keys/files (e.g., "pt").
        parent_type: Major type whose ``SUBTYPES`` are assigned per subset
            cluster (e.g., "PT"). None skips subtype assignment.
        n_top_genes: Number of HVGs to select within the subset.
        n_pcs: Number of PCs to compute/use for neighbors.
        n_neighbors: k for kNN graph.
        resolution: Leiden resolution if auto_resolution is False.
        auto_resolution: If True, sweep resolutions and pick robust choice.
        resolution_grid: Optional list of resolutions for sweeping.
        marker_genes: Dictionary of cell type markers used for subtypes.
        confidence_margin: Minimum score difference to confidently assign a subtype.
        random_state: Random seed for UMAP and Leiden.
        save_dir: Optional Path for saving plots.

    Returns:
        The subset AnnData, or None when the mask selects no cells. Adds
        ``leiden_<subset_name>`` and, with a parent_type,
        ``celltype_<subset_name>`` (the per-cluster subtype) to the parent.
        ``celltype_detail`` takes the cluster subtype only where it is still
        the bare parent type, so per-cell subtypes already assigned are kept.
    """
    mask = np.asarray(mask, dtype=bool)
    if mask.sum() == 0:
        print(f"  No cells selected for '{subset_name}'; skipping")
        return None

    if save_dir is not None:
        save_dir = Path(save_dir)

    sub = adata[mask].copy()
    print(f"Re-clustering {subset_name}: {sub.n_obs:,} cells")

    sc.pp.highly_variable_genes(sub, n_top_genes=min(int(n_top_genes), sub.n_vars))
    sub = run_pca(sub, n_comps=n_pcs)
    sc.pp.neighbors(
        sub,
        n_neighbors=min(int(n_neighbors), sub.n_obs - 1),
        n_pcs=sub.obsm["X_pca"].shape[1],
        random_state=random_state,
    )

    chosen_res = float(resolution)
    if auto_resolution:
        chosen_res = choose_leiden_resolution(
            sub,
            resolution_grid=resolution_grid,
            min_cluster_size=20,
            save_dir=save_dir / f"leiden_sweep_{subset_name}" if save_dir else None,
        )
        print(f"Chosen Leiden resolution: {chosen_res}")

    cluster_key = f"leiden_{subset_name}"
    sc.tl.leiden(sub, resolution=chosen_res, key_added=cluster_key, random_state=random_state)
    sc.tl.umap(sub, random_state=int(random_state))
    print(f"  {sub.obs[cluster_key].nunique()} subclusters")

    if parent_type is not None:
        subtype_labels = SUBTYPES.get(parent_type, [])
        assignments = _assign_subtypes_to_clusters(
            sub, cluster_key, subtype_labels, marker_genes, confidence_margin
        )
        subset_col = f"celltype_{subset_name}"
        cluster_labels = sub.obs[cluster_key].astype(str).map(assignments).fillna(parent_type)
        sub.obs[subset_col] = cluster_labels.astype(str)
        _map_subset_labels_to_parent(adata, sub.obs[subset_col], subset_col)

        # Only cells still carrying the bare major type take the cluster subtype
        if "celltype_detail" in adata.obs:
            current = adata.obs.loc[sub.obs_names, "celltype_detail"].astype(str)
        else:
            current = pd.Series(parent_type, index=sub.obs_names)
        unrefined = current.isin([parent_type, "", "nan"])
        detail = current.where(~unrefined, sub.obs[subset_col])
        sub.obs["celltype_detail"] = detail.astype(str)
        _map_subset_labels_to_parent(adata, sub.obs["celltype_detail"], "celltype_detail")

        n_assigned = int((cluster_labels != parent_type).sum())
        print(f"  Assigned subtypes to {n_assigned:,} cells across {len(assignments)} clusters")
        print(f"  celltype_detail: {int(unrefined.sum()):,} cells refined, "
              f"{int((~unrefined).sum()):,} existing subtypes kept")

    _map_subset_labels_to_parent(adata, sub.obs[cluster_key], cluster_key)

    if save_dir is not None:
        colors = [cluster_key] + [
            c for c in (f"celltype_{subset_name}", "celltype_detail") if c in sub.obs
        ]
        for color in colors:
            sc.pl.umap(
                sub,
                color=color,
                legend_loc="right margin",
                title=f"Re-clustered {subset_name} - {color}",
                show=False,
            )
            fig = plt.gcf()
            out_png = save_dir / f"umap_{subset_name}_{color}.png"
            fig.savefig(out_png, dpi=300, bbox_inches="tight")
            print(f"  Saved: {out_png}")
            plt.close(fig)

    return sub
