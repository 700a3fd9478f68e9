#!/usr/bin/env python3
"""
Processing utilities for the kidney scRNA-seq analysis
Handles normalization, variable genes, PCA, UMAP, and clustering
"""

from pathlib import Path

import numpy as np
import pandas as pd
import scanpy as sc
import matplotlib.pyplot as plt
from scipy import sparse
from sklearn.metrics import silhouette_score

from kidney_scrna.r_bridge import import_r_package, to_r_matrix


def compute_scran_size_factors(adata, cluster_resolution=0.5, min_mean=0.1):
    """Pooling-based deconvolution size factors from scran

    Cells are pre-clustered on a throwaway total-count normalized copy so
    that scran pools only transcriptionally similar cells.

    Args:
        adata: AnnData object with raw counts in ``X``
        cluster_resolution: Leiden resolution for the pre-clustering
        min_mean: scran ``min.mean``, average count cutoff for pooled genes

    Returns:
        numpy array of size factors, one per cell
    """
    import rpy2.robjects as ro

    scran = import_r_package("scran")

    tmp = adata.copy()
    sc.pp.normalize_total(tmp, target_sum=1e6)
    sc.pp.log1p(tmp)
    sc.pp.pca(tmp, n_comps=min(15, tmp.n_vars - 1, tmp.n_obs - 1))
    sc.pp.neighbors(tmp)
    sc.tl.leiden(tmp, resolution=cluster_resolution, key_added="groups")
    print(f"  Pre-clustered into {tmp.obs['groups'].nunique()} groups for pooling")

    size_factors = scran.calculateSumFactors(
        to_r_matrix(adata.X),
        clusters=ro.StrVector(tmp.obs["groups"].astype(str).tolist()),
        **{"min.mean": min_mean},
    )
    size_factors = np.asarray(size_factors, dtype=float)

    if not np.all(np.isfinite(size_factors)) or (size_factors <= 0).any():
        n_bad = int((~np.isfinite(size_factors) | (size_factors <= 0)).sum())
        raise ValueError(
            f"scran returned {n_bad} non-positive size factors; "
            "filter low-quality cells more strictly or lower min_mean"
        )

    return size_factors


def normalize(adata, method="scran", target_sum=1e4, cluster_resolution=0.5):
    """Normalize and log-transform counts

    Raw counts are kept in ``layers["counts"]`` and the per-cell scaling in
    ``obs["size_factors"]``.

    Args:
        adata: AnnData object with raw counts in ``X``
        method: "scran" (deconvolution, needs R) or "total" (counts per 10k)
        target_sum: Target library size for the "total" method
        cluster_resolution: Pre-clustering resolution for the "scran" method

    Returns:
        Normalized AnnData object
    """
    print(f"Normalizing data ({method})...")

    adata.layers["counts"] = adata.X.copy()

    if method == "total":
        totals = np.asarray(adata.X.sum(axis=1)).ravel()
        adata.obs["size_factors"] = totals / target_sum
        sc.pp.normalize_total(adata, target_sum=target_sum)
    elif method == "scran":
        size_factors = compute_scran_size_factors(
            adata, cluster_resolution=cluster_resolution
        )
        adata.obs["size_factors"] = size_factors
        if sparse.issparse(adata.X):
            adata.X = sparse.csr_matrix(sparse.diags(1.0 / size_factors) @ adata.X)
        else:
            adata.X = np.asarray(adata.X, dtype=float) / size_factors[:, None]
        print(
            f"  Size factors: median {np.median(size_factors):.2f} "
            f"(range {size_factors.min():.2f} - {size_factors.max():.2f})"
        )
    else:
        raise ValueError(f"Unknown normalization method: {method}")

    sc.pp.log1p(adata)

    return adata


def select_variable_genes(adata, n_top_genes=2000, batch_key=None):
    """Flag highly variable genes on log-normalized data

    All genes stay in the object; PCA uses only the flagged ones.
    """
    print("Finding highly variable genes...")

    n_top_genes = min(int(n_top_genes), adata.n_vars)
    sc.pp.highly_variable_genes(adata, n_top_genes=n_top_genes, batch_key=batch_key)

    print(f"  {int(adata.var['highly_variable'].sum())} highly variable genes")

    return adata


def run_pca(adata, n_comps=50, max_value=10):
    """Scale the highly variable genes and run PCA

    Scaling happens on a copy, so ``X`` keeps log-normalized values for
    marker analysis and scoring.
    """
    print("Running PCA...")

    hvg = adata[:, adata.var["highly_variable"].to_numpy()].copy()
    sc.pp.scale(hvg, max_value=max_value)
    n_comps = min(int(n_comps), hvg.n_vars - 1, hvg.n_obs - 1)
    sc.tl.pca(hvg, svd_solver="arpack", n_comps=n_comps)

    adata.obsm["X_pca"] = hvg.obsm["X_pca"]
    adata.uns["pca"] = hvg.uns["pca"]

    return adata


def run_pca_umap_clustering(
    adata,
    n_pcs=30,
    n_neighbors=15,
    resolution=0.8,
    save_dir=None,
    auto_resolution=False,
    resolution_grid=None,
    min_cluster_size=20,
    random_state=0,
):
    """Run PCA, UMAP and Leiden clustering

    Args:
        adata: Normalized AnnData object with ``var["highly_variable"]``
        n_pcs: Number of principal components used for the kNN graph
        n_neighbors: k for the kNN graph
        resolution: Leiden resolution (ignored when ``auto_resolution``)
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
        auto_resolution: Sweep resolutions and pick one by silhouette
        resolution_grid: Resolutions for the sweep
        min_cluster_size: Clusters smaller than this count as "small" in the sweep
        random_state: Random seed for UMAP and Leiden

    Returns:
        AnnData object with embeddings and ``obs["leiden"]``
    """
    adata = run_pca(adata)

    if save_dir:
        sc.pl.pca_variance_ratio(adata, n_pcs=adata.obsm["X_pca"].shape[1], log=True, show=False)
        fig = plt.gcf()
        fig.savefig(save_dir / "pca_elbow_plot.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/pca_elbow_plot.png")
        plt.close(fig)

    n_pcs = min(int(n_pcs), adata.obsm["X_pca"].shape[1])

    print("Computing neighborhood graph...")
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, n_pcs=n_pcs, random_state=random_state)

    print("Running UMAP...")
    sc.tl.umap(adata, random_state=random_state)

    print("Clustering...")
    if auto_resolution:
        resolution = choose_leiden_resolution(
            adata,
            resolution_grid=resolution_grid,
            min_cluster_size=min_cluster_size,
            save_dir=save_dir,
            n_pcs=n_pcs,
        )
        adata.uns["leiden_optimal_resolution"] = float(resolution)
        print(f"Chosen Leiden resolution: {resolution}")

    sc.tl.leiden(adata, resolution=float(resolution), random_state=random_state)
    print(f"  {adata.obs['leiden'].nunique()} clusters at resolution {resolution}")

    return adata


def plot_embeddings(
    adata, color=("leiden", "orig.ident", "condition"), save_dir=None, filename="umap_embeddings.png"
):
    """Plot UMAP embeddings

    Args:
        adata: AnnData object with UMAP coordinates
        color: obs columns to color by; missing columns are skipped
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
        filename: File name inside save_dir
    """
    print("Plotting embeddings...")

    keys = [key for key in color if key in adata.obs]
    if not keys:
        print("  No requested columns found in adata.obs")
        return

    fig, axes = plt.subplots(1, len(keys), figsize=(6 * len(keys), 5), squeeze=False)

    for ax, key in zip(axes[0], keys):
        sc.pl.umap(
            adata,
            color=key,
            legend_loc="on data" if key == "leiden" else "right margin",
            title=key,
            ax=ax,
            show=False,
        )

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / filename, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/{filename}")
        plt.close(fig)
    else:
        plt.show()


def choose_leiden_resolution(
    adata,
    resolution_grid=None,
    min_cluster_size=20,
    save_dir=None,
    n_pcs=None,
):
    """Sweep Leiden resolutions and pick a robust choice.

    Strategy:
    - Compute Leiden for a grid of resolutions on the existing kNN graph
    - Evaluate silhouette on PCA space and fraction of cells in small clusters
    - Select the resolution with highest silhouette; among ties within 0.02 of max,
      prefer lower small-cluster fraction, then fewer clusters, then lower resolution

    Side effects:
    - Adds columns `leiden_{res}` to `adata.obs` for each tested resolution
    - Writes sweep metrics CSV and clustree-compatible labels CSV if `save_dir` set
    - Saves diagnostic plot of silhouette and number of clusters versus resolution

    Returns:
    - chosen resolution (float)
    """
    if resolution_grid is None:
        resolution_grid = np.round(np.arange(0.2, 2.05, 0.1), 2)

    X = adata.obsm["X_pca"]
    if n_pcs is not None:
        X = X[:, :n_pcs]

    metrics = []
    label_cols = []
    for res in resolution_grid:
        key = f"leiden_{res:.2f}"
        sc.tl.leiden(adata, resolution=float(res), key_added=key)
        labels = adata.obs[key].astype(str)

        n_clusters = labels.nunique()
        small_frac = 0.0
        sil = np.nan
        if 1 < n_clusters < len(labels):
            counts = labels.value_counts()
            small_frac = float(
                counts[counts < max(2, int(min_cluster_size))].sum() / len(labels)
            )
            sil = float(silhouette_score(X, labels))

        metrics.append(
            {
                "resolution": float(res),
                "n_clusters": int(n_clusters),
                "silhouette": sil,
                "small_cluster_fraction": small_frac,
            }
        )
        label_cols.append(key)

    metrics_df = pd.DataFrame(metrics)

    if metrics_df["silhouette"].notna().any():
        max_sil = metrics_df["silhouette"].max()
        near = metrics_df[(max_sil - metrics_df["silhouette"]) <= 0.02]
        chosen = near.sort_values(
            by=["small_cluster_fraction", "n_clusters", "resolution"]
        ).iloc[0]
    else:
        # No resolution split the graph: take the lowest
        chosen = metrics_df.sort_values("resolution").iloc[0]

    chosen_res = float(chosen["resolution"])

    if save_dir:
        save_dir = Path(save_dir)
        save_dir.mkdir(parents=True, exist_ok=True)
        metrics_path = save_dir / "leiden_resolution_sweep.csv"
        metrics_df.to_csv(metrics_path, index=False)

        clustree_df = adata.obs[label_cols].copy()
        clustree_df.insert(0, "cell", adata.obs_names)
        clustree_df.to_csv(save_dir / "clustree_leiden_labels.csv", index=False)

        fig, ax1 = plt.subplots(figsize=(7, 4))
        ax2 = ax1.twinx()
        ax1.plot(
            metrics_df["resolution"], metrics_df["silhouette"], "-o", color="#1f77b4"
        )
        ax2.plot(
            metrics_df["resolution"], metrics_df["n_clusters"], "-s", color="#ff7f0e"
        )
        ax1.set_xlabel("Leiden resolution")
        ax1.set_ylabel("Silhouette (PCA)", color="#1f77b4")
        ax2.set_ylabel("# clusters", color="#ff7f0e")
        ax1.axvline(chosen_res, color="gray", linestyle="--", linewidth=1)
        fig.tight_layout()
        fig.savefig(save_dir / "leiden_sweep_diagnostics.png", dpi=300, bbox_inches="tight")
        plt.close(fig)
        print(f"  Saved: {metrics_path}")
        print(f"  Saved: {save_dir}/clustree_leiden_labels.csv")
        print(f"  Saved: {save_dir}/leiden_sweep_diagnostics.png")

    return chosen_res
