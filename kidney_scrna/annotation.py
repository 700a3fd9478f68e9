#!/usr/bin/env python3
"""
Cell type annotation utilities for the mouse kidney scRNA-seq analysis
Handles marker gene analysis, score-based labels, and manual cluster mapping
"""

import scanpy as sc
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

# Module-level constants: single sources of truth
MARKER_GENES = {
    # Proximal tubule and its segments
    "PT": ["Lrp2", "Slc34a1", "Cubn", "Hnf4a"],
    "PT_S1": ["Slc5a2", "Slc5a12", "Spp2"],
    "PT_S2": ["Slc22a6", "Slc13a3", "Fxyd2"],
    "PT_S3": ["Slc7a13", "Atp11a", "Cyp7b1"],
    "Injured_PT": ["Havcr1", "Lcn2", "Krt20", "Vcam1"],
    # Distal nephron
    "LOH": ["Slc12a1", "Umod", "Cldn16"],
    "DCT": ["Slc12a3", "Pvalb", "Trpm6"],
    "CNT": ["Calb1", "Slc8a1", "Trpv5"],
    # Collecting duct
    "PC": ["Aqp2", "Scnn1g", "Fxyd4"],
    "IC": ["Atp6v1g3", "Atp6v0d2", "Atp6v1b1"],
    "IC_A": ["Slc4a1", "Kit", "Aqp6"],
    "IC_B": ["Slc26a4", "Hmx2"],
    # Glomerulus, vasculature and stroma
    "Podo": ["Nphs1", "Nphs2", "Podxl"],
    "Endo": ["Pecam1", "Emcn", "Kdr", "Flt1"],
    "Fib": ["Pdgfra", "Col1a1", "Dcn"],
    "Peri_SMC": ["Pdgfrb", "Rgs5", "Acta2", "Myh11"],
    # Immune
    "Macro": ["C1qa", "Adgre1", "Cd68"],
    "T": ["Cd3e", "Cd3g", "Trbc2"],
    "B": ["Cd79a", "Cd79b", "Ms4a1"],
    "NK": ["Nkg7", "Gzma", "Klrb1c"],
    "Neutro": ["S100a8", "S100a9", "Retnlg"],
}

MAJOR_LABELS = [
    "PT",
    "LOH",
    "DCT",
    "CNT",
    "PC",
    "IC",
    "Podo",
    "Endo",
    "Fib",
    "Peri_SMC",
    "Macro",
    "T",
    "B",
    "NK",
    "Neutro",
]

# Subtypes scored only within their major type
SUBTYPES = {
    "PT": ["PT_S1", "PT_S2", "PT_S3", "Injured_PT"],
    "IC": ["IC_A", "IC_B"],
}


def map_subtype_to_major(label):
    """Map subtype labels to their major cell type.

    Args:
        label: Cell type label (e.g., "PT_S1", "IC_B", "Podo")

    Returns:
        Major cell type label (e.g., "PT", "IC", or the original label)
    """
    for major, subtypes in SUBTYPES.items():
        if label in subtypes:
            return major
    return label


def _use_raw(adata):
    return getattr(adata, "raw", None) is not None


def _score_labels(adata, labels, marker_genes, use_raw, var_names):
    """Module-score each label with its markers present in the data"""
    score_cols = []
    for lbl in labels:
        genes = [g for g in marker_genes.get(lbl, []) if g in var_names]
        if not genes:
            continue
        score_name = f"score_{lbl}"
        sc.tl.score_genes(adata, gene_list=genes, score_name=score_name, use_raw=use_raw)
        score_cols.append(score_name)
    return score_cols


def _best_with_margin(scores):
    """Index of the best column per row and its lead over the runner-up"""
    top_idx = np.argmax(scores, axis=1)
    best = scores[np.arange(scores.shape[0]), top_idx]
    if scores.shape[1] > 1:
        second_best = np.partition(scores, -2, axis=1)[:, -2]
        lead = best - second_best
    else:
        lead = np.full(scores.shape[0], np.inf)
    return top_idx, lead


def plot_marker_genes(adata, marker_genes=MARKER_GENES, groupby="leiden", save_dir=None):
    """Plot marker genes across clusters

    Args:
        adata: AnnData object with clustering results
        marker_genes: Dictionary of cell type markers
        groupby: Column in adata.obs to group by
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    available_markers = []
    for genes in marker_genes.values():
        available_markers.extend(g for g in genes if g in adata.var_names)

    if not available_markers:
        print("  No marker genes found in the data")
        return

    # Dedupe while preserving order
    available_markers = list(dict.fromkeys(available_markers))
    sc.pl.dotplot(
        adata,
        available_markers,
        groupby=groupby,
        standard_scale="var",
        figsize=(max(8, len(available_markers) * 0.3), 8),
        show=False,
    )
    plt.xticks(rotation=45, ha="right")

    if save_dir:
        plt.savefig(save_dir / "marker_genes_dotplot.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/marker_genes_dotplot.png")
        plt.close()
    else:
        plt.show()


def compute_top_markers_per_cluster(
    adata,
    groupby="leiden",
    method="wilcoxon",
    n_top=30,
    pval_adj_cutoff=None,
    save_dir=None,
):
    """Compute top marker genes per cluster using differential expression.

    Args:
        adata: AnnData object with clustering results.
        groupby: Column in adata.obs to group by (default: "leiden").
        method: DE method passed to scanpy (e.g., "wilcoxon", "t-test").
        n_top: Number of top genes to rank per group.
        pval_adj_cutoff: Optional adjusted p-value cutoff to filter results.
        save_dir: Optional Path to save a CSV summary.

    Returns:
        Pandas DataFrame with ranked markers across all groups.
    """
    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")

    sc.tl.rank_genes_groups(
        adata,
        groupby=groupby,
        method=method,
        n_genes=int(n_top),
        pts=True,
        use_raw=_use_raw(adata),
    )

    markers_df = sc.get.rank_genes_groups_df(adata, None)
    if "pvals_adj" in markers_df.columns and pval_adj_cutoff is not None:
        markers_df = markers_df[markers_df["pvals_adj"] <= float(pval_adj_cutoff)]

    if save_dir is not None:
        out_csv = save_dir / "top_markers_by_cluster.csv"
        markers_df.to_csv(out_csv, index=False)
        print(f"  Saved: {out_csv}")

    return markers_df


def compare_top_markers_to_expected(
    adata,
    markers_df=None,
    top_n=10,
    panels=None,
    save_dir=None,
):
    """Compare top DE genes per cluster with expected marker panels.

    Builds overlap metrics between each cluster's top-N DE genes and each
    expected marker gene panel.

    Args:
        adata: AnnData with DE results in .uns["rank_genes_groups"] or provide markers_df.
        markers_df: Optional DataFrame from sc.get.rank_genes_groups_df(adata, None).
        top_n: Number of top genes per cluster to evaluate.
        panels: Optional dict mapping panel name -> list of genes. Defaults to MARKER_GENES.
        save_dir: Optional Path to write CSVs and a precision heatmap.

    Returns:
        A tuple of (rows, precision_matrix) where rows is a list of dicts
        usable as rows for a DataFrame, and precision_matrix is a dict of
        {group: {panel: precision}}.
    """
    if panels is None:
        panels = MARKER_GENES

    panel_to_genes = {k: set(v) for k, v in panels.items()}

    if markers_df is None:
        markers_df = sc.get.rank_genes_groups_df(adata, None)

    if "scores" in markers_df.columns:
        sort_key = "scores"
    elif "logfoldchanges" in markers_df.columns:
        sort_key = "logfoldchanges"
    else:
        raise KeyError("markers_df must contain 'scores' or 'logfoldchanges' column")

    # Build top-N gene sets per group
    groups = sorted(markers_df["group"].astype(str).unique())
    group_to_top = {}
    for g in groups:
        sub = markers_df[markers_df["group"].astype(str) == g]
        sub = sub.sort_values(sort_key, ascending=False).head(int(top_n))
        group_to_top[g] = set(sub["names"].tolist())

    rows = []
    precision_matrix = {g: {} for g in groups}
    for g in groups:
        top_set = group_to_top[g]
        for panel_name, panel_genes in panel_to_genes.items():
            overlap = len(top_set & panel_genes)
            precision = overlap / max(1, len(top_set))
            rows.append(
                {
                    "group": g,
                    "panel": panel_name,
                    "overlap": overlap,
                    "top_n": len(top_set),
                    "panel_size": len(panel_genes),
                    "precision": precision,
                    "recall": overlap / max(1, len(panel_genes)),
                    "jaccard": overlap / max(1, len(top_set | panel_genes)),
                }
            )
            precision_matrix[g][panel_name] = precision

    if save_dir is not None:
        long_df = pd.DataFrame(rows)
        out_csv = save_dir / "expected_marker_overlap_long.csv"
        long_df.to_csv(out_csv, index=False)
        print(f"  Saved: {out_csv}")

        mat = long_df.pivot(index="group", columns="panel", values="precision")
        fig, ax = plt.subplots(
            figsize=(max(6, len(mat.columns) * 0.6), max(4, len(mat.index) * 0.4))
        )
        im = ax.imshow(mat.values, aspect="auto", cmap="viridis", vmin=0, vmax=1)
        ax.set_xticks(range(len(mat.columns)))
        ax.set_xticklabels(mat.columns, rotation=45, ha="right")
        ax.set_yticks(range(len(mat.index)))
        ax.set_yticklabels(mat.index)
        ax.set_title("Precision: overlap of top-N vs expected markers")
        fig.colorbar(im, ax=ax).set_label("precision (overlap/top_n)")
        plt.tight_layout()
        out_png = save_dir / "expected_marker_overlap_heatmap.png"
        fig.savefig(out_png, dpi=300, bbox_inches="tight")
        print(f"  Saved: {out_png}")
        plt.close(fig)

    return rows, precision_matrix


def assign_celltypes_by_scores(
    adata,
    marker_genes=MARKER_GENES,
    margin=0.05,
    major_labels=MAJOR_LABELS,
    mode="cell",
    cluster_key="leiden",
):
    """Assign cell types using module scores with a confidence margin.

    Two-stage approach so that segment markers do not compete with the
    major types:
    1. Score only major types (PT, LOH, PC, Endo, ...) and give every cell
       (or every cluster in "cluster" mode) its best-scoring type.
    2. Within PT and IC, score the subtypes listed in ``SUBTYPES`` and store
       the winner in ``celltype_detail``.

    A label is "high" confidence when best - second_best >= margin at both
    stages, otherwise "low".

    Args:
        adata: AnnData object
        marker_genes: Dictionary of cell type markers
        margin: Confidence margin between top and second-best scores
        major_labels: Major cell type labels scored in stage 1
        mode: "cell" for per-cell labels, "cluster" to label whole clusters
            by their median score
        cluster_key: Cluster column used in "cluster" mode

    Creates columns:
        celltype: Major cell type
        celltype_detail: Subtype where one applies, else the major type
        annotation_confidence: "high" or "low"
    """
    if mode not in ("cell", "cluster"):
        raise ValueError(f"Unknown annotation mode: {mode}")
    if mode == "cluster" and cluster_key not in adata.obs:
        raise KeyError(f"Cluster key '{cluster_key}' not found in adata.obs")

    use_raw = _use_raw(adata)
    var_names = adata.raw.var_names if use_raw else adata.var_names

    print(f"Stage 1: Assigning major cell types ({mode} level)...")
    score_cols = _score_labels(adata, major_labels, marker_genes, use_raw, var_names)
    if not score_cols:
        print("  No marker genes found; skipping annotation")
        return

    labels = np.array([c.replace("score_", "") for c in score_cols])
    winners, confident = _assign_by_scores(adata, score_cols, labels, margin, mode, cluster_key)

    adata.obs["celltype"] = winners
    adata.obs["celltype_detail"] = winners
    adata.obs["annotation_confidence"] = np.where(confident, "high", "low")

    print(f"  High confidence: {confident.sum():,} cells ({confident.mean()*100:.1f}%)")
    print(f"  Low confidence: {(~confident).sum():,} cells ({(~confident).mean()*100:.1f}%)")

    print("\nStage 2: Refining subtypes...")
    for major, subtypes in SUBTYPES.items():
        mask = (adata.obs["celltype"] == major).to_numpy()
        if mask.sum() == 0:
            continue
        _refine_subtypes(
            adata, mask, major, subtypes, marker_genes, margin, use_raw, var_names,
            mode, cluster_key,
        )

    for col in ("celltype", "celltype_detail"):
        adata.obs[col] = pd.Categorical(adata.obs[col].astype(str))

    print("\nFinal cell type distribution:")
    for ct, count in adata.obs["celltype"].value_counts().items():
        print(f"  {ct}: {count:,}")


def _assign_by_scores(adata, score_cols, labels, margin, mode, cluster_key, mask=None):
    """Per-cell winning label and confidence, optionally aggregated per cluster"""
    obs = adata.obs if mask is None else adata.obs.loc[mask]

    if mode == "cluster":
        grouped = obs.groupby(cluster_key, observed=True)[score_cols].median()
        top_idx, lead = _best_with_margin(grouped.to_numpy())
        cluster_label = pd.Series(labels[top_idx], index=grouped.index.astype(str))
        cluster_conf = pd.Series(lead >= margin, index=grouped.index.astype(str))
        clusters = obs[cluster_key].astype(str)
        return (
            clusters.map(cluster_label).to_numpy(),
            clusters.map(cluster_conf).to_numpy(dtype=bool),
        )

    top_idx, lead = _best_with_margin(obs[score_cols].to_numpy())
    return labels[top_idx], lead >= margin


def _refine_subtypes(
    adata, mask, major, subtypes, marker_genes, margin, use_raw, var_names, mode, cluster_key
):
    """Refine one major cell type into its subtypes"""
    score_cols = _score_labels(adata, subtypes, marker_genes, use_raw, var_names)
    if not score_cols:
        return

    labels = np.array([c.replace("score_", "") for c in score_cols])
    winners, confident = _assign_by_scores(
        adata, score_cols, labels, margin, mode, cluster_key, mask=mask
    )

    detail = adata.obs["celltype_detail"].astype(str).to_numpy()
    detail[mask] = winners
    adata.obs["celltype_detail"] = detail

    # A low-confidence subtype downgrades the cell
    conf = adata.obs["annotation_confidence"].to_numpy().copy()
    idx = np.where(mask)[0]
    conf[idx[~confident]] = "low"
    adata.obs["annotation_confidence"] = conf

    print(
        f"  {major}: {confident.sum():,} high confidence, "
        f"{(~confident).sum():,} low confidence subtypes ({mask.sum():,} total)"
    )


def apply_cluster_annotations(
    adata, mapping, cluster_key="leiden", key_added="celltype", unassigned="Unassigned"
):
    """Label cells from a manual cluster -> cell type mapping.

    Args:
        adata: AnnData object with clustering results
        mapping: Dict of cluster id -> cell type; keys are compared as strings
        cluster_key: Cluster column in adata.obs
        key_added: Column to write the labels to
        unassigned: Label for clusters absent from the mapping

    Raises:
        KeyError: cluster_key is missing, or the mapping names clusters that
            do not exist (usually a stale mapping after re-clustering)
    """
    if cluster_key not in adata.obs:
        raise KeyError(f"Cluster key '{cluster_key}' not found in adata.obs")

    clusters = adata.obs[cluster_key].astype(str)
    mapping = {str(k): v for k, v in mapping.items()}

    present = set(clusters.unique())
    unknown = sorted(set(mapping) - present)
    if unknown:
        raise KeyError(f"Mapping has clusters not found in '{cluster_key}': {unknown}")

    unmapped = sorted(present - set(mapping), key=lambda c: (len(c), c))
    if unmapped:
        print(f"  Warning: clusters without annotation set to '{unassigned}': {unmapped}")

    adata.obs[key_added] = pd.Categorical(clusters.map(mapping).fillna(unassigned))

    print(f"Annotated {len(mapping)} clusters into {adata.obs[key_added].nunique()} labels")
    return adata


def create_cluster_aggregated_labels(
    adata, celltype_col="celltype", cluster_col="leiden", purity_threshold=0.60
):
    """Create cluster-level aggregated cell type labels with mixed cluster detection.

    For each cluster:
    - If dominant cell type is >purity_threshold: assigns that cell type
    - If dominant cell type is <=purity_threshold: labels as "Mixed" and stores top 2-3 cell types

    Args:
        adata: AnnData object with cell type annotations
        celltype_col: Column name containing cell type labels
        cluster_col: Column name containing cluster labels
        purity_threshold: Threshold for cluster purity (default: 0.60 = 60%)

    Returns:
        List of mixed cluster ids

    Side effects:
        - Adds 'celltype_cluster': cluster-level label ("celltype" or "Mixed")
        - Adds 'celltype_cluster_top_types': top 2-3 cell types for each cluster
        - Adds 'cluster_purity': proportion of dominant cell type in each cluster
    """
    for col in (celltype_col, cluster_col):
        if col not in adata.obs:
            raise KeyError(f"Column '{col}' not found in adata.obs")

    composition = pd.crosstab(
        adata.obs[cluster_col].astype(str),
        adata.obs[celltype_col].astype(str),
        normalize="index",
    )

    dominant = composition.idxmax(axis=1)
    dominant_prop = composition.max(axis=1)

    top_types = {}
    cluster_labels = {}
    mixed_clusters = []
    for cluster_id in composition.index:
        sorted_types = composition.loc[cluster_id].sort_values(ascending=False)
        # Types with >5% representation, formatted "Type1 (30.0%), Type2 (25.0%)"
        top_types[cluster_id] = ", ".join(
            f"{ct} ({prop*100:.1f}%)" for ct, prop in sorted_types[sorted_types > 0.05].head(3).items()
        )
        if dominant_prop[cluster_id] > purity_threshold:
            cluster_labels[cluster_id] = dominant[cluster_id]
        else:
            cluster_labels[cluster_id] = "Mixed"
            mixed_clusters.append(cluster_id)

    clusters = adata.obs[cluster_col].astype(str)
    adata.obs["celltype_cluster"] = clusters.map(cluster_labels)
    adata.obs["celltype_cluster_top_types"] = clusters.map(top_types)
    adata.obs["cluster_purity"] = clusters.map(dominant_prop).astype(float)

    print(f"\n{'='*60}")
    print("CLUSTER PURITY ANALYSIS")
    print(f"{'='*60}")
    print(f"Purity threshold: {purity_threshold*100:.0f}%")
    print(f"Pure clusters: {len(cluster_labels) - len(mixed_clusters)}")
    print(f"Mixed clusters: {len(mixed_clusters)}")

    for cluster_id in mixed_clusters:
        print(f"\nCluster {cluster_id}: {dominant[cluster_id]} ({dominant_prop[cluster_id]*100:.1f}%)")
        print(f"  Top cell types: {top_types[cluster_id]}")
        print(f"  Total cells: {(clusters == cluster_id).sum():,}")

    return mixed_clusters


def celltype_proportions(adata, groupby="orig.ident", celltype_col="celltype"):
    """Fraction of each cell type within each group (rows sum to 1)"""
    return pd.crosstab(
        adata.obs[groupby].astype(str), adata.obs[celltype_col].astype(str), normalize="index"
    )


def plot_cell_type_summary(adata, groupby="orig.ident", celltype_col="celltype", save_dir=None):
    """Plot summary of cell types across samples

    Args:
        adata: AnnData object with cell type annotations
        groupby: Sample column for the x axis
        celltype_col: Cell type column
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.

    Returns:
        DataFrame of cell counts (groups x cell types)
    """
    celltype_counts = pd.crosstab(
        adata.obs[groupby].astype(str), adata.obs[celltype_col].astype(str)
    )

    fig, ax = plt.subplots(figsize=(12, 6))
    celltype_counts.plot(kind="bar", stacked=True, ax=ax)
    ax.set_title("Cell type distribution across samples")
    ax.set_xlabel("Sample")
    ax.set_ylabel("Number of cells")
    plt.xticks(rotation=45, ha="right")
    ax.legend(bbox_to_anchor=(1.05, 1), loc="upper left")
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "celltype_distribution.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/celltype_distribution.png")
        plt.close(fig)
    else:
        plt.show()

    print("\nCell type summary:")
    print(adata.obs[celltype_col].value_counts().sort_index())

    return celltype_counts
