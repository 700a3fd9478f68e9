#!/usr/bin/env python3
"""
Quality control utilities for the kidney scRNA-seq analysis
Handles QC metrics calculation, doublet detection, and filtering
"""

import numpy as np
import pandas as pd
import scanpy as sc
import matplotlib.pyplot as plt
import seaborn as sns
import scrublet as scr

from kidney_scrna.qc_filters import (
    CELL_FILTERS,
    DOUBLET_PARAMS,
    GENE_FILTERS,
    GENE_PATTERNS,
)

QC_METRICS = ["n_genes_by_counts", "total_counts", "percent_mt", "percent_ribo", "percent_hb"]


def calculate_qc_metrics(adata):
    """Calculate QC metrics

    Args:
        adata: AnnData object with raw counts in ``X``

    Returns:
        AnnData object with QC metrics added
    """
    print("Calculating QC metrics...")

    adata.var["mt"] = adata.var_names.str.startswith(GENE_PATTERNS["mt_pattern"])
    adata.var["ribo"] = adata.var_names.str.match(GENE_PATTERNS["ribo_pattern"])
    adata.var["hb"] = adata.var_names.str.match(GENE_PATTERNS["hb_pattern"])

    sc.pp.calculate_qc_metrics(
        adata, qc_vars=["mt", "ribo", "hb"], percent_top=None, log1p=False, inplace=True
    )

    # Keep the column names used throughout the pipeline
    adata.obs["percent_mt"] = adata.obs["pct_counts_mt"]
    adata.obs["percent_ribo"] = adata.obs["pct_counts_ribo"]
    adata.obs["percent_hb"] = adata.obs["pct_counts_hb"]

    print(f"  Mitochondrial genes: {int(adata.var['mt'].sum())}")
    print(f"  Ribosomal genes: {int(adata.var['ribo'].sum())}")
    print(f"  Hemoglobin genes: {int(adata.var['hb'].sum())}")

    return adata


def plot_qc_metrics(adata, save_dir=None):
    """Plot QC metrics

    Args:
        adata: AnnData object with QC metrics
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting QC metrics...")

    qc_data = adata.obs[QC_METRICS]
    titles = {
        "n_genes_by_counts": "Genes per cell",
        "total_counts": "Total counts per cell",
        "percent_mt": "Mitochondrial %",
        "percent_ribo": "Ribosomal %",
        "percent_hb": "Hemoglobin %",
    }
    thresholds = {
        "n_genes_by_counts": [CELL_FILTERS["min_genes"], CELL_FILTERS["max_genes"]],
        "total_counts": [CELL_FILTERS["min_counts"], CELL_FILTERS["max_counts"]],
        "percent_mt": [CELL_FILTERS["max_mt_pct"]],
        "percent_ribo": [CELL_FILTERS["max_ribo_pct"]],
        "percent_hb": [CELL_FILTERS["max_hb_pct"]],
    }

    fig, axes = plt.subplots(1, len(QC_METRICS), figsize=(4 * len(QC_METRICS), 5))
    for metric, ax in zip(QC_METRICS, axes):
        sns.violinplot(data=qc_data, y=metric, ax=ax, color="skyblue", inner="box")
        for value in thresholds[metric]:
            if value is not None:
                ax.axhline(y=value, color="red", linestyle="--", alpha=0.5)
        ax.set_title(titles[metric])
        ax.set_xlabel("")
        ax.set_ylabel("")
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "qc_violin_plots.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/qc_violin_plots.png")
        plt.close(fig)
    else:
        plt.show()

    fig, axes = plt.subplots(1, 2, figsize=(12, 5))

    sc.pl.scatter(adata, x="total_counts", y="percent_mt", ax=axes[0], show=False)
    sc.pl.scatter(
        adata, x="total_counts", y="n_genes_by_counts", ax=axes[1], show=False
    )

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "qc_scatter_plots.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/qc_scatter_plots.png")
        plt.close(fig)
    else:
        plt.show()


def compare_distributions(adata, groupby="orig.ident", save_dir=None):
    """Create violin plots comparing QC distributions across groups

    Args:
        adata: AnnData object
        groupby: Column to group by (e.g., 'orig.ident', 'condition')
        save_dir: Directory to save plots
    """
    plot_data = adata.obs[[groupby] + QC_METRICS[:4]].copy()

    fig, axes = plt.subplots(2, 2, figsize=(15, 10))
    axes = axes.flatten()

    metrics = [
        ("n_genes_by_counts", "Genes per cell"),
        ("total_counts", "Total counts per cell"),
        ("percent_mt", "Mitochondrial %"),
        ("percent_ribo", "Ribosomal %"),
    ]

    for idx, (metric, title) in enumerate(metrics):
        sns.violinplot(data=plot_data, x=groupby, y=metric, ax=axes[idx])
        axes[idx].set_title(title)
        axes[idx].set_xlabel("")
        axes[idx].tick_params(axis="x", rotation=45)

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / f"violin_by_{groupby}.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/violin_by_{groupby}.png")
        plt.close(fig)
    else:
        plt.show()

    return fig


def detect_doublets(
    adata,
    sample_col="orig.ident",
    expected_doublet_rate=DOUBLET_PARAMS["expected_doublet_rate"],
    manual_threshold=None,
    min_cells_per_sample=DOUBLET_PARAMS["min_cells_per_sample"],
    save_dir=None,
):
    """Detect doublets with Scrublet, one sample at a time

    Args:
        adata: AnnData object with raw counts (after basic QC filtering)
        sample_col: Column name for sample identification
        expected_doublet_rate: Expected doublet rate
        manual_threshold: If set, use this threshold instead of Scrublet's
            automatic one. Scrublet's threshold can fail on unimodal score
            distributions; then ``DOUBLET_PARAMS["manual_threshold"]`` is used.
        min_cells_per_sample: Samples with fewer cells are skipped
        save_dir: Directory to save doublet score histograms (optional)

    Returns:
        AnnData object with ``doublet_score`` and ``predicted_doublet`` in obs
    """
    print("Detecting doublets with Scrublet...")

    all_scores = np.zeros(adata.n_obs)
    all_predictions = np.zeros(adata.n_obs, dtype=bool)
    thresholds = {}

    for sample in adata.obs[sample_col].unique():
        mask = (adata.obs[sample_col] == sample).to_numpy()
        n_cells = int(mask.sum())
        print(f"Processing sample: {sample}")

        if n_cells < min_cells_per_sample:
            print(f"  Skipping - only {n_cells} cells")
            continue

        scrub = scr.Scrublet(
            adata.X[mask].copy(), expected_doublet_rate=expected_doublet_rate
        )
        doublet_scores, predicted_doublets = scrub.scrub_doublets(
            min_counts=DOUBLET_PARAMS["min_counts"],
            min_cells=DOUBLET_PARAMS["min_cells"],
            min_gene_variability_pctl=DOUBLET_PARAMS["min_gene_variability_pctl"],
            n_prin_comps=min(DOUBLET_PARAMS["n_prin_comps"], n_cells - 1),
            verbose=False,
        )

        if manual_threshold is not None:
            threshold = manual_threshold
        elif predicted_doublets is None:
            threshold = DOUBLET_PARAMS["manual_threshold"]
            print(f"  Warning: no automatic threshold found, using {threshold:.2f}")
        else:
            threshold = scrub.threshold_
        predicted_doublets = doublet_scores > threshold

        all_scores[mask] = doublet_scores
        all_predictions[mask] = predicted_doublets
        thresholds[sample] = threshold

        n_doublets = int(predicted_doublets.sum())
        print(f"  Cells: {n_cells}")
        print(f"  Threshold: {threshold:.3f}")
        print(f"  Doublets: {n_doublets} ({n_doublets / n_cells * 100:.1f}%)")

    adata.obs["doublet_score"] = all_scores
    adata.obs["predicted_doublet"] = all_predictions

    summary = adata.obs.groupby(sample_col, observed=True).agg(
        n_cells=("predicted_doublet", "size"),
        n_doublets=("predicted_doublet", "sum"),
    )
    summary["pct_doublets"] = (summary["n_doublets"] / summary["n_cells"] * 100).round(1)
    print("\nPer-sample summary:")
    print(summary)

    if save_dir and thresholds:
        _plot_doublet_histograms(adata, sample_col, thresholds, save_dir)

    return adata


def _plot_doublet_histograms(adata, sample_col, thresholds, save_dir):
    n = len(thresholds)
    n_cols = min(4, n)
    n_rows = int(np.ceil(n / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, figsize=(4 * n_cols, 3 * n_rows), squeeze=False)
    axes = axes.flatten()

    for ax, (sample, threshold) in zip(axes, thresholds.items()):
        scores = adata.obs.loc[adata.obs[sample_col] == sample, "doublet_score"]
        ax.hist(scores, bins=50, alpha=0.7, edgecolor="black")
        ax.axvline(threshold, color="red", linestyle="--", label=f"Threshold: {threshold:.2f}")
        ax.set_title(str(sample))
        ax.set_xlabel("Doublet Score")
        ax.legend()

    for ax in axes[n:]:
        ax.axis("off")

    plt.tight_layout()
    fig.savefig(save_dir / "doublet_score_histograms.png", dpi=300, bbox_inches="tight")
    print(f"  Saved: {save_dir}/doublet_score_histograms.png")
    plt.close(fig)


def basic_qc_mask(
    obs,
    min_genes=CELL_FILTERS["min_genes"],
    max_genes=CELL_FILTERS["max_genes"],
    max_mt_pct=CELL_FILTERS["max_mt_pct"],
):
    """Boolean Series of cells passing the gene-count and mitochondrial filters"""
    keep = (obs["n_genes_by_counts"] >= min_genes) & (obs["n_genes_by_counts"] < max_genes)
    keep &= obs["percent_mt"] < max_mt_pct
    return keep


def filter_cells_and_genes(
    adata,
    min_genes=CELL_FILTERS["min_genes"],
    max_genes=CELL_FILTERS["max_genes"],
    max_mt_pct=CELL_FILTERS["max_mt_pct"],
    min_counts=CELL_FILTERS["min_counts"],
    max_counts=CELL_FILTERS["max_counts"],
    max_ribo_pct=CELL_FILTERS["max_ribo_pct"],
    max_hb_pct=CELL_FILTERS["max_hb_pct"],
    min_cells=GENE_FILTERS["min_cells"],
):
    """Apply QC filtering

    Args:
        adata: AnnData object with QC metrics (see ``calculate_qc_metrics``)
        min_genes: Minimum genes per cell
        max_genes: Maximum genes per cell
        max_mt_pct: Maximum mitochondrial percentage
        min_counts: Minimum total counts per cell (optional)
        max_counts: Maximum total counts per cell (optional)
        max_ribo_pct: Maximum ribosomal percentage (optional)
        max_hb_pct: Maximum hemoglobin percentage (optional)
        min_cells: Minimum cells expressing a gene

    Returns:
        Filtered AnnData object
    """
    print("Applying QC filters...")
    print(f"Starting with {adata.n_obs} cells and {adata.n_vars} genes")

    obs = adata.obs
    keep = basic_qc_mask(obs, min_genes=min_genes, max_genes=max_genes, max_mt_pct=max_mt_pct)

    if min_counts is not None:
        keep &= obs["total_counts"] >= min_counts
    if max_counts is not None:
        keep &= obs["total_counts"] <= max_counts
    if max_ribo_pct is not None:
        keep &= obs["percent_ribo"] < max_ribo_pct
    if max_hb_pct is not None and "percent_hb" in obs:
        keep &= obs["percent_hb"] < max_hb_pct

    if "predicted_doublet" in obs:
        n_doublets = int((keep & obs["predicted_doublet"].astype(bool)).sum())
        keep &= ~obs["predicted_doublet"].astype(bool)
        print(f"  Removing {n_doublets} predicted doublets")

    adata = adata[keep.to_numpy()].copy()

    sc.pp.filter_genes(adata, min_cells=min_cells)

    print(f"After filtering: {adata.n_obs} cells and {adata.n_vars} genes")

    return adata


def qc_summary(adata_before, adata_after, sample_col="orig.ident"):
    """Per-sample cell retention after QC filtering"""
    before = adata_before.obs[sample_col].value_counts()
    after = adata_after.obs[sample_col].value_counts()
    summary = pd.DataFrame({"cells_before": before, "cells_after": after}).fillna(0)
    summary = summary.astype(int)
    summary["pct_retained"] = (
        summary["cells_after"] / summary["cells_before"].where(summary["cells_before"] > 0) * 100
    ).round(1)
    summary.index.name = sample_col
    return summary.sort_index()
