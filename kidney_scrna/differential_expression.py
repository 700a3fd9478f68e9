#!/usr/bin/env python3
"""
Differential expression analysis utilities for the kidney scRNA-seq analysis
Handles pseudobulk creation and statistical testing between conditions
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from scipy import sparse, stats
from statsmodels.stats.multitest import multipletests

from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference
from pydeseq2.ds import DeseqStats

DE_PARAMS = {
    "min_cells": 10,  # Minimum cells per sample x cell type pseudobulk
    "min_count": 5,  # Minimum pseudobulk count for a gene to count as expressed
    "min_samples_expr": 2,  # Samples in which a gene must be expressed
    "min_genes": 100,  # Skip cell types with fewer genes after filtering
    "min_samples_per_group": 2,
    "fdr_threshold": 0.05,
    "fc_threshold": 0.5,  # |log2FC|
}

RESULT_COLUMNS = [
    "gene",
    "logFC",
    "P.Value",
    "adj.P.Val",
    "AveExpr",
    "cell_type",
    "contrast",
    "significant",
    "upregulated",
    "downregulated",
]


def create_condition_column(adata, factors=("condition",), order=None, key_added="condition"):
    """Create a condition column by joining one or more sample factors

    Levels are joined with "-" and underscores are replaced by "-", since
    DESeq2 design levels must not contain underscores.

    Args:
        adata: AnnData object
        factors: obs columns to combine (e.g. ("genotype", "treatment"))
        order: Optional level order; the first level is the reference
        key_added: Column to write

    Returns:
        AnnData object with condition column added
    """
    missing = [f for f in factors if f not in adata.obs]
    if missing:
        raise KeyError(f"Condition factors not found in adata.obs: {missing}")

    condition = adata.obs[factors[0]].astype(str)
    for factor in factors[1:]:
        condition = condition + "-" + adata.obs[factor].astype(str)
    condition = condition.str.replace("_", "-", regex=False)

    if order is None:
        order = sorted(condition.unique())
    else:
        order = [str(level).replace("_", "-") for level in order]
        unknown = sorted(set(condition.unique()) - set(order))
        if unknown:
            raise ValueError(f"Condition levels missing from order: {unknown}")

    adata.obs[key_added] = pd.Categorical(condition, categories=order, ordered=True)

    print(f"Conditions: {', '.join(order)}")
    return adata


def default_contrasts(levels):
    """Every level against the first (reference) level

    Returns:
        List of (contrast_name, group1, group2) tuples
    """
    reference = levels[0]
    return [(f"{level}_vs_{reference}", level, reference) for level in levels[1:]]


def create_pseudobulk(
    adata,
    sample_col="orig.ident",
    celltype_col="celltype",
    condition_col="condition",
    min_cells=DE_PARAMS["min_cells"],
    layer="counts",
):
    """Create pseudobulk samples by summing raw counts per sample and cell type

    Args:
        adata: AnnData object
        sample_col: Biological replicate column
        celltype_col: Cell type column
        condition_col: Condition column carried into the sample table
        min_cells: Minimum cells required per pseudobulk sample
        layer: Layer holding raw counts (None uses ``X``)

    Returns:
        Tuple of (pseudobulk_df, sample_info_df); pseudobulk_df is genes x samples
    """
    print("Creating pseudobulk samples...")

    for col in (sample_col, celltype_col, condition_col):
        if col not in adata.obs:
            raise KeyError(f"Column '{col}' not found in adata.obs")

    if layer is None:
        X = adata.X
    elif layer in adata.layers:
        X = adata.layers[layer]
    else:
        raise KeyError(f"Layer '{layer}' not found; raw counts are required for pseudobulk")

    group_ids = (
        adata.obs[sample_col].astype(str) + "--" + adata.obs[celltype_col].astype(str)
    )

    pseudobulk_data = []
    sample_info = []
    n_dropped = 0

    for group_id in group_ids.unique():
        mask = (group_ids == group_id).to_numpy()
        n_cells = int(mask.sum())

        if n_cells < min_cells:
            n_dropped += 1
            continue

        group_counts = X[mask].sum(axis=0)
        if sparse.issparse(group_counts) or isinstance(group_counts, np.matrix):
            group_counts = np.asarray(group_counts).ravel()
        pseudobulk_data.append(np.asarray(group_counts).ravel())

        sample_meta = adata.obs.loc[mask].iloc[0]
        sample_info.append(
            {
                "group_id": group_id,
                "sample_id": str(sample_meta[sample_col]),
                "celltype": str(sample_meta[celltype_col]),
                "condition": str(sample_meta[condition_col]),
                "n_cells": n_cells,
            }
        )

    if not pseudobulk_data:
        raise ValueError(f"No sample x cell type group has at least {min_cells} cells")

    pb_df = pd.DataFrame(
        np.vstack(pseudobulk_data).T,
        index=adata.var_names,
        columns=[info["group_id"] for info in sample_info],
    )

    sample_info_df = pd.DataFrame(sample_info)
    if isinstance(adata.obs[condition_col].dtype, pd.CategoricalDtype):
        levels = [str(c) for c in adata.obs[condition_col].cat.categories]
        sample_info_df["condition"] = pd.Categorical(
            sample_info_df["condition"], categories=levels, ordered=True
        )

    print(f"Created {pb_df.shape[1]} pseudobulk samples from {pb_df.shape[0]} genes")
    if n_dropped:
        print(f"  Dropped {n_dropped} groups with fewer than {min_cells} cells")

    return pb_df, sample_info_df


def filter_genes_for_de(pb_df, min_count=5, min_samples=2):
    """Filter genes for differential expression analysis

    Args:
        pb_df: Pseudobulk expression DataFrame
        min_count: Minimum count threshold
        min_samples: Minimum number of samples

    Returns:
        Filtered pseudobulk DataFrame
    """
    print("Filtering genes for DE analysis...")

    # Keep genes expressed above threshold in minimum number of samples
    expressed_mask = (pb_df >= min_count).sum(axis=1) >= min_samples
    pb_filtered = pb_df.loc[expressed_mask]

    print(f"Kept {pb_filtered.shape[0]} genes after filtering")

    return pb_filtered


def _add_significance(results_df, de_params):
    results_df["significant"] = (
        results_df["adj.P.Val"].notna()
        & (results_df["adj.P.Val"] < de_params["fdr_threshold"])
        & (results_df["logFC"].abs() > de_params["fc_threshold"])
    )
    results_df["upregulated"] = results_df["significant"] & (results_df["logFC"] > 0)
    results_df["downregulated"] = results_df["significant"] & (results_df["logFC"] < 0)

    n_sig = results_df["significant"].sum()
    n_up = results_df["upregulated"].sum()
    n_down = results_df["downregulated"].sum()
    print(f"    {n_sig} significant genes ({n_up} up, {n_down} down)")

    return results_df


def run_de_with_deseq2(counts_df, sample_info_df, contrast_name, group1, group2,
                       de_params, cell_type):
    """Run DESeq2 differential expression for a single contrast

    Args:
        counts_df: Count matrix (genes x samples)
        sample_info_df: Sample metadata DataFrame
        contrast_name: Name of the contrast
        group1: First condition
        group2: Second condition (reference)
        de_params: DE parameters dictionary
        cell_type: Cell type being analyzed

    Returns:
        DataFrame with DE results or None
    """
    conditions = sample_info_df["condition"].astype(str)
    contrast_samples = sample_info_df[conditions.isin([group1, group2])].copy()
    contrast_samples["condition"] = contrast_samples["condition"].astype(str)

    n1 = int((contrast_samples["condition"] == group1).sum())
    n2 = int((contrast_samples["condition"] == group2).sum())
    min_per_group = de_params["min_samples_per_group"]
    if n1 < min_per_group or n2 < min_per_group:
        print(f"  Skipping {contrast_name}: {n1} vs {n2} samples (need {min_per_group} per group)")
        return None

    print(f"  Testing {contrast_name} ({n1} vs {n2} samples)")

    contrast_counts = counts_df[contrast_samples["group_id"]]

    # PyDESeq2 expects integer counts as samples x genes
    counts_transposed = pd.DataFrame(
        np.round(contrast_counts.to_numpy()).astype(int).T,
        index=contrast_counts.columns,
        columns=contrast_counts.index,
    )
    metadata_indexed = contrast_samples.set_index("group_id")[["condition"]]

    inference = DefaultInference(n_cpus=1)
    try:
        dds = DeseqDataSet(
            counts=counts_transposed,
            metadata=metadata_indexed,
            design="~condition",
            refit_cooks=True,
            inference=inference,
            quiet=True,
        )
        dds.deseq2()

        stat_res = DeseqStats(
            dds, contrast=["condition", group1, group2], inference=inference, quiet=True
        )
        stat_res.summary()
    except Exception as e:
        print(f"  Error running DESeq2 for {contrast_name}: {e}")
        print("     Try use_deseq2=False to use the t-test method instead")
        return None

    results_df = stat_res.results_df.rename(
        columns={
            "log2FoldChange": "logFC",
            "pvalue": "P.Value",
            "padj": "adj.P.Val",
            "baseMean": "AveExpr",
        }
    )
    results_df["gene"] = results_df.index.astype(str)
    results_df["cell_type"] = cell_type
    results_df["contrast"] = contrast_name
    results_df = _add_significance(results_df, de_params)

    return results_df[RESULT_COLUMNS].reset_index(drop=True)


def run_de_with_ttest(counts_df, sample_info_df, contrast_name, group1, group2,
                      de_params, cell_type):
    """Welch t-test on log-CPM, for when DESeq2 cannot be used

    Arguments and return value as ``run_de_with_deseq2``.
    """
    conditions = sample_info_df["condition"].astype(str)
    mask1 = (conditions == group1).to_numpy()
    mask2 = (conditions == group2).to_numpy()

    min_per_group = de_params["min_samples_per_group"]
    if mask1.sum() < min_per_group or mask2.sum() < min_per_group:
        print(f"  Skipping {contrast_name}: {mask1.sum()} vs {mask2.sum()} samples")
        return None

    print(f"  Testing {contrast_name} ({mask1.sum()} vs {mask2.sum()} samples) [t-test]")

    # Normalize to CPM and log-transform
    lib_sizes = counts_df.sum(axis=0)
    ct_log_cpm = np.log2(counts_df.div(lib_sizes, axis=1) * 1e6 + 1)

    group1_data = ct_log_cpm.loc[:, sample_info_df.loc[mask1, "group_id"]].to_numpy()
    group2_data = ct_log_cpm.loc[:, sample_info_df.loc[mask2, "group_id"]].to_numpy()

    _, pvals = stats.ttest_ind(group1_data, group2_data, axis=1, equal_var=False)
    # Constant genes give NaN
    pvals = np.where(np.isnan(pvals), 1.0, pvals)

    mean1 = group1_data.mean(axis=1)
    mean2 = group2_data.mean(axis=1)

    results_df = pd.DataFrame(
        {
            "gene": ct_log_cpm.index.astype(str),
            "logFC": mean1 - mean2,
            "P.Value": pvals,
            "adj.P.Val": multipletests(pvals, method="fdr_bh")[1],
            "AveExpr": (mean1 + mean2) / 2,
            "cell_type": cell_type,
            "contrast": contrast_name,
        }
    )
    results_df = _add_significance(results_df, de_params)

    return results_df[RESULT_COLUMNS]


def run_de_for_celltype(pb_df, sample_info_df, cell_type, contrasts=None,
                        de_params=DE_PARAMS, use_deseq2=True):
    """Run differential expression analysis for a specific cell type

    Args:
        pb_df: Pseudobulk expression DataFrame (genes x samples)
        sample_info_df: Sample metadata DataFrame
        cell_type: Cell type to analyze
        contrasts: List of (name, group1, group2); None tests every
            condition against the first level
        de_params: Dictionary of DE parameters
        use_deseq2: Whether to use DESeq2 (True) or the t-test (False)

    Returns:
        DataFrame with DE results, or None when nothing could be tested
    """
    print(f"\n{'='*60}")
    print(f"ANALYZING: {cell_type}")
    print(f"{'='*60}")

    ct_samples = sample_info_df[sample_info_df["celltype"] == cell_type].copy()

    if len(ct_samples) < de_params["min_samples_per_group"] * 2:
        print(f"Skipping {cell_type}: Only {len(ct_samples)} samples")
        return None

    ct_counts = filter_genes_for_de(
        pb_df[ct_samples["group_id"]],
        min_count=de_params["min_count"],
        min_samples=de_params["min_samples_expr"],
    )

    if ct_counts.shape[0] < de_params["min_genes"]:
        print(f"Skipping {cell_type}: Only {ct_counts.shape[0]} genes after filtering")
        return None

    print(f"  Analyzing {ct_counts.shape[0]:,} genes across {len(ct_samples)} samples")
    print(f"  Method: {'DESeq2 (negative binomial model)' if use_deseq2 else 't-test on log-CPM'}")

    if contrasts is None:
        if isinstance(ct_samples["condition"].dtype, pd.CategoricalDtype):
            levels = [str(c) for c in ct_samples["condition"].cat.categories]
        else:
            levels = sorted(ct_samples["condition"].astype(str).unique())
        contrasts = default_contrasts(levels)

    run_de = run_de_with_deseq2 if use_deseq2 else run_de_with_ttest

    results = []
    for contrast_name, group1, group2 in contrasts:
        result = run_de(ct_counts, ct_samples, contrast_name, group1, group2, de_params, cell_type)
        if result is not None:
            results.append(result)

    if results:
        return pd.concat(results, ignore_index=True)
    return None


def run_de_all_celltypes(pb_df, sample_info_df, contrasts=None, de_params=DE_PARAMS,
                         use_deseq2=True, cell_types=None):
    """Run ``run_de_for_celltype`` for every cell type in the sample table

    Returns:
        Concatenated DE results (empty DataFrame when no cell type was tested)
    """
    if cell_types is None:
        cell_types = sorted(sample_info_df["celltype"].unique())

    all_results = []
    for cell_type in cell_types:
        result = run_de_for_celltype(
            pb_df, sample_info_df, cell_type,
            contrasts=contrasts, de_params=de_params, use_deseq2=use_deseq2,
        )
        if result is not None:
            all_results.append(result)

    if not all_results:
        print("\nNo cell type had enough samples for DE")
        return pd.DataFrame(columns=RESULT_COLUMNS)

    de_results = pd.concat(all_results, ignore_index=True)
    print(f"\nTotal significant genes: {de_results['significant'].sum():,}")
    return de_results


def plot_de_summary(de_results, save_path=None):
    """Plot number of significant genes per cell type and contrast

    Args:
        de_results: DataFrame with DE results
        save_path: Path to save figure

    Returns:
        DataFrame with counts summary
    """
    print("Plotting DE summary...")

    sig_genes = de_results[de_results["significant"].astype(bool)]
    counts = sig_genes.groupby(["cell_type", "contrast"]).size().reset_index(name="n_genes")

    if counts.empty:
        print("  No significant genes to plot")
        return counts

    heatmap_data = counts.pivot(index="cell_type", columns="contrast", values="n_genes").fillna(0)

    fig, ax = plt.subplots(figsize=(max(6, heatmap_data.shape[1] * 2), max(4, heatmap_data.shape[0] * 0.5)))
    sns.heatmap(heatmap_data, annot=True, fmt="g", cmap="Blues", ax=ax)
    ax.set_title("Number of significant DE genes")
    ax.set_xlabel("Contrast")
    ax.set_ylabel("Cell type")
    plt.xticks(rotation=45, ha="right")
    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()

    return counts


def plot_de_heatmap(pb_df, sample_info_df, de_results, cell_type, contrast,
                    top_n=50, save_path=None):
    """Plot heatmap of top DE genes

    Args:
        pb_df: Pseudobulk expression DataFrame
        sample_info_df: Sample metadata DataFrame
        de_results: DE results DataFrame
        cell_type: Cell type to plot
        contrast: Contrast name
        top_n: Number of top genes to show
        save_path: Path to save figure
    """
    ct_results = de_results[
        (de_results["cell_type"] == cell_type) & (de_results["contrast"] == contrast)
    ]

    if len(ct_results) == 0:
        print(f"No results for {cell_type} - {contrast}")
        return

    top_up = ct_results.nlargest(top_n // 2, "logFC")
    top_down = ct_results.nsmallest(top_n // 2, "logFC")
    top_genes = list(dict.fromkeys(pd.concat([top_up, top_down])["gene"]))

    ct_samples = sample_info_df[sample_info_df["celltype"] == cell_type]
    if isinstance(ct_samples["condition"].dtype, pd.CategoricalDtype):
        ct_samples = ct_samples.sort_values("condition")
    else:
        ct_samples = ct_samples.sort_values(by="condition", key=lambda s: s.astype(str))
    sample_order = ct_samples["group_id"].tolist()

    lib_sizes = pb_df[sample_order].sum(axis=0)
    ct_log_cpm = np.log2(pb_df[sample_order].div(lib_sizes, axis=1) * 1e6 + 1)
    heatmap_data = ct_log_cpm.loc[top_genes]

    fig, ax = plt.subplots(figsize=(12, max(8, len(top_genes) * 0.3)))
    sns.heatmap(
        heatmap_data,
        cmap=sns.diverging_palette(220, 20, as_cmap=True),
        center=heatmap_data.to_numpy().mean(),
        xticklabels=ct_samples["condition"].astype(str).tolist(),
        yticklabels=True,
        cbar_kws={"label": "Log2(CPM + 1)"},
        ax=ax,
    )
    ax.set_title(f"{cell_type} - {contrast}\nTop {len(top_genes)} DE genes",
                 fontsize=14, fontweight="bold")
    ax.set_xlabel("Samples (grouped by condition)", fontsize=12)
    ax.set_ylabel("Genes", fontsize=12)
    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()


def plot_volcano(de_results, cell_type, contrast, fc_threshold=0.5,
                 pval_threshold=0.05, save_path=None):
    """Plot volcano plot for DE results

    Args:
        de_results: DE results DataFrame
        cell_type: Cell type to plot
        contrast: Contrast name
        fc_threshold: Log2FC threshold for coloring
        pval_threshold: Adjusted p-value threshold for coloring
        save_path: Path to save figure
    """
    ct_results = de_results[
        (de_results["cell_type"] == cell_type) & (de_results["contrast"] == contrast)
    ].copy()

    if len(ct_results) == 0:
        print(f"No results for {cell_type} - {contrast}")
        return

    ct_results["neg_log10_pval"] = -np.log10(ct_results["P.Value"].astype(float) + 1e-300)

    padj = ct_results["adj.P.Val"].astype(float)
    ct_results["category"] = "Not significant"
    ct_results.loc[(padj < pval_threshold) & (ct_results["logFC"] > fc_threshold), "category"] = "Upregulated"
    ct_results.loc[(padj < pval_threshold) & (ct_results["logFC"] < -fc_threshold), "category"] = "Downregulated"

    fig, ax = plt.subplots(figsize=(10, 8))

    ns_data = ct_results[ct_results["category"] == "Not significant"]
    ax.scatter(ns_data["logFC"], ns_data["neg_log10_pval"], c="gray", alpha=0.5, s=20, label="Not significant")

    for category, color in (("Upregulated", "red"), ("Downregulated", "blue")):
        data = ct_results[ct_results["category"] == category]
        if len(data) > 0:
            ax.scatter(data["logFC"], data["neg_log10_pval"], c=color, alpha=0.7, s=30,
                       label=f"{category} (n={len(data)})")

    ax.axvline(fc_threshold, color="black", linestyle="--", linewidth=1, alpha=0.5)
    ax.axvline(-fc_threshold, color="black", linestyle="--", linewidth=1, alpha=0.5)

    ax.set_xlabel("Log2 Fold Change", fontsize=12)
    ax.set_ylabel("-Log10(P-value)", fontsize=12)
    ax.set_title(f"{cell_type} - {contrast}\nVolcano Plot", fontsize=14, fontweight="bold")
    ax.legend(loc="best")
    ax.grid(alpha=0.3)
    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()
