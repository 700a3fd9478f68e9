#!/usr/bin/env python3
"""
Pathway analysis utilities for the kidney scRNA-seq analysis
Handles gene set loading, preranked GSEA and over-representation analysis
"""

from pathlib import Path

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import gseapy as gp

from kidney_scrna.signatures import SIGNATURES

GSEA_PARAMS = {
    "min_size": 5,  # Minimum genes of a set present in the ranking
    "max_size": 500,
    "permutation_num": 1000,
    "seed": 42,
    "threads": 4,
    "min_ranked_genes": 15,  # Skip groups with shorter rankings
}

# Enrichr libraries, fetched with organism="Mouse"
GENE_SET_LIBRARIES = {
    "Hallmark": "MSigDB_Hallmark_2020",
    "KEGG": "KEGG_2019_Mouse",
    "GO_BP": "GO_Biological_Process_2021",
}

RANKING_EPS = 1e-300


def load_gene_sets(libraries=GENE_SET_LIBRARIES, gmt_paths=None, include_builtin=True):
    """Load gene sets for pathway analysis

    Args:
        libraries: Dict of collection name -> Enrichr library name
        gmt_paths: Optional GMT files, each loaded as a collection named
            after the file stem
        include_builtin: Add the kidney signatures as collection "Kidney"

    Returns:
        Dictionary of gene sets organized by collection
    """
    print("Loading gene sets...")

    gene_sets = {}

    for collection, library in (libraries or {}).items():
        try:
            gene_sets[collection] = gp.get_library(name=library, organism="Mouse")
        except Exception as e:
            print(f"  Could not load {collection} ({library}): {e}")
            continue
        print(f"  {collection}: {len(gene_sets[collection])} sets")

    for path in gmt_paths or []:
        path = Path(path)
        gene_sets[path.stem] = gp.read_gmt(str(path))
        print(f"  {path.stem}: {len(gene_sets[path.stem])} sets")

    if include_builtin:
        gene_sets["Kidney"] = {name.upper(): list(genes) for name, genes in SIGNATURES.items()}

    return gene_sets


def compute_rank_vector(df, logfc_col="logFC", pval_col="P.Value"):
    """Return a preranked Series indexed by gene symbol.

    Score is logFC * -log10(p). Duplicated genes keep the entry with the
    largest absolute score and ties are broken so the ranking is strictly
    decreasing.
    """
    required_cols = ["gene", logfc_col, pval_col]
    missing = [col for col in required_cols if col not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    clean = df.dropna(subset=required_cols).copy()
    if clean.empty:
        return pd.Series(dtype=float)

    clean["rank_score"] = clean[logfc_col] * -np.log10(
        clean[pval_col].astype(float).clip(lower=RANKING_EPS)
    )

    clean["abs_rank"] = clean["rank_score"].abs()
    clean = (
        clean.sort_values("abs_rank", ascending=False)
        .drop_duplicates(subset="gene", keep="first")
        .sort_values("rank_score", ascending=False)
    )
    ranking = clean.set_index("gene")["rank_score"]

    if ranking.duplicated().any():
        tie_break = ranking.rank(method="first", ascending=False) * 1e-12
        ranking = ranking - tie_break

    return ranking


def label_for_group(cell_type, contrast):
    """Sanitized label for filesystem paths."""
    return f"{cell_type.replace(' ', '_')}__{contrast.replace(' ', '_')}"


def standardize_gsea_columns(df):
    """Lowercase/slugify GSEApy columns and map vendor-specific names to canonical ones."""
    normalized = df.copy()
    normalized.columns = [
        col.strip().lower().replace(" ", "_").replace("-", "_") for col in normalized.columns
    ]

    column_aliases = {
        "term": "pathway",
        "nom_p_val": "pval",
        "p_value": "pval",
        "fdr_q_val": "fdr",
        "adjusted_p_value": "fdr",
        "tag_%": "tag_percent",
        "gene_%": "gene_percent",
        "leading_edge": "lead_genes",
        "genes": "lead_genes",
    }
    for source, target in column_aliases.items():
        if source in normalized.columns and target not in normalized.columns:
            normalized = normalized.rename(columns={source: target})

    for col in ("es", "nes", "pval", "fdr", "fwer_p_val"):
        if col in normalized.columns:
            normalized[col] = pd.to_numeric(normalized[col], errors="coerce")

    return normalized


def _sets_in_size_range(gene_set, genes, min_size, max_size):
    genes = set(genes)
    return sum(
        1 for members in gene_set.values()
        if min_size <= len(genes.intersection(members)) <= max_size
    )


def run_prerank_for_group(ranking, gene_sets, cell_type, contrast, output_dir=None,
                          params=GSEA_PARAMS):
    """Run gseapy.prerank across all gene set collections for a single group.

    Returns:
        List of standardized result DataFrames, one per collection tested
    """
    group_label = label_for_group(cell_type, contrast)
    group_results = []

    if ranking.empty:
        print(f"Skipping {group_label}: no genes after filtering.")
        return group_results

    for collection_name, gene_set in gene_sets.items():
        n_testable = _sets_in_size_range(
            gene_set, ranking.index, params["min_size"], params["max_size"]
        )
        if n_testable == 0:
            print(f"  {group_label} -> {collection_name}: no sets within size limits, skipping")
            continue
        print(f"  {group_label} -> {collection_name} ({n_testable} sets)")

        outdir = None
        if output_dir is not None:
            outdir = Path(output_dir) / group_label / collection_name
            outdir.mkdir(parents=True, exist_ok=True)

        prerank_res = gp.prerank(
            rnk=ranking,
            gene_sets=gene_set,
            min_size=params["min_size"],
            max_size=params["max_size"],
            permutation_num=params["permutation_num"],
            outdir=str(outdir) if outdir is not None else None,
            seed=params["seed"],
            threads=params["threads"],
            no_plot=True,
            verbose=False,
        )

        res_df = prerank_res.res2d.reset_index(drop=True)
        if "Name" in res_df.columns and "Term" in res_df.columns:
            res_df = res_df.drop(columns="Name")
        res_df = standardize_gsea_columns(res_df)

        res_df["cell_type"] = cell_type
        res_df["contrast"] = contrast
        res_df["collection"] = collection_name
        res_df["ranking_size"] = ranking.size
        group_results.append(res_df)

    return group_results


def run_gsea_analysis(de_results, gene_sets, output_dir=None, params=GSEA_PARAMS):
    """Run preranked GSEA for every (cell type, contrast) in the DE results

    Args:
        de_results: DataFrame with differential expression results
        gene_sets: Dictionary of gene sets by collection
        output_dir: Optional directory for per-group GSEApy outputs and the summary CSV
        params: GSEA parameters

    Returns:
        Summary DataFrame with pathway, nes, pval, fdr, lead_genes, cell_type,
        contrast and collection columns (empty when nothing was tested)
    """
    print("Running GSEA analysis...")

    summary_frames = []
    grouped = de_results.groupby(["cell_type", "contrast"])
    print(f"Found {len(grouped)} cell_type/contrast pairs to evaluate.")

    for (cell_type, contrast), group_df in grouped:
        print(f"Processing {cell_type} - {contrast}")
        ranking = compute_rank_vector(group_df)
        if ranking.size < params["min_ranked_genes"]:
            print(f"  Skipping: ranking has only {ranking.size} genes (< {params['min_ranked_genes']}).")
            continue
        summary_frames.extend(
            run_prerank_for_group(ranking, gene_sets, cell_type, contrast, output_dir, params)
        )

    if not summary_frames:
        return pd.DataFrame(
            columns=["pathway", "nes", "pval", "fdr", "lead_genes", "cell_type", "contrast", "collection"]
        )

    summary_df = pd.concat(summary_frames, ignore_index=True)

    if output_dir is not None:
        summary_path = Path(output_dir) / "gsea_summary.csv"
        summary_df.to_csv(summary_path, index=False)
        print(f"  Saved: {summary_path}")

    return summary_df


def run_ora_for_group(genes, gene_sets, background):
    """Over-representation analysis of one gene list against every collection

    Args:
        genes: Genes of interest (e.g. significant upregulated genes)
        gene_sets: Dictionary of gene sets by collection
        background: All genes tested in the DE run

    Returns:
        Standardized DataFrame (pathway, overlap, pval, fdr, lead_genes,
        collection) or None when no collection overlaps the genes
    """
    genes = [g for g in dict.fromkeys(genes) if g in set(background)]
    if not genes:
        return None

    frames = []
    for collection_name, gene_set in gene_sets.items():
        if not any(set(genes).intersection(members) for members in gene_set.values()):
            continue
        enr = gp.enrich(
            gene_list=genes,
            gene_sets=gene_set,
            background=list(background),
            outdir=None,
            verbose=False,
        )
        if enr.res2d is None or enr.res2d.empty:
            continue
        res_df = standardize_gsea_columns(enr.res2d.drop(columns="Gene_set", errors="ignore"))
        res_df["collection"] = collection_name
        frames.append(res_df)

    if not frames:
        return None
    return pd.concat(frames, ignore_index=True)


def run_ora_analysis(de_results, gene_sets):
    """ORA of significant up- and downregulated genes per cell type and contrast

    Returns:
        DataFrame with a ``direction`` column ("up"/"down"), possibly empty
    """
    print("Running over-representation analysis...")

    frames = []
    for (cell_type, contrast), group_df in de_results.groupby(["cell_type", "contrast"]):
        background = group_df["gene"].astype(str).unique()
        for direction, flag in (("up", "upregulated"), ("down", "downregulated")):
            genes = group_df.loc[group_df[flag].astype(bool), "gene"].astype(str)
            if genes.empty:
                continue
            result = run_ora_for_group(genes, gene_sets, background)
            if result is None:
                continue
            result["cell_type"] = cell_type
            result["contrast"] = contrast
            result["direction"] = direction
            frames.append(result)
            print(f"  {cell_type} - {contrast} ({direction}): {len(genes)} genes, "
                  f"{(result['fdr'] < 0.05).sum()} terms at FDR < 0.05")

    if not frames:
        return pd.DataFrame()
    return pd.concat(frames, ignore_index=True)


def plot_gsea_results(gsea_results, cell_type, contrast, top_n=10, fdr_threshold=0.1,
                      save_path=None):
    """Plot top GSEA results for a specific cell type and contrast

    Args:
        gsea_results: DataFrame with GSEA results
        cell_type: Cell type to plot
        contrast: Contrast to plot
        top_n: Number of top pathways to show
        fdr_threshold: Maximum FDR of plotted pathways
        save_path: Path to save figure
    """
    if gsea_results.empty:
        print("No GSEA results to plot")
        return

    subset = gsea_results[
        (gsea_results["cell_type"] == cell_type)
        & (gsea_results["contrast"] == contrast)
        & (gsea_results["fdr"] <= fdr_threshold)
    ].copy()

    if subset.empty:
        print(f"No significant pathways for {cell_type} - {contrast}")
        return

    # Top pathways by absolute NES
    subset = subset.loc[subset["nes"].abs().nlargest(top_n).index].sort_values("nes")

    fig, ax = plt.subplots(figsize=(10, max(4, 0.4 * len(subset))))
    colors = ["#d7301f" if x > 0 else "#225ea8" for x in subset["nes"]]
    ax.barh(range(len(subset)), subset["nes"], color=colors, alpha=0.8)
    ax.set_yticks(range(len(subset)))
    ax.set_yticklabels(subset["pathway"])
    ax.set_xlabel("Normalized Enrichment Score (NES)")
    ax.set_title(f"Top GSEA results: {cell_type} - {contrast}")
    ax.axvline(x=0, color="black", linestyle="--", alpha=0.5)
    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()
