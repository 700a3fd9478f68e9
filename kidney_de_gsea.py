#!/usr/bin/env python3
"""
Signature scoring, pseudobulk differential expression and pathway analysis

Runs on the annotated h5ad written by kidney_qc_annotation.py:
1. Condition column from sample factors
2. Injury / fibrosis / inflammation / hypoxia / cell-cycle scores
3. Pseudobulk DE per cell type (DESeq2 or t-test)
4. Preranked GSEA and over-representation analysis

python kidney_de_gsea.py --input outputs/kidney_annotated.h5ad --condition-factors treatment
"""

import warnings
import argparse
from pathlib import Path

import matplotlib
import scanpy as sc

from kidney_scrna.signatures import (
    score_signatures,
    score_cell_cycle,
    summarize_scores,
    plot_signature_scores,
)
from kidney_scrna.annotation import celltype_proportions
from kidney_scrna.differential_expression import (
    DE_PARAMS,
    create_condition_column,
    create_pseudobulk,
    run_de_all_celltypes,
    plot_de_summary,
    plot_de_heatmap,
    plot_volcano,
)
from kidney_scrna.pathway_analysis import (
    GENE_SET_LIBRARIES,
    label_for_group,
    load_gene_sets,
    run_gsea_analysis,
    run_ora_analysis,
    plot_gsea_results,
)
from kidney_scrna.pathway_visualization import (
    plot_pathways_across_cell_types,
    plot_pathways_by_cell_type_grid,
)

# Suppress warnings
warnings.filterwarnings("ignore")


def main(
    input_path,
    output_dir="outputs/de_gsea",
    condition_factors=("condition",),
    condition_order=None,
    use_deseq2=True,
    gmt_paths=None,
    download_gene_sets=True,
    celltype_col="celltype",
):
    """Main analysis pipeline

    Args:
        input_path: Annotated h5ad (needs ``layers["counts"]``)
        output_dir: Directory for tables and plots
        condition_factors: obs columns combined into the condition
        condition_order: Optional condition levels; the first is the reference
        use_deseq2: DESeq2 (True) or t-test on log-CPM (False)
        gmt_paths: Extra GMT files used as gene set collections
        download_gene_sets: Fetch the Enrichr libraries in GENE_SET_LIBRARIES
        celltype_col: Cell type column used for pseudobulk

    Returns:
        Tuple of (adata, de_results, gsea_results)
    """
    print("Starting differential expression and GSEA analysis...")

    input_path = Path(input_path)
    if not input_path.exists():
        raise FileNotFoundError(f"{input_path} not found. Run kidney_qc_annotation.py first.")

    output_dir = Path(output_dir)
    plots_dir = output_dir / "plots"
    plots_dir.mkdir(parents=True, exist_ok=True)

    matplotlib.use("Agg")

    adata = sc.read_h5ad(input_path)
    print(f"Loaded data: {adata.n_obs} cells, {adata.n_vars} genes")

    # Step 1: Create condition column
    adata = create_condition_column(adata, factors=tuple(condition_factors), order=condition_order)

    # Step 2: Signature and cell-cycle scores
    score_names = score_signatures(adata)
    try:
        score_cell_cycle(adata)
    except ValueError as e:
        print(f"Skipping cell-cycle scoring: {e}")
    else:
        score_names = score_names + ["S_score", "G2M_score"]
        phases = celltype_proportions(adata, groupby=celltype_col, celltype_col="phase")
        phases.to_csv(output_dir / "cell_cycle_phase_by_celltype.csv")

    plot_signature_scores(adata, score_names, groupby=celltype_col, save_dir=plots_dir)
    if score_names:
        summary = summarize_scores(adata, score_names, groupby=celltype_col)
        summary.to_csv(output_dir / "signature_scores_by_celltype.csv")
        by_condition = summarize_scores(adata, score_names, groupby="condition")
        by_condition.to_csv(output_dir / "signature_scores_by_condition.csv")
        per_cell = [c for c in (celltype_col, "condition", *score_names, "phase") if c in adata.obs]
        adata.obs[per_cell].to_csv(output_dir / "cell_scores.csv")

    # Step 3: Pseudobulk
    pb_df, sample_info_df = create_pseudobulk(adata, celltype_col=celltype_col)
    sample_info_df.to_csv(output_dir / "pseudobulk_samples.csv", index=False)

    # Step 4: Differential expression
    de_results = run_de_all_celltypes(pb_df, sample_info_df, use_deseq2=use_deseq2)
    if de_results.empty:
        print("No differential expression results generated")
        return adata, de_results, None

    de_results.to_csv(output_dir / "differential_expression_results.csv", index=False)
    print(f"Saved DE results to {output_dir / 'differential_expression_results.csv'}")

    plot_de_summary(de_results, save_path=plots_dir / "de_summary.png")
    for (cell_type, contrast), _ in de_results.groupby(["cell_type", "contrast"]):
        label = label_for_group(cell_type, contrast)
        plot_volcano(
            de_results, cell_type, contrast,
            fc_threshold=DE_PARAMS["fc_threshold"],
            pval_threshold=DE_PARAMS["fdr_threshold"],
            save_path=plots_dir / f"volcano_{label}.png",
        )
        plot_de_heatmap(
            pb_df, sample_info_df, de_results, cell_type, contrast,
            save_path=plots_dir / f"de_heatmap_{label}.png",
        )

    # Step 5: Pathway analysis
    gene_sets = load_gene_sets(
        libraries=GENE_SET_LIBRARIES if download_gene_sets else {},
        gmt_paths=gmt_paths,
    )

    gsea_results = run_gsea_analysis(de_results, gene_sets, output_dir=output_dir / "gsea")
    if not gsea_results.empty:
        gsea_results.to_csv(output_dir / "gsea_results.csv", index=False)
        print(f"Saved GSEA results to {output_dir / 'gsea_results.csv'}")

        for (cell_type, contrast), _ in gsea_results.groupby(["cell_type", "contrast"]):
            plot_gsea_results(
                gsea_results, cell_type, contrast,
                save_path=plots_dir / f"gsea_{label_for_group(cell_type, contrast)}.png",
            )
        plot_pathways_across_cell_types(
            gsea_results, save_path=plots_dir / "pathways_across_cell_types.png"
        )
        plot_pathways_by_cell_type_grid(
            gsea_results, save_path=plots_dir / "pathways_by_cell_type.png"
        )

    ora_results = run_ora_analysis(de_results, gene_sets)
    if not ora_results.empty:
        ora_results.to_csv(output_dir / "ora_results.csv", index=False)
        print(f"Saved ORA results to {output_dir / 'ora_results.csv'}")

    print("Analysis complete!")
    return adata, de_results, gsea_results


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Pseudobulk differential expression and GSEA for annotated kidney data"
    )
    parser.add_argument("--input", required=True, help="Annotated h5ad from kidney_qc_annotation.py")
    parser.add_argument("--output-dir", default="outputs/de_gsea", help="Directory to write results to")
    parser.add_argument(
        "--condition-factors",
        nargs="+",
        default=["condition"],
        help="obs columns joined into the condition (e.g. genotype treatment)",
    )
    parser.add_argument(
        "--condition-order",
        nargs="+",
        default=None,
        help="Condition levels, reference first",
    )
    parser.add_argument("--celltype-col", default="celltype", help="Cell type column for pseudobulk")
    parser.add_argument(
        "--no-deseq2", action="store_true", help="Use a t-test on log-CPM instead of DESeq2"
    )
    parser.add_argument("--gmt", nargs="*", default=None, help="Additional GMT gene set files")
    parser.add_argument(
        "--no-download", action="store_true", help="Skip downloading Enrichr gene set libraries"
    )
    args = parser.parse_args()

    adata, de_results, gsea_results = main(
        input_path=args.input,
        output_dir=args.output_dir,
        condition_factors=args.condition_factors,
        condition_order=args.condition_order,
        use_deseq2=not args.no_deseq2,
        gmt_paths=args.gmt,
        download_gene_sets=not args.no_download,
        celltype_col=args.celltype_col,
    )
