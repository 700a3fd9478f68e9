#!/usr/bin/env python3
"""
Mouse kidney scRNA-seq preprocessing, QC, and cell type annotation

This script performs:
1. Loading raw 10x matrices and calling cells vs empty droplets
2. Quality control and doublet detection
3. Normalization and dimensionality reduction
4. Clustering and cell type annotation

python kidney_qc_annotation.py --data-dir data/ --sample-sheet samples.csv
"""

import warnings
import argparse
from pathlib import Path

import matplotlib
import scanpy as sc

from kidney_scrna.data_loader import load_sample_sheet, load_and_merge_samples, add_metadata
from kidney_scrna.cell_calling import barcode_ranks, call_cells, plot_barcode_ranks
from kidney_scrna.qc_utils import (
    basic_qc_mask,
    calculate_qc_metrics,
    plot_qc_metrics,
    compare_distributions,
    detect_doublets,
    filter_cells_and_genes,
    qc_summary,
)
from kidney_scrna.processing import (
    normalize,
    select_variable_genes,
    run_pca_umap_clustering,
    plot_embeddings,
)
from kidney_scrna.annotation import (
    MARKER_GENES,
    plot_marker_genes,
    compute_top_markers_per_cluster,
    compare_top_markers_to_expected,
    assign_celltypes_by_scores,
    apply_cluster_annotations,
    create_cluster_aggregated_labels,
    plot_cell_type_summary,
    celltype_proportions,
)
from kidney_scrna.recluster import recluster_subset
from kidney_scrna.export import export_results
from kidney_scrna.qc_filters import DOUBLET_PARAMS, DROPLET_PARAMS, get_filter_summary

# Configure scanpy
sc.settings.verbosity = 1
sc.settings.set_figure_params(dpi=80, facecolor="white")

# Suppress warnings
warnings.filterwarnings("ignore")

# Manual cluster -> cell type mapping used with --label-mode manual.
# Fill in after inspecting marker_genes_dotplot.png and top_markers_by_cluster.csv
# from a first run, e.g. {"0": "PT", "1": "PT", "2": "LOH", "3": "Endo"}
CLUSTER_ANNOTATIONS = {}


def make_cell_caller(method, plots_dir):
    """Cell caller applied to each raw sample, plotting its barcode-rank curve"""

    def cell_caller(adata):
        called = call_cells(adata, method=method)
        ranks = barcode_ranks(adata, lower=DROPLET_PARAMS["lower"])
        sample = str(adata.obs["sample"].iloc[0])
        plot_barcode_ranks(ranks, called=called.obs_names, save_dir=plots_dir, sample=sample)
        return called

    return cell_caller


def main(
    data_dir,
    sample_sheet_path,
    file_name="raw_feature_bc_matrix.h5",
    droplet_method=DROPLET_PARAMS["method"],
    normalization="scran",
    label_mode="cell",
    auto_resolution=False,
    resolution=0.8,
    plots_dir_path="plots",
    output_dir="outputs",
):
    """Main analysis pipeline

    Args:
        data_dir: Directory with one sub-directory per sample
        sample_sheet_path: CSV with a ``sample`` column plus metadata columns
        file_name: Matrix file/directory inside each sample directory
        droplet_method: "emptydrops", "inflection" or "none" (already filtered input)
        normalization: "scran" or "total"
        label_mode: "cell", "cluster", or "manual" (uses CLUSTER_ANNOTATIONS)
        auto_resolution: Pick the Leiden resolution by silhouette sweep
        resolution: Leiden resolution when auto_resolution is False
        plots_dir_path: Directory where plots will be saved.
        output_dir: Directory for the annotated h5ad and tables
    """
    print("Starting kidney single-cell analysis pipeline...")

    if label_mode == "manual" and not CLUSTER_ANNOTATIONS:
        raise ValueError("label_mode='manual' requires CLUSTER_ANNOTATIONS to be filled in")

    plots_dir = Path(plots_dir_path)
    plots_dir.mkdir(parents=True, exist_ok=True)
    print(f"Plots will be saved to: {plots_dir.absolute()}")

    # Set matplotlib backend to non-interactive for save-only mode
    matplotlib.use("Agg")

    print("\n" + get_filter_summary() + "\n")

    # Step 1: Load samples, calling cells on raw matrices
    sample_sheet = load_sample_sheet(sample_sheet_path)
    cell_caller = None
    if droplet_method != "none":
        cell_caller = make_cell_caller(droplet_method, plots_dir)
    adata = load_and_merge_samples(
        data_dir, sample_sheet["sample"].tolist(), file_name, cell_caller=cell_caller
    )

    # Step 2: Add metadata
    adata = add_metadata(adata, sample_sheet)

    # Step 3: Calculate QC metrics
    adata = calculate_qc_metrics(adata)
    plot_qc_metrics(adata, save_dir=plots_dir)
    compare_distributions(adata, groupby="orig.ident", save_dir=plots_dir)

    # Step 4: Detect doublets on cells passing the basic gene/mt filters
    print("\nApplying initial QC filters for doublet detection...")
    adata_for_doublets = adata[basic_qc_mask(adata.obs).to_numpy()].copy()
    print(f"Cells for doublet detection: {adata_for_doublets.n_obs} (from {adata.n_obs})")

    adata_for_doublets = detect_doublets(
        adata_for_doublets,
        expected_doublet_rate=DOUBLET_PARAMS["expected_doublet_rate"],
        save_dir=plots_dir,
    )

    # Transfer doublet annotations back to original adata
    adata.obs["doublet_score"] = 0.0
    adata.obs["predicted_doublet"] = False
    adata.obs.loc[adata_for_doublets.obs_names, "doublet_score"] = adata_for_doublets.obs["doublet_score"]
    adata.obs.loc[adata_for_doublets.obs_names, "predicted_doublet"] = adata_for_doublets.obs["predicted_doublet"]

    # Step 5: Filter cells and genes (including doublets)
    adata_before = adata
    adata = filter_cells_and_genes(adata)
    retention = qc_summary(adata_before, adata)
    retention.to_csv(plots_dir / "qc_retention_by_sample.csv")
    print(retention.to_string())
    del adata_before

    # Step 6: Normalize and find variable genes
    adata = normalize(adata, method=normalization)
    n_samples = adata.obs["orig.ident"].nunique()
    adata = select_variable_genes(adata, batch_key="orig.ident" if n_samples > 1 else None)

    # Step 7: PCA, UMAP, clustering
    adata = run_pca_umap_clustering(
        adata, resolution=resolution, auto_resolution=auto_resolution, save_dir=plots_dir
    )
    plot_embeddings(
        adata, color=("leiden", "orig.ident", "condition", "doublet_score"), save_dir=plots_dir
    )

    # Step 8: Marker genes
    plot_marker_genes(adata, marker_genes=MARKER_GENES, save_dir=plots_dir)
    markers_df = compute_top_markers_per_cluster(adata, groupby="leiden", save_dir=plots_dir)
    compare_top_markers_to_expected(adata, markers_df=markers_df, save_dir=plots_dir)

    # Step 9: Annotate cell types
    if label_mode == "manual":
        adata = apply_cluster_annotations(adata, CLUSTER_ANNOTATIONS)
        adata.obs["celltype_detail"] = adata.obs["celltype"].astype(str)
    else:
        assign_celltypes_by_scores(adata, marker_genes=MARKER_GENES, mode=label_mode)

    # Step 10: Proximal tubule segments
    if "celltype" in adata.obs:
        pt_mask = (adata.obs["celltype"].astype(str) == "PT").to_numpy()
        recluster_subset(adata, pt_mask, "pt", parent_type="PT", save_dir=plots_dir)

        create_cluster_aggregated_labels(adata)
        plot_cell_type_summary(adata, save_dir=plots_dir)
        celltype_proportions(adata).to_csv(plots_dir / "celltype_proportions.csv")
        plot_embeddings(
            adata, color=("celltype", "celltype_detail"), save_dir=plots_dir,
            filename="umap_celltypes.png",
        )

    # Save results
    export_results(
        adata,
        output_dir,
        params={
            "droplet_method": droplet_method,
            "normalization": normalization,
            "label_mode": label_mode,
            "resolution": float(adata.uns.get("leiden_optimal_resolution", resolution)),
        },
    )

    print("Analysis complete!")
    return adata


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Mouse kidney scRNA-seq QC, clustering, and annotation"
    )
    parser.add_argument("--data-dir", required=True, help="Directory with one folder per sample")
    parser.add_argument(
        "--sample-sheet", required=True, help="CSV with a 'sample' column and metadata columns"
    )
    parser.add_argument(
        "--file-name",
        default="raw_feature_bc_matrix.h5",
        help="Matrix file or directory inside each sample folder",
    )
    parser.add_argument(
        "--droplet-method",
        choices=["emptydrops", "inflection", "none"],
        default=DROPLET_PARAMS["method"],
        help="Empty droplet calling; 'none' for already filtered matrices",
    )
    parser.add_argument(
        "--normalization",
        choices=["scran", "total"],
        default="scran",
        help="'scran' deconvolution (needs R) or 'total' counts per 10k",
    )
    parser.add_argument(
        "--label-mode",
        choices=["cell", "cluster", "manual"],
        default="cell",
        help="Cell type labeling: per-cell scores, cluster-level scores, or CLUSTER_ANNOTATIONS",
    )
    parser.add_argument("--resolution", type=float, default=0.8, help="Leiden resolution")
    parser.add_argument(
        "--auto-resolution", action="store_true", help="Choose Leiden resolution by silhouette"
    )
    parser.add_argument("--plots-dir", default="plots", help="Directory to write plots to")
    parser.add_argument("--output-dir", default="outputs", help="Directory to write results to")
    args = parser.parse_args()

    adata = main(
        data_dir=args.data_dir,
        sample_sheet_path=args.sample_sheet,
        file_name=args.file_name,
        droplet_method=args.droplet_method,
        normalization=args.normalization,
        label_mode=args.label_mode,
        auto_resolution=args.auto_resolution,
        resolution=args.resolution,
        plots_dir_path=args.plots_dir,
        output_dir=args.output_dir,
    )
