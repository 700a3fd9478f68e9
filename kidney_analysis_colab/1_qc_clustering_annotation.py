# %% [markdown]
# # Notebook 1: Mouse Kidney QC, Clustering & Annotation
#
# **Kidney scRNA-seq Pipeline - Part 1 of 2**
#
# **📥 Input:** raw 10x matrices (`<data_dir>/<sample>/raw_feature_bc_matrix.h5`) and a sample sheet
# **📤 Output:** `outputs/kidney_annotated.h5ad`, `plots/`
#
# ---
#
# ## Overview
#
# Interactive version of `kidney_qc_annotation.py`. Every stage writes its plots to `plots/`
# so parameters can be tuned cell by cell before committing to a full run.
#
# **Key Steps:**
# 1. Load raw matrices and call cells vs empty droplets
# 2. QC metrics, doublet detection and filtering
# 3. scran normalization, variable genes, PCA/UMAP/Leiden
# 4. Marker genes and cell type annotation
# 5. Proximal tubule segment reclustering and export
#
# ---

# %% [markdown]
# ## 1. Setup

# %%
# !pip install -q scanpy anndata scrublet leidenalg igraph pydeseq2 gseapy rpy2

import warnings
from pathlib import Path

import matplotlib
import scanpy as sc
import pandas as pd

from kidney_scrna.qc_filters import CELL_FILTERS, DOUBLET_PARAMS, DROPLET_PARAMS, get_filter_summary
from kidney_scrna.data_loader import load_sample_sheet, load_and_merge_samples, add_metadata
from kidney_scrna.cell_calling import barcode_ranks, call_cells, plot_barcode_ranks
from kidney_scrna.qc_utils import (
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
    choose_leiden_resolution,
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

warnings.filterwarnings("ignore")
sc.settings.verbosity = 1
sc.settings.set_figure_params(dpi=80, facecolor="white")
matplotlib.rcParams["figure.figsize"] = (8, 6)

print("✓ Setup complete!")
print(f"Scanpy version: {sc.__version__}")

# %% [markdown]
# ## 2. Parameters
#
# 🔧 marks values worth revisiting after looking at the plots.

# %%
DATA_DIR = Path("data")  # 🔧 one sub-directory per sample
SAMPLE_SHEET = DATA_DIR / "samples.csv"  # 🔧 columns: sample, condition, ...
FILE_NAME = "raw_feature_bc_matrix.h5"

DROPLET_METHOD = DROPLET_PARAMS["method"]  # 🔧 "emptydrops" (R), "inflection", or "none"
NORMALIZATION = "scran"  # 🔧 "scran" (R) or "total"
LEIDEN_RESOLUTION = 0.8  # 🔧

PLOTS_DIR = Path("plots")
OUTPUT_DIR = Path("outputs")
PLOTS_DIR.mkdir(parents=True, exist_ok=True)

print(get_filter_summary())

# %% [markdown]
# ## 3. Load Samples & Call Cells
#
# Each raw matrix is reduced to cell-containing barcodes before merging. The
# barcode-rank plots show the knee and inflection points for every sample.

# %%
sample_sheet = load_sample_sheet(SAMPLE_SHEET)
print(sample_sheet.to_string(index=False))


def cell_caller(adata):
    called = call_cells(adata, method=DROPLET_METHOD)
    ranks = barcode_ranks(adata, lower=DROPLET_PARAMS["lower"])
    plot_barcode_ranks(
        ranks, called=called.obs_names, save_dir=PLOTS_DIR, sample=str(adata.obs["sample"].iloc[0])
    )
    return called


adata = load_and_merge_samples(
    DATA_DIR,
    sample_sheet["sample"].tolist(),
    FILE_NAME,
    cell_caller=None if DROPLET_METHOD == "none" else cell_caller,
)
adata = add_metadata(adata, sample_sheet)

print(f"\n✓ Loaded: {adata.n_obs:,} cells × {adata.n_vars:,} genes")
print(adata.obs["orig.ident"].value_counts().to_string())

# %% [markdown]
# ## 4. QC Metrics

# %%
adata = calculate_qc_metrics(adata)
plot_qc_metrics(adata, save_dir=PLOTS_DIR)
compare_distributions(adata, groupby="orig.ident", save_dir=PLOTS_DIR)

adata.obs.groupby("orig.ident", observed=True)[
    ["n_genes_by_counts", "total_counts", "percent_mt", "percent_ribo", "percent_hb"]
].median()

# %% [markdown]
# ## 5. Doublet Detection
#
# Scrublet runs per sample on cells passing the basic gene and mitochondrial
# filters. Check `doublet_score_histograms.png` before trusting the automatic threshold.

# %%
prefiltered = adata[
    (adata.obs.n_genes_by_counts >= CELL_FILTERS["min_genes"])
    & (adata.obs.n_genes_by_counts <= CELL_FILTERS["max_genes"])
    & (adata.obs.percent_mt <= CELL_FILTERS["max_mt_pct"])
].copy()

prefiltered = detect_doublets(
    prefiltered,
    expected_doublet_rate=DOUBLET_PARAMS["expected_doublet_rate"],
    manual_threshold=None,  # 🔧 set a float to override Scrublet's threshold
    save_dir=PLOTS_DIR,
)

adata.obs["doublet_score"] = 0.0
adata.obs["predicted_doublet"] = False
adata.obs.loc[prefiltered.obs_names, "doublet_score"] = prefiltered.obs["doublet_score"]
adata.obs.loc[prefiltered.obs_names, "predicted_doublet"] = prefiltered.obs["predicted_doublet"]
del prefiltered

# %% [markdown]
# ## 6. Filtering

# %%
adata_before = adata
adata = filter_cells_and_genes(adata)
retention = qc_summary(adata_before, adata)
del adata_before
retention

# %% [markdown]
# ## 7. Normalization & Variable Genes

# %%
adata = normalize(adata, method=NORMALIZATION)
adata = select_variable_genes(
    adata, batch_key="orig.ident" if adata.obs["orig.ident"].nunique() > 1 else None
)

# %% [markdown]
# ## 8. PCA, UMAP & Clustering
#
# The resolution sweep is optional: it scores each resolution by silhouette on
# the PCA embedding and writes `leiden_sweep_diagnostics.png`.

# %%
adata = run_pca_umap_clustering(adata, resolution=LEIDEN_RESOLUTION, save_dir=PLOTS_DIR)
plot_embeddings(adata, color=("leiden", "orig.ident", "condition", "doublet_score"), save_dir=PLOTS_DIR)

# %%
# 🔧 Optional: sweep resolutions and re-cluster at the best one
RUN_SWEEP = False
if RUN_SWEEP:
    best_resolution = choose_leiden_resolution(adata, save_dir=PLOTS_DIR)
    print(pd.read_csv(PLOTS_DIR / "leiden_resolution_sweep.csv").to_string(index=False))
    sc.tl.leiden(adata, resolution=best_resolution, key_added="leiden", random_state=0)
    plot_embeddings(adata, color=("leiden",), save_dir=PLOTS_DIR)

# %% [markdown]
# ## 9. Marker Genes

# %%
plot_marker_genes(adata, marker_genes=MARKER_GENES, save_dir=PLOTS_DIR)
markers_df = compute_top_markers_per_cluster(adata, groupby="leiden", save_dir=PLOTS_DIR)
overlap, precision = compare_top_markers_to_expected(adata, markers_df=markers_df, save_dir=PLOTS_DIR)
precision.round(2)

# %% [markdown]
# ## 10. Cell Type Annotation
#
# Either score-based (per cell or per cluster) or a manual mapping filled in
# after reading the marker tables above.

# %%
LABEL_MODE = "cell"  # 🔧 "cell", "cluster", or "manual"

# 🔧 Used when LABEL_MODE == "manual"
CLUSTER_ANNOTATIONS = {
    # "0": "PT",
    # "1": "LOH",
    # "2": "Endo",
}

if LABEL_MODE == "manual":
    adata = apply_cluster_annotations(adata, CLUSTER_ANNOTATIONS)
    adata.obs["celltype_detail"] = adata.obs["celltype"].astype(str)
else:
    assign_celltypes_by_scores(adata, marker_genes=MARKER_GENES, mode=LABEL_MODE)

adata.obs["celltype"].value_counts()

# %% [markdown]
# ## 11. Proximal Tubule Segments

# %%
pt_mask = (adata.obs["celltype"].astype(str) == "PT").to_numpy()
adata_pt = recluster_subset(adata, pt_mask, "pt", parent_type="PT", save_dir=PLOTS_DIR)

if adata_pt is not None:
    print(pd.crosstab(adata_pt.obs["leiden_pt"], adata_pt.obs["celltype_pt"]))
    # Cluster-level vs per-cell subtypes
    print(pd.crosstab(adata_pt.obs["celltype_pt"], adata_pt.obs["celltype_detail"]))

# %% [markdown]
# ## 12. Summary & Export

# %%
mixed_clusters = create_cluster_aggregated_labels(adata)
counts = plot_cell_type_summary(adata, save_dir=PLOTS_DIR)
celltype_proportions(adata).to_csv(PLOTS_DIR / "celltype_proportions.csv")
plot_embeddings(
    adata, color=("celltype", "celltype_detail"), save_dir=PLOTS_DIR, filename="umap_celltypes.png"
)

paths = export_results(
    adata,
    OUTPUT_DIR,
    params={
        "droplet_method": DROPLET_METHOD,
        "normalization": NORMALIZATION,
        "label_mode": LABEL_MODE,
        "resolution": LEIDEN_RESOLUTION,
    },
)
print("\n✓ Notebook 1 complete. Continue with 2_de_pathways.py")
