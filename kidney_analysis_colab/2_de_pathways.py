# %% [markdown]
# # Notebook 2: Signatures, Pseudobulk DE & Pathway Enrichment
#
# **Kidney scRNA-seq Pipeline - Part 2 of 2**
#
# **📥 Input:** `outputs/kidney_annotated.h5ad`
# **📤 Output:** `outputs/de_gsea/`
#
# ---
#
# ## Overview
#
# Per-cell signature scores (injury, fibrosis, inflammation, hypoxia, cell cycle),
# then pseudobulk differential expression per cell type and GSEA on the resulting
# rankings.
#
# **Method:** counts are summed per sample × cell type; PyDESeq2 tests every
# condition against the reference level. With fewer than two replicates per group
# a cell type is skipped.
#
# ---

# %% [markdown]
# ## 1. Setup & Load Data

# %%
import warnings
from pathlib import Path

import scanpy as sc
import pandas as pd

from kidney_scrna.signatures import (
    SIGNATURES,
    score_signatures,
    score_cell_cycle,
    summarize_scores,
    plot_signature_scores,
)
from kidney_scrna.differential_expression import (
    DE_PARAMS,
    create_condition_column,
    default_contrasts,
    create_pseudobulk,
    run_de_all_celltypes,
    plot_de_summary,
    plot_de_heatmap,
    plot_volcano,
)
from kidney_scrna.pathway_analysis import (
    GENE_SET_LIBRARIES,
    load_gene_sets,
    run_gsea_analysis,
    run_ora_analysis,
    plot_gsea_results,
)
from kidney_scrna.pathway_visualization import (
    plot_pathways_across_cell_types,
    plot_pathways_by_cell_type_grid,
)

warnings.filterwarnings("ignore")

OUTPUT_DIR = Path("outputs/de_gsea")
PLOTS_DIR = OUTPUT_DIR / "plots"
PLOTS_DIR.mkdir(parents=True, exist_ok=True)

adata = sc.read_h5ad("outputs/kidney_annotated.h5ad")

required_cols = ["celltype", "orig.ident", "leiden"]
missing = [c for c in required_cols if c not in adata.obs.columns]
if missing:
    raise ValueError(f"Missing required columns: {missing}")
if "counts" not in adata.layers:
    raise ValueError("layers['counts'] is missing; pseudobulk needs raw counts")

print(f"✓ Loaded: {adata.n_obs:,} cells × {adata.n_vars:,} genes")
print(f"  Cell types: {adata.obs['celltype'].nunique()}")
print(f"  Samples: {adata.obs['orig.ident'].nunique()}")

# %% [markdown]
# ## 2. Conditions
#
# Conditions are built from one or more sample sheet columns. The first level
# of `CONDITION_ORDER` is the reference for every contrast.

# %%
CONDITION_FACTORS = ("condition",)  # 🔧 e.g. ("genotype", "treatment")
CONDITION_ORDER = None  # 🔧 e.g. ["Sham", "IRI"]

adata = create_condition_column(adata, factors=CONDITION_FACTORS, order=CONDITION_ORDER)
levels = list(adata.obs["condition"].cat.categories)
contrasts = default_contrasts(levels)
print(contrasts)

pd.crosstab(adata.obs["orig.ident"], adata.obs["condition"])

# %% [markdown]
# ## 3. Signature Scores

# %%
for name, genes in SIGNATURES.items():
    print(f"{name}: {', '.join(genes)}")

score_names = score_signatures(adata)
score_cell_cycle(adata)
plot_signature_scores(adata, score_names, groupby="celltype", save_dir=PLOTS_DIR)

summarize_scores(adata, score_names, groupby="condition").round(3)

# %%
summarize_scores(adata, score_names, groupby="celltype").round(3)

# %%
pd.crosstab(adata.obs["celltype"], adata.obs["phase"], normalize="index").round(2)

# %% [markdown]
# ## 4. Pseudobulk Differential Expression

# %%
USE_DESEQ2 = True  # 🔧 False falls back to a t-test on log-CPM

pb_df, sample_info_df = create_pseudobulk(adata, min_cells=DE_PARAMS["min_cells"])
print(sample_info_df.groupby(["celltype", "condition"], observed=True).size().unstack(fill_value=0))

de_results = run_de_all_celltypes(pb_df, sample_info_df, contrasts=contrasts, use_deseq2=USE_DESEQ2)
de_results.to_csv(OUTPUT_DIR / "differential_expression_results.csv", index=False)

counts = plot_de_summary(de_results, save_path=PLOTS_DIR / "de_summary.png")
counts

# %%
# 🔧 Inspect a single cell type
CELL_TYPE = "PT"
CONTRAST = contrasts[0][0] if contrasts else None

if CONTRAST is not None and not de_results.empty:
    plot_volcano(de_results, CELL_TYPE, CONTRAST, fc_threshold=DE_PARAMS["fc_threshold"])
    plot_de_heatmap(pb_df, sample_info_df, de_results, CELL_TYPE, CONTRAST, top_n=40)

    top = de_results[
        (de_results["cell_type"] == CELL_TYPE)
        & (de_results["contrast"] == CONTRAST)
        & de_results["significant"]
    ].sort_values("adj.P.Val")
    print(top.head(20).to_string(index=False))

# %% [markdown]
# ## 5. Pathway Enrichment
#
# Enrichr libraries need network access; set `DOWNLOAD = False` offline to use
# only the built-in kidney signatures and any GMT files.

# %%
DOWNLOAD = True
GMT_FILES = []  # 🔧 e.g. ["gene_sets/m5.go.bp.v2023.2.Mm.symbols.gmt"]

gene_sets = load_gene_sets(
    libraries=GENE_SET_LIBRARIES if DOWNLOAD else {},
    gmt_paths=GMT_FILES,
)

gsea_results = run_gsea_analysis(de_results, gene_sets, output_dir=OUTPUT_DIR / "gsea")
gsea_results.sort_values("fdr").head(20)

# %%
if not gsea_results.empty:
    plot_gsea_results(gsea_results, CELL_TYPE, CONTRAST)
    plot_pathways_across_cell_types(
        gsea_results, save_path=PLOTS_DIR / "pathways_across_cell_types.png"
    )
    plot_pathways_by_cell_type_grid(
        gsea_results, collection_filter="Kidney", save_path=PLOTS_DIR / "kidney_pathways_by_cell_type.png"
    )

# %%
ora_results = run_ora_analysis(de_results, gene_sets)
if not ora_results.empty:
    ora_results.to_csv(OUTPUT_DIR / "ora_results.csv", index=False)
    print(ora_results.sort_values("fdr").head(20).to_string(index=False))

print("\n✓ Notebook 2 complete.")
