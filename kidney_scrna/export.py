#!/usr/bin/env python3
"""
Export utilities for annotated kidney scRNA-seq data
Writes the annotated h5ad and the metadata/summary tables
"""

from pathlib import Path

import pandas as pd

METADATA_COLUMNS = [
    "leiden",
    "celltype",
    "celltype_detail",
    "annotation_confidence",
    "orig.ident",
    "condition",
    "n_genes_by_counts",
    "total_counts",
    "percent_mt",
    "percent_hb",
    "doublet_score",
    "size_factors",
    "celltype_pt",
    "leiden_pt",
]


def sanitize_obs_for_h5ad(adata):
    """Convert object columns in obs to string categoricals (h5py requirement)"""
    for col in adata.obs.columns:
        if isinstance(adata.obs[col].dtype, pd.CategoricalDtype):
            continue
        if adata.obs[col].dtype == object or pd.api.types.is_string_dtype(adata.obs[col]):
            values = adata.obs[col].where(adata.obs[col].notna(), "")
            adata.obs[col] = pd.Categorical(values.astype(str))
    return adata


def analysis_summary(adata):
    """Key numbers of the analysis as a Metric/Value table"""
    obs = adata.obs
    metrics = [
        ("Total cells", adata.n_obs),
        ("Total genes", adata.n_vars),
        ("Samples", obs["orig.ident"].nunique() if "orig.ident" in obs else None),
        ("Clusters", obs["leiden"].nunique() if "leiden" in obs else None),
        ("Cell types", obs["celltype"].nunique() if "celltype" in obs else None),
        ("Median genes/cell", obs["n_genes_by_counts"].median() if "n_genes_by_counts" in obs else None),
        ("Median UMIs/cell", obs["total_counts"].median() if "total_counts" in obs else None),
        ("Median MT%", obs["percent_mt"].median() if "percent_mt" in obs else None),
    ]
    return pd.DataFrame(
        [(name, value) for name, value in metrics if value is not None],
        columns=["Metric", "Value"],
    )


def export_results(adata, output_dir, prefix="kidney", params=None):
    """Save the annotated AnnData and summary tables

    Args:
        adata: Annotated AnnData object
        output_dir: Output directory (created if missing)
        prefix: File name prefix of the h5ad
        params: Optional dict of run parameters stored in ``uns["pipeline_params"]``

    Returns:
        Dict of output name -> written Path
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    print("\n" + "=" * 60)
    print("SAVING FINAL OUTPUT")
    print("=" * 60)

    if params:
        adata.uns["pipeline_params"] = {k: v for k, v in params.items() if v is not None}

    sanitize_obs_for_h5ad(adata)

    paths = {
        "h5ad": output_dir / f"{prefix}_annotated.h5ad",
        "metadata": output_dir / "cell_metadata.csv",
        "summary": output_dir / "analysis_summary.csv",
    }

    adata.write_h5ad(paths["h5ad"])
    print(f"  Saved: {paths['h5ad']} ({paths['h5ad'].stat().st_size / 1e6:.1f} MB)")

    existing_cols = [c for c in METADATA_COLUMNS if c in adata.obs.columns]
    adata.obs[existing_cols].to_csv(paths["metadata"])
    print(f"  Saved: {paths['metadata']}")

    summary_df = analysis_summary(adata)
    summary_df.to_csv(paths["summary"], index=False)
    print(f"  Saved: {paths['summary']}")
    print(summary_df.to_string(index=False))

    if "celltype" in adata.obs:
        paths["celltype_counts"] = output_dir / "celltype_counts.csv"
        celltype_dist = adata.obs["celltype"].value_counts().sort_index()
        celltype_dist.to_csv(paths["celltype_counts"], header=["count"])
        print(f"  Saved: {paths['celltype_counts']}")

    return paths
