#!/usr/bin/env python3
"""
Quality control parameters for the mouse kidney scRNA-seq analysis

This file centralizes the droplet-calling, doublet and QC thresholds used in
the pipeline. Modify these values to adjust filtering stringency.
"""

# Empty droplet calling on raw (unfiltered) matrices
DROPLET_PARAMS = {
    "method": "emptydrops",  # "emptydrops" (DropletUtils via R), "inflection" or "none"
    "lower": 100,  # Barcodes at or below this total are treated as ambient
    "fdr": 0.01,  # EmptyDrops FDR cutoff for calling a cell
    "niters": 10000,  # Monte Carlo iterations for EmptyDrops p-values
    "seed": 0,
}

# Cell-level filters
CELL_FILTERS = {
    "min_genes": 200,  # Minimum genes detected per cell
    "max_genes": 6000,  # Maximum genes detected per cell
    "min_counts": 500,  # Minimum total counts per cell
    "max_counts": 40000,  # Maximum total counts per cell
    "max_mt_pct": 50,  # Kidney tubule cells are mitochondria-rich
    "max_ribo_pct": None,  # Maximum ribosomal gene percentage (None = no filter)
    "max_hb_pct": 5,  # Maximum hemoglobin percentage (None = no filter)
}

# Gene-level filters
GENE_FILTERS = {
    "min_cells": 3,  # Minimum cells expressing a gene
}

# Doublet detection parameters (Scrublet, run per sample)
DOUBLET_PARAMS = {
    "expected_doublet_rate": 0.06,  # ~0.8% per 1,000 recovered cells on 10x
    "min_counts": 2,
    "min_cells": 3,
    "min_gene_variability_pctl": 85,
    "n_prin_comps": 30,
    "manual_threshold": 0.25,  # Used when Scrublet cannot place a threshold
    "min_cells_per_sample": 100,
}

# Mouse gene name patterns
GENE_PATTERNS = {
    "mt_pattern": "mt-",  # Mitochondrial genes (use "MT-" for human)
    "ribo_pattern": r"^Rp[sl]",  # Ribosomal protein genes
    "hb_pattern": r"^Hb[ab]-",  # Hemoglobin genes, red cell contamination
}


def get_filter_summary():
    """Return a formatted summary of current filter settings"""
    summary = [
        "=== QC Filter Settings ===",
        "\nDroplet calling:",
        f"  - Method: {DROPLET_PARAMS['method']}",
        f"  - Ambient bound (lower): {DROPLET_PARAMS['lower']} UMIs",
        f"  - FDR: {DROPLET_PARAMS['fdr']}",
        "\nCell-level filters:",
        f"  - Genes per cell: {CELL_FILTERS['min_genes']} - {CELL_FILTERS['max_genes']}",
        f"  - Counts per cell: {CELL_FILTERS['min_counts']} - {CELL_FILTERS['max_counts']}",
        f"  - Max mitochondrial %: {CELL_FILTERS['max_mt_pct']}%",
    ]

    if CELL_FILTERS["max_ribo_pct"]:
        summary.append(f"  - Max ribosomal %: {CELL_FILTERS['max_ribo_pct']}%")
    if CELL_FILTERS["max_hb_pct"]:
        summary.append(f"  - Max hemoglobin %: {CELL_FILTERS['max_hb_pct']}%")

    summary.extend(
        [
            "\nGene-level filters:",
            f"  - Min cells expressing: {GENE_FILTERS['min_cells']}",
            "\nDoublet detection:",
            f"  - Expected rate: {DOUBLET_PARAMS['expected_doublet_rate']*100}%",
        ]
    )

    return "\n".join(summary)


def validate_filters():
    """Validate that filter parameters make sense"""
    errors = []

    if DROPLET_PARAMS["method"] not in ("emptydrops", "inflection", "none"):
        errors.append("droplet method must be one of 'emptydrops', 'inflection', 'none'")

    if not 0 < DROPLET_PARAMS["fdr"] < 1:
        errors.append("droplet fdr must be between 0 and 1")

    if DROPLET_PARAMS["lower"] < 0:
        errors.append("droplet lower bound must be non-negative")

    if CELL_FILTERS["min_genes"] >= CELL_FILTERS["max_genes"]:
        errors.append("min_genes must be less than max_genes")

    if CELL_FILTERS["min_counts"] >= CELL_FILTERS["max_counts"]:
        errors.append("min_counts must be less than max_counts")

    if not 0 <= CELL_FILTERS["max_mt_pct"] <= 100:
        errors.append("max_mt_pct must be between 0 and 100")

    for key in ("max_ribo_pct", "max_hb_pct"):
        if CELL_FILTERS[key] and not 0 <= CELL_FILTERS[key] <= 100:
            errors.append(f"{key} must be between 0 and 100")

    if not 0 < DOUBLET_PARAMS["expected_doublet_rate"] < 1:
        errors.append("expected_doublet_rate must be between 0 and 1")

    if errors:
        raise ValueError("Filter validation failed:\n" + "\n".join(errors))

    return True


# Run validation on import
validate_filters()
