"""
Visualization functions for pathway enrichment across kidney cell types.

Heatmaps and per-cell-type bar grids of GSEA results covering several cell
types and contrasts.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd


def _filter_results(
    results_df: pd.DataFrame,
    fdr_threshold: float,
    collection_filter: Optional[str],
    contrast_filter: Optional[str],
) -> pd.DataFrame:
    filtered_df = results_df[results_df["fdr"] <= fdr_threshold]
    if collection_filter:
        filtered_df = filtered_df[filtered_df["collection"] == collection_filter]
    if contrast_filter:
        filtered_df = filtered_df[filtered_df["contrast"] == contrast_filter]
    return filtered_df.copy()


def _title_suffix(collection_filter: Optional[str], contrast_filter: Optional[str]) -> str:
    return "".join(f" - {f}" for f in (collection_filter, contrast_filter) if f)


def _strongest_per_group(df: pd.DataFrame, keys: list[str]) -> pd.DataFrame:
    """Row with the largest |NES| within each group"""
    idx = df["nes"].abs().groupby([df[k] for k in keys]).idxmax()
    return df.loc[idx.to_numpy()].reset_index(drop=True)


def _save_or_show(fig: plt.Figure, save_path: Optional[Path]) -> None:
    if save_path:
        save_path = Path(save_path)
        save_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()


def plot_pathways_across_cell_types(
    results_df: pd.DataFrame,
    fdr_threshold: float = 0.1,
    max_pathways: int = 20,
    aggregation_method: str = "max_nes",
    collection_filter: Optional[str] = None,
    contrast_filter: Optional[str] = None,
    figsize: tuple = (14, 10),
    save_path: Optional[Path] = None,
) -> Optional[plt.Figure]:
    """
    Heatmap of pathways (rows) x cell types (columns) colored by NES.

    Parameters:
    -----------
    results_df : pd.DataFrame
        GSEA summary dataframe with columns: cell_type, contrast, pathway, nes, fdr, collection
    fdr_threshold : float
        FDR threshold for filtering pathways
    max_pathways : int
        Maximum number of pathways to display
    aggregation_method : str
        How to aggregate pathways across contrasts: "max_nes", "mean_nes", or "min_fdr"
    collection_filter : Optional[str]
        Filter to specific collection (e.g., "Hallmark", "Kidney")
    contrast_filter : Optional[str]
        Filter to specific contrast (e.g., "Injury_vs_Control")
    figsize : tuple
        Figure size (width, height)
    save_path : Optional[Path]
        Path to save the figure

    Returns:
    --------
    plt.Figure or None when nothing passes the filters
    """
    if aggregation_method not in ("max_nes", "mean_nes", "min_fdr"):
        raise ValueError(f"Unknown aggregation_method: {aggregation_method}")

    if results_df.empty:
        print("No enrichment results to plot.")
        return None

    filtered_df = _filter_results(results_df, fdr_threshold, collection_filter, contrast_filter)
    if filtered_df.empty:
        print(f"No pathways pass filters (FDR <= {fdr_threshold})")
        return None

    keys = ["pathway", "cell_type"]
    if aggregation_method == "max_nes":
        agg_df = _strongest_per_group(filtered_df, keys)
    elif aggregation_method == "mean_nes":
        agg_df = filtered_df.groupby(keys, as_index=False).agg(nes=("nes", "mean"), fdr=("fdr", "min"))
    else:
        idx = filtered_df.groupby(keys)["fdr"].idxmin()
        agg_df = filtered_df.loc[idx.to_numpy()]

    pathway_scores = agg_df.groupby("pathway")["nes"].apply(lambda x: x.abs().max())
    top_pathways = pathway_scores.sort_values(ascending=False).head(max_pathways).index

    pivot_data = agg_df[agg_df["pathway"].isin(top_pathways)].pivot(
        index="pathway", columns="cell_type", values="nes"
    )
    pivot_data = pivot_data.loc[pivot_data.abs().max(axis=1).sort_values(ascending=False).index]

    fig, ax = plt.subplots(figsize=figsize)

    vmax = float(np.nanmax(np.abs(pivot_data.to_numpy())))
    im = ax.imshow(pivot_data.to_numpy(), aspect="auto", cmap="RdBu_r", vmin=-vmax, vmax=vmax)

    ax.set_xticks(range(len(pivot_data.columns)))
    ax.set_xticklabels(pivot_data.columns, rotation=45, ha="right")
    ax.set_yticks(range(len(pivot_data.index)))
    ax.set_yticklabels(pivot_data.index)
    plt.colorbar(im, ax=ax, label="Normalized Enrichment Score (NES)")

    # Annotate strong enrichments only
    for i in range(len(pivot_data.index)):
        for j in range(len(pivot_data.columns)):
            value = pivot_data.iloc[i, j]
            if not pd.isna(value) and abs(value) > 1.0:
                text_color = "white" if abs(value) > vmax * 0.6 else "black"
                ax.text(j, i, f"{value:.2f}", ha="center", va="center",
                        color=text_color, fontsize=8, fontweight="bold")

    ax.set_xlabel("Cell Type", fontsize=12, fontweight="bold")
    ax.set_ylabel("Pathway", fontsize=12, fontweight="bold")
    ax.set_title(
        f"Pathway Enrichment Across Cell Types (FDR <= {fdr_threshold})"
        + _title_suffix(collection_filter, contrast_filter),
        fontsize=14, fontweight="bold", pad=20,
    )
    plt.tight_layout()

    _save_or_show(fig, save_path)
    return fig


def plot_pathways_by_cell_type_grid(
    results_df: pd.DataFrame,
    fdr_threshold: float = 0.1,
    max_pathways_per_cell: int = 10,
    collection_filter: Optional[str] = None,
    contrast_filter: Optional[str] = None,
    figsize_per_subplot: tuple = (8, 6),
    max_cols: int = 3,
    save_path: Optional[Path] = None,
) -> Optional[plt.Figure]:
    """
    Grid of bar plots with the top up and down pathways of each cell type.

    Parameters:
    -----------
    results_df : pd.DataFrame
        GSEA summary dataframe
    fdr_threshold : float
        FDR threshold for filtering pathways
    max_pathways_per_cell : int
        Maximum number of pathways to show per cell type (half up, half down)
    collection_filter : Optional[str]
        Filter to specific collection
    contrast_filter : Optional[str]
        Filter to specific contrast; otherwise the strongest contrast per pathway is shown
    figsize_per_subplot : tuple
        Size of each subplot
    max_cols : int
        Maximum number of columns in grid
    save_path : Optional[Path]
        Path to save the figure

    Returns:
    --------
    plt.Figure or None when nothing passes the filters
    """
    if results_df.empty:
        print("No enrichment results to plot.")
        return None

    filtered_df = _filter_results(results_df, fdr_threshold, collection_filter, contrast_filter)
    if filtered_df.empty:
        print(f"No pathways pass filters (FDR <= {fdr_threshold})")
        return None

    cell_types = sorted(filtered_df["cell_type"].unique())
    n_cells = len(cell_types)
    n_cols = min(max_cols, n_cells)
    n_rows = int(np.ceil(n_cells / n_cols))

    fig, axes = plt.subplots(
        n_rows, n_cols,
        figsize=(figsize_per_subplot[0] * n_cols, figsize_per_subplot[1] * n_rows),
        squeeze=False,
    )
    axes = axes.flatten()

    for ax, cell_type in zip(axes, cell_types):
        cell_data = filtered_df[filtered_df["cell_type"] == cell_type]
        if cell_data["contrast"].nunique() > 1:
            cell_data = _strongest_per_group(cell_data, ["pathway"])

        half = max(1, max_pathways_per_cell // 2)
        top_up = cell_data[cell_data["nes"] > 0].nlargest(half, "nes")
        top_down = cell_data[cell_data["nes"] < 0].nsmallest(half, "nes")
        top_pathways = pd.concat([top_up, top_down]).sort_values("nes")

        if top_pathways.empty:
            ax.text(0.5, 0.5, f"No pathways\nFDR <= {fdr_threshold}",
                    ha="center", va="center", transform=ax.transAxes)
            ax.set_title(cell_type, fontsize=10, fontweight="bold")
            ax.axis("off")
            continue

        pathway_names = top_pathways["pathway"].astype(str)
        colors = ["#d7301f" if x > 0 else "#225ea8" for x in top_pathways["nes"]]
        ax.barh(range(len(pathway_names)), top_pathways["nes"], color=colors)
        ax.axvline(0, color="black", linewidth=0.8, linestyle="--", alpha=0.5)
        ax.set_yticks(range(len(pathway_names)))
        ax.set_yticklabels(
            [name[:60] + "..." if len(name) > 60 else name for name in pathway_names], fontsize=8
        )
        ax.set_xlabel("NES", fontsize=9)
        ax.set_title(cell_type, fontsize=10, fontweight="bold")
        ax.grid(axis="x", alpha=0.3, linestyle="--")

    for ax in axes[n_cells:]:
        ax.axis("off")

    fig.suptitle(
        f"Top Pathways by Cell Type (FDR <= {fdr_threshold})"
        + _title_suffix(collection_filter, contrast_filter),
        fontsize=14, fontweight="bold", y=0.995,
    )
    plt.tight_layout()

    _save_or_show(fig, save_path)
    return fig
