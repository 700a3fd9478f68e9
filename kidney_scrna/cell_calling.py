#!/usr/bin/env python3
"""
Cell calling utilities for raw (unfiltered) droplet matrices
Separates cell-containing droplets from empty droplets with EmptyDrops
or the barcode-rank inflection
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from kidney_scrna.qc_filters import DROPLET_PARAMS
from kidney_scrna.r_bridge import (
    import_r_package,
    r_dataframe_to_pandas,
    set_r_seed,
    to_r_matrix,
)


def _total_counts(adata):
    return np.asarray(adata.X.sum(axis=1)).ravel()


def barcode_ranks(adata, lower=100):
    """Compute the barcode-rank curve with its knee and inflection points

    Args:
        adata: Raw AnnData (barcodes x genes)
        lower: Totals at or below this value are excluded from the curve fit

    Returns:
        DataFrame indexed by barcode with ``rank`` and ``total``, sorted by
        decreasing total. ``attrs["knee"]`` and ``attrs["inflection"]`` hold
        the total UMI counts at those points.
    """
    totals = _total_counts(adata)
    order = np.argsort(-totals, kind="stable")
    ranks = pd.DataFrame(
        {"rank": np.arange(1, len(totals) + 1), "total": totals[order]},
        index=adata.obs_names[order],
    )

    fit = ranks[ranks["total"] > lower]
    if len(fit) < 3:
        raise ValueError(
            f"Only {len(fit)} barcodes above lower={lower}; cannot fit the barcode-rank curve"
        )

    # Collapse ties so each total contributes a single point
    curve = fit.groupby("total", sort=False)["rank"].mean()
    x = np.log10(curve.values)
    y = np.log10(curve.index.values.astype(float))

    # Knee: point furthest from the chord joining the curve ends
    x0, y0, x1, y1 = x[0], y[0], x[-1], y[-1]
    distance = ((y1 - y0) * x - (x1 - x0) * y + x1 * y0 - y1 * x0) / np.hypot(
        y1 - y0, x1 - x0
    )
    knee = float(curve.index.values[np.argmax(np.abs(distance))])

    # Inflection: steepest descent of log-total over log-rank, on an even grid
    grid = np.linspace(x[0], x[-1], 200)
    y_grid = np.interp(grid, x, y)
    steepest = int(np.argmin(np.gradient(y_grid, grid)))
    lo, hi = max(steepest - 1, 0), min(steepest + 1, len(grid) - 1)
    inflection = float(10 ** ((y_grid[lo] + y_grid[hi]) / 2))

    ranks.attrs["knee"] = knee
    ranks.attrs["inflection"] = inflection
    ranks.attrs["lower"] = lower
    return ranks


def call_cells_inflection(adata, lower=100):
    """Call cells as barcodes above the inflection of the barcode-rank curve"""
    ranks = barcode_ranks(adata, lower=lower)
    inflection = ranks.attrs["inflection"]
    print(f"  Knee at {ranks.attrs['knee']:,.0f} UMIs, inflection at {inflection:,.0f} UMIs")
    return _total_counts(adata) >= inflection


def run_emptydrops(adata, lower=100, niters=10000, seed=0):
    """Run DropletUtils::emptyDrops on a raw matrix

    Returns:
        DataFrame indexed by barcode with Total, LogProb, PValue, Limited
        and FDR. Barcodes at or below ``lower`` have NaN statistics.
    """
    droplet_utils = import_r_package("DropletUtils")

    set_r_seed(seed)
    result = droplet_utils.emptyDrops(
        to_r_matrix(adata.X), lower=int(lower), niters=int(niters)
    )
    result_df = r_dataframe_to_pandas(result)
    result_df.index = adata.obs_names
    return result_df


def call_cells(
    adata,
    method=DROPLET_PARAMS["method"],
    fdr=DROPLET_PARAMS["fdr"],
    lower=DROPLET_PARAMS["lower"],
    niters=DROPLET_PARAMS["niters"],
    seed=DROPLET_PARAMS["seed"],
):
    """Keep only cell-containing droplets of a raw matrix

    Args:
        adata: Raw AnnData (all barcodes)
        method: "emptydrops", "inflection" or "none"
        fdr: EmptyDrops FDR threshold
        lower: Ambient upper bound on total counts
        niters: EmptyDrops Monte Carlo iterations
        seed: Random seed for EmptyDrops

    Returns:
        AnnData restricted to called cells, with ``obs["droplet_total"]`` and
        ``obs["droplet_fdr"]`` (NaN for the inflection method)
    """
    if method == "none":
        return adata

    totals = _total_counts(adata)

    if method == "emptydrops":
        result = run_emptydrops(adata, lower=lower, niters=niters, seed=seed)
        fdr_values = result["FDR"].to_numpy(dtype=float)
        is_cell = np.nan_to_num(fdr_values, nan=1.0) <= fdr

        limited = result["Limited"].fillna(False).astype(bool).to_numpy()
        n_limited = int((limited & ~is_cell).sum())
        if n_limited:
            print(
                f"  Warning: {n_limited} barcodes hit the p-value floor but were not called; "
                f"consider increasing niters above {niters}"
            )
    elif method == "inflection":
        is_cell = call_cells_inflection(adata, lower=lower)
        fdr_values = np.full(adata.n_obs, np.nan)
    else:
        raise ValueError(f"Unknown droplet calling method: {method}")

    called = adata[is_cell].copy()
    called.obs["droplet_total"] = totals[is_cell]
    called.obs["droplet_fdr"] = fdr_values[is_cell]

    print(
        f"  Called {called.n_obs:,} cells from {adata.n_obs:,} barcodes "
        f"({method}, median {np.median(totals[is_cell]) if is_cell.any() else 0:,.0f} UMIs/cell)"
    )

    return called


def plot_barcode_ranks(ranks, called=None, save_dir=None, sample=None):
    """Plot the log-log barcode-rank curve

    Args:
        ranks: DataFrame from ``barcode_ranks``
        called: Optional collection of barcodes called as cells
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
        sample: Sample name used in the title and file name
    """
    fig, ax = plt.subplots(figsize=(6, 5))

    if called is not None:
        is_cell = ranks.index.isin(list(called))
        ax.scatter(
            ranks.loc[~is_cell, "rank"], ranks.loc[~is_cell, "total"],
            s=2, c="lightgray", label="Empty",
        )
        ax.scatter(
            ranks.loc[is_cell, "rank"], ranks.loc[is_cell, "total"],
            s=2, c="#d7301f", label=f"Cell (n={is_cell.sum():,})",
        )
    else:
        ax.plot(ranks["rank"], ranks["total"], color="black", linewidth=1)

    if "knee" in ranks.attrs:
        ax.axhline(ranks.attrs["knee"], color="#225ea8", linestyle="--", label="Knee")
        ax.axhline(ranks.attrs["inflection"], color="#41ab5d", linestyle=":", label="Inflection")

    if ax.get_legend_handles_labels()[0]:
        ax.legend(loc="lower left", markerscale=4)

    ax.set_xscale("log")
    ax.set_yscale("log")
    ax.set_xlabel("Barcode rank")
    ax.set_ylabel("Total UMI count")
    ax.set_title(f"Barcode ranks{f' - {sample}' if sample else ''}")
    plt.tight_layout()

    if save_dir:
        name = f"barcode_ranks_{sample}.png" if sample else "barcode_ranks.png"
        fig.savefig(save_dir / name, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/{name}")
        plt.close(fig)
    else:
        plt.show()
