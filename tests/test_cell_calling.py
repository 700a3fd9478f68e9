import matplotlib.pyplot as plt
import numpy as np
import pytest

from kidney_scrna.cell_calling import (
    barcode_ranks,
    call_cells,
    call_cells_inflection,
    plot_barcode_ranks,
)
from conftest import require_r_package


def test_barcode_ranks_sorted_by_total(raw_droplets):
    ranks = barcode_ranks(raw_droplets, lower=100)

    assert ranks["rank"].iloc[0] == 1
    assert ranks["total"].is_monotonic_decreasing
    assert len(ranks) == raw_droplets.n_obs
    assert set(ranks.index) == set(raw_droplets.obs_names)


def test_knee_and_inflection_sit_between_cells_and_empties(raw_droplets):
    ranks = barcode_ranks(raw_droplets, lower=100)

    assert 300 < ranks.attrs["inflection"] < 2000
    assert ranks.attrs["knee"] > ranks.attrs["lower"]


def test_barcode_ranks_needs_barcodes_above_lower(raw_droplets):
    with pytest.raises(ValueError, match="cannot fit the barcode-rank curve"):
        barcode_ranks(raw_droplets, lower=10**7)


def test_inflection_calls_every_cell(raw_droplets):
    is_cell = call_cells_inflection(raw_droplets, lower=100)

    np.testing.assert_array_equal(is_cell, raw_droplets.obs["is_cell"].to_numpy())


def test_call_cells_inflection_subsets_and_annotates(raw_droplets):
    called = call_cells(raw_droplets, method="inflection", lower=100)

    assert called.n_obs == int(raw_droplets.obs["is_cell"].sum())
    assert called.obs["is_cell"].all()
    assert (called.obs["droplet_total"] >= 2000).all()
    assert called.obs["droplet_fdr"].isna().all()


def test_call_cells_none_returns_input(raw_droplets):
    assert call_cells(raw_droplets, method="none") is raw_droplets


def test_call_cells_unknown_method(raw_droplets):
    with pytest.raises(ValueError, match="Unknown droplet calling method"):
        call_cells(raw_droplets, method="knee")


def test_plot_barcode_ranks_saves_per_sample(raw_droplets, tmp_path):
    ranks = barcode_ranks(raw_droplets, lower=100)
    called = raw_droplets.obs_names[raw_droplets.obs["is_cell"].to_numpy()]

    plot_barcode_ranks(ranks, called=called, save_dir=tmp_path, sample="S1")

    assert (tmp_path / "barcode_ranks_S1.png").exists()


def test_barcode_rank_legend_lists_knee_and_inflection(raw_droplets):
    ranks = barcode_ranks(raw_droplets, lower=100)
    called = raw_droplets.obs_names[raw_droplets.obs["is_cell"].to_numpy()]

    plot_barcode_ranks(ranks, called=called)

    ax = plt.gcf().axes[0]
    labels = [text.get_text() for text in ax.get_legend().get_texts()]
    plt.close("all")
    assert "Empty" in labels
    assert any(label.startswith("Cell (n=") for label in labels)
    assert {"Knee", "Inflection"} <= set(labels)


def test_emptydrops_separates_cells_from_ambient(raw_droplets):
    require_r_package("DropletUtils")

    called = call_cells(raw_droplets, method="emptydrops", lower=100, niters=10000, seed=0)

    n_true = int(raw_droplets.obs["is_cell"].sum())
    assert called.obs["is_cell"].sum() >= 0.95 * n_true
    assert (~called.obs["is_cell"]).sum() <= 0.05 * n_true
    assert (called.obs["droplet_fdr"] <= 0.01).all()
