import pytest

from kidney_scrna import qc_filters


def test_default_filters_are_valid():
    assert qc_filters.validate_filters() is True


def test_filter_summary_lists_droplet_and_cell_settings():
    summary = qc_filters.get_filter_summary()
    assert "Method: emptydrops" in summary
    assert f"Max mitochondrial %: {qc_filters.CELL_FILTERS['max_mt_pct']}%" in summary
    assert "Max hemoglobin %" in summary
    assert "Max ribosomal %" not in summary


def test_validation_rejects_inverted_gene_bounds(monkeypatch):
    monkeypatch.setitem(qc_filters.CELL_FILTERS, "min_genes", 10000)
    with pytest.raises(ValueError, match="min_genes must be less than max_genes"):
        qc_filters.validate_filters()


def test_validation_rejects_unknown_droplet_method(monkeypatch):
    monkeypatch.setitem(qc_filters.DROPLET_PARAMS, "method", "cellranger")
    with pytest.raises(ValueError, match="droplet method"):
        qc_filters.validate_filters()


def test_mouse_gene_patterns():
    assert qc_filters.GENE_PATTERNS["mt_pattern"] == "mt-"
    assert qc_filters.GENE_PATTERNS["hb_pattern"].startswith("^Hb")
