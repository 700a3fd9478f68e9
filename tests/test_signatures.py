import pytest

from kidney_scrna.signatures import (
    SIGNATURES,
    plot_signature_scores,
    score_cell_cycle,
    score_signatures,
    summarize_scores,
)
from conftest import CYCLE_GENES, MARKERS


def test_signatures_are_mouse_symbols():
    assert set(SIGNATURES) == {"injury", "fibrosis", "inflammation", "hypoxia", "proliferation"}
    for genes in SIGNATURES.values():
        assert all(g[0].isupper() and not g.isupper() for g in genes)


def test_score_signatures_skips_sparse_signatures(normalized_adata):
    signatures = {"pt": MARKERS["PT"], "absent": ["Foo1", "Foo2", "Foo3"], "partial": ["Lrp2", "Foo1"]}

    score_names = score_signatures(normalized_adata, signatures=signatures, min_genes=3)

    assert score_names == ["pt_score"]
    assert "absent_score" not in normalized_adata.obs
    by_type = normalized_adata.obs.groupby("true_type", observed=True)["pt_score"].mean()
    assert by_type.idxmax() == "PT"


def test_summarize_scores(normalized_adata):
    score_names = score_signatures(normalized_adata, signatures={"endo": MARKERS["Endo"]})

    summary = summarize_scores(normalized_adata, score_names, groupby="true_type")

    assert list(summary.columns) == ["endo_score"]
    assert summary["endo_score"].idxmax() == "Endo"


def test_summarize_scores_missing_column(normalized_adata):
    with pytest.raises(KeyError):
        summarize_scores(normalized_adata, ["injury_score"], groupby="true_type")


def test_cell_cycle_phases(normalized_adata):
    score_cell_cycle(normalized_adata)

    assert {"S_score", "G2M_score", "phase"} <= set(normalized_adata.obs.columns)
    assert set(normalized_adata.obs["phase"]) <= {"G1", "S", "G2M"}


def test_cell_cycle_requires_genes(normalized_adata):
    adata = normalized_adata[:, ~normalized_adata.var_names.isin(CYCLE_GENES)].copy()

    with pytest.raises(ValueError, match="Cell-cycle genes not found"):
        score_cell_cycle(adata)


def test_plot_signature_scores(normalized_adata, tmp_path):
    score_names = score_signatures(normalized_adata, signatures={"pt": MARKERS["PT"]})

    plot_signature_scores(normalized_adata, score_names, groupby="true_type", save_dir=tmp_path)
    plot_signature_scores(normalized_adata, [], groupby="true_type", save_dir=tmp_path / "none")

    assert (tmp_path / "signature_scores.png").exists()
    assert not (tmp_path / "none").exists()
