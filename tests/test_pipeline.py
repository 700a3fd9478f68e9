import numpy as np
import pandas as pd
import pytest

import kidney_de_gsea
from kidney_scrna.export import sanitize_obs_for_h5ad
from conftest import CYCLE_GENES


@pytest.fixture
def annotated_h5ad(normalized_adata, tmp_path):
    adata = normalized_adata
    adata.obs["celltype"] = adata.obs["true_type"].astype(str)
    sanitize_obs_for_h5ad(adata)
    path = tmp_path / "kidney_annotated.h5ad"
    adata.write_h5ad(path)
    return path


def test_de_gsea_pipeline_offline(annotated_h5ad, tmp_path):
    gmt = tmp_path / "pipeline_sets.gmt"
    gmt.write_text(
        "BLOCK_A\tna\t" + "\t".join(f"Gene{i}" for i in range(20)) + "\n"
        "BLOCK_B\tna\t" + "\t".join(f"Gene{i}" for i in range(100, 130)) + "\n"
    )
    output_dir = tmp_path / "de_gsea"

    adata, de_results, gsea_results = kidney_de_gsea.main(
        annotated_h5ad,
        output_dir=output_dir,
        condition_order=["Sham", "IRI"],
        use_deseq2=False,
        gmt_paths=[gmt],
        download_gene_sets=False,
    )

    assert "phase" in adata.obs
    assert set(de_results["cell_type"]) == {"PT", "LOH", "Endo", "Macro"}
    assert set(de_results["contrast"]) == {"IRI_vs_Sham"}
    assert set(gsea_results["collection"]) == {"pipeline_sets"}
    for name in (
        "cell_cycle_phase_by_celltype.csv",
        "signature_scores_by_celltype.csv",
        "cell_scores.csv",
        "pseudobulk_samples.csv",
        "differential_expression_results.csv",
        "gsea_results.csv",
        "plots/volcano_PT__IRI_vs_Sham.png",
        "plots/de_heatmap_PT__IRI_vs_Sham.png",
    ):
        assert (output_dir / name).exists(), name


def test_de_gsea_pipeline_requires_input(tmp_path):
    with pytest.raises(FileNotFoundError):
        kidney_de_gsea.main(tmp_path / "missing.h5ad", output_dir=tmp_path / "out")


def test_de_gsea_pipeline_reports_cell_cycle(annotated_h5ad, tmp_path):
    output_dir = tmp_path / "de_gsea"

    kidney_de_gsea.main(
        annotated_h5ad,
        output_dir=output_dir,
        condition_order=["Sham", "IRI"],
        use_deseq2=False,
        download_gene_sets=False,
    )

    phases = pd.read_csv(output_dir / "cell_cycle_phase_by_celltype.csv", index_col=0)
    assert set(phases.index) == {"PT", "LOH", "Endo", "Macro"}
    np.testing.assert_allclose(phases.sum(axis=1), 1.0)
    summary = pd.read_csv(output_dir / "signature_scores_by_celltype.csv", index_col=0)
    assert {"S_score", "G2M_score"} <= set(summary.columns)
    per_cell = pd.read_csv(output_dir / "cell_scores.csv", index_col=0)
    assert {"celltype", "condition", "S_score", "G2M_score", "phase"} <= set(per_cell.columns)


def test_de_gsea_pipeline_without_cycle_genes(normalized_adata, tmp_path):
    adata = normalized_adata[:, ~normalized_adata.var_names.isin(CYCLE_GENES)].copy()
    adata.obs["celltype"] = adata.obs["true_type"].astype(str)
    sanitize_obs_for_h5ad(adata)
    path = tmp_path / "no_cycle.h5ad"
    adata.write_h5ad(path)
    output_dir = tmp_path / "de_gsea"

    result, de_results, _ = kidney_de_gsea.main(
        path,
        output_dir=output_dir,
        condition_order=["Sham", "IRI"],
        use_deseq2=False,
        download_gene_sets=False,
    )

    assert "phase" not in result.obs
    assert not (output_dir / "cell_cycle_phase_by_celltype.csv").exists()
    assert not de_results.empty
