#!/usr/bin/env python3
"""
Gene signature scoring for the kidney scRNA-seq analysis
Injury, fibrosis, inflammation, hypoxia and cell-cycle module scores
"""

import scanpy as sc
import matplotlib.pyplot as plt
import seaborn as sns

# Editable mouse gene signatures
SIGNATURES = {
    "injury": ["Havcr1", "Lcn2", "Krt20", "Spp1", "Cd44", "Vcam1", "Sox9"],
    "fibrosis": ["Col1a1", "Col1a2", "Col3a1", "Fn1", "Tgfb1", "Acta2", "Postn"],
    "inflammation": ["Ccl2", "Cxcl1", "Il1b", "Tnf", "Nfkbia", "Icam1", "Cxcl10"],
    "hypoxia": ["Vegfa", "Slc2a1", "Pgk1", "Ldha", "Bnip3", "Egln3", "Car9"],
    "proliferation": ["Mki67", "Top2a", "Pcna", "Ccnb1", "Cdk1", "Birc5"],
}

# Mouse orthologs of the Tirosh et al. cell-cycle genes
S_GENES = [
    "Mcm5", "Pcna", "Tyms", "Fen1", "Mcm2", "Mcm4", "Rrm1", "Ung", "Gins2",
    "Mcm6", "Cdca7", "Dtl", "Prim1", "Uhrf1", "Hells", "Rfc2", "Rpa2", "Nasp",
    "Rad51ap1", "Gmnn", "Wdr76", "Slbp", "Ccne2", "Ubr7", "Pold3", "Msh2",
    "Atad2", "Rad51", "Rrm2", "Cdc45", "Cdc6", "Exo1", "Tipin", "Dscc1",
    "Blm", "Casp8ap2", "Usp1", "Clspn", "Pola1", "Chaf1b", "Brip1", "E2f8",
]

G2M_GENES = [
    "Hmgb2", "Cdk1", "Nusap1", "Ube2c", "Birc5", "Tpx2", "Top2a", "Ndc80",
    "Cks2", "Nuf2", "Cks1b", "Mki67", "Tmpo", "Cenpf", "Tacc3", "Smc4",
    "Ccnb2", "Ckap2l", "Ckap2", "Aurkb", "Bub1", "Kif11", "Anp32e", "Tubb4b",
    "Gtse1", "Kif20b", "Hjurp", "Cdca3", "Cdc20", "Ttk", "Cdc25c", "Kif2c",
    "Rangap1", "Ncapd2", "Dlgap5", "Cdca2", "Cdca8", "Ect2", "Kif23", "Hmmr",
    "Aurka", "Psrc1", "Anln", "Lbr", "Ckap5", "Cenpe", "Ctcf", "Nek2", "G2e3",
    "Gas2l3", "Cbx5", "Cenpa",
]


def score_signatures(adata, signatures=SIGNATURES, min_genes=3, use_raw=None):
    """Add a module score per gene signature

    Args:
        adata: Log-normalized AnnData object
        signatures: Dict of signature name -> gene list
        min_genes: Minimum number of signature genes present to score it
        use_raw: Passed to ``sc.tl.score_genes``; None uses ``.raw`` when set

    Returns:
        List of the score columns added (``<name>_score``)
    """
    print("Scoring gene signatures...")

    if use_raw is None:
        use_raw = adata.raw is not None
    var_names = adata.raw.var_names if use_raw else adata.var_names

    score_names = []
    for name, genes in signatures.items():
        present = [g for g in genes if g in var_names]
        if len(present) < min_genes:
            print(f"  Skipping {name}: {len(present)}/{len(genes)} genes present (need {min_genes})")
            continue

        score_name = f"{name}_score"
        sc.tl.score_genes(adata, gene_list=present, score_name=score_name, use_raw=use_raw)
        score_names.append(score_name)
        print(f"  {name}: {len(present)}/{len(genes)} genes")

    return score_names


def score_cell_cycle(adata, s_genes=S_GENES, g2m_genes=G2M_GENES):
    """Score S and G2M phases and call a phase per cell"""
    print("Scoring cell cycle...")

    use_raw = adata.raw is not None
    var_names = adata.raw.var_names if use_raw else adata.var_names
    s_present = [g for g in s_genes if g in var_names]
    g2m_present = [g for g in g2m_genes if g in var_names]

    if not s_present or not g2m_present:
        raise ValueError(
            f"Cell-cycle genes not found (S: {len(s_present)}, G2M: {len(g2m_present)}); "
            "check that var_names are mouse gene symbols"
        )

    sc.tl.score_genes_cell_cycle(
        adata, s_genes=s_present, g2m_genes=g2m_present, use_raw=use_raw
    )

    print(adata.obs["phase"].value_counts().to_string())
    return adata


def summarize_scores(adata, score_names, groupby="celltype"):
    """Mean score per group (groups x scores)"""
    missing = [s for s in [groupby, *score_names] if s not in adata.obs]
    if missing:
        raise KeyError(f"Columns not found in adata.obs: {missing}")
    return adata.obs.groupby(groupby, observed=True)[list(score_names)].mean()


def plot_signature_scores(adata, score_names, groupby="celltype", save_dir=None):
    """Violin plots of signature scores per group

    Args:
        adata: AnnData object with score columns
        score_names: Score columns to plot
        groupby: Grouping column for the x axis
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    if not score_names:
        print("  No signature scores to plot")
        return

    n = len(score_names)
    fig, axes = plt.subplots(n, 1, figsize=(max(8, adata.obs[groupby].nunique() * 0.6), 3.5 * n), squeeze=False)

    for ax, score in zip(axes[:, 0], score_names):
        sns.violinplot(
            data=adata.obs, x=groupby, y=score, ax=ax, inner=None, cut=0, density_norm="width"
        )
        ax.axhline(0, color="gray", linestyle="--", linewidth=0.8)
        ax.set_title(score)
        ax.set_xlabel("")
        ax.tick_params(axis="x", rotation=45)

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "signature_scores.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/signature_scores.png")
        plt.close(fig)
    else:
        plt.show()
