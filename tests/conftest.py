import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest
import anndata
from scipy import sparse

from kidney_scrna.signatures import S_GENES, G2M_GENES

MARKERS = {
    "PT": ["Lrp2", "Slc34a1", "Cubn", "Hnf4a"],
    "LOH": ["Slc12a1", "Umod", "Cldn16"],
    "Endo": ["Pecam1", "Emcn", "Kdr", "Flt1"],
    "Macro": ["C1qa", "Adgre1", "Cd68"],
}

PT_SEGMENTS = {
    "PT_S1": MARKERS["PT"] + ["Slc5a2", "Slc5a12", "Spp2"],
    "PT_S2": MARKERS["PT"] + ["Slc22a6", "Slc13a3", "Fxyd2"],
    "PT_S3": MARKERS["PT"] + ["Slc7a13", "Atp11a", "Cyp7b1"],
}

QC_GENES = ["mt-Co1", "mt-Nd1", "Rps3", "Rpl13", "Hba-a1", "Hbb-bs"]
CYCLE_GENES = S_GENES[:10] + G2M_GENES[:10]

CONDITIONS = {"S1": "Sham", "S2": "Sham", "S3": "IRI", "S4": "IRI"}


def kidney_gene_names(groups=MARKERS, n_background=200):
    markers = list(dict.fromkeys(g for genes in groups.values() for g in genes))
    return markers + QC_GENES + CYCLE_GENES + [f"Gene{i}" for i in range(n_background)]


def make_kidney_counts(
    groups=MARKERS,
    n_cells_per_group=20,
    samples=("S1", "S2", "S3", "S4"),
    n_background=200,
    background_rate=1.0,
    marker_rate=20.0,
    seed=0,
):
    """Poisson counts where each group over-expresses its marker genes"""
    rng = np.random.default_rng(seed)
    var_names = kidney_gene_names(groups, n_background)
    gene_index = {g: i for i, g in enumerate(var_names)}

    blocks = []
    obs_rows = []
    for sample in samples:
        for group, genes in groups.items():
            block = rng.poisson(background_rate, size=(n_cells_per_group, len(var_names)))
            cols = [gene_index[g] for g in genes]
            block[:, cols] = rng.poisson(marker_rate, size=(n_cells_per_group, len(cols)))
            blocks.append(block)
            obs_rows.extend(
                {"orig.ident": sample, "sample": sample, "true_type": group}
                for _ in range(n_cells_per_group)
            )

    obs = pd.DataFrame(obs_rows)
    obs.index = [f"{row['orig.ident']}_cell{i}" for i, row in enumerate(obs_rows)]
    obs["condition"] = obs["orig.ident"].map(CONDITIONS).fillna("Sham")
    obs["true_type"] = pd.Categorical(obs["true_type"], categories=list(groups))

    adata = anndata.AnnData(
        X=sparse.csr_matrix(np.vstack(blocks).astype(np.float32)),
        obs=obs,
        var=pd.DataFrame(index=var_names),
    )
    return adata


def make_raw_droplets(n_cells=200, n_empty_high=1000, n_empty_low=1000, n_genes=50, seed=0):
    """Raw barcodes: cells with their own profile plus ambient-only droplets

    Cells carry 2000-6000 UMIs; empty droplets 101-300 or 1-50 UMIs drawn
    from the ambient profile.
    """
    rng = np.random.default_rng(seed)
    ambient = rng.dirichlet(np.ones(n_genes))
    cell_profile = rng.dirichlet(np.ones(n_genes) * 0.3)

    totals = np.concatenate(
        [
            rng.integers(2000, 6000, size=n_cells),
            rng.integers(101, 300, size=n_empty_high),
            rng.integers(1, 50, size=n_empty_low),
        ]
    )
    rows = [
        rng.multinomial(total, cell_profile if i < n_cells else ambient)
        for i, total in enumerate(totals)
    ]

    barcodes = [f"BC{i:05d}" for i in range(len(totals))]
    adata = anndata.AnnData(
        X=sparse.csr_matrix(np.vstack(rows).astype(np.float32)),
        obs=pd.DataFrame(index=barcodes),
        var=pd.DataFrame(index=[f"Gene{i}" for i in range(n_genes)]),
    )
    adata.obs["is_cell"] = np.arange(len(totals)) < n_cells
    return adata


def write_10x_mtx(directory, X, barcodes, genes):
    """Write a Cell Ranger v2 style matrix directory (matrix.mtx, genes.tsv, barcodes.tsv)"""
    directory.mkdir(parents=True, exist_ok=True)
    coo = sparse.coo_matrix(X).T
    with open(directory / "matrix.mtx", "w") as f:
        f.write("%%MatrixMarket matrix coordinate integer general\n")
        f.write(f"{coo.shape[0]} {coo.shape[1]} {coo.nnz}\n")
        for i, j, v in zip(coo.row, coo.col, coo.data):
            f.write(f"{i + 1} {j + 1} {int(v)}\n")
    pd.DataFrame(
        {"id": [f"ENSMUSG{i:011d}" for i in range(len(genes))], "name": list(genes)}
    ).to_csv(directory / "genes.tsv", sep="\t", header=False, index=False)
    pd.Series(list(barcodes)).to_csv(directory / "barcodes.tsv", sep="\t", header=False, index=False)


def require_r_package(name):
    """Skip unless rpy2, R and the R package are all available"""
    pytest.importorskip("rpy2")
    from kidney_scrna.r_bridge import import_r_package

    try:
        import_r_package(name)
    except Exception as e:
        pytest.skip(f"R package {name} unavailable: {e}")


@pytest.fixture
def counts_adata():
    return make_kidney_counts()


@pytest.fixture
def normalized_adata(counts_adata):
    from kidney_scrna.processing import normalize
    from kidney_scrna.qc_utils import calculate_qc_metrics

    adata = calculate_qc_metrics(counts_adata)
    return normalize(adata, method="total")


@pytest.fixture
def raw_droplets():
    return make_raw_droplets()
