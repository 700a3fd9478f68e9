#!/usr/bin/env python3
"""
Bridge to the R/Bioconductor packages used for droplet calling (DropletUtils)
and deconvolution normalization (scran)
"""

import numpy as np
from scipy import sparse

R_INSTALL_HINTS = {
    "DropletUtils": 'BiocManager::install("DropletUtils")',
    "scran": 'BiocManager::install("scran")',
    "Matrix": 'install.packages("Matrix")',
}


def import_r_package(name):
    """Import an R package through rpy2

    Raises:
        ImportError: rpy2, R, or the R package itself is unavailable
    """
    try:
        from rpy2.robjects.packages import importr, PackageNotInstalledError
    except (ImportError, RuntimeError) as e:
        raise ImportError(
            f"rpy2 and a working R installation are required to use '{name}'. "
            "Install with: pip install 'kidney-scrna[r]'"
        ) from e

    try:
        return importr(name)
    except PackageNotInstalledError as e:
        hint = R_INSTALL_HINTS.get(name, f'install.packages("{name}")')
        raise ImportError(f"R package '{name}' is not installed. In R run: {hint}") from e


def to_r_matrix(X):
    """Convert a cells x genes count matrix to an R dgCMatrix (genes x cells)"""
    import rpy2.robjects as ro
    from rpy2.robjects import numpy2ri
    from rpy2.robjects.conversion import localconverter

    matrix_pkg = import_r_package("Matrix")

    counts = sparse.csr_matrix(X, dtype=np.float64).T.tocsc()
    counts.sort_indices()

    with localconverter(ro.default_converter + numpy2ri.converter):
        return matrix_pkg.sparseMatrix(
            i=(counts.indices + 1).astype(np.int32),
            p=counts.indptr.astype(np.int32),
            x=counts.data,
            dims=np.array(counts.shape, dtype=np.int32),
        )


def r_dataframe_to_pandas(r_df):
    """Convert an R data.frame or Bioconductor DataFrame to pandas"""
    import rpy2.robjects as ro
    from rpy2.robjects import pandas2ri
    from rpy2.robjects.conversion import localconverter

    as_data_frame = ro.r("function(x) as.data.frame(x)")
    r_frame = as_data_frame(r_df)
    with localconverter(ro.default_converter + pandas2ri.converter):
        return ro.conversion.get_conversion().rpy2py(r_frame)


def set_r_seed(seed):
    import rpy2.robjects as ro

    ro.r["set.seed"](int(seed))
