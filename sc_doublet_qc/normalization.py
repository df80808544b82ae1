import numpy as np
import scipy.sparse as sp
from scipy.sparse import issparse


def _as_csr(mtx):
    if issparse(mtx):
        return mtx.tocsr()
    return sp.csr_matrix(np.asarray(mtx))


def library_sizes(mtx):
    """Total counts per cell (rows) for dense or sparse matrices."""
    if issparse(mtx):
        return np.asarray(mtx.sum(axis=1)).ravel().astype(float)
    return np.asarray(mtx).sum(axis=1).astype(float)


def library_size_factors(mtx):
    """Size factors proportional to library size, scaled to unit mean.

    Cells with zero counts get a size factor of zero; callers are expected to
    have removed empty barcodes beforehand.
    """
    loading = library_sizes(mtx)
    target = np.mean(loading)
    if target <= 0:
        raise ValueError("Cannot compute size factors: every cell has zero counts.")
    return loading / target


def check_size_factors(size_factors, n_cells):
    size_factors = np.asarray(size_factors, dtype=float).ravel()
    if size_factors.shape[0] != n_cells:
        raise ValueError(
            f"Expected {n_cells} size factors (one per cell), got {size_factors.shape[0]}."
        )
    if not np.all(np.isfinite(size_factors)) or np.any(size_factors <= 0):
        raise ValueError("Size factors must be finite and strictly positive.")
    return size_factors


def scale_by_size_factors(mtx, size_factors):
    """Divide each row of a counts matrix by its size factor (sparse output)."""
    size_factors = check_size_factors(size_factors, mtx.shape[0])
    return sp.diags(1.0 / size_factors) @ _as_csr(mtx)


def log_normalize(mtx, size_factors):
    """Size-factor normalize then log2-transform: ``log2(x / sf + 1)``.

    Parameters:
      mtx: Raw counts (cells x genes), dense or sparse.
      size_factors: One positive factor per cell.

    Returns:
      scipy.sparse.csr_matrix of log-expression values.
    """
    scaled = scale_by_size_factors(mtx, size_factors).astype(np.float64)
    out = scaled.log1p()
    out.data /= np.log(2.0)
    return out.tocsr()
