import numpy as np
import pytest
import scipy.sparse as sp


def test_log_normalize_is_log2_of_scaled_counts_plus_one():
    from sc_doublet_qc.normalization import log_normalize

    counts = np.array([[0.0, 2.0, 6.0], [4.0, 0.0, 12.0]])
    sf = np.array([2.0, 4.0])
    out = log_normalize(counts, sf)
    assert sp.issparse(out)
    assert out.nnz == 4
    assert np.allclose(out.toarray(), np.log2(counts / sf[:, None] + 1.0))
    assert np.allclose(log_normalize(sp.csr_matrix(counts), sf).toarray(), out.toarray())


def test_library_size_factors_have_unit_mean():
    from sc_doublet_qc.normalization import library_size_factors

    sf = library_size_factors(np.array([[1.0, 1.0], [3.0, 3.0]]))
    assert np.allclose(sf, [0.5, 1.5])
    with pytest.raises(ValueError):
        library_size_factors(np.zeros((2, 2)))
