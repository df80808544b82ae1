import numpy as np
import pytest


def make_sample(
    seed: int = 0,
    n_types: int = 4,
    cells_per_type: int = 80,
    n_background: int = 200,
    markers_per_type: int = 15,
    n_doublets: int = 12,
    n_mito: int = 5,
    stripped_type=None,
):
    """Synthetic counts with distinct cell types and injected A+B doublets.

    Returns ``(counts, cell_type, is_doublet, chromosomes)``. Genes are laid
    out as background, then markers per type, then mitochondrial genes.
    Doublets are the sum of one type-0 and one type-1 cell.
    """
    rng = np.random.default_rng(seed)
    background = rng.permutation(np.logspace(-1, 1.3, n_background))
    n_marker = n_types * markers_per_type
    n_genes = n_background + n_marker + n_mito

    def profile(t):
        rates = np.empty(n_genes)
        rates[:n_background] = background
        markers = np.full(n_marker, 0.2)
        markers[t * markers_per_type:(t + 1) * markers_per_type] = 20.0
        rates[n_background:n_background + n_marker] = markers
        mito_rate = 0.001 if stripped_type is not None and t == stripped_type else 3.0
        rates[n_background + n_marker:] = mito_rate
        return rates

    def draw(t, n):
        depth = rng.uniform(0.8, 1.2, size=(n, 1))
        return rng.poisson(profile(t)[None, :] * depth)

    singlets = [draw(t, cells_per_type) for t in range(n_types)]
    doublets = draw(0, n_doublets) + draw(1, n_doublets)
    counts = np.vstack(singlets + [doublets]).astype(np.float64)
    cell_type = np.concatenate([np.full(cells_per_type, t) for t in range(n_types)] + [np.full(n_doublets, -1)])
    is_doublet = cell_type == -1
    chromosomes = np.array(
        ["1"] * n_background + ["2"] * n_marker + ["MT"] * n_mito, dtype=object
    )
    return counts, cell_type, is_doublet, chromosomes


@pytest.fixture
def synthetic_sample():
    return make_sample(seed=0)


@pytest.fixture
def sample_factory():
    return make_sample
