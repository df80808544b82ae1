import numpy as np
import pytest


def test_threshold_is_strict():
    from sc_doublet_qc.stripped import classify_stripped

    labels = np.array([0, 0, 1, 1])
    mito = np.array([0.005, 0.005, 0.0049, 0.0049])
    flags, table = classify_stripped(labels, mito, np.full(4, 1000.0), threshold=0.005)
    assert table.loc[0, "stripped"] == False  # noqa: E712
    assert table.loc[1, "stripped"] == True  # noqa: E712
    assert flags.tolist() == [False, False, True, True]


def test_library_size_condition_is_optional():
    from sc_doublet_qc.stripped import classify_stripped

    labels = np.array([0, 0, 1, 1])
    mito = np.zeros(4)
    lib = np.array([100.0, 100.0, 5000.0, 5000.0])
    flags, _ = classify_stripped(labels, mito, lib)
    assert flags.all()
    flags, table = classify_stripped(labels, mito, lib, max_library_size=1000.0)
    assert flags.tolist() == [True, True, False, False]
    assert table["median_library_size"].tolist() == [100.0, 5000.0]


def test_mito_fraction_excludes_unannotated_genes():
    from sc_doublet_qc.stripped import mito_fraction

    counts = np.array([
        [2.0, 8.0, 90.0],
        [0.0, 0.0, 5.0],
    ])
    chromosomes = ["MT", "1", None]
    frac = mito_fraction(counts, chromosomes)
    assert frac[0] == pytest.approx(0.2)
    assert np.isnan(frac[1])


def test_mito_fraction_checks_annotation_length():
    from sc_doublet_qc.stripped import mito_fraction

    with pytest.raises(ValueError):
        mito_fraction(np.ones((2, 3)), ["MT", "1"])


def test_undefined_cells_do_not_drive_cluster_medians():
    from sc_doublet_qc.stripped import cluster_summary

    table = cluster_summary([0, 0, 0], [np.nan, 0.01, 0.03], [10.0, 20.0, 30.0])
    assert table.loc[0, "median_mito_fraction"] == pytest.approx(0.02)
    assert table.loc[0, "n_cells"] == 3
