import numpy as np
import pandas as pd
import pytest

ad = pytest.importorskip("anndata")
pytest.importorskip("scanpy")


def _adata():
    X = np.array([
        [5.0, 0.0, 1.0, 0.0],
        [5.0, 3.0, 1.0, 2.0],
        [10.0, 4.0, 2.0, 2.0],
        [1.0, 0.0, 0.0, 0.0],
    ])
    adata = ad.AnnData(X=X)
    adata.var_names = ["ENSMUSG00000086503", "ychr_gene", "g3", "g4"]
    adata.obs_names = ["c1", "c2", "c3", "c4"]
    return adata


def test_library_size_check_by_label():
    from sc_doublet_qc.reporting import library_size_check

    labels = ["singlet", "sample_doublet", "sample_doublet", "singlet"]
    table = library_size_check(_adata(), labels)
    assert table.loc["sample_doublet", "median_total_counts"] == pytest.approx(14.5)
    assert table.loc["singlet", "median_total_counts"] == pytest.approx(3.5)
    assert table.loc["sample_doublet", "median_n_genes"] == pytest.approx(4.0)
    assert table.loc["singlet", "n_cells"] == 2


def test_sex_gene_coexpression():
    from sc_doublet_qc.reporting import coexpression_by_label, sex_gene_coexpression

    chromosomes = pd.Series(["X", "Y", "1", None])
    coexpr = sex_gene_coexpression(_adata(), chromosomes)
    assert coexpr["coexpressed"].tolist() == [False, True, True, False]
    assert coexpr.loc["c3", "y_counts"] == 4

    summary = coexpression_by_label(coexpr, ["singlet", "sample_doublet", "sample_doublet", "singlet"])
    assert summary.loc["sample_doublet", "fraction_coexpressed"] == 1.0
    assert summary.loc["singlet", "n_coexpressed"] == 0


def test_plots_are_written(tmp_path):
    pytest.importorskip("seaborn")
    import matplotlib

    matplotlib.use("Agg")
    from sc_doublet_qc.outliers import outlier_test_family
    from sc_doublet_qc.reporting import plot_outlier_tests, plot_score_distributions

    rng = np.random.default_rng(0)
    cells = pd.DataFrame({
        "sample": np.repeat(["s1", "s2"], 20),
        "doublet_label": pd.Categorical(np.tile(["singlet"] * 18 + ["sample_doublet"] * 2, 2)),
        "doublet_score": rng.gamma(2.0, 0.5, size=40),
        "doublet_score_defined": True,
    })
    path = plot_score_distributions(cells, tmp_path)
    assert path is not None and path.exists()

    table = outlier_test_family({i: float(v) for i, v in enumerate(rng.gamma(2.0, 1.0, size=12))}, family="s1")
    path = plot_outlier_tests(table, tmp_path, name="per_sample")
    assert path is not None and path.exists()


def test_plots_skip_empty_input(tmp_path):
    from sc_doublet_qc.outliers import outlier_test_family
    from sc_doublet_qc.reporting import plot_outlier_tests

    table = outlier_test_family({"only": 1.0})
    assert plot_outlier_tests(table, tmp_path, name="tiny") is None
