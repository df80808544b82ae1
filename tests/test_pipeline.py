import numpy as np
import pandas as pd
import pytest

ad = pytest.importorskip("anndata")
sp = pytest.importorskip("scipy.sparse")
pytest.importorskip("igraph")
pytest.importorskip("leidenalg")


def _two_sample_adata(sample_factory, stripped_type=None):
    blocks, types, doublets, obs = [], [], [], []
    chromosomes = None
    for seed, (sample, stage) in enumerate([("s1", "E7.5"), ("s2", "E8.0")]):
        counts, cell_type, is_doublet, chromosomes = sample_factory(seed=seed, stripped_type=stripped_type)
        blocks.append(counts)
        types.append(cell_type)
        doublets.append(is_doublet)
        obs.append(pd.DataFrame({"sample": sample, "stage": stage}, index=[f"{sample}_{i}" for i in range(counts.shape[0])]))
    adata = ad.AnnData(X=sp.csr_matrix(np.vstack(blocks)), obs=pd.concat(obs))
    adata.var_names = [f"g{i}" for i in range(adata.n_vars)]
    adata.var["chromosome"] = chromosomes
    return adata, np.concatenate(types), np.concatenate(doublets)


def _config(**overrides):
    from sc_doublet_qc.config import DoubletQCConfig

    params = dict(n_simulated=2000, n_pcs=20, backend="sequential", seed=11)
    params.update(overrides)
    return DoubletQCConfig(**params)


def test_two_sample_end_to_end(sample_factory):
    from sc_doublet_qc.pipeline import run_doublet_pipeline

    adata, cell_type, is_doublet = _two_sample_adata(sample_factory, stripped_type=3)
    result = run_doublet_pipeline(adata, _config())
    cells = result.cells

    assert cells.index.equals(adata.obs_names)
    for col in (
        "doublet_score", "doublet_score_defined", "sample_cluster", "subcluster_parent",
        "subcluster_id", "all_sample_cluster", "sample_doublet", "cluster_doublet",
        "doublet_label", "library_size", "mito_fraction", "stripped",
    ):
        assert col in cells.columns
    assert (cells["subcluster_parent"] == cells["sample_cluster"]).all()
    assert cells["doublet_score_defined"].all()

    # injected doublets score above singlets within each sample
    for sample in ("s1", "s2"):
        in_sample = (cells["sample"] == sample).to_numpy()
        scores = cells["doublet_score"].to_numpy()
        assert np.median(scores[in_sample & is_doublet]) > np.quantile(scores[in_sample & ~is_doublet], 0.95)

    called = (cells["doublet_label"] != "singlet").to_numpy()
    assert called[is_doublet].mean() >= 0.5
    assert called[is_doublet].mean() > 3 * called[~is_doublet].mean()

    # labels are consistent with the two calls and their precedence
    label = cells["doublet_label"].astype(str).to_numpy()
    assert np.all(label[cells["sample_doublet"].to_numpy()] == "sample_doublet")
    assert not np.any(cells["sample_doublet"].to_numpy() & cells["cluster_doublet"].to_numpy())

    # the type with almost no mitochondrial reads is called stripped
    stripped = cells["stripped"].to_numpy()
    assert stripped[cell_type == 3].mean() >= 0.9
    assert stripped[(cell_type >= 0) & (cell_type != 3)].mean() <= 0.1

    summary = result.sample_summary
    assert summary["sample"].tolist() == ["s2", "s1"]
    assert summary["batch_order"].tolist() == [0, 1]
    assert summary["n_cells"].tolist() == [332, 332]
    assert set(result.sample_outliers["family"]) == {"s1", "s2"}
    assert set(result.pooled_outliers["family"]) == {"all_samples"}
    assert result.embedding.shape[0] == adata.n_obs


def test_result_save_and_load(tmp_path, sample_factory):
    from sc_doublet_qc.pipeline import run_doublet_pipeline
    from sc_doublet_qc.utils import load_result

    adata, _, _ = _two_sample_adata(sample_factory)
    result = run_doublet_pipeline(adata, _config(n_simulated=300))
    path = tmp_path / "result.dill"
    result.save(path)
    loaded = load_result(path)
    pd.testing.assert_frame_equal(loaded.cells, result.cells)
    assert loaded.label_counts().sum() == adata.n_obs


def test_mixed_stage_sample_fails_before_processing(sample_factory, monkeypatch):
    import sc_doublet_qc.pipeline as pipeline
    from sc_doublet_qc.errors import BatchOrderError

    adata, _, _ = _two_sample_adata(sample_factory)
    adata.obs["stage"] = adata.obs["stage"].astype(str)
    adata.obs.iloc[0, adata.obs.columns.get_loc("stage")] = "E8.0"

    def fail(*args, **kwargs):
        raise AssertionError("per-sample work should not start")

    monkeypatch.setattr(pipeline, "run_per_sample", fail)
    with pytest.raises(BatchOrderError):
        pipeline.run_doublet_pipeline(adata, _config())


def test_every_failed_sample_is_reported(monkeypatch):
    import sc_doublet_qc.pipeline as pipeline
    from sc_doublet_qc.errors import SampleProcessingError

    def broken(sample, *args, **kwargs):
        raise RuntimeError(f"boom {sample}")

    monkeypatch.setattr(pipeline, "process_sample", broken)
    counts = np.ones((6, 4))
    samples = ["a", "a", "b", "b", "c", "c"]
    for backend in ("sequential", "thread"):
        with pytest.raises(SampleProcessingError) as excinfo:
            pipeline.run_per_sample(counts, samples, np.ones(6), _config(backend=backend, n_jobs=2))
        assert set(excinfo.value.failures) == {"a", "b", "c"}
        assert "boom b" in str(excinfo.value)


def test_thread_backend_matches_sequential(sample_factory):
    from sc_doublet_qc.pipeline import run_per_sample
    from sc_doublet_qc.normalization import library_size_factors

    adata, _, _ = _two_sample_adata(sample_factory)
    counts = adata.X
    sf = library_size_factors(counts)
    samples = adata.obs["sample"].to_numpy()
    seq = run_per_sample(counts, samples, sf, _config(n_simulated=300))
    thr = run_per_sample(counts, samples, sf, _config(n_simulated=300, backend="thread", n_jobs=2))
    for sample in ("s1", "s2"):
        assert np.allclose(seq[sample].scores, thr[sample].scores, equal_nan=True)
        assert np.array_equal(seq[sample].sample_cluster, thr[sample].sample_cluster)


def test_size_factors_from_obs_are_used(sample_factory):
    from sc_doublet_qc.pipeline import run_doublet_pipeline

    adata, _, _ = _two_sample_adata(sample_factory)
    adata.obs["size_factor"] = 1.0
    result = run_doublet_pipeline(adata, _config(n_simulated=300))
    assert np.allclose(result.cells["size_factor"], 1.0)

    adata.obs["size_factor"] = 0.0
    with pytest.raises(ValueError):
        run_doublet_pipeline(adata, _config(n_simulated=300))


def test_summed_cells_are_called_with_default_parameters(sample_factory):
    from sc_doublet_qc.clustering import SubclusterKey
    from sc_doublet_qc.config import DoubletQCConfig
    from sc_doublet_qc.pipeline import run_doublet_pipeline

    # s1: 90 singlets of five types plus 10 sums of one type-0 and one type-1 cell
    singlets, _, _, _ = sample_factory(seed=0, n_types=5, cells_per_type=18, n_doublets=0)
    summed = singlets[0:10] + singlets[18:28]
    s1 = np.vstack([singlets, summed])
    s2, _, _, _ = sample_factory(seed=1, n_types=5, cells_per_type=20, n_doublets=0)

    obs = pd.DataFrame({
        "sample": ["s1"] * 100 + ["s2"] * 100,
        "stage": ["E7.5"] * 100 + ["E8.0"] * 100,
        "size_factor": 1.0,
    }, index=[f"c{i}" for i in range(200)])
    adata = ad.AnnData(X=sp.csr_matrix(np.vstack([s1, s2])), obs=obs)
    adata.var_names = [f"g{i}" for i in range(adata.n_vars)]
    injected = np.zeros(200, dtype=bool)
    injected[90:100] = True
    in_s1 = np.arange(200) < 100

    result = run_doublet_pipeline(adata, DoubletQCConfig(backend="sequential"))
    cells = result.cells
    scores = cells["doublet_score"].to_numpy()

    # (a) every summed cell scores in the top quartile of its sample
    assert (scores[injected] > np.quantile(scores[in_s1], 0.75)).all()

    # (b) at least 8 of them share one minority cluster
    clusters = cells["sample_cluster"].to_numpy()
    values, counts = np.unique(clusters[injected], return_counts=True)
    main = values[np.argmax(counts)]
    assert counts.max() >= 8
    members = in_s1 & (clusters == main)
    assert members.sum() < 0.5 * in_s1.sum()
    assert injected[members].mean() >= 0.8

    # (c) their sub-cluster is flagged within s1
    keys = {
        SubclusterKey(int(p), int(s))
        for p, s in zip(cells["subcluster_parent"][injected], cells["subcluster_id"][injected])
    }
    s1_tests = result.sample_outliers[result.sample_outliers["family"] == "s1"]
    flagged = s1_tests[s1_tests["unit"].isin(list(keys))]
    assert (flagged["qvalue"] < 0.1).any()
    assert cells["sample_doublet"].to_numpy()[injected].sum() >= 8
    assert (cells["doublet_label"].to_numpy()[injected] != "singlet").sum() >= 8
