import numpy as np
import pandas as pd
import pytest


def _samples(rows):
    return pd.DataFrame(rows, columns=["sample", "stage", "n_cells"])


def test_order_follows_stage_then_size_then_id():
    from sc_doublet_qc.batch_correction import order_batches
    from sc_doublet_qc.config import DEFAULT_STAGE_ORDER

    samples = _samples([
        ("s_young", "E6.5", 900),
        ("s_b", "E7.5", 300),
        ("s_a", "E7.5", 300),
        ("s_big", "E7.5", 500),
        ("s_mixed", "mixed_gastrulation", 100),
        ("s_old", "E8.5", 50),
    ])
    order = order_batches(samples, DEFAULT_STAGE_ORDER)
    assert order == ["s_old", "s_big", "s_a", "s_b", "s_mixed", "s_young"]


def test_unknown_stage_fails_fast():
    from sc_doublet_qc.batch_correction import order_batches
    from sc_doublet_qc.errors import BatchOrderError

    with pytest.raises(BatchOrderError, match="E9.5"):
        order_batches(_samples([("s1", "E9.5", 10)]), ["E8.5"])


def test_sample_with_two_stages_fails_fast():
    from sc_doublet_qc.batch_correction import sample_stages
    from sc_doublet_qc.errors import BatchOrderError

    obs = pd.DataFrame({"sample": ["a", "a", "b"], "stage": ["E7.5", "E8.0", "E7.5"]})
    with pytest.raises(BatchOrderError, match="a"):
        sample_stages(obs)


def test_sample_stages_summary():
    from sc_doublet_qc.batch_correction import sample_stages

    obs = pd.DataFrame({"sample": ["b", "a", "a"], "stage": ["E7.5", "E8.0", "E8.0"]})
    summary = sample_stages(obs)
    assert summary.to_dict("list") == {"sample": ["a", "b"], "stage": ["E8.0", "E7.5"], "n_cells": [2, 1]}


def test_mutual_pairs_are_mutual():
    from sc_doublet_qc.batch_correction import find_mutual_nn

    ref = np.array([[0.0], [1.0], [10.0]])
    tgt = np.array([[0.1], [10.2], [50.0]])
    t_idx, r_idx = find_mutual_nn(ref, tgt, k=1)
    assert sorted(zip(t_idx.tolist(), r_idx.tolist())) == [(0, 0), (1, 2)]


def test_mnn_removes_a_constant_shift():
    from sc_doublet_qc.batch_correction import mnn_correct

    rng = np.random.default_rng(0)
    base = np.vstack([rng.normal(0, 0.1, size=(60, 3)), rng.normal(5, 0.1, size=(60, 3))])
    shifted = base + np.array([4.0, -3.0, 2.0])
    embedding = np.vstack([base, shifted])
    batches = np.array(["a"] * 120 + ["b"] * 120)

    corrected = mnn_correct(embedding, batches, ["a", "b"], k=10, smooth_k=10)
    assert np.allclose(corrected[:120], base)
    before = np.abs(embedding[120:].mean(axis=0) - base.mean(axis=0)).max()
    after = np.abs(corrected[120:].mean(axis=0) - base.mean(axis=0)).max()
    assert after < 0.2 * before


def test_no_pairs_raises():
    from sc_doublet_qc.batch_correction import correct_batch
    from sc_doublet_qc.errors import BatchCorrectionError

    with pytest.raises(BatchCorrectionError):
        correct_batch(np.zeros((0, 2)), np.ones((3, 2)), batch="b")


def test_batches_missing_from_order_raise():
    from sc_doublet_qc.batch_correction import mnn_correct
    from sc_doublet_qc.errors import BatchOrderError

    with pytest.raises(BatchOrderError):
        mnn_correct(np.zeros((3, 2)), ["a", "b", "c"], ["a", "b"])
