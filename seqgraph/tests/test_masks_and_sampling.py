# SPDX-License-Identifier: CC-BY-NC-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Tests for attention masks, token arrays and nucleus sampling helpers."""

import numpy as np
import pytest

from seqgraph import ShapeMismatchError
from seqgraph import masks, sampling
from seqgraph.masks import MASKED_VALUE


# ---------------------------------------------------------------------------
# Masks
# ---------------------------------------------------------------------------


class TestMasks:
    def test_tri_mask(self):
        m = masks.tri_mask(3, 2)
        assert m.shape == (2, 3, 3)
        assert m.dtype == np.float32
        assert m[1, 0, 0] == 0.0
        assert m[1, 0, 1] == MASKED_VALUE
        assert m[1, 2, 1] == 0.0

    def test_self_tri_mask_limits_to_length(self):
        m = masks.self_tri_mask(4, [2, 4])
        assert m.shape == (2, 4, 4)
        assert m[0, 1, 0] == 0.0
        assert m[0, 1, 1] == 0.0
        assert m[0, 1, 2] == MASKED_VALUE
        assert np.all(m[0, 2] == MASKED_VALUE)
        assert m[1, 3, 3] == 0.0

    def test_pad_self_mask(self):
        m = masks.pad_self_mask(3, [2])
        assert np.all(m[0, :, :2] == 0.0)
        assert np.all(m[0, :, 2] == MASKED_VALUE)

    def test_src_tgt_mask(self):
        m = masks.src_tgt_mask(4, 3, [2], [3])
        assert m.shape == (1, 3, 4)
        assert m[0, 1, 2] == 0.0
        assert m[0, 1, 3] == MASKED_VALUE
        assert m[0, 2, 0] == MASKED_VALUE

    def test_src_tgt_batch_mismatch(self):
        with pytest.raises(ShapeMismatchError):
            masks.src_tgt_mask(4, 3, [2, 2], [3])

    def test_feature_mask(self):
        m = masks.feature_mask(3, [1, 3], 2)
        assert m.shape == (2, 3, 2)
        assert np.all(m[0, 0] == 1.0)
        assert np.all(m[0, 1:] == 0.0)
        assert np.all(m[1] == 1.0)

    def test_tokens_array(self):
        arr = masks.tokens_array([[1, 2, 3], [4, 5, 6]])
        assert arr.shape == (6, 1)
        np.testing.assert_array_equal(arr.ravel(), [1, 2, 3, 4, 5, 6])

    def test_unpadded_tokens_rejected(self):
        with pytest.raises(ShapeMismatchError):
            masks.tokens_array([[1, 2], [3]])

    def test_left_shift(self):
        arr = masks.left_shift_tokens([[1, 2, 3]], 9)
        np.testing.assert_array_equal(arr.ravel(), [2, 3, 9])


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------


class TestSampling:
    def test_rand01_is_deterministic_and_bounded(self):
        s1, s2 = [42], [42]
        draws = [sampling.next_rand01(s1) for _ in range(100)]
        assert draws == [sampling.next_rand01(s2) for _ in range(100)]
        assert all(0.0 <= d < 1.0 for d in draws)
        assert len(set(draws)) > 90

    def test_repeat_penalty_divides_and_renormalizes(self):
        probs = sampling.apply_repeat_penalty(np.array([0.6, 0.4]), [0, 0], 2.0)
        np.testing.assert_allclose(probs, [0.3 / 0.7, 0.4 / 0.7])

    def test_repeat_penalty_one_is_identity(self):
        probs = sampling.apply_repeat_penalty(np.array([0.6, 0.4]), [0], 1.0)
        np.testing.assert_allclose(probs, [0.6, 0.4])

    def test_top_p_filter_keeps_shortest_prefix(self):
        ids, kept = sampling.top_p_filter(np.array([0.2, 0.5, 0.3]), 0.8)
        np.testing.assert_array_equal(ids, [1, 2])
        np.testing.assert_allclose(kept, [0.625, 0.375])

    def test_top_p_filter_keeps_at_least_one(self):
        ids, kept = sampling.top_p_filter(np.array([0.2, 0.5, 0.3]), 0.0)
        np.testing.assert_array_equal(ids, [1])
        np.testing.assert_allclose(kept, [1.0])

    def test_top_p_filter_ties_keep_index_order(self):
        ids, _ = sampling.top_p_filter(np.array([0.25, 0.25, 0.25, 0.25]), 1.0)
        np.testing.assert_array_equal(ids, [0, 1, 2, 3])

    def test_sample_from_degenerate_distribution(self):
        state = [1]
        assert all(sampling.sample_from_probs(np.array([0.0, 1.0, 0.0]), state) == 1 for _ in range(20))

    def test_sample_rows_shape(self):
        out = sampling.top_p_sample_rows(np.full((3, 4), 0.25), None, 0.9, 1.0, [5])
        assert out.shape == (3, 1)
        assert out.dtype == np.float32
        assert np.all((out >= 0) & (out < 4))
