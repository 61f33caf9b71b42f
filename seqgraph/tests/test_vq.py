# SPDX-License-Identifier: CC-BY-NC-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Tests for scalar vector quantization."""

import numpy as np
import pytest

from seqgraph import VectorQuantization
from seqgraph.vq import assign

np.random.seed(42)


class TestCodebook:
    def test_few_distinct_values_are_exact(self):
        vq = VectorQuantization()
        vq.add_many([1.0, -2.0, 1.0, 3.5])
        distortion = vq.build_codebook(8)
        cb = vq.codebook
        assert cb.size == 8
        assert distortion == 0.0
        np.testing.assert_array_equal(cb[:3], [-2.0, 1.0, 3.5])
        np.testing.assert_array_equal(cb[3:], 3.5)
        values = np.array([3.5, -2.0, 1.0])
        np.testing.assert_array_equal(vq.dequantize(vq.quantize(values)), values)

    def test_codebook_sorted_with_requested_size(self):
        vq = VectorQuantization()
        vq.add_many(np.random.randn(500))
        vq.build_codebook(16)
        cb = vq.codebook
        assert cb.size == 16
        assert np.all(np.diff(cb) >= 0)

    def test_non_power_of_two_size(self):
        vq = VectorQuantization()
        vq.add_many(np.random.randn(300))
        vq.build_codebook(3)
        assert vq.codebook.size == 3

    def test_two_clusters(self):
        vq = VectorQuantization()
        vq.add_many(np.linspace(-5.1, -4.9, 50))
        vq.add_many(np.linspace(4.9, 5.1, 50))
        vq.build_codebook(2)
        np.testing.assert_allclose(vq.codebook, [-5.0, 5.0], atol=1e-9)

    def test_distortion_shrinks_with_size(self):
        samples = np.random.randn(400)
        distortions = []
        for size in (2, 4, 8):
            vq = VectorQuantization()
            vq.add_many(samples)
            distortions.append(vq.build_codebook(size))
        assert distortions[0] >= distortions[1] >= distortions[2]
        assert distortions[2] < distortions[0]

    def test_codebook_before_build_raises(self):
        with pytest.raises(RuntimeError):
            _ = VectorQuantization().codebook

    def test_invalid_size(self):
        vq = VectorQuantization()
        vq.add(1.0)
        with pytest.raises(ValueError):
            vq.build_codebook(0)

    def test_sample_count(self):
        vq = VectorQuantization()
        vq.add(1.0)
        vq.add_many([2.0, 3.0])
        assert vq.sample_count == 3


class TestAssign:
    def test_ties_go_to_lower_index(self):
        vq = VectorQuantization()
        vq.add_many([0.0, 0.0, 2.0, 2.0])
        vq.build_codebook(2)
        assert vq.compute_vq(1.0) == 0
        assert vq.compute_vq(1.0001) == 1

    def test_nearest_entry(self):
        cb = np.array([-1.0, 0.0, 4.0])
        np.testing.assert_array_equal(assign(np.array([-3.0, -0.4, 1.9, 2.1, 9.0]), cb), [0, 1, 1, 2, 2])
