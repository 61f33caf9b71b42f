# SPDX-License-Identifier: CC-BY-NC-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Tests for the model weight store and its quantized storage paths."""

import logging

import numpy as np
import pytest

from seqgraph import ActivateFunc, Model, ModelConfig, VQType
from seqgraph.model import pack_int4, unpack_int4

np.random.seed(42)


def store(vq_type):
    return Model(ModelConfig(vq_type=vq_type))


# ---------------------------------------------------------------------------
# Raw store
# ---------------------------------------------------------------------------


class TestRawStore:
    def test_round_trip_exact(self):
        model = store(VQType.NONE)
        values = np.random.randn(37).astype(np.float32)
        model.add_weights("w", values)
        np.testing.assert_array_equal(model.get_weights("w"), values)
        assert model.storage_kind("w") == "raw"
        assert "w" in model

    def test_missing_returns_none_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="seqgraph.model"):
            assert store(VQType.NONE).get_weights("nope") is None
        assert "nope" in caplog.text

    def test_half_type(self):
        model = store(VQType.NONE)
        model.add_weights("w", np.array([0.5, -1.25]))
        half = model.get_weights_half_type("w")
        assert half.dtype == np.float16
        np.testing.assert_array_equal(half, [0.5, -1.25])
        assert model.get_weights_half_type("missing") is None

    def test_replace_and_delete(self):
        model = store(VQType.NONE)
        model.add_weights("w", [1.0])
        model.add_weights("w", [2.0, 3.0])
        np.testing.assert_array_equal(model.get_weights("w"), [2.0, 3.0])
        model.delete_weights("w")
        assert "w" not in model
        model.add_weights("a", [1.0])
        model.add_weights("b", [1.0])
        model.clear_weights()
        assert model.weight_names() == []


# ---------------------------------------------------------------------------
# INT8
# ---------------------------------------------------------------------------


class TestInt8:
    def test_constant_weights_exact(self):
        model = store(VQType.INT8)
        model.add_weights("c", np.full(10, 1.0))
        assert model.storage_kind("c") == "int8"
        np.testing.assert_array_equal(model.get_weights("c"), np.ones(10, dtype=np.float32))

    def test_few_values_exact(self):
        model = store(VQType.INT8)
        values = np.array([0.5, -0.25, 0.5], dtype=np.float32)
        model.add_weights("few", values)
        np.testing.assert_array_equal(model.get_weights("few"), values)
        assert model.codebook("few").size == 256

    def test_error_bounded_by_half_gap(self):
        model = store(VQType.INT8)
        values = np.random.randn(1000).astype(np.float32)
        model.add_weights("w", values)
        restored = model.get_weights("w")
        cb = model.codebook("w")
        assert restored.shape == values.shape
        assert restored.dtype == np.float32

        inside = (values >= cb[0]) & (values <= cb[-1])
        assert inside.any()
        hi = np.clip(np.searchsorted(cb, values[inside]), 1, cb.size - 1)
        half_gap = (cb[hi] - cb[hi - 1]) / 2
        err = np.abs(restored[inside] - values[inside])
        assert np.all(err <= half_gap + 1e-5)

    def test_activation_code_survives(self):
        model = store(VQType.INT8)
        model.add_weights("moe.ActivateFunc", np.array([float(ActivateFunc.SWISH.value)]))
        assert model.get_weights("moe.ActivateFunc")[0] == 1.0


# ---------------------------------------------------------------------------
# INT4
# ---------------------------------------------------------------------------


class TestInt4:
    def test_low_distortion_stored_packed(self):
        model = store(VQType.INT4)
        values = np.random.uniform(-0.5, 0.5, 999).astype(np.float32)
        model.add_weights("w", values)
        assert model.storage_kind("w") == "int4"
        restored = model.get_weights("w")
        assert restored.shape == (999,)
        assert np.abs(restored - values).max() < 0.1
        assert model.codebook("w").size == 16

    def test_high_distortion_falls_back_to_raw(self, caplog):
        model = store(VQType.INT4)
        values = np.random.uniform(-100, 100, 1000).astype(np.float32)
        with caplog.at_level(logging.INFO, logger="seqgraph.model"):
            model.add_weights("wide", values)
        assert model.storage_kind("wide") == "raw"
        np.testing.assert_array_equal(model.get_weights("wide"), values)
        assert "storing raw weights" in caplog.text

    def test_pack_unpack_odd_length(self):
        codes = np.array([1, 15, 7, 0, 9])
        packed = pack_int4(codes)
        assert packed.size == 3
        assert packed[0] == 1 | (15 << 4)
        assert packed[2] == 9
        np.testing.assert_array_equal(unpack_int4(packed, 5), codes)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestPersistence:
    @pytest.mark.parametrize("vq_type", [VQType.NONE, VQType.INT8, VQType.INT4])
    def test_save_load_round_trip(self, tmp_path, vq_type):
        model = Model(ModelConfig(hidden_dim=8, expert_num=2, vq_type=vq_type))
        model.add_weights("small", np.random.uniform(-0.5, 0.5, 41))
        model.add_weights("const", np.full(4, 2.0))
        path = tmp_path / "model.safetensors"
        model.save(path)

        loaded = Model.load(path)
        assert loaded.vq_type == vq_type
        assert loaded.config.hidden_dim == 8
        assert loaded.config.expert_num == 2
        assert sorted(loaded.weight_names()) == ["const", "small"]
        for name in ("small", "const"):
            assert loaded.storage_kind(name) == model.storage_kind(name)
            np.testing.assert_array_equal(loaded.get_weights(name), model.get_weights(name))

    def test_show_model_info_logs_config(self, caplog):
        with caplog.at_level(logging.INFO, logger="seqgraph.model"):
            Model(ModelConfig(hidden_dim=24)).show_model_info()
        assert "hidden_dim = '24'" in caplog.text
