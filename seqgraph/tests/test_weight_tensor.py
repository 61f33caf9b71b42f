# SPDX-License-Identifier: CC-BY-NC-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Tests for WeightTensor buffers, gradient accumulation and persistence."""

import logging
import math

import numpy as np
import pytest

from seqgraph import (
    BufferAlreadyAssignedError,
    Model,
    NormType,
    ShapeMismatchError,
    Tensor,
    WeightPrinter,
    WeightReleasedError,
    WeightTensor,
)

np.random.seed(42)


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------


class TestInit:
    def test_uniform_bounds(self):
        w = WeightTensor((20, 30), norm_type=NormType.UNIFORM)
        bound = math.sqrt(6.0 / 50)
        values = w.to_weight_array()
        assert np.all(np.abs(values) <= bound)
        assert values.std() > 0.0

    def test_fan_in_and_fan_out_bounds(self):
        w_in = WeightTensor((20, 30), norm_type=NormType.UNIFORM, fan_in=True)
        w_out = WeightTensor((20, 30), norm_type=NormType.UNIFORM, fan_out=True)
        assert np.all(np.abs(w_in.to_weight_array()) <= math.sqrt(3.0 / 20))
        assert np.all(np.abs(w_out.to_weight_array()) <= math.sqrt(3.0 / 30))

    def test_normal_is_unit_uniform(self):
        w = WeightTensor((20, 30), norm_type=NormType.NORMAL)
        values = w.to_weight_array()
        assert np.all(np.abs(values) <= 1.0)
        assert np.abs(values).max() > 0.5

    def test_constant(self):
        w = WeightTensor.constant((2, 3), 0.25, name="c")
        np.testing.assert_array_equal(w.to_weight_array(), np.full(6, 0.25, dtype=np.float32))

    def test_lazy_zero_buffers(self):
        w = WeightTensor((2, 2))
        assert w.is_weight_null()
        assert w.is_gradient_null()
        assert np.all(w.to_gradient_array() == 0.0)
        assert not w.is_gradient_null()
        assert np.all(w.to_weight_array() == 0.0)

    def test_shape_helpers(self):
        w = WeightTensor((4, 5))
        assert w.rows == 4
        assert w.columns == 5
        assert w.element_count == 20


# ---------------------------------------------------------------------------
# Buffer protocol
# ---------------------------------------------------------------------------


class TestBuffers:
    def test_double_weight_assignment_names_first_setter(self):
        w = WeightTensor.constant((2, 2), 1.0, name="dup")
        with pytest.raises(BufferAlreadyAssignedError) as err:
            w.weight = Tensor.zeros((2, 2))
        assert "dup" in str(err.value)
        assert "constant" in str(err.value)

    def test_double_gradient_assignment(self):
        w = WeightTensor((2, 2), name="g")
        w.set_gradient(Tensor.zeros((2, 2)), set_by="first_producer")
        with pytest.raises(BufferAlreadyAssignedError, match="first_producer"):
            w.set_gradient(Tensor.zeros((2, 2)), set_by="second_producer")

    def test_gradient_shape_mismatch(self):
        w = WeightTensor((2, 2))
        with pytest.raises(ShapeMismatchError):
            w.set_gradient(Tensor.zeros((3, 2)))

    def test_released_weight_raises_with_name(self):
        w = WeightTensor.constant((2,), 1.0, name="gone")
        w.release_weight()
        assert w.is_released
        with pytest.raises(WeightReleasedError, match="gone"):
            _ = w.weight

    def test_never_allocated_weight_raises_after_dispose(self):
        w = WeightTensor((2, 2), name="lazy")
        w.dispose()
        assert w.is_released
        with pytest.raises(WeightReleasedError, match="lazy"):
            _ = w.weight

    def test_reassigning_weight_clears_release(self):
        w = WeightTensor((2,))
        w.release_weight()
        w.set_weight(Tensor.full((2,), 3.0))
        assert not w.is_released
        np.testing.assert_array_equal(w.to_weight_array(), [3.0, 3.0])

    def test_dispose_is_idempotent(self):
        w = WeightTensor.constant((2,), 1.0)
        w.fill_gradient(1.0)
        w.dispose()
        w.dispose()
        assert w.is_gradient_null()
        assert w.is_weight_null()

    def test_clamp(self):
        w = WeightTensor((3,))
        w.set_weight_array(np.array([-2.0, 0.5, 2.0]))
        w.clamp(-1.0, 1.0)
        np.testing.assert_array_equal(w.to_weight_array(), [-1.0, 0.5, 1.0])


# ---------------------------------------------------------------------------
# Gradient accumulation
# ---------------------------------------------------------------------------


class TestGradients:
    def test_copy_or_add_twice_doubles(self):
        src = WeightTensor((2, 3))
        src.fill_gradient(1.5)
        dst = WeightTensor((2, 3))
        dst.copy_or_add_gradient(src)
        dst.copy_or_add_gradient(src)
        np.testing.assert_allclose(dst.to_gradient_array(), np.full(6, 3.0))

    def test_copy_or_add_from_tensor(self):
        dst = WeightTensor((2,))
        t = Tensor.from_numpy(np.array([1.0, 2.0]))
        dst.copy_or_add_gradient(t, "test")
        t.data[...] = 0.0
        # the first contribution is copied, not aliased
        np.testing.assert_array_equal(dst.to_gradient_array(), [1.0, 2.0])

    def test_copy_or_add_shape_mismatch(self):
        dst = WeightTensor((2,))
        with pytest.raises(ShapeMismatchError):
            dst.copy_or_add_gradient(Tensor.zeros((3,)))

    def test_add_gradient_from(self):
        src = WeightTensor((2,))
        src.fill_gradient(2.0)
        dst = WeightTensor((2,))
        dst.fill_gradient(1.0)
        dst.add_gradient_from(src)
        np.testing.assert_array_equal(dst.to_gradient_array(), [3.0, 3.0])

    def test_copy_weights_to_gradients_shares(self):
        src = WeightTensor.constant((2,), 4.0)
        dst = WeightTensor((2,))
        dst.copy_weights_to_gradients(src)
        src.set_weight_at(7.0, (0,))
        assert dst.get_gradient_at((0,)) == 7.0

    def test_copy_weights_from_is_deep(self):
        src = WeightTensor.constant((2,), 4.0)
        dst = WeightTensor((2,))
        dst.copy_weights_from(src)
        src.set_weight_at(7.0, (0,))
        assert dst.get_weight_at((0,)) == 4.0

    def test_activation_gradients(self):
        y = WeightTensor((3,))
        y.set_weight_array(np.array([0.1, 0.5, 0.9]))
        y.fill_gradient(2.0)
        y_vals = np.array([0.1, 0.5, 0.9], dtype=np.float32)

        sig = WeightTensor((3,))
        sig.add_sigmoid_gradient(y)
        np.testing.assert_allclose(sig.to_gradient_array(), 2.0 * y_vals * (1 - y_vals), rtol=1e-6)

        th = WeightTensor((3,))
        th.add_tanh_gradient(y)
        th.add_tanh_gradient(y)
        np.testing.assert_allclose(th.to_gradient_array(), 2 * 2.0 * (1 - y_vals ** 2), rtol=1e-6)

    def test_softmax_gradient(self):
        y = WeightTensor((1, 3))
        probs = np.array([[0.2, 0.3, 0.5]], dtype=np.float32)
        y.set_weight_array(probs)
        y.gradient.data[...] = np.array([[1.0, 0.0, 0.0]])
        x = WeightTensor((1, 3))
        x.add_softmax_gradient(y)
        expected = probs * (np.array([[1.0, 0.0, 0.0]]) - 0.2)
        np.testing.assert_allclose(x.to_gradient_array(), expected.ravel(), rtol=1e-6)

    def test_mul_gradient_sums_broadcast_axes(self):
        bias = WeightTensor((1, 2))
        other = Tensor.from_numpy(np.array([[1.0, 2.0], [3.0, 4.0]]))
        g = Tensor.ones((2, 2))
        bias.add_mul_gradient(other, g)
        np.testing.assert_array_equal(bias.to_gradient_array(), [4.0, 6.0])


# ---------------------------------------------------------------------------
# Access helpers, copies, persistence
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_top_n_max_weight_idx(self):
        w = WeightTensor((4,))
        w.set_weight_array(np.array([0.1, 0.9, 0.5, 0.9]))
        assert w.get_top_n_max_weight_idx(2) == [1, 3]
        assert w.get_top_n_max_weight_idx(3) == [1, 3, 2]

    def test_set_weight_array_size_mismatch(self):
        w = WeightTensor((2, 2))
        with pytest.raises(ShapeMismatchError):
            w.set_weight_array(np.zeros(3))

    def test_copy_weights_ref_shares_storage(self):
        w = WeightTensor.constant((2,), 1.0, name="base")
        ref = w.copy_weights_ref("alias")
        assert ref.weight.shares_storage(w.weight)
        ref.set_weight_at(3.0, (1,))
        assert w.get_weight_at((1,)) == 3.0

    def test_clone_to_device_at(self):
        w = WeightTensor((3, 4), name="w", norm_type=NormType.UNIFORM, is_trainable=True)
        clone = w.clone_to_device_at(1)
        assert clone.device_id == 1
        assert clone.sizes == w.sizes
        assert clone.name == "w"
        assert clone.is_trainable
        assert clone.weight.allocator.device_id == 1

    def test_save_and_load(self):
        model = Model()
        w = WeightTensor((2, 3), name="layer.W", norm_type=NormType.UNIFORM)
        w.save(model)
        restored = WeightTensor((2, 3), name="layer.W")
        assert restored.load(model)
        np.testing.assert_array_equal(restored.to_weight_array(), w.to_weight_array())

    def test_load_missing_leaves_tensor_untouched(self, caplog):
        w = WeightTensor.constant((2,), 5.0, name="absent")
        with caplog.at_level(logging.WARNING, logger="seqgraph.model"):
            assert not w.load(Model())
        assert "absent" in caplog.text
        np.testing.assert_array_equal(w.to_weight_array(), [5.0, 5.0])

    def test_print_weights_is_rate_limited(self, caplog):
        now = [0.0]
        printer = WeightPrinter(interval_seconds=300.0, clock=lambda: now[0])
        w = WeightTensor.constant((3,), 2.0, name="watched")
        with caplog.at_level(logging.INFO, logger="seqgraph.diagnostics"):
            assert w.print_weights(printer)
            now[0] = 10.0
            assert not w.print_weights(printer)
            now[0] = 400.0
            assert w.print_weights(printer)
        assert caplog.text.count("watched") == 2
