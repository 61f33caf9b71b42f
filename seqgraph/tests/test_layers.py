# SPDX-License-Identifier: CC-BY-NC-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Tests for LayerNormalization, LSTM cells and position embeddings."""

import numpy as np
import pytest

from seqgraph import (
    ComputeGraph,
    LayerNormalization,
    LSTMAttentionDecoderCell,
    LSTMCell,
    Model,
    WeightTensor,
    add_position_embedding,
    build_position_weight_tensor,
    get_allocator,
)
from seqgraph.position_embedding import position_table

np.random.seed(42)


def constant_input(values):
    arr = np.asarray(values, dtype=np.float32)
    w = WeightTensor(arr.shape, name="input")
    w.set_weight_array(arr)
    return w


def np_layer_norm(x, eps=1e-6):
    mean = x.mean(axis=-1, keepdims=True)
    var = ((x - mean) ** 2).mean(axis=-1, keepdims=True)
    return (x - mean) / np.sqrt(var + eps)


def np_sigmoid(x):
    return 1.0 / (1.0 + np.exp(-x))


def np_lstm_step(x, h, c, wxh, hdim):
    pre = np_layer_norm(np.concatenate([x, h], axis=1) @ wxh)
    gates = np_sigmoid(pre[:, :3 * hdim])
    cell_write = np.tanh(pre[:, 3 * hdim:])
    i, f, o = gates[:, :hdim], gates[:, hdim:2 * hdim], gates[:, 2 * hdim:]
    c_new = f * c + i * cell_write
    h_new = o * np.tanh(np_layer_norm(c_new))
    return h_new, c_new


# ---------------------------------------------------------------------------
# LayerNormalization
# ---------------------------------------------------------------------------


class TestLayerNormalization:
    def test_rows_are_standardized(self):
        ln = LayerNormalization("ln", 6)
        g = ComputeGraph(needs_backprop=False)
        y = ln.norm(constant_input(np.random.randn(4, 6) * 3 - 1), g)
        rows = y.to_weight_array().reshape(4, 6)
        np.testing.assert_allclose(rows.mean(axis=1), 0.0, atol=1e-5)
        np.testing.assert_allclose(rows.var(axis=1), 1.0, atol=1e-4)

    def test_params_and_names(self):
        ln = LayerNormalization("enc.ln", 4)
        names = [p.name for p in ln.get_params()]
        assert names == ["enc.ln.Alpha", "enc.ln.Beta"]
        np.testing.assert_array_equal(ln.alpha.to_weight_array(), np.ones(4))
        np.testing.assert_array_equal(ln.beta.to_weight_array(), np.zeros(4))

    def test_save_load(self):
        ln = LayerNormalization("ln", 3)
        ln.alpha.set_weight_array(np.array([1.0, 2.0, 3.0]))
        model = Model()
        ln.save(model)
        restored = LayerNormalization("ln", 3)
        restored.load(model)
        np.testing.assert_array_equal(restored.alpha.to_weight_array(), [1.0, 2.0, 3.0])


# ---------------------------------------------------------------------------
# LSTM
# ---------------------------------------------------------------------------


class TestLSTMCell:
    def test_step_matches_reference(self):
        hdim, input_dim, batch = 3, 2, 2
        cell = LSTMCell("lstm", hdim, input_dim)
        wxh = cell.wxh.to_weight_array().reshape(input_dim + hdim, 4 * hdim)
        xs = [np.random.randn(batch, input_dim).astype(np.float32) for _ in range(2)]

        g = ComputeGraph(needs_backprop=False)
        cell.reset(g, batch)
        h_ref = np.zeros((batch, hdim), dtype=np.float32)
        c_ref = np.zeros((batch, hdim), dtype=np.float32)
        for x in xs:
            h = cell.step(constant_input(x), g)
            h_ref, c_ref = np_lstm_step(x, h_ref, c_ref, wxh, hdim)
            assert h.sizes == (batch, hdim)
            np.testing.assert_allclose(h.to_weight_array().reshape(batch, hdim), h_ref, rtol=1e-4, atol=1e-5)
            np.testing.assert_allclose(cell.cell.to_weight_array().reshape(batch, hdim), c_ref,
                                       rtol=1e-4, atol=1e-5)

    def test_step_before_reset_raises(self):
        cell = LSTMCell("lstm", 2, 2)
        with pytest.raises(RuntimeError):
            cell.step(constant_input(np.zeros((1, 2))), ComputeGraph(needs_backprop=False))

    def test_inference_step_frees_temporaries(self):
        alloc = get_allocator(0)
        cell = LSTMCell("lstm", 4, 3)
        g = ComputeGraph(needs_backprop=False)
        cell.reset(g, 2)
        x = constant_input(np.random.randn(2, 3))
        baseline = alloc.live_buffers
        cell.step(x, g)
        # only the new cell and hidden state stay allocated
        assert alloc.live_buffers == baseline + 2
        g.dispose()

    def test_training_step_produces_gradients(self):
        cell = LSTMCell("lstm", 3, 2)
        g = ComputeGraph()
        cell.reset(g, 2)
        h = cell.step(constant_input(np.random.randn(2, 2)), g)
        h.fill_gradient(1.0)
        g.backward()
        assert np.abs(cell.wxh.to_gradient_array()).sum() > 0.0
        assert np.abs(cell.b.to_gradient_array()).sum() > 0.0
        g.dispose()

    def test_params_save_load(self):
        cell = LSTMCell("lstm", 3, 2)
        assert len(cell.get_params()) == 6
        model = Model()
        cell.save(model)
        restored = LSTMCell("lstm", 3, 2)
        restored.load(model)
        np.testing.assert_array_equal(restored.wxh.to_weight_array(), cell.wxh.to_weight_array())


class TestLSTMAttentionDecoderCell:
    def test_step_shapes(self):
        cell = LSTMAttentionDecoderCell("dec", hidden_dim=4, input_dim=2, context_dim=3)
        assert cell.wxh.sizes == (2 + 3 + 4, 16)
        assert cell.input_dim == 2
        g = ComputeGraph(needs_backprop=False)
        cell.reset(g, 2)
        context = constant_input(np.random.randn(2, 3))
        x = constant_input(np.random.randn(2, 2))
        h = cell.step(context, x, g)
        assert h.sizes == (2, 4)
        assert np.all(np.abs(h.to_weight_array()) < 1.0)


# ---------------------------------------------------------------------------
# Position embedding
# ---------------------------------------------------------------------------


class TestPositionEmbedding:
    def test_table_values(self):
        table = position_table(5, 4)
        np.testing.assert_allclose(table[0], [0.0, 0.0, 1.0, 1.0])
        np.testing.assert_allclose(table[1, 1], np.sin(1e-4), rtol=1e-5)
        np.testing.assert_allclose(table[2, 0], np.sin(2.0), rtol=1e-6)

    def test_add_to_each_sequence(self):
        g = ComputeGraph(needs_backprop=False)
        pos = build_position_weight_tensor(5, 4, name="pos")
        assert not pos.need_gradient
        embs = constant_input(np.ones((2 * 3, 4)))
        out = add_position_embedding(g, pos, 2, embs, 0.0)
        assert out.sizes == (6, 4)
        expected = 1.0 + np.tile(position_table(5, 4)[:3], (2, 1))
        np.testing.assert_allclose(out.to_weight_array().reshape(6, 4), expected, rtol=1e-6)
        # the addition happens in the input buffer
        np.testing.assert_allclose(embs.to_weight_array().reshape(6, 4), expected, rtol=1e-6)
