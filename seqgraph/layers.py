# SPDX-License-Identifier: CC-BY-NC-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Trainable layers built from ComputeGraph operators.

Provides LayerNormalization, LSTMCell and LSTMAttentionDecoderCell.  Every
layer owns its WeightTensors, exposes them through ``get_params()`` for
optimizer integration, and saves/loads them by name through a Model store.

LSTM step (H = hidden size):
  x_h    = concat(input, h_prev [, context])
  gates  = LayerNorm1(x_h @ Wxh + b)                 [batch, 4H]
  i,f,o  = sigmoid(gates[:, :3H]) split three ways
  c_new  = tanh(gates[:, 3H:])
  c      = f * c_prev + i * c_new
  h      = o * tanh(LayerNorm2(c))
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from .graph import ComputeGraph
from .model import Model
from .weight_tensor import NormType, WeightTensor

logger = logging.getLogger(__name__)


class Layer(ABC):
    """Base class for layers."""

    @abstractmethod
    def get_params(self) -> list[WeightTensor]:
        """Return layer parameters."""
        ...

    def save(self, model: Model) -> None:
        """Push every parameter into the weight store under its own name."""
        for p in self.get_params():
            p.save(model)

    def load(self, model: Model) -> None:
        """Pull every parameter from the weight store (missing names are skipped)."""
        for p in self.get_params():
            p.load(model)


class LayerNormalization(Layer):
    """Layer normalization with learned scale and shift.

    LayerNorm: y = (x - mean) / sqrt(var + eps) * alpha + beta

    alpha starts at 1 and beta at 0, both shaped [1, dim].
    """

    EPS = 1e-6

    def __init__(self, name: str, dim: int, device_id: int = 0, is_trainable: bool = True,
                 learning_rate_factor: float = 1.0):
        self.name = name
        self.dim = dim
        self.alpha = WeightTensor.constant((1, dim), 1.0, device_id, name=f"{name}.Alpha",
                                           is_trainable=is_trainable, learning_rate_factor=learning_rate_factor)
        self.beta = WeightTensor.constant((1, dim), 0.0, device_id, name=f"{name}.Beta",
                                          is_trainable=is_trainable, learning_rate_factor=learning_rate_factor)

    def norm(self, x: WeightTensor, g: ComputeGraph) -> WeightTensor:
        """Normalize each row of x [rows, dim]."""
        return g.layer_norm(x, self.alpha, self.beta, self.EPS)

    def get_params(self) -> list[WeightTensor]:
        return [self.alpha, self.beta]


class LSTMCell(Layer):
    """Layer-normalized LSTM cell."""

    def __init__(self, name: str, hdim: int, input_dim: int, device_id: int = 0, is_trainable: bool = True):
        self.name = name
        self.hdim = hdim
        self.input_dim = input_dim
        self.device_id = device_id
        logger.info("Creating LSTM cell '%s': input_dim=%d, hidden_dim=%d, device=%d",
                    name, input_dim, hdim, device_id)

        self.wxh = WeightTensor((input_dim + hdim, hdim * 4), device_id, name=f"{name}.Wxh",
                                is_trainable=is_trainable, norm_type=NormType.UNIFORM)
        self.b = WeightTensor.constant((1, hdim * 4), 0.0, device_id, name=f"{name}.b", is_trainable=is_trainable)
        self.layer_norm1 = LayerNormalization(f"{name}.layerNorm1", hdim * 4, device_id, is_trainable)
        self.layer_norm2 = LayerNormalization(f"{name}.layerNorm2", hdim, device_id, is_trainable)

        # Recurrent state, created by reset()
        self.hidden: WeightTensor | None = None
        self.cell: WeightTensor | None = None

    def reset(self, g: ComputeGraph, batch_size: int) -> None:
        """Zero the hidden and cell state for a new batch.  The state is bound to ``g``."""
        self.hidden = g.create_weight_tensor((batch_size, self.hdim), clean=True, name=f"{self.name}.hidden")
        self.cell = g.create_weight_tensor((batch_size, self.hdim), clean=True, name=f"{self.name}.cell")

    def _step(self, pieces: list[WeightTensor], g: ComputeGraph) -> WeightTensor:
        if self.hidden is None or self.cell is None:
            raise RuntimeError(f"LSTM cell '{self.name}' must be reset() before step()")
        hdim = self.hdim
        cell_prev = self.cell
        with g.create_sub_graph(self.name) as sub:
            x_h = sub.concate(pieces, 1)
            hidden_hat = self.layer_norm1.norm(sub.affine(x_h, self.wxh, self.b), sub)
            gates_raw, cell_raw = sub.split_columns(hidden_hat, hdim * 3, hdim)
            gates = sub.sigmoid(gates_raw)
            cell_write = sub.tanh(cell_raw)
            input_gate, forget_gate, output_gate = sub.split_columns(gates, hdim, hdim, hdim)

            # State lives on the parent graph so it survives this scope
            self.cell = g.elt_mul_mul_add(forget_gate, cell_prev, input_gate, cell_write)
            cell_norm = self.layer_norm2.norm(self.cell, sub)
            self.hidden = g.elt_mul(output_gate, sub.tanh(cell_norm))
        return self.hidden

    def step(self, x: WeightTensor, g: ComputeGraph) -> WeightTensor:
        """Advance one time step on input x [batch, input_dim]; returns h [batch, hdim]."""
        return self._step([x, self.hidden], g)

    def get_params(self) -> list[WeightTensor]:
        return [self.wxh, self.b] + self.layer_norm1.get_params() + self.layer_norm2.get_params()


class LSTMAttentionDecoderCell(LSTMCell):
    """LSTM cell whose gates also see an attention context vector."""

    def __init__(self, name: str, hidden_dim: int, input_dim: int, context_dim: int,
                 device_id: int = 0, is_trainable: bool = True):
        self.context_dim = context_dim
        super().__init__(name, hidden_dim, input_dim + context_dim, device_id, is_trainable)
        self.input_dim = input_dim

    def step(self, context: WeightTensor, x: WeightTensor, g: ComputeGraph) -> WeightTensor:  # type: ignore[override]
        """Advance one step on input x [batch, input_dim] with context [batch, context_dim]."""
        return self._step([x, self.hidden, context], g)
