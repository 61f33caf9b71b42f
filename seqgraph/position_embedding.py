# SPDX-License-Identifier: CC-BY-NC-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Sinusoidal position embeddings.

Table layout for position p and column i (half = cols / 2):
  table[p, i]        = sin(p * exp(-i * inc))
  table[p, half + i] = cos(p * exp(-i * inc))
  inc = log(10000) / (half - 1)
"""

from __future__ import annotations

import logging
import math

import numpy as np

from .graph import ComputeGraph
from .weight_tensor import WeightTensor

logger = logging.getLogger(__name__)


def position_table(rows: int, cols: int) -> np.ndarray:
    """Host [rows, cols] sinusoid table."""
    half = cols // 2
    increment = math.log(10000.0) / (half - 1.0) if half > 1 else 0.0
    positions = np.arange(rows, dtype=np.float64).reshape(-1, 1)
    timescales = np.exp(np.arange(half, dtype=np.float64) * -increment).reshape(1, -1)
    angles = positions * timescales
    table = np.zeros((rows, cols), dtype=np.float32)
    table[:, :half] = np.sin(angles)
    table[:, half:2 * half] = np.cos(angles)
    return table


def build_position_weight_tensor(rows: int, cols: int, device_id: int = 0, name: str = "",
                                 is_trainable: bool = False) -> WeightTensor:
    """WeightTensor [rows, cols] holding the sinusoid table."""
    logger.info("Building position weights tensor. rows=%d, cols=%d, device=%d, name='%s', trainable=%s",
                rows, cols, device_id, name, is_trainable)
    t = WeightTensor((rows, cols), device_id, name=name, is_trainable=is_trainable, need_gradient=is_trainable)
    t.set_weight_array(position_table(rows, cols))
    return t


def add_position_embedding(g: ComputeGraph, pos_embedding: WeightTensor, batch_size: int,
                           input_embs: WeightTensor, dropout_ratio: float) -> WeightTensor:
    """Add position rows to input embeddings [batch * seq_len, cols], then dropout.

    The addition is in place: the returned tensor aliases ``input_embs``.
    """
    cols = pos_embedding.sizes[1]
    seq_len = input_embs.sizes[0] // batch_size
    pos = g.peek(pos_embedding, 0, 0, seq_len)
    pos = g.expand(g.view(pos, 1, seq_len, cols), batch_size, seq_len, cols)
    embs = g.view(input_embs, batch_size, seq_len, cols)
    embs = g.add(embs, pos, in_place=True)
    embs = g.view(embs, batch_size * seq_len, cols)
    return g.dropout(embs, dropout_ratio, in_place=True)
