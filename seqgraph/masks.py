# SPDX-License-Identifier: CC-BY-NC-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Host-side builders for attention masks and token index arrays.

Attention masks are additive: 0 where attention is allowed and MASKED_VALUE
(a large negative number) where it is not, so that softmax(scores + mask)
gives masked positions (numerically) zero probability.  Feature masks are
multiplicative (1 keep / 0 drop).

All builders return float32 NumPy arrays; ComputeGraph moves them to the
graph's device.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from .errors import ShapeMismatchError

MASKED_VALUE = -99999999.0


def _lengths(lengths: Sequence[float]) -> np.ndarray:
    return np.asarray(lengths, dtype=np.int64).reshape(-1, 1, 1)


def tri_mask(padded_length: int, batch_size: int) -> np.ndarray:
    """Causal mask [batch, padded, padded]: position i sees positions j <= i."""
    i = np.arange(padded_length).reshape(-1, 1)
    j = np.arange(padded_length).reshape(1, -1)
    mask = np.where(j <= i, 0.0, MASKED_VALUE).astype(np.float32)
    return np.broadcast_to(mask, (batch_size, padded_length, padded_length)).copy()


def self_tri_mask(padded_length: int, original_lengths: Sequence[float]) -> np.ndarray:
    """Causal mask restricted to each sequence's true length.

    Visible iff j <= i and both i and j are inside the sequence.
    """
    lens = _lengths(original_lengths)
    i = np.arange(padded_length).reshape(1, -1, 1)
    j = np.arange(padded_length).reshape(1, 1, -1)
    visible = (j <= i) & (i < lens) & (j < lens)
    return np.where(visible, 0.0, MASKED_VALUE).astype(np.float32)


def pad_self_mask(padded_length: int, original_lengths: Sequence[float]) -> np.ndarray:
    """Bidirectional self-attention mask: every position sees keys j < length."""
    lens = _lengths(original_lengths)
    j = np.arange(padded_length).reshape(1, 1, -1)
    visible = np.broadcast_to(j < lens, (lens.shape[0], padded_length, padded_length))
    return np.where(visible, 0.0, MASKED_VALUE).astype(np.float32)


def src_tgt_mask(src_padded_length: int, tgt_padded_length: int,
                 tgt_original_lengths: Sequence[float],
                 src_original_lengths: Sequence[float]) -> np.ndarray:
    """Cross-attention mask [batch, tgt_padded, src_padded].

    Target position i sees source position j iff i < tgt_len and j < src_len.
    """
    tgt_lens = _lengths(tgt_original_lengths)
    src_lens = _lengths(src_original_lengths)
    if tgt_lens.shape[0] != src_lens.shape[0]:
        raise ShapeMismatchError(
            f"Source and target length arrays differ in batch size: {src_lens.shape[0]} vs {tgt_lens.shape[0]}"
        )
    i = np.arange(tgt_padded_length).reshape(1, -1, 1)
    j = np.arange(src_padded_length).reshape(1, 1, -1)
    visible = (i < tgt_lens) & (j < src_lens)
    return np.where(visible, 0.0, MASKED_VALUE).astype(np.float32)


def feature_mask(padded_length: int, applied_lengths: Sequence[int], dim: int) -> np.ndarray:
    """Multiplicative mask [batch, padded, dim]: 1 for positions < applied length, else 0."""
    lens = _lengths(applied_lengths)
    pos = np.arange(padded_length).reshape(1, -1, 1)
    keep = np.broadcast_to(pos < lens, (lens.shape[0], padded_length, dim))
    return keep.astype(np.float32)


# ---------------------------------------------------------------------------
# Token arrays
# ---------------------------------------------------------------------------

def _check_padded(seqs: Sequence[Sequence[int]]) -> int:
    lengths = {len(s) for s in seqs}
    if len(lengths) > 1:
        raise ShapeMismatchError(f"Token sequences must be padded to one length, got lengths {sorted(lengths)}")
    return lengths.pop() if lengths else 0


def tokens_array(seqs: Sequence[Sequence[int]]) -> np.ndarray:
    """Flatten padded token sequences to a [batch * seq_len, 1] float32 column."""
    seq_len = _check_padded(seqs)
    return np.asarray(seqs, dtype=np.float32).reshape(len(seqs) * seq_len, 1)


def left_shift_tokens(seqs: Sequence[Sequence[int]], last_token_to_pad: int) -> np.ndarray:
    """Shift each sequence left by one, filling the last slot with ``last_token_to_pad``.

    Turns decoder inputs into next-token targets.  Returns [batch * seq_len, 1].
    """
    seq_len = _check_padded(seqs)
    arr = np.full((len(seqs), seq_len), last_token_to_pad, dtype=np.float32)
    if seq_len > 1:
        arr[:, :-1] = np.asarray(seqs, dtype=np.float32)[:, 1:]
    return arr.reshape(len(seqs) * seq_len, 1)
