# SPDX-License-Identifier: CC-BY-NC-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Top-p (nucleus) sampling with a repeat penalty.

Per row of a probability matrix:
  1. p_t /= repeat_penalty for every token t already in the row's sequence
  2. renormalize
  3. sort descending (stable: equal probabilities keep index order)
  4. keep the shortest prefix whose cumulative mass >= top_p (at least one token)
  5. renormalize the prefix and draw one token via inverse CDF

All random draws use a deterministic LCG PRNG for reproducibility across
platforms (independent of numpy's RNG state).  The state is a 1-element
list so it can be shared and advanced in place by its owner.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np


def next_rand01(state: list[int]) -> float:
    """LCG PRNG returning [0, 1).

    Uses a Linear Congruential Generator with the same constants as
    PCG's default multiplier.  State is a 1-element list for mutability.
    """
    state[0] = (state[0] * 6_364_136_223_846_793_005 + 1) & 0xFFFFFFFFFFFFFFFF
    return float((state[0] >> 32) & 0xFFFFFFFF) / 4294967296.0


def sample_from_probs(probs: np.ndarray, state: list[int]) -> int:
    """Sample an index from a probability distribution via inverse CDF.

    Draws a uniform random number and walks the cumulative distribution
    until the threshold is crossed.
    """
    r = next_rand01(state)
    cum = np.cumsum(probs)
    idx = int(np.searchsorted(cum, r, side="left"))
    return min(idx, len(probs) - 1)


def apply_repeat_penalty(probs: np.ndarray, seen_tokens: Sequence[int], repeat_penalty: float) -> np.ndarray:
    """Divide the probability of every already-seen token by ``repeat_penalty`` and renormalize."""
    probs = np.array(probs, dtype=np.float64)
    if repeat_penalty != 1.0 and len(seen_tokens):
        seen = np.unique(np.asarray(seen_tokens, dtype=np.int64))
        seen = seen[(seen >= 0) & (seen < probs.size)]
        probs[seen] /= repeat_penalty
    total = probs.sum()
    if total > 0:
        probs /= total
    return probs


def top_p_filter(probs: np.ndarray, top_p: float) -> tuple[np.ndarray, np.ndarray]:
    """Restrict to the nucleus.

    Returns:
        (token_ids, renormalized_probs) for the shortest descending-probability
        prefix whose cumulative mass reaches ``top_p``.
    """
    order = np.argsort(-probs, kind="stable")
    sorted_probs = probs[order]
    cum = np.cumsum(sorted_probs)
    # first position where the cumulative mass reaches top_p; small slack for rounding
    cutoff = int(np.searchsorted(cum, top_p - 1e-12, side="left")) + 1
    cutoff = max(1, min(cutoff, probs.size))
    kept = sorted_probs[:cutoff]
    total = kept.sum()
    if total > 0:
        kept = kept / total
    else:
        kept = np.full(cutoff, 1.0 / cutoff)
    return order[:cutoff], kept


def top_p_sample(probs: np.ndarray, seen_tokens: Sequence[int], top_p: float,
                 repeat_penalty: float, state: list[int]) -> int:
    """Sample one token id from a single probability row."""
    penalized = apply_repeat_penalty(probs, seen_tokens, repeat_penalty)
    token_ids, kept = top_p_filter(penalized, top_p)
    return int(token_ids[sample_from_probs(kept, state)])


def top_p_sample_rows(probs: np.ndarray, seqs: Sequence[Sequence[int]] | None, top_p: float,
                      repeat_penalty: float, state: list[int]) -> np.ndarray:
    """Sample one token id per row of a [rows, vocab] matrix.

    ``seqs[row]`` lists tokens generated so far for that row (may be None).
    Returns a [rows, 1] float32 array of token ids.
    """
    rows = probs.shape[0]
    out = np.empty((rows, 1), dtype=np.float32)
    for row in range(rows):
        seen = seqs[row] if seqs is not None and row < len(seqs) else ()
        out[row, 0] = top_p_sample(probs[row], seen, top_p, repeat_penalty, state)
    return out
