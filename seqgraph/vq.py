# SPDX-License-Identifier: CC-BY-NC-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Scalar vector quantization (1-D k-means codebooks).

Codebook build (LBG):
  1. start from one centroid at the sample mean
  2. split every centroid c into c(1 - eps), c(1 + eps); when doubling would
     overshoot the target size, split only the clusters with the largest
     squared error
  3. refine with Lloyd iterations until the relative drop in distortion
     falls below ``tol``
  4. repeat until the codebook has ``size`` entries

If the samples hold no more than ``size`` distinct values, the codebook is
those values padded with copies of the largest one, so reconstruction is
exact.  Codebooks are sorted ascending; quantization picks the nearest entry
and breaks ties toward the lower index.

Distortion is the mean squared reconstruction error.
"""

from __future__ import annotations

import logging
from typing import Iterable

import numpy as np

logger = logging.getLogger(__name__)


class VectorQuantization:
    """Collects scalar samples and builds a fixed-size codebook from them."""

    def __init__(self, split_eps: float = 0.01, tol: float = 1e-4, max_iter: int = 100):
        self.split_eps = split_eps
        self.tol = tol
        self.max_iter = max_iter
        self._chunks: list[np.ndarray] = []
        self._codebook: np.ndarray | None = None

    def add(self, value: float) -> None:
        self._chunks.append(np.array([value], dtype=np.float64))

    def add_many(self, values: Iterable[float] | np.ndarray) -> None:
        self._chunks.append(np.asarray(values, dtype=np.float64).reshape(-1))

    @property
    def sample_count(self) -> int:
        return int(sum(c.size for c in self._chunks))

    def _samples(self) -> np.ndarray:
        if not self._chunks:
            return np.zeros(0, dtype=np.float64)
        if len(self._chunks) > 1:
            self._chunks = [np.concatenate(self._chunks)]
        return self._chunks[0]

    @property
    def codebook(self) -> np.ndarray:
        """Ascending codebook (copy).  Raises if build_codebook() was not called."""
        if self._codebook is None:
            raise RuntimeError("Codebook has not been built yet; call build_codebook() first")
        return self._codebook.copy()

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def build_codebook(self, size: int) -> float:
        """Build a ``size``-entry codebook from the collected samples.

        Returns:
            Mean squared distortion of the samples against the final codebook.
        """
        if size < 1:
            raise ValueError(f"Codebook size must be positive, got {size}")
        samples = self._samples()
        if samples.size == 0:
            self._codebook = np.zeros(size, dtype=np.float64)
            return 0.0

        distinct = np.unique(samples)
        if distinct.size <= size:
            pad = np.full(size - distinct.size, distinct[-1])
            self._codebook = np.concatenate([distinct, pad])
            return 0.0

        spread = float(samples.std()) or 1.0
        codebook = np.array([samples.mean()])
        distortion = _distortion(samples, codebook)
        while codebook.size < size:
            codebook = self._split(samples, codebook, size, spread)
            codebook, distortion = self._lloyd(samples, codebook)
        self._codebook = codebook
        logger.debug("Built %d-entry codebook from %d samples, distortion=%.6g",
                     size, samples.size, distortion)
        return distortion

    def _split(self, samples: np.ndarray, codebook: np.ndarray, size: int, spread: float) -> np.ndarray:
        n_split = min(codebook.size, size - codebook.size)
        if n_split < codebook.size:
            idx = assign(samples, codebook)
            err = np.bincount(idx, weights=(samples - codebook[idx]) ** 2, minlength=codebook.size)
            chosen = np.sort(np.argsort(-err, kind="stable")[:n_split])
        else:
            chosen = np.arange(codebook.size)
        delta = self.split_eps * np.where(codebook[chosen] != 0, np.abs(codebook[chosen]), spread)
        keep = np.delete(codebook, chosen)
        return np.sort(np.concatenate([keep, codebook[chosen] - delta, codebook[chosen] + delta]))

    def _lloyd(self, samples: np.ndarray, codebook: np.ndarray) -> tuple[np.ndarray, float]:
        prev = np.inf
        distortion = prev
        for _ in range(self.max_iter):
            idx = assign(samples, codebook)
            counts = np.bincount(idx, minlength=codebook.size)
            sums = np.bincount(idx, weights=samples, minlength=codebook.size)
            nonempty = counts > 0
            # empty clusters keep their previous centroid
            codebook = codebook.copy()
            codebook[nonempty] = sums[nonempty] / counts[nonempty]
            codebook.sort()
            distortion = _distortion(samples, codebook)
            if prev - distortion <= self.tol * max(distortion, 1e-30):
                break
            prev = distortion
        return codebook, distortion

    # ------------------------------------------------------------------
    # Quantize
    # ------------------------------------------------------------------

    def compute_vq(self, value: float) -> int:
        """Index of the codebook entry nearest to ``value``."""
        return int(assign(np.array([value], dtype=np.float64), self.codebook)[0])

    def quantize(self, values: np.ndarray) -> np.ndarray:
        """Nearest-entry indices for every value (int64)."""
        return assign(np.asarray(values, dtype=np.float64).reshape(-1), self.codebook)

    def dequantize(self, codes: np.ndarray) -> np.ndarray:
        """Codebook lookup for an array of indices."""
        return self.codebook[np.asarray(codes, dtype=np.int64)]


def assign(values: np.ndarray, codebook: np.ndarray) -> np.ndarray:
    """Nearest centroid per value for an ascending codebook; ties go to the lower index."""
    if codebook.size == 1:
        return np.zeros(values.shape, dtype=np.int64)
    midpoints = (codebook[1:] + codebook[:-1]) / 2.0
    return np.searchsorted(midpoints, values, side="left").astype(np.int64)


def _distortion(samples: np.ndarray, codebook: np.ndarray) -> float:
    err = samples - codebook[assign(samples, codebook)]
    return float(np.mean(err * err))
