# SPDX-License-Identifier: CC-BY-NC-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Model weight store with optional vector-quantized compression.

Every weight name lives in exactly one of three maps:

  raw    float32 values
  INT8   one code byte per value + 256-entry codebook
  INT4   two 4-bit codes per byte (low nibble = even index, high nibble =
         odd index) + 16-entry codebook + element count

The compression path is chosen once, from ``config.vq_type``, when the
store is created.  INT4 has a quality gate: when the codebook's mean squared
distortion reaches INT4_MAX_DISTORTION the weights are stored raw instead.

On disk the store is a single safetensors file:
  raw/<name>       float32
  int8/<name>      uint8 codes
  int4/<name>      uint8 packed codes
  codebook/<name>  float64
and the string metadata carries the config, VQ type and INT4 element
counts as JSON.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import numpy as np
from safetensors import safe_open
from safetensors.numpy import load_file, save_file

from .config import ModelConfig, VQType
from .vq import VectorQuantization

logger = logging.getLogger(__name__)

INT8_CODEBOOK_SIZE = 256
INT4_CODEBOOK_SIZE = 16
INT4_MAX_DISTORTION = 0.1


class Model:
    """Name -> weight array store."""

    def __init__(self, config: ModelConfig | None = None):
        self.config = config if config is not None else ModelConfig()
        self.vq_type = self.config.vq_type
        self._name2weights: dict[str, np.ndarray] = {}
        self._name2weights_int8: dict[str, np.ndarray] = {}
        self._name2weights_int4: dict[str, np.ndarray] = {}
        self._name2int4_length: dict[str, int] = {}
        self._name2codebook: dict[str, np.ndarray] = {}

        add_paths = {
            VQType.NONE: self._add_raw,
            VQType.INT8: self._add_int8,
            VQType.INT4: self._add_int4,
        }
        self._add = add_paths[self.vq_type]

    # ------------------------------------------------------------------
    # Boundary operations
    # ------------------------------------------------------------------

    def add_weights(self, name: str, values: np.ndarray) -> None:
        """Store ``values`` under ``name``, replacing any existing entry."""
        values = np.asarray(values, dtype=np.float32).reshape(-1)
        self.delete_weights(name)
        logger.info("Adding weights '%s' (%d values, vq=%s)", name, values.size, self.vq_type.name)
        self._add(name, values)

    def get_weights(self, name: str) -> np.ndarray | None:
        """Reconstruct the float32 weights for ``name``, or None (with a warning) if absent."""
        if name in self._name2weights:
            return self._name2weights[name].copy()
        if name in self._name2weights_int8:
            codebook = self._name2codebook[name]
            return codebook[self._name2weights_int8[name]].astype(np.float32)
        if name in self._name2weights_int4:
            codes = unpack_int4(self._name2weights_int4[name], self._name2int4_length[name])
            return self._name2codebook[name][codes].astype(np.float32)
        logger.warning("Weight '%s' doesn't exist in the model.", name)
        return None

    def get_weights_half_type(self, name: str) -> np.ndarray | None:
        """Same as get_weights, converted to float16."""
        values = self.get_weights(name)
        if values is None:
            return None
        return values.astype(np.float16)

    def delete_weights(self, name: str) -> None:
        for store in (self._name2weights, self._name2weights_int8, self._name2weights_int4,
                      self._name2int4_length, self._name2codebook):
            store.pop(name, None)

    def clear_weights(self) -> None:
        for store in (self._name2weights, self._name2weights_int8, self._name2weights_int4,
                      self._name2int4_length, self._name2codebook):
            store.clear()

    def __contains__(self, name: str) -> bool:
        return (name in self._name2weights or name in self._name2weights_int8
                or name in self._name2weights_int4)

    def weight_names(self) -> list[str]:
        return list(self._name2weights) + list(self._name2weights_int8) + list(self._name2weights_int4)

    def storage_kind(self, name: str) -> str | None:
        """'raw', 'int8', 'int4' or None, depending on where ``name`` is stored."""
        if name in self._name2weights:
            return "raw"
        if name in self._name2weights_int8:
            return "int8"
        if name in self._name2weights_int4:
            return "int4"
        return None

    def codebook(self, name: str) -> np.ndarray | None:
        cb = self._name2codebook.get(name)
        return None if cb is None else cb.copy()

    def show_model_info(self) -> None:
        """Log the model configuration."""
        for key, value in self.config.to_dict().items():
            logger.info("%s = '%s'", key, value)
        logger.info("Weights: %d raw, %d INT8, %d INT4", len(self._name2weights),
                    len(self._name2weights_int8), len(self._name2weights_int4))

    # ------------------------------------------------------------------
    # Compression paths
    # ------------------------------------------------------------------

    def _add_raw(self, name: str, values: np.ndarray) -> None:
        self._name2weights[name] = values.copy()

    def _build_vq(self, values: np.ndarray, size: int) -> tuple[VectorQuantization, float]:
        vq = VectorQuantization()
        vq.add_many(values)
        if values.size < size:
            vq.add_many(np.zeros(size - values.size))
        distortion = vq.build_codebook(size)
        return vq, distortion

    def _add_int8(self, name: str, values: np.ndarray) -> None:
        vq, distortion = self._build_vq(values, INT8_CODEBOOK_SIZE)
        logger.debug("INT8 codebook for '%s': distortion=%.6g", name, distortion)
        self._name2codebook[name] = vq.codebook
        self._name2weights_int8[name] = vq.quantize(values).astype(np.uint8)

    def _add_int4(self, name: str, values: np.ndarray) -> None:
        vq, distortion = self._build_vq(values, INT4_CODEBOOK_SIZE)
        if distortion >= INT4_MAX_DISTORTION:
            logger.info("Distortion of INT4 codebook for '%s' is %.4f (>= %.2f), storing raw weights.",
                        name, distortion, INT4_MAX_DISTORTION)
            self._add_raw(name, values)
            return
        self._name2codebook[name] = vq.codebook
        self._name2weights_int4[name] = pack_int4(vq.quantize(values))
        self._name2int4_length[name] = int(values.size)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: str | Path) -> None:
        """Write the store to a safetensors file."""
        tensors: dict[str, np.ndarray] = {}
        for name, arr in self._name2weights.items():
            tensors[f"raw/{name}"] = np.ascontiguousarray(arr, dtype=np.float32)
        for name, arr in self._name2weights_int8.items():
            tensors[f"int8/{name}"] = np.ascontiguousarray(arr, dtype=np.uint8)
        for name, arr in self._name2weights_int4.items():
            tensors[f"int4/{name}"] = np.ascontiguousarray(arr, dtype=np.uint8)
        for name, arr in self._name2codebook.items():
            tensors[f"codebook/{name}"] = np.ascontiguousarray(arr, dtype=np.float64)
        metadata = {
            "config": json.dumps(self.config.to_dict()),
            "vq_type": self.vq_type.name,
            "int4_lengths": json.dumps(self._name2int4_length),
        }
        save_file(tensors, str(path), metadata=metadata)
        logger.info("Saved %d weights to '%s'", len(self.weight_names()), path)

    @classmethod
    def load(cls, path: str | Path) -> Model:
        """Read a store written by ``save``."""
        with safe_open(str(path), framework="np") as f:
            metadata = f.metadata() or {}
        config = ModelConfig.from_dict(json.loads(metadata.get("config", "{}")))
        if "vq_type" in metadata:
            config.vq_type = VQType[metadata["vq_type"]]
        model = cls(config)
        int4_lengths = json.loads(metadata.get("int4_lengths", "{}"))

        for key, arr in load_file(str(path)).items():
            kind, name = key.split("/", 1)
            if kind == "raw":
                model._name2weights[name] = arr.astype(np.float32)
            elif kind == "int8":
                model._name2weights_int8[name] = arr.astype(np.uint8)
            elif kind == "int4":
                model._name2weights_int4[name] = arr.astype(np.uint8)
                model._name2int4_length[name] = int(int4_lengths[name])
            elif kind == "codebook":
                model._name2codebook[name] = arr.astype(np.float64)
            else:
                raise ValueError(f"Unknown entry '{key}' in weight file '{path}'")
        logger.info("Loaded %d weights from '%s'", len(model.weight_names()), path)
        return model


def pack_int4(codes: np.ndarray) -> np.ndarray:
    """Pack 4-bit codes two per byte: low nibble = even index, high nibble = odd index.

    Odd lengths are padded with code 0.
    """
    codes = np.asarray(codes, dtype=np.uint8).reshape(-1)
    if codes.size % 2:
        codes = np.concatenate([codes, np.zeros(1, dtype=np.uint8)])
    return (codes[0::2] | (codes[1::2] << 4)).astype(np.uint8)


def unpack_int4(packed: np.ndarray, length: int) -> np.ndarray:
    """Inverse of pack_int4, trimmed to ``length`` codes."""
    packed = np.asarray(packed, dtype=np.uint8)
    codes = np.empty(packed.size * 2, dtype=np.int64)
    codes[0::2] = packed & 0x0F
    codes[1::2] = packed >> 4
    return codes[:length]
