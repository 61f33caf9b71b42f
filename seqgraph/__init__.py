# SPDX-License-Identifier: CC-BY-NC-SA-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""seqgraph: tensor engine, compute graph and weight store for seq2seq models.

Pure Python + NumPy (CuPy on GPU) implementation.  All operators and
gradients are hand-implemented on top of a small device abstraction.

Key components:
  - Allocator / Storage: per-device buffers with reference counting (allocator.py)
  - Tensor: strided views over shared storage (tensor.py)
  - WeightTensor: weight + lazily allocated gradient (weight_tensor.py)
  - ComputeGraph: eager operators, backward tape, subgraph scoping (graph.py)
  - Layers: LayerNormalization, LSTM cells (layers.py), MoEFeedForward (moe.py)
  - Model: weight store with INT8/INT4 codebook compression (model.py, vq.py)
"""

from .config import ActivateFunc, ModelConfig, ProcessorType, VQType
from .errors import (
    BufferAlreadyAssignedError,
    DeviceError,
    SeqGraphError,
    ShapeMismatchError,
    TensorDisposedError,
    UnsupportedOperationError,
    WeightReleasedError,
)
from .allocator import Allocator, CpuAllocator, CudaAllocator, Storage, get_allocator, gpu_available, init_devices
from .tensor import DType, Tensor
from .weight_tensor import NormType, WeightTensor
from .diagnostics import RateLimiter, WeightPrinter
from .graph import ComputeGraph
from .layers import Layer, LayerNormalization, LSTMAttentionDecoderCell, LSTMCell
from .moe import MoEFeedForward
from .model import Model
from .vq import VectorQuantization
from .position_embedding import add_position_embedding, build_position_weight_tensor

__all__ = [
    "ActivateFunc",
    "ModelConfig",
    "ProcessorType",
    "VQType",
    "SeqGraphError",
    "ShapeMismatchError",
    "BufferAlreadyAssignedError",
    "WeightReleasedError",
    "TensorDisposedError",
    "DeviceError",
    "UnsupportedOperationError",
    "Allocator",
    "CpuAllocator",
    "CudaAllocator",
    "Storage",
    "get_allocator",
    "gpu_available",
    "init_devices",
    "DType",
    "Tensor",
    "NormType",
    "WeightTensor",
    "RateLimiter",
    "WeightPrinter",
    "ComputeGraph",
    "Layer",
    "LayerNormalization",
    "LSTMCell",
    "LSTMAttentionDecoderCell",
    "MoEFeedForward",
    "Model",
    "VectorQuantization",
    "add_position_embedding",
    "build_position_weight_tensor",
]
