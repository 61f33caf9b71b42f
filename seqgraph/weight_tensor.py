# SPDX-License-Identifier: CC-BY-NC-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""WeightTensor: a value tensor paired with its lazily-allocated gradient.

Every parameter and every activation in a compute graph is a WeightTensor.

Buffer protocol:
  - weight: allocated eagerly when an init (norm type or constant) is given,
    otherwise zero-filled on first access.  Reading it after release_weight()
    raises WeightReleasedError.
  - gradient: zero-filled on first access.
  - Assigning a buffer while one is already held raises
    BufferAlreadyAssignedError naming the call that set the existing one.
  - Gradients accumulate (copy on first contribution, add afterwards); no
    producer ever overwrites another's contribution.

Init scales (rows/cols are the last two dimensions):
  UNIFORM           U(-s, s), s = sqrt(6 / (rows + cols))
  UNIFORM + fan_in  s = sqrt(3 / rows)
  UNIFORM + fan_out s = sqrt(3 / cols)
  NORMAL            U(-1, 1)
"""

from __future__ import annotations

import heapq
import logging
import math
import sys
import threading
import weakref
from enum import Enum
from typing import TYPE_CHECKING, Sequence

import numpy as np

from . import ops
from .errors import BufferAlreadyAssignedError, ShapeMismatchError, WeightReleasedError
from .tensor import DType, Tensor

if TYPE_CHECKING:
    from .diagnostics import WeightPrinter
    from .graph import ComputeGraph
    from .model import Model

logger = logging.getLogger(__name__)

# Serializes add_gradient_from across producers sharing one gradient buffer
_gradient_lock = threading.Lock()


class NormType(Enum):
    """Random initialization applied when a weight is created."""

    NONE = "none"
    UNIFORM = "uniform"
    NORMAL = "normal"


def _caller(depth: int = 2) -> str:
    return sys._getframe(depth).f_code.co_name


class WeightTensor:
    """Weight buffer + gradient buffer with explicit lifetime."""

    def __init__(
        self,
        sizes: Sequence[int],
        device_id: int = 0,
        name: str = "",
        is_trainable: bool = False,
        norm_type: NormType = NormType.NONE,
        fan_in: bool = False,
        fan_out: bool = False,
        learning_rate_factor: float = 1.0,
        graph_to_bind: ComputeGraph | None = None,
        need_gradient: bool = True,
        dtype: DType = DType.F32,
    ):
        self.sizes = tuple(int(s) for s in sizes)
        self.device_id = device_id
        self.name = name
        self.is_trainable = is_trainable
        self.need_gradient = need_gradient
        self.learning_rate_factor = learning_rate_factor
        self.dtype = dtype
        self._norm_type = norm_type
        self._fan_in = fan_in
        self._fan_out = fan_out

        self._weight: Tensor | None = None
        self._gradient: Tensor | None = None
        self._weight_set_by = ""
        self._gradient_set_by = ""
        self._released = False

        # Lifetime tracking by compute graphs
        self._graph_ref: weakref.ref | None = None
        self._bind_count = 0

        if norm_type != NormType.NONE:
            self._init_weights()
        if graph_to_bind is not None:
            graph_to_bind.bind(self)

    @classmethod
    def constant(
        cls,
        sizes: Sequence[int],
        value: float,
        device_id: int = 0,
        name: str = "",
        is_trainable: bool = False,
        learning_rate_factor: float = 1.0,
        need_gradient: bool = True,
        dtype: DType = DType.F32,
    ) -> WeightTensor:
        """Create a WeightTensor whose weight is filled with ``value``."""
        w = cls(sizes, device_id, name, is_trainable, learning_rate_factor=learning_rate_factor,
                need_gradient=need_gradient, dtype=dtype)
        w.set_weight(Tensor.full(w.sizes, value, dtype, device_id), set_by="constant")
        return w

    def _init_weights(self) -> None:
        rows = self.sizes[-2] if len(self.sizes) >= 2 else 1
        cols = self.sizes[-1]
        if self._norm_type == NormType.NORMAL:
            scale = 1.0
        elif self._fan_in and not self._fan_out:
            scale = math.sqrt(3.0 / rows)
        elif self._fan_out and not self._fan_in:
            scale = math.sqrt(3.0 / cols)
        else:
            scale = math.sqrt(6.0 / (rows + cols))
        values = np.random.uniform(-scale, scale, self.sizes).astype(np.float32)
        self.set_weight(Tensor.from_numpy(values, self.dtype, self.device_id), set_by="init_weights")

    # ------------------------------------------------------------------
    # Shape helpers
    # ------------------------------------------------------------------

    @property
    def rows(self) -> int:
        return self.sizes[0]

    @property
    def columns(self) -> int:
        return self.sizes[1]

    @property
    def element_count(self) -> int:
        return int(np.prod(self.sizes, dtype=np.int64))

    # ------------------------------------------------------------------
    # Buffers
    # ------------------------------------------------------------------

    @property
    def weight(self) -> Tensor:
        """Weight tensor, zero-filled on first access."""
        if self._weight is None:
            if self._released:
                raise WeightReleasedError(
                    f"The weight of '{self.name}' has been released, you cannot access it."
                )
            self._weight = Tensor.zeros(self.sizes, self.dtype, self.device_id)
            self._weight_set_by = "weight"
        return self._weight

    @weight.setter
    def weight(self, value: Tensor) -> None:
        self.set_weight(value, set_by=_caller())

    def set_weight(self, value: Tensor, set_by: str = "") -> None:
        """Assign the weight buffer; fails if one is already held."""
        if self._weight is not None:
            raise BufferAlreadyAssignedError(
                f"Weight '{self.name}' has already been set by '{self._weight_set_by}' "
                f"(attempted by '{set_by}')."
            )
        if value.shape != self.sizes:
            raise ShapeMismatchError(
                f"Weight '{self.name}' has shape {self.sizes}, cannot assign tensor of shape {value.shape}"
            )
        self._weight = value
        self._weight_set_by = set_by
        self._released = False

    @property
    def gradient(self) -> Tensor:
        """Gradient tensor, zero-filled on first access."""
        if self._gradient is None:
            self._gradient = Tensor.zeros(self.sizes, self.dtype, self.device_id)
            self._gradient_set_by = "gradient"
        return self._gradient

    @gradient.setter
    def gradient(self, value: Tensor) -> None:
        self.set_gradient(value, set_by=_caller())

    def set_gradient(self, value: Tensor, set_by: str = "") -> None:
        """Assign the gradient buffer; fails if one is already held."""
        if self._gradient is not None:
            raise BufferAlreadyAssignedError(
                f"Gradient of '{self.name}' has already been set by '{self._gradient_set_by}' "
                f"(attempted by '{set_by}')."
            )
        if value.shape != self.sizes:
            raise ShapeMismatchError(
                f"Gradient of '{self.name}' must have shape {self.sizes}, got {value.shape}"
            )
        self._gradient = value
        self._gradient_set_by = set_by

    def is_gradient_null(self) -> bool:
        return self._gradient is None

    def is_weight_null(self) -> bool:
        return self._weight is None

    @property
    def is_released(self) -> bool:
        return self._released

    def release_weight(self) -> None:
        if self._weight is not None:
            self._weight.dispose()
            self._weight = None
        self._released = True

    def release_gradient(self) -> None:
        if self._gradient is not None:
            self._gradient.dispose()
            self._gradient = None

    def dispose(self) -> None:
        """Release both buffers.  Safe to call more than once."""
        self.release_weight()
        self.release_gradient()

    # ------------------------------------------------------------------
    # Fills
    # ------------------------------------------------------------------

    def zero_gradient(self) -> None:
        self.gradient.fill(0.0)

    def clean_weight(self) -> None:
        self.weight.fill(0.0)

    def fill_gradient(self, value: float) -> None:
        """Fill the gradient with a constant (seeds the loss node of a backward pass)."""
        self.gradient.fill(value)

    def clamp(self, min_value: float, max_value: float) -> None:
        ops.clamp(self.weight, min_value, max_value, self.weight)

    # ------------------------------------------------------------------
    # Gradient accumulation
    # ------------------------------------------------------------------

    def _check_same_shape(self, other: Tensor, what: str) -> None:
        if other.shape != self.sizes:
            raise ShapeMismatchError(
                f"{what}: '{self.name}' has shape {self.sizes} but source has shape {other.shape}"
            )

    def copy_weights_to_gradients(self, src: WeightTensor) -> None:
        """Make the gradient a shared reference to ``src``'s weight storage."""
        self._check_same_shape(src.weight, "copy_weights_to_gradients")
        self.release_gradient()
        self.set_gradient(src.weight.copy_ref(), set_by="copy_weights_to_gradients")

    def copy_weights_from(self, src: WeightTensor) -> None:
        """Deep-copy ``src``'s weight values into this weight."""
        self.weight.copy_from(src.weight)

    def add_gradient_from(self, src: WeightTensor) -> None:
        """gradient += src.gradient, serialized across callers.

        Adds through a temporary copy so that ``src`` may live on another
        device or alias this buffer.
        """
        with _gradient_lock:
            tmp = src.gradient.to_device(self.device_id)
            try:
                self._check_same_shape(tmp, "add_gradient_from")
                if self._gradient is None:
                    self.set_gradient(tmp.clone(), set_by="add_gradient_from")
                else:
                    ops.add(self._gradient, tmp, self._gradient)
            finally:
                tmp.dispose()

    def copy_or_add_gradient(self, src: WeightTensor | Tensor, caller_name: str = "") -> None:
        """Copy ``src`` into the gradient if none exists yet, else add it in place.

        ``src`` is either another WeightTensor (its gradient is used) or a raw Tensor.
        """
        grad = src.gradient if isinstance(src, WeightTensor) else src
        self._check_same_shape(grad, "copy_or_add_gradient")
        if self._gradient is None:
            self.set_gradient(grad.clone(), set_by=caller_name or _caller())
        else:
            ops.add(self._gradient, grad, self._gradient)

    def _accumulate(self, delta: Tensor, overwrite: bool, set_by: str) -> None:
        """Take ownership of ``delta`` as the new gradient, or add it and dispose it."""
        if self._gradient is None:
            self.set_gradient(delta, set_by=set_by)
            return
        if overwrite:
            self._gradient.copy_from(delta)
        else:
            ops.add(self._gradient, delta, self._gradient)
        delta.dispose()

    def add_softmax_gradient(self, src: WeightTensor, in_place: bool = False) -> None:
        """Accumulate the softmax input-gradient given softmax output ``src``.

        dx = y * (g - sum(g * y)) with y = src.weight, g = src.gradient.
        ``in_place`` replaces the current gradient instead of adding to it.
        """
        delta = ops.softmax_grad(src.weight, src.gradient)
        self._accumulate(delta, in_place, "add_softmax_gradient")

    def add_sigmoid_gradient(self, src: WeightTensor) -> None:
        """Accumulate dx = g * y * (1 - y) given sigmoid output ``src``."""
        delta = ops.sigmoid_grad(src.weight, src.gradient)
        self._accumulate(delta, False, "add_sigmoid_gradient")

    def add_tanh_gradient(self, src: WeightTensor) -> None:
        """Accumulate dx = g * (1 - y^2) given tanh output ``src``."""
        delta = ops.tanh_grad(src.weight, src.gradient)
        self._accumulate(delta, False, "add_tanh_gradient")

    def add_mul_gradient(self, w: Tensor, g: Tensor, in_place: bool = False) -> None:
        """Accumulate w * g (the elementwise-product gradient)."""
        delta = ops.mul(w, g)
        if delta.shape != self.sizes:
            summed = ops.sum_to_shape(delta.data, self.sizes)
            delta.dispose()
            delta = Tensor.from_numpy(summed, self.dtype, self.device_id)
        self._accumulate(delta, in_place, "add_mul_gradient")

    # ------------------------------------------------------------------
    # Point access and host transfer
    # ------------------------------------------------------------------

    def get_weight_at(self, indices: Sequence[int]) -> float:
        return float(self.weight.data[tuple(indices)])

    def set_weight_at(self, value: float, indices: Sequence[int]) -> None:
        self.weight.data[tuple(indices)] = value

    def get_gradient_at(self, indices: Sequence[int]) -> float:
        return float(self.gradient.data[tuple(indices)])

    def to_weight_array(self) -> np.ndarray:
        """Flat host float32 copy of the weight."""
        return self.weight.to_numpy().astype(np.float32).reshape(-1)

    def to_gradient_array(self) -> np.ndarray:
        return self.gradient.to_numpy().astype(np.float32).reshape(-1)

    def set_weight_array(self, values: np.ndarray) -> None:
        """Overwrite the weight from a flat (or same-shaped) host array."""
        values = np.asarray(values, dtype=np.float32)
        if values.size != self.element_count:
            raise ShapeMismatchError(
                f"Weight '{self.name}' has {self.element_count} elements, got an array of {values.size}"
            )
        self.weight.data[...] = self.weight.allocator.from_host(values.reshape(self.sizes))

    def get_top_n_max_weight_idx(self, top_n: int) -> list[int]:
        """Flat indices of the ``top_n`` largest weights, largest first.

        Bounded heap, O(n log top_n); equal values keep the lower index first.
        """
        flat = self.to_weight_array()
        return heapq.nlargest(top_n, range(flat.size), key=flat.__getitem__)

    # ------------------------------------------------------------------
    # Copies
    # ------------------------------------------------------------------

    def copy_weights_ref(self, name: str, need_gradient: bool = True) -> WeightTensor:
        """New WeightTensor sharing this weight's storage (no copy)."""
        w = WeightTensor(self.sizes, self.device_id, name, self.is_trainable,
                         learning_rate_factor=self.learning_rate_factor,
                         need_gradient=need_gradient, dtype=self.dtype)
        w.set_weight(self.weight.copy_ref(), set_by="copy_weights_ref")
        return w

    def clone_to_device_at(self, device_id: int) -> WeightTensor:
        """Same-shaped, freshly initialized WeightTensor on another device."""
        return WeightTensor(
            self.sizes, device_id, self.name, self.is_trainable,
            norm_type=self._norm_type, fan_in=self._fan_in, fan_out=self._fan_out,
            learning_rate_factor=self.learning_rate_factor,
            need_gradient=self.need_gradient, dtype=self.dtype,
        )

    # ------------------------------------------------------------------
    # Persistence and diagnostics
    # ------------------------------------------------------------------

    def save(self, model: Model) -> None:
        model.add_weights(self.name, self.to_weight_array())

    def load(self, model: Model) -> bool:
        """Load weights by name.  A missing name leaves the tensor untouched."""
        values = model.get_weights(self.name)
        if values is None:
            return False
        logger.debug("Loading weights '%s' %s", self.name, list(self.sizes))
        self.set_weight_array(values)
        return True

    def print_weights(self, printer: WeightPrinter) -> bool:
        return printer.print_weights(self)

    # ------------------------------------------------------------------
    # Compute graph binding
    # ------------------------------------------------------------------

    @property
    def bind_count(self) -> int:
        return self._bind_count

    def unbind_from_compute_graph(self) -> None:
        """Stop lifetime tracking by the graph this tensor was first bound to."""
        graph = self._graph_ref() if self._graph_ref is not None else None
        if graph is not None:
            graph.unbind(self)

    def get_params(self) -> list[WeightTensor]:
        return [self]

    def __repr__(self) -> str:
        return f"WeightTensor(name={self.name!r}, sizes={list(self.sizes)}, device={self.device_id})"
