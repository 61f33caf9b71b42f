# SPDX-License-Identifier: CC-BY-NC-SA-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Tensor views over allocator-owned storage.

A Tensor is a typed, strided ndarray view onto a reference-counted Storage
buffer. Views created with copy_ref(), view(), narrow(), select(),
transpose(), permute() and expand() share the storage and each hold one
reference, so the buffer is freed only after the last of them is disposed.
Writes through any alias are visible to all others (no copy-on-write).

The underlying array module is NumPy on CPU devices and CuPy on GPU devices;
use ``tensor.xp`` rather than importing either directly.
"""

from __future__ import annotations

from enum import Enum
from typing import Sequence

import numpy as np

from .allocator import Allocator, Storage, get_allocator
from .errors import ShapeMismatchError, TensorDisposedError


class DType(Enum):
    """Supported data types for tensors.

    Maps our enum variants to numpy dtypes.  BF16 is emulated as float32
    because numpy has no native bfloat16 support.
    """

    F32 = "float32"
    F16 = "float16"
    BF16 = "bfloat16"
    I32 = "int32"
    I64 = "int64"

    def to_numpy(self) -> np.dtype:
        """Convert to numpy dtype."""
        if self == DType.BF16:
            # numpy doesn't have bfloat16, use float32 as a stand-in
            return np.dtype(np.float32)
        return np.dtype(self.value)


class Tensor:
    """Strided view over a reference-counted device buffer.

    Design notes:
    - The constructor allocates fresh storage.  Views go through
      ``_from_view`` and add a reference to the existing storage instead.
    - ``dispose()`` drops this view's reference exactly once.  Touching a
      disposed tensor raises TensorDisposedError.
    """

    def __init__(self, shape: Sequence[int], dtype: DType = DType.F32, device_id: int = 0):
        """Allocate an uninitialized tensor on ``device_id``."""
        shape = tuple(int(s) for s in shape)
        if any(s < 0 for s in shape):
            raise ShapeMismatchError(f"Negative dimension in shape {shape}")
        allocator = get_allocator(device_id)
        count = int(np.prod(shape, dtype=np.int64)) if shape else 1
        self._storage: Storage | None = allocator.allocate(dtype.to_numpy(), count)
        self._data = self._storage.buffer[:count].reshape(shape)
        self._dtype = dtype
        self._device_id = device_id

    @classmethod
    def _from_view(cls, base: Tensor, data) -> Tensor:
        """Wrap ``data`` (a view of base's buffer) as a new Tensor sharing storage."""
        base._check_alive()
        base._storage.add_ref()
        t = cls.__new__(cls)
        t._storage = base._storage
        t._data = data
        t._dtype = base._dtype
        t._device_id = base._device_id
        return t

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def empty(cls, shape: Sequence[int], dtype: DType = DType.F32, device_id: int = 0) -> Tensor:
        """Create an uninitialized tensor."""
        return cls(shape, dtype, device_id)

    @classmethod
    def full(cls, shape: Sequence[int], value: float, dtype: DType = DType.F32, device_id: int = 0) -> Tensor:
        """Create tensor filled with ``value``."""
        t = cls(shape, dtype, device_id)
        t._data.fill(value)
        return t

    @classmethod
    def zeros(cls, shape: Sequence[int], dtype: DType = DType.F32, device_id: int = 0) -> Tensor:
        """Create tensor of zeros."""
        return cls.full(shape, 0, dtype, device_id)

    @classmethod
    def ones(cls, shape: Sequence[int], dtype: DType = DType.F32, device_id: int = 0) -> Tensor:
        """Create tensor of ones."""
        return cls.full(shape, 1, dtype, device_id)

    @classmethod
    def from_numpy(cls, arr: np.ndarray, dtype: DType = DType.F32, device_id: int = 0) -> Tensor:
        """Create tensor holding a copy of a host (or device) array."""
        t = cls(np.shape(arr), dtype, device_id)
        t._data[...] = t.allocator.from_host(arr)
        return t

    @classmethod
    def zeros_like(cls, other: Tensor, dtype: DType | None = None) -> Tensor:
        return cls.zeros(other.shape, dtype or other.dtype, other.device_id)

    @classmethod
    def empty_like(cls, other: Tensor, dtype: DType | None = None) -> Tensor:
        return cls.empty(other.shape, dtype or other.dtype, other.device_id)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    def _check_alive(self) -> None:
        if self._storage is None:
            raise TensorDisposedError(f"{self!r} has been disposed, you cannot access it.")

    @property
    def data(self):
        """Return the underlying (numpy or cupy) array view."""
        self._check_alive()
        return self._data

    @property
    def shape(self) -> tuple[int, ...]:
        """Return tensor shape."""
        self._check_alive()
        return tuple(self._data.shape)

    sizes = shape

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def dtype(self) -> DType:
        """Return tensor dtype."""
        return self._dtype

    @property
    def numel(self) -> int:
        """Return number of elements."""
        self._check_alive()
        return int(self._data.size)

    @property
    def strides(self) -> tuple[int, ...]:
        """Strides in elements (not bytes)."""
        self._check_alive()
        itemsize = self._data.itemsize
        return tuple(s // itemsize for s in self._data.strides)

    @property
    def is_contiguous(self) -> bool:
        self._check_alive()
        return bool(self._data.flags.c_contiguous)

    @property
    def device_id(self) -> int:
        return self._device_id

    @property
    def allocator(self) -> Allocator:
        self._check_alive()
        return self._storage.allocator

    @property
    def storage(self) -> Storage:
        self._check_alive()
        return self._storage

    @property
    def xp(self):
        """Array module for this tensor's device."""
        return self.allocator.xp

    @property
    def is_disposed(self) -> bool:
        return self._storage is None

    def is_same_size(self, other: Tensor) -> bool:
        """Two tensors are the same size iff their shapes match elementwise."""
        return self.shape == other.shape

    def shares_storage(self, other: Tensor) -> bool:
        return self._storage is not None and self._storage is other._storage

    # ------------------------------------------------------------------
    # Views (share storage, +1 reference each)
    # ------------------------------------------------------------------

    def copy_ref(self) -> Tensor:
        """Return another handle to the same view (refcount +1, no copy)."""
        return Tensor._from_view(self, self.data)

    def view(self, *shape: int) -> Tensor:
        """Reinterpret a contiguous tensor with a new shape.

        One dimension may be -1 and is inferred from the others.
        """
        if len(shape) == 1 and isinstance(shape[0], (tuple, list)):
            shape = tuple(shape[0])
        if not self.is_contiguous:
            raise ShapeMismatchError(
                f"Cannot view non-contiguous tensor of shape {self.shape} as {shape}; call as_contiguous() first"
            )
        try:
            data = self.data.reshape(shape)
        except ValueError as err:
            raise ShapeMismatchError(f"Cannot view tensor of shape {self.shape} as {shape}") from err
        return Tensor._from_view(self, data)

    def narrow(self, dim: int, start: int, length: int) -> Tensor:
        """View of ``length`` entries starting at ``start`` along ``dim``."""
        dim = self._normalize_dim(dim)
        if start < 0 or length < 0 or start + length > self.shape[dim]:
            raise ShapeMismatchError(
                f"narrow({dim}, {start}, {length}) out of range for dimension of size {self.shape[dim]}"
            )
        index = [slice(None)] * self.ndim
        index[dim] = slice(start, start + length)
        return Tensor._from_view(self, self.data[tuple(index)])

    def select(self, dim: int, index: int) -> Tensor:
        """View with ``dim`` removed, taking entry ``index`` along it."""
        dim = self._normalize_dim(dim)
        if not 0 <= index < self.shape[dim]:
            raise IndexError(f"Index {index} out of range for dimension {dim} of size {self.shape[dim]}")
        key = [slice(None)] * self.ndim
        key[dim] = index
        return Tensor._from_view(self, self.data[tuple(key)])

    def transpose(self, dim1: int = 0, dim2: int = 1) -> Tensor:
        """Strided view with two dimensions swapped."""
        dim1 = self._normalize_dim(dim1)
        dim2 = self._normalize_dim(dim2)
        return Tensor._from_view(self, self.xp.swapaxes(self.data, dim1, dim2))

    def permute(self, *dims: int) -> Tensor:
        """Strided view with dimensions reordered."""
        if sorted(dims) != list(range(self.ndim)):
            raise ShapeMismatchError(f"permute dims {dims} are not a permutation of {self.ndim} axes")
        return Tensor._from_view(self, self.xp.transpose(self.data, dims))

    def expand(self, *shape: int) -> Tensor:
        """Broadcast view (zero strides on expanded axes, read-only)."""
        if len(shape) == 1 and isinstance(shape[0], (tuple, list)):
            shape = tuple(shape[0])
        try:
            data = self.xp.broadcast_to(self.data, shape)
        except ValueError as err:
            raise ShapeMismatchError(f"Cannot expand tensor of shape {self.shape} to {shape}") from err
        return Tensor._from_view(self, data)

    def _normalize_dim(self, dim: int) -> int:
        ndim = self.ndim
        if not -ndim <= dim < ndim:
            raise IndexError(f"Dimension {dim} is out of range for a {ndim}-D tensor")
        return dim % ndim

    # ------------------------------------------------------------------
    # Copies and host transfer
    # ------------------------------------------------------------------

    def clone(self) -> Tensor:
        """Create a deep copy on fresh storage."""
        t = Tensor(self.shape, self._dtype, self._device_id)
        t._data[...] = self.data
        return t

    def as_contiguous(self) -> Tensor:
        """Return a contiguous tensor: a copy_ref when already contiguous, else a clone."""
        if self.is_contiguous:
            return self.copy_ref()
        return self.clone()

    def copy_from(self, src: Tensor) -> None:
        """Copy src's values into this tensor in place (shapes must match)."""
        if src.shape != self.shape:
            raise ShapeMismatchError(f"Cannot copy tensor of shape {src.shape} into shape {self.shape}")
        self.data[...] = src.data

    def fill(self, value: float) -> None:
        self.data.fill(value)

    def to_numpy(self) -> np.ndarray:
        """Return a host copy of the data."""
        return np.array(self.allocator.to_host(self.data), copy=True)

    def to_device(self, device_id: int) -> Tensor:
        """Copy to another device."""
        return Tensor.from_numpy(self.to_numpy(), self._dtype, device_id)

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    def dispose(self) -> None:
        """Drop this view's reference; frees the storage on the last one."""
        self._check_alive()
        storage = self._storage
        self._storage = None
        self._data = None
        storage.release()

    def __repr__(self) -> str:
        if self._storage is None:
            return f"Tensor(disposed, dtype={self._dtype.name})"
        return f"Tensor(shape={tuple(self._data.shape)}, dtype={self._dtype.name}, device={self._device_id})"
