# SPDX-License-Identifier: CC-BY-NC-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Device allocators and reference-counted storage.

Each logical device id maps to one allocator. CPU allocators hand out NumPy
buffers; GPU allocators hand out CuPy buffers pinned to a CUDA device. The
rest of the engine never touches the array module directly: it asks the
tensor (and through it the allocator) for ``xp``, so the same kernel code
runs on both backends.

Storage lifetime:
  Storage starts with refcount 1. Every Tensor view created with copy_ref()
  adds one reference; every Tensor.dispose() drops one. The buffer is
  returned to the allocator when the count reaches zero.
"""

from __future__ import annotations

import importlib
import logging
import threading
from abc import ABC, abstractmethod
from typing import Sequence

import numpy as np

from .config import ProcessorType
from .errors import DeviceError, TensorDisposedError

logger = logging.getLogger(__name__)


class Storage:
    """Flat device buffer shared by one or more tensor views."""

    def __init__(self, allocator: Allocator, buffer):
        self.allocator = allocator
        self._buffer = buffer
        self._ref_count = 1
        self._lock = threading.Lock()

    @property
    def buffer(self):
        """Return the flat buffer. Raises once the storage has been freed."""
        if self._buffer is None:
            raise TensorDisposedError("Storage has been freed, you cannot access it.")
        return self._buffer

    @property
    def ref_count(self) -> int:
        return self._ref_count

    @property
    def nbytes(self) -> int:
        return 0 if self._buffer is None else int(self._buffer.nbytes)

    @property
    def is_freed(self) -> bool:
        return self._buffer is None

    def add_ref(self) -> None:
        with self._lock:
            if self._buffer is None:
                raise TensorDisposedError("Cannot add a reference to freed storage.")
            self._ref_count += 1

    def release(self) -> None:
        """Drop one reference, freeing the buffer on the last one."""
        with self._lock:
            self._ref_count -= 1
            free_now = self._ref_count == 0
        if free_now:
            self.allocator.free(self)
            self._buffer = None

    def is_owner_exclusive(self) -> bool:
        return self._ref_count == 1


class Allocator(ABC):
    """Base class for device allocators.

    Tracks live bytes and buffers so leaks show up in tests and diagnostics.
    """

    def __init__(self, device_id: int):
        self.device_id = device_id
        self.allocated_bytes = 0
        self.live_buffers = 0
        self._lock = threading.Lock()

    @property
    @abstractmethod
    def xp(self):
        """Array module (numpy or cupy) backing this allocator."""
        ...

    @abstractmethod
    def _new_buffer(self, dtype: np.dtype, count: int):
        ...

    def allocate(self, dtype: np.dtype, count: int) -> Storage:
        """Allocate an uninitialized flat buffer of ``count`` elements."""
        buffer = self._new_buffer(np.dtype(dtype), int(count))
        with self._lock:
            self.allocated_bytes += int(buffer.nbytes)
            self.live_buffers += 1
        return Storage(self, buffer)

    def free(self, storage: Storage) -> None:
        with self._lock:
            self.allocated_bytes -= storage.nbytes
            self.live_buffers -= 1

    def from_host(self, arr: np.ndarray):
        """Move a host array onto this device (no copy on CPU when possible)."""
        return self.xp.asarray(arr)

    @abstractmethod
    def to_host(self, arr) -> np.ndarray:
        """Move a device array to host memory."""
        ...


class CpuAllocator(Allocator):
    """Host-memory allocator backed by NumPy."""

    @property
    def xp(self):
        return np

    def _new_buffer(self, dtype: np.dtype, count: int):
        return np.empty(count, dtype=dtype)

    def to_host(self, arr) -> np.ndarray:
        return np.asarray(arr)

    def __repr__(self) -> str:
        return f"CpuAllocator(device_id={self.device_id})"


class CudaAllocator(Allocator):
    """GPU allocator backed by CuPy's memory pool on one CUDA device."""

    def __init__(self, device_id: int):
        super().__init__(device_id)
        try:
            self._cp = importlib.import_module("cupy")
        except ImportError as err:
            raise DeviceError(
                f"GPU device '{device_id}' requested but CuPy is not installed "
                "(install the 'gpu' extra)."
            ) from err
        self._device = self._cp.cuda.Device(device_id)

    @property
    def xp(self):
        return self._cp

    def _new_buffer(self, dtype: np.dtype, count: int):
        with self._device:
            return self._cp.empty(count, dtype=dtype)

    def from_host(self, arr: np.ndarray):
        with self._device:
            return self._cp.asarray(arr)

    def to_host(self, arr) -> np.ndarray:
        return self._cp.asnumpy(arr)

    def __repr__(self) -> str:
        return f"CudaAllocator(device_id={self.device_id})"


class _DeviceRegistry:
    """Maps logical device ids to allocators."""

    def __init__(self):
        self.processor = ProcessorType.CPU
        self.device_ids: tuple[int, ...] = ()
        self._allocators: dict[int, Allocator] = {}
        self._lock = threading.Lock()

    def init_devices(self, processor: ProcessorType, device_ids: Sequence[int]) -> None:
        ids = tuple(int(d) for d in device_ids)
        factory = CudaAllocator if processor == ProcessorType.GPU else CpuAllocator
        allocators = {d: factory(d) for d in ids}
        with self._lock:
            self.processor = processor
            self.device_ids = ids
            self._allocators = allocators
        logger.info("Initialized %s devices %s", processor.value, list(ids))

    def allocator(self, device_id: int) -> Allocator:
        with self._lock:
            alloc = self._allocators.get(device_id)
            if alloc is not None:
                return alloc
            if self.processor == ProcessorType.GPU:
                raise DeviceError(
                    f"Device '{device_id}' was not initialized. Initialized GPU devices: {list(self.device_ids)}"
                )
            # CPU devices are created on demand
            alloc = CpuAllocator(device_id)
            self._allocators[device_id] = alloc
            return alloc

    def reset(self) -> None:
        with self._lock:
            self.processor = ProcessorType.CPU
            self.device_ids = ()
            self._allocators = {}


_registry = _DeviceRegistry()


def init_devices(processor: ProcessorType = ProcessorType.CPU, device_ids: Sequence[int] = (0,)) -> None:
    """Select the backend and create one allocator per device id."""
    _registry.init_devices(processor, device_ids)


def get_allocator(device_id: int = 0) -> Allocator:
    """Return the allocator for a logical device id."""
    return _registry.allocator(device_id)


def reset_devices() -> None:
    """Drop all allocators and fall back to on-demand CPU devices."""
    _registry.reset()


def gpu_available() -> bool:
    """Check whether CuPy can see at least one CUDA device."""
    try:
        cp = importlib.import_module("cupy")
    except ImportError:
        return False
    try:
        return cp.cuda.runtime.getDeviceCount() > 0
    except cp.cuda.runtime.CUDARuntimeError:
        return False
