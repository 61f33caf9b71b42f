# SPDX-License-Identifier: CC-BY-NC-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Exception types raised by the tensor engine.

Every error carries enough context (tensor name, violated invariant) to be
reported by the caller without further inspection. Nothing in the engine
catches these: they propagate to the training or inference driver.
"""

from __future__ import annotations


class SeqGraphError(Exception):
    """Base class for all engine errors."""


class ShapeMismatchError(SeqGraphError, ValueError):
    """Operand shapes violate an operator's shape contract."""


class BufferAlreadyAssignedError(SeqGraphError, RuntimeError):
    """A weight or gradient buffer was assigned twice without a release."""


class WeightReleasedError(SeqGraphError, RuntimeError):
    """A released weight buffer was accessed."""


class TensorDisposedError(SeqGraphError, RuntimeError):
    """A disposed tensor (or its freed storage) was accessed."""


class DeviceError(SeqGraphError, RuntimeError):
    """Device allocator error (unknown device, missing GPU runtime)."""


class UnsupportedOperationError(SeqGraphError, NotImplementedError):
    """The requested operation is not supported by this unit."""
