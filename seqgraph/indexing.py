# SPDX-License-Identifier: CC-BY-NC-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Index-based read/write kernels: gather, scatter and friends.

Gather / Scatter / ScatterAdd / ScatterFill share one shape contract:

  - ``result``, ``src`` and ``indices`` have the same number of dimensions
  - ``indices`` matches the indexed operand on every axis except ``dim``
    (``src`` for gather; ``result`` for the scatter family)
  - ``dim`` is a valid axis

Violations raise ShapeMismatchError (a ValueError) naming the broken rule;
an invalid ``dim`` raises IndexError.

Semantics along ``dim`` (shown for dim=0, 2-D):
  gather:       result[i][j]             = src[indices[i][j]][j]
  scatter:      result[indices[i][j]][j] = src[i][j]
  scatter_add:  result[indices[i][j]][j] += src[i][j]   (duplicates accumulate)
  scatter_fill: result[indices[i][j]][j] = value

Index tensors may hold integer or float values (graph-level index tensors are
float, as produced by argmax/top_k).
"""

from __future__ import annotations

from typing import Sequence

from .errors import ShapeMismatchError
from .tensor import Tensor


def _check_dim(dim: int, ndim: int) -> int:
    if not -ndim <= dim < ndim:
        raise IndexError(f"Dimension {dim} is out of range for {ndim}-D tensors")
    return dim % ndim


def _check_same_ndim(op: str, **tensors: Tensor) -> int:
    ndims = {name: t.ndim for name, t in tensors.items()}
    if len(set(ndims.values())) != 1:
        detail = ", ".join(f"{name} has {n}" for name, n in ndims.items())
        raise ShapeMismatchError(f"{op}: all tensors must have the same number of dimensions ({detail})")
    return next(iter(ndims.values()))


def _check_match_except(op: str, dim: int, indices: Tensor, operand: Tensor, operand_name: str) -> None:
    for d in range(indices.ndim):
        if d != dim and indices.shape[d] != operand.shape[d]:
            raise ShapeMismatchError(
                f"{op}: indices and {operand_name} must match on every axis except dim={dim} "
                f"(axis {d}: {indices.shape[d]} vs {operand.shape[d]})"
            )


def _checked(idx, limit: int):
    if idx.size and (int(idx.min()) < 0 or int(idx.max()) >= limit):
        raise IndexError(f"Index out of range: indices must be in [0, {limit})")
    return idx


def _index_array(indices: Tensor, limit: int):
    """Indices as an int64 device array, range-checked against ``limit``."""
    return _checked(indices.data.astype(indices.xp.int64), limit)


def _along_axis(idx, dim: int, xp) -> tuple:
    """Advanced-indexing key addressing ``idx`` along ``dim`` and identity elsewhere."""
    grid = list(xp.indices(idx.shape))
    grid[dim] = idx
    return tuple(grid)


def gather(src: Tensor, indices: Tensor, dim: int, result: Tensor | None = None) -> Tensor:
    """Read ``src`` at ``indices`` along ``dim``; result has the shape of ``indices``."""
    operands = {"src": src, "indices": indices}
    if result is not None:
        operands["result"] = result
    ndim = _check_same_ndim("gather", **operands)
    dim = _check_dim(dim, ndim)
    _check_match_except("gather", dim, indices, src, "src")
    if result is None:
        result = Tensor.empty(indices.shape, src.dtype, src.device_id)
    elif result.shape != indices.shape:
        raise ShapeMismatchError(f"gather: result shape {result.shape} must equal indices shape {indices.shape}")
    xp = src.xp
    idx = _index_array(indices, src.shape[dim])
    result.data[...] = src.data[_along_axis(idx, dim, xp)]
    return result


def _prepare_scatter(op: str, result: Tensor, src: Tensor | None, indices: Tensor, dim: int):
    operands = {"result": result, "indices": indices}
    if src is not None:
        operands["src"] = src
    ndim = _check_same_ndim(op, **operands)
    dim = _check_dim(dim, ndim)
    _check_match_except(op, dim, indices, result, "result")
    if src is not None and src.shape != indices.shape:
        raise ShapeMismatchError(f"{op}: src shape {src.shape} must equal indices shape {indices.shape}")
    idx = _index_array(indices, result.shape[dim])
    return _along_axis(idx, dim, result.xp)


def scatter(result: Tensor, src: Tensor, indices: Tensor, dim: int) -> Tensor:
    """Write ``src`` into ``result`` at ``indices`` along ``dim`` (last write wins)."""
    key = _prepare_scatter("scatter", result, src, indices, dim)
    result.data[key] = src.data
    return result


def scatter_add(result: Tensor, src: Tensor, indices: Tensor, dim: int) -> Tensor:
    """Accumulate ``src`` into ``result`` at ``indices``; repeated indices add up."""
    key = _prepare_scatter("scatter_add", result, src, indices, dim)
    result.xp.add.at(result.data, key, src.data)
    return result


def scatter_fill(result: Tensor, value: float, indices: Tensor, dim: int) -> Tensor:
    """Write the constant ``value`` into ``result`` at ``indices`` along ``dim``."""
    key = _prepare_scatter("scatter_fill", result, None, indices, dim)
    result.data[key] = value
    return result


# ---------------------------------------------------------------------------
# Row selection
# ---------------------------------------------------------------------------

def _row_indices(indices: Tensor | Sequence[int], rows: int, like: Tensor):
    if isinstance(indices, Tensor):
        return _index_array(indices, rows).reshape(-1)
    xp = like.xp
    return _checked(xp.asarray(list(indices), dtype=xp.int64).reshape(-1), rows)


def index_select(src: Tensor, indices: Tensor | Sequence[int], result: Tensor | None = None) -> Tensor:
    """Select rows of a 2-D ``src``: result[i] = src[indices[i]]."""
    idx = _row_indices(indices, src.shape[0], src)
    shape = (int(idx.shape[0]),) + src.shape[1:]
    if result is None:
        result = Tensor.empty(shape, src.dtype, src.device_id)
    elif result.shape != shape:
        raise ShapeMismatchError(f"index_select: result shape {result.shape} must be {shape}")
    result.data[...] = src.data[idx]
    return result


def index_add(result: Tensor, indices: Tensor | Sequence[int], src: Tensor) -> Tensor:
    """Accumulate rows: result[indices[i]] += src[i] (duplicates accumulate)."""
    idx = _row_indices(indices, result.shape[0], result)
    if src.shape[0] != idx.shape[0] or src.shape[1:] != result.shape[1:]:
        raise ShapeMismatchError(
            f"index_add: src shape {src.shape} incompatible with {idx.shape[0]} indices into {result.shape}"
        )
    result.xp.add.at(result.data, idx, src.data)
    return result


def last_occurrences(idx, xp):
    """Positions of the last occurrence of each distinct value in ``idx``."""
    _, rev_first = xp.unique(idx[::-1], return_index=True)
    return idx.shape[0] - 1 - rev_first


def index_copy(result: Tensor, indices: Tensor | Sequence[int], src: Tensor) -> Tensor:
    """Overwrite rows: result[indices[i]] = src[i]; for repeated indices the last row wins."""
    idx = _row_indices(indices, result.shape[0], result)
    if src.shape[0] != idx.shape[0] or src.shape[1:] != result.shape[1:]:
        raise ShapeMismatchError(
            f"index_copy: src shape {src.shape} incompatible with {idx.shape[0]} indices into {result.shape}"
        )
    keep = last_occurrences(idx, result.xp)
    result.data[idx[keep]] = src.data[keep]
    return result
