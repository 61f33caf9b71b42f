# SPDX-License-Identifier: CC-BY-NC-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Backend-agnostic tensor kernels.

Every kernel takes Tensors, works through ``tensor.xp`` (NumPy or CuPy) and
follows one convention: pass ``result`` to write into an existing tensor
(which may alias an input for in-place updates), or leave it as None to get
a freshly allocated tensor on the first operand's device.

The gradient kernels (``*_grad``) compute the input gradient from the
forward output and the upstream gradient, so forward activations never need
to be recomputed.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from .errors import ShapeMismatchError
from .tensor import DType, Tensor


def _out(result: Tensor | None, like: Tensor, shape: Sequence[int] | None = None,
         dtype: DType | None = None) -> Tensor:
    """Return ``result`` after a shape check, or allocate a new output tensor."""
    shape = tuple(like.shape if shape is None else shape)
    if result is None:
        return Tensor.empty(shape, dtype or like.dtype, like.device_id)
    if result.shape != shape:
        raise ShapeMismatchError(f"Result tensor has shape {result.shape}, expected {shape}")
    return result


def _operand(x):
    return x.data if isinstance(x, Tensor) else x


def broadcast_shape(a: Tensor, b: Tensor) -> tuple[int, ...]:
    try:
        return tuple(np.broadcast_shapes(a.shape, b.shape))
    except ValueError as err:
        raise ShapeMismatchError(f"Shapes {a.shape} and {b.shape} cannot be broadcast together") from err


def _binary(ufunc_name: str, a: Tensor, b, result: Tensor | None) -> Tensor:
    shape = broadcast_shape(a, b) if isinstance(b, Tensor) else a.shape
    out = _out(result, a, shape)
    getattr(a.xp, ufunc_name)(a.data, _operand(b), out=out.data)
    return out


# ---------------------------------------------------------------------------
# Elementwise
# ---------------------------------------------------------------------------

def add(a: Tensor, b: Tensor | float, result: Tensor | None = None) -> Tensor:
    """result = a + b (broadcasting)."""
    return _binary("add", a, b, result)


def sub(a: Tensor, b: Tensor | float, result: Tensor | None = None) -> Tensor:
    """result = a - b (broadcasting)."""
    return _binary("subtract", a, b, result)


def mul(a: Tensor, b: Tensor | float, result: Tensor | None = None) -> Tensor:
    """Elementwise product (broadcasting)."""
    return _binary("multiply", a, b, result)


def div(a: Tensor, b: Tensor | float, result: Tensor | None = None) -> Tensor:
    """result = a / b (broadcasting)."""
    return _binary("divide", a, b, result)


def rsub(value: float, a: Tensor, result: Tensor | None = None) -> Tensor:
    """result = value - a."""
    out = _out(result, a)
    a.xp.subtract(value, a.data, out=out.data)
    return out


def mul_mul_add(a: Tensor, b: Tensor, c: Tensor, d: Tensor, result: Tensor | None = None) -> Tensor:
    """result = a*b + c*d without an intermediate output buffer."""
    out = _out(result, a)
    xp = a.xp
    tmp = c.data * d.data
    xp.multiply(a.data, b.data, out=out.data)
    xp.add(out.data, tmp, out=out.data)
    return out


def add_tanh(a: Tensor, b: Tensor, c: Tensor | None = None, result: Tensor | None = None) -> Tensor:
    """result = tanh(a + b [+ c])."""
    out = add(a, b, result)
    if c is not None:
        add(out, c, out)
    out.xp.tanh(out.data, out=out.data)
    return out


def exp(a: Tensor, result: Tensor | None = None) -> Tensor:
    out = _out(result, a)
    a.xp.exp(a.data, out=out.data)
    return out


def log(a: Tensor, result: Tensor | None = None) -> Tensor:
    out = _out(result, a)
    a.xp.log(a.data, out=out.data)
    return out


def rsqrt(a: Tensor, result: Tensor | None = None) -> Tensor:
    """result = 1 / sqrt(a)."""
    out = _out(result, a)
    xp = a.xp
    xp.sqrt(a.data, out=out.data)
    xp.reciprocal(out.data, out=out.data)
    return out


def tanh(a: Tensor, result: Tensor | None = None) -> Tensor:
    out = _out(result, a)
    a.xp.tanh(a.data, out=out.data)
    return out


def sigmoid(a: Tensor, result: Tensor | None = None) -> Tensor:
    """Sigmoid: y = 1 / (1 + exp(-x))."""
    out = _out(result, a)
    xp = a.xp
    xp.negative(a.data, out=out.data)
    xp.exp(out.data, out=out.data)
    xp.add(out.data, 1.0, out=out.data)
    xp.reciprocal(out.data, out=out.data)
    return out


def relu(a: Tensor, result: Tensor | None = None) -> Tensor:
    out = _out(result, a)
    a.xp.maximum(a.data, 0, out=out.data)
    return out


def swish(a: Tensor, result: Tensor | None = None) -> Tensor:
    """SiLU (Swish) activation.

    SiLU: y = x * sigmoid(x) = x / (1 + exp(-x))
    """
    xp = a.xp
    sig = 1.0 / (1.0 + xp.exp(-a.data))
    out = _out(result, a)
    xp.multiply(a.data, sig, out=out.data)
    return out


def clamp(a: Tensor, min_value: float, max_value: float, result: Tensor | None = None) -> Tensor:
    out = _out(result, a)
    a.xp.clip(a.data, min_value, max_value, out=out.data)
    return out


# ---------------------------------------------------------------------------
# Activation gradients
# ---------------------------------------------------------------------------

def sigmoid_grad(out_value: Tensor, grad: Tensor, result: Tensor | None = None) -> Tensor:
    """dx = grad * y * (1 - y)."""
    out = _out(result, grad)
    out.data[...] = grad.data * out_value.data * (1.0 - out_value.data)
    return out


def tanh_grad(out_value: Tensor, grad: Tensor, result: Tensor | None = None) -> Tensor:
    """dx = grad * (1 - y^2)."""
    out = _out(result, grad)
    out.data[...] = grad.data * (1.0 - out_value.data * out_value.data)
    return out


def relu_grad(value: Tensor, grad: Tensor, result: Tensor | None = None) -> Tensor:
    """dx = grad where value > 0 else 0.

    ``value`` may be the input or the output of relu; both have the same sign pattern.
    """
    out = _out(result, grad)
    out.data[...] = grad.data * (value.data > 0)
    return out


def swish_grad(x: Tensor, grad: Tensor, result: Tensor | None = None) -> Tensor:
    """SiLU derivative: d/dx[x * sigmoid(x)] = sigmoid(x) * (1 + x * (1 - sigmoid(x)))."""
    xp = x.xp
    sig = 1.0 / (1.0 + xp.exp(-x.data))
    out = _out(result, grad)
    out.data[...] = grad.data * sig * (1.0 + x.data * (1.0 - sig))
    return out


# ---------------------------------------------------------------------------
# Softmax
# ---------------------------------------------------------------------------

def softmax(a: Tensor, result: Tensor | None = None) -> Tensor:
    """Softmax along the last dimension.

    Softmax: p_i = exp(x_i - max(x)) / sum_j(exp(x_j - max(x)))

    Subtracting max(x) before exp() prevents overflow.
    """
    xp = a.xp
    shifted = a.data - xp.max(a.data, axis=-1, keepdims=True)
    exp_vals = xp.exp(shifted)
    out = _out(result, a)
    xp.divide(exp_vals, xp.sum(exp_vals, axis=-1, keepdims=True), out=out.data)
    return out


def softmax_grad(out_value: Tensor, grad: Tensor, result: Tensor | None = None) -> Tensor:
    """Softmax backward: dx = y * (g - sum(g * y))."""
    xp = grad.xp
    dot = xp.sum(grad.data * out_value.data, axis=-1, keepdims=True)
    out = _out(result, grad)
    out.data[...] = out_value.data * (grad.data - dot)
    return out


# ---------------------------------------------------------------------------
# Matrix products
# ---------------------------------------------------------------------------

def matmul(a: Tensor, b: Tensor, alpha: float = 1.0, result: Tensor | None = None) -> Tensor:
    """result = alpha * (a @ b) for 2-D or batched 3-D operands."""
    if a.ndim < 2 or b.ndim < 2 or a.shape[-1] != b.shape[-2]:
        raise ShapeMismatchError(f"Cannot multiply matrices of shapes {a.shape} and {b.shape}")
    if a.ndim == 3 and b.ndim == 3 and a.shape[0] != b.shape[0]:
        raise ShapeMismatchError(f"Batch sizes differ: {a.shape[0]} vs {b.shape[0]}")
    shape = a.shape[:-1] + (b.shape[-1],)
    out = _out(result, a, shape)
    xp = a.xp
    xp.matmul(a.data, b.data, out=out.data)
    if alpha != 1.0:
        xp.multiply(out.data, alpha, out=out.data)
    return out


def addmm(c: Tensor, a: Tensor, b: Tensor, alpha: float = 1.0, beta: float = 1.0,
          result: Tensor | None = None) -> Tensor:
    """result = beta * c + alpha * (a @ b); ``c`` broadcasts over rows."""
    out = matmul(a, b, alpha, result)
    bias = c.data * beta if beta != 1.0 else c.data
    out.xp.add(out.data, bias, out=out.data)
    return out


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def layer_norm(x: Tensor, alpha: Tensor, beta: Tensor, eps: float = 1e-9,
               result: Tensor | None = None) -> Tensor:
    """Per-row layer normalization over the last dimension.

    LayerNorm: y = (x - mean) / sqrt(var + eps) * alpha + beta
    """
    xp = x.xp
    mean = xp.mean(x.data, axis=-1, keepdims=True)
    centered = x.data - mean
    var = xp.mean(centered * centered, axis=-1, keepdims=True)
    out = _out(result, x)
    out.data[...] = centered / xp.sqrt(var + eps) * alpha.data + beta.data
    return out


def layer_norm_grad(x: Tensor, alpha: Tensor, grad: Tensor, eps: float = 1e-9):
    """LayerNorm backward.

    With x_hat = (x - mean) * rstd and dxh = grad * alpha:
      dx     = rstd * (dxh - mean(dxh) - x_hat * mean(dxh * x_hat))
      dalpha = sum_rows(grad * x_hat)
      dbeta  = sum_rows(grad)

    Returns (dx, dalpha, dbeta) as raw arrays shaped like x, alpha and beta.
    """
    xp = x.xp
    data = x.data
    mean = xp.mean(data, axis=-1, keepdims=True)
    centered = data - mean
    rstd = 1.0 / xp.sqrt(xp.mean(centered * centered, axis=-1, keepdims=True) + eps)
    x_hat = centered * rstd
    g = grad.data
    dxh = g * alpha.data
    dx = rstd * (dxh - xp.mean(dxh, axis=-1, keepdims=True)
                 - x_hat * xp.mean(dxh * x_hat, axis=-1, keepdims=True))
    reduce_axes = tuple(range(g.ndim - 1))
    dalpha = xp.sum(g * x_hat, axis=reduce_axes).reshape(alpha.shape)
    dbeta = xp.sum(g, axis=reduce_axes).reshape(alpha.shape)
    return dx, dalpha, dbeta


# ---------------------------------------------------------------------------
# Reductions
# ---------------------------------------------------------------------------

def _reduce(name: str, a: Tensor, dim: int, result: Tensor | None) -> Tensor:
    dim = a._normalize_dim(dim)
    shape = list(a.shape)
    shape[dim] = 1
    out = _out(result, a, shape)
    out.data[...] = getattr(a.xp, name)(a.data, axis=dim, keepdims=True)
    return out


def sum(a: Tensor, dim: int, result: Tensor | None = None) -> Tensor:  # noqa: A001
    """Sum along ``dim`` keeping the reduced axis with size 1."""
    return _reduce("sum", a, dim, result)


def mean(a: Tensor, dim: int, result: Tensor | None = None) -> Tensor:
    return _reduce("mean", a, dim, result)


def max(a: Tensor, dim: int, result: Tensor | None = None) -> Tensor:  # noqa: A001
    return _reduce("max", a, dim, result)


def argmax(a: Tensor, dim: int, result: Tensor | None = None) -> Tensor:
    """Index of the first maximum along ``dim``, returned as float values."""
    dim = a._normalize_dim(dim)
    shape = list(a.shape)
    shape[dim] = 1
    out = _out(result, a, shape)
    out.data[...] = a.xp.expand_dims(a.xp.argmax(a.data, axis=dim), dim)
    return out


def sum_to_shape(grad, shape: Sequence[int]):
    """Reduce a broadcast gradient array back to ``shape``.

    Sums over leading axes that broadcasting added and over axes where the
    original operand had size 1.
    """
    shape = tuple(shape)
    extra = grad.ndim - len(shape)
    if extra > 0:
        grad = grad.sum(axis=tuple(range(extra)))
    axes = tuple(i for i, s in enumerate(shape) if s == 1 and grad.shape[i] != 1)
    if axes:
        grad = grad.sum(axis=axes, keepdims=True)
    return grad


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def top_k(a: Tensor, k: int) -> tuple[Tensor, Tensor]:
    """Per-row top-k values and their column indices along the last dimension.

    Ordering is by descending value; ties keep the lower column index first
    (stable sort on the negated values).

    Returns:
        (values, indices) both shaped [..., k]; indices are float-valued.
    """
    if not 0 < k <= a.shape[-1]:
        raise ShapeMismatchError(f"top_k: k={k} must be in [1, {a.shape[-1]}]")
    xp = a.xp
    order = xp.argsort(-a.data, axis=-1, kind="stable")[..., :k]
    shape = a.shape[:-1] + (k,)
    values = Tensor.empty(shape, a.dtype, a.device_id)
    values.data[...] = xp.take_along_axis(a.data, order, axis=-1)
    indices = Tensor.empty(shape, DType.F32, a.device_id)
    indices.data[...] = order
    return values, indices


def concat(tensors: Sequence[Tensor], dim: int, result: Tensor | None = None) -> Tensor:
    """Concatenate along ``dim``; all other dimensions must agree."""
    if not tensors:
        raise ShapeMismatchError("concat needs at least one tensor")
    first = tensors[0]
    dim = first._normalize_dim(dim)
    for t in tensors[1:]:
        if t.ndim != first.ndim or any(
            t.shape[d] != first.shape[d] for d in range(first.ndim) if d != dim
        ):
            raise ShapeMismatchError(
                f"concat: shape {t.shape} does not match {first.shape} outside dimension {dim}"
            )
    shape = list(first.shape)
    shape[dim] = int(np.sum([t.shape[dim] for t in tensors]))
    out = _out(result, first, shape)
    first.xp.concatenate([t.data for t in tensors], axis=dim, out=out.data)
    return out


def dropout_mask(like: Tensor, drop_prob: float) -> Tensor:
    """Inverted-dropout mask: 0 with probability drop_prob, else 1/(1-drop_prob).

    Uses NumPy's global RNG on the host so seeding is reproducible on every backend.
    """
    keep = 1.0 - drop_prob
    host = (np.random.random_sample(like.shape) < keep).astype(np.float32) / keep
    return Tensor.from_numpy(host, like.dtype, like.device_id)
