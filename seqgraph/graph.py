# SPDX-License-Identifier: CC-BY-NC-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""ComputeGraph: eager operators with a recorded backward tape.

Every operator computes its result immediately.  When the graph needs
backprop, the operator also appends a closure to the backward tape;
``backward()`` runs the closures in reverse creation order.  Each closure
reads its result's gradient, accumulates into its inputs through
WeightTensor.copy_or_add_gradient (never overwriting a sibling's
contribution) and then disposes the result.

Lifetime:
  - A root graph and all subgraphs created from it share one tape and one
    registry of training-mode results.  Each graph keeps its own list of
    bound tensors.
  - In inference (needs_backprop=False) every result is bound to the graph
    that created it, so leaving a subgraph scope frees its temporaries:

        with g.create_sub_graph("step") as sub:
            hidden = sub.tanh(sub.affine(x, w, b))
            out = g.add(hidden, residual)   # bound to g, survives the scope

  - A tensor bound to several graphs is released only when the last of
    them is disposed.
  - Disposing the root disposes live subgraphs and every result it created.

Shape conventions: 2-D operands are [rows, cols]; "columns" always means
the last dimension.  Index tensors are float-valued, like the outputs of
argmax/top_k.
"""

from __future__ import annotations

import logging
import weakref
from typing import Callable, Sequence

import numpy as np

from . import indexing, masks, ops, sampling
from .errors import SeqGraphError, ShapeMismatchError
from .tensor import Tensor
from .weight_tensor import WeightTensor

logger = logging.getLogger(__name__)


class ComputeGraph:
    """Root graph or named subgraph."""

    def __init__(self, device_id: int = 0, needs_backprop: bool = True, name: str = "root",
                 seed: int = 42, parent: ComputeGraph | None = None):
        self.device_id = device_id
        self.needs_backprop = needs_backprop
        self.name = name
        self.parent = parent
        if parent is None:
            self._tape: list[Callable[[], None]] = []
            self._factory: list[WeightTensor] = []
            self._rng_state = [seed]
        else:
            self._tape = parent._tape
            self._factory = parent._factory
            self._rng_state = parent._rng_state
        self._bound: list[WeightTensor] = []
        self._sub_graphs: list[ComputeGraph] = []
        self._disposed = False

    @property
    def is_root(self) -> bool:
        return self.parent is None

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    def create_sub_graph(self, name: str) -> ComputeGraph:
        """Child graph sharing this graph's tape, scoped to one module call."""
        sub = ComputeGraph(self.device_id, self.needs_backprop, f"{self.name}.{name}", parent=self)
        self._sub_graphs.append(sub)
        return sub

    def bind(self, w: WeightTensor) -> None:
        """Track ``w`` so that disposing this graph releases it."""
        self._bound.append(w)
        w._bind_count += 1
        if w._graph_ref is None or w._graph_ref() is None:
            w._graph_ref = weakref.ref(self)

    def unbind(self, w: WeightTensor) -> None:
        """Stop tracking ``w``; its buffers are left alone."""
        for i, bound in enumerate(self._bound):
            if bound is w:
                del self._bound[i]
                w._bind_count -= 1
                if w._graph_ref is not None and w._graph_ref() is self:
                    w._graph_ref = None
                return

    def dispose(self) -> None:
        """Release tensors bound only to this graph (and, for the root, everything it created)."""
        if self._disposed:
            return
        self._disposed = True
        for sub in list(self._sub_graphs):
            sub.dispose()
        for w in self._bound:
            w._bind_count -= 1
            if w._graph_ref is not None and w._graph_ref() is self:
                w._graph_ref = None
            if w._bind_count <= 0:
                w.release_weight()
                w.release_gradient()
        self._bound.clear()
        if self.parent is not None:
            siblings = self.parent._sub_graphs
            for i, sub in enumerate(siblings):
                if sub is self:
                    del siblings[i]
                    break
        else:
            for w in self._factory:
                w.dispose()
            self._factory.clear()
            self._tape.clear()

    def __enter__(self) -> ComputeGraph:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    def backward(self) -> None:
        """Run recorded backward closures in reverse creation order, then clear the tape."""
        logger.debug("Backward over %d recorded ops in graph '%s'", len(self._tape), self.name)
        tape = list(self._tape)
        self._tape.clear()
        for fn in reversed(tape):
            fn()

    # ------------------------------------------------------------------
    # Result bookkeeping
    # ------------------------------------------------------------------

    def _check_alive(self) -> None:
        if self._disposed:
            raise SeqGraphError(f"Compute graph '{self.name}' has been disposed.")

    def _result(self, op: str, weight: Tensor, inputs: Sequence[WeightTensor] = (),
                differentiable: bool = True) -> WeightTensor:
        """Wrap ``weight`` as a new result tensor and register it for release."""
        self._check_alive()
        need_grad = differentiable and self.needs_backprop and any(w.need_gradient for w in inputs)
        res = WeightTensor(weight.shape, self.device_id, f"{self.name}.{op}", need_gradient=need_grad,
                           dtype=weight.dtype)
        res.set_weight(weight, set_by=op)
        if self.needs_backprop:
            self._factory.append(res)
        else:
            self.bind(res)
        return res

    def _host_result(self, op: str, values: np.ndarray) -> WeightTensor:
        return self._result(op, Tensor.from_numpy(values, device_id=self.device_id), differentiable=False)

    def _on_backward(self, res: WeightTensor, fn: Callable[[Tensor], None],
                     cleanup: Sequence[Tensor] = ()) -> None:
        """Record ``fn(res.gradient)``; skipped when no gradient reached ``res``.

        ``res`` and the ``cleanup`` tensors are disposed once the closure has run.
        """
        if not res.need_gradient:
            for t in cleanup:
                t.dispose()
            return

        def run() -> None:
            if not res.is_gradient_null():
                fn(res.gradient)
            res.dispose()
            for t in cleanup:
                t.dispose()

        self._tape.append(run)

    @staticmethod
    def _backprop(w: WeightTensor, delta, op: str) -> None:
        """Accumulate the array ``delta`` (reduced over broadcast axes) into w's gradient."""
        if not w.need_gradient:
            return
        delta = ops.sum_to_shape(delta, w.sizes)
        t = Tensor.from_numpy(delta, w.dtype, w.device_id)
        try:
            w.copy_or_add_gradient(t, op)
        finally:
            t.dispose()

    @staticmethod
    def _backprop_slice(w: WeightTensor, key: tuple, delta) -> None:
        """Add ``delta`` into the region ``key`` of w's gradient (for view results)."""
        if not w.need_gradient:
            return
        grad = w.gradient.data
        grad[key] += delta

    # ------------------------------------------------------------------
    # Elementwise
    # ------------------------------------------------------------------

    def add(self, w1: WeightTensor, w2: WeightTensor, in_place: bool = False) -> WeightTensor:
        """w1 + w2, broadcasting w2 over leading/row dimensions.

        ``in_place`` writes into w1's buffer; the result then aliases w1.
        """
        if in_place:
            out = w1.weight.copy_ref()
            ops.add(w1.weight, w2.weight, out)
        else:
            out = ops.add(w1.weight, w2.weight)
        res = self._result("add", out, (w1, w2))

        def backward(g: Tensor) -> None:
            self._backprop(w1, g.data, "add")
            self._backprop(w2, g.data, "add")

        self._on_backward(res, backward)
        return res

    def add_scalar(self, w: WeightTensor, v: float) -> WeightTensor:
        res = self._result("add_scalar", ops.add(w.weight, v), (w,))
        self._on_backward(res, lambda g: self._backprop(w, g.data, "add_scalar"))
        return res

    def sub(self, v: float, w: WeightTensor) -> WeightTensor:
        """v - w."""
        res = self._result("sub", ops.rsub(v, w.weight), (w,))
        self._on_backward(res, lambda g: self._backprop(w, -g.data, "sub"))
        return res

    def elt_mul(self, w1: WeightTensor, w2: WeightTensor) -> WeightTensor:
        """Elementwise product with broadcasting."""
        res = self._result("elt_mul", ops.mul(w1.weight, w2.weight), (w1, w2))

        def backward(g: Tensor) -> None:
            if w1.need_gradient:
                w1.add_mul_gradient(w2.weight, g)
            if w2.need_gradient:
                w2.add_mul_gradient(w1.weight, g)

        self._on_backward(res, backward)
        return res

    def mul_scalar(self, w: WeightTensor, v: float, in_place: bool = False) -> WeightTensor:
        if in_place:
            out = w.weight.copy_ref()
            ops.mul(w.weight, v, out)
        else:
            out = ops.mul(w.weight, v)
        res = self._result("mul_scalar", out, (w,))
        self._on_backward(res, lambda g: self._backprop(w, g.data * v, "mul_scalar"))
        return res

    def div(self, w: WeightTensor, v: float, in_place: bool = False) -> WeightTensor:
        if in_place:
            out = w.weight.copy_ref()
            ops.div(w.weight, v, out)
        else:
            out = ops.div(w.weight, v)
        res = self._result("div", out, (w,))
        self._on_backward(res, lambda g: self._backprop(w, g.data / v, "div"))
        return res

    def tanh(self, w: WeightTensor) -> WeightTensor:
        res = self._result("tanh", ops.tanh(w.weight), (w,))

        def backward(g: Tensor) -> None:
            if w.need_gradient:
                w.add_tanh_gradient(res)

        self._on_backward(res, backward)
        return res

    def sigmoid(self, w: WeightTensor) -> WeightTensor:
        res = self._result("sigmoid", ops.sigmoid(w.weight), (w,))

        def backward(g: Tensor) -> None:
            if w.need_gradient:
                w.add_sigmoid_gradient(res)

        self._on_backward(res, backward)
        return res

    def relu(self, w: WeightTensor, in_place: bool = False) -> WeightTensor:
        if in_place:
            out = w.weight.copy_ref()
            ops.relu(w.weight, out)
        else:
            out = ops.relu(w.weight)
        res = self._result("relu", out, (w,))

        def backward(g: Tensor) -> None:
            delta = ops.relu_grad(res.weight, g)
            self._backprop(w, delta.data, "relu")
            delta.dispose()

        self._on_backward(res, backward)
        return res

    def swish(self, w: WeightTensor, in_place: bool = False) -> WeightTensor:
        """SiLU: x * sigmoid(x)."""
        saved = w.weight.clone() if in_place and self.needs_backprop and w.need_gradient else None
        if in_place:
            out = w.weight.copy_ref()
            ops.swish(w.weight, out)
        else:
            out = ops.swish(w.weight)
        res = self._result("swish", out, (w,))
        x = saved if saved is not None else w.weight

        def backward(g: Tensor) -> None:
            delta = ops.swish_grad(x, g)
            self._backprop(w, delta.data, "swish")
            delta.dispose()

        self._on_backward(res, backward, cleanup=() if saved is None else (saved,))
        return res

    def exp(self, w: WeightTensor) -> WeightTensor:
        res = self._result("exp", ops.exp(w.weight), (w,))
        self._on_backward(res, lambda g: self._backprop(w, g.data * res.weight.data, "exp"))
        return res

    def log(self, w: WeightTensor) -> WeightTensor:
        res = self._result("log", ops.log(w.weight), (w,))
        self._on_backward(res, lambda g: self._backprop(w, g.data / w.weight.data, "log"))
        return res

    def rsqrt(self, w: WeightTensor) -> WeightTensor:
        """1 / sqrt(w); gradient is -0.5 * y^3."""
        res = self._result("rsqrt", ops.rsqrt(w.weight), (w,))

        def backward(g: Tensor) -> None:
            y = res.weight.data
            self._backprop(w, g.data * -0.5 * y * y * y, "rsqrt")

        self._on_backward(res, backward)
        return res

    def add_tanh(self, w1: WeightTensor, w2: WeightTensor, w3: WeightTensor | None = None) -> WeightTensor:
        """tanh(w1 + w2 [+ w3])."""
        inputs = (w1, w2) if w3 is None else (w1, w2, w3)
        out = ops.add_tanh(w1.weight, w2.weight, w3.weight if w3 is not None else None)
        res = self._result("add_tanh", out, inputs)

        def backward(g: Tensor) -> None:
            delta = ops.tanh_grad(res.weight, g)
            for w in inputs:
                self._backprop(w, delta.data, "add_tanh")
            delta.dispose()

        self._on_backward(res, backward)
        return res

    def elt_mul_mul_add(self, w1: WeightTensor, w2: WeightTensor, w3: WeightTensor,
                        w4: WeightTensor) -> WeightTensor:
        """Fused w1*w2 + w3*w4 (LSTM cell update: f*c_prev + i*c_write)."""
        out = ops.mul_mul_add(w1.weight, w2.weight, w3.weight, w4.weight)
        res = self._result("elt_mul_mul_add", out, (w1, w2, w3, w4))

        def backward(g: Tensor) -> None:
            for target, other in ((w1, w2), (w2, w1), (w3, w4), (w4, w3)):
                if target.need_gradient:
                    target.add_mul_gradient(other.weight, g)

        self._on_backward(res, backward)
        return res

    # ------------------------------------------------------------------
    # Matrix products
    # ------------------------------------------------------------------

    def mul(self, w1: WeightTensor, w2: WeightTensor, alpha: float = 1.0) -> WeightTensor:
        """alpha * (w1 @ w2): [n, k] x [k, m] -> [n, m]."""
        res = self._result("mul", ops.matmul(w1.weight, w2.weight, alpha), (w1, w2))

        def backward(g: Tensor) -> None:
            xp = g.xp
            if w1.need_gradient:
                self._backprop(w1, alpha * xp.matmul(g.data, w2.weight.data.T), "mul")
            if w2.need_gradient:
                self._backprop(w2, alpha * xp.matmul(w1.weight.data.T, g.data), "mul")

        self._on_backward(res, backward)
        return res

    def mul_batch(self, m1: WeightTensor, m2: WeightTensor, alpha: float = 1.0) -> WeightTensor:
        """Batched alpha * (m1 @ m2): [b, n, k] x [b, k, m] -> [b, n, m]."""
        if m1.weight.ndim != 3 or m2.weight.ndim != 3:
            raise ShapeMismatchError(f"mul_batch expects 3-D operands, got {m1.sizes} and {m2.sizes}")
        res = self._result("mul_batch", ops.matmul(m1.weight, m2.weight, alpha), (m1, m2))

        def backward(g: Tensor) -> None:
            xp = g.xp
            if m1.need_gradient:
                self._backprop(m1, alpha * xp.matmul(g.data, xp.swapaxes(m2.weight.data, 1, 2)), "mul_batch")
            if m2.need_gradient:
                self._backprop(m2, alpha * xp.matmul(xp.swapaxes(m1.weight.data, 1, 2), g.data), "mul_batch")

        self._on_backward(res, backward)
        return res

    def affine(self, x: WeightTensor, w: WeightTensor, b: WeightTensor, alpha: float = 1.0) -> WeightTensor:
        """alpha * (x @ w) + b, bias [1, m] broadcast over rows."""
        res = self._result("affine", ops.addmm(b.weight, x.weight, w.weight, alpha), (x, w, b))

        def backward(g: Tensor) -> None:
            xp = g.xp
            if x.need_gradient:
                self._backprop(x, alpha * xp.matmul(g.data, w.weight.data.T), "affine")
            if w.need_gradient:
                self._backprop(w, alpha * xp.matmul(x.weight.data.T, g.data), "affine")
            self._backprop(b, g.data, "affine")

        self._on_backward(res, backward)
        return res

    # ------------------------------------------------------------------
    # Shape operators (results are views unless noted)
    # ------------------------------------------------------------------

    def transpose(self, w: WeightTensor, dim1: int = 0, dim2: int = 1) -> WeightTensor:
        res = self._result("transpose", w.weight.transpose(dim1, dim2), (w,))
        self._on_backward(res, lambda g: self._backprop(w, g.xp.swapaxes(g.data, dim1, dim2), "transpose"))
        return res

    def view(self, w: WeightTensor, *dims: int) -> WeightTensor:
        """Reshape a contiguous tensor; one dim may be -1."""
        res = self._result("view", w.weight.view(*dims), (w,))
        self._on_backward(res, lambda g: self._backprop(w, g.data.reshape(w.sizes), "view"))
        return res

    def expand(self, w: WeightTensor, *dims: int) -> WeightTensor:
        """Broadcast view; gradients are summed back over the expanded axes."""
        res = self._result("expand", w.weight.expand(*dims), (w,))
        self._on_backward(res, lambda g: self._backprop(w, g.data, "expand"))
        return res

    def as_contiguous(self, w: WeightTensor) -> WeightTensor:
        """Contiguous copy (or shared reference when already contiguous)."""
        res = self._result("as_contiguous", w.weight.as_contiguous(), (w,))
        self._on_backward(res, lambda g: self._backprop(w, g.data, "as_contiguous"))
        return res

    def peek(self, w: WeightTensor, dim: int, ix: int, num: int = 1) -> WeightTensor:
        """View of ``num`` entries starting at ``ix`` along ``dim``."""
        view = w.weight.narrow(dim, ix, num)
        res = self._result("peek", view, (w,))
        key = [slice(None)] * len(w.sizes)
        key[dim % len(w.sizes)] = slice(ix, ix + num)
        self._on_backward(res, lambda g: self._backprop_slice(w, tuple(key), g.data))
        return res

    def select(self, w: WeightTensor, dim: int, index: int) -> WeightTensor:
        """View with ``dim`` removed (e.g. one expert's matrix out of [E, H, 4H])."""
        view = w.weight.select(dim, index)
        res = self._result("select", view, (w,))
        key = [slice(None)] * len(w.sizes)
        key[dim % len(w.sizes)] = index
        self._on_backward(res, lambda g: self._backprop_slice(w, tuple(key), g.data))
        return res

    def concate(self, ws: Sequence[WeightTensor], dim: int) -> WeightTensor:
        """Concatenate along ``dim`` into a new buffer."""
        ws = list(ws)
        res = self._result("concate", ops.concat([w.weight for w in ws], dim), ws)
        axis = dim % len(ws[0].sizes)

        def backward(g: Tensor) -> None:
            offset = 0
            for w in ws:
                size = w.sizes[axis]
                key = [slice(None)] * g.ndim
                key[axis] = slice(offset, offset + size)
                self._backprop(w, g.data[tuple(key)], "concate")
                offset += size

        self._on_backward(res, backward)
        return res

    def split_columns2(self, w: WeightTensor, *sizes: int) -> list[WeightTensor]:
        """Split the last dimension into views of the given widths (must sum to it)."""
        total = w.sizes[-1]
        if int(np.sum(sizes)) != total:
            raise ShapeMismatchError(
                f"split_columns: sizes {list(sizes)} sum to {int(np.sum(sizes))}, "
                f"but '{w.name}' has {total} columns"
            )
        pieces = []
        offset = 0
        for size in sizes:
            pieces.append(self.peek(w, -1, offset, size))
            offset += size
        return pieces

    def split_columns(self, w: WeightTensor, size1: int, size2: int, size3: int | None = None) -> tuple:
        """Two- or three-way column split."""
        sizes = (size1, size2) if size3 is None else (size1, size2, size3)
        return tuple(self.split_columns2(w, *sizes))

    # ------------------------------------------------------------------
    # Normalization, softmax, dropout
    # ------------------------------------------------------------------

    def layer_norm(self, x: WeightTensor, alpha: WeightTensor, beta: WeightTensor,
                   eps: float = 1e-9) -> WeightTensor:
        """Per-row (x - mean) / sqrt(var + eps) * alpha + beta; alpha/beta are [1, cols]."""
        res = self._result("layer_norm", ops.layer_norm(x.weight, alpha.weight, beta.weight, eps),
                           (x, alpha, beta))

        def backward(g: Tensor) -> None:
            dx, dalpha, dbeta = ops.layer_norm_grad(x.weight, alpha.weight, g, eps)
            self._backprop(x, dx, "layer_norm")
            self._backprop(alpha, dalpha, "layer_norm")
            self._backprop(beta, dbeta, "layer_norm")

        self._on_backward(res, backward)
        return res

    def softmax(self, w: WeightTensor, run_gradients: bool = True, in_place: bool = False) -> WeightTensor:
        """Softmax over the last dimension."""
        if in_place:
            out = w.weight.copy_ref()
            ops.softmax(w.weight, out)
        else:
            out = ops.softmax(w.weight)
        res = self._result("softmax", out, (w,), differentiable=run_gradients)

        def backward(g: Tensor) -> None:
            if w.need_gradient:
                w.add_softmax_gradient(res)

        self._on_backward(res, backward)
        return res

    def dropout(self, w: WeightTensor, drop_prob: float, in_place: bool = False) -> WeightTensor:
        """Inverted dropout.  Identity (returns ``w``) without backprop or when drop_prob is 0."""
        if not self.needs_backprop or drop_prob <= 0.0:
            return w
        mask = ops.dropout_mask(w.weight, drop_prob)
        if in_place:
            out = w.weight.copy_ref()
            ops.mul(w.weight, mask, out)
        else:
            out = ops.mul(w.weight, mask)
        res = self._result("dropout", out, (w,))
        self._on_backward(res, lambda g: self._backprop(w, g.data * mask.data, "dropout"), cleanup=(mask,))
        return res

    # ------------------------------------------------------------------
    # Reductions and selection
    # ------------------------------------------------------------------

    def sum(self, w: WeightTensor, dim: int) -> WeightTensor:  # noqa: A003
        """Sum along ``dim`` (kept with size 1)."""
        res = self._result("sum", ops.sum(w.weight, dim), (w,))
        self._on_backward(res, lambda g: self._backprop(w, g.xp.broadcast_to(g.data, w.sizes), "sum"))
        return res

    def mean(self, w: WeightTensor, dim: int) -> WeightTensor:
        res = self._result("mean", ops.mean(w.weight, dim), (w,))
        n = w.sizes[dim]
        self._on_backward(res, lambda g: self._backprop(w, g.xp.broadcast_to(g.data / n, w.sizes), "mean"))
        return res

    def max(self, w: WeightTensor, dim: int) -> WeightTensor:  # noqa: A003
        """Maximum along ``dim`` (not differentiable)."""
        return self._result("max", ops.max(w.weight, dim), (w,), differentiable=False)

    def argmax(self, w: WeightTensor, dim: int) -> WeightTensor:
        """Float-valued index of the maximum along ``dim`` (not differentiable)."""
        return self._result("argmax", ops.argmax(w.weight, dim), (w,), differentiable=False)

    def top_k(self, w: WeightTensor, k: int) -> tuple[WeightTensor, WeightTensor]:
        """Per-row top-k (values, column indices); ties keep the lower index first.

        Gradients flow into ``w`` through the values.
        """
        values, indices = ops.top_k(w.weight, k)
        res_values = self._result("top_k.values", values, (w,))
        res_indices = self._result("top_k.indices", indices, differentiable=False)

        def backward(g: Tensor) -> None:
            if w.need_gradient:
                indexing.scatter_add(w.gradient, g, res_indices.weight, dim=-1)

        self._on_backward(res_values, backward)
        return res_values, res_indices

    def top_p_sample_indice(self, w: WeightTensor, seqs: Sequence[Sequence[int]] | None,
                            top_p: float = 0.9, repeat_penalty: float = 5.0) -> WeightTensor:
        """Nucleus-sample one column index per row of probabilities -> [rows, 1]."""
        probs = w.weight.to_numpy().reshape(w.sizes[0], -1)
        picked = sampling.top_p_sample_rows(probs, seqs, top_p, repeat_penalty, self._rng_state)
        return self._host_result("top_p_sample_indice", picked)

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def gather(self, src: WeightTensor, indices: WeightTensor, dim: int) -> WeightTensor:
        """result[..i..] = src[..indices[..i..] at dim..]; result has the shape of ``indices``."""
        res = self._result("gather", indexing.gather(src.weight, indices.weight, dim), (src,))

        def backward(g: Tensor) -> None:
            if src.need_gradient:
                indexing.scatter_add(src.gradient, g, indices.weight, dim)

        self._on_backward(res, backward)
        return res

    def scatter(self, src: WeightTensor, indices: WeightTensor, dim: int, *shape: int) -> WeightTensor:
        """Zero tensor of ``shape`` with ``src`` written at ``indices`` along ``dim``."""
        out = Tensor.zeros(shape, src.dtype, self.device_id)
        indexing.scatter(out, src.weight, indices.weight, dim)
        res = self._result("scatter", out, (src,))

        def backward(g: Tensor) -> None:
            delta = indexing.gather(g, indices.weight, dim)
            self._backprop(src, delta.data, "scatter")
            delta.dispose()

        self._on_backward(res, backward)
        return res

    def scatter_fill(self, indices: WeightTensor, value: float, dim: int, *shape: int,
                     run_gradient: bool = True) -> WeightTensor:
        """Zero tensor of ``shape`` with ``value`` written at ``indices`` along ``dim``."""
        out = Tensor.zeros(shape, device_id=self.device_id)
        indexing.scatter_fill(out, value, indices.weight, dim)
        res = self._result("scatter_fill", out, differentiable=run_gradient)
        res.need_gradient = run_gradient and self.needs_backprop
        return res

    def scatter_add(self, src: WeightTensor, indices: WeightTensor, dim: int, *shape: int) -> WeightTensor:
        """Zero tensor of ``shape`` with ``src`` accumulated at ``indices`` along ``dim``."""
        out = Tensor.zeros(shape, src.dtype, self.device_id)
        indexing.scatter_add(out, src.weight, indices.weight, dim)
        res = self._result("scatter_add", out, (src,))

        def backward(g: Tensor) -> None:
            delta = indexing.gather(g, indices.weight, dim)
            self._backprop(src, delta.data, "scatter_add")
            delta.dispose()

        self._on_backward(res, backward)
        return res

    def index_select(self, src: WeightTensor, indices: Sequence[float] | np.ndarray,
                     clear_weights: bool = False) -> WeightTensor:
        """Rows of ``src`` at ``indices`` -> [len(indices), cols]."""
        idx = np.asarray(indices, dtype=np.int64).reshape(-1)
        shape = (idx.size,) + tuple(src.sizes[1:])
        out = Tensor.zeros(shape, src.dtype, self.device_id) if clear_weights else None
        out = indexing.index_select(src.weight, idx.tolist(), out)
        res = self._result("index_select", out, (src,))

        def backward(g: Tensor) -> None:
            if src.need_gradient:
                indexing.index_add(src.gradient, idx.tolist(), g)

        self._on_backward(res, backward)
        return res

    def index_update(self, shape: Sequence[int], src: WeightTensor, indices: Sequence[float] | np.ndarray,
                     clear_weights: bool = True) -> WeightTensor:
        """Tensor of ``shape`` with src rows written at rows ``indices``.

        Rows are overwritten, not accumulated: for a repeated index the last
        src row wins and only that row receives gradient.  With
        ``clear_weights=False`` rows not named in ``indices`` are left
        uninitialized.
        """
        idx = np.asarray(indices, dtype=np.int64).reshape(-1)
        if clear_weights:
            out = Tensor.zeros(shape, src.dtype, self.device_id)
        else:
            out = Tensor.empty(shape, src.dtype, self.device_id)
        indexing.index_copy(out, idx.tolist(), src.weight)
        res = self._result("index_update", out, (src,))
        overwritten = np.ones(idx.size, dtype=bool)
        overwritten[indexing.last_occurrences(idx, np)] = False

        def backward(g: Tensor) -> None:
            if src.need_gradient:
                delta = indexing.index_select(g, idx.tolist())
                if overwritten.any():
                    delta.data[delta.xp.asarray(overwritten)] = 0.0
                self._backprop(src, delta.data, "index_update")
                delta.dispose()

        self._on_backward(res, backward)
        return res

    # ------------------------------------------------------------------
    # Masks and token tensors (constants, no gradient)
    # ------------------------------------------------------------------

    def build_src_tgt_mask(self, src_padded_length: int, tgt_padded_length: int,
                           tgt_original_lengths: Sequence[float],
                           src_original_lengths: Sequence[float]) -> WeightTensor:
        """[batch, tgt_padded, src_padded] additive cross-attention mask."""
        return self._host_result("src_tgt_mask", masks.src_tgt_mask(
            src_padded_length, tgt_padded_length, tgt_original_lengths, src_original_lengths))

    def build_self_tri_mask(self, padded_length: int, original_lengths: Sequence[float]) -> WeightTensor:
        """[batch, padded, padded] causal mask limited to each sequence's length."""
        return self._host_result("self_tri_mask", masks.self_tri_mask(padded_length, original_lengths))

    def build_tri_mask(self, padded_length: int, batch_size: int) -> WeightTensor:
        """[batch, padded, padded] causal mask."""
        return self._host_result("tri_mask", masks.tri_mask(padded_length, batch_size))

    def build_pad_self_mask(self, padded_length: int, original_lengths: Sequence[float]) -> WeightTensor:
        """[batch, padded, padded] mask hiding keys beyond each sequence's length."""
        return self._host_result("pad_self_mask", masks.pad_self_mask(padded_length, original_lengths))

    def build_feature_mask(self, padded_length: int, applied_lengths: Sequence[int], dim: int) -> WeightTensor:
        """[batch, padded, dim] multiplicative 1/0 mask."""
        return self._host_result("feature_mask", masks.feature_mask(padded_length, applied_lengths, dim))

    def create_tokens_tensor(self, seqs: Sequence[Sequence[int]]) -> WeightTensor:
        """Padded token ids as a [batch * seq_len, 1] float tensor."""
        return self._host_result("tokens", masks.tokens_array(seqs))

    def left_shift_tokens(self, seqs: Sequence[Sequence[int]], last_token_to_pad: int) -> WeightTensor:
        """Next-token targets: each sequence shifted left, last slot padded."""
        return self._host_result("left_shift_tokens", masks.left_shift_tokens(seqs, last_token_to_pad))

    # ------------------------------------------------------------------
    # Tensor creation
    # ------------------------------------------------------------------

    def create_tensor_weights(self, sizes: Sequence[int], values: Sequence[float] | np.ndarray) -> WeightTensor:
        """Constant tensor holding ``values`` (no gradient), released with this graph."""
        arr = np.asarray(values, dtype=np.float32).reshape(tuple(sizes))
        return self._host_result("tensor_weights", arr)

    def create_weight_tensor(self, sizes: Sequence[int], clean: bool = True, name: str = "",
                             is_trainable: bool = False) -> WeightTensor:
        """New WeightTensor bound to this graph."""
        w = WeightTensor(sizes, self.device_id, name or f"{self.name}.weight", is_trainable)
        if clean:
            w.clean_weight()
        self.bind(w)
        return w

    # ------------------------------------------------------------------
    # Loss
    # ------------------------------------------------------------------

    def cross_entropy_loss(self, probs: WeightTensor, truth: WeightTensor, gradient: float = 1.0,
                           smooth: float = 0.0) -> float:
        """Mean of -log(p[truth] + smooth) over rows.

        ``probs`` is [rows, vocab], ``truth`` is [rows, 1] (or [rows]) token ids.
        Seeds the loss node with ``gradient`` so that backward() delivers
        -gradient / (p + smooth) into ``probs`` at the truth columns.
        """
        truth_col = self.view(truth, -1, 1)
        loss = self.gather(probs, truth_col, 1)
        if smooth > 0.0:
            loss = self.add_scalar(loss, smooth)
        loss = self.log(loss)
        loss = self.mul_scalar(loss, -1.0)
        if loss.need_gradient:
            loss.fill_gradient(gradient)
        values = loss.to_weight_array()
        return float(values.sum() / values.size)

    def __repr__(self) -> str:
        return f"ComputeGraph(name={self.name!r}, needs_backprop={self.needs_backprop})"
