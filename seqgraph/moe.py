# SPDX-License-Identifier: CC-BY-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Token-level Mixture-of-Experts feed-forward layer.

MoE: output_t = x_t + sum_{e in top_k(t)} p_{t,e} * Expert_e(LayerNorm(x_t))
     Expert_e(z) = act(z @ Whd1[e]) @ Whd2[e]        (H -> 4H -> H)

The router is an affine projection of the normalized tokens to one logit
per expert followed by softmax; each token goes to its top-k experts
(k = experts_per_token_factor) weighted by the raw routing probability.

Dispatch strategy: iterate over experts (not tokens), batching all tokens
assigned to each expert into one pair of matmuls.  Expert weights are two
3-D tensors indexed by expert id, so the parameters stay contiguous.
"""

from __future__ import annotations

import logging

import numpy as np

from .config import ActivateFunc
from .errors import UnsupportedOperationError
from .graph import ComputeGraph
from .layers import Layer, LayerNormalization
from .model import Model
from .weight_tensor import NormType, WeightTensor

logger = logging.getLogger(__name__)

_ACTIVATIONS = {
    ActivateFunc.RELU: ComputeGraph.relu,
    ActivateFunc.SWISH: ComputeGraph.swish,
}


class MoEFeedForward(Layer):
    """Mixture-of-Experts feed-forward block with a pre-norm residual."""

    def __init__(
        self,
        name: str,
        expert_num: int,
        hidden_dim: int,
        dropout_ratio: float,
        device_id: int = 0,
        is_trainable: bool = True,
        learning_rate_factor: float = 1.0,
        activate_func: ActivateFunc = ActivateFunc.RELU,
        experts_per_token_factor: int = 1,
    ):
        if not 1 <= experts_per_token_factor <= expert_num:
            raise ValueError(
                f"experts_per_token_factor must be in [1, {expert_num}], got {experts_per_token_factor}"
            )
        self.name = name
        self.expert_num = expert_num
        self.hidden_dim = hidden_dim
        self.dropout_ratio = dropout_ratio
        self.device_id = device_id
        self.is_trainable = is_trainable
        self.learning_rate_factor = learning_rate_factor
        self.experts_per_token_factor = experts_per_token_factor
        self._set_activation(activate_func)
        logger.info(
            "Creating MoE layer '%s': experts=%d, hidden_dim=%d, k=%d, activation=%s, dropout=%.2f",
            name, expert_num, hidden_dim, experts_per_token_factor, activate_func.name, dropout_ratio,
        )

        self.layer_norm = LayerNormalization(f"{name}.layerNorm", hidden_dim, device_id, is_trainable,
                                             learning_rate_factor)
        self.whd1 = WeightTensor((expert_num, hidden_dim, hidden_dim * 4), device_id, name=f"{name}.Whd1",
                                 is_trainable=is_trainable, norm_type=NormType.UNIFORM,
                                 learning_rate_factor=learning_rate_factor)
        self.whd2 = WeightTensor((expert_num, hidden_dim * 4, hidden_dim), device_id, name=f"{name}.Whd2",
                                 is_trainable=is_trainable, norm_type=NormType.UNIFORM,
                                 learning_rate_factor=learning_rate_factor)
        self.router = WeightTensor((hidden_dim, expert_num), device_id, name=f"{name}.Router",
                                   is_trainable=is_trainable, norm_type=NormType.UNIFORM,
                                   learning_rate_factor=learning_rate_factor)
        self.router_bias = WeightTensor.constant((1, expert_num), 0.0, device_id, name=f"{name}.RouterBias",
                                                 is_trainable=is_trainable,
                                                 learning_rate_factor=learning_rate_factor)

        # Routing statistics of the last process() call
        self.last_expert_token_counts: list[int] = []
        self._last_router_probs: np.ndarray | None = None
        self._last_top_indices: np.ndarray | None = None

    def _set_activation(self, activate_func: ActivateFunc) -> None:
        self.activate_func = activate_func
        self._activate = _ACTIVATIONS[activate_func]

    def process(self, x: WeightTensor, batch_size: int, g: ComputeGraph) -> WeightTensor:
        """Apply the MoE block to tokens x [num_tokens, hidden_dim].

        Returns x + routed expert outputs, with the same shape as x.
        """
        num_tokens = x.sizes[0]
        k = self.experts_per_token_factor
        with g.create_sub_graph(f"{self.name}_MoEFeedForward") as sub:
            normed = self.layer_norm.norm(x, sub)
            router_logits = sub.affine(normed, self.router, self.router_bias)
            router_probs = sub.softmax(router_logits)
            top_values, top_indices = sub.top_k(router_probs, k)
            flat_values = sub.view(top_values, -1, 1)  # [num_tokens * k, 1]

            top_idx = top_indices.to_weight_array().reshape(num_tokens, k).astype(np.int64)
            counts = np.bincount(top_idx.ravel(), minlength=self.expert_num)
            self.last_expert_token_counts = counts.tolist()
            self._last_top_indices = top_idx
            self._last_router_probs = router_probs.to_weight_array().reshape(num_tokens, self.expert_num)
            if logger.isEnabledFor(logging.DEBUG):
                self._log_routing(batch_size)

            routed = None
            for expert in range(self.expert_num):
                token_rows, slots = np.nonzero(top_idx == expert)
                if token_rows.size == 0:
                    continue
                scores = sub.index_select(flat_values, token_rows * k + slots)  # [n, 1]
                tokens = sub.index_select(normed, token_rows)  # [n, H]

                hidden = sub.mul(tokens, sub.select(self.whd1, 0, expert))  # [n, 4H]
                hidden = self._activate(sub, hidden, in_place=True)
                expert_out = sub.mul(hidden, sub.select(self.whd2, 0, expert))  # [n, H]
                expert_out = sub.elt_mul(expert_out, scores)

                update = sub.index_update(x.sizes, expert_out, token_rows)
                routed = update if routed is None else sub.add(routed, update, in_place=True)

            return g.add(x, routed)

    def _log_routing(self, batch_size: int) -> None:
        for token, probs in enumerate(self._last_router_probs):
            logger.debug("Router distribution for token %d: %s", token,
                         np.array2string(probs, precision=4, separator=", "))
        for expert, count in enumerate(self.last_expert_token_counts):
            logger.debug("Expert %d received %d tokens (batch_size=%d)", expert, count, batch_size)

    def router_load_balance_loss(self) -> float:
        """Auxiliary load-balancing value of the last routing (diagnostic only).

        Aux loss: L_aux = N * sum_i(f_i * P_i)

        where:
          N = number of experts
          f_i = fraction of token assignments that went to expert i
          P_i = mean router probability for expert i

        When all experts are used uniformly, f_i = P_i = 1/N and L_aux = 1.
        """
        if self._last_router_probs is None or self._last_top_indices is None:
            return 0.0
        counts = np.bincount(self._last_top_indices.ravel(), minlength=self.expert_num).astype(np.float64)
        fractions = counts / self._last_top_indices.size
        mean_probs = self._last_router_probs.mean(axis=0)
        return float(self.expert_num * np.dot(fractions, mean_probs))

    def get_params(self) -> list[WeightTensor]:
        return [self.whd1, self.whd2, self.router, self.router_bias] + self.layer_norm.get_params()

    def save(self, model: Model) -> None:
        super().save(model)
        model.add_weights(f"{self.name}.ActivateFunc", np.array([self.activate_func.value], dtype=np.float32))

    def load(self, model: Model) -> None:
        super().load(model)
        values = model.get_weights(f"{self.name}.ActivateFunc")
        if values is not None:
            self._set_activation(ActivateFunc(int(round(float(values[0])))))
            logger.info("Loaded activation function '%s' for MoE layer '%s'", self.activate_func.name, self.name)

    def clone_to_device_at(self, device_id: int) -> MoEFeedForward:
        raise UnsupportedOperationError(f"MoE layer '{self.name}' cannot be cloned to device {device_id}")
