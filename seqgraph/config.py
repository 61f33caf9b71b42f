# SPDX-License-Identifier: CC-BY-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Model configuration for sequence-to-sequence models built on the engine.

The configuration is a single flat dataclass. Model families differ only in
capability flags (``has_decoder``, ``has_classification_vocab``, ...) rather
than in a class hierarchy, so one store/loader handles all of them.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from enum import Enum


class ProcessorType(Enum):
    """Device backend used by the allocator registry."""

    CPU = "cpu"
    GPU = "gpu"


class ActivateFunc(Enum):
    """Activation applied inside feed-forward experts.

    The integer values are persisted in model files, so they must stay stable.
    """

    RELU = 0
    SWISH = 1


class VQType(Enum):
    """Vector quantization applied to weights when they enter the model store."""

    NONE = 0
    INT8 = 1
    INT4 = 2


@dataclass
class ModelConfig:
    """Model configuration.

    Key relationships:
      expert FFN params  = hidden_dim * (4 * hidden_dim) * 2 per expert
      active experts     = experts_per_token_factor out of expert_num
    """

    hidden_dim: int = 512
    intermediate_dim: int = 2048
    encoder_embedding_dim: int = 512
    decoder_embedding_dim: int = 512
    encoder_layer_depth: int = 6
    decoder_layer_depth: int = 6
    multi_head_num: int = 8
    expert_num: int = 1
    experts_per_token_factor: int = 1
    activate_func: ActivateFunc = ActivateFunc.RELU
    vq_type: VQType = VQType.NONE
    src_vocab_size: int = 0
    tgt_vocab_size: int = 0
    cls_vocab_sizes: tuple[int, ...] = ()
    similarity_type: str = ""
    max_segment_num: int = 0

    # Capability flags (replace the Model -> Seq2SeqModel -> classification chain)
    has_decoder: bool = True
    has_classification_vocab: bool = False
    enable_segment_embeddings: bool = False
    enable_tag_embeddings: bool = False
    enable_coverage_model: bool = False
    shared_embeddings: bool = False
    pointer_generator: bool = False

    @classmethod
    def tiny(cls) -> ModelConfig:
        """Return tiny configuration for testing."""
        return cls(
            hidden_dim=16,
            intermediate_dim=64,
            encoder_embedding_dim=16,
            decoder_embedding_dim=16,
            encoder_layer_depth=1,
            decoder_layer_depth=1,
            multi_head_num=2,
            expert_num=4,
            experts_per_token_factor=2,
            src_vocab_size=100,
            tgt_vocab_size=100,
        )

    @classmethod
    def classification(cls, cls_vocab_sizes: tuple[int, ...], **kwargs) -> ModelConfig:
        """Return a seq2seq-with-classification-head configuration."""
        return cls(cls_vocab_sizes=tuple(cls_vocab_sizes), has_classification_vocab=True, **kwargs)

    def to_dict(self) -> dict:
        """Return a JSON-serializable dict (enums stored by name)."""
        d = asdict(self)
        d["activate_func"] = self.activate_func.name
        d["vq_type"] = self.vq_type.name
        d["cls_vocab_sizes"] = list(self.cls_vocab_sizes)
        return d

    @classmethod
    def from_dict(cls, d: dict) -> ModelConfig:
        """Inverse of ``to_dict``. Unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in d.items() if k in known}
        if "activate_func" in kwargs:
            kwargs["activate_func"] = ActivateFunc[kwargs["activate_func"]]
        if "vq_type" in kwargs:
            kwargs["vq_type"] = VQType[kwargs["vq_type"]]
        if "cls_vocab_sizes" in kwargs:
            kwargs["cls_vocab_sizes"] = tuple(kwargs["cls_vocab_sizes"])
        return cls(**kwargs)
