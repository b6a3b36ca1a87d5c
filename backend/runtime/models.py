"""
Encoder model variants — model-agnostic within the BERT family.

Each variant assembles embeddings, an encoder stack and an optional
classification head from a ModelConfig, loads checkpoint tensors through a
WeightBuilder, and answers three questions for the backend:

  is_padded()    — does this variant run the padded (masked) attention path
  embed(batch)   — (pooled [P, hidden] | None, raw [N, hidden] | None)
  predict(batch) — class logits [R, num_labels]

Variants differ along two axes fixed at load time:

  position embeddings — absolute table (BertModel) or ALiBi bias (JinaBertModel)
  attention strategy  — PaddedAttention or FlashVarlenAttention (injected)
"""

from __future__ import annotations

from typing import Optional

import torch
import torch.nn as nn

import config as global_config
from backend.batch import ModelType, PackedBatch, Pool
from backend.errors import InferenceError, UnsupportedOperationError
from backend.model_config import ModelConfig
from backend.runtime.attention import AttentionStrategy
from backend.runtime.encoder_blocks import (
    BertClassificationHead, BertEmbeddings, BertEncoder, BertLayer,
    JinaBertLayer, RobertaClassificationHead,
)
from backend.runtime.pooling import extract
from backend.runtime.weight_loader import (
    WeightBuilder, namespace_candidates, resolve_namespace,
)


# ---------------------------------------------------------------------------
# BertModel — absolute position embeddings
# ---------------------------------------------------------------------------

class BertModel(nn.Module):
    """BERT / RoBERTa / XLM-R / CamemBERT encoder.

    Args:
        config: Architecture config.
        model_type: Embedding (with its pooling) or classifier.
        strategy: Attention strategy, fixed for the model's lifetime.
    """

    name = "Bert"
    layer_cls = BertLayer
    absolute_positions = True

    def __init__(self, config: ModelConfig, model_type: ModelType, strategy: AttentionStrategy):
        super().__init__()
        self.config = config
        self.strategy = strategy
        self.device = torch.device("cpu")
        self.dtype = torch.float32

        # Classifier models always use CLS pooling
        self.pool = Pool.CLS if model_type.classifier else model_type.pool

        self.embeddings = BertEmbeddings(config, self.absolute_positions)
        self.encoder = BertEncoder(config, strategy, self.layer_cls)

        self.classifier: Optional[nn.Module] = None
        if model_type.classifier:
            if config.model_type == "bert":
                self.classifier = BertClassificationHead(config)
            else:
                self.classifier = RobertaClassificationHead(config)

    @classmethod
    def load(
        cls,
        vb: WeightBuilder,
        config: ModelConfig,
        model_type: ModelType,
        strategy: AttentionStrategy,
    ) -> "BertModel":
        """Build the module skeleton without allocating, then fill it from ``vb``."""
        with torch.device("meta"):
            model = cls(config, model_type, strategy)

        candidates = namespace_candidates(
            config.model_type, global_config.FALLBACK_WEIGHT_PREFIX
        )
        resolve_namespace(vb, candidates, model._load_encoder_weights)
        if model.classifier is not None:
            model.classifier.load_weights(vb)

        model.device = vb.device
        model.dtype = vb.dtype
        model.eval()
        return model

    def _load_encoder_weights(self, vb: WeightBuilder):
        self.embeddings.load_weights(vb.pp("embeddings"))
        self.encoder.load_weights(vb.pp("encoder"))

    # -- interface ------------------------------------------------------------

    def is_padded(self) -> bool:
        return self.strategy.is_padded

    @torch.inference_mode()
    def embed(self, batch: PackedBatch) -> tuple[Optional[torch.Tensor], Optional[torch.Tensor]]:
        outputs = self.encode(batch)
        return extract(outputs, batch, self.pool)

    @torch.inference_mode()
    def predict(self, batch: PackedBatch) -> torch.Tensor:
        if self.classifier is None:
            raise UnsupportedOperationError("`predict` is not implemented for this model")
        if len(batch) == 0:
            return torch.empty(0, self.config.num_labels, device=self.device)
        outputs = self.encode(batch)
        # Every request is scored from its first token
        starts = torch.tensor(
            batch.cumulative_seq_lengths[: len(batch)], dtype=torch.long, device=outputs.device
        )
        return self.classifier(outputs.index_select(0, starts))

    # -- forward --------------------------------------------------------------

    def _check_ids(self, batch: PackedBatch):
        limits = [
            ("input_ids", batch.input_ids, self.config.vocab_size),
            ("token_type_ids", batch.token_type_ids, self.config.type_vocab_size),
        ]
        if self.absolute_positions:
            limits.append(
                ("position_ids", batch.position_ids, self.config.max_position_embeddings)
            )
        for name, ids, limit in limits:
            if ids and (min(ids) < 0 or max(ids) >= limit):
                raise InferenceError(
                    f"{name} out of range: values must lie in [0, {limit}), "
                    f"got [{min(ids)}, {max(ids)}]"
                )

    @torch.inference_mode()
    def encode(self, batch: PackedBatch) -> torch.Tensor:
        """Embedding stage + encoder stack over the packed batch → [T, hidden]."""
        self._check_ids(batch)

        input_ids = torch.tensor(batch.input_ids, dtype=torch.long, device=self.device)
        type_ids = torch.tensor(batch.token_type_ids, dtype=torch.long, device=self.device)
        position_ids = torch.tensor(batch.position_ids, dtype=torch.long, device=self.device)

        ctx = self.strategy.prepare(
            batch.cumulative_seq_lengths, batch.max_length, self.device, self.dtype
        )

        hidden_states = self.embeddings(input_ids, type_ids, position_ids)
        return self.encoder(hidden_states, ctx)


# ---------------------------------------------------------------------------
# JinaBertModel — ALiBi attention bias, gated feed-forward
# ---------------------------------------------------------------------------

class JinaBertModel(BertModel):
    """BERT encoder with ALiBi instead of a position table (jina-embeddings-v2).

    The strategy passed in must already carry the per-head ALiBi slopes.
    """

    name = "JinaBert"
    layer_cls = JinaBertLayer
    absolute_positions = False
