"""
BERT Encoder Building Blocks — pure PyTorch modules over a packed token buffer.

All blocks operate on flat ``[T, hidden]`` tensors: the tokens of every
request in the batch concatenated back to back.  Which tokens may attend to
each other is decided by the attention strategy (see ``attention.py``), not
by the blocks themselves.

Components:
  ResidualLayerNorm        — LayerNorm(hidden + residual)
  BertEmbeddings           — word + token-type lookup, normalised with position lookup
  BertAttention            — fused QKV projection → strategy → output projection
  BertLayer                — attention sublayer + dense feed-forward sublayer
  JinaBertLayer            — attention sublayer + gated (GLU) feed-forward sublayer
  BertEncoder              — N layers applied in order
  BertClassificationHead   — single dense projection to class logits
  RobertaClassificationHead — dense → tanh → dense projection to class logits

Every module is built from a ModelConfig and filled from a checkpoint with
``load_weights(vb)``, where ``vb`` is a prefixed WeightBuilder.  Names passed
to ``vb.pp`` follow the Hugging Face checkpoint layout::

    embeddings.word_embeddings.weight
    encoder.layer.{idx}.attention.self.query.weight
    encoder.layer.{idx}.attention.output.LayerNorm.weight
    encoder.layer.{idx}.intermediate.dense.weight
    encoder.layer.{idx}.output.dense.weight
"""

from __future__ import annotations

from typing import Optional

import torch
import torch.nn as nn
import torch.nn.functional as F

from backend.errors import StartError
from backend.model_config import ModelConfig
from backend.runtime.attention import AttentionContext, AttentionStrategy
from backend.runtime.weight_loader import WeightBuilder


# ---------------------------------------------------------------------------
# Activation function registry
# ---------------------------------------------------------------------------

_ACTIVATIONS = {
    "gelu": F.gelu,
    "relu": F.relu,
    "silu": F.silu,
    "swish": F.silu,
    "gelu_new": lambda x: F.gelu(x, approximate="tanh"),
    "gelu_fast": lambda x: F.gelu(x, approximate="tanh"),
    "gelu_pytorch_tanh": lambda x: F.gelu(x, approximate="tanh"),
    "tanh": torch.tanh,
}


def get_activation(name: str):
    """Look up activation function by name."""
    fn = _ACTIVATIONS.get(name)
    if fn is None:
        raise StartError(
            f"Unknown activation '{name}'. "
            f"Supported: {', '.join(_ACTIVATIONS)}"
        )
    return fn


# ---------------------------------------------------------------------------
# Weight assignment helpers
# ---------------------------------------------------------------------------

def _assign(module: nn.Module, name: str, tensor: torch.Tensor):
    setattr(module, name, nn.Parameter(tensor, requires_grad=False))


def _load_linear(linear: nn.Linear, vb: WeightBuilder):
    _assign(linear, "weight", vb.get((linear.out_features, linear.in_features), "weight"))
    if linear.bias is not None:
        _assign(linear, "bias", vb.get(linear.out_features, "bias"))


def _load_embedding(embedding: nn.Embedding, vb: WeightBuilder):
    _assign(embedding, "weight", vb.get((embedding.num_embeddings, embedding.embedding_dim), "weight"))


# ---------------------------------------------------------------------------
# ResidualLayerNorm
# ---------------------------------------------------------------------------

class ResidualLayerNorm(nn.Module):
    """LayerNorm over ``hidden + residual``.

    The residual is summed before normalisation, so callers never add it
    themselves.
    """

    def __init__(self, hidden_size: int, eps: float):
        super().__init__()
        self.hidden_size = hidden_size
        self.eps = eps
        self.weight = nn.Parameter(torch.ones(hidden_size), requires_grad=False)
        self.bias = nn.Parameter(torch.zeros(hidden_size), requires_grad=False)

    def load_weights(self, vb: WeightBuilder):
        _assign(self, "weight", vb.get(self.hidden_size, "weight"))
        _assign(self, "bias", vb.get(self.hidden_size, "bias"))

    def forward(self, hidden_states: torch.Tensor, residual: Optional[torch.Tensor] = None) -> torch.Tensor:
        if residual is not None:
            hidden_states = hidden_states + residual
        return F.layer_norm(hidden_states, (self.hidden_size,), self.weight, self.bias, self.eps)


# ---------------------------------------------------------------------------
# BertEmbeddings
# ---------------------------------------------------------------------------

class BertEmbeddings(nn.Module):
    """Token embedding stage.

    ``LayerNorm(word[input_ids] + type[token_type_ids], position[position_ids])``
    for absolute-position models.  ALiBi models have no position table and
    normalise the word + type sum alone.

    Config params:
        vocab_size, type_vocab_size, max_position_embeddings, hidden_size,
        layer_norm_eps
    """

    def __init__(self, config: ModelConfig, absolute_positions: bool = True):
        super().__init__()
        hidden = config.hidden_size
        self.word_embeddings = nn.Embedding(config.vocab_size, hidden)
        self.token_type_embeddings = nn.Embedding(config.type_vocab_size, hidden)
        self.position_embeddings = None
        if absolute_positions:
            self.position_embeddings = nn.Embedding(config.max_position_embeddings, hidden)
        self.layer_norm = ResidualLayerNorm(hidden, config.layer_norm_eps)

    def load_weights(self, vb: WeightBuilder):
        _load_embedding(self.word_embeddings, vb.pp("word_embeddings"))
        _load_embedding(self.token_type_embeddings, vb.pp("token_type_embeddings"))
        if self.position_embeddings is not None:
            _load_embedding(self.position_embeddings, vb.pp("position_embeddings"))
        self.layer_norm.load_weights(vb.pp("LayerNorm"))

    def forward(
        self,
        input_ids: torch.Tensor,
        token_type_ids: torch.Tensor,
        position_ids: torch.Tensor,
    ) -> torch.Tensor:
        """
        Args:
            input_ids, token_type_ids, position_ids: [T] int64

        Returns:
            [T, hidden_size]
        """
        embeddings = self.word_embeddings(input_ids) + self.token_type_embeddings(token_type_ids)
        if self.position_embeddings is None:
            return self.layer_norm(embeddings)
        return self.layer_norm(embeddings, self.position_embeddings(position_ids))


# ---------------------------------------------------------------------------
# BertAttention
# ---------------------------------------------------------------------------

class BertAttention(nn.Module):
    """Self-attention sublayer with output projection and residual norm.

    Query, key and value are stored as a single ``[3 * hidden, hidden]``
    projection, concatenated at load time from the checkpoint's separate
    ``self.query`` / ``self.key`` / ``self.value`` tensors.
    """

    def __init__(self, config: ModelConfig, strategy: AttentionStrategy):
        super().__init__()
        hidden = config.hidden_size
        self.hidden_size = hidden
        self.num_heads = config.num_attention_heads
        self.head_dim = config.head_dim
        self.strategy = strategy

        self.qkv = nn.Linear(hidden, 3 * hidden)
        self.dense = nn.Linear(hidden, hidden)
        self.layer_norm = ResidualLayerNorm(hidden, config.layer_norm_eps)

    def load_weights(self, vb: WeightBuilder):
        hidden = self.hidden_size
        weights, biases = [], []
        for name in ("query", "key", "value"):
            proj = vb.pp(f"self.{name}")
            weights.append(proj.get((hidden, hidden), "weight"))
            biases.append(proj.get(hidden, "bias"))
        _assign(self.qkv, "weight", torch.cat(weights, dim=0))
        _assign(self.qkv, "bias", torch.cat(biases, dim=0))

        _load_linear(self.dense, vb.pp("output.dense"))
        self.layer_norm.load_weights(vb.pp("output.LayerNorm"))

    def forward(self, hidden_states: torch.Tensor, ctx: AttentionContext) -> torch.Tensor:
        residual = hidden_states
        total = hidden_states.shape[0]

        qkv = self.qkv(hidden_states).view(total, 3 * self.num_heads, self.head_dim)
        q, k, v = qkv.chunk(3, dim=1)  # each [T, heads, head_dim]

        attention = self.strategy(q, k, v, ctx).reshape(total, self.hidden_size)

        hidden_states = self.dense(attention)
        return self.layer_norm(hidden_states, residual)


# ---------------------------------------------------------------------------
# Encoder layers
# ---------------------------------------------------------------------------

class BertLayer(nn.Module):
    """attention → (intermediate → act → output) → LayerNorm(+residual)."""

    def __init__(self, config: ModelConfig, strategy: AttentionStrategy):
        super().__init__()
        self.attention = BertAttention(config, strategy)
        self.intermediate = nn.Linear(config.hidden_size, config.intermediate_size)
        self.output = nn.Linear(config.intermediate_size, config.hidden_size)
        self.layer_norm = ResidualLayerNorm(config.hidden_size, config.layer_norm_eps)
        self.act_fn = get_activation(config.hidden_act)

    def load_weights(self, vb: WeightBuilder):
        self.attention.load_weights(vb.pp("attention"))
        _load_linear(self.intermediate, vb.pp("intermediate.dense"))
        _load_linear(self.output, vb.pp("output.dense"))
        self.layer_norm.load_weights(vb.pp("output.LayerNorm"))

    def forward(self, hidden_states: torch.Tensor, ctx: AttentionContext) -> torch.Tensor:
        hidden_states = self.attention(hidden_states, ctx)
        residual = hidden_states

        hidden_states = self.output(self.act_fn(self.intermediate(hidden_states)))
        return self.layer_norm(hidden_states, residual)


class JinaBertLayer(nn.Module):
    """attention → GLU feed-forward → LayerNorm(+residual).

    The gated projection produces ``[gate | value]`` halves:
        output = wo(act(gate) * value)
    """

    def __init__(self, config: ModelConfig, strategy: AttentionStrategy):
        super().__init__()
        self.intermediate_size = config.intermediate_size
        self.attention = BertAttention(config, strategy)
        self.gated_layers = nn.Linear(config.hidden_size, 2 * config.intermediate_size, bias=False)
        self.wo = nn.Linear(config.intermediate_size, config.hidden_size)
        self.layer_norm = ResidualLayerNorm(config.hidden_size, config.layer_norm_eps)
        self.act_fn = get_activation(config.hidden_act)

    def load_weights(self, vb: WeightBuilder):
        self.attention.load_weights(vb.pp("attention"))
        _load_linear(self.gated_layers, vb.pp("mlp.gated_layers"))
        _load_linear(self.wo, vb.pp("mlp.wo"))
        self.layer_norm.load_weights(vb.pp("mlp.layernorm"))

    def forward(self, hidden_states: torch.Tensor, ctx: AttentionContext) -> torch.Tensor:
        hidden_states = self.attention(hidden_states, ctx)
        residual = hidden_states

        gated = self.gated_layers(hidden_states)
        gate = gated[:, : self.intermediate_size]
        value = gated[:, self.intermediate_size :]
        hidden_states = self.wo(self.act_fn(gate) * value)
        return self.layer_norm(hidden_states, residual)


class BertEncoder(nn.Module):
    """Stack of ``num_hidden_layers`` layers; layer k feeds layer k+1."""

    def __init__(self, config: ModelConfig, strategy: AttentionStrategy, layer_cls=BertLayer):
        super().__init__()
        self.layers = nn.ModuleList([
            layer_cls(config, strategy) for _ in range(config.num_hidden_layers)
        ])

    def load_weights(self, vb: WeightBuilder):
        for idx, layer in enumerate(self.layers):
            layer.load_weights(vb.pp(f"layer.{idx}"))

    def forward(self, hidden_states: torch.Tensor, ctx: AttentionContext) -> torch.Tensor:
        for layer in self.layers:
            hidden_states = layer(hidden_states, ctx)
        return hidden_states


# ---------------------------------------------------------------------------
# Classification heads
# ---------------------------------------------------------------------------

def _num_labels(config: ModelConfig) -> int:
    if not config.num_labels:
        raise StartError("`id2label` must be set for classifier models")
    return config.num_labels


class BertClassificationHead(nn.Module):
    """``classifier``: [hidden] → [num_labels]."""

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.classifier = nn.Linear(config.hidden_size, _num_labels(config))

    def load_weights(self, vb: WeightBuilder):
        _load_linear(self.classifier, vb.pp("classifier"))

    def forward(self, pooled: torch.Tensor) -> torch.Tensor:
        return self.classifier(pooled)


class RobertaClassificationHead(nn.Module):
    """``classifier.dense`` → tanh → ``classifier.out_proj``."""

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.dense = nn.Linear(config.hidden_size, config.hidden_size)
        self.out_proj = nn.Linear(config.hidden_size, _num_labels(config))

    def load_weights(self, vb: WeightBuilder):
        _load_linear(self.dense, vb.pp("classifier.dense"))
        _load_linear(self.out_proj, vb.pp("classifier.out_proj"))

    def forward(self, pooled: torch.Tensor) -> torch.Tensor:
        return self.out_proj(torch.tanh(self.dense(pooled)))
