"""
Model configuration — parsed from a checkpoint's ``config.json``.

Only the keys the encoder needs are read; anything else in the file is
ignored.  Missing required keys or malformed JSON raise StartError.

Usage:
    cfg = ModelConfig.from_json("/models/bge-small/config.json")
    cfg.head_dim, cfg.position_embedding_type, cfg.num_labels
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, fields
from typing import Optional

from backend.errors import StartError


class PositionEmbeddingType(enum.Enum):
    ABSOLUTE = "absolute"
    ALIBI = "alibi"


_REQUIRED = (
    "hidden_size",
    "num_attention_heads",
    "num_hidden_layers",
    "intermediate_size",
    "vocab_size",
)

_POSITIVE_INTS = _REQUIRED + ("max_position_embeddings", "type_vocab_size")


@dataclass
class ModelConfig:
    """Architecture numbers for a BERT-family encoder."""

    hidden_size: int
    num_attention_heads: int
    num_hidden_layers: int
    intermediate_size: int
    vocab_size: int
    max_position_embeddings: int = 512
    type_vocab_size: int = 2
    hidden_act: str = "gelu"
    layer_norm_eps: float = 1e-12
    position_embedding_type: PositionEmbeddingType = PositionEmbeddingType.ABSOLUTE
    model_type: Optional[str] = None
    id2label: Optional[dict[str, str]] = None
    pad_token_id: int = 0

    def __post_init__(self):
        for name in _POSITIVE_INTS:
            value = getattr(self, name)
            # bool is an int subclass; reject it explicitly
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise StartError(f"{name} must be a positive integer, got {value!r}")
        if isinstance(self.position_embedding_type, str):
            try:
                self.position_embedding_type = PositionEmbeddingType(
                    self.position_embedding_type
                )
            except ValueError:
                raise StartError(
                    f"Unsupported position_embedding_type "
                    f"'{self.position_embedding_type}'"
                )
        if self.hidden_size % self.num_attention_heads != 0:
            raise StartError(
                f"hidden_size {self.hidden_size} is not divisible by "
                f"num_attention_heads {self.num_attention_heads}"
            )

    @property
    def head_dim(self) -> int:
        return self.hidden_size // self.num_attention_heads

    @property
    def num_labels(self) -> Optional[int]:
        return len(self.id2label) if self.id2label else None

    @property
    def family(self) -> str:
        return self.model_type or "bert"

    @classmethod
    def from_dict(cls, data: dict) -> "ModelConfig":
        missing = [k for k in _REQUIRED if k not in data]
        if missing:
            raise StartError(f"config.json is missing required keys: {missing}")
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_json(cls, path: str) -> "ModelConfig":
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StartError(f"Could not read model config {path}: {e}") from e
        if not isinstance(data, dict):
            raise StartError(f"Model config {path} is not a JSON object")
        return cls.from_dict(data)
