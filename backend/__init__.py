"""
Batched inference backend for BERT-family encoders.

Packs variable-length tokenized requests into one buffer, runs the encoder
once, and returns per-request pooled vectors, per-token sequences, or
classification logits.

  batch      — PackedBatch contract and result types
  engine     — InferenceEngine (construct / health / is_padded / embed / predict)
  dispatch   — one-time model variant selection
  runtime/   — encoder building blocks, pooling, weight loading
"""

from backend.batch import (
    ModelType, OutputMode, PackedBatch, Pool, Pooled, Raw, Request,
)
from backend.errors import (
    BackendError, InferenceError, StartError, UnsupportedOperationError,
)

__all__ = [
    "BackendError", "InferenceError", "ModelType", "OutputMode", "PackedBatch",
    "Pool", "Pooled", "Raw", "Request", "StartError", "UnsupportedOperationError",
]
