"""
Inference engine — the surface a serving layer talks to.

    engine = InferenceEngine("/models/bge-small-en", "float16", ModelType.embedding("cls"))
    engine.health()
    engine.is_padded()
    engine.embed(batch)    -> {request_index: Pooled | Raw}
    engine.predict(batch)  -> {request_index: logits}

Construction reads ``config.json`` and the weight file, probes the device,
and picks a model variant.  Any failure there is a StartError.  Calls are
synchronous and independent: a failed call raises InferenceError and leaves
the engine usable.
"""

from __future__ import annotations

import functools
import logging
import os
import pickle
from typing import Callable, Optional, TypeVar

import torch
from safetensors import SafetensorError

import config as global_config
from backend.batch import Embeddings, ModelType, PackedBatch, Pooled, Predictions, Raw
from backend.dispatch import load_model, select_device
from backend.errors import InferenceError, MissingWeightError, StartError
from backend.model_config import ModelConfig
from backend.runtime.pooling import split_raw
from backend.runtime.weight_loader import WeightBuilder, find_weight_file, load_weight_file

logger = logging.getLogger("tei.engine")

T = TypeVar("T")

# Corrupt or unreadable checkpoints surface as one of these
_WEIGHT_LOAD_ERRORS = (OSError, ValueError, RuntimeError, pickle.UnpicklingError, SafetensorError)

_DTYPES = {
    "float32": torch.float32,
    "float16": torch.float16,
}


def _inference_errors(func: Callable[..., T]) -> Callable[..., T]:
    """Surface compute-library failures as InferenceError."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> T:
        try:
            return func(*args, **kwargs)
        except InferenceError:
            raise
        except (RuntimeError, ValueError, IndexError) as e:
            raise InferenceError(str(e)) from e

    return wrapper


def _to_host(tensor: Optional[torch.Tensor]) -> list:
    """Device → host transfer as float32 rows."""
    if tensor is None:
        return []
    return tensor.to(torch.float32).cpu().tolist()


class InferenceEngine:
    """Batched BERT-family encoder backend.

    Args:
        model_path: Directory holding ``config.json`` and a weight file.
        dtype: "float32" or "float16".
        model_type: Embedding model (with its pooling) or classifier.
        device: Force a device instead of probing (CUDA → MPS → CPU).
    """

    def __init__(
        self,
        model_path: str,
        dtype: str = global_config.DEFAULT_DTYPE,
        model_type: ModelType = ModelType.embedding(),
        device: Optional[torch.device] = None,
    ):
        self.config = ModelConfig.from_json(os.path.join(model_path, global_config.CONFIG_FILE))

        if self.config.model_type not in global_config.SUPPORTED_MODEL_TYPES:
            raise StartError(f"Model {self.config.model_type!r} is not supported")

        torch_dtype = _DTYPES.get(dtype)
        if torch_dtype is None:
            raise StartError(f"DType {dtype} is not supported")

        self.device = device if device is not None else select_device()
        self.model_type = model_type

        weight_path = find_weight_file(model_path, global_config.WEIGHT_FILES)
        try:
            state_dict = load_weight_file(weight_path)
        except _WEIGHT_LOAD_ERRORS as e:
            raise StartError(f"Could not load weights from {weight_path}: {e}") from e

        vb = WeightBuilder(state_dict, torch_dtype, self.device)
        try:
            self.model = load_model(vb, self.config, model_type)
        except MissingWeightError as e:
            raise StartError(str(e)) from e
        except RuntimeError as e:
            # device allocation failures
            raise StartError(str(e)) from e

        logger.info(
            "Loaded %s (%s, %d layers, hidden=%d) from %s",
            self.config.family, dtype, self.config.num_hidden_layers,
            self.config.hidden_size, model_path,
        )

    def health(self) -> bool:
        return True

    def is_padded(self) -> bool:
        return self.model.is_padded()

    @_inference_errors
    def embed(self, batch: PackedBatch) -> Embeddings:
        """One entry per request: Pooled for pooled_indices, Raw for raw_indices."""
        batch.validate()
        if len(batch) == 0:
            return {}

        pooled, raw = self.model.embed(batch)

        pooled_rows = _to_host(pooled)
        # This transfer is expensive for long raw requests
        raw_rows = _to_host(raw)

        embeddings: Embeddings = {}
        for i, values in zip(batch.pooled_indices, pooled_rows):
            embeddings[i] = Pooled(values)
        for i, tokens in split_raw(raw_rows, batch).items():
            embeddings[i] = Raw(tokens)
        return embeddings

    @_inference_errors
    def predict(self, batch: PackedBatch) -> Predictions:
        """Class logits for every request in the batch."""
        batch.validate()
        results = _to_host(self.model.predict(batch))
        return {i: logits for i, logits in enumerate(results)}
