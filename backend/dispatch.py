"""
Model variant dispatch — one-time selection at load.

Four variants cross two axes:

                      PaddedAttention     FlashVarlenAttention
    absolute          Bert                FlashBert
    alibi             JinaBert            FlashJinaBert

The fused column needs a CUDA device, float16 weights, the flash-attention
package, and ``USE_FLASH_ATTENTION`` not set to false.  Everything else runs
the padded column.  The choice is never revisited after construction.
"""

from __future__ import annotations

import importlib.util
import logging
from dataclasses import dataclass

import torch

import config as global_config
from backend.batch import ModelType
from backend.compute_cap import (
    get_compile_compute_cap, get_runtime_compute_cap, incompatible_compute_cap,
)
from backend.errors import StartError
from backend.model_config import ModelConfig, PositionEmbeddingType
from backend.runtime.attention import (
    AttentionStrategy, FlashVarlenAttention, PaddedAttention, alibi_slopes,
)
from backend.runtime.models import BertModel, JinaBertModel
from backend.runtime.weight_loader import WeightBuilder

logger = logging.getLogger("tei.dispatch")


@dataclass(frozen=True)
class Variant:
    """A (position embedding, attention strategy) pair."""

    model_cls: type
    flash: bool

    @property
    def name(self) -> str:
        return ("Flash" if self.flash else "") + self.model_cls.name


def select_device() -> torch.device:
    """CUDA if present, then Apple MPS, then CPU."""
    if torch.cuda.is_available():
        return torch.device("cuda", 0)
    mps = getattr(torch.backends, "mps", None)
    if mps is not None and mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


def flash_attention_available() -> bool:
    return importlib.util.find_spec("flash_attn") is not None


def select_variant(
    device: torch.device,
    dtype: torch.dtype,
    position_embedding_type: PositionEmbeddingType,
    flash_available: bool,
    use_flash_attention: bool,
) -> Variant:
    """Pure selection rule; all inputs are probed by the caller."""
    if position_embedding_type is PositionEmbeddingType.ALIBI:
        model_cls = JinaBertModel
    else:
        model_cls = BertModel

    flash = (
        device.type == "cuda"
        and dtype == torch.float16
        and flash_available
        # Can be disabled because of flash attention precision problems
        and use_flash_attention
    )
    return Variant(model_cls=model_cls, flash=flash)


def build_strategy(variant: Variant, config: ModelConfig) -> AttentionStrategy:
    slopes = None
    if config.position_embedding_type is PositionEmbeddingType.ALIBI:
        slopes = alibi_slopes(config.num_attention_heads)
    if variant.flash:
        try:
            return FlashVarlenAttention(config.num_attention_heads, config.head_dim, slopes)
        except ImportError as e:
            # Installed but built against another torch / CUDA
            raise StartError(f"flash-attention is installed but failed to import: {e}") from e
    return PaddedAttention(config.num_attention_heads, config.head_dim, slopes)


def load_model(vb: WeightBuilder, config: ModelConfig, model_type: ModelType):
    """Probe the runtime, pick a variant, and load it from ``vb``."""
    device = vb.device

    if device.type == "cuda" and incompatible_compute_cap():
        raise StartError(
            f"Runtime compute cap {get_runtime_compute_cap()} is not compatible "
            f"with compile time compute cap {get_compile_compute_cap()}"
        )

    variant = select_variant(
        device,
        vb.dtype,
        config.position_embedding_type,
        flash_attention_available(),
        global_config.use_flash_attention(),
    )
    logger.info("Starting %s model on %s", variant.name, device)

    strategy = build_strategy(variant, config)
    return variant.model_cls.load(vb, config, model_type, strategy)
