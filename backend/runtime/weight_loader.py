"""
Weight Loader — loads checkpoint tensors from safetensors or PyTorch files
and hands them to the encoder modules through prefixed views.

Checkpoints from different sources nest the same encoder under different
namespaces::

    sentence-transformers export:  "embeddings.word_embeddings.weight"
    BertModel / BertForSeq...:     "bert.embeddings.word_embeddings.weight"
    XLMRobertaForSeq...:           "roberta.embeddings.word_embeddings.weight"

``resolve_namespace`` tries an ordered list of candidate prefixes and keeps
the first one from which every required tensor resolves.

Formats supported:
  - safetensors (.safetensors) — preferred, no code execution risk
  - PyTorch (.pt / .bin)       — loaded with weights_only=True for safety
"""

from __future__ import annotations

import logging
import os
from typing import Callable, Iterable, Optional, TypeVar, Union

import torch

from backend.errors import MissingWeightError, StartError

logger = logging.getLogger("tei.weights")

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Weight file loading
# ---------------------------------------------------------------------------

def load_weight_file(path: str) -> dict[str, torch.Tensor]:
    """Load a weight file and return a flat dict of {key: tensor}.

    Automatically detects format from file extension.

    Args:
        path: Path to .safetensors, .pt, or .bin file.

    Returns:
        Dict mapping weight key names to tensors.
    """
    ext = os.path.splitext(path)[1].lower()

    if ext == ".safetensors":
        return _load_safetensors(path)
    elif ext in (".pt", ".pth", ".bin"):
        return _load_pytorch(path)
    else:
        raise ValueError(
            f"Unknown weight file format: '{ext}' for {path}. "
            f"Supported: .safetensors, .pt, .pth, .bin"
        )


def _load_safetensors(path: str) -> dict[str, torch.Tensor]:
    """Load weights from safetensors format (safe — no code execution)."""
    from safetensors.torch import load_file

    return load_file(path, device="cpu")


def _load_pytorch(path: str) -> dict[str, torch.Tensor]:
    """Load weights from PyTorch format (uses weights_only=True for safety)."""
    return torch.load(path, map_location="cpu", weights_only=True)


def find_weight_file(model_dir: str, candidates: Iterable[str]) -> str:
    """Return the first existing weight file in ``model_dir``."""
    tried = []
    for name in candidates:
        path = os.path.join(model_dir, name)
        if os.path.isfile(path):
            return path
        tried.append(name)
    raise StartError(f"No weight file found in {model_dir} (tried {', '.join(tried)})")


# ---------------------------------------------------------------------------
# Prefixed tensor access
# ---------------------------------------------------------------------------

class WeightBuilder:
    """Read-only, prefixed view over a checkpoint state dict.

    ``pp`` pushes a namespace segment; ``get`` fetches a tensor under the
    current namespace, checks its shape, and casts it to the target dtype
    and device::

        vb = WeightBuilder(state_dict, torch.float16, torch.device("cuda"))
        q = vb.pp("encoder").pp("layer.0.attention.self.query").get((384, 384), "weight")

    Integer tensors (e.g. position_ids buffers) are never cast.
    """

    def __init__(
        self,
        tensors: dict[str, torch.Tensor],
        dtype: torch.dtype,
        device: torch.device,
        prefix: str = "",
    ):
        self._tensors = tensors
        self.dtype = dtype
        self.device = device
        self.prefix = prefix

    def pp(self, name: str) -> "WeightBuilder":
        if not name:
            return self
        prefix = f"{self.prefix}.{name}" if self.prefix else name
        return WeightBuilder(self._tensors, self.dtype, self.device, prefix)

    def key(self, name: str) -> str:
        return f"{self.prefix}.{name}" if self.prefix else name

    def contains(self, name: str) -> bool:
        return self.key(name) in self._tensors

    def get(self, shape: Union[int, tuple[int, ...]], name: str) -> torch.Tensor:
        key = self.key(name)
        tensor = self._tensors.get(key)
        if tensor is None:
            raise MissingWeightError(f"cannot find tensor {key}")
        expected = (shape,) if isinstance(shape, int) else tuple(shape)
        if tuple(tensor.shape) != expected:
            raise MissingWeightError(
                f"shape mismatch for {key}, expected {list(expected)}, "
                f"got {list(tensor.shape)}"
            )
        if tensor.is_floating_point():
            tensor = tensor.to(dtype=self.dtype)
        return tensor.to(device=self.device)


# ---------------------------------------------------------------------------
# Namespace fallback
# ---------------------------------------------------------------------------

def namespace_candidates(model_type: Optional[str], fallback: str) -> list[str]:
    """Ordered, de-duplicated prefixes: bare, family-specific, fixed alternate."""
    ordered = ["", model_type or "bert", fallback]
    seen: list[str] = []
    for prefix in ordered:
        if prefix not in seen:
            seen.append(prefix)
    return seen


def resolve_namespace(
    vb: WeightBuilder,
    candidates: list[str],
    load: Callable[[WeightBuilder], T],
) -> T:
    """Run ``load`` under each candidate prefix until one succeeds.

    Returns the first successful result.  If every candidate fails, the last
    MissingWeightError is re-raised.
    """
    last_error: Optional[MissingWeightError] = None
    for prefix in candidates:
        try:
            result = load(vb.pp(prefix))
        except MissingWeightError as e:
            logger.debug("Weight namespace '%s' did not resolve: %s", prefix, e)
            last_error = e
            continue
        if prefix:
            logger.info("Loaded encoder weights from namespace '%s'", prefix)
        return result
    raise last_error
