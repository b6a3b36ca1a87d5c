"""
Embedding backend - process configuration

Defaults for model loading and attention dispatch.  Every value can be
overridden from the environment so a serving layer never needs to pass them
explicitly.
"""

import os

# Model families whose checkpoints share the BERT encoder layout
SUPPORTED_MODEL_TYPES = ("bert", "xlm-roberta", "camembert", "roberta", "jina_bert")

# Numeric precisions the backend can load weights in
SUPPORTED_DTYPES = ("float32", "float16")
DEFAULT_DTYPE = os.environ.get("TEI_DTYPE", "float32")

# Weight files looked up inside a model directory, in order of preference
WEIGHT_FILES = ("model.safetensors", "pytorch_model.bin")
CONFIG_FILE = "config.json"

# Alternate namespace tried after the bare and family-specific prefixes
FALLBACK_WEIGHT_PREFIX = "roberta"


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() == "true"


def use_flash_attention() -> bool:
    """Whether the fused varlen attention path may be selected.

    Read at model load, not at import, so a process can flip it before
    constructing a backend.
    """
    return _env_flag("USE_FLASH_ATTENTION", "True")


def compile_compute_cap():
    """Compute capability the fused kernels were built for, or None."""
    value = os.environ.get("CUDA_COMPUTE_CAP", "").strip()
    if not value:
        return None
    return int(value.replace(".", ""))


# --- Logging ---
LOG_LEVEL = os.environ.get("TEI_LOG_LEVEL", "INFO").upper()
