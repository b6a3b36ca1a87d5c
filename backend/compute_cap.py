"""
Accelerator capability probing for the fused attention path.

The flash-attention kernels are built for one CUDA compute capability.  A
GPU whose capability is outside the range that build supports must be
rejected when the backend starts, not on the first request.
"""

from typing import Optional

import torch

import config as global_config


def get_runtime_compute_cap(device_index: int = 0) -> Optional[int]:
    """Compute capability of the visible GPU as an int (8.6 -> 86), or None."""
    if not torch.cuda.is_available():
        return None
    major, minor = torch.cuda.get_device_capability(device_index)
    return major * 10 + minor


def get_compile_compute_cap() -> Optional[int]:
    """Capability the fused kernels were built for (``CUDA_COMPUTE_CAP``), or None."""
    return global_config.compile_compute_cap()


def compatible_compute_cap(runtime: int, compile: int) -> bool:
    """Whether kernels built for ``compile`` run on a ``runtime`` GPU."""
    if runtime == compile and runtime in (75, 89, 90):
        return True
    if 80 <= runtime <= 89 and compile == 80:
        return True
    if 86 <= runtime <= 89 and 80 <= compile <= 86:
        return True
    return False


def incompatible_compute_cap() -> bool:
    """True when both capabilities are known and do not match.

    Without ``CUDA_COMPUTE_CAP`` there is no build target to check against.
    """
    runtime = get_runtime_compute_cap()
    compile = get_compile_compute_cap()
    if runtime is None or compile is None:
        return False
    return not compatible_compute_cap(runtime, compile)
