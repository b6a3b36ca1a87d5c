"""
Attention strategies over a packed token buffer.

Both strategies take per-head projections laid out as ``[T, heads, head_dim]``
for the whole packed batch and return the attention output in the same
layout.  Attention is bidirectional and never crosses a request boundary.

  PaddedAttention       — scatters tokens into ``[R, heads, max_s, head_dim]``,
                          masks padded keys, runs SDPA, gathers back.  Any device.
  FlashVarlenAttention  — calls flash-attention's varlen kernel directly on the
                          packed buffer with ``cu_seqlens`` as segment bounds.
                          CUDA + float16 only.

The strategy is chosen once when a model is built; ``prepare`` is called once
per forward pass and its context is shared by every layer.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Optional

import torch
import torch.nn.functional as F


# ---------------------------------------------------------------------------
# ALiBi slopes
# ---------------------------------------------------------------------------

def _power_of_two_slopes(n: int) -> list[float]:
    start = 2 ** (-(2 ** -(math.log2(n) - 3)))
    return [start * start ** i for i in range(n)]


def alibi_slopes(num_heads: int) -> list[float]:
    """Per-head ALiBi slopes (geometric sequence, interleaved for non powers of 2)."""
    if math.log2(num_heads).is_integer():
        return _power_of_two_slopes(num_heads)
    closest = 2 ** math.floor(math.log2(num_heads))
    extra = _power_of_two_slopes(2 * closest)[0::2][: num_heads - closest]
    return _power_of_two_slopes(closest) + extra


# ---------------------------------------------------------------------------
# Per-forward context
# ---------------------------------------------------------------------------

@dataclass
class AttentionContext:
    """Segment metadata shared by every layer of one forward pass."""

    cu_seqlens: torch.Tensor          # [R + 1] int32
    max_s: int
    batch_size: int
    # Padded strategy only
    indices: Optional[torch.Tensor] = None   # [T] flat slot of each token in [R * max_s]
    mask: Optional[torch.Tensor] = None      # additive, broadcastable to [R, heads, max_s, max_s]
    # Fused strategy only
    slopes: Optional[torch.Tensor] = None    # [heads] fp32 ALiBi slopes


class AttentionStrategy:
    """Common surface of the two strategies."""

    is_padded: bool = False

    def __init__(self, num_heads: int, head_dim: int, slopes: Optional[list[float]] = None):
        self.num_heads = num_heads
        self.head_dim = head_dim
        self.softmax_scale = 1.0 / math.sqrt(head_dim)
        self.slopes = slopes

    def prepare(
        self,
        cu_seqlens: list[int],
        max_s: int,
        device: torch.device,
        dtype: torch.dtype,
    ) -> AttentionContext:
        raise NotImplementedError

    def __call__(
        self,
        q: torch.Tensor,
        k: torch.Tensor,
        v: torch.Tensor,
        ctx: AttentionContext,
    ) -> torch.Tensor:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Generic strategy — padded + masked SDPA
# ---------------------------------------------------------------------------

class PaddedAttention(AttentionStrategy):
    """Masked attention on a padded copy of the packed buffer.

    Token ``t`` of request ``i`` lands in slot ``i * max_s + (t - cu[i])``.
    Keys in padded slots get ``-inf``; queries in padded slots are computed
    and then dropped by the gather.
    """

    is_padded = True

    def prepare(self, cu_seqlens, max_s, device, dtype):
        batch_size = len(cu_seqlens) - 1
        cu = torch.tensor(cu_seqlens, dtype=torch.long, device=device)
        lengths = cu[1:] - cu[:-1]
        total = int(cu[-1].item())

        # Position of each token inside its own request
        starts = cu[:-1].repeat_interleave(lengths)
        local_pos = torch.arange(total, device=device) - starts
        request_idx = torch.arange(batch_size, device=device).repeat_interleave(lengths)
        indices = request_idx * max_s + local_pos

        valid = torch.arange(max_s, device=device)[None, :] < lengths[:, None]  # [R, max_s]
        mask = torch.where(
            valid[:, None, None, :],
            torch.tensor(0.0, device=device, dtype=dtype),
            torch.tensor(float("-inf"), device=device, dtype=dtype),
        )  # [R, 1, 1, max_s]

        if self.slopes is not None:
            pos = torch.arange(max_s, device=device)
            distance = (pos[None, :] - pos[:, None]).abs().to(dtype)  # [max_s, max_s]
            slopes = torch.tensor(self.slopes, device=device, dtype=dtype)
            bias = -slopes[:, None, None] * distance[None, :, :]      # [heads, max_s, max_s]
            mask = mask + bias[None]

        return AttentionContext(
            cu_seqlens=cu.to(torch.int32),
            max_s=max_s,
            batch_size=batch_size,
            indices=indices,
            mask=mask,
        )

    def _pad(self, x: torch.Tensor, ctx: AttentionContext) -> torch.Tensor:
        buf = x.new_zeros(ctx.batch_size * ctx.max_s, self.num_heads, self.head_dim)
        buf[ctx.indices] = x
        # [R, max_s, heads, hd] -> [R, heads, max_s, hd]
        return buf.view(ctx.batch_size, ctx.max_s, self.num_heads, self.head_dim).transpose(1, 2)

    def __call__(self, q, k, v, ctx):
        q, k, v = self._pad(q, ctx), self._pad(k, ctx), self._pad(v, ctx)

        out = F.scaled_dot_product_attention(
            q, k, v,
            attn_mask=ctx.mask,
            is_causal=False,
            scale=self.softmax_scale,
        )

        out = out.transpose(1, 2).reshape(ctx.batch_size * ctx.max_s, self.num_heads, self.head_dim)
        return out[ctx.indices]


# ---------------------------------------------------------------------------
# Fused strategy — flash-attention varlen
# ---------------------------------------------------------------------------

class FlashVarlenAttention(AttentionStrategy):
    """flash_attn_varlen_func over the packed buffer, no padding.

    Args:
        kernel: varlen attention callable with flash-attention's signature.
            Defaults to ``flash_attn.flash_attn_varlen_func``.
    """

    is_padded = False

    def __init__(
        self,
        num_heads: int,
        head_dim: int,
        slopes: Optional[list[float]] = None,
        kernel: Optional[Callable[..., torch.Tensor]] = None,
    ):
        super().__init__(num_heads, head_dim, slopes)
        if kernel is None:
            from flash_attn import flash_attn_varlen_func as kernel
        self._kernel = kernel

    def prepare(self, cu_seqlens, max_s, device, dtype):
        slopes = None
        if self.slopes is not None:
            # flash-attention wants fp32 slopes on the same device
            slopes = torch.tensor(self.slopes, dtype=torch.float32, device=device)
        return AttentionContext(
            cu_seqlens=torch.tensor(cu_seqlens, dtype=torch.int32, device=device),
            max_s=max_s,
            batch_size=len(cu_seqlens) - 1,
            slopes=slopes,
        )

    def __call__(self, q, k, v, ctx):
        kwargs = dict(
            cu_seqlens_q=ctx.cu_seqlens,
            cu_seqlens_k=ctx.cu_seqlens,
            max_seqlen_q=ctx.max_s,
            max_seqlen_k=ctx.max_s,
            softmax_scale=self.softmax_scale,
            causal=False,
        )
        if ctx.slopes is not None:
            kwargs["alibi_slopes"] = ctx.slopes

        out = self._kernel(q, k, v, **kwargs)
        if isinstance(out, tuple):
            out = out[0]
        return out
