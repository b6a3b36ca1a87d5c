"""Unit tests for the padded and fused varlen attention strategies."""

import importlib.util
import math

import pytest
import torch

from backend.runtime.attention import (
    FlashVarlenAttention, PaddedAttention, alibi_slopes,
)

HEADS = 4
HEAD_DIM = 8
CU = [0, 3, 8, 10]
MAX_S = 5


def _qkv(total=CU[-1], seed=0, dtype=torch.float32, device="cpu"):
    g = torch.Generator().manual_seed(seed)
    return tuple(
        torch.randn(total, HEADS, HEAD_DIM, generator=g).to(device=device, dtype=dtype)
        for _ in range(3)
    )


def _run(strategy, q, k, v, cu=CU, max_s=MAX_S):
    ctx = strategy.prepare(cu, max_s, q.device, q.dtype)
    return strategy(q, k, v, ctx)


# ---------------------------------------------------------------------------
# ALiBi slopes
# ---------------------------------------------------------------------------

class TestAlibiSlopes:

    def test_power_of_two(self):
        assert alibi_slopes(4) == pytest.approx([2 ** -2, 2 ** -4, 2 ** -6, 2 ** -8])
        assert alibi_slopes(8) == pytest.approx([2 ** -(i + 1) for i in range(8)])

    def test_non_power_of_two_interleaves(self):
        slopes = alibi_slopes(12)
        assert len(slopes) == 12
        assert slopes[:8] == pytest.approx(alibi_slopes(8))
        assert slopes[8:] == pytest.approx([2 ** -0.5, 2 ** -1.5, 2 ** -2.5, 2 ** -3.5])

    def test_slopes_are_positive_and_decreasing_within_base(self):
        slopes = alibi_slopes(16)
        assert all(s > 0 for s in slopes)
        assert slopes == sorted(slopes, reverse=True)


# ---------------------------------------------------------------------------
# PaddedAttention
# ---------------------------------------------------------------------------

class TestPaddedAttention:

    def test_matches_per_request_attention(self, reference_varlen):
        q, k, v = _qkv()
        strategy = PaddedAttention(HEADS, HEAD_DIM)
        out = _run(strategy, q, k, v)

        cu = torch.tensor(CU, dtype=torch.int32)
        expected = reference_varlen(
            q, k, v, cu, cu, MAX_S, MAX_S, softmax_scale=1.0 / math.sqrt(HEAD_DIM)
        )
        assert out.shape == q.shape
        assert torch.allclose(out, expected, atol=1e-5)

    def test_requests_do_not_attend_across_boundaries(self):
        q, k, v = _qkv()
        strategy = PaddedAttention(HEADS, HEAD_DIM)
        before = _run(strategy, q, k, v)

        # Perturb request 1 (tokens 3..8) only
        k2, v2 = k.clone(), v.clone()
        k2[3:8] += 5.0
        v2[3:8] -= 5.0
        after = _run(strategy, q, k2, v2)

        assert torch.allclose(before[0:3], after[0:3])
        assert torch.allclose(before[8:10], after[8:10])
        assert not torch.allclose(before[3:8], after[3:8])

    def test_alibi_matches_reference(self, reference_varlen):
        q, k, v = _qkv(seed=1)
        slopes = alibi_slopes(HEADS)
        strategy = PaddedAttention(HEADS, HEAD_DIM, slopes)
        out = _run(strategy, q, k, v)

        cu = torch.tensor(CU, dtype=torch.int32)
        expected = reference_varlen(
            q, k, v, cu, cu, MAX_S, MAX_S,
            softmax_scale=1.0 / math.sqrt(HEAD_DIM),
            alibi_slopes=torch.tensor(slopes, dtype=torch.float32),
        )
        assert torch.allclose(out, expected, atol=1e-5)

    def test_prepare_indices_and_mask(self):
        strategy = PaddedAttention(HEADS, HEAD_DIM)
        ctx = strategy.prepare([0, 2, 5], 3, torch.device("cpu"), torch.float32)
        assert ctx.batch_size == 2
        assert ctx.indices.tolist() == [0, 1, 3, 4, 5]
        # Request 0 has one padded key slot
        assert ctx.mask[0, 0, 0].tolist() == [0.0, 0.0, float("-inf")]
        assert ctx.mask[1, 0, 0].tolist() == [0.0, 0.0, 0.0]

    def test_is_padded(self):
        assert PaddedAttention(HEADS, HEAD_DIM).is_padded
        assert PaddedAttention(HEADS, HEAD_DIM).softmax_scale == pytest.approx(HEAD_DIM ** -0.5)


# ---------------------------------------------------------------------------
# FlashVarlenAttention
# ---------------------------------------------------------------------------

class _RecordingKernel:
    def __init__(self, tuple_output=False):
        self.calls = []
        self.tuple_output = tuple_output

    def __call__(self, q, k, v, **kwargs):
        self.calls.append(kwargs)
        out = torch.zeros_like(q)
        return (out, None) if self.tuple_output else out


class TestFlashVarlenAttention:

    def test_kernel_arguments(self):
        kernel = _RecordingKernel()
        strategy = FlashVarlenAttention(HEADS, HEAD_DIM, kernel=kernel)
        q, k, v = _qkv()
        out = _run(strategy, q, k, v)

        assert out.shape == q.shape
        kwargs = kernel.calls[0]
        assert kwargs["cu_seqlens_q"].dtype == torch.int32
        assert kwargs["cu_seqlens_q"].tolist() == CU
        assert kwargs["cu_seqlens_k"] is kwargs["cu_seqlens_q"]
        assert kwargs["max_seqlen_q"] == kwargs["max_seqlen_k"] == MAX_S
        assert kwargs["softmax_scale"] == pytest.approx(1.0 / math.sqrt(HEAD_DIM))
        assert kwargs["causal"] is False
        assert "alibi_slopes" not in kwargs

    def test_alibi_slopes_are_fp32(self):
        kernel = _RecordingKernel()
        strategy = FlashVarlenAttention(HEADS, HEAD_DIM, alibi_slopes(HEADS), kernel=kernel)
        q, k, v = _qkv(dtype=torch.float16)
        _run(strategy, q, k, v)

        slopes = kernel.calls[0]["alibi_slopes"]
        assert slopes.dtype == torch.float32
        assert slopes.tolist() == pytest.approx(alibi_slopes(HEADS))

    def test_tuple_output_is_unwrapped(self):
        strategy = FlashVarlenAttention(HEADS, HEAD_DIM, kernel=_RecordingKernel(tuple_output=True))
        q, k, v = _qkv()
        assert isinstance(_run(strategy, q, k, v), torch.Tensor)

    def test_not_padded(self):
        strategy = FlashVarlenAttention(HEADS, HEAD_DIM, kernel=_RecordingKernel())
        assert not strategy.is_padded

    @pytest.mark.parametrize("alibi", [False, True])
    def test_matches_padded_strategy(self, reference_varlen, alibi):
        slopes = alibi_slopes(HEADS) if alibi else None
        q, k, v = _qkv(seed=2)
        fused = _run(FlashVarlenAttention(HEADS, HEAD_DIM, slopes, kernel=reference_varlen), q, k, v)
        padded = _run(PaddedAttention(HEADS, HEAD_DIM, slopes), q, k, v)
        assert torch.allclose(fused, padded, atol=1e-5)


@pytest.mark.skipif(
    not torch.cuda.is_available() or importlib.util.find_spec("flash_attn") is None,
    reason="requires CUDA and flash-attn",
)
class TestFlashKernelParity:

    @pytest.mark.parametrize("alibi", [False, True])
    def test_flash_matches_padded(self, alibi):
        slopes = alibi_slopes(HEADS) if alibi else None
        q, k, v = _qkv(seed=3, dtype=torch.float16, device="cuda")
        fused = _run(FlashVarlenAttention(HEADS, HEAD_DIM, slopes), q, k, v)
        padded = _run(PaddedAttention(HEADS, HEAD_DIM, slopes), q, k, v)
        assert torch.allclose(fused.float(), padded.float(), atol=2e-3, rtol=1e-2)
