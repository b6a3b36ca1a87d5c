"""
Pooling / extraction — turns packed encoder output into per-request results.

Input is the encoder output ``[T, hidden]`` for a whole packed batch.  Output
is a pair ``(pooled, raw)``:

  pooled — ``[len(pooled_indices), hidden]``, one row per pooled request in
           ``pooled_indices`` order, or None when nothing is pooled.
  raw    — ``[sum of raw request lengths, hidden]``, the tokens of every raw
           request in ``raw_indices`` order, or None when nothing is raw.

``split_raw`` re-slices the raw rows (after the host transfer) into one
token sequence per raw request.
"""

from __future__ import annotations

from typing import Optional, TypeVar

import torch

from backend.batch import PackedBatch, Pool
from backend.errors import InferenceError

T = TypeVar("T")


def cls_pool(outputs: torch.Tensor, batch: PackedBatch) -> torch.Tensor:
    """Row at each pooled request's first token."""
    cls_indices = batch.cumulative_seq_lengths[: len(batch)]
    if batch.raw_indices:
        # Offsets span the whole batch; keep only requests that want pooling
        cls_indices = [cls_indices[i] for i in batch.pooled_indices]
    index = torch.tensor(cls_indices, dtype=torch.long, device=outputs.device)
    return outputs.index_select(0, index)


def mean_pool(outputs: torch.Tensor, batch: PackedBatch) -> torch.Tensor:
    """Arithmetic mean of each pooled request's own token rows."""
    if len(batch) == 1:
        # A single request spans the whole buffer, so its length is max_length
        length = batch.cumulative_seq_lengths[1] - batch.cumulative_seq_lengths[0]
        if batch.max_length != length:
            raise InferenceError(
                f"max_length {batch.max_length} does not match the length "
                f"{length} of the only request in the batch"
            )
        return outputs.sum(dim=0, keepdim=True) / batch.max_length

    cu = batch.cumulative_seq_lengths
    results = []
    for i in batch.pooled_indices:
        start = cu[i]
        length = cu[i + 1] - start
        rows = outputs.narrow(0, start, length)
        results.append(rows.sum(dim=0, keepdim=True) / length)
    return torch.cat(results, dim=0)


def raw_rows(outputs: torch.Tensor, batch: PackedBatch) -> torch.Tensor:
    """Token rows of every raw request, in ``raw_indices`` then token order."""
    if len(batch) > 1 and batch.pooled_indices:
        cu = batch.cumulative_seq_lengths
        final_indices: list[int] = []
        for i in batch.raw_indices:
            final_indices.extend(range(cu[i], cu[i + 1]))
        index = torch.tensor(final_indices, dtype=torch.long, device=outputs.device)
        return outputs.index_select(0, index)
    # Every token belongs to a raw request, already in order
    return outputs


def extract(
    outputs: torch.Tensor,
    batch: PackedBatch,
    pool: Pool,
) -> tuple[Optional[torch.Tensor], Optional[torch.Tensor]]:
    """Split encoder output into (pooled, raw) according to the batch's modes."""
    pooled = None
    if batch.pooled_indices:
        if pool is Pool.CLS:
            pooled = cls_pool(outputs, batch)
        else:
            pooled = mean_pool(outputs, batch)

    raw = None
    if batch.raw_indices:
        raw = raw_rows(outputs, batch)

    return pooled, raw


def split_raw(rows: list[T], batch: PackedBatch) -> dict[int, list[T]]:
    """Slice flat raw rows back into ``{request_index: token rows}``."""
    lengths = batch.input_lengths()
    result: dict[int, list[T]] = {}
    offset = 0
    for i in batch.raw_indices:
        length = lengths[i]
        result[i] = rows[offset : offset + length]
        offset += length
    if offset != len(rows):
        raise InferenceError(
            f"raw output has {len(rows)} rows but raw requests own {offset} tokens"
        )
    return result
