"""
Packed batch contract between the batching layer and the backend.

R tokenized requests are concatenated into flat id arrays.  Request ``i``
owns the token range ``[cumulative_seq_lengths[i], cumulative_seq_lengths[i+1])``::

    lengths                = [3, 5]
    cumulative_seq_lengths = [0, 3, 8]
    input_ids              = [a0 a1 a2 | b0 b1 b2 b3 b4]

Every request declares up front whether it wants a single pooled vector or
its full per-token sequence.  The two index lists partition ``range(R)``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional, Union

from backend.errors import InvalidBatchError


# ---------------------------------------------------------------------------
# Request / model enums
# ---------------------------------------------------------------------------

class OutputMode(enum.Enum):
    """What a single request wants back from ``embed``."""

    POOLED = "pooled"
    RAW = "raw"


class Pool(enum.Enum):
    """Pooling reduction, fixed per loaded model."""

    CLS = "cls"
    MEAN = "mean"


@dataclass(frozen=True)
class ModelType:
    """What the backend is constructed for.

    An embedding model pools with ``pool``; a classifier always pools with
    CLS and carries a classification head.
    """

    classifier: bool = False
    pool: Pool = Pool.CLS

    @classmethod
    def embedding(cls, pool: Union[Pool, str] = Pool.CLS) -> "ModelType":
        return cls(classifier=False, pool=Pool(pool))

    @classmethod
    def classification(cls) -> "ModelType":
        return cls(classifier=True, pool=Pool.CLS)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Pooled:
    """A single vector summarising a whole request."""

    values: list[float]


@dataclass(frozen=True)
class Raw:
    """One vector per token of a request, in token order."""

    values: list[list[float]]


Embedding = Union[Pooled, Raw]
Embeddings = dict[int, Embedding]
Predictions = dict[int, list[float]]


# ---------------------------------------------------------------------------
# Packed batch
# ---------------------------------------------------------------------------

@dataclass
class Request:
    """A tokenized request before packing."""

    input_ids: list[int]
    token_type_ids: Optional[list[int]] = None
    position_ids: Optional[list[int]] = None
    output: OutputMode = OutputMode.POOLED


@dataclass
class PackedBatch:
    """Flattened batch of tokenized requests plus offset metadata."""

    input_ids: list[int]
    token_type_ids: list[int]
    position_ids: list[int]
    cumulative_seq_lengths: list[int]
    max_length: int
    pooled_indices: list[int] = field(default_factory=list)
    raw_indices: list[int] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.cumulative_seq_lengths) - 1

    @property
    def total_tokens(self) -> int:
        return len(self.input_ids)

    def input_lengths(self) -> list[int]:
        cu = self.cumulative_seq_lengths
        return [cu[i + 1] - cu[i] for i in range(len(self))]

    def validate(self) -> None:
        """Raise InvalidBatchError unless every packing invariant holds."""
        cu = self.cumulative_seq_lengths
        if not cu or cu[0] != 0:
            raise InvalidBatchError("cumulative_seq_lengths must start with 0")
        if any(b < a for a, b in zip(cu, cu[1:])):
            raise InvalidBatchError(
                f"cumulative_seq_lengths must be non-decreasing, got {cu}"
            )
        # Pooling reads row cu[i] of every request, so none may be empty
        empty = [i for i, (a, b) in enumerate(zip(cu, cu[1:])) if a == b]
        if empty:
            raise InvalidBatchError(f"requests {empty} have no tokens")
        total = self.total_tokens
        if cu[-1] != total:
            raise InvalidBatchError(
                f"cumulative_seq_lengths ends at {cu[-1]} but the batch has "
                f"{total} tokens"
            )
        for name in ("token_type_ids", "position_ids"):
            length = len(getattr(self, name))
            if length != total:
                raise InvalidBatchError(
                    f"{name} has {length} entries, expected {total}"
                )

        lengths = self.input_lengths()
        expected_max = max(lengths, default=0)
        if self.max_length != expected_max:
            raise InvalidBatchError(
                f"max_length is {self.max_length} but the longest request "
                f"has {expected_max} tokens"
            )

        pooled = set(self.pooled_indices)
        raw = set(self.raw_indices)
        if len(pooled) != len(self.pooled_indices) or len(raw) != len(self.raw_indices):
            raise InvalidBatchError("pooled_indices/raw_indices contain duplicates")
        if pooled & raw:
            raise InvalidBatchError(
                f"requests {sorted(pooled & raw)} are both pooled and raw"
            )
        if pooled | raw != set(range(len(self))):
            raise InvalidBatchError(
                "pooled_indices and raw_indices must cover every request exactly once"
            )

    @classmethod
    def from_requests(cls, requests: list[Request]) -> "PackedBatch":
        """Pack a list of requests, defaulting type ids to 0 and positions to 0..L-1."""
        input_ids: list[int] = []
        token_type_ids: list[int] = []
        position_ids: list[int] = []
        cumulative = [0]
        pooled: list[int] = []
        raw: list[int] = []
        max_length = 0

        for i, request in enumerate(requests):
            length = len(request.input_ids)
            input_ids.extend(request.input_ids)
            token_type_ids.extend(request.token_type_ids or [0] * length)
            position_ids.extend(request.position_ids or range(length))
            cumulative.append(cumulative[-1] + length)
            max_length = max(max_length, length)
            (raw if request.output is OutputMode.RAW else pooled).append(i)

        return cls(
            input_ids=input_ids,
            token_type_ids=token_type_ids,
            position_ids=position_ids,
            cumulative_seq_lengths=cumulative,
            max_length=max_length,
            pooled_indices=pooled,
            raw_indices=raw,
        )
