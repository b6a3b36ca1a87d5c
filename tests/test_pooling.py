"""Unit tests for pooling and raw extraction over packed encoder output."""

import pytest
import torch

from backend.batch import OutputMode, PackedBatch, Pool, Request
from backend.errors import InferenceError
from backend.runtime.pooling import extract, split_raw


def _batch(lengths, raw=()):
    requests = []
    token = 0
    for i, length in enumerate(lengths):
        requests.append(Request(
            input_ids=list(range(token, token + length)),
            output=OutputMode.RAW if i in raw else OutputMode.POOLED,
        ))
        token += length
    return PackedBatch.from_requests(requests)


def _outputs(total, hidden=4):
    return torch.arange(total * hidden, dtype=torch.float32).view(total, hidden)


class TestScenarios:

    def test_mean_pooled_and_raw_mixed(self):
        # lengths 3 and 5; request 0 mean-pooled, request 1 raw
        batch = _batch([3, 5], raw={1})
        outputs = _outputs(8)

        pooled, raw = extract(outputs, batch, Pool.MEAN)

        assert pooled.shape == (1, 4)
        assert torch.allclose(pooled[0], outputs[0:3].mean(dim=0))
        assert torch.equal(raw, outputs[3:8])

        per_request = split_raw(raw.tolist(), batch)
        assert list(per_request) == [1]
        assert per_request[1] == outputs[3:8].tolist()

    def test_single_request_cls_is_first_row(self):
        batch = _batch([4])
        outputs = torch.randn(4, 8)

        pooled, raw = extract(outputs, batch, Pool.CLS)

        assert raw is None
        assert torch.equal(pooled[0], outputs[0])


class TestClsPooling:

    def test_all_pooled_uses_every_start_offset(self):
        batch = _batch([2, 3, 1])
        outputs = _outputs(6)
        pooled, raw = extract(outputs, batch, Pool.CLS)
        assert raw is None
        assert torch.equal(pooled, outputs[[0, 2, 5]])

    def test_mixed_selects_only_pooled_offsets(self):
        batch = _batch([2, 3, 1], raw={0})
        outputs = _outputs(6)
        pooled, raw = extract(outputs, batch, Pool.CLS)
        assert torch.equal(pooled, outputs[[2, 5]])
        assert torch.equal(raw, outputs[0:2])


class TestMeanPooling:

    def test_each_request_uses_its_own_length(self):
        batch = _batch([2, 5, 1])
        outputs = torch.randn(8, 4)
        pooled, _ = extract(outputs, batch, Pool.MEAN)
        assert torch.allclose(pooled[0], outputs[0:2].mean(dim=0))
        assert torch.allclose(pooled[1], outputs[2:7].mean(dim=0))
        assert torch.allclose(pooled[2], outputs[7:8].mean(dim=0))

    def test_single_request_fast_path(self):
        batch = _batch([5])
        outputs = torch.randn(5, 4)
        pooled, _ = extract(outputs, batch, Pool.MEAN)
        assert torch.allclose(pooled[0], outputs.mean(dim=0))

    def test_single_request_max_length_mismatch_raises(self):
        batch = _batch([5])
        batch.max_length = 6
        with pytest.raises(InferenceError):
            extract(torch.randn(5, 4), batch, Pool.MEAN)

    def test_mixed_batch_iterates_pooled_indices_only(self):
        batch = _batch([2, 3, 4], raw={1})
        outputs = torch.randn(9, 4)
        pooled, raw = extract(outputs, batch, Pool.MEAN)
        assert pooled.shape == (2, 4)
        assert torch.allclose(pooled[0], outputs[0:2].mean(dim=0))
        assert torch.allclose(pooled[1], outputs[5:9].mean(dim=0))
        assert torch.equal(raw, outputs[2:5])


class TestRawExtraction:

    def test_all_raw_passes_output_through(self):
        batch = _batch([2, 3], raw={0, 1})
        outputs = _outputs(5)
        pooled, raw = extract(outputs, batch, Pool.CLS)
        assert pooled is None
        assert raw is outputs

    def test_single_raw_request_passes_output_through(self):
        batch = _batch([3], raw={0})
        outputs = _outputs(3)
        _, raw = extract(outputs, batch, Pool.MEAN)
        assert raw is outputs

    def test_raw_order_follows_raw_indices(self):
        batch = _batch([2, 1, 3, 2], raw={0, 2})
        # Caller-declared order: request 2 before request 0
        batch.raw_indices = [2, 0]
        outputs = _outputs(8)

        _, raw = extract(outputs, batch, Pool.CLS)

        assert torch.equal(raw, outputs[[3, 4, 5, 0, 1]])
        per_request = split_raw(raw.tolist(), batch)
        assert list(per_request) == [2, 0]
        assert per_request[2] == outputs[3:6].tolist()
        assert per_request[0] == outputs[0:2].tolist()

    def test_extracted_lengths_sum_to_raw_tokens(self):
        batch = _batch([4, 2, 3, 1], raw={1, 3})
        outputs = _outputs(10)
        _, raw = extract(outputs, batch, Pool.MEAN)
        assert raw.shape[0] == 2 + 1
        per_request = split_raw(raw.tolist(), batch)
        assert {i: len(rows) for i, rows in per_request.items()} == {1: 2, 3: 1}

    def test_split_raw_rejects_leftover_rows(self):
        batch = _batch([2, 2], raw={0, 1})
        with pytest.raises(InferenceError):
            split_raw([[0.0]] * 5, batch)
