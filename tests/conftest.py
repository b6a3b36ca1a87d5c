"""
Shared pytest fixtures for backend unit tests.
"""

import json
import os
import sys

import pytest
import torch
import torch.nn.functional as F

# Ensure project root is on sys.path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)


# ---------------------------------------------------------------------------
# Tiny model config
# ---------------------------------------------------------------------------

@pytest.fixture
def tiny_config():
    """config.json contents for a 2-layer, 32-wide BERT."""
    return {
        "model_type": "bert",
        "hidden_size": 32,
        "num_attention_heads": 4,
        "num_hidden_layers": 2,
        "intermediate_size": 64,
        "vocab_size": 50,
        "type_vocab_size": 2,
        "max_position_embeddings": 16,
        "hidden_act": "gelu",
        "layer_norm_eps": 1e-12,
        "position_embedding_type": "absolute",
    }


@pytest.fixture
def jina_config(tiny_config):
    cfg = dict(tiny_config)
    cfg["position_embedding_type"] = "alibi"
    return cfg


@pytest.fixture
def classifier_config(tiny_config):
    cfg = dict(tiny_config)
    cfg["id2label"] = {"0": "negative", "1": "neutral", "2": "positive"}
    return cfg


# ---------------------------------------------------------------------------
# Synthetic checkpoints
# ---------------------------------------------------------------------------

def _make_state_dict(cfg, prefix="", classifier=None, seed=0):
    """Random checkpoint laid out like a Hugging Face BERT export.

    ALiBi configs get the jina-bert layout (no position table, GLU mlp).
    ``classifier`` is None, "bert" (single dense) or "roberta" (two-stage).
    """
    g = torch.Generator().manual_seed(seed)

    def rand(*shape):
        return torch.randn(*shape, generator=g) * 0.2

    def norm(sd, key, size):
        sd[f"{key}.weight"] = torch.ones(size) + rand(size)
        sd[f"{key}.bias"] = rand(size)

    def linear(sd, key, out_f, in_f, bias=True):
        sd[f"{key}.weight"] = rand(out_f, in_f)
        if bias:
            sd[f"{key}.bias"] = rand(out_f)

    hidden = cfg["hidden_size"]
    inter = cfg["intermediate_size"]
    alibi = cfg.get("position_embedding_type") == "alibi"
    p = f"{prefix}." if prefix else ""

    sd = {}
    sd[f"{p}embeddings.word_embeddings.weight"] = rand(cfg["vocab_size"], hidden)
    sd[f"{p}embeddings.token_type_embeddings.weight"] = rand(cfg["type_vocab_size"], hidden)
    if not alibi:
        sd[f"{p}embeddings.position_embeddings.weight"] = rand(cfg["max_position_embeddings"], hidden)
        # Integer buffer present in real exports; never consumed
        sd[f"{p}embeddings.position_ids"] = torch.arange(cfg["max_position_embeddings"])[None]
    norm(sd, f"{p}embeddings.LayerNorm", hidden)

    for i in range(cfg["num_hidden_layers"]):
        lp = f"{p}encoder.layer.{i}"
        for name in ("query", "key", "value"):
            linear(sd, f"{lp}.attention.self.{name}", hidden, hidden)
        linear(sd, f"{lp}.attention.output.dense", hidden, hidden)
        norm(sd, f"{lp}.attention.output.LayerNorm", hidden)
        if alibi:
            linear(sd, f"{lp}.mlp.gated_layers", 2 * inter, hidden, bias=False)
            linear(sd, f"{lp}.mlp.wo", hidden, inter)
            norm(sd, f"{lp}.mlp.layernorm", hidden)
        else:
            linear(sd, f"{lp}.intermediate.dense", inter, hidden)
            linear(sd, f"{lp}.output.dense", hidden, inter)
            norm(sd, f"{lp}.output.LayerNorm", hidden)

    num_labels = len(cfg.get("id2label") or {})
    if classifier == "bert":
        linear(sd, "classifier", num_labels, hidden)
    elif classifier == "roberta":
        linear(sd, "classifier.dense", hidden, hidden)
        linear(sd, "classifier.out_proj", num_labels, hidden)
    return sd


@pytest.fixture
def make_state_dict():
    return _make_state_dict


@pytest.fixture
def write_model(tmp_path):
    """Write config.json + a weight file into a fresh directory."""

    def _write(cfg, state_dict, fmt="safetensors", name="model"):
        model_dir = tmp_path / name
        model_dir.mkdir()
        with open(model_dir / "config.json", "w") as f:
            json.dump(cfg, f)
        if fmt == "safetensors":
            from safetensors.torch import save_file
            save_file({k: v.contiguous() for k, v in state_dict.items()},
                      str(model_dir / "model.safetensors"))
        elif fmt == "bin":
            torch.save(state_dict, str(model_dir / "pytorch_model.bin"))
        return str(model_dir)

    return _write


@pytest.fixture
def broken_flash_attn(tmp_path, monkeypatch):
    """Make ``import flash_attn`` fail the way a mismatched CUDA build does."""
    site = tmp_path / "site"
    package = site / "flash_attn"
    package.mkdir(parents=True)
    (package / "__init__.py").write_text(
        'raise ImportError("flash_attn_2_cuda: undefined symbol")\n'
    )
    for name in list(sys.modules):
        if name == "flash_attn" or name.startswith("flash_attn."):
            monkeypatch.delitem(sys.modules, name)
    monkeypatch.syspath_prepend(str(site))


# ---------------------------------------------------------------------------
# Reference varlen attention kernel
# ---------------------------------------------------------------------------

def _reference_varlen(
    q, k, v,
    cu_seqlens_q, cu_seqlens_k,
    max_seqlen_q, max_seqlen_k,
    softmax_scale=None, causal=False, alibi_slopes=None,
):
    """Segment-by-segment SDPA with flash_attn_varlen_func's signature."""
    assert not causal
    assert torch.equal(cu_seqlens_q, cu_seqlens_k)
    out = torch.zeros_like(q)
    cu = cu_seqlens_q.tolist()
    for start, end in zip(cu, cu[1:]):
        if end == start:
            continue
        assert end - start <= max_seqlen_q
        qs, ks, vs = (t[start:end].transpose(0, 1) for t in (q, k, v))  # [heads, L, hd]
        bias = None
        if alibi_slopes is not None:
            pos = torch.arange(end - start, device=q.device)
            distance = (pos[None, :] - pos[:, None]).abs()
            bias = (-alibi_slopes[:, None, None] * distance).to(q.dtype)
        o = F.scaled_dot_product_attention(qs, ks, vs, attn_mask=bias, scale=softmax_scale)
        out[start:end] = o.transpose(0, 1)
    return out


@pytest.fixture
def reference_varlen():
    return _reference_varlen
