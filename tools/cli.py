"""
Embedding backend CLI — run a local model over a few texts.

Usage:
    python -m tools.cli info /path/to/model --dtype float16
    python -m tools.cli embed /path/to/model "first text" "second text" --pooling mean
    python -m tools.cli embed /path/to/model "a text" --raw 0
    python -m tools.cli predict /path/to/model "is this positive?"

Texts are tokenized with the model directory's Hugging Face tokenizer and
packed into a single batch.  Results are printed as JSON.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

import numpy as np

import config as global_config
from backend.batch import ModelType, OutputMode, PackedBatch, Pooled, Request
from backend.errors import BackendError


def build_batch(tokenizer, texts: list[str], raw: set[int]) -> PackedBatch:
    """Tokenize ``texts`` and pack them; indices in ``raw`` want per-token output."""
    requests = []
    for i, text in enumerate(texts):
        encoding = tokenizer(text, truncation=True)
        requests.append(Request(
            input_ids=list(encoding["input_ids"]),
            token_type_ids=encoding.get("token_type_ids"),
            output=OutputMode.RAW if i in raw else OutputMode.POOLED,
        ))
    return PackedBatch.from_requests(requests)


def _normalize(values: list[float]) -> list[float]:
    v = np.asarray(values, dtype=np.float32)
    norm = np.linalg.norm(v)
    if norm == 0.0:
        return v.tolist()
    return (v / norm).tolist()


def _load_engine(args, model_type: ModelType):
    from backend.engine import InferenceEngine
    return InferenceEngine(args.model_path, args.dtype, model_type)


def run_info(args):
    engine = _load_engine(args, ModelType.embedding(args.pooling))
    cfg = engine.config
    print(json.dumps({
        "model_type": cfg.model_type,
        "variant": ("" if engine.is_padded() else "Flash") + engine.model.name,
        "padded": engine.is_padded(),
        "device": str(engine.device),
        "hidden_size": cfg.hidden_size,
        "num_hidden_layers": cfg.num_hidden_layers,
        "position_embedding_type": cfg.position_embedding_type.value,
        "num_labels": cfg.num_labels,
    }, indent=2))


def run_embed(args):
    from transformers import AutoTokenizer

    engine = _load_engine(args, ModelType.embedding(args.pooling))
    tokenizer = AutoTokenizer.from_pretrained(args.model_path)
    batch = build_batch(tokenizer, args.texts, set(args.raw))

    output = {}
    for i, embedding in sorted(engine.embed(batch).items()):
        if isinstance(embedding, Pooled):
            values = _normalize(embedding.values) if args.normalize else embedding.values
            output[i] = {"pooled": values}
        else:
            output[i] = {"raw": embedding.values}
    print(json.dumps(output))


def run_predict(args):
    from transformers import AutoTokenizer

    engine = _load_engine(args, ModelType.classification())
    tokenizer = AutoTokenizer.from_pretrained(args.model_path)
    batch = build_batch(tokenizer, args.texts, set())

    id2label = engine.config.id2label or {}
    output = {}
    for i, logits in sorted(engine.predict(batch).items()):
        scores = np.asarray(logits, dtype=np.float32)
        probs = np.exp(scores - scores.max())
        probs /= probs.sum()
        output[i] = {
            id2label.get(str(j), str(j)): float(p) for j, p in enumerate(probs)
        }
    print(json.dumps(output, indent=2))


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="tei-backend",
        description="Batched BERT-family encoder backend",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
commands:
  info      Load a model and report the selected variant
  embed     Embed texts (pooled or per-token)
  predict   Score texts with a classification head
""",
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    def add_common(p):
        p.add_argument("model_path", help="Model directory (config.json + weights)")
        p.add_argument(
            "--dtype", choices=list(global_config.SUPPORTED_DTYPES),
            default=global_config.DEFAULT_DTYPE,
            help=f"Weight precision (default: {global_config.DEFAULT_DTYPE})",
        )

    p_info = subparsers.add_parser("info", help="Report the variant selected for a model")
    add_common(p_info)
    p_info.add_argument("--pooling", choices=["cls", "mean"], default="cls")

    p_embed = subparsers.add_parser("embed", help="Embed texts")
    add_common(p_embed)
    p_embed.add_argument("texts", nargs="+", help="Texts to embed")
    p_embed.add_argument(
        "--pooling", choices=["cls", "mean"], default="cls",
        help="Pooling for pooled requests (default: cls)",
    )
    p_embed.add_argument(
        "--raw", type=int, nargs="*", default=[],
        help="Indices of texts to return per-token embeddings for",
    )
    p_embed.add_argument(
        "--normalize", action="store_true",
        help="L2-normalise pooled embeddings",
    )

    p_predict = subparsers.add_parser("predict", help="Classify texts")
    add_common(p_predict)
    p_predict.add_argument("texts", nargs="+", help="Texts to classify")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, global_config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    commands = {"info": run_info, "embed": run_embed, "predict": run_predict}
    try:
        commands[args.command](args)
    except BackendError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
