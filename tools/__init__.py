"""
Backend tools — command-line access to a local model.

Tools:
  info     — load a model and report the selected variant
  embed    — embed texts, pooled or per-token
  predict  — score texts with a classification head

Usage:
  python -m tools.cli info /path/to/model
  python -m tools.cli embed /path/to/model "some text" --pooling mean
  python -m tools.cli predict /path/to/model "some text"
"""
