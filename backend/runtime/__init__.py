"""
Encoder runtime — BERT-family building blocks over a packed token buffer.

Assembles embeddings, attention, encoder layers and heads from a
ModelConfig plus named checkpoint tensors.

Building blocks:
  attention       — PaddedAttention, FlashVarlenAttention, ALiBi slopes
  encoder_blocks  — embeddings, attention sublayer, encoder layers, heads
  pooling         — CLS / mean pooling and raw token extraction
  weight_loader   — safetensors/pt loading, prefixed access, namespace fallback
  models          — BertModel, JinaBertModel
"""
