"""Load weights saved by Hugging Face `transformers` T5 models."""

from __future__ import annotations

import logging
import re
from typing import Mapping

import torch

from .model import T5ForConditionalGeneration, T5Model

logger = logging.getLogger(__name__)

# Tied copies of `shared.weight`.
_TIED_KEYS = re.compile(r"^(encoder\.embed_tokens|decoder\.embed_tokens|lm_head)\.weight$")

_RENAMES = [
    (re.compile(r"^shared\.weight$"), r"shared.weight"),
    (re.compile(r"^(encoder|decoder)\.final_layer_norm\.weight$"), r"\1.final_layer_norm.weight"),
    (
        re.compile(r"^(encoder|decoder)\.block\.0\.layer\.0\.SelfAttention\.relative_attention_bias\.weight$"),
        r"\1.relpos.relative_attention_bias.weight",
    ),
    (
        re.compile(r"^(encoder|decoder)\.block\.(\d+)\.layer\.0\.SelfAttention\.([qkvo])\.weight$"),
        r"\1.block.\2.self_attn.\3.weight",
    ),
    (
        re.compile(r"^(encoder|decoder)\.block\.(\d+)\.layer\.0\.layer_norm\.weight$"),
        r"\1.block.\2.self_attn_layer_norm.weight",
    ),
    (
        re.compile(r"^decoder\.block\.(\d+)\.layer\.1\.EncDecAttention\.([qkvo])\.weight$"),
        r"decoder.block.\1.cross_attn.\2.weight",
    ),
    (
        re.compile(r"^decoder\.block\.(\d+)\.layer\.1\.layer_norm\.weight$"),
        r"decoder.block.\1.cross_attn_layer_norm.weight",
    ),
    (
        re.compile(r"^encoder\.block\.(\d+)\.layer\.1\.DenseReluDense\.(wi|wi_0|wi_1|wo)\.weight$"),
        r"encoder.block.\1.ff.\2.weight",
    ),
    (
        re.compile(r"^encoder\.block\.(\d+)\.layer\.1\.layer_norm\.weight$"),
        r"encoder.block.\1.ff_layer_norm.weight",
    ),
    (
        re.compile(r"^decoder\.block\.(\d+)\.layer\.2\.DenseReluDense\.(wi|wi_0|wi_1|wo)\.weight$"),
        r"decoder.block.\1.ff.\2.weight",
    ),
    (
        re.compile(r"^decoder\.block\.(\d+)\.layer\.2\.layer_norm\.weight$"),
        r"decoder.block.\1.ff_layer_norm.weight",
    ),
]


def convert_key(key: str) -> str | None:
    """Return this package's name for a Hugging Face T5 parameter, or None
    for tied copies of the shared embedding."""
    if _TIED_KEYS.match(key):
        return None
    for pattern, replacement in _RENAMES:
        if pattern.match(key):
            return pattern.sub(replacement, key)
    raise ValueError(f"Unexpected T5 checkpoint key: {key}")


def convert_hf_state_dict(state_dict: Mapping[str, torch.Tensor]) -> dict[str, torch.Tensor]:
    lm_head = state_dict.get("lm_head.weight")
    shared = state_dict.get("shared.weight")
    if lm_head is not None and (shared is None or not torch.equal(lm_head, shared)):
        # logits always project through the shared table
        raise ValueError("Checkpoint has an untied lm_head.weight, which T5ForConditionalGeneration cannot load")

    converted = {}
    for key, tensor in state_dict.items():
        new_key = convert_key(key)
        if new_key is not None:
            converted[new_key] = tensor
    return converted


def load_hf_state_dict(model: T5Model | T5ForConditionalGeneration, state_dict: Mapping[str, torch.Tensor]) -> None:
    """Copy a Hugging Face T5 state dict into `model` (strict)."""
    target = model.base_model if isinstance(model, T5ForConditionalGeneration) else model
    converted = convert_hf_state_dict(state_dict)
    target.load_state_dict(converted, strict=True)
    logger.info("Loaded %d tensors from Hugging Face T5 checkpoint", len(converted))
