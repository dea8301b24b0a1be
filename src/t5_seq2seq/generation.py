"""Contract between language-model heads and a reusable decoding loop.

A decoding loop owns the cache between steps: it passes the `Cache` returned
by one `lm_forward` call unchanged into the next one. Each model accepts only
its own cache variant (plus `NoCache` on the first step) and rejects others.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

import torch

from .layers import LayerState

DecoderLayerStates = list[tuple[LayerState | None, LayerState | None]]


class Cache:
    """Base class of the per-model incremental decoding state."""


@dataclass(frozen=True)
class NoCache(Cache):
    """No state yet, i.e. the first decoding step."""


@dataclass(frozen=True)
class T5Cache(Cache):
    """One (self-attention, cross-attention) state pair per decoder layer."""

    layer_states: DecoderLayerStates | None = None


@dataclass(frozen=True)
class BartCache(Cache):
    layer_states: DecoderLayerStates | None = None


@dataclass(frozen=True)
class GPT2Cache(Cache):
    past: list[torch.Tensor] | None = None


@dataclass(frozen=True)
class LMModelOutput:
    # (batch, sequence_length, vocab_size)
    lm_logits: torch.Tensor
    cache: Cache


class LMHeadModel(ABC):
    """A model a generic autoregressive decoding loop can drive."""

    @abstractmethod
    def lm_forward(
        self,
        input_ids: torch.Tensor | None = None,
        cache: Cache | None = None,
        attention_mask: torch.Tensor | None = None,
        token_type_ids: torch.Tensor | None = None,
        position_ids: torch.Tensor | None = None,
        input_embeds: torch.Tensor | None = None,
        encoder_outputs: torch.Tensor | None = None,
        decoder_input_ids: torch.Tensor | None = None,
    ) -> LMModelOutput:
        """Run one decoding step and return logits plus the cache for the next step.

        Raises:
            ValueError: if `cache` belongs to a different model family.
        """
