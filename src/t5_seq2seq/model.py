from __future__ import annotations

import logging
from dataclasses import dataclass

import torch
import torch.nn as nn
import torch.nn.functional as F

from .config import T5Config
from .generation import (
    Cache,
    DecoderLayerStates,
    LMHeadModel,
    LMModelOutput,
    NoCache,
    T5Cache,
)
from .layers import (
    DecoderBlock,
    DenseReluDense,
    EncoderBlock,
    GatedFeedForward,
    MultiHeadAttention,
    RelativePositionBias,
    RMSNorm,
    SharedEmbedding,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StackOutput:
    hidden_state: torch.Tensor
    next_cache: DecoderLayerStates | None = None
    all_hidden_states: list[torch.Tensor] | None = None
    all_attentions: list[torch.Tensor] | None = None


@dataclass(frozen=True)
class T5ModelOutput:
    """Result of a T5 forward pass.

    `decoder_output` holds the last decoder hidden state for `T5Model` and the
    vocabulary logits for `T5ForConditionalGeneration`.
    """

    decoder_output: torch.Tensor
    # None when the caller supplied a precomputed encoder output
    encoder_hidden_state: torch.Tensor | None = None
    next_cache: DecoderLayerStates | None = None
    all_decoder_hidden_states: list[torch.Tensor] | None = None
    all_decoder_attentions: list[torch.Tensor] | None = None
    all_encoder_hidden_states: list[torch.Tensor] | None = None
    all_encoder_attentions: list[torch.Tensor] | None = None


def _make_padding_attention_mask(attention_mask: torch.Tensor, *, dtype: torch.dtype) -> torch.Tensor:
    """Convert (b, s) mask with 1=keep, 0=pad into additive mask (b,1,1,s)."""
    # additive mask: 0 for keep, -1e9 for mask.
    mask = (1.0 - attention_mask.float()) * -1e9
    return mask[:, None, None, :].to(dtype=dtype)


def _cached_length(past_key_values: DecoderLayerStates | None) -> int:
    if not past_key_values:
        return 0
    past_self = past_key_values[0][0]
    return past_self.seq_len if past_self is not None else 0


class T5Stack(nn.Module):
    """Encoder or decoder stack.

    The token embedding is not owned by the stack; the caller passes the
    shared table on every call.
    """

    def __init__(
        self,
        config: T5Config,
        *,
        is_decoder: bool,
        output_attentions: bool = False,
        output_hidden_states: bool = False,
    ):
        super().__init__()
        self.config = config
        self.is_decoder = bool(is_decoder)
        self.output_attentions = bool(output_attentions)
        self.output_hidden_states = bool(output_hidden_states)
        self.store_cache = self.is_decoder and bool(config.output_past)

        self.dropout = nn.Dropout(config.dropout_rate)

        # T5 computes the relative position bias once per stack and reuses it in every block.
        self.relpos = RelativePositionBias(
            num_buckets=config.relative_attention_num_buckets,
            max_distance=config.relative_attention_max_distance,
            num_heads=config.num_heads,
        )

        block_cls = DecoderBlock if is_decoder else EncoderBlock
        num_layers = config.decoder_layers() if is_decoder else config.num_layers
        self.block = nn.ModuleList(
            [
                block_cls(
                    d_model=config.d_model,
                    d_kv=config.d_kv,
                    d_ff=config.d_ff,
                    num_heads=config.num_heads,
                    dropout=config.dropout_rate,
                    layer_norm_epsilon=config.layer_norm_epsilon,
                    feed_forward_proj=config.feed_forward_proj,
                )
                for _ in range(num_layers)
            ]
        )
        self.final_layer_norm = RMSNorm(config.d_model, eps=config.layer_norm_epsilon)

    def forward(
        self,
        input_ids: torch.Tensor | None = None,
        *,
        embeddings: SharedEmbedding,
        attention_mask: torch.Tensor | None = None,
        encoder_hidden_states: torch.Tensor | None = None,
        encoder_attention_mask: torch.Tensor | None = None,
        input_embeds: torch.Tensor | None = None,
        past_key_values: DecoderLayerStates | None = None,
        output_attentions: bool | None = None,
        output_hidden_states: bool | None = None,
    ) -> StackOutput:
        """Run the stack over token ids or precomputed embeddings.

        Args:
            input_ids: (b, s) token ids. Exactly one of this or `input_embeds`.
            embeddings: Shared embedding table used to look up `input_ids`.
            attention_mask: Padding mask (1=keep, 0=pad). For a decoder with a
                cache it may cover either the new tokens only or cached + new.
            encoder_hidden_states: Decoder only, the encoder output.
            encoder_attention_mask: Decoder only, encoder padding mask.
            input_embeds: (b, s, d_model) precomputed embeddings.
            past_key_values: Decoder only, one (self, cross) state pair per layer.
            output_attentions / output_hidden_states: Override the flags
                given at construction.
        """
        if (input_ids is None) == (input_embeds is None):
            role = "decoder" if self.is_decoder else "encoder"
            raise ValueError(f"{role}: specify exactly one of input_ids or input_embeds")
        if not self.is_decoder and past_key_values is not None:
            raise ValueError("encoder stack does not take a cache")
        if self.is_decoder and encoder_hidden_states is None:
            raise ValueError("decoder requires encoder_hidden_states")
        if past_key_values is not None and len(past_key_values) != len(self.block):
            raise ValueError(
                f"cache has {len(past_key_values)} layer entries, decoder has {len(self.block)} layers"
            )

        output_attentions = self.output_attentions if output_attentions is None else output_attentions
        output_hidden_states = self.output_hidden_states if output_hidden_states is None else output_hidden_states

        if input_embeds is None:
            input_embeds = embeddings(input_ids)
        bsz, seq_len = input_embeds.shape[:2]
        device = input_embeds.device

        past_len = _cached_length(past_key_values)
        k_len = past_len + seq_len

        if attention_mask is None:
            attention_mask = torch.ones((bsz, k_len), device=device, dtype=torch.long)
        elif past_len and attention_mask.size(1) == seq_len:
            # mask only covers the new tokens; cached positions were visible
            prefix = torch.ones((bsz, past_len), device=device, dtype=attention_mask.dtype)
            attention_mask = torch.cat([prefix, attention_mask], dim=1)
        attn_mask = _make_padding_attention_mask(attention_mask, dtype=input_embeds.dtype)

        enc_attn_mask = None
        if self.is_decoder and encoder_attention_mask is not None:
            enc_attn_mask = _make_padding_attention_mask(encoder_attention_mask, dtype=input_embeds.dtype)

        position_bias = self.relpos(seq_len, k_len, bidirectional=not self.is_decoder, offset=past_len)

        hidden_states = self.dropout(input_embeds)
        next_cache = [] if self.store_cache else None
        all_hidden_states = [] if output_hidden_states else None
        all_attentions = [] if output_attentions else None

        for i, layer in enumerate(self.block):
            if self.is_decoder:
                out = layer(
                    hidden_states,
                    attention_mask=attn_mask,
                    position_bias=position_bias,
                    encoder_hidden_states=encoder_hidden_states,
                    encoder_attention_mask=enc_attn_mask,
                    layer_state=past_key_values[i] if past_key_values is not None else None,
                    output_attentions=output_attentions,
                )
                if next_cache is not None:
                    next_cache.append((out.self_attn_state, out.cross_attn_state))
            else:
                out = layer(
                    hidden_states,
                    attention_mask=attn_mask,
                    position_bias=position_bias,
                    output_attentions=output_attentions,
                )
            hidden_states = out.hidden_states
            if all_hidden_states is not None:
                all_hidden_states.append(hidden_states)
            if all_attentions is not None:
                all_attentions.append(out.attn_weights)

        hidden_states = self.final_layer_norm(hidden_states)
        hidden_states = self.dropout(hidden_states)
        return StackOutput(
            hidden_state=hidden_states,
            next_cache=next_cache,
            all_hidden_states=all_hidden_states,
            all_attentions=all_attentions,
        )


class T5Model(nn.Module):
    """T5 encoder-decoder without a head.

    Encoder and decoder share one embedding table (`shared`). Only the decoder
    keeps a cache: self-attention keys/values grow by one position per
    decoding step, cross-attention keys/values are computed once from the
    encoder output and reused.
    """

    def __init__(
        self,
        config: T5Config,
        *,
        output_attentions: bool = False,
        output_hidden_states: bool = False,
    ):
        super().__init__()
        self.config = config
        self.shared = SharedEmbedding(config.vocab_size, config.d_model)
        self.encoder = T5Stack(
            config,
            is_decoder=False,
            output_attentions=output_attentions,
            output_hidden_states=output_hidden_states,
        )
        self.decoder = T5Stack(
            config,
            is_decoder=True,
            output_attentions=output_attentions,
            output_hidden_states=output_hidden_states,
        )
        self.apply(self._init_weights)
        logger.debug(
            "Built T5Model: %d encoder layers, %d decoder layers, d_model=%d",
            len(self.encoder.block),
            len(self.decoder.block),
            config.d_model,
        )

    def _init_weights(self, module: nn.Module) -> None:
        """Mesh TensorFlow initialization, scaled by `initializer_factor`."""
        factor = self.config.initializer_factor
        d_model = self.config.d_model
        if isinstance(module, RMSNorm):
            module.weight.data.fill_(factor * 1.0)
        elif isinstance(module, SharedEmbedding):
            module.weight.data.normal_(mean=0.0, std=factor * 1.0)
        elif isinstance(module, DenseReluDense):
            module.wi.weight.data.normal_(mean=0.0, std=factor * d_model**-0.5)
            module.wo.weight.data.normal_(mean=0.0, std=factor * self.config.d_ff**-0.5)
        elif isinstance(module, GatedFeedForward):
            module.wi_0.weight.data.normal_(mean=0.0, std=factor * d_model**-0.5)
            module.wi_1.weight.data.normal_(mean=0.0, std=factor * d_model**-0.5)
            module.wo.weight.data.normal_(mean=0.0, std=factor * self.config.d_ff**-0.5)
        elif isinstance(module, MultiHeadAttention):
            # no 1/sqrt(d_kv) in the scores, so the query projection starts smaller
            module.q.weight.data.normal_(mean=0.0, std=factor * (d_model * module.d_kv) ** -0.5)
            module.k.weight.data.normal_(mean=0.0, std=factor * d_model**-0.5)
            module.v.weight.data.normal_(mean=0.0, std=factor * d_model**-0.5)
            module.o.weight.data.normal_(mean=0.0, std=factor * (module.num_heads * module.d_kv) ** -0.5)
        elif isinstance(module, RelativePositionBias):
            module.relative_attention_bias.weight.data.normal_(mean=0.0, std=factor * d_model**-0.5)

    def forward(
        self,
        input_ids: torch.Tensor | None = None,
        attention_mask: torch.Tensor | None = None,
        encoder_output: torch.Tensor | None = None,
        decoder_input_ids: torch.Tensor | None = None,
        decoder_attention_mask: torch.Tensor | None = None,
        input_embeds: torch.Tensor | None = None,
        decoder_input_embeds: torch.Tensor | None = None,
        decoder_cache: DecoderLayerStates | None = None,
    ) -> T5ModelOutput:
        """Encode (unless `encoder_output` is given) and decode.

        Args:
            input_ids: (b, src_len) encoder token ids. This or `input_embeds`
                is required unless `encoder_output` is given.
            attention_mask: (b, src_len) encoder padding mask, also used to
                mask cross-attention.
            encoder_output: (b, src_len, d_model) precomputed encoder hidden
                state. When given the encoder is not run.
            decoder_input_ids: (b, tgt_len) decoder token ids. This or
                `decoder_input_embeds` is required.
            decoder_attention_mask: Decoder padding mask; causal masking is
                always applied on top of it.
            input_embeds / decoder_input_embeds: Precomputed embeddings used
                instead of token ids.
            decoder_cache: Per-layer (self, cross) `LayerState` pairs returned
                as `next_cache` by the previous call. None on the first step.

        Dropout follows the module mode (`train()` / `eval()`).
        """
        encoder_hidden_state = None
        all_encoder_hidden_states = None
        all_encoder_attentions = None
        if encoder_output is None:
            encoded = self.encoder(
                input_ids,
                embeddings=self.shared,
                attention_mask=attention_mask,
                input_embeds=input_embeds,
            )
            encoder_hidden_state = encoded.hidden_state
            all_encoder_hidden_states = encoded.all_hidden_states
            all_encoder_attentions = encoded.all_attentions
            encoder_output = encoder_hidden_state

        decoded = self.decoder(
            decoder_input_ids,
            embeddings=self.shared,
            attention_mask=decoder_attention_mask,
            encoder_hidden_states=encoder_output,
            encoder_attention_mask=attention_mask,
            input_embeds=decoder_input_embeds,
            past_key_values=decoder_cache,
        )
        return T5ModelOutput(
            decoder_output=decoded.hidden_state,
            encoder_hidden_state=encoder_hidden_state,
            next_cache=decoded.next_cache,
            all_decoder_hidden_states=decoded.all_hidden_states,
            all_decoder_attentions=decoded.all_attentions,
            all_encoder_hidden_states=all_encoder_hidden_states,
            all_encoder_attentions=all_encoder_attentions,
        )


def shift_tokens_right(labels: torch.Tensor, decoder_start_token_id: int, pad_token_id: int) -> torch.Tensor:
    """T5-style shift right: prepend the decoder start token, drop the last label."""
    # replace -100 (if user used it) with pad before shifting
    labels = labels.masked_fill(labels == -100, pad_token_id)

    shifted = labels.new_zeros(labels.shape)
    shifted[:, 0] = decoder_start_token_id
    shifted[:, 1:] = labels[:, :-1]
    return shifted


class T5ForConditionalGeneration(nn.Module, LMHeadModel):
    """T5 with a language-modeling head tied to the shared embedding.

    Logits are `hidden @ shared.weight.T * d_model ** -0.5`: the embedding
    initializer has unit scale, so reusing it as the output projection needs
    the extra factor to keep logits in range.
    """

    def __init__(
        self,
        config: T5Config,
        *,
        output_attentions: bool = False,
        output_hidden_states: bool = False,
    ):
        super().__init__()
        self.config = config
        self.base_model = T5Model(
            config,
            output_attentions=output_attentions,
            output_hidden_states=output_hidden_states,
        )
        self.model_dim = float(config.d_model)

    def _lm_logits(self, hidden_states: torch.Tensor) -> torch.Tensor:
        return self.base_model.shared.project(hidden_states) * (self.model_dim**-0.5)

    def forward(
        self,
        input_ids: torch.Tensor | None = None,
        attention_mask: torch.Tensor | None = None,
        encoder_output: torch.Tensor | None = None,
        decoder_input_ids: torch.Tensor | None = None,
        decoder_attention_mask: torch.Tensor | None = None,
        input_embeds: torch.Tensor | None = None,
        decoder_input_embeds: torch.Tensor | None = None,
        decoder_cache: DecoderLayerStates | None = None,
    ) -> T5ModelOutput:
        """Same arguments as `T5Model.forward`; `decoder_output` holds
        (b, tgt_len, vocab_size) logits."""
        base_output = self.base_model(
            input_ids=input_ids,
            attention_mask=attention_mask,
            encoder_output=encoder_output,
            decoder_input_ids=decoder_input_ids,
            decoder_attention_mask=decoder_attention_mask,
            input_embeds=input_embeds,
            decoder_input_embeds=decoder_input_embeds,
            decoder_cache=decoder_cache,
        )
        return T5ModelOutput(
            decoder_output=self._lm_logits(base_output.decoder_output),
            encoder_hidden_state=base_output.encoder_hidden_state,
            next_cache=base_output.next_cache,
            all_decoder_hidden_states=base_output.all_decoder_hidden_states,
            all_decoder_attentions=base_output.all_decoder_attentions,
            all_encoder_hidden_states=base_output.all_encoder_hidden_states,
            all_encoder_attentions=base_output.all_encoder_attentions,
        )

    def encode(self, input_ids: torch.Tensor, attention_mask: torch.Tensor | None = None) -> torch.Tensor:
        """Run the encoder only, for reuse across decoding steps."""
        return self.base_model.encoder(
            input_ids,
            embeddings=self.base_model.shared,
            attention_mask=attention_mask,
            output_attentions=False,
            output_hidden_states=False,
        ).hidden_state

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
        """One decoding step for a generic decoding loop.

        `token_type_ids`, `position_ids` and `input_embeds` are unused by T5.
        The returned cache is a `T5Cache` to hand back on the next step.
        """
        if cache is None or isinstance(cache, NoCache):
            layer_states = None
        elif isinstance(cache, T5Cache):
            layer_states = cache.layer_states
        else:
            raise ValueError(f"Cache not compatible with T5 Model: got {type(cache).__name__}")

        base_output = self.base_model(
            input_ids=input_ids,
            attention_mask=attention_mask,
            encoder_output=encoder_outputs,
            decoder_input_ids=decoder_input_ids,
            decoder_cache=layer_states,
        )
        return LMModelOutput(
            lm_logits=self._lm_logits(base_output.decoder_output),
            cache=T5Cache(base_output.next_cache),
        )

    def compute_loss(
        self,
        input_ids: torch.Tensor,
        labels: torch.Tensor,
        attention_mask: torch.Tensor | None = None,
        decoder_attention_mask: torch.Tensor | None = None,
    ) -> torch.Tensor:
        """Teacher-forced cross-entropy; padding (and -100) labels are ignored."""
        pad = self.config.pad_token_id
        decoder_input_ids = shift_tokens_right(labels, self.config.decoder_start_token_id, pad)
        logits = self(
            input_ids=input_ids,
            attention_mask=attention_mask,
            decoder_input_ids=decoder_input_ids,
            decoder_attention_mask=decoder_attention_mask,
        ).decoder_output
        targets = labels.masked_fill(labels == -100, pad)
        return F.cross_entropy(
            logits.view(-1, logits.size(-1)),
            targets.view(-1),
            ignore_index=pad,
        )

    @torch.no_grad()
    def generate(
        self,
        input_ids: torch.Tensor,
        *,
        attention_mask: torch.Tensor | None = None,
        max_length: int | None = None,
        eos_token_id: int | None = None,
    ) -> torch.Tensor:
        """Greedy autoregressive generation with KV caching.

        Args:
            input_ids: Encoder input token IDs (b, src_len).
            attention_mask: Encoder padding mask.
            max_length: Maximum length of the output, start token included.
            eos_token_id: Stop when every sequence has produced this token.

        Returns:
            Generated token IDs (b, generated_len) including the start token.
        """
        self.eval()
        if max_length is None:
            max_length = self.config.max_length
        if max_length < 1:
            raise ValueError(f"max_length must be at least 1 (the start token), got {max_length}")
        eos_token_id = eos_token_id if eos_token_id is not None else self.config.eos_token_id
        pad_token_id = self.config.pad_token_id

        bsz = input_ids.size(0)
        device = input_ids.device

        # Encode once
        encoder_outputs = self.encode(input_ids, attention_mask)

        decoder_input_ids = torch.full(
            (bsz, 1), self.config.decoder_start_token_id, dtype=torch.long, device=device
        )
        finished = torch.zeros(bsz, dtype=torch.bool, device=device)
        cache: Cache = NoCache()

        for _ in range(max_length - 1):
            out = self.lm_forward(
                input_ids=input_ids,
                cache=cache,
                attention_mask=attention_mask,
                encoder_outputs=encoder_outputs,
                # without a stored cache the whole prefix is recomputed
                decoder_input_ids=decoder_input_ids[:, -1:] if self.config.output_past else decoder_input_ids,
            )
            cache = out.cache

            next_tokens = out.lm_logits[:, -1, :].argmax(dim=-1, keepdim=True)  # (b, 1)
            # Replace finished sequences' tokens with pad
            next_tokens = torch.where(finished.unsqueeze(-1), pad_token_id, next_tokens)
            decoder_input_ids = torch.cat([decoder_input_ids, next_tokens], dim=1)

            finished = finished | (next_tokens.squeeze(-1) == eos_token_id)
            if finished.all():
                logger.debug("All sequences finished after %d tokens", decoder_input_ids.size(1))
                break

        return decoder_input_ids
