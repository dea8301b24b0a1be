from __future__ import annotations

import math
from dataclasses import dataclass

import torch
import torch.nn as nn
import torch.nn.functional as F


class RMSNorm(nn.Module):
    """T5-style RMSNorm (no mean subtraction, scale only)."""

    def __init__(self, dim: int, eps: float = 1e-6):
        super().__init__()
        self.eps = float(eps)
        self.weight = nn.Parameter(torch.ones(dim))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        # x: (..., dim)
        variance = x.to(torch.float32).pow(2).mean(dim=-1, keepdim=True)
        x = x * torch.rsqrt(variance + self.eps)
        return self.weight * x.to(self.weight.dtype)


class SharedEmbedding(nn.Embedding):
    """Token embedding whose weight doubles as the output projection.

    `forward` looks rows up by token id; `project` multiplies hidden states
    by the transposed weight (no bias) to score every vocabulary item.
    """

    def project(self, hidden_states: torch.Tensor) -> torch.Tensor:
        return F.linear(hidden_states, self.weight)


class RelativePositionBias(nn.Module):
    """T5 relative position bias: bucketed relative distances.

    Produces an attention bias of shape (1, num_heads, q_len, k_len).
    """

    def __init__(
        self,
        *,
        num_buckets: int,
        max_distance: int,
        num_heads: int,
    ):
        super().__init__()
        self.num_buckets = int(num_buckets)
        self.max_distance = int(max_distance)
        self.num_heads = int(num_heads)
        self.relative_attention_bias = nn.Embedding(self.num_buckets, self.num_heads)

    @staticmethod
    def relative_position_bucket(
        relative_position: torch.Tensor,
        *,
        num_buckets: int,
        max_distance: int,
        bidirectional: bool,
    ) -> torch.Tensor:
        """Map `key_pos - query_pos` to a bucket index in [0, num_buckets).

        Half of the buckets cover exact distances, the rest are log-spaced up
        to `max_distance`; farther distances share the last bucket. When
        bidirectional, the upper half of the buckets holds keys after the
        query. Otherwise keys after the query all fall in bucket 0.
        """
        bucket = torch.zeros_like(relative_position, dtype=torch.long)
        if bidirectional:
            num_buckets //= 2
            bucket = bucket + (relative_position > 0).to(torch.long) * num_buckets
            n = relative_position.abs()
        else:
            n = -torch.clamp(relative_position, max=0)

        # now n is non-negative
        max_exact = num_buckets // 2
        is_small = n < max_exact
        val_if_large = max_exact + (
            torch.log(n.float() / max_exact)
            / math.log(max_distance / max_exact)
            * (num_buckets - max_exact)
        ).to(torch.long)
        val_if_large = torch.clamp(val_if_large, max=num_buckets - 1)
        return bucket + torch.where(is_small, n, val_if_large)

    def forward(self, q_len: int, k_len: int, *, bidirectional: bool, offset: int = 0) -> torch.Tensor:
        """Bias for `q_len` queries starting at absolute position `offset`
        attending to keys at positions 0..k_len-1."""
        device = self.relative_attention_bias.weight.device
        q_pos = torch.arange(offset, offset + q_len, dtype=torch.long, device=device)[:, None]
        k_pos = torch.arange(k_len, dtype=torch.long, device=device)[None, :]
        buckets = self.relative_position_bucket(
            k_pos - q_pos,
            num_buckets=self.num_buckets,
            max_distance=self.max_distance,
            bidirectional=bidirectional,
        )
        # (q,k,heads) -> (1, heads, q, k)
        values = self.relative_attention_bias(buckets)
        return values.permute(2, 0, 1).unsqueeze(0)


@dataclass(frozen=True)
class LayerState:
    """Keys and values already projected by one attention layer.

    Both tensors are (batch, heads, cached_len, d_kv). A state is never
    modified: `extend` returns a new one, so earlier snapshots held by a
    caller stay valid.
    """

    prev_key: torch.Tensor
    prev_value: torch.Tensor

    def extend(self, key: torch.Tensor, value: torch.Tensor) -> "LayerState":
        return LayerState(
            prev_key=torch.cat([self.prev_key, key], dim=2),
            prev_value=torch.cat([self.prev_value, value], dim=2),
        )

    @property
    def seq_len(self) -> int:
        return self.prev_key.size(2)


@dataclass
class AttentionOutput:
    hidden_states: torch.Tensor
    layer_state: LayerState
    attn_weights: torch.Tensor | None = None


class MultiHeadAttention(nn.Module):
    """T5 multi-head attention with relative position bias and key/value state.

    Scores are not divided by sqrt(d_kv); T5 folds that factor into the
    initialization of the query projection.
    """

    def __init__(
        self,
        *,
        d_model: int,
        num_heads: int,
        d_kv: int,
        dropout: float,
    ):
        super().__init__()
        self.d_model = int(d_model)
        self.num_heads = int(num_heads)
        self.d_kv = int(d_kv)
        self.dropout = float(dropout)

        inner_dim = self.num_heads * self.d_kv
        self.q = nn.Linear(self.d_model, inner_dim, bias=False)
        self.k = nn.Linear(self.d_model, inner_dim, bias=False)
        self.v = nn.Linear(self.d_model, inner_dim, bias=False)
        self.o = nn.Linear(inner_dim, self.d_model, bias=False)

    def _shape(self, x: torch.Tensor) -> torch.Tensor:
        # (b, s, h*d) -> (b, h, s, d)
        return x.view(x.size(0), x.size(1), self.num_heads, self.d_kv).transpose(1, 2)

    def forward(
        self,
        hidden_states: torch.Tensor,
        *,
        key_value_states: torch.Tensor | None = None,
        attention_mask: torch.Tensor | None = None,
        position_bias: torch.Tensor | None = None,
        causal: bool = False,
        layer_state: LayerState | None = None,
        output_attentions: bool = False,
    ) -> AttentionOutput:
        """Attend from `hidden_states` (b, q_len, d_model).

        Args:
            key_value_states: Encoder output for cross-attention; self-attention if None.
            attention_mask: Additive mask broadcastable to (b, 1, q, k).
            position_bias: Relative position bias (1, h, q, k); zeros if None.
            causal: Mask keys after each query, counting cached positions.
            layer_state: Keys/values from earlier calls. Self-attention appends
                the new projections to it; cross-attention reuses it as is.
            output_attentions: Also return the attention probabilities.
        """
        bsz, q_len, _ = hidden_states.shape
        q = self._shape(self.q(hidden_states))

        if key_value_states is not None:
            if layer_state is None:
                layer_state = LayerState(
                    prev_key=self._shape(self.k(key_value_states)),
                    prev_value=self._shape(self.v(key_value_states)),
                )
            # the encoder output does not change while decoding, cached K/V stay valid
        else:
            k_new = self._shape(self.k(hidden_states))
            v_new = self._shape(self.v(hidden_states))
            if layer_state is None:
                layer_state = LayerState(prev_key=k_new, prev_value=v_new)
            else:
                layer_state = layer_state.extend(k_new, v_new)

        k = layer_state.prev_key
        v = layer_state.prev_value
        k_len = k.size(2)

        # Attention scores: (b, h, q, k)
        scores = torch.matmul(q, k.transpose(-2, -1))

        if position_bias is not None:
            scores = scores + position_bias

        if attention_mask is not None:
            if attention_mask.dim() != 4:
                raise ValueError(f"attention_mask must be 4D additive mask, got shape {tuple(attention_mask.shape)}")
            scores = scores + attention_mask

        if causal:
            # queries sit at the end of the key sequence when earlier positions are cached
            offset = k_len - q_len
            causal_mask = torch.full((q_len, k_len), fill_value=-1e9, device=scores.device, dtype=scores.dtype)
            causal_mask = torch.triu(causal_mask, diagonal=1 + offset)
            scores = scores + causal_mask.view(1, 1, q_len, k_len)

        attn = F.softmax(scores.float(), dim=-1).type_as(scores)
        attn = F.dropout(attn, p=self.dropout, training=self.training)

        out = torch.matmul(attn, v)  # (b, h, q, d)
        out = out.transpose(1, 2).contiguous().view(bsz, q_len, self.num_heads * self.d_kv)
        out = self.o(out)

        return AttentionOutput(
            hidden_states=out,
            layer_state=layer_state,
            attn_weights=attn if output_attentions else None,
        )


class DenseReluDense(nn.Module):
    """T5 v1.0 feed-forward: wi -> ReLU -> wo."""

    def __init__(self, *, d_model: int, d_ff: int, dropout: float):
        super().__init__()
        self.wi = nn.Linear(d_model, d_ff, bias=False)
        self.wo = nn.Linear(d_ff, d_model, bias=False)
        self.dropout = float(dropout)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x = F.relu(self.wi(x))
        x = F.dropout(x, p=self.dropout, training=self.training)
        return self.wo(x)


class GatedFeedForward(nn.Module):
    """T5.1.1-style gated feed-forward: w_i0, w_i1 with activation on one branch."""

    def __init__(self, *, d_model: int, d_ff: int, dropout: float, activation: str = "gelu"):
        super().__init__()
        self.wi_0 = nn.Linear(d_model, d_ff, bias=False)
        self.wi_1 = nn.Linear(d_model, d_ff, bias=False)
        self.wo = nn.Linear(d_ff, d_model, bias=False)
        self.dropout = float(dropout)
        self.activation = activation

    def _act(self, x: torch.Tensor) -> torch.Tensor:
        if self.activation == "silu":
            return F.silu(x)
        return F.gelu(x, approximate="tanh")

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x_gated = self._act(self.wi_0(x)) * self.wi_1(x)
        x_gated = F.dropout(x_gated, p=self.dropout, training=self.training)
        return self.wo(x_gated)


def build_feed_forward(*, d_model: int, d_ff: int, dropout: float, feed_forward_proj: str) -> nn.Module:
    if feed_forward_proj == "relu":
        return DenseReluDense(d_model=d_model, d_ff=d_ff, dropout=dropout)
    # "gated-gelu" / "gated-silu"
    activation = feed_forward_proj.split("-", 1)[1]
    return GatedFeedForward(d_model=d_model, d_ff=d_ff, dropout=dropout, activation=activation)


@dataclass
class BlockOutput:
    hidden_states: torch.Tensor
    attn_weights: torch.Tensor | None = None


@dataclass
class DecoderBlockOutput:
    hidden_states: torch.Tensor
    self_attn_state: LayerState
    cross_attn_state: LayerState
    attn_weights: torch.Tensor | None = None


class EncoderBlock(nn.Module):
    def __init__(
        self,
        *,
        d_model: int,
        d_kv: int,
        d_ff: int,
        num_heads: int,
        dropout: float,
        layer_norm_epsilon: float,
        feed_forward_proj: str = "relu",
    ):
        super().__init__()
        self.self_attn = MultiHeadAttention(
            d_model=d_model,
            num_heads=num_heads,
            d_kv=d_kv,
            dropout=dropout,
        )
        self.self_attn_layer_norm = RMSNorm(d_model, eps=layer_norm_epsilon)
        self.ff_layer_norm = RMSNorm(d_model, eps=layer_norm_epsilon)
        self.ff = build_feed_forward(
            d_model=d_model, d_ff=d_ff, dropout=dropout, feed_forward_proj=feed_forward_proj
        )
        self.dropout = float(dropout)

    def forward(
        self,
        hidden_states: torch.Tensor,
        *,
        attention_mask: torch.Tensor | None,
        position_bias: torch.Tensor | None,
        output_attentions: bool = False,
    ) -> BlockOutput:
        # Self-attn
        normed = self.self_attn_layer_norm(hidden_states)
        attn = self.self_attn(
            normed,
            attention_mask=attention_mask,
            position_bias=position_bias,
            output_attentions=output_attentions,
        )
        hidden_states = hidden_states + F.dropout(attn.hidden_states, p=self.dropout, training=self.training)

        # FF
        normed = self.ff_layer_norm(hidden_states)
        ff = self.ff(normed)
        hidden_states = hidden_states + F.dropout(ff, p=self.dropout, training=self.training)

        return BlockOutput(hidden_states=hidden_states, attn_weights=attn.attn_weights)


class DecoderBlock(nn.Module):
    def __init__(
        self,
        *,
        d_model: int,
        d_kv: int,
        d_ff: int,
        num_heads: int,
        dropout: float,
        layer_norm_epsilon: float,
        feed_forward_proj: str = "relu",
    ):
        super().__init__()
        self.self_attn = MultiHeadAttention(
            d_model=d_model,
            num_heads=num_heads,
            d_kv=d_kv,
            dropout=dropout,
        )
        self.cross_attn = MultiHeadAttention(
            d_model=d_model,
            num_heads=num_heads,
            d_kv=d_kv,
            dropout=dropout,
        )
        self.self_attn_layer_norm = RMSNorm(d_model, eps=layer_norm_epsilon)
        self.cross_attn_layer_norm = RMSNorm(d_model, eps=layer_norm_epsilon)
        self.ff_layer_norm = RMSNorm(d_model, eps=layer_norm_epsilon)
        self.ff = build_feed_forward(
            d_model=d_model, d_ff=d_ff, dropout=dropout, feed_forward_proj=feed_forward_proj
        )
        self.dropout = float(dropout)

    def forward(
        self,
        hidden_states: torch.Tensor,
        *,
        attention_mask: torch.Tensor | None,
        position_bias: torch.Tensor | None,
        encoder_hidden_states: torch.Tensor,
        encoder_attention_mask: torch.Tensor | None,
        layer_state: tuple[LayerState | None, LayerState | None] | None = None,
        output_attentions: bool = False,
    ) -> DecoderBlockOutput:
        past_self, past_cross = layer_state if layer_state is not None else (None, None)

        # Decoder self-attn (causal)
        normed = self.self_attn_layer_norm(hidden_states)
        sa = self.self_attn(
            normed,
            attention_mask=attention_mask,
            position_bias=position_bias,
            causal=True,
            layer_state=past_self,
            output_attentions=output_attentions,
        )
        hidden_states = hidden_states + F.dropout(sa.hidden_states, p=self.dropout, training=self.training)

        # Cross-attn, no relative bias
        normed = self.cross_attn_layer_norm(hidden_states)
        ca = self.cross_attn(
            normed,
            key_value_states=encoder_hidden_states,
            attention_mask=encoder_attention_mask,
            layer_state=past_cross,
        )
        hidden_states = hidden_states + F.dropout(ca.hidden_states, p=self.dropout, training=self.training)

        # FF
        normed = self.ff_layer_norm(hidden_states)
        ff = self.ff(normed)
        hidden_states = hidden_states + F.dropout(ff, p=self.dropout, training=self.training)

        return DecoderBlockOutput(
            hidden_states=hidden_states,
            self_attn_state=sa.layer_state,
            cross_attn_state=ca.layer_state,
            attn_weights=sa.attn_weights,
        )
