from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Mapping

logger = logging.getLogger(__name__)

FEED_FORWARD_PROJECTIONS = ("relu", "gated-gelu", "gated-silu")


class T5Prefix:
    """Task prefixes the released T5 checkpoints were trained with."""

    ENGLISH2FRENCH = "translate English to French:"
    ENGLISH2GERMAN = "translate English to German:"


@dataclass(frozen=True)
class TaskParams:
    """Generation settings attached to a task in `task_specific_params`."""

    prefix: str = ""
    max_length: int = 200
    num_beams: int = 4
    early_stopping: bool = True
    min_length: int | None = None
    length_penalty: float | None = None
    no_repeat_ngram_size: int | None = None


@dataclass(frozen=True)
class T5Config:
    """T5 architecture hyperparameters.

    Defaults approximate t5-small. Field names follow the `config.json` files
    published with T5 checkpoints, so those load through `from_json_file`.
    """

    # Vocabulary
    vocab_size: int = 32128

    # Model dims
    d_model: int = 512
    d_kv: int = 64
    d_ff: int = 2048

    # Layers/heads
    num_layers: int = 6
    num_decoder_layers: int | None = None  # if None, use num_layers
    num_heads: int = 8

    # Relative attention bias
    relative_attention_num_buckets: int = 32
    relative_attention_max_distance: int = 128

    dropout_rate: float = 0.1
    layer_norm_epsilon: float = 1e-6
    initializer_factor: float = 1.0
    feed_forward_proj: str = "relu"
    n_positions: int = 512

    is_encoder_decoder: bool = True
    output_past: bool = True

    # Special tokens
    pad_token_id: int = 0
    eos_token_id: int = 1
    decoder_start_token_id: int = 0

    # Generation defaults
    max_length: int = 256

    task_specific_params: dict[str, TaskParams] | None = None

    def __post_init__(self) -> None:
        for name in (
            "vocab_size",
            "d_model",
            "d_kv",
            "d_ff",
            "num_layers",
            "num_heads",
            "relative_attention_num_buckets",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")
        if self.num_decoder_layers is not None and self.num_decoder_layers <= 0:
            raise ValueError(f"num_decoder_layers must be positive, got {self.num_decoder_layers}")
        # encoder buckets are split per direction, then half of each side is exact
        if self.relative_attention_num_buckets < 4:
            raise ValueError(
                f"relative_attention_num_buckets must be at least 4, got {self.relative_attention_num_buckets}"
            )
        # the log-spaced range starts at num_buckets // 2 on the decoder side
        if self.relative_attention_max_distance <= self.relative_attention_num_buckets // 2:
            raise ValueError(
                "relative_attention_max_distance must exceed relative_attention_num_buckets // 2, "
                f"got {self.relative_attention_max_distance} with {self.relative_attention_num_buckets} buckets"
            )
        if not 0.0 <= self.dropout_rate < 1.0:
            raise ValueError(f"dropout_rate must be in [0, 1), got {self.dropout_rate}")
        if self.feed_forward_proj not in FEED_FORWARD_PROJECTIONS:
            raise ValueError(
                f"feed_forward_proj must be one of {FEED_FORWARD_PROJECTIONS}, got {self.feed_forward_proj!r}"
            )

    def decoder_layers(self) -> int:
        return int(self.num_layers if self.num_decoder_layers is None else self.num_decoder_layers)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "T5Config":
        known = {f.name for f in fields(cls)}
        ignored = sorted(k for k in data if k not in known)
        if ignored:
            logger.debug("Ignoring config keys not used by T5Config: %s", ", ".join(ignored))

        kwargs = {k: v for k, v in data.items() if k in known}
        tasks = kwargs.get("task_specific_params")
        if tasks is not None:
            task_fields = {f.name for f in fields(TaskParams)}
            kwargs["task_specific_params"] = {
                name: TaskParams(**{k: v for k, v in params.items() if k in task_fields})
                for name, params in tasks.items()
            }
        return cls(**kwargs)

    @classmethod
    def from_json_file(cls, path: str | Path) -> "T5Config":
        path = Path(path)
        logger.info("Loading T5 config from %s", path)
        with path.open("r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
