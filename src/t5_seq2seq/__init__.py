"""T5 encoder-decoder Transformer (PyTorch) with incremental decoding.

Encoder and decoder share one embedding table, which also serves as the
output projection of the language-modeling head. The decoder keeps a
per-layer key/value cache so that generation does not recompute past
positions; see `generation` for the contract a decoding loop relies on.
"""

from .config import T5Config, T5Prefix, TaskParams
from .generation import BartCache, Cache, GPT2Cache, LMHeadModel, LMModelOutput, NoCache, T5Cache
from .layers import LayerState
from .model import T5ForConditionalGeneration, T5Model, T5ModelOutput, T5Stack

__all__ = [
	"T5Config",
	"T5Prefix",
	"TaskParams",
	"Cache",
	"NoCache",
	"T5Cache",
	"BartCache",
	"GPT2Cache",
	"LMHeadModel",
	"LMModelOutput",
	"LayerState",
	"T5Stack",
	"T5Model",
	"T5ModelOutput",
	"T5ForConditionalGeneration",
]
