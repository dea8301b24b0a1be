import math

import torch

from t5_seq2seq import T5Config
from t5_seq2seq.train_smoke import run_smoke


def test_smoke_step_runs():
    cfg = T5Config(
        vocab_size=64,
        d_model=16,
        d_kv=8,
        d_ff=32,
        num_layers=1,
        num_heads=2,
        dropout_rate=0.1,
    )
    result = run_smoke(cfg, device=torch.device("cpu"))
    assert result["device"] == "cpu"
    assert math.isfinite(result["loss"])
    assert result["params"] > 0


def test_smoke_step_gated_feed_forward():
    cfg = T5Config(
        vocab_size=64,
        d_model=16,
        d_kv=8,
        d_ff=32,
        num_layers=1,
        num_heads=2,
        feed_forward_proj="gated-gelu",
    )
    result = run_smoke(cfg, device=torch.device("cpu"))
    assert math.isfinite(result["loss"])
