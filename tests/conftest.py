import pytest
import torch

from t5_seq2seq import T5Config, T5ForConditionalGeneration


@pytest.fixture
def tiny_config():
    """Small config for fast CPU tests; dropout off so outputs are deterministic."""
    return T5Config(
        vocab_size=32,
        d_model=16,
        d_kv=8,
        d_ff=32,
        num_layers=2,
        num_heads=2,
        relative_attention_num_buckets=8,
        dropout_rate=0.0,
    )


@pytest.fixture
def lm_model(tiny_config):
    torch.manual_seed(0)
    model = T5ForConditionalGeneration(tiny_config)
    model.eval()
    return model


@pytest.fixture
def source_ids():
    torch.manual_seed(1)
    return torch.randint(2, 32, (1, 4))
