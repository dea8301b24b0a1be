"""Tests for T5Config validation and loading."""

import dataclasses
import json

import pytest
import torch

from t5_seq2seq import T5Config, T5ForConditionalGeneration, T5Prefix, TaskParams


class TestValidation:
    def test_defaults_are_valid(self):
        cfg = T5Config()
        assert cfg.d_model == 512
        assert cfg.decoder_layers() == cfg.num_layers

    def test_num_decoder_layers_override(self):
        cfg = T5Config(num_layers=3, num_decoder_layers=5)
        assert cfg.decoder_layers() == 5

    @pytest.mark.parametrize(
        "field",
        ["vocab_size", "d_model", "d_kv", "d_ff", "num_layers", "num_heads", "relative_attention_num_buckets"],
    )
    def test_non_positive_dims_rejected(self, field):
        with pytest.raises(ValueError, match=field):
            T5Config(**{field: 0})

    @pytest.mark.parametrize("rate", [-0.1, 1.0, 1.5])
    def test_dropout_out_of_range(self, rate):
        with pytest.raises(ValueError, match="dropout_rate"):
            T5Config(dropout_rate=rate)

    def test_unknown_feed_forward_proj(self):
        with pytest.raises(ValueError, match="feed_forward_proj"):
            T5Config(feed_forward_proj="swish")

    @pytest.mark.parametrize("buckets", [1, 2, 3])
    def test_too_few_buckets_rejected(self, buckets):
        with pytest.raises(ValueError, match="relative_attention_num_buckets"):
            T5Config(relative_attention_num_buckets=buckets)

    @pytest.mark.parametrize("distance", [4, 8, 16])
    def test_max_distance_inside_exact_range_rejected(self, distance):
        with pytest.raises(ValueError, match="relative_attention_max_distance"):
            T5Config(relative_attention_num_buckets=32, relative_attention_max_distance=distance)

    def test_smallest_bucket_layout_runs(self):
        cfg = T5Config(
            vocab_size=32,
            d_model=16,
            d_kv=8,
            d_ff=32,
            num_layers=1,
            num_heads=2,
            relative_attention_num_buckets=4,
            relative_attention_max_distance=3,
            dropout_rate=0.0,
        )
        model = T5ForConditionalGeneration(cfg).eval()
        src = torch.arange(2, 22).unsqueeze(0)
        with torch.no_grad():
            logits = model(input_ids=src, decoder_input_ids=torch.zeros((1, 6), dtype=torch.long)).decoder_output
        assert logits.shape == (1, 6, 32)
        assert torch.isfinite(logits).all()

    def test_frozen(self):
        cfg = T5Config()
        with pytest.raises(dataclasses.FrozenInstanceError):
            cfg.d_model = 8


class TestLoading:
    def test_from_dict_ignores_unknown_keys(self):
        cfg = T5Config.from_dict({"d_model": 64, "architectures": ["T5WithLMHeadModel"], "model_type": "t5"})
        assert cfg.d_model == 64

    def test_from_json_file(self, tmp_path):
        data = {
            "d_model": 32,
            "d_ff": 64,
            "d_kv": 8,
            "num_heads": 4,
            "num_layers": 2,
            "vocab_size": 100,
            "output_past": True,
            "task_specific_params": {
                "summarization": {
                    "early_stopping": True,
                    "length_penalty": 2.0,
                    "max_length": 200,
                    "min_length": 30,
                    "no_repeat_ngram_size": 3,
                    "num_beams": 4,
                    "prefix": "summarize: ",
                },
                "translation_en_to_fr": {
                    "early_stopping": True,
                    "max_length": 300,
                    "num_beams": 4,
                    "prefix": T5Prefix.ENGLISH2FRENCH + " ",
                },
            },
        }
        path = tmp_path / "config.json"
        path.write_text(json.dumps(data), encoding="utf-8")

        cfg = T5Config.from_json_file(path)
        assert cfg.vocab_size == 100
        assert cfg.num_heads == 4
        summarization = cfg.task_specific_params["summarization"]
        assert isinstance(summarization, TaskParams)
        assert summarization.min_length == 30
        assert cfg.task_specific_params["translation_en_to_fr"].length_penalty is None

    def test_invalid_file_values_rejected(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"num_heads": 0}), encoding="utf-8")
        with pytest.raises(ValueError, match="num_heads"):
            T5Config.from_json_file(path)

    def test_to_dict_round_trip(self):
        cfg = T5Config(d_model=48, num_heads=6)
        assert T5Config.from_dict(cfg.to_dict()) == cfg
