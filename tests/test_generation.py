"""
Tests for the generation adapter and greedy decoding.

Tests verify:
  1. Cache variants are dispatched: none/NoCache start fresh, T5Cache resumes
  2. Caches from other model families raise ValueError before any computation
  3. Greedy generation with the cache equals greedy generation without it
"""

import torch
import pytest

from t5_seq2seq import (
    BartCache,
    GPT2Cache,
    LMHeadModel,
    LMModelOutput,
    NoCache,
    T5Cache,
    T5Config,
    T5ForConditionalGeneration,
)


class TestCacheDispatch:
    def test_is_lm_head_model(self, lm_model):
        assert isinstance(lm_model, LMHeadModel)

    @pytest.mark.parametrize("cache", [None, NoCache(), T5Cache(None)])
    def test_fresh_cache_variants(self, lm_model, source_ids, cache):
        out = lm_model.lm_forward(input_ids=source_ids, cache=cache, decoder_input_ids=torch.tensor([[0]]))

        assert isinstance(out, LMModelOutput)
        assert out.lm_logits.shape == (1, 1, 32)
        assert isinstance(out.cache, T5Cache)
        assert len(out.cache.layer_states) == 2
        assert out.cache.layer_states[0][0].seq_len == 1
        assert out.cache.layer_states[0][1].seq_len == 4

    def test_t5_cache_resumes(self, lm_model, source_ids):
        encoded = lm_model.encode(source_ids)
        first = lm_model.lm_forward(
            input_ids=source_ids, cache=None, encoder_outputs=encoded, decoder_input_ids=torch.tensor([[0]])
        )
        second = lm_model.lm_forward(
            input_ids=source_ids,
            cache=first.cache,
            encoder_outputs=encoded,
            decoder_input_ids=torch.tensor([[7]]),
        )
        for self_state, cross_state in second.cache.layer_states:
            assert self_state.seq_len == 2
            assert cross_state.seq_len == 4

        direct = lm_model(encoder_output=encoded, decoder_input_ids=torch.tensor([[0, 7]])).decoder_output
        torch.testing.assert_close(second.lm_logits[:, 0], direct[:, 1], atol=1e-5, rtol=1e-4)

    def test_matches_head_forward(self, lm_model, source_ids):
        tgt = torch.tensor([[0, 3, 5]])
        adapter = lm_model.lm_forward(input_ids=source_ids, cache=NoCache(), decoder_input_ids=tgt)
        head = lm_model(input_ids=source_ids, decoder_input_ids=tgt)
        torch.testing.assert_close(adapter.lm_logits, head.decoder_output)

    def test_unused_arguments_ignored(self, lm_model, source_ids):
        tgt = torch.tensor([[0]])
        plain = lm_model.lm_forward(input_ids=source_ids, cache=None, decoder_input_ids=tgt)
        extra = lm_model.lm_forward(
            input_ids=source_ids,
            cache=None,
            token_type_ids=torch.zeros_like(source_ids),
            position_ids=torch.arange(4)[None],
            input_embeds=torch.randn(1, 4, 16),
            decoder_input_ids=tgt,
        )
        torch.testing.assert_close(extra.lm_logits, plain.lm_logits)

    @pytest.mark.parametrize("cache", [BartCache(None), BartCache([]), GPT2Cache(None), GPT2Cache([torch.zeros(1)])])
    def test_incompatible_cache_rejected(self, lm_model, source_ids, cache, monkeypatch):
        def fail(*args, **kwargs):
            raise AssertionError("no computation expected")

        monkeypatch.setattr(lm_model.base_model, "forward", fail)
        with pytest.raises(ValueError, match="Cache not compatible with T5 Model"):
            lm_model.lm_forward(input_ids=source_ids, cache=cache, decoder_input_ids=torch.tensor([[0]]))


class TestGreedyGenerate:
    def test_output_shape_and_start_token(self, lm_model, source_ids):
        out = lm_model.generate(source_ids, max_length=6, eos_token_id=-1)
        assert out.shape == (1, 6)
        assert out[0, 0].item() == 0

    def test_matches_uncached_greedy(self, lm_model):
        src = torch.tensor([[5, 6, 7, 0], [8, 9, 10, 11]])
        mask = torch.tensor([[1, 1, 1, 0], [1, 1, 1, 1]])
        generated = lm_model.generate(src, attention_mask=mask, max_length=5, eos_token_id=-1)

        # recompute every step from scratch, no cache
        ids = torch.zeros((2, 1), dtype=torch.long)
        with torch.no_grad():
            for _ in range(4):
                logits = lm_model(input_ids=src, attention_mask=mask, decoder_input_ids=ids).decoder_output
                ids = torch.cat([ids, logits[:, -1].argmax(-1, keepdim=True)], dim=1)
        assert torch.equal(generated, ids)

    def test_max_length_one_is_start_token_only(self, lm_model, source_ids):
        out = lm_model.generate(source_ids, max_length=1, eos_token_id=-1)
        assert out.tolist() == [[0]]

    def test_zero_max_length_rejected(self, lm_model, source_ids):
        with pytest.raises(ValueError, match="max_length"):
            lm_model.generate(source_ids, max_length=0)

    def test_stops_at_eos(self, lm_model, source_ids):
        first = lm_model.generate(source_ids, max_length=2, eos_token_id=-1)
        eos = first[0, 1].item()
        out = lm_model.generate(source_ids, max_length=10, eos_token_id=eos)
        assert out.shape == (1, 2)

    def test_without_stored_cache(self, tiny_config, source_ids):
        torch.manual_seed(0)
        cached = T5ForConditionalGeneration(tiny_config)
        torch.manual_seed(0)
        uncached = T5ForConditionalGeneration(T5Config(**{**tiny_config.to_dict(), "output_past": False}))

        a = cached.generate(source_ids, max_length=5, eos_token_id=-1)
        b = uncached.generate(source_ids, max_length=5, eos_token_id=-1)
        assert torch.equal(a, b)
