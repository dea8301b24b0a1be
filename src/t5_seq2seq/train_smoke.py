from __future__ import annotations

import logging

import torch

from t5_seq2seq import T5Config, T5ForConditionalGeneration

logger = logging.getLogger(__name__)


def run_smoke(config: T5Config | None = None, *, device: torch.device | None = None) -> dict:
    """One forward/backward/optimizer step on random data with some padding."""
    torch.manual_seed(0)

    # Keep this intentionally tiny: it only checks that training works end to end.
    cfg = config or T5Config(
        vocab_size=512,
        d_model=64,
        d_kv=16,
        d_ff=128,
        num_layers=2,
        num_heads=4,
        dropout_rate=0.0,
    )
    device = device or torch.device("cuda" if torch.cuda.is_available() else "cpu")
    model = T5ForConditionalGeneration(cfg).to(device)
    model.train()

    bsz, src_len, tgt_len = 2, 16, 12
    # ids 0 and 1 are pad/eos
    input_ids = torch.randint(2, cfg.vocab_size, (bsz, src_len), device=device)
    attention_mask = torch.ones_like(input_ids)
    input_ids[0, -2:] = cfg.pad_token_id
    attention_mask[0, -2:] = 0

    labels = torch.randint(2, cfg.vocab_size, (bsz, tgt_len), device=device)
    labels[0, -3:] = -100

    loss = model.compute_loss(input_ids, labels, attention_mask=attention_mask)
    loss.backward()

    opt = torch.optim.AdamW(model.parameters(), lr=1e-3)
    opt.step()
    opt.zero_grad(set_to_none=True)

    return {
        "device": str(device),
        "loss": float(loss.detach().cpu()),
        "params": sum(p.numel() for p in model.parameters()),
    }


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logger.info("Smoke run: %s", run_smoke())


if __name__ == "__main__":
    # python -m t5_seq2seq.train_smoke
    main()
