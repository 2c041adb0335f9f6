"""
Encoder/decoder stitching by hand.

An encoder LSTM reads a source sequence, its final output and cell state seed
a decoder LSTM, and after the decoder's backward sweep its boundary errors are
sent back into the encoder before the encoder's own backward sweep.
"""

from __future__ import annotations

import os
import sys

import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import recur
from recur.lstm_math import gate_columns


CONFIG = {
    "seed": 3,
    "source_len": 6,
    "target_len": 4,
    "feature_dim": 3,
    "hidden_size": 5,
    "default_state": 0.0,
}


def make_lstm(name: str, input_dim: int, hidden: int, config: recur.RecurrenceConfig) -> recur.Graph:
    graph = recur.Graph()
    x = recur.InputValue(f"{name}.x", rows=input_dim)
    params = [
        recur.Parameter(f"{name}.{label}", 0.3 * torch.randn(hidden, gate_columns(input_dim, hidden, peephole=label != "wc")))
        for label in ("wi", "wf", "wo", "wc")
    ]
    graph.add(x, *params, recur.LSTMNode(name, x, *params, config=config))
    return graph


def single_sequence_layout(frames: int, *, start: bool) -> recur.SequenceLayout:
    layout = recur.SequenceLayout(1, frames)
    if start:
        layout.set(0, 0, recur.BoundaryFlag.SEQUENCE_START)
    return layout


def run() -> None:
    torch.manual_seed(CONFIG["seed"])
    d, h = CONFIG["feature_dim"], CONFIG["hidden_size"]
    source = torch.randn(d, CONFIG["source_len"])
    target = torch.randn(h, CONFIG["target_len"])

    config = recur.load_config(default_state=CONFIG["default_state"])
    encoder = make_lstm("encoder", d, h, config)
    decoder = make_lstm("decoder", d, h, config)
    store = recur.MinibatchHistoryStore()

    encoder["encoder.x"].feed(source)
    encoder.bind(single_sequence_layout(CONFIG["source_len"], start=True))
    encoder.forward()

    decoder_layout = single_sequence_layout(CONFIG["target_len"], start=False)
    decoder["decoder.x"].feed(torch.zeros(d, CONFIG["target_len"]))
    decoder.bind(decoder_layout)
    store.transfer_history(encoder["encoder"], decoder["decoder"])
    decoder.forward()

    loss, seed = recur.masked_squared_error(decoder["decoder"].value, target, decoder_layout)
    decoder.backward({"decoder": seed})
    store.transfer_errors(decoder["decoder"], encoder["encoder"])
    encoder.backward({"encoder": torch.zeros_like(encoder["encoder"].value)})

    print(f"decoder loss {loss.item():.5f}")
    print(recur.summarize_gradients(encoder).to_text(top_k=3))
    print("Done.")


if __name__ == "__main__":
    run()
