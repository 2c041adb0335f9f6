"""
Next-frame prediction with one LSTM layer over packed minibatches.

Sequences of random length are packed onto parallel streams and cut into
fixed-size minibatches, so most sequences straddle a minibatch boundary. The
runner stitches the LSTM's output and cell state across those boundaries.
"""

from __future__ import annotations

import logging
import os
import sys

import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import recur
from recur.lstm_math import gate_columns


MODEL = {
    "hidden_size": 4,
    "default_state": 0.0,
    "init_scale": 0.2,
}

TRAINING = {
    "seed": 7,
    "epochs": 5,
    "lr": 0.05,
    "log_every": 4,
    "data": {
        "count": 24,
        "feature_dim": 4,
        "num_streams": 4,
        "minibatch_frames": 10,
    },
}


def build_graph(feature_dim: int, config: recur.RecurrenceConfig) -> recur.Graph:
    """
    Observation -> LSTM. The output size equals the feature size so the LSTM
    output can be regressed onto the next frame directly.
    """
    hidden = MODEL["hidden_size"]
    if hidden != feature_dim:
        raise ValueError("hidden_size must equal feature_dim for next-frame regression")
    graph = recur.Graph()
    x = recur.InputValue("x", rows=feature_dim)
    scale = MODEL["init_scale"]
    params = [
        recur.Parameter(name, scale * torch.randn(hidden, gate_columns(feature_dim, hidden, peephole=peephole)))
        for name, peephole in (("w_input", True), ("w_forget", True), ("w_output", True), ("w_cell", False))
    ]
    lstm = recur.LSTMNode("lstm", x, *params, config=config)
    graph.add(x, *params, lstm)
    return graph


def sgd(lr: float):
    def update(graph: recur.Graph) -> None:
        for param in graph.parameters():
            if param.gradient is not None:
                param.value -= lr * param.gradient
    return update


def run() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    torch.manual_seed(TRAINING["seed"])

    batches = recur.load_demo_minibatches(config=TRAINING["data"], seed=TRAINING["seed"])
    config = recur.load_config(default_state=MODEL["default_state"], log_every=TRAINING["log_every"])
    graph = build_graph(batches[0].feature_dim, config)
    runner = recur.MinibatchRunner(
        graph,
        "x",
        "lstm",
        config=config,
        update_fn=sgd(TRAINING["lr"]),
    )

    for epoch in range(1, TRAINING["epochs"] + 1):
        losses = runner.run(batches)
        print(f"epoch {epoch}: mean loss {sum(losses) / len(losses):.5f}")

    print(recur.summarize_gradients(graph).to_text(top_k=4))
    print("Done.")


if __name__ == "__main__":
    run()
