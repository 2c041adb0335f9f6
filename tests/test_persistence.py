import pytest
import torch

from recur import (
    BoundaryFlag,
    ConfigurationError,
    CURRENT_FORMAT_VERSION,
    Graph,
    InputValue,
    LSTMNode,
    Parameter,
    SequenceLayout,
    load_checkpoint,
    past_value,
    save_checkpoint,
)
from recur.lstm_math import gate_columns


def _graph(seed=None, default_state=0.0):
    g = Graph()
    x = InputValue("x", rows=3)
    shapes = [(2, gate_columns(3, 2))] * 3 + [(2, gate_columns(3, 2, peephole=False))]
    if seed is None:
        weights = [torch.zeros(shape) for shape in shapes]
    else:
        gen = torch.Generator().manual_seed(seed)
        weights = [0.5 * torch.randn(*shape, generator=gen) for shape in shapes]
    params = [Parameter(name, w) for name, w in zip(("wi", "wf", "wo", "wc"), weights)]
    lstm = LSTMNode("lstm", x, *params, default_state=default_state)
    delayed = past_value("delayed", lstm, initial_activation=0.3)
    g.add(x, *params, lstm, delayed)
    return g


def _run(g, obs):
    layout = SequenceLayout(2, 3)
    layout.set(0, 0, BoundaryFlag.SEQUENCE_START)
    layout.set(1, 0, BoundaryFlag.SEQUENCE_START)
    g["x"].feed(obs)
    g.bind(layout)
    g.forward()
    return g["lstm"].value.clone(), g["delayed"].value.clone()


def test_checkpoint_round_trip(tmp_path):
    obs = torch.randn(3, 6, generator=torch.Generator().manual_seed(0))
    trained = _graph(seed=1, default_state=0.2)
    expected_lstm, expected_delay = _run(trained, obs)

    path = save_checkpoint(tmp_path / "ckpt" / "model.pt", trained)
    assert path.exists()

    restored = _graph(seed=None, default_state=0.0)
    version = load_checkpoint(path, restored)
    assert version == CURRENT_FORMAT_VERSION
    assert restored["lstm"].default_state == 0.2
    assert restored["delayed"].initial_activation == 0.3

    lstm_value, delay_value = _run(restored, obs)
    torch.testing.assert_close(lstm_value, expected_lstm)
    torch.testing.assert_close(delay_value, expected_delay)


def test_checkpoint_missing_node_is_strict(tmp_path):
    g = _graph(seed=2)
    path = save_checkpoint(tmp_path / "model.pt", [g["lstm"], g["wi"]])

    with pytest.raises(ConfigurationError):
        load_checkpoint(path, _graph())

    partial = _graph()
    load_checkpoint(path, partial, strict=False)
    torch.testing.assert_close(partial["wi"].value, g["wi"].value)


def test_rejects_foreign_payload(tmp_path):
    path = tmp_path / "other.pt"
    torch.save({"weights": torch.zeros(1)}, path)
    with pytest.raises(ConfigurationError):
        load_checkpoint(path, _graph())
