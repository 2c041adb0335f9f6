import pytest
import torch

from recur import (
    BoundaryFlag,
    Graph,
    InputValue,
    LSTMNode,
    Parameter,
    SequenceLayout,
    find_unwritten,
    set_debug_sentinel,
    summarize_gradients,
)
from recur.diagnostics import check_forward_buffers
from recur.lstm_math import gate_columns


@pytest.fixture
def sentinel():
    set_debug_sentinel(True)
    yield
    set_debug_sentinel(None)


def _graph():
    gen = torch.Generator().manual_seed(0)
    g = Graph()
    x = InputValue("x", rows=2)
    params = [
        Parameter(f"w{k}", 0.3 * torch.randn(3, gate_columns(2, 3, peephole=k < 3), generator=gen))
        for k in range(4)
    ]
    g.add(x, *params, LSTMNode("lstm", x, *params))
    layout = SequenceLayout(2, 3)
    layout.set(0, 0, BoundaryFlag.SEQUENCE_START)
    layout.set(1, 2, BoundaryFlag.NO_INPUT)
    x.feed(torch.randn(2, 6, generator=gen))
    g.bind(layout)
    return g


def test_find_unwritten_reports_nan_columns():
    t = torch.zeros(2, 4)
    t[1, 2] = float("nan")
    assert find_unwritten(t) == [2]
    with pytest.raises(ValueError):
        find_unwritten(torch.zeros(3))


def test_forward_writes_every_cell(sentinel):
    g = _graph()
    g.forward()
    assert check_forward_buffers(g) == {}
    lstm = g["lstm"]
    for name in ("state", "gi", "gf", "go", "tanh_state", "tanh_candidate"):
        assert find_unwritten(getattr(lstm, name)) == []


def test_gradient_summary_lists_parameters_first():
    g = _graph()
    g.forward()
    g.backward({"lstm": torch.ones(3, 6)})
    summary = summarize_gradients(g)
    assert sorted(rec.name for rec in summary.parameters) == ["w0", "w1", "w2", "w3"]
    norms = [rec.l2 for rec in summary.nodes]
    assert norms == sorted(norms, reverse=True)
    assert {rec.name for rec in summary.nodes} == {"x", "lstm"}
    text = summary.to_text(top_k=2)
    assert text.startswith("Parameter gradients:")
    assert "Node gradients:" in text
    with pytest.raises(ValueError):
        summarize_gradients(g, sort_by="nope")
