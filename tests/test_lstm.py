import logging

import pytest
import torch

from recur import (
    BoundaryFlag,
    ConfigurationError,
    Graph,
    InputValue,
    LayoutError,
    LSTMNode,
    Parameter,
    SequenceLayout,
)
from recur.lstm_math import forward_frame, gate_columns, split_gate_block
from recur.persistence import node_states, restore_states

F64 = torch.float64


def _weights(input_dim, output_dim, *, fill=None, seed=0):
    gen = torch.Generator().manual_seed(seed)
    shapes = [
        (output_dim, gate_columns(input_dim, output_dim)),
        (output_dim, gate_columns(input_dim, output_dim)),
        (output_dim, gate_columns(input_dim, output_dim)),
        (output_dim, gate_columns(input_dim, output_dim, peephole=False)),
    ]
    if fill is not None:
        return [torch.full(shape, fill, dtype=F64) for shape in shapes]
    return [0.4 * torch.randn(*shape, generator=gen, dtype=F64) for shape in shapes]


def _lstm(observation, weights, layout, *, default_state=0.0, name="lstm"):
    x = InputValue(f"{name}.x", rows=observation.shape[0])
    x.feed(observation)
    params = [Parameter(f"{name}.{label}", w) for label, w in zip(("wi", "wf", "wo", "wc"), weights)]
    node = LSTMNode(name, x, *params, default_state=default_state)
    node.set_layout(layout)
    node.validate()
    return node, x, params


def _deliver_all(node):
    for index in range(5):
        node.compute_input_partial(index)


def _reference_node():
    layout = SequenceLayout(1, 3)
    layout.set(0, 0, BoundaryFlag.SEQUENCE_START)
    obs = torch.full((2, 3), 0.1, dtype=F64)
    node, x, params = _lstm(obs, _weights(2, 3, fill=0.1), layout, default_state=0.0)
    node.evaluate()
    return node, x, params


def test_reference_forward_values():
    node, _, _ = _reference_node()
    expected = [0.0335975, 0.05485132, 0.06838435]
    for t, value in enumerate(expected):
        assert node.value[0, t].item() == pytest.approx(value, abs=1e-5)
    assert node.value[0, 0].item() == pytest.approx(node.value[1, 0].item(), abs=1e-12)


def test_reference_weight_gradients():
    node, _, (wi, wf, wo, wc) = _reference_node()
    node.gradient = torch.ones_like(node.value)
    _deliver_all(node)

    checks = [
        (wi, [(0, 0, 0.07843818), (0, 1, 0.00784382), (0, 3, 0.00192997), (0, 6, 0.00362767)]),
        (wf, [(0, 0, 0.02738655), (0, 1, 0.00273866), (0, 3, 0.00120922), (0, 6, 0.00227184)]),
        (wo, [(0, 0, 0.07801557), (0, 1, 0.00780156), (0, 3, 0.00268089), (0, 6, 0.00809852)]),
        (wc, [(0, 0, 1.3075038), (0, 1, 0.13075038), (0, 3, 0.03080355)]),
    ]
    for param, entries in checks:
        for row, col, value in entries:
            assert param.gradient[row, col].item() == pytest.approx(value, abs=1e-5), (param.name, col)


def test_gradient_delivered_once_per_minibatch(caplog):
    node, x, (wi, _, _, _) = _reference_node()
    node.gradient = torch.ones_like(node.value)
    node.compute_input_partial(1)
    first = wi.gradient.clone()

    with caplog.at_level(logging.WARNING, logger="recur.lstm"):
        node.compute_input_partial(1)
    torch.testing.assert_close(wi.gradient, first)
    assert "already delivered" in caplog.text

    # a fresh forward re-arms delivery
    node.evaluate()
    node.compute_input_partial(1)
    torch.testing.assert_close(wi.gradient, 2 * first)


def test_repeated_graph_backward_recomputes_gradients(caplog):
    graph = Graph()
    x = InputValue("x", rows=2)
    x.feed(torch.full((2, 3), 0.1, dtype=F64))
    params = [Parameter(label, w) for label, w in zip(("wi", "wf", "wo", "wc"), _weights(2, 3, fill=0.1))]
    graph.add(x, *params, LSTMNode("lstm", x, *params, default_state=0.0))
    layout = SequenceLayout(1, 3)
    layout.set(0, 0, BoundaryFlag.SEQUENCE_START)
    graph.bind(layout)
    graph.forward()
    wi = params[0]

    seed = torch.ones(3, 3, dtype=F64)
    graph.backward({"lstm": seed})
    first = wi.gradient.clone()
    first_x = x.gradient.clone()
    assert first[0, 0].item() == pytest.approx(0.07843818, abs=1e-5)

    with caplog.at_level(logging.WARNING, logger="recur.lstm"):
        graph.backward({"lstm": seed})
    torch.testing.assert_close(wi.gradient, first)
    assert "already delivered" not in caplog.text

    # each sweep reruns BPTT from its own seed
    graph.backward({"lstm": 2 * seed})
    torch.testing.assert_close(wi.gradient, 2 * first)
    torch.testing.assert_close(x.gradient, 2 * first_x)


def _masked_reference(obs, weights, layout, default_state, seed_grad):
    """BPTT by autograd through the same boundary rules."""
    obs = obs.clone().requires_grad_()
    leaves = [w.clone().requires_grad_() for w in weights]
    i, o = obs.shape[0], weights[0].shape[0]
    blocks = [
        split_gate_block(leaves[0], i, o),
        split_gate_block(leaves[1], i, o),
        split_gate_block(leaves[2], i, o),
        split_gate_block(leaves[3], i, o, peephole=False),
    ]
    streams = layout.num_streams
    h = torch.zeros(o, streams, dtype=F64)
    c = torch.full((o, streams), default_state, dtype=F64)
    outputs = []
    for t in range(layout.num_frames):
        start = layout.stream_mask(t, BoundaryFlag.SEQUENCE_START)[None, :]
        idle = layout.stream_mask(t, BoundaryFlag.NO_INPUT)[None, :]
        h_prev = torch.where(start | idle, torch.zeros_like(h), h)
        c_prev = torch.where(idle, torch.zeros_like(c), torch.where(start, torch.full_like(c, default_state), c))
        trace = forward_frame(obs[:, layout.frame_columns(t)], h_prev, c_prev, *blocks)
        h = torch.where(idle, torch.zeros_like(trace.output), trace.output)
        c = torch.where(idle, torch.zeros_like(trace.state), trace.state)
        outputs.append(h)
    value = torch.stack(outputs, dim=1).reshape(o, layout.num_columns)
    (value * seed_grad).sum().backward()
    return value.detach(), obs.grad, [w.grad for w in leaves]


def _boundary_layout():
    layout = SequenceLayout(2, 4)
    layout.set(0, 0, BoundaryFlag.SEQUENCE_START)
    layout.set(0, 1, BoundaryFlag.NO_INPUT)
    layout.set(0, 2, BoundaryFlag.SEQUENCE_START)
    layout.set(1, 0, BoundaryFlag.SEQUENCE_START)
    layout.set(1, 2, BoundaryFlag.SEQUENCE_START)
    layout.set(1, 3, BoundaryFlag.NO_INPUT)
    return layout


def test_bptt_matches_autograd_across_boundaries():
    gen = torch.Generator().manual_seed(11)
    layout = _boundary_layout()
    obs = torch.randn(3, layout.num_columns, generator=gen, dtype=F64)
    seed_grad = torch.randn(2, layout.num_columns, generator=gen, dtype=F64)
    weights = _weights(3, 2, seed=4)

    node, x, params = _lstm(obs, weights, layout, default_state=0.25)
    node.evaluate()
    node.gradient = seed_grad.clone()
    _deliver_all(node)

    value, obs_grad, weight_grads = _masked_reference(obs, weights, layout, 0.25, seed_grad)
    torch.testing.assert_close(node.value, value)
    torch.testing.assert_close(x.gradient, obs_grad)
    for param, expected in zip(params, weight_grads):
        torch.testing.assert_close(param.gradient, expected)


def test_no_input_columns_are_zero():
    layout = _boundary_layout()
    obs = torch.ones(3, layout.num_columns, dtype=F64)
    node, _, _ = _lstm(obs, _weights(3, 2, seed=1), layout)
    node.evaluate()
    # stream 0 frame 1 and stream 1 frame 3
    for col in (2, 7):
        assert torch.count_nonzero(node.value[:, col]) == 0
        assert torch.count_nonzero(node.state[:, col]) == 0


def test_sequence_start_resets_history():
    layout = SequenceLayout(2, 2)
    layout.set(0, 0, BoundaryFlag.SEQUENCE_START)
    layout.set(1, 0, BoundaryFlag.SEQUENCE_START)
    layout.set(1, 1, BoundaryFlag.SEQUENCE_START)
    obs = torch.full((2, 4), 0.3, dtype=F64)
    node, _, _ = _lstm(obs, _weights(2, 3, seed=2), layout, default_state=0.1)
    node.evaluate()
    torch.testing.assert_close(node.value[:, 3], node.value[:, 0])
    assert not torch.allclose(node.value[:, 2], node.value[:, 0])


def test_snapshot_uses_last_frame_with_input():
    layout = SequenceLayout(2, 3)
    layout.set(1, 2, BoundaryFlag.NO_INPUT)
    obs = torch.randn(2, 6, generator=torch.Generator().manual_seed(8), dtype=F64)
    node, _, _ = _lstm(obs, _weights(2, 2, seed=3), layout)
    node.evaluate()
    carry = node.export_carry()
    torch.testing.assert_close(carry.output[:, 0], node.value[:, 4])
    torch.testing.assert_close(carry.output[:, 1], node.value[:, 3])
    torch.testing.assert_close(carry.state[:, 1], node.state[:, 3])
    assert node.get_history().shape == (2, 4)


def test_split_minibatches_match_single_pass():
    gen = torch.Generator().manual_seed(21)
    obs = torch.randn(2, 6, generator=gen, dtype=F64)
    seed_grad = torch.randn(3, 6, generator=gen, dtype=F64)
    weights = _weights(2, 3, seed=9)

    whole_layout = SequenceLayout(1, 6)
    whole_layout.set(0, 0, BoundaryFlag.SEQUENCE_START)
    whole, whole_x, whole_params = _lstm(obs, weights, whole_layout, name="whole")
    whole.evaluate()
    whole.gradient = seed_grad.clone()
    _deliver_all(whole)

    head_layout = SequenceLayout(1, 3)
    head_layout.set(0, 0, BoundaryFlag.SEQUENCE_START)
    head, head_x, head_params = _lstm(obs[:, :3], weights, head_layout, name="head")
    tail, tail_x, tail_params = _lstm(obs[:, 3:], weights, SequenceLayout(1, 3), name="tail")

    head.evaluate()
    tail.set_history(head.get_history())
    tail.evaluate()
    torch.testing.assert_close(torch.cat([head.value, tail.value], dim=1), whole.value)

    tail.gradient = seed_grad[:, 3:].clone()
    _deliver_all(tail)
    head.set_cross_minibatch_error(tail.get_cross_minibatch_error())
    head.gradient = seed_grad[:, :3].clone()
    _deliver_all(head)

    torch.testing.assert_close(torch.cat([head_x.gradient, tail_x.gradient], dim=1), whole_x.gradient)
    for h, t, w in zip(head_params, tail_params, whole_params):
        torch.testing.assert_close(h.gradient + t.gradient, w.gradient)
    # injected errors hold for every sweep of this minibatch; the next forward drops them
    assert head.use_future_errors
    head.evaluate()
    assert not head.use_future_errors


def test_validation_errors():
    layout = SequenceLayout(1, 3)
    obs = torch.zeros(2, 3, dtype=F64)
    weights = _weights(2, 3, fill=0.1)

    x = InputValue("x", rows=2)
    x.feed(obs)
    params = [Parameter(f"w{i}", w) for i, w in enumerate(weights)]

    short = LSTMNode("short", x, *params[:3])
    short.set_layout(layout)
    with pytest.raises(ConfigurationError):
        short.validate()

    feed = InputValue("feed", rows=3)
    feed.feed(torch.zeros(3, 7, dtype=F64))
    not_param = LSTMNode("np", x, feed, params[1], params[2], params[3])
    with pytest.raises(ConfigurationError):
        not_param.validate()

    bad_cell = Parameter("bad", torch.zeros(3, 7, dtype=F64))
    wrong_cols = LSTMNode("cols", x, params[0], params[1], params[2], bad_cell)
    with pytest.raises(ConfigurationError):
        wrong_cols.validate()

    bad_rows = Parameter("rows", torch.zeros(2, 7, dtype=F64))
    wrong_rows = LSTMNode("rows", x, params[0], bad_rows, params[2], params[3])
    with pytest.raises(ConfigurationError):
        wrong_rows.validate()

    sparse_x = InputValue("sx", rows=2)
    sparse_x.feed(torch.eye(2, 3, dtype=F64).to_sparse())
    sparse = LSTMNode("sparse", sparse_x, *params)
    with pytest.raises(ConfigurationError):
        sparse.validate()


def test_frame_gradients_and_bad_carries_rejected():
    node, _, _ = _reference_node()
    node.gradient = torch.ones_like(node.value)
    with pytest.raises(ConfigurationError):
        node.compute_input_partial(0, frame=1)
    with pytest.raises(ConfigurationError):
        node.compute_input_partial(5)
    with pytest.raises(LayoutError):
        node.set_history(torch.zeros(3, 3, dtype=F64))
    with pytest.raises(LayoutError):
        node.set_history(torch.zeros(2, 2, dtype=F64))


def test_save_and_load_state():
    node, _, _ = _reference_node()
    states = node_states([node])
    assert states["lstm"]["output_dim"] == 3

    fresh = LSTMNode("lstm")
    restore_states([fresh], states, format_version=2)
    assert (fresh.input_dim, fresh.output_dim, fresh.default_state) == (2, 3, 0.0)

    legacy = LSTMNode("lstm", default_state=0.7)
    restore_states([legacy], {"lstm": {"operation": "LSTM"}}, format_version=1)
    assert legacy.default_state == pytest.approx(0.1)
    assert legacy.output_dim == 0


def test_sequence_start_at_frame_one_restarts_the_run():
    layout = SequenceLayout(1, 3)
    layout.set(0, 1, BoundaryFlag.SEQUENCE_START)
    obs = torch.full((2, 3), 0.1, dtype=F64)
    node, _, _ = _lstm(obs, _weights(2, 3, fill=0.1), layout, default_state=0.0)
    node.evaluate()
    # frame 0 already starts from zero history, so the reset at frame 1 repeats it
    expected = [0.0335975, 0.0335975, 0.05485132]
    for t, value in enumerate(expected):
        assert node.value[0, t].item() == pytest.approx(value, abs=1e-5)


def test_get_history_reports_incoming_and_outgoing_carry():
    obs = torch.randn(2, 6, generator=torch.Generator().manual_seed(5), dtype=F64)
    weights = _weights(2, 3, seed=6)
    head_layout = SequenceLayout(1, 3)
    head_layout.set(0, 0, BoundaryFlag.SEQUENCE_START)
    head, _, _ = _lstm(obs[:, :3], weights, head_layout, name="head")
    tail, _, _ = _lstm(obs[:, 3:], weights, SequenceLayout(1, 3), name="tail")

    with pytest.raises(RuntimeError):
        tail.get_history()
    head.evaluate()
    tail.set_history(head.get_history())
    tail.evaluate()

    torch.testing.assert_close(tail.get_history(last=False), head.get_history())
    outgoing = tail.get_history()
    torch.testing.assert_close(outgoing[:, 0], tail.value[:, 2])
    torch.testing.assert_close(outgoing[:, 1], tail.state[:, 2])
