# recur/lstm_math.py
"""
Gate arithmetic for the fused LSTM node.

Everything here works on one frame at a time with streams along the columns:
observations are ``[input_dim, S]``, outputs and states ``[output_dim, S]``.
A gate block is laid out as ``[bias | Wx | Wh | Wc]`` with one column each for
the bias and the peephole; the candidate block has no peephole column.
"""

from __future__ import annotations

from typing import NamedTuple, Optional

import torch


class GateBlock(NamedTuple):
    bias: torch.Tensor
    wx: torch.Tensor
    wh: torch.Tensor
    wc: Optional[torch.Tensor]


class FrameTrace(NamedTuple):
    gi: torch.Tensor
    gf: torch.Tensor
    go: torch.Tensor
    state: torch.Tensor
    tanh_state: torch.Tensor
    tanh_candidate: torch.Tensor
    output: torch.Tensor


class FrameGradients(NamedTuple):
    to_obs: torch.Tensor
    to_prev_output: torch.Tensor
    to_prev_state: torch.Tensor
    input_gate: torch.Tensor
    forget_gate: torch.Tensor
    output_gate: torch.Tensor
    cell: torch.Tensor


def gate_columns(input_dim: int, output_dim: int, peephole: bool = True) -> int:
    return 1 + input_dim + output_dim + (1 if peephole else 0)


def split_gate_block(
    block: torch.Tensor,
    input_dim: int,
    output_dim: int,
    peephole: bool = True,
) -> GateBlock:
    """
    Column views into a gate block. Writing through a view writes the block.
    """
    bias = block.narrow(1, 0, 1)
    wx = block.narrow(1, 1, input_dim)
    wh = block.narrow(1, 1 + input_dim, output_dim)
    wc = block.narrow(1, 1 + input_dim + output_dim, 1) if peephole else None
    return GateBlock(bias=bias, wx=wx, wh=wh, wc=wc)


def sigmoid_derivative(activated: torch.Tensor) -> torch.Tensor:
    """Derivative of the logistic function expressed through its output."""
    return activated * (1.0 - activated)


def gradient_of_tanh(activated: torch.Tensor, grad_out: torch.Tensor) -> torch.Tensor:
    """Chain ``grad_out`` through tanh given the tanh output."""
    return grad_out * (1.0 - activated * activated)


def forward_frame(
    obs: torch.Tensor,
    prev_output: torch.Tensor,
    prev_state: torch.Tensor,
    input_gate: GateBlock,
    forget_gate: GateBlock,
    output_gate: GateBlock,
    cell: GateBlock,
) -> FrameTrace:
    gi = torch.sigmoid(
        input_gate.wx @ obs + input_gate.wh @ prev_output + input_gate.bias + input_gate.wc * prev_state
    )
    gf = torch.sigmoid(
        forget_gate.wx @ obs + forget_gate.wh @ prev_output + forget_gate.bias + forget_gate.wc * prev_state
    )
    tanh_candidate = torch.tanh(cell.wx @ obs + cell.wh @ prev_output + cell.bias)
    state = gi * tanh_candidate + gf * prev_state
    # Output gate peeks at the updated cell.
    go = torch.sigmoid(
        output_gate.wx @ obs + output_gate.wh @ prev_output + output_gate.bias + output_gate.wc * state
    )
    tanh_state = torch.tanh(state)
    output = go * tanh_state
    return FrameTrace(
        gi=gi,
        gf=gf,
        go=go,
        state=state,
        tanh_state=tanh_state,
        tanh_candidate=tanh_candidate,
        output=output,
    )


def _rowsum(t: torch.Tensor) -> torch.Tensor:
    return t.sum(dim=1, keepdim=True)


def gate_gradients(
    error: torch.Tensor,
    state_error: torch.Tensor,
    obs: torch.Tensor,
    prev_output: torch.Tensor,
    prev_state: torch.Tensor,
    trace: FrameTrace,
    input_gate: GateBlock,
    forget_gate: GateBlock,
    output_gate: GateBlock,
    cell: GateBlock,
) -> FrameGradients:
    """
    Backpropagate one frame.

    Args:
        error: dL/dh for this frame, already including the error flowing back
            from the next frame's recurrent input.
        state_error: dL/dc arriving from the next frame.
        obs, prev_output, prev_state: the frame's inputs as used in the forward pass.
        trace: the frame's forward intermediates.

    Returns the errors for the observation and the previous output/state, plus
    this frame's contribution to each gate block, shaped like the block.
    """
    gi, gf, go = trace.gi, trace.gf, trace.go
    state, tanh_state, tanh_candidate = trace.state, trace.tanh_state, trace.tanh_candidate

    # output gate
    before_go = error * tanh_state * sigmoid_derivative(go)
    to_prev_output = output_gate.wh.t() @ before_go
    to_obs = output_gate.wx.t() @ before_go
    to_cell = before_go * output_gate.wc
    d_output = torch.cat(
        [
            _rowsum(before_go),
            before_go @ obs.t(),
            before_go @ prev_output.t(),
            _rowsum(before_go * state),
        ],
        dim=1,
    )

    # memory cell
    to_cell = to_cell + gradient_of_tanh(tanh_state, error * go)
    to_cell = to_cell + state_error
    to_prev_state = gf * to_cell

    # forget gate
    before_f = sigmoid_derivative(gf) * (prev_state * to_cell)
    to_prev_output = to_prev_output + forget_gate.wh.t() @ before_f
    to_prev_state = to_prev_state + before_f * forget_gate.wc
    to_obs = to_obs + forget_gate.wx.t() @ before_f
    d_forget = torch.cat(
        [
            _rowsum(before_f),
            before_f @ obs.t(),
            before_f @ prev_output.t(),
            _rowsum(before_f * prev_state),
        ],
        dim=1,
    )

    # input gate
    before_i = sigmoid_derivative(gi) * (tanh_candidate * to_cell)
    to_prev_output = to_prev_output + input_gate.wh.t() @ before_i
    to_prev_state = to_prev_state + before_i * input_gate.wc
    to_obs = to_obs + input_gate.wx.t() @ before_i
    d_input = torch.cat(
        [
            _rowsum(before_i),
            before_i @ obs.t(),
            before_i @ prev_output.t(),
            _rowsum(before_i * prev_state),
        ],
        dim=1,
    )

    # candidate
    before_c = gradient_of_tanh(tanh_candidate, gi * to_cell)
    to_obs = to_obs + cell.wx.t() @ before_c
    to_prev_output = to_prev_output + cell.wh.t() @ before_c
    d_cell = torch.cat(
        [
            _rowsum(before_c),
            before_c @ obs.t(),
            before_c @ prev_output.t(),
        ],
        dim=1,
    )

    return FrameGradients(
        to_obs=to_obs,
        to_prev_output=to_prev_output,
        to_prev_state=to_prev_state,
        input_gate=d_input,
        forget_gate=d_forget,
        output_gate=d_output,
        cell=d_cell,
    )
