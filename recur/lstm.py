# recur/lstm.py

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union

import torch

from .config import DEFAULT_HIDDEN_ACTIVATION, MODEL_FORMAT_VERSION_2, RecurrenceConfig, sentinel_fill
from .core import Node, Parameter, ensure_resident
from .errors import ConfigurationError, LayoutError
from .history import ErrorCarry, LSTMCarry
from .layout import BoundaryFlag
from .lstm_math import FrameTrace, GateBlock, forward_frame, gate_columns, gate_gradients, split_gate_block

logger = logging.getLogger(__name__)

_GATE_NAMES = ("input gate", "forget gate", "output gate", "cell weights")


class LSTMNode(Node):
    """
    Fused LSTM layer over a packed minibatch.

    Inputs, in order: observation ``[input_dim, N]``, then the input, forget and
    output gate blocks ``[output_dim, input_dim + output_dim + 2]`` and the cell
    block ``[output_dim, input_dim + output_dim + 1]``.

    Responsibilities:
      - Run the peephole LSTM recurrence frame by frame, resetting history at
        sequence starts and zeroing streams without input.
      - Keep the per-frame gate activations for the backward sweep.
      - Run full BPTT once per minibatch and hand each input its gradient.
      - Carry final output/state to the next minibatch and boundary errors back
        to the previous one.
    """

    operation = "LSTM"
    carries_state = True
    num_inputs = 5

    def __init__(
        self,
        name: str,
        observation: Optional[Node] = None,
        input_gate: Optional[Node] = None,
        forget_gate: Optional[Node] = None,
        output_gate: Optional[Node] = None,
        cell_weights: Optional[Node] = None,
        *,
        default_state: Optional[float] = None,
        config: Optional[RecurrenceConfig] = None,
    ) -> None:
        inputs = [n for n in (observation, input_gate, forget_gate, output_gate, cell_weights) if n is not None]
        super().__init__(name, inputs)
        self.input_dim = 0
        self.output_dim = 0
        if default_state is None:
            default_state = config.default_state if config is not None else DEFAULT_HIDDEN_ACTIVATION
        self.default_state = float(default_state)

        # per-frame forward intermediates, [output_dim, N]
        self.state: Optional[torch.Tensor] = None
        self.gi: Optional[torch.Tensor] = None
        self.gf: Optional[torch.Tensor] = None
        self.go: Optional[torch.Tensor] = None
        self.tanh_state: Optional[torch.Tensor] = None
        self.tanh_candidate: Optional[torch.Tensor] = None

        # carry from the previous minibatch and snapshot for the next, [output_dim, S]
        self.past_output: Optional[torch.Tensor] = None
        self.past_state: Optional[torch.Tensor] = None
        self.last_output: Optional[torch.Tensor] = None
        self.last_state: Optional[torch.Tensor] = None

        # errors injected from the following minibatch and sent to the previous one
        self.future_output_error: Optional[torch.Tensor] = None
        self.future_state_error: Optional[torch.Tensor] = None
        self.use_future_errors = False
        self.prev_output_error: Optional[torch.Tensor] = None
        self.prev_state_error: Optional[torch.Tensor] = None

        self.gradient_computed = False
        self._input_grads: List[Optional[torch.Tensor]] = [None] * self.num_inputs
        self._delivered: Set[int] = set()

    @property
    def rows(self) -> Optional[int]:
        """Output rows once validated, so downstream delays can size themselves."""
        return self.output_dim or None

    # --- Validation ---

    def validate(self) -> None:
        if len(self.inputs) != self.num_inputs:
            raise ConfigurationError(
                f"LSTM node {self.name!r} requires five inputs "
                f"(observation, input gate, forget gate, output gate, cell weights), got {len(self.inputs)}"
            )
        obs = self.inputs[0]
        if obs.value is not None and obs.value.layout is not torch.strided:
            raise ConfigurationError(
                f"LSTM node {self.name!r}: the observation must be a dense matrix; "
                "project sparse inputs through a lookup first"
            )
        weights = self.inputs[1:]
        for label, node in zip(_GATE_NAMES, weights):
            if not isinstance(node, Parameter):
                raise ConfigurationError(
                    f"LSTM node {self.name!r}: {label} must be a Parameter, got {type(node).__name__}"
                )
        input_dim = self._observation_rows()
        if not input_dim:
            raise ConfigurationError(f"LSTM node {self.name!r}: observation size is zero")
        for label, node in zip(_GATE_NAMES, weights):
            if node.value is None or node.value.numel() == 0:
                raise ConfigurationError(f"LSTM node {self.name!r}: {label} is empty")
            if node.value.layout is not torch.strided:
                raise ConfigurationError(f"LSTM node {self.name!r}: {label} must be dense")

        output_dim = int(weights[0].value.shape[0])
        expected = gate_columns(input_dim, output_dim, peephole=True)
        for label, node in zip(_GATE_NAMES[:3], weights[:3]):
            if node.value.shape[1] != expected:
                raise ConfigurationError(
                    f"LSTM node {self.name!r}: {label} has {node.value.shape[1]} columns, "
                    f"expected {expected} for input dim {input_dim} and output dim {output_dim}"
                )
        cell_expected = gate_columns(input_dim, output_dim, peephole=False)
        if weights[3].value.shape[1] != cell_expected:
            raise ConfigurationError(
                f"LSTM node {self.name!r}: cell weights have {weights[3].value.shape[1]} columns, "
                f"expected {cell_expected}"
            )
        for label, node in zip(_GATE_NAMES[1:], weights[1:]):
            if node.value.shape[0] != output_dim:
                raise ConfigurationError(
                    f"LSTM node {self.name!r}: {label} has {node.value.shape[0]} rows, "
                    f"expected output dim {output_dim}"
                )
        self.input_dim = input_dim
        self.output_dim = output_dim
        if obs.value is not None and self.layout is not None:
            self.layout.check_columns(int(obs.value.shape[1]), f"LSTM {self.name!r} observation")

    def _observation_rows(self) -> int:
        obs = self.inputs[0]
        if obs.value is not None:
            return int(obs.value.shape[0]) if obs.value.numel() > 0 else 0
        declared = getattr(obs, "rows", None)
        return int(declared) if isinstance(declared, int) else 0

    def _weight_blocks(self) -> Tuple[GateBlock, GateBlock, GateBlock, GateBlock]:
        i, o = self.input_dim, self.output_dim
        return (
            split_gate_block(self.inputs[1].value, i, o),
            split_gate_block(self.inputs[2].value, i, o),
            split_gate_block(self.inputs[3].value, i, o),
            split_gate_block(self.inputs[4].value, i, o, peephole=False),
        )

    # --- Forward ---

    def evaluate(self, frame: Optional[int] = None) -> None:
        if not self.output_dim:
            self.validate()
        layout = self._require_layout()
        obs = self.inputs[0].value
        if obs is None:
            raise RuntimeError(f"LSTM node {self.name!r}: observation has no value.")
        layout.check_columns(int(obs.shape[1]), f"LSTM {self.name!r} observation")

        if frame is None:
            self._begin_forward(obs)
            for t in range(layout.num_frames):
                self._forward_frame(t)
            self._snapshot_last()
            return

        if frame == 0:
            self._begin_forward(obs)
        self._forward_frame(frame)
        if frame == layout.num_frames - 1:
            self._snapshot_last()

    def _begin_forward(self, obs: torch.Tensor) -> None:
        rows, cols = self.output_dim, int(obs.shape[1])
        dtype, device = obs.dtype, obs.device
        self.value = sentinel_fill(rows, cols, dtype=dtype, device=device)
        self.state = sentinel_fill(rows, cols, dtype=dtype, device=device)
        self.gi = sentinel_fill(rows, cols, dtype=dtype, device=device)
        self.gf = sentinel_fill(rows, cols, dtype=dtype, device=device)
        self.go = sentinel_fill(rows, cols, dtype=dtype, device=device)
        self.tanh_state = sentinel_fill(rows, cols, dtype=dtype, device=device)
        self.tanh_candidate = sentinel_fill(rows, cols, dtype=dtype, device=device)

        streams = self.num_streams
        if self.past_state is None or tuple(self.past_state.shape) != (rows, streams):
            self.past_state = torch.full((rows, streams), self.default_state, dtype=dtype, device=device)
        if self.past_output is None or tuple(self.past_output.shape) != (rows, streams):
            self.past_output = torch.zeros(rows, streams, dtype=dtype, device=device)
        self.gradient_computed = False
        self._delivered.clear()
        # errors injected into the previous minibatch do not apply to this one
        self.use_future_errors = False

    def _stream_mask(self, frame: int, flag: BoundaryFlag, like: torch.Tensor) -> torch.Tensor:
        return self.layout.stream_mask(frame, flag).to(like.device)

    def _history(self, t: int) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Output and cell state the frame ``t`` recurrence starts from, per stream.
        """
        if t == 0:
            prev_output = self.past_output.clone()
            prev_state = self.past_state.clone()
        else:
            cols = self.frame_columns(t - 1)
            prev_output = self.value[:, cols].clone()
            prev_state = self.state[:, cols].clone()
        starts = self._stream_mask(t, BoundaryFlag.SEQUENCE_START, prev_output)
        if bool(starts.any()):
            prev_output[:, starts] = 0.0
            prev_state[:, starts] = self.default_state
        idle = self._stream_mask(t, BoundaryFlag.NO_INPUT, prev_output)
        if bool(idle.any()):
            prev_output[:, idle] = 0.0
            prev_state[:, idle] = 0.0
        return prev_output, prev_state

    def _forward_frame(self, t: int) -> None:
        cols = self.frame_columns(t)
        obs = self.inputs[0].value[:, cols]
        prev_output, prev_state = self._history(t)
        trace = forward_frame(obs, prev_output, prev_state, *self._weight_blocks())
        self.value[:, cols] = trace.output
        self.state[:, cols] = trace.state
        self.gi[:, cols] = trace.gi
        self.gf[:, cols] = trace.gf
        self.go[:, cols] = trace.go
        self.tanh_state[:, cols] = trace.tanh_state
        self.tanh_candidate[:, cols] = trace.tanh_candidate
        idle = self._stream_mask(t, BoundaryFlag.NO_INPUT, self.value)
        if bool(idle.any()):
            self.value[:, cols][:, idle] = 0.0
            self.state[:, cols][:, idle] = 0.0

    def _snapshot_last(self) -> None:
        """
        Record each stream's output and state at its last frame with input.
        """
        streams, frames = self.num_streams, self.num_frames
        last_output = self.past_output.clone()
        last_state = self.past_state.clone()
        if self.last_output is not None and self.last_output.shape == last_output.shape:
            last_output = self.last_output.clone()
            last_state = self.last_state.clone()
        for s in range(streams):
            for t in range(frames - 1, -1, -1):
                if not self.layout.is_set(s, t, BoundaryFlag.NO_INPUT):
                    col = t * streams + s
                    last_output[:, s] = self.value[:, col]
                    last_state[:, s] = self.state[:, col]
                    break
        self.last_output = last_output
        self.last_state = last_state

    # --- Backward ---

    def zero_gradient(self) -> None:
        """Start a new backward sweep: BPTT reruns from the fresh gradient."""
        super().zero_gradient()
        self.gradient_computed = False
        self._delivered.clear()

    def compute_input_partial(self, input_index: int, frame: Optional[int] = None) -> None:
        if frame is not None:
            raise ConfigurationError(
                f"LSTM node {self.name!r} runs BPTT over the whole minibatch; per-frame gradients are not supported"
            )
        if input_index < 0 or input_index >= self.num_inputs:
            raise ConfigurationError(
                f"LSTM node {self.name!r} takes five inputs, got input index {input_index}"
            )
        if not self.gradient_computed:
            self._backward()
        if input_index in self._delivered:
            logger.warning(
                "LSTM node %s: gradient for input %d already delivered this minibatch",
                self.name,
                input_index,
            )
            return
        target = self.inputs[input_index].ensure_gradient()
        target += self._input_grads[input_index]
        self._delivered.add(input_index)

    def _future_error_streams(self, t: int, like: torch.Tensor) -> torch.Tensor:
        active = ~self._stream_mask(t, BoundaryFlag.NO_INPUT, like)
        if t == self.num_frames - 1:
            return active
        return active & self._stream_mask(t + 1, BoundaryFlag.NO_INPUT, like)

    def _backward(self) -> None:
        if self.value is None or self.gi is None:
            raise RuntimeError(f"LSTM node {self.name!r}: backward called before forward.")
        if self.gradient is None or self.gradient.shape != self.value.shape:
            raise LayoutError(
                f"LSTM node {self.name!r}: gradient shape "
                f"{None if self.gradient is None else tuple(self.gradient.shape)} "
                f"does not match value shape {tuple(self.value.shape)}"
            )
        obs = self.inputs[0].value
        blocks = self._weight_blocks()
        grads = [torch.zeros_like(obs)] + [torch.zeros_like(node.value) for node in self.inputs[1:]]
        streams = self.num_streams
        grd_prev_output = torch.zeros(self.output_dim, streams, dtype=self.value.dtype, device=self.value.device)
        grd_prev_state = torch.zeros_like(grd_prev_output)

        for t in range(self.num_frames - 1, -1, -1):
            cols = self.frame_columns(t)
            error = self.gradient[:, cols] + grd_prev_output
            state_error = grd_prev_state.clone()
            if self.use_future_errors:
                inject = self._future_error_streams(t, error)
                if bool(inject.any()):
                    error[:, inject] += self.future_output_error[:, inject]
                    state_error[:, inject] += self.future_state_error[:, inject]
            active = (~self._stream_mask(t, BoundaryFlag.NO_INPUT, error)).to(error.dtype)
            error = error * active
            state_error = state_error * active

            prev_output, prev_state = self._history(t)
            trace = FrameTrace(
                gi=self.gi[:, cols],
                gf=self.gf[:, cols],
                go=self.go[:, cols],
                state=self.state[:, cols],
                tanh_state=self.tanh_state[:, cols],
                tanh_candidate=self.tanh_candidate[:, cols],
                output=self.value[:, cols],
            )
            frame_grads = gate_gradients(
                error, state_error, obs[:, cols], prev_output, prev_state, trace, *blocks
            )
            grads[0][:, cols] = frame_grads.to_obs
            grads[1].add_(frame_grads.input_gate)
            grads[2].add_(frame_grads.forget_gate)
            grads[3].add_(frame_grads.output_gate)
            grads[4].add_(frame_grads.cell)

            grd_prev_output = frame_grads.to_prev_output
            grd_prev_state = frame_grads.to_prev_state
            cut = self._stream_mask(t, BoundaryFlag.SEQUENCE_START | BoundaryFlag.NO_INPUT, error)
            if bool(cut.any()):
                grd_prev_output[:, cut] = 0.0
                grd_prev_state[:, cut] = 0.0

        self.prev_output_error = grd_prev_output
        self.prev_state_error = grd_prev_state
        self._input_grads = grads
        self.gradient_computed = True
        logger.debug(
            "LSTM %s: BPTT over %d frames, error to previous minibatch norm=%.4e",
            self.name,
            self.num_frames,
            float(grd_prev_output.norm().item()),
        )

    # --- Cross-minibatch carry ---

    def get_history(self, last: bool = True) -> torch.Tensor:
        """
        Output and state as ``[output_dim, 2 * S]``.

        With ``last`` (the default) this is the snapshot handed to the next
        minibatch; otherwise it is the history this minibatch started from.
        """
        if last:
            return self.export_carry().to_buffer()
        if self.past_output is None or self.past_state is None:
            raise RuntimeError(f"LSTM node {self.name!r} has no incoming history yet.")
        return LSTMCarry(output=self.past_output.detach().clone(), state=self.past_state.detach().clone()).to_buffer()

    def set_history(self, history: Union[LSTMCarry, torch.Tensor]) -> None:
        carry = history if isinstance(history, LSTMCarry) else LSTMCarry.from_buffer(history)
        self.import_carry(carry)

    def export_carry(self) -> LSTMCarry:
        if self.last_output is None or self.last_state is None:
            raise RuntimeError(f"LSTM node {self.name!r} has no history yet; run forward first.")
        return LSTMCarry(output=self.last_output.detach().clone(), state=self.last_state.detach().clone())

    def import_carry(self, carry: LSTMCarry) -> None:
        if carry.output.shape != carry.state.shape:
            raise LayoutError(
                f"LSTM history for {self.name!r}: output {tuple(carry.output.shape)} "
                f"and state {tuple(carry.state.shape)} differ"
            )
        self._check_carry_shape(carry.output, "history")
        self.past_output = ensure_resident(carry.output.detach().clone(), self.device)
        self.past_state = ensure_resident(carry.state.detach().clone(), self.device)

    def get_cross_minibatch_error(self) -> torch.Tensor:
        """Errors for the previous minibatch as ``[output_dim, 2 * S]``."""
        return self.export_errors().to_buffer()

    def set_cross_minibatch_error(self, errors: Union[ErrorCarry, torch.Tensor]) -> None:
        carry = errors if isinstance(errors, ErrorCarry) else ErrorCarry.from_buffer(errors)
        self.import_errors(carry)

    def export_errors(self) -> ErrorCarry:
        if self.prev_output_error is None or self.prev_state_error is None:
            raise RuntimeError(f"LSTM node {self.name!r} has no boundary errors; run backward first.")
        return ErrorCarry(
            output_error=self.prev_output_error.detach().clone(),
            state_error=self.prev_state_error.detach().clone(),
        )

    def import_errors(self, carry: ErrorCarry) -> None:
        self._check_carry_shape(carry.output_error, "error")
        self._check_carry_shape(carry.state_error, "error")
        self.future_output_error = ensure_resident(carry.output_error.detach().clone(), self.device)
        self.future_state_error = ensure_resident(carry.state_error.detach().clone(), self.device)
        self.use_future_errors = True

    def _check_carry_shape(self, tensor: torch.Tensor, what: str) -> None:
        if self.output_dim and tensor.shape[0] != self.output_dim:
            raise LayoutError(
                f"LSTM {what} for {self.name!r} has {tensor.shape[0]} rows, expected {self.output_dim}"
            )
        if self.layout is not None and tensor.shape[1] != self.layout.num_streams:
            raise LayoutError(
                f"LSTM {what} for {self.name!r} has {tensor.shape[1]} columns, "
                f"expected {self.layout.num_streams} streams"
            )

    def reset(self) -> None:
        """Drop carried history and pending boundary errors."""
        self.past_output = self.past_state = None
        self.last_output = self.last_state = None
        self.future_output_error = self.future_state_error = None
        self.prev_output_error = self.prev_state_error = None
        self.use_future_errors = False

    def cell_trace(self) -> Dict[str, torch.Tensor]:
        """Forward intermediates of the last minibatch, keyed by gate."""
        if self.gi is None:
            raise RuntimeError(f"LSTM node {self.name!r} has not been evaluated.")
        return {
            "input_gate": self.gi,
            "forget_gate": self.gf,
            "output_gate": self.go,
            "state": self.state,
            "output": self.value,
        }

    # --- Persistence & placement ---

    def _buffer_names(self) -> Tuple[str, ...]:
        return (
            "value", "gradient", "state", "gi", "gf", "go", "tanh_state", "tanh_candidate",
            "past_output", "past_state", "last_output", "last_state",
            "future_output_error", "future_state_error", "prev_output_error", "prev_state_error",
        )

    def move_to_device(self, device) -> None:
        super().move_to_device(device)
        self._input_grads = [ensure_resident(g, device) for g in self._input_grads]

    def save_state(self, sink: Dict[str, Any]) -> None:
        super().save_state(sink)
        sink["input_dim"] = self.input_dim
        sink["output_dim"] = self.output_dim
        sink["default_state"] = self.default_state

    def load_state(self, source: Mapping[str, Any], format_version: int) -> None:
        super().load_state(source, format_version)
        if format_version >= MODEL_FORMAT_VERSION_2:
            self.input_dim = int(source["input_dim"])
            self.output_dim = int(source["output_dim"])
            self.default_state = float(source["default_state"])
        else:
            # Older checkpoints carry neither the dims nor, possibly, the constant.
            self.input_dim = int(source.get("input_dim", 0))
            self.output_dim = int(source.get("output_dim", 0))
            self.default_state = float(source.get("default_state", DEFAULT_HIDDEN_ACTIVATION))
        self.gradient_computed = False
        self._delivered.clear()
