# recur/delay.py

from __future__ import annotations

import enum
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

import torch

from .config import DEFAULT_HIDDEN_ACTIVATION, MODEL_FORMAT_VERSION_2, RecurrenceConfig
from .core import Node, ensure_resident
from .errors import ConfigurationError, LayoutError
from .history import DelayCarry
from .layout import BoundaryFlag, SequenceLayout, shift_layout

logger = logging.getLogger(__name__)


class Direction(enum.IntEnum):
    PAST = -1
    FUTURE = 1

    @property
    def boundary(self) -> BoundaryFlag:
        """Flag that makes a read fall back to the initial activation."""
        return BoundaryFlag.SEQUENCE_START if self is Direction.PAST else BoundaryFlag.SEQUENCE_END

    @property
    def scan(self) -> int:
        """Frame order used to widen boundaries for multi-step delays."""
        return 1 if self is Direction.PAST else -1


class NodeState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"


class DelayedValueNode(Node):
    """
    Reads its input ``time_step`` frames in the past (or future).

    Responsibilities:
      - Copy the delayed input column per stream, substituting
        ``initial_activation`` where the read would cross a sequence boundary.
      - Serve reads that fall outside the minibatch from the carried activation
        of the neighbouring minibatch.
      - Scatter gradients back onto the delayed input columns.

    Inside a recurrent loop the scheduler calls ``evaluate(t)`` frame by frame;
    otherwise ``evaluate()`` sweeps the whole minibatch in dependency order.
    """

    is_delay = True
    carries_state = True

    def __init__(
        self,
        name: str,
        input: Optional[Node] = None,
        *,
        direction: Direction = Direction.PAST,
        time_step: int = 1,
        initial_activation: float = DEFAULT_HIDDEN_ACTIVATION,
        rows: Optional[int] = None,
        cols: Optional[int] = None,
        dtype: torch.dtype = torch.float32,
    ) -> None:
        super().__init__(name, [input] if input is not None else [])
        if time_step <= 0:
            raise ConfigurationError(f"time_step must be >= 1, got {time_step}")
        self.direction = Direction(direction)
        self.time_step = int(time_step)
        self.initial_activation = float(initial_activation)
        self.rows = rows
        self.cols = cols
        self.dtype = dtype
        self.delayed_activation: Optional[torch.Tensor] = None
        self.shifted_layout: Optional[SequenceLayout] = None
        self.history_already_set = False
        self.state = NodeState.UNINITIALIZED
        if rows is not None and cols is not None:
            self.value = torch.full((rows, cols), self.initial_activation, dtype=dtype)
            self.delayed_activation = self.value.clone()
            self.gradient = torch.zeros(rows, cols, dtype=dtype)

    @property
    def operation(self) -> str:  # type: ignore[override]
        return "PastValue" if self.direction is Direction.PAST else "FutureValue"

    @property
    def boundary(self) -> BoundaryFlag:
        return self.direction.boundary

    # --- Layout & validation ---

    def set_layout(self, layout: SequenceLayout) -> None:
        super().set_layout(layout)
        self.shifted_layout = shift_layout(layout, self.time_step, self.boundary, self.direction.scan)
        self.state = NodeState.READY
        logger.debug("%s: rebuilt shifted layout for step %d", self.name, self.time_step)

    def reset(self) -> None:
        """Forget the carried activation and return to the uninitialized state."""
        self.delayed_activation = None
        self.history_already_set = False
        self.shifted_layout = None
        self.state = NodeState.UNINITIALIZED

    def validate(self) -> None:
        if len(self.inputs) != 1:
            raise ConfigurationError(
                f"{self.operation} node {self.name!r} takes exactly one input, got {len(self.inputs)}"
            )
        rows = self._input_rows()
        if rows is None:
            raise ConfigurationError(
                f"{self.operation} node {self.name!r} cannot infer its row count; pass rows="
            )
        self.rows = rows
        if self.layout is not None:
            self.cols = self.layout.num_columns

    def _input_rows(self) -> Optional[int]:
        source = self.inputs[0]
        if source.value is not None and source.value.numel() > 0:
            return int(source.value.shape[0])
        declared = getattr(source, "rows", None)
        if isinstance(declared, int):
            return declared
        return self.rows

    # --- Forward ---

    def evaluate(self, frame: Optional[int] = None) -> None:
        layout = self._require_layout()
        if self.shifted_layout is None:
            self.set_layout(layout)
        self._prepare_buffers(layout)
        num_frames = layout.num_frames

        if frame is None:
            source = self.inputs[0].value
            if source is None:
                raise RuntimeError(f"{self.operation} node {self.name!r}: input has no value.")
            layout.check_columns(int(source.shape[1]), f"{self.operation} {self.name!r} input")
            frames = range(num_frames) if self.direction is Direction.PAST else range(num_frames - 1, -1, -1)
            for t in frames:
                self._evaluate_frame(t)
            self.delayed_activation = source.detach().clone()
            self.history_already_set = False
            return

        edge = 0 if self.direction is Direction.PAST else num_frames - 1
        if frame == edge:
            # The input has not run yet for this minibatch, so its value is the
            # neighbouring minibatch's activation.
            source = self.inputs[0].value
            if not self.history_already_set and source is not None and source.shape[0] == self.rows:
                self.delayed_activation = source.detach().clone()
            self.history_already_set = False
        self._evaluate_frame(frame)

    def _prepare_buffers(self, layout: SequenceLayout) -> None:
        if self.rows is None:
            self.validate()
        rows = int(self.rows)
        source = self.inputs[0].value
        dtype = source.dtype if source is not None else self.dtype
        self._allocate_value(rows, layout.num_columns, dtype)
        self.cols = layout.num_columns
        if self.delayed_activation is None:
            self.delayed_activation = torch.full(
                (rows, layout.num_columns), self.initial_activation, dtype=dtype, device=self.device
            )

    def _read_source(self, delayed_index: int) -> Tuple[torch.Tensor, int]:
        streams = self.num_streams
        source = self.inputs[0].value
        if source is not None and 0 <= delayed_index < source.shape[1] and source.shape[1] == self.layout.num_columns:
            return source, delayed_index
        carry = self.delayed_activation
        width = int(carry.shape[1])
        if width % streams != 0:
            raise LayoutError(
                f"{self.operation} node {self.name!r}: carried activation has {width} columns, "
                f"not a multiple of {streams} streams"
            )
        return carry, delayed_index % width

    def _evaluate_frame(self, t: int) -> None:
        streams = self.num_streams
        flags, union = self.shifted_layout.frame(t)
        delayed_index = (t + int(self.direction) * self.time_step) * streams
        source, d = self._read_source(delayed_index)
        out = self.value
        start = t * streams

        if union & self.boundary:
            for s in range(streams):
                if int(flags[s]) & self.boundary:
                    out[:, start + s] = self.initial_activation
                else:
                    out[:, start + s] = source[:, d + s]
        else:
            out[:, start:start + streams] = source[:, d:d + streams]

    # --- Backward ---

    def compute_input_partial(self, input_index: int, frame: Optional[int] = None) -> None:
        if input_index != 0:
            raise ConfigurationError(
                f"{self.operation} node {self.name!r} takes only one input, got input index {input_index}"
            )
        if self.gradient is None:
            raise RuntimeError(f"{self.operation} node {self.name!r} has no gradient to propagate.")
        target_grad = self.inputs[0].ensure_gradient()
        if frame is not None:
            self._backprop_frame(frame, target_grad)
            return
        num_frames = self.num_frames
        # Reverse of the evaluation order.
        frames = range(num_frames - 1, -1, -1) if self.direction is Direction.PAST else range(num_frames)
        for t in frames:
            self._backprop_frame(t, target_grad)

    def _backprop_frame(self, t: int, target_grad: torch.Tensor) -> None:
        streams = self.num_streams
        target = t + int(self.direction) * self.time_step
        if target < 0 or target >= self.num_frames:
            return
        flags, union = self.shifted_layout.frame(t)
        blocked = int(self.boundary | BoundaryFlag.NO_INPUT)
        src = t * streams
        dst = target * streams
        if union & blocked:
            for s in range(streams):
                if not int(flags[s]) & blocked:
                    target_grad[:, dst + s] += self.gradient[:, src + s]
        else:
            target_grad[:, dst:dst + streams] += self.gradient[:, src:src + streams]

    # --- History ---

    def get_history(self) -> torch.Tensor:
        """
        Activation the next minibatch will read across its boundary.
        """
        source = self.inputs[0].value if self.inputs else None
        if source is not None:
            return source.detach().clone()
        if self.delayed_activation is None:
            raise RuntimeError(f"{self.operation} node {self.name!r} has no history yet.")
        return self.delayed_activation.detach().clone()

    def set_history(self, history: torch.Tensor) -> None:
        """
        Override the carried activation. The next frame-mode sweep keeps it instead
        of refreshing from the input at its first frame.
        """
        if history.dim() != 2:
            raise LayoutError(f"History for {self.name!r} must be a matrix, got shape {tuple(history.shape)}")
        if self.rows is not None and history.shape[0] != self.rows:
            raise LayoutError(
                f"History for {self.name!r} has {history.shape[0]} rows, expected {self.rows}"
            )
        if self.layout is not None and history.shape[1] % self.layout.num_streams != 0:
            raise LayoutError(
                f"History for {self.name!r} has {history.shape[1]} columns, "
                f"not a multiple of {self.layout.num_streams} streams"
            )
        if self.layout is not None and history.shape[1] != self.layout.num_columns:
            logger.warning(
                "%s node %s: history has %d columns but the minibatch has %d; "
                "boundary reads wrap modulo the history width",
                self.operation,
                self.name,
                history.shape[1],
                self.layout.num_columns,
            )
        self.delayed_activation = ensure_resident(history.detach().clone(), self.device)
        self.history_already_set = True

    def export_carry(self) -> DelayCarry:
        return DelayCarry(activation=self.get_history())

    def import_carry(self, carry: DelayCarry) -> None:
        self.set_history(carry.activation)

    # --- Persistence & placement ---

    def _buffer_names(self) -> Tuple[str, ...]:
        return ("value", "gradient", "delayed_activation")

    def save_state(self, sink: Dict[str, Any]) -> None:
        super().save_state(sink)
        sink["time_step"] = self.time_step
        sink["rows"] = None if self.value is None else int(self.value.shape[0])
        sink["cols"] = None if self.value is None else int(self.value.shape[1])
        sink["initial_activation"] = self.initial_activation

    def load_state(self, source: Mapping[str, Any], format_version: int) -> None:
        super().load_state(source, format_version)
        time_step = int(source["time_step"])
        if time_step <= 0:
            raise ConfigurationError(f"time_step must be >= 1, got {time_step}")
        self.time_step = time_step
        if format_version >= MODEL_FORMAT_VERSION_2:
            self.initial_activation = float(source["initial_activation"])
        else:
            self.initial_activation = DEFAULT_HIDDEN_ACTIVATION
        rows, cols = source.get("rows"), source.get("cols")
        self.rows = None if rows is None else int(rows)
        self.cols = None if cols is None else int(cols)
        if self.rows is not None and self.cols is not None:
            self.value = torch.full(
                (self.rows, self.cols), self.initial_activation, dtype=self.dtype, device=self.device
            )
            self.delayed_activation = self.value.clone()
        self.history_already_set = False
        if self.layout is not None:
            self.set_layout(self.layout)


def _config_defaults(config: Optional[RecurrenceConfig], kwargs: Dict[str, Any]) -> Dict[str, Any]:
    if config is None:
        return kwargs
    merged = {
        "time_step": config.time_step,
        "initial_activation": config.initial_activation,
        "dtype": config.dtype,
    }
    merged.update(kwargs)
    return merged


def past_value(
    name: str,
    input: Optional[Node] = None,
    *,
    config: Optional[RecurrenceConfig] = None,
    **kwargs: Any,
) -> DelayedValueNode:
    """
    Delay node reading ``time_step`` frames into the past.

    ``config`` supplies ``time_step``, ``initial_activation`` and ``dtype``
    unless they are passed explicitly.
    """
    return DelayedValueNode(name, input, direction=Direction.PAST, **_config_defaults(config, kwargs))


def future_value(
    name: str,
    input: Optional[Node] = None,
    *,
    config: Optional[RecurrenceConfig] = None,
    **kwargs: Any,
) -> DelayedValueNode:
    """Delay node reading ``time_step`` frames into the future."""
    return DelayedValueNode(name, input, direction=Direction.FUTURE, **_config_defaults(config, kwargs))
