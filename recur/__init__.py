# recur/__init__.py

from .core import (
    Graph,
    Clock,
    Node,
    InputValue,
    Parameter,
    Plus,
    RecurrentLoop,
    ensure_resident,
)
from .config import (
    DEFAULT_HIDDEN_ACTIVATION,
    CURRENT_FORMAT_VERSION,
    RecurrenceConfig,
    load_config,
    set_debug_sentinel,
)
from .errors import RecurrenceError, ConfigurationError, LayoutError, HandoffError
from .layout import BoundaryFlag, SequenceLayout, shift_layout
from .delay import DelayedValueNode, Direction, NodeState, past_value, future_value
from .lstm import LSTMNode
from .history import (
    DelayCarry,
    LSTMCarry,
    ErrorCarry,
    MinibatchHandoff,
    MinibatchHistoryStore,
)
from .persistence import save_checkpoint, load_checkpoint
from .data_helper import PackedMinibatch, pack_sequences, synthesize_sequences, load_demo_minibatches
from .training import MinibatchRunner, StepResult, masked_squared_error
from .diagnostics import GradientSummary, summarize_gradients, find_unwritten, plot_cell_trace
from . import lstm_math

__all__ = [
    "Graph",
    "Clock",
    "Node",
    "InputValue",
    "Parameter",
    "Plus",
    "RecurrentLoop",
    "ensure_resident",
    "DEFAULT_HIDDEN_ACTIVATION",
    "CURRENT_FORMAT_VERSION",
    "RecurrenceConfig",
    "load_config",
    "set_debug_sentinel",
    "RecurrenceError",
    "ConfigurationError",
    "LayoutError",
    "HandoffError",
    "BoundaryFlag",
    "SequenceLayout",
    "shift_layout",
    "DelayedValueNode",
    "Direction",
    "NodeState",
    "past_value",
    "future_value",
    "LSTMNode",
    "DelayCarry",
    "LSTMCarry",
    "ErrorCarry",
    "MinibatchHandoff",
    "MinibatchHistoryStore",
    "save_checkpoint",
    "load_checkpoint",
    "PackedMinibatch",
    "pack_sequences",
    "synthesize_sequences",
    "load_demo_minibatches",
    "MinibatchRunner",
    "StepResult",
    "masked_squared_error",
    "GradientSummary",
    "summarize_gradients",
    "find_unwritten",
    "plot_cell_trace",
    "lstm_math",
]
