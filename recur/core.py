# recur/core.py

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import torch

from .config import sentinel_fill
from .errors import ConfigurationError, LayoutError
from .layout import SequenceLayout

logger = logging.getLogger(__name__)

DeviceLike = Union[str, torch.device]


def ensure_resident(tensor: Optional[torch.Tensor], device: DeviceLike) -> Optional[torch.Tensor]:
    """
    Return ``tensor`` on ``device``. A tensor that already lives there is returned
    as-is, so repeated calls are free.
    """
    if tensor is None:
        return None
    target = torch.device(device)
    if tensor.device == target or (target.index is None and tensor.device.type == target.type):
        return tensor
    return tensor.to(target)


class Clock:
    """
    Minibatch counter for a Graph.

    Responsibilities:
      - Maintain a monotonically increasing count of completed forward passes.
      - Give drivers a shared minibatch index for cross-minibatch handoffs.
    """

    def __init__(self) -> None:
        self._tick: int = 0

    @property
    def tick(self) -> int:
        """Number of minibatches evaluated so far."""
        return self._tick

    def step(self, n: int = 1) -> int:
        """Advance clock by n minibatches (default 1) and return the new count."""
        self._tick += n
        return self._tick

    def reset(self) -> None:
        self._tick = 0


class Node:
    """
    Base class for graph nodes operating on ``[features, frames * streams]`` buffers.

    Responsibilities:
      - Own the forward value and the accumulated gradient buffers.
      - Hold the minibatch layout it was bound to.
      - Expose the per-minibatch (``frame=None``) and per-frame evaluation hooks
        the scheduler drives.
    """

    operation = "Node"
    is_delay = False
    carries_state = False

    def __init__(self, name: str, inputs: Sequence["Node"] = ()) -> None:
        if not name:
            raise ConfigurationError("Node name must be a non-empty string.")
        self.name = name
        self.inputs: List[Node] = list(inputs)
        self.value: Optional[torch.Tensor] = None
        self.gradient: Optional[torch.Tensor] = None
        self.layout: Optional[SequenceLayout] = None
        self.device = torch.device("cpu")

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"

    # --- Wiring ---

    def attach_inputs(self, *inputs: "Node") -> None:
        """Replace the inputs. Used to close recurrent loops after construction."""
        self.inputs = list(inputs)

    def input(self, index: int) -> "Node":
        if index < 0 or index >= len(self.inputs):
            raise ConfigurationError(
                f"{self.operation} node {self.name!r} has {len(self.inputs)} inputs, "
                f"input index {index} is out of range"
            )
        return self.inputs[index]

    # --- Layout ---

    def set_layout(self, layout: SequenceLayout) -> None:
        self.layout = layout

    def _require_layout(self) -> SequenceLayout:
        if self.layout is None:
            raise LayoutError(f"Node {self.name!r} has no layout; call set_layout() first.")
        return self.layout

    @property
    def num_streams(self) -> int:
        return self._require_layout().num_streams

    @property
    def num_frames(self) -> int:
        return self._require_layout().num_frames

    def frame_columns(self, frame: int) -> slice:
        return self._require_layout().frame_columns(frame)

    # --- Evaluation hooks ---

    def validate(self) -> None:
        pass

    def evaluate(self, frame: Optional[int] = None) -> None:
        raise NotImplementedError

    def compute_input_partial(self, input_index: int, frame: Optional[int] = None) -> None:
        raise NotImplementedError

    # --- Buffers ---

    def _allocate_value(self, rows: int, cols: int, dtype: torch.dtype) -> torch.Tensor:
        if (
            self.value is None
            or tuple(self.value.shape) != (rows, cols)
            or self.value.dtype != dtype
        ):
            self.value = sentinel_fill(rows, cols, dtype=dtype, device=self.device)
            logger.debug("allocated value buffer for %s: [%d, %d]", self.name, rows, cols)
        return self.value

    def zero_gradient(self) -> None:
        if self.value is None:
            self.gradient = None
            return
        self.gradient = torch.zeros_like(self.value)

    def ensure_gradient(self) -> torch.Tensor:
        if self.value is None:
            raise RuntimeError(f"Node {self.name!r} has no value; run forward before backward.")
        if self.gradient is None or self.gradient.shape != self.value.shape:
            self.gradient = torch.zeros_like(self.value)
        return self.gradient

    def _buffer_names(self) -> Tuple[str, ...]:
        return ("value", "gradient")

    def move_to_device(self, device: DeviceLike) -> None:
        for attr in self._buffer_names():
            setattr(self, attr, ensure_resident(getattr(self, attr), device))
        self.device = torch.device(device)

    # --- Persistence ---

    def save_state(self, sink: Dict[str, Any]) -> None:
        sink["operation"] = self.operation

    def load_state(self, source: Mapping[str, Any], format_version: int) -> None:
        operation = source.get("operation", self.operation)
        if operation != self.operation:
            raise ConfigurationError(
                f"Checkpoint entry for {self.name!r} holds a {operation} node, expected {self.operation}"
            )


class InputValue(Node):
    """
    Leaf node fed with a ``[rows, frames * streams]`` tensor each minibatch.
    """

    operation = "InputValue"

    def __init__(self, name: str, rows: int) -> None:
        super().__init__(name)
        if rows <= 0:
            raise ConfigurationError(f"InputValue {name!r} needs rows >= 1, got {rows}")
        self.rows = int(rows)

    def feed(self, tensor: torch.Tensor) -> None:
        if tensor.dim() != 2 or tensor.shape[0] != self.rows:
            raise ConfigurationError(
                f"InputValue {self.name!r} expects [{self.rows}, N], got {tuple(tensor.shape)}"
            )
        self.value = ensure_resident(tensor, self.device)

    def validate(self) -> None:
        if self.value is None:
            raise ConfigurationError(f"InputValue {self.name!r} has not been fed.")
        if self.layout is not None:
            self.layout.check_columns(int(self.value.shape[1]), f"InputValue {self.name!r}")

    def evaluate(self, frame: Optional[int] = None) -> None:
        if self.value is None:
            raise RuntimeError(f"InputValue {self.name!r} has not been fed.")

    def compute_input_partial(self, input_index: int, frame: Optional[int] = None) -> None:
        raise ConfigurationError(f"InputValue {self.name!r} has no inputs.")

    def save_state(self, sink: Dict[str, Any]) -> None:
        super().save_state(sink)
        sink["rows"] = self.rows

    def load_state(self, source: Mapping[str, Any], format_version: int) -> None:
        super().load_state(source, format_version)
        self.rows = int(source["rows"])


class Parameter(Node):
    """
    Learnable weight block. The value is fixed across frames; gradients accumulate
    over every frame that reads it.
    """

    operation = "Parameter"

    def __init__(self, name: str, value: torch.Tensor) -> None:
        super().__init__(name)
        if value.dim() != 2:
            raise ConfigurationError(f"Parameter {name!r} must be a matrix, got shape {tuple(value.shape)}")
        self.value = value
        self.device = value.device

    def evaluate(self, frame: Optional[int] = None) -> None:
        pass

    def compute_input_partial(self, input_index: int, frame: Optional[int] = None) -> None:
        raise ConfigurationError(f"Parameter {self.name!r} has no inputs.")

    def save_state(self, sink: Dict[str, Any]) -> None:
        super().save_state(sink)
        sink["value"] = self.value.detach().cpu().clone()

    def load_state(self, source: Mapping[str, Any], format_version: int) -> None:
        super().load_state(source, format_version)
        self.value = ensure_resident(source["value"].clone(), self.device)
        self.gradient = None


class Plus(Node):
    """Elementwise sum of two equally shaped inputs."""

    operation = "Plus"

    def __init__(self, name: str, left: Optional[Node] = None, right: Optional[Node] = None) -> None:
        inputs = [n for n in (left, right) if n is not None]
        super().__init__(name, inputs)

    def validate(self) -> None:
        if len(self.inputs) != 2:
            raise ConfigurationError(f"Plus node {self.name!r} requires two inputs, got {len(self.inputs)}")
        left, right = self.inputs
        if left.value is not None and right.value is not None and left.value.shape != right.value.shape:
            raise ConfigurationError(
                f"Plus node {self.name!r} inputs disagree: "
                f"{tuple(left.value.shape)} vs {tuple(right.value.shape)}"
            )

    def _rows(self) -> Tuple[int, torch.dtype]:
        for node in self.inputs:
            if node.value is not None:
                return int(node.value.shape[0]), node.value.dtype
        raise RuntimeError(f"Plus node {self.name!r} has no evaluated input.")

    def evaluate(self, frame: Optional[int] = None) -> None:
        left, right = self.inputs
        if frame is None:
            self.value = left.value + right.value
            return
        rows, dtype = self._rows()
        value = self._allocate_value(rows, self._require_layout().num_columns, dtype)
        cols = self.frame_columns(frame)
        value[:, cols] = left.value[:, cols] + right.value[:, cols]

    def compute_input_partial(self, input_index: int, frame: Optional[int] = None) -> None:
        target = self.input(input_index)
        grad = target.ensure_gradient()
        if frame is None:
            grad += self.gradient
        else:
            cols = self.frame_columns(frame)
            grad[:, cols] += self.gradient[:, cols]


class RecurrentLoop:
    """
    Strongly connected group of nodes closed through at least one delay node.

    Responsibilities:
      - Fix the intra-frame evaluation order of its members.
      - Run members frame by frame in the direction set by its delay nodes.
    """

    def __init__(self, nodes: List[Node], direction: int) -> None:
        self.nodes = nodes
        self.direction = direction

    @property
    def name(self) -> str:
        return "loop[" + ",".join(n.name for n in self.nodes) + "]"

    def frames(self, num_frames: int) -> Iterable[int]:
        if self.direction < 0:
            return range(num_frames)
        return range(num_frames - 1, -1, -1)

    def forward(self, num_frames: int) -> None:
        for t in self.frames(num_frames):
            for node in self.nodes:
                node.evaluate(t)

    def backward(self, num_frames: int) -> None:
        for t in reversed(list(self.frames(num_frames))):
            for node in reversed(self.nodes):
                for index in range(len(node.inputs)):
                    node.compute_input_partial(index, t)


Step = Union[Node, RecurrentLoop]


class Graph:
    """
    Container and scheduler for recurrence nodes.

    Responsibilities:
      - Own a Clock and the registered nodes.
      - Derive an evaluation schedule: acyclic nodes run one minibatch at a time,
        loops closed through delay nodes run frame by frame.
      - Bind a SequenceLayout to every node and validate wiring.
      - Run forward sweeps and reverse-order backward sweeps.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock = clock or Clock()
        self.nodes: "OrderedDict[str, Node]" = OrderedDict()
        self.layout: Optional[SequenceLayout] = None
        self._schedule: List[Step] = []
        self._structure_dirty = True

    # --- Construction APIs ---

    def add(self, *nodes: Node) -> None:
        """
        Register one or more nodes with the graph.
        """
        for node in nodes:
            if node.name in self.nodes:
                raise ConfigurationError(f"Duplicate node name {node.name!r}")
            self.nodes[node.name] = node
        self._structure_dirty = True

    def node(self, name: str) -> Node:
        try:
            return self.nodes[name]
        except KeyError:
            raise KeyError(f"No node named {name!r}") from None

    def __getitem__(self, name: str) -> Node:
        return self.node(name)

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes.values())

    def parameters(self) -> Iterable[Node]:
        for node in self.nodes.values():
            if isinstance(node, Parameter):
                yield node

    def stateful_nodes(self) -> List[Node]:
        """Nodes that carry state across minibatch boundaries."""
        return [node for node in self.nodes.values() if node.carries_state]

    @property
    def schedule(self) -> List[Step]:
        self._ensure_structure()
        return list(self._schedule)

    # --- Binding & execution ---

    def bind(self, layout: SequenceLayout) -> None:
        """
        Hand ``layout`` to every node and validate the wiring.
        """
        if not self.nodes:
            raise ConfigurationError("Graph has no nodes to bind.")
        self._ensure_structure()
        self.layout = layout
        for node in self._flat_order():
            node.set_layout(layout)
        self.validate()

    def validate(self) -> None:
        for node in self._flat_order():
            node.validate()

    def forward(self) -> None:
        if self.layout is None:
            raise RuntimeError("Graph.forward() called before bind().")
        self._ensure_structure()
        for step in self._schedule:
            if isinstance(step, RecurrentLoop):
                step.forward(self.layout.num_frames)
            else:
                step.evaluate()
        self.clock.step()

    def backward(self, seeds: Mapping[Union[str, Node], torch.Tensor]) -> None:
        """
        Reset gradients, add ``seeds`` (dL/dvalue per node) and propagate them to
        every input in reverse schedule order.
        """
        if self.layout is None:
            raise RuntimeError("Graph.backward() called before bind().")
        self._ensure_structure()
        for node in self.nodes.values():
            node.zero_gradient()
        for key, seed in seeds.items():
            node = self.node(key) if isinstance(key, str) else key
            grad = node.ensure_gradient()
            if grad.shape != seed.shape:
                raise ConfigurationError(
                    f"Seed for {node.name!r} has shape {tuple(seed.shape)}, expected {tuple(grad.shape)}"
                )
            grad += ensure_resident(seed, grad.device)
        for step in reversed(self._schedule):
            if isinstance(step, RecurrentLoop):
                step.backward(self.layout.num_frames)
                continue
            for index in range(len(step.inputs)):
                step.compute_input_partial(index)

    def to(self, device: DeviceLike) -> "Graph":
        for node in self.nodes.values():
            node.move_to_device(device)
        return self

    # --- Internal helpers ----------------------------------------------------

    def _flat_order(self) -> List[Node]:
        order: List[Node] = []
        for step in self._schedule:
            if isinstance(step, RecurrentLoop):
                order.extend(step.nodes)
            else:
                order.append(step)
        return order

    def _ensure_structure(self) -> None:
        if not self._structure_dirty:
            return
        for node in self.nodes.values():
            for inp in node.inputs:
                if self.nodes.get(inp.name) is not inp:
                    raise ConfigurationError(
                        f"Input {inp.name!r} of {node.name!r} must be added to the graph."
                    )
        components = self._strongly_connected_components()
        self._schedule = self._order_components(components)
        self._structure_dirty = False
        logger.debug(
            "graph schedule: %s",
            ", ".join(step.name for step in self._schedule),
        )

    def _strongly_connected_components(self) -> List[List[Node]]:
        index_of: Dict[str, int] = {}
        low: Dict[str, int] = {}
        on_stack: Dict[str, bool] = {}
        stack: List[Node] = []
        components: List[List[Node]] = []
        counter = [0]

        consumers: Dict[str, List[Node]] = {name: [] for name in self.nodes}
        for node in self.nodes.values():
            for inp in node.inputs:
                consumers[inp.name].append(node)

        def visit(node: Node) -> None:
            index_of[node.name] = low[node.name] = counter[0]
            counter[0] += 1
            stack.append(node)
            on_stack[node.name] = True
            for nxt in consumers[node.name]:
                if nxt.name not in index_of:
                    visit(nxt)
                    low[node.name] = min(low[node.name], low[nxt.name])
                elif on_stack.get(nxt.name):
                    low[node.name] = min(low[node.name], index_of[nxt.name])
            if low[node.name] == index_of[node.name]:
                component: List[Node] = []
                while True:
                    member = stack.pop()
                    on_stack[member.name] = False
                    component.append(member)
                    if member is node:
                        break
                components.append(component)

        for node in self.nodes.values():
            if node.name not in index_of:
                visit(node)
        return components

    def _order_components(self, components: List[List[Node]]) -> List[Step]:
        position = {name: i for i, name in enumerate(self.nodes)}
        owner: Dict[str, int] = {}
        for cid, component in enumerate(components):
            for node in component:
                owner[node.name] = cid

        steps: Dict[int, Step] = {}
        for cid, component in enumerate(components):
            node = component[0]
            self_loop = len(component) == 1 and any(inp is node for inp in node.inputs)
            if len(component) == 1 and not self_loop:
                steps[cid] = node
            else:
                steps[cid] = self._build_loop(sorted(component, key=lambda n: position[n.name]))

        deps: Dict[int, set] = {cid: set() for cid in steps}
        for node in self.nodes.values():
            for inp in node.inputs:
                if owner[inp.name] != owner[node.name]:
                    deps[owner[node.name]].add(owner[inp.name])

        def first_position(cid: int) -> int:
            return min(position[n.name] for n in components[cid])

        ordered: List[Step] = []
        done: set = set()
        pending = sorted(steps, key=first_position)
        while pending:
            ready = [cid for cid in pending if deps[cid] <= done]
            if not ready:
                raise ConfigurationError("Graph dependencies could not be ordered.")
            cid = ready[0]
            ordered.append(steps[cid])
            done.add(cid)
            pending.remove(cid)
        return ordered

    def _build_loop(self, members: List[Node]) -> RecurrentLoop:
        delays = [node for node in members if node.is_delay]
        names = [node.name for node in members]
        if not delays:
            raise ConfigurationError(f"Cycle without a delay node: {names}")
        directions = {int(node.direction) for node in delays}
        if len(directions) != 1:
            raise ConfigurationError(f"Loop {names} mixes past and future delays.")

        # Intra-frame order: drop edges that enter a delay node.
        member_names = set(names)
        remaining = list(members)
        placed: List[Node] = []
        placed_names: set = set()
        while remaining:
            for node in remaining:
                blockers = [
                    inp for inp in node.inputs
                    if inp.name in member_names and inp.name not in placed_names and not node.is_delay
                ]
                if not blockers:
                    placed.append(node)
                    placed_names.add(node.name)
                    remaining.remove(node)
                    break
            else:
                raise ConfigurationError(f"Loop {names} has a cycle that does not pass through a delay.")
        return RecurrentLoop(placed, directions.pop())
