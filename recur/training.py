from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

import torch

from .config import RecurrenceConfig, load_config, set_debug_sentinel
from .core import Graph, InputValue
from .data_helper import PackedMinibatch
from .errors import ConfigurationError
from .history import MinibatchHistoryStore
from .layout import BoundaryFlag, SequenceLayout

logger = logging.getLogger(__name__)

LossFn = Callable[[torch.Tensor, torch.Tensor, SequenceLayout], Tuple[torch.Tensor, torch.Tensor]]
UpdateFn = Optional[Callable[[Graph], None]]


def masked_squared_error(
    output: torch.Tensor,
    target: torch.Tensor,
    layout: SequenceLayout,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Half mean squared error over labelled columns, plus its gradient w.r.t. ``output``.

    Columns flagged NO_INPUT or NO_LABEL contribute neither loss nor gradient.
    """
    if output.shape != target.shape:
        raise ConfigurationError(
            f"Output {tuple(output.shape)} and target {tuple(target.shape)} disagree."
        )
    layout.check_columns(int(output.shape[1]), "loss output")
    keep = (~layout.column_mask(BoundaryFlag.NO_INPUT | BoundaryFlag.NO_LABEL)).to(output.device)
    weights = keep.to(output.dtype).unsqueeze(0)
    count = max(1, int(keep.sum().item()))
    diff = (output - target.to(output.dtype)) * weights
    loss = 0.5 * (diff * diff).sum() / count
    return loss, diff / count


@dataclass(frozen=True)
class StepResult:
    index: int
    loss: float
    labelled_columns: int


class MinibatchRunner:
    """
    Drives a graph over consecutive packed minibatches of the same stream set.

    Responsibilities:
      - Feed each minibatch, bind its layout and restore the previous minibatch's
        carries through a MinibatchHistoryStore.
      - Run forward, seal this minibatch's carries, seed the output gradient
        with the loss and run backward.
      - Leave parameter updates to an optional ``update_fn``.
    """

    def __init__(
        self,
        graph: Graph,
        input_name: str,
        output_name: str,
        *,
        store: Optional[MinibatchHistoryStore] = None,
        config: Optional[RecurrenceConfig] = None,
        loss_fn: LossFn = masked_squared_error,
        update_fn: UpdateFn = None,
    ) -> None:
        self.graph = graph
        self.input_name = input_name
        self.output_name = output_name
        self.store = store or MinibatchHistoryStore(retain=2)
        self.config = config or load_config()
        self.loss_fn = loss_fn
        self.update_fn = update_fn
        node = graph.node(input_name)
        if not isinstance(node, InputValue):
            raise ConfigurationError(f"{input_name!r} is not an InputValue node.")
        graph.node(output_name)
        if self.config.debug_sentinel:
            set_debug_sentinel(True)
        if self.config.device is not None:
            graph.to(self.config.device)

    def reset(self) -> None:
        """Forget every carry; the next minibatch starts all streams fresh."""
        self.store.clear()
        for node in self.graph.stateful_nodes():
            node.reset()

    def step(self, batch: PackedMinibatch) -> StepResult:
        if batch.targets is None:
            raise ConfigurationError(f"Minibatch {batch.index} has no targets.")
        device = self.config.torch_device()
        feed = self.graph.node(self.input_name)
        feed.feed(batch.features.to(device=device, dtype=self.config.dtype))
        self.graph.bind(batch.layout)

        nodes = self.graph.stateful_nodes()
        if (batch.index - 1) in self.store:
            self.store.restore(nodes, batch.index - 1)
        self.graph.forward()
        self.store.capture(nodes, batch.index)

        output = self.graph.node(self.output_name).value
        target = batch.targets.to(device=output.device, dtype=output.dtype)
        loss, seed = self.loss_fn(output, target, batch.layout)
        self.graph.backward({self.output_name: seed})
        if self.update_fn is not None:
            self.update_fn(self.graph)

        labelled = int((~batch.layout.column_mask(BoundaryFlag.NO_INPUT | BoundaryFlag.NO_LABEL)).sum().item())
        return StepResult(index=batch.index, loss=float(loss.item()), labelled_columns=labelled)

    def run(self, batches: Iterable[PackedMinibatch]) -> List[float]:
        self.reset()
        history: List[float] = []
        for step, batch in enumerate(batches, start=1):
            result = self.step(batch)
            history.append(result.loss)
            if step % self.config.log_every == 0:
                logger.info("[minibatch %d] loss=%.6f labelled=%d", result.index, result.loss, result.labelled_columns)
        if history:
            logger.info("ran %d minibatches, final loss=%.6f", len(history), history[-1])
        return history
