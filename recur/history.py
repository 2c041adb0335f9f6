# recur/history.py

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional, Tuple, Union

import torch

from .errors import HandoffError, LayoutError

logger = logging.getLogger(__name__)


def _split_halves(buffer: torch.Tensor, what: str) -> Tuple[torch.Tensor, torch.Tensor]:
    if buffer.dim() != 2 or buffer.shape[1] % 2 != 0:
        raise LayoutError(f"{what} buffer must be [rows, 2 * streams], got {tuple(buffer.shape)}")
    half = buffer.shape[1] // 2
    return buffer[:, :half].clone(), buffer[:, half:].clone()


@dataclass(frozen=True)
class DelayCarry:
    """
    Activation a delay node reads when its lookup crosses the minibatch boundary.
    """

    activation: torch.Tensor


@dataclass(frozen=True)
class LSTMCarry:
    """
    Final per-stream output and cell state of an LSTM node, ``[output_dim, S]`` each.
    """

    output: torch.Tensor
    state: torch.Tensor

    def to_buffer(self) -> torch.Tensor:
        """Pack as ``[output_dim, 2 * S]``: outputs first, then states."""
        return torch.cat([self.output, self.state], dim=1)

    @classmethod
    def from_buffer(cls, buffer: torch.Tensor) -> "LSTMCarry":
        output, state = _split_halves(buffer, "LSTM history")
        return cls(output=output, state=state)


@dataclass(frozen=True)
class ErrorCarry:
    """
    Errors a later minibatch sends back into the tail of an earlier one.
    """

    output_error: torch.Tensor
    state_error: torch.Tensor

    def to_buffer(self) -> torch.Tensor:
        return torch.cat([self.output_error, self.state_error], dim=1)

    @classmethod
    def from_buffer(cls, buffer: torch.Tensor) -> "ErrorCarry":
        output_error, state_error = _split_halves(buffer, "Error carry")
        return cls(output_error=output_error, state_error=state_error)


Carry = Union[DelayCarry, LSTMCarry]


@dataclass(frozen=True)
class MinibatchHandoff:
    """
    Everything one minibatch hands to its neighbour, keyed by node name.
    """

    index: int
    carries: Mapping[str, Carry] = field(default_factory=dict)
    errors: Mapping[str, ErrorCarry] = field(default_factory=dict)

    def summary(self) -> Dict[str, object]:
        return {
            "index": self.index,
            "carries": sorted(self.carries),
            "errors": sorted(self.errors),
        }


class MinibatchHistoryStore:
    """
    Sealed handoff records between consecutive minibatch executions.

    Responsibilities:
      - Capture each stateful node's carry exactly once per minibatch index.
      - Restore a sealed carry into the nodes running the following minibatch.
      - Hold backward errors that a later minibatch sends to an earlier one.
      - Move carries between nodes for encoder/decoder stitching.

    Writing the same index twice or reading an index that was never captured
    raises HandoffError.
    """

    def __init__(self, retain: Optional[int] = None) -> None:
        if retain is not None and retain < 1:
            raise ValueError("retain must be >= 1 when provided")
        self.retain = retain
        self._carries: Dict[int, Dict[str, Carry]] = {}
        self._errors: Dict[int, Dict[str, ErrorCarry]] = {}

    # ------------------------------------------------------------------ forward
    def capture(self, nodes: Iterable[object], index: int) -> MinibatchHandoff:
        if index in self._carries:
            raise HandoffError(f"Carries for minibatch {index} were already captured.")
        carries: Dict[str, Carry] = {}
        for node in nodes:
            if getattr(node, "carries_state", False):
                carries[node.name] = node.export_carry()
        self._carries[index] = carries
        self._trim(index)
        logger.debug("captured carries for minibatch %d: %s", index, sorted(carries))
        return self.handoff(index)

    def restore(self, nodes: Iterable[object], index: int) -> MinibatchHandoff:
        """
        Apply the carries sealed for minibatch ``index`` to ``nodes``.
        """
        if index not in self._carries:
            raise HandoffError(f"No carries were captured for minibatch {index}.")
        carries = self._carries[index]
        for node in nodes:
            carry = carries.get(getattr(node, "name", None))
            if carry is not None:
                node.import_carry(carry)
        logger.debug("restored carries of minibatch %d", index)
        return self.handoff(index)

    # ----------------------------------------------------------------- backward
    def capture_errors(self, nodes: Iterable[object], index: int) -> MinibatchHandoff:
        if index in self._errors:
            raise HandoffError(f"Errors for minibatch {index} were already captured.")
        errors: Dict[str, ErrorCarry] = {}
        for node in nodes:
            export = getattr(node, "export_errors", None)
            if export is not None:
                errors[node.name] = export()
        self._errors[index] = errors
        self._trim(index)
        logger.debug("captured errors for minibatch %d: %s", index, sorted(errors))
        return self.handoff(index)

    def inject_errors(self, nodes: Iterable[object], index: int) -> None:
        if index not in self._errors:
            raise HandoffError(f"No errors were captured for minibatch {index}.")
        errors = self._errors[index]
        for node in nodes:
            carry = errors.get(getattr(node, "name", None))
            if carry is not None:
                node.import_errors(carry)

    # ----------------------------------------------------------------- metadata
    def handoff(self, index: int) -> MinibatchHandoff:
        if index not in self._carries and index not in self._errors:
            raise HandoffError(f"Nothing was captured for minibatch {index}.")
        return MinibatchHandoff(
            index=index,
            carries=dict(self._carries.get(index, {})),
            errors=dict(self._errors.get(index, {})),
        )

    def __contains__(self, index: int) -> bool:
        return index in self._carries or index in self._errors

    @property
    def latest_index(self) -> Optional[int]:
        indices = set(self._carries) | set(self._errors)
        return max(indices) if indices else None

    def clear(self) -> None:
        self._carries.clear()
        self._errors.clear()

    def _trim(self, newest: int) -> None:
        if self.retain is None:
            return
        cutoff = newest - self.retain
        for table in (self._carries, self._errors):
            for stale in [i for i in table if i <= cutoff]:
                del table[stale]

    # -------------------------------------------------------------- interactive
    @staticmethod
    def snapshot(nodes: Iterable[object]) -> Dict[str, Carry]:
        """Unsealed copy of the current carries, for step-by-step drivers."""
        return {
            node.name: node.export_carry()
            for node in nodes
            if getattr(node, "carries_state", False)
        }

    @staticmethod
    def load(nodes: Iterable[object], carries: Mapping[str, Carry]) -> None:
        for node in nodes:
            carry = carries.get(getattr(node, "name", None))
            if carry is not None:
                node.import_carry(carry)

    @staticmethod
    def transfer_history(src: object, dst: object) -> None:
        """Seed ``dst`` with the final carry of ``src`` (encoder to decoder)."""
        dst.import_carry(src.export_carry())

    @staticmethod
    def transfer_errors(src: object, dst: object) -> None:
        """Send the boundary errors of ``src`` (decoder) into ``dst`` (encoder)."""
        dst.import_errors(src.export_errors())
