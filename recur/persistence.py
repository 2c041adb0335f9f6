# recur/persistence.py

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Union

import torch

from .config import CURRENT_FORMAT_VERSION
from .core import Graph, Node
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _as_nodes(nodes: Union[Graph, Iterable[Node]]) -> Dict[str, Node]:
    items = nodes.nodes.values() if isinstance(nodes, Graph) else nodes
    return {node.name: node for node in items}


def node_states(nodes: Union[Graph, Iterable[Node]]) -> Dict[str, Dict[str, Any]]:
    states: Dict[str, Dict[str, Any]] = {}
    for name, node in _as_nodes(nodes).items():
        sink: Dict[str, Any] = {}
        node.save_state(sink)
        states[name] = sink
    return states


def save_checkpoint(path: PathLike, nodes: Union[Graph, Iterable[Node]]) -> Path:
    """
    Write every node's persisted fields to ``path`` with ``torch.save``.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = {"format_version": CURRENT_FORMAT_VERSION, "nodes": node_states(nodes)}
    torch.save(payload, target)
    logger.info("saved checkpoint with %d nodes to %s", len(payload["nodes"]), target)
    return target


def restore_states(
    nodes: Union[Graph, Iterable[Node]],
    states: Mapping[str, Mapping[str, Any]],
    format_version: int,
    *,
    strict: bool = True,
) -> None:
    by_name = _as_nodes(nodes)
    missing = sorted(set(by_name) - set(states))
    if strict and missing:
        raise ConfigurationError(f"Checkpoint has no entry for nodes: {missing}")
    for name, node in by_name.items():
        if name in states:
            node.load_state(states[name], format_version)


def load_checkpoint(
    path: PathLike,
    nodes: Union[Graph, Iterable[Node]],
    *,
    strict: bool = True,
) -> int:
    """
    Load a checkpoint written by ``save_checkpoint`` into ``nodes``.

    Returns the checkpoint's format version.
    """
    payload = torch.load(Path(path), map_location="cpu", weights_only=False)
    if not isinstance(payload, Mapping) or "nodes" not in payload:
        raise ConfigurationError(f"{path} is not a recurrence checkpoint.")
    format_version = int(payload.get("format_version", 1))
    restore_states(nodes, payload["nodes"], format_version, strict=strict)
    logger.info("loaded checkpoint %s (format version %d)", path, format_version)
    return format_version
