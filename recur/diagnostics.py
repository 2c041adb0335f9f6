from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import torch

from .core import Graph, Node, Parameter
from .lstm import LSTMNode

logger = logging.getLogger(__name__)


@dataclass
class StatRecord:
    name: str
    l2: float
    max_abs: float
    mean_abs: float
    zero_frac: float


@dataclass
class GradientSummary:
    parameters: List[StatRecord]
    nodes: List[StatRecord]

    def to_text(self, top_k: Optional[int] = None) -> str:
        sections: List[str] = []

        def _fmt_section(title: str, rows: Sequence[StatRecord]) -> Optional[str]:
            if not rows:
                return None
            lines = [f"{title} gradients:"]
            limit = rows if top_k is None else rows[:top_k]
            for rec in limit:
                lines.append(
                    f"  {rec.name:<30} |l2|={rec.l2:.4e} "
                    f"|max|={rec.max_abs:.4e} mean|g|={rec.mean_abs:.4e} "
                    f"zero%={rec.zero_frac * 100:5.2f}"
                )
            return "\n".join(lines)

        for label, rows in (
            ("Parameter", self.parameters),
            ("Node", self.nodes),
        ):
            block = _fmt_section(label, rows)
            if block:
                sections.append(block)

        return "\n".join(sections)


def tensor_stats(name: str, tensor: Optional[torch.Tensor]) -> StatRecord:
    if tensor is None or tensor.numel() == 0:
        return StatRecord(name=name, l2=0.0, max_abs=0.0, mean_abs=0.0, zero_frac=0.0)
    data = tensor.detach()
    abs_val = data.abs()
    zeros = int((abs_val <= 1e-9).sum().item())
    return StatRecord(
        name=name,
        l2=float(data.norm().item()),
        max_abs=float(abs_val.max().item()),
        mean_abs=float(abs_val.mean().item()),
        zero_frac=zeros / data.numel(),
    )


def summarize_gradients(graph: Graph, *, sort_by: str = "l2") -> GradientSummary:
    """
    Gradient statistics for every node after a backward sweep, largest first.
    """
    if sort_by not in ("l2", "max_abs", "mean_abs", "zero_frac"):
        raise ValueError(f"Unknown sort key {sort_by!r}")
    params: List[StatRecord] = []
    others: List[StatRecord] = []
    for node in graph:
        if node.gradient is None:
            continue
        record = tensor_stats(node.name, node.gradient)
        (params if isinstance(node, Parameter) else others).append(record)
    params.sort(key=lambda rec: getattr(rec, sort_by), reverse=True)
    others.sort(key=lambda rec: getattr(rec, sort_by), reverse=True)
    return GradientSummary(parameters=params, nodes=others)


def find_unwritten(tensor: torch.Tensor) -> List[int]:
    """
    Columns holding NaN. With the debug sentinel on, these are cells a forward
    sweep never wrote.
    """
    if tensor.dim() != 2:
        raise ValueError(f"Expected a matrix, got shape {tuple(tensor.shape)}")
    return torch.isnan(tensor).any(dim=0).nonzero(as_tuple=False).flatten().tolist()


def check_forward_buffers(nodes: Union[Graph, Sequence[Node]]) -> Dict[str, List[int]]:
    """Map node name to unwritten columns, for nodes that have any."""
    report: Dict[str, List[int]] = {}
    for node in nodes:
        if node.value is None or not node.value.is_floating_point():
            continue
        columns = find_unwritten(node.value)
        if columns:
            report[node.name] = columns
            logger.warning("node %s has %d unwritten columns", node.name, len(columns))
    return report


@torch.inference_mode()
def plot_cell_trace(
    node: LSTMNode,
    *,
    stream: int = 0,
    unit: int = 0,
    ax: Optional["matplotlib.axes.Axes"] = None,
    save_path: Optional[Union[str, Path]] = None,
) -> "matplotlib.axes.Axes":
    """
    Plot gate activations, cell state and output of one LSTM unit over the frames
    of one stream.
    """
    try:
        import matplotlib.pyplot as plt  # type: ignore
        import numpy as np
    except Exception as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("matplotlib is required for trace plots.") from exc

    traces = node.cell_trace()
    streams = node.num_streams
    if stream < 0 or stream >= streams:
        raise ValueError(f"stream {stream} out of range for {streams} streams")
    if unit < 0 or unit >= node.output_dim:
        raise ValueError(f"unit {unit} out of range for output dim {node.output_dim}")

    if ax is None:
        _, ax = plt.subplots(figsize=(8, 3))
    frames = np.arange(node.num_frames)
    for label, buffer in traces.items():
        series = buffer[unit, stream::streams].detach().cpu().numpy()
        ax.plot(frames, series, label=label.replace("_", " "))
    ax.set_xlabel("frame")
    ax.set_title(f"{node.name} unit {unit}, stream {stream}")
    ax.legend(loc="upper right", fontsize="small")
    if save_path is not None:
        path = Path(save_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        ax.figure.savefig(path, bbox_inches="tight")
        logger.info("saved cell trace to %s", path)
    return ax
