"""
Helpers for packing variable-length sequences into fixed-size minibatches.

Sequences are laid out on parallel streams back to back and the streams are cut
into consecutive chunks of ``minibatch_frames`` frames, so a sequence may
straddle a minibatch boundary. Each chunk carries its own SequenceLayout.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import torch

from .layout import BoundaryFlag, SequenceLayout


@dataclass
class PackedMinibatch:
    """
    One minibatch: ``features`` is ``[D, frames * streams]`` with frame t of
    stream s in column ``t * S + s``; ``targets`` follows the same packing.
    """

    index: int
    features: torch.Tensor
    layout: SequenceLayout
    targets: Optional[torch.Tensor] = None

    @property
    def num_streams(self) -> int:
        return self.layout.num_streams

    @property
    def num_frames(self) -> int:
        return self.layout.num_frames

    @property
    def feature_dim(self) -> int:
        return int(self.features.shape[0])

    def describe(self) -> str:
        return (
            f"minibatch {self.index}: {self.num_frames} frames × {self.num_streams} streams × "
            f"{self.feature_dim} dims"
        )


def pack_sequences(
    sequences: Sequence[torch.Tensor],
    num_streams: int,
    minibatch_frames: int,
    *,
    targets: Optional[Sequence[torch.Tensor]] = None,
    no_label_last: bool = False,
) -> List[PackedMinibatch]:
    """
    Pack ``[T_i, D]`` sequences onto ``num_streams`` streams and cut them into minibatches.

    Args:
        sequences: Sequences to pack, each shaped ``[T_i, D]`` with ``T_i >= 1``.
        num_streams: Number of parallel streams per minibatch.
        minibatch_frames: Frames per minibatch.
        targets: Optional per-sequence targets shaped ``[T_i, K]``.
        no_label_last: Flag the last frame of every sequence NO_LABEL.

    Each sequence goes to the currently shortest stream. Its first frame is
    flagged SEQUENCE_START and its last SEQUENCE_END; unused stream tails are
    NO_INPUT.
    """
    if num_streams <= 0:
        raise ValueError("num_streams must be >= 1")
    if minibatch_frames <= 0:
        raise ValueError("minibatch_frames must be >= 1")
    if not sequences:
        raise ValueError("Cannot pack an empty list of sequences.")
    if targets is not None and len(targets) != len(sequences):
        raise ValueError("targets must provide one tensor per sequence.")

    dims = {int(seq.shape[1]) for seq in sequences if seq.dim() == 2}
    if len(dims) != 1 or any(seq.dim() != 2 for seq in sequences):
        raise ValueError("All sequences must be [T, D] with a shared feature dimension.")
    if any(seq.shape[0] == 0 for seq in sequences):
        raise ValueError("Sequences must have at least one frame.")
    feature_dim = dims.pop()
    target_dim = None
    if targets is not None:
        target_dims = {int(t.shape[1]) for t in targets}
        if len(target_dims) != 1:
            raise ValueError("All targets must share a feature dimension.")
        target_dim = target_dims.pop()
        for seq, tgt in zip(sequences, targets):
            if tgt.shape[0] != seq.shape[0]:
                raise ValueError("Each target must have as many frames as its sequence.")

    assignment: List[List[int]] = [[] for _ in range(num_streams)]
    lengths = [0] * num_streams
    for idx, seq in enumerate(sequences):
        stream = min(range(num_streams), key=lambda s: (lengths[s], s))
        assignment[stream].append(idx)
        lengths[stream] += int(seq.shape[0])

    num_minibatches = max(1, math.ceil(max(lengths) / minibatch_frames))
    total_frames = num_minibatches * minibatch_frames
    dtype = sequences[0].dtype
    features = torch.zeros(feature_dim, total_frames, num_streams, dtype=dtype)
    packed_targets = None
    if targets is not None:
        packed_targets = torch.zeros(target_dim, total_frames, num_streams, dtype=targets[0].dtype)
    flags = torch.full((num_streams, total_frames), int(BoundaryFlag.NO_INPUT), dtype=torch.int64)

    for s, indices in enumerate(assignment):
        pos = 0
        for idx in indices:
            seq = sequences[idx]
            length = int(seq.shape[0])
            features[:, pos:pos + length, s] = seq.t()
            if packed_targets is not None:
                packed_targets[:, pos:pos + length, s] = targets[idx].t()
            flags[s, pos:pos + length] = int(BoundaryFlag.NONE)
            flags[s, pos] |= int(BoundaryFlag.SEQUENCE_START)
            flags[s, pos + length - 1] |= int(BoundaryFlag.SEQUENCE_END)
            if no_label_last:
                flags[s, pos + length - 1] |= int(BoundaryFlag.NO_LABEL)
            pos += length

    batches: List[PackedMinibatch] = []
    for k in range(num_minibatches):
        window = slice(k * minibatch_frames, (k + 1) * minibatch_frames)
        chunk = features[:, window, :].reshape(feature_dim, minibatch_frames * num_streams)
        target_chunk = None
        if packed_targets is not None:
            target_chunk = packed_targets[:, window, :].reshape(target_dim, minibatch_frames * num_streams)
        batches.append(
            PackedMinibatch(
                index=k,
                features=chunk.contiguous(),
                layout=SequenceLayout.from_flags(flags[:, window]),
                targets=None if target_chunk is None else target_chunk.contiguous(),
            )
        )
    return batches


def synthesize_sequences(
    count: int,
    feature_dim: int,
    *,
    min_len: int = 4,
    max_len: int = 16,
    seed: int = 7,
    dtype: torch.dtype = torch.float32,
) -> List[torch.Tensor]:
    """
    Deterministic noisy sinusoids of random length in ``[min_len, max_len]``.
    """
    if count <= 0 or feature_dim <= 0:
        raise ValueError("count and feature_dim must be >= 1")
    if min_len < 1 or max_len < min_len:
        raise ValueError("Need 1 <= min_len <= max_len.")
    generator = torch.Generator().manual_seed(seed)
    lengths = torch.randint(min_len, max_len + 1, (count,), generator=generator)
    sequences: List[torch.Tensor] = []
    for length in lengths.tolist():
        ticks = torch.linspace(0, 1, length, dtype=dtype)
        phase = float(torch.rand(1, generator=generator).item()) * 2 * math.pi
        base = 0.1 * torch.randn(length, feature_dim, generator=generator).to(dtype)
        base[:, 0] += torch.sin(2 * math.pi * ticks + phase)
        if feature_dim > 1:
            base[:, 1] += 0.5 * torch.cos(4 * math.pi * ticks + phase)
        sequences.append(base)
    return sequences


def next_frame_targets(sequences: Sequence[torch.Tensor]) -> List[torch.Tensor]:
    """Target for frame t is frame t + 1; the last frame's target is zero."""
    targets = []
    for seq in sequences:
        shifted = torch.zeros_like(seq)
        shifted[:-1] = seq[1:]
        targets.append(shifted)
    return targets


def load_demo_minibatches(
    *,
    config: Optional[Mapping[str, Any]] = None,
    **overrides: Any,
) -> List[PackedMinibatch]:
    """
    Synthesize next-frame prediction data and pack it.

    Args:
        config: Optional mapping with any of ``count``, ``feature_dim``, ``min_len``,
            ``max_len``, ``seed``, ``num_streams``, ``minibatch_frames`` and ``dtype``.
        **overrides: Keyword overrides applied last (take precedence over ``config``).
    """
    cfg = _default_demo_config()
    if config is not None:
        cfg.update(dict(config))
    if overrides:
        cfg.update(overrides)

    sequences = synthesize_sequences(
        int(cfg["count"]),
        int(cfg["feature_dim"]),
        min_len=int(cfg["min_len"]),
        max_len=int(cfg["max_len"]),
        seed=int(cfg["seed"]),
        dtype=cfg["dtype"],
    )
    return pack_sequences(
        sequences,
        int(cfg["num_streams"]),
        int(cfg["minibatch_frames"]),
        targets=next_frame_targets(sequences),
        no_label_last=True,
    )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _default_demo_config() -> Dict[str, Any]:
    return {
        "count": 12,
        "feature_dim": 4,
        "min_len": 4,
        "max_len": 16,
        "seed": 7,
        "num_streams": 3,
        "minibatch_frames": 8,
        "dtype": torch.float32,
    }
