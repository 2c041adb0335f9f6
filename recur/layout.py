# recur/layout.py

from __future__ import annotations

import enum
import logging
from typing import Iterable, Optional, Tuple, Union

import torch

from .errors import ConfigurationError, LayoutError

logger = logging.getLogger(__name__)


class BoundaryFlag(enum.IntFlag):
    NONE = 0
    SEQUENCE_START = 1
    SEQUENCE_END = 2
    NO_INPUT = 4
    NO_LABEL = 8  # frame is excluded from the loss


FlagLike = Union[BoundaryFlag, int]


class SequenceLayout:
    """
    Boundary flags for a minibatch of ``num_streams`` parallel streams packed over
    ``num_frames`` frames.

    Responsibilities:
      - Hold one BoundaryFlag bitset per (stream, frame).
      - Answer per-frame queries: the per-stream flag column and its union.
      - Translate flags into column masks over ``[features, frames * streams]``
        buffers, where frame t of stream s lives in column ``t * S + s``.
    """

    def __init__(self, num_streams: int, num_frames: int) -> None:
        if num_streams <= 0 or num_frames <= 0:
            raise LayoutError(
                f"Layout needs at least one stream and one frame, got {num_streams}x{num_frames}"
            )
        self._flags = torch.zeros(num_streams, num_frames, dtype=torch.int64)

    @classmethod
    def from_flags(cls, flags: torch.Tensor) -> "SequenceLayout":
        """Build a layout from an integer ``[streams, frames]`` tensor of flag bits."""
        if flags.dim() != 2:
            raise LayoutError(f"Expected a [streams, frames] flag tensor, got shape {tuple(flags.shape)}")
        layout = cls(int(flags.shape[0]), int(flags.shape[1]))
        layout._flags.copy_(flags.to(torch.int64))
        return layout

    # --- Shape ---

    @property
    def num_streams(self) -> int:
        return int(self._flags.shape[0])

    @property
    def num_frames(self) -> int:
        return int(self._flags.shape[1])

    @property
    def num_columns(self) -> int:
        return self.num_streams * self.num_frames

    def column(self, frame: int, stream: int = 0) -> int:
        return frame * self.num_streams + stream

    def frame_columns(self, frame: int) -> slice:
        start = frame * self.num_streams
        return slice(start, start + self.num_streams)

    # --- Mutation ---

    def set(self, stream: int, frame: int, flag: FlagLike) -> None:
        """OR ``flag`` into the cell."""
        self._flags[stream, frame] |= int(flag)

    def clear(self, stream: int, frame: int, flag: Optional[FlagLike] = None) -> None:
        if flag is None:
            self._flags[stream, frame] = 0
            return
        self._flags[stream, frame] &= ~int(flag)

    def mask(self, stream: int, frame: int, keep: FlagLike) -> None:
        """Keep only the bits in ``keep``."""
        self._flags[stream, frame] &= int(keep)

    # --- Queries ---

    def flags(self, stream: int, frame: int) -> BoundaryFlag:
        return BoundaryFlag(int(self._flags[stream, frame]))

    def is_set(self, stream: int, frame: int, flag: FlagLike) -> bool:
        return bool(int(self._flags[stream, frame]) & int(flag))

    def frame(self, frame: int) -> Tuple[torch.Tensor, BoundaryFlag]:
        """
        Per-stream flags of one frame plus their union.
        """
        column = self._flags[:, frame]
        union = 0
        for value in column.tolist():
            union |= int(value)
        return column.clone(), BoundaryFlag(union)

    def frame_union(self, frame: int) -> BoundaryFlag:
        return self.frame(frame)[1]

    def stream_mask(self, frame: int, flag: FlagLike) -> torch.Tensor:
        """Bool ``[streams]`` tensor, True where the stream carries any bit of ``flag``."""
        return (self._flags[:, frame] & int(flag)) != 0

    def column_mask(self, flag: FlagLike) -> torch.Tensor:
        """Bool ``[frames * streams]`` tensor in packed column order."""
        return ((self._flags & int(flag)) != 0).t().reshape(-1)

    def has_any(self, flag: FlagLike) -> bool:
        return bool(((self._flags & int(flag)) != 0).any().item())

    def as_tensor(self) -> torch.Tensor:
        return self._flags.clone()

    def copy(self) -> "SequenceLayout":
        return SequenceLayout.from_flags(self._flags)

    def check_columns(self, num_columns: int, what: str = "buffer") -> None:
        if num_columns != self.num_columns:
            raise LayoutError(
                f"{what} has {num_columns} columns but layout describes "
                f"{self.num_frames} frames x {self.num_streams} streams"
            )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SequenceLayout):
            return NotImplemented
        return torch.equal(self._flags, other._flags)

    def __repr__(self) -> str:
        return f"SequenceLayout(streams={self.num_streams}, frames={self.num_frames})"


def shift_layout(
    layout: SequenceLayout,
    step: int,
    boundary: FlagLike,
    scan: int = 1,
) -> SequenceLayout:
    """
    Widen every ``boundary`` flag to cover the ``step`` frames whose delayed read
    would cross it.

    Frames are scanned in time order for ``scan=+1`` and in reverse for ``scan=-1``.
    A boundary resets the stream's countdown to ``step``; NO_INPUT clears it. While
    the countdown is positive the cell is rewritten to ``boundary`` (NO_LABEL is
    kept). With ``step == 1`` the copy equals the input.

    Example, step 2, scan +1 (S: start, E: end, N: no input)::

        S X X X E S X X X X E N N
        S S X X E S S X X X E N N
    """
    if step <= 0:
        raise ConfigurationError(f"Delay step must be >= 1, got {step}")
    if scan not in (1, -1):
        raise ConfigurationError(f"scan must be +1 or -1, got {scan}")
    shifted = layout.copy()
    if step == 1:
        return shifted

    boundary = int(boundary)
    no_input = int(BoundaryFlag.NO_INPUT)
    keep = int(BoundaryFlag.NO_LABEL)
    frames: Iterable[int] = range(layout.num_frames)
    if scan < 0:
        frames = reversed(range(layout.num_frames))

    remaining = [0] * layout.num_streams
    for t in frames:
        for s in range(layout.num_streams):
            bits = int(layout._flags[s, t])
            if bits & boundary:
                remaining[s] = step
            elif bits & no_input:
                remaining[s] = 0
            if remaining[s] > 0:
                shifted._flags[s, t] = (bits & keep) | boundary
                remaining[s] -= 1
    logger.debug("shifted layout by %d frames (scan=%+d)", step, scan)
    return shifted
