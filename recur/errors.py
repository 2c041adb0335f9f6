# recur/errors.py

from __future__ import annotations


class RecurrenceError(Exception):
    """Base class for faults raised by the recurrence core."""


class ConfigurationError(RecurrenceError, ValueError):
    """
    Raised when a node is wired or parameterized incorrectly.

    Examples: wrong number of inputs, non-dense observations, gate blocks whose
    shapes disagree with the observation, a non-positive delay step.
    """


class LayoutError(RecurrenceError, ValueError):
    """Raised when a layout disagrees with the buffers it is applied to."""


class HandoffError(RecurrenceError, RuntimeError):
    """Raised when cross-minibatch carries are written or read out of order."""
