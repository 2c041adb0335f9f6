# recur/config.py

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

import torch

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# Activation written at sequence boundaries when a node does not specify one.
DEFAULT_HIDDEN_ACTIVATION = 0.1

MODEL_FORMAT_VERSION_1 = 1
MODEL_FORMAT_VERSION_2 = 2  # adds the initial-activation constant and LSTM dims
CURRENT_FORMAT_VERSION = MODEL_FORMAT_VERSION_2

DEBUG_SENTINEL_ENV = "RECUR_DEBUG_SENTINEL"

_TRUTHY = {"1", "true", "yes", "on"}

_debug_sentinel_override: Optional[bool] = None


@dataclass(frozen=True)
class RecurrenceConfig:
    time_step: int = 1
    initial_activation: float = DEFAULT_HIDDEN_ACTIVATION
    default_state: float = 0.0
    dtype: torch.dtype = torch.float32
    device: Optional[str] = None
    debug_sentinel: bool = False
    log_every: int = 10

    def torch_device(self) -> torch.device:
        return torch.device(self.device) if self.device is not None else torch.device("cpu")


def load_config(
    config: Optional[Mapping[str, Any]] = None,
    **overrides: Any,
) -> RecurrenceConfig:
    """
    Resolve a RecurrenceConfig from defaults, an optional mapping, and keyword overrides.

    Args:
        config: Optional mapping providing values for any RecurrenceConfig field.
        **overrides: Keyword overrides applied last (take precedence over ``config``).

    The ``RECUR_DEBUG_SENTINEL`` environment variable, when set, decides
    ``debug_sentinel`` regardless of the other sources.
    """
    cfg = _default_recurrence_config()
    if config is not None:
        cfg.update(dict(config))
    if overrides:
        cfg.update(overrides)

    unknown = sorted(set(cfg) - set(_default_recurrence_config()))
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {unknown}")

    env_value = os.environ.get(DEBUG_SENTINEL_ENV)
    if env_value is not None:
        cfg["debug_sentinel"] = env_value.strip().lower() in _TRUTHY

    time_step = int(cfg["time_step"])
    if time_step <= 0:
        raise ConfigurationError(f"time_step must be >= 1, got {time_step}")
    log_every = int(cfg["log_every"])
    if log_every <= 0:
        raise ConfigurationError(f"log_every must be >= 1, got {log_every}")

    return RecurrenceConfig(
        time_step=time_step,
        initial_activation=float(cfg["initial_activation"]),
        default_state=float(cfg["default_state"]),
        dtype=_resolve_dtype(cfg["dtype"]),
        device=None if cfg["device"] is None else str(cfg["device"]),
        debug_sentinel=bool(cfg["debug_sentinel"]),
        log_every=log_every,
    )


def set_debug_sentinel(enabled: Optional[bool]) -> None:
    """
    Force the NaN sentinel fill on or off. ``None`` defers to the environment.
    """
    global _debug_sentinel_override
    _debug_sentinel_override = enabled
    logger.debug("debug sentinel override set to %s", enabled)


def debug_sentinel_enabled() -> bool:
    if _debug_sentinel_override is not None:
        return _debug_sentinel_override
    return os.environ.get(DEBUG_SENTINEL_ENV, "").strip().lower() in _TRUTHY


def sentinel_fill(
    rows: int,
    cols: int,
    *,
    dtype: torch.dtype = torch.float32,
    device: Optional[torch.device] = None,
) -> torch.Tensor:
    """
    Allocate a forward buffer. With the debug sentinel on, every cell starts as
    NaN so that reads of cells nobody wrote show up downstream.
    """
    if debug_sentinel_enabled():
        return torch.full((rows, cols), float("nan"), dtype=dtype, device=device)
    return torch.zeros(rows, cols, dtype=dtype, device=device)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _default_recurrence_config() -> Dict[str, Any]:
    return {
        "time_step": 1,
        "initial_activation": DEFAULT_HIDDEN_ACTIVATION,
        "default_state": 0.0,
        "dtype": torch.float32,
        "device": None,
        "debug_sentinel": False,
        "log_every": 10,
    }


def _resolve_dtype(value: Union[str, torch.dtype]) -> torch.dtype:
    if isinstance(value, torch.dtype):
        return value
    resolved = getattr(torch, str(value), None)
    if not isinstance(resolved, torch.dtype):
        raise ConfigurationError(f"Unknown dtype {value!r}")
    return resolved
