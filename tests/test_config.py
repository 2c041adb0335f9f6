import pytest
import torch

from recur import (
    DEFAULT_HIDDEN_ACTIVATION,
    ConfigurationError,
    InputValue,
    LSTMNode,
    future_value,
    load_config,
    past_value,
    set_debug_sentinel,
)
from recur.config import DEBUG_SENTINEL_ENV, debug_sentinel_enabled, sentinel_fill


def test_defaults_and_overrides(monkeypatch):
    monkeypatch.delenv(DEBUG_SENTINEL_ENV, raising=False)
    cfg = load_config()
    assert cfg.time_step == 1
    assert cfg.dtype is torch.float32
    assert cfg.torch_device() == torch.device("cpu")

    cfg = load_config({"time_step": 3, "dtype": "float64"}, time_step=2)
    assert cfg.time_step == 2
    assert cfg.dtype is torch.float64


def test_invalid_values_raise(monkeypatch):
    monkeypatch.delenv(DEBUG_SENTINEL_ENV, raising=False)
    with pytest.raises(ConfigurationError):
        load_config(time_step=0)
    with pytest.raises(ConfigurationError):
        load_config(log_every=0)
    with pytest.raises(ConfigurationError):
        load_config(dtype="not_a_dtype")
    with pytest.raises(ConfigurationError):
        load_config(timestep=1)


def test_environment_controls_sentinel(monkeypatch):
    monkeypatch.setenv(DEBUG_SENTINEL_ENV, "1")
    assert load_config(debug_sentinel=False).debug_sentinel
    assert debug_sentinel_enabled()
    assert torch.isnan(sentinel_fill(2, 2)).all()

    monkeypatch.setenv(DEBUG_SENTINEL_ENV, "off")
    assert not load_config(debug_sentinel=True).debug_sentinel
    assert torch.count_nonzero(sentinel_fill(2, 2)) == 0


def test_override_wins_over_environment(monkeypatch):
    monkeypatch.setenv(DEBUG_SENTINEL_ENV, "0")
    try:
        set_debug_sentinel(True)
        assert debug_sentinel_enabled()
    finally:
        set_debug_sentinel(None)
    assert not debug_sentinel_enabled()


def test_config_supplies_node_defaults(monkeypatch):
    monkeypatch.delenv(DEBUG_SENTINEL_ENV, raising=False)
    cfg = load_config(time_step=2, initial_activation=-0.5, default_state=0.3, dtype="float64")
    x = InputValue("x", rows=1)

    delayed = past_value("d", x, config=cfg)
    assert (delayed.time_step, delayed.initial_activation, delayed.dtype) == (2, -0.5, torch.float64)
    ahead = future_value("f", x, config=cfg, time_step=1)
    assert (ahead.time_step, ahead.initial_activation) == (1, -0.5)

    assert LSTMNode("lstm", config=cfg).default_state == 0.3
    assert LSTMNode("lstm", config=cfg, default_state=0.0).default_state == 0.0
    assert LSTMNode("lstm").default_state == DEFAULT_HIDDEN_ACTIVATION
