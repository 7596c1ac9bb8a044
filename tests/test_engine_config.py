"""Tests for engine config loader: JSON loading, schema validation, overrides, frozen dataclass tree."""

import json
from datetime import timedelta
from pathlib import Path

import pytest

from config.engine_config import (
    DEFAULT_CONFIG_PATH,
    EngineConfig,
    EngineConfigError,
    _deep_merge,
    load_engine_config,
)
from execution.models import TimeInForce


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _default_raw() -> dict:
    with open(DEFAULT_CONFIG_PATH) as f:
        return json.load(f)


def _write_json(data: dict, dir_path: Path, name: str = "engine.json") -> Path:
    p = dir_path / name
    p.write_text(json.dumps(data))
    return p


# ---------------------------------------------------------------------------
# Loading the default config
# ---------------------------------------------------------------------------


class TestLoadDefault:
    """Load docs/config/engine.default.json and verify the dataclass tree."""

    def test_loads_successfully(self) -> None:
        cfg = load_engine_config()
        assert isinstance(cfg, EngineConfig)
        assert cfg.version == "1.0"

    def test_risk_limits(self) -> None:
        cfg = load_engine_config()
        assert cfg.risk.limits.max_position_size == 10
        assert cfg.risk.limits.max_correlation == 0.7
        assert cfg.risk.limits.max_open_positions == 10
        assert cfg.risk.margin_rate == 0.1

    def test_strategies(self) -> None:
        cfg = load_engine_config()
        assert set(cfg.strategies) == {"ma_crossover", "rsi", "macd", "bollinger", "ichimoku"}
        assert cfg.strategies["ichimoku"].enabled is False
        assert cfg.strategies["rsi"].parameters["oversold"] == 30
        assert cfg.strategies["macd"].risk_management.stop_loss == 2.5

    def test_commission_and_hours(self) -> None:
        cfg = load_engine_config()
        assert cfg.commission.commission("kraken", 10_000) == pytest.approx(26.0)
        assert cfg.market_hours.crypto_assets == ("BTC", "ETH", "CRYPTO")
        assert cfg.market_hours.equity_open_hour == 14

    def test_orders_and_signals(self) -> None:
        cfg = load_engine_config()
        assert cfg.orders.default_time_in_force is TimeInForce.GTC
        assert cfg.orders.stale_order_age == timedelta(hours=24)
        assert cfg.orders.exchange_timeout_seconds == 10.0
        assert cfg.signals.retention == timedelta(hours=24)
        assert cfg.signals.history_limit == 1000

    def test_frozen(self) -> None:
        cfg = load_engine_config()
        with pytest.raises(AttributeError):
            cfg.version = "2.0"  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------


class TestOverrides:
    def test_partial_override(self, tmp_path: Path) -> None:
        overrides = _write_json(
            {"risk": {"max_leverage": 2}, "orders": {"default_time_in_force": "DAY"}},
            tmp_path,
            "overrides.json",
        )
        cfg = load_engine_config(overrides_path=overrides)
        assert cfg.risk.limits.max_leverage == 2
        assert cfg.risk.limits.max_position_size == 10
        assert cfg.orders.default_time_in_force is TimeInForce.DAY

    def test_deep_merge(self) -> None:
        merged = _deep_merge({"a": {"b": 1, "c": 2}, "d": 3}, {"a": {"b": 9}, "e": 4})
        assert merged == {"a": {"b": 9, "c": 2}, "d": 3, "e": 4}

    def test_override_can_disable_strategy(self, tmp_path: Path) -> None:
        overrides = _write_json({"strategies": {"rsi": {"enabled": False}}}, tmp_path)
        cfg = load_engine_config(overrides_path=overrides)
        assert cfg.strategies["rsi"].enabled is False
        assert cfg.strategies["rsi"].parameters["period"] == 14


# ---------------------------------------------------------------------------
# Validation failures
# ---------------------------------------------------------------------------


class TestValidation:
    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(EngineConfigError, match="not found"):
            load_engine_config(config_path=tmp_path / "missing.json")

    def test_invalid_json(self, tmp_path: Path) -> None:
        p = tmp_path / "broken.json"
        p.write_text("{not json")
        with pytest.raises(EngineConfigError, match="not valid JSON"):
            load_engine_config(config_path=p)

    def test_out_of_range_limit(self, tmp_path: Path) -> None:
        raw = _default_raw()
        raw["risk"]["max_position_size"] = 150
        with pytest.raises(EngineConfigError, match="risk.max_position_size"):
            load_engine_config(config_path=_write_json(raw, tmp_path))

    def test_unknown_key(self, tmp_path: Path) -> None:
        raw = _default_raw()
        raw["risk"]["max_bananas"] = 1
        with pytest.raises(EngineConfigError):
            load_engine_config(config_path=_write_json(raw, tmp_path))

    def test_bad_time_in_force(self, tmp_path: Path) -> None:
        overrides = _write_json({"orders": {"default_time_in_force": "NEVER"}}, tmp_path)
        with pytest.raises(EngineConfigError, match="orders.default_time_in_force"):
            load_engine_config(overrides_path=overrides)

    def test_missing_section(self, tmp_path: Path) -> None:
        raw = _default_raw()
        del raw["signals"]
        with pytest.raises(EngineConfigError):
            load_engine_config(config_path=_write_json(raw, tmp_path))
