"""
Engine config loader: JSON file -> frozen dataclass tree, validated against JSON Schema.

Default values:      docs/config/engine.default.json
Schema:              docs/config/engine_config.schema.json

Overrides: pass ``overrides_path`` to a partial JSON file. Only the keys you
want to change need to be present; they are deep-merged on top of the base
config before schema validation.

Usage:
    from config.engine_config import load_engine_config
    cfg = load_engine_config()
    cfg = load_engine_config(overrides_path="engine.local.json")
    cfg.risk.limits.max_position_size  # -> 10
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import jsonschema

from execution.costs import CommissionModel, MarketHours
from execution.models import TimeInForce
from trading_core.contracts import RiskLimits, RiskManagement, StrategyConfig

logger = logging.getLogger("tradedesk.config")


def _find_project_root() -> Path:
    """Walk up from this file looking for pyproject.toml; fall back to CWD when installed."""
    candidate = Path(__file__).resolve().parent
    for _ in range(10):
        if (candidate / "pyproject.toml").exists():
            return candidate
        parent = candidate.parent
        if parent == candidate:
            break
        candidate = parent
    return Path.cwd()


_PROJECT_ROOT = _find_project_root()

DEFAULT_CONFIG_PATH = _PROJECT_ROOT / "docs" / "config" / "engine.default.json"
DEFAULT_SCHEMA_PATH = _PROJECT_ROOT / "docs" / "config" / "engine_config.schema.json"


# ---------------------------------------------------------------------------
# Frozen dataclass tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskSettings:
    limits: RiskLimits
    margin_rate: float = 0.1
    risk_free_rate: float = 0.02
    price_history_size: int = 250


@dataclass(frozen=True)
class OrderSettings:
    default_exchange: str = "default"
    market_spread: float = 0.001
    default_time_in_force: TimeInForce = TimeInForce.GTC
    stale_order_age: timedelta = timedelta(hours=24)
    exchange_timeout_seconds: float = 10.0


@dataclass(frozen=True)
class SignalSettings:
    retention: timedelta = timedelta(hours=24)
    history_limit: int = 1000


@dataclass(frozen=True)
class EngineConfig:
    """Top-level engine configuration."""

    version: str
    risk: RiskSettings
    strategies: dict[str, StrategyConfig] = field(default_factory=dict)
    commission: CommissionModel = CommissionModel()
    market_hours: MarketHours = MarketHours()
    orders: OrderSettings = OrderSettings()
    signals: SignalSettings = SignalSettings()


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


class EngineConfigError(Exception):
    """Raised when engine config loading or validation fails."""


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *overrides* into a copy of *base*; override keys win."""
    merged = dict(base)
    for key, val in overrides.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(val, dict):
            merged[key] = _deep_merge(merged[key], val)
        else:
            merged[key] = val
    return merged


def _read_json(path: Path, what: str) -> dict[str, Any]:
    if not path.exists():
        raise EngineConfigError(f"{what} not found: {path}")
    try:
        with open(path) as f:
            return json.load(f)
    except json.JSONDecodeError as exc:
        raise EngineConfigError(f"{what} is not valid JSON: {exc}") from exc


def _validate_schema(data: dict[str, Any], schema_path: Path) -> None:
    schema = _read_json(schema_path, "Schema file")
    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as exc:
        path = ".".join(str(p) for p in exc.absolute_path)
        where = f" at {path}" if path else ""
        raise EngineConfigError(f"Engine config validation failed{where}: {exc.message}") from exc


def _build_config(data: dict[str, Any]) -> EngineConfig:
    """Convert a raw dict (already validated) into the frozen dataclass tree."""
    risk_raw = data["risk"]
    limit_keys = (
        "max_position_size", "max_leverage", "max_drawdown", "max_daily_loss", "max_correlation",
        "stop_loss_percent", "take_profit_percent", "max_open_positions", "max_risk_per_trade",
        "minimum_margin_level",
    )
    risk = RiskSettings(
        limits=RiskLimits(**{k: risk_raw[k] for k in limit_keys}),
        margin_rate=risk_raw.get("margin_rate", 0.1),
        risk_free_rate=risk_raw.get("risk_free_rate", 0.02),
        price_history_size=risk_raw.get("price_history_size", 250),
    )

    strategies: dict[str, StrategyConfig] = {}
    for name, raw in data["strategies"].items():
        rm_raw = raw.get("risk_management", {})
        strategies[name] = StrategyConfig(
            name=name,
            parameters=dict(raw["parameters"]),
            enabled=raw["enabled"],
            risk_management=RiskManagement(**rm_raw) if rm_raw else RiskManagement(),
        )

    c_raw = data["commission"]
    mh_raw = data["market_hours"]
    o_raw = data["orders"]
    s_raw = data["signals"]
    return EngineConfig(
        version=data["version"],
        risk=risk,
        strategies=strategies,
        commission=CommissionModel(
            rates_bps={k.lower(): float(v) for k, v in c_raw["rates_bps"].items()},
            default_bps=float(c_raw["default_bps"]),
            minimum=float(c_raw["minimum"]),
        ),
        market_hours=MarketHours(
            crypto_assets=tuple(a.upper() for a in mh_raw["crypto_assets"]),
            fx_close_hour=mh_raw["fx_close_hour_utc"],
            equity_open_hour=mh_raw["equity_open_hour_utc"],
            equity_close_hour=mh_raw["equity_close_hour_utc"],
        ),
        orders=OrderSettings(
            default_exchange=o_raw.get("default_exchange", "default"),
            market_spread=float(o_raw["market_spread"]),
            default_time_in_force=TimeInForce(o_raw["default_time_in_force"]),
            stale_order_age=timedelta(hours=o_raw["stale_order_age_hours"]),
            exchange_timeout_seconds=float(o_raw.get("exchange_timeout_seconds", 10.0)),
        ),
        signals=SignalSettings(
            retention=timedelta(hours=s_raw["retention_hours"]),
            history_limit=s_raw["history_limit"],
        ),
    )


def load_engine_config(
    config_path: str | Path | None = None,
    schema_path: str | Path | None = None,
    overrides_path: str | Path | None = None,
) -> EngineConfig:
    """Load and validate engine configuration.

    Parameters
    ----------
    config_path:
        Path to an engine JSON config. Defaults to ``docs/config/engine.default.json``.
    schema_path:
        Path to the JSON Schema. Defaults to ``docs/config/engine_config.schema.json``.
    overrides_path:
        Optional partial JSON file deep-merged over the base config before
        validation.

    Raises
    ------
    EngineConfigError
        If a file is missing, unparseable, or fails schema validation.
    """
    cfg_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    sch_path = Path(schema_path) if schema_path else DEFAULT_SCHEMA_PATH

    data = _read_json(cfg_path, "Engine config file")
    if overrides_path:
        data = _deep_merge(data, _read_json(Path(overrides_path), "Engine config overrides"))
        logger.info("Applied engine config overrides: %s", overrides_path)

    _validate_schema(data, sch_path)
    return _build_config(data)
