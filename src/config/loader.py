"""
Config loader: YAML file -> frozen dataclass tree.

API secrets resolved from environment variables (APCA_API_KEY_ID, APCA_API_SECRET_KEY).
Config file holds only non-secret values.
"""

import os
from dataclasses import dataclass
from pathlib import Path

import yaml


@dataclass(frozen=True)
class DataConfig:
    source: str
    bar_store_path: str
    api_key: str = ""
    api_secret: str = ""


@dataclass(frozen=True)
class BacktestConfig:
    initial_balance: float = 10_000.0


@dataclass(frozen=True)
class ExecutionConfig:
    state_path: str = "data/tradedesk_state.db"
    default_exchange: str = "default"
    initial_cash: float = 10_000.0
    owner_id: str = "local"


@dataclass(frozen=True)
class JournalConfig:
    path: str = "data/journal.jsonl"
    echo_stdout: bool = False


@dataclass(frozen=True)
class AlertingConfig:
    structured_logs: bool = True
    webhook_url: str = ""


@dataclass(frozen=True)
class AppConfig:
    symbols: tuple[str, ...]
    timeframe: str
    data: DataConfig
    backtest: BacktestConfig
    execution: ExecutionConfig
    journal: JournalConfig
    alerting: AlertingConfig = AlertingConfig()
    engine_config_path: str = ""

    @property
    def symbol(self) -> str:
        """Primary symbol (first configured)."""
        return self.symbols[0]


def load_config(path: str | Path = "config.yaml") -> AppConfig:
    """
    Load configuration from a YAML file.

    ``symbols`` may be a list or a single ``symbol`` key. API keys are
    resolved from environment variables:
      - APCA_API_KEY_ID
      - APCA_API_SECRET_KEY
    These follow Alpaca's standard env var names.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError(f"Config file must be a YAML mapping, got {type(raw).__name__}")

    symbols = raw.get("symbols") or [raw.get("symbol", "BTC/USD")]
    if isinstance(symbols, str):
        symbols = [symbols]
    if not all(isinstance(s, str) and s for s in symbols):
        raise ValueError("symbols must be a list of non-empty strings")

    data_raw = raw.get("data", {})
    data_cfg = DataConfig(
        source=data_raw.get("source", "alpaca"),
        bar_store_path=data_raw.get("bar_store_path", "data/bars.db"),
        api_key=os.environ.get("APCA_API_KEY_ID", ""),
        api_secret=os.environ.get("APCA_API_SECRET_KEY", ""),
    )

    bt_raw = raw.get("backtest", {})
    bt_cfg = BacktestConfig(
        initial_balance=float(bt_raw.get("initial_balance", 10_000)),
    )

    ex_raw = raw.get("execution", {})
    ex_cfg = ExecutionConfig(
        state_path=ex_raw.get("state_path", "data/tradedesk_state.db"),
        default_exchange=str(ex_raw.get("default_exchange", "default")),
        initial_cash=float(ex_raw.get("initial_cash", 10_000)),
        owner_id=str(ex_raw.get("owner_id", "local")),
    )

    j_raw = raw.get("journal", {})
    j_cfg = JournalConfig(
        path=j_raw.get("path", "data/journal.jsonl"),
        echo_stdout=bool(j_raw.get("echo_stdout", False)),
    )

    a_raw = raw.get("alerting", {})
    a_cfg = AlertingConfig(
        structured_logs=bool(a_raw.get("structured_logs", True)),
        webhook_url=str(a_raw.get("webhook_url", "")),
    )

    return AppConfig(
        symbols=tuple(symbols),
        timeframe=raw.get("timeframe", "1h"),
        data=data_cfg,
        backtest=bt_cfg,
        execution=ex_cfg,
        journal=j_cfg,
        alerting=a_cfg,
        engine_config_path=str(raw.get("engine_config", "")),
    )
