"""Integration tests for data pipeline: bar store and CSV ingest."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from conftest import T0, make_bars
from data import CsvBarFetcher, MockBarFetcher
from data.bar_store import BarStore
from trading_core.contracts import PriceBar
from trading_core.errors import AdapterError


def _ts(y: int, m: int, d: int) -> datetime:
    return datetime(y, m, d, 9, 30, 0, tzinfo=timezone.utc)


def _bar(close: float, ts: datetime, volume: float = 1_000_000) -> PriceBar:
    return PriceBar("SPY", ts, close - 0.5, close + 0.5, close - 1.0, close, volume)


def test_bar_store_write_and_get(tmp_path: Path) -> None:
    store = BarStore(tmp_path / "bars.db")
    store.write_bars("SPY", "15m", [_bar(100.5, _ts(2024, 1, 2)), _bar(101.0, _ts(2024, 1, 3))])
    out = store.get_bars("SPY", "15m")
    assert len(out) == 2
    assert out[0].close == 100.5
    assert out[1].close == 101.0
    assert out[0].timestamp == _ts(2024, 1, 2)


def test_get_bars_window(tmp_path: Path) -> None:
    store = BarStore(tmp_path / "bars.db")
    store.write_bars("SPY", "1d", [_bar(100.0 + i, _ts(2024, 1, 2 + i)) for i in range(10)])
    out = store.get_bars("SPY", "1d", since=_ts(2024, 1, 4), until=_ts(2024, 1, 8), limit=3)
    assert [b.timestamp.day for b in out] == [4, 5, 6]


def test_get_last_bars(tmp_path: Path) -> None:
    store = BarStore(tmp_path / "bars.db")
    store.write_bars("SPY", "15m", [_bar(100.5 + i * 0.5, _ts(2024, 1, 2 + i)) for i in range(5)])
    last3 = store.get_last_bars("SPY", "15m", 3)
    assert len(last3) == 3
    assert last3[0].timestamp.day == 4
    assert last3[-1].timestamp.day == 6

    as_of = store.get_last_bars("SPY", "15m", 3, until=_ts(2024, 1, 4))
    assert [b.timestamp.day for b in as_of] == [2, 3, 4]


def test_count_bars_and_series(tmp_path: Path) -> None:
    store = BarStore(tmp_path / "bars.db")
    store.write_bars("SPY", "15m", [_bar(100.0 + i, _ts(2024, 1, 2 + i)) for i in range(5)])
    store.write_bars("BTC/USD", "1h", make_bars([1.0, 2.0]))
    assert store.count_bars("SPY", "15m") == 5
    assert store.count_bars("SPY", "1d") == 0
    assert store.count_bars("AAPL", "15m") == 0
    assert store.series() == [("BTC/USD", "1h", 2), ("SPY", "15m", 5)]


def test_latest_close_and_write_count(tmp_path: Path) -> None:
    store = BarStore(tmp_path / "bars.db")
    assert store.latest_close("SPY", "1d") is None
    assert store.write_bars("SPY", "1d", [_bar(100.0 + i, _ts(2024, 1, 2 + i)) for i in range(3)]) == 3
    assert store.latest_close("SPY", "1d") == 102.0


def test_unusable_path_raises_adapter_error(tmp_path: Path) -> None:
    (tmp_path / "bars.db").mkdir()
    with pytest.raises(AdapterError):
        BarStore(tmp_path / "bars.db")


def test_multi_timeframe_isolation(tmp_path: Path) -> None:
    """Daily and intraday bars coexist independently in the same database."""
    store = BarStore(tmp_path / "bars.db")
    store.write_bars("SPY", "15m", [_bar(100.5, _ts(2024, 1, 2), 500_000)])
    store.write_bars("SPY", "1d", [_bar(101.0, _ts(2024, 1, 2), 80_000_000)])
    assert store.get_bars("SPY", "15m")[0].volume == 500_000
    assert store.get_bars("SPY", "1d")[0].volume == 80_000_000


def test_upsert_does_not_duplicate(tmp_path: Path) -> None:
    """Writing the same bar twice (same symbol, tf, ts) replaces, not duplicates."""
    store = BarStore(tmp_path / "bars.db")
    store.write_bars("SPY", "1d", [_bar(100.5, _ts(2024, 1, 2))])
    store.write_bars("SPY", "1d", [_bar(102.0, _ts(2024, 1, 2))])
    assert store.count_bars("SPY", "1d") == 1
    assert store.get_bars("SPY", "1d")[0].close == 102.0


def test_naive_timestamps_stored_as_utc(tmp_path: Path) -> None:
    store = BarStore(tmp_path / "bars.db")
    store.write_bars("SPY", "1d", [_bar(100.0, datetime(2024, 1, 2, 9, 30))])
    assert store.get_bars("SPY", "1d")[0].timestamp == _ts(2024, 1, 2)


class TestCsvBarFetcher:
    def _csv(self, tmp_path: Path, rows: list[str], header: str = "timestamp,open,high,low,close,volume") -> Path:
        p = tmp_path / "bars.csv"
        p.write_text("\n".join([header, *rows]) + "\n")
        return p

    def test_parses_and_sorts(self, tmp_path: Path) -> None:
        path = self._csv(tmp_path, [
            "2024-03-06T16:00:00Z,2,3,1,2.5,20",
            "2024-03-06T15:00:00+00:00,1,2,0.5,1.5,10",
            str(int((T0 + timedelta(hours=2)).timestamp() * 1000)) + ",3,4,2,3.5,30",
        ])
        result = CsvBarFetcher(path).fetch("BTC/USD", "1h")
        assert [b.close for b in result.bars] == [1.5, 2.5, 3.5]
        assert result.bars[0].timestamp == T0
        assert result.bars[2].timestamp == T0 + timedelta(hours=2)
        assert all(b.symbol == "BTC/USD" for b in result.bars)

    def test_filters(self, tmp_path: Path) -> None:
        rows = [f"{int((T0 + timedelta(hours=i)).timestamp())},1,2,0.5,{i},1" for i in range(6)]
        fetcher = CsvBarFetcher(self._csv(tmp_path, rows))
        window = fetcher.fetch("X", "1h", start=T0 + timedelta(hours=1), end=T0 + timedelta(hours=4), limit=2)
        assert [b.close for b in window.bars] == [3.0, 4.0]

    def test_missing_columns(self, tmp_path: Path) -> None:
        path = self._csv(tmp_path, ["2024-03-06T15:00:00Z,1,2,0.5,1.5"], header="timestamp,open,high,low,close")
        with pytest.raises(ValueError, match="volume"):
            CsvBarFetcher(path).fetch("X", "1h")

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            CsvBarFetcher(tmp_path / "nope.csv")


def test_mock_fetcher_returns_nothing() -> None:
    result = MockBarFetcher().fetch("SPY", "1d")
    assert result.bars == []
    assert result.next_cursor is None
