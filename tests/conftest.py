"""Shared fixtures: synthetic and hand-built candle frames, trades, signals."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

import pandas as pd
import pytest

from crypto_signals.candle_store import InMemoryCandleStore, generate_synthetic_candles
from crypto_signals.performance_metrics import ClosedTrade
from crypto_signals.strategies import Signal, SignalType

START = datetime(2024, 1, 1)


def build_frame(
    rows: Sequence[Tuple[float, float, float, float, float]],
    start: datetime = START,
    freq: str = "1h",
    symbol: str = "BTCUSDT",
    timeframe: str = "1h"
) -> pd.DataFrame:
    """Frame from (open, high, low, close, volume) rows."""
    index = pd.date_range(start=start, periods=len(rows), freq=freq, name="open_time")
    df = pd.DataFrame(list(rows), columns=["open", "high", "low", "close", "volume"], index=index, dtype=float)
    df.attrs["symbol"] = symbol
    df.attrs["timeframe"] = timeframe
    return df


def linear_frame(n: int, start_price: float = 100.0, step: float = 1.0, volume: float = 100.0) -> pd.DataFrame:
    """Steadily rising bullish candles: close = start + i * step."""
    rows = []
    for i in range(n):
        close = start_price + i * step
        open_ = close - 0.5
        rows.append((open_, close + 1.0, open_ - 1.0, close, volume))
    return build_frame(rows)


def make_trade(
    pnl: float,
    trade_id: int = 0,
    entry_time: Optional[datetime] = None,
    hours: float = 4.0,
    cost_basis: float = 1000.0
) -> ClosedTrade:
    """Closed trade with a chosen P&L on a fixed cost basis."""
    entry_time = entry_time or START + timedelta(hours=trade_id * 10)
    quantity = 10.0
    entry_price = cost_basis / quantity
    proceeds = cost_basis + pnl
    return ClosedTrade(
        trade_id=trade_id,
        entry_time=entry_time,
        exit_time=entry_time + timedelta(hours=hours),
        entry_price=entry_price,
        exit_price=proceeds / quantity,
        quantity=quantity,
        cost_basis=cost_basis,
        proceeds=proceeds,
        fees=0.0,
        pnl=pnl,
        pnl_percent=pnl / cost_basis * 100,
    )


def make_signal(direction: SignalType, confidence: float = 70.0, price: float = 100.0,
                strategy_id: str = "TEST") -> Signal:
    stop = price * 0.98 if direction == SignalType.BUY else price * 1.02
    target = price * 1.04 if direction == SignalType.BUY else price * 0.96
    return Signal(
        strategy_id=strategy_id,
        symbol="BTCUSDT",
        timeframe="1h",
        timestamp=START,
        direction=direction,
        price=price,
        confidence=confidence,
        stop_loss=stop,
        take_profit=target,
        rationale="test",
    )


@pytest.fixture
def synthetic_candles() -> pd.DataFrame:
    """Reproducible 400-bar random walk."""
    return generate_synthetic_candles(symbol="BTCUSDT", timeframe="1h", n_bars=400, seed=42)


@pytest.fixture
def store(synthetic_candles) -> InMemoryCandleStore:
    """Store pre-loaded with the synthetic series."""
    s = InMemoryCandleStore()
    s.add_candles("BTCUSDT", "1h", synthetic_candles)
    return s


@pytest.fixture
def flat_candles() -> pd.DataFrame:
    """60 identical doji-like bars around 100."""
    return build_frame([(100.0, 101.0, 99.0, 100.0, 100.0)] * 60)


@pytest.fixture
def trades_ten() -> List[ClosedTrade]:
    """Ten chronologically spaced trades alternating wins and losses."""
    pnls = [100, -50, 80, 40, -30, 120, -60, 90, -20, 50]
    return [make_trade(p, trade_id=i) for i, p in enumerate(pnls)]
