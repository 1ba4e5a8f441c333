"""
Candle Store: OHLCV ingestion, normalization and range queries

The simulator and the consensus aggregator consume candles through a small
read-only interface:

    get_candles(symbol, timeframe, start=None, end=None, limit=None)

which returns an ascending DataFrame of bars with no implicit gap-filling.
Bounded ranges serve backtests; ``limit`` serves "last N bars" queries for
live evaluation.

FRAME CONVENTIONS
    Index   : DatetimeIndex of candle open times, tz-naive, strictly increasing
    Columns : open, high, low, close, volume (lowercase, float)
    attrs   : {'symbol': ..., 'timeframe': ...}

DATA QUALITY
    Loaded frames are checked for OHLC integrity (high >= low, high above
    the body, low below the body), non-positive prices and negative volume.
    Structural problems raise DataValidationError; soft problems are
    reported in a CandleQualityReport.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Tuple, Union

import numpy as np
import pandas as pd

from .config import Config, TIMEFRAME_HOURS
from .exceptions import DataValidationError

logger = logging.getLogger(__name__)

OHLCV_COLUMNS: List[str] = ['open', 'high', 'low', 'close', 'volume']

# Column aliases accepted on load (exchange exports, yfinance-style frames)
_COLUMN_ALIASES: Dict[str, str] = {
    'o': 'open', 'h': 'high', 'l': 'low', 'c': 'close', 'v': 'volume',
    'open_time': 'timestamp', 'opentime': 'timestamp', 'time': 'timestamp',
    'date': 'timestamp', 'datetime': 'timestamp',
}


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class Candle:
    """Immutable OHLCV bar."""
    symbol: str
    timeframe: str
    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        return self.close < self.open


@dataclass
class CandleQualityReport:
    """Result of an OHLC integrity check."""
    symbol: str
    timeframe: str
    record_count: int
    score: float
    issues: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_usable(self) -> bool:
        """Usable when no structural issue was found."""
        return not self.issues


# =============================================================================
# CONVERSIONS
# =============================================================================

def candles_to_frame(candles: Iterable[Candle]) -> pd.DataFrame:
    """Build a normalized frame from Candle values."""
    candles = list(candles)
    if not candles:
        return empty_frame()

    df = pd.DataFrame(
        {
            'open': [c.open for c in candles],
            'high': [c.high for c in candles],
            'low': [c.low for c in candles],
            'close': [c.close for c in candles],
            'volume': [c.volume for c in candles],
        },
        index=pd.DatetimeIndex([c.open_time for c in candles], name='open_time'),
    )
    return normalize_candles(df, candles[0].symbol, candles[0].timeframe)


def frame_to_candles(df: pd.DataFrame) -> List[Candle]:
    """Expand a normalized frame back into Candle values."""
    symbol = df.attrs.get('symbol', 'UNKNOWN')
    timeframe = df.attrs.get('timeframe', Config.DEFAULT_TIMEFRAME)
    return [
        Candle(
            symbol=symbol,
            timeframe=timeframe,
            open_time=ts.to_pydatetime(),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for ts, row in zip(df.index, df.itertuples(index=False))
    ]


def empty_frame(symbol: str = 'UNKNOWN', timeframe: str = Config.DEFAULT_TIMEFRAME) -> pd.DataFrame:
    """Zero-row frame with the standard columns."""
    df = pd.DataFrame(
        {col: pd.Series(dtype=float) for col in OHLCV_COLUMNS},
        index=pd.DatetimeIndex([], name='open_time'),
    )
    df.attrs['symbol'] = symbol
    df.attrs['timeframe'] = timeframe
    return df


def normalize_candles(
    df: pd.DataFrame,
    symbol: str,
    timeframe: str
) -> pd.DataFrame:
    """
    Normalize an OHLCV frame to the store conventions.

    Lowercases and maps column aliases, moves a timestamp column into the
    index, drops the timezone, sorts ascending and removes duplicate open
    times (last write wins).

    Raises:
        DataValidationError: Required columns are missing
    """
    if df is None or len(df) == 0:
        return empty_frame(symbol, timeframe)

    df = df.copy()

    # Handle MultiIndex columns
    if isinstance(df.columns, pd.MultiIndex):
        df.columns = df.columns.get_level_values(0)

    df.columns = [str(c).strip().lower() for c in df.columns]
    df = df.rename(columns=_COLUMN_ALIASES)

    if 'timestamp' in df.columns:
        ts = df.pop('timestamp')
        if pd.api.types.is_numeric_dtype(ts):
            # Exchange exports use epoch milliseconds
            df.index = pd.to_datetime(ts.astype('int64'), unit='ms')
        else:
            df.index = pd.to_datetime(ts)

    # Ensure DatetimeIndex
    if not isinstance(df.index, pd.DatetimeIndex):
        df.index = pd.to_datetime(df.index)

    # Remove timezone
    if df.index.tz is not None:
        df.index = df.index.tz_convert('UTC').tz_localize(None)

    missing = [c for c in OHLCV_COLUMNS if c not in df.columns]
    if missing:
        raise DataValidationError(f"Missing required columns: {missing}")

    df = df[OHLCV_COLUMNS].astype(float)
    df = df.dropna(how='all')
    df = df[~df.index.duplicated(keep='last')].sort_index()
    df.index.name = 'open_time'

    df.attrs['symbol'] = symbol
    df.attrs['timeframe'] = timeframe
    return df


# =============================================================================
# VALIDATION
# =============================================================================

class CandleValidator:
    """OHLC integrity checks for loaded candle frames."""

    OUTLIER_IQR: float = 5.0

    def validate(self, df: pd.DataFrame) -> CandleQualityReport:
        """
        Score a frame for OHLC consistency.

        Args:
            df: Normalized candle frame

        Returns:
            CandleQualityReport with a 0-100 score, hard issues and warnings
        """
        symbol = df.attrs.get('symbol', 'UNKNOWN')
        timeframe = df.attrs.get('timeframe', Config.DEFAULT_TIMEFRAME)
        issues: List[str] = []
        warnings: List[str] = []

        n = len(df)
        if n == 0:
            return CandleQualityReport(symbol, timeframe, 0, 0.0, ["No candles"], [])

        score = 100.0

        invalid_hl = int((df['high'] < df['low']).sum())
        if invalid_hl > 0:
            issues.append(f"high < low: {invalid_hl} bars")
            score -= (invalid_hl / n) * 100

        invalid_high = int((df['high'] < df[['open', 'close']].max(axis=1)).sum())
        if invalid_high > 0:
            issues.append(f"high < max(open, close): {invalid_high} bars")
            score -= (invalid_high / n) * 50

        invalid_low = int((df['low'] > df[['open', 'close']].min(axis=1)).sum())
        if invalid_low > 0:
            issues.append(f"low > min(open, close): {invalid_low} bars")
            score -= (invalid_low / n) * 50

        bad_prices = int(((df['close'] <= 0) | (df['open'] <= 0)).sum())
        if bad_prices > 0:
            issues.append(f"Zero/negative prices: {bad_prices} bars")
            score -= bad_prices * 5

        negative_volume = int((df['volume'] < 0).sum())
        if negative_volume > 0:
            issues.append(f"Negative volume: {negative_volume} bars")
            score -= negative_volume * 5

        missing = int(df[OHLCV_COLUMNS].isna().any(axis=1).sum())
        if missing > 0:
            issues.append(f"Bars with missing fields: {missing}")
            score -= (missing / n) * 20

        # Gaps are reported, never filled
        hours = TIMEFRAME_HOURS.get(timeframe)
        if hours is not None and n > 1:
            expected = pd.Timedelta(hours=hours)
            gaps = int((df.index.to_series().diff().dropna() > expected).sum())
            if gaps > 0:
                warnings.append(f"Gaps in series: {gaps}")

        returns = df['close'].pct_change().dropna()
        if len(returns) > 0:
            q1, q3 = returns.quantile([0.25, 0.75])
            iqr = q3 - q1
            outliers = returns[
                (returns < q1 - self.OUTLIER_IQR * iqr) |
                (returns > q3 + self.OUTLIER_IQR * iqr)
            ]
            if len(outliers) > 0:
                pct = len(outliers) / len(returns) * 100
                if pct > 5:
                    warnings.append(f"Return outliers: {len(outliers)} ({pct:.1f}%)")
                    score -= min(10, pct)

        return CandleQualityReport(
            symbol=symbol,
            timeframe=timeframe,
            record_count=n,
            score=max(0.0, min(100.0, score)),
            issues=issues,
            warnings=warnings,
        )


# =============================================================================
# STORE INTERFACE
# =============================================================================

class CandleStore(Protocol):
    """Read-only candle source consumed by the simulator and the aggregator."""

    def get_candles(
        self,
        symbol: str,
        timeframe: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> pd.DataFrame:
        ...


class InMemoryCandleStore:
    """
    Thread-safe in-memory candle store.

    Frames are keyed by (SYMBOL, timeframe). Reads return copies so callers
    can never mutate shared state; a re-entrant lock guards the dictionary
    for concurrent readers and loaders.
    """

    def __init__(self, validator: Optional[CandleValidator] = None):
        self._frames: Dict[Tuple[str, str], pd.DataFrame] = {}
        self._lock = threading.RLock()
        self.validator = validator or CandleValidator()

    @staticmethod
    def _key(symbol: str, timeframe: str) -> Tuple[str, str]:
        return symbol.upper(), timeframe

    def add_candles(
        self,
        symbol: str,
        timeframe: str,
        data: Union[pd.DataFrame, Iterable[Candle]],
        validate: bool = True
    ) -> CandleQualityReport:
        """
        Insert or merge candles for a series.

        Args:
            symbol: Trading pair, e.g. BTCUSDT
            timeframe: Interval label, e.g. 1h
            data: OHLCV frame or Candle values
            validate: Reject frames with structural OHLC issues

        Returns:
            Quality report for the merged series

        Raises:
            DataValidationError: Structural issues with validate=True
        """
        if isinstance(data, pd.DataFrame):
            df = normalize_candles(data, symbol.upper(), timeframe)
        else:
            df = candles_to_frame(data)
            df.attrs['symbol'] = symbol.upper()
            df.attrs['timeframe'] = timeframe

        report = self.validator.validate(df)
        if validate and len(df) > 0 and not report.is_usable:
            raise DataValidationError(
                f"{symbol} {timeframe} failed validation: {'; '.join(report.issues)}"
            )
        for warning in report.warnings:
            logger.warning(f"{symbol} {timeframe}: {warning}")

        key = self._key(symbol, timeframe)
        with self._lock:
            existing = self._frames.get(key)
            if existing is not None and len(existing) > 0:
                merged = pd.concat([existing, df])
                df = normalize_candles(merged, key[0], timeframe)
            self._frames[key] = df

        logger.info(f"Stored {len(df)} candles for {key[0]} {timeframe}")
        return report

    def load_csv(self, path: Union[str, Path], symbol: str, timeframe: str) -> CandleQualityReport:
        """Load candles from a CSV export with a timestamp column."""
        df = pd.read_csv(path)
        return self.add_candles(symbol, timeframe, df)

    def load_parquet(self, path: Union[str, Path], symbol: str, timeframe: str) -> CandleQualityReport:
        """Load candles from a parquet file (requires pyarrow)."""
        df = pd.read_parquet(path, engine='pyarrow')
        return self.add_candles(symbol, timeframe, df)

    def symbols(self) -> List[Tuple[str, str]]:
        """List stored (symbol, timeframe) pairs."""
        with self._lock:
            return sorted(self._frames.keys())

    def get_candles(
        self,
        symbol: str,
        timeframe: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> pd.DataFrame:
        """
        Query candles in ascending open-time order.

        Args:
            symbol: Trading pair
            timeframe: Interval label
            start: Inclusive lower bound on open time
            end: Inclusive upper bound on open time
            limit: Keep only the most recent N bars of the range

        Returns:
            Normalized frame; empty when nothing matches
        """
        key = self._key(symbol, timeframe)
        with self._lock:
            df = self._frames.get(key)
            if df is None:
                return empty_frame(key[0], timeframe)
            df = df.copy()

        if start is not None:
            df = df[df.index >= pd.Timestamp(start)]
        if end is not None:
            df = df[df.index <= pd.Timestamp(end)]
        if limit is not None:
            df = df.iloc[-limit:] if limit > 0 else df.iloc[0:0]

        df.attrs['symbol'] = key[0]
        df.attrs['timeframe'] = timeframe
        return df


# =============================================================================
# SYNTHETIC DATA
# =============================================================================

def generate_synthetic_candles(
    symbol: str = 'BTCUSDT',
    timeframe: str = Config.DEFAULT_TIMEFRAME,
    n_bars: int = 1000,
    start: str = '2024-01-01',
    start_price: float = 40000.0,
    volatility: float = 0.01,
    seed: Optional[int] = None
) -> pd.DataFrame:
    """
    Random-walk OHLCV series for demos and tests.

    Log returns are Gaussian with a slow sinusoidal drift so that trending
    and ranging stretches both appear; volume is lognormal and scales with
    the absolute bar return.
    """
    rng = np.random.default_rng(seed)
    freq = pd.Timedelta(hours=TIMEFRAME_HOURS.get(timeframe, 1.0))
    index = pd.date_range(start=start, periods=n_bars, freq=freq)

    drift = 0.0005 * np.sin(np.linspace(0, 6 * np.pi, n_bars))
    log_returns = drift + rng.normal(0, volatility, n_bars)
    close = start_price * np.exp(np.cumsum(log_returns))
    open_ = np.concatenate([[start_price], close[:-1]])

    wick = np.abs(rng.normal(0, volatility / 2, n_bars))
    high = np.maximum(open_, close) * (1 + wick)
    low = np.minimum(open_, close) * (1 - wick)
    volume = rng.lognormal(mean=3.0, sigma=0.4, size=n_bars) * (1 + 50 * np.abs(log_returns))

    df = pd.DataFrame(
        {'open': open_, 'high': high, 'low': low, 'close': close, 'volume': volume},
        index=pd.DatetimeIndex(index, name='open_time'),
    )
    df.attrs['symbol'] = symbol.upper()
    df.attrs['timeframe'] = timeframe
    return df


__all__ = [
    'OHLCV_COLUMNS',
    'Candle',
    'CandleQualityReport',
    'CandleValidator',
    'CandleStore',
    'InMemoryCandleStore',
    'candles_to_frame',
    'frame_to_candles',
    'empty_frame',
    'normalize_candles',
    'generate_synthetic_candles',
]
