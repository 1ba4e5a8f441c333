"""
Technical Indicator Provider for the Crypto Signal Engine

Pure, deterministic functions over an OHLCV frame. Nothing here performs
I/O or keeps state between calls.

INDICATOR FAMILIES
    Momentum
        - RSI (Relative Strength Index): Wilder's momentum oscillator [0-100]

    Trend
        - MACD: Moving Average Convergence Divergence with histogram
        - EMA Ribbon: EMA 5/10/20/50/200 and its alignment state

    Volatility
        - Bollinger Bands: 20-period SMA with 2 standard deviation bands
        - ATR: Wilder-smoothed Average True Range

    Volume / Market Structure
        - Volume ratio: current volume versus its 20-bar average
        - Volume profile: volume-by-price histogram, Point of Control,
          70% Value Area, high/low volume nodes
        - Support / resistance: recent range extremes and swing points

AVAILABILITY CONTRACT
    Series functions always return an aligned series (NaN during warm-up).
    IndicatorProvider.compute() collapses them into latest-value readings
    and reports None for any reading that lacks enough bars, so evaluators
    degrade to "no signal" instead of raising.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.signal import argrelextrema

from .config import (
    ATR_PERIOD,
    BB_PERIOD,
    BB_STD_DEV,
    EMA_RIBBON_PERIODS,
    HIGH_VOLUME_NODE_MULT,
    LOW_VOLUME_NODE_MULT,
    MACD_FAST,
    MACD_SIGNAL,
    MACD_SLOW,
    PROFILE_BINS,
    PROFILE_LOOKBACK,
    RSI_PERIOD,
    SUPPORT_RESISTANCE_LOOKBACK,
    VALUE_AREA_SHARE,
    VOLUME_MA_PERIOD,
)

# Suppress warnings for cleaner output
warnings.filterwarnings('ignore', category=RuntimeWarning)

# Module-level logger
logger = logging.getLogger(__name__)

INDICATOR_VERSION: str = "1.0.0"


# =============================================================================
# ENUMERATIONS
# =============================================================================

class SignalDirection(Enum):
    """Five-level direction used for consensus output."""
    STRONG_BUY = "STRONG_BUY"
    BUY = "BUY"
    NEUTRAL = "NEUTRAL"
    SELL = "SELL"
    STRONG_SELL = "STRONG_SELL"

    @property
    def numeric(self) -> float:
        """Convert to numeric value for mathematical operations."""
        mapping = {
            SignalDirection.STRONG_BUY: 1.0,
            SignalDirection.BUY: 0.5,
            SignalDirection.NEUTRAL: 0.0,
            SignalDirection.SELL: -0.5,
            SignalDirection.STRONG_SELL: -1.0
        }
        return mapping[self]

    @property
    def is_bullish(self) -> bool:
        return self in (SignalDirection.STRONG_BUY, SignalDirection.BUY)

    @property
    def is_bearish(self) -> bool:
        return self in (SignalDirection.STRONG_SELL, SignalDirection.SELL)


class TrendState(Enum):
    """Directional state of a trend indicator."""
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    NEUTRAL = "NEUTRAL"


class RibbonAlignment(Enum):
    """EMA ribbon ordering."""
    BULLISH = "BULLISH"     # 5 > 10 > 20 > 50 > 200
    BEARISH = "BEARISH"     # 5 < 10 < 20 < 50 < 200
    MIXED = "MIXED"


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class MACDReading:
    """Latest MACD values."""
    macd: float
    signal: float
    histogram: float
    prev_histogram: float
    trend: TrendState


@dataclass(frozen=True)
class EMARibbonReading:
    """Latest EMA ribbon values keyed by period."""
    values: Dict[int, float]
    alignment: RibbonAlignment
    spread_pct: float   # (max EMA - min EMA) / min EMA * 100

    def __getitem__(self, period: int) -> float:
        return self.values[period]


@dataclass(frozen=True)
class BollingerReading:
    """Latest Bollinger Band values."""
    upper: float
    middle: float
    lower: float
    bandwidth: float
    percent_b: float


@dataclass(frozen=True)
class VolumeReading:
    """Current volume against its moving average."""
    current: float
    average: float
    ratio: float

    @property
    def is_significant(self) -> bool:
        return self.ratio > 1.5


@dataclass(frozen=True)
class VolumeNode:
    """One price bin of a volume profile."""
    price: float
    volume: float


@dataclass(frozen=True)
class VolumeProfile:
    """
    Volume-by-price histogram over a lookback window.

    Attributes:
        poc: Price level (bin centre) with the highest traded volume
        value_area_high / value_area_low: Range holding 70% of the volume
        high_volume_nodes: Bins above 1.5x the mean bin volume
        low_volume_nodes: Bins below 0.5x the mean bin volume
    """
    poc: float
    value_area_high: float
    value_area_low: float
    total_volume: float
    bins: Tuple[VolumeNode, ...]
    high_volume_nodes: Tuple[VolumeNode, ...]
    low_volume_nodes: Tuple[VolumeNode, ...]


@dataclass(frozen=True)
class SupportResistance:
    """Recent range extremes plus detected swing levels."""
    support: float
    resistance: float
    swing_lows: Tuple[float, ...] = ()
    swing_highs: Tuple[float, ...] = ()


@dataclass(frozen=True)
class IndicatorReadings:
    """
    Latest-value indicator snapshot for one candle window.

    Any field is None when the window is too short for that indicator.
    """
    price: float
    rsi: Optional[float] = None
    macd: Optional[MACDReading] = None
    ema_ribbon: Optional[EMARibbonReading] = None
    bollinger: Optional[BollingerReading] = None
    volume: Optional[VolumeReading] = None
    atr: Optional[float] = None
    support_resistance: Optional[SupportResistance] = None
    volume_profile: Optional[VolumeProfile] = None

    def to_metadata(self) -> Dict[str, Any]:
        """Flatten readings into a plain dict for signal metadata."""
        meta: Dict[str, Any] = {'price': self.price}
        if self.rsi is not None:
            meta['rsi'] = self.rsi
        if self.macd is not None:
            meta['macd'] = self.macd.macd
            meta['macd_signal'] = self.macd.signal
            meta['macd_histogram'] = self.macd.histogram
            meta['macd_trend'] = self.macd.trend.value
        if self.ema_ribbon is not None:
            for period, value in self.ema_ribbon.values.items():
                meta[f'ema{period}'] = value
            meta['ribbon_alignment'] = self.ema_ribbon.alignment.value
        if self.bollinger is not None:
            meta['bb_upper'] = self.bollinger.upper
            meta['bb_lower'] = self.bollinger.lower
        if self.volume is not None:
            meta['volume_ratio'] = self.volume.ratio
        if self.atr is not None:
            meta['atr'] = self.atr
        if self.volume_profile is not None:
            meta['poc'] = self.volume_profile.poc
        return meta


# =============================================================================
# SERIES CALCULATORS
# =============================================================================

def calculate_rsi(close: pd.Series, period: int = RSI_PERIOD) -> pd.Series:
    """
    Calculate Relative Strength Index using Wilder's smoothing.

    RSI = 100 - (100 / (1 + RS))
    where RS = Average Gain / Average Loss

    Parameters
    ----------
    close : pd.Series
        Closing prices
    period : int
        Lookback period (default: 14)

    Returns
    -------
    pd.Series
        RSI values [0, 100]; NaN until ``period`` changes are available
    """
    delta = close.diff()

    gains = delta.where(delta > 0, 0.0)
    losses = (-delta).where(delta < 0, 0.0)

    alpha = 1.0 / period
    avg_gain = gains.ewm(alpha=alpha, adjust=False, min_periods=period).mean()
    avg_loss = losses.ewm(alpha=alpha, adjust=False, min_periods=period).mean()

    rs = avg_gain / avg_loss.replace(0, np.nan)
    rsi = 100.0 - (100.0 / (1.0 + rs))

    # No losses over the window: fully overbought; flat window: neutral
    rsi = rsi.where(~((avg_loss == 0) & (avg_gain > 0)), 100.0)
    rsi = rsi.where(~((avg_loss == 0) & (avg_gain == 0)), 50.0)
    rsi[avg_gain.isna()] = np.nan
    # The first diff is NaN, so a value needs period + 1 closes
    rsi.iloc[:period] = np.nan
    return rsi


def calculate_ema(close: pd.Series, period: int) -> pd.Series:
    """Exponential moving average, NaN until ``period`` bars exist."""
    return close.ewm(span=period, adjust=False, min_periods=period).mean()


def calculate_macd(
    close: pd.Series,
    fast: int = MACD_FAST,
    slow: int = MACD_SLOW,
    signal: int = MACD_SIGNAL
) -> Tuple[pd.Series, pd.Series, pd.Series]:
    """
    Calculate MACD, Signal line, and Histogram.

    MACD = EMA(fast) - EMA(slow)
    Signal = EMA(MACD, signal_period)
    Histogram = MACD - Signal

    Parameters
    ----------
    close : pd.Series
        Closing prices
    fast, slow, signal : int
        Period parameters

    Returns
    -------
    Tuple[pd.Series, pd.Series, pd.Series]
        (MACD line, Signal line, Histogram)
    """
    ema_fast = calculate_ema(close, fast)
    ema_slow = calculate_ema(close, slow)

    macd_line = ema_fast - ema_slow
    signal_line = macd_line.ewm(span=signal, adjust=False, min_periods=signal).mean()
    histogram = macd_line - signal_line

    return macd_line, signal_line, histogram


def calculate_bollinger_bands(
    close: pd.Series,
    period: int = BB_PERIOD,
    std_dev: float = BB_STD_DEV
) -> Tuple[pd.Series, pd.Series, pd.Series, pd.Series, pd.Series]:
    """
    Calculate Bollinger Bands.

    Middle = SMA(close, period)
    Upper = Middle + std_dev * StdDev(close, period)
    Lower = Middle - std_dev * StdDev(close, period)

    Returns
    -------
    Tuple[pd.Series, pd.Series, pd.Series, pd.Series, pd.Series]
        (Upper, Middle, Lower, Bandwidth, %B)
    """
    middle = close.rolling(window=period, min_periods=period).mean()
    std = close.rolling(window=period, min_periods=period).std()

    upper = middle + std_dev * std
    lower = middle - std_dev * std

    bandwidth = (upper - lower) / middle * 100
    percent_b = (close - lower) / (upper - lower).replace(0, np.nan)

    return upper, middle, lower, bandwidth, percent_b


def calculate_atr(
    high: pd.Series,
    low: pd.Series,
    close: pd.Series,
    period: int = ATR_PERIOD
) -> pd.Series:
    """
    Average True Range with Wilder's smoothing.

    TR = max(high - low, |high - prev close|, |low - prev close|)
    """
    tr1 = high - low
    tr2 = abs(high - close.shift(1))
    tr3 = abs(low - close.shift(1))
    tr = pd.concat([tr1, tr2, tr3], axis=1).max(axis=1)

    alpha = 1.0 / period
    return tr.ewm(alpha=alpha, adjust=False, min_periods=period).mean()


def calculate_volume_ratio(volume: pd.Series, period: int = VOLUME_MA_PERIOD) -> pd.Series:
    """Volume divided by its trailing ``period``-bar simple average."""
    average = volume.rolling(window=period, min_periods=period).mean()
    return volume / average.replace(0, np.nan)


def calculate_volume_profile(
    df: pd.DataFrame,
    bins: int = PROFILE_BINS,
    value_area_share: float = VALUE_AREA_SHARE
) -> Optional[VolumeProfile]:
    """
    Build a volume-by-price histogram.

    Each bar's volume is assigned to the bin containing its typical price
    (high + low + close) / 3. Bin edges span the window's lowest low to its
    highest high.

    The Value Area is grown from the POC bin outward, always adding the
    heavier neighbouring bin, until it holds ``value_area_share`` of the
    total volume, so it stays a contiguous price range.

    Parameters
    ----------
    df : pd.DataFrame
        Candle window (open, high, low, close, volume)
    bins : int
        Number of price bins
    value_area_share : float
        Fraction of volume the Value Area must contain

    Returns
    -------
    Optional[VolumeProfile]
        None when the window is empty, has no volume, or no price range
    """
    if len(df) == 0:
        return None

    price_low = float(df['low'].min())
    price_high = float(df['high'].max())
    total_volume = float(df['volume'].sum())
    if not np.isfinite(price_low) or price_high <= price_low or total_volume <= 0:
        return None

    edges = np.linspace(price_low, price_high, bins + 1)
    centres = (edges[:-1] + edges[1:]) / 2

    typical = ((df['high'] + df['low'] + df['close']) / 3).to_numpy()
    idx = np.clip(np.searchsorted(edges, typical, side='right') - 1, 0, bins - 1)
    volumes = np.bincount(idx, weights=df['volume'].to_numpy(), minlength=bins)

    poc_idx = int(np.argmax(volumes))

    lo = hi = poc_idx
    area_volume = volumes[poc_idx]
    target = total_volume * value_area_share
    while area_volume < target and (lo > 0 or hi < bins - 1):
        below = volumes[lo - 1] if lo > 0 else -1.0
        above = volumes[hi + 1] if hi < bins - 1 else -1.0
        if above >= below:
            hi += 1
            area_volume += volumes[hi]
        else:
            lo -= 1
            area_volume += volumes[lo]

    mean_volume = volumes.mean()
    nodes = tuple(VolumeNode(float(p), float(v)) for p, v in zip(centres, volumes))
    hvn = tuple(n for n in nodes if n.volume > mean_volume * HIGH_VOLUME_NODE_MULT)
    lvn = tuple(n for n in nodes if n.volume < mean_volume * LOW_VOLUME_NODE_MULT)

    return VolumeProfile(
        poc=float(centres[poc_idx]),
        value_area_high=float(edges[hi + 1]),
        value_area_low=float(edges[lo]),
        total_volume=total_volume,
        bins=nodes,
        high_volume_nodes=hvn,
        low_volume_nodes=lvn,
    )


def find_swing_points(
    high: pd.Series,
    low: pd.Series,
    order: int = 3
) -> Tuple[pd.Series, pd.Series]:
    """
    Locate local swing highs and swing lows.

    A swing high is a bar whose high exceeds the ``order`` bars on each
    side; swing lows mirror this on the lows.

    Returns
    -------
    Tuple[pd.Series, pd.Series]
        (swing highs, swing lows) indexed by bar time
    """
    if len(high) < 2 * order + 1:
        return high.iloc[0:0], low.iloc[0:0]

    high_idx = argrelextrema(high.to_numpy(), np.greater, order=order)[0]
    low_idx = argrelextrema(low.to_numpy(), np.less, order=order)[0]
    return high.iloc[high_idx], low.iloc[low_idx]


def classify_ribbon(values: Dict[int, float]) -> RibbonAlignment:
    """Classify strict monotonic ordering of the ribbon (shortest period first)."""
    ordered = [values[p] for p in sorted(values)]
    if all(a > b for a, b in zip(ordered, ordered[1:])):
        return RibbonAlignment.BULLISH
    if all(a < b for a, b in zip(ordered, ordered[1:])):
        return RibbonAlignment.BEARISH
    return RibbonAlignment.MIXED


def classify_macd_trend(macd: float, signal: float, histogram: float) -> TrendState:
    """BULLISH when the histogram is positive and MACD leads its signal line."""
    if histogram > 0 and macd > signal:
        return TrendState.BULLISH
    if histogram < 0 and macd < signal:
        return TrendState.BEARISH
    return TrendState.NEUTRAL


# =============================================================================
# PROVIDER
# =============================================================================

def _latest(series: pd.Series) -> Optional[float]:
    if len(series) == 0:
        return None
    value = series.iloc[-1]
    if pd.isna(value) or not np.isfinite(value):
        return None
    return float(value)


class IndicatorProvider:
    """
    Computes an IndicatorReadings snapshot for a candle window.

    Stateless apart from its parameters; safe to share between threads.
    """

    REQUIRED_COLUMNS: List[str] = ['open', 'high', 'low', 'close', 'volume']

    def __init__(
        self,
        ema_periods: Tuple[int, ...] = EMA_RIBBON_PERIODS,
        profile_bins: int = PROFILE_BINS,
        profile_lookback: int = PROFILE_LOOKBACK,
        sr_lookback: int = SUPPORT_RESISTANCE_LOOKBACK
    ):
        self.ema_periods = tuple(sorted(ema_periods))
        self.profile_bins = profile_bins
        self.profile_lookback = profile_lookback
        self.sr_lookback = sr_lookback

    def compute(self, df: pd.DataFrame) -> IndicatorReadings:
        """
        Compute latest indicator readings.

        Args:
            df: Candle frame with lowercase OHLCV columns

        Returns:
            IndicatorReadings; unavailable readings are None

        Raises:
            ValueError: Required columns are missing
        """
        missing = [c for c in self.REQUIRED_COLUMNS if c not in df.columns]
        if missing:
            raise ValueError(f"Missing required columns: {missing}")

        if len(df) == 0:
            return IndicatorReadings(price=float('nan'))

        close = df['close']
        price = float(close.iloc[-1])

        return IndicatorReadings(
            price=price,
            rsi=_latest(calculate_rsi(close)),
            macd=self._macd(close),
            ema_ribbon=self._ribbon(close),
            bollinger=self._bollinger(close),
            volume=self._volume(df['volume']),
            atr=_latest(calculate_atr(df['high'], df['low'], close)),
            support_resistance=self._support_resistance(df),
            volume_profile=calculate_volume_profile(
                df.iloc[-self.profile_lookback:], bins=self.profile_bins
            ),
        )

    def _macd(self, close: pd.Series) -> Optional[MACDReading]:
        macd_line, signal_line, histogram = calculate_macd(close)
        macd = _latest(macd_line)
        signal = _latest(signal_line)
        hist = _latest(histogram)
        if macd is None or signal is None or hist is None:
            return None
        prev = _latest(histogram.iloc[:-1])
        return MACDReading(
            macd=macd,
            signal=signal,
            histogram=hist,
            prev_histogram=prev if prev is not None else hist,
            trend=classify_macd_trend(macd, signal, hist),
        )

    def _ribbon(self, close: pd.Series) -> Optional[EMARibbonReading]:
        values: Dict[int, float] = {}
        for period in self.ema_periods:
            value = _latest(calculate_ema(close, period))
            if value is None:
                return None
            values[period] = value
        low, high = min(values.values()), max(values.values())
        spread = (high - low) / low * 100 if low > 0 else 0.0
        return EMARibbonReading(values=values, alignment=classify_ribbon(values), spread_pct=spread)

    @staticmethod
    def _bollinger(close: pd.Series) -> Optional[BollingerReading]:
        upper, middle, lower, bandwidth, percent_b = calculate_bollinger_bands(close)
        values = [_latest(s) for s in (upper, middle, lower, bandwidth)]
        if any(v is None for v in values):
            return None
        pb = _latest(percent_b)
        return BollingerReading(*values, percent_b=pb if pb is not None else 0.5)

    @staticmethod
    def _volume(volume: pd.Series) -> Optional[VolumeReading]:
        average = _latest(volume.rolling(window=VOLUME_MA_PERIOD, min_periods=VOLUME_MA_PERIOD).mean())
        if average is None or average <= 0:
            return None
        current = float(volume.iloc[-1])
        return VolumeReading(current=current, average=average, ratio=current / average)

    def _support_resistance(self, df: pd.DataFrame) -> Optional[SupportResistance]:
        if len(df) < self.sr_lookback:
            return None
        window = df.iloc[-self.sr_lookback:]
        swing_highs, swing_lows = find_swing_points(df['high'].iloc[-100:], df['low'].iloc[-100:])
        return SupportResistance(
            support=float(window['low'].min()),
            resistance=float(window['high'].max()),
            swing_lows=tuple(float(v) for v in swing_lows.tail(5)),
            swing_highs=tuple(float(v) for v in swing_highs.tail(5)),
        )


__all__ = [
    'INDICATOR_VERSION',
    'SignalDirection',
    'TrendState',
    'RibbonAlignment',
    'MACDReading',
    'EMARibbonReading',
    'BollingerReading',
    'VolumeReading',
    'VolumeNode',
    'VolumeProfile',
    'SupportResistance',
    'IndicatorReadings',
    'calculate_rsi',
    'calculate_ema',
    'calculate_macd',
    'calculate_bollinger_bands',
    'calculate_atr',
    'calculate_volume_ratio',
    'calculate_volume_profile',
    'find_swing_points',
    'classify_ribbon',
    'classify_macd_trend',
    'IndicatorProvider',
]
