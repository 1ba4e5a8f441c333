"""
Strategy Evaluators: five directional signal generators

Each evaluator inspects a recent candle window plus an indicator snapshot
and returns either no signal or a BUY/SELL Signal carrying price,
confidence (0-100), stop-loss, take-profit, rationale and the indicator
readings that contributed.

STRATEGY SET (closed)
    SMART_MONEY   Smart Money Concepts: liquidity sweep, order block,
                  fair value gap, change of character, institutional volume
    ORDER_FLOW    Order Flow + Volume Profile: delta, POC, value area,
                  absorption / exhaustion
    RSI_VOLUME    RSI extremes confirmed by a volume spike
    EMA_RIBBON    EMA 5/10/20/50/200 alignment
    MACD_RSI      MACD trend gate with RSI entry zones

EVALUATION CONTRACT
    analyze()  -> StrategyAnalysis (signal or None, exit advisory, analysis text)
    evaluate() -> Optional[Signal]

    Too few candles or an unavailable indicator yields "no signal", never
    an exception. Evaluators are pure apart from computing indicators when
    the caller does not supply them, so one instance can be shared by
    concurrent callers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from .config import (
    EMA_RIBBON_SETTINGS,
    MACD_RSI_SETTINGS,
    ORDER_FLOW_SETTINGS,
    RSI_EXTREME_OB,
    RSI_EXTREME_OS,
    RSI_OVERBOUGHT,
    RSI_OVERSOLD,
    RSI_VOLUME_SETTINGS,
    SMART_MONEY_SETTINGS,
    StrategyCategory,
)
from .exceptions import (
    IndicatorUnavailableError,
    InsufficientWarmupDataError,
    StrategyNotFoundError,
)
from .technical_indicators import (
    IndicatorProvider,
    IndicatorReadings,
    RibbonAlignment,
    TrendState,
    VolumeProfile,
    calculate_volume_profile,
)

logger = logging.getLogger(__name__)

MAX_CONFIDENCE: float = 100.0


# =============================================================================
# SECTION 1: DATA STRUCTURES
# =============================================================================

class SignalType(Enum):
    """Directional signal emitted by an evaluator."""
    BUY = "BUY"
    SELL = "SELL"


@dataclass(frozen=True)
class StrategyInfo:
    """Static identity of an evaluator (metadata only)."""
    id: str
    name: str
    description: str
    category: StrategyCategory
    win_rate: str
    recommended: bool
    min_bars: int
    aliases: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'category': self.category.value,
            'win_rate': self.win_rate,
            'recommended': self.recommended,
            'min_bars': self.min_bars,
        }


@dataclass(frozen=True)
class Signal:
    """
    Output of one evaluator for one (symbol, timeframe, timestamp).

    Confidence is clamped to [0, 100] on construction.
    """
    strategy_id: str
    symbol: str
    timeframe: str
    timestamp: datetime
    direction: SignalType
    price: float
    confidence: float
    stop_loss: float
    take_profit: float
    rationale: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'confidence', float(np.clip(self.confidence, 0.0, MAX_CONFIDENCE)))

    @property
    def risk_reward(self) -> float:
        """Reward distance divided by risk distance."""
        risk = abs(self.price - self.stop_loss)
        return abs(self.take_profit - self.price) / risk if risk > 0 else 0.0


@dataclass
class StrategyAnalysis:
    """Full evaluator output: optional signal, exit advisory and narrative."""
    strategy_id: str
    symbol: str
    timeframe: str
    signal: Optional[Signal] = None
    should_exit: bool = False
    analysis: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_signal(self) -> bool:
        return self.signal is not None


def _require(value, indicator: str):
    """Return ``value`` or raise IndicatorUnavailableError when it is None."""
    if value is None:
        raise IndicatorUnavailableError(indicator)
    return value


# =============================================================================
# SECTION 2: EVALUATOR BASE
# =============================================================================

class StrategyEvaluator:
    """
    Shared evaluation flow for the five strategies.

    Subclasses set ``info`` and implement ``_analyze``; warm-up checks,
    indicator computation and graceful degradation live here.
    """

    info: StrategyInfo

    def __init__(self, provider: Optional[IndicatorProvider] = None):
        self.provider = provider or IndicatorProvider()

    @property
    def id(self) -> str:
        return self.info.id

    @property
    def name(self) -> str:
        return self.info.name

    def evaluate(
        self,
        symbol: str,
        timeframe: str,
        candles: pd.DataFrame,
        readings: Optional[IndicatorReadings] = None
    ) -> Optional[Signal]:
        """Return the directional signal for the latest candle, if any."""
        return self.analyze(symbol, timeframe, candles, readings).signal

    def analyze(
        self,
        symbol: str,
        timeframe: str,
        candles: pd.DataFrame,
        readings: Optional[IndicatorReadings] = None
    ) -> StrategyAnalysis:
        """
        Evaluate the latest candle of a window.

        Args:
            symbol: Trading pair
            timeframe: Candle interval
            candles: Ascending candle window ending at the bar to evaluate
            readings: Precomputed indicators for the same window (optional)

        Returns:
            StrategyAnalysis; signal is None when nothing fires
        """
        try:
            if len(candles) < self.info.min_bars:
                raise InsufficientWarmupDataError(self.info.min_bars, len(candles))
            if readings is None:
                readings = self.provider.compute(candles)
            return self._analyze(symbol, timeframe, candles, readings)
        except (InsufficientWarmupDataError, IndicatorUnavailableError) as e:
            logger.debug(f"{self.id} {symbol} {timeframe}: {e}")
            return StrategyAnalysis(
                strategy_id=self.id,
                symbol=symbol,
                timeframe=timeframe,
                analysis=f"No signal: {e}",
                metadata={'reason': e.reason},
            )

    def _analyze(
        self,
        symbol: str,
        timeframe: str,
        candles: pd.DataFrame,
        readings: IndicatorReadings
    ) -> StrategyAnalysis:
        raise NotImplementedError

    def _build(
        self,
        symbol: str,
        timeframe: str,
        candles: pd.DataFrame,
        direction: Optional[SignalType],
        confidence: float,
        stop_loss: float,
        take_profit: float,
        reasons: List[str],
        should_exit: bool,
        metadata: Dict[str, Any],
        idle_text: str
    ) -> StrategyAnalysis:
        """Assemble the analysis, attaching a Signal when a direction fired."""
        signal = None
        if direction is not None:
            signal = Signal(
                strategy_id=self.id,
                symbol=symbol,
                timeframe=timeframe,
                timestamp=candles.index[-1].to_pydatetime(),
                direction=direction,
                price=float(candles['close'].iloc[-1]),
                confidence=min(confidence, MAX_CONFIDENCE),
                stop_loss=float(stop_loss),
                take_profit=float(take_profit),
                rationale=". ".join(reasons),
                metadata=metadata,
            )
        return StrategyAnalysis(
            strategy_id=self.id,
            symbol=symbol,
            timeframe=timeframe,
            signal=signal,
            should_exit=should_exit,
            analysis=". ".join(reasons) if reasons else idle_text,
            metadata=metadata,
        )


# =============================================================================
# SECTION 3: RSI + VOLUME
# =============================================================================

class RsiVolumeStrategy(StrategyEvaluator):
    """
    RSI extremes confirmed by a volume spike on a candle of matching colour.

    Stop sits at recent support (resistance for shorts) with the risk
    distance bounded to 0.5%-5% of price; target is 2x the risk distance.
    """

    info = StrategyInfo(
        id="RSI_VOLUME",
        name="RSI + Volume",
        description="Momentum reversal on RSI extremes confirmed by volume spikes.",
        category=StrategyCategory.CLASSIC,
        win_rate="68-72%",
        recommended=False,
        min_bars=30,
        aliases=("RSI + VOLUME", "RSI+VOLUME"),
    )

    def _analyze(self, symbol, timeframe, candles, readings):
        s = RSI_VOLUME_SETTINGS
        rsi = _require(readings.rsi, 'rsi')
        volume = _require(readings.volume, 'volume')
        levels = _require(readings.support_resistance, 'support_resistance')

        last = candles.iloc[-1]
        price = float(last['close'])
        bullish_bar = last['close'] > last['open']
        bearish_bar = last['close'] < last['open']

        confidence = 50.0
        reasons: List[str] = []
        direction: Optional[SignalType] = None
        stop = target = price

        if rsi < RSI_OVERSOLD and volume.ratio >= s['min_volume_ratio'] and bullish_bar:
            direction = SignalType.BUY
            reasons.append(f"RSI oversold at {rsi:.2f}")
            confidence += 15
            if rsi < RSI_EXTREME_OS:
                reasons.append("Extreme oversold reading")
                confidence += 10
            reasons.append(f"Volume spike {volume.ratio:.2f}x average on a bullish candle")
            confidence += 20
            if volume.ratio >= s['strong_volume_ratio']:
                confidence += 10
            risk = self._bounded_risk(price - levels.support, price)
            stop = price - risk
            target = price + s['reward_risk'] * risk
            reasons.append(f"Stop below support {levels.support:.2f}")

        elif rsi > RSI_OVERBOUGHT and volume.ratio >= s['min_volume_ratio'] and bearish_bar:
            direction = SignalType.SELL
            reasons.append(f"RSI overbought at {rsi:.2f}")
            confidence += 15
            if rsi > RSI_EXTREME_OB:
                reasons.append("Extreme overbought reading")
                confidence += 10
            reasons.append(f"Volume spike {volume.ratio:.2f}x average on a bearish candle")
            confidence += 20
            if volume.ratio >= s['strong_volume_ratio']:
                confidence += 10
            risk = self._bounded_risk(levels.resistance - price, price)
            stop = price + risk
            target = price - s['reward_risk'] * risk
            reasons.append(f"Stop above resistance {levels.resistance:.2f}")

        should_exit = s['exit_rsi_low'] <= rsi <= s['exit_rsi_high']
        if should_exit:
            reasons.append("RSI back in neutral zone - consider exit")

        metadata = {
            'rsi': rsi,
            'volume_ratio': volume.ratio,
            'support': levels.support,
            'resistance': levels.resistance,
            'risk_reward': '1:2',
        }
        return self._build(
            symbol, timeframe, candles, direction, confidence, stop, target,
            reasons, should_exit, metadata,
            idle_text=f"RSI {rsi:.2f}, volume {volume.ratio:.2f}x - no setup",
        )

    @staticmethod
    def _bounded_risk(distance: float, price: float) -> float:
        s = RSI_VOLUME_SETTINGS
        return float(np.clip(distance, price * s['min_risk_pct'], price * s['max_risk_pct']))


# =============================================================================
# SECTION 4: EMA RIBBON
# =============================================================================

class EmaRibbonStrategy(StrategyEvaluator):
    """Trend following on a strictly ordered EMA 5/10/20/50/200 ribbon."""

    info = StrategyInfo(
        id="EMA_RIBBON",
        name="EMA Ribbon",
        description="Trend continuation when the 5/10/20/50/200 EMA ribbon is fully aligned.",
        category=StrategyCategory.CLASSIC,
        win_rate="65-70%",
        recommended=False,
        min_bars=200,
        aliases=("EMA RIBBON",),
    )

    def _analyze(self, symbol, timeframe, candles, readings):
        s = EMA_RIBBON_SETTINGS
        ribbon = _require(readings.ema_ribbon, 'ema_ribbon')
        price = float(candles['close'].iloc[-1])
        ema20, ema50 = ribbon[20], ribbon[50]
        macd_trend = readings.macd.trend if readings.macd is not None else TrendState.NEUTRAL

        confidence = 50.0
        reasons: List[str] = []
        direction: Optional[SignalType] = None
        stop = target = price

        if ribbon.alignment == RibbonAlignment.BULLISH and price > ema20:
            direction = SignalType.BUY
            reasons.append("Perfect bullish EMA alignment (5>10>20>50>200)")
            confidence += 20
            if price > max(ribbon.values.values()):
                reasons.append("Price above all EMAs")
                confidence += 15
            else:
                reasons.append(f"Price above EMA20 ({ema20:.2f})")
                confidence += 10
            if macd_trend == TrendState.BULLISH:
                reasons.append("MACD confirms uptrend")
                confidence += 10
            if ribbon.spread_pct > s['spread_bonus_pct']:
                reasons.append(f"Ribbon expanding ({ribbon.spread_pct:.2f}% spread)")
                confidence += 5
            stop = ema50 if ema50 < price else price * (1 - s['fallback_stop_pct'])
            target = price + s['reward_risk'] * (price - stop)

        elif ribbon.alignment == RibbonAlignment.BEARISH and price < ema20:
            direction = SignalType.SELL
            reasons.append("Perfect bearish EMA alignment (5<10<20<50<200)")
            confidence += 20
            if price < min(ribbon.values.values()):
                reasons.append("Price below all EMAs")
                confidence += 15
            else:
                reasons.append(f"Price below EMA20 ({ema20:.2f})")
                confidence += 10
            if macd_trend == TrendState.BEARISH:
                reasons.append("MACD confirms downtrend")
                confidence += 10
            if ribbon.spread_pct > s['spread_bonus_pct']:
                reasons.append(f"Ribbon expanding ({ribbon.spread_pct:.2f}% spread)")
                confidence += 5
            stop = ema50 if ema50 > price else price * (1 + s['fallback_stop_pct'])
            target = price - s['reward_risk'] * (stop - price)

        should_exit = ribbon.alignment == RibbonAlignment.MIXED
        if should_exit:
            reasons.append("EMA ribbon mixed - trend weakening")

        metadata = {f'ema{p}': v for p, v in ribbon.values.items()}
        metadata.update({
            'alignment': ribbon.alignment.value,
            'spread_pct': ribbon.spread_pct,
            'macd_trend': macd_trend.value,
            'risk_reward': '1:3',
        })
        return self._build(
            symbol, timeframe, candles, direction, confidence, stop, target,
            reasons, should_exit, metadata,
            idle_text=f"Ribbon {ribbon.alignment.value.lower()} - no setup",
        )


# =============================================================================
# SECTION 5: MACD + RSI
# =============================================================================

class MacdRsiStrategy(StrategyEvaluator):
    """
    MACD trend gate with RSI entry zones.

    Longs need a bullish MACD (positive histogram, MACD above signal);
    RSI 30-50 is the ideal entry, 50-65 acceptable, below 30 oversold,
    anything higher is treated as chasing. Shorts mirror this.
    """

    info = StrategyInfo(
        id="MACD_RSI",
        name="MACD + RSI",
        description="MACD trend confirmation with RSI filtering out late entries.",
        category=StrategyCategory.CLASSIC,
        win_rate="63-68%",
        recommended=False,
        min_bars=35,
        aliases=("MACD + RSI", "MACD+RSI"),
    )

    def _analyze(self, symbol, timeframe, candles, readings):
        s = MACD_RSI_SETTINGS
        macd = _require(readings.macd, 'macd')
        rsi = _require(readings.rsi, 'rsi')
        price = float(candles['close'].iloc[-1])
        volume_ratio = readings.volume.ratio if readings.volume is not None else 0.0

        confidence = 50.0
        reasons: List[str] = []
        direction: Optional[SignalType] = None
        stop = target = price

        if macd.trend == TrendState.BULLISH:
            zone = self._buy_zone(rsi)
            if zone is not None:
                label, bonus = zone
                direction = SignalType.BUY
                reasons.append(f"MACD bullish (histogram {macd.histogram:.4f})")
                confidence += 15
                reasons.append(f"RSI {rsi:.2f} {label}")
                confidence += bonus
                stop = price * (1 - s['stop_pct'])
                target = price * (1 + s['target_pct'])
            else:
                reasons.append(f"MACD bullish but RSI {rsi:.2f} too high - avoid chasing")

        elif macd.trend == TrendState.BEARISH:
            zone = self._sell_zone(rsi)
            if zone is not None:
                label, bonus = zone
                direction = SignalType.SELL
                reasons.append(f"MACD bearish (histogram {macd.histogram:.4f})")
                confidence += 15
                reasons.append(f"RSI {rsi:.2f} {label}")
                confidence += bonus
                stop = price * (1 + s['stop_pct'])
                target = price * (1 - s['target_pct'])
            else:
                reasons.append(f"MACD bearish but RSI {rsi:.2f} too low - avoid chasing")

        if direction is not None:
            if abs(macd.histogram) > price * s['histogram_strength_pct']:
                reasons.append("Strong histogram momentum")
                confidence += 5
            if volume_ratio > s['volume_ratio']:
                reasons.append(f"Volume confirmation {volume_ratio:.2f}x")
                confidence += 10

        flipped = (macd.prev_histogram > 0 >= macd.histogram) or (macd.prev_histogram < 0 <= macd.histogram)
        if flipped:
            reasons.append("MACD histogram changed sign - consider exit")

        metadata = {
            'macd': macd.macd,
            'macd_signal': macd.signal,
            'macd_histogram': macd.histogram,
            'macd_trend': macd.trend.value,
            'rsi': rsi,
            'volume_ratio': volume_ratio,
            'risk_reward': '1:2',
        }
        return self._build(
            symbol, timeframe, candles, direction, confidence, stop, target,
            reasons, flipped, metadata,
            idle_text=f"MACD {macd.trend.value.lower()}, RSI {rsi:.2f} - no setup",
        )

    @staticmethod
    def _buy_zone(rsi: float) -> Optional[Tuple[str, float]]:
        if rsi < RSI_OVERSOLD:
            return "oversold - reversal entry", 15.0
        if rsi < 50:
            return "in ideal buy zone (30-50)", 20.0
        if rsi < 65:
            return "acceptable (50-65)", 10.0
        return None

    @staticmethod
    def _sell_zone(rsi: float) -> Optional[Tuple[str, float]]:
        if rsi > RSI_OVERBOUGHT:
            return "overbought - reversal entry", 15.0
        if rsi > 50:
            return "in ideal sell zone (50-70)", 20.0
        if rsi > 35:
            return "acceptable (35-50)", 10.0
        return None


# =============================================================================
# SECTION 6: SMART MONEY CONCEPTS
# =============================================================================

@dataclass(frozen=True)
class LiquiditySweep:
    """Breach of a prior extreme that closed back inside the range."""
    direction: TrendState
    swept_level: float
    timestamp: datetime


@dataclass(frozen=True)
class OrderBlock:
    """Last opposite-colour candle before a strong engulfing move."""
    direction: TrendState
    high: float
    low: float
    timestamp: datetime


@dataclass(frozen=True)
class FairValueGap:
    """Untraded range between candle 1 and candle 3 of a three-bar sequence."""
    direction: TrendState
    high: float
    low: float


class StructureChange(Enum):
    """Market-structure break classification."""
    BULLISH_CHOCH = "BULLISH_CHOCH"
    BEARISH_CHOCH = "BEARISH_CHOCH"
    BULLISH_BOS = "BULLISH_BOS"
    BEARISH_BOS = "BEARISH_BOS"
    NEUTRAL = "NEUTRAL"


def detect_liquidity_sweep(window: pd.DataFrame, lookback: int = 10) -> Optional[LiquiditySweep]:
    """
    Find the most recent liquidity sweep among the last ``lookback`` bars.

    A bullish sweep trades below the lowest low of the preceding
    ``lookback`` bars and closes back above it; a bearish sweep mirrors
    this on the highs.
    """
    n = len(window)
    if n < lookback + 1:
        return None

    highs = window['high'].to_numpy()
    lows = window['low'].to_numpy()
    closes = window['close'].to_numpy()

    for i in range(n - 1, n - 1 - lookback, -1):
        ref_start = max(0, i - lookback)
        if i - ref_start < 2:
            break
        prior_low = lows[ref_start:i].min()
        prior_high = highs[ref_start:i].max()
        if lows[i] < prior_low and closes[i] > prior_low:
            return LiquiditySweep(TrendState.BULLISH, float(prior_low), window.index[i].to_pydatetime())
        if highs[i] > prior_high and closes[i] < prior_high:
            return LiquiditySweep(TrendState.BEARISH, float(prior_high), window.index[i].to_pydatetime())
    return None


def detect_order_blocks(
    window: pd.DataFrame,
    body_mult: float = 2.0,
    max_blocks: int = 3
) -> Dict[TrendState, List[OrderBlock]]:
    """
    Detect order blocks in a candle window.

    Bullish block: a bearish candle whose body is more than ``body_mult``
    times the following candle's body, then a bullish candle closing above
    the block's high. Bearish blocks mirror this. Only the most recent
    ``max_blocks`` of each side are kept, newest last.
    """
    o = window['open'].to_numpy()
    h = window['high'].to_numpy()
    l = window['low'].to_numpy()
    c = window['close'].to_numpy()
    body = np.abs(c - o)

    bullish: List[OrderBlock] = []
    bearish: List[OrderBlock] = []
    for i in range(1, len(window) - 1):
        prev, curr, nxt = i - 1, i, i + 1
        if body[prev] <= body[curr] * body_mult:
            continue
        ts = window.index[prev].to_pydatetime()
        if c[prev] < o[prev] and c[nxt] > o[nxt] and c[nxt] > h[prev]:
            bullish.append(OrderBlock(TrendState.BULLISH, float(h[prev]), float(l[prev]), ts))
        if c[prev] > o[prev] and c[nxt] < o[nxt] and c[nxt] < l[prev]:
            bearish.append(OrderBlock(TrendState.BEARISH, float(h[prev]), float(l[prev]), ts))

    return {
        TrendState.BULLISH: bullish[-max_blocks:],
        TrendState.BEARISH: bearish[-max_blocks:],
    }


def detect_fair_value_gaps(window: pd.DataFrame, max_gaps: int = 3) -> Dict[TrendState, List[FairValueGap]]:
    """Three-candle voids: candle 3 low above candle 1 high (bullish) or the mirror."""
    h = window['high'].to_numpy()
    l = window['low'].to_numpy()

    bullish: List[FairValueGap] = []
    bearish: List[FairValueGap] = []
    for i in range(2, len(window)):
        if l[i] > h[i - 2]:
            bullish.append(FairValueGap(TrendState.BULLISH, high=float(l[i]), low=float(h[i - 2])))
        if h[i] < l[i - 2]:
            bearish.append(FairValueGap(TrendState.BEARISH, high=float(l[i - 2]), low=float(h[i])))

    return {
        TrendState.BULLISH: bullish[-max_gaps:],
        TrendState.BEARISH: bearish[-max_gaps:],
    }


def detect_structure_change(window: pd.DataFrame, segment: int = 10) -> StructureChange:
    """
    Classify a break of market structure on the latest close.

    The bars before the latest one are split into an older and a recent
    segment. Closing above the recent swing high while that high is lower
    than the older one breaks a downtrend (bullish change of character);
    closing above a rising high is a bullish break of structure. Bearish
    cases mirror this on the lows.
    """
    if len(window) < 2 * segment + 1:
        return StructureChange.NEUTRAL

    prior = window.iloc[-(2 * segment + 1):-1]
    price = float(window['close'].iloc[-1])

    older, recent = prior.iloc[:segment], prior.iloc[segment:]
    recent_high, recent_low = float(recent['high'].max()), float(recent['low'].min())
    older_high, older_low = float(older['high'].max()), float(older['low'].min())

    if price > recent_high:
        return StructureChange.BULLISH_CHOCH if older_high > recent_high else StructureChange.BULLISH_BOS
    if price < recent_low:
        return StructureChange.BEARISH_CHOCH if older_low < recent_low else StructureChange.BEARISH_BOS
    return StructureChange.NEUTRAL


class SmartMoneyStrategy(StrategyEvaluator):
    """
    Smart Money Concepts reversal entries.

    Fires only when a liquidity sweep, an order block, a change of
    character and institutional volume (>= 2.5x average) all point the same
    way. Stop sits 1.8% behind the latest order block; target is 3x risk.
    """

    info = StrategyInfo(
        id="SMART_MONEY",
        name="Smart Money Concepts",
        description=(
            "Institutional footprint detection: liquidity sweeps, order blocks, "
            "fair value gaps and change of character."
        ),
        category=StrategyCategory.ADVANCED,
        win_rate="75-82%",
        recommended=True,
        min_bars=int(SMART_MONEY_SETTINGS['min_bars']),
        aliases=("SMART MONEY", "SMART MONEY CONCEPTS", "SMC"),
    )

    def _analyze(self, symbol, timeframe, candles, readings):
        s = SMART_MONEY_SETTINGS
        volume = _require(readings.volume, 'volume')
        price = float(candles['close'].iloc[-1])

        # Window wide enough for the sweep reference range and both structure segments
        span = max(int(s['window']), 2 * int(s['structure_window']) + 1)
        window = candles.iloc[-span:]

        sweep = detect_liquidity_sweep(window, int(s['sweep_window']))
        blocks = detect_order_blocks(window, s['order_block_body_mult'], int(s['max_order_blocks']))
        gaps = detect_fair_value_gaps(window)
        structure = detect_structure_change(window, int(s['structure_window']))

        confidence = 50.0
        reasons: List[str] = []
        direction: Optional[SignalType] = None
        stop = target = price
        order_block: Optional[OrderBlock] = None

        setups = (
            (TrendState.BULLISH, StructureChange.BULLISH_CHOCH, SignalType.BUY),
            (TrendState.BEARISH, StructureChange.BEARISH_CHOCH, SignalType.SELL),
        )
        for side, choch, signal_type in setups:
            if sweep is None or sweep.direction != side or not blocks[side] or structure != choch:
                continue

            bullish = side == TrendState.BULLISH
            order_block = blocks[side][-1]
            reasons.append(f"Liquidity sweep of {sweep.swept_level:.2f}")
            confidence += 20

            respected = price > order_block.low if bullish else price < order_block.high
            if respected:
                level = order_block.low if bullish else order_block.high
                reasons.append(f"{side.value.title()} order block holding at {level:.2f}")
                confidence += 15

            if gaps[side]:
                reasons.append(f"{len(gaps[side])} {side.value.lower()} fair value gap(s)")
                confidence += 10

            reasons.append(f"Change of character confirmed ({choch.value})")
            confidence += 15

            rsi = readings.rsi
            if rsi is not None and ((bullish and rsi < 40) or (not bullish and rsi > 60)):
                reasons.append(f"RSI {rsi:.2f} supports reversal")
                confidence += 10

            if volume.ratio >= s['volume_ratio']:
                reasons.append(f"Institutional volume {volume.ratio:.2f}x average")
                confidence += 20
                direction = signal_type
                buffer = s['stop_buffer_pct']
                if bullish:
                    stop = order_block.low * (1 - buffer)
                    if stop >= price:
                        stop = price * (1 - buffer)
                    target = price + s['reward_risk'] * (price - stop)
                else:
                    stop = order_block.high * (1 + buffer)
                    if stop <= price:
                        stop = price * (1 + buffer)
                    target = price - s['reward_risk'] * (stop - price)
            else:
                reasons.append(f"Volume {volume.ratio:.2f}x below institutional threshold")
            break

        should_exit = structure == StructureChange.NEUTRAL or volume.ratio < 1.0

        metadata = {
            'volume_ratio': volume.ratio,
            'rsi': readings.rsi,
            'liquidity_sweep': sweep.direction.value if sweep else 'NONE',
            'order_block': (
                order_block.low if order_block.direction == TrendState.BULLISH else order_block.high
            ) if order_block else None,
            'bullish_fvg_count': len(gaps[TrendState.BULLISH]),
            'bearish_fvg_count': len(gaps[TrendState.BEARISH]),
            'structure': structure.value,
            'risk_reward': '1:3',
        }
        return self._build(
            symbol, timeframe, candles, direction, confidence, stop, target,
            reasons, should_exit, metadata,
            idle_text="No Smart Money setup detected. Waiting for institutional footprints",
        )


# =============================================================================
# SECTION 7: ORDER FLOW + VOLUME PROFILE
# =============================================================================

class OrderFlowPattern(Enum):
    """Single-bar order flow classification."""
    ABSORPTION_SELLING = "ABSORPTION_SELLING"   # Sellers absorbed, bullish
    ABSORPTION_BUYING = "ABSORPTION_BUYING"     # Buyers absorbed, bearish
    EXHAUSTION = "EXHAUSTION"
    NEUTRAL = "NEUTRAL"


@dataclass(frozen=True)
class DeltaVolume:
    """Approximate aggressor delta from candle colour."""
    delta: float
    buy_volume: float
    sell_volume: float
    trend: TrendState


@dataclass(frozen=True)
class OrderFlowSignal:
    pattern: OrderFlowPattern
    strength: float
    description: str


def calculate_delta_volume(
    window: pd.DataFrame,
    lookback: int = 20,
    threshold: float = 0.20
) -> DeltaVolume:
    """
    Sum up-candle volume minus down-candle volume over ``lookback`` bars.

    The trend is BULLISH/BEARISH when |delta| exceeds ``threshold`` of the
    total volume in the window.
    """
    recent = window.iloc[-lookback:]
    up = recent['close'] > recent['open']
    down = recent['close'] < recent['open']
    buy_volume = float(recent.loc[up, 'volume'].sum())
    sell_volume = float(recent.loc[down, 'volume'].sum())
    delta = buy_volume - sell_volume
    total = float(recent['volume'].sum())

    trend = TrendState.NEUTRAL
    if total > 0 and abs(delta) / total > threshold:
        trend = TrendState.BULLISH if delta > 0 else TrendState.BEARISH
    return DeltaVolume(delta, buy_volume, sell_volume, trend)


def classify_order_flow(window: pd.DataFrame) -> OrderFlowSignal:
    """
    Classify the latest bar against the previous one.

    Absorption: volume above 1.5x the previous bar with a rejection wick
    through the previous extreme and a close beyond the previous close.
    Exhaustion: volume above 2x the previous bar with a body under 30% of
    the range.
    """
    s = ORDER_FLOW_SETTINGS
    if len(window) < 2:
        return OrderFlowSignal(OrderFlowPattern.NEUTRAL, 50.0, "Not enough bars")

    curr = window.iloc[-1]
    prev = window.iloc[-2]
    heavy = curr['volume'] > prev['volume'] * s['absorption_volume_mult']

    if heavy and curr['close'] > curr['open'] and curr['low'] < prev['low'] and curr['close'] > prev['close']:
        return OrderFlowSignal(
            OrderFlowPattern.ABSORPTION_SELLING, s['absorption_strength'],
            "Strong absorption of selling pressure",
        )
    if heavy and curr['close'] < curr['open'] and curr['high'] > prev['high'] and curr['close'] < prev['close']:
        return OrderFlowSignal(
            OrderFlowPattern.ABSORPTION_BUYING, s['absorption_strength'],
            "Strong absorption of buying pressure",
        )
    bar_range = curr['high'] - curr['low']
    if (curr['volume'] > prev['volume'] * s['exhaustion_volume_mult']
            and abs(curr['close'] - curr['open']) < bar_range * s['exhaustion_body_ratio']):
        return OrderFlowSignal(
            OrderFlowPattern.EXHAUSTION, s['exhaustion_strength'],
            "Volume climax with small body - exhaustion",
        )
    return OrderFlowSignal(OrderFlowPattern.NEUTRAL, 50.0, "No significant order flow imbalance")


def classify_poc_position(price: float, poc: float, tolerance: float = 0.01) -> str:
    """AT_POC within ``tolerance`` of the POC, else ABOVE_POC / BELOW_POC."""
    if poc > 0 and abs(price - poc) / poc < tolerance:
        return "AT_POC"
    return "ABOVE_POC" if price > poc else "BELOW_POC"


class OrderFlowStrategy(StrategyEvaluator):
    """
    Order flow and volume profile confluence.

    Longs need bullish delta, price at or below the Point of Control and
    absorption of selling; shorts mirror this. Stop sits behind the POC,
    target at the next high-volume node beyond price.
    """

    info = StrategyInfo(
        id="ORDER_FLOW",
        name="Order Flow + Volume Profile",
        description=(
            "Market microstructure read from volume delta, volume profile "
            "(POC, value area) and absorption patterns."
        ),
        category=StrategyCategory.ADVANCED,
        win_rate="73-79%",
        recommended=True,
        min_bars=int(ORDER_FLOW_SETTINGS['min_bars']),
        aliases=("ORDER FLOW", "ORDER FLOW + VOLUME PROFILE"),
    )

    def _analyze(self, symbol, timeframe, candles, readings):
        s = ORDER_FLOW_SETTINGS
        window = candles.iloc[-int(s['min_bars']):]
        profile: Optional[VolumeProfile] = readings.volume_profile
        if profile is None:
            profile = calculate_volume_profile(window)
        profile = _require(profile, 'volume_profile')

        price = float(candles['close'].iloc[-1])
        delta = calculate_delta_volume(window, int(s['delta_window']), s['delta_threshold'])
        flow = classify_order_flow(window)
        poc_position = classify_poc_position(price, profile.poc, s['poc_tolerance_pct'])

        confidence = 50.0
        reasons: List[str] = []
        direction: Optional[SignalType] = None
        stop = target = price
        hvn_prices = sorted(n.price for n in profile.high_volume_nodes)

        if (delta.trend == TrendState.BULLISH and poc_position in ("BELOW_POC", "AT_POC")
                and flow.pattern == OrderFlowPattern.ABSORPTION_SELLING):
            reasons.append(f"Buying pressure: delta +{delta.delta:.0f}")
            confidence += 20
            if abs(price - profile.poc) / price < 0.015:
                reasons.append(f"Testing POC at {profile.poc:.2f}")
                confidence += 15
            if any(p < price and (price - p) / price < 0.02 for p in hvn_prices):
                reasons.append("High volume node support nearby")
                confidence += 10
            if flow.strength > s['min_pattern_strength']:
                reasons.append(flow.description)
                confidence += 15
                direction = SignalType.BUY
                stop = min(profile.poc * (1 - s['poc_stop_buffer_pct']), price * (1 - s['min_stop_pct']))
                above = [p for p in hvn_prices if p > price]
                target = above[0] if above else price * (1 + s['fallback_target_pct'])

        elif (delta.trend == TrendState.BEARISH and poc_position in ("ABOVE_POC", "AT_POC")
                and flow.pattern == OrderFlowPattern.ABSORPTION_BUYING):
            reasons.append(f"Selling pressure: delta {delta.delta:.0f}")
            confidence += 20
            if abs(price - profile.poc) / price < 0.015:
                reasons.append(f"Testing POC at {profile.poc:.2f}")
                confidence += 15
            if any(p > price and (p - price) / price < 0.02 for p in hvn_prices):
                reasons.append("High volume node resistance nearby")
                confidence += 10
            if flow.strength > s['min_pattern_strength']:
                reasons.append(flow.description)
                confidence += 15
                direction = SignalType.SELL
                stop = max(profile.poc * (1 + s['poc_stop_buffer_pct']), price * (1 + s['min_stop_pct']))
                below = [p for p in hvn_prices if p < price]
                target = below[-1] if below else price * (1 - s['fallback_target_pct'])

        if direction is not None:
            if readings.volume is not None and readings.volume.ratio > 1.8:
                reasons.append(f"Institutional volume {readings.volume.ratio:.2f}x")
                confidence += 10
            rsi = readings.rsi
            if rsi is not None and ((direction == SignalType.BUY and rsi < 70) or
                                    (direction == SignalType.SELL and rsi > 30)):
                reasons.append(f"RSI {rsi:.2f} leaves room to run")
                confidence += 5

        should_exit = delta.trend == TrendState.NEUTRAL or flow.strength < 40
        if price > profile.value_area_high:
            va_position = "ABOVE_VALUE_AREA"
        elif price < profile.value_area_low:
            va_position = "BELOW_VALUE_AREA"
        else:
            va_position = "INSIDE_VALUE_AREA"

        metadata = {
            'delta': delta.delta,
            'delta_trend': delta.trend.value,
            'poc': profile.poc,
            'poc_position': poc_position,
            'value_area_high': profile.value_area_high,
            'value_area_low': profile.value_area_low,
            'value_area_position': va_position,
            'order_flow': flow.pattern.value,
            'order_flow_strength': flow.strength,
            'high_volume_nodes': hvn_prices,
        }
        return self._build(
            symbol, timeframe, candles, direction, confidence, stop, target,
            reasons, should_exit, metadata,
            idle_text=f"Delta {delta.trend.value.lower()}, {flow.pattern.value.lower()} - no setup",
        )


# =============================================================================
# SECTION 8: REGISTRY
# =============================================================================

STRATEGY_CLASSES = (
    SmartMoneyStrategy,
    OrderFlowStrategy,
    RsiVolumeStrategy,
    EmaRibbonStrategy,
    MacdRsiStrategy,
)

STRATEGY_IDS: Tuple[str, ...] = tuple(cls.info.id for cls in STRATEGY_CLASSES)


def build_registry(provider: Optional[IndicatorProvider] = None) -> Dict[str, StrategyEvaluator]:
    """Instantiate every evaluator, keyed by strategy id."""
    provider = provider or IndicatorProvider()
    return {cls.info.id: cls(provider) for cls in STRATEGY_CLASSES}


STRATEGY_REGISTRY: Dict[str, StrategyEvaluator] = build_registry()

_ALIASES: Dict[str, str] = {}
for _cls in STRATEGY_CLASSES:
    _ALIASES[_cls.info.id] = _cls.info.id
    _ALIASES[_cls.info.name.upper()] = _cls.info.id
    for _alias in _cls.info.aliases:
        _ALIASES[_alias.upper()] = _cls.info.id


def resolve_strategy_id(name: str) -> str:
    """
    Map an id or display name to its canonical strategy id.

    Matching is case-insensitive and treats '-' and ' ' like '_' in ids.

    Raises:
        StrategyNotFoundError: No evaluator matches
    """
    key = (name or "").strip().upper()
    if key in _ALIASES:
        return _ALIASES[key]
    normalized = key.replace('-', '_').replace(' ', '_')
    if normalized in _ALIASES:
        return _ALIASES[normalized]
    raise StrategyNotFoundError(name)


def get_strategy(
    name: str,
    registry: Optional[Dict[str, StrategyEvaluator]] = None
) -> StrategyEvaluator:
    """Look up an evaluator by id or alias."""
    registry = registry if registry is not None else STRATEGY_REGISTRY
    return registry[resolve_strategy_id(name)]


def list_strategies() -> List[Dict[str, Any]]:
    """Catalogue of available strategies, advanced first."""
    return [cls.info.to_dict() for cls in STRATEGY_CLASSES]


__all__ = [
    'SignalType',
    'StrategyInfo',
    'Signal',
    'StrategyAnalysis',
    'StrategyEvaluator',
    'RsiVolumeStrategy',
    'EmaRibbonStrategy',
    'MacdRsiStrategy',
    'SmartMoneyStrategy',
    'OrderFlowStrategy',
    'LiquiditySweep',
    'OrderBlock',
    'FairValueGap',
    'StructureChange',
    'OrderFlowPattern',
    'DeltaVolume',
    'OrderFlowSignal',
    'detect_liquidity_sweep',
    'detect_order_blocks',
    'detect_fair_value_gaps',
    'detect_structure_change',
    'calculate_delta_volume',
    'classify_order_flow',
    'classify_poc_position',
    'STRATEGY_CLASSES',
    'STRATEGY_IDS',
    'STRATEGY_REGISTRY',
    'build_registry',
    'resolve_strategy_id',
    'get_strategy',
    'list_strategies',
]
