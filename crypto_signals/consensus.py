"""
Consensus Aggregator: one blended signal from all strategy evaluators

All evaluators read the same candle snapshot and indicator readings. They
run concurrently on a thread pool and are joined before resolution.

RESOLUTION (N evaluators)
    STRONG_BUY / STRONG_SELL  all N evaluators agree
    BUY / SELL                a strict majority (> N/2) agree
    NEUTRAL                   otherwise

    confidence = mean confidence of evaluators that fired (0 if none)
    agreement  = max(buy_count, sell_count) / N

An evaluator that raises is counted as an abstention; its error is kept
in ConsensusResult.errors for diagnostics and never aborts the others.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .candle_store import CandleStore
from .config import Config
from .exceptions import NoHistoricalDataError
from .strategies import (
    STRATEGY_REGISTRY,
    Signal,
    SignalType,
    StrategyAnalysis,
    StrategyEvaluator,
)
from .technical_indicators import IndicatorProvider, IndicatorReadings, SignalDirection

logger = logging.getLogger(__name__)


@dataclass
class ConsensusResult:
    """Pull-based consensus value; derived, never stored."""
    symbol: str
    timeframe: str
    direction: SignalDirection
    confidence: float
    agreement: float
    buy_count: int
    sell_count: int
    analyses: Dict[str, StrategyAnalysis] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    polled: int = 0                 # Evaluators asked for a vote

    @property
    def signals(self) -> Dict[str, Optional[Signal]]:
        """Per-strategy signal (None where the evaluator did not fire)."""
        return {sid: a.signal for sid, a in self.analyses.items()}

    @property
    def n_strategies(self) -> int:
        if self.polled:
            return self.polled
        # '*' marks a snapshot failure, not an evaluator
        return len(self.analyses) + len([k for k in self.errors if k != '*'])

    def summary(self) -> str:
        return (
            f"{self.symbol} {self.timeframe}: {self.direction.value} "
            f"(confidence {self.confidence:.1f}, agreement {self.agreement:.0%}, "
            f"{self.buy_count} buy / {self.sell_count} sell of {self.n_strategies})"
        )


def resolve_consensus(
    signals: Sequence[Optional[Signal]],
    n_strategies: Optional[int] = None
) -> Tuple[SignalDirection, float, float, int, int]:
    """
    Resolve per-strategy signals into a consensus direction.

    Args:
        signals: One entry per evaluator that produced a result
        n_strategies: Total evaluators polled, abstentions included
            (defaults to len(signals))

    Returns:
        (direction, confidence, agreement, buy_count, sell_count)
    """
    n = n_strategies if n_strategies is not None else len(signals)
    fired = [s for s in signals if s is not None]
    buy_count = sum(1 for s in fired if s.direction == SignalType.BUY)
    sell_count = sum(1 for s in fired if s.direction == SignalType.SELL)

    if n <= 0:
        return SignalDirection.NEUTRAL, 0.0, 0.0, 0, 0

    if buy_count == n:
        direction = SignalDirection.STRONG_BUY
    elif sell_count == n:
        direction = SignalDirection.STRONG_SELL
    elif buy_count * 2 > n:
        direction = SignalDirection.BUY
    elif sell_count * 2 > n:
        direction = SignalDirection.SELL
    else:
        direction = SignalDirection.NEUTRAL

    confidence = float(np.mean([s.confidence for s in fired])) if fired else 0.0
    agreement = max(buy_count, sell_count) / n
    return direction, confidence, agreement, buy_count, sell_count


class ConsensusAggregator:
    """
    Runs every evaluator against one snapshot and blends the results.

    Args:
        store: Candle source supporting "last N" queries
        strategies: Evaluators keyed by id (defaults to the full registry)
        provider: Indicator provider used once per snapshot
        max_workers: Thread pool size
    """

    def __init__(
        self,
        store: CandleStore,
        strategies: Optional[Dict[str, StrategyEvaluator]] = None,
        provider: Optional[IndicatorProvider] = None,
        max_workers: int = Config.CONSENSUS_MAX_WORKERS
    ):
        self.store = store
        self.strategies = strategies if strategies is not None else STRATEGY_REGISTRY
        self.provider = provider or IndicatorProvider()
        self.max_workers = max_workers

    def _snapshot(self, symbol: str, timeframe: str, limit: int) -> Tuple[pd.DataFrame, IndicatorReadings]:
        candles = self.store.get_candles(symbol, timeframe, limit=limit)
        if len(candles) == 0:
            raise NoHistoricalDataError(symbol, timeframe)
        return candles, self.provider.compute(candles)

    def evaluate_snapshot(
        self,
        symbol: str,
        timeframe: str,
        candles: pd.DataFrame,
        readings: Optional[IndicatorReadings] = None
    ) -> Tuple[Dict[str, StrategyAnalysis], Dict[str, str]]:
        """
        Run all evaluators concurrently on one snapshot.

        Returns:
            (analyses by strategy id, error messages by strategy id)
        """
        if readings is None:
            readings = self.provider.compute(candles)

        analyses: Dict[str, StrategyAnalysis] = {}
        errors: Dict[str, str] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {
                sid: pool.submit(strategy.analyze, symbol, timeframe, candles, readings)
                for sid, strategy in self.strategies.items()
            }
            for sid, future in futures.items():
                try:
                    analyses[sid] = future.result()
                except Exception as e:
                    logger.warning(f"{sid} abstained on {symbol} {timeframe}: {e}")
                    errors[sid] = f"{type(e).__name__}: {e}"
        return analyses, errors

    def analyze_all(
        self,
        symbol: str,
        timeframe: str = Config.DEFAULT_TIMEFRAME,
        limit: int = Config.CONSENSUS_CANDLES
    ) -> Dict[str, StrategyAnalysis]:
        """
        Per-strategy analyses for the latest candles.

        Failed evaluators are omitted; an empty or failing store yields {}.
        """
        try:
            candles, readings = self._snapshot(symbol, timeframe, limit)
        except NoHistoricalDataError as e:
            logger.warning(str(e))
            return {}
        except Exception:
            logger.exception(f"Snapshot failed for {symbol} {timeframe}")
            return {}
        analyses, _ = self.evaluate_snapshot(symbol, timeframe, candles, readings)
        return analyses

    def consensus(
        self,
        symbol: str,
        timeframe: str = Config.DEFAULT_TIMEFRAME,
        limit: int = Config.CONSENSUS_CANDLES
    ) -> ConsensusResult:
        """
        Blend all evaluators for the latest ``limit`` candles.

        An empty or failing store yields a NEUTRAL result with the failure
        recorded under the '*' key of ``errors``.
        """
        try:
            candles, readings = self._snapshot(symbol, timeframe, limit)
        except NoHistoricalDataError as e:
            logger.warning(str(e))
            return self._neutral(symbol, timeframe, str(e))
        except Exception as e:
            logger.exception(f"Snapshot failed for {symbol} {timeframe}")
            return self._neutral(symbol, timeframe, f"{type(e).__name__}: {e}")
        return self.consensus_for(symbol, timeframe, candles, readings)

    def _neutral(self, symbol: str, timeframe: str, error: str) -> ConsensusResult:
        return ConsensusResult(
            symbol=symbol, timeframe=timeframe,
            direction=SignalDirection.NEUTRAL, confidence=0.0, agreement=0.0,
            buy_count=0, sell_count=0, errors={'*': error},
            polled=len(self.strategies),
        )

    def consensus_for(
        self,
        symbol: str,
        timeframe: str,
        candles: pd.DataFrame,
        readings: Optional[IndicatorReadings] = None
    ) -> ConsensusResult:
        """Blend all evaluators for an explicit candle window."""
        analyses, errors = self.evaluate_snapshot(symbol, timeframe, candles, readings)
        n = len(self.strategies)
        direction, confidence, agreement, buys, sells = resolve_consensus(
            [a.signal for a in analyses.values()], n
        )
        result = ConsensusResult(
            symbol=symbol,
            timeframe=timeframe,
            direction=direction,
            confidence=confidence,
            agreement=agreement,
            buy_count=buys,
            sell_count=sells,
            analyses=analyses,
            errors=errors,
            polled=n,
        )
        logger.info(result.summary())
        return result


__all__ = [
    'ConsensusResult',
    'ConsensusAggregator',
    'resolve_consensus',
]
