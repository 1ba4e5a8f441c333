"""Tests for consensus resolution and the concurrent aggregator."""

from __future__ import annotations

import pytest

from crypto_signals.candle_store import InMemoryCandleStore
from crypto_signals.consensus import ConsensusAggregator, resolve_consensus
from crypto_signals.strategies import STRATEGY_IDS, SignalType, StrategyAnalysis
from crypto_signals.technical_indicators import SignalDirection

from conftest import make_signal


class FixedEvaluator:
    """Evaluator stand-in that always returns the same signal (or None)."""

    def __init__(self, sid, direction=None, confidence=70.0):
        self.id = sid
        self.direction = direction
        self.confidence = confidence

    def analyze(self, symbol, timeframe, candles, readings=None):
        signal = None
        if self.direction is not None:
            signal = make_signal(self.direction, self.confidence, strategy_id=self.id)
        return StrategyAnalysis(self.id, symbol, timeframe, signal=signal)


class BrokenEvaluator:
    id = "BROKEN"

    def analyze(self, symbol, timeframe, candles, readings=None):
        raise RuntimeError("evaluator blew up")


class TestResolveConsensus:

    def test_unanimous_buy_is_strong(self):
        signals = [make_signal(SignalType.BUY, c) for c in (60, 70, 80, 90, 100)]
        direction, confidence, agreement, buys, sells = resolve_consensus(signals)
        assert direction == SignalDirection.STRONG_BUY
        assert agreement == 1.0
        assert confidence == pytest.approx(80.0)
        assert (buys, sells) == (5, 0)

    def test_unanimous_sell_is_strong(self):
        direction, *_ = resolve_consensus([make_signal(SignalType.SELL)] * 3)
        assert direction == SignalDirection.STRONG_SELL

    def test_strict_majority(self):
        signals = [make_signal(SignalType.BUY, 60)] * 3 + [None, None]
        direction, confidence, agreement, buys, _ = resolve_consensus(signals)
        assert direction == SignalDirection.BUY
        assert agreement == pytest.approx(0.6)
        assert confidence == pytest.approx(60.0)
        assert buys == 3

    def test_split_is_neutral(self):
        signals = [make_signal(SignalType.BUY)] * 2 + [make_signal(SignalType.SELL)] * 2 + [None]
        direction, _, agreement, _, _ = resolve_consensus(signals)
        assert direction == SignalDirection.NEUTRAL
        assert agreement == pytest.approx(0.4)

    def test_half_is_not_majority(self):
        signals = [make_signal(SignalType.SELL)] * 2 + [None, None]
        assert resolve_consensus(signals)[0] == SignalDirection.NEUTRAL

    def test_no_signals(self):
        direction, confidence, agreement, _, _ = resolve_consensus([None] * 5)
        assert direction == SignalDirection.NEUTRAL
        assert confidence == 0.0
        assert agreement == 0.0

    def test_abstentions_count_toward_n(self):
        signals = [make_signal(SignalType.BUY)] * 4
        assert resolve_consensus(signals, n_strategies=5)[0] == SignalDirection.BUY


class TestConsensusAggregator:

    def test_failing_evaluator_abstains(self, store):
        strategies = {f"S{i}": FixedEvaluator(f"S{i}", SignalType.BUY) for i in range(4)}
        strategies["BROKEN"] = BrokenEvaluator()

        result = ConsensusAggregator(store, strategies=strategies).consensus("BTCUSDT", "1h")

        assert result.direction == SignalDirection.BUY
        assert result.buy_count == 4
        assert result.n_strategies == 5
        assert "BROKEN" in result.errors
        assert "evaluator blew up" in result.errors["BROKEN"]
        assert result.agreement == pytest.approx(0.8)

    def test_unanimous_aggregator(self, store):
        strategies = {f"S{i}": FixedEvaluator(f"S{i}", SignalType.SELL, 50.0) for i in range(5)}
        result = ConsensusAggregator(store, strategies=strategies).consensus("BTCUSDT", "1h")
        assert result.direction == SignalDirection.STRONG_SELL
        assert result.confidence == pytest.approx(50.0)
        assert set(result.signals) == set(strategies)

    def test_empty_store_is_neutral(self):
        result = ConsensusAggregator(InMemoryCandleStore()).consensus("BTCUSDT", "1h")
        assert result.direction == SignalDirection.NEUTRAL
        assert "*" in result.errors
        assert result.buy_count == result.sell_count == 0

    def test_full_registry_on_real_data(self, store):
        aggregator = ConsensusAggregator(store)
        result = aggregator.consensus("BTCUSDT", "1h", limit=300)
        assert result.errors == {}
        assert set(result.analyses) == set(STRATEGY_IDS)
        assert 0.0 <= result.agreement <= 1.0
        assert 0.0 <= result.confidence <= 100.0
        assert "BTCUSDT 1h" in result.summary()

    def test_analyze_all(self, store):
        analyses = ConsensusAggregator(store).analyze_all("BTCUSDT", "1h")
        assert set(analyses) == set(STRATEGY_IDS)
        assert all(a.symbol == "BTCUSDT" for a in analyses.values())


class OfflineStore:
    """Store stand-in whose every read fails."""

    def get_candles(self, symbol, timeframe, start=None, end=None, limit=None):
        raise OSError("store offline")


class TestSnapshotFailures:

    def test_failing_store_is_neutral(self):
        result = ConsensusAggregator(OfflineStore()).consensus("BTCUSDT", "1h")
        assert result.direction == SignalDirection.NEUTRAL
        assert result.analyses == {}
        assert "store offline" in result.errors["*"]
        assert result.n_strategies == len(STRATEGY_IDS)

    def test_empty_store_counts_polled_strategies(self):
        result = ConsensusAggregator(InMemoryCandleStore()).consensus("BTCUSDT", "1h")
        assert result.n_strategies == len(STRATEGY_IDS)
        assert f"of {len(STRATEGY_IDS)})" in result.summary()

    def test_analyze_all_without_data(self):
        assert ConsensusAggregator(InMemoryCandleStore()).analyze_all("BTCUSDT", "1h") == {}
        assert ConsensusAggregator(OfflineStore()).analyze_all("BTCUSDT", "1h") == {}
