"""Tests for indicator calculators and the IndicatorProvider snapshot."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from crypto_signals.technical_indicators import (
    IndicatorProvider,
    RibbonAlignment,
    TrendState,
    calculate_atr,
    calculate_macd,
    calculate_rsi,
    calculate_volume_profile,
    classify_macd_trend,
    classify_ribbon,
    find_swing_points,
)

from conftest import build_frame, linear_frame


class TestRSI:

    def test_bounded_and_warmup(self, synthetic_candles):
        rsi = calculate_rsi(synthetic_candles["close"])
        assert rsi.iloc[:14].isna().all()
        valid = rsi.dropna()
        assert len(valid) == len(rsi) - 14
        assert ((valid >= 0) & (valid <= 100)).all()

    def test_only_gains_is_100(self):
        rsi = calculate_rsi(linear_frame(40)["close"])
        assert rsi.iloc[-1] == pytest.approx(100.0)

    def test_only_losses_is_0(self):
        close = pd.Series(np.linspace(200, 100, 40))
        assert calculate_rsi(close).iloc[-1] == pytest.approx(0.0)


def test_macd_histogram_identity(synthetic_candles):
    macd, signal, hist = calculate_macd(synthetic_candles["close"])
    valid = hist.dropna().index
    np.testing.assert_allclose(hist[valid], (macd - signal)[valid])


def test_atr_positive(synthetic_candles):
    atr = calculate_atr(synthetic_candles["high"], synthetic_candles["low"], synthetic_candles["close"])
    assert (atr.dropna() > 0).all()


class TestVolumeProfile:

    def test_poc_at_heavy_level(self):
        rows = [(100, 101, 99, 100, 10)] * 20 + [(120, 121, 119, 120, 1)] * 20
        profile = calculate_volume_profile(build_frame(rows), bins=20)
        assert profile is not None
        assert profile.poc == pytest.approx(100, abs=2.0)
        assert profile.total_volume == pytest.approx(220)
        assert profile.value_area_low <= profile.poc <= profile.value_area_high
        assert any(abs(n.price - profile.poc) < 1e-9 for n in profile.high_volume_nodes)

    def test_value_area_holds_share(self, synthetic_candles):
        window = synthetic_candles.iloc[-50:]
        profile = calculate_volume_profile(window)
        inside = sum(
            n.volume for n in profile.bins
            if profile.value_area_low <= n.price <= profile.value_area_high
        )
        assert inside >= 0.7 * profile.total_volume - 1e-6

    def test_degenerate_windows(self):
        assert calculate_volume_profile(build_frame([])) is None
        assert calculate_volume_profile(build_frame([(100, 100, 100, 100, 5)] * 5)) is None
        assert calculate_volume_profile(build_frame([(100, 101, 99, 100, 0)] * 5)) is None


def test_classify_ribbon():
    assert classify_ribbon({5: 5, 10: 4, 20: 3, 50: 2, 200: 1}) == RibbonAlignment.BULLISH
    assert classify_ribbon({5: 1, 10: 2, 20: 3, 50: 4, 200: 5}) == RibbonAlignment.BEARISH
    assert classify_ribbon({5: 5, 10: 4, 20: 4, 50: 2, 200: 1}) == RibbonAlignment.MIXED


def test_classify_macd_trend():
    assert classify_macd_trend(1.0, 0.5, 0.5) == TrendState.BULLISH
    assert classify_macd_trend(-1.0, -0.5, -0.5) == TrendState.BEARISH
    assert classify_macd_trend(1.0, 1.0, 0.0) == TrendState.NEUTRAL


def test_find_swing_points():
    highs = pd.Series([1, 2, 3, 10, 3, 2, 1, 2, 3, 4, 5], dtype=float)
    lows = highs - 0.5
    swing_highs, swing_lows = find_swing_points(highs, lows, order=3)
    assert list(swing_highs.index) == [3]
    assert list(swing_lows.index) == [6]


class TestIndicatorProvider:

    def test_full_snapshot(self, synthetic_candles):
        readings = IndicatorProvider().compute(synthetic_candles.iloc[-250:])
        assert readings.price == synthetic_candles["close"].iloc[-1]
        assert readings.rsi is not None
        assert readings.macd is not None
        assert readings.ema_ribbon is not None
        assert set(readings.ema_ribbon.values) == {5, 10, 20, 50, 200}
        assert readings.bollinger is not None
        assert readings.volume is not None and readings.volume.ratio > 0
        assert readings.atr is not None
        assert readings.support_resistance.support <= readings.support_resistance.resistance
        assert readings.volume_profile is not None
        meta = readings.to_metadata()
        assert meta["ribbon_alignment"] == readings.ema_ribbon.alignment.value

    def test_short_window_marks_unavailable(self, synthetic_candles):
        readings = IndicatorProvider().compute(synthetic_candles.iloc[:10])
        assert readings.rsi is None
        assert readings.macd is None
        assert readings.ema_ribbon is None
        assert readings.volume is None
        assert readings.support_resistance is None

    def test_ribbon_needs_longest_period(self, synthetic_candles):
        readings = IndicatorProvider().compute(synthetic_candles.iloc[:199])
        assert readings.ema_ribbon is None
        assert readings.macd is not None

    def test_missing_columns(self):
        with pytest.raises(ValueError):
            IndicatorProvider().compute(pd.DataFrame({"close": [1.0, 2.0]}))
