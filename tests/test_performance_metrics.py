"""Tests for the performance metrics engine."""

from __future__ import annotations

import math
from datetime import datetime

import pytest

from crypto_signals.performance_metrics import (
    ClosedTrade,
    RiskAdjustedCalculator,
    RiskCalculator,
    TradeAnalyzer,
    calculate_metrics,
    empty_metrics,
)

from conftest import make_trade


def test_single_round_trip_without_costs():
    """BUY 50 @ 100, SELL 50 @ 110 on 10,000 capital."""
    trade = ClosedTrade.from_fills(
        entry_time=datetime(2024, 1, 1, 0),
        exit_time=datetime(2024, 1, 1, 6),
        entry_price=100.0,
        exit_price=110.0,
        quantity=50.0,
    )
    assert trade.pnl == pytest.approx(500.0)
    assert trade.pnl_percent == pytest.approx(10.0)

    m = calculate_metrics([trade], initial_capital=10000.0)
    assert m.total_trades == 1
    assert m.total_pnl == pytest.approx(500.0)
    assert m.total_return_pct == pytest.approx(5.0)
    assert m.win_rate == pytest.approx(100.0)
    assert m.final_capital == pytest.approx(10500.0)
    assert math.isinf(m.profit_factor)
    assert m.avg_trade_duration_hours == pytest.approx(6.0)
    # Single return: no dispersion
    assert m.sharpe_ratio == 0.0
    assert m.sortino_ratio == 0.0


def test_fill_costs_reduce_pnl():
    trade = ClosedTrade.from_fills(
        datetime(2024, 1, 1), datetime(2024, 1, 2), 100.0, 110.0, 50.0,
        entry_costs=5.0, exit_costs=5.5,
    )
    assert trade.cost_basis == pytest.approx(5005.0)
    assert trade.proceeds == pytest.approx(5494.5)
    assert trade.pnl == pytest.approx(489.5)
    assert trade.fees == pytest.approx(10.5)


def test_streaks():
    trades = [make_trade(p, trade_id=i) for i, p in enumerate([100, -50, 100, -50, -50])]
    m = calculate_metrics(trades, initial_capital=10000.0)
    assert m.longest_win_streak == 1
    assert m.longest_loss_streak == 2
    assert TradeAnalyzer.streaks([100, -50, 100, -50, -50]) == (1, 2)


def test_breakeven_counts_as_loss():
    m = calculate_metrics([make_trade(0.0), make_trade(10.0, trade_id=1)], initial_capital=1000.0)
    assert m.winning_trades == 1
    assert m.losing_trades == 1
    assert m.win_rate == pytest.approx(50.0)


def test_empty_ledger_is_all_zero():
    m = calculate_metrics([], initial_capital=10000.0)
    assert m == empty_metrics(10000.0)
    values = m.to_dict()
    assert values.pop("final_capital") == 10000.0
    assert all(v == 0 for v in values.values())


def test_metrics_are_pure(trades_ten):
    first = calculate_metrics(trades_ten, initial_capital=10000.0)
    second = calculate_metrics(list(trades_ten), initial_capital=10000.0)
    assert first == second
    assert first.to_dict() == second.to_dict()


def test_win_loss_statistics(trades_ten):
    m = calculate_metrics(trades_ten, initial_capital=10000.0)
    wins = [100, 80, 40, 120, 90, 50]
    losses = [50, 30, 60, 20]
    assert m.winning_trades == 6
    assert m.gross_profit == pytest.approx(sum(wins))
    assert m.gross_loss == pytest.approx(sum(losses))
    assert m.profit_factor == pytest.approx(sum(wins) / sum(losses))
    assert m.avg_win == pytest.approx(sum(wins) / 6)
    assert m.avg_loss == pytest.approx(sum(losses) / 4)
    assert m.largest_win == pytest.approx(120)
    assert m.largest_loss == pytest.approx(60)
    assert m.expectancy == pytest.approx(0.6 * m.avg_win - 0.4 * m.avg_loss)
    assert m.total_return_pct == pytest.approx(320 / 10000 * 100)


def test_drawdown_from_trade_equity(trades_ten):
    m = calculate_metrics(trades_ten, initial_capital=10000.0)
    # Equity: 10000, 10100, 10050, ... worst dip is the 60 loss from the 10260 peak
    assert m.max_drawdown == pytest.approx(60.0)
    assert m.max_drawdown_pct == pytest.approx(60.0 / 10260.0 * 100)
    assert m.calmar_ratio == pytest.approx(m.total_return_pct / m.max_drawdown_pct)


def test_drawdown_prefers_equity_curve(trades_ten):
    m = calculate_metrics(trades_ten, equity_curve=[100.0, 120.0, 90.0, 130.0], initial_capital=100.0)
    assert m.max_drawdown == pytest.approx(30.0)
    assert m.max_drawdown_pct == pytest.approx(25.0)


def test_drawdown_peak_seeded_with_initial_capital():
    # First mark is already below the starting capital (entry costs)
    stats = RiskCalculator.drawdowns([990.0, 1010.0, 1000.0], initial_capital=1000.0)
    assert stats.max_drawdown == pytest.approx(10.0)
    assert stats.max_drawdown_pct == pytest.approx(1.0)

    unseeded = RiskCalculator.drawdowns([990.0, 1010.0, 1000.0])
    assert unseeded.max_drawdown == pytest.approx(10.0)
    assert unseeded.max_drawdown_pct == pytest.approx(10.0 / 1010.0 * 100)

    m = calculate_metrics([make_trade(10.0)], equity_curve=[990.0, 1010.0], initial_capital=1000.0)
    assert m.max_drawdown == pytest.approx(10.0)


def test_drawdown_peak_is_running_max():
    stats = RiskCalculator.drawdowns([100.0, 80.0, 150.0, 90.0, 160.0])
    assert stats.max_drawdown == pytest.approx(60.0)
    assert stats.max_drawdown_pct == pytest.approx(40.0)
    assert stats.avg_drawdown_pct == pytest.approx((20.0 + 40.0) / 2)


def test_profit_factor_edges():
    assert TradeAnalyzer.profit_factor(0.0, 0.0) == 0.0
    assert math.isinf(TradeAnalyzer.profit_factor(10.0, 0.0))
    assert TradeAnalyzer.profit_factor(10.0, 5.0) == pytest.approx(2.0)


class TestRiskAdjusted:

    def test_sharpe_uses_sample_deviation(self):
        returns = [1.0, 2.0, 3.0]
        expected = (2.0 - 0.02 / 252) / 1.0 * math.sqrt(252)
        assert RiskAdjustedCalculator.sharpe(returns) == pytest.approx(expected)

    def test_sharpe_zero_without_dispersion(self):
        assert RiskAdjustedCalculator.sharpe([1.0, 1.0, 1.0]) == 0.0

    def test_sortino_infinite_without_downside(self):
        assert math.isinf(RiskAdjustedCalculator.sortino([1.0, 2.0, 3.0]))

    def test_sortino_downside_population_deviation(self):
        returns = [2.0, -1.0, -3.0]
        rf = 0.02 / 252
        downside = math.sqrt(((-1.0 - rf) ** 2 + (-3.0 - rf) ** 2) / 2)
        expected = ((-2.0 / 3) - rf) / downside * math.sqrt(252)
        assert RiskAdjustedCalculator.sortino(returns) == pytest.approx(expected)

    def test_annualization_is_a_parameter(self):
        returns = [1.0, 2.0, 3.0]
        daily = RiskAdjustedCalculator.sharpe(returns, 0.0, 252)
        crypto = RiskAdjustedCalculator.sharpe(returns, 0.0, 365)
        assert crypto / daily == pytest.approx(math.sqrt(365 / 252))


def test_return_shape_statistics(trades_ten):
    m = calculate_metrics(trades_ten, initial_capital=10000.0)
    assert math.isfinite(m.return_skewness)
    assert math.isfinite(m.return_kurtosis)
    short = calculate_metrics(trades_ten[:2], initial_capital=10000.0)
    assert short.return_skewness == 0.0
