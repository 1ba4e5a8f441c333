"""Tests for the backtest simulator, background jobs and the diagnostics pipeline."""

from __future__ import annotations

import threading
import time
from datetime import datetime

import pytest

from crypto_signals.backtest_engine import (
    BacktestConfig,
    BacktestErrorKind,
    BacktestJob,
    BacktestPipeline,
    BacktestRun,
    BacktestSimulator,
    BacktestStatus,
    TradeSide,
    format_backtest_report,
    run_backtest,
)
from crypto_signals.candle_store import InMemoryCandleStore
from crypto_signals.exceptions import InvalidConfigError, InvalidStateTransition, StrategyNotFoundError
from crypto_signals.strategies import STRATEGY_IDS, MacdRsiStrategy, SignalType, StrategyEvaluator
from crypto_signals.validation import MonteCarloSimulator

from conftest import linear_frame, make_signal

INITIAL = 10000.0
FEE = 0.1
SLIP = 0.05
WARMUP = 5


class ScriptedEvaluator(StrategyEvaluator):
    """
    Emits a fixed direction on chosen bars of a ``linear_frame`` series.

    Bars are identified by their close (100 + bar index), so the script is
    independent of the lookback window handed over by the simulator.
    """

    info = MacdRsiStrategy.info

    def __init__(self, script=None, on_call=None):
        super().__init__()
        self.script = script or {}
        self.on_call = on_call
        self.calls = 0

    def evaluate(self, symbol, timeframe, candles, readings=None):
        self.calls += 1
        if self.on_call is not None:
            self.on_call(self)
        close = float(candles["close"].iloc[-1])
        direction = self.script.get(int(round(close - 100.0)))
        if direction is None:
            return None
        return make_signal(direction, price=close, strategy_id=self.id)


def _simulator(evaluator, frame=None):
    store = InMemoryCandleStore()
    store.add_candles("BTCUSDT", "1h", frame if frame is not None else linear_frame(20))
    return BacktestSimulator(store, registry={"MACD_RSI": evaluator})


def _config(**overrides):
    params = dict(
        strategy_id="MACD_RSI",
        symbol="BTCUSDT",
        timeframe="1h",
        initial_capital=INITIAL,
        fee_percent=FEE,
        slippage_percent=SLIP,
        warmup=WARMUP,
        lookback=5,
    )
    params.update(overrides)
    return BacktestConfig(**params)


SCRIPT = {
    6: SignalType.BUY,
    8: SignalType.BUY,     # already holding
    10: SignalType.SELL,
    12: SignalType.SELL,   # already flat
    15: SignalType.BUY,    # still open at the end
}


@pytest.fixture
def scripted_run():
    return _simulator(ScriptedEvaluator(SCRIPT)).run(_config())


# =============================================================================
# Replay accounting
# =============================================================================

class TestReplay:

    def test_fill_sequence(self, scripted_run):
        run = scripted_run
        assert run.status == BacktestStatus.COMPLETED
        assert [t.side for t in run.trades] == [TradeSide.BUY, TradeSide.SELL, TradeSide.BUY, TradeSide.SELL]
        assert [t.price for t in run.trades] == [106.0, 110.0, 115.0, 119.0]
        assert [t.trade_id for t in run.trades] == [1, 2, 3, 4]
        assert len(run.closed_trades) == 2

    def test_entry_costs(self, scripted_run):
        buy = scripted_run.trades[0]
        allocation = INITIAL * 0.95
        assert buy.fee == pytest.approx(allocation * FEE / 100)
        assert buy.slippage == pytest.approx(allocation * SLIP / 100)
        assert buy.quantity == pytest.approx((allocation - buy.fee - buy.slippage) / 106.0)
        assert buy.balance_after == pytest.approx(INITIAL - allocation)

    def test_exit_proceeds_and_pnl(self, scripted_run):
        buy, sell = scripted_run.trades[:2]
        gross = buy.quantity * 110.0
        proceeds = gross * (1 - (FEE + SLIP) / 100)
        assert sell.total == pytest.approx(proceeds)
        assert sell.balance_after == pytest.approx(INITIAL * 0.05 + proceeds)

        trade = scripted_run.closed_trades[0]
        assert trade.cost_basis == pytest.approx(INITIAL * 0.95)
        assert trade.pnl == pytest.approx(proceeds - INITIAL * 0.95)
        assert trade.fees == pytest.approx(buy.fee + buy.slippage + sell.fee + sell.slippage)

    def test_open_position_force_closed(self, scripted_run):
        last = scripted_run.trades[-1]
        assert last.rationale == "End of backtest period"
        assert scripted_run.closed_trades[-1].exit_reason == "End of backtest period"
        assert scripted_run.open_position is None

    def test_final_capital_matches_ledger(self, scripted_run):
        run = scripted_run
        total_pnl = sum(t.pnl for t in run.closed_trades)
        assert run.final_capital == pytest.approx(INITIAL + total_pnl)
        assert run.metrics.final_capital == pytest.approx(run.final_capital)
        assert run.metrics.total_trades == 2

    def test_equity_curve_marks_to_market(self, scripted_run):
        run = scripted_run
        assert len(run.equity_curve) == 20 - WARMUP
        assert len(run.drawdown_curve) == len(run.equity_curve)

        quantity = run.trades[0].quantity
        for point in run.equity_curve:
            assert point.equity == pytest.approx(point.cash + point.position_value)
            assert point.total_return == pytest.approx(point.equity - INITIAL)

        # Bars 6..9 hold the first position
        for bar in range(6, 10):
            point = run.equity_curve[bar - WARMUP]
            assert point.position_value == pytest.approx(quantity * (100.0 + bar))

        # Flat bars hold only cash
        flat = run.equity_curve[12 - WARMUP]
        assert flat.position_value == 0.0
        assert flat.equity == pytest.approx(run.trades[1].balance_after)

    def test_drawdown_curve(self, scripted_run):
        peaks = [d.peak for d in scripted_run.drawdown_curve]
        assert peaks == sorted(peaks)
        assert peaks[0] >= INITIAL
        for point, dd in zip(scripted_run.equity_curve, scripted_run.drawdown_curve):
            assert dd.drawdown >= 0
            assert dd.drawdown == pytest.approx(dd.peak - point.equity)

    def test_entry_costs_show_as_drawdown(self, scripted_run):
        entry_bar = scripted_run.drawdown_curve[6 - WARMUP]
        buy = scripted_run.trades[0]
        assert entry_bar.drawdown == pytest.approx(buy.fee + buy.slippage)

    def test_metrics_drawdown_matches_curve(self):
        # Entry on the first replayed bar: the only dip is the entry cost
        run = _simulator(ScriptedEvaluator({WARMUP: SignalType.BUY})).run(_config())
        buy = run.trades[0]
        curve_max = max(d.drawdown for d in run.drawdown_curve)
        assert curve_max == pytest.approx(buy.fee + buy.slippage)
        assert run.metrics.max_drawdown == pytest.approx(curve_max)
        assert run.metrics.max_drawdown_pct == pytest.approx(max(d.drawdown_pct for d in run.drawdown_curve))
        assert run.metrics.calmar_ratio > 0

    def test_curve_ends_at_final_capital_after_close_out(self, scripted_run):
        last = scripted_run.equity_curve[-1]
        assert last.position_value == 0.0
        assert last.equity == pytest.approx(scripted_run.final_capital)
        assert last.cash == pytest.approx(scripted_run.trades[-1].balance_after)
        assert scripted_run.drawdown_curve[-1].timestamp == last.timestamp

    def test_buy_and_hold_from_warmup_bar(self, scripted_run):
        assert scripted_run.buy_and_hold_return_pct == pytest.approx((119.0 / 105.0 - 1) * 100)

    def test_window_respects_lookback(self):
        sizes = []
        evaluator = ScriptedEvaluator()
        original = evaluator.evaluate

        def spy(symbol, timeframe, candles, readings=None):
            sizes.append(len(candles))
            return original(symbol, timeframe, candles, readings)

        evaluator.evaluate = spy
        _simulator(evaluator).run(_config(warmup=2, lookback=4))
        assert sizes[0] == 3
        assert set(sizes[1:]) == {4}

    def test_equity_frame(self, scripted_run):
        frame = scripted_run.equity_frame()
        assert len(frame) == len(scripted_run.equity_curve)
        assert {"equity", "cash", "peak", "drawdown_pct"} <= set(frame.columns)


# =============================================================================
# Lifecycle
# =============================================================================

class TestLifecycle:

    def test_status_callbacks(self):
        seen = []
        _simulator(ScriptedEvaluator(SCRIPT)).run(_config(), on_status=lambda r: seen.append(r.status))
        assert seen == [BacktestStatus.PENDING, BacktestStatus.RUNNING, BacktestStatus.COMPLETED]

    def test_failing_status_callback_does_not_stall_run(self):
        seen = []

        def persist(run):
            seen.append(run.status)
            raise RuntimeError("persistence down")

        run = _simulator(ScriptedEvaluator(SCRIPT)).run(_config(), on_status=persist)
        assert run.status == BacktestStatus.COMPLETED
        assert run.metrics is not None
        assert seen == [BacktestStatus.PENDING, BacktestStatus.RUNNING, BacktestStatus.COMPLETED]

    def test_failing_status_callback_in_job(self):
        def persist(run):
            raise RuntimeError("persistence down")

        job = BacktestJob(_simulator(ScriptedEvaluator(SCRIPT)), _config(), on_status=persist).start()
        assert job.wait(timeout=10)
        assert job.status == BacktestStatus.COMPLETED

    def test_metrics_error_fails_run(self, monkeypatch):
        def broken_metrics(*args, **kwargs):
            raise ValueError("metrics exploded")

        monkeypatch.setattr("crypto_signals.backtest_engine.calculate_metrics", broken_metrics)
        run = _simulator(ScriptedEvaluator(SCRIPT)).run(_config())
        assert run.status == BacktestStatus.FAILED
        assert run.error_kind == BacktestErrorKind.EVALUATION_ERROR
        assert run.metrics is None
        assert "metrics exploded" in run.error_message

    def test_series_not_exceeding_warmup_completes_without_trades(self):
        run = _simulator(ScriptedEvaluator({1: SignalType.BUY}), linear_frame(5)).run(_config())
        assert run.status == BacktestStatus.COMPLETED
        assert run.trades == []
        assert run.equity_curve == []
        assert run.metrics.total_trades == 0
        assert run.final_capital == INITIAL

    def test_no_data_fails(self):
        simulator = BacktestSimulator(InMemoryCandleStore(), registry={"MACD_RSI": ScriptedEvaluator()})
        run = simulator.run(_config())
        assert run.status == BacktestStatus.FAILED
        assert run.error_kind == BacktestErrorKind.NO_HISTORICAL_DATA
        assert run.metrics is None
        assert run.candles_loaded == 0

    def test_range_outside_data_fails(self):
        run = _simulator(ScriptedEvaluator()).run(
            _config(start=datetime(2030, 1, 1), end=datetime(2030, 2, 1))
        )
        assert run.error_kind == BacktestErrorKind.NO_HISTORICAL_DATA

    def test_unknown_strategy_raises_before_run(self):
        simulator = _simulator(ScriptedEvaluator())
        with pytest.raises(StrategyNotFoundError):
            simulator.run(_config(strategy_id="NOT_A_STRATEGY"))

    def test_evaluator_error_fails_run(self):
        def explode(_):
            raise RuntimeError("indicator exploded")

        run = _simulator(ScriptedEvaluator(on_call=explode)).run(_config())
        assert run.status == BacktestStatus.FAILED
        assert run.error_kind == BacktestErrorKind.EVALUATION_ERROR
        assert "indicator exploded" in run.error_message

    def test_cancellation_keeps_prefix(self):
        cancel = threading.Event()

        def cancel_on_third(evaluator):
            if evaluator.calls == 3:
                cancel.set()

        run = _simulator(ScriptedEvaluator({6: SignalType.BUY}, on_call=cancel_on_third)).run(
            _config(), cancel_event=cancel
        )
        assert run.status == BacktestStatus.FAILED
        assert run.error_kind == BacktestErrorKind.CANCELLED
        assert len(run.equity_curve) == 3
        assert run.metrics is None
        # Bought on the second bar; the position is not force-closed
        assert [t.side for t in run.trades] == [TradeSide.BUY]
        assert run.open_position is not None

    def test_timeout(self):
        def slow(_):
            time.sleep(0.05)

        run = _simulator(ScriptedEvaluator(on_call=slow)).run(_config(), timeout=0.01)
        assert run.status == BacktestStatus.FAILED
        assert run.error_kind == BacktestErrorKind.TIMEOUT
        assert len(run.equity_curve) < 20 - WARMUP
        assert run.finished_at is not None

    def test_transitions_only_move_forward(self):
        run = BacktestRun(config=_config())
        with pytest.raises(InvalidStateTransition):
            run.transition(BacktestStatus.COMPLETED)
        run.transition(BacktestStatus.RUNNING)
        assert run.started_at is not None
        run.transition(BacktestStatus.COMPLETED)
        assert run.is_terminal
        assert run.duration_seconds >= 0
        with pytest.raises(InvalidStateTransition):
            run.transition(BacktestStatus.RUNNING)
        with pytest.raises(InvalidStateTransition):
            run.transition(BacktestStatus.FAILED)

    @pytest.mark.parametrize("overrides", [
        {"initial_capital": 50.0},
        {"fee_percent": -0.1},
        {"slippage_percent": 100.0},
        {"fee_percent": 60.0, "slippage_percent": 40.0},
        {"warmup": 0},
        {"lookback": 0},
        {"start": datetime(2024, 2, 1), "end": datetime(2024, 1, 1)},
        {"periods_per_year": 0},
    ])
    def test_config_validation(self, overrides):
        with pytest.raises(InvalidConfigError):
            _config(**overrides)


# =============================================================================
# Background jobs
# =============================================================================

class TestBacktestJob:

    def test_job_completes(self):
        job = BacktestJob(_simulator(ScriptedEvaluator(SCRIPT)), _config()).start()
        assert job.wait(timeout=10)
        assert job.status == BacktestStatus.COMPLETED
        assert job.result is job.run
        assert len(job.result.closed_trades) == 2

    def test_job_cancel(self):
        def slow(_):
            time.sleep(0.01)

        simulator = _simulator(ScriptedEvaluator(on_call=slow), linear_frame(500))
        job = BacktestJob(simulator, _config())
        assert job.result is None
        job.start()
        job.cancel()
        assert job.wait(timeout=10)
        assert job.status == BacktestStatus.FAILED
        assert job.result.error_kind == BacktestErrorKind.CANCELLED

    def test_job_rejects_unknown_strategy(self):
        with pytest.raises(StrategyNotFoundError):
            BacktestJob(_simulator(ScriptedEvaluator()), _config(strategy_id="UNKNOWN"))


# =============================================================================
# Pipeline, report and convenience entry point
# =============================================================================

class TestPipeline:

    def test_diagnostics_for_completed_run(self):
        pipeline = BacktestPipeline(_simulator(ScriptedEvaluator(SCRIPT)), n_simulations=200, horizon=20, seed=5)
        result = pipeline.run(_config())
        assert result.run.status == BacktestStatus.COMPLETED
        assert result.monte_carlo is not None
        assert result.monte_carlo.n_simulations == 200
        assert result.walk_forward is not None
        assert result.walk_forward.split_index == 1

    def test_no_diagnostics_for_failed_run(self):
        simulator = BacktestSimulator(InMemoryCandleStore(), registry={"MACD_RSI": ScriptedEvaluator()})
        result = BacktestPipeline(simulator, n_simulations=50, horizon=5).run(_config())
        assert result.run.status == BacktestStatus.FAILED
        assert result.monte_carlo is None
        assert result.walk_forward is None

    def test_diagnostics_can_be_disabled(self):
        pipeline = BacktestPipeline(
            _simulator(ScriptedEvaluator(SCRIPT)), run_monte_carlo=False, run_walk_forward=False
        )
        result = pipeline.run(_config())
        assert result.monte_carlo is None
        assert result.walk_forward is None


def test_report_for_completed_run(scripted_run):
    mc = MonteCarloSimulator(n_simulations=100, horizon=10, seed=1).simulate(scripted_run.closed_trades, INITIAL)
    report = format_backtest_report(scripted_run, monte_carlo=mc)
    assert "BACKTEST PERFORMANCE REPORT" in report
    assert "COMPLETED" in report
    assert "Win Rate" in report
    assert "MONTE CARLO" in report
    assert "WALK-FORWARD" not in report


def test_report_for_failed_run():
    simulator = BacktestSimulator(InMemoryCandleStore(), registry={"MACD_RSI": ScriptedEvaluator()})
    report = format_backtest_report(simulator.run(_config()))
    assert "FAILED" in report
    assert "NO_HISTORICAL_DATA" in report
    assert "CAPITAL" not in report


@pytest.mark.parametrize("strategy_id", STRATEGY_IDS)
def test_run_backtest_every_strategy(synthetic_candles, strategy_id):
    run = run_backtest(synthetic_candles, strategy_id, initial_capital=INITIAL)

    assert run.status == BacktestStatus.COMPLETED
    assert run.config.symbol == "BTCUSDT"
    assert len(run.equity_curve) == len(synthetic_candles) - run.config.warmup

    sides = [t.side for t in run.trades]
    assert sides[::2] == [TradeSide.BUY] * len(sides[::2])
    assert sides[1::2] == [TradeSide.SELL] * len(sides[1::2])
    assert len(sides) % 2 == 0
    assert len(run.closed_trades) == len(sides) // 2

    assert run.final_capital == pytest.approx(INITIAL + sum(t.pnl for t in run.closed_trades))
    assert all(d.drawdown >= 0 for d in run.drawdown_curve)
    assert run.metrics.total_trades == len(run.closed_trades)
    assert run.equity_curve[-1].equity == pytest.approx(run.final_capital)
    assert run.metrics.max_drawdown == pytest.approx(max(d.drawdown for d in run.drawdown_curve))
