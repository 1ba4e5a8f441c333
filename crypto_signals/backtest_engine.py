"""
Backtest Simulator: bar-by-bar replay of one strategy over history

Replays a candle series through a single strategy evaluator, tracking
cash, at most one open long position, and mark-to-market equity. Produces
an append-only fill ledger, paired round-trip trades, aligned equity and
drawdown curves, and (on completion) the performance metrics bundle.

RUN LIFECYCLE
    PENDING -> RUNNING -> COMPLETED
                       -> FAILED   (no data, evaluation error, cancelled,
                                    timed out)

    A strategy id that does not resolve is rejected before any run exists.
    A series shorter than the warm-up completes with zero trades. Cancelled
    and timed-out runs keep the ledger and curves of the completed prefix
    but carry no metrics.

EXECUTION MODEL
    For each bar at or after the warm-up index the strategy sees the last
    ``lookback`` bars up to and including the current one. Fills happen at
    the bar close:

        BUY  (flat, cash > 0)
            allocation = 95% of cash
            fee        = allocation x fee%
            slippage   = allocation x slippage%
            quantity   = (allocation - fee - slippage) / close
            cash      -= allocation

        SELL (holding)
            gross      = quantity x close
            cash      += gross - fee% x gross - slippage% x gross

    Any position still open after the last bar is closed at the last close
    with the same costs, and that bar's points are recorded after the
    close, so the curve ends at the final capital.

    One EquityPoint (cash + quantity x close) and one DrawdownPoint
    (running peak - equity, peak seeded with the initial capital) are
    recorded per processed bar.

CONCURRENCY
    The replay is synchronous. Cancellation (threading.Event) and the
    caller's timeout are checked at every bar boundary; BacktestJob runs a
    replay on a background thread and exposes a pollable status.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

import numpy as np
import pandas as pd

from .candle_store import CandleStore, InMemoryCandleStore
from .config import Config
from .exceptions import (
    BacktestCancelledError,
    BacktestTimeoutError,
    DataValidationError,
    InvalidConfigError,
    InvalidStateTransition,
    NoHistoricalDataError,
)
from .performance_metrics import BacktestMetrics, ClosedTrade, calculate_metrics
from .strategies import STRATEGY_REGISTRY, SignalType, StrategyEvaluator, get_strategy
from .validation import MonteCarloResult, MonteCarloSimulator, WalkForwardResult, walk_forward

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# =============================================================================
# SECTION 1: ENUMERATIONS
# =============================================================================

class BacktestStatus(Enum):
    """Run lifecycle status."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (BacktestStatus.COMPLETED, BacktestStatus.FAILED)


_ALLOWED_TRANSITIONS: Dict[BacktestStatus, tuple] = {
    BacktestStatus.PENDING: (BacktestStatus.RUNNING,),
    BacktestStatus.RUNNING: (BacktestStatus.COMPLETED, BacktestStatus.FAILED),
    BacktestStatus.COMPLETED: (),
    BacktestStatus.FAILED: (),
}


class BacktestErrorKind(Enum):
    """Why a run failed."""
    NO_HISTORICAL_DATA = "NO_HISTORICAL_DATA"
    DATA_ERROR = "DATA_ERROR"
    EVALUATION_ERROR = "EVALUATION_ERROR"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"


class TradeSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


# =============================================================================
# SECTION 2: DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class BacktestConfig:
    """
    Externally tunable run inputs. Immutable once a run starts.

    fee_percent and slippage_percent are in percent units (0.1 == 0.1%).
    """
    strategy_id: str
    symbol: str
    timeframe: str = Config.DEFAULT_TIMEFRAME
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    initial_capital: float = Config.DEFAULT_INITIAL_CAPITAL
    fee_percent: float = Config.FEE_PERCENT
    slippage_percent: float = Config.SLIPPAGE_PERCENT
    warmup: int = Config.WARMUP_BARS
    lookback: int = Config.LOOKBACK_BARS
    risk_free_rate: float = Config.RISK_FREE_RATE
    periods_per_year: float = Config.PERIODS_PER_YEAR

    def __post_init__(self):
        if self.initial_capital < Config.MIN_INITIAL_CAPITAL:
            raise InvalidConfigError(
                f"Initial capital must be at least {Config.MIN_INITIAL_CAPITAL:,.0f}, "
                f"got {self.initial_capital:,.2f}"
            )
        if not 0 <= self.fee_percent < 100 or not 0 <= self.slippage_percent < 100:
            raise InvalidConfigError("Fee and slippage must be in [0, 100) percent")
        if self.fee_percent + self.slippage_percent >= 100:
            raise InvalidConfigError("Combined fee and slippage must be below 100 percent")
        if self.warmup < 1 or self.lookback < 1:
            raise InvalidConfigError("Warm-up and lookback must be positive")
        if self.start is not None and self.end is not None and self.start > self.end:
            raise InvalidConfigError("Start date is after end date")
        if self.periods_per_year <= 0:
            raise InvalidConfigError("Annualization factor must be positive")


@dataclass(frozen=True)
class TradeRecord:
    """One simulated fill. ``total`` is the net cash value of the fill."""
    trade_id: int
    timestamp: datetime
    side: TradeSide
    price: float
    quantity: float
    fee: float
    slippage: float
    total: float
    balance_after: float
    rationale: str = ""


@dataclass
class Position:
    """Open long position (simulator-internal)."""
    quantity: float
    entry_price: float
    entry_time: datetime
    cost_basis: float
    entry_costs: float


@dataclass(frozen=True)
class EquityPoint:
    timestamp: datetime
    equity: float
    cash: float
    position_value: float
    total_return: float
    total_return_pct: float


@dataclass(frozen=True)
class DrawdownPoint:
    timestamp: datetime
    peak: float
    drawdown: float
    drawdown_pct: float


@dataclass
class BacktestRun:
    """
    Aggregate root for one backtest.

    Mutated only by the simulator that owns it; immutable once terminal.
    """
    config: BacktestConfig
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: BacktestStatus = BacktestStatus.PENDING
    trades: List[TradeRecord] = field(default_factory=list)
    closed_trades: List[ClosedTrade] = field(default_factory=list)
    equity_curve: List[EquityPoint] = field(default_factory=list)
    drawdown_curve: List[DrawdownPoint] = field(default_factory=list)
    metrics: Optional[BacktestMetrics] = None
    final_capital: Optional[float] = None
    buy_and_hold_return_pct: float = 0.0
    candles_loaded: int = 0
    open_position: Optional[Position] = None
    error_kind: Optional[BacktestErrorKind] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def transition(self, new_status: BacktestStatus) -> None:
        """Move to ``new_status``; only forward transitions are allowed."""
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStateTransition(self.status.value, new_status.value)
        self.status = new_status
        if new_status == BacktestStatus.RUNNING:
            self.started_at = datetime.now()
        elif new_status.is_terminal:
            self.finished_at = datetime.now()

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def equity_frame(self) -> pd.DataFrame:
        """Equity and drawdown curves as one time-indexed frame."""
        if not self.equity_curve:
            return pd.DataFrame(columns=['equity', 'cash', 'position_value', 'peak', 'drawdown', 'drawdown_pct'])
        return pd.DataFrame(
            {
                'equity': [p.equity for p in self.equity_curve],
                'cash': [p.cash for p in self.equity_curve],
                'position_value': [p.position_value for p in self.equity_curve],
                'peak': [d.peak for d in self.drawdown_curve],
                'drawdown': [d.drawdown for d in self.drawdown_curve],
                'drawdown_pct': [d.drawdown_pct for d in self.drawdown_curve],
            },
            index=pd.DatetimeIndex([p.timestamp for p in self.equity_curve], name='timestamp'),
        )


StatusCallback = Callable[[BacktestRun], None]


# =============================================================================
# SECTION 3: SIMULATOR
# =============================================================================

class BacktestSimulator:
    """
    Single-asset, long-only replay engine.

    Args:
        store: Candle source supporting bounded-range queries
        registry: Strategy evaluators keyed by id (defaults to all five)
    """

    def __init__(
        self,
        store: CandleStore,
        registry: Optional[Dict[str, StrategyEvaluator]] = None
    ):
        self.store = store
        self.registry = registry if registry is not None else STRATEGY_REGISTRY

    def create_run(self, config: BacktestConfig) -> BacktestRun:
        """
        Validate the strategy and create a PENDING run.

        Raises:
            StrategyNotFoundError: Unknown strategy id
        """
        get_strategy(config.strategy_id, self.registry)
        return BacktestRun(config=config)

    def run(
        self,
        config: BacktestConfig,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
        on_status: Optional[StatusCallback] = None
    ) -> BacktestRun:
        """
        Create and execute a run synchronously.

        Args:
            config: Run inputs
            cancel_event: Set to request cancellation at the next bar
            timeout: Wall-clock limit in seconds
            on_status: Called with the run after every status change

        Returns:
            Terminal BacktestRun

        Raises:
            StrategyNotFoundError: Unknown strategy id (no run is created)
        """
        run = self.create_run(config)
        self._notify(run, on_status)
        return self.execute(run, cancel_event, timeout, on_status)

    def execute(
        self,
        run: BacktestRun,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
        on_status: Optional[StatusCallback] = None
    ) -> BacktestRun:
        """Drive a PENDING run to a terminal status."""
        config = run.config
        strategy = get_strategy(config.strategy_id, self.registry)
        deadline = time.monotonic() + timeout if timeout is not None else None

        self._transition(run, BacktestStatus.RUNNING, on_status)
        logger.info(
            f"Backtest {run.run_id} started: {strategy.id} on {config.symbol} {config.timeframe}"
        )

        try:
            candles = self.store.get_candles(config.symbol, config.timeframe, config.start, config.end)
            run.candles_loaded = len(candles)
            if len(candles) == 0:
                raise NoHistoricalDataError(config.symbol, config.timeframe)
            self._replay(run, strategy, candles, cancel_event, deadline, timeout)
            run.metrics = calculate_metrics(
                run.closed_trades,
                run.equity_curve,
                initial_capital=config.initial_capital,
                risk_free_rate=config.risk_free_rate,
                periods_per_year=config.periods_per_year,
            )
        except NoHistoricalDataError as e:
            return self._fail(run, BacktestErrorKind.NO_HISTORICAL_DATA, e, on_status)
        except BacktestCancelledError as e:
            return self._fail(run, BacktestErrorKind.CANCELLED, e, on_status)
        except BacktestTimeoutError as e:
            return self._fail(run, BacktestErrorKind.TIMEOUT, e, on_status)
        except DataValidationError as e:
            return self._fail(run, BacktestErrorKind.DATA_ERROR, e, on_status)
        except Exception as e:
            logger.exception(f"Backtest {run.run_id} evaluation error")
            return self._fail(run, BacktestErrorKind.EVALUATION_ERROR, e, on_status)

        self._transition(run, BacktestStatus.COMPLETED, on_status)
        logger.info(
            f"Backtest {run.run_id} completed: {len(run.closed_trades)} trades, "
            f"win rate {run.metrics.win_rate:.2f}%, return {run.metrics.total_return_pct:+.2f}%"
        )
        return run

    # -------------------------------------------------------------------------
    # Replay
    # -------------------------------------------------------------------------

    def _replay(
        self,
        run: BacktestRun,
        strategy: StrategyEvaluator,
        candles: pd.DataFrame,
        cancel_event: Optional[threading.Event],
        deadline: Optional[float],
        timeout: Optional[float]
    ) -> None:
        config = run.config
        closes = candles['close'].to_numpy(dtype=float)
        timestamps = [ts.to_pydatetime() for ts in candles.index]
        n = len(candles)

        cash = config.initial_capital
        peak = config.initial_capital
        position: Optional[Position] = None
        fee_rate = config.fee_percent / 100.0
        slip_rate = config.slippage_percent / 100.0

        if n <= config.warmup:
            logger.info(
                f"Backtest {run.run_id}: {n} candles do not exceed warm-up of {config.warmup}; no trades"
            )
            run.final_capital = cash
            return

        run.buy_and_hold_return_pct = (closes[-1] / closes[config.warmup] - 1) * 100

        for i in range(config.warmup, n):
            if cancel_event is not None and cancel_event.is_set():
                run.open_position = position
                run.final_capital = cash
                raise BacktestCancelledError()
            if deadline is not None and time.monotonic() > deadline:
                run.open_position = position
                run.final_capital = cash
                raise BacktestTimeoutError(timeout)

            window = candles.iloc[max(0, i + 1 - config.lookback):i + 1]
            signal = strategy.evaluate(config.symbol, config.timeframe, window)
            price = closes[i]
            ts = timestamps[i]

            if signal is not None and signal.direction == SignalType.BUY and position is None and cash > 0:
                allocation = cash * Config.POSITION_ALLOCATION
                fee = allocation * fee_rate
                slippage = allocation * slip_rate
                quantity = (allocation - fee - slippage) / price
                cash -= allocation
                position = Position(quantity, price, ts, allocation, fee + slippage)
                run.trades.append(TradeRecord(
                    trade_id=len(run.trades) + 1,
                    timestamp=ts,
                    side=TradeSide.BUY,
                    price=price,
                    quantity=quantity,
                    fee=fee,
                    slippage=slippage,
                    total=quantity * price,
                    balance_after=cash,
                    rationale=signal.rationale,
                ))
                logger.debug(f"{ts} BUY {quantity:.6f} @ {price:.2f}")

            elif signal is not None and signal.direction == SignalType.SELL and position is not None:
                cash = self._close_position(run, position, price, ts, cash, fee_rate, slip_rate, signal.rationale)
                position = None

            position_value = position.quantity * price if position is not None else 0.0
            peak = self._mark(run, ts, cash, position_value, peak)

        if position is not None:
            cash = self._close_position(
                run, position, closes[-1], timestamps[-1], cash, fee_rate, slip_rate,
                "End of backtest period"
            )
            # The last bar is re-marked after the close-out so the curve ends at final capital
            run.equity_curve.pop()
            run.drawdown_curve.pop()
            prior_peak = run.drawdown_curve[-1].peak if run.drawdown_curve else config.initial_capital
            self._mark(run, timestamps[-1], cash, 0.0, prior_peak)
        run.open_position = None
        run.final_capital = cash

    @staticmethod
    def _mark(run: BacktestRun, ts: datetime, cash: float, position_value: float, peak: float) -> float:
        """Append the equity and drawdown points for one bar; return the updated peak."""
        initial = run.config.initial_capital
        equity = cash + position_value
        peak = max(peak, equity)
        drawdown = peak - equity

        run.equity_curve.append(EquityPoint(
            timestamp=ts,
            equity=equity,
            cash=cash,
            position_value=position_value,
            total_return=equity - initial,
            total_return_pct=(equity - initial) / initial * 100,
        ))
        run.drawdown_curve.append(DrawdownPoint(
            timestamp=ts,
            peak=peak,
            drawdown=drawdown,
            drawdown_pct=drawdown / peak * 100 if peak > 0 else 0.0,
        ))
        return peak

    @staticmethod
    def _close_position(
        run: BacktestRun,
        position: Position,
        price: float,
        ts: datetime,
        cash: float,
        fee_rate: float,
        slip_rate: float,
        rationale: str
    ) -> float:
        """Sell the whole position, append the fill and its round trip, return new cash."""
        gross = position.quantity * price
        fee = gross * fee_rate
        slippage = gross * slip_rate
        proceeds = gross - fee - slippage
        cash += proceeds

        run.trades.append(TradeRecord(
            trade_id=len(run.trades) + 1,
            timestamp=ts,
            side=TradeSide.SELL,
            price=price,
            quantity=position.quantity,
            fee=fee,
            slippage=slippage,
            total=proceeds,
            balance_after=cash,
            rationale=rationale,
        ))
        pnl = proceeds - position.cost_basis
        run.closed_trades.append(ClosedTrade(
            trade_id=len(run.closed_trades) + 1,
            entry_time=position.entry_time,
            exit_time=ts,
            entry_price=position.entry_price,
            exit_price=price,
            quantity=position.quantity,
            cost_basis=position.cost_basis,
            proceeds=proceeds,
            fees=position.entry_costs + fee + slippage,
            pnl=pnl,
            pnl_percent=pnl / position.cost_basis * 100 if position.cost_basis > 0 else 0.0,
            exit_reason=rationale,
        ))
        logger.debug(f"{ts} SELL {position.quantity:.6f} @ {price:.2f} pnl {pnl:+.2f}")
        return cash

    # -------------------------------------------------------------------------
    # Status helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _notify(run: BacktestRun, on_status: Optional[StatusCallback]) -> None:
        """Invoke the status callback; its failures never affect the run."""
        if on_status is None:
            return
        try:
            on_status(run)
        except Exception:
            logger.exception(f"Status callback failed for backtest {run.run_id} ({run.status.value})")

    def _transition(self, run: BacktestRun, status: BacktestStatus, on_status: Optional[StatusCallback]) -> None:
        run.transition(status)
        self._notify(run, on_status)

    def _fail(
        self,
        run: BacktestRun,
        kind: BacktestErrorKind,
        error: Exception,
        on_status: Optional[StatusCallback]
    ) -> BacktestRun:
        """Mark a run FAILED, keeping whatever prefix was simulated."""
        run.error_kind = kind
        run.error_message = str(error)
        run.metrics = None
        self._transition(run, BacktestStatus.FAILED, on_status)
        logger.warning(f"Backtest {run.run_id} failed ({kind.value}): {error}")
        return run


# =============================================================================
# SECTION 4: BACKGROUND JOB
# =============================================================================

class BacktestJob:
    """
    Cancellable background execution of one run.

    The run is created (and the strategy validated) on construction, so a
    bad strategy id raises immediately. ``status`` can be polled from any
    thread; ``cancel()`` takes effect at the next bar boundary.
    """

    def __init__(
        self,
        simulator: BacktestSimulator,
        config: BacktestConfig,
        timeout: Optional[float] = None,
        on_status: Optional[StatusCallback] = None
    ):
        self.simulator = simulator
        self.timeout = timeout
        self.on_status = on_status
        self.run = simulator.create_run(config)
        self._cancel = threading.Event()
        self._thread = threading.Thread(
            target=self._target, name=f"backtest-{self.run.run_id}", daemon=True
        )

    def _target(self) -> None:
        self.simulator.execute(self.run, self._cancel, self.timeout, self.on_status)

    def start(self) -> 'BacktestJob':
        self._thread.start()
        return self

    def cancel(self) -> None:
        self._cancel.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the run is terminal; False if ``timeout`` expired first."""
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def status(self) -> BacktestStatus:
        return self.run.status

    @property
    def result(self) -> Optional[BacktestRun]:
        """The run once terminal, else None."""
        return self.run if self.run.is_terminal else None


# =============================================================================
# SECTION 5: BACKTEST PIPELINE
# =============================================================================

@dataclass
class PipelineResult:
    run: BacktestRun
    monte_carlo: Optional[MonteCarloResult] = None
    walk_forward: Optional[WalkForwardResult] = None


class BacktestPipeline:
    """
    Backtest followed by Monte Carlo and walk-forward diagnostics.

    Diagnostics run only for completed runs with at least one closed trade
    and never change the run's status.
    """

    def __init__(
        self,
        simulator: BacktestSimulator,
        run_monte_carlo: bool = True,
        run_walk_forward: bool = True,
        n_simulations: int = Config.MC_N_SIMULATIONS,
        horizon: int = Config.MC_HORIZON,
        in_sample_ratio: float = Config.WF_IN_SAMPLE_RATIO,
        seed: Optional[int] = None
    ):
        self.simulator = simulator
        self.run_monte_carlo = run_monte_carlo
        self.run_walk_forward = run_walk_forward
        self.monte_carlo = MonteCarloSimulator(n_simulations=n_simulations, horizon=horizon, seed=seed)
        self.in_sample_ratio = in_sample_ratio

    def run(
        self,
        config: BacktestConfig,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
        on_status: Optional[StatusCallback] = None
    ) -> PipelineResult:
        run = self.simulator.run(config, cancel_event=cancel_event, timeout=timeout, on_status=on_status)
        result = PipelineResult(run=run)
        if run.status != BacktestStatus.COMPLETED or not run.closed_trades:
            return result

        if self.run_monte_carlo:
            result.monte_carlo = self.monte_carlo.simulate(run.closed_trades, config.initial_capital)
        if self.run_walk_forward:
            result.walk_forward = walk_forward(
                run.closed_trades,
                initial_capital=config.initial_capital,
                in_sample_ratio=self.in_sample_ratio,
                risk_free_rate=config.risk_free_rate,
                periods_per_year=config.periods_per_year,
            )
        return result


# =============================================================================
# SECTION 6: OUTPUT FORMATTING
# =============================================================================

def _ratio(value: float) -> str:
    return "inf" if np.isinf(value) else f"{value:.3f}"


def format_backtest_report(
    run: BacktestRun,
    monte_carlo: Optional[MonteCarloResult] = None,
    walk_forward_result: Optional[WalkForwardResult] = None
) -> str:
    """
    Format a run (plus optional diagnostics) as a plain-text report.

    Args:
        run: Terminal BacktestRun
        monte_carlo: Optional Monte Carlo result
        walk_forward_result: Optional walk-forward result

    Returns:
        Formatted string report
    """
    config = run.config
    lines = [
        "=" * 70,
        "BACKTEST PERFORMANCE REPORT",
        "=" * 70,
        f"Run ID:     {run.run_id}",
        f"Strategy:   {config.strategy_id}",
        f"Symbol:     {config.symbol} ({config.timeframe})",
        f"Status:     {run.status.value}",
        f"Candles:    {run.candles_loaded:,} loaded, {len(run.equity_curve):,} simulated",
        f"Costs:      fee {config.fee_percent:.3f}%, slippage {config.slippage_percent:.3f}%",
    ]
    if run.error_kind is not None:
        lines.append(f"Error:      {run.error_kind.value} - {run.error_message}")

    m = run.metrics
    if m is not None:
        lines += [
            "",
            "-" * 70,
            "CAPITAL",
            "-" * 70,
            f"Initial Capital:     ${config.initial_capital:,.2f}",
            f"Final Capital:       ${m.final_capital:,.2f}",
            f"Total Return:        {m.total_return_pct:+.2f}%",
            f"Buy & Hold Return:   {run.buy_and_hold_return_pct:+.2f}%",
            "",
            "-" * 70,
            "TRADES",
            "-" * 70,
            f"Total Trades:        {m.total_trades}",
            f"Win Rate:            {m.win_rate:.2f}% ({m.winning_trades}W / {m.losing_trades}L)",
            f"Profit Factor:       {_ratio(m.profit_factor)}",
            f"Average Win:         ${m.avg_win:,.2f}",
            f"Average Loss:        ${m.avg_loss:,.2f}",
            f"Expectancy:          ${m.expectancy:,.2f} ({m.expectancy_pct:+.3f}%)",
            f"Streaks:             {m.longest_win_streak} wins / {m.longest_loss_streak} losses",
            f"Avg Duration:        {m.avg_trade_duration_hours:.1f} hours",
            f"Total Fees:          ${m.total_fees:,.2f}",
            "",
            "-" * 70,
            "RISK",
            "-" * 70,
            f"Sharpe Ratio:        {_ratio(m.sharpe_ratio)}",
            f"Sortino Ratio:       {_ratio(m.sortino_ratio)}",
            f"Calmar Ratio:        {_ratio(m.calmar_ratio)}",
            f"Max Drawdown:        ${m.max_drawdown:,.2f} ({m.max_drawdown_pct:.2f}%)",
            f"Avg Drawdown:        {m.avg_drawdown_pct:.2f}%",
        ]

    if monte_carlo is not None and monte_carlo.n_simulations > 0:
        lines += [
            "",
            "-" * 70,
            f"MONTE CARLO ({monte_carlo.n_simulations:,} paths x {monte_carlo.horizon} trades)",
            "-" * 70,
        ]
        for p, value in sorted(monte_carlo.percentiles.items()):
            lines.append(f"  P{p:<3}               ${value:,.2f}")
        lines += [
            f"Expected Return:     {monte_carlo.expected_return_pct:+.2f}%",
            f"Probability of Ruin: {monte_carlo.probability_of_ruin:.2f}%",
        ]

    if walk_forward_result is not None:
        wf = walk_forward_result
        lines += [
            "",
            "-" * 70,
            f"WALK-FORWARD ({wf.in_sample_ratio:.0%} in-sample)",
            "-" * 70,
            f"In-Sample:           {wf.in_sample.n_trades} trades, "
            f"return {wf.in_sample.metrics.total_return_pct:+.2f}%, "
            f"Sharpe {_ratio(wf.in_sample.metrics.sharpe_ratio)}",
            f"Out-of-Sample:       {wf.out_sample.n_trades} trades, "
            f"return {wf.out_sample.metrics.total_return_pct:+.2f}%, "
            f"Sharpe {_ratio(wf.out_sample.metrics.sharpe_ratio)}",
            f"Robustness Ratio:    {wf.robustness_ratio:.3f}",
            f"Efficiency:          {wf.efficiency:.3f}",
            f"Robust:              {'YES' if wf.is_robust else 'NO'}",
        ]

    lines.append("=" * 70)
    return "\n".join(lines)


# =============================================================================
# SECTION 7: CONVENIENCE FUNCTIONS
# =============================================================================

def run_backtest(
    candles: pd.DataFrame,
    strategy_id: str,
    symbol: Optional[str] = None,
    timeframe: Optional[str] = None,
    initial_capital: float = Config.DEFAULT_INITIAL_CAPITAL,
    fee_percent: float = Config.FEE_PERCENT,
    slippage_percent: float = Config.SLIPPAGE_PERCENT,
    timeout: Optional[float] = None
) -> BacktestRun:
    """
    Backtest a strategy over an in-memory candle frame.

    Example:
        >>> df = generate_synthetic_candles(n_bars=800, seed=7)
        >>> run = run_backtest(df, "MACD_RSI")
        >>> print(run.status, run.metrics.win_rate)
    """
    symbol = symbol or candles.attrs.get('symbol', 'UNKNOWN')
    timeframe = timeframe or candles.attrs.get('timeframe', Config.DEFAULT_TIMEFRAME)

    store = InMemoryCandleStore()
    if len(candles) > 0:
        store.add_candles(symbol, timeframe, candles)

    config = BacktestConfig(
        strategy_id=strategy_id,
        symbol=symbol,
        timeframe=timeframe,
        initial_capital=initial_capital,
        fee_percent=fee_percent,
        slippage_percent=slippage_percent,
    )
    return BacktestSimulator(store).run(config, timeout=timeout)


__all__ = [
    'VERSION',
    'BacktestStatus',
    'BacktestErrorKind',
    'TradeSide',
    'BacktestConfig',
    'TradeRecord',
    'Position',
    'EquityPoint',
    'DrawdownPoint',
    'BacktestRun',
    'BacktestSimulator',
    'BacktestJob',
    'PipelineResult',
    'BacktestPipeline',
    'format_backtest_report',
    'run_backtest',
]
