"""
Performance Metrics Engine

Pure function over a closed-trade ledger (and optionally an equity curve)
producing the statistics bundle attached to a completed backtest.

METRICS DELIVERED
    Trade statistics
        - Win rate: winning trades / total trades x 100 (pnl <= 0 is a loss)
        - Profit factor: gross profit / gross loss
          (inf when there are profits and no losses, 0 with neither)
        - Average / largest win and loss, expectancy, streaks, duration

    Risk
        - Maximum drawdown (amount and percent) over one walk of the equity
          path; the running peak only increases
        - Average drawdown percent over the bars spent under water

    Risk-adjusted (per-trade percentage returns)
        Sharpe  = (mean(r) - rf/P) / stdev(r) x sqrt(P)
        Sortino = (mean(r) - rf/P) / downside deviation x sqrt(P)
        Calmar  = total return % / max drawdown %

        P is the annualization factor (252 by default). It is applied to
        per-trade returns of unspecified frequency, so callers can pass the
        number of trades per year when they know it.

Identical inputs always produce identical outputs; nothing is rounded.
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from scipy import stats

from .config import Config

warnings.filterwarnings('ignore', category=RuntimeWarning)

logger = logging.getLogger(__name__)


# =============================================================================
# SECTION 1: DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class ClosedTrade:
    """
    One completed round trip (entry fill paired with its exit fill).

    ``cost_basis`` is the total cash committed at entry including costs;
    ``pnl`` is net exit proceeds minus that cost basis.
    """
    trade_id: int
    entry_time: datetime
    exit_time: datetime
    entry_price: float
    exit_price: float
    quantity: float
    cost_basis: float
    proceeds: float
    fees: float
    pnl: float
    pnl_percent: float
    exit_reason: str = ""

    @classmethod
    def from_fills(
        cls,
        entry_time: datetime,
        exit_time: datetime,
        entry_price: float,
        exit_price: float,
        quantity: float,
        entry_costs: float = 0.0,
        exit_costs: float = 0.0,
        trade_id: int = 0,
        exit_reason: str = ""
    ) -> 'ClosedTrade':
        """Build a closed trade from its two fills and their costs."""
        cost_basis = quantity * entry_price + entry_costs
        proceeds = quantity * exit_price - exit_costs
        pnl = proceeds - cost_basis
        return cls(
            trade_id=trade_id,
            entry_time=entry_time,
            exit_time=exit_time,
            entry_price=entry_price,
            exit_price=exit_price,
            quantity=quantity,
            cost_basis=cost_basis,
            proceeds=proceeds,
            fees=entry_costs + exit_costs,
            pnl=pnl,
            pnl_percent=pnl / cost_basis * 100 if cost_basis > 0 else 0.0,
            exit_reason=exit_reason,
        )

    @property
    def is_win(self) -> bool:
        return self.pnl > 0

    @property
    def duration_hours(self) -> float:
        return (self.exit_time - self.entry_time).total_seconds() / 3600.0


@dataclass(frozen=True)
class BacktestMetrics:
    """Statistics bundle for one ledger. Never mutated after creation."""
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    total_pnl: float
    total_return_pct: float
    final_capital: float
    gross_profit: float
    gross_loss: float
    profit_factor: float
    avg_win: float
    avg_loss: float
    largest_win: float
    largest_loss: float
    sharpe_ratio: float
    sortino_ratio: float
    calmar_ratio: float
    max_drawdown: float
    max_drawdown_pct: float
    avg_drawdown_pct: float
    avg_trade_duration_hours: float
    longest_win_streak: int
    longest_loss_streak: int
    expectancy: float
    expectancy_pct: float
    total_fees: float
    return_skewness: float
    return_kurtosis: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DrawdownStats:
    max_drawdown: float
    max_drawdown_pct: float
    avg_drawdown_pct: float


# =============================================================================
# SECTION 2: TRADE ANALYZER
# =============================================================================

class TradeAnalyzer:
    """Win/loss statistics over closed trades."""

    @staticmethod
    def profit_factor(gross_profit: float, gross_loss: float) -> float:
        """Gross profit / gross loss; inf with profits but no losses, 0 with neither."""
        if gross_loss > 0:
            return gross_profit / gross_loss
        return float('inf') if gross_profit > 0 else 0.0

    @staticmethod
    def streaks(pnls: Iterable[float]) -> Tuple[int, int]:
        """
        Longest runs of consecutive wins (pnl > 0) and losses (pnl <= 0).

        Returns:
            (longest win streak, longest loss streak)
        """
        longest_win = longest_loss = 0
        current_win = current_loss = 0
        for pnl in pnls:
            if pnl > 0:
                current_win += 1
                current_loss = 0
            else:
                current_loss += 1
                current_win = 0
            longest_win = max(longest_win, current_win)
            longest_loss = max(longest_loss, current_loss)
        return longest_win, longest_loss

    @staticmethod
    def expectancy(win_rate_pct: float, avg_win: float, avg_loss: float) -> float:
        """E = (Win Rate x Avg Win) - (Loss Rate x Avg Loss)."""
        p = win_rate_pct / 100.0
        return p * avg_win - (1 - p) * avg_loss


# =============================================================================
# SECTION 3: RISK CALCULATOR
# =============================================================================

class RiskCalculator:
    """
    Drawdown over an equity path.

    Drawdown at each point = running peak - equity; the percent form
    divides by the running peak.
    """

    @staticmethod
    def drawdowns(equity: Sequence[float], initial_capital: Optional[float] = None) -> DrawdownStats:
        """
        Single forward walk.

        The peak is seeded with ``initial_capital`` when given (matching the
        simulator's DrawdownPoints), otherwise with the first value.
        """
        values = np.asarray(equity, dtype=float)
        if len(values) == 0:
            return DrawdownStats(0.0, 0.0, 0.0)

        peaks = np.maximum.accumulate(values)
        if initial_capital is not None:
            peaks = np.maximum(peaks, initial_capital)
        amounts = peaks - values
        with np.errstate(divide='ignore', invalid='ignore'):
            percents = np.where(peaks > 0, amounts / peaks * 100, 0.0)

        under_water = percents[amounts > 0]
        return DrawdownStats(
            max_drawdown=float(amounts.max()),
            max_drawdown_pct=float(percents.max()),
            avg_drawdown_pct=float(under_water.mean()) if len(under_water) else 0.0,
        )

    @staticmethod
    def equity_from_trades(trades: Sequence[ClosedTrade], initial_capital: float) -> List[float]:
        """Initial capital followed by cumulative realized P&L after each trade."""
        path = [initial_capital]
        for trade in trades:
            path.append(path[-1] + trade.pnl)
        return path


# =============================================================================
# SECTION 4: RISK-ADJUSTED CALCULATOR
# =============================================================================

class RiskAdjustedCalculator:
    """Sharpe, Sortino and Calmar ratios over per-trade percentage returns."""

    @staticmethod
    def sharpe(
        returns: Sequence[float],
        risk_free_rate: float = Config.RISK_FREE_RATE,
        periods_per_year: float = Config.PERIODS_PER_YEAR
    ) -> float:
        """Sample standard deviation (n - 1); 0 with fewer than 2 returns or zero dispersion."""
        r = np.asarray(returns, dtype=float)
        if len(r) < 2:
            return 0.0
        std = r.std(ddof=1)
        if std == 0 or not np.isfinite(std):
            return 0.0
        period_rf = risk_free_rate / periods_per_year
        return float((r.mean() - period_rf) / std * math.sqrt(periods_per_year))

    @staticmethod
    def sortino(
        returns: Sequence[float],
        risk_free_rate: float = Config.RISK_FREE_RATE,
        periods_per_year: float = Config.PERIODS_PER_YEAR
    ) -> float:
        """
        Downside deviation is the population deviation of returns below
        the per-period risk-free rate, measured from that rate.

        inf when no return falls below it; 0 with fewer than 2 returns.
        """
        r = np.asarray(returns, dtype=float)
        if len(r) < 2:
            return 0.0
        period_rf = risk_free_rate / periods_per_year
        downside = r[r < period_rf]
        if len(downside) == 0:
            return float('inf')
        deviation = math.sqrt(float(np.mean((downside - period_rf) ** 2)))
        if deviation == 0:
            return float('inf')
        return float((r.mean() - period_rf) / deviation * math.sqrt(periods_per_year))

    @staticmethod
    def calmar(total_return_pct: float, max_drawdown_pct: float) -> float:
        return total_return_pct / max_drawdown_pct if max_drawdown_pct > 0 else 0.0


# =============================================================================
# SECTION 5: METRICS FUNCTION
# =============================================================================

def empty_metrics(initial_capital: float) -> BacktestMetrics:
    """All-zero metrics for an empty ledger."""
    return BacktestMetrics(
        total_trades=0, winning_trades=0, losing_trades=0, win_rate=0.0,
        total_pnl=0.0, total_return_pct=0.0, final_capital=initial_capital,
        gross_profit=0.0, gross_loss=0.0, profit_factor=0.0,
        avg_win=0.0, avg_loss=0.0, largest_win=0.0, largest_loss=0.0,
        sharpe_ratio=0.0, sortino_ratio=0.0, calmar_ratio=0.0,
        max_drawdown=0.0, max_drawdown_pct=0.0, avg_drawdown_pct=0.0,
        avg_trade_duration_hours=0.0, longest_win_streak=0, longest_loss_streak=0,
        expectancy=0.0, expectancy_pct=0.0, total_fees=0.0,
        return_skewness=0.0, return_kurtosis=0.0,
    )


def _equity_values(equity_curve) -> Optional[List[float]]:
    """Accept EquityPoint-like objects, plain numbers or a pandas Series."""
    if equity_curve is None:
        return None
    values = [float(getattr(p, 'equity', p)) for p in list(equity_curve)]
    return values or None


def calculate_metrics(
    trades: Sequence[ClosedTrade],
    equity_curve=None,
    initial_capital: float = Config.DEFAULT_INITIAL_CAPITAL,
    risk_free_rate: float = Config.RISK_FREE_RATE,
    periods_per_year: float = Config.PERIODS_PER_YEAR
) -> BacktestMetrics:
    """
    Compute the statistics bundle for a ledger.

    Args:
        trades: Closed trades in chronological order
        equity_curve: Optional mark-to-market path (EquityPoint values or
            numbers). When given, drawdowns come from it; otherwise from
            initial capital plus cumulative trade P&L
        initial_capital: Starting capital
        risk_free_rate: Annual risk-free rate as a fraction
        periods_per_year: Annualization factor for Sharpe / Sortino

    Returns:
        BacktestMetrics (all zeros for an empty ledger)
    """
    if not trades:
        return empty_metrics(initial_capital)

    pnls = np.array([t.pnl for t in trades], dtype=float)
    returns = np.array([t.pnl_percent for t in trades], dtype=float)

    wins = pnls[pnls > 0]
    losses = pnls[pnls <= 0]
    total = len(pnls)
    win_rate = len(wins) / total * 100

    gross_profit = float(wins.sum())
    gross_loss = float(abs(losses.sum()))
    avg_win = float(wins.mean()) if len(wins) else 0.0
    avg_loss = float(abs(losses.mean())) if len(losses) else 0.0

    total_pnl = float(pnls.sum())
    total_return_pct = total_pnl / initial_capital * 100 if initial_capital > 0 else 0.0

    equity = _equity_values(equity_curve)
    if equity is None:
        equity = RiskCalculator.equity_from_trades(trades, initial_capital)
    dd = RiskCalculator.drawdowns(equity, initial_capital)

    longest_win, longest_loss = TradeAnalyzer.streaks(pnls)
    expectancy = TradeAnalyzer.expectancy(win_rate, avg_win, avg_loss)

    if len(returns) >= 3 and returns.std() > 0:
        skewness = float(stats.skew(returns))
        kurtosis = float(stats.kurtosis(returns))
    else:
        skewness = kurtosis = 0.0

    return BacktestMetrics(
        total_trades=total,
        winning_trades=int(len(wins)),
        losing_trades=int(len(losses)),
        win_rate=win_rate,
        total_pnl=total_pnl,
        total_return_pct=total_return_pct,
        final_capital=initial_capital + total_pnl,
        gross_profit=gross_profit,
        gross_loss=gross_loss,
        profit_factor=TradeAnalyzer.profit_factor(gross_profit, gross_loss),
        avg_win=avg_win,
        avg_loss=avg_loss,
        largest_win=float(wins.max()) if len(wins) else 0.0,
        largest_loss=float(abs(losses.min())) if len(losses) else 0.0,
        sharpe_ratio=RiskAdjustedCalculator.sharpe(returns, risk_free_rate, periods_per_year),
        sortino_ratio=RiskAdjustedCalculator.sortino(returns, risk_free_rate, periods_per_year),
        calmar_ratio=RiskAdjustedCalculator.calmar(total_return_pct, dd.max_drawdown_pct),
        max_drawdown=dd.max_drawdown,
        max_drawdown_pct=dd.max_drawdown_pct,
        avg_drawdown_pct=dd.avg_drawdown_pct,
        avg_trade_duration_hours=float(np.mean([t.duration_hours for t in trades])),
        longest_win_streak=longest_win,
        longest_loss_streak=longest_loss,
        expectancy=expectancy,
        expectancy_pct=expectancy / initial_capital * 100 if initial_capital > 0 else 0.0,
        total_fees=float(sum(t.fees for t in trades)),
        return_skewness=skewness,
        return_kurtosis=kurtosis,
    )


__all__ = [
    'ClosedTrade',
    'BacktestMetrics',
    'DrawdownStats',
    'TradeAnalyzer',
    'RiskCalculator',
    'RiskAdjustedCalculator',
    'empty_metrics',
    'calculate_metrics',
]
