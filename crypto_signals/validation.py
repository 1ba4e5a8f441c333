"""
Strategy Validation: Monte Carlo resampling and walk-forward analysis

Both engines consume a closed-trade ledger produced by the simulator and
are diagnostic only; neither ever blocks a backtest from completing.

MONTE CARLO
    Each path starts at the initial capital and, for ``horizon`` steps,
    compounds one historical per-trade percentage return drawn uniformly
    with replacement. A path is ruined, and stops compounding, once equity
    falls to 20% of the initial capital or below. Reported: percentiles of
    terminal equity, probability of ruin, mean expected return.

    Paths are independent, so all of them are drawn at once as a
    (simulations x horizon) matrix.

WALK-FORWARD
    Trades are sorted by entry time and split at floor(n x ratio). Each
    half is scored independently with the metrics engine:

        robustness = out-of-sample Sharpe / in-sample Sharpe
        efficiency = out-of-sample return % / in-sample return %

    Both are 0 when the in-sample denominator is not positive.
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import numpy as np

from .config import Config
from .exceptions import InvalidConfigError
from .performance_metrics import BacktestMetrics, ClosedTrade, calculate_metrics

warnings.filterwarnings('ignore', category=RuntimeWarning)

logger = logging.getLogger(__name__)


# =============================================================================
# SECTION 1: MONTE CARLO
# =============================================================================

@dataclass
class MonteCarloResult:
    """Terminal-equity distribution from resampled trade returns."""
    n_simulations: int
    horizon: int
    initial_capital: float
    percentiles: Dict[int, float]
    probability_of_ruin: float      # Percent of paths ruined
    expected_return_pct: float      # Mean terminal equity vs initial, percent
    mean_terminal: float = 0.0
    std_terminal: float = 0.0
    worst_terminal: float = 0.0
    best_terminal: float = 0.0
    probability_of_profit: float = 0.0

    @property
    def percentile_5(self) -> float:
        return self.percentiles.get(5, 0.0)

    @property
    def percentile_25(self) -> float:
        return self.percentiles.get(25, 0.0)

    @property
    def median(self) -> float:
        return self.percentiles.get(50, 0.0)

    @property
    def percentile_75(self) -> float:
        return self.percentiles.get(75, 0.0)

    @property
    def percentile_95(self) -> float:
        return self.percentiles.get(95, 0.0)


class MonteCarloSimulator:
    """
    Bootstrap of per-trade returns into terminal-equity outcomes.

    Args:
        n_simulations: Number of paths
        horizon: Trades drawn per path
        ruin_threshold: Fraction of initial capital that counts as ruin
        seed: Optional seed for reproducible draws
    """

    def __init__(
        self,
        n_simulations: int = Config.MC_N_SIMULATIONS,
        horizon: int = Config.MC_HORIZON,
        ruin_threshold: float = Config.MC_RUIN_THRESHOLD,
        seed: Optional[int] = None
    ):
        if n_simulations <= 0 or horizon <= 0:
            raise InvalidConfigError("Monte Carlo needs positive simulation count and horizon")
        if not 0 <= ruin_threshold < 1:
            raise InvalidConfigError(f"Ruin threshold must be in [0, 1), got {ruin_threshold}")
        self.n_simulations = n_simulations
        self.horizon = horizon
        self.ruin_threshold = ruin_threshold
        self.seed = seed

    def simulate(
        self,
        trades: Sequence[ClosedTrade],
        initial_capital: float = Config.DEFAULT_INITIAL_CAPITAL
    ) -> MonteCarloResult:
        """
        Run the simulation.

        Args:
            trades: Historical closed trades (only pnl_percent is used)
            initial_capital: Starting equity of every path

        Returns:
            MonteCarloResult; all zeros when there are no trades
        """
        if not trades:
            return self._empty_result()

        returns = np.array([t.pnl_percent for t in trades], dtype=float) / 100.0
        rng = np.random.default_rng(self.seed)

        draws = rng.integers(0, len(returns), size=(self.n_simulations, self.horizon))
        equity = initial_capital * np.cumprod(1.0 + returns[draws], axis=1)

        ruin_level = initial_capital * self.ruin_threshold
        hit = equity <= ruin_level
        ruined = hit.any(axis=1)

        # Ruined paths freeze at the first step that reached the ruin level
        first_hit = hit.argmax(axis=1)
        rows = np.arange(self.n_simulations)
        terminal = np.where(ruined, equity[rows, first_hit], equity[:, -1])

        percentiles = {p: float(np.percentile(terminal, p)) for p in Config.MC_PERCENTILES}
        mean_terminal = float(terminal.mean())

        result = MonteCarloResult(
            n_simulations=self.n_simulations,
            horizon=self.horizon,
            initial_capital=initial_capital,
            percentiles=percentiles,
            probability_of_ruin=float(ruined.mean() * 100),
            expected_return_pct=(mean_terminal / initial_capital - 1) * 100 if initial_capital > 0 else 0.0,
            mean_terminal=mean_terminal,
            std_terminal=float(terminal.std()),
            worst_terminal=float(terminal.min()),
            best_terminal=float(terminal.max()),
            probability_of_profit=float((terminal > initial_capital).mean() * 100),
        )
        logger.debug(
            f"Monte Carlo: {self.n_simulations} paths, median {result.median:,.2f}, "
            f"ruin {result.probability_of_ruin:.2f}%"
        )
        return result

    def _empty_result(self) -> MonteCarloResult:
        """Return empty result when there is nothing to resample."""
        return MonteCarloResult(
            n_simulations=0,
            horizon=self.horizon,
            initial_capital=0.0,
            percentiles={p: 0.0 for p in Config.MC_PERCENTILES},
            probability_of_ruin=0.0,
            expected_return_pct=0.0,
        )


# =============================================================================
# SECTION 2: WALK-FORWARD
# =============================================================================

@dataclass
class WalkForwardPeriod:
    """One side of the chronological split."""
    start: Optional[datetime]
    end: Optional[datetime]
    trades: List[ClosedTrade]
    metrics: BacktestMetrics

    @property
    def n_trades(self) -> int:
        return len(self.trades)


@dataclass
class WalkForwardResult:
    """In-sample versus out-of-sample comparison."""
    in_sample_ratio: float
    split_index: int
    in_sample: WalkForwardPeriod
    out_sample: WalkForwardPeriod
    robustness_ratio: float
    efficiency: float
    is_robust: bool = False


def _period(trades: List[ClosedTrade], initial_capital: float, risk_free_rate: float,
            periods_per_year: float) -> WalkForwardPeriod:
    return WalkForwardPeriod(
        start=trades[0].entry_time if trades else None,
        end=trades[-1].exit_time if trades else None,
        trades=trades,
        metrics=calculate_metrics(
            trades,
            initial_capital=initial_capital,
            risk_free_rate=risk_free_rate,
            periods_per_year=periods_per_year,
        ),
    )


def walk_forward(
    trades: Sequence[ClosedTrade],
    initial_capital: float = Config.DEFAULT_INITIAL_CAPITAL,
    in_sample_ratio: float = Config.WF_IN_SAMPLE_RATIO,
    risk_free_rate: float = Config.RISK_FREE_RATE,
    periods_per_year: float = Config.PERIODS_PER_YEAR
) -> WalkForwardResult:
    """
    Chronological split of a ledger into in-sample and out-of-sample halves.

    Args:
        trades: Closed trades in any order
        initial_capital: Capital each half is scored against
        in_sample_ratio: Fraction of trades in the in-sample half, in (0, 1)

    Returns:
        WalkForwardResult

    Raises:
        InvalidConfigError: Ratio outside (0, 1)
    """
    if not 0 < in_sample_ratio < 1:
        raise InvalidConfigError(f"In-sample ratio must be in (0, 1), got {in_sample_ratio}")

    ordered = sorted(trades, key=lambda t: t.entry_time)
    # Tolerance keeps 10 x 0.7 at 7 despite binary rounding
    split = int(math.floor(len(ordered) * in_sample_ratio + 1e-9))

    in_sample = _period(ordered[:split], initial_capital, risk_free_rate, periods_per_year)
    out_sample = _period(ordered[split:], initial_capital, risk_free_rate, periods_per_year)

    is_sharpe = in_sample.metrics.sharpe_ratio
    is_return = in_sample.metrics.total_return_pct
    robustness = out_sample.metrics.sharpe_ratio / is_sharpe if is_sharpe > 0 else 0.0
    efficiency = out_sample.metrics.total_return_pct / is_return if is_return > 0 else 0.0

    return WalkForwardResult(
        in_sample_ratio=in_sample_ratio,
        split_index=split,
        in_sample=in_sample,
        out_sample=out_sample,
        robustness_ratio=robustness,
        efficiency=efficiency,
        is_robust=robustness >= Config.WF_ROBUST_THRESHOLD and out_sample.metrics.total_return_pct > 0,
    )


__all__ = [
    'MonteCarloResult',
    'MonteCarloSimulator',
    'WalkForwardPeriod',
    'WalkForwardResult',
    'walk_forward',
]
