"""
Configuration Module for the Crypto Signal Engine

This module centralizes the constants, thresholds and defaults used by the
indicator provider, the strategy evaluators, the consensus aggregator and
the backtesting engines.

All "magic numbers" live here so that:
1. There is a single source of truth for every threshold
2. Strategy tuning never touches evaluation code
3. Documented defaults (Monte Carlo count/horizon, walk-forward split)
   are visible in one place
"""

from typing import Dict, List, Tuple
from enum import Enum


# =============================================================================
# ENUMERATIONS
# =============================================================================

class StrategyCategory(Enum):
    """Strategy catalogue grouping."""
    ADVANCED = "Advanced"
    CLASSIC = "Classic"


class Timeframe(Enum):
    """Supported candle intervals."""
    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"

    @property
    def hours(self) -> float:
        """Interval length in hours."""
        return TIMEFRAME_HOURS[self.value]


TIMEFRAME_HOURS: Dict[str, float] = {
    "1m": 1 / 60,
    "5m": 5 / 60,
    "15m": 0.25,
    "1h": 1.0,
    "4h": 4.0,
    "1d": 24.0,
}


# =============================================================================
# ENGINE CONFIGURATION
# =============================================================================

class Config:
    """
    Centralized configuration for simulation and validation parameters.

    Values follow the behaviour of the production signal service: a 95%
    allocation per entry, percentage fees and slippage charged on both legs,
    and a 50-bar warm-up before the first evaluation.
    """

    # -------------------------------------------------------------------------
    # Annualization
    # -------------------------------------------------------------------------
    PERIODS_PER_YEAR: int = 252       # Daily-return convention
    RISK_FREE_RATE: float = 0.02      # 2% annual

    # -------------------------------------------------------------------------
    # Transaction Costs (percent units, 0.1 == 0.1%)
    # -------------------------------------------------------------------------
    FEE_PERCENT: float = 0.1
    SLIPPAGE_PERCENT: float = 0.05

    # -------------------------------------------------------------------------
    # Simulator
    # -------------------------------------------------------------------------
    MIN_INITIAL_CAPITAL: float = 100.0
    DEFAULT_INITIAL_CAPITAL: float = 10000.0
    POSITION_ALLOCATION: float = 0.95  # Fraction of cash committed per entry
    WARMUP_BARS: int = 50
    LOOKBACK_BARS: int = 250           # Window handed to the evaluator
    DEFAULT_TIMEFRAME: str = "1h"

    # -------------------------------------------------------------------------
    # Monte Carlo
    # -------------------------------------------------------------------------
    MC_N_SIMULATIONS: int = 10000
    MC_HORIZON: int = 252
    MC_RUIN_THRESHOLD: float = 0.20    # Ruin when equity <= 20% of initial
    MC_PERCENTILES: List[int] = [5, 25, 50, 75, 95]

    # -------------------------------------------------------------------------
    # Walk-Forward
    # -------------------------------------------------------------------------
    WF_IN_SAMPLE_RATIO: float = 0.7
    WF_ROBUST_THRESHOLD: float = 0.5

    # -------------------------------------------------------------------------
    # Consensus
    # -------------------------------------------------------------------------
    CONSENSUS_CANDLES: int = 300
    CONSENSUS_MAX_WORKERS: int = 5


# =============================================================================
# INDICATOR PARAMETERS
# =============================================================================

RSI_PERIOD: int = 14
RSI_OVERSOLD: float = 30.0
RSI_OVERBOUGHT: float = 70.0
RSI_EXTREME_OS: float = 20.0
RSI_EXTREME_OB: float = 80.0

MACD_FAST: int = 12
MACD_SLOW: int = 26
MACD_SIGNAL: int = 9

EMA_RIBBON_PERIODS: Tuple[int, ...] = (5, 10, 20, 50, 200)

BB_PERIOD: int = 20
BB_STD_DEV: float = 2.0

ATR_PERIOD: int = 14
VOLUME_MA_PERIOD: int = 20
SUPPORT_RESISTANCE_LOOKBACK: int = 20

PROFILE_BINS: int = 50
PROFILE_LOOKBACK: int = 50
VALUE_AREA_SHARE: float = 0.70
HIGH_VOLUME_NODE_MULT: float = 1.5
LOW_VOLUME_NODE_MULT: float = 0.5


# =============================================================================
# STRATEGY THRESHOLDS
# =============================================================================

RSI_VOLUME_SETTINGS: Dict[str, float] = {
    "min_volume_ratio": 1.5,
    "strong_volume_ratio": 2.5,
    "exit_rsi_low": 40.0,
    "exit_rsi_high": 60.0,
    "reward_risk": 2.0,
    "min_risk_pct": 0.005,
    "max_risk_pct": 0.05,
}

EMA_RIBBON_SETTINGS: Dict[str, float] = {
    "spread_bonus_pct": 5.0,
    "fallback_stop_pct": 0.03,
    "reward_risk": 3.0,
}

MACD_RSI_SETTINGS: Dict[str, float] = {
    "stop_pct": 0.025,
    "target_pct": 0.05,
    "histogram_strength_pct": 0.001,
    "volume_ratio": 1.5,
}

SMART_MONEY_SETTINGS: Dict[str, float] = {
    "min_bars": 50,
    "window": 20,
    "sweep_window": 10,
    "structure_window": 10,
    "order_block_body_mult": 2.0,
    "max_order_blocks": 3,
    "volume_ratio": 2.5,
    "stop_buffer_pct": 0.018,
    "reward_risk": 3.0,
}

ORDER_FLOW_SETTINGS: Dict[str, float] = {
    "min_bars": 50,
    "delta_window": 20,
    "delta_threshold": 0.20,
    "absorption_volume_mult": 1.5,
    "absorption_strength": 85.0,
    "exhaustion_volume_mult": 2.0,
    "exhaustion_body_ratio": 0.3,
    "exhaustion_strength": 70.0,
    "min_pattern_strength": 70.0,
    "poc_tolerance_pct": 0.01,
    "poc_stop_buffer_pct": 0.015,
    "min_stop_pct": 0.02,
    "fallback_target_pct": 0.05,
}
