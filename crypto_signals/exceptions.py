"""Error taxonomy for the signal engine and the backtest simulator."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class CryptoSignalsError(Exception):
    """Base error carrying a machine-readable reason code."""

    message: str
    reason: str = "crypto_signals_error"

    def __str__(self) -> str:
        return self.message


class NoHistoricalDataError(CryptoSignalsError):
    """Raised when a candle range query returns nothing."""

    def __init__(self, symbol: str, timeframe: str) -> None:
        super().__init__(
            message=f"No historical data for {symbol} {timeframe}",
            reason="no_historical_data",
        )
        self.symbol = symbol
        self.timeframe = timeframe


class StrategyNotFoundError(CryptoSignalsError):
    """Raised when a strategy id does not match the registry."""

    def __init__(self, strategy_id: str) -> None:
        super().__init__(
            message=f"Unknown strategy: {strategy_id}",
            reason="strategy_not_found",
        )
        self.strategy_id = strategy_id


class InsufficientWarmupDataError(CryptoSignalsError):
    """Raised when fewer candles exist than an evaluator's minimum lookback."""

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            message=f"Need {required} candles, have {available}",
            reason="insufficient_warmup",
        )
        self.required = required
        self.available = available


class IndicatorUnavailableError(CryptoSignalsError):
    """Raised when an indicator reading cannot be produced."""

    def __init__(self, indicator: str) -> None:
        super().__init__(
            message=f"Indicator unavailable: {indicator}",
            reason="indicator_unavailable",
        )
        self.indicator = indicator


class BacktestTimeoutError(CryptoSignalsError):
    """Raised inside the replay loop when the caller's deadline passes."""

    def __init__(self, timeout: float) -> None:
        super().__init__(
            message=f"Backtest exceeded timeout of {timeout:.1f}s",
            reason="timeout",
        )
        self.timeout = timeout


class BacktestCancelledError(CryptoSignalsError):
    """Raised inside the replay loop when cancellation is requested."""

    def __init__(self) -> None:
        super().__init__(message="Backtest cancelled", reason="cancelled")


class InvalidConfigError(CryptoSignalsError):
    """Raised for out-of-range run or validation parameters."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, reason="invalid_config")


class InvalidStateTransition(CryptoSignalsError):
    """Raised when a run status would move backwards or leave a terminal state."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            message=f"Cannot transition backtest from {current} to {requested}",
            reason="invalid_state_transition",
        )


class DataValidationError(CryptoSignalsError):
    """Raised when candle data fails structural validation."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, reason="data_validation_failed")


__all__ = [
    'CryptoSignalsError',
    'NoHistoricalDataError',
    'StrategyNotFoundError',
    'InsufficientWarmupDataError',
    'IndicatorUnavailableError',
    'BacktestTimeoutError',
    'BacktestCancelledError',
    'InvalidConfigError',
    'InvalidStateTransition',
    'DataValidationError',
]
