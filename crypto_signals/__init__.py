"""
crypto_signals: strategy signals, consensus and backtesting for crypto pairs

Modules
    config               Tunable constants (fees, warm-up, thresholds)
    candle_store         Candle model, normalization and in-memory store
    technical_indicators Indicator readings consumed by the evaluators
    strategies           Five signal evaluators and their registry
    consensus            Concurrent multi-strategy consensus
    backtest_engine      Bar-by-bar simulator, background jobs, reports
    performance_metrics  Trade and risk statistics
    validation           Monte Carlo and walk-forward diagnostics
"""

__version__ = "1.0.0"
