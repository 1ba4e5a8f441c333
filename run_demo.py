#!/usr/bin/env python3
"""
Crypto Signals - Demo Runner

Runs the complete signal and backtesting pipeline for one trading pair:
    Phase 1: Candle loading (CSV / parquet / synthetic) and quality checks
    Phase 2: Live consensus across the five strategy evaluators
    Phase 3: Bar-by-bar backtest of one strategy with fees and slippage
    Phase 4: Monte Carlo and walk-forward diagnostics on the trade ledger

EXECUTION
    python run_demo.py --list-strategies
    python run_demo.py --synthetic --strategy MACD_RSI
    python run_demo.py --data btc_1h.csv --symbol BTCUSDT --timeframe 1h
    python run_demo.py --synthetic --strategy "Smart Money" --seed 7 --timeout 30

OUTPUT ARTIFACTS
    outputs/
        {symbol}_{strategy}_backtest.json   Metrics, diagnostics, trade ledger

Version: 1.0.0
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


# =============================================================================
# CONSTANTS
# =============================================================================

VERSION: str = "1.0.0"
DEFAULT_SYMBOL: str = "BTCUSDT"
DEFAULT_STRATEGY: str = "MACD_RSI"
DEFAULT_SYNTHETIC_BARS: int = 1500

OUTPUT_DIR = Path("outputs")


# =============================================================================
# DISPLAY COMPONENTS
# =============================================================================

BANNER = r'''
╔═══════════════════════════════════════════════════════════════════════════════╗
║                                                                               ║
║       ██████╗██████╗ ██╗   ██╗██████╗ ████████╗ ██████╗                       ║
║      ██╔════╝██╔══██╗╚██╗ ██╔╝██╔══██╗╚══██╔══╝██╔═══██╗                      ║
║      ██║     ██████╔╝ ╚████╔╝ ██████╔╝   ██║   ██║   ██║                      ║
║      ██║     ██╔══██╗  ╚██╔╝  ██╔═══╝    ██║   ██║   ██║                      ║
║      ╚██████╗██║  ██║   ██║   ██║        ██║   ╚██████╔╝                      ║
║       ╚═════╝╚═╝  ╚═╝   ╚═╝   ╚═╝        ╚═╝    ╚═════╝                       ║
║                                                                               ║
║              CRYPTO SIGNALS: STRATEGY CONSENSUS & BACKTESTING                 ║
║                                                                               ║
╚═══════════════════════════════════════════════════════════════════════════════╝
'''


def print_section_header(title: str, char: str = "═") -> None:
    """Print a formatted section header."""
    width = 79
    print()
    print(char * width)
    print(f"  {title}")
    print(char * width)
    print()


def print_subsection(title: str) -> None:
    """Print a subsection divider."""
    print()
    print(f"  {'─' * 75}")
    print(f"  {title}")
    print(f"  {'─' * 75}")


def format_price(value: float) -> str:
    """Format a price with precision suited to its magnitude."""
    if abs(value) >= 1000:
        return f"{value:,.2f}"
    elif abs(value) >= 1:
        return f"{value:.4f}"
    return f"{value:.8f}"


# =============================================================================
# PHASE 1: CANDLE DATA
# =============================================================================

def run_phase1(
    args: argparse.Namespace,
    logger: logging.Logger
) -> Optional[Any]:
    """
    Execute Phase 1: load candles into an in-memory store.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed CLI arguments (data path, symbol, timeframe, seed)
    logger : logging.Logger
        Logger instance for progress reporting

    Returns
    -------
    Optional[InMemoryCandleStore]
        Populated store, or None on failure
    """
    print_section_header("PHASE 1: CANDLE DATA")

    try:
        from crypto_signals.candle_store import InMemoryCandleStore, generate_synthetic_candles
        store = InMemoryCandleStore()

        if args.data:
            path = Path(args.data)
            logger.info(f"Loading {path} as {args.symbol} {args.timeframe}")
            if path.suffix.lower() in ('.parquet', '.pq'):
                report = store.load_parquet(path, args.symbol, args.timeframe)
            else:
                report = store.load_csv(path, args.symbol, args.timeframe)
        else:
            logger.info(f"Generating {args.bars} synthetic {args.timeframe} candles (seed={args.seed})")
            df = generate_synthetic_candles(
                symbol=args.symbol,
                timeframe=args.timeframe,
                n_bars=args.bars,
                seed=args.seed,
            )
            report = store.add_candles(args.symbol, args.timeframe, df)

        candles = store.get_candles(args.symbol, args.timeframe)
        print(f"  Symbol:        {report.symbol} ({report.timeframe})")
        print(f"  Candles:       {len(candles):,}")
        if len(candles) > 0:
            print(f"  Range:         {candles.index[0]} -> {candles.index[-1]}")
            print(f"  Last Close:    {format_price(candles['close'].iloc[-1])}")
        print(f"  Quality Score: {report.score:.1f}/100")
        for warning in report.warnings:
            print(f"  ⚠ {warning}")

        return store

    except Exception as e:
        logger.error(f"Phase 1 failed: {e}")
        return None


# =============================================================================
# PHASE 2: LIVE CONSENSUS
# =============================================================================

def run_phase2(
    store: Any,
    args: argparse.Namespace,
    logger: logging.Logger
) -> Optional[Any]:
    """
    Execute Phase 2: consensus of all evaluators on the latest candles.

    Returns
    -------
    Optional[ConsensusResult]
        Consensus for the latest snapshot, or None on failure
    """
    print_section_header("PHASE 2: STRATEGY CONSENSUS")

    try:
        from crypto_signals.consensus import ConsensusAggregator

        logger.info("Evaluating all strategies on the latest snapshot...")
        result = ConsensusAggregator(store).consensus(args.symbol, args.timeframe)

        print(f"  {'Strategy':<14} {'Signal':<7} {'Conf':>6} {'Stop':>14} {'Target':>14}")
        print(f"  {'─' * 60}")
        for sid, analysis in result.analyses.items():
            signal = analysis.signal
            if signal is None:
                exit_note = " (exit advised)" if analysis.should_exit else ""
                print(f"  {sid:<14} {'-':<7}{exit_note}")
            else:
                print(
                    f"  {sid:<14} {signal.direction.value:<7} {signal.confidence:>6.1f} "
                    f"{format_price(signal.stop_loss):>14} {format_price(signal.take_profit):>14}"
                )
        for sid, error in result.errors.items():
            print(f"  {sid:<14} ERROR   {error}")

        print_subsection("CONSENSUS")
        print(f"  Direction:     {result.direction.value}")
        print(f"  Confidence:    {result.confidence:.1f}")
        print(f"  Agreement:     {result.agreement:.0%} "
              f"({result.buy_count} buy / {result.sell_count} sell of {result.n_strategies})")

        return result

    except Exception as e:
        logger.error(f"Phase 2 failed: {e}")
        return None


# =============================================================================
# PHASE 3 + 4: BACKTEST AND DIAGNOSTICS
# =============================================================================

def run_phase3(
    store: Any,
    args: argparse.Namespace,
    logger: logging.Logger
) -> Optional[Any]:
    """
    Execute Phases 3 and 4: backtest, then Monte Carlo and walk-forward.

    Returns
    -------
    Optional[PipelineResult]
        Run plus diagnostics, or None when the configuration is rejected
    """
    print_section_header("PHASE 3: BACKTEST SIMULATION")

    from crypto_signals.backtest_engine import (
        BacktestConfig,
        BacktestPipeline,
        BacktestSimulator,
        format_backtest_report,
    )
    from crypto_signals.exceptions import InvalidConfigError, StrategyNotFoundError
    from crypto_signals.strategies import resolve_strategy_id

    try:
        strategy_id = resolve_strategy_id(args.strategy)
        config = BacktestConfig(
            strategy_id=strategy_id,
            symbol=args.symbol,
            timeframe=args.timeframe,
            initial_capital=args.capital,
            fee_percent=args.fee,
            slippage_percent=args.slippage,
        )
    except (StrategyNotFoundError, InvalidConfigError) as e:
        logger.error(f"Backtest rejected: {e}")
        return None

    def on_status(run):
        logger.info(f"Run {run.run_id}: {run.status.value}")

    simulator = BacktestSimulator(store)
    pipeline = BacktestPipeline(
        simulator,
        n_simulations=args.simulations,
        seed=args.seed,
    )
    result = pipeline.run(config, timeout=args.timeout, on_status=on_status)

    print_section_header("PHASE 4: PERFORMANCE & ROBUSTNESS")
    print(format_backtest_report(result.run, result.monte_carlo, result.walk_forward))
    return result


def write_json_report(result: Any, args: argparse.Namespace, logger: logging.Logger) -> Optional[Path]:
    """Write metrics, diagnostics and the fill ledger as JSON."""
    run = result.run
    payload: Dict[str, Any] = {
        'version': VERSION,
        'generated_at': datetime.now().isoformat(),
        'run_id': run.run_id,
        'strategy': run.config.strategy_id,
        'symbol': run.config.symbol,
        'timeframe': run.config.timeframe,
        'status': run.status.value,
        'error_kind': run.error_kind.value if run.error_kind else None,
        'error_message': run.error_message,
        'buy_and_hold_return_pct': run.buy_and_hold_return_pct,
        'metrics': run.metrics.to_dict() if run.metrics else None,
        'monte_carlo': asdict(result.monte_carlo) if result.monte_carlo else None,
        'walk_forward': {
            'robustness_ratio': result.walk_forward.robustness_ratio,
            'efficiency': result.walk_forward.efficiency,
            'is_robust': result.walk_forward.is_robust,
        } if result.walk_forward else None,
        'trades': [
            {**asdict(t), 'side': t.side.value, 'timestamp': t.timestamp.isoformat()}
            for t in run.trades
        ],
    }

    OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
    path = OUTPUT_DIR / f"{run.config.symbol}_{run.config.strategy_id}_backtest.json"
    with open(path, 'w') as f:
        json.dump(payload, f, indent=2, default=str)
    logger.info(f"Generated: {path}")
    return path


def print_strategy_catalogue() -> None:
    """Print the available strategies with their metadata."""
    from crypto_signals.strategies import list_strategies

    print_section_header("AVAILABLE STRATEGIES")
    for info in list_strategies():
        star = "★" if info['recommended'] else " "
        print(f"  {star} {info['id']:<12} {info['name']:<22} [{info['category']}] "
              f"win rate {info['win_rate']}")
        print(f"      {info['description']}")


# =============================================================================
# MAIN
# =============================================================================

def main() -> int:
    """
    Main entry point for the demo runner.

    Returns
    -------
    int
        Exit code (0 for success, 1 for failure)
    """
    start_time = time.time()

    parser = argparse.ArgumentParser(
        description="Crypto Signals - Demo Runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_demo.py --list-strategies
  python run_demo.py --synthetic --strategy SMART_MONEY
  python run_demo.py --data ethusdt_4h.parquet --symbol ETHUSDT --timeframe 4h
        """
    )

    source = parser.add_mutually_exclusive_group()
    source.add_argument("--data", "-d", type=str, help="CSV or parquet candle file")
    source.add_argument("--synthetic", action="store_true",
                        help="Use a synthetic random-walk series (default when no --data)")

    parser.add_argument("--bars", type=int, default=DEFAULT_SYNTHETIC_BARS,
                        help=f"Synthetic series length (default: {DEFAULT_SYNTHETIC_BARS})")
    parser.add_argument("--symbol", "-s", type=str, default=DEFAULT_SYMBOL,
                        help=f"Trading pair (default: {DEFAULT_SYMBOL})")
    parser.add_argument("--timeframe", "-t", type=str, default="1h",
                        help="Candle interval (default: 1h)")
    parser.add_argument("--strategy", type=str, default=DEFAULT_STRATEGY,
                        help=f"Strategy id or name (default: {DEFAULT_STRATEGY})")
    parser.add_argument("--capital", type=float, default=10000.0,
                        help="Initial capital (default: 10000)")
    parser.add_argument("--fee", type=float, default=0.1,
                        help="Fee per fill in percent (default: 0.1)")
    parser.add_argument("--slippage", type=float, default=0.05,
                        help="Slippage per fill in percent (default: 0.05)")
    parser.add_argument("--simulations", type=int, default=10000,
                        help="Monte Carlo paths (default: 10000)")
    parser.add_argument("--seed", type=int, default=None,
                        help="Random seed for synthetic data and Monte Carlo")
    parser.add_argument("--timeout", type=float, default=None,
                        help="Backtest wall-clock limit in seconds")
    parser.add_argument("--no-report", action="store_true",
                        help="Skip writing the JSON report")
    parser.add_argument("--list-strategies", action="store_true",
                        help="List strategies and exit")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable verbose logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="  %(asctime)s │ %(levelname)s │ %(message)s",
        datefmt="%H:%M:%S"
    )
    logger = logging.getLogger(__name__)

    if args.list_strategies:
        print_strategy_catalogue()
        return 0

    print(BANNER)
    print(f"  Execution Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"  Pair:              {args.symbol} ({args.timeframe})")
    print(f"  Strategy:          {args.strategy}")
    print(f"  Capital:           ${args.capital:,.2f}")
    print(f"  Costs:             fee {args.fee}% / slippage {args.slippage}%")
    print(f"  Version:           {VERSION}")
    print()

    store = run_phase1(args, logger)
    if store is None:
        logger.error("Phase 1 failed - cannot proceed")
        return 1

    consensus = run_phase2(store, args, logger)
    if consensus is None:
        logger.warning("Phase 2 failed - continuing without consensus")

    result = run_phase3(store, args, logger)
    if result is None:
        return 1

    if not args.no_report:
        write_json_report(result, args, logger)

    total_time = time.time() - start_time
    print()
    print("=" * 79)
    print(f"  Completed in {total_time:.1f}s with status {result.run.status.value}")
    print("=" * 79)

    return 0 if result.run.status.value == "COMPLETED" else 1


if __name__ == "__main__":
    sys.exit(main())
