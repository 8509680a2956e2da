"""End-to-end risk pipeline example.

This script runs the engine on synthetic data: risk parity weights, a Monte
Carlo VaR check with stress tests, a market hedge, a risk monitor snapshot
and a walk-forward backtest of two signal models.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from quantrisk import (
    calculate_detailed_performance,
    create_dynamic_hedging_strategy,
    monitor_portfolio_risk,
    optimize_risk_parity,
    run_comprehensive_backtest,
    run_monte_carlo_simulation,
)
from quantrisk.backtest.signals import ConstantSignalModel, MovingAverageCrossModel
from quantrisk.config import BacktestConfig
from quantrisk.simulation.scenarios import MarketScenario
from quantrisk.types import MarketSnapshot, Portfolio


def synthetic_prices(n_periods: int = 756, seed: int = 7) -> pd.DataFrame:
    """Close prices for four equities driven by a market factor, plus SPY."""
    rng = np.random.default_rng(seed)
    market = rng.normal(0.0004, 0.011, n_periods)
    betas = {"AAPL": 1.2, "MSFT": 1.0, "JNJ": 0.6, "XOM": 0.9}
    returns = {s: b * market + rng.normal(0.0001, 0.008, n_periods) for s, b in betas.items()}
    returns["SPY"] = market
    dates = pd.date_range("2021-01-04", periods=n_periods, freq="B")
    return 100 * np.exp(pd.DataFrame(returns, index=dates).cumsum())


def to_bars(closes: pd.DataFrame) -> pd.DataFrame:
    opens = closes.shift(1).fillna(closes.iloc[0])
    frames = {
        symbol: pd.DataFrame(
            {
                "open": opens[symbol],
                "high": np.maximum(opens[symbol], closes[symbol]) * 1.004,
                "low": np.minimum(opens[symbol], closes[symbol]) * 0.996,
                "close": closes[symbol],
            }
        )
        for symbol in closes.columns
    }
    return pd.concat(frames, names=["symbol", "date"]).swaplevel().sort_index()


def main() -> None:
    """Run the risk pipeline example."""
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    print("=" * 70)
    print("QUANTRISK - RISK PIPELINE EXAMPLE")
    print("=" * 70)

    closes = synthetic_prices()
    returns = closes.pct_change().iloc[1:]
    equities = returns.drop(columns="SPY")

    # 1. Optimize
    print("\n[1/5] Risk parity weights...")
    optimized = optimize_risk_parity(equities, {"target_volatility": 0.12})
    for asset, weight in optimized.weights.items():
        print(f"  {asset:5s} {weight:7.2%}  (levered {optimized.scaled_weights[asset]:7.2%})")
    print(f"  Leverage {optimized.leverage:.2f}, converged={optimized.converged}")

    portfolio = Portfolio("example", optimized.weights, optimized.metrics)

    # 2. Simulate
    print("\n[2/5] Monte Carlo simulation...")
    scenario = MarketScenario.from_returns(returns, distribution="student_t", degrees_of_freedom=5.0)
    simulation = run_monte_carlo_simulation(
        portfolio, scenario, {"num_simulations": 5000, "time_horizon": 21}
    )
    print(f"  21-day VaR 95%: {simulation.var(0.95):.2%}, CVaR 95%: {simulation.cvar(0.95):.2%}")
    for stress in simulation.stress_tests:
        print(f"  Stress {stress.name:22s} {stress.portfolio_return:8.2%}")

    # 3. Hedge
    print("\n[3/5] Market hedge...")
    hedge = create_dynamic_hedging_strategy(
        portfolio,
        {"hedging_assets": ["SPY"], "max_hedge_leverage": 1.5, "risk_target": 0.08},
        returns=returns,
        simulation=simulation,
    )
    print(f"  SPY hedge ratio {hedge.hedge_ratios['SPY']:.3f}, effectiveness {hedge.effectiveness:.1%}")
    print(f"  Cost efficient: {hedge.cost_efficient}, active triggers: {[t.name for t in hedge.active_triggers]}")

    # 4. Monitor
    print("\n[4/5] Risk monitor...")
    snapshot = monitor_portfolio_risk(portfolio, MarketSnapshot(returns=equities.iloc[-63:]))
    print(f"  Volatility {snapshot.metrics['volatility']:.2%} ({snapshot.volatility_regime} regime)")
    for alert in snapshot.alerts:
        print(f"  [{alert.severity.upper()}] {alert.message}")

    # 5. Backtest
    print("\n[5/5] Walk-forward backtest...")
    config = BacktestConfig(
        name="example",
        symbols=list(equities.columns),
        walk_forward=True,
        walk_forward_periods=63,
        risk_parity_budgeting=True,
        monte_carlo_simulations=500,
    )
    models = {
        "trend": MovingAverageCrossModel(fast=10, slow=40),
        "long_bias": ConstantSignalModel(direction=1, confidence=0.7),
    }
    result = run_comprehensive_backtest(config, to_bars(closes), models)
    performance = calculate_detailed_performance(
        result.trades, {"initial_capital": config.initial_capital}
    )
    print(f"  Total return {result.total_return:.2%}, Sharpe {result.metrics['sharpe_ratio']:.2f}")
    print(f"  Trades {performance.total_trades}, win rate {performance.win_rate:.1%}")
    if result.bootstrap:
        print(f"  Bootstrap 5th percentile return {result.bootstrap.total_return[5]:.2%}")
    for name, metrics in result.model_results.items():
        print(f"  Model {name:10s} total return {metrics['total_return']:.2%}")

    print("\n" + "=" * 70)


if __name__ == "__main__":
    main()
