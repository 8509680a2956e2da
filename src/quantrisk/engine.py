"""Public entry points of the risk engine.

Each function accepts its configuration as a pydantic model or a plain
mapping, builds the component for that single call and returns an
immutable result. No state survives between calls.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence, TypeVar

import pandas as pd
from pydantic import BaseModel, ValidationError

from quantrisk import statistics as qs
from quantrisk.backtest import metrics as backtest_metrics
from quantrisk.backtest.engine import EventDrivenBacktester
from quantrisk.config import (
    BacktestConfig,
    ComparisonConfig,
    FactorOptimizerConfig,
    HedgingConfig,
    MonitorConfig,
    RiskParityConfig,
    SimulationConfig,
)
from quantrisk.exceptions import DataError
from quantrisk.hedging.strategy import DynamicHedgingEngine
from quantrisk.portfolio.optimizers import FactorBasedOptimizer, RiskParityOptimizer
from quantrisk.portfolio.risk import RiskMonitor
from quantrisk.protocols import SignalModel
from quantrisk.simulation.monte_carlo import MonteCarloSimulator
from quantrisk.simulation.scenarios import MarketScenario
from quantrisk.types import (
    BacktestResult,
    ComparisonReport,
    HedgingStrategy,
    MarketSnapshot,
    OptimizationResult,
    PerformanceAnalysis,
    Portfolio,
    RiskSnapshot,
    SimulationResult,
    Trade,
)
from quantrisk.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

ConfigT = TypeVar("ConfigT", bound=BaseModel)


def _coerce_config(
    config: ConfigT | Mapping[str, Any] | None, model: type[ConfigT], name: str = "config"
) -> ConfigT:
    """Validate a mapping into ``model``; pydantic errors become DataError."""
    if isinstance(config, model):
        return config
    if config is None:
        config = {}
    if not isinstance(config, Mapping):
        msg = f"expected {model.__name__} or a mapping, got {type(config).__name__}"
        raise DataError(msg, field=name)
    try:
        return model.model_validate(dict(config))
    except ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(part) for part in first["loc"]) or name
        raise DataError(first["msg"], field=loc) from e


def optimize_risk_parity(
    returns: qs.ReturnsLike,
    config: RiskParityConfig | Mapping[str, Any] | None = None,
    token: CancellationToken | None = None,
) -> OptimizationResult:
    """Equal risk contribution weights scaled to a target volatility.

    Parameters
    ----------
    returns : pd.DataFrame | Mapping | np.ndarray
        Aligned per-period asset returns
    config : RiskParityConfig | Mapping, optional
        Optimizer settings
    token : CancellationToken | None, optional
        Cancellation token

    Returns
    -------
    OptimizationResult
    """
    cfg = _coerce_config(config, RiskParityConfig)
    return RiskParityOptimizer(cfg).optimize(returns, token)


def optimize_factor_based(
    returns: qs.ReturnsLike,
    factor_exposures: pd.DataFrame | Mapping[str, Mapping[str, float]],
    config: FactorOptimizerConfig | Mapping[str, Any] | None = None,
    token: CancellationToken | None = None,
) -> OptimizationResult:
    """Mean-variance weights subject to factor exposure targets and bounds."""
    cfg = _coerce_config(config, FactorOptimizerConfig)
    return FactorBasedOptimizer(cfg).optimize(returns, factor_exposures, token)


def run_monte_carlo_simulation(
    portfolio: Portfolio,
    market_scenario: MarketScenario,
    config: SimulationConfig | Mapping[str, Any] | None = None,
    token: CancellationToken | None = None,
) -> SimulationResult:
    """Simulate horizon outcomes of a portfolio and apply stress tests.

    Parameters
    ----------
    portfolio : Portfolio
        Weights to simulate
    market_scenario : MarketScenario
        Return generating model
    config : SimulationConfig | Mapping, optional
        Path count, horizon, seed and stress settings
    token : CancellationToken | None, optional
        Checked between chunks

    Returns
    -------
    SimulationResult
    """
    cfg = _coerce_config(config, SimulationConfig)
    return MonteCarloSimulator(cfg).run(portfolio, market_scenario, token)


def create_dynamic_hedging_strategy(
    portfolio: Portfolio,
    config: HedgingConfig | Mapping[str, Any],
    returns: pd.DataFrame | None = None,
    scenario: MarketScenario | None = None,
    simulation: SimulationResult | None = None,
) -> HedgingStrategy:
    """Hedge ratios, rebalancing rules and triggers for a portfolio."""
    cfg = _coerce_config(config, HedgingConfig)
    return DynamicHedgingEngine(cfg).create(
        portfolio, returns=returns, scenario=scenario, simulation=simulation
    )


def monitor_portfolio_risk(
    portfolio: Portfolio,
    market_snapshot: MarketSnapshot,
    config: MonitorConfig | Mapping[str, Any] | None = None,
    previous: RiskSnapshot | None = None,
) -> RiskSnapshot:
    """Risk metrics, attribution, alerts and regimes for current weights.

    Parameters
    ----------
    portfolio : Portfolio
        Current weights
    market_snapshot : MarketSnapshot
        Recent returns and optional factor loadings
    config : MonitorConfig | Mapping, optional
        Alert thresholds
    previous : RiskSnapshot | None, optional
        Prior snapshot, used to flag repeated alerts

    Returns
    -------
    RiskSnapshot
    """
    cfg = _coerce_config(config, MonitorConfig)
    return RiskMonitor(cfg).evaluate(portfolio, market_snapshot, previous)


def run_comprehensive_backtest(
    config: BacktestConfig | Mapping[str, Any],
    market_data: pd.DataFrame,
    models: Mapping[str, SignalModel],
    token: CancellationToken | None = None,
) -> BacktestResult:
    """Replay signal models over OHLC bars with frictions and risk limits.

    Parameters
    ----------
    config : BacktestConfig | Mapping
        Backtest settings
    market_data : pd.DataFrame
        OHLC bars with a (date, symbol) MultiIndex
    models : Mapping[str, SignalModel]
        Named signal models
    token : CancellationToken | None, optional
        Checked once per period

    Returns
    -------
    BacktestResult
    """
    cfg = _coerce_config(config, BacktestConfig)
    return EventDrivenBacktester(cfg).run(market_data, models, token)


def calculate_detailed_performance(
    trades: Sequence[Trade | Mapping[str, Any]],
    backtest_summary: Mapping[str, Any],
) -> PerformanceAnalysis:
    """Trade-level statistics; see :func:`quantrisk.backtest.metrics.calculate_detailed_performance`."""
    return backtest_metrics.calculate_detailed_performance(trades, backtest_summary)


def generate_comparison_analysis(
    results: Sequence[BacktestResult],
    config: ComparisonConfig | Mapping[str, Any] | None = None,
) -> ComparisonReport:
    """Rank backtests and report relative performance."""
    cfg = _coerce_config(config, ComparisonConfig)
    return backtest_metrics.generate_comparison_analysis(results, cfg)
