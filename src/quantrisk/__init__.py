"""Quantitative risk engine: optimizers, Monte Carlo simulation, hedging,
risk monitoring and backtesting over plain numeric inputs.
"""

from __future__ import annotations

__version__ = "0.1.0"

from quantrisk.engine import (
    calculate_detailed_performance,
    create_dynamic_hedging_strategy,
    generate_comparison_analysis,
    monitor_portfolio_risk,
    optimize_factor_based,
    optimize_risk_parity,
    run_comprehensive_backtest,
    run_monte_carlo_simulation,
)
from quantrisk.exceptions import (
    ConvergenceShortfall,
    DataError,
    OperationCancelled,
    QuantRiskError,
    ScenarioError,
)

__all__ = [
    "__version__",
    "ConvergenceShortfall",
    "DataError",
    "OperationCancelled",
    "QuantRiskError",
    "ScenarioError",
    "calculate_detailed_performance",
    "create_dynamic_hedging_strategy",
    "generate_comparison_analysis",
    "monitor_portfolio_risk",
    "optimize_factor_based",
    "optimize_risk_parity",
    "run_comprehensive_backtest",
    "run_monte_carlo_simulation",
]
