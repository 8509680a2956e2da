"""JSON export utilities for engine results.

This module converts backtest, optimization and simulation results to plain
JSON-compatible dictionaries and back. Backtest results survive a round trip
with identical trades and metrics; infinite metric values (a profit factor
without losing trades) are written as JSON ``Infinity``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

import numpy as np
import pandas as pd

from quantrisk.config import BacktestConfig
from quantrisk.types import (
    BacktestResult,
    BenchmarkComparison,
    BootstrapSummary,
    OptimizationResult,
    RiskLimitEvent,
    SimulationResult,
    Trade,
    WalkForwardStep,
)

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


def _serialize_value(value: Any) -> Any:
    """Convert numpy/pandas types to JSON-serializable types.

    Args:
        value: The value to serialize

    Returns:
        JSON-serializable version of the value
    """
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    elif isinstance(value, np.integer):
        return int(value)
    elif isinstance(value, np.floating):
        return float(value)
    elif isinstance(value, np.ndarray):
        return [_serialize_value(v) for v in value.tolist()]
    elif isinstance(value, pd.Series):
        return {str(k): _serialize_value(v) for k, v in value.items()}
    elif isinstance(value, pd.DataFrame):
        return value.to_dict(orient="records")
    elif isinstance(value, pd.Timestamp):
        return value.isoformat()
    elif isinstance(value, dict):
        return {str(k): _serialize_value(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_serialize_value(v) for v in value]
    else:
        return value


def _timestamp(value: Any) -> pd.Timestamp:
    return pd.Timestamp(value)


def _int_keys(data: Mapping[str, float]) -> dict[int, float]:
    return {int(k): float(v) for k, v in data.items()}


def backtest_result_to_dict(result: BacktestResult) -> dict[str, Any]:
    """Convert a backtest result to a JSON-compatible dictionary.

    Args:
        result: Backtest result to convert

    Returns:
        Dictionary with metrics, trades, equity curve, risk events,
        walk-forward steps, bootstrap and benchmark summaries and the config
    """
    config = result.config.model_dump(mode="json") if isinstance(result.config, BacktestConfig) else None
    return {
        "format_version": FORMAT_VERSION,
        "backtest_id": result.backtest_id,
        "initial_capital": float(result.initial_capital),
        "final_capital": float(result.final_capital),
        "metrics": _serialize_value(result.metrics),
        "trades": [t.to_dict() for t in result.trades],
        "equity_curve": [
            {"date": _serialize_value(date), "equity": _serialize_value(value)}
            for date, value in result.equity_curve.items()
        ],
        "risk_events": [
            {
                "date": e.date.isoformat(),
                "limit": e.limit,
                "value": float(e.value),
                "threshold": float(e.threshold),
                "positions_closed": int(e.positions_closed),
            }
            for e in result.risk_events
        ],
        "walk_forward": [
            {
                "date": s.date.isoformat(),
                "period_index": int(s.period_index),
                "train_start": s.train_start.isoformat(),
                "train_end": s.train_end.isoformat(),
                "model_weights": _serialize_value(s.model_weights),
                "symbol_budgets": _serialize_value(s.symbol_budgets),
            }
            for s in result.walk_forward
        ],
        "bootstrap": _serialize_value(vars(result.bootstrap)) if result.bootstrap else None,
        "benchmark": _serialize_value(vars(result.benchmark)) if result.benchmark else None,
        "model_results": _serialize_value(result.model_results),
        "config": config,
    }


def backtest_result_from_dict(data: Mapping[str, Any]) -> BacktestResult:
    """Rebuild a backtest result from its dictionary form.

    Args:
        data: Output of :func:`backtest_result_to_dict`

    Returns:
        Equivalent BacktestResult

    Raises:
        ValueError: If the format version is not supported
    """
    version = data.get("format_version", FORMAT_VERSION)
    if version != FORMAT_VERSION:
        msg = f"Unsupported backtest result format version: {version}"
        raise ValueError(msg)

    points = data.get("equity_curve", [])
    equity_curve = pd.Series(
        [float(p["equity"]) for p in points],
        index=pd.DatetimeIndex([_timestamp(p["date"]) for p in points], name="date"),
        name="equity",
    )

    bootstrap = None
    if data.get("bootstrap"):
        b = data["bootstrap"]
        bootstrap = BootstrapSummary(
            n_simulations=int(b["n_simulations"]),
            final_capital=_int_keys(b["final_capital"]),
            total_return=_int_keys(b["total_return"]),
            max_drawdown=_int_keys(b["max_drawdown"]),
            probability_of_loss=float(b["probability_of_loss"]),
        )

    benchmark = BenchmarkComparison(**data["benchmark"]) if data.get("benchmark") else None
    config = BacktestConfig.model_validate(data["config"]) if data.get("config") else None

    return BacktestResult(
        backtest_id=str(data["backtest_id"]),
        initial_capital=float(data["initial_capital"]),
        final_capital=float(data["final_capital"]),
        metrics={k: float(v) for k, v in data["metrics"].items()},
        trades=tuple(Trade.from_dict(t) for t in data.get("trades", [])),
        equity_curve=equity_curve,
        risk_events=tuple(
            RiskLimitEvent(
                date=_timestamp(e["date"]),
                limit=e["limit"],
                value=float(e["value"]),
                threshold=float(e["threshold"]),
                positions_closed=int(e["positions_closed"]),
            )
            for e in data.get("risk_events", [])
        ),
        walk_forward=tuple(
            WalkForwardStep(
                date=_timestamp(s["date"]),
                period_index=int(s["period_index"]),
                train_start=_timestamp(s["train_start"]),
                train_end=_timestamp(s["train_end"]),
                model_weights={k: float(v) for k, v in s["model_weights"].items()},
                symbol_budgets=(
                    {k: float(v) for k, v in s["symbol_budgets"].items()}
                    if s.get("symbol_budgets")
                    else None
                ),
            )
            for s in data.get("walk_forward", [])
        ),
        bootstrap=bootstrap,
        benchmark=benchmark,
        model_results={
            name: {k: float(v) for k, v in metrics.items()}
            for name, metrics in data.get("model_results", {}).items()
        },
        config=config,
    )


def export_backtest_result(result: BacktestResult, output_path: str | Path) -> Path:
    """Write a backtest result to a JSON file.

    Args:
        result: Backtest result to export
        output_path: Path to save JSON file

    Returns:
        Path written
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, "w") as f:
        json.dump(backtest_result_to_dict(result), f, indent=2)

    logger.info(f"Exported backtest '{result.backtest_id}' to {output_path}")
    return output_path


def load_backtest_result(input_path: str | Path) -> BacktestResult:
    """Load a backtest result from a JSON file.

    Args:
        input_path: Path to JSON file

    Returns:
        The stored BacktestResult
    """
    with open(Path(input_path)) as f:
        data = json.load(f)
    return backtest_result_from_dict(data)


def optimization_result_to_dict(result: OptimizationResult) -> dict[str, Any]:
    """Convert an optimization result to a JSON-compatible dictionary."""
    metrics = result.metrics
    return {
        "method": result.method,
        "weights": _serialize_value(result.weights),
        "scaled_weights": _serialize_value(result.scaled_weights),
        "leverage": float(result.leverage),
        "target_volatility": result.target_volatility,
        "volatility_gap": float(result.volatility_gap),
        "factor_exposures": _serialize_value(result.factor_exposures),
        "target_factor_exposures": _serialize_value(result.target_factor_exposures),
        "metrics": {
            "expected_return": float(metrics.expected_return),
            "volatility": float(metrics.volatility),
            "sharpe_ratio": float(metrics.sharpe_ratio),
            "diversification_ratio": float(metrics.diversification_ratio),
            "risk_contributions": _serialize_value(metrics.risk_contributions),
        },
        "trace": _serialize_value(vars(result.trace)),
    }


def simulation_result_to_dict(result: SimulationResult, include_bands: bool = False) -> dict[str, Any]:
    """Convert a simulation result to a JSON-compatible dictionary.

    Args:
        result: Simulation result to convert
        include_bands: Whether to include the per-period percentile bands

    Returns:
        Dictionary of statistics, stress tests and path analysis
    """
    stats = result.statistics
    paths = result.path_analysis
    data = {
        "portfolio_id": result.portfolio_id,
        "num_simulations": result.num_simulations,
        "time_horizon": result.time_horizon,
        "confidence_levels": list(result.confidence_levels),
        "seed": result.seed,
        "distribution": result.distribution,
        "statistics": _serialize_value(vars(stats)),
        "stress_tests": [
            {
                "name": s.name,
                "description": s.description,
                "portfolio_return": float(s.portfolio_return),
                "asset_shocks": _serialize_value(s.asset_shocks),
            }
            for s in result.stress_tests
        ],
        "path_analysis": {
            k: float(v) for k, v in vars(paths).items() if k != "bands"
        },
    }
    if include_bands:
        data["path_analysis"]["bands"] = _serialize_value(
            paths.bands.reset_index(drop=True)
        )
    return data
