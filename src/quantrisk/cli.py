"""Command-line interface for quantrisk using Typer.

This module provides commands for portfolio optimization, Monte Carlo
simulation, backtesting and result comparison. Inputs are CSV files; results
are printed as tables and optionally written as JSON. Flags always override
config file settings.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated, Optional

import pandas as pd
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from quantrisk import __version__
from quantrisk.backtest.signals import MovingAverageCrossModel
from quantrisk.config import (
    BacktestConfig,
    ComparisonConfig,
    FactorOptimizerConfig,
    RiskParityConfig,
    SimulationConfig,
)
from quantrisk.engine import (
    generate_comparison_analysis,
    optimize_factor_based,
    optimize_risk_parity,
    run_comprehensive_backtest,
    run_monte_carlo_simulation,
)
from quantrisk.exceptions import QuantRiskError
from quantrisk.report.json_export import (
    export_backtest_result,
    load_backtest_result,
    optimization_result_to_dict,
    simulation_result_to_dict,
)
from quantrisk.simulation.scenarios import MarketScenario
from quantrisk.types import OptimizationResult, Portfolio
from quantrisk.utils.config import EngineSettings
from quantrisk.validate.walkforward import analyze_walk_forward_stability

app = typer.Typer(
    name="quantrisk",
    help="Portfolio optimization, risk simulation and backtesting toolkit",
    add_completion=False,
)

optimize_app = typer.Typer(help="Portfolio optimization commands")
backtest_app = typer.Typer(help="Backtesting commands")
report_app = typer.Typer(help="Result comparison commands")

app.add_typer(optimize_app, name="optimize")
app.add_typer(backtest_app, name="backtest")
app.add_typer(report_app, name="report")

console = Console()

CLI_ERRORS = (QuantRiskError, ValueError, OSError)


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
) -> None:
    """Configure logging from QUANTRISK_LOG_LEVEL (or --verbose)."""
    settings = EngineSettings()
    level = "DEBUG" if verbose else settings.log_level
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=False)],
        force=True,
    )


@app.command()
def version() -> None:
    """Display version information."""
    console.print(f"[bold blue]quantrisk[/bold blue] version [green]{__version__}[/green]")


# ============================================================================
# Helpers
# ============================================================================


def _read_returns(path: str) -> pd.DataFrame:
    """Returns CSV: first column is the date index, one column per asset."""
    return pd.read_csv(path, index_col=0, parse_dates=True)


def _read_bars(path: str) -> pd.DataFrame:
    """Bars CSV with date, symbol, open, high, low, close columns."""
    df = pd.read_csv(path, parse_dates=["date"])
    return df.set_index(["date", "symbol"]).sort_index()


def _parse_pairs(values: Optional[list[str]], option: str) -> dict[str, float]:
    pairs = {}
    for item in values or []:
        key, sep, raw = item.partition("=")
        msg = f"{option} expects NAME=VALUE, got {item!r}"
        if not sep:
            raise typer.BadParameter(msg)
        try:
            pairs[key.strip()] = float(raw)
        except ValueError as e:
            raise typer.BadParameter(msg) from e
    return pairs


def _write_json(data: dict, out: str) -> None:
    path = Path(out)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    console.print(f"[green]Success:[/green] Wrote {path}")


def _print_optimization(result: OptimizationResult) -> None:
    table = Table(title=f"{result.method} weights")
    table.add_column("Asset", style="cyan")
    table.add_column("Weight", justify="right")
    table.add_column("Scaled", justify="right")
    table.add_column("Risk share", justify="right")
    for asset, weight in result.weights.items():
        table.add_row(
            asset,
            f"{weight:.4f}",
            f"{result.scaled_weights.get(asset, weight):.4f}",
            f"{result.metrics.risk_contributions[asset]:.4f}",
        )
    console.print(table)
    console.print(
        f"  Volatility: {result.metrics.volatility:.2%}  Sharpe: {result.metrics.sharpe_ratio:.2f}  "
        f"Leverage: {result.leverage:.2f}"
    )
    status = "[green]converged[/green]" if result.converged else "[yellow]not converged[/yellow]"
    console.print(f"  Solver: {status} after {result.trace.iterations} iterations")
    if result.factor_exposures:
        exposures = ", ".join(f"{k}={v:.3f}" for k, v in result.factor_exposures.items())
        console.print(f"  Factor exposures: {exposures}")


# ============================================================================
# Optimization commands
# ============================================================================


@optimize_app.command("risk-parity")
def optimize_risk_parity_cmd(
    returns: Annotated[str, typer.Argument(help="CSV of per-period asset returns")],
    target_vol: Annotated[float, typer.Option(help="Annualized target volatility")] = 0.10,
    max_iterations: Annotated[int, typer.Option(help="Iteration budget")] = 1000,
    out: Annotated[Optional[str], typer.Option("--out", help="JSON output path")] = None,
) -> None:
    """Equal risk contribution weights.

    Examples:
        quantrisk optimize risk-parity data/returns.csv --target-vol 0.12
    """
    try:
        cfg = RiskParityConfig(target_volatility=target_vol, max_iterations=max_iterations)
        result = optimize_risk_parity(_read_returns(returns), cfg)
    except CLI_ERRORS as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    _print_optimization(result)
    if out:
        _write_json(optimization_result_to_dict(result), out)


@optimize_app.command("factor")
def optimize_factor_cmd(
    returns: Annotated[str, typer.Argument(help="CSV of per-period asset returns")],
    loadings: Annotated[str, typer.Argument(help="CSV of factor loadings (assets x factors)")],
    target: Annotated[
        Optional[list[str]], typer.Option(help="Factor exposure target FACTOR=VALUE (repeatable)")
    ] = None,
    tolerance: Annotated[float, typer.Option(help="Allowed exposure deviation")] = 0.0,
    risk_aversion: Annotated[float, typer.Option(help="Risk aversion")] = 3.0,
    out: Annotated[Optional[str], typer.Option("--out", help="JSON output path")] = None,
) -> None:
    """Mean-variance weights with factor exposure targets.

    Examples:
        quantrisk optimize factor data/returns.csv data/loadings.csv --target market=1.0
    """
    try:
        cfg = FactorOptimizerConfig(
            target_factor_exposures=_parse_pairs(target, "--target"),
            exposure_tolerance=tolerance,
            risk_aversion=risk_aversion,
        )
        factor_loadings = pd.read_csv(loadings, index_col=0)
        result = optimize_factor_based(_read_returns(returns), factor_loadings, cfg)
    except CLI_ERRORS as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    _print_optimization(result)
    if out:
        _write_json(optimization_result_to_dict(result), out)


# ============================================================================
# Simulation command
# ============================================================================


@app.command()
def simulate(
    returns: Annotated[str, typer.Argument(help="CSV of per-period asset returns")],
    weight: Annotated[
        Optional[list[str]], typer.Option(help="Portfolio weight ASSET=VALUE (default equal weight)")
    ] = None,
    simulations: Annotated[int, typer.Option(help="Number of paths")] = 10_000,
    horizon: Annotated[int, typer.Option(help="Horizon in periods")] = 252,
    seed: Annotated[Optional[int], typer.Option(help="Random seed (default QUANTRISK_SEED or 42)")] = None,
    kind: Annotated[str, typer.Option(help="Scenario kind: parametric or empirical")] = "parametric",
    distribution: Annotated[str, typer.Option(help="normal or student_t")] = "normal",
    out: Annotated[Optional[str], typer.Option("--out", help="JSON output path")] = None,
) -> None:
    """Monte Carlo VaR/CVaR and stress tests for a portfolio.

    Examples:
        quantrisk simulate data/returns.csv --weight AAPL=0.6 --weight MSFT=0.4
    """
    settings = EngineSettings()
    try:
        frame = _read_returns(returns)
        weights = _parse_pairs(weight, "--weight") or {
            str(c): 1.0 / len(frame.columns) for c in frame.columns
        }
        cfg = SimulationConfig(
            num_simulations=simulations,
            time_horizon=horizon,
            seed=seed if seed is not None else (settings.seed if settings.seed is not None else 42),
            max_workers=settings.max_workers,
        )
        scenario = MarketScenario.from_returns(frame, kind=kind, distribution=distribution)
        result = run_monte_carlo_simulation(Portfolio("cli", weights), scenario, cfg)
    except CLI_ERRORS as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    stats = result.statistics
    table = Table(title=f"{result.num_simulations} paths x {result.time_horizon} periods")
    table.add_column("Statistic", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Expected return", f"{stats.expected_return:.2%}")
    table.add_row("Volatility", f"{stats.volatility:.2%}")
    table.add_row("Probability of loss", f"{stats.probability_of_loss:.2%}")
    for level in result.confidence_levels:
        table.add_row(f"VaR {level:.0%}", f"{result.var(level):.2%}")
        table.add_row(f"CVaR {level:.0%}", f"{result.cvar(level):.2%}")
    for stress in result.stress_tests:
        table.add_row(f"Stress: {stress.name}", f"{stress.portfolio_return:.2%}")
    console.print(table)

    if out:
        _write_json(simulation_result_to_dict(result), out)


# ============================================================================
# Backtest commands
# ============================================================================


@backtest_app.command("run")
def backtest_run(
    bars: Annotated[str, typer.Argument(help="CSV of OHLC bars (date, symbol, open, high, low, close)")],
    config: Annotated[Optional[str], typer.Option(help="Config YAML file")] = None,
    symbols: Annotated[Optional[list[str]], typer.Option(help="Symbols to trade")] = None,
    start: Annotated[Optional[str], typer.Option(help="Start date override")] = None,
    end: Annotated[Optional[str], typer.Option(help="End date override")] = None,
    capital: Annotated[Optional[float], typer.Option(help="Initial capital override")] = None,
    fast: Annotated[int, typer.Option(help="Fast moving average window")] = 10,
    slow: Annotated[int, typer.Option(help="Slow moving average window")] = 30,
    out: Annotated[Optional[str], typer.Option("--out", help="JSON output path")] = None,
) -> None:
    """Backtest the moving-average cross model over OHLC bars.

    Examples:
        quantrisk backtest run data/bars.csv --symbols AAPL --symbols MSFT
        quantrisk backtest run data/bars.csv --config configs/backtest.yaml --out out/run.json
    """
    console.print("[bold]Running backtest[/bold]")
    try:
        data = _read_bars(bars)
        overrides = {
            k: v
            for k, v in {
                "symbols": symbols,
                "start_date": start,
                "end_date": end,
                "initial_capital": capital,
            }.items()
            if v is not None
        }
        if config is not None:
            base = BacktestConfig.from_yaml(config).model_dump()
            cfg = BacktestConfig.model_validate({**base, **overrides})
        else:
            if "symbols" not in overrides:
                overrides["symbols"] = [
                    s for s in data.index.get_level_values("symbol").unique() if s != "SPY"
                ]
            cfg = BacktestConfig.model_validate(overrides)

        console.print(f"  Symbols: {', '.join(cfg.symbols)}")
        console.print(f"  Capital: ${cfg.initial_capital:,.0f}")
        model = MovingAverageCrossModel(fast=fast, slow=slow)
        result = run_comprehensive_backtest(cfg, data, {"ma_cross": model})
    except CLI_ERRORS as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    table = Table(title=f"Backtest {result.backtest_id}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for key in ("total_return", "annual_return", "volatility", "max_drawdown", "win_rate"):
        table.add_row(key, f"{result.metrics[key]:.2%}")
    for key in ("sharpe_ratio", "sortino_ratio", "profit_factor", "total_trades"):
        table.add_row(key, f"{result.metrics[key]:.2f}")
    console.print(table)
    if result.risk_events:
        console.print(f"[yellow]Warning:[/yellow] {len(result.risk_events)} risk limit halts")
    if result.walk_forward:
        stability = analyze_walk_forward_stability(result.walk_forward)
        console.print(
            f"  Walk-forward: {len(stability)} re-fits, mean model weight dispersion "
            f"{stability['weight_dispersion'].mean():.3f}"
        )

    if out:
        export_backtest_result(result, out)
        console.print(f"[green]Success:[/green] Wrote {out}")


@backtest_app.command("verify-config")
def backtest_verify_config(
    config: Annotated[str, typer.Argument(help="Path to config YAML")],
) -> None:
    """Verify a backtest configuration file is valid.

    Examples:
        quantrisk backtest verify-config configs/backtest.yaml
    """
    try:
        cfg = BacktestConfig.from_yaml(config)
        console.print(f"[green]Success:[/green] Config is valid: {config}")
        console.print(f"  Symbols: {', '.join(cfg.symbols)}")
        console.print(f"  Sizing: {cfg.position_sizing}")
        console.print(f"  Walk-forward: {cfg.walk_forward}")
    except CLI_ERRORS as e:
        console.print(f"[red]Error:[/red] Config is invalid: {e}")
        raise typer.Exit(1) from e


# ============================================================================
# Report commands
# ============================================================================


@report_app.command("compare")
def report_compare(
    results: Annotated[list[str], typer.Argument(help="Backtest result JSON files")],
    out: Annotated[Optional[str], typer.Option("--out", help="JSON output path")] = None,
) -> None:
    """Rank saved backtest results by composite score.

    Examples:
        quantrisk report compare out/a.json out/b.json
    """
    try:
        loaded = [load_backtest_result(path) for path in results]
        report = generate_comparison_analysis(loaded, ComparisonConfig())
    except CLI_ERRORS as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    table = Table(title="Backtest ranking")
    table.add_column("Rank", justify="right")
    table.add_column("Backtest", style="cyan")
    table.add_column("Score", justify="right")
    for ranked in report.rankings:
        table.add_row(str(ranked.rank), ranked.backtest_id, f"{ranked.score:.3f}")
    console.print(table)
    for metric, backtest_id in report.best_performers.items():
        console.print(f"  Best {metric}: [cyan]{backtest_id}[/cyan]")

    if out:
        _write_json(
            {
                "rankings": [vars(r) for r in report.rankings],
                "best_performers": report.best_performers,
                "pairwise": [vars(p) for p in report.pairwise],
            },
            out,
        )


if __name__ == "__main__":
    app()
