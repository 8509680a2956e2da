"""Immutable records produced and consumed by the engine.

Every result is a frozen dataclass owned by the caller once returned.
Pandas-valued fields are excluded from equality so records compare on
their scalar content.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

import numpy as np
import pandas as pd

Severity = Literal["low", "medium", "high", "critical"]


@dataclass(frozen=True)
class PortfolioMetrics:
    """Derived portfolio statistics, annualized.

    Parameters
    ----------
    expected_return : float
        Annualized expected return
    volatility : float
        Annualized volatility
    sharpe_ratio : float
        Excess return over volatility
    risk_contributions : dict[str, float]
        Share of portfolio variance per asset (sums to 1)
    diversification_ratio : float
        Weighted average volatility over portfolio volatility
    factor_exposures : dict[str, float] | None, default None
        Realized factor exposures when loadings were supplied
    """

    expected_return: float
    volatility: float
    sharpe_ratio: float
    risk_contributions: dict[str, float]
    diversification_ratio: float
    factor_exposures: dict[str, float] | None = None


@dataclass(frozen=True)
class OptimizationTrace:
    """Solver diagnostics attached to every optimization result."""

    iterations: int
    converged: bool
    final_objective: float
    tolerance_achieved: float
    message: str = ""


@dataclass(frozen=True)
class OptimizationResult:
    """Output of the risk parity and factor-based optimizers.

    Parameters
    ----------
    method : str
        Optimizer name ("risk_parity" or "factor_based")
    weights : dict[str, float]
        Fully invested weights (sum to 1)
    metrics : PortfolioMetrics
        Metrics of ``weights``
    trace : OptimizationTrace
        Iterations, convergence flag and achieved residual
    leverage : float, default 1.0
        Scale applied to reach the target volatility
    scaled_weights : dict[str, float]
        ``leverage * weights``
    target_volatility : float | None, default None
        Requested annualized volatility
    volatility_gap : float, default 0.0
        Achieved levered volatility minus the target
    factor_exposures : dict[str, float] | None, default None
        Realized exposures of ``weights``
    target_factor_exposures : dict[str, float] | None, default None
        Requested exposures
    """

    method: str
    weights: dict[str, float]
    metrics: PortfolioMetrics
    trace: OptimizationTrace
    leverage: float = 1.0
    scaled_weights: dict[str, float] = field(default_factory=dict)
    target_volatility: float | None = None
    volatility_gap: float = 0.0
    factor_exposures: dict[str, float] | None = None
    target_factor_exposures: dict[str, float] | None = None

    @property
    def converged(self) -> bool:
        return self.trace.converged


@dataclass(frozen=True)
class Portfolio:
    """A weight vector supplied by the caller on every call that needs one.

    Parameters
    ----------
    portfolio_id : str
        Caller-owned identifier
    weights : dict[str, float]
        Asset weights
    metrics : PortfolioMetrics | None, default None
        Metrics captured when the weights were produced
    baseline_correlation : pd.DataFrame | None, default None
        Correlation matrix at optimization time, used for regime-shift alerts
    """

    portfolio_id: str
    weights: dict[str, float]
    metrics: PortfolioMetrics | None = None
    baseline_correlation: pd.DataFrame | None = field(default=None, compare=False)

    @property
    def assets(self) -> list[str]:
        return list(self.weights)

    def weight_vector(self, assets: list[str]) -> np.ndarray:
        """Weights aligned to ``assets``, zero where the portfolio holds nothing."""
        return np.array([self.weights.get(a, 0.0) for a in assets], dtype=float)

    @classmethod
    def from_optimization(
        cls,
        portfolio_id: str,
        result: OptimizationResult,
        baseline_correlation: pd.DataFrame | None = None,
    ) -> Portfolio:
        return cls(
            portfolio_id=portfolio_id,
            weights=dict(result.weights),
            metrics=result.metrics,
            baseline_correlation=baseline_correlation,
        )


# ============================================================================
# Simulation
# ============================================================================


@dataclass(frozen=True)
class StressTestResult:
    """Deterministic shock applied outside the random draws."""

    name: str
    description: str
    asset_shocks: dict[str, float]
    portfolio_return: float

    @property
    def loss(self) -> float:
        return -self.portfolio_return


@dataclass(frozen=True)
class SimulationStatistics:
    """Distribution of horizon portfolio returns across simulated paths.

    ``var`` and ``cvar`` map confidence level to a loss expressed as a
    positive fraction of starting value.
    """

    expected_return: float
    volatility: float
    skewness: float
    kurtosis: float
    min_return: float
    max_return: float
    probability_of_loss: float
    var: dict[float, float]
    cvar: dict[float, float]
    percentiles: dict[float, float]


@dataclass(frozen=True)
class PathAnalysis:
    """Percentile bands of cumulative value and path outcome shares."""

    bands: pd.DataFrame = field(compare=False)
    paths_above_zero: float = 0.0
    paths_below_minus_10pct: float = 0.0
    paths_above_20pct: float = 0.0
    worst_path_return: float = 0.0
    best_path_return: float = 0.0
    median_path_return: float = 0.0


@dataclass(frozen=True)
class SimulationResult:
    """Monte Carlo run output with the parameters needed to reproduce it."""

    portfolio_id: str
    statistics: SimulationStatistics
    stress_tests: tuple[StressTestResult, ...]
    path_analysis: PathAnalysis
    num_simulations: int
    time_horizon: int
    confidence_levels: tuple[float, ...]
    seed: int
    distribution: str

    def var(self, confidence: float) -> float:
        return self.statistics.var[confidence]

    def cvar(self, confidence: float) -> float:
        return self.statistics.cvar[confidence]

    def stress_test(self, name: str) -> StressTestResult:
        for result in self.stress_tests:
            if result.name == name:
                return result
        msg = f"Unknown stress test: {name}"
        raise KeyError(msg)


# ============================================================================
# Hedging
# ============================================================================


@dataclass(frozen=True)
class HedgeRule:
    """Standing rule describing when the hedge is rebalanced."""

    name: str
    kind: Literal["calendar", "delta", "volatility", "correlation"]
    condition: str
    action: str
    threshold: float | None = None


@dataclass(frozen=True)
class HedgeTrigger:
    """Event threshold that forces an immediate re-hedge."""

    name: str
    metric: str
    threshold: float
    current_value: float
    action: str
    priority: Literal["low", "medium", "high"] = "medium"

    @property
    def active(self) -> bool:
        return self.current_value > self.threshold


@dataclass(frozen=True)
class HedgingStrategy:
    """Versioned hedge overlay for one portfolio. Re-hedging yields a new version."""

    strategy_id: str
    version: int
    portfolio_id: str
    hedging_assets: tuple[str, ...]
    risk_target: float
    rebalance_frequency: str
    hedging_cost: float
    hedge_ratios: dict[str, float]
    rules: tuple[HedgeRule, ...]
    triggers: tuple[HedgeTrigger, ...]
    unhedged_volatility: float
    hedged_volatility: float
    effectiveness: float
    tracking_error: float
    expected_benefit: float
    expected_cost: float
    cost_efficient: bool
    leverage_capped: bool
    target_met: bool

    @property
    def active_triggers(self) -> tuple[HedgeTrigger, ...]:
        return tuple(t for t in self.triggers if t.active)


# ============================================================================
# Monitoring
# ============================================================================


@dataclass(frozen=True)
class MarketSnapshot:
    """Latest market observations for the assets of a portfolio.

    Parameters
    ----------
    returns : pd.DataFrame
        Recent aligned per-period returns, one column per asset
    timestamp : pd.Timestamp | None, default None
        Observation time; defaults to the last row label when it is a date
    factor_loadings : pd.DataFrame | None, default None
        Asset x factor loadings for factor attribution
    """

    returns: pd.DataFrame = field(compare=False)
    timestamp: pd.Timestamp | None = None
    factor_loadings: pd.DataFrame | None = field(default=None, compare=False)

    @classmethod
    def from_prices(
        cls,
        prices: pd.DataFrame,
        timestamp: pd.Timestamp | None = None,
        factor_loadings: pd.DataFrame | None = None,
    ) -> MarketSnapshot:
        """Build a snapshot from a price window (dates x assets)."""
        returns = prices.sort_index().pct_change().iloc[1:]
        return cls(returns=returns, timestamp=timestamp, factor_loadings=factor_loadings)


@dataclass(frozen=True)
class RiskAlert:
    """A threshold breach reported by the risk monitor."""

    rule: str
    severity: Severity
    subject: str
    message: str
    value: float
    threshold: float
    is_new: bool = True


@dataclass(frozen=True)
class RiskSnapshot:
    """Point-in-time risk view of a portfolio."""

    portfolio_id: str
    timestamp: pd.Timestamp | None
    metrics: dict[str, float]
    asset_attribution: dict[str, float]
    factor_attribution: dict[str, float] | None
    alerts: tuple[RiskAlert, ...]
    volatility_regime: str
    correlation_regime: str
    correlation: pd.DataFrame = field(compare=False)

    def has_alert(self, rule: str, subject: str | None = None) -> bool:
        return any(
            a.rule == rule and (subject is None or a.subject == subject) for a in self.alerts
        )


# ============================================================================
# Backtesting
# ============================================================================


@dataclass(frozen=True)
class Trade:
    """A completed round trip.

    Parameters
    ----------
    trade_id : str
        Deterministic identifier within the run
    symbol : str
        Traded symbol
    side : {"long", "short"}
        Position direction
    entry_date, exit_date : pd.Timestamp
        Fill timestamps
    entry_price, exit_price : float
        Fill prices including slippage
    quantity : int
        Shares traded
    pnl : float
        Realized profit net of commissions
    commission : float
        Total commission paid on entry and exit
    exit_reason : str
        "stop_loss", "take_profit", "signal", "risk_limit" or "end_of_data"
    confidence : float
        Combined model confidence that opened the trade
    model : str
        Model responsible for the signal ("ensemble" when several voted)
    prediction_correct : bool | None, default None
        Whether price moved in the predicted direction over the holding period
    """

    trade_id: str
    symbol: str
    side: Literal["long", "short"]
    entry_date: pd.Timestamp
    exit_date: pd.Timestamp
    entry_price: float
    exit_price: float
    quantity: int
    pnl: float
    commission: float
    exit_reason: str
    confidence: float
    model: str
    prediction_correct: bool | None = None

    @property
    def direction(self) -> int:
        return 1 if self.side == "long" else -1

    @property
    def return_pct(self) -> float:
        notional = self.quantity * self.entry_price
        return self.pnl / notional if notional > 0 else 0.0

    @property
    def duration_days(self) -> float:
        return (self.exit_date - self.entry_date).total_seconds() / 86400.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "symbol": self.symbol,
            "side": self.side,
            "entry_date": self.entry_date.isoformat(),
            "exit_date": self.exit_date.isoformat(),
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "quantity": self.quantity,
            "pnl": self.pnl,
            "commission": self.commission,
            "exit_reason": self.exit_reason,
            "confidence": self.confidence,
            "model": self.model,
            "prediction_correct": self.prediction_correct,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Trade:
        return cls(
            trade_id=str(data["trade_id"]),
            symbol=str(data["symbol"]),
            side=data["side"],
            entry_date=pd.Timestamp(data["entry_date"]),
            exit_date=pd.Timestamp(data["exit_date"]),
            entry_price=float(data["entry_price"]),
            exit_price=float(data["exit_price"]),
            quantity=int(data["quantity"]),
            pnl=float(data["pnl"]),
            commission=float(data["commission"]),
            exit_reason=str(data["exit_reason"]),
            confidence=float(data["confidence"]),
            model=str(data["model"]),
            prediction_correct=data.get("prediction_correct"),
        )


@dataclass(frozen=True)
class RiskLimitEvent:
    """In-band record of a circuit-breaker halt during replay."""

    date: pd.Timestamp
    limit: Literal["max_daily_loss", "max_drawdown"]
    value: float
    threshold: float
    positions_closed: int


@dataclass(frozen=True)
class WalkForwardStep:
    """One re-fit/re-weight point of a walk-forward replay."""

    date: pd.Timestamp
    period_index: int
    train_start: pd.Timestamp
    train_end: pd.Timestamp
    model_weights: dict[str, float]
    symbol_budgets: dict[str, float] | None = None


@dataclass(frozen=True)
class BootstrapSummary:
    """Percentile outcomes of resampled trade sequences."""

    n_simulations: int
    final_capital: dict[int, float]
    total_return: dict[int, float]
    max_drawdown: dict[int, float]
    probability_of_loss: float


@dataclass(frozen=True)
class BenchmarkComparison:
    """Strategy returns measured against a benchmark symbol."""

    symbol: str
    benchmark_return: float
    excess_return: float
    alpha: float
    beta: float
    correlation: float
    tracking_error: float
    information_ratio: float


@dataclass(frozen=True)
class BacktestResult:
    """Immutable output of a backtest replay."""

    backtest_id: str
    initial_capital: float
    final_capital: float
    metrics: dict[str, float]
    trades: tuple[Trade, ...]
    equity_curve: pd.Series = field(compare=False)
    risk_events: tuple[RiskLimitEvent, ...] = ()
    walk_forward: tuple[WalkForwardStep, ...] = ()
    bootstrap: BootstrapSummary | None = None
    benchmark: BenchmarkComparison | None = None
    model_results: dict[str, dict[str, float]] = field(default_factory=dict)
    config: Any = field(default=None, compare=False)

    @property
    def total_return(self) -> float:
        return self.metrics["total_return"]


@dataclass(frozen=True)
class PerformanceAnalysis:
    """Trade-level performance breakdown of a backtest."""

    total_trades: int
    profitable_trades: int
    losing_trades: int
    win_rate: float
    total_pnl: float
    total_return: float
    avg_trade_return: float
    best_trade: float
    worst_trade: float
    sharpe_ratio: float
    sortino_ratio: float
    max_drawdown: float
    calmar_ratio: float
    recovery_factor: float
    profit_factor: float
    avg_trade_duration: float
    max_consecutive_wins: int
    max_consecutive_losses: int
    avg_signal_confidence: float
    avg_prediction_accuracy: float | None
    high_confidence_win_rate: float | None
    by_symbol: dict[str, dict[str, float]] = field(default_factory=dict)
    by_exit_reason: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class RankedBacktest:
    rank: int
    backtest_id: str
    score: float


@dataclass(frozen=True)
class PairwiseDelta:
    """Metric differences ``first - second`` between two runs."""

    first: str
    second: str
    deltas: dict[str, float]


@dataclass(frozen=True)
class ComparisonReport:
    """Ranking and relative statistics across several backtests."""

    rankings: tuple[RankedBacktest, ...]
    best_performers: dict[str, str]
    pairwise: tuple[PairwiseDelta, ...]
    risk_return: dict[str, dict[str, float]]
    metrics: pd.DataFrame = field(compare=False)
    correlation: pd.DataFrame = field(compare=False)

    @property
    def best(self) -> str:
        return self.rankings[0].backtest_id
