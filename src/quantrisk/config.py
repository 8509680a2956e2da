"""Configuration models using Pydantic for validation and YAML loading.

Every engine operation takes one of these models (or a plain mapping that
validates into it). Configuration is always passed per call; nothing here
is cached globally.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal, TypeVar

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ConfigT = TypeVar("ConfigT", bound="YamlConfigModel")


class YamlConfigModel(BaseModel):
    """Base model with YAML round trip."""

    @classmethod
    def from_yaml(cls: type[ConfigT], path: str | Path) -> ConfigT:
        """Load configuration from YAML file.

        Parameters
        ----------
        path : str | Path
            Path to YAML configuration file

        Returns
        -------
        YamlConfigModel
            Loaded and validated configuration

        Raises
        ------
        FileNotFoundError
            If configuration file does not exist
        ValueError
            If configuration is invalid
        """
        path = Path(path)
        if not path.exists():
            msg = f"Configuration file not found: {path}"
            raise FileNotFoundError(msg)

        with path.open() as f:
            config_dict = yaml.safe_load(f) or {}

        return cls(**config_dict)

    def to_yaml(self, path: str | Path) -> None:
        """Save configuration to YAML file.

        Parameters
        ----------
        path : str | Path
            Output path for YAML file
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with path.open("w") as f:
            yaml.safe_dump(
                self.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False
            )


class WeightConstraints(BaseModel):
    """Box constraints on portfolio weights.

    Parameters
    ----------
    min_weight : float, default 0.0
        Lower bound for every asset
    max_weight : float, default 1.0
        Upper bound for every asset
    allow_short : bool, default False
        Permit negative weights (``min_weight`` may then be negative)
    asset_bounds : dict[str, tuple[float, float]]
        Per-asset (lower, upper) overrides
    min_leverage : float, default 0.0
        Lower bound on the volatility-targeting scale
    max_leverage : float, default 2.0
        Upper bound on the volatility-targeting scale
    """

    min_weight: float = 0.0
    max_weight: float = 1.0
    allow_short: bool = False
    asset_bounds: dict[str, tuple[float, float]] = Field(default_factory=dict)
    min_leverage: float = 0.0
    max_leverage: float = 2.0

    @model_validator(mode="after")
    def check_bounds(self) -> WeightConstraints:
        """Validate bound ordering and the short-selling switch."""
        if self.min_weight > self.max_weight:
            msg = f"min_weight {self.min_weight} exceeds max_weight {self.max_weight}"
            raise ValueError(msg)
        if not self.allow_short and self.min_weight < 0:
            msg = "min_weight < 0 requires allow_short=True"
            raise ValueError(msg)
        for asset, (lo, hi) in self.asset_bounds.items():
            if lo > hi:
                msg = f"asset_bounds[{asset}] lower bound exceeds upper bound"
                raise ValueError(msg)
            if not self.allow_short and lo < 0:
                msg = f"asset_bounds[{asset}] negative lower bound requires allow_short=True"
                raise ValueError(msg)
        if self.min_leverage < 0 or self.max_leverage <= 0 or self.min_leverage > self.max_leverage:
            msg = "leverage bounds must satisfy 0 <= min_leverage <= max_leverage, max_leverage > 0"
            raise ValueError(msg)
        return self

    def bounds_for(self, assets: list[str]) -> list[tuple[float, float]]:
        """Resolve (lower, upper) per asset."""
        return [self.asset_bounds.get(a, (self.min_weight, self.max_weight)) for a in assets]


class RiskParityConfig(YamlConfigModel):
    """Risk parity optimizer configuration.

    Parameters
    ----------
    target_volatility : float, default 0.10
        Annualized volatility reached through the leverage scale
    max_iterations : int, default 1000
        Iteration budget
    tolerance : float, default 1e-6
        Maximum spread between risk contribution shares at convergence
    constraints : WeightConstraints
        Box and leverage constraints
    periods_per_year : int, default 252
        Annualization factor
    risk_free_rate : float, default 0.0
        Annualized risk-free rate for the Sharpe ratio
    ridge : float, default 1e-10
        Covariance diagonal regularization, relative to mean variance
    """

    target_volatility: float = 0.10
    max_iterations: int = 1000
    tolerance: float = 1e-6
    constraints: WeightConstraints = Field(default_factory=WeightConstraints)
    periods_per_year: int = 252
    risk_free_rate: float = 0.0
    ridge: float = 1e-10

    @field_validator("target_volatility", "tolerance", "max_iterations", "periods_per_year")
    @classmethod
    def positive_values(cls, v: float) -> float:
        """Validate that values are positive."""
        if v <= 0:
            msg = "Value must be positive"
            raise ValueError(msg)
        return v


class FactorBound(BaseModel):
    """Hard lower/upper exposure limits for one factor."""

    min: float | None = None
    max: float | None = None

    @model_validator(mode="after")
    def check_order(self) -> FactorBound:
        if self.min is not None and self.max is not None and self.min > self.max:
            msg = f"factor bound min {self.min} exceeds max {self.max}"
            raise ValueError(msg)
        return self


class FactorOptimizerConfig(YamlConfigModel):
    """Factor-based optimizer configuration.

    Parameters
    ----------
    target_factor_exposures : dict[str, float]
        Target exposure per factor
    exposure_tolerance : float, default 0.0
        Half-width of the allowed band around each target; 0 means equality
    factor_constraints : dict[str, FactorBound]
        Additional hard min/max limits per factor
    risk_aversion : float, default 3.0
        Variance penalty in the mean-variance objective
    max_iterations : int, default 1000
        SQP iteration budget
    tolerance : float, default 1e-9
        Solver tolerance
    constraints : WeightConstraints
        Box constraints
    periods_per_year : int, default 252
        Annualization factor
    risk_free_rate : float, default 0.0
        Annualized risk-free rate for the Sharpe ratio
    """

    target_factor_exposures: dict[str, float] = Field(default_factory=dict)
    exposure_tolerance: float = 0.0
    factor_constraints: dict[str, FactorBound] = Field(default_factory=dict)
    risk_aversion: float = 3.0
    max_iterations: int = 1000
    tolerance: float = 1e-9
    constraints: WeightConstraints = Field(default_factory=WeightConstraints)
    periods_per_year: int = 252
    risk_free_rate: float = 0.0

    @field_validator("exposure_tolerance", "risk_aversion")
    @classmethod
    def non_negative(cls, v: float) -> float:
        if v < 0:
            msg = "Value must be non-negative"
            raise ValueError(msg)
        return v

    @field_validator("max_iterations", "tolerance", "periods_per_year")
    @classmethod
    def positive_values(cls, v: float) -> float:
        if v <= 0:
            msg = "Value must be positive"
            raise ValueError(msg)
        return v


class StressScenarioSpec(BaseModel):
    """Caller-supplied deterministic shock (horizon return per asset)."""

    name: str
    shocks: dict[str, float]
    description: str = ""


class SimulationConfig(YamlConfigModel):
    """Monte Carlo simulation configuration.

    ``num_simulations`` and ``time_horizon`` are checked by the simulator
    itself so that non-positive values surface as ``DataError``.

    Parameters
    ----------
    num_simulations : int, default 10000
        Number of independent paths
    time_horizon : int, default 252
        Path length in periods
    confidence_levels : list[float]
        VaR/CVaR confidence levels
    seed : int, default 42
        Root seed for the per-chunk generator streams
    chunk_size : int, default 1000
        Paths per work unit; fixed so results do not depend on worker count
    max_workers : int | None, default None
        Thread pool size (None lets the executor choose)
    band_percentiles : list[float]
        Percentiles of cumulative value reported per period
    include_default_stress_tests : bool, default True
        Add the built-in crash/volatility/correlation/rate shocks
    stress_scenarios : list[StressScenarioSpec]
        Additional caller-defined shocks
    rate_shock_bps : float, default 200.0
        Parallel rate move for the interest-rate shock
    default_duration : float, default 3.0
        Rate duration for assets without one in the scenario
    periods_per_year : int, default 252
        Annualization factor used to report volatility
    """

    num_simulations: int = 10000
    time_horizon: int = 252
    confidence_levels: list[float] = Field(default_factory=lambda: [0.95, 0.99])
    seed: int = 42
    chunk_size: int = 1000
    max_workers: int | None = None
    band_percentiles: list[float] = Field(default_factory=lambda: [5, 25, 50, 75, 95])
    include_default_stress_tests: bool = True
    stress_scenarios: list[StressScenarioSpec] = Field(default_factory=list)
    rate_shock_bps: float = 200.0
    default_duration: float = 3.0
    periods_per_year: int = 252

    @field_validator("confidence_levels")
    @classmethod
    def valid_confidence(cls, v: list[float]) -> list[float]:
        """Validate confidence levels lie strictly between 0 and 1."""
        if not v:
            msg = "At least one confidence level is required"
            raise ValueError(msg)
        for level in v:
            if not 0 < level < 1:
                msg = f"Confidence level must be in (0, 1), got {level}"
                raise ValueError(msg)
        return sorted(v)

    @field_validator("band_percentiles")
    @classmethod
    def valid_percentiles(cls, v: list[float]) -> list[float]:
        for p in v:
            if not 0 <= p <= 100:
                msg = f"Percentile must be in [0, 100], got {p}"
                raise ValueError(msg)
        return sorted(v)

    @field_validator("chunk_size")
    @classmethod
    def positive_chunk(cls, v: int) -> int:
        if v <= 0:
            msg = "chunk_size must be positive"
            raise ValueError(msg)
        return v


RebalanceFrequency = Literal["daily", "weekly", "monthly", "quarterly"]

REBALANCE_PERIODS: dict[str, int] = {"daily": 1, "weekly": 5, "monthly": 21, "quarterly": 63}


class HedgingConfig(YamlConfigModel):
    """Dynamic hedging configuration.

    Parameters
    ----------
    hedging_assets : list[str]
        Candidate hedge instruments
    risk_target : float, default 0.15
        Annualized volatility the hedged portfolio should not exceed
    rebalance_frequency : {"daily", "weekly", "monthly", "quarterly"}, default "weekly"
        Calendar cadence of the rebalancing rule
    hedging_cost : float, default 0.001
        Cost per unit of hedge notional traded
    max_hedge_leverage : float, default 1.0
        Cap on the sum of absolute hedge ratios
    risk_aversion : float, default 2.0
        Converts variance reduction into a return-equivalent benefit
    horizon_periods : int, default 252
        Horizon of the breakeven check
    volatility_trigger_multiplier : float, default 1.2
        Realized volatility trigger as a multiple of ``risk_target``
    tracking_error_threshold : float, default 0.05
        Annualized residual tracking error that forces a re-hedge
    delta_threshold : float, default 0.05
        Hedge ratio drift tolerated before rebalancing
    correlation_threshold : float, default 0.8
        Average pairwise correlation above which hedges are re-estimated
    var_limit : float, default 0.10
        Simulated VaR level that triggers a re-hedge
    num_samples : int, default 5000
        Joint return draws when hedging against a simulated scenario
    seed : int, default 42
        Seed for simulated joint returns
    periods_per_year : int, default 252
        Annualization factor
    """

    hedging_assets: list[str] = Field(default_factory=list)
    risk_target: float = 0.15
    rebalance_frequency: RebalanceFrequency = "weekly"
    hedging_cost: float = 0.001
    max_hedge_leverage: float = 1.0
    risk_aversion: float = 2.0
    horizon_periods: int = 252
    volatility_trigger_multiplier: float = 1.2
    tracking_error_threshold: float = 0.05
    delta_threshold: float = 0.05
    correlation_threshold: float = 0.8
    var_limit: float = 0.10
    num_samples: int = 5000
    seed: int = 42
    periods_per_year: int = 252

    @field_validator("risk_target", "max_hedge_leverage", "horizon_periods", "num_samples")
    @classmethod
    def positive_values(cls, v: float) -> float:
        if v <= 0:
            msg = "Value must be positive"
            raise ValueError(msg)
        return v

    @field_validator("hedging_cost")
    @classmethod
    def non_negative_cost(cls, v: float) -> float:
        if v < 0:
            msg = "hedging_cost must be non-negative"
            raise ValueError(msg)
        return v


class MonitorConfig(YamlConfigModel):
    """Risk monitor thresholds.

    Parameters
    ----------
    volatility_threshold : float, default 0.20
        Annualized volatility alert level
    var_confidence : float, default 0.95
        Confidence of the VaR alert
    var_threshold : float, default 0.025
        Per-period historical VaR alert level
    concentration_threshold : float, default 0.30
        Single-asset absolute weight alert level
    correlation_shift_threshold : float, default 0.20
        Absolute move of a pairwise correlation from its baseline
    drawdown_threshold : float, default 0.10
        Drawdown over the window alert level
    high_volatility_regime : float, default 0.25
        Annualized volatility above which the regime is "high"
    low_volatility_regime : float, default 0.10
        Annualized volatility below which the regime is "low"
    high_correlation_regime : float, default 0.8
        Average correlation above which the regime is "high"
    low_correlation_regime : float, default 0.4
        Average correlation below which the regime is "low"
    confidence_levels : list[float]
        Levels at which VaR/CVaR are reported
    periods_per_year : int, default 252
        Annualization factor
    """

    volatility_threshold: float = 0.20
    var_confidence: float = 0.95
    var_threshold: float = 0.025
    concentration_threshold: float = 0.30
    correlation_shift_threshold: float = 0.20
    drawdown_threshold: float = 0.10
    high_volatility_regime: float = 0.25
    low_volatility_regime: float = 0.10
    high_correlation_regime: float = 0.8
    low_correlation_regime: float = 0.4
    confidence_levels: list[float] = Field(default_factory=lambda: [0.95, 0.99])
    periods_per_year: int = 252

    @field_validator(
        "volatility_threshold",
        "var_threshold",
        "concentration_threshold",
        "correlation_shift_threshold",
        "drawdown_threshold",
    )
    @classmethod
    def positive_values(cls, v: float) -> float:
        if v <= 0:
            msg = "Threshold must be positive"
            raise ValueError(msg)
        return v


class BacktestConfig(YamlConfigModel):
    """Immutable description of a backtest run.

    Parameters
    ----------
    name : str, default "backtest"
        Run identifier used as the trade id prefix
    symbols : list[str]
        Symbols to trade
    start_date, end_date : str | None
        Inclusive replay range (ISO dates); None uses all data
    initial_capital : float, default 100000.0
        Starting cash
    commission : float, default 0.001
        Commission as a fraction of notional per fill
    min_commission : float, default 0.0
        Minimum commission charged on any fill
    slippage : float, default 0.0005
        Adverse price move as a fraction of price per fill
    position_sizing : {"fixed", "percentage", "risk_per_trade"}, default "fixed"
        Sizing method
    position_fraction : float, default 0.10
        Equity fraction per position ("fixed"); scaled by confidence for "percentage"
    risk_per_trade : float, default 0.02
        Equity risked to the stop for "risk_per_trade" sizing
    stop_loss : float | None, default 0.05
        Stop distance as a fraction of entry price
    take_profit : float | None, default 0.10
        Profit target as a fraction of entry price
    max_positions : int, default 5
        Concurrently open positions
    position_concentration : float, default 0.10
        Maximum notional per symbol as a fraction of equity
    max_daily_loss : float | None, default 0.05
        Daily loss fraction that forces flattening
    max_drawdown : float | None, default 0.20
        Drawdown fraction from peak that forces flattening
    confidence_threshold : float, default 0.6
        Minimum combined confidence for acting on a signal
    allow_short : bool, default True
        Whether short signals open short positions
    walk_forward : bool, default False
        Enable periodic re-fit and re-weighting
    walk_forward_periods : int, default 21
        Periods between walk-forward steps
    training_window : int, default 252
        Trailing periods handed to model fits and symbol budgeting
    risk_parity_budgeting : bool, default False
        Re-budget symbols with risk parity at each walk-forward step
    monte_carlo_simulations : int, default 1000
        Bootstrap resamples of the trade sequence; 0 disables
    benchmark_symbol : str | None, default "SPY"
        Benchmark for relative statistics
    run_model_breakdown : bool, default True
        Replay each model on its own when several are configured
    seed : int, default 42
        Bootstrap seed
    periods_per_year : int, default 252
        Annualization factor
    """

    model_config = ConfigDict(frozen=True)

    name: str = "backtest"
    symbols: list[str]
    start_date: str | None = None
    end_date: str | None = None
    initial_capital: float = 100_000.0
    commission: float = 0.001
    min_commission: float = 0.0
    slippage: float = 0.0005
    position_sizing: Literal["fixed", "percentage", "risk_per_trade"] = "fixed"
    position_fraction: float = 0.10
    risk_per_trade: float = 0.02
    stop_loss: float | None = 0.05
    take_profit: float | None = 0.10
    max_positions: int = 5
    position_concentration: float = 0.10
    max_daily_loss: float | None = 0.05
    max_drawdown: float | None = 0.20
    confidence_threshold: float = 0.6
    allow_short: bool = True
    walk_forward: bool = False
    walk_forward_periods: int = 21
    training_window: int = 252
    risk_parity_budgeting: bool = False
    monte_carlo_simulations: int = 1000
    benchmark_symbol: str | None = "SPY"
    run_model_breakdown: bool = True
    seed: int = 42
    periods_per_year: int = 252

    @field_validator("symbols")
    @classmethod
    def non_empty_symbols(cls, v: list[str]) -> list[str]:
        if not v:
            msg = "At least one symbol is required"
            raise ValueError(msg)
        if len(set(v)) != len(v):
            msg = "Symbols must be unique"
            raise ValueError(msg)
        return v

    @field_validator("initial_capital", "position_fraction", "position_concentration")
    @classmethod
    def positive_values(cls, v: float) -> float:
        if v <= 0:
            msg = "Value must be positive"
            raise ValueError(msg)
        return v

    @field_validator("commission", "min_commission", "slippage", "monte_carlo_simulations")
    @classmethod
    def non_negative(cls, v: float) -> float:
        if v < 0:
            msg = "Value must be non-negative"
            raise ValueError(msg)
        return v

    @field_validator("stop_loss", "take_profit", "max_daily_loss", "max_drawdown")
    @classmethod
    def fraction_or_none(cls, v: float | None) -> float | None:
        if v is not None and not 0 < v < 1:
            msg = f"Value must be in (0, 1), got {v}"
            raise ValueError(msg)
        return v

    @field_validator("max_positions", "walk_forward_periods", "training_window")
    @classmethod
    def positive_int(cls, v: int) -> int:
        if v < 1:
            msg = "Value must be >= 1"
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def check_sizing(self) -> BacktestConfig:
        if self.position_sizing == "risk_per_trade" and self.stop_loss is None:
            msg = "risk_per_trade sizing requires stop_loss"
            raise ValueError(msg)
        if not 0 <= self.confidence_threshold <= 1:
            msg = "confidence_threshold must be within [0, 1]"
            raise ValueError(msg)
        return self


LOWER_IS_BETTER = frozenset({"max_drawdown", "volatility"})


class ComparisonConfig(YamlConfigModel):
    """Multi-backtest comparison configuration.

    Parameters
    ----------
    score_weights : dict[str, float]
        Composite score weights per metric; each metric is min-max
        normalized so that higher is better before weighting
    report_metrics : list[str]
        Metrics reported in best-performer and pairwise sections
    """

    score_weights: dict[str, float] = Field(
        default_factory=lambda: {
            "sharpe_ratio": 0.4,
            "total_return": 0.3,
            "max_drawdown": 0.2,
            "win_rate": 0.1,
        }
    )
    report_metrics: list[str] = Field(
        default_factory=lambda: [
            "total_return",
            "sharpe_ratio",
            "max_drawdown",
            "win_rate",
            "profit_factor",
        ]
    )

    @field_validator("score_weights")
    @classmethod
    def valid_weights(cls, v: dict[str, float]) -> dict[str, float]:
        if not v:
            msg = "At least one score weight is required"
            raise ValueError(msg)
        if any(w < 0 for w in v.values()) or sum(v.values()) <= 0:
            msg = "Score weights must be non-negative with a positive sum"
            raise ValueError(msg)
        return v
