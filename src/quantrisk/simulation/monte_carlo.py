"""Monte Carlo risk simulation.

Paths are generated in fixed-size chunks. Chunk ``k`` draws from the
``k``-th child of ``SeedSequence(seed)``, so statistics are bit-identical
for a given seed no matter how many worker threads run the chunks.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import stats

from quantrisk import statistics as qs
from quantrisk.config import SimulationConfig
from quantrisk.exceptions import DataError
from quantrisk.simulation.scenarios import MarketScenario, build_stress_shocks, prepare_covariance
from quantrisk.types import (
    PathAnalysis,
    Portfolio,
    SimulationResult,
    SimulationStatistics,
    StressTestResult,
)
from quantrisk.utils.cancellation import CancellationToken, check_cancelled

logger = logging.getLogger(__name__)

REPORTED_PERCENTILES = (1, 5, 10, 25, 50, 75, 90, 95, 99)


@dataclass(frozen=True)
class _PreparedScenario:
    kind: str
    mean: np.ndarray
    chol: np.ndarray
    distribution: str
    df: float
    history: np.ndarray | None


def _prepare(scenario: MarketScenario) -> _PreparedScenario:
    """PSD-project and factor the scenario covariance once per run."""
    if scenario.kind == "empirical":
        return _PreparedScenario(
            kind="empirical",
            mean=np.zeros(scenario.n_assets),
            chol=np.eye(scenario.n_assets),
            distribution="empirical",
            df=0.0,
            history=np.asarray(scenario.history, dtype=float),
        )
    mean, cov = scenario.moments()
    _, chol = prepare_covariance(cov)
    return _PreparedScenario(
        kind="parametric",
        mean=mean,
        chol=chol,
        distribution=scenario.distribution,
        df=scenario.degrees_of_freedom,
        history=None,
    )


def draw_returns(
    prepared: _PreparedScenario, rng: np.random.Generator, shape: tuple[int, ...]
) -> np.ndarray:
    """Draw asset returns with leading dimensions ``shape``."""
    if prepared.kind == "empirical":
        rows = rng.integers(0, len(prepared.history), size=shape)
        return prepared.history[rows]

    n_assets = len(prepared.mean)
    z = rng.standard_normal(size=(*shape, n_assets))
    if prepared.distribution == "student_t":
        # unit-variance multivariate t
        chi2 = rng.chisquare(prepared.df, size=(*shape, 1))
        z = z * np.sqrt((prepared.df - 2.0) / chi2)
    return prepared.mean + z @ prepared.chol.T


def sample_scenario_returns(
    scenario: MarketScenario, n_samples: int, seed: int = 42
) -> pd.DataFrame:
    """Single-period joint return draws from a scenario.

    Parameters
    ----------
    scenario : MarketScenario
        Scenario to sample
    n_samples : int
        Number of draws
    seed : int, default 42
        Generator seed

    Returns
    -------
    pd.DataFrame
        Draws x assets
    """
    prepared = _prepare(scenario)
    rng = np.random.default_rng(seed)
    draws = draw_returns(prepared, rng, (n_samples,))
    return pd.DataFrame(draws, columns=list(scenario.assets))


def _simulate_chunk(
    prepared: _PreparedScenario,
    weights: np.ndarray,
    n_paths: int,
    horizon: int,
    seed_seq: np.random.SeedSequence,
) -> np.ndarray:
    """Cumulative portfolio value per period for a block of paths, shape (n_paths, horizon + 1)."""
    rng = np.random.default_rng(seed_seq)
    asset_returns = draw_returns(prepared, rng, (n_paths, horizon))
    port_returns = asset_returns @ weights
    values = np.empty((n_paths, horizon + 1))
    values[:, 0] = 1.0
    np.cumprod(1.0 + port_returns, axis=1, out=values[:, 1:])
    return values


class MonteCarloSimulator:
    """Seeded, chunked Monte Carlo simulator for a weight vector.

    Parameters
    ----------
    config : SimulationConfig
        Path count, horizon, confidence levels, seed and stress settings

    Examples
    --------
    >>> simulator = MonteCarloSimulator(SimulationConfig(num_simulations=5000))
    >>> result = simulator.run(portfolio, MarketScenario.from_returns(returns))
    >>> result.var(0.99) >= result.var(0.95)
    True
    """

    def __init__(self, config: SimulationConfig | None = None) -> None:
        """Initialize Monte Carlo simulator."""
        self.config = config or SimulationConfig()
        logger.info(
            f"Initialized MonteCarloSimulator with num_simulations={self.config.num_simulations}, "
            f"time_horizon={self.config.time_horizon}, seed={self.config.seed}"
        )

    def _validate(self) -> None:
        cfg = self.config
        if cfg.num_simulations <= 0:
            msg = f"num_simulations must be positive, got {cfg.num_simulations}"
            raise DataError(msg, field="num_simulations")
        if cfg.time_horizon <= 0:
            msg = f"time_horizon must be positive, got {cfg.time_horizon}"
            raise DataError(msg, field="time_horizon")

    def run(
        self,
        portfolio: Portfolio,
        scenario: MarketScenario,
        token: CancellationToken | None = None,
    ) -> SimulationResult:
        """Simulate forward paths and aggregate portfolio outcomes.

        Parameters
        ----------
        portfolio : Portfolio
            Weights to stress
        scenario : MarketScenario
            Return generating model covering every portfolio asset
        token : CancellationToken | None, optional
            Checked between chunks

        Returns
        -------
        SimulationResult
            Distribution statistics, stress tests and path bands
        """
        self._validate()
        cfg = self.config
        weights = self._align_weights(portfolio, scenario)
        prepared = _prepare(scenario)

        chunks = [cfg.chunk_size] * (cfg.num_simulations // cfg.chunk_size)
        if cfg.num_simulations % cfg.chunk_size:
            chunks.append(cfg.num_simulations % cfg.chunk_size)
        seeds = np.random.SeedSequence(cfg.seed).spawn(len(chunks))

        logger.info(
            f"Simulating {cfg.num_simulations} paths x {cfg.time_horizon} periods "
            f"for portfolio {portfolio.portfolio_id} in {len(chunks)} chunks"
        )

        check_cancelled(token, "Monte Carlo simulation")
        with ThreadPoolExecutor(max_workers=cfg.max_workers) as executor:
            futures = [
                executor.submit(
                    _simulate_chunk, prepared, weights, size, cfg.time_horizon, seed
                )
                for size, seed in zip(chunks, seeds)
            ]
            blocks = []
            try:
                for future in futures:
                    check_cancelled(token, "Monte Carlo simulation")
                    blocks.append(future.result())
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

        values = np.vstack(blocks)
        final_returns = values[:, -1] - 1.0

        statistics = self._statistics(final_returns)
        path_analysis = self._path_analysis(values, final_returns)
        stress_tests = tuple(
            StressTestResult(
                name=name,
                description=description,
                asset_shocks={a: float(x) for a, x in zip(scenario.assets, shock)},
                portfolio_return=float(weights @ shock),
            )
            for name, description, shock in build_stress_shocks(scenario, weights, cfg)
        )

        var_summary = ", ".join(f"VaR{c:.0%}={v:.4f}" for c, v in statistics.var.items())
        logger.info(
            f"Simulation complete: expected_return={statistics.expected_return:.4f}, {var_summary}"
        )

        return SimulationResult(
            portfolio_id=portfolio.portfolio_id,
            statistics=statistics,
            stress_tests=stress_tests,
            path_analysis=path_analysis,
            num_simulations=cfg.num_simulations,
            time_horizon=cfg.time_horizon,
            confidence_levels=tuple(cfg.confidence_levels),
            seed=cfg.seed,
            distribution=prepared.distribution,
        )

    @staticmethod
    def _align_weights(portfolio: Portfolio, scenario: MarketScenario) -> np.ndarray:
        unknown = set(portfolio.weights) - set(scenario.assets)
        if unknown:
            msg = f"portfolio assets {sorted(unknown)} missing from the scenario"
            raise DataError(msg, field="market_scenario")
        weights = portfolio.weight_vector(list(scenario.assets))
        if not np.isfinite(weights).all():
            raise DataError("non-finite weights", field="portfolio")
        return weights

    def _statistics(self, final_returns: np.ndarray) -> SimulationStatistics:
        cfg = self.config
        n = len(final_returns)
        if n >= 2:
            var = {c: qs.value_at_risk(final_returns, c) for c in cfg.confidence_levels}
            cvar = {c: qs.conditional_value_at_risk(final_returns, c) for c in cfg.confidence_levels}
            vol = float(final_returns.std(ddof=1))
        else:
            var = {c: float(-final_returns[0]) for c in cfg.confidence_levels}
            cvar = dict(var)
            vol = 0.0

        spread = float(final_returns.std())
        return SimulationStatistics(
            expected_return=float(final_returns.mean()),
            volatility=vol,
            skewness=float(stats.skew(final_returns)) if spread > 0 else 0.0,
            kurtosis=float(stats.kurtosis(final_returns)) if spread > 0 else 0.0,
            min_return=float(final_returns.min()),
            max_return=float(final_returns.max()),
            probability_of_loss=float((final_returns < 0).mean()),
            var=var,
            cvar=cvar,
            percentiles={
                float(p): float(x)
                for p, x in zip(REPORTED_PERCENTILES, np.percentile(final_returns, REPORTED_PERCENTILES))
            },
        )

    def _path_analysis(self, values: np.ndarray, final_returns: np.ndarray) -> PathAnalysis:
        percentiles = self.config.band_percentiles
        bands = np.percentile(values, percentiles, axis=0).T
        frame = pd.DataFrame(
            bands,
            index=pd.RangeIndex(values.shape[1], name="period"),
            columns=[f"p{p:g}" for p in percentiles],
        )
        return PathAnalysis(
            bands=frame,
            paths_above_zero=float((final_returns > 0).mean()),
            paths_below_minus_10pct=float((final_returns < -0.10).mean()),
            paths_above_20pct=float((final_returns > 0.20).mean()),
            worst_path_return=float(final_returns.min()),
            best_path_return=float(final_returns.max()),
            median_path_return=float(np.median(final_returns)),
        )
