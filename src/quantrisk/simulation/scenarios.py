"""Market scenario models and deterministic stress shocks.

A scenario is either parametric (per-period mean vector and covariance with
a normal or Student-t family) or empirical (historical return rows resampled
with replacement). Covariance is symmetrized and projected onto the PSD cone
before its Cholesky factor is taken.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Mapping

import numpy as np
import pandas as pd

from quantrisk import statistics as qs
from quantrisk.config import SimulationConfig
from quantrisk.exceptions import DataError, ScenarioError

logger = logging.getLogger(__name__)

STRESS_Z = 1.96


@dataclass(frozen=True, eq=False)
class MarketScenario:
    """Parametrization of forward return generation.

    Parameters
    ----------
    assets : tuple[str, ...]
        Asset identifiers, in matrix order
    kind : {"parametric", "empirical"}
        Generation mode
    mean : np.ndarray | None
        Per-period mean returns (parametric)
    covariance : np.ndarray | None
        Per-period covariance (parametric); also estimated for empirical
        scenarios so stress tests can use it
    distribution : {"normal", "student_t"}, default "normal"
        Innovation family for parametric scenarios
    degrees_of_freedom : float, default 5.0
        Student-t degrees of freedom, must exceed 2
    history : np.ndarray | None
        Historical return rows (empirical)
    durations : dict[str, float]
        Interest-rate duration per asset for the rate shock
    """

    assets: tuple[str, ...]
    kind: Literal["parametric", "empirical"] = "parametric"
    mean: np.ndarray | None = None
    covariance: np.ndarray | None = None
    distribution: Literal["normal", "student_t"] = "normal"
    degrees_of_freedom: float = 5.0
    history: np.ndarray | None = None
    durations: dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        n = len(self.assets)
        if n == 0:
            raise DataError("empty asset set", field="market_scenario")
        if self.distribution not in ("normal", "student_t"):
            msg = f"unknown distribution {self.distribution}"
            raise DataError(msg, field="market_scenario")
        if self.distribution == "student_t" and self.degrees_of_freedom <= 2:
            msg = f"student_t requires degrees_of_freedom > 2, got {self.degrees_of_freedom}"
            raise DataError(msg, field="market_scenario")
        if self.kind == "parametric":
            if self.mean is None or self.covariance is None:
                raise DataError("parametric scenario needs mean and covariance", field="market_scenario")
            if np.shape(self.mean) != (n,) or np.shape(self.covariance) != (n, n):
                msg = f"mean/covariance shapes do not match {n} assets"
                raise DataError(msg, field="market_scenario")
        elif self.kind == "empirical":
            if self.history is None or np.ndim(self.history) != 2 or np.shape(self.history)[1] != n:
                raise DataError("empirical scenario needs a periods x assets history", field="market_scenario")
            if np.shape(self.history)[0] < 2:
                raise DataError("need at least 2 historical observations", field="market_scenario")
        else:
            msg = f"unknown scenario kind {self.kind}"
            raise DataError(msg, field="market_scenario")

    @classmethod
    def parametric(
        cls,
        mean: pd.Series | Mapping[str, float],
        covariance: pd.DataFrame,
        distribution: Literal["normal", "student_t"] = "normal",
        degrees_of_freedom: float = 5.0,
        durations: Mapping[str, float] | None = None,
    ) -> MarketScenario:
        """Build a parametric scenario from labelled per-period moments."""
        mean = pd.Series(mean, dtype=float)
        assets = [str(a) for a in mean.index]
        cov = pd.DataFrame(covariance).astype(float)
        cov.index = [str(i) for i in cov.index]
        cov.columns = [str(c) for c in cov.columns]
        missing = set(assets) - set(cov.index)
        if missing:
            msg = f"covariance missing assets {sorted(missing)}"
            raise DataError(msg, field="market_scenario")
        return cls(
            assets=tuple(assets),
            kind="parametric",
            mean=mean.to_numpy(),
            covariance=cov.loc[assets, assets].to_numpy(),
            distribution=distribution,
            degrees_of_freedom=degrees_of_freedom,
            durations=dict(durations or {}),
        )

    @classmethod
    def from_returns(
        cls,
        returns: qs.ReturnsLike,
        kind: Literal["parametric", "empirical"] = "parametric",
        distribution: Literal["normal", "student_t"] = "normal",
        degrees_of_freedom: float = 5.0,
        durations: Mapping[str, float] | None = None,
    ) -> MarketScenario:
        """Estimate a scenario from historical returns."""
        frame = qs.as_return_matrix(returns)
        return cls(
            assets=tuple(frame.columns),
            kind=kind,
            mean=frame.mean().to_numpy(),
            covariance=frame.cov().to_numpy(),
            distribution=distribution,
            degrees_of_freedom=degrees_of_freedom,
            history=frame.to_numpy() if kind == "empirical" else None,
            durations=dict(durations or {}),
        )

    @property
    def n_assets(self) -> int:
        return len(self.assets)

    def moments(self) -> tuple[np.ndarray, np.ndarray]:
        """Per-period mean and covariance, estimated from history when empirical."""
        if self.kind == "empirical" and (self.mean is None or self.covariance is None):
            history = np.asarray(self.history, dtype=float)
            return history.mean(axis=0), np.cov(history, rowvar=False).reshape(
                self.n_assets, self.n_assets
            )
        return np.asarray(self.mean, dtype=float), np.asarray(self.covariance, dtype=float)


def prepare_covariance(cov: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Validate, PSD-project and Cholesky-factor a covariance matrix.

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        Projected covariance and its lower Cholesky factor

    Raises
    ------
    ScenarioError
        If the matrix is non-finite or carries no variance at all
    """
    matrix = np.asarray(cov, dtype=float)
    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
        msg = f"covariance must be square, got shape {matrix.shape}"
        raise ScenarioError(msg)
    if not np.isfinite(matrix).all():
        raise ScenarioError("covariance contains non-finite values")
    if np.all(np.diag(matrix) <= 0):
        raise ScenarioError("covariance has zero variance for every asset")

    projected = qs.nearest_psd(matrix)
    scale = float(np.diag(projected).max())
    for jitter in (0.0, 1e-12, 1e-10, 1e-8, 1e-6):
        try:
            factor = np.linalg.cholesky(projected + np.eye(len(projected)) * jitter * scale)
        except np.linalg.LinAlgError:
            continue
        if jitter > 0:
            logger.debug(f"Cholesky needed jitter {jitter:g} x max variance")
        return projected, factor

    raise ScenarioError("covariance could not be factorized after PSD projection")


def _conditional_shock(
    weights: np.ndarray, mean: np.ndarray, cov: np.ndarray, horizon: int
) -> np.ndarray:
    """Expected asset returns given a -1.96 sigma portfolio move over the horizon."""
    port_var = float(weights @ cov @ weights)
    if port_var <= 0:
        return mean * horizon
    sigma = np.sqrt(port_var)
    return mean * horizon - STRESS_Z * np.sqrt(horizon) * (cov @ weights) / sigma


def build_stress_shocks(
    scenario: MarketScenario,
    weights: np.ndarray,
    config: SimulationConfig,
) -> list[tuple[str, str, np.ndarray]]:
    """Horizon asset shocks for the built-in and caller-supplied stress tests.

    Parameters
    ----------
    scenario : MarketScenario
        Scenario supplying moments and durations
    weights : np.ndarray
        Portfolio weights aligned to ``scenario.assets``
    config : SimulationConfig
        Horizon, rate shock size and extra scenarios

    Returns
    -------
    list[tuple[str, str, np.ndarray]]
        (name, description, asset shocks) per stress test
    """
    assets = list(scenario.assets)
    horizon = config.time_horizon
    shocks: list[tuple[str, str, np.ndarray]] = []

    if config.include_default_stress_tests:
        mean, cov = scenario.moments()
        cov = qs.nearest_psd(cov)
        std = np.sqrt(np.clip(np.diag(cov), 0.0, None))

        shocks.append(
            ("market_crash", "All assets fall 20%", np.full(len(assets), -0.20))
        )
        shocks.append(
            (
                "high_volatility",
                "Volatility doubles and the portfolio moves down 1.96 sigma",
                _conditional_shock(weights, mean, cov * 4.0, horizon),
            )
        )
        stressed_corr = np.full((len(assets), len(assets)), 0.95)
        np.fill_diagonal(stressed_corr, 1.0)
        shocks.append(
            (
                "correlation_breakdown",
                "All pairwise correlations rise to 0.95 and the portfolio moves down 1.96 sigma",
                _conditional_shock(weights, mean, stressed_corr * np.outer(std, std), horizon),
            )
        )
        durations = np.array(
            [scenario.durations.get(a, config.default_duration) for a in assets], dtype=float
        )
        shocks.append(
            (
                "interest_rate_shock",
                f"Rates rise {config.rate_shock_bps:.0f}bp",
                -durations * config.rate_shock_bps / 10_000,
            )
        )

    for stress in config.stress_scenarios:
        unknown = set(stress.shocks) - set(assets)
        if unknown:
            msg = f"stress scenario '{stress.name}' shocks unknown assets {sorted(unknown)}"
            raise DataError(msg, field="stress_scenarios")
        vector = np.array([stress.shocks.get(a, 0.0) for a in assets], dtype=float)
        shocks.append((stress.name, stress.description or stress.name, vector))

    return shocks
