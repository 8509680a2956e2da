"""Portfolio optimization implementations.

This module provides the risk parity optimizer (equal risk contribution
with volatility targeting) and the factor-based optimizer (mean-variance
with factor exposure targets), plus the box/simplex projection they share.
"""

from __future__ import annotations

import logging
import warnings
from typing import Mapping

import numpy as np
import pandas as pd
from scipy.optimize import linprog, minimize

from quantrisk import statistics as qs
from quantrisk.config import FactorOptimizerConfig, RiskParityConfig, WeightConstraints
from quantrisk.exceptions import ConvergenceShortfall, DataError
from quantrisk.types import OptimizationResult, OptimizationTrace
from quantrisk.utils.cancellation import CancellationToken, check_cancelled

logger = logging.getLogger(__name__)


def project_to_bounds(
    weights: np.ndarray, lower: np.ndarray, upper: np.ndarray, total: float = 1.0
) -> np.ndarray:
    """Euclidean projection onto {sum w = total, lower <= w <= upper}.

    Finds the shift ``tau`` such that ``clip(w - tau, lower, upper)`` sums
    to ``total`` by bisection.

    Raises
    ------
    DataError
        If the box cannot contain a vector summing to ``total``
    """
    if lower.sum() > total + 1e-12 or upper.sum() < total - 1e-12:
        msg = (
            f"bounds cannot sum to {total}: lower bounds sum to {lower.sum():.4f}, "
            f"upper bounds sum to {upper.sum():.4f}"
        )
        raise DataError(msg, field="constraints")

    lo_tau = float(np.min(weights - upper)) - 1.0
    hi_tau = float(np.max(weights - lower)) + 1.0
    for _ in range(200):
        tau = 0.5 * (lo_tau + hi_tau)
        if np.clip(weights - tau, lower, upper).sum() > total:
            lo_tau = tau
        else:
            hi_tau = tau
        if hi_tau - lo_tau < 1e-15:
            break
    projected = np.clip(weights - 0.5 * (lo_tau + hi_tau), lower, upper)
    # remove bisection residue on a free coordinate
    residual = total - projected.sum()
    free = (projected > lower + 1e-12) & (projected < upper - 1e-12)
    if free.any():
        idx = int(np.argmax(free))
        projected[idx] = np.clip(projected[idx] + residual, lower[idx], upper[idx])
    return projected


def _bounds_arrays(
    constraints: WeightConstraints, assets: list[str]
) -> tuple[np.ndarray, np.ndarray]:
    unknown = set(constraints.asset_bounds) - set(assets)
    if unknown:
        msg = f"bounds given for unknown assets {sorted(unknown)}"
        raise DataError(msg, field="constraints")
    bounds = constraints.bounds_for(assets)
    lower = np.array([b[0] for b in bounds], dtype=float)
    upper = np.array([b[1] for b in bounds], dtype=float)
    return lower, upper


class RiskParityOptimizer:
    """Equal risk contribution optimizer with volatility targeting.

    Equal risk contribution weights are the normalized minimizer of the
    convex function ``0.5 y'Cy - sum(log y_i)`` where ``C`` is the
    correlation matrix and ``y_i = w_i * sigma_i``. Damped Newton steps
    (Spinu, 2013) take each step ``y - d / (1 + lambda)`` while the Newton
    decrement ``lambda`` is large and full steps near the optimum, which
    converges for any positive definite covariance.

    When the unconstrained solution breaks the box constraints, it is
    projected onto the box and refined with iterative proportional scaling
    ``w_i * (b_i / rc_i) ** 0.5``. The best iterate is kept, and the result
    reports a shortfall unless the contributions still equalize.

    Parameters
    ----------
    config : RiskParityConfig
        Target volatility, iteration budget, tolerance and constraints

    Examples
    --------
    >>> optimizer = RiskParityOptimizer(RiskParityConfig(target_volatility=0.10))
    >>> result = optimizer.optimize(returns)
    >>> result.trace.converged
    True
    """

    def __init__(self, config: RiskParityConfig | None = None) -> None:
        """Initialize risk parity optimizer."""
        self.config = config or RiskParityConfig()
        logger.info(
            f"Initialized RiskParityOptimizer with target_volatility={self.config.target_volatility}, "
            f"tolerance={self.config.tolerance}"
        )

    def optimize(
        self, returns: qs.ReturnsLike, token: CancellationToken | None = None
    ) -> OptimizationResult:
        """Solve for equal risk contribution weights.

        Parameters
        ----------
        returns : pd.DataFrame | Mapping | np.ndarray
            Aligned per-period asset returns
        token : CancellationToken | None, optional
            Checked between iterations

        Returns
        -------
        OptimizationResult
            Fully invested weights, metrics, trace, and the leverage that
            brings volatility to the target
        """
        cfg = self.config
        frame = qs.as_return_matrix(returns)
        assets = list(frame.columns)
        n = len(assets)
        mean = frame.mean().to_numpy()
        cov = qs.covariance_matrix(frame, ridge=cfg.ridge).to_numpy()

        if cfg.constraints.allow_short:
            logger.info("Risk parity ignores allow_short; weights stay long-only")
        lower, upper = _bounds_arrays(cfg.constraints, assets)
        lower = np.clip(lower, 0.0, None)

        raw_var = frame.var().to_numpy()
        if np.any(raw_var <= 0):
            zero_var = [a for a, v in zip(assets, raw_var) if v <= 0]
            msg = f"zero variance assets {zero_var}"
            raise DataError(msg, field="returns")

        logger.info(f"Optimizing risk parity over {n} assets and {len(frame)} periods")

        # fail early on an infeasible box
        project_to_bounds(np.full(n, 1.0 / n), lower, upper)

        w, spread, iterations = self._newton(cov, token)
        bounded = not bool(np.all(w >= lower - 1e-12) and np.all(w <= upper + 1e-12))
        if bounded:
            logger.info("Equal risk weights break the weight bounds; refining inside the box")
            w, spread, used = self._refine_in_box(
                cov,
                project_to_bounds(w, lower, upper),
                lower,
                upper,
                cfg.max_iterations - iterations,
                token,
            )
            iterations += used
        converged = spread < cfg.tolerance

        weights, achieved = w, spread
        message = "converged" if converged else (
            f"contribution spread {achieved:.2e} above tolerance {cfg.tolerance:.2e} "
            f"after {iterations} iterations" + (" (weight bounds bind)" if bounded else "")
        )
        if not converged:
            warnings.warn(f"Risk parity: {message}", ConvergenceShortfall, stacklevel=2)
            logger.warning(f"Risk parity did not converge: {message}")

        annual_vol = qs.portfolio_volatility(weights, cov) * np.sqrt(cfg.periods_per_year)
        leverage, gap = self._leverage(annual_vol)

        metrics = qs.portfolio_metrics(
            weights, mean, cov, assets, cfg.periods_per_year, cfg.risk_free_rate
        )
        trace = OptimizationTrace(
            iterations=iterations,
            converged=converged,
            final_objective=achieved,
            tolerance_achieved=achieved,
            message=message,
        )

        logger.info(
            f"Risk parity finished in {iterations} iterations: converged={converged}, "
            f"volatility={annual_vol:.4f}, leverage={leverage:.4f}"
        )

        return OptimizationResult(
            method="risk_parity",
            weights={a: float(x) for a, x in zip(assets, weights)},
            metrics=metrics,
            trace=trace,
            leverage=leverage,
            scaled_weights={a: float(x * leverage) for a, x in zip(assets, weights)},
            target_volatility=cfg.target_volatility,
            volatility_gap=gap,
        )

    def _newton(
        self, cov: np.ndarray, token: CancellationToken | None
    ) -> tuple[np.ndarray, float, int]:
        """Damped Newton solve of the unconstrained equal risk problem.

        Returns
        -------
        tuple[np.ndarray, float, int]
            Normalized weights, their contribution spread and the number of
            Newton steps taken
        """
        sigma = np.sqrt(np.diag(cov))
        corr = cov / np.outer(sigma, sigma)
        n = len(sigma)
        # beyond this decrement a full step may leave the positive orthant
        damping_threshold = 0.95 * (3.0 - np.sqrt(5.0)) / 2.0

        y = np.full(n, 1.0 / np.sqrt(corr.sum()))
        w = y / sigma / np.sum(y / sigma)
        rc = qs.risk_contributions(w, cov)
        spread = float(rc.max() - rc.min())
        iterations = 0

        while spread >= self.config.tolerance and iterations < self.config.max_iterations:
            check_cancelled(token, "risk parity optimization")
            iterations += 1

            gradient = corr @ y - 1.0 / y
            hessian = corr + np.diag(1.0 / y**2)
            step = np.linalg.solve(hessian, gradient)
            decrement = float(np.sqrt(max(gradient @ step, 0.0)))
            if decrement > damping_threshold:
                y = y - step / (1.0 + decrement)
            else:
                y = y - step

            w = y / sigma / np.sum(y / sigma)
            rc = qs.risk_contributions(w, cov)
            spread = float(rc.max() - rc.min())
            logger.debug(
                f"Newton step {iterations}: decrement={decrement:.2e}, spread={spread:.2e}"
            )

        return w, spread, iterations

    def _refine_in_box(
        self,
        cov: np.ndarray,
        w: np.ndarray,
        lower: np.ndarray,
        upper: np.ndarray,
        max_steps: int,
        token: CancellationToken | None,
    ) -> tuple[np.ndarray, float, int]:
        """Proportional scaling inside the box; returns the best iterate."""
        budget = 1.0 / len(w)
        rc = qs.risk_contributions(w, cov)
        best_w, best_spread = w, float(rc.max() - rc.min())
        steps = 0

        while best_spread >= self.config.tolerance and steps < max_steps:
            check_cancelled(token, "risk parity optimization")
            steps += 1
            w = w * np.sqrt(budget / np.clip(rc, 1e-16, None))
            w = project_to_bounds(w / w.sum(), lower, upper)
            rc = qs.risk_contributions(w, cov)
            spread = float(rc.max() - rc.min())
            if spread < best_spread:
                best_w, best_spread = w, spread
            if steps % 100 == 0:
                logger.debug(f"Box step {steps}: contribution spread={spread:.2e}")

        return best_w, best_spread, steps

    def _leverage(self, volatility: float) -> tuple[float, float]:
        """Scale reaching the target volatility, clipped to the leverage bounds."""
        c = self.config.constraints
        if volatility <= 0:
            return 1.0, -self.config.target_volatility
        raw = self.config.target_volatility / volatility
        leverage = float(np.clip(raw, c.min_leverage, c.max_leverage))
        gap = leverage * volatility - self.config.target_volatility
        if abs(gap) > self.config.tolerance:
            logger.warning(
                f"Target volatility {self.config.target_volatility:.4f} not reachable within "
                f"leverage bounds [{c.min_leverage}, {c.max_leverage}]; gap={gap:.4f}"
            )
        else:
            gap = 0.0
        return leverage, float(gap)


def _as_loadings(
    factor_exposures: pd.DataFrame | Mapping[str, Mapping[str, float]], assets: list[str]
) -> pd.DataFrame:
    if isinstance(factor_exposures, pd.DataFrame):
        loadings = factor_exposures.copy()
    else:
        loadings = pd.DataFrame.from_dict(
            {a: dict(v) for a, v in factor_exposures.items()}, orient="index"
        )
    loadings.index = [str(i) for i in loadings.index]
    loadings.columns = [str(c) for c in loadings.columns]

    missing = [a for a in assets if a not in loadings.index]
    if missing:
        msg = f"no loadings for assets {missing}"
        raise DataError(msg, field="factor_exposures")
    loadings = loadings.loc[assets].astype(float)
    if loadings.shape[1] == 0:
        raise DataError("no factors supplied", field="factor_exposures")
    if not np.isfinite(loadings.to_numpy()).all():
        raise DataError("non-finite loadings", field="factor_exposures")
    return loadings


class FactorBasedOptimizer:
    """Mean-variance optimizer with factor exposure targets.

    Maximizes ``mu'w - (lambda/2) w'Sigma w`` on annualized moments subject
    to full investment, box bounds, exposure bands ``[t - eps, t + eps]``
    around each target (equality when ``eps == 0``) and hard per-factor
    min/max limits. Solved with sequential least squares programming.

    Parameters
    ----------
    config : FactorOptimizerConfig
        Targets, tolerances and constraints

    Examples
    --------
    >>> config = FactorOptimizerConfig(target_factor_exposures={"market": 1.0})
    >>> result = FactorBasedOptimizer(config).optimize(returns, loadings)
    >>> result.factor_exposures["market"]
    1.0
    """

    def __init__(self, config: FactorOptimizerConfig | None = None) -> None:
        """Initialize factor-based optimizer."""
        self.config = config or FactorOptimizerConfig()
        logger.info(
            f"Initialized FactorBasedOptimizer with risk_aversion={self.config.risk_aversion}, "
            f"targets={self.config.target_factor_exposures}"
        )

    def optimize(
        self,
        returns: qs.ReturnsLike,
        factor_exposures: pd.DataFrame | Mapping[str, Mapping[str, float]],
        token: CancellationToken | None = None,
    ) -> OptimizationResult:
        """Solve the constrained quadratic program.

        Parameters
        ----------
        returns : pd.DataFrame | Mapping | np.ndarray
            Aligned per-period asset returns
        factor_exposures : pd.DataFrame | Mapping[str, Mapping[str, float]]
            Loadings, assets x factors
        token : CancellationToken | None, optional
            Checked before solving and between solver iterations

        Returns
        -------
        OptimizationResult
            Weights, metrics, realized exposures and trace. When the exposure
            constraints are infeasible the result carries ``converged=False``
            and the exposures actually achieved.
        """
        cfg = self.config
        frame = qs.as_return_matrix(returns)
        assets = list(frame.columns)
        loadings = _as_loadings(factor_exposures, assets)
        factors = list(loadings.columns)

        unknown = (set(cfg.target_factor_exposures) | set(cfg.factor_constraints)) - set(factors)
        if unknown:
            msg = f"constraints reference unknown factors {sorted(unknown)}"
            raise DataError(msg, field="factor_exposures")

        mean = frame.mean().to_numpy()
        cov = qs.covariance_matrix(frame).to_numpy()
        mu_a = mean * cfg.periods_per_year
        cov_a = cov * cfg.periods_per_year
        B = loadings.to_numpy()
        lower, upper = _bounds_arrays(cfg.constraints, assets)

        if lower.sum() > 1 + 1e-12 or upper.sum() < 1 - 1e-12:
            msg = "weight bounds cannot sum to 1"
            raise DataError(msg, field="constraints")

        logger.info(
            f"Optimizing factor-based portfolio over {len(assets)} assets and {len(factors)} factors"
        )
        check_cancelled(token, "factor optimization")

        targets = dict(cfg.target_factor_exposures)
        infeasible = self._infeasible_targets(B, factors, targets, lower, upper)
        message = ""
        if infeasible:
            message = f"infeasible exposure constraints: {', '.join(infeasible)}"
            logger.warning(f"Factor optimizer: {message}; solving without them")
            for name in infeasible:
                targets.pop(name, None)

        constraints = self._linear_constraints(B, factors, targets, skip=set(infeasible))
        result = self._solve(mu_a, cov_a, constraints, lower, upper, token)

        w = np.clip(result.x, lower, upper)
        violation = self._max_violation(w, constraints)
        converged = bool(result.success) and violation <= cfg.tolerance
        if infeasible:
            converged = False
        elif not converged:
            message = f"solver stopped: {result.message} (constraint violation {violation:.2e})"

        if not converged:
            warnings.warn(f"Factor optimizer: {message}", ConvergenceShortfall, stacklevel=2)
            logger.warning(f"Factor optimizer did not converge: {message}")
        else:
            message = "converged"

        realized = {f: float(x) for f, x in zip(factors, w @ B)}
        objective = float(mu_a @ w - 0.5 * cfg.risk_aversion * w @ cov_a @ w)
        metrics = qs.portfolio_metrics(
            w, mean, cov, assets, cfg.periods_per_year, cfg.risk_free_rate, B, factors
        )
        trace = OptimizationTrace(
            iterations=int(getattr(result, "nit", 0)),
            converged=converged,
            final_objective=objective,
            tolerance_achieved=float(violation),
            message=message,
        )

        logger.info(
            f"Factor optimization finished: converged={converged}, objective={objective:.6f}, "
            f"exposures={realized}"
        )

        return OptimizationResult(
            method="factor_based",
            weights={a: float(x) for a, x in zip(assets, w)},
            metrics=metrics,
            trace=trace,
            leverage=1.0,
            scaled_weights={a: float(x) for a, x in zip(assets, w)},
            factor_exposures=realized,
            target_factor_exposures=dict(cfg.target_factor_exposures),
        )

    def _exposure_rows(
        self, B: np.ndarray, factors: list[str], targets: Mapping[str, float], skip: set[str]
    ) -> tuple[list[np.ndarray], list[float], list[np.ndarray], list[float]]:
        """Linear constraints as (A_eq, b_eq, A_ub, b_ub) rows, excluding sum-to-one."""
        eps = self.config.exposure_tolerance
        a_eq: list[np.ndarray] = []
        b_eq: list[float] = []
        a_ub: list[np.ndarray] = []
        b_ub: list[float] = []

        for name, target in targets.items():
            if name in skip:
                continue
            row = B[:, factors.index(name)]
            if eps == 0:
                a_eq.append(row)
                b_eq.append(target)
            else:
                a_ub.append(row)
                b_ub.append(target + eps)
                a_ub.append(-row)
                b_ub.append(-(target - eps))

        for name, bound in self.config.factor_constraints.items():
            if name in skip:
                continue
            row = B[:, factors.index(name)]
            if bound.max is not None:
                a_ub.append(row)
                b_ub.append(bound.max)
            if bound.min is not None:
                a_ub.append(-row)
                b_ub.append(-bound.min)

        return a_eq, b_eq, a_ub, b_ub

    def _is_feasible(
        self,
        B: np.ndarray,
        factors: list[str],
        targets: Mapping[str, float],
        lower: np.ndarray,
        upper: np.ndarray,
        skip: set[str] | None = None,
    ) -> bool:
        a_eq, b_eq, a_ub, b_ub = self._exposure_rows(B, factors, targets, skip or set())
        n = B.shape[0]
        a_eq = [np.ones(n), *a_eq]
        b_eq = [1.0, *b_eq]
        res = linprog(
            c=np.zeros(n),
            A_eq=np.vstack(a_eq),
            b_eq=np.array(b_eq),
            A_ub=np.vstack(a_ub) if a_ub else None,
            b_ub=np.array(b_ub) if b_ub else None,
            bounds=list(zip(lower, upper)),
            method="highs",
        )
        return res.status == 0

    def _infeasible_targets(
        self,
        B: np.ndarray,
        factors: list[str],
        targets: Mapping[str, float],
        lower: np.ndarray,
        upper: np.ndarray,
    ) -> list[str]:
        """Names of factors whose constraints cannot be met; empty when feasible."""
        if self._is_feasible(B, factors, targets, lower, upper):
            return []

        constrained = sorted(set(targets) | set(self.config.factor_constraints))
        culprits = [
            name
            for name in constrained
            if not self._is_feasible(
                B, factors, targets, lower, upper, skip=set(constrained) - {name}
            )
        ]
        return culprits or constrained

    def _linear_constraints(
        self, B: np.ndarray, factors: list[str], targets: Mapping[str, float], skip: set[str]
    ) -> list[dict]:
        a_eq, b_eq, a_ub, b_ub = self._exposure_rows(B, factors, targets, skip)
        n = B.shape[0]
        constraints: list[dict] = [
            {"type": "eq", "fun": lambda w: np.sum(w) - 1.0, "jac": lambda w: np.ones(n)}
        ]
        if a_eq:
            A, b = np.vstack(a_eq), np.array(b_eq)
            constraints.append({"type": "eq", "fun": lambda w: A @ w - b, "jac": lambda w: A})
        if a_ub:
            G, h = np.vstack(a_ub), np.array(b_ub)
            # scipy expects fun(w) >= 0
            constraints.append({"type": "ineq", "fun": lambda w: h - G @ w, "jac": lambda w: -G})
        return constraints

    def _solve(
        self,
        mu: np.ndarray,
        cov: np.ndarray,
        constraints: list[dict],
        lower: np.ndarray,
        upper: np.ndarray,
        token: CancellationToken | None,
    ):
        lam = self.config.risk_aversion

        def objective(w: np.ndarray) -> tuple[float, np.ndarray]:
            cov_w = cov @ w
            value = -(mu @ w - 0.5 * lam * w @ cov_w)
            grad = -(mu - lam * cov_w)
            return float(value), grad

        def callback(_: np.ndarray) -> None:
            check_cancelled(token, "factor optimization")

        n = len(mu)
        x0 = project_to_bounds(np.full(n, 1.0 / n), lower, upper)
        return minimize(
            objective,
            x0,
            jac=True,
            method="SLSQP",
            bounds=list(zip(lower, upper)),
            constraints=constraints,
            callback=callback,
            options={"maxiter": self.config.max_iterations, "ftol": self.config.tolerance},
        )

    @staticmethod
    def _max_violation(w: np.ndarray, constraints: list[dict]) -> float:
        violation = 0.0
        for c in constraints:
            value = np.atleast_1d(c["fun"](w))
            if c["type"] == "eq":
                violation = max(violation, float(np.abs(value).max()))
            elif value.size:
                violation = max(violation, float(np.clip(-value, 0.0, None).max()))
        return violation


def create_portfolio_optimizer(
    method: str, config: RiskParityConfig | FactorOptimizerConfig | None = None
) -> RiskParityOptimizer | FactorBasedOptimizer:
    """Factory function to create portfolio optimizers.

    Parameters
    ----------
    method : str
        Optimizer method ("risk_parity" or "factor_based")
    config : RiskParityConfig | FactorOptimizerConfig | None, optional
        Optimizer configuration

    Returns
    -------
    RiskParityOptimizer | FactorBasedOptimizer
        Configured optimizer

    Raises
    ------
    ValueError
        If method is not recognized
    """
    if method == "risk_parity":
        return RiskParityOptimizer(config)  # type: ignore[arg-type]
    if method == "factor_based":
        return FactorBasedOptimizer(config)  # type: ignore[arg-type]
    msg = f"Unknown optimizer method: {method}"
    raise ValueError(msg)
