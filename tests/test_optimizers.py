"""Tests for the risk parity and factor-based optimizers."""

from __future__ import annotations

import warnings

import numpy as np
import pandas as pd
import pytest

from quantrisk import optimize_factor_based, optimize_risk_parity, run_monte_carlo_simulation
from quantrisk.config import (
    FactorBound,
    FactorOptimizerConfig,
    RiskParityConfig,
    WeightConstraints,
)
from quantrisk.exceptions import ConvergenceShortfall, DataError, OperationCancelled
from quantrisk.portfolio.optimizers import (
    FactorBasedOptimizer,
    RiskParityOptimizer,
    create_portfolio_optimizer,
    project_to_bounds,
)
from quantrisk.simulation.scenarios import MarketScenario
from quantrisk.types import Portfolio
from quantrisk.utils.cancellation import CancellationToken


@pytest.fixture
def factor_loadings() -> pd.DataFrame:
    return pd.DataFrame(
        {"market": [0.8, 1.0, 1.2], "value": [0.5, -0.2, 0.1]},
        index=["AAA", "BBB", "CCC"],
    )


# ============================================================================
# Projection
# ============================================================================


def test_project_to_bounds_respects_box_and_sum():
    w = project_to_bounds(np.array([0.7, 0.2, 0.1]), np.zeros(3), np.full(3, 0.4))
    assert w.sum() == pytest.approx(1.0)
    assert (w <= 0.4 + 1e-12).all()
    assert (w >= 0).all()


def test_project_to_bounds_infeasible_box():
    with pytest.raises(DataError, match="bounds cannot sum"):
        project_to_bounds(np.array([0.5, 0.5]), np.zeros(2), np.full(2, 0.3))


# ============================================================================
# Risk parity
# ============================================================================


class TestRiskParity:
    def test_equal_risk_contributions(self, asset_returns):
        cfg = RiskParityConfig(tolerance=1e-6)
        result = optimize_risk_parity(asset_returns, cfg)

        assert result.converged
        shares = np.array(list(result.metrics.risk_contributions.values()))
        assert shares.max() - shares.min() < cfg.tolerance
        assert sum(result.weights.values()) == pytest.approx(1.0)
        assert all(w > 0 for w in result.weights.values())

    @pytest.mark.parametrize("seed", range(40))
    def test_converges_on_random_covariances(self, seed):
        rng = np.random.default_rng(seed)
        n_assets = 5 + seed % 6
        loadings = rng.normal(size=(n_assets, n_assets))
        cov_shape = loadings @ loadings.T
        scale = 1.0 / np.sqrt(np.diag(cov_shape))
        corr = cov_shape * np.outer(scale, scale)
        vols = rng.uniform(0.005, 0.03, n_assets)
        draws = rng.multivariate_normal(
            np.zeros(n_assets), corr * np.outer(vols, vols), size=300
        )
        returns = pd.DataFrame(draws, columns=[f"A{k}" for k in range(n_assets)])

        with warnings.catch_warnings():
            warnings.simplefilter("error", ConvergenceShortfall)
            result = optimize_risk_parity(returns)

        assert result.converged
        shares = np.array(list(result.metrics.risk_contributions.values()))
        assert shares.max() - shares.min() < 1e-6
        assert result.trace.iterations < 100

    def test_lower_volatility_gets_more_weight(self, asset_returns):
        result = optimize_risk_parity(asset_returns)
        assert result.weights["AAA"] > result.weights["BBB"] > result.weights["CCC"]

    def test_volatility_target_via_leverage(self, asset_returns):
        result = optimize_risk_parity(asset_returns, {"target_volatility": 0.10})
        levered_vol = result.metrics.volatility * result.leverage
        assert levered_vol == pytest.approx(0.10, rel=1e-6)
        assert result.volatility_gap == 0.0
        assert result.scaled_weights["AAA"] == pytest.approx(
            result.weights["AAA"] * result.leverage
        )

    def test_leverage_cap_reports_gap(self, asset_returns):
        cfg = RiskParityConfig(
            target_volatility=5.0, constraints=WeightConstraints(max_leverage=1.5)
        )
        result = optimize_risk_parity(asset_returns, cfg)
        assert result.leverage == 1.5
        assert result.volatility_gap < 0

    def test_negatively_correlated_assets(self):
        rng = np.random.default_rng(3)
        base = rng.normal(0, 0.01, 400)
        returns = pd.DataFrame(
            {
                "X": base + rng.normal(0, 0.002, 400),
                "Y": -base + rng.normal(0, 0.004, 400),
                "Z": rng.normal(0, 0.015, 400),
            }
        )
        result = optimize_risk_parity(returns)

        assert result.converged
        shares = list(result.metrics.risk_contributions.values())
        assert max(shares) - min(shares) < RiskParityConfig().tolerance
        assert all(w > 0 for w in result.weights.values())

    def test_binding_weight_bounds_report_shortfall(self, asset_returns):
        cfg = RiskParityConfig(constraints=WeightConstraints(max_weight=0.38))
        with pytest.warns(ConvergenceShortfall, match="weight bounds bind"):
            result = optimize_risk_parity(asset_returns, cfg)

        assert not result.converged
        assert result.weights["AAA"] == pytest.approx(0.38)
        assert all(w <= 0.38 + 1e-12 for w in result.weights.values())
        assert sum(result.weights.values()) == pytest.approx(1.0)

    def test_single_asset(self):
        result = optimize_risk_parity({"ONLY": [0.01, -0.02, 0.015, 0.003]})
        assert result.weights == {"ONLY": 1.0}
        assert result.converged

    def test_zero_variance_asset_rejected(self):
        returns = {"A": [0.01, -0.01, 0.02], "FLAT": [0.0, 0.0, 0.0]}
        with pytest.raises(DataError, match="zero variance"):
            optimize_risk_parity(returns)

    def test_iteration_budget_shortfall_warns(self, asset_returns):
        with pytest.warns(ConvergenceShortfall):
            result = optimize_risk_parity(asset_returns, {"max_iterations": 1})
        assert not result.converged
        assert result.trace.tolerance_achieved > 0
        assert sum(result.weights.values()) == pytest.approx(1.0)

    def test_infeasible_weight_bounds(self, asset_returns):
        cfg = RiskParityConfig(constraints=WeightConstraints(max_weight=0.3))
        with pytest.raises(DataError, match="bounds cannot sum"):
            optimize_risk_parity(asset_returns, cfg)

    def test_invalid_mapping_config_is_data_error(self, asset_returns):
        with pytest.raises(DataError, match="target_volatility"):
            optimize_risk_parity(asset_returns, {"target_volatility": -1})

    def test_cancellation(self, asset_returns):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            RiskParityOptimizer(RiskParityConfig()).optimize(asset_returns, token)

    def test_deterministic(self, asset_returns):
        first = optimize_risk_parity(asset_returns)
        second = optimize_risk_parity(asset_returns)
        assert first.weights == second.weights


# ============================================================================
# Factor-based
# ============================================================================


class TestFactorBased:
    def test_exact_exposure_target(self, asset_returns, factor_loadings):
        cfg = FactorOptimizerConfig(target_factor_exposures={"market": 1.05})
        result = optimize_factor_based(asset_returns, factor_loadings, cfg)

        assert result.converged
        assert result.factor_exposures["market"] == pytest.approx(1.05, abs=1e-6)
        assert sum(result.weights.values()) == pytest.approx(1.0, abs=1e-6)
        assert all(w >= -1e-10 for w in result.weights.values())
        assert result.trace.tolerance_achieved <= cfg.tolerance

    def test_iteration_limit_is_not_reported_as_converged(self, asset_returns, factor_loadings):
        cfg = FactorOptimizerConfig(target_factor_exposures={"market": 1.05}, max_iterations=1)
        with pytest.warns(ConvergenceShortfall, match="solver stopped"):
            result = optimize_factor_based(asset_returns, factor_loadings, cfg)
        assert not result.converged

    def test_exposure_band(self, asset_returns, factor_loadings):
        cfg = FactorOptimizerConfig(
            target_factor_exposures={"market": 1.0}, exposure_tolerance=0.05
        )
        result = optimize_factor_based(asset_returns, factor_loadings, cfg)
        assert result.converged
        assert abs(result.factor_exposures["market"] - 1.0) <= 0.05 + 1e-6

    def test_factor_bounds(self, asset_returns, factor_loadings):
        cfg = FactorOptimizerConfig(factor_constraints={"value": FactorBound(min=0.2)})
        result = optimize_factor_based(asset_returns, factor_loadings, cfg)
        assert result.converged
        assert result.factor_exposures["value"] >= 0.2 - 1e-6

    def test_infeasible_target_reports_realized_exposure(self, asset_returns, factor_loadings):
        cfg = FactorOptimizerConfig(target_factor_exposures={"market": 2.0})
        with pytest.warns(ConvergenceShortfall, match="infeasible"):
            result = optimize_factor_based(asset_returns, factor_loadings, cfg)

        assert not result.converged
        assert "market" in result.trace.message
        assert result.factor_exposures["market"] <= 1.2 + 1e-9
        assert result.target_factor_exposures == {"market": 2.0}
        assert sum(result.weights.values()) == pytest.approx(1.0, abs=1e-6)

    def test_only_the_infeasible_factor_is_dropped(self, asset_returns, factor_loadings):
        cfg = FactorOptimizerConfig(
            target_factor_exposures={"market": 2.0, "value": 0.1},
            exposure_tolerance=0.01,
        )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceShortfall)
            result = optimize_factor_based(asset_returns, factor_loadings, cfg)
        assert "market" in result.trace.message
        assert "value" not in result.trace.message
        assert abs(result.factor_exposures["value"] - 0.1) <= 0.01 + 1e-6

    def test_loadings_as_mapping(self, asset_returns):
        loadings = {"AAA": {"market": 1.0}, "BBB": {"market": 1.0}, "CCC": {"market": 1.0}}
        result = FactorBasedOptimizer(FactorOptimizerConfig()).optimize(asset_returns, loadings)
        assert result.factor_exposures["market"] == pytest.approx(1.0)

    def test_missing_loadings(self, asset_returns, factor_loadings):
        with pytest.raises(DataError, match="no loadings for assets"):
            optimize_factor_based(asset_returns, factor_loadings.drop(index="CCC"))

    def test_unknown_factor_target(self, asset_returns, factor_loadings):
        cfg = {"target_factor_exposures": {"momentum": 0.5}}
        with pytest.raises(DataError, match="unknown factors"):
            optimize_factor_based(asset_returns, factor_loadings, cfg)

    def test_higher_risk_aversion_lowers_volatility(self, asset_returns, factor_loadings):
        bold = optimize_factor_based(asset_returns, factor_loadings, {"risk_aversion": 0.5})
        timid = optimize_factor_based(asset_returns, factor_loadings, {"risk_aversion": 50.0})
        assert timid.metrics.volatility <= bold.metrics.volatility + 1e-9


def test_create_portfolio_optimizer():
    assert isinstance(create_portfolio_optimizer("risk_parity"), RiskParityOptimizer)
    assert isinstance(create_portfolio_optimizer("factor_based"), FactorBasedOptimizer)
    with pytest.raises(ValueError, match="Unknown optimizer method"):
        create_portfolio_optimizer("black_litterman")


def test_risk_parity_then_simulation_end_to_end():
    rng = np.random.default_rng(2024)
    assets = ["EQ", "CREDIT", "EM"]
    vols = np.array([0.008, 0.012, 0.018])
    corr = np.array([[1.0, 0.25, 0.1], [0.25, 1.0, 0.35], [0.1, 0.35, 1.0]])
    mean = pd.Series([0.0002, 0.0003, 0.0004], index=assets)
    cov = pd.DataFrame(corr * np.outer(vols, vols), index=assets, columns=assets)
    returns = pd.DataFrame(rng.multivariate_normal(mean, cov, size=252), columns=assets)

    result = optimize_risk_parity(
        returns, {"target_volatility": 0.10, "max_iterations": 1000, "tolerance": 1e-6}
    )
    assert result.converged
    assert result.trace.iterations <= 1000
    shares = np.array(list(result.metrics.risk_contributions.values()))
    assert np.abs(shares - shares.mean()).max() < 1e-6
    assert sum(result.weights.values()) == pytest.approx(1.0, abs=1e-6)

    portfolio = Portfolio("erc", result.weights, result.metrics)
    simulation = run_monte_carlo_simulation(
        portfolio,
        MarketScenario.parametric(mean, cov),
        {"num_simulations": 10_000, "time_horizon": 252, "confidence_levels": [0.95, 0.99]},
    )
    assert 0 < simulation.var(0.95) < simulation.var(0.99)
