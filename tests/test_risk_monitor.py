"""Tests for the portfolio risk monitor."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from quantrisk import monitor_portfolio_risk
from quantrisk.config import MonitorConfig
from quantrisk.exceptions import DataError
from quantrisk.portfolio.risk import RiskMonitor, _severity
from quantrisk.types import MarketSnapshot, Portfolio


@pytest.fixture
def portfolio() -> Portfolio:
    return Portfolio("core", {"AAA": 0.5, "BBB": 0.3, "CCC": 0.2})


def test_metrics_and_attribution(portfolio, asset_returns):
    snapshot = monitor_portfolio_risk(portfolio, MarketSnapshot(returns=asset_returns))

    for key in ("volatility", "var_95", "cvar_95", "var_99", "parametric_var_99", "max_drawdown"):
        assert key in snapshot.metrics
    assert snapshot.metrics["cvar_95"] >= snapshot.metrics["var_95"] > 0
    assert sum(snapshot.asset_attribution.values()) == pytest.approx(1.0)
    assert snapshot.factor_attribution is None
    assert snapshot.timestamp == asset_returns.index[-1]
    assert snapshot.portfolio_id == "core"


def test_regimes(portfolio, asset_returns):
    snapshot = monitor_portfolio_risk(portfolio, MarketSnapshot(returns=asset_returns))
    # annualized vol is roughly 17%, average pairwise correlation roughly 0.3
    assert snapshot.volatility_regime == "normal"
    assert snapshot.correlation_regime == "low"


class TestAlerts:
    def test_volatility_alert(self, portfolio, asset_returns):
        snapshot = monitor_portfolio_risk(
            portfolio, MarketSnapshot(returns=asset_returns), {"volatility_threshold": 0.10}
        )
        assert snapshot.has_alert("volatility", "portfolio")

    def test_quiet_portfolio_has_no_volatility_alert(self, portfolio, asset_returns):
        snapshot = monitor_portfolio_risk(portfolio, MarketSnapshot(returns=asset_returns))
        assert not snapshot.has_alert("volatility")
        assert not snapshot.has_alert("var")

    def test_var_alert(self, portfolio, asset_returns):
        snapshot = monitor_portfolio_risk(
            portfolio, MarketSnapshot(returns=asset_returns), {"var_threshold": 0.005}
        )
        alert = next(a for a in snapshot.alerts if a.rule == "var")
        assert alert.value == pytest.approx(snapshot.metrics["var_95"])
        assert alert.severity == "critical"

    def test_concentration_alert_names_the_asset(self, portfolio, asset_returns):
        snapshot = monitor_portfolio_risk(portfolio, MarketSnapshot(returns=asset_returns))
        subjects = {a.subject for a in snapshot.alerts if a.rule == "concentration"}
        assert subjects == {"AAA"}

    def test_correlation_shift_against_baseline(self, asset_returns):
        baseline = pd.DataFrame(np.eye(3), index=asset_returns.columns, columns=asset_returns.columns)
        portfolio = Portfolio(
            "core", {"AAA": 0.3, "BBB": 0.3, "CCC": 0.3}, baseline_correlation=baseline
        )
        snapshot = monitor_portfolio_risk(portfolio, MarketSnapshot(returns=asset_returns))
        assert snapshot.has_alert("correlation_shift", "BBB/CCC")

    def test_drawdown_alert(self):
        returns = pd.DataFrame({"A": [0.01] * 10 + [-0.25] + [0.0] * 5})
        snapshot = monitor_portfolio_risk(
            Portfolio("single", {"A": 1.0}), MarketSnapshot(returns=returns)
        )
        alert = next(a for a in snapshot.alerts if a.rule == "drawdown")
        assert alert.value == pytest.approx(0.25)
        assert alert.severity == "critical"
        assert snapshot.metrics["current_drawdown"] == pytest.approx(0.25)

    def test_repeated_alerts_are_not_new(self, portfolio, asset_returns):
        monitor = RiskMonitor(MonitorConfig(volatility_threshold=0.10))
        market = MarketSnapshot(returns=asset_returns)
        first = monitor.evaluate(portfolio, market)
        second = monitor.evaluate(portfolio, market, previous=first)

        assert all(a.is_new for a in first.alerts)
        assert second.alerts
        assert not any(a.is_new for a in second.alerts)


@pytest.mark.parametrize(
    "value, base, expected",
    [(0.11, "medium", "medium"), (0.16, "medium", "high"), (0.16, "high", "critical"), (0.2, "low", "critical")],
)
def test_severity_escalation(value, base, expected):
    assert _severity(value, 0.10, base) == expected


def test_factor_attribution_sums_to_one(portfolio, asset_returns):
    loadings = pd.DataFrame(
        {"market": [0.8, 1.0, 1.2], "size": [0.2, -0.1, 0.4]}, index=["AAA", "BBB", "CCC"]
    )
    snapshot = monitor_portfolio_risk(
        portfolio, MarketSnapshot(returns=asset_returns, factor_loadings=loadings)
    )
    assert set(snapshot.factor_attribution) == {"market", "size", "specific"}
    assert sum(snapshot.factor_attribution.values()) == pytest.approx(1.0)


def test_snapshot_from_prices(portfolio):
    prices = pd.DataFrame(
        {"AAA": [100, 101, 99, 102], "BBB": [50, 50.5, 51, 50], "CCC": [20, 20.2, 20.1, 20.4]},
        index=pd.date_range("2024-01-01", periods=4, freq="B"),
    )
    market = MarketSnapshot.from_prices(prices)
    assert len(market.returns) == 3
    assert market.returns.iloc[0]["AAA"] == pytest.approx(0.01)


class TestValidation:
    def test_missing_market_data(self, asset_returns):
        portfolio = Portfolio("p", {"AAA": 0.5, "ZZZ": 0.5})
        with pytest.raises(DataError, match="no market data"):
            monitor_portfolio_risk(portfolio, MarketSnapshot(returns=asset_returns))

    def test_missing_factor_loadings(self, portfolio, asset_returns):
        loadings = pd.DataFrame({"market": [1.0, 1.0]}, index=["AAA", "BBB"])
        with pytest.raises(DataError, match="no factor loadings"):
            monitor_portfolio_risk(
                portfolio, MarketSnapshot(returns=asset_returns, factor_loadings=loadings)
            )

    def test_invalid_threshold(self, portfolio, asset_returns):
        with pytest.raises(DataError):
            monitor_portfolio_risk(
                portfolio, MarketSnapshot(returns=asset_returns), {"var_threshold": 0}
            )
