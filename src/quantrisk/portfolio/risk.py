"""Real-time portfolio risk monitoring.

This module recomputes risk and attribution for a portfolio from the
latest market snapshot and evaluates independent alert rules. The monitor
only reports; it never changes the portfolio it is given.
"""

from __future__ import annotations

import logging
from dataclasses import replace

import numpy as np
import pandas as pd

from quantrisk import statistics as qs
from quantrisk.config import MonitorConfig
from quantrisk.exceptions import DataError
from quantrisk.types import MarketSnapshot, Portfolio, RiskAlert, RiskSnapshot

logger = logging.getLogger(__name__)


def _severity(value: float, threshold: float, base: str = "medium") -> str:
    """Escalate one level at 1.5x the threshold and to critical at 2x."""
    levels = ["low", "medium", "high", "critical"]
    idx = levels.index(base)
    if value >= 2 * threshold:
        return "critical"
    if value >= 1.5 * threshold:
        idx = min(idx + 1, len(levels) - 1)
    return levels[idx]


class RiskMonitor:
    """Portfolio risk monitor.

    Computes volatility, VaR/CVaR, drawdown and risk attribution from a
    market snapshot, then raises volatility, VaR, concentration,
    correlation-shift and drawdown alerts.

    Parameters
    ----------
    config : MonitorConfig
        Alert thresholds and regime boundaries

    Examples
    --------
    >>> monitor = RiskMonitor(MonitorConfig(volatility_threshold=0.20))
    >>> snapshot = monitor.evaluate(portfolio, MarketSnapshot(returns=window))
    >>> [a.rule for a in snapshot.alerts]
    ['volatility']
    """

    def __init__(self, config: MonitorConfig | None = None) -> None:
        """Initialize risk monitor."""
        self.config = config or MonitorConfig()
        logger.info(
            f"Initialized RiskMonitor with volatility_threshold={self.config.volatility_threshold}, "
            f"var_threshold={self.config.var_threshold}"
        )

    def evaluate(
        self,
        portfolio: Portfolio,
        snapshot: MarketSnapshot,
        previous: RiskSnapshot | None = None,
    ) -> RiskSnapshot:
        """Compute a fresh risk snapshot.

        Parameters
        ----------
        portfolio : Portfolio
            Current weights
        snapshot : MarketSnapshot
            Recent return window covering the portfolio assets
        previous : RiskSnapshot | None, optional
            Prior snapshot; alerts already raised there are marked ``is_new=False``

        Returns
        -------
        RiskSnapshot
        """
        cfg = self.config
        window = qs.as_return_matrix(snapshot.returns, name="market_snapshot")
        assets = [a for a in portfolio.weights]
        if not assets:
            raise DataError("portfolio has no weights", field="portfolio")
        missing = [a for a in assets if a not in window.columns]
        if missing:
            msg = f"no market data for {missing}"
            raise DataError(msg, field="market_snapshot")

        window = window[assets]
        w = portfolio.weight_vector(assets)
        cov = window.cov().to_numpy()
        port = window.to_numpy() @ w
        ppy = cfg.periods_per_year

        logger.info(
            f"Evaluating risk for {portfolio.portfolio_id} over {len(window)} observations"
        )

        volatility = float(port.std(ddof=1) * np.sqrt(ppy))
        equity = np.concatenate([[1.0], np.cumprod(1.0 + port)])
        drawdowns = qs.drawdown_series(equity)
        corr = qs.correlation_matrix(window)
        avg_corr = qs.average_correlation(corr)

        metrics: dict[str, float] = {
            "volatility": volatility,
            "expected_return": float(port.mean() * ppy),
            "sharpe_ratio": qs.sharpe_ratio(port, periods_per_year=ppy),
            "max_drawdown": float(drawdowns.max()),
            "current_drawdown": float(drawdowns[-1]),
            "average_correlation": avg_corr,
            "max_weight": float(np.abs(w).max()),
            "gross_exposure": float(np.abs(w).sum()),
        }
        for level in sorted(set(cfg.confidence_levels) | {cfg.var_confidence}):
            tag = int(round(level * 100))
            metrics[f"var_{tag}"] = qs.value_at_risk(port, level, "historical")
            metrics[f"cvar_{tag}"] = qs.conditional_value_at_risk(port, level, "historical")
            metrics[f"parametric_var_{tag}"] = qs.value_at_risk(port, level, "parametric")
            metrics[f"parametric_cvar_{tag}"] = qs.conditional_value_at_risk(port, level, "parametric")

        asset_attribution = {
            a: float(x) for a, x in zip(assets, qs.risk_contributions(w, cov))
        }
        factor_attribution = None
        if snapshot.factor_loadings is not None:
            factor_attribution = self._factor_attribution(window, w, snapshot.factor_loadings)

        alerts = self._alerts(portfolio, metrics, corr)
        if previous is not None:
            seen = {(a.rule, a.subject) for a in previous.alerts}
            alerts = [
                replace(a, is_new=(a.rule, a.subject) not in seen)
                for a in alerts
            ]

        for alert in alerts:
            if alert.is_new:
                logger.warning(f"[{alert.severity.upper()}] {alert.message}")

        timestamp = snapshot.timestamp
        if timestamp is None and isinstance(window.index, pd.DatetimeIndex):
            timestamp = window.index[-1]

        return RiskSnapshot(
            portfolio_id=portfolio.portfolio_id,
            timestamp=timestamp,
            metrics=metrics,
            asset_attribution=asset_attribution,
            factor_attribution=factor_attribution,
            alerts=tuple(alerts),
            volatility_regime=self._regime(
                volatility, cfg.high_volatility_regime, cfg.low_volatility_regime
            ),
            correlation_regime=self._regime(
                avg_corr, cfg.high_correlation_regime, cfg.low_correlation_regime
            ),
            correlation=corr,
        )

    @staticmethod
    def _regime(value: float, high: float, low: float) -> str:
        if value > high:
            return "high"
        if value < low:
            return "low"
        return "normal"

    def _factor_attribution(
        self, window: pd.DataFrame, w: np.ndarray, loadings: pd.DataFrame
    ) -> dict[str, float]:
        """Variance shares per factor plus the specific remainder.

        Factor returns are estimated each period by a cross-sectional least
        squares fit of asset returns on the loadings.
        """
        loadings = loadings.copy()
        loadings.index = [str(i) for i in loadings.index]
        missing = [a for a in window.columns if a not in loadings.index]
        if missing:
            msg = f"no factor loadings for {missing}"
            raise DataError(msg, field="factor_loadings")
        B = loadings.loc[list(window.columns)].to_numpy(dtype=float)

        factor_returns, *_ = np.linalg.lstsq(B, window.to_numpy().T, rcond=None)
        F = np.atleast_2d(np.cov(factor_returns))
        exposure = B.T @ w
        total_var = float(w @ window.cov().to_numpy() @ w)
        if total_var <= 0:
            return {str(f): 0.0 for f in loadings.columns} | {"specific": 0.0}

        contributions = exposure * (F @ exposure) / total_var
        attribution = {str(f): float(c) for f, c in zip(loadings.columns, contributions)}
        attribution["specific"] = float(1.0 - contributions.sum())
        return attribution

    def _alerts(
        self, portfolio: Portfolio, metrics: dict[str, float], corr: pd.DataFrame
    ) -> list[RiskAlert]:
        cfg = self.config
        alerts: list[RiskAlert] = []

        vol = metrics["volatility"]
        if vol > cfg.volatility_threshold:
            alerts.append(
                RiskAlert(
                    rule="volatility",
                    severity=_severity(vol, cfg.volatility_threshold, "high"),
                    subject="portfolio",
                    message=f"Volatility {vol:.2%} exceeds threshold {cfg.volatility_threshold:.2%}",
                    value=vol,
                    threshold=cfg.volatility_threshold,
                )
            )

        var = metrics[f"var_{int(round(cfg.var_confidence * 100))}"]
        if var > cfg.var_threshold:
            alerts.append(
                RiskAlert(
                    rule="var",
                    severity=_severity(var, cfg.var_threshold),
                    subject="portfolio",
                    message=(
                        f"VaR at {cfg.var_confidence:.0%} of {var:.2%} exceeds "
                        f"threshold {cfg.var_threshold:.2%}"
                    ),
                    value=var,
                    threshold=cfg.var_threshold,
                )
            )

        for asset, weight in portfolio.weights.items():
            if abs(weight) > cfg.concentration_threshold:
                alerts.append(
                    RiskAlert(
                        rule="concentration",
                        severity=_severity(abs(weight), cfg.concentration_threshold),
                        subject=asset,
                        message=(
                            f"Weight of {asset} {weight:.2%} exceeds concentration limit "
                            f"{cfg.concentration_threshold:.2%}"
                        ),
                        value=abs(weight),
                        threshold=cfg.concentration_threshold,
                    )
                )

        alerts.extend(self._correlation_alerts(portfolio, corr))

        drawdown = metrics["max_drawdown"]
        if drawdown > cfg.drawdown_threshold:
            alerts.append(
                RiskAlert(
                    rule="drawdown",
                    severity=_severity(drawdown, cfg.drawdown_threshold, "high"),
                    subject="portfolio",
                    message=f"Drawdown {drawdown:.2%} exceeds threshold {cfg.drawdown_threshold:.2%}",
                    value=drawdown,
                    threshold=cfg.drawdown_threshold,
                )
            )

        return alerts

    def _correlation_alerts(self, portfolio: Portfolio, corr: pd.DataFrame) -> list[RiskAlert]:
        baseline = portfolio.baseline_correlation
        if baseline is None:
            return []

        limit = self.config.correlation_shift_threshold
        common = [a for a in corr.columns if a in baseline.columns and a in baseline.index]
        alerts = []
        for i, a in enumerate(common):
            for b in common[i + 1 :]:
                before = float(baseline.loc[a, b])
                now = float(corr.loc[a, b])
                shift = abs(now - before)
                if shift > limit:
                    alerts.append(
                        RiskAlert(
                            rule="correlation_shift",
                            severity=_severity(shift, limit),
                            subject=f"{a}/{b}",
                            message=(
                                f"Correlation {a}/{b} moved from {before:.2f} to {now:.2f} "
                                f"(shift {shift:.2f} > {limit:.2f})"
                            ),
                            value=shift,
                            threshold=limit,
                        )
                    )
        return alerts
