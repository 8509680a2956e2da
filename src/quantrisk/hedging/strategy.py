"""Dynamic hedging strategy construction.

Hedge ratios come from an OLS regression of portfolio returns on the
hedging-asset returns: holding ``-beta`` of each hedge minimizes residual
variance. Ratios are scaled down when their gross size exceeds the
configured leverage cap. Strategies are immutable; re-hedging returns a
new version.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace

import numpy as np
import pandas as pd
import statsmodels.api as sm

from quantrisk import statistics as qs
from quantrisk.config import REBALANCE_PERIODS, HedgingConfig
from quantrisk.exceptions import DataError
from quantrisk.simulation.monte_carlo import sample_scenario_returns
from quantrisk.simulation.scenarios import MarketScenario
from quantrisk.types import HedgeRule, HedgeTrigger, HedgingStrategy, Portfolio, SimulationResult

logger = logging.getLogger(__name__)


class DynamicHedgingEngine:
    """Builds minimum-variance hedge overlays with rebalancing rules.

    Parameters
    ----------
    config : HedgingConfig
        Hedging assets, risk target, cadence, costs and trigger thresholds

    Examples
    --------
    >>> engine = DynamicHedgingEngine(HedgingConfig(hedging_assets=["SPY"]))
    >>> strategy = engine.create(portfolio, returns=history)
    >>> strategy.hedge_ratios["SPY"]
    -0.85
    """

    def __init__(self, config: HedgingConfig) -> None:
        """Initialize hedging engine."""
        self.config = config
        logger.info(
            f"Initialized DynamicHedgingEngine with hedging_assets={config.hedging_assets}, "
            f"risk_target={config.risk_target}"
        )

    def create(
        self,
        portfolio: Portfolio,
        returns: pd.DataFrame | None = None,
        scenario: MarketScenario | None = None,
        simulation: SimulationResult | None = None,
        version: int = 1,
    ) -> HedgingStrategy:
        """Derive hedge ratios, rules and triggers for a portfolio.

        Parameters
        ----------
        portfolio : Portfolio
            Portfolio to hedge
        returns : pd.DataFrame | None, optional
            Joint historical returns covering portfolio and hedging assets
        scenario : MarketScenario | None, optional
            Scenario sampled for joint returns when ``returns`` is not given
        simulation : SimulationResult | None, optional
            Simulated risk used for the VaR trigger
        version : int, default 1
            Strategy version number

        Returns
        -------
        HedgingStrategy
        """
        cfg = self.config
        if not cfg.hedging_assets:
            raise DataError("at least one hedging asset is required", field="hedging_assets")

        joint = self._joint_returns(portfolio, returns, scenario)
        hedges = list(cfg.hedging_assets)
        assets = [a for a in portfolio.weights if a not in hedges]
        if not assets:
            raise DataError("portfolio holds only hedging assets", field="portfolio")

        weights = np.array([portfolio.weights[a] for a in assets], dtype=float)
        port = joint[assets].to_numpy() @ weights
        hedge_returns = joint[hedges].to_numpy()

        logger.info(
            f"Estimating hedge ratios for {portfolio.portfolio_id} against {hedges} "
            f"from {len(joint)} observations"
        )

        design = sm.add_constant(hedge_returns, has_constant="add")
        fit = sm.OLS(port, design).fit()
        betas = np.asarray(fit.params[1:], dtype=float)
        ratios = -betas

        gross = float(np.abs(ratios).sum())
        leverage_capped = gross > cfg.max_hedge_leverage
        if leverage_capped:
            ratios = ratios * cfg.max_hedge_leverage / gross
            logger.warning(
                f"Hedge gross {gross:.3f} exceeds cap {cfg.max_hedge_leverage}; ratios scaled down"
            )

        ppy = cfg.periods_per_year
        hedged = port + hedge_returns @ ratios
        unhedged_vol = float(port.std(ddof=1) * np.sqrt(ppy))
        hedged_vol = float(hedged.std(ddof=1) * np.sqrt(ppy))
        effectiveness = 1.0 - (hedged_vol**2 / unhedged_vol**2) if unhedged_vol > 0 else 0.0
        tracking_error = float(np.std(fit.resid, ddof=1) * np.sqrt(ppy))

        rebalances = math.ceil(cfg.horizon_periods / REBALANCE_PERIODS[cfg.rebalance_frequency])
        years = cfg.horizon_periods / ppy
        expected_benefit = 0.5 * cfg.risk_aversion * (unhedged_vol**2 - hedged_vol**2) * years
        expected_cost = cfg.hedging_cost * float(np.abs(ratios).sum()) * rebalances
        cost_efficient = expected_benefit >= expected_cost
        if not cost_efficient:
            logger.warning(
                f"Hedge for {portfolio.portfolio_id} is cost-inefficient: "
                f"benefit={expected_benefit:.5f} < cost={expected_cost:.5f}"
            )

        corr = qs.correlation_matrix(joint[assets + hedges])
        triggers = self._triggers(hedged_vol, tracking_error, corr, simulation)

        strategy = HedgingStrategy(
            strategy_id=f"{portfolio.portfolio_id}-hedge",
            version=version,
            portfolio_id=portfolio.portfolio_id,
            hedging_assets=tuple(hedges),
            risk_target=cfg.risk_target,
            rebalance_frequency=cfg.rebalance_frequency,
            hedging_cost=cfg.hedging_cost,
            hedge_ratios={h: float(r) for h, r in zip(hedges, ratios)},
            rules=self._rules(),
            triggers=triggers,
            unhedged_volatility=unhedged_vol,
            hedged_volatility=hedged_vol,
            effectiveness=float(effectiveness),
            tracking_error=tracking_error,
            expected_benefit=float(expected_benefit),
            expected_cost=float(expected_cost),
            cost_efficient=bool(cost_efficient),
            leverage_capped=bool(leverage_capped),
            target_met=hedged_vol <= cfg.risk_target,
        )

        logger.info(
            f"Hedge v{version} for {portfolio.portfolio_id}: volatility {unhedged_vol:.4f} -> "
            f"{hedged_vol:.4f}, effectiveness={effectiveness:.2%}"
        )
        return strategy

    def rehedge(
        self,
        strategy: HedgingStrategy,
        portfolio: Portfolio,
        returns: pd.DataFrame | None = None,
        scenario: MarketScenario | None = None,
        simulation: SimulationResult | None = None,
    ) -> HedgingStrategy:
        """Recompute a strategy on fresh data as the next version."""
        if strategy.portfolio_id != portfolio.portfolio_id:
            msg = f"strategy belongs to {strategy.portfolio_id}, not {portfolio.portfolio_id}"
            raise DataError(msg, field="portfolio")
        new = self.create(portfolio, returns, scenario, simulation, version=strategy.version + 1)
        return replace(new, strategy_id=strategy.strategy_id)

    def _joint_returns(
        self,
        portfolio: Portfolio,
        returns: pd.DataFrame | None,
        scenario: MarketScenario | None,
    ) -> pd.DataFrame:
        if returns is not None:
            joint = qs.as_return_matrix(returns)
        elif scenario is not None:
            joint = sample_scenario_returns(scenario, self.config.num_samples, self.config.seed)
        else:
            raise DataError("either returns or a market scenario is required", field="returns")

        needed = set(portfolio.weights) | set(self.config.hedging_assets)
        missing = sorted(needed - set(joint.columns))
        if missing:
            msg = f"no return data for {missing}"
            raise DataError(msg, field="returns")
        if len(joint) <= len(self.config.hedging_assets) + 1:
            msg = (
                f"need more than {len(self.config.hedging_assets) + 1} observations "
                f"to regress on {len(self.config.hedging_assets)} hedging assets"
            )
            raise DataError(msg, field="returns")
        return joint

    def _rules(self) -> tuple[HedgeRule, ...]:
        cfg = self.config
        return (
            HedgeRule(
                name="calendar_rebalance",
                kind="calendar",
                condition=f"every {REBALANCE_PERIODS[cfg.rebalance_frequency]} periods ({cfg.rebalance_frequency})",
                action="reset hedge ratios to target",
            ),
            HedgeRule(
                name="delta_hedging",
                kind="delta",
                condition="absolute drift of any hedge ratio from target exceeds threshold",
                action="trade hedge back to target ratio",
                threshold=cfg.delta_threshold,
            ),
            HedgeRule(
                name="volatility_hedging",
                kind="volatility",
                condition="realized volatility exceeds risk target x multiplier",
                action="increase hedge toward full minimum-variance ratio",
                threshold=cfg.risk_target * cfg.volatility_trigger_multiplier,
            ),
            HedgeRule(
                name="correlation_hedging",
                kind="correlation",
                condition="average pairwise correlation exceeds threshold",
                action="re-estimate hedge ratios",
                threshold=cfg.correlation_threshold,
            ),
        )

    def _triggers(
        self,
        hedged_vol: float,
        tracking_error: float,
        corr: pd.DataFrame,
        simulation: SimulationResult | None,
    ) -> tuple[HedgeTrigger, ...]:
        cfg = self.config
        triggers = [
            HedgeTrigger(
                name="risk_budget_breach",
                metric="hedged_volatility",
                threshold=cfg.risk_target * cfg.volatility_trigger_multiplier,
                current_value=hedged_vol,
                action="rehedge",
                priority="high",
            ),
            HedgeTrigger(
                name="tracking_error_breach",
                metric="tracking_error",
                threshold=cfg.tracking_error_threshold,
                current_value=tracking_error,
                action="rehedge",
                priority="medium",
            ),
            HedgeTrigger(
                name="correlation_spike",
                metric="average_correlation",
                threshold=cfg.correlation_threshold,
                current_value=qs.average_correlation(corr),
                action="re-estimate hedge ratios",
                priority="medium",
            ),
        ]
        if simulation is not None:
            level = max(simulation.confidence_levels)
            triggers.append(
                HedgeTrigger(
                    name="var_breach",
                    metric=f"var_{int(round(level * 100))}",
                    threshold=cfg.var_limit,
                    current_value=simulation.var(level),
                    action="rehedge",
                    priority="high",
                )
            )
        return tuple(triggers)
