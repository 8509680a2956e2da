"""Tests for the event-driven backtesting engine.

Price paths are hand-built so that fills, stops and limit breaches land
on known periods. ``make_bars`` sets each open to the previous close.
"""

from __future__ import annotations

import math

import numpy as np
import pandas as pd
import pytest

from quantrisk import run_comprehensive_backtest
from quantrisk.backtest.engine import EventDrivenBacktester, run_backtests
from quantrisk.backtest.signals import ConstantSignalModel, MovingAverageCrossModel
from quantrisk.config import BacktestConfig
from quantrisk.exceptions import DataError, OperationCancelled
from quantrisk.protocols import Signal
from quantrisk.utils.cancellation import CancellationToken

SLIP = 0.0005


def make_config(**overrides) -> BacktestConfig:
    settings = {
        "name": "test",
        "symbols": ["AAA"],
        "benchmark_symbol": None,
        "monte_carlo_simulations": 0,
    }
    settings.update(overrides)
    return BacktestConfig(**settings)


class RecordingModel:
    """Records the latest bar date visible at each call and never trades."""

    def __init__(self) -> None:
        self.seen: list[tuple[pd.Timestamp, pd.Timestamp]] = []

    def generate_signals(self, history, date):
        self.seen.append((date, history.index.get_level_values("date").max()))
        return {}


class SwitchModel:
    """Long before ``switch``, short from ``switch`` on."""

    def __init__(self, switch: pd.Timestamp) -> None:
        self.switch = switch

    def generate_signals(self, history, date):
        direction = 1 if date < self.switch else -1
        return {"AAA": Signal(direction=direction, confidence=1.0)}


class FittingModel(ConstantSignalModel):
    def __init__(self) -> None:
        super().__init__(direction=1, confidence=1.0)
        self.fits: list[pd.DatetimeIndex] = []

    def fit(self, history):
        self.fits.append(pd.DatetimeIndex(history.index.get_level_values("date").unique()))


class FitTrackingModel:
    """Long-only model that logs, per call, the last date it was fitted through.

    The log lives on the class so copies made by the engine report into it.
    """

    calls: list[tuple[pd.Timestamp, pd.Timestamp | None]] = []

    def __init__(self) -> None:
        self.fitted_through: pd.Timestamp | None = None

    def fit(self, history):
        self.fitted_through = history.index.get_level_values("date").max()

    def generate_signals(self, history, date):
        type(self).calls.append((date, self.fitted_through))
        return {"AAA": Signal(direction=1, confidence=0.8)}


# ============================================================================
# Accounting and timing
# ============================================================================


def test_flat_model_leaves_capital_untouched(random_walk_bars):
    result = run_comprehensive_backtest(
        make_config(symbols=["AAA", "BBB"]), random_walk_bars, {"flat": ConstantSignalModel()}
    )

    assert result.trades == ()
    assert result.metrics["total_return"] == 0.0
    assert result.final_capital == 100_000.0
    assert (result.equity_curve == 100_000.0).all()
    assert result.bootstrap is None


def test_signal_at_close_fills_next_open(make_bars):
    bars = make_bars({"AAA": [100, 101, 102, 103, 104]})
    dates = bars.index.get_level_values("date").unique()
    cfg = make_config(stop_loss=None, take_profit=None)

    result = run_comprehensive_backtest(cfg, bars, {"long": ConstantSignalModel(1)})

    assert len(result.trades) == 1
    trade = result.trades[0]
    assert trade.entry_date == dates[1]
    assert trade.entry_price == pytest.approx(100 * (1 + SLIP))
    assert trade.quantity == math.floor(10_000 / (100 * (1 + SLIP)))
    assert trade.exit_date == dates[-1]
    assert trade.exit_reason == "end_of_data"
    assert trade.exit_price == pytest.approx(104 * (1 - SLIP))
    assert trade.prediction_correct
    assert trade.trade_id == "test-00001"
    assert trade.pnl == pytest.approx(
        trade.quantity * (trade.exit_price - trade.entry_price) - trade.commission
    )
    assert result.equity_curve.iloc[0] == 100_000.0
    assert len(result.equity_curve) == 5


def test_minimum_commission_applies_per_fill(make_bars):
    bars = make_bars({"AAA": [100, 101, 102, 103, 104]})
    cfg = make_config(stop_loss=None, take_profit=None, min_commission=25.0)

    result = run_comprehensive_backtest(cfg, bars, {"long": ConstantSignalModel(1)})

    trade = result.trades[0]
    assert trade.commission == pytest.approx(50.0)
    assert result.final_capital == pytest.approx(100_000.0 + trade.pnl)


def test_final_capital_equals_capital_plus_trade_pnl(random_walk_bars):
    cfg = make_config(symbols=["AAA", "BBB"])
    result = run_comprehensive_backtest(
        cfg, random_walk_bars, {"trend": MovingAverageCrossModel(fast=5, slow=20)}
    )

    assert result.trades
    assert result.final_capital == pytest.approx(
        cfg.initial_capital + sum(t.pnl for t in result.trades), rel=1e-9
    )
    assert result.equity_curve.iloc[-1] == pytest.approx(result.final_capital)


def test_models_only_see_past_bars(random_walk_bars):
    model = RecordingModel()
    run_comprehensive_backtest(make_config(symbols=["AAA", "BBB"]), random_walk_bars, {"rec": model})

    n_dates = random_walk_bars.index.get_level_values("date").nunique()
    assert len(model.seen) == n_dates - 1
    assert all(date == latest for date, latest in model.seen)


def test_replay_is_deterministic(random_walk_bars):
    cfg = make_config(symbols=["AAA", "BBB"], monte_carlo_simulations=100)
    first = run_comprehensive_backtest(cfg, random_walk_bars, {"t": MovingAverageCrossModel(5, 20)})
    second = run_comprehensive_backtest(cfg, random_walk_bars, {"t": MovingAverageCrossModel(5, 20)})

    assert first.trades == second.trades
    assert first.metrics == second.metrics
    assert first.bootstrap == second.bootstrap


# ============================================================================
# Exits
# ============================================================================


class TestExits:
    def test_stop_loss(self, make_bars):
        bars = make_bars({"AAA": [100, 100, 100, 90, 90, 90]})
        dates = bars.index.get_level_values("date").unique()
        result = run_comprehensive_backtest(make_config(), bars, {"long": ConstantSignalModel(1)})

        trade = result.trades[0]
        entry = 100 * (1 + SLIP)
        assert trade.exit_reason == "stop_loss"
        assert trade.exit_date == dates[3]
        assert trade.exit_price == pytest.approx(entry * 0.95 * (1 - SLIP))
        assert trade.pnl < 0

    def test_gap_through_stop_fills_at_open(self, make_bars):
        bars = make_bars({"AAA": [100, 100, 100, 90, 90, 90]})
        dates = bars.index.get_level_values("date").unique()
        bars.loc[(dates[3], "AAA"), ["open", "low"]] = [85.0, 84.0]

        result = run_comprehensive_backtest(make_config(), bars, {"long": ConstantSignalModel(1)})

        trade = result.trades[0]
        assert trade.exit_reason == "stop_loss"
        assert trade.exit_price == pytest.approx(85.0 * (1 - SLIP))

    def test_take_profit(self, make_bars):
        bars = make_bars({"AAA": [100, 100, 100, 115, 115]})
        result = run_comprehensive_backtest(make_config(), bars, {"long": ConstantSignalModel(1)})

        trade = result.trades[0]
        assert trade.exit_reason == "take_profit"
        assert trade.exit_price == pytest.approx(100 * (1 + SLIP) * 1.10 * (1 - SLIP))
        assert trade.pnl > 0

    def test_short_take_profit(self, make_bars):
        bars = make_bars({"AAA": [100, 100, 100, 85, 85]})
        result = run_comprehensive_backtest(make_config(), bars, {"short": ConstantSignalModel(-1)})

        trade = result.trades[0]
        assert trade.side == "short"
        assert trade.exit_reason == "take_profit"
        assert trade.exit_price == pytest.approx(100 * (1 - SLIP) * 0.90 * (1 + SLIP))
        assert trade.pnl > 0

    def test_opposite_signal_exits_at_close_and_reverses(self, make_bars):
        bars = make_bars({"AAA": [100.0] * 10})
        dates = bars.index.get_level_values("date").unique()
        result = run_comprehensive_backtest(
            make_config(), bars, {"switch": SwitchModel(dates[5])}
        )

        first, second = result.trades[:2]
        assert first.side == "long"
        assert first.exit_reason == "signal"
        assert first.exit_date == dates[5]
        assert second.side == "short"
        assert second.entry_date == dates[6]


# ============================================================================
# Risk limits
# ============================================================================


class TestRiskLimits:
    @pytest.fixture
    def crash_bars(self, make_bars):
        return make_bars({"AAA": [100, 100, 100, 85, 85, 85, 85, 85]})

    @pytest.fixture
    def all_in(self):
        return {
            "position_fraction": 1.0,
            "position_concentration": 1.0,
            "stop_loss": None,
            "take_profit": None,
        }

    def test_drawdown_breach_flattens_and_skips_next_entry(self, crash_bars, all_in):
        dates = crash_bars.index.get_level_values("date").unique()
        cfg = make_config(max_daily_loss=None, max_drawdown=0.10, **all_in)
        result = run_comprehensive_backtest(cfg, crash_bars, {"long": ConstantSignalModel(1)})

        assert len(result.risk_events) == 1
        event = result.risk_events[0]
        assert event.limit == "max_drawdown"
        assert event.date == dates[3]
        assert event.positions_closed == 1
        assert event.value >= 0.10

        assert result.trades[0].exit_reason == "risk_limit"
        assert all(t.entry_date != dates[4] for t in result.trades)
        assert result.trades[1].entry_date == dates[5]
        assert result.equity_curve.iloc[3] == pytest.approx(
            100_000.0 + result.trades[0].pnl
        )

    def test_daily_loss_breach(self, crash_bars, all_in):
        cfg = make_config(max_daily_loss=0.05, max_drawdown=None, **all_in)
        result = run_comprehensive_backtest(cfg, crash_bars, {"long": ConstantSignalModel(1)})

        assert [e.limit for e in result.risk_events] == ["max_daily_loss"]

    def test_no_limits_no_events(self, crash_bars, all_in):
        cfg = make_config(max_daily_loss=None, max_drawdown=None, **all_in)
        result = run_comprehensive_backtest(cfg, crash_bars, {"long": ConstantSignalModel(1)})

        assert result.risk_events == ()
        assert [t.exit_reason for t in result.trades] == ["end_of_data"]


# ============================================================================
# Sizing and filters
# ============================================================================


@pytest.mark.parametrize(
    "sizing, confidence, overrides, expected",
    [
        ("fixed", 1.0, {}, 99),
        ("percentage", 0.8, {}, 79),
        ("risk_per_trade", 1.0, {"position_concentration": 0.5}, 399),
        ("risk_per_trade", 1.0, {}, 99),
    ],
)
def test_position_sizing(make_bars, sizing, confidence, overrides, expected):
    bars = make_bars({"AAA": [100.0] * 5})
    cfg = make_config(position_sizing=sizing, **overrides)
    result = run_comprehensive_backtest(cfg, bars, {"m": ConstantSignalModel(1, confidence)})
    assert result.trades[0].quantity == expected


def test_low_confidence_is_ignored(make_bars):
    bars = make_bars({"AAA": [100.0] * 5})
    result = run_comprehensive_backtest(make_config(), bars, {"m": ConstantSignalModel(1, 0.5)})
    assert result.trades == ()


def test_shorts_disabled(make_bars):
    bars = make_bars({"AAA": [100.0] * 5})
    cfg = make_config(allow_short=False)
    result = run_comprehensive_backtest(cfg, bars, {"m": ConstantSignalModel(-1)})
    assert result.trades == ()


def test_max_positions_prefers_confidence_then_symbol(make_bars):
    bars = make_bars({"AAA": [100.0] * 5, "BBB": [100.0] * 5, "CCC": [100.0] * 5})
    cfg = make_config(symbols=["AAA", "BBB", "CCC"], max_positions=2)
    result = run_comprehensive_backtest(cfg, bars, {"m": ConstantSignalModel(1)})
    assert {t.symbol for t in result.trades} == {"AAA", "BBB"}


# ============================================================================
# Walk-forward
# ============================================================================


class TestWalkForward:
    def test_steps_refit_on_trailing_window(self, random_walk_bars):
        dates = random_walk_bars.index.get_level_values("date").unique()
        model = FittingModel()
        cfg = make_config(
            symbols=["AAA", "BBB"], walk_forward=True, walk_forward_periods=50, training_window=100
        )
        result = run_comprehensive_backtest(cfg, random_walk_bars, {"fit": model})

        assert [s.period_index for s in result.walk_forward] == [50, 100, 150, 200, 250]
        assert len(model.fits) == 5
        for step, fitted in zip(result.walk_forward, model.fits):
            i = step.period_index
            assert fitted.max() == dates[i] == step.train_end
            assert len(fitted) == min(100, i + 1)
            assert step.train_start == dates[max(0, i + 1 - 100)]

    def test_fittable_model_waits_for_first_fit(self, random_walk_bars):
        dates = random_walk_bars.index.get_level_values("date").unique()
        cfg = make_config(symbols=["AAA", "BBB"], walk_forward=True, walk_forward_periods=50)
        result = run_comprehensive_backtest(cfg, random_walk_bars, {"fit": FittingModel()})

        assert result.trades
        assert min(t.entry_date for t in result.trades) == dates[51]

    def test_model_breakdown_never_sees_later_fits(self, random_walk_bars, monkeypatch):
        monkeypatch.setattr(FitTrackingModel, "calls", [])
        model = FitTrackingModel()
        cfg = make_config(
            symbols=["AAA", "BBB"],
            walk_forward=True,
            walk_forward_periods=21,
            run_model_breakdown=True,
        )
        result = run_comprehensive_backtest(
            cfg, random_walk_bars, {"tracked": model, "long": ConstantSignalModel(1, 0.6)}
        )

        assert set(result.model_results) == {"tracked", "long"}
        assert model.fitted_through is not None
        calls = FitTrackingModel.calls
        # a single replay asks for signals at most 278 times after the first fit at period 21
        assert len(calls) > 278
        assert all(fitted is not None and fitted <= date for date, fitted in calls)

    def test_model_weights_follow_hit_rates(self, random_walk_bars):
        cfg = make_config(symbols=["AAA", "BBB"], walk_forward=True, walk_forward_periods=50)
        models = {"long": ConstantSignalModel(1), "short": ConstantSignalModel(-1)}
        result = run_comprehensive_backtest(cfg, random_walk_bars, models)

        for step in result.walk_forward:
            assert set(step.model_weights) == {"long", "short"}
            assert all(0.05 <= w <= 1.0 for w in step.model_weights.values())
            assert step.symbol_budgets is None

    def test_risk_parity_budgets(self, random_walk_bars):
        cfg = make_config(
            symbols=["AAA", "BBB"],
            walk_forward=True,
            walk_forward_periods=50,
            risk_parity_budgeting=True,
        )
        result = run_comprehensive_backtest(cfg, random_walk_bars, {"m": ConstantSignalModel(1)})

        budgets = result.walk_forward[0].symbol_budgets
        assert set(budgets) == {"AAA", "BBB"}
        assert sum(budgets.values()) == pytest.approx(2.0)


# ============================================================================
# Post-processing
# ============================================================================


def test_bootstrap_percentiles_are_ordered(random_walk_bars):
    cfg = make_config(symbols=["AAA", "BBB"], monte_carlo_simulations=200)
    result = run_comprehensive_backtest(cfg, random_walk_bars, {"m": ConstantSignalModel(1)})

    boot = result.bootstrap
    assert boot.n_simulations == 200
    assert boot.total_return[5] <= boot.total_return[50] <= boot.total_return[95]
    assert 0.0 <= boot.probability_of_loss <= 1.0


def test_benchmark_comparison(random_walk_bars):
    cfg = make_config(symbols=["AAA", "BBB"], benchmark_symbol="SPY")
    result = run_comprehensive_backtest(cfg, random_walk_bars, {"m": MovingAverageCrossModel(5, 20)})

    assert result.benchmark is not None
    assert result.benchmark.symbol == "SPY"
    assert np.isfinite(result.benchmark.beta)


def test_missing_benchmark_is_skipped(random_walk_bars):
    cfg = make_config(symbols=["AAA"], benchmark_symbol="QQQ")
    result = run_comprehensive_backtest(cfg, random_walk_bars, {"m": ConstantSignalModel(1)})
    assert result.benchmark is None


def test_model_breakdown(random_walk_bars):
    models = {"trend": MovingAverageCrossModel(5, 20), "long": ConstantSignalModel(1, 0.9)}
    cfg = make_config(symbols=["AAA", "BBB"])

    result = run_comprehensive_backtest(cfg, random_walk_bars, models)
    assert set(result.model_results) == {"trend", "long"}
    assert "total_return" in result.model_results["trend"]

    quiet = run_comprehensive_backtest(
        cfg.model_copy(update={"run_model_breakdown": False}), random_walk_bars, models
    )
    assert quiet.model_results == {}


def test_run_backtests_keeps_job_order(random_walk_bars):
    jobs = [
        (make_config(name=name, symbols=["AAA", "BBB"]), random_walk_bars, {"m": MovingAverageCrossModel(fast, 30)})
        for name, fast in (("fast", 5), ("slow", 15))
    ]
    results = run_backtests(jobs, max_workers=2)
    assert [r.backtest_id for r in results] == ["fast", "slow"]


# ============================================================================
# Validation
# ============================================================================


class TestValidation:
    def test_no_models(self, random_walk_bars):
        with pytest.raises(DataError, match="signal model"):
            run_comprehensive_backtest(make_config(), random_walk_bars, {})

    def test_unknown_symbol(self, random_walk_bars):
        with pytest.raises(DataError, match="no bars for symbols"):
            run_comprehensive_backtest(
                make_config(symbols=["ZZZ"]), random_walk_bars, {"m": ConstantSignalModel()}
            )

    def test_duplicate_bars(self, random_walk_bars):
        bars = pd.concat([random_walk_bars, random_walk_bars.iloc[:1]])
        with pytest.raises(DataError, match="duplicate"):
            run_comprehensive_backtest(make_config(), bars, {"m": ConstantSignalModel()})

    def test_gap_in_bars(self, random_walk_bars):
        dates = random_walk_bars.index.get_level_values("date").unique()
        bars = random_walk_bars.drop(index=(dates[2], "BBB"))
        with pytest.raises(DataError, match="gaps"):
            run_comprehensive_backtest(
                make_config(symbols=["AAA", "BBB"]), bars, {"m": ConstantSignalModel()}
            )

    def test_non_positive_price(self, random_walk_bars):
        dates = random_walk_bars.index.get_level_values("date").unique()
        bars = random_walk_bars.copy()
        bars.loc[(dates[4], "AAA"), "close"] = 0.0
        with pytest.raises(DataError, match="non-positive"):
            run_comprehensive_backtest(make_config(), bars, {"m": ConstantSignalModel()})

    def test_single_period_range(self, random_walk_bars):
        day = str(random_walk_bars.index.get_level_values("date")[10].date())
        cfg = make_config(start_date=day, end_date=day)
        with pytest.raises(DataError, match="at least 2 periods"):
            run_comprehensive_backtest(cfg, random_walk_bars, {"m": ConstantSignalModel()})

    def test_flat_index_rejected(self, random_walk_bars):
        with pytest.raises(DataError, match="MultiIndex"):
            run_comprehensive_backtest(
                make_config(), random_walk_bars.reset_index(), {"m": ConstantSignalModel()}
            )

    def test_model_returning_wrong_type(self, random_walk_bars):
        class BadModel:
            def generate_signals(self, history, date):
                return {"AAA": (1, 0.9)}

        with pytest.raises(DataError, match="returned tuple"):
            run_comprehensive_backtest(make_config(), random_walk_bars, {"bad": BadModel()})

    def test_invalid_config_mapping(self, random_walk_bars):
        with pytest.raises(DataError, match="At least one symbol"):
            run_comprehensive_backtest({"symbols": []}, random_walk_bars, {"m": ConstantSignalModel()})

    def test_cancelled(self, random_walk_bars):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            EventDrivenBacktester(make_config()).run(
                random_walk_bars, {"m": ConstantSignalModel()}, token
            )
