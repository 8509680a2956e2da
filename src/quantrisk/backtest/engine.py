"""Event-driven backtesting engine.

This module replays model signals period by period over OHLC bars. Signals
formed at the close of period ``t`` are executed at the open of ``t + 1``
with slippage and commission; stops and targets are checked against each
bar's range before signal-driven exits; daily-loss and drawdown limits
flatten the book at the close. Walk-forward re-fitting only ever sees bars
up to the current period.
"""

from __future__ import annotations

import copy
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as np
import pandas as pd

from quantrisk.backtest.metrics import (
    bootstrap_trades,
    calculate_backtest_metrics,
    compare_to_benchmark,
)
from quantrisk.backtest.signals import CombinedSignal, combine_signals
from quantrisk.config import BacktestConfig, RiskParityConfig
from quantrisk.exceptions import DataError
from quantrisk.execution.costs import ExecutionCostModel
from quantrisk.portfolio.optimizers import RiskParityOptimizer
from quantrisk.protocols import FittableModel, Signal, SignalModel
from quantrisk.types import BacktestResult, RiskLimitEvent, Trade, WalkForwardStep
from quantrisk.utils.cancellation import CancellationToken, check_cancelled
from quantrisk.validate.walkforward import WalkForwardSchedule

logger = logging.getLogger(__name__)

OHLC = ["open", "high", "low", "close"]
MIN_MODEL_WEIGHT = 0.05


@dataclass(frozen=True)
class _MarketData:
    dates: pd.DatetimeIndex
    symbols: list[str]
    panel: pd.DataFrame
    opens: np.ndarray
    highs: np.ndarray
    lows: np.ndarray
    closes: np.ndarray
    benchmark: pd.Series | None


@dataclass
class _Position:
    symbol: str
    direction: int
    quantity: int
    entry_date: pd.Timestamp
    entry_price: float
    entry_commission: float
    signal_close: float
    confidence: float
    model: str
    stop_price: float | None
    take_price: float | None


@dataclass(frozen=True)
class _Order:
    symbol: str
    direction: int
    notional: float
    confidence: float
    model: str
    signal_close: float


def _bound(value: str | None, tz) -> pd.Timestamp | None:
    if value is None:
        return None
    ts = pd.Timestamp(value)
    if tz is not None and ts.tz is None:
        ts = ts.tz_localize(tz)
    return ts


def prepare_market_data(market_data: pd.DataFrame, config: BacktestConfig) -> _MarketData:
    """Validate bars and pivot them into per-field (date x symbol) arrays.

    Raises
    ------
    DataError
        On a missing index level or column, unknown symbols, duplicate bars,
        gaps, non-positive prices or fewer than 2 periods in range
    """
    if not isinstance(market_data, pd.DataFrame) or market_data.index.nlevels != 2:
        raise DataError("expected a DataFrame with a (date, symbol) MultiIndex", field="market_data")
    frame = market_data.copy()
    if list(frame.index.names) != ["date", "symbol"]:
        frame.index = frame.index.set_names(["date", "symbol"])
    missing_cols = [c for c in OHLC if c not in frame.columns]
    if missing_cols:
        msg = f"missing columns {missing_cols}"
        raise DataError(msg, field="market_data")

    all_symbols = set(frame.index.get_level_values("symbol"))
    unknown = [s for s in config.symbols if s not in all_symbols]
    if unknown:
        msg = f"no bars for symbols {unknown}"
        raise DataError(msg, field="market_data")

    dates_level = pd.DatetimeIndex(frame.index.get_level_values("date"))
    mask = np.ones(len(frame), dtype=bool)
    start, end = _bound(config.start_date, dates_level.tz), _bound(config.end_date, dates_level.tz)
    if start is not None:
        mask &= dates_level >= start
    if end is not None:
        mask &= dates_level <= end
    frame = frame[mask]

    benchmark = None
    if config.benchmark_symbol and config.benchmark_symbol in all_symbols:
        bench = frame.xs(config.benchmark_symbol, level="symbol")["close"].sort_index()
        benchmark = bench[~bench.index.duplicated()]

    frame = frame[frame.index.get_level_values("symbol").isin(config.symbols)][OHLC].sort_index()
    if frame.index.duplicated().any():
        raise DataError("duplicate (date, symbol) bars", field="market_data")

    wide = {c: frame[c].unstack("symbol").reindex(columns=config.symbols) for c in OHLC}
    dates = pd.DatetimeIndex(wide["close"].index)
    if len(dates) < 2:
        msg = f"need at least 2 periods in range, got {len(dates)}"
        raise DataError(msg, field="market_data")
    for c in OHLC:
        values = wide[c].to_numpy(dtype=float)
        if not np.isfinite(values).all():
            gaps = wide[c].columns[~np.isfinite(values).all(axis=0)].tolist()
            msg = f"gaps in '{c}' for {gaps}"
            raise DataError(msg, field="market_data")
        if (values <= 0).any():
            msg = f"non-positive prices in '{c}'"
            raise DataError(msg, field="market_data")

    return _MarketData(
        dates=dates,
        symbols=list(config.symbols),
        panel=frame,
        opens=wide["open"].to_numpy(dtype=float),
        highs=wide["high"].to_numpy(dtype=float),
        lows=wide["low"].to_numpy(dtype=float),
        closes=wide["close"].to_numpy(dtype=float),
        benchmark=benchmark,
    )


class EventDrivenBacktester:
    """Period-by-period signal replay with frictions and risk limits.

    Parameters
    ----------
    config : BacktestConfig
        Symbols, capital, frictions, sizing, limits and walk-forward settings

    Examples
    --------
    >>> bt = EventDrivenBacktester(BacktestConfig(symbols=["AAPL"]))
    >>> result = bt.run(bars, {"trend": MovingAverageCrossModel()})
    >>> result.metrics["total_return"]
    0.042
    """

    def __init__(self, config: BacktestConfig) -> None:
        """Initialize backtester."""
        self.config = config
        self.costs = ExecutionCostModel(
            commission=config.commission,
            slippage=config.slippage,
            min_commission=config.min_commission,
        )
        logger.info(
            f"Initialized EventDrivenBacktester '{config.name}' with "
            f"capital=${config.initial_capital:,.0f}, symbols={config.symbols}"
        )

    def run(
        self,
        market_data: pd.DataFrame,
        models: Mapping[str, SignalModel],
        token: CancellationToken | None = None,
    ) -> BacktestResult:
        """Run the replay.

        Parameters
        ----------
        market_data : pd.DataFrame
            OHLC bars with a (date, symbol) MultiIndex
        models : Mapping[str, SignalModel]
            Named signal models
        token : CancellationToken | None, optional
            Checked once per period

        Returns
        -------
        BacktestResult
        """
        if not models:
            raise DataError("at least one signal model is required", field="models")

        cfg = self.config
        data = prepare_market_data(market_data, cfg)
        logger.info(
            f"Starting backtest '{cfg.name}': {len(data.dates)} periods, "
            f"{len(data.symbols)} symbols, models={list(models)}"
        )

        breakdown = cfg.run_model_breakdown and len(models) > 1
        # each breakdown replay starts from the models as they were passed in
        pristine = (
            {name: copy.deepcopy(model) for name, model in models.items()} if breakdown else {}
        )

        replay = _Replay(cfg, self.costs, data, dict(models), token)
        replay.execute()

        equity_curve = pd.Series(replay.equity_values, index=data.dates, name="equity")
        trades = tuple(replay.trades)
        metrics = calculate_backtest_metrics(equity_curve, trades, cfg.periods_per_year)

        bootstrap = bootstrap_trades(
            trades, cfg.initial_capital, cfg.monte_carlo_simulations, cfg.seed
        )

        benchmark = None
        if cfg.benchmark_symbol:
            if data.benchmark is None:
                logger.warning(
                    f"Benchmark {cfg.benchmark_symbol} not in market data; skipping comparison"
                )
            else:
                benchmark = compare_to_benchmark(
                    equity_curve, data.benchmark, cfg.benchmark_symbol, cfg.periods_per_year
                )

        model_results: dict[str, dict[str, float]] = {}
        if breakdown:
            for name, model in pristine.items():
                check_cancelled(token, "backtest")
                single = cfg.model_copy(
                    update={
                        "name": f"{cfg.name}-{name}",
                        "run_model_breakdown": False,
                        "monte_carlo_simulations": 0,
                        "benchmark_symbol": None,
                    }
                )
                model_results[name] = (
                    EventDrivenBacktester(single).run(market_data, {name: model}, token).metrics
                )

        logger.info(
            f"Backtest '{cfg.name}' complete: {len(trades)} trades, "
            f"total_return={metrics['total_return']:.2%}, sharpe={metrics['sharpe_ratio']:.2f}, "
            f"max_drawdown={metrics['max_drawdown']:.2%}"
        )

        return BacktestResult(
            backtest_id=cfg.name,
            initial_capital=cfg.initial_capital,
            final_capital=metrics["final_capital"],
            metrics=metrics,
            trades=trades,
            equity_curve=equity_curve,
            risk_events=tuple(replay.events),
            walk_forward=tuple(replay.steps),
            bootstrap=bootstrap,
            benchmark=benchmark,
            model_results=model_results,
            config=cfg,
        )


class _Replay:
    """Mutable state of one replay. Lives only for the duration of ``run``."""

    def __init__(
        self,
        config: BacktestConfig,
        costs: ExecutionCostModel,
        data: _MarketData,
        models: dict[str, SignalModel],
        token: CancellationToken | None,
    ) -> None:
        self.cfg = config
        self.costs = costs
        self.data = data
        self.models = models
        self.token = token
        self.symbol_index = {s: k for k, s in enumerate(data.symbols)}

        self.cash = config.initial_capital
        self.positions: dict[str, _Position] = {}
        self.trades: list[Trade] = []
        self.events: list[RiskLimitEvent] = []
        self.steps: list[WalkForwardStep] = []
        self.equity_values: list[float] = []

        self.model_weights = {m: 1.0 for m in models}
        self.hits = {m: [0, 0] for m in models}
        self.symbol_budgets: dict[str, float] | None = None
        self.schedule = (
            WalkForwardSchedule(config.walk_forward_periods, config.training_window)
            if config.walk_forward
            else None
        )
        # fittable models stay out of the vote until this replay has fitted them
        self.fitted: set[str] = set()
        if self.schedule is not None:
            waiting = [m for m, model in models.items() if isinstance(model, FittableModel)]
            if waiting:
                logger.info(f"Models {waiting} start trading after their first walk-forward fit")

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def execute(self) -> None:
        cfg, data = self.cfg, self.data
        n_periods, n_symbols = len(data.dates), len(data.symbols)
        pending: list[_Order] = []
        last_signals: dict[str, dict[str, Signal]] = {}
        peak = prev_equity = cfg.initial_capital

        for i, date in enumerate(data.dates):
            check_cancelled(self.token, "backtest")
            opens, highs, lows, closes = (
                data.opens[i], data.highs[i], data.lows[i], data.closes[i]
            )

            if i > 0 and last_signals:
                self._score_models(last_signals, data.closes[i - 1], closes)

            for order in pending:
                self._open(order, date, opens[self.symbol_index[order.symbol]])
            pending = []

            for symbol, pos in list(self.positions.items()):
                k = self.symbol_index[symbol]
                hit = self._stop_or_target(pos, opens[k], highs[k], lows[k])
                if hit is not None:
                    price, reason = hit
                    self._close(pos, date, price, reason)

            equity = self._equity(closes)
            peak = max(peak, equity)
            breach = self._check_limits(equity, prev_equity, peak)
            if breach is not None:
                limit, value, threshold = breach
                closed = len(self.positions)
                self._flatten(date, closes, "risk_limit")
                equity = self.cash
                self.events.append(
                    RiskLimitEvent(
                        date=date, limit=limit, value=value, threshold=threshold,
                        positions_closed=closed,
                    )
                )
                logger.warning(
                    f"{date.date()}: {limit} breached ({value:.2%} >= {threshold:.2%}); "
                    f"flattened {closed} positions"
                )
                if limit == "max_drawdown":
                    peak = equity
                last_signals = {}
                self.equity_values.append(equity)
                prev_equity = equity
                continue

            if i == n_periods - 1:
                self._flatten(date, closes, "end_of_data")
                self.equity_values.append(self.cash)
                break

            if self.schedule is not None and self.schedule.is_step(i):
                self._walk_forward_step(i, date)

            history = data.panel.iloc[: (i + 1) * n_symbols]
            last_signals = {
                name: self._collect(name, model, history, date)
                for name, model in self.models.items()
                if self._is_ready(name, model)
            }
            combined = combine_signals(last_signals, self.model_weights)

            for symbol, pos in list(self.positions.items()):
                signal = combined.get(symbol)
                if (
                    signal is not None
                    and signal.direction == -pos.direction
                    and signal.confidence >= cfg.confidence_threshold
                ):
                    self._close(pos, date, closes[self.symbol_index[symbol]], "signal")

            equity = self._equity(closes)
            pending = self._orders(combined, equity, closes)
            self.equity_values.append(equity)
            prev_equity = equity

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    def _equity(self, closes: np.ndarray) -> float:
        marked = sum(
            p.direction * p.quantity * closes[self.symbol_index[s]]
            for s, p in self.positions.items()
        )
        return float(self.cash + marked)

    def _open(self, order: _Order, date: pd.Timestamp, open_price: float) -> None:
        is_buy = order.direction > 0
        reference_fill = self.costs.slippage.fill_price(open_price, is_buy)
        quantity = math.floor(order.notional / reference_fill)
        if is_buy:
            fees = self.costs.commission
            affordable = math.floor(
                (self.cash - fees.min_fee) / (reference_fill * (1 + fees.rate))
            )
            quantity = min(quantity, affordable)
        if quantity < 1:
            logger.debug(f"{date.date()}: skipped {order.symbol}, order too small for one share")
            return

        price, commission = self.costs.fill(open_price, quantity, is_buy)
        self.cash -= order.direction * quantity * price + commission

        sl, tp = self.cfg.stop_loss, self.cfg.take_profit
        d = order.direction
        self.positions[order.symbol] = _Position(
            symbol=order.symbol,
            direction=d,
            quantity=quantity,
            entry_date=date,
            entry_price=price,
            entry_commission=commission,
            signal_close=order.signal_close,
            confidence=order.confidence,
            model=order.model,
            stop_price=price * (1 - d * sl) if sl is not None else None,
            take_price=price * (1 + d * tp) if tp is not None else None,
        )
        logger.debug(
            f"{date.date()}: open {'long' if d > 0 else 'short'} {quantity} {order.symbol} @ {price:.4f}"
        )

    def _close(self, pos: _Position, date: pd.Timestamp, reference: float, reason: str) -> None:
        price, commission = self.costs.fill(reference, pos.quantity, is_buy=pos.direction < 0)
        self.cash += pos.direction * pos.quantity * price - commission
        pnl = pos.direction * pos.quantity * (price - pos.entry_price) - pos.entry_commission - commission

        self.trades.append(
            Trade(
                trade_id=f"{self.cfg.name}-{len(self.trades) + 1:05d}",
                symbol=pos.symbol,
                side="long" if pos.direction > 0 else "short",
                entry_date=pos.entry_date,
                exit_date=date,
                entry_price=float(pos.entry_price),
                exit_price=float(price),
                quantity=int(pos.quantity),
                pnl=float(pnl),
                commission=float(pos.entry_commission + commission),
                exit_reason=reason,
                confidence=float(pos.confidence),
                model=pos.model,
                prediction_correct=bool((reference - pos.signal_close) * pos.direction > 0),
            )
        )
        del self.positions[pos.symbol]
        logger.debug(f"{date.date()}: close {pos.symbol} ({reason}) pnl={pnl:.2f}")

    def _flatten(self, date: pd.Timestamp, closes: np.ndarray, reason: str) -> None:
        for symbol, pos in list(self.positions.items()):
            self._close(pos, date, closes[self.symbol_index[symbol]], reason)

    @staticmethod
    def _stop_or_target(
        pos: _Position, open_: float, high: float, low: float
    ) -> tuple[float, str] | None:
        """Exit level hit within the bar; the stop wins when both are touched."""
        if pos.direction > 0:
            if pos.stop_price is not None and low <= pos.stop_price:
                return min(open_, pos.stop_price), "stop_loss"
            if pos.take_price is not None and high >= pos.take_price:
                return max(open_, pos.take_price), "take_profit"
        else:
            if pos.stop_price is not None and high >= pos.stop_price:
                return max(open_, pos.stop_price), "stop_loss"
            if pos.take_price is not None and low <= pos.take_price:
                return min(open_, pos.take_price), "take_profit"
        return None

    def _check_limits(
        self, equity: float, prev_equity: float, peak: float
    ) -> tuple[str, float, float] | None:
        cfg = self.cfg
        if cfg.max_daily_loss is not None and prev_equity > 0:
            daily_loss = (prev_equity - equity) / prev_equity
            if daily_loss >= cfg.max_daily_loss:
                return "max_daily_loss", daily_loss, cfg.max_daily_loss
        if cfg.max_drawdown is not None and peak > 0:
            drawdown = 1 - equity / peak
            if drawdown >= cfg.max_drawdown:
                return "max_drawdown", drawdown, cfg.max_drawdown
        return None

    # ------------------------------------------------------------------
    # Signals and sizing
    # ------------------------------------------------------------------

    def _is_ready(self, name: str, model: SignalModel) -> bool:
        if self.schedule is None or not isinstance(model, FittableModel):
            return True
        return name in self.fitted

    def _collect(
        self, name: str, model: SignalModel, history: pd.DataFrame, date: pd.Timestamp
    ) -> dict[str, Signal]:
        raw = model.generate_signals(history, date) or {}
        signals = {}
        for symbol, signal in raw.items():
            if symbol not in self.symbol_index:
                continue
            if not isinstance(signal, Signal):
                msg = f"model '{name}' returned {type(signal).__name__} for {symbol}"
                raise DataError(msg, field="models")
            signals[symbol] = signal
        return signals

    def _orders(
        self, combined: Mapping[str, CombinedSignal], equity: float, closes: np.ndarray
    ) -> list[_Order]:
        cfg = self.cfg
        candidates = sorted(
            (
                (symbol, signal)
                for symbol, signal in combined.items()
                if symbol not in self.positions
                and signal.direction != 0
                and signal.confidence >= cfg.confidence_threshold
                and (signal.direction > 0 or cfg.allow_short)
            ),
            key=lambda item: (-item[1].confidence, item[0]),
        )
        slots = max(cfg.max_positions - len(self.positions), 0)

        orders = []
        for symbol, signal in candidates[:slots]:
            notional = self._target_notional(symbol, signal, equity)
            if notional <= 0:
                continue
            orders.append(
                _Order(
                    symbol=symbol,
                    direction=signal.direction,
                    notional=notional,
                    confidence=signal.confidence,
                    model=signal.model,
                    signal_close=float(closes[self.symbol_index[symbol]]),
                )
            )
        return orders

    def _target_notional(self, symbol: str, signal: CombinedSignal, equity: float) -> float:
        cfg = self.cfg
        if cfg.position_sizing == "fixed":
            notional = cfg.position_fraction * equity
        elif cfg.position_sizing == "percentage":
            notional = cfg.position_fraction * signal.confidence * equity
        else:
            notional = cfg.risk_per_trade * equity / cfg.stop_loss
        if self.symbol_budgets is not None:
            notional *= self.symbol_budgets.get(symbol, 1.0)
        return min(notional, cfg.position_concentration * equity)

    # ------------------------------------------------------------------
    # Walk-forward
    # ------------------------------------------------------------------

    def _score_models(
        self,
        signals: Mapping[str, Mapping[str, Signal]],
        prev_closes: np.ndarray,
        closes: np.ndarray,
    ) -> None:
        """Count directional hits of last period's signals against realized moves."""
        moves = np.sign(closes - prev_closes)
        for name, model_signals in signals.items():
            for symbol, signal in model_signals.items():
                move = moves[self.symbol_index[symbol]]
                if signal.direction == 0 or move == 0:
                    continue
                self.hits[name][1] += 1
                if move == signal.direction:
                    self.hits[name][0] += 1

    def _walk_forward_step(self, i: int, date: pd.Timestamp) -> None:
        cfg, data = self.cfg, self.data
        n_symbols = len(data.symbols)
        window = self.schedule.training_slice(i)
        train = data.panel.iloc[window.start * n_symbols : window.stop * n_symbols]

        for name, model in self.models.items():
            if isinstance(model, FittableModel):
                model.fit(train)
                self.fitted.add(name)

        rates = {
            name: hits / total if total else None for name, (hits, total) in self.hits.items()
        }
        if any(r is not None for r in rates.values()):
            self.model_weights = {
                name: max(rate, MIN_MODEL_WEIGHT) if rate is not None else 0.5
                for name, rate in rates.items()
            }
        self.hits = {m: [0, 0] for m in self.models}

        if cfg.risk_parity_budgeting and n_symbols >= 2:
            self.symbol_budgets = self._risk_parity_budgets(window)

        self.steps.append(
            WalkForwardStep(
                date=date,
                period_index=i,
                train_start=data.dates[window.start],
                train_end=data.dates[window.stop - 1],
                model_weights=dict(self.model_weights),
                symbol_budgets=dict(self.symbol_budgets) if self.symbol_budgets else None,
            )
        )
        weights = {k: round(v, 3) for k, v in self.model_weights.items()}
        logger.info(f"{date.date()}: walk-forward step {len(self.steps)}, model weights {weights}")

    def _risk_parity_budgets(self, window: slice) -> dict[str, float] | None:
        closes = pd.DataFrame(
            self.data.closes[window], columns=self.data.symbols
        )
        returns = closes.pct_change().iloc[1:]
        try:
            result = RiskParityOptimizer(RiskParityConfig(max_iterations=500)).optimize(returns)
        except DataError as e:
            logger.warning(f"Risk parity budgeting skipped: {e}")
            return self.symbol_budgets
        n = len(self.data.symbols)
        return {s: w * n for s, w in result.weights.items()}


def run_backtests(
    jobs: Sequence[tuple[BacktestConfig, pd.DataFrame, Mapping[str, SignalModel]]],
    max_workers: int | None = None,
    token: CancellationToken | None = None,
) -> list[BacktestResult]:
    """Run independent backtests concurrently.

    Parameters
    ----------
    jobs : Sequence[tuple[BacktestConfig, pd.DataFrame, Mapping[str, SignalModel]]]
        (config, market data, models) per run; model instances must not be
        shared between jobs
    max_workers : int | None, optional
        Thread pool size
    token : CancellationToken | None, optional
        Shared cancellation token

    Returns
    -------
    list[BacktestResult]
        Results in job order
    """
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [
            executor.submit(EventDrivenBacktester(cfg).run, data, models, token)
            for cfg, data, models in jobs
        ]
        return [f.result() for f in futures]
