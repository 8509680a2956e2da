"""Performance metrics for backtesting.

This module provides portfolio-level metrics from an equity curve,
trade-level performance analysis, bootstrap stress of the trade sequence,
benchmark-relative statistics and multi-backtest comparison.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

import numpy as np
import pandas as pd

from quantrisk import statistics as qs
from quantrisk.config import LOWER_IS_BETTER, ComparisonConfig
from quantrisk.exceptions import DataError
from quantrisk.types import (
    BacktestResult,
    BenchmarkComparison,
    BootstrapSummary,
    ComparisonReport,
    PairwiseDelta,
    PerformanceAnalysis,
    RankedBacktest,
    Trade,
)

logger = logging.getLogger(__name__)

BOOTSTRAP_PERCENTILES = (5, 50, 95)
HIGH_CONFIDENCE = 0.7


def _profit_factor(pnls: np.ndarray) -> float:
    gross_profit = float(pnls[pnls > 0].sum())
    gross_loss = float(-pnls[pnls < 0].sum())
    if gross_loss > 0:
        return gross_profit / gross_loss
    return float("inf") if gross_profit > 0 else 0.0


def calculate_backtest_metrics(
    equity_curve: pd.Series,
    trades: Sequence[Trade],
    periods_per_year: int = 252,
    risk_free_rate: float = 0.0,
) -> dict[str, float]:
    """Aggregate performance of a replay.

    Parameters
    ----------
    equity_curve : pd.Series
        Equity at each period close, starting with the initial capital
    trades : Sequence[Trade]
        Completed trades
    periods_per_year : int, default 252
        Periods per year
    risk_free_rate : float, default 0.0
        Annualized risk-free rate

    Returns
    -------
    dict[str, float]
        total_return, annual_return, volatility, sharpe_ratio, sortino_ratio,
        max_drawdown, calmar_ratio, win_rate, profit_factor, total_trades,
        avg_trade_duration, avg_trade_return, final_capital
    """
    equity = equity_curve.to_numpy(dtype=float)
    initial, final = float(equity[0]), float(equity[-1])
    total_return = final / initial - 1 if initial > 0 else 0.0

    returns = np.diff(equity) / equity[:-1] if len(equity) > 1 else np.zeros(0)
    years = len(returns) / periods_per_year
    if years > 0 and total_return > -1:
        annual_return = (1 + total_return) ** (1 / years) - 1
    else:
        annual_return = 0.0

    if len(returns) >= 2:
        volatility = float(returns.std(ddof=1) * np.sqrt(periods_per_year))
        sharpe = qs.sharpe_ratio(returns, risk_free_rate, periods_per_year)
        sortino = qs.sortino_ratio(returns, risk_free_rate, periods_per_year)
    else:
        volatility = sharpe = sortino = 0.0

    mdd = qs.max_drawdown(equity) if len(equity) >= 2 else 0.0
    calmar = annual_return / mdd if mdd > 0 else 0.0

    pnls = np.array([t.pnl for t in trades], dtype=float)
    n_trades = len(trades)

    return {
        "total_return": float(total_return),
        "annual_return": float(annual_return),
        "volatility": volatility,
        "sharpe_ratio": float(sharpe),
        "sortino_ratio": float(sortino),
        "max_drawdown": float(mdd),
        "calmar_ratio": float(calmar),
        "win_rate": float((pnls > 0).mean()) if n_trades else 0.0,
        "profit_factor": _profit_factor(pnls) if n_trades else 0.0,
        "total_trades": float(n_trades),
        "avg_trade_duration": float(np.mean([t.duration_days for t in trades])) if n_trades else 0.0,
        "avg_trade_return": float(np.mean([t.return_pct for t in trades])) if n_trades else 0.0,
        "final_capital": final,
    }


def bootstrap_trades(
    trades: Sequence[Trade],
    initial_capital: float,
    n_simulations: int,
    seed: int = 42,
) -> BootstrapSummary | None:
    """Resample the realized trade P&L sequence with replacement.

    Each resample replays the same number of trades in random order from
    ``initial_capital``, giving an alternative equity path.

    Parameters
    ----------
    trades : Sequence[Trade]
        Realized trades
    initial_capital : float
        Starting equity of every resampled path
    n_simulations : int
        Number of resampled paths
    seed : int, default 42
        Generator seed

    Returns
    -------
    BootstrapSummary | None
        Percentile outcomes, or None without trades or simulations
    """
    if not trades or n_simulations <= 0:
        return None

    rng = np.random.default_rng(seed)
    pnls = np.array([t.pnl for t in trades], dtype=float)
    draws = rng.choice(pnls, size=(n_simulations, len(pnls)), replace=True)
    paths = initial_capital + np.cumsum(draws, axis=1)
    paths = np.hstack([np.full((n_simulations, 1), initial_capital), paths])

    peaks = np.maximum.accumulate(paths, axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        dd = np.where(peaks > 0, 1 - paths / peaks, 0.0)
    max_dd = np.clip(dd, 0.0, None).max(axis=1)
    finals = paths[:, -1]
    total_returns = finals / initial_capital - 1

    def pct(values: np.ndarray) -> dict[int, float]:
        return {p: float(np.percentile(values, p)) for p in BOOTSTRAP_PERCENTILES}

    summary = BootstrapSummary(
        n_simulations=n_simulations,
        final_capital=pct(finals),
        total_return=pct(total_returns),
        max_drawdown=pct(max_dd),
        probability_of_loss=float((finals < initial_capital).mean()),
    )
    logger.info(
        f"Bootstrap of {len(pnls)} trades x {n_simulations}: median return "
        f"{summary.total_return[50]:.2%}, 5th percentile {summary.total_return[5]:.2%}"
    )
    return summary


def compare_to_benchmark(
    equity_curve: pd.Series,
    benchmark_prices: pd.Series,
    symbol: str,
    periods_per_year: int = 252,
) -> BenchmarkComparison | None:
    """Alpha, beta, tracking error and information ratio against a benchmark.

    Returns None when fewer than 3 overlapping periods exist.
    """
    strategy = equity_curve.pct_change().iloc[1:]
    bench = benchmark_prices.reindex(equity_curve.index).pct_change().iloc[1:]
    joined = pd.concat([strategy, bench], axis=1, keys=["strategy", "benchmark"]).dropna()
    if len(joined) < 3:
        logger.warning(f"Not enough overlapping data to compare against {symbol}")
        return None

    s = joined["strategy"].to_numpy()
    b = joined["benchmark"].to_numpy()
    var_b = float(b.var(ddof=1))
    beta = float(np.cov(s, b, ddof=1)[0, 1] / var_b) if var_b > 0 else 0.0
    alpha = float((s.mean() - beta * b.mean()) * periods_per_year)
    active = s - b
    tracking_error = float(active.std(ddof=1) * np.sqrt(periods_per_year))
    information_ratio = (
        float(active.mean() * periods_per_year / tracking_error) if tracking_error > 0 else 0.0
    )
    corr = float(np.corrcoef(s, b)[0, 1]) if s.std() > 0 and b.std() > 0 else 0.0

    strategy_return = float(np.prod(1 + s) - 1)
    benchmark_return = float(np.prod(1 + b) - 1)
    return BenchmarkComparison(
        symbol=symbol,
        benchmark_return=benchmark_return,
        excess_return=strategy_return - benchmark_return,
        alpha=alpha,
        beta=beta,
        correlation=corr,
        tracking_error=tracking_error,
        information_ratio=information_ratio,
    )


def _max_streaks(wins: np.ndarray) -> tuple[int, int]:
    best_win = best_loss = run_win = run_loss = 0
    for won in wins:
        if won:
            run_win, run_loss = run_win + 1, 0
        else:
            run_win, run_loss = 0, run_loss + 1
        best_win = max(best_win, run_win)
        best_loss = max(best_loss, run_loss)
    return best_win, best_loss


def calculate_detailed_performance(
    trades: Sequence[Trade | Mapping[str, Any]],
    backtest_summary: Mapping[str, Any],
) -> PerformanceAnalysis:
    """Trade-level performance analysis.

    Parameters
    ----------
    trades : Sequence[Trade | Mapping]
        Completed trades, as records or their dict form
    backtest_summary : Mapping[str, Any]
        Must contain ``initial_capital``; ``periods_per_year`` is optional and
        only used when all trades fall on a single day

    Returns
    -------
    PerformanceAnalysis
        Win/loss statistics, risk-adjusted ratios, streaks, confidence and
        prediction accuracy, and breakdowns by symbol and exit reason

    Raises
    ------
    DataError
        If the summary has no positive initial capital

    Notes
    -----
    Sharpe and Sortino are computed on per-trade returns and annualized by
    the number of trades per year over the span from the first entry to the
    last exit.
    """
    initial = float(backtest_summary.get("initial_capital", 0.0))
    if initial <= 0:
        raise DataError("initial_capital must be positive", field="backtest_summary")
    ppy = int(backtest_summary.get("periods_per_year", 252))

    records = [t if isinstance(t, Trade) else Trade.from_dict(t) for t in trades]
    records.sort(key=lambda t: (t.exit_date, t.trade_id))
    n = len(records)

    if n == 0:
        return PerformanceAnalysis(
            total_trades=0,
            profitable_trades=0,
            losing_trades=0,
            win_rate=0.0,
            total_pnl=0.0,
            total_return=0.0,
            avg_trade_return=0.0,
            best_trade=0.0,
            worst_trade=0.0,
            sharpe_ratio=0.0,
            sortino_ratio=0.0,
            max_drawdown=0.0,
            calmar_ratio=0.0,
            recovery_factor=0.0,
            profit_factor=0.0,
            avg_trade_duration=0.0,
            max_consecutive_wins=0,
            max_consecutive_losses=0,
            avg_signal_confidence=0.0,
            avg_prediction_accuracy=None,
            high_confidence_win_rate=None,
        )

    pnls = np.array([t.pnl for t in records], dtype=float)
    rets = np.array([t.return_pct for t in records], dtype=float)
    wins = pnls > 0
    total_pnl = float(pnls.sum())
    total_return = total_pnl / initial

    equity = np.concatenate([[initial], initial + np.cumsum(pnls)])
    mdd = qs.max_drawdown(equity)
    max_dd_amount = float((np.maximum.accumulate(equity) - equity).max())

    span_days = (records[-1].exit_date - min(t.entry_date for t in records)).days
    years = span_days / 365.25 if span_days > 0 else 0.0
    # per-trade ratios annualize by observed trade frequency
    trades_per_year = n / years if years > 0 else float(ppy)

    if n >= 2 and rets.std(ddof=1) > 0:
        sharpe = float(rets.mean() / rets.std(ddof=1) * np.sqrt(trades_per_year))
    else:
        sharpe = 0.0
    downside = np.sqrt((np.minimum(rets, 0.0) ** 2).mean())
    sortino = float(rets.mean() / downside * np.sqrt(trades_per_year)) if downside > 0 else 0.0

    if years > 0 and total_return > -1:
        annual = (1 + total_return) ** (1 / years) - 1
    else:
        annual = total_return
    calmar = float(annual / mdd) if mdd > 0 else 0.0
    recovery = total_pnl / max_dd_amount if max_dd_amount > 0 else 0.0

    checkable = [t.prediction_correct for t in records if t.prediction_correct is not None]
    high_conf = [t for t in records if t.confidence > HIGH_CONFIDENCE]
    max_wins, max_losses = _max_streaks(wins)

    by_symbol: dict[str, dict[str, float]] = {}
    for symbol in sorted({t.symbol for t in records}):
        sym_pnls = np.array([t.pnl for t in records if t.symbol == symbol])
        by_symbol[symbol] = {
            "trades": float(len(sym_pnls)),
            "win_rate": float((sym_pnls > 0).mean()),
            "pnl": float(sym_pnls.sum()),
        }
    by_exit_reason: dict[str, int] = {}
    for t in records:
        by_exit_reason[t.exit_reason] = by_exit_reason.get(t.exit_reason, 0) + 1

    return PerformanceAnalysis(
        total_trades=n,
        profitable_trades=int(wins.sum()),
        losing_trades=int((pnls < 0).sum()),
        win_rate=float(wins.mean()),
        total_pnl=total_pnl,
        total_return=float(total_return),
        avg_trade_return=float(rets.mean()),
        best_trade=float(rets.max()),
        worst_trade=float(rets.min()),
        sharpe_ratio=sharpe,
        sortino_ratio=sortino,
        max_drawdown=float(mdd),
        calmar_ratio=calmar,
        recovery_factor=float(recovery),
        profit_factor=_profit_factor(pnls),
        avg_trade_duration=float(np.mean([t.duration_days for t in records])),
        max_consecutive_wins=max_wins,
        max_consecutive_losses=max_losses,
        avg_signal_confidence=float(np.mean([t.confidence for t in records])),
        avg_prediction_accuracy=float(np.mean(checkable)) if checkable else None,
        high_confidence_win_rate=(
            float(np.mean([t.pnl > 0 for t in high_conf])) if high_conf else None
        ),
        by_symbol=by_symbol,
        by_exit_reason=by_exit_reason,
    )


def _normalize(column: pd.Series, higher_is_better: bool) -> pd.Series:
    finite = column.replace([np.inf, -np.inf], np.nan)
    if finite.notna().any():
        column = column.clip(lower=finite.min(), upper=finite.max())
    else:
        column = pd.Series(0.0, index=column.index)
    lo, hi = column.min(), column.max()
    if hi - lo <= 0:
        return pd.Series(1.0, index=column.index)
    scaled = (column - lo) / (hi - lo)
    return scaled if higher_is_better else 1 - scaled


def generate_comparison_analysis(
    results: Sequence[BacktestResult],
    config: ComparisonConfig | None = None,
) -> ComparisonReport:
    """Rank backtests by a composite score and report relative statistics.

    Parameters
    ----------
    results : Sequence[BacktestResult]
        Backtests to compare, with unique ids
    config : ComparisonConfig | None, optional
        Score weights and reported metrics

    Returns
    -------
    ComparisonReport
        Rankings, best performer per metric, pairwise deltas in ranking
        order, risk/return points and the correlation of period returns

    Raises
    ------
    DataError
        If no results are given or ids repeat
    """
    config = config or ComparisonConfig()
    if not results:
        raise DataError("at least one backtest result is required", field="results")
    ids = [r.backtest_id for r in results]
    if len(set(ids)) != len(ids):
        raise DataError("backtest ids must be unique", field="results")

    metrics = pd.DataFrame([r.metrics for r in results], index=pd.Index(ids, name="backtest_id"))
    unknown = (set(config.score_weights) | set(config.report_metrics)) - set(metrics.columns)
    if unknown:
        msg = f"unknown metrics {sorted(unknown)}"
        raise DataError(msg, field="config")

    logger.info(f"Comparing {len(results)} backtests on {list(config.score_weights)}")

    weight_total = sum(config.score_weights.values())
    score = pd.Series(0.0, index=metrics.index)
    for metric, weight in config.score_weights.items():
        score += weight * _normalize(metrics[metric], metric not in LOWER_IS_BETTER)
    score /= weight_total

    order = sorted(ids, key=lambda i: (-score[i], ids.index(i)))
    rankings = tuple(
        RankedBacktest(rank=k + 1, backtest_id=i, score=float(score[i])) for k, i in enumerate(order)
    )

    best_performers = {}
    for metric in config.report_metrics:
        column = metrics[metric]
        best_performers[metric] = str(
            column.idxmin() if metric in LOWER_IS_BETTER else column.idxmax()
        )

    pairwise = tuple(
        PairwiseDelta(
            first=a,
            second=b,
            deltas={
                m: float(metrics.at[a, m] - metrics.at[b, m])
                if np.isfinite(metrics.at[a, m]) and np.isfinite(metrics.at[b, m])
                else float("nan")
                for m in config.report_metrics
            },
        )
        for k, a in enumerate(order)
        for b in order[k + 1 :]
    )

    risk_return = {
        i: {
            "volatility": float(metrics.at[i, "volatility"]) if "volatility" in metrics else 0.0,
            "annual_return": float(metrics.at[i, "annual_return"]) if "annual_return" in metrics else 0.0,
        }
        for i in ids
    }

    period_returns = pd.concat(
        {r.backtest_id: r.equity_curve.pct_change().iloc[1:] for r in results}, axis=1
    ).dropna()
    if len(period_returns) >= 2:
        correlation = period_returns.corr().fillna(0.0)
    else:
        correlation = pd.DataFrame(np.eye(len(ids)), index=ids, columns=ids)

    logger.info(f"Best backtest: {rankings[0].backtest_id} (score {rankings[0].score:.3f})")

    return ComparisonReport(
        rankings=rankings,
        best_performers=best_performers,
        pairwise=pairwise,
        risk_return=risk_return,
        metrics=metrics,
        correlation=correlation,
    )
