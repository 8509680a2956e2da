"""Shared fixtures: seeded return matrices and OHLC bar builders."""

from __future__ import annotations

from typing import Callable

import numpy as np
import pandas as pd
import pytest


@pytest.fixture
def asset_returns() -> pd.DataFrame:
    """Three correlated assets with different volatilities, 500 daily periods."""
    rng = np.random.default_rng(42)
    vols = np.array([0.01, 0.015, 0.02])
    corr = np.array([[1.0, 0.3, 0.2], [0.3, 1.0, 0.4], [0.2, 0.4, 1.0]])
    cov = corr * np.outer(vols, vols)
    draws = rng.multivariate_normal([0.0004, 0.0005, 0.0006], cov, size=500)
    dates = pd.date_range("2022-01-03", periods=500, freq="B")
    return pd.DataFrame(draws, index=dates, columns=["AAA", "BBB", "CCC"])


def _bars_from_closes(closes: pd.DataFrame, spread: float = 0.005) -> pd.DataFrame:
    """Bars whose open is the previous close and whose range brackets both."""
    opens = closes.shift(1).fillna(closes.iloc[0])
    highs = np.maximum(opens, closes) * (1 + spread)
    lows = np.minimum(opens, closes) * (1 - spread)
    pieces = {
        symbol: pd.DataFrame(
            {
                "open": opens[symbol],
                "high": highs[symbol],
                "low": lows[symbol],
                "close": closes[symbol],
            }
        )
        for symbol in closes.columns
    }
    frame = pd.concat(pieces, names=["symbol", "date"])
    return frame.swaplevel().sort_index()


@pytest.fixture
def make_bars() -> Callable[..., pd.DataFrame]:
    """Build (date, symbol) OHLC bars from a dict of close paths."""

    def build(closes: dict[str, list[float] | np.ndarray], start: str = "2023-01-02", spread: float = 0.005) -> pd.DataFrame:
        n = len(next(iter(closes.values())))
        dates = pd.date_range(start, periods=n, freq="B")
        frame = pd.DataFrame({k: np.asarray(v, dtype=float) for k, v in closes.items()}, index=dates)
        return _bars_from_closes(frame, spread)

    return build


@pytest.fixture
def random_walk_bars(make_bars) -> pd.DataFrame:
    """Two trending random walks plus a SPY benchmark, 300 periods."""
    rng = np.random.default_rng(7)
    n = 300
    paths = {}
    for symbol, drift in (("AAA", 0.001), ("BBB", -0.0005), ("SPY", 0.0003)):
        steps = rng.normal(drift, 0.012, n)
        paths[symbol] = 100 * np.exp(np.cumsum(steps))
    return make_bars(paths)
