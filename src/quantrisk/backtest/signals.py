"""Signal combination and reference signal models.

The backtester combines model signals by a confidence-weighted vote. Two
simple models are provided for the command line and for tests; real
predictive models are supplied by the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

import numpy as np
import pandas as pd

from quantrisk.protocols import Signal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CombinedSignal:
    """Vote outcome for one symbol."""

    direction: int
    confidence: float
    model: str


def combine_signals(
    model_signals: Mapping[str, Mapping[str, Signal]],
    model_weights: Mapping[str, float],
) -> dict[str, CombinedSignal]:
    """Confidence-weighted vote across models.

    Each model adds ``weight * confidence`` to the side it votes for; flat
    votes count only in the denominator. The winning side's share of the
    total model weight becomes the combined confidence. Ties are flat.

    Parameters
    ----------
    model_signals : Mapping[str, Mapping[str, Signal]]
        Signals per model per symbol
    model_weights : Mapping[str, float]
        Vote weight per model

    Returns
    -------
    dict[str, CombinedSignal]
        Combined signal per symbol
    """
    symbols = sorted({s for signals in model_signals.values() for s in signals})
    combined = {}
    for symbol in symbols:
        votes = {1: 0.0, -1: 0.0}
        best = {1: ("", -1.0), -1: ("", -1.0)}
        total = 0.0
        for model, signals in model_signals.items():
            weight = model_weights.get(model, 0.0)
            signal = signals.get(symbol)
            if signal is None or weight <= 0:
                continue
            total += weight
            if signal.direction == 0:
                continue
            contribution = weight * signal.confidence
            votes[signal.direction] += contribution
            if contribution > best[signal.direction][1]:
                best[signal.direction] = (model, contribution)

        if total <= 0 or votes[1] == votes[-1]:
            combined[symbol] = CombinedSignal(0, 0.0, "")
            continue
        direction = 1 if votes[1] > votes[-1] else -1
        voters = sum(
            1
            for m, signals in model_signals.items()
            if model_weights.get(m, 0.0) > 0
            and symbol in signals
            and signals[symbol].direction == direction
        )
        model = best[direction][0] if voters == 1 else "ensemble"
        combined[symbol] = CombinedSignal(direction, votes[direction] / total, model)
    return combined


class ConstantSignalModel:
    """Emits the same signal for every symbol each period.

    Parameters
    ----------
    direction : int, default 0
        Direction emitted
    confidence : float, default 1.0
        Confidence emitted
    symbols : list[str] | None, default None
        Restrict signals to these symbols
    """

    def __init__(
        self, direction: int = 0, confidence: float = 1.0, symbols: list[str] | None = None
    ) -> None:
        self.signal = Signal(direction=direction, confidence=confidence)
        self.symbols = symbols

    def generate_signals(
        self, history: pd.DataFrame, date: pd.Timestamp
    ) -> dict[str, Signal]:
        """Constant signal for each configured symbol, or every symbol in ``history``.

        Parameters
        ----------
        history : pd.DataFrame
            Bars up to and including ``date``, indexed by (date, symbol)
        date : pd.Timestamp
            Current bar date (unused)

        Returns
        -------
        dict[str, Signal]
            Signal by symbol
        """
        symbols = self.symbols or history.index.get_level_values("symbol").unique().tolist()
        return {s: self.signal for s in symbols}


class MovingAverageCrossModel:
    """Trend follower: long when the fast average is above the slow one.

    Confidence grows with the gap between the averages relative to price,
    saturating at ``full_confidence_gap``.

    Parameters
    ----------
    fast : int, default 10
        Fast window in periods
    slow : int, default 30
        Slow window in periods
    full_confidence_gap : float, default 0.02
        Relative gap mapped to confidence 1.0
    min_confidence : float, default 0.5
        Confidence floor for any non-flat signal
    """

    def __init__(
        self,
        fast: int = 10,
        slow: int = 30,
        full_confidence_gap: float = 0.02,
        min_confidence: float = 0.5,
    ) -> None:
        if fast >= slow:
            msg = f"fast window ({fast}) must be shorter than slow window ({slow})"
            raise ValueError(msg)
        self.fast = fast
        self.slow = slow
        self.full_confidence_gap = full_confidence_gap
        self.min_confidence = min_confidence
        logger.info(f"Initialized MovingAverageCrossModel with fast={fast}, slow={slow}")

    def generate_signals(
        self, history: pd.DataFrame, date: pd.Timestamp
    ) -> dict[str, Signal]:
        """Cross signal per symbol from the last ``slow`` closes.

        Parameters
        ----------
        history : pd.DataFrame
            Bars up to and including ``date``, indexed by (date, symbol)
        date : pd.Timestamp
            Current bar date

        Returns
        -------
        dict[str, Signal]
            Signal by symbol; empty until ``slow`` bars exist. Symbols
            with a missing or non-positive last close are omitted
        """
        closes = history["close"].unstack("symbol")
        if len(closes) < self.slow:
            return {}

        tail = closes.iloc[-self.slow :]
        fast = tail.iloc[-self.fast :].mean()
        slow = tail.mean()
        last = tail.iloc[-1]

        signals = {}
        for symbol in closes.columns:
            if not np.isfinite(last[symbol]) or last[symbol] <= 0:
                continue
            gap = (fast[symbol] - slow[symbol]) / last[symbol]
            if gap == 0:
                signals[symbol] = Signal.flat()
                continue
            strength = min(abs(gap) / self.full_confidence_gap, 1.0)
            confidence = self.min_confidence + (1 - self.min_confidence) * strength
            signals[symbol] = Signal(direction=1 if gap > 0 else -1, confidence=float(confidence))
        return signals
