"""Collaborator protocols and signal records.

Signal models are external to the engine: the backtester only consumes
``(direction, confidence)`` pairs per symbol per period.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Protocol, runtime_checkable

import pandas as pd

from quantrisk.exceptions import DataError


@dataclass(frozen=True)
class Signal:
    """Directional call for one symbol.

    Parameters
    ----------
    direction : int
        1 for long, -1 for short, 0 for flat
    confidence : float
        Conviction in [0, 1]
    """

    direction: int
    confidence: float

    def __post_init__(self) -> None:
        if self.direction not in (-1, 0, 1):
            msg = f"direction must be -1, 0 or 1, got {self.direction}"
            raise DataError(msg, field="signal")
        if not 0.0 <= self.confidence <= 1.0:
            msg = f"confidence must be within [0, 1], got {self.confidence}"
            raise DataError(msg, field="signal")

    @classmethod
    def flat(cls) -> Signal:
        return cls(direction=0, confidence=0.0)


class SignalModel(Protocol):
    """Protocol for predictive models replayed by the backtester."""

    def generate_signals(
        self, history: pd.DataFrame, date: pd.Timestamp
    ) -> Mapping[str, Signal]:
        """Emit signals at the close of ``date``.

        Parameters
        ----------
        history : pd.DataFrame
            MultiIndex (date, symbol) OHLC bars up to and including ``date``
        date : pd.Timestamp
            Current period

        Returns
        -------
        Mapping[str, Signal]
            Signal per symbol; omitted symbols are treated as flat
        """
        ...


@runtime_checkable
class FittableModel(Protocol):
    """Signal model that can be re-fitted during walk-forward replay."""

    def fit(self, history: pd.DataFrame) -> None:
        """Fit on bars available up to the current period only."""
        ...
