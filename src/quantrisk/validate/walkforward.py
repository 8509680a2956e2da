"""Walk-forward scheduling for backtest replay.

Defines when re-fitting happens and which trailing window of periods a
re-fit may see. Windows always end at the current period, so a model fit
at period ``t`` never sees data after ``t``.
"""

from __future__ import annotations

import logging

import pandas as pd

from quantrisk.types import WalkForwardStep

logger = logging.getLogger(__name__)


class WalkForwardSchedule:
    """Rolling re-fit schedule.

    Parameters
    ----------
    step_periods : int, default 21
        Periods between re-fits
    training_window : int | None, default 252
        Trailing periods available to a re-fit (None uses an expanding window)
    min_train_periods : int, default 2
        Re-fits are skipped until this much history exists

    Examples
    --------
    >>> schedule = WalkForwardSchedule(step_periods=21, training_window=252)
    >>> schedule.is_step(42)
    True
    >>> schedule.training_slice(42)
    slice(0, 43, None)
    """

    def __init__(
        self,
        step_periods: int = 21,
        training_window: int | None = 252,
        min_train_periods: int = 2,
    ) -> None:
        """Initialize walk-forward schedule."""
        if step_periods < 1:
            msg = f"step_periods must be >= 1, got {step_periods}"
            raise ValueError(msg)
        if training_window is not None and training_window < 1:
            msg = f"training_window must be >= 1, got {training_window}"
            raise ValueError(msg)

        self.step_periods = step_periods
        self.training_window = training_window
        self.min_train_periods = min_train_periods
        self.window_type = "rolling" if training_window is not None else "expanding"

        logger.info(
            f"Initialized WalkForwardSchedule with step={step_periods}, "
            f"window_type={self.window_type}, train_periods={training_window}"
        )

    def is_step(self, period_index: int) -> bool:
        """Whether a re-fit happens at the close of ``period_index``."""
        return (
            period_index > 0
            and period_index % self.step_periods == 0
            and period_index + 1 >= self.min_train_periods
        )

    def training_slice(self, period_index: int) -> slice:
        """Positions of the periods a re-fit at ``period_index`` may use (inclusive end)."""
        end = period_index + 1
        start = 0 if self.training_window is None else max(0, end - self.training_window)
        return slice(start, end)


def analyze_walk_forward_stability(steps: list[WalkForwardStep] | tuple[WalkForwardStep, ...]) -> pd.DataFrame:
    """Model weight history across walk-forward steps.

    Parameters
    ----------
    steps : sequence of WalkForwardStep
        Steps recorded by a backtest

    Returns
    -------
    pd.DataFrame
        One row per step (indexed by date), one column per model, plus the
        dispersion of weights across models
    """
    if not steps:
        return pd.DataFrame()
    frame = pd.DataFrame(
        [s.model_weights for s in steps], index=pd.Index([s.date for s in steps], name="date")
    )
    frame["weight_dispersion"] = frame.std(axis=1, ddof=0)
    return frame
