"""Error taxonomy for the risk engine.

Fatal conditions are raised as exceptions and never produce a partial result.
Solver shortfalls are reported in-band on the result and surfaced through
the ``warnings`` machinery so callers can escalate them if they choose.
"""

from __future__ import annotations


class QuantRiskError(Exception):
    """Base class for all engine errors."""


class DataError(QuantRiskError, ValueError):
    """Malformed or insufficient input.

    Parameters
    ----------
    message : str
        Human-readable description
    field : str | None, default None
        Name of the offending input, when known
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        if field is not None:
            message = f"{field}: {message}"
        super().__init__(message)


class ScenarioError(QuantRiskError):
    """Scenario covariance cannot be turned into a usable matrix."""


class OperationCancelled(QuantRiskError):
    """A cancellation token fired or its deadline passed."""


class ConvergenceShortfall(UserWarning):
    """An iterative solver stopped before reaching its tolerance.

    Emitted with :func:`warnings.warn`; the accompanying result carries
    ``converged=False`` and the achieved residual.
    """
