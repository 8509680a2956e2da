"""Cooperative cancellation for long-running engine calls.

Optimizers, simulations and backtests poll a token between iterations,
chunks and periods. Tokens are created by the caller and passed per call.
"""

from __future__ import annotations

import threading
import time

from quantrisk.exceptions import OperationCancelled


class CancellationToken:
    """Caller-owned cancel flag with an optional deadline.

    Parameters
    ----------
    timeout : float | None, default None
        Seconds from creation after which the token counts as cancelled

    Examples
    --------
    >>> token = CancellationToken(timeout=30.0)
    >>> result = optimize_risk_parity(returns, config, token=token)
    """

    def __init__(self, timeout: float | None = None) -> None:
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def raise_if_cancelled(self, operation: str = "operation") -> None:
        """Raise ``OperationCancelled`` when cancelled or past the deadline."""
        if self._event.is_set():
            msg = f"{operation} cancelled by caller"
            raise OperationCancelled(msg)
        if self._deadline is not None and time.monotonic() >= self._deadline:
            msg = f"{operation} exceeded its deadline"
            raise OperationCancelled(msg)


def check_cancelled(token: CancellationToken | None, operation: str) -> None:
    if token is not None:
        token.raise_if_cancelled(operation)
