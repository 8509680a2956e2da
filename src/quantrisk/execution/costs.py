"""Transaction cost models.

This module implements the per-fill frictions applied by the backtester:
a proportional commission on notional and an adverse slippage move on the
fill price.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class CommissionModel:
    """Proportional commission on traded notional.

    Parameters
    ----------
    rate : float, default 0.001
        Commission as a fraction of notional (0.001 = 10 bps)
    min_fee : float, default 0.0
        Minimum fee per non-zero fill

    Examples
    --------
    >>> CommissionModel(rate=0.001).cost(10_000.0)
    10.0
    """

    def __init__(self, rate: float = 0.001, min_fee: float = 0.0) -> None:
        """Initialize commission model."""
        if rate < 0 or min_fee < 0:
            msg = "Commission rate and minimum fee must be non-negative"
            raise ValueError(msg)
        self.rate = rate
        self.min_fee = min_fee

    def cost(self, notional: float) -> float:
        if notional == 0:
            return 0.0
        return max(abs(notional) * self.rate, self.min_fee)


class SlippageModel:
    """Fixed proportional slippage.

    Buys fill above and sells fill below the reference price.

    Parameters
    ----------
    rate : float, default 0.0005
        Price impact as a fraction of price (0.0005 = 5 bps)
    """

    def __init__(self, rate: float = 0.0005) -> None:
        """Initialize slippage model."""
        if rate < 0:
            msg = "Slippage rate must be non-negative"
            raise ValueError(msg)
        self.rate = rate

    def fill_price(self, price: float, is_buy: bool) -> float:
        return price * (1 + self.rate) if is_buy else price * (1 - self.rate)


class ExecutionCostModel:
    """Commission plus slippage applied to every simulated fill.

    Parameters
    ----------
    commission : float, default 0.001
        Commission rate on notional
    slippage : float, default 0.0005
        Slippage rate on price
    min_commission : float, default 0.0
        Minimum commission per fill

    Examples
    --------
    >>> costs = ExecutionCostModel(commission=0.001, slippage=0.0005)
    >>> price, fee = costs.fill(100.0, quantity=10, is_buy=True)
    """

    def __init__(
        self, commission: float = 0.001, slippage: float = 0.0005, min_commission: float = 0.0
    ) -> None:
        """Initialize composite execution cost model."""
        self.commission = CommissionModel(commission, min_fee=min_commission)
        self.slippage = SlippageModel(slippage)
        logger.info(
            f"Initialized ExecutionCostModel with commission={commission}, "
            f"min_commission={min_commission}, slippage={slippage}"
        )

    def fill(self, price: float, quantity: int, is_buy: bool) -> tuple[float, float]:
        """Fill price after slippage and the commission on the resulting notional.

        Parameters
        ----------
        price : float
            Reference price (open, stop level or close)
        quantity : int
            Shares traded
        is_buy : bool
            Direction of the fill

        Returns
        -------
        tuple[float, float]
            (fill price, commission)
        """
        fill_price = self.slippage.fill_price(price, is_buy)
        return fill_price, self.commission.cost(fill_price * quantity)
