"""Statistics kernel shared by every engine component.

Pure functions over aligned return matrices: moments, covariance,
volatility, Sharpe/Sortino, drawdown, VaR/CVaR and PSD projection.
Inputs with fewer than two observations, mismatched lengths or
non-finite values are rejected with ``DataError``.
"""

from __future__ import annotations

import logging
from typing import Literal, Mapping, Sequence, Union

import numpy as np
import pandas as pd
from scipy import stats

from quantrisk.exceptions import DataError
from quantrisk.types import PortfolioMetrics

logger = logging.getLogger(__name__)

ReturnsLike = Union[pd.DataFrame, Mapping[str, Sequence[float]], np.ndarray]
VarMethod = Literal["historical", "parametric"]


def as_return_matrix(returns: ReturnsLike, name: str = "returns") -> pd.DataFrame:
    """Coerce and validate a matrix of aligned return series.

    Parameters
    ----------
    returns : pd.DataFrame | Mapping[str, Sequence[float]] | np.ndarray
        Rows are periods, columns are assets
    name : str, default "returns"
        Input name used in error messages

    Returns
    -------
    pd.DataFrame
        Float matrix with string column labels

    Raises
    ------
    DataError
        If the matrix is empty, has fewer than 2 rows, mismatched series
        lengths or non-finite values
    """
    if isinstance(returns, pd.DataFrame):
        frame = returns.copy()
    elif isinstance(returns, Mapping):
        if not returns:
            raise DataError("empty asset set", field=name)
        lengths = {asset: len(series) for asset, series in returns.items()}
        if len(set(lengths.values())) > 1:
            msg = f"mismatched series lengths {lengths}"
            raise DataError(msg, field=name)
        frame = pd.DataFrame({asset: list(series) for asset, series in returns.items()})
    else:
        array = np.asarray(returns, dtype=float)
        if array.ndim == 1:
            array = array.reshape(-1, 1)
        if array.ndim != 2:
            msg = f"expected a 2-D matrix, got {array.ndim} dimensions"
            raise DataError(msg, field=name)
        frame = pd.DataFrame(array, columns=[f"asset_{i}" for i in range(array.shape[1])])

    if frame.shape[1] == 0:
        raise DataError("empty asset set", field=name)
    if frame.shape[0] < 2:
        msg = f"need at least 2 observations, got {frame.shape[0]}"
        raise DataError(msg, field=name)

    frame.columns = [str(c) for c in frame.columns]
    if frame.columns.duplicated().any():
        raise DataError("duplicate asset identifiers", field=name)

    try:
        frame = frame.astype(float)
    except (TypeError, ValueError) as e:
        msg = f"non-numeric values: {e}"
        raise DataError(msg, field=name) from e

    values = frame.to_numpy()
    if not np.isfinite(values).all():
        bad = frame.columns[~np.isfinite(values).all(axis=0)].tolist()
        msg = f"non-finite values (gaps) in {bad}"
        raise DataError(msg, field=name)

    return frame


def _as_series(returns: pd.Series | Sequence[float] | np.ndarray, name: str) -> np.ndarray:
    values = np.asarray(returns, dtype=float).ravel()
    if values.size < 2:
        msg = f"need at least 2 observations, got {values.size}"
        raise DataError(msg, field=name)
    if not np.isfinite(values).all():
        raise DataError("non-finite values", field=name)
    return values


def mean_returns(returns: ReturnsLike) -> pd.Series:
    """Sample mean per asset (per period)."""
    return as_return_matrix(returns).mean()


def covariance_matrix(returns: ReturnsLike, ridge: float = 1e-10) -> pd.DataFrame:
    """Sample covariance with a small diagonal ridge.

    Parameters
    ----------
    returns : ReturnsLike
        Aligned return matrix
    ridge : float, default 1e-10
        Added to the diagonal, relative to the mean variance

    Returns
    -------
    pd.DataFrame
        Per-period covariance matrix
    """
    frame = as_return_matrix(returns)
    cov = frame.cov()
    if ridge > 0:
        diag = np.diag(cov.to_numpy())
        scale = float(diag.mean()) if diag.mean() > 0 else 1.0
        cov = cov + np.eye(len(cov)) * ridge * scale
    return cov


def correlation_matrix(returns: ReturnsLike) -> pd.DataFrame:
    """Pearson correlation; assets with zero variance correlate 0 with others."""
    frame = as_return_matrix(returns)
    values = frame.corr().fillna(0.0).to_numpy(copy=True)
    np.fill_diagonal(values, 1.0)
    return pd.DataFrame(values, index=frame.columns, columns=frame.columns)


def correlation_from_covariance(cov: np.ndarray) -> np.ndarray:
    std = np.sqrt(np.clip(np.diag(cov), 0.0, None))
    denom = np.outer(std, std)
    with np.errstate(divide="ignore", invalid="ignore"):
        corr = np.where(denom > 0, cov / denom, 0.0)
    np.fill_diagonal(corr, 1.0)
    return corr


def average_correlation(corr: pd.DataFrame | np.ndarray) -> float:
    """Mean of the off-diagonal correlations (0 for a single asset)."""
    values = np.asarray(corr, dtype=float)
    n = values.shape[0]
    if n < 2:
        return 0.0
    mask = ~np.eye(n, dtype=bool)
    return float(values[mask].mean())


def annualized_volatility(
    returns: pd.Series | Sequence[float] | np.ndarray, periods_per_year: int = 252
) -> float:
    """Sample standard deviation scaled by sqrt(periods_per_year)."""
    values = _as_series(returns, "returns")
    return float(values.std(ddof=1) * np.sqrt(periods_per_year))


def portfolio_volatility(weights: np.ndarray, cov: np.ndarray) -> float:
    """sqrt(w' cov w) in the units of ``cov``."""
    w = np.asarray(weights, dtype=float)
    variance = float(w @ np.asarray(cov, dtype=float) @ w)
    return float(np.sqrt(max(variance, 0.0)))


def risk_contributions(weights: np.ndarray, cov: np.ndarray) -> np.ndarray:
    """Share of portfolio variance per asset, w_i (cov w)_i / w' cov w.

    Returns equal shares when the portfolio variance is zero.
    """
    w = np.asarray(weights, dtype=float)
    marginal = np.asarray(cov, dtype=float) @ w
    variance = float(w @ marginal)
    if variance <= 0:
        return np.full(len(w), 1.0 / len(w))
    return w * marginal / variance


def diversification_ratio(weights: np.ndarray, cov: np.ndarray) -> float:
    w = np.asarray(weights, dtype=float)
    vol = portfolio_volatility(w, cov)
    if vol <= 0:
        return 1.0
    return float(np.abs(w) @ np.sqrt(np.clip(np.diag(cov), 0.0, None)) / vol)


def sharpe_ratio(
    returns: pd.Series | Sequence[float] | np.ndarray,
    risk_free_rate: float = 0.0,
    periods_per_year: int = 252,
) -> float:
    """Annualized Sharpe ratio of per-period returns.

    Parameters
    ----------
    returns : array-like
        Per-period returns
    risk_free_rate : float, default 0.0
        Annualized risk-free rate
    periods_per_year : int, default 252
        Annualization factor

    Returns
    -------
    float
        Sharpe ratio, 0 when volatility is zero
    """
    values = _as_series(returns, "returns")
    vol = values.std(ddof=1) * np.sqrt(periods_per_year)
    excess = values.mean() * periods_per_year - risk_free_rate
    return float(excess / vol) if vol > 0 else 0.0


def sortino_ratio(
    returns: pd.Series | Sequence[float] | np.ndarray,
    risk_free_rate: float = 0.0,
    periods_per_year: int = 252,
) -> float:
    """Annualized Sortino ratio using the downside deviation below zero."""
    values = _as_series(returns, "returns")
    excess = values.mean() * periods_per_year - risk_free_rate
    downside = np.minimum(values, 0.0)
    downside_dev = np.sqrt((downside**2).mean()) * np.sqrt(periods_per_year)
    return float(excess / downside_dev) if downside_dev > 0 else 0.0


def drawdown_series(equity_curve: pd.Series | Sequence[float] | np.ndarray) -> np.ndarray:
    """Fractional drawdown from the running peak (non-negative)."""
    equity = _as_series(equity_curve, "equity_curve")
    peak = np.maximum.accumulate(equity)
    with np.errstate(divide="ignore", invalid="ignore"):
        dd = np.where(peak > 0, 1.0 - equity / peak, 0.0)
    return np.clip(dd, 0.0, None)


def max_drawdown(equity_curve: pd.Series | Sequence[float] | np.ndarray) -> float:
    """Largest peak-to-trough decline as a positive fraction."""
    return float(drawdown_series(equity_curve).max())


def value_at_risk(
    returns: pd.Series | Sequence[float] | np.ndarray,
    confidence: float = 0.95,
    method: VarMethod = "historical",
) -> float:
    """Value-at-Risk as a positive loss fraction.

    Parameters
    ----------
    returns : array-like
        Return observations (per period or per horizon)
    confidence : float, default 0.95
        Confidence level in (0, 1)
    method : {"historical", "parametric"}, default "historical"
        Empirical quantile or Gaussian approximation

    Returns
    -------
    float
        Loss not exceeded with probability ``confidence``; non-decreasing
        in ``confidence``
    """
    values = _as_series(returns, "returns")
    _check_confidence(confidence)

    if method == "historical":
        ordered = np.sort(values)
        return float(-ordered[_tail_index(len(ordered), confidence)])
    if method == "parametric":
        mu, sigma = values.mean(), values.std(ddof=1)
        return float(-(mu + sigma * stats.norm.ppf(1 - confidence)))
    msg = f"Unknown VaR method: {method}"
    raise DataError(msg, field="method")


def conditional_value_at_risk(
    returns: pd.Series | Sequence[float] | np.ndarray,
    confidence: float = 0.95,
    method: VarMethod = "historical",
) -> float:
    """Expected loss in the tail beyond VaR, as a positive fraction."""
    values = _as_series(returns, "returns")
    _check_confidence(confidence)

    if method == "historical":
        ordered = np.sort(values)
        tail = ordered[: _tail_index(len(ordered), confidence) + 1]
        return float(-tail.mean())
    if method == "parametric":
        mu, sigma = values.mean(), values.std(ddof=1)
        z = stats.norm.ppf(1 - confidence)
        return float(-(mu - sigma * stats.norm.pdf(z) / (1 - confidence)))
    msg = f"Unknown VaR method: {method}"
    raise DataError(msg, field="method")


def _tail_index(n: int, confidence: float) -> int:
    return min(int(np.floor((1 - confidence) * n)), n - 1)


def _check_confidence(confidence: float) -> None:
    if not 0 < confidence < 1:
        msg = f"confidence must be in (0, 1), got {confidence}"
        raise DataError(msg, field="confidence")


def nearest_psd(cov: np.ndarray, min_eigenvalue: float = 0.0) -> np.ndarray:
    """Project a symmetric matrix onto the PSD cone by eigenvalue clipping.

    The input variances are restored afterwards so that clipping only
    reshapes the correlation structure.
    """
    matrix = np.asarray(cov, dtype=float)
    matrix = (matrix + matrix.T) / 2
    eigvals, eigvecs = np.linalg.eigh(matrix)
    if eigvals.min() >= min_eigenvalue:
        return matrix

    logger.debug(f"Clipping {int((eigvals < min_eigenvalue).sum())} eigenvalues to {min_eigenvalue}")
    clipped = eigvecs @ np.diag(np.maximum(eigvals, min_eigenvalue)) @ eigvecs.T
    clipped = (clipped + clipped.T) / 2

    target = np.clip(np.diag(matrix), 0.0, None)
    current = np.diag(clipped)
    with np.errstate(divide="ignore", invalid="ignore"):
        scale = np.where(current > 0, np.sqrt(target / current), 0.0)
    return clipped * np.outer(scale, scale)


def portfolio_metrics(
    weights: np.ndarray,
    mean: np.ndarray,
    cov: np.ndarray,
    assets: list[str],
    periods_per_year: int = 252,
    risk_free_rate: float = 0.0,
    factor_loadings: np.ndarray | None = None,
    factor_names: list[str] | None = None,
) -> PortfolioMetrics:
    """Annualized metrics for a weight vector.

    Parameters
    ----------
    weights : np.ndarray
        Weights aligned to ``assets``
    mean : np.ndarray
        Per-period mean returns
    cov : np.ndarray
        Per-period covariance
    assets : list[str]
        Asset identifiers
    periods_per_year : int, default 252
        Annualization factor
    risk_free_rate : float, default 0.0
        Annualized risk-free rate
    factor_loadings : np.ndarray | None, default None
        Asset x factor loadings
    factor_names : list[str] | None, default None
        Factor labels for ``factor_loadings``

    Returns
    -------
    PortfolioMetrics
    """
    w = np.asarray(weights, dtype=float)
    expected = float(w @ mean) * periods_per_year
    vol = portfolio_volatility(w, cov) * np.sqrt(periods_per_year)
    sharpe = (expected - risk_free_rate) / vol if vol > 0 else 0.0
    rc = risk_contributions(w, cov)

    exposures = None
    if factor_loadings is not None and factor_names is not None:
        realized = w @ factor_loadings
        exposures = {f: float(x) for f, x in zip(factor_names, realized)}

    return PortfolioMetrics(
        expected_return=expected,
        volatility=float(vol),
        sharpe_ratio=float(sharpe),
        risk_contributions={a: float(x) for a, x in zip(assets, rc)},
        diversification_ratio=diversification_ratio(w, cov),
        factor_exposures=exposures,
    )
