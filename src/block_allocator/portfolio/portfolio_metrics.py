import numpy as np
import pandas as pd
from typing import Any, Dict, Optional
from dataclasses import dataclass, asdict
import logging
import warnings

from sklearn.covariance import LedoitWolf

from ..data.returns import AlignedReturns

warnings.filterwarnings('ignore')

logger = logging.getLogger(__name__)

# Standard deviations below this are rounding noise on a constant series
ZERO_STD_EPSILON = 1e-12


@dataclass
class AnalysisConfig:
    """Market assumptions shared by every calculator."""
    risk_free_rate: float = 2.0        # annual, percent
    annualization_factor: float = 252  # periods per year

    @property
    def daily_risk_free_rate(self) -> float:
        return self.risk_free_rate / 100 / self.annualization_factor

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'AnalysisConfig':
        data = data or {}
        config = cls(
            risk_free_rate=float(data.get('risk_free_rate', data.get('riskFreeRate', 2.0))),
            annualization_factor=float(data.get('annualization_factor',
                                                data.get('annualizationFactor', 252))),
        )
        if config.annualization_factor <= 0:
            raise ValueError(f"annualization_factor must be positive, got {config.annualization_factor}")
        return config


DEFAULT_ANALYSIS_CONFIG = AnalysisConfig()


@dataclass(frozen=True)
class PortfolioMetrics:
    """Annualized return and volatility in percent, Sharpe unitless."""
    annualized_return: float = 0.0
    annualized_volatility: float = 0.0
    sharpe_ratio: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def portfolio_daily_returns(weights: np.ndarray, returns: np.ndarray) -> np.ndarray:
    """Weighted sum across assets for every date."""
    weights = np.asarray(weights, dtype=float)
    returns = np.asarray(returns, dtype=float)
    if returns.size == 0 or weights.size == 0:
        return np.zeros(0)
    return weights @ returns


def metrics_from_daily_returns(daily_returns: np.ndarray,
                               config: AnalysisConfig = DEFAULT_ANALYSIS_CONFIG) -> PortfolioMetrics:
    """
    Annualize a daily return series.

    Volatility and Sharpe use the sample (N-1) standard deviation. Any
    degenerate case (no data, a single observation, zero volatility)
    resolves to 0 instead of NaN or infinity.
    """
    daily_returns = np.asarray(daily_returns, dtype=float)
    if daily_returns.size == 0:
        return PortfolioMetrics()

    factor = config.annualization_factor
    mean_daily = float(daily_returns.mean())
    daily_std = float(daily_returns.std(ddof=1)) if daily_returns.size > 1 else 0.0
    if not np.isfinite(daily_std) or daily_std < ZERO_STD_EPSILON:
        daily_std = 0.0

    annualized_return = mean_daily * factor * 100
    annualized_volatility = daily_std * np.sqrt(factor) * 100
    if annualized_volatility > 0:
        sharpe = (mean_daily - config.daily_risk_free_rate) / daily_std * np.sqrt(factor)
    else:
        sharpe = 0.0

    return PortfolioMetrics(
        annualized_return=float(annualized_return),
        annualized_volatility=float(annualized_volatility),
        sharpe_ratio=float(sharpe),
    )


def calculate_portfolio_metrics(weights: np.ndarray,
                                returns: np.ndarray,
                                config: AnalysisConfig = DEFAULT_ANALYSIS_CONFIG) -> PortfolioMetrics:
    """
    Score a weight vector against an aligned return matrix.

    Args:
        weights: Array of length n_assets
        returns: Matrix of shape (n_assets, n_dates)
        config: Risk-free rate and annualization factor

    Returns:
        PortfolioMetrics, all zero when the return matrix is empty
    """
    returns = np.asarray(returns, dtype=float)
    if returns.ndim != 2 or returns.shape[0] == 0 or returns.shape[1] == 0:
        return PortfolioMetrics()
    return metrics_from_daily_returns(portfolio_daily_returns(weights, returns), config)


def calculate_covariance_matrix(returns: np.ndarray, method: str = 'sample') -> np.ndarray:
    """
    Covariance between assets.

    Args:
        returns: Matrix of shape (n_assets, n_dates)
        method: 'sample' (N-1 denominator) or 'ledoit_wolf' (shrinkage estimate)
    """
    returns = np.asarray(returns, dtype=float)
    if returns.ndim != 2 or returns.shape[0] == 0 or returns.shape[1] == 0:
        return np.zeros((0, 0))

    if method == 'sample':
        if returns.shape[1] < 2:
            return np.zeros((returns.shape[0], returns.shape[0]))
        return np.atleast_2d(np.cov(returns, ddof=1))
    elif method == 'ledoit_wolf':
        estimator = LedoitWolf().fit(returns.T)
        return estimator.covariance_
    else:
        raise ValueError(f"Unknown covariance method: {method}")


def calculate_correlation_matrix(returns: np.ndarray) -> np.ndarray:
    """Pearson correlation; pairs involving a zero-variance series are 0."""
    returns = np.asarray(returns, dtype=float)
    if returns.ndim != 2 or returns.shape[0] == 0 or returns.shape[1] == 0:
        return np.zeros((0, 0))

    n_assets = returns.shape[0]
    if returns.shape[1] < 2:
        return np.eye(n_assets)

    stds = returns.std(axis=1, ddof=1)
    stds[stds < ZERO_STD_EPSILON] = 0.0
    cov = np.atleast_2d(np.cov(returns, ddof=1))
    denom = np.outer(stds, stds)
    with np.errstate(divide='ignore', invalid='ignore'):
        corr = np.where(denom > 0, cov / denom, 0.0)
    np.fill_diagonal(corr, 1.0)
    return corr


def simulate_weighted_portfolio_equity(weights: Dict[str, float],
                                       aligned: AlignedReturns,
                                       starting_capital: float = 100000.0) -> pd.DataFrame:
    """
    Replay the historical aligned returns under fixed weights.

    Returns:
        DataFrame indexed by date with equity, high_water_mark and drawdown_pct
    """
    columns = ['equity', 'high_water_mark', 'drawdown_pct']
    if aligned.is_empty:
        return pd.DataFrame(columns=columns)

    daily = portfolio_daily_returns(aligned.weights_vector(weights), aligned.returns)
    equity = starting_capital * np.cumprod(1 + daily)
    high_water = np.maximum.accumulate(np.concatenate([[starting_capital], equity]))[1:]
    with np.errstate(divide='ignore', invalid='ignore'):
        drawdown = np.where(high_water > 0, (equity - high_water) / high_water * 100, 0.0)

    return pd.DataFrame(
        {'equity': equity, 'high_water_mark': high_water, 'drawdown_pct': drawdown},
        index=pd.Index(aligned.dates, name='date'),
    )
