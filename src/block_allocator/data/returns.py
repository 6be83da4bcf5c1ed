import numpy as np
import pandas as pd
from typing import Dict, List, Optional, Sequence, Union
from dataclasses import dataclass, field
from enum import Enum
import logging
import math

from .trades import Trade, group_trades_by_strategy, sort_trades

logger = logging.getLogger(__name__)

DEFAULT_STARTING_EQUITY = 10000.0
# fundsAtClose above this is almost certainly an epoch timestamp, not a balance
MAX_PLAUSIBLE_FUNDS = 1_000_000_000


class DateAlignment(Enum):
    """How return series with different trading dates are put on one axis."""
    ZERO_PADDING = "zero-padding"  # union of dates, gaps filled with 0.0
    OVERLAPPING = "overlapping"    # intersection of dates only


@dataclass
class StrategyReturns:
    """Daily fractional returns of one strategy."""
    strategy: str
    dates: List[str]
    returns: np.ndarray
    trades: List[Trade] = field(default_factory=list)

    @property
    def label(self) -> str:
        return self.strategy


@dataclass
class BlockStats:
    total_pl: float
    sharpe_ratio: float
    win_rate: float
    trade_count: int


@dataclass
class BlockReturns:
    """Daily fractional returns of a whole block, all strategies summed."""
    block_id: str
    block_name: str
    dates: List[str]
    returns: np.ndarray
    trades: List[Trade] = field(default_factory=list)
    stats: Optional[BlockStats] = None

    @property
    def label(self) -> str:
        return self.block_name


ReturnSeries = Union[StrategyReturns, BlockReturns]


@dataclass
class AlignedReturns:
    """Return matrix of shape (n_assets, n_dates) on a shared sorted date axis."""
    asset_labels: List[str]
    dates: List[str]
    returns: np.ndarray

    @property
    def n_assets(self) -> int:
        return len(self.asset_labels)

    @property
    def n_dates(self) -> int:
        return len(self.dates)

    @property
    def is_empty(self) -> bool:
        return self.n_assets == 0 or self.n_dates == 0

    def to_frame(self) -> pd.DataFrame:
        """Dates as index, one column per asset."""
        index = pd.to_datetime(pd.Index(self.dates, name='date'))
        if self.n_assets == 0:
            return pd.DataFrame(index=index)
        return pd.DataFrame(self.returns.T, index=index, columns=self.asset_labels)

    def weights_vector(self, weights: Dict[str, float]) -> np.ndarray:
        """Weight mapping reordered to match ``asset_labels``; missing assets get 0."""
        return np.array([weights.get(label, 0.0) for label in self.asset_labels], dtype=float)

    @classmethod
    def empty(cls) -> 'AlignedReturns':
        return cls(asset_labels=[], dates=[], returns=np.zeros((0, 0)))


def _usable_funds(trade: Trade, context: str) -> float:
    """funds_at_close as a float, or NaN when missing or corrupted."""
    funds = trade.funds_at_close
    if funds is None:
        return float('nan')
    try:
        funds = float(funds)
    except (TypeError, ValueError):
        logger.warning(f"[{context}] Non-numeric funds_at_close for trade on {trade.date_opened}")
        return float('nan')
    if funds > MAX_PLAUSIBLE_FUNDS:
        logger.warning(
            f"[{context}] Suspicious funds_at_close value ({funds}) looks like a timestamp. "
            f"Trade date: {trade.date_opened}"
        )
        return float('nan')
    if not math.isfinite(funds) or funds <= 0:
        return float('nan')
    return funds


def starting_equity(first_trade: Trade, context: str = "Returns") -> float:
    """Account equity before ``first_trade``: its funds-at-close minus its P&L, else 10,000."""
    funds = _usable_funds(first_trade, context)
    pl = first_trade.pl or 0.0
    if not math.isnan(funds) and funds > pl:
        return funds - pl
    return DEFAULT_STARTING_EQUITY


def _daily_pl(trades: List[Trade]) -> Dict[str, float]:
    daily: Dict[str, float] = {}
    for trade in trades:
        key = trade.date_key
        if key is None:
            continue
        daily[key] = daily.get(key, 0.0) + trade.pl
    return daily


def _pl_to_returns(daily_pl: Dict[str, float], equity: float):
    """Convert per-day P&L into returns against a running equity base."""
    dates: List[str] = []
    returns: List[float] = []
    for day in sorted(daily_pl):
        day_pl = daily_pl[day]
        if equity > 0:
            dates.append(day)
            returns.append(day_pl / equity)
            equity += day_pl
    return dates, np.array(returns, dtype=float)


def extract_strategy_returns(trades: List[Trade]) -> List[StrategyReturns]:
    """
    Convert trade records into one daily return series per strategy.

    Same-day P&L is summed and divided by the running equity, which starts at
    the first trade's funds-at-close minus its own P&L (10,000 when that is not
    available). Strategies with fewer than two return points are dropped.
    """
    strategy_returns = []

    for strategy, strategy_trades in group_trades_by_strategy(trades).items():
        ordered = sort_trades(strategy_trades)
        equity = starting_equity(ordered[0], f"Strategy: {strategy}")
        dates, returns = _pl_to_returns(_daily_pl(ordered), equity)

        if len(returns) >= 2:
            strategy_returns.append(StrategyReturns(
                strategy=strategy,
                dates=dates,
                returns=returns,
                trades=strategy_trades,
            ))
        else:
            logger.debug(f"Dropping strategy {strategy}: only {len(returns)} return points")

    return strategy_returns


def extract_block_returns(block_id: str,
                          block_name: str,
                          trades: List[Trade],
                          risk_free_rate: float = 2.0,
                          annualization_factor: float = 252) -> Optional[BlockReturns]:
    """
    Extract daily returns for a whole block, treating it as one portfolio.

    Args:
        block_id: Identifier supplied by the caller
        block_name: Display name, used as the asset label
        trades: All trades of the block, any strategy
        risk_free_rate: Annual risk-free rate in percent, for the summary Sharpe
        annualization_factor: Periods per year

    Returns:
        BlockReturns, or None when the block has no trades or fewer than two return points
    """
    if not trades:
        return None

    context = f"Block: {block_name}"
    corrupted = sum(1 for t in trades if math.isnan(_usable_funds(t, context)))
    if corrupted:
        logger.warning(f"[{context}] {corrupted} trades have unusable funds_at_close values")

    ordered = sort_trades(trades)
    equity = starting_equity(ordered[0], context)
    dates, returns = _pl_to_returns(_daily_pl(ordered), equity)

    if len(returns) < 2:
        return None

    total_pl = float(sum(t.pl for t in ordered))
    winners = sum(1 for t in ordered if t.pl > 0)
    win_rate = winners / len(ordered) * 100

    std = returns.std(ddof=1)
    daily_rf = risk_free_rate / 100 / annualization_factor
    sharpe = (returns.mean() - daily_rf) / std * np.sqrt(annualization_factor) if std > 1e-12 else 0.0

    return BlockReturns(
        block_id=block_id,
        block_name=block_name,
        dates=dates,
        returns=returns,
        trades=ordered,
        stats=BlockStats(
            total_pl=total_pl,
            sharpe_ratio=float(sharpe),
            win_rate=win_rate,
            trade_count=len(ordered),
        ),
    )


def align_returns(series: Sequence[ReturnSeries],
                  mode: DateAlignment = DateAlignment.ZERO_PADDING) -> AlignedReturns:
    """
    Put several return series on one sorted date axis.

    ZERO_PADDING uses the union of all dates and fills gaps with 0.0;
    OVERLAPPING keeps only dates every series traded on.
    """
    if not series:
        return AlignedReturns.empty()

    if mode == DateAlignment.OVERLAPPING:
        common = set(series[0].dates)
        for s in series[1:]:
            common &= set(s.dates)
        dates = sorted(common)
        if not dates:
            logger.warning("No overlapping dates found between series. Consider zero-padding mode.")
            return AlignedReturns.empty()
    else:
        all_dates = set()
        for s in series:
            all_dates.update(s.dates)
        dates = sorted(all_dates)

    matrix = np.zeros((len(series), len(dates)))
    for row, s in enumerate(series):
        lookup = dict(zip(s.dates, s.returns))
        matrix[row] = [lookup.get(d, 0.0) for d in dates]

    return AlignedReturns(
        asset_labels=[s.label for s in series],
        dates=dates,
        returns=matrix,
    )
