import numpy as np
from scipy import stats
from typing import Any, Dict, List, Optional, Sequence
from dataclasses import dataclass, field
import logging

from ..returns import BlockReturns, DateAlignment, align_returns, extract_strategy_returns
from ..trades import Trade, group_trades_by_strategy
from ...exceptions import InsufficientAssetsError, InsufficientDataError

logger = logging.getLogger(__name__)

MIN_OVERLAPPING_DAYS = 30
MIN_DATE_COVERAGE = 0.5
OUTLIER_Z_THRESHOLD = 5.0

INSUFFICIENT_ASSETS = 'INSUFFICIENT_ASSETS'
INSUFFICIENT_DATA = 'INSUFFICIENT_DATA'


@dataclass
class OptimizationValidation:
    """Outcome of a pre-optimization check."""
    valid: bool
    error: Optional[str] = None
    failure: Optional[str] = None  # INSUFFICIENT_ASSETS or INSUFFICIENT_DATA
    assets: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)

    def raise_if_invalid(self):
        """Convert a failed check into the matching typed error."""
        if self.valid:
            return
        if self.failure == INSUFFICIENT_ASSETS:
            raise InsufficientAssetsError(self.error, assets=self.assets)
        raise InsufficientDataError(self.error, assets=self.assets)


@dataclass
class DateRange:
    start: str
    end: str
    days: int


@dataclass
class BlocksDateRangeInfo:
    overall: DateRange
    overlapping: DateRange
    per_block: Dict[str, DateRange]


def validate_trades_for_optimization(trades: Sequence[Trade]) -> OptimizationValidation:
    """Strategy-level optimization needs two strategies with at least two return points each."""
    if not trades:
        return OptimizationValidation(valid=False, error='No trades provided', failure=INSUFFICIENT_DATA)

    strategies = sorted({t.strategy_name for t in trades})
    if len(strategies) < 2:
        return OptimizationValidation(
            valid=False,
            error='At least 2 strategies are required for portfolio optimization',
            failure=INSUFFICIENT_ASSETS,
            assets=strategies,
        )

    usable = {sr.strategy for sr in extract_strategy_returns(list(trades))}
    if len(usable) < 2:
        return OptimizationValidation(
            valid=False,
            error='Insufficient data: Each strategy needs at least 2 trades with valid dates',
            failure=INSUFFICIENT_DATA,
            assets=[s for s in strategies if s not in usable],
        )

    dropped = [s for s in strategies if s not in usable]
    warnings = [f"{s} has fewer than 2 trading days and will be excluded" for s in dropped]

    outliers = count_pl_outliers(trades)
    for strategy, count in outliers.items():
        warnings.append(f"{strategy} has {count} trades with extreme P&L (|z| > {OUTLIER_Z_THRESHOLD:g})")

    return OptimizationValidation(valid=True, assets=strategies, warnings=warnings,
                                  stats={'total_strategies': len(strategies),
                                         'usable_strategies': len(usable),
                                         'outlier_trades': outliers})


def count_pl_outliers(trades: Sequence[Trade], threshold: float = OUTLIER_Z_THRESHOLD) -> Dict[str, int]:
    """Per strategy, the number of trades whose P&L z-score exceeds ``threshold``."""
    outliers = {}
    for strategy, strategy_trades in group_trades_by_strategy(list(trades)).items():
        pl = np.array([t.pl for t in strategy_trades], dtype=float)
        if len(pl) < 3 or np.std(pl) == 0:
            continue
        count = int((np.abs(stats.zscore(pl)) > threshold).sum())
        if count:
            outliers[strategy] = count
    return outliers


def validate_blocks_for_optimization(block_returns: Sequence[BlockReturns],
                                     mode: DateAlignment = DateAlignment.OVERLAPPING) -> OptimizationValidation:
    """
    Check that blocks can be optimized against each other.

    Warns when overlapping mode leaves fewer than 30 shared days, and for any
    block that trades on less than half of the aligned dates.
    """
    if not block_returns:
        return OptimizationValidation(valid=False, error='No blocks provided', failure=INSUFFICIENT_ASSETS)

    names = [br.block_name for br in block_returns]
    if len(block_returns) < 2:
        return OptimizationValidation(
            valid=False,
            error='At least 2 blocks are required for portfolio optimization',
            failure=INSUFFICIENT_ASSETS,
            assets=names,
        )

    aligned = align_returns(block_returns, mode)
    if aligned.n_dates < 2:
        error = ('No overlapping trading dates found between blocks. Try zero-padding mode.'
                 if mode == DateAlignment.OVERLAPPING else 'Insufficient data for optimization')
        return OptimizationValidation(valid=False, error=error, failure=INSUFFICIENT_DATA, assets=names)

    warnings = []
    if mode == DateAlignment.OVERLAPPING and aligned.n_dates < MIN_OVERLAPPING_DAYS:
        warnings.append(f"Limited overlapping data: only {aligned.n_dates} days")

    for br in block_returns:
        coverage = len(br.dates) / aligned.n_dates
        if coverage < MIN_DATE_COVERAGE:
            warnings.append(f"{br.block_name} has limited data coverage ({coverage * 100:.0f}%)")

    for warning in warnings:
        logger.warning(warning)

    all_dates = sorted(d for br in block_returns for d in br.dates)
    return OptimizationValidation(
        valid=True,
        assets=names,
        warnings=warnings,
        stats={
            'total_blocks': len(block_returns),
            'overlapping_dates': aligned.n_dates,
            'date_range': {'start': all_dates[0], 'end': all_dates[-1]},
        },
    )


def get_blocks_date_range_info(block_returns: Sequence[BlockReturns]) -> BlocksDateRangeInfo:
    """Overall, overlapping and per-block date ranges. ``overall.days`` counts every block's days."""
    if not block_returns:
        empty = DateRange(start='', end='', days=0)
        return BlocksDateRangeInfo(overall=empty, overlapping=empty, per_block={})

    all_dates = sorted(d for br in block_returns for d in br.dates)

    common = set(block_returns[0].dates)
    for br in block_returns[1:]:
        common &= set(br.dates)
    overlapping = sorted(common)

    return BlocksDateRangeInfo(
        overall=DateRange(start=all_dates[0], end=all_dates[-1], days=len(all_dates)),
        overlapping=DateRange(
            start=overlapping[0] if overlapping else '',
            end=overlapping[-1] if overlapping else '',
            days=len(overlapping),
        ),
        per_block={
            br.block_name: DateRange(start=br.dates[0] if br.dates else '',
                                     end=br.dates[-1] if br.dates else '',
                                     days=len(br.dates))
            for br in block_returns
        },
    )
