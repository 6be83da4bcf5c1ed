import numpy as np
from typing import Any, Callable, Dict, List, Optional, Sequence
from dataclasses import dataclass, field, asdict, replace
from enum import Enum
import logging
import warnings

from ..data.returns import AlignedReturns, DateAlignment, ReturnSeries, align_returns
from ..exceptions import NoEfficientPortfolioError
from .portfolio_metrics import AnalysisConfig, calculate_portfolio_metrics
from .weight_sampler import (ConstrainedWeightSampler, DEFAULT_CONSTRAINTS,
                             PortfolioConstraints)

warnings.filterwarnings('ignore')

# Return/volatility differences below this are treated as equal
FRONTIER_TOLERANCE = 0.01
PROGRESS_INTERVAL = 50


class OptimizationObjective(Enum):
    """Rule for picking one portfolio off an efficient frontier."""
    MAX_SHARPE = "max-sharpe"
    MIN_VOLATILITY = "min-volatility"
    MAX_RETURN = "max-return"


@dataclass(frozen=True)
class PortfolioResult:
    """One scored random portfolio."""
    weights: Dict[str, float]
    annualized_return: float
    annualized_volatility: float
    sharpe_ratio: float
    is_efficient: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BlockOptimizationConfig:
    """Settings for a frontier run across blocks (or any set of series)."""
    date_alignment: DateAlignment = DateAlignment.OVERLAPPING
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    constraints: PortfolioConstraints = field(default_factory=PortfolioConstraints)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'BlockOptimizationConfig':
        data = data or {}
        alignment = data.get('date_alignment', data.get('dateAlignment', DateAlignment.OVERLAPPING))
        return cls(
            date_alignment=DateAlignment(alignment),
            analysis=AnalysisConfig.from_dict(data),
            constraints=PortfolioConstraints.from_dict(data.get('constraints')),
        )


DEFAULT_BLOCK_CONFIG = BlockOptimizationConfig()

ProgressCallback = Callable[[float, PortfolioResult], None]


@dataclass
class FrontierRun:
    """Population produced by one engine run plus the data it was scored on."""
    portfolios: List[PortfolioResult]
    aligned: AlignedReturns
    fallback_count: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.portfolios


def identify_efficient_frontier(portfolios: Sequence[PortfolioResult]) -> List[PortfolioResult]:
    """
    Keep the portfolios no other portfolio dominates in return/volatility space.

    Q dominates P when Q has a strictly higher return with lower or equal
    volatility, or an equal return with strictly lower volatility. Differences
    under FRONTIER_TOLERANCE count as equal. Survivors are returned as copies
    tagged ``is_efficient=True``; the input population is left untouched.
    """
    efficient = []

    for i, portfolio in enumerate(portfolios):
        dominated = False
        for j, other in enumerate(portfolios):
            if i == j:
                continue

            higher_return = other.annualized_return > portfolio.annualized_return
            equal_return = abs(other.annualized_return - portfolio.annualized_return) < FRONTIER_TOLERANCE
            lower_vol = other.annualized_volatility < portfolio.annualized_volatility
            equal_vol = abs(other.annualized_volatility - portfolio.annualized_volatility) < FRONTIER_TOLERANCE

            if (higher_return and (lower_vol or equal_vol)) or (equal_return and lower_vol):
                dominated = True
                break

        if not dominated:
            efficient.append(replace(portfolio, is_efficient=True))

    return efficient


def select_optimal_portfolio(frontier: Sequence[PortfolioResult],
                             objective: OptimizationObjective = OptimizationObjective.MAX_SHARPE
                             ) -> PortfolioResult:
    """Pick one portfolio from a frontier; ties keep the first encountered."""
    if not frontier:
        raise NoEfficientPortfolioError("No efficient portfolios found")

    if objective == OptimizationObjective.MIN_VOLATILITY:
        return min(frontier, key=lambda p: p.annualized_volatility)
    elif objective == OptimizationObjective.MAX_RETURN:
        return max(frontier, key=lambda p: p.annualized_return)
    return max(frontier, key=lambda p: p.sharpe_ratio)


class MonteCarloFrontierEngine:
    """
    Random-search portfolio generator.

    Aligns the input series, then repeatedly draws constrained weights and
    scores them. Progress is reported on the first draw, every
    PROGRESS_INTERVAL draws, and on the final draw. The engine does not
    extract the frontier itself; callers pass ``run(...).portfolios`` to
    ``identify_efficient_frontier``.
    """

    def __init__(self,
                 constraints: PortfolioConstraints = DEFAULT_CONSTRAINTS,
                 analysis: Optional[AnalysisConfig] = None,
                 date_alignment: DateAlignment = DateAlignment.ZERO_PADDING,
                 seed: Optional[int] = None,
                 rng: Optional[np.random.Generator] = None):
        self.constraints = constraints
        self.analysis = analysis or AnalysisConfig()
        self.date_alignment = date_alignment
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        self.logger = logging.getLogger(__name__)

    @classmethod
    def for_blocks(cls,
                   config: BlockOptimizationConfig = DEFAULT_BLOCK_CONFIG,
                   seed: Optional[int] = None,
                   rng: Optional[np.random.Generator] = None) -> 'MonteCarloFrontierEngine':
        return cls(
            constraints=config.constraints,
            analysis=config.analysis,
            date_alignment=config.date_alignment,
            seed=seed,
            rng=rng,
        )

    def run(self,
            series: Sequence[ReturnSeries],
            num_simulations: int,
            progress_callback: Optional[ProgressCallback] = None) -> FrontierRun:
        """
        Generate ``num_simulations`` scored portfolios.

        Args:
            series: Strategy or block return series
            num_simulations: Number of random weight draws
            progress_callback: Called with (percent_complete, latest_portfolio)

        Returns:
            FrontierRun; its population is empty when fewer than two assets or
            fewer than two aligned dates are available
        """
        aligned = align_returns(series, self.date_alignment)

        if aligned.n_assets < 2:
            self.logger.warning("At least 2 assets required for optimization")
            return FrontierRun(portfolios=[], aligned=aligned)
        if aligned.n_dates < 2:
            self.logger.warning("Insufficient overlapping data between assets")
            return FrontierRun(portfolios=[], aligned=aligned)

        self.logger.info(
            f"Running {num_simulations} portfolio draws over {aligned.n_assets} assets "
            f"and {aligned.n_dates} dates"
        )

        sampler = ConstrainedWeightSampler(self.constraints, rng=self.rng)
        portfolios = []

        for i in range(num_simulations):
            weights = sampler.sample(aligned.n_assets)
            metrics = calculate_portfolio_metrics(weights, aligned.returns, self.analysis)

            portfolio = PortfolioResult(
                weights={label: float(w) for label, w in zip(aligned.asset_labels, weights)},
                annualized_return=metrics.annualized_return,
                annualized_volatility=metrics.annualized_volatility,
                sharpe_ratio=metrics.sharpe_ratio,
            )
            portfolios.append(portfolio)

            if progress_callback and (i % PROGRESS_INTERVAL == 0 or i == num_simulations - 1):
                progress_callback((i + 1) / num_simulations * 100, portfolio)

        if sampler.fallback_count:
            self.logger.warning(
                f"{sampler.fallback_count} of {num_simulations} draws fell back to equal weights"
            )

        return FrontierRun(portfolios=portfolios, aligned=aligned, fallback_count=sampler.fallback_count)
