from typing import Dict, List, Optional, Sequence
from dataclasses import dataclass, field
import logging

from ..data.returns import DateAlignment, StrategyReturns, align_returns, extract_strategy_returns
from ..data.trades import Trade
from ..portfolio.hierarchical_optimizer import Allocation, HierarchicalResult, OptimizedBlock
from ..portfolio.portfolio_metrics import AnalysisConfig, PortfolioMetrics, calculate_portfolio_metrics


@dataclass
class FilteredStrategy:
    """A strategy removed because its allocation cannot cover its margin."""
    block_name: str
    strategy_name: str
    allocated_capital: float
    required_margin: float
    weight: float


@dataclass
class MarginFilterResult:
    portfolio_metrics: PortfolioMetrics
    combined_allocation: Allocation
    filtered_strategies: List[FilteredStrategy] = field(default_factory=list)
    total_filtered_weight: float = 0.0


def calculate_strategy_margin_requirements(trades: Sequence[Trade]) -> Dict[str, float]:
    """
    Average margin requirement per strategy.

    Only trades with a positive margin count; strategies without any such
    trade are absent from the result and are never filtered.
    """
    sums: Dict[str, float] = {}
    counts: Dict[str, int] = {}

    for trade in trades:
        margin = trade.margin_req or 0.0
        if margin > 0:
            strategy = trade.strategy_name
            sums[strategy] = sums.get(strategy, 0.0) + margin
            counts[strategy] = counts.get(strategy, 0) + 1

    return {strategy: sums[strategy] / counts[strategy] for strategy in sums}


class MarginFeasibilityFilter:
    """
    Removes strategies whose allocated dollars fall short of their average
    historical margin, then divides the surviving weights by one minus the
    filtered weight, so a fully invested allocation again sums to 1. The
    portfolio is rescored on the survivors' returns.
    """

    def __init__(self, analysis: Optional[AnalysisConfig] = None):
        self.analysis = analysis or AnalysisConfig()
        self.logger = logging.getLogger(__name__)

    def apply(self,
              result: HierarchicalResult,
              total_capital: float,
              optimized_blocks: Optional[Sequence[OptimizedBlock]] = None) -> Optional[MarginFilterResult]:
        """
        Args:
            result: Hierarchical optimization output
            total_capital: Dollars to be deployed across the whole allocation
            optimized_blocks: Blocks to read trades and returns from, defaults
                to ``result.optimized_blocks``

        Returns:
            MarginFilterResult, or None when every strategy is feasible
        """
        blocks = list(optimized_blocks if optimized_blocks is not None else result.optimized_blocks)
        all_trades = [trade for block in blocks for trade in block.trades]
        requirements = calculate_strategy_margin_requirements(all_trades)

        filtered: List[FilteredStrategy] = []
        kept = []
        total_filtered_weight = 0.0

        for block_name, strategies in result.combined_allocation.items():
            for strategy_name, weight in strategies.items():
                allocated = weight * total_capital
                required = requirements.get(strategy_name, 0.0)

                if required > 0 and allocated < required:
                    filtered.append(FilteredStrategy(
                        block_name=block_name,
                        strategy_name=strategy_name,
                        allocated_capital=allocated,
                        required_margin=required,
                        weight=weight,
                    ))
                    total_filtered_weight += weight
                else:
                    kept.append((block_name, strategy_name, weight))

        if not filtered:
            self.logger.debug(f"All strategies meet margin requirements at ${total_capital:,.0f}")
            return None

        remaining = 1.0 - total_filtered_weight
        if remaining > 0:
            factor = 1.0 / remaining
        else:
            self.logger.warning("Every strategy was filtered by the margin requirement")
            factor = 0.0

        adjusted: Allocation = {}
        for block_name, strategy_name, weight in kept:
            adjusted.setdefault(block_name, {})[strategy_name] = weight * factor

        self.logger.info(
            f"Filtered {len(filtered)} strategies below margin "
            f"({total_filtered_weight:.2%} of weight redistributed)"
        )

        return MarginFilterResult(
            portfolio_metrics=self._recalculate_metrics(adjusted, blocks),
            combined_allocation=adjusted,
            filtered_strategies=filtered,
            total_filtered_weight=total_filtered_weight,
        )

    def _recalculate_metrics(self,
                             allocation: Allocation,
                             blocks: Sequence[OptimizedBlock]) -> PortfolioMetrics:
        """Score the adjusted weights on the surviving strategies' own daily returns."""
        series = []
        weights: Dict[str, float] = {}

        for block in blocks:
            block_weights = allocation.get(block.block_name)
            if not block_weights:
                continue
            strategy_returns = block.strategy_returns or extract_strategy_returns(block.trades)
            for sr in strategy_returns:
                if sr.strategy not in block_weights:
                    continue
                label = f"{block.block_name} / {sr.strategy}"
                series.append(StrategyReturns(strategy=label, dates=sr.dates,
                                              returns=sr.returns, trades=sr.trades))
                weights[label] = block_weights[sr.strategy]

        aligned = align_returns(series, DateAlignment.ZERO_PADDING)
        if aligned.is_empty:
            return PortfolioMetrics()
        return calculate_portfolio_metrics(aligned.weights_vector(weights), aligned.returns, self.analysis)


def apply_margin_filter(result: HierarchicalResult,
                        total_capital: float,
                        analysis: Optional[AnalysisConfig] = None) -> HierarchicalResult:
    """Run the filter and attach its outcome (or None) to ``result.filtered_result``."""
    result.filtered_result = MarginFeasibilityFilter(analysis).apply(result, total_capital)
    return result
