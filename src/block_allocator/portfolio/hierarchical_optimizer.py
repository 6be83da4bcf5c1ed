import numpy as np
from typing import Any, Callable, Dict, List, Optional, Sequence, TYPE_CHECKING
from dataclasses import dataclass, field
import logging
import warnings

from ..data.returns import (BlockReturns, BlockStats, DateAlignment, StrategyReturns,
                            align_returns, extract_strategy_returns)
from ..data.trades import Trade, sort_trades
from ..exceptions import InsufficientAssetsError, InsufficientDataError
from .efficient_frontier import (BlockOptimizationConfig, MonteCarloFrontierEngine,
                                 OptimizationObjective, PortfolioResult,
                                 identify_efficient_frontier, select_optimal_portfolio)
from .portfolio_metrics import (AnalysisConfig, PortfolioMetrics, calculate_portfolio_metrics,
                                portfolio_daily_returns)
from .weight_sampler import PortfolioConstraints

if TYPE_CHECKING:
    from ..risk.margin_filter import MarginFilterResult

warnings.filterwarnings('ignore')

# (population, efficient_frontier) -> chosen portfolio
SelectionPolicy = Callable[[List[PortfolioResult], List[PortfolioResult]], PortfolioResult]
# (phase, percent within phase, message)
PhaseProgressCallback = Callable[[int, float, str], None]

Allocation = Dict[str, Dict[str, float]]


@dataclass
class Level1Config:
    """Strategy optimization inside each block."""
    objective: OptimizationObjective = OptimizationObjective.MAX_SHARPE
    num_simulations: int = 1000
    constraints: PortfolioConstraints = field(default_factory=PortfolioConstraints)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)


@dataclass
class Level2Config:
    """Block allocation across the portfolio."""
    block_config: BlockOptimizationConfig = field(default_factory=BlockOptimizationConfig)
    num_simulations: int = 2000


@dataclass
class HierarchicalConfig:
    level1: Level1Config = field(default_factory=Level1Config)
    level2: Level2Config = field(default_factory=Level2Config)
    seed: Optional[int] = None

    def validate(self) -> 'HierarchicalConfig':
        if self.level1.num_simulations < 1 or self.level2.num_simulations < 1:
            raise ValueError("num_simulations must be at least 1 at both levels")
        self.level1.constraints.validate()
        self.level2.block_config.constraints.validate()
        return self

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'HierarchicalConfig':
        """
        Build from a nested dictionary such as
        ``{'level1': {...}, 'level2': {'block_config': {...}, ...}, 'seed': 7}``.
        """
        data = data or {}
        level1 = data.get('level1', {}) or {}
        level2 = data.get('level2', {}) or {}
        block_config = level2.get('block_config', level2.get('blockConfig'))

        return cls(
            level1=Level1Config(
                objective=OptimizationObjective(level1.get('objective', OptimizationObjective.MAX_SHARPE)),
                num_simulations=int(level1.get('num_simulations', level1.get('numSimulations', 1000))),
                constraints=PortfolioConstraints.from_dict(level1.get('constraints')),
                analysis=AnalysisConfig.from_dict(level1),
            ),
            level2=Level2Config(
                block_config=BlockOptimizationConfig.from_dict(block_config),
                num_simulations=int(level2.get('num_simulations', level2.get('numSimulations', 2000))),
            ),
            seed=data.get('seed'),
        ).validate()


DEFAULT_HIERARCHICAL_CONFIG = HierarchicalConfig()


@dataclass
class BlockDefinition:
    """A named trade set supplied by the block selection collaborator."""
    block_id: str
    block_name: str
    trades: List[Trade]


@dataclass
class OptimizedBlock:
    """Level-1 outcome for one block."""
    block_id: str
    block_name: str
    strategy_weights: Dict[str, float]
    metrics: PortfolioMetrics
    dates: List[str]
    returns: np.ndarray
    trades: List[Trade]
    strategy_returns: List[StrategyReturns] = field(default_factory=list)
    is_locked: bool = False
    all_portfolios: List[PortfolioResult] = field(default_factory=list)
    efficient_frontier: List[PortfolioResult] = field(default_factory=list)

    def to_block_returns(self) -> BlockReturns:
        """The block as a single synthetic asset for Level 2."""
        winners = sum(1 for t in self.trades if t.pl > 0)
        return BlockReturns(
            block_id=self.block_id,
            block_name=self.block_name,
            dates=list(self.dates),
            returns=self.returns,
            trades=self.trades,
            stats=BlockStats(
                total_pl=float(sum(t.pl for t in self.trades)),
                sharpe_ratio=self.metrics.sharpe_ratio,
                win_rate=winners / len(self.trades) * 100 if self.trades else 0.0,
                trade_count=len(self.trades),
            ),
        )


@dataclass
class BlockAllocation:
    """Level-2 outcome."""
    block_weights: Dict[str, float]
    portfolio_metrics: PortfolioMetrics
    block_portfolios: List[PortfolioResult]
    block_efficient_frontier: List[PortfolioResult]


@dataclass
class HierarchicalResult:
    optimized_blocks: List[OptimizedBlock]
    block_weights: Dict[str, float]
    portfolio_metrics: PortfolioMetrics
    block_portfolios: List[PortfolioResult]
    block_efficient_frontier: List[PortfolioResult]
    combined_allocation: Allocation
    filtered_result: Optional['MarginFilterResult'] = None

    @property
    def effective_allocation(self) -> Allocation:
        """Margin-filtered allocation when a filter was applied, otherwise the combined one."""
        if self.filtered_result is not None:
            return self.filtered_result.combined_allocation
        return self.combined_allocation

    @property
    def effective_metrics(self) -> PortfolioMetrics:
        if self.filtered_result is not None:
            return self.filtered_result.portfolio_metrics
        return self.portfolio_metrics


def max_sharpe_with_fallback(population: List[PortfolioResult],
                             frontier: List[PortfolioResult]) -> PortfolioResult:
    """Max Sharpe on the frontier, or on the whole population when the frontier is empty."""
    return select_optimal_portfolio(frontier or population, OptimizationObjective.MAX_SHARPE)


class HierarchicalOptimizer:
    """
    Two-level allocator.

    Level 1 searches strategy weights inside every block and keeps one
    portfolio per block, chosen by ``level1_policy``. Each block then becomes
    a single asset whose daily returns are its Level-1 weighted strategy
    returns, and Level 2 searches weights across those assets. The combined
    allocation is block weight times strategy weight.
    """

    def __init__(self,
                 config: Optional[HierarchicalConfig] = None,
                 level1_policy: Optional[SelectionPolicy] = None,
                 level2_policy: Optional[SelectionPolicy] = None,
                 rng: Optional[np.random.Generator] = None):
        self.config = config or HierarchicalConfig()
        self.level1_policy = level1_policy or (
            lambda population, frontier: select_optimal_portfolio(frontier, self.config.level1.objective)
        )
        self.level2_policy = level2_policy or max_sharpe_with_fallback
        self.rng = rng if rng is not None else np.random.default_rng(self.config.seed)
        self.logger = logging.getLogger(__name__)

    def optimize_block_strategies(self,
                                  block_id: str,
                                  block_name: str,
                                  trades: List[Trade]) -> OptimizedBlock:
        """Level 1 for a single block."""
        level1 = self.config.level1
        strategy_returns = extract_strategy_returns(trades)

        if not strategy_returns:
            raise InsufficientDataError(
                f'Block "{block_name}" has no strategies with sufficient data for optimization',
                assets=[block_name],
            )

        aligned = align_returns(strategy_returns, DateAlignment.ZERO_PADDING)

        if len(strategy_returns) == 1:
            strategy = strategy_returns[0].strategy
            self.logger.info(f'Block "{block_name}" has a single strategy; locking {strategy} at 100%')
            metrics = calculate_portfolio_metrics(np.ones(1), aligned.returns, level1.analysis)
            return OptimizedBlock(
                block_id=block_id,
                block_name=block_name,
                strategy_weights={strategy: 1.0},
                metrics=metrics,
                dates=aligned.dates,
                returns=aligned.returns[0].copy(),
                trades=trades,
                strategy_returns=strategy_returns,
                is_locked=True,
            )

        engine = MonteCarloFrontierEngine(
            constraints=level1.constraints,
            analysis=level1.analysis,
            date_alignment=DateAlignment.ZERO_PADDING,
            rng=self.rng,
        )
        run = engine.run(strategy_returns, level1.num_simulations)

        if run.is_empty:
            raise InsufficientDataError(
                f'No valid portfolios generated for block "{block_name}"',
                assets=[s.strategy for s in strategy_returns],
            )

        frontier = identify_efficient_frontier(run.portfolios)
        optimal = self.level1_policy(run.portfolios, frontier)

        daily = portfolio_daily_returns(run.aligned.weights_vector(optimal.weights), run.aligned.returns)

        return OptimizedBlock(
            block_id=block_id,
            block_name=block_name,
            strategy_weights=dict(optimal.weights),
            metrics=PortfolioMetrics(
                annualized_return=optimal.annualized_return,
                annualized_volatility=optimal.annualized_volatility,
                sharpe_ratio=optimal.sharpe_ratio,
            ),
            dates=run.aligned.dates,
            returns=daily,
            trades=trades,
            strategy_returns=strategy_returns,
            all_portfolios=run.portfolios,
            efficient_frontier=frontier,
        )

    def optimize_block_allocation(self, optimized_blocks: Sequence[OptimizedBlock]) -> BlockAllocation:
        """Level 2 across already optimized blocks."""
        if len(optimized_blocks) < 2:
            raise InsufficientAssetsError(
                "At least 2 optimized blocks are required for Level 2 optimization",
                assets=[b.block_name for b in optimized_blocks],
            )

        level2 = self.config.level2
        engine = MonteCarloFrontierEngine.for_blocks(level2.block_config, rng=self.rng)
        run = engine.run([b.to_block_returns() for b in optimized_blocks], level2.num_simulations)

        if run.is_empty:
            raise InsufficientDataError(
                "No valid block portfolios generated; the blocks share too few dates "
                f"under {level2.block_config.date_alignment.value} alignment",
                assets=[b.block_name for b in optimized_blocks],
            )

        frontier = identify_efficient_frontier(run.portfolios)
        optimal = self.level2_policy(run.portfolios, frontier)

        return BlockAllocation(
            block_weights=dict(optimal.weights),
            portfolio_metrics=PortfolioMetrics(
                annualized_return=optimal.annualized_return,
                annualized_volatility=optimal.annualized_volatility,
                sharpe_ratio=optimal.sharpe_ratio,
            ),
            block_portfolios=run.portfolios,
            block_efficient_frontier=frontier,
        )

    def run(self,
            blocks: Sequence[BlockDefinition],
            progress_callback: Optional[PhaseProgressCallback] = None) -> HierarchicalResult:
        """
        Optimize strategies within every block, then the blocks themselves.

        Raises:
            InsufficientAssetsError: fewer than two blocks
            InsufficientDataError: a block or the block set lacks usable returns
        """
        if len(blocks) < 2:
            raise InsufficientAssetsError(
                "At least 2 blocks are required for hierarchical optimization",
                assets=[b.block_name for b in blocks],
            )

        self.logger.info(f"Starting hierarchical optimization over {len(blocks)} blocks")

        optimized_blocks = []
        for i, block in enumerate(blocks):
            try:
                optimized_blocks.append(
                    self.optimize_block_strategies(block.block_id, block.block_name, block.trades)
                )
            except Exception as e:
                self.logger.error(f'Failed to optimize block "{block.block_name}": {e}')
                raise
            if progress_callback:
                progress_callback(1, (i + 1) / len(blocks) * 100,
                                  f"Optimized {block.block_name} ({i + 1}/{len(blocks)})")

        if progress_callback:
            progress_callback(2, 0.0, "Optimizing block allocation...")

        allocation = self.optimize_block_allocation(optimized_blocks)

        if progress_callback:
            progress_callback(2, 100.0, "Optimization complete")

        combined: Allocation = {}
        for block in optimized_blocks:
            block_weight = allocation.block_weights.get(block.block_name, 0.0)
            combined[block.block_name] = {
                strategy: block_weight * weight
                for strategy, weight in block.strategy_weights.items()
            }

        self.logger.info(
            f"Hierarchical optimization complete: Sharpe {allocation.portfolio_metrics.sharpe_ratio:.3f}, "
            f"return {allocation.portfolio_metrics.annualized_return:.2f}%"
        )

        return HierarchicalResult(
            optimized_blocks=optimized_blocks,
            block_weights=allocation.block_weights,
            portfolio_metrics=allocation.portfolio_metrics,
            block_portfolios=allocation.block_portfolios,
            block_efficient_frontier=allocation.block_efficient_frontier,
            combined_allocation=combined,
        )


def get_flat_allocation(combined_allocation: Allocation) -> Dict[str, float]:
    """Flatten block -> strategy -> weight into ``"block / strategy"`` keys."""
    flat = {}
    for block_name, strategies in combined_allocation.items():
        for strategy, weight in strategies.items():
            flat[f"{block_name} / {strategy}"] = weight
    return flat


def build_weighted_trades(result: HierarchicalResult,
                          trades_by_block: Optional[Dict[str, List[Trade]]] = None) -> List[Trade]:
    """
    Scale every source trade by its final combined weight.

    The output feeds the forward simulator so a chosen allocation can be
    stress-tested. Trades of strategies with zero weight are dropped.
    """
    allocation = result.effective_allocation
    if trades_by_block is None:
        trades_by_block = {b.block_name: b.trades for b in result.optimized_blocks}

    weighted = []
    for block_name, trades in trades_by_block.items():
        weights = allocation.get(block_name, {})
        for trade in trades:
            weight = weights.get(trade.strategy_name, 0.0)
            if weight > 0:
                weighted.append(trade.scaled(weight))

    return sort_trades(weighted)
