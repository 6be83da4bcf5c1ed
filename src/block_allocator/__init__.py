from .exceptions import (AllocationError, InsufficientAssetsError, InsufficientDataError,
                         NoEfficientPortfolioError)
from .data.trades import Trade, trades_from_frame, trades_to_frame
from .data.returns import (AlignedReturns, BlockReturns, DateAlignment, StrategyReturns,
                           align_returns, extract_block_returns, extract_strategy_returns)
from .portfolio.weight_sampler import ConstrainedWeightSampler, PortfolioConstraints
from .portfolio.portfolio_metrics import AnalysisConfig, PortfolioMetrics, calculate_portfolio_metrics
from .portfolio.efficient_frontier import (BlockOptimizationConfig, MonteCarloFrontierEngine,
                                           OptimizationObjective, PortfolioResult,
                                           identify_efficient_frontier, select_optimal_portfolio)
from .portfolio.hierarchical_optimizer import (BlockDefinition, HierarchicalConfig,
                                               HierarchicalOptimizer, HierarchicalResult,
                                               Level1Config, Level2Config, get_flat_allocation)
from .risk.margin_filter import MarginFeasibilityFilter, MarginFilterResult, apply_margin_filter
from .simulation.forward_simulation import (ForwardSimulationEngine, MonteCarloParams,
                                            ResampleMethod, SimulationResult, WorstCaseMode)

__version__ = "0.1.0"
