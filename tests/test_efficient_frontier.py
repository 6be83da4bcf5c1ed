import numpy as np
import pytest

from block_allocator.data.returns import DateAlignment, extract_block_returns, extract_strategy_returns
from block_allocator.exceptions import NoEfficientPortfolioError
from block_allocator.portfolio.efficient_frontier import (FRONTIER_TOLERANCE, BlockOptimizationConfig,
                                                          MonteCarloFrontierEngine,
                                                          OptimizationObjective, PortfolioResult,
                                                          identify_efficient_frontier,
                                                          select_optimal_portfolio)
from block_allocator.portfolio.weight_sampler import PortfolioConstraints


def portfolio(ret, vol, sharpe=0.0, weights=None):
    return PortfolioResult(weights=weights or {"A": 1.0}, annualized_return=ret,
                           annualized_volatility=vol, sharpe_ratio=sharpe)


class TestEfficientFrontier:

    def test_dominated_portfolios_are_removed(self):
        population = [
            portfolio(10.0, 5.0),   # efficient
            portfolio(8.0, 6.0),    # dominated by the first
            portfolio(15.0, 9.0),   # efficient
            portfolio(15.0, 12.0),  # same return, more risk
        ]
        frontier = identify_efficient_frontier(population)

        assert [(p.annualized_return, p.annualized_volatility) for p in frontier] == [(10.0, 5.0), (15.0, 9.0)]
        assert all(p.is_efficient for p in frontier)

    def test_input_population_is_not_mutated(self):
        population = [portfolio(10.0, 5.0), portfolio(8.0, 6.0)]
        identify_efficient_frontier(population)
        assert not any(p.is_efficient for p in population)

    def test_volatility_within_tolerance_counts_as_equal(self):
        lower_return = portfolio(10.0, 5.0)
        higher_return = portfolio(11.0, 5.0 + FRONTIER_TOLERANCE / 2)

        frontier = identify_efficient_frontier([lower_return, higher_return])
        assert frontier == [identify_efficient_frontier([higher_return])[0]]

    def test_no_frontier_member_is_dominated(self, multi_strategy_trades):
        engine = MonteCarloFrontierEngine(seed=5)
        population = engine.run(extract_strategy_returns(multi_strategy_trades), 300).portfolios
        frontier = identify_efficient_frontier(population)

        assert frontier
        for p in frontier:
            for q in population:
                strictly_better = (q.annualized_return > p.annualized_return + FRONTIER_TOLERANCE
                                   and q.annualized_volatility < p.annualized_volatility - FRONTIER_TOLERANCE)
                assert not strictly_better

    def test_empty_population(self):
        assert identify_efficient_frontier([]) == []


class TestSelectOptimalPortfolio:

    @pytest.fixture
    def frontier(self):
        return [portfolio(5.0, 2.0, sharpe=1.5), portfolio(9.0, 4.0, sharpe=2.1), portfolio(14.0, 9.0, sharpe=1.4)]

    @pytest.mark.parametrize("objective, expected_return", [
        (OptimizationObjective.MAX_SHARPE, 9.0),
        (OptimizationObjective.MIN_VOLATILITY, 5.0),
        (OptimizationObjective.MAX_RETURN, 14.0),
    ])
    def test_objectives(self, frontier, objective, expected_return):
        assert select_optimal_portfolio(frontier, objective).annualized_return == expected_return

    def test_empty_frontier_raises(self):
        with pytest.raises(NoEfficientPortfolioError):
            select_optimal_portfolio([])


class TestMonteCarloFrontierEngine:

    def test_scenario_fifty_draws(self, scenario_trades):
        run = MonteCarloFrontierEngine(seed=1).run(extract_strategy_returns(scenario_trades), 50)

        assert len(run.portfolios) == 50
        for p in run.portfolios:
            assert set(p.weights) == {"Iron Condor", "Credit Spread"}
            assert sum(p.weights.values()) == pytest.approx(1.0, abs=1e-3)

    def test_fewer_than_two_assets_returns_empty(self, scenario_trades):
        single = [s for s in extract_strategy_returns(scenario_trades) if s.strategy == "Iron Condor"]
        run = MonteCarloFrontierEngine(seed=1).run(single, 50)
        assert run.is_empty

    def test_no_shared_dates_in_overlapping_mode_returns_empty(self, scenario_trades):
        engine = MonteCarloFrontierEngine(date_alignment=DateAlignment.OVERLAPPING, seed=1)
        assert engine.run(extract_strategy_returns(scenario_trades), 50).is_empty

    def test_progress_cadence(self, multi_strategy_trades):
        updates = []
        MonteCarloFrontierEngine(seed=2).run(
            extract_strategy_returns(multi_strategy_trades), 120,
            progress_callback=lambda progress, p: updates.append(progress),
        )

        # draws 1, 51, 101 and the final draw
        assert updates == pytest.approx([100 / 120, 5100 / 120, 10100 / 120, 100.0])
        assert updates == sorted(updates)

    def test_seeded_runs_are_reproducible(self, multi_strategy_trades):
        series = extract_strategy_returns(multi_strategy_trades)
        a = MonteCarloFrontierEngine(seed=9).run(series, 40).portfolios
        b = MonteCarloFrontierEngine(seed=9).run(series, 40).portfolios
        assert a == b

    def test_constraints_flow_through(self, multi_strategy_trades):
        constraints = PortfolioConstraints(min_weight=0.2, max_weight=0.5)
        run = MonteCarloFrontierEngine(constraints, seed=4).run(extract_strategy_returns(multi_strategy_trades), 100)

        weights = np.array([list(p.weights.values()) for p in run.portfolios])
        assert weights.min() >= 0.2 - 1e-3
        assert weights.max() <= 0.5 + 1e-3
        assert run.fallback_count == 0

    def test_block_configuration(self, sample_blocks):
        block_returns = [extract_block_returns(b.block_id, b.block_name, b.trades) for b in sample_blocks]
        engine = MonteCarloFrontierEngine.for_blocks(BlockOptimizationConfig(), seed=3)
        run = engine.run(block_returns, 60)

        assert engine.date_alignment == DateAlignment.OVERLAPPING
        assert len(run.portfolios) == 60
        assert set(run.portfolios[0].weights) == {"Income", "Momentum", "Hedge"}

    def test_block_config_from_dict(self):
        config = BlockOptimizationConfig.from_dict({'dateAlignment': 'zero-padding', 'riskFreeRate': 3.0,
                                                    'constraints': {'maxWeight': 0.7}})
        assert config.date_alignment == DateAlignment.ZERO_PADDING
        assert config.analysis.risk_free_rate == 3.0
        assert config.constraints.max_weight == 0.7
