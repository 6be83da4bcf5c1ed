import numpy as np
import pytest

from block_allocator.portfolio.hierarchical_optimizer import (HierarchicalConfig, HierarchicalOptimizer,
                                                              HierarchicalResult, Level1Config,
                                                              Level2Config, OptimizedBlock)
from block_allocator.portfolio.portfolio_metrics import PortfolioMetrics
from block_allocator.risk.margin_filter import (MarginFeasibilityFilter, apply_margin_filter,
                                                calculate_strategy_margin_requirements)

from conftest import generate_strategy_trades, make_trade


def build_result(allocation, trades_by_block):
    blocks = [
        OptimizedBlock(block_id=name, block_name=name, strategy_weights={}, metrics=PortfolioMetrics(),
                       dates=[], returns=np.zeros(0), trades=trades)
        for name, trades in trades_by_block.items()
    ]
    return HierarchicalResult(
        optimized_blocks=blocks,
        block_weights={name: sum(w.values()) for name, w in allocation.items()},
        portfolio_metrics=PortfolioMetrics(annualized_return=1.0, annualized_volatility=1.0, sharpe_ratio=1.0),
        block_portfolios=[],
        block_efficient_frontier=[],
        combined_allocation=allocation,
    )


@pytest.fixture
def core_trades():
    return (generate_strategy_trades("Strategy A", "2024-01-02", 40, 50.0, 200.0, seed=1, margin=1100.0)
            + generate_strategy_trades("Strategy B", "2024-01-02", 40, 80.0, 150.0, seed=2, margin=5000.0))


class TestMarginRequirements:

    def test_average_over_positive_margins_only(self):
        trades = [
            make_trade("2024-01-02", 10.0, strategy="A", margin_req=1000.0),
            make_trade("2024-01-03", 10.0, strategy="A", margin_req=3000.0),
            make_trade("2024-01-04", 10.0, strategy="A", margin_req=0.0),
            make_trade("2024-01-05", 10.0, strategy="A", margin_req=None),
            make_trade("2024-01-02", 10.0, strategy="B", margin_req=None),
        ]
        assert calculate_strategy_margin_requirements(trades) == {"A": 2000.0}

    def test_missing_strategy_name_is_unknown(self):
        trades = [make_trade("2024-01-02", 10.0, strategy=None, margin_req=500.0)]
        assert calculate_strategy_margin_requirements(trades) == {"Unknown": 500.0}


class TestMarginFeasibilityFilter:

    def test_underfunded_strategy_is_removed_and_weight_redistributed(self, core_trades):
        result = build_result({"Core": {"Strategy A": 0.001, "Strategy B": 0.999}}, {"Core": core_trades})
        filtered = MarginFeasibilityFilter().apply(result, total_capital=100000.0)

        assert filtered is not None
        assert len(filtered.filtered_strategies) == 1
        removed = filtered.filtered_strategies[0]
        assert removed.strategy_name == "Strategy A"
        assert removed.block_name == "Core"
        assert removed.allocated_capital == pytest.approx(100.0)
        assert removed.required_margin == pytest.approx(1100.0)
        assert filtered.total_filtered_weight == pytest.approx(0.001)
        assert filtered.combined_allocation == {"Core": {"Strategy B": pytest.approx(1.0)}}

    def test_partial_allocation_is_rescaled_by_filtered_weight(self, core_trades):
        result = build_result({"Core": {"Strategy A": 0.01, "Strategy B": 0.7}}, {"Core": core_trades})
        filtered = MarginFeasibilityFilter().apply(result, total_capital=100000.0)

        assert [f.strategy_name for f in filtered.filtered_strategies] == ["Strategy A"]
        # divided by 1 - 0.01, not scaled back up to the original 0.71
        assert filtered.combined_allocation["Core"]["Strategy B"] == pytest.approx(0.7 / 0.99)
        assert filtered.combined_allocation["Core"]["Strategy B"] != pytest.approx(0.71)

    def test_metrics_are_rescored_on_survivors(self, core_trades):
        result = build_result({"Core": {"Strategy A": 0.001, "Strategy B": 0.999}}, {"Core": core_trades})
        filtered = MarginFeasibilityFilter().apply(result, total_capital=100000.0)

        assert filtered.portfolio_metrics != result.portfolio_metrics
        assert filtered.portfolio_metrics.annualized_volatility > 0
        assert result.combined_allocation["Core"]["Strategy A"] == 0.001

    def test_no_filtering_returns_none(self, core_trades):
        result = build_result({"Core": {"Strategy A": 0.5, "Strategy B": 0.5}}, {"Core": core_trades})
        assert MarginFeasibilityFilter().apply(result, total_capital=100000.0) is None

    def test_strategies_without_margin_data_are_kept(self):
        trades = (generate_strategy_trades("No Margin", "2024-01-02", 20, 10.0, 50.0, seed=4, margin=0.0)
                  + generate_strategy_trades("Big Margin", "2024-01-02", 20, 10.0, 50.0, seed=5, margin=90000.0))
        result = build_result({"Solo": {"No Margin": 0.01, "Big Margin": 0.99}}, {"Solo": trades})
        filtered = MarginFeasibilityFilter().apply(result, total_capital=10000.0)

        assert [f.strategy_name for f in filtered.filtered_strategies] == ["Big Margin"]
        assert filtered.combined_allocation == {"Solo": {"No Margin": pytest.approx(1.0)}}

    def test_everything_filtered(self, core_trades):
        result = build_result({"Core": {"Strategy A": 0.5, "Strategy B": 0.5}}, {"Core": core_trades})
        filtered = MarginFeasibilityFilter().apply(result, total_capital=1000.0)

        assert len(filtered.filtered_strategies) == 2
        assert filtered.combined_allocation == {}
        assert filtered.portfolio_metrics == PortfolioMetrics()

    def test_survivors_sum_to_one_on_optimized_result(self, sample_blocks):
        config = HierarchicalConfig(level1=Level1Config(num_simulations=100),
                                    level2=Level2Config(num_simulations=150), seed=8)
        result = HierarchicalOptimizer(config).run(sample_blocks)

        capital = 25000.0
        requirements = calculate_strategy_margin_requirements(
            [t for block in sample_blocks for t in block.trades])
        expected = {
            strategy for strategies in result.combined_allocation.values()
            for strategy, weight in strategies.items()
            if weight * capital < requirements.get(strategy, 0.0)
        }
        original_total = sum(w for s in result.combined_allocation.values() for w in s.values())

        # Breakout carries a 20,000 margin, far above its share of 25,000
        apply_margin_filter(result, total_capital=capital)

        filtered = result.filtered_result
        assert filtered is not None
        assert "Breakout" in expected
        assert {f.strategy_name for f in filtered.filtered_strategies} == expected
        assert result.effective_metrics is filtered.portfolio_metrics
        if filtered.total_filtered_weight < 1:
            survivors = sum(w for s in result.effective_allocation.values() for w in s.values())
            assert survivors == pytest.approx(
                (original_total - filtered.total_filtered_weight) / (1 - filtered.total_filtered_weight))

    def test_apply_margin_filter_leaves_feasible_result_untouched(self, sample_blocks):
        config = HierarchicalConfig(level1=Level1Config(num_simulations=100),
                                    level2=Level2Config(num_simulations=150), seed=8)
        result = apply_margin_filter(HierarchicalOptimizer(config).run(sample_blocks), total_capital=1e9)

        assert result.filtered_result is None
        assert result.effective_allocation is result.combined_allocation
