import numpy as np
import pytest

from block_allocator.data.returns import AlignedReturns, align_returns, extract_strategy_returns
from block_allocator.portfolio.portfolio_metrics import (AnalysisConfig, PortfolioMetrics,
                                                         calculate_correlation_matrix,
                                                         calculate_covariance_matrix,
                                                         calculate_portfolio_metrics,
                                                         simulate_weighted_portfolio_equity)


@pytest.fixture
def two_asset_returns():
    return np.array([
        [0.01, -0.005, 0.02, 0.0, 0.004],
        [0.002, 0.003, -0.001, 0.005, 0.001],
    ])


class TestPortfolioMetrics:

    def test_matches_hand_calculation(self, two_asset_returns):
        weights = np.array([0.6, 0.4])
        metrics = calculate_portfolio_metrics(weights, two_asset_returns)

        daily = weights @ two_asset_returns
        mean, std = daily.mean(), daily.std(ddof=1)
        assert metrics.annualized_return == pytest.approx(mean * 252 * 100)
        assert metrics.annualized_volatility == pytest.approx(std * np.sqrt(252) * 100)
        assert metrics.sharpe_ratio == pytest.approx((mean - 0.02 / 252) / std * np.sqrt(252))

    def test_uses_sample_standard_deviation(self):
        returns = np.array([[0.01, -0.01]])
        metrics = calculate_portfolio_metrics(np.ones(1), returns)

        # population std would be 0.01, sample std is 0.01 * sqrt(2)
        assert metrics.annualized_volatility == pytest.approx(0.01 * np.sqrt(2) * np.sqrt(252) * 100)

    def test_custom_risk_free_rate_and_factor(self, two_asset_returns):
        config = AnalysisConfig(risk_free_rate=0.0, annualization_factor=365)
        metrics = calculate_portfolio_metrics(np.array([0.5, 0.5]), two_asset_returns, config)

        daily = np.array([0.5, 0.5]) @ two_asset_returns
        assert metrics.annualized_return == pytest.approx(daily.mean() * 365 * 100)
        assert metrics.sharpe_ratio == pytest.approx(daily.mean() / daily.std(ddof=1) * np.sqrt(365))

    def test_empty_matrix_gives_zero_metrics(self):
        assert calculate_portfolio_metrics(np.zeros(0), np.zeros((0, 0))) == PortfolioMetrics()

    def test_zero_volatility_gives_zero_sharpe(self):
        metrics = calculate_portfolio_metrics(np.ones(1), np.full((1, 10), 0.001))

        assert metrics.annualized_volatility == 0.0
        assert metrics.sharpe_ratio == 0.0
        assert np.isfinite(metrics.annualized_return)

    def test_config_from_dict(self):
        config = AnalysisConfig.from_dict({'riskFreeRate': 4.5})
        assert config.risk_free_rate == 4.5
        assert config.annualization_factor == 252
        with pytest.raises(ValueError):
            AnalysisConfig.from_dict({'annualization_factor': 0})


class TestCovariance:

    def test_sample_covariance(self, two_asset_returns):
        cov = calculate_covariance_matrix(two_asset_returns)
        assert cov.shape == (2, 2)
        assert cov[0, 0] == pytest.approx(two_asset_returns[0].var(ddof=1))

    def test_ledoit_wolf_is_symmetric_positive(self, two_asset_returns):
        cov = calculate_covariance_matrix(two_asset_returns, method='ledoit_wolf')
        assert cov.shape == (2, 2)
        assert np.allclose(cov, cov.T)
        assert np.all(np.linalg.eigvalsh(cov) >= 0)

    def test_unknown_method_raises(self, two_asset_returns):
        with pytest.raises(ValueError):
            calculate_covariance_matrix(two_asset_returns, method='robust')

    def test_correlation_handles_constant_series(self):
        returns = np.array([[0.01, 0.02, 0.03], [0.005, 0.005, 0.005]])
        corr = calculate_correlation_matrix(returns)

        assert corr[0, 1] == 0.0
        assert np.allclose(np.diag(corr), 1.0)


class TestEquityReplay:

    def test_replay_compounds_and_tracks_drawdown(self):
        aligned = AlignedReturns(asset_labels=["A", "B"], dates=["2024-01-01", "2024-01-02", "2024-01-03"],
                                 returns=np.array([[0.10, -0.10, 0.0], [0.0, 0.0, 0.0]]))
        frame = simulate_weighted_portfolio_equity({"A": 1.0}, aligned, starting_capital=1000.0)

        assert frame['equity'].tolist() == pytest.approx([1100.0, 990.0, 990.0])
        assert frame['high_water_mark'].tolist() == pytest.approx([1100.0, 1100.0, 1100.0])
        assert frame['drawdown_pct'].iloc[-1] == pytest.approx(-10.0)

    def test_replay_on_extracted_returns(self, multi_strategy_trades):
        aligned = align_returns(extract_strategy_returns(multi_strategy_trades))
        weights = {label: 1 / aligned.n_assets for label in aligned.asset_labels}
        frame = simulate_weighted_portfolio_equity(weights, aligned)

        assert len(frame) == aligned.n_dates
        assert (frame['drawdown_pct'] <= 0).all()

    def test_empty_replay(self):
        frame = simulate_weighted_portfolio_equity({}, AlignedReturns.empty())
        assert frame.empty
