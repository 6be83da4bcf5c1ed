# pytest configuration and fixtures for block_allocator tests

import pytest
import pandas as pd
import numpy as np

from block_allocator.data.trades import Trade
from block_allocator.portfolio.hierarchical_optimizer import BlockDefinition


def make_trade(date_opened, pl, strategy="Test Strategy", **overrides):
    """Trade with sensible defaults for the fields a test does not care about."""
    defaults = dict(
        time_opened="09:30:00",
        date_closed=date_opened,
        time_closed="15:30:00",
        num_contracts=1,
        funds_at_close=None,
        margin_req=None,
        opening_commissions_fees=1.0,
        closing_commissions_fees=1.0,
    )
    defaults.update(overrides)
    return Trade(date_opened=date_opened, pl=pl, strategy=strategy, **defaults)


def generate_strategy_trades(strategy, start, n_days, mean_pl, std_pl, seed,
                             starting_funds=100000.0, margin=5000.0, contracts=1):
    """One trade per business day with normally distributed P&L."""
    rng = np.random.default_rng(seed)
    dates = pd.bdate_range(start=start, periods=n_days)
    funds = starting_funds
    trades = []
    for day in dates:
        pl = float(rng.normal(mean_pl, std_pl))
        funds += pl
        trades.append(make_trade(day.strftime('%Y-%m-%d'), pl, strategy=strategy,
                                 funds_at_close=funds, margin_req=margin,
                                 num_contracts=contracts))
    return trades


@pytest.fixture
def scenario_trades():
    """Two strategies, two alternating win/loss trades each, on four distinct dates."""
    return [
        make_trade("2024-01-01", 500.0, strategy="Iron Condor", funds_at_close=100500.0),
        make_trade("2024-01-05", -100.0, strategy="Iron Condor", funds_at_close=100400.0),
        make_trade("2024-01-03", -100.0, strategy="Credit Spread", funds_at_close=100400.0),
        make_trade("2024-01-07", -50.0, strategy="Credit Spread", funds_at_close=100350.0),
    ]


@pytest.fixture
def multi_strategy_trades():
    """Three strategies with distinct risk/return profiles over 60 business days."""
    return (
        generate_strategy_trades("Iron Condor", "2024-01-02", 60, 150.0, 400.0, seed=1)
        + generate_strategy_trades("Put Spread", "2024-01-02", 60, 80.0, 150.0, seed=2)
        + generate_strategy_trades("Strangle", "2024-01-02", 60, 250.0, 900.0, seed=3)
    )


@pytest.fixture
def sample_blocks():
    """Three blocks: two multi-strategy, one single-strategy, sharing most dates."""
    return [
        BlockDefinition(
            block_id="block-1",
            block_name="Income",
            trades=(generate_strategy_trades("Iron Condor", "2024-01-02", 80, 120.0, 350.0, seed=11)
                    + generate_strategy_trades("Put Spread", "2024-01-02", 80, 60.0, 120.0, seed=12)),
        ),
        BlockDefinition(
            block_id="block-2",
            block_name="Momentum",
            trades=(generate_strategy_trades("Breakout", "2024-01-02", 80, 200.0, 700.0, seed=21,
                                             margin=20000.0)
                    + generate_strategy_trades("Trend", "2024-01-02", 80, 90.0, 300.0, seed=22)),
        ),
        BlockDefinition(
            block_id="block-3",
            block_name="Hedge",
            trades=generate_strategy_trades("Long Put", "2024-01-02", 80, -10.0, 250.0, seed=31,
                                            margin=1000.0),
        ),
    ]


@pytest.fixture
def sample_trade_frame():
    """Broker-style export with spaced column headers."""
    return pd.DataFrame({
        'Date Opened': ['2024-01-02', '2024-01-03', '2024-01-03'],
        'Time Opened': ['09:45:00', '10:00:00', '09:31:00'],
        'P/L': [250.0, -120.0, 75.5],
        'Strategy': ['Iron Condor', 'Iron Condor', np.nan],
        'No. of Contracts': [2, 1, 3],
        'Funds at Close': [100250.0, 100130.0, 100205.5],
        'Margin Req.': [4000.0, 2000.0, np.nan],
    })
