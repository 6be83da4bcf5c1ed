import numpy as np
import pandas as pd
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from dataclasses import dataclass, field, asdict
from enum import Enum
import logging
import warnings

from ..data.returns import AlignedReturns, starting_equity
from ..data.trades import Trade, group_trades_by_strategy, sort_trades
from ..exceptions import InsufficientDataError

warnings.filterwarnings('ignore')

MAX_WORST_CASE_PERCENTAGE = 20.0
PROGRESS_INTERVAL = 50


class ResampleMethod(Enum):
    """Granularity of the historical outcomes drawn into each path."""
    TRADES = "trades"          # individual trade dollar P&L
    DAILY = "daily"            # dollar P&L summed per trading day
    PERCENTAGE = "percentage"  # daily return, compounded on current capital


class WorstCaseMode(Enum):
    POOL = "pool"            # worst cases join the resampling pool
    GUARANTEE = "guarantee"  # worst cases are forced into every path


@dataclass
class MonteCarloParams:
    """
    Forward simulation settings.

    ``simulation_length`` is a number of resampled steps. Converting a
    calendar horizon into steps is the caller's job (see
    ``steps_for_duration``); the engine never reinterprets it.
    """
    num_simulations: int = 1000
    simulation_length: int = 252
    resample_method: ResampleMethod = ResampleMethod.TRADES
    initial_capital: float = 100000.0
    trades_per_year: float = 252
    random_seed: Optional[int] = None
    historical_initial_capital: Optional[float] = None
    worst_case_enabled: bool = False
    worst_case_percentage: float = 5.0
    worst_case_mode: WorstCaseMode = WorstCaseMode.POOL
    normalize_to_1_lot: bool = False

    def validate(self) -> 'MonteCarloParams':
        if not isinstance(self.resample_method, ResampleMethod):
            raise ValueError(f"resample_method must be a ResampleMethod, got {self.resample_method!r}")
        if not isinstance(self.worst_case_mode, WorstCaseMode):
            raise ValueError(f"worst_case_mode must be a WorstCaseMode, got {self.worst_case_mode!r}")
        if self.num_simulations < 1:
            raise ValueError(f"num_simulations must be at least 1, got {self.num_simulations}")
        if self.simulation_length < 1:
            raise ValueError(f"simulation_length must be at least 1, got {self.simulation_length}")
        if self.initial_capital <= 0:
            raise ValueError(f"initial_capital must be positive, got {self.initial_capital}")
        if self.trades_per_year <= 0:
            raise ValueError(f"trades_per_year must be positive, got {self.trades_per_year}")
        if self.historical_initial_capital is not None and self.historical_initial_capital <= 0:
            raise ValueError(
                f"historical_initial_capital must be positive, got {self.historical_initial_capital}"
            )
        if not 0 <= self.worst_case_percentage <= MAX_WORST_CASE_PERCENTAGE:
            raise ValueError(
                f"worst_case_percentage must lie in [0, {MAX_WORST_CASE_PERCENTAGE}], "
                f"got {self.worst_case_percentage}"
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['resample_method'] = self.resample_method.value
        data['worst_case_mode'] = self.worst_case_mode.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MonteCarloParams':
        """Accepts snake_case or camelCase keys and string enum values."""
        def pick(snake, camel, default=None):
            return data.get(snake, data.get(camel, default))

        historical = pick('historical_initial_capital', 'historicalInitialCapital')
        seed = pick('random_seed', 'randomSeed')

        return cls(
            num_simulations=int(pick('num_simulations', 'numSimulations', 1000)),
            simulation_length=int(pick('simulation_length', 'simulationLength', 252)),
            resample_method=ResampleMethod(pick('resample_method', 'resampleMethod', 'trades')),
            initial_capital=float(pick('initial_capital', 'initialCapital', 100000.0)),
            trades_per_year=float(pick('trades_per_year', 'tradesPerYear', 252)),
            random_seed=int(seed) if seed is not None else None,
            historical_initial_capital=float(historical) if historical is not None else None,
            worst_case_enabled=bool(pick('worst_case_enabled', 'worstCaseEnabled', False)),
            worst_case_percentage=float(pick('worst_case_percentage', 'worstCasePercentage', 5.0)),
            worst_case_mode=WorstCaseMode(pick('worst_case_mode', 'worstCaseMode', 'pool')),
            normalize_to_1_lot=bool(pick('normalize_to_1_lot', 'normalizeTo1Lot', False)),
        ).validate()


def steps_for_duration(months: float, trades_per_year: float) -> int:
    """Number of simulation steps covering ``months`` at the given trade frequency."""
    return max(1, int(round(months * trades_per_year / 12)))


@dataclass
class SimulationPath:
    """One simulated future. ``equity_curve`` holds cumulative return per step."""
    equity_curve: np.ndarray
    final_value: float
    total_return: float
    annualized_return: float
    max_drawdown: float
    sharpe_ratio: float


@dataclass
class SimulationPercentiles:
    """Cross-path percentiles of cumulative return at each step."""
    steps: np.ndarray
    p5: np.ndarray
    p25: np.ndarray
    p50: np.ndarray
    p75: np.ndarray
    p95: np.ndarray

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            'p5': self.p5, 'p25': self.p25, 'p50': self.p50, 'p75': self.p75, 'p95': self.p95,
        }, index=pd.Index(self.steps, name='step'))


@dataclass
class ValueAtRisk:
    """Percentiles of total return across paths; negative values are losses."""
    p5: float
    p10: float
    p25: float


@dataclass
class SimulationStatistics:
    mean_final_value: float
    median_final_value: float
    std_final_value: float
    mean_total_return: float
    median_total_return: float
    mean_annualized_return: float
    median_annualized_return: float
    mean_max_drawdown: float
    median_max_drawdown: float
    mean_sharpe_ratio: float
    probability_of_profit: float
    value_at_risk: ValueAtRisk


@dataclass
class SimulationResult:
    simulations: List[SimulationPath]
    percentiles: SimulationPercentiles
    statistics: SimulationStatistics
    parameters: MonteCarloParams
    worst_case_outcomes: Dict[str, float] = field(default_factory=dict)


SimulationProgressCallback = Callable[[float], None]


class ForwardSimulationEngine:
    """
    Bootstrap forward projection of historical outcomes.

    Every path draws ``simulation_length`` outcomes with replacement from
    the historical pool and replays them on ``initial_capital``. Injected
    worst cases join the pool in both modes; guarantee mode additionally
    overwrites random positions of each path with its full quota, so it is
    never milder than pool mode. Each path owns a generator spawned from
    the run's seed, so a fixed seed gives identical results whatever order
    the paths are computed in. Capital that reaches zero stays at zero.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def run(self,
            trades: Sequence[Trade],
            params: MonteCarloParams,
            progress_callback: Optional[SimulationProgressCallback] = None) -> SimulationResult:
        """
        Args:
            trades: Historical trades, one or many strategies
            params: Validated simulation settings
            progress_callback: Called with percent complete

        Returns:
            SimulationResult with one path per simulation

        Raises:
            InsufficientDataError: no usable historical outcomes
        """
        params.validate()
        if not trades:
            raise InsufficientDataError("Forward simulation requires at least one trade")

        pool = self._historical_outcomes(trades, params)
        if pool.size == 0:
            raise InsufficientDataError(
                f"No usable outcomes for {params.resample_method.value} resampling"
            )

        worst_by_strategy: Dict[str, float] = {}
        worst_cases = np.zeros(0)
        if params.worst_case_enabled and params.worst_case_percentage > 0:
            worst_by_strategy, worst_cases = self._worst_case_outcomes(trades, params)
            self.logger.info(
                f"Injecting {worst_cases.size} worst-case outcomes in "
                f"{params.worst_case_mode.value} mode"
            )

        # worst cases are always eligible draws; guarantee mode also forces its quota
        draw_pool = np.concatenate([pool, worst_cases])
        if params.worst_case_mode == WorstCaseMode.GUARANTEE:
            forced = worst_cases
        else:
            forced = np.zeros(0)

        self.logger.info(
            f"Running {params.num_simulations} simulations of {params.simulation_length} steps "
            f"({params.resample_method.value} resampling, pool of {draw_pool.size})"
        )

        streams = np.random.SeedSequence(params.random_seed).spawn(params.num_simulations)
        curves = np.empty((params.num_simulations, params.simulation_length))
        paths = []

        for i, stream in enumerate(streams):
            rng = np.random.default_rng(stream)
            outcomes = self._draw_path(rng, draw_pool, forced, params.simulation_length)
            capital = self._replay(outcomes, params)
            path = self._summarize_path(capital, params)
            curves[i] = path.equity_curve
            paths.append(path)

            if progress_callback and (i % PROGRESS_INTERVAL == 0 or i == params.num_simulations - 1):
                progress_callback((i + 1) / params.num_simulations * 100)

        result = SimulationResult(
            simulations=paths,
            percentiles=self._percentiles(curves),
            statistics=self._statistics(paths),
            parameters=params,
            worst_case_outcomes=worst_by_strategy,
        )
        self.logger.info(
            f"Simulation complete: median final value ${result.statistics.median_final_value:,.0f}, "
            f"P(profit) {result.statistics.probability_of_profit:.1%}"
        )
        return result

    def _trade_pl(self, trade: Trade, params: MonteCarloParams) -> float:
        pl = trade.pl
        if params.normalize_to_1_lot and trade.num_contracts and trade.num_contracts > 0:
            pl = pl / trade.num_contracts
        return pl

    def _dollar_scale(self, params: MonteCarloParams) -> float:
        if params.historical_initial_capital:
            return params.initial_capital / params.historical_initial_capital
        return 1.0

    def _daily_pl(self, trades: Sequence[Trade], params: MonteCarloParams) -> Tuple[List[str], np.ndarray]:
        daily: Dict[str, float] = {}
        for trade in trades:
            key = trade.date_key
            if key is not None:
                daily[key] = daily.get(key, 0.0) + self._trade_pl(trade, params)
        days = sorted(daily)
        return days, np.array([daily[d] for d in days], dtype=float)

    def _historical_outcomes(self, trades: Sequence[Trade], params: MonteCarloParams) -> np.ndarray:
        """Resampling pool in the unit the replay expects (dollars or fractions)."""
        method = params.resample_method

        if method == ResampleMethod.TRADES:
            pl = np.array([self._trade_pl(t, params) for t in trades], dtype=float)
            return pl * self._dollar_scale(params)

        ordered = sort_trades(list(trades))
        _, daily_pl = self._daily_pl(ordered, params)

        if method == ResampleMethod.DAILY:
            return daily_pl * self._dollar_scale(params)

        # percentage: each day's P&L against the equity it was earned on
        equity = params.historical_initial_capital or starting_equity(ordered[0], "Forward simulation")
        returns = []
        for day_pl in daily_pl:
            if equity <= 0:
                break
            returns.append(day_pl / equity)
            equity += day_pl
        return np.array(returns, dtype=float)

    def _worst_case_outcomes(self,
                             trades: Sequence[Trade],
                             params: MonteCarloParams) -> Tuple[Dict[str, float], np.ndarray]:
        """
        Per strategy, the worst plausible single outcome is losing the larger of
        its maximum margin requirement and its largest realized loss. Each
        strategy contributes round(pct% of its trade count) copies, at least one.
        """
        worst_by_strategy = {}
        injected = []

        for strategy, strategy_trades in group_trades_by_strategy(list(trades)).items():
            exposures = [0.0]
            for trade in strategy_trades:
                contracts = trade.num_contracts if params.normalize_to_1_lot and trade.num_contracts else 1.0
                if trade.margin_req and trade.margin_req > 0:
                    exposures.append(trade.margin_req / contracts)
                if trade.pl < 0:
                    exposures.append(-trade.pl / contracts)
            worst_loss = max(exposures)
            if worst_loss <= 0:
                continue

            if params.resample_method == ResampleMethod.PERCENTAGE:
                base = params.historical_initial_capital or params.initial_capital
                outcome = -worst_loss / base
            else:
                outcome = -worst_loss * self._dollar_scale(params)

            count = max(1, int(round(params.worst_case_percentage / 100 * len(strategy_trades))))
            worst_by_strategy[strategy] = outcome
            injected.extend([outcome] * count)

        return worst_by_strategy, np.array(injected, dtype=float)

    def _draw_path(self,
                   rng: np.random.Generator,
                   pool: np.ndarray,
                   forced: np.ndarray,
                   length: int) -> np.ndarray:
        outcomes = pool[rng.integers(0, pool.size, size=length)]
        if forced.size:
            n_forced = min(forced.size, length)
            positions = rng.choice(length, size=n_forced, replace=False)
            outcomes[positions] = rng.permutation(forced)[:n_forced]
        return outcomes

    def _replay(self, outcomes: np.ndarray, params: MonteCarloParams) -> np.ndarray:
        """Capital after each step."""
        if params.resample_method == ResampleMethod.PERCENTAGE:
            capital = params.initial_capital * np.cumprod(1 + outcomes)
        else:
            capital = params.initial_capital + np.cumsum(outcomes)

        ruined = np.flatnonzero(capital <= 0)
        if ruined.size:
            capital[ruined[0]:] = 0.0
        return capital

    def _summarize_path(self, capital: np.ndarray, params: MonteCarloParams) -> SimulationPath:
        initial = params.initial_capital
        final = float(capital[-1])
        total_return = final / initial - 1

        years = params.simulation_length / params.trades_per_year
        annualized = (final / initial) ** (1 / years) - 1 if final > 0 else -1.0

        equity = np.concatenate([[initial], capital])
        high_water = np.maximum.accumulate(equity)
        max_drawdown = float(np.max((high_water - equity) / high_water))

        prev = equity[:-1]
        with np.errstate(divide='ignore', invalid='ignore'):
            step_returns = np.where(prev > 0, equity[1:] / prev - 1, 0.0)
        std = step_returns.std(ddof=1) if step_returns.size > 1 else 0.0
        sharpe = step_returns.mean() / std * np.sqrt(params.trades_per_year) if std > 1e-12 else 0.0

        return SimulationPath(
            equity_curve=capital / initial - 1,
            final_value=final,
            total_return=float(total_return),
            annualized_return=float(annualized),
            max_drawdown=max_drawdown,
            sharpe_ratio=float(sharpe),
        )

    def _percentiles(self, curves: np.ndarray) -> SimulationPercentiles:
        p5, p25, p50, p75, p95 = np.percentile(curves, [5, 25, 50, 75, 95], axis=0)
        return SimulationPercentiles(
            steps=np.arange(1, curves.shape[1] + 1),
            p5=p5, p25=p25, p50=p50, p75=p75, p95=p95,
        )

    def _statistics(self, paths: List[SimulationPath]) -> SimulationStatistics:
        finals = np.array([p.final_value for p in paths])
        totals = np.array([p.total_return for p in paths])
        annualized = np.array([p.annualized_return for p in paths])
        drawdowns = np.array([p.max_drawdown for p in paths])
        sharpes = np.array([p.sharpe_ratio for p in paths])

        return SimulationStatistics(
            mean_final_value=float(finals.mean()),
            median_final_value=float(np.median(finals)),
            std_final_value=float(finals.std()),
            mean_total_return=float(totals.mean()),
            median_total_return=float(np.median(totals)),
            mean_annualized_return=float(annualized.mean()),
            median_annualized_return=float(np.median(annualized)),
            mean_max_drawdown=float(drawdowns.mean()),
            median_max_drawdown=float(np.median(drawdowns)),
            mean_sharpe_ratio=float(sharpes.mean()),
            probability_of_profit=float((totals > 0).mean()),
            value_at_risk=ValueAtRisk(
                p5=float(np.percentile(totals, 5)),
                p10=float(np.percentile(totals, 10)),
                p25=float(np.percentile(totals, 25)),
            ),
        )


def portfolio_trades_from_weights(weights: Dict[str, float],
                                  aligned: AlignedReturns,
                                  initial_capital: float = 100000.0,
                                  strategy: str = "Portfolio") -> List[Trade]:
    """
    Turn a weighted historical return series into one synthetic trade per day.

    Each trade's P&L is the day's weighted return applied to the running
    capital, so the result can be fed to ``ForwardSimulationEngine.run``.
    """
    if aligned.is_empty:
        return []

    daily = aligned.weights_vector(weights) @ aligned.returns
    capital = initial_capital
    trades = []
    for day, ret in zip(aligned.dates, daily):
        pl = float(capital * ret)
        capital += pl
        trades.append(Trade(date_opened=day, date_closed=day, pl=pl, strategy=strategy,
                            funds_at_close=capital))
    return trades
