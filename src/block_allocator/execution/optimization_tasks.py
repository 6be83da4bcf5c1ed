from typing import Any, Callable, Iterator, List, Optional, Sequence, Tuple, Union
from dataclasses import dataclass, field
from enum import Enum
import logging
import queue
import threading

from ..data.returns import DateAlignment, ReturnSeries
from ..exceptions import AllocationError, InsufficientAssetsError, InsufficientDataError
from ..portfolio.efficient_frontier import (MonteCarloFrontierEngine, PortfolioResult,
                                            identify_efficient_frontier)
from ..portfolio.hierarchical_optimizer import (BlockDefinition, HierarchicalConfig,
                                                HierarchicalOptimizer, HierarchicalResult)
from ..portfolio.portfolio_metrics import AnalysisConfig
from ..portfolio.weight_sampler import PortfolioConstraints
from ..risk.margin_filter import apply_margin_filter

logger = logging.getLogger(__name__)


class EventType(Enum):
    PROGRESS = "progress"
    PHASE_PROGRESS = "phase-progress"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class ProgressEvent:
    progress: float  # 0-100
    portfolio: PortfolioResult
    type: EventType = EventType.PROGRESS


@dataclass
class PhaseProgressEvent:
    phase: int
    progress: float          # 0-100 within the phase
    overall_progress: float  # phase 1 maps to 0-50, phase 2 to 50-100
    message: str
    type: EventType = EventType.PHASE_PROGRESS


@dataclass
class FrontierOptimizationResult:
    portfolios: List[PortfolioResult]
    efficient_frontier: List[PortfolioResult]
    fallback_count: int = 0


@dataclass
class CompletionEvent:
    result: Union[FrontierOptimizationResult, HierarchicalResult]
    type: EventType = EventType.COMPLETE


@dataclass
class ErrorEvent:
    message: str
    error_type: str = "Exception"
    assets: List[str] = field(default_factory=list)
    type: EventType = EventType.ERROR


TaskEvent = Union[ProgressEvent, PhaseProgressEvent, CompletionEvent, ErrorEvent]
TERMINAL_EVENTS = (EventType.COMPLETE, EventType.ERROR)


def _error_event(error: Exception) -> ErrorEvent:
    assets = getattr(error, 'assets', []) if isinstance(error, AllocationError) else []
    return ErrorEvent(message=str(error) or 'Unknown error',
                      error_type=type(error).__name__,
                      assets=list(assets))


def run_frontier_optimization(events: 'queue.Queue[TaskEvent]',
                              series: Sequence[ReturnSeries],
                              num_simulations: int = 2000,
                              constraints: Optional[PortfolioConstraints] = None,
                              analysis: Optional[AnalysisConfig] = None,
                              date_alignment: DateAlignment = DateAlignment.ZERO_PADDING,
                              seed: Optional[int] = None) -> None:
    """
    Frontier search that reports through ``events``.

    Puts a ProgressEvent at the engine's reporting cadence and then exactly
    one CompletionEvent or ErrorEvent. An empty population, such as disjoint
    series under overlapping alignment, is reported as InsufficientDataError.
    """
    try:
        if len(series) < 2:
            raise InsufficientAssetsError(
                f"At least 2 assets are required for optimization, got {len(series)}",
                assets=[s.label for s in series],
            )

        engine = MonteCarloFrontierEngine(
            constraints=constraints or PortfolioConstraints(),
            analysis=analysis,
            date_alignment=date_alignment,
            seed=seed,
        )
        run = engine.run(
            series,
            num_simulations,
            progress_callback=lambda progress, portfolio: events.put(ProgressEvent(progress, portfolio)),
        )
        if run.is_empty:
            raise InsufficientDataError(
                "No valid portfolios generated; the assets share too few dates "
                f"under {date_alignment.value} alignment",
                assets=[s.label for s in series],
            )
        result = FrontierOptimizationResult(
            portfolios=run.portfolios,
            efficient_frontier=identify_efficient_frontier(run.portfolios),
            fallback_count=run.fallback_count,
        )
    except Exception as e:
        logger.error(f"Frontier optimization failed: {e}")
        events.put(_error_event(e))
        return

    events.put(CompletionEvent(result))


def run_hierarchical_optimization(events: 'queue.Queue[TaskEvent]',
                                  blocks: Sequence[BlockDefinition],
                                  config: Optional[HierarchicalConfig] = None,
                                  total_capital: Optional[float] = None) -> None:
    """
    Two-level optimization that reports through ``events``.

    When ``total_capital`` is given the margin filter runs on the result
    before completion.
    """
    def on_phase(phase: int, progress: float, message: str):
        overall = progress / 2 if phase == 1 else 50 + progress / 2
        events.put(PhaseProgressEvent(phase=phase, progress=progress,
                                      overall_progress=overall, message=message))

    try:
        optimizer = HierarchicalOptimizer(config)
        result = optimizer.run(blocks, progress_callback=on_phase)
        if total_capital is not None:
            apply_margin_filter(result, total_capital, optimizer.config.level1.analysis)
    except Exception as e:
        logger.error(f"Hierarchical optimization failed: {e}")
        events.put(_error_event(e))
        return

    events.put(CompletionEvent(result))


def start_background_task(task: Callable[..., None],
                          *args: Any,
                          **kwargs: Any) -> Tuple[threading.Thread, 'queue.Queue[TaskEvent]']:
    """Run ``task(events, *args, **kwargs)`` on a daemon thread and hand back its event queue."""
    events: 'queue.Queue[TaskEvent]' = queue.Queue()
    thread = threading.Thread(target=task, args=(events,) + args, kwargs=kwargs)
    thread.daemon = True
    thread.start()
    logger.info(f"Started background task {getattr(task, '__name__', task)}")
    return thread, events


def iter_events(events: 'queue.Queue[TaskEvent]', timeout: Optional[float] = None) -> Iterator[TaskEvent]:
    """Yield events in order, stopping after the terminal one."""
    while True:
        event = events.get(timeout=timeout)
        yield event
        if event.type in TERMINAL_EVENTS:
            return
