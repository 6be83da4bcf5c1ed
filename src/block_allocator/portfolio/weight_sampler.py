import numpy as np
from typing import Any, Dict, Optional
from dataclasses import dataclass, asdict
import logging

WEIGHT_TOLERANCE = 1e-3


@dataclass
class PortfolioConstraints:
    """Per-asset weight bounds for random portfolio generation."""
    min_weight: float = 0.0
    max_weight: float = 1.0
    fully_invested: bool = True   # weights must sum to 1
    allow_leverage: bool = False  # only meaningful when not fully invested

    def validate(self):
        if not 0.0 <= self.min_weight <= 1.0 or not 0.0 <= self.max_weight <= 1.0:
            raise ValueError(
                f"Weight bounds must lie in [0, 1], got [{self.min_weight}, {self.max_weight}]"
            )
        if self.min_weight > self.max_weight:
            raise ValueError(
                f"min_weight ({self.min_weight}) exceeds max_weight ({self.max_weight})"
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'PortfolioConstraints':
        data = data or {}
        return cls(
            min_weight=float(data.get('min_weight', data.get('minWeight', 0.0))),
            max_weight=float(data.get('max_weight', data.get('maxWeight', 1.0))),
            fully_invested=bool(data.get('fully_invested', data.get('fullyInvested', True))),
            allow_leverage=bool(data.get('allow_leverage', data.get('allowLeverage', False))),
        ).validate()


DEFAULT_CONSTRAINTS = PortfolioConstraints()


class ConstrainedWeightSampler:
    """
    Draws random weight vectors that respect box constraints.

    Fully invested draws start from a flat Dirichlet sample (normalized
    standard exponentials) and are projected onto [min_weight, max_weight]
    by clamping and spreading the surplus or deficit over the weights that
    are still inside the box. A draw that cannot be made feasible is retried;
    after ``max_attempts`` failures the sampler returns equal weights and
    records the fallback.
    """

    def __init__(self,
                 constraints: PortfolioConstraints = DEFAULT_CONSTRAINTS,
                 rng: Optional[np.random.Generator] = None,
                 max_attempts: int = 100,
                 max_adjustment_passes: int = 50):
        self.constraints = constraints
        self.rng = rng if rng is not None else np.random.default_rng()
        self.max_attempts = max_attempts
        self.max_adjustment_passes = max_adjustment_passes
        self.logger = logging.getLogger(__name__)

        self.fallback_count = 0
        self.last_sample_fell_back = False

    def sample(self, n_assets: int) -> np.ndarray:
        """Return one weight vector of length ``n_assets``."""
        if n_assets <= 0:
            return np.zeros(0)

        if not self.constraints.fully_invested:
            self.last_sample_fell_back = False
            low, high = self.constraints.min_weight, self.constraints.max_weight
            return low + self.rng.random(n_assets) * (high - low)

        for _ in range(self.max_attempts):
            weights = self._project_onto_bounds(self._dirichlet_draw(n_assets))
            if self._within_bounds(weights):
                self.last_sample_fell_back = False
                return weights

        self.fallback_count += 1
        self.last_sample_fell_back = True
        self.logger.warning(
            f"Could not satisfy bounds [{self.constraints.min_weight}, {self.constraints.max_weight}] "
            f"for {n_assets} assets after {self.max_attempts} attempts; using equal weights"
        )
        return np.full(n_assets, 1.0 / n_assets)

    def _dirichlet_draw(self, n_assets: int) -> np.ndarray:
        gamma = self.rng.standard_exponential(n_assets)
        return gamma / gamma.sum()

    def _project_onto_bounds(self, weights: np.ndarray) -> np.ndarray:
        low, high = self.constraints.min_weight, self.constraints.max_weight
        weights = weights.copy()

        for _ in range(self.max_adjustment_passes):
            over = weights > high
            under = weights < low
            if not (over.any() or under.any()):
                break

            excess = (weights[over] - high).sum()
            deficit = (low - weights[under]).sum()
            adjustable = ~(over | under)

            weights[over] = high
            weights[under] = low

            if adjustable.any():
                shift = (excess - deficit) / adjustable.sum()
                weights[adjustable] = np.clip(weights[adjustable] + shift, low, high)

        total = weights.sum()
        if total > 0:
            weights = weights / total
        return weights

    def _within_bounds(self, weights: np.ndarray) -> bool:
        low, high = self.constraints.min_weight, self.constraints.max_weight
        if abs(weights.sum() - 1.0) >= WEIGHT_TOLERANCE:
            return False
        return bool(np.all(weights >= low - WEIGHT_TOLERANCE) and np.all(weights <= high + WEIGHT_TOLERANCE))


def generate_random_weights(n_assets: int,
                            constraints: PortfolioConstraints = DEFAULT_CONSTRAINTS,
                            rng: Optional[np.random.Generator] = None) -> np.ndarray:
    """One-off draw; use ConstrainedWeightSampler directly to observe fallbacks."""
    return ConstrainedWeightSampler(constraints, rng=rng).sample(n_assets)
