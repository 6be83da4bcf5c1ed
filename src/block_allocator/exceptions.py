from typing import List, Optional


class AllocationError(Exception):
    """Base class for optimization and simulation failures."""


class InsufficientAssetsError(AllocationError, ValueError):
    """Fewer than two strategies or blocks are available for optimization."""

    def __init__(self, message: str, assets: Optional[List[str]] = None):
        super().__init__(message)
        self.assets = list(assets or [])


class InsufficientDataError(AllocationError, ValueError):
    """An asset lacks enough (date, return) observations, or aligned series share no dates."""

    def __init__(self, message: str, assets: Optional[List[str]] = None):
        super().__init__(message)
        self.assets = list(assets or [])


class NoEfficientPortfolioError(AllocationError):
    """Raised when a selection policy is handed an empty efficient frontier."""
