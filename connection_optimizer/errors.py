"""
Exception taxonomy for the connection optimizer.

Only ValidationError escapes the public engine API as an exception (and only
from the window service); everything else is converted into result records.
"""

from typing import List, Optional


class OptimizationError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(OptimizationError, ValueError):
    """Malformed schedule, opportunity or constraint input."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ConstraintViolationError(OptimizationError):
    """A candidate move breaches deviation, headway or recovery bounds."""

    def __init__(self, message: str, violations: Optional[List[str]] = None):
        super().__init__(message)
        self.violations = list(violations or [message])


class ResourceExceeded(OptimizationError):
    """Time or memory budget breached."""

    def __init__(self, resource: str, limit: float, observed: float):
        super().__init__(f"{resource} budget exceeded: {observed:.1f} > {limit:.1f}")
        self.resource = resource
        self.limit = limit
        self.observed = observed


class TransactionError(OptimizationError):
    """Recovery transfer rejected by the bank."""


class InternalFailure(OptimizationError):
    """Unexpected fault during the search."""


__all__ = [
    "OptimizationError",
    "ValidationError",
    "ConstraintViolationError",
    "ResourceExceeded",
    "TransactionError",
    "InternalFailure",
]
