"""
Type definitions for the connection optimizer.

This module contains type aliases used across the services.
"""

from typing import Any, Callable, Dict, List, Tuple

# =============================================================================
# Basic type aliases
# =============================================================================

# Time in minutes since midnight
Minutes = int

# Stats dictionary
StatsDict = Dict[str, Any]

# =============================================================================
# Engine types
# =============================================================================

# Bus times at a location: (sorted minutes, trip numbers in the same order)
LocationTimes = Tuple[List[float], List[int]]

# Progress callback receiving an OptimizationProgress; may return an awaitable
ProgressCallback = Callable[[Any], Any]
