"""
Configuration module for the connection optimizer.

Centralizes runtime settings (budgets, batching, caching, progress publishing)
and the constraint presets used to build OptimizationConstraints.
"""

import logging
import os
from typing import Any, Dict, Optional


class ConstraintPresets:
    """Predefined constraint sets for different operating postures."""

    @staticmethod
    def strict() -> Dict[str, Any]:
        """Small deviations, headway regularity enforced."""
        return {
            "max_trip_deviation": 5,
            "max_schedule_shift": 30,
            "min_recovery_time": 1,
            "max_recovery_time": 10,
            "enforce_headway_regularity": True,
            "headway_tolerance": 3,
            "target_headway": 30,
            "allow_cross_route_borrowing": False,
        }

    @staticmethod
    def balanced() -> Dict[str, Any]:
        """Balanced preset (default)."""
        return {
            "max_trip_deviation": 10,
            "max_schedule_shift": 60,
            "min_recovery_time": 0,
            "max_recovery_time": 15,
            "enforce_headway_regularity": False,
            "headway_tolerance": 5,
            "target_headway": 30,
            "allow_cross_route_borrowing": True,
        }

    @staticmethod
    def relaxed() -> Dict[str, Any]:
        """Wide deviations for schedules that are far from their connections."""
        return {
            "max_trip_deviation": 15,
            "max_schedule_shift": 120,
            "min_recovery_time": 0,
            "max_recovery_time": 20,
            "enforce_headway_regularity": False,
            "headway_tolerance": 8,
            "target_headway": 30,
            "allow_cross_route_borrowing": True,
        }

    @staticmethod
    def get_preset(name: str) -> Dict[str, Any]:
        """Get a preset by name, falling back to balanced."""
        presets = {
            "strict": ConstraintPresets.strict(),
            "balanced": ConstraintPresets.balanced(),
            "relaxed": ConstraintPresets.relaxed(),
        }
        return presets.get(name, ConstraintPresets.balanced())


class Config:
    """Application configuration loaded from environment variables."""

    # Logging
    LOG_LEVEL: str = os.getenv("CONNOPT_LOG_LEVEL", "INFO").upper()

    # Performance budgets
    MAX_OPTIMIZATION_TIME_MS: int = int(os.getenv("CONNOPT_MAX_OPTIMIZATION_TIME_MS", "30000"))
    MAX_MEMORY_MB: float = float(os.getenv("CONNOPT_MAX_MEMORY_MB", "512"))
    EARLY_TERMINATION_THRESHOLD: float = float(os.getenv("CONNOPT_EARLY_TERMINATION", "0.85"))
    TRACE_MEMORY: bool = os.getenv("CONNOPT_TRACE_MEMORY", "false").lower() == "true"

    # Search strategy
    BATCH_SIZE: int = int(os.getenv("CONNOPT_BATCH_SIZE", "25"))
    PROGRESSIVE_TRIP_THRESHOLD: int = int(os.getenv("CONNOPT_PROGRESSIVE_TRIP_THRESHOLD", "100"))
    PROGRESSIVE_CONNECTION_THRESHOLD: int = int(
        os.getenv("CONNOPT_PROGRESSIVE_CONNECTION_THRESHOLD", "50")
    )
    BATCH_PAUSE_SEC: float = float(os.getenv("CONNOPT_BATCH_PAUSE_SEC", "0.001"))

    # Caching
    CACHE_MAX_SIZE: int = int(os.getenv("CONNOPT_CACHE_MAX_SIZE", "10000"))

    # Redis Configuration (progress pub/sub)
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    PROGRESS_INTERVAL: float = float(os.getenv("CONNOPT_PROGRESS_INTERVAL", "1.0"))

    @classmethod
    def is_redis_available(cls) -> bool:
        """Check if Redis is accessible."""
        try:
            import redis
            client = redis.Redis.from_url(cls.REDIS_URL, socket_connect_timeout=2)
            client.ping()
            return True
        except Exception:
            return False

    @classmethod
    def get_config_dict(cls) -> dict:
        """Return configuration as dictionary (for debugging)."""
        return {
            "LOG_LEVEL": cls.LOG_LEVEL,
            "MAX_OPTIMIZATION_TIME_MS": cls.MAX_OPTIMIZATION_TIME_MS,
            "MAX_MEMORY_MB": cls.MAX_MEMORY_MB,
            "EARLY_TERMINATION_THRESHOLD": cls.EARLY_TERMINATION_THRESHOLD,
            "TRACE_MEMORY": cls.TRACE_MEMORY,
            "BATCH_SIZE": cls.BATCH_SIZE,
            "PROGRESSIVE_TRIP_THRESHOLD": cls.PROGRESSIVE_TRIP_THRESHOLD,
            "PROGRESSIVE_CONNECTION_THRESHOLD": cls.PROGRESSIVE_CONNECTION_THRESHOLD,
            "CACHE_MAX_SIZE": cls.CACHE_MAX_SIZE,
            "REDIS_URL": cls.REDIS_URL.replace("//", "//***@") if "@" in cls.REDIS_URL else cls.REDIS_URL,
        }


def configure_logging(level: Optional[str] = None) -> None:
    """Install a basic root handler at *level* (defaults to CONNOPT_LOG_LEVEL)."""
    logging.basicConfig(
        level=getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


# Global configuration instance
config = Config()
