"""
Services for the connection optimizer.
"""

from connection_optimizer.services.connection_window_service import (
    ConnectionWindowService,
    get_connection_window_service,
    reset_connection_window_service,
)
from connection_optimizer.services.headway_correction_service import (
    HeadwayCorrectionService,
    get_headway_correction_service,
    reset_headway_correction_service,
)
from connection_optimizer.services.optimization_engine import (
    EngineConfig,
    OptimizationEngine,
    get_optimization_engine,
    reset_optimization_engine,
)
from connection_optimizer.services.recovery_bank_service import (
    RecoveryBankService,
    get_recovery_bank_service,
    reset_recovery_bank_service,
)
from connection_optimizer.services.stop_classifier import (
    ChainedStopClassifier,
    ExplicitStopClassifier,
    NameKeywordClassifier,
    StopClassifier,
    build_default_classifier,
)

__all__ = [
    "ConnectionWindowService",
    "get_connection_window_service",
    "reset_connection_window_service",
    "HeadwayCorrectionService",
    "get_headway_correction_service",
    "reset_headway_correction_service",
    "EngineConfig",
    "OptimizationEngine",
    "get_optimization_engine",
    "reset_optimization_engine",
    "RecoveryBankService",
    "get_recovery_bank_service",
    "reset_recovery_bank_service",
    "StopClassifier",
    "NameKeywordClassifier",
    "ExplicitStopClassifier",
    "ChainedStopClassifier",
    "build_default_classifier",
]
