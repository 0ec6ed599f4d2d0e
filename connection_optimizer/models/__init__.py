"""
Data models for the connection optimizer.
"""

from connection_optimizer.models.schedule import Schedule, TimePoint, Trip
from connection_optimizer.models.connection import (
    CONNECTION_TYPE_NAMES,
    BellSchedule,
    BulkConnectionAnalysis,
    CampusConfig,
    ConnectionMetadata,
    ConnectionOpportunity,
    ConnectionRequirement,
    ConnectionType,
    ConnectionWindow,
    ConnectionWindowResult,
    RailConfig,
    School,
    SchoolBellConfig,
    SemesterSchedule,
    SpecialDate,
    SpecialSchoolDay,
    StationStop,
    TimeRange,
    TrainSchedule,
    TypeSummary,
    WindowClassification,
    WindowMultipliers,
)
from connection_optimizer.models.recovery import (
    AllocationRequest,
    AllocationResult,
    BankSnapshot,
    RecoveryAccount,
    RecoveryAccountOverride,
    RecoveryBankState,
    RecoveryTransaction,
    StopType,
    TransactionType,
    TransferResult,
    UnmetRequest,
    UtilizationReport,
)
from connection_optimizer.models.headway import (
    CorrectionReport,
    CorrectionStep,
    CorrectionStrategy,
    HeadwayConsistencyResult,
    HeadwayCorrectionResult,
    HeadwayCorrectionSettings,
    HeadwayDeviation,
    HeadwayMetrics,
    HeadwayViolation,
    TripCorrectionResult,
)
from connection_optimizer.models.optimization import (
    ConnectionAlignMove,
    ConnectionOptimizationResult,
    ConstraintViolation,
    FailedConnection,
    HeadwayAdjustMove,
    MoveKind,
    OptimizationConstraints,
    OptimizationMove,
    OptimizationProgress,
    OptimizationReport,
    OptimizationState,
    OptimizationStatistics,
    PerformanceLimits,
    PerformanceMetrics,
    RecoveryTransferMove,
    RejectedMove,
    TimeShiftMove,
)

__all__ = [
    "Schedule", "TimePoint", "Trip",
    "CONNECTION_TYPE_NAMES", "BellSchedule", "BulkConnectionAnalysis", "CampusConfig",
    "ConnectionMetadata", "ConnectionOpportunity", "ConnectionRequirement", "ConnectionType",
    "ConnectionWindow", "ConnectionWindowResult", "RailConfig", "School", "SchoolBellConfig",
    "SemesterSchedule", "SpecialDate", "SpecialSchoolDay", "StationStop", "TimeRange",
    "TrainSchedule", "TypeSummary", "WindowClassification", "WindowMultipliers",
    "AllocationRequest", "AllocationResult", "BankSnapshot", "RecoveryAccount",
    "RecoveryAccountOverride", "RecoveryBankState", "RecoveryTransaction", "StopType",
    "TransactionType", "TransferResult", "UnmetRequest", "UtilizationReport",
    "CorrectionReport", "CorrectionStep", "CorrectionStrategy", "HeadwayConsistencyResult",
    "HeadwayCorrectionResult", "HeadwayCorrectionSettings", "HeadwayDeviation",
    "HeadwayMetrics", "HeadwayViolation", "TripCorrectionResult",
    "ConnectionAlignMove", "ConnectionOptimizationResult", "ConstraintViolation",
    "FailedConnection", "HeadwayAdjustMove", "MoveKind", "OptimizationConstraints",
    "OptimizationMove", "OptimizationProgress", "OptimizationReport", "OptimizationState",
    "OptimizationStatistics", "PerformanceLimits", "PerformanceMetrics", "RecoveryTransferMove",
    "RejectedMove", "TimeShiftMove",
]
