"""
Optimization contracts: constraints, moves, run state, progress and results.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from connection_optimizer.config import ConstraintPresets, config
from connection_optimizer.models.connection import ConnectionOpportunity, ConnectionType
from connection_optimizer.models.headway import HeadwayCorrectionResult, HeadwayDeviation
from connection_optimizer.models.recovery import RankedAccount, RecoveryBankState, RecoveryTransaction
from connection_optimizer.models.schedule import Schedule


# =============================================================================
# Constraints
# =============================================================================

def _default_connection_priorities() -> Dict[ConnectionType, float]:
    return {
        ConnectionType.SCHOOL_BELL: 3,
        ConnectionType.GO_TRAIN: 2,
        ConnectionType.BUS_ROUTE: 1,
    }


class PerformanceLimits(BaseModel):
    max_optimization_time_ms: int = Field(default_factory=lambda: config.MAX_OPTIMIZATION_TIME_MS)
    max_memory_usage_mb: float = Field(default_factory=lambda: config.MAX_MEMORY_MB)
    early_termination_threshold: float = Field(
        default_factory=lambda: config.EARLY_TERMINATION_THRESHOLD,
        description="Stop searching once the score reaches this value",
    )


class OptimizationConstraints(BaseModel):
    """Operational limits every committed move must respect.

    Bounds are validated by the engine rather than here, so that a bad
    constraint set produces a structured failure result.
    """

    max_trip_deviation: float = Field(10, description="Max shift per trip (min)")
    max_recovery_deviation: Optional[float] = None
    allowed_headway_deviation: Optional[float] = None
    max_schedule_shift: float = Field(60, description="Max sum of |trip shifts| (min)")
    min_recovery_time: float = 0
    max_recovery_time: float = 15
    enforce_headway_regularity: bool = False
    headway_tolerance: float = Field(5, description="Allowed headway deviation (+/- min)")
    target_headway: float = Field(30, description="Planned headway (min)")
    connection_priorities: Dict[ConnectionType, float] = Field(
        default_factory=_default_connection_priorities,
        description="Type weight used to break priority ties",
    )
    allow_cross_route_borrowing: bool = True
    performance: PerformanceLimits = Field(default_factory=PerformanceLimits)

    @classmethod
    def from_preset(cls, name: str, **overrides: Any) -> "OptimizationConstraints":
        data = ConstraintPresets.get_preset(name)
        data.update(overrides)
        return cls(**data)


# =============================================================================
# Moves
# =============================================================================

class MoveKind(str, Enum):
    TIME_SHIFT = "time_shift"
    RECOVERY_TRANSFER = "recovery_transfer"
    HEADWAY_ADJUST = "headway_adjust"
    CONNECTION_ALIGN = "connection_align"


class ConstraintViolation(BaseModel):
    kind: str = Field(..., description="deviation / trip_shift / schedule_shift / headway / "
                                       "insufficient_recovery / recovery_bounds / block_order")
    message: str
    trip_id: Optional[str] = None
    stop_id: Optional[str] = None


class _MoveBase(BaseModel):
    id: str
    target_connection: Optional[ConnectionOpportunity] = None
    time_adjustment: float = 0.0
    required_transactions: List[RecoveryTransaction] = Field(default_factory=list)
    affected_trips: List[str] = Field(default_factory=list)
    score_improvement: float = 0.0
    constraint_violations: List[str] = Field(default_factory=list)
    violation_details: List[ConstraintViolation] = Field(default_factory=list)
    headway_impact: List[HeadwayDeviation] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.constraint_violations


class TimeShiftMove(_MoveBase):
    kind: Literal["time_shift"] = "time_shift"
    shifted_from: Optional[str] = None
    shifted_to: Optional[str] = None


class RecoveryTransferMove(_MoveBase):
    kind: Literal["recovery_transfer"] = "recovery_transfer"
    funded_minutes: float = 0.0


class HeadwayAdjustMove(_MoveBase):
    kind: Literal["headway_adjust"] = "headway_adjust"
    trip_id: str
    correction_minutes: float
    trip_offset: int = 0


class ConnectionAlignMove(_MoveBase):
    kind: Literal["connection_align"] = "connection_align"
    location_id: str


OptimizationMove = Annotated[
    Union[TimeShiftMove, RecoveryTransferMove, HeadwayAdjustMove, ConnectionAlignMove],
    Field(discriminator="kind"),
]


class RejectedMove(BaseModel):
    move: OptimizationMove
    reason: str


class FailedConnection(BaseModel):
    opportunity: ConnectionOpportunity
    reason: str


# =============================================================================
# Run state
# =============================================================================

@dataclass
class OptimizationState:
    """Working state of one optimization run."""

    current_schedule: Schedule
    recovery_bank: Optional[RecoveryBankState]
    current_score: float = 0.0
    applied_moves: List[Any] = field(default_factory=list)
    rejected_moves: List[RejectedMove] = field(default_factory=list)
    headway_deviations: List[HeadwayDeviation] = field(default_factory=list)
    progress: float = 0.0
    started_at: datetime = field(default_factory=datetime.now)
    revision: int = 0
    trip_shifts: Dict[int, float] = field(default_factory=dict)

    def clone(self) -> "OptimizationState":
        return OptimizationState(
            current_schedule=self.current_schedule.clone(),
            recovery_bank=self.recovery_bank.model_copy(deep=True) if self.recovery_bank else None,
            current_score=self.current_score,
            applied_moves=list(self.applied_moves),
            rejected_moves=list(self.rejected_moves),
            headway_deviations=list(self.headway_deviations),
            progress=self.progress,
            started_at=self.started_at,
            revision=self.revision,
            trip_shifts=dict(self.trip_shifts),
        )


# =============================================================================
# Progress and results
# =============================================================================

class OptimizationProgress(BaseModel):
    progress: float = Field(..., ge=0, le=100)
    phase: str
    current_score: float = 0.0
    best_score: float = 0.0
    connections_made: int = 0
    estimated_time_remaining_ms: float = 0.0
    memory_usage_mb: float = 0.0
    can_cancel: bool = True


class OptimizationStatistics(BaseModel):
    total_connections_analyzed: int = 0
    total_moves_evaluated: int = 0
    total_moves_applied: int = 0
    optimization_time_ms: float = 0.0
    memory_used_mb: float = 0.0
    iterations_completed: int = 0
    convergence_achieved: bool = False
    strategy: str = "greedy"
    batches_processed: int = 0
    cache_hit_rate: float = 0.0
    cache_stats: Dict[str, Any] = Field(default_factory=dict)


class PerformanceMetrics(BaseModel):
    connection_success_rate: float = 0.0
    average_connection_time: float = 0.0
    headway_regularity_score: float = 0.0
    recovery_utilization_rate: float = 0.0
    constraint_compliance_rate: float = 0.0


class ConnectionOptimizationResult(BaseModel):
    success: bool
    run_id: Optional[str] = None
    optimized_schedule: Schedule
    original_schedule: Optional[Schedule] = None
    final_score: float = 0.0
    score: float = 0.0
    score_improvement: float = 0.0
    successful_connections: List[ConnectionOpportunity] = Field(default_factory=list)
    connections_improved: int = 0
    failed_connections: List[FailedConnection] = Field(default_factory=list)
    applied_moves: List[OptimizationMove] = Field(default_factory=list)
    rejected_moves: List[RejectedMove] = Field(default_factory=list)
    final_recovery_state: Optional[RecoveryBankState] = None
    headway_corrections: List[HeadwayDeviation] = Field(default_factory=list)
    headway_correction_result: Optional[HeadwayCorrectionResult] = None
    statistics: OptimizationStatistics = Field(default_factory=OptimizationStatistics)
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    recommendations: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    cancelled: bool = False
    error: Optional[str] = None
    constraints: Optional[OptimizationConstraints] = None


# =============================================================================
# Reports
# =============================================================================

class RequestSummary(BaseModel):
    run_id: str
    schedule_id: str
    route_name: str
    trip_count: int
    connection_count: int
    optimization_date: datetime = Field(default_factory=datetime.now)


class ScheduleSnapshot(BaseModel):
    """Connection and regularity figures of one schedule."""

    connections_made: int = 0
    average_connection_time: float = 0.0
    headway_regularity: float = 0.0
    total_recovery_time: float = 0.0


class ReportImprovement(BaseModel):
    additional_connections: int = 0
    connection_time_change: float = 0.0
    headway_regularity_improvement: float = 0.0
    recovery_time_efficiency: float = 0.0


class ReportComparison(BaseModel):
    before: ScheduleSnapshot
    after: ScheduleSnapshot
    improvement: ReportImprovement


class ConnectionBreakdown(BaseModel):
    attempted: int = 0
    successful: int = 0
    average_score: float = 0.0


class RecoveryAnalysis(BaseModel):
    total_recovery_available: float = 0.0
    total_recovery_used: float = 0.0
    utilization_rate: float = 0.0
    top_lenders: List[RankedAccount] = Field(default_factory=list)
    top_borrowers: List[RankedAccount] = Field(default_factory=list)


class ReportRecommendations(BaseModel):
    schedule_adjustments: List[str] = Field(default_factory=list)
    recovery_time_adjustments: List[str] = Field(default_factory=list)
    connection_opportunities: List[str] = Field(default_factory=list)
    performance_improvements: List[str] = Field(default_factory=list)


class OptimizationReport(BaseModel):
    request_summary: RequestSummary
    comparison: ReportComparison
    by_type: Dict[str, ConnectionBreakdown] = Field(default_factory=dict)
    by_priority: Dict[int, ConnectionBreakdown] = Field(default_factory=dict)
    time_distribution: Dict[str, int] = Field(default_factory=dict, description="HH:00 -> connections made")
    recovery_analysis: RecoveryAnalysis = Field(default_factory=RecoveryAnalysis)
    recommendations: ReportRecommendations = Field(default_factory=ReportRecommendations)
