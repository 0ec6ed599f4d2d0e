"""
Headway deviation and correction records.
"""

from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class CorrectionStrategy(str, Enum):
    EXPONENTIAL_SMOOTHING = "exponential_smoothing"
    LINEAR_INTERPOLATION = "linear_interpolation"
    WEIGHTED_AVERAGE = "weighted_average"
    MOMENTUM_BASED = "momentum_based"


class HeadwayDeviation(BaseModel):
    """Difference between the planned and current spacing before a trip."""

    trip_id: str
    planned_headway: float
    current_headway: float
    deviation: float = Field(..., description="current - planned (minutes)")
    correction_trips: int = 3
    correction_rate: float = 0.6


class HeadwayCorrectionSettings(BaseModel):
    strategy_id: str = "default"
    target_headway: float = Field(30, gt=0)
    max_deviation_threshold: float = Field(5, ge=0)
    correction_horizon: int = Field(3, ge=1)
    correction_strength: float = Field(0.6, ge=0, le=1)
    correction_direction: Literal["forward", "backward", "bidirectional"] = "forward"


class CorrectionStep(BaseModel):
    trip_id: str
    correction_minutes: float
    trip_offset: int


class TripCorrectionResult(BaseModel):
    trip_id: str
    original_time: str
    corrected_time: str
    adjustment_minutes: float = 0.0
    # whole minutes the trip actually moved; adjustment_minutes is the computed correction
    applied_minutes: float = 0.0
    correction_applied: bool
    reason: Optional[str] = None


class HeadwayMetrics(BaseModel):
    mean_headway: float = 0.0
    standard_deviation: float = 0.0
    coefficient_of_variation: float = 0.0
    regularity_score: float = 0.0


class HeadwayImprovement(BaseModel):
    before_variance: float = 0.0
    after_variance: float = 0.0
    variance_reduction: float = Field(0.0, description="Percent reduction of headway variance")


class ConstraintCompliance(BaseModel):
    max_deviation_respected: bool = True
    min_recovery_respected: bool = True
    all_constraints_met: bool = True


class HeadwayCorrectionResult(BaseModel):
    success: bool
    correction_strategy: CorrectionStrategy
    trip_corrections: List[TripCorrectionResult] = Field(default_factory=list)
    overall_improvement: HeadwayImprovement = Field(default_factory=HeadwayImprovement)
    before_metrics: HeadwayMetrics = Field(default_factory=HeadwayMetrics)
    statistical_metrics: HeadwayMetrics = Field(default_factory=HeadwayMetrics)
    constraint_compliance: ConstraintCompliance = Field(default_factory=ConstraintCompliance)


class HeadwayViolation(BaseModel):
    trip_index: int
    trip_id: str
    actual_headway: float
    violation_type: Literal["too_short", "too_long", "bunching"]
    severity: Literal["low", "medium", "high"]


class HeadwayConsistencyResult(BaseModel):
    is_valid: bool
    violations: List[HeadwayViolation] = Field(default_factory=list)
    average_headway: float = 0.0
    headway_variance: float = 0.0


class CorrectionReportSummary(BaseModel):
    total_trips_analyzed: int
    trips_modified: int
    average_adjustment: float
    max_adjustment: float
    variance_improvement: float


class CorrectionReport(BaseModel):
    summary: CorrectionReportSummary
    before: HeadwayMetrics
    after: HeadwayMetrics
    recommendations: List[str] = Field(default_factory=list)
