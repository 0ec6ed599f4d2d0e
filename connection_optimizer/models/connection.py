"""
Connection windows, opportunities and the domain configurations that generate them.
"""

import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from connection_optimizer.time_utils import is_valid_time


class ConnectionType(str, Enum):
    """Kinds of external service a bus trip can connect with."""
    BUS_ROUTE = "BUS_ROUTE"
    GO_TRAIN = "GO_TRAIN"
    SCHOOL_BELL = "SCHOOL_BELL"


class WindowClassification(str, Enum):
    """Quality of a connection."""
    IDEAL = "ideal"
    PARTIAL = "partial"
    MISSED = "missed"


CONNECTION_TYPE_NAMES: Dict[ConnectionType, str] = {
    ConnectionType.GO_TRAIN: "GO Train",
    ConnectionType.SCHOOL_BELL: "School",
    ConnectionType.BUS_ROUTE: "Bus Route",
}

ConnectionScenario = Literal["arrival", "departure"]
ConnectionTiming = Literal["before", "after"]


# =============================================================================
# Windows
# =============================================================================

class TimeRange(BaseModel):
    """Inclusive range of minutes."""
    min: float = Field(..., ge=0)
    max: float = Field(..., ge=0)

    @model_validator(mode="after")
    def check_order(self):
        if self.min > self.max:
            raise ValueError(f"range min {self.min} is greater than max {self.max}")
        return self

    @property
    def width(self) -> float:
        return self.max - self.min

    @property
    def midpoint(self) -> float:
        return (self.min + self.max) / 2

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max


class WindowMultipliers(BaseModel):
    ideal: float = Field(1.0, ge=0, le=1)
    partial: float = Field(0.5, ge=0, le=1)
    missed: float = Field(0.0, ge=0, le=1)


class ConnectionWindow(BaseModel):
    """Ideal/partial time windows and their score multipliers for one connection type."""

    ideal: TimeRange
    partial: TimeRange
    multipliers: WindowMultipliers = Field(default_factory=WindowMultipliers)

    @model_validator(mode="after")
    def check_widths(self):
        if self.ideal.width > self.partial.width:
            raise ValueError("ideal window must not be wider than the partial window")
        return self

    def multiplier(self, classification: WindowClassification) -> float:
        return getattr(self.multipliers, WindowClassification(classification).value)


# =============================================================================
# Opportunities
# =============================================================================

class ConnectionMetadata(BaseModel):
    service_name: str = Field(..., description="Service connected with")
    description: str = Field("", description="Human readable description")
    frequency: Optional[float] = Field(None, gt=0, description="Occurrences per period")
    timing: Optional[ConnectionTiming] = Field(
        None, description="Bus is 'before' (arrives ahead of) or 'after' the target"
    )
    walking_time: float = Field(0.0, ge=0, description="Walk between bus stop and service (min)")
    source: Optional[str] = Field(None, description="campus / rail / school / manual")


class ConnectionOpportunity(BaseModel):
    """A target time at a stop that a bus trip should meet."""

    id: str
    type: ConnectionType
    location_id: str = Field(..., description="Time point id where the connection happens")
    target_time: str = Field(..., description="Target time of the external service (HH:MM)")
    priority: int = Field(5, description="Priority 1-10")
    window_type: WindowClassification = WindowClassification.MISSED
    current_connection_time: Optional[float] = Field(None, description="|bus - target| in minutes")
    affected_trips: List[str] = Field(default_factory=list)
    operating_days: List[str] = Field(default_factory=list)
    metadata: ConnectionMetadata

    @field_validator("target_time")
    @classmethod
    def validate_target_time(cls, v):
        if not is_valid_time(v):
            raise ValueError(f"invalid target_time {v!r}")
        return v


class ConnectionWindowDetails(BaseModel):
    bus_time: str
    connection_time: str
    connection_type: ConnectionType
    scenario: ConnectionScenario
    applied_window: ConnectionWindow


class ConnectionWindowResult(BaseModel):
    """Classification of a single bus time against a connection time."""

    gap_minutes: float
    classification: WindowClassification
    score: float = Field(..., ge=0, le=1)
    is_satisfied: bool
    recommended_adjustment: Optional[float] = None
    details: ConnectionWindowDetails


class ConnectionRequirement(BaseModel):
    location_id: str
    connection_time: str
    connection_type: ConnectionType
    scenario: ConnectionScenario = "arrival"
    priority: int = 5


class TypeSummary(BaseModel):
    total: int = 0
    ideal: int = 0
    partial: int = 0
    missed: int = 0
    average_score: float = 0.0


class BulkConnectionAnalysis(BaseModel):
    success_rate: float
    average_score: float
    connections: List[ConnectionWindowResult] = Field(default_factory=list)
    summary_by_type: Dict[ConnectionType, TypeSummary] = Field(default_factory=dict)
    recommendations: List[str] = Field(default_factory=list)


# =============================================================================
# Domain configurations
# =============================================================================

class SpecialDate(BaseModel):
    date: datetime.date
    description: str = ""
    alternate: bool = Field(False, description="Classes run on an alternate timetable")


class SemesterSchedule(BaseModel):
    start_date: datetime.date
    end_date: datetime.date
    operating_days: List[str] = Field(
        default_factory=lambda: ["monday", "tuesday", "wednesday", "thursday", "friday"]
    )
    special_dates: List[SpecialDate] = Field(default_factory=list)


class CampusConfig(BaseModel):
    """College class times served by campus stops."""

    service_name: str = "Georgian College"
    class_start_times: List[str] = Field(default_factory=list)
    class_end_times: List[str] = Field(default_factory=list)
    campus_stops: List[str] = Field(default_factory=list)
    semester_schedule: SemesterSchedule
    class_priorities: Dict[str, int] = Field(default_factory=dict)


class TrainSchedule(BaseModel):
    direction: Literal["northbound", "southbound"]
    station_id: str
    departure_times: List[str] = Field(default_factory=list)
    arrival_times: List[str] = Field(default_factory=list)
    service_type: Literal["express", "local", "limited"] = "local"
    operating_days: List[str] = Field(default_factory=list)


class StationStop(BaseModel):
    station_id: str
    bus_stop_id: str
    walking_time: float = Field(0.0, ge=0, description="Minutes from bus stop to platform")
    platform_capacity: int = 0


class RailConfig(BaseModel):
    """Commuter rail timetable and station/bus stop pairing."""

    train_schedules: List[TrainSchedule] = Field(default_factory=list)
    station_stops: List[StationStop] = Field(default_factory=list)


class BellSchedule(BaseModel):
    start_time: str
    end_time: str
    lunch_start: Optional[str] = None
    lunch_end: Optional[str] = None


class School(BaseModel):
    school_id: str
    school_name: str
    bus_stop_ids: List[str] = Field(default_factory=list)
    bell_schedule: BellSchedule
    student_capacity: int = 0
    priority_level: int = Field(5, ge=1, le=10)


class SpecialSchoolDay(BaseModel):
    date: datetime.date
    schedule_type: Literal["early_dismissal", "late_start", "no_school"]
    alternate_schedule: Optional[BellSchedule] = None


class TransportationRequirements(BaseModel):
    max_wait_time: float = 15
    min_connection_time: float = 5
    capacity_constraints: bool = False


class SchoolBellConfig(BaseModel):
    """High school bell schedules served by school stops."""

    schools: List[School] = Field(default_factory=list)
    special_schedules: List[SpecialSchoolDay] = Field(default_factory=list)
    transportation_requirements: TransportationRequirements = Field(
        default_factory=TransportationRequirements
    )
