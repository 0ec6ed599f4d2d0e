"""
Schedule data contracts: time points, trips and schedules.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from connection_optimizer.time_utils import is_valid_time, time_to_minutes


def _check_time(value: str) -> str:
    if not is_valid_time(value):
        raise ValueError(f"invalid time {value!r}, expected HH:MM")
    return value.strip()


class TimePoint(BaseModel):
    """Ordered stop along a route."""

    id: str = Field(..., description="Stop identifier")
    name: str = Field(..., description="Human readable stop name")
    sequence: int = Field(..., ge=0, description="Order along the route")


class Trip(BaseModel):
    """One vehicle trip with per-stop times."""

    trip_number: int = Field(..., description="Trip number, unique within a schedule")
    block_number: int = Field(..., description="Vehicle block the trip belongs to")
    departure_time: str = Field(..., description="Departure from the first time point (HH:MM)")
    service_band: Optional[str] = Field(None, description="Service band label")
    arrival_times: Dict[str, str] = Field(default_factory=dict)
    departure_times: Dict[str, str] = Field(default_factory=dict)
    recovery_times: Dict[str, float] = Field(default_factory=dict)

    @field_validator("departure_time")
    @classmethod
    def validate_departure_time(cls, v):
        return _check_time(v)

    @field_validator("arrival_times", "departure_times")
    @classmethod
    def validate_stop_times(cls, v):
        return {stop_id: _check_time(t) for stop_id, t in v.items()}

    @property
    def trip_id(self) -> str:
        return str(self.trip_number)

    @property
    def departure_minutes(self) -> int:
        return time_to_minutes(self.departure_time)

    def time_at(self, stop_id: str) -> Optional[str]:
        """Arrival time at *stop_id*, else departure time, else None."""
        return self.arrival_times.get(stop_id) or self.departure_times.get(stop_id)

    def serves(self, stop_id: str) -> bool:
        return stop_id in self.arrival_times or stop_id in self.departure_times

    def clone(self) -> "Trip":
        return self.model_copy(
            update={
                "arrival_times": dict(self.arrival_times),
                "departure_times": dict(self.departure_times),
                "recovery_times": dict(self.recovery_times),
            }
        )


class Schedule(BaseModel):
    """Unit of input and output for the optimization engine."""

    id: str = Field(..., description="Schedule identifier")
    route_name: str = Field(..., description="Route name")
    direction: str = Field("inbound", description="Route direction")
    day_type: Optional[str] = Field(None, description="weekday / saturday / sunday")
    time_points: List[TimePoint] = Field(default_factory=list)
    trips: List[Trip] = Field(default_factory=list)

    @property
    def ordered_time_points(self) -> List[TimePoint]:
        return sorted(self.time_points, key=lambda tp: tp.sequence)

    @property
    def first_time_point_id(self) -> Optional[str]:
        ordered = self.ordered_time_points
        return ordered[0].id if ordered else None

    def time_point(self, stop_id: str) -> Optional[TimePoint]:
        for tp in self.time_points:
            if tp.id == stop_id:
                return tp
        return None

    def trip_map(self) -> Dict[int, Trip]:
        return {trip.trip_number: trip for trip in self.trips}

    def sorted_trips(self) -> List[Trip]:
        """Trips ordered by departure time (stable on trip number)."""
        return sorted(self.trips, key=lambda t: (t.departure_minutes, t.trip_number))

    def clone(self) -> "Schedule":
        """Copy with independent per-trip maps; time points are shared (immutable)."""
        return self.model_copy(update={"trips": [trip.clone() for trip in self.trips]})
