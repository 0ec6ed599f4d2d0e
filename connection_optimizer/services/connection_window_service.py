"""
Connection window classification and opportunity generation.

A connection window says how far ahead of (or after) an external service a bus
should be at a stop. A gap inside the ideal range scores the full multiplier,
a gap inside the partial range a reduced one, anything else is missed.

Opportunities are generated from three domain configurations: college class
times (campus), commuter rail timetables and school bell schedules.
"""

import bisect
import datetime
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from connection_optimizer.errors import ValidationError
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
    ConnectionWindowDetails,
    ConnectionWindowResult,
    RailConfig,
    School,
    SchoolBellConfig,
    StationStop,
    TimeRange,
    TrainSchedule,
    TypeSummary,
    WindowClassification,
    WindowMultipliers,
)
from connection_optimizer.models.schedule import Schedule, Trip
from connection_optimizer.time_utils import MINUTES_PER_DAY, normalize_gap, time_gap, time_to_minutes

logger = logging.getLogger(__name__)


# =============================================================================
# Window tables
# =============================================================================

def _window(ideal: Tuple[float, float], partial: Tuple[float, float], partial_multiplier: float) -> ConnectionWindow:
    return ConnectionWindow(
        ideal=TimeRange(min=ideal[0], max=ideal[1]),
        partial=TimeRange(min=partial[0], max=partial[1]),
        multipliers=WindowMultipliers(ideal=1.0, partial=partial_multiplier, missed=0.0),
    )


DEFAULT_CONNECTION_WINDOWS: Dict[ConnectionType, ConnectionWindow] = {
    ConnectionType.BUS_ROUTE: _window((3, 8), (1, 12), 0.7),
    ConnectionType.GO_TRAIN: _window((10, 15), (5, 10), 0.6),
    ConnectionType.SCHOOL_BELL: _window((10, 15), (5, 10), 0.5),
}

# College classes tolerate a wider partial band than high school bells
COLLEGE_WINDOW = _window((10, 15), (5, 20), 0.5)

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
SCHOOL_DAYS = WEEKDAYS[:5]

RAIL_DEPARTURE_PRIORITY = 8
RAIL_ARRIVAL_PRIORITY = 7

_CLASSIFICATION_RANK = {
    WindowClassification.IDEAL: 2,
    WindowClassification.PARTIAL: 1,
    WindowClassification.MISSED: 0,
}

RequirementInput = Union[ConnectionRequirement, dict]
DateInput = Union[datetime.date, datetime.datetime, None]


def classify_gap(gap_minutes: float, window: ConnectionWindow) -> WindowClassification:
    """Classify |gap| against the ideal range first, then the partial range."""
    gap = abs(gap_minutes)
    if window.ideal.contains(gap):
        return WindowClassification.IDEAL
    if window.partial.contains(gap):
        return WindowClassification.PARTIAL
    return WindowClassification.MISSED


def classify_difference(difference: float, window: ConnectionWindow) -> WindowClassification:
    """Classify a signed, timing-oriented difference. Negative is always missed."""
    if window.ideal.contains(difference):
        return WindowClassification.IDEAL
    if window.partial.contains(difference):
        return WindowClassification.PARTIAL
    return WindowClassification.MISSED


def _to_date(value: DateInput) -> datetime.date:
    if value is None:
        return datetime.date.today()
    if isinstance(value, datetime.datetime):
        return value.date()
    return value


class ConnectionWindowService:
    """Classifies bus times against connection windows and builds opportunities."""

    def __init__(self, windows: Optional[Dict[ConnectionType, ConnectionWindow]] = None):
        self._windows: Dict[ConnectionType, ConnectionWindow] = {
            t: w.model_copy(deep=True) for t, w in DEFAULT_CONNECTION_WINDOWS.items()
        }
        self._college_window = COLLEGE_WINDOW.model_copy(deep=True)
        self.campus_config: Optional[CampusConfig] = None
        self.rail_config: Optional[RailConfig] = None
        self.school_config: Optional[SchoolBellConfig] = None
        if windows:
            self.configure_connection_windows(windows)

    # =========================================================================
    # Configuration
    # =========================================================================

    def configure_connection_windows(self, windows: Dict[ConnectionType, Union[ConnectionWindow, dict]]) -> None:
        for connection_type, window in windows.items():
            parsed = window if isinstance(window, ConnectionWindow) else ConnectionWindow(**window)
            self._windows[ConnectionType(connection_type)] = parsed

    def configure_college_window(self, window: Union[ConnectionWindow, dict]) -> None:
        self._college_window = window if isinstance(window, ConnectionWindow) else ConnectionWindow(**window)

    def configure_campus(self, campus_config: Union[CampusConfig, dict]) -> None:
        self.campus_config = campus_config if isinstance(campus_config, CampusConfig) else CampusConfig(**campus_config)

    def configure_rail(self, rail_config: Union[RailConfig, dict]) -> None:
        self.rail_config = rail_config if isinstance(rail_config, RailConfig) else RailConfig(**rail_config)

    def configure_school_bells(self, school_config: Union[SchoolBellConfig, dict]) -> None:
        self.school_config = (
            school_config if isinstance(school_config, SchoolBellConfig) else SchoolBellConfig(**school_config)
        )

    def get_connection_windows(self) -> Dict[ConnectionType, ConnectionWindow]:
        return {t: w.model_copy(deep=True) for t, w in self._windows.items()}

    def get_window(self, connection_type: Union[ConnectionType, str]) -> ConnectionWindow:
        try:
            key = ConnectionType(connection_type)
        except ValueError:
            raise ValidationError(
                f"No connection window configured for type: {connection_type}", field="connection_type"
            )
        window = self._windows.get(key)
        if window is None:
            raise ValidationError(f"No connection window configured for type: {key.value}", field="connection_type")
        return window

    # =========================================================================
    # Single connection classification
    # =========================================================================

    def calculate_connection_window(
        self,
        bus_time: str,
        connection_time: str,
        connection_type: Union[ConnectionType, str],
        scenario: str = "arrival",
        priority: int = 5,
    ) -> ConnectionWindowResult:
        """
        Classify a bus time against a connection time.

        arrival: positive gap means the bus arrives before the connection.
        departure: positive gap means the bus leaves after the connection.
        """
        window = self.get_window(connection_type)
        connection_type = ConnectionType(connection_type)
        if connection_type == ConnectionType.SCHOOL_BELL and self.campus_config is not None:
            window = self._college_window

        if scenario == "arrival":
            gap = time_gap(connection_time, bus_time)
        else:
            gap = time_gap(bus_time, connection_time)

        classification = self.get_window_classification(gap, window)
        recommended = None
        if classification != WindowClassification.IDEAL:
            recommended = self._recommended_adjustment(gap, window, scenario)

        return ConnectionWindowResult(
            gap_minutes=gap,
            classification=classification,
            score=self.get_connection_score(classification, priority, window),
            is_satisfied=classification != WindowClassification.MISSED,
            recommended_adjustment=recommended,
            details=ConnectionWindowDetails(
                bus_time=bus_time,
                connection_time=connection_time,
                connection_type=connection_type,
                scenario=scenario,
                applied_window=window,
            ),
        )

    def get_window_classification(self, gap_minutes: float, window: ConnectionWindow) -> WindowClassification:
        return classify_gap(gap_minutes, window)

    def get_connection_score(
        self,
        classification: Union[WindowClassification, str],
        priority: float,
        window: ConnectionWindow,
    ) -> float:
        priority_weight = min(max(priority, 1), 10) / 10
        return window.multiplier(classification) * priority_weight

    @staticmethod
    def _recommended_adjustment(gap: float, window: ConnectionWindow, scenario: str) -> float:
        """Minutes to move the bus towards the middle of the ideal range (+ later, - earlier)."""
        abs_gap = abs(gap)
        ideal_mid = window.ideal.midpoint
        if gap < 0:
            return -(abs_gap + ideal_mid) if scenario == "arrival" else abs_gap + ideal_mid
        if abs_gap < window.ideal.min:
            return window.ideal.min - abs_gap
        if abs_gap > window.ideal.max:
            return -(abs_gap - ideal_mid)
        return 0.0

    # =========================================================================
    # Bulk analysis
    # =========================================================================

    def analyze_all_connections(
        self,
        schedule: Schedule,
        requirements: Iterable[RequirementInput],
    ) -> BulkConnectionAnalysis:
        results: List[ConnectionWindowResult] = []
        summary: Dict[ConnectionType, TypeSummary] = {}

        for item in requirements:
            requirement = item if isinstance(item, ConnectionRequirement) else ConnectionRequirement(**item)
            for trip in schedule.trips:
                if requirement.scenario == "arrival":
                    bus_time = trip.arrival_times.get(requirement.location_id)
                else:
                    bus_time = trip.departure_times.get(requirement.location_id)
                if not bus_time:
                    continue

                result = self.calculate_connection_window(
                    bus_time,
                    requirement.connection_time,
                    requirement.connection_type,
                    requirement.scenario,
                    requirement.priority,
                )
                results.append(result)

                stats = summary.setdefault(requirement.connection_type, TypeSummary())
                stats.total += 1
                setattr(stats, result.classification.value, getattr(stats, result.classification.value) + 1)
                stats.average_score = (stats.average_score * (stats.total - 1) + result.score) / stats.total

        satisfied = sum(1 for r in results if r.is_satisfied)
        success_rate = satisfied / len(results) if results else 0.0
        average_score = sum(r.score for r in results) / len(results) if results else 0.0

        return BulkConnectionAnalysis(
            success_rate=success_rate,
            average_score=average_score,
            connections=results,
            summary_by_type=summary,
            recommendations=self._bulk_recommendations(results, summary),
        )

    @staticmethod
    def _bulk_recommendations(
        results: List[ConnectionWindowResult],
        summary: Dict[ConnectionType, TypeSummary],
    ) -> List[str]:
        recommendations = []
        success_rate = sum(1 for r in results if r.is_satisfied) / max(len(results), 1)
        if success_rate < 0.7:
            recommendations.append("Overall connection success rate is low (<70%). Consider schedule adjustments.")

        for connection_type, stats in summary.items():
            type_name = CONNECTION_TYPE_NAMES.get(connection_type, "Unknown")
            type_success = (stats.ideal + stats.partial) / stats.total
            if type_success < 0.6:
                recommendations.append(
                    f"{type_name} connections need improvement ({round(type_success * 100)}% success rate)."
                )
            if stats.missed > stats.total * 0.3:
                recommendations.append(f"High number of missed {type_name} connections. Review schedule timing.")

        adjustments = [abs(r.recommended_adjustment) for r in results if r.recommended_adjustment is not None]
        if adjustments:
            recommendations.append(
                f"Average recommended time adjustment: {round(sum(adjustments) / len(adjustments))} minutes."
            )
        return recommendations

    # =========================================================================
    # Opportunity helpers (also used by the optimization engine)
    # =========================================================================

    def window_for(self, opportunity: ConnectionOpportunity) -> ConnectionWindow:
        if opportunity.metadata.source == "campus":
            return self._college_window
        return self.get_window(opportunity.type)

    @staticmethod
    def effective_target_minutes(opportunity: ConnectionOpportunity) -> float:
        """Target time shifted by the walk between the bus stop and the service."""
        target = time_to_minutes(opportunity.target_time)
        walk = opportunity.metadata.walking_time
        if opportunity.metadata.timing == "before":
            return target - walk
        if opportunity.metadata.timing == "after":
            return target + walk
        return target

    def measure_connection(
        self,
        opportunity: ConnectionOpportunity,
        bus_minutes: float,
    ) -> Tuple[float, WindowClassification]:
        """Signed timing-oriented difference of one bus time and its classification."""
        window = self.window_for(opportunity)
        effective = self.effective_target_minutes(opportunity)
        before = normalize_gap(effective - bus_minutes)
        after = normalize_gap(bus_minutes - effective)

        timing = opportunity.metadata.timing
        if timing == "before":
            return before, classify_difference(before, window)
        if timing == "after":
            return after, classify_difference(after, window)

        before_class = classify_difference(before, window)
        after_class = classify_difference(after, window)
        if _CLASSIFICATION_RANK[after_class] > _CLASSIFICATION_RANK[before_class]:
            return after, after_class
        return before, before_class

    def ideal_bus_targets(self, opportunity: ConnectionOpportunity) -> List[float]:
        """Bus times at the middle of the ideal window, one per allowed side."""
        mid = self.window_for(opportunity).ideal.midpoint
        effective = self.effective_target_minutes(opportunity)
        timing = opportunity.metadata.timing
        if timing == "before":
            return [effective - mid]
        if timing == "after":
            return [effective + mid]
        return [effective - mid, effective + mid]

    def ideal_bus_minutes(self, opportunity: ConnectionOpportunity, bus_minutes: float) -> float:
        """Ideal bus time closest to *bus_minutes*."""
        return min(
            self.ideal_bus_targets(opportunity),
            key=lambda target: abs(normalize_gap(target - bus_minutes)),
        )

    def classify_bus_times(
        self,
        opportunity: ConnectionOpportunity,
        sorted_bus_minutes: Sequence[float],
    ) -> WindowClassification:
        """Best classification any bus in *sorted_bus_minutes* achieves."""
        if not sorted_bus_minutes:
            return WindowClassification.MISSED
        window = self.window_for(opportunity)
        effective = self.effective_target_minutes(opportunity)
        timings = [opportunity.metadata.timing] if opportunity.metadata.timing else ["before", "after"]

        for band, classification in (
            (window.ideal, WindowClassification.IDEAL),
            (window.partial, WindowClassification.PARTIAL),
        ):
            for timing in timings:
                if timing == "before":
                    low, high = effective - band.max, effective - band.min
                else:
                    low, high = effective + band.min, effective + band.max
                if _any_in_band(sorted_bus_minutes, low, high):
                    return classification
        return WindowClassification.MISSED

    # =========================================================================
    # Schedule lookups
    # =========================================================================

    @staticmethod
    def find_trips_at_stop(schedule: Schedule, stop_id: str, start_minutes: float, end_minutes: float) -> List[Trip]:
        """Trips whose time at *stop_id* falls inside [start, end] (wraps midnight)."""
        trips = []
        for trip in schedule.trips:
            stop_time = trip.time_at(stop_id)
            if not stop_time:
                continue
            minutes = time_to_minutes(stop_time)
            if any(start_minutes <= minutes + shift <= end_minutes for shift in (0, -MINUTES_PER_DAY, MINUTES_PER_DAY)):
                trips.append(trip)
        return trips

    @staticmethod
    def get_current_bus_time_at_stop(schedule: Schedule, stop_id: str, target_minutes: float) -> Optional[float]:
        """Bus time at *stop_id* closest to *target_minutes*, or None if no trip serves it."""
        closest = None
        best = None
        for trip in schedule.trips:
            stop_time = trip.time_at(stop_id)
            if not stop_time:
                continue
            minutes = time_to_minutes(stop_time)
            difference = abs(normalize_gap(minutes - target_minutes))
            if best is None or difference < best:
                best, closest = difference, minutes
        return closest

    # =========================================================================
    # Opportunity generation
    # =========================================================================

    def analyze_connection_opportunities(
        self,
        schedule: Schedule,
        target_date: DateInput = None,
    ) -> List[ConnectionOpportunity]:
        """Generate opportunities for every configured family, highest priority first."""
        day = _to_date(target_date)
        opportunities: List[ConnectionOpportunity] = []
        if self.campus_config is not None:
            opportunities.extend(self._campus_opportunities(schedule, day))
        if self.rail_config is not None:
            opportunities.extend(self._rail_opportunities(schedule, day))
        if self.school_config is not None:
            opportunities.extend(self._school_opportunities(schedule, day))

        opportunities.sort(key=lambda o: o.priority, reverse=True)
        logger.info(f"Generated {len(opportunities)} connection opportunities for {schedule.id} on {day.isoformat()}")
        return opportunities

    def _build_opportunity(
        self,
        schedule: Schedule,
        opportunity_id: str,
        connection_type: ConnectionType,
        stop_id: str,
        target_time: str,
        priority: int,
        operating_days: List[str],
        metadata: ConnectionMetadata,
    ) -> Optional[ConnectionOpportunity]:
        opportunity = ConnectionOpportunity(
            id=opportunity_id,
            type=connection_type,
            location_id=stop_id,
            target_time=target_time,
            priority=priority,
            operating_days=operating_days,
            metadata=metadata,
        )
        window = self.window_for(opportunity)
        effective = self.effective_target_minutes(opportunity)
        if metadata.timing == "before":
            start, end = effective - window.ideal.max, effective - window.ideal.min
        else:
            start, end = effective + window.ideal.min, effective + window.ideal.max

        affected = self.find_trips_at_stop(schedule, stop_id, start, end)
        if not affected:
            return None

        current = self.get_current_bus_time_at_stop(schedule, stop_id, effective)
        window_type = WindowClassification.MISSED
        connection_time = None
        if current is not None:
            _difference, window_type = self.measure_connection(opportunity, current)
            connection_time = abs(normalize_gap(current - effective))

        return opportunity.model_copy(
            update={
                "window_type": window_type,
                "current_connection_time": connection_time,
                "affected_trips": [trip.trip_id for trip in affected],
            }
        )

    def _campus_opportunities(self, schedule: Schedule, day: datetime.date) -> List[ConnectionOpportunity]:
        campus = self.campus_config
        semester = campus.semester_schedule
        if not semester.start_date <= day <= semester.end_date:
            return []
        special = next((sd for sd in semester.special_dates if sd.date == day), None)
        if special is not None and not special.alternate:
            logger.debug(f"No classes on {day.isoformat()} ({special.description})")
            return []

        opportunities = []
        plan = [(t, "before", campus.class_priorities.get(t, 5)) for t in campus.class_start_times]
        plan += [(t, "after", max(1, campus.class_priorities.get(t, 5) - 2)) for t in campus.class_end_times]
        for class_time, timing, priority in plan:
            for stop_id in campus.campus_stops:
                opportunity = self._build_opportunity(
                    schedule,
                    f"college_{stop_id}_{class_time}_{timing}",
                    ConnectionType.SCHOOL_BELL,
                    stop_id,
                    class_time,
                    priority,
                    list(semester.operating_days),
                    ConnectionMetadata(
                        service_name=campus.service_name,
                        description=f"{'Class arrival' if timing == 'before' else 'Class departure'} at {class_time}",
                        frequency=1,
                        timing=timing,
                        source="campus",
                    ),
                )
                if opportunity:
                    opportunities.append(opportunity)
        return opportunities

    def _rail_opportunities(self, schedule: Schedule, day: datetime.date) -> List[ConnectionOpportunity]:
        weekday = WEEKDAYS[day.weekday()]
        stations: Dict[str, StationStop] = {s.station_id: s for s in self.rail_config.station_stops}
        opportunities = []

        for train in self.rail_config.train_schedules:
            if weekday not in train.operating_days:
                continue
            station = stations.get(train.station_id)
            if station is None:
                logger.warning(f"No bus stop paired with station {train.station_id}")
                continue
            plan = [(t, "departure") for t in train.departure_times] + [(t, "arrival") for t in train.arrival_times]
            for train_time, kind in plan:
                opportunity = self._rail_opportunity(schedule, train, station, train_time, kind)
                if opportunity:
                    opportunities.append(opportunity)
        return opportunities

    def _rail_opportunity(
        self,
        schedule: Schedule,
        train: TrainSchedule,
        station: StationStop,
        train_time: str,
        kind: str,
    ) -> Optional[ConnectionOpportunity]:
        boarding = kind == "departure"
        return self._build_opportunity(
            schedule,
            f"rail_{station.station_id}_{train_time}_{kind}",
            ConnectionType.GO_TRAIN,
            station.bus_stop_id,
            train_time,
            RAIL_DEPARTURE_PRIORITY if boarding else RAIL_ARRIVAL_PRIORITY,
            list(train.operating_days),
            ConnectionMetadata(
                service_name=f"GO Train {train.direction}",
                description=f"{'Board' if boarding else 'Depart from'} train at {train_time}",
                frequency=1,
                timing="before" if boarding else "after",
                walking_time=station.walking_time,
                source="rail",
            ),
        )

    def _school_opportunities(self, schedule: Schedule, day: datetime.date) -> List[ConnectionOpportunity]:
        special = next((s for s in self.school_config.special_schedules if s.date == day), None)
        if special is not None and special.schedule_type == "no_school":
            return []

        opportunities = []
        for school in self.school_config.schools:
            bells: BellSchedule = (special.alternate_schedule if special and special.alternate_schedule
                                   else school.bell_schedule)
            plan = [
                (bells.start_time, "morning_arrival", school.priority_level),
                (bells.end_time, "afternoon_departure", max(1, school.priority_level - 1)),
            ]
            if bells.lunch_start and bells.lunch_end:
                lunch_priority = max(1, school.priority_level - 3)
                plan.append((bells.lunch_start, "lunch_departure", lunch_priority))
                plan.append((bells.lunch_end, "lunch_arrival", lunch_priority))

            for stop_id in school.bus_stop_ids:
                for bell_time, kind, priority in plan:
                    opportunity = self._school_opportunity(schedule, school, stop_id, bell_time, kind, priority)
                    if opportunity:
                        opportunities.append(opportunity)
        return opportunities

    def _school_opportunity(
        self,
        schedule: Schedule,
        school: School,
        stop_id: str,
        bell_time: str,
        kind: str,
        priority: int,
    ) -> Optional[ConnectionOpportunity]:
        arriving = kind in ("morning_arrival", "lunch_arrival")
        return self._build_opportunity(
            schedule,
            f"school_{school.school_id}_{stop_id}_{bell_time}_{kind}",
            ConnectionType.SCHOOL_BELL,
            stop_id,
            bell_time,
            priority,
            list(SCHOOL_DAYS),
            ConnectionMetadata(
                service_name=school.school_name,
                description=f"{kind.replace('_', ' ', 1)} at {bell_time}",
                frequency=1,
                timing="before" if arriving else "after",
                source="school",
            ),
        )

    # =========================================================================
    # Scoring
    # =========================================================================

    def calculate_connection_score(self, opportunity: ConnectionOpportunity) -> float:
        """priority/10 x window multiplier x min(1, 1/frequency)."""
        try:
            window = self.window_for(opportunity)
        except ValidationError:
            return 0.0
        frequency = opportunity.metadata.frequency
        frequency_factor = min(1.0, 1 / frequency) if frequency else 1.0
        return opportunity.priority / 10 * window.multiplier(opportunity.window_type) * frequency_factor


def _any_in_band(sorted_minutes: Sequence[float], low: float, high: float) -> bool:
    for shift in (0, -MINUTES_PER_DAY, MINUTES_PER_DAY):
        index = bisect.bisect_left(sorted_minutes, low + shift)
        if index < len(sorted_minutes) and sorted_minutes[index] <= high + shift:
            return True
    return False


# =============================================================================
# Singleton
# =============================================================================

_connection_window_service: Optional[ConnectionWindowService] = None


def get_connection_window_service() -> ConnectionWindowService:
    global _connection_window_service
    if _connection_window_service is None:
        _connection_window_service = ConnectionWindowService()
    return _connection_window_service


def reset_connection_window_service():
    """Reset the singleton (for tests)."""
    global _connection_window_service
    _connection_window_service = None


__all__ = [
    "DEFAULT_CONNECTION_WINDOWS",
    "COLLEGE_WINDOW",
    "ConnectionWindowService",
    "classify_gap",
    "classify_difference",
    "get_connection_window_service",
    "reset_connection_window_service",
]
