"""
Headway self-correction.

After trips have been shifted towards their connections, the spacing between
consecutive departures drifts away from the planned headway. This service
spreads a counter-correction over the next few trips so that the schedule
recovers its regularity gradually instead of in one jump.

Default correction (exponential smoothing):

    trip N    -> -deviation * 1.0
    trip N+1  -> -deviation * 0.6
    trip N+2  -> -deviation * 0.2
    trip N+3  -> nothing
"""

import logging
import math
from typing import Dict, List, Optional, Sequence, Union

from connection_optimizer.models.headway import (
    ConstraintCompliance,
    CorrectionReport,
    CorrectionReportSummary,
    CorrectionStep,
    CorrectionStrategy,
    HeadwayConsistencyResult,
    HeadwayCorrectionResult,
    HeadwayCorrectionSettings,
    HeadwayDeviation,
    HeadwayImprovement,
    HeadwayMetrics,
    HeadwayViolation,
    TripCorrectionResult,
)
from connection_optimizer.models.optimization import OptimizationConstraints
from connection_optimizer.models.schedule import Schedule, Trip
from connection_optimizer.time_utils import minutes_to_time, normalize_gap, time_to_minutes

logger = logging.getLogger(__name__)


EXPONENTIAL_DECAY_FACTORS = (1.0, 0.6, 0.2, 0.0)
DEFAULT_MAX_CORRECTION_WINDOW = 3
DEFAULT_MIN_HEADWAY_MINUTES = 5
MIN_MEANINGFUL_CORRECTION = 0.1
RESIDUAL_DEVIATION_CUTOFF = 0.5

MOMENTUM_FACTOR = 0.7
HISTORICAL_WEIGHT = 0.3
CURRENT_WEIGHT = 0.4
TARGET_WEIGHT = 0.3

BLOCK_BOUNDARY_REASON = "Correction blocked by block boundary"
BLOCK_ORDER_REASON = "Correction would reorder trips within block"


def historical_headway(hour: int) -> float:
    """Typical headway for a time of day: peaks every 15, midday 30, off-peak 60."""
    if 6 <= hour <= 9 or 16 <= hour <= 19:
        return 15
    if 9 < hour < 16:
        return 30
    return 60


def departure_headways(trips: Sequence[Trip]) -> List[float]:
    """Gaps between consecutive departures of departure-sorted trips."""
    return [
        normalize_gap(trips[i].departure_minutes - trips[i - 1].departure_minutes)
        for i in range(1, len(trips))
    ]


class HeadwayCorrectionService:
    """Corrects headway deviations and keeps a per-schedule correction history."""

    def __init__(self):
        self._history: Dict[str, List[TripCorrectionResult]] = {}

    # =========================================================================
    # Correction arithmetic
    # =========================================================================

    @staticmethod
    def apply_exponential_smoothing_formula(deviation: float, trip_offset: int) -> float:
        if trip_offset < 0 or trip_offset >= len(EXPONENTIAL_DECAY_FACTORS):
            return 0.0
        return -deviation * EXPONENTIAL_DECAY_FACTORS[trip_offset]

    @staticmethod
    def get_max_correction_window(remaining_trips: Optional[int] = None) -> int:
        if remaining_trips is None:
            return DEFAULT_MAX_CORRECTION_WINDOW
        return max(0, min(DEFAULT_MAX_CORRECTION_WINDOW, remaining_trips))

    def calculate_headway_corrections(
        self,
        trips: Sequence[Trip],
        deviations: Sequence[HeadwayDeviation],
        target_headway: float = 30,
        max_deviation_threshold: float = 5,
    ) -> List[CorrectionStep]:
        """Per-trip corrections for every deviation above the threshold.

        *target_headway* is carried for interface parity; the deviations are
        already expressed against it.
        """
        sorted_trips = sorted(trips, key=lambda t: (t.departure_minutes, t.trip_number))
        positions = {trip.trip_id: i for i, trip in enumerate(sorted_trips)}
        steps: List[CorrectionStep] = []

        for deviation in deviations:
            if abs(deviation.deviation) <= max_deviation_threshold:
                continue
            origin = positions.get(deviation.trip_id)
            if origin is None:
                continue
            window = self.get_max_correction_window(len(sorted_trips) - origin)
            for offset in range(window):
                amount = self.apply_exponential_smoothing_formula(deviation.deviation, offset)
                if abs(amount) > MIN_MEANINGFUL_CORRECTION:
                    steps.append(CorrectionStep(
                        trip_id=sorted_trips[origin + offset].trip_id,
                        correction_minutes=amount,
                        trip_offset=offset,
                    ))
        return steps

    # =========================================================================
    # Block-aware correction
    # =========================================================================

    def correct_headways_within_blocks(
        self,
        schedule: Schedule,
        deviations: Sequence[HeadwayDeviation],
        target_headway: float = 30,
        max_deviation_threshold: float = 5,
        constraints: Optional[OptimizationConstraints] = None,
    ) -> HeadwayCorrectionResult:
        """
        Exponential correction over the departure-order window, clipped at a block boundary.

        The schedule is modified in place. The window stops at the first trip
        that belongs to a different vehicle block; that trip gets a single
        not-applied entry and nothing after it is corrected.
        """
        constraints = constraints or OptimizationConstraints()
        before = self.calculate_headway_metrics(schedule)
        first_stop = schedule.first_time_point_id
        results: List[TripCorrectionResult] = []
        sorted_trips = schedule.sorted_trips()
        resort = False

        for deviation in deviations:
            if abs(deviation.deviation) <= max_deviation_threshold:
                continue
            if resort:
                sorted_trips = schedule.sorted_trips()
                resort = False
            origin = _index_of(sorted_trips, deviation.trip_id)
            if origin is None:
                continue

            origin_trip = sorted_trips[origin]
            block_trips = [t for t in sorted_trips if t.block_number == origin_trip.block_number]
            window = self.get_max_correction_window(len(sorted_trips) - origin)

            for offset in range(window):
                amount = self.apply_exponential_smoothing_formula(deviation.deviation, offset)
                if abs(amount) <= MIN_MEANINGFUL_CORRECTION:
                    continue

                trip = sorted_trips[origin + offset]
                if trip.block_number != origin_trip.block_number:
                    results.append(self._not_applied(trip, BLOCK_BOUNDARY_REASON))
                    break

                if abs(amount) > constraints.max_trip_deviation:
                    results.append(self._not_applied(trip, "Correction exceeds maximum trip deviation constraint"))
                    continue
                block_index = next(i for i, t in enumerate(block_trips) if t is trip)
                if self._would_reorder(block_trips, block_index, amount):
                    results.append(self._not_applied(trip, BLOCK_ORDER_REASON))
                    continue

                results.append(self._apply(trip, amount, first_stop))
                resort = True

        after = self.calculate_headway_metrics(schedule)
        compliance = self.validate_constraint_compliance(schedule, constraints, target_headway)
        self._history[schedule.id] = list(results)

        return HeadwayCorrectionResult(
            success=compliance.all_constraints_met,
            correction_strategy=CorrectionStrategy.EXPONENTIAL_SMOOTHING,
            trip_corrections=results,
            overall_improvement=self._improvement(before, after),
            before_metrics=before,
            statistical_metrics=after,
            constraint_compliance=compliance,
        )

    @staticmethod
    def _would_reorder(block_trips: List[Trip], index: int, amount: float) -> bool:
        new_departure = block_trips[index].departure_minutes + amount
        if index > 0 and new_departure < block_trips[index - 1].departure_minutes:
            return True
        if index + 1 < len(block_trips) and new_departure > block_trips[index + 1].departure_minutes:
            return True
        return False

    # =========================================================================
    # Strategy-based correction
    # =========================================================================

    def correct_headways(
        self,
        schedule: Schedule,
        deviations: Sequence[HeadwayDeviation],
        settings: Optional[Union[HeadwayCorrectionSettings, dict]] = None,
        constraints: Optional[OptimizationConstraints] = None,
        strategy: Union[CorrectionStrategy, str] = CorrectionStrategy.EXPONENTIAL_SMOOTHING,
    ) -> HeadwayCorrectionResult:
        """Apply one correction strategy to *schedule* in place."""
        if settings is None:
            settings = HeadwayCorrectionSettings()
        elif isinstance(settings, dict):
            settings = HeadwayCorrectionSettings(**settings)
        constraints = constraints or OptimizationConstraints()
        strategy = CorrectionStrategy(strategy)

        before = self.calculate_headway_metrics(schedule)
        handlers = {
            CorrectionStrategy.EXPONENTIAL_SMOOTHING: self._exponential_smoothing,
            CorrectionStrategy.LINEAR_INTERPOLATION: self._linear_interpolation,
            CorrectionStrategy.WEIGHTED_AVERAGE: self._weighted_average,
            CorrectionStrategy.MOMENTUM_BASED: self._momentum_based,
        }
        corrections = handlers[strategy](schedule, list(deviations), settings, constraints)
        after = self.calculate_headway_metrics(schedule)
        compliance = self.validate_constraint_compliance(schedule, constraints, settings.target_headway)
        self._history[schedule.id] = list(corrections)

        applied = sum(1 for c in corrections if c.correction_applied)
        logger.info(f"Headway correction ({strategy.value}) on {schedule.id}: {applied}/{len(corrections)} applied")

        return HeadwayCorrectionResult(
            success=compliance.all_constraints_met,
            correction_strategy=strategy,
            trip_corrections=corrections,
            overall_improvement=self._improvement(before, after),
            before_metrics=before,
            statistical_metrics=after,
            constraint_compliance=compliance,
        )

    def _exponential_smoothing(self, schedule, deviations, settings, constraints) -> List[TripCorrectionResult]:
        results = []
        first_stop = schedule.first_time_point_id
        alpha = settings.correction_strength

        for deviation in deviations:
            if abs(deviation.deviation) <= settings.max_deviation_threshold:
                continue
            sorted_trips = schedule.sorted_trips()
            origin = _index_of(sorted_trips, deviation.trip_id)
            if origin is None:
                continue

            remaining = deviation.deviation
            window = self.get_correction_trips(
                sorted_trips, origin, settings.correction_horizon, settings.correction_direction
            )
            for offset, trip in enumerate(window):
                if abs(remaining) <= RESIDUAL_DEVIATION_CUTOFF:
                    break
                amount = self.apply_exponential_smoothing_formula(remaining, offset)
                if abs(amount) > constraints.max_trip_deviation:
                    results.append(self._not_applied(trip, "Correction exceeds maximum trip deviation"))
                    continue
                results.append(self._apply(trip, amount, first_stop))
                remaining *= (1 - alpha)
        return results

    def _linear_interpolation(self, schedule, deviations, settings, constraints) -> List[TripCorrectionResult]:
        results = []
        first_stop = schedule.first_time_point_id

        for deviation in deviations:
            if abs(deviation.deviation) <= settings.max_deviation_threshold:
                continue
            sorted_trips = schedule.sorted_trips()
            origin = _index_of(sorted_trips, deviation.trip_id)
            if origin is None:
                continue

            window = self.get_correction_trips(
                sorted_trips, origin, settings.correction_horizon, settings.correction_direction
            )
            if not window:
                continue
            per_trip = -deviation.deviation * settings.correction_strength / len(window)
            for i, trip in enumerate(window):
                amount = per_trip * (1 - i / len(window))
                if abs(amount) > constraints.max_trip_deviation:
                    results.append(self._not_applied(trip, "Correction exceeds maximum trip deviation"))
                    continue
                results.append(self._apply(trip, amount, first_stop))
        return results

    def _weighted_average(self, schedule, deviations, settings, constraints) -> List[TripCorrectionResult]:
        results = []
        first_stop = schedule.first_time_point_id
        trips = schedule.trip_map()

        for deviation in deviations:
            if abs(deviation.deviation) <= settings.max_deviation_threshold:
                continue
            trip = trips.get(_trip_number(deviation.trip_id))
            if trip is None:
                continue

            hour = trip.departure_minutes // 60
            weighted_target = (
                historical_headway(hour) * HISTORICAL_WEIGHT
                + deviation.current_headway * CURRENT_WEIGHT
                + settings.target_headway * TARGET_WEIGHT
            )
            amount = (weighted_target - deviation.current_headway) * settings.correction_strength
            if abs(amount) > constraints.max_trip_deviation:
                results.append(self._not_applied(trip, "Weighted correction exceeds maximum deviation"))
                continue
            results.append(self._apply(trip, amount, first_stop))
        return results

    def _momentum_based(self, schedule, deviations, settings, constraints) -> List[TripCorrectionResult]:
        results = []
        first_stop = schedule.first_time_point_id
        trips = schedule.trip_map()
        velocities = [0.0] + [
            deviations[i].deviation - deviations[i - 1].deviation for i in range(1, len(deviations))
        ]

        for deviation, velocity in zip(deviations, velocities):
            if abs(deviation.deviation) <= settings.max_deviation_threshold:
                continue
            trip = trips.get(_trip_number(deviation.trip_id))
            if trip is None:
                continue

            amount = -deviation.deviation * settings.correction_strength + velocity * MOMENTUM_FACTOR
            if abs(amount) > constraints.max_trip_deviation:
                results.append(self._not_applied(trip, "Momentum-based correction exceeds maximum deviation"))
                continue
            results.append(self._apply(trip, amount, first_stop))
        return results

    @staticmethod
    def get_correction_trips(
        sorted_trips: Sequence[Trip],
        origin_index: int,
        correction_horizon: int,
        direction: str = "forward",
    ) -> List[Trip]:
        count = len(sorted_trips)
        if direction == "backward":
            start, stop = max(0, origin_index - correction_horizon + 1), origin_index + 1
        elif direction == "bidirectional":
            half = correction_horizon // 2
            start, stop = max(0, origin_index - half), min(origin_index + half, count)
        else:
            start, stop = origin_index, min(origin_index + correction_horizon, count)
        return list(sorted_trips[start:stop])

    # =========================================================================
    # Applying corrections
    # =========================================================================

    @staticmethod
    def cascade_time_adjustment(trip: Trip, adjustment_minutes: float, first_stop_id: Optional[str]) -> float:
        """
        Move the trip's departure by *adjustment_minutes* and every downstream stop-time with it.

        Times are whole minutes, so the departure moves by the rounded step and
        all arrival and departure entries after the first stop shift by that
        same step. The first stop's own entries are left as they are. Returns
        the step.
        """
        old_departure = trip.departure_minutes
        new_departure_time = minutes_to_time(old_departure + adjustment_minutes)
        step = normalize_gap(time_to_minutes(new_departure_time) - old_departure)

        trip.departure_time = new_departure_time
        for times in (trip.arrival_times, trip.departure_times):
            for stop_id, value in list(times.items()):
                if stop_id != first_stop_id:
                    times[stop_id] = minutes_to_time(time_to_minutes(value) + step)
        return step

    def _apply(self, trip: Trip, amount: float, first_stop_id: Optional[str]) -> TripCorrectionResult:
        original = trip.departure_time
        step = self.cascade_time_adjustment(trip, amount, first_stop_id)
        return TripCorrectionResult(
            trip_id=trip.trip_id,
            original_time=original,
            corrected_time=trip.departure_time,
            adjustment_minutes=amount,
            applied_minutes=step,
            correction_applied=True,
        )

    @staticmethod
    def _not_applied(trip: Trip, reason: str) -> TripCorrectionResult:
        return TripCorrectionResult(
            trip_id=trip.trip_id,
            original_time=trip.departure_time,
            corrected_time=trip.departure_time,
            adjustment_minutes=0.0,
            correction_applied=False,
            reason=reason,
        )

    # =========================================================================
    # Metrics and validation
    # =========================================================================

    def calculate_headway_metrics(self, schedule: Schedule) -> HeadwayMetrics:
        headways = departure_headways(schedule.sorted_trips())
        if not headways:
            return HeadwayMetrics()
        mean = sum(headways) / len(headways)
        variance = sum((h - mean) ** 2 for h in headways) / len(headways)
        std = math.sqrt(variance)
        cv = std / mean if mean > 0 else 0.0
        return HeadwayMetrics(
            mean_headway=mean,
            standard_deviation=std,
            coefficient_of_variation=cv,
            regularity_score=max(0.0, 1 - cv),
        )

    @staticmethod
    def _improvement(before: HeadwayMetrics, after: HeadwayMetrics) -> HeadwayImprovement:
        before_variance = before.standard_deviation ** 2
        after_variance = after.standard_deviation ** 2
        reduction = (before_variance - after_variance) / before_variance * 100 if before_variance > 0 else 0.0
        return HeadwayImprovement(
            before_variance=before_variance,
            after_variance=after_variance,
            variance_reduction=reduction,
        )

    def validate_headway_consistency(
        self,
        trips: Sequence[Trip],
        min_headway: float = DEFAULT_MIN_HEADWAY_MINUTES,
        target_headway: float = 30,
    ) -> HeadwayConsistencyResult:
        sorted_trips = sorted(trips, key=lambda t: (t.departure_minutes, t.trip_number))
        headways = departure_headways(sorted_trips)
        violations: List[HeadwayViolation] = []

        for i, headway in enumerate(headways, start=1):
            trip_id = sorted_trips[i].trip_id
            if headway < min_headway:
                severity = "high" if headway < min_headway * 0.5 else "medium" if headway < min_headway * 0.8 else "low"
                violations.append(HeadwayViolation(
                    trip_index=i, trip_id=trip_id, actual_headway=headway,
                    violation_type="too_short", severity=severity,
                ))
            if headway < target_headway * 0.5:
                violations.append(HeadwayViolation(
                    trip_index=i, trip_id=trip_id, actual_headway=headway,
                    violation_type="bunching", severity="high" if headway < target_headway * 0.25 else "medium",
                ))
            if headway > target_headway * 2:
                violations.append(HeadwayViolation(
                    trip_index=i, trip_id=trip_id, actual_headway=headway,
                    violation_type="too_long", severity="high" if headway > target_headway * 3 else "medium",
                ))

        average = sum(headways) / len(headways) if headways else 0.0
        variance = sum((h - average) ** 2 for h in headways) / len(headways) if headways else 0.0
        return HeadwayConsistencyResult(
            is_valid=not violations,
            violations=violations,
            average_headway=average,
            headway_variance=variance,
        )

    def validate_constraint_compliance(
        self,
        schedule: Schedule,
        constraints: OptimizationConstraints,
        target_headway: Optional[float] = None,
    ) -> ConstraintCompliance:
        target = target_headway if target_headway is not None else constraints.target_headway
        headways = departure_headways(schedule.sorted_trips())
        max_deviation_ok = all(abs(h - target) <= constraints.max_trip_deviation for h in headways)
        min_recovery_ok = all(
            value >= constraints.min_recovery_time
            for trip in schedule.trips
            for value in trip.recovery_times.values()
        )
        return ConstraintCompliance(
            max_deviation_respected=max_deviation_ok,
            min_recovery_respected=min_recovery_ok,
            all_constraints_met=max_deviation_ok and min_recovery_ok,
        )

    # =========================================================================
    # Integration and reporting
    # =========================================================================

    def extract_headway_deviations(self, schedule: Schedule, planned_headway: float = 30) -> List[HeadwayDeviation]:
        sorted_trips = schedule.sorted_trips()
        headways = departure_headways(sorted_trips)
        deviations = []
        for i, headway in enumerate(headways, start=1):
            deviations.append(HeadwayDeviation(
                trip_id=sorted_trips[i].trip_id,
                planned_headway=planned_headway,
                current_headway=headway,
                deviation=headway - planned_headway,
                correction_trips=self.get_max_correction_window(len(sorted_trips) - i),
                correction_rate=0.6,
            ))
        return deviations

    def integrate_with_optimization_results(
        self,
        optimization_result,
        schedule: Optional[Schedule] = None,
        constraints: Optional[OptimizationConstraints] = None,
    ) -> HeadwayCorrectionResult:
        """Run the block-aware correction on an optimization result's schedule."""
        target = schedule if schedule is not None else optimization_result.optimized_schedule
        deviations = self.extract_headway_deviations(target, 30)
        return self.correct_headways_within_blocks(target, deviations, 30, 5, constraints)

    def generate_correction_report(self, result: HeadwayCorrectionResult) -> CorrectionReport:
        applied = [c for c in result.trip_corrections if c.correction_applied]
        adjustments = [abs(c.adjustment_minutes) for c in applied]

        recommendations = []
        if result.overall_improvement.variance_reduction < 10:
            recommendations.append("Consider increasing correction strength for better headway regularity")
        if len(applied) < len(result.trip_corrections) * 0.5:
            recommendations.append(
                "Many corrections were skipped due to constraints - consider relaxing deviation limits"
            )
        if result.statistical_metrics.regularity_score < 0.7:
            recommendations.append(
                "Headway regularity is still below target - consider additional optimization passes"
            )

        return CorrectionReport(
            summary=CorrectionReportSummary(
                total_trips_analyzed=len(result.trip_corrections),
                trips_modified=len(applied),
                average_adjustment=sum(adjustments) / len(adjustments) if adjustments else 0.0,
                max_adjustment=max(adjustments) if adjustments else 0.0,
                variance_improvement=result.overall_improvement.variance_reduction,
            ),
            before=result.before_metrics,
            after=result.statistical_metrics,
            recommendations=recommendations,
        )

    def get_correction_history(self, schedule_id: str) -> Optional[List[TripCorrectionResult]]:
        history = self._history.get(schedule_id)
        return list(history) if history is not None else None

    def clear_correction_history(self) -> None:
        self._history.clear()


def _index_of(sorted_trips: Sequence[Trip], trip_id: str) -> Optional[int]:
    for i, trip in enumerate(sorted_trips):
        if trip.trip_id == trip_id:
            return i
    return None


def _trip_number(trip_id: str) -> Optional[int]:
    try:
        return int(trip_id)
    except (TypeError, ValueError):
        return None


# =============================================================================
# Singleton
# =============================================================================

_headway_correction_service: Optional[HeadwayCorrectionService] = None


def get_headway_correction_service() -> HeadwayCorrectionService:
    global _headway_correction_service
    if _headway_correction_service is None:
        _headway_correction_service = HeadwayCorrectionService()
    return _headway_correction_service


def reset_headway_correction_service():
    """Reset the singleton (for tests)."""
    global _headway_correction_service
    _headway_correction_service = None


__all__ = [
    "EXPONENTIAL_DECAY_FACTORS",
    "DEFAULT_MAX_CORRECTION_WINDOW",
    "HeadwayCorrectionService",
    "historical_headway",
    "departure_headways",
    "get_headway_correction_service",
    "reset_headway_correction_service",
]
