"""
Tests for Pydantic models (Trip, Schedule, ConnectionWindow, moves, etc.)
"""
import pytest
from pydantic import TypeAdapter, ValidationError

from conftest import make_opportunity, make_trip
from connection_optimizer.models import (
    ConnectionAlignMove,
    ConnectionWindow,
    HeadwayAdjustMove,
    OptimizationConstraints,
    OptimizationMove,
    OptimizationState,
    RecoveryAccount,
    RejectedMove,
    StopType,
    TimeRange,
    TimeShiftMove,
    Trip,
    WindowClassification,
)


# ============================================================
# SCHEDULE MODEL TESTS
# ============================================================

class TestTrip:
    """Test suite for Trip model."""

    def test_time_at_prefers_arrival(self):
        """Arrival time wins over departure time at the same stop."""
        trip = make_trip(1, 420)
        trip.departure_times["T2"] = "07:17"

        assert trip.time_at("T2") == "07:15"
        assert trip.time_at("T1") == "07:00"
        assert trip.time_at("T9") is None
        assert trip.serves("T1") and not trip.serves("T9")

    def test_invalid_time_rejected(self):
        """Times must be HH:MM."""
        with pytest.raises(ValidationError):
            Trip(trip_number=1, block_number=1, departure_time="7h30")
        with pytest.raises(ValidationError):
            Trip(trip_number=1, block_number=1, departure_time="07:00", arrival_times={"T2": "07:75"})

    def test_clone_is_independent(self):
        """Clones do not share stop-time dictionaries."""
        trip = make_trip(1, 420)
        copy = trip.clone()
        copy.arrival_times["T2"] = "07:20"
        copy.recovery_times["T2"] = 3

        assert trip.arrival_times["T2"] == "07:15"
        assert trip.recovery_times == {}

    def test_trip_id_and_departure_minutes(self):
        trip = make_trip(12, 1425)
        assert trip.trip_id == "12"
        assert trip.departure_minutes == 1425


class TestSchedule:
    """Test suite for Schedule model."""

    def test_sorted_trips_and_first_stop(self, small_schedule):
        """Trips sort by departure; the first time point is the lowest sequence."""
        small_schedule.trips.reverse()

        assert [t.trip_number for t in small_schedule.sorted_trips()] == [1, 2, 3, 4, 5, 6]
        assert small_schedule.first_time_point_id == "T1"
        assert small_schedule.time_point("T3").name == "Allandale GO Station"

    def test_clone(self, small_schedule):
        copy = small_schedule.clone()
        copy.trips[0].departure_time = "06:55"

        assert small_schedule.trips[0].departure_time == "07:00"
        assert copy.id == small_schedule.id


# ============================================================
# CONNECTION MODEL TESTS
# ============================================================

class TestConnectionModels:
    """Windows and opportunities."""

    def test_time_range(self):
        window = TimeRange(min=10, max=15)
        assert window.contains(10) and window.contains(15)
        assert not window.contains(15.5)
        assert window.midpoint == 12.5
        assert window.width == 5

    def test_time_range_order(self):
        with pytest.raises(ValidationError):
            TimeRange(min=15, max=10)

    def test_ideal_wider_than_partial(self):
        with pytest.raises(ValidationError):
            ConnectionWindow(ideal={"min": 0, "max": 20}, partial={"min": 5, "max": 10})

    def test_window_multiplier(self):
        window = ConnectionWindow(
            ideal={"min": 10, "max": 15},
            partial={"min": 5, "max": 10},
            multipliers={"partial": 0.7},
        )
        assert window.multiplier(WindowClassification.IDEAL) == 1.0
        assert window.multiplier("partial") == 0.7
        assert window.multiplier(WindowClassification.MISSED) == 0.0

    def test_opportunity_target_time(self):
        with pytest.raises(ValidationError):
            make_opportunity("bad", "25:99")

    def test_opportunity_defaults(self, go_train_opportunity):
        assert go_train_opportunity.window_type == WindowClassification.MISSED
        assert go_train_opportunity.affected_trips == []
        assert go_train_opportunity.metadata.timing == "before"


# ============================================================
# OPTIMIZATION MODEL TESTS
# ============================================================

class TestMoves:
    """The move union is discriminated by kind."""

    def test_parse_by_kind(self):
        adapter = TypeAdapter(OptimizationMove)
        move = adapter.validate_python({
            "kind": "headway_adjust", "id": "m1", "trip_id": "3", "correction_minutes": -4.8,
        })

        assert isinstance(move, HeadwayAdjustMove)
        assert move.correction_minutes == -4.8

    def test_rejected_move_round_trip(self):
        rejected = RejectedMove(move={"kind": "connection_align", "id": "m2", "location_id": "T3"}, reason="x")
        restored = RejectedMove.model_validate_json(rejected.model_dump_json())

        assert isinstance(restored.move, ConnectionAlignMove)
        assert restored.move.location_id == "T3"

    def test_unknown_kind(self):
        with pytest.raises(ValidationError):
            TypeAdapter(OptimizationMove).validate_python({"kind": "teleport", "id": "m3"})

    def test_is_valid(self):
        assert TimeShiftMove(id="m4").is_valid is True
        assert TimeShiftMove(id="m5", constraint_violations=["too far"]).is_valid is False


class TestConstraints:
    """OptimizationConstraints defaults and presets."""

    def test_defaults(self):
        constraints = OptimizationConstraints()
        assert constraints.max_trip_deviation == 10
        assert constraints.max_schedule_shift == 60
        assert constraints.max_recovery_time == 15
        assert constraints.headway_tolerance == 5
        assert constraints.enforce_headway_regularity is False
        assert constraints.performance.max_optimization_time_ms > 0

    def test_from_preset(self):
        constraints = OptimizationConstraints.from_preset("strict", target_headway=15)
        assert constraints.max_trip_deviation == 5
        assert constraints.enforce_headway_regularity is True
        assert constraints.target_headway == 15

    def test_unknown_preset_is_balanced(self):
        assert OptimizationConstraints.from_preset("whatever").max_trip_deviation == 10


class TestStateAndAccounts:

    def test_state_clone(self, small_schedule):
        state = OptimizationState(current_schedule=small_schedule, recovery_bank=None)
        state.trip_shifts[1] = 4
        copy = state.clone()
        copy.trip_shifts[1] = 8
        copy.current_schedule.trips[0].departure_time = "07:04"

        assert state.trip_shifts[1] == 4
        assert small_schedule.trips[0].departure_time == "07:00"

    def test_account_credit_not_negative(self):
        with pytest.raises(ValidationError):
            RecoveryAccount(
                stop_id="T1", stop_name="Downtown Terminal", stop_type=StopType.TERMINAL,
                available_credit=-1, max_credit=8, min_recovery_time=2, max_recovery_time=15,
                flexibility_score=0.9,
            )
