"""
Tests for the connection optimization engine.

Covers:
- Greedy search on a small schedule (move selection, funding, scoring)
- Constraint rejection and backtracking of the recovery bank
- Progressive batched search on large inputs, cancellation, budgets
- Structured failure results for malformed input
- Progress notifications, applying moves, state accessors
- Request warnings, the run history and optimization reports
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import make_opportunity, make_trip
from connection_optimizer.errors import ConstraintViolationError
from connection_optimizer.models import (
    ConnectionType,
    OptimizationConstraints,
    PerformanceLimits,
    Schedule,
    WindowClassification,
)
from connection_optimizer.models.optimization import ConnectionBreakdown
from connection_optimizer.services.optimization_engine import (
    EngineConfig,
    OptimizationEngine,
    get_optimization_engine,
    reset_optimization_engine,
)


def _trip(schedule: Schedule, trip_number: int):
    return schedule.trip_map()[trip_number]


# ============================================================
# GREEDY SEARCH
# ============================================================

class TestGreedySearch:
    """Small schedules run the single-pass greedy strategy."""

    @pytest.mark.asyncio
    async def test_aligns_trip_with_train(self, engine, small_schedule, go_train_opportunity, constraints):
        """The 07:30 arrival moves to 07:38, twelve minutes before the 07:50 train."""
        result = await engine.optimize(small_schedule, [go_train_opportunity], constraints)

        assert result.success is True
        assert result.error is None
        assert result.final_score == pytest.approx(1.0)
        assert result.score_improvement == pytest.approx(1.0)
        assert _trip(result.optimized_schedule, 1).time_at("T3") == "07:38"
        assert result.statistics.strategy == "greedy"
        assert result.statistics.batches_processed == 1

    @pytest.mark.asyncio
    async def test_holding_stop_absorbs_the_shift(self, engine, small_schedule, go_train_opportunity, constraints):
        """The bus holds at the college stop: its departure and recovery grow, the terminal is untouched."""
        result = await engine.optimize(small_schedule, [go_train_opportunity], constraints)
        trip = _trip(result.optimized_schedule, 1)

        assert trip.departure_time == "07:00"
        assert trip.departure_times["T1"] == "07:00"
        assert trip.arrival_times["T2"] == "07:15"
        assert trip.departure_times["T2"] == "07:23"
        assert trip.recovery_times["T2"] == 8

    @pytest.mark.asyncio
    async def test_input_schedule_not_mutated(self, engine, small_schedule, go_train_opportunity, constraints):
        """optimize() works on a copy of the caller's schedule."""
        await engine.optimize(small_schedule, [go_train_opportunity], constraints)

        assert _trip(small_schedule, 1).time_at("T3") == "07:30"
        assert _trip(small_schedule, 1).recovery_times == {}

    @pytest.mark.asyncio
    async def test_applied_move_is_time_shift_with_funding(self, engine, small_schedule, go_train_opportunity,
                                                           constraints):
        """An eight minute adjustment is a funded time shift."""
        result = await engine.optimize(small_schedule, [go_train_opportunity], constraints)

        assert len(result.applied_moves) == 1
        move = result.applied_moves[0]
        assert move.kind == "time_shift"
        assert move.time_adjustment == 8
        assert move.shifted_from == "07:30"
        assert move.shifted_to == "07:38"
        assert move.affected_trips == ["1"]
        assert move.is_valid
        assert move.score_improvement == pytest.approx(1.0)
        assert len(move.required_transactions) == 1
        transaction = move.required_transactions[0]
        assert transaction.borrower_stop_id == "T2"
        assert transaction.amount == 8
        assert transaction.lender_stop_id in ("T1", "T3")

    @pytest.mark.asyncio
    async def test_recovery_state_reflects_committed_transfer(self, engine, small_schedule, go_train_opportunity,
                                                              constraints):
        """The final bank state carries the borrowed minutes of committed moves."""
        result = await engine.optimize(small_schedule, [go_train_opportunity], constraints)

        state = result.final_recovery_state
        assert state.total_borrowed_recovery == 8
        assert state.accounts["T2"].current_debt == 8
        assert len(state.transactions) == 1

    @pytest.mark.asyncio
    async def test_connection_reported_successful(self, engine, small_schedule, go_train_opportunity, constraints):
        """Connections not missed on the final schedule are reported with their classification."""
        result = await engine.optimize(small_schedule, [go_train_opportunity], constraints)

        assert result.failed_connections == []
        assert len(result.successful_connections) == 1
        assert result.successful_connections[0].window_type == WindowClassification.IDEAL
        assert result.successful_connections[0].current_connection_time == 12
        assert result.performance.connection_success_rate == 1.0
        assert result.performance.average_connection_time == 12

    @pytest.mark.asyncio
    async def test_already_ideal_connection_needs_no_move(self, engine, small_schedule, constraints):
        """A train twelve minutes after an existing arrival is left alone."""
        opportunity = make_opportunity("rail_T3_0812", "08:12")
        result = await engine.optimize(small_schedule, [opportunity], constraints)

        assert result.applied_moves == []
        assert result.rejected_moves == []
        assert result.final_score == pytest.approx(1.0)
        assert result.score_improvement == pytest.approx(0.0)

    @pytest.mark.asyncio
    async def test_first_stop_connection_shifts_whole_trip(self, engine, small_schedule, constraints):
        """A connection at the first stop moves the trip departure and every stop-time."""
        opportunity = make_opportunity(
            "bus_T1_0702", "07:02", location_id="T1",
            connection_type=ConnectionType.BUS_ROUTE, timing="after", priority=6,
        )
        result = await engine.optimize(small_schedule, [opportunity], constraints)
        trip = _trip(result.optimized_schedule, 1)

        assert result.success is True
        assert trip.departure_time == "07:08"
        assert trip.departure_times["T1"] == "07:08"
        assert trip.arrival_times["T2"] == "07:23"
        assert trip.arrival_times["T3"] == "07:38"
        assert trip.recovery_times["T1"] == 8

    @pytest.mark.asyncio
    async def test_score_is_priority_weighted(self, engine, small_schedule, go_train_opportunity, constraints):
        """One ideal (priority 8) and one missed (priority 2) connection score 0.8."""
        unreachable = make_opportunity("rail_T3_0245", "02:45", priority=2)
        score = engine.calculate_score(small_schedule, [go_train_opportunity, unreachable])
        assert score == pytest.approx(0.0)

        result = await engine.optimize(small_schedule, [go_train_opportunity, unreachable], constraints)
        assert result.final_score == pytest.approx(0.8)
        assert len(result.failed_connections) == 1
        assert result.failed_connections[0].reason == "Unable to achieve connection within constraints"

    def test_score_without_connections_is_zero(self, engine, small_schedule):
        """An empty connection list scores 0."""
        assert engine.calculate_score(small_schedule, []) == 0.0


# ============================================================
# CONSTRAINT REJECTION
# ============================================================

class TestMoveRejection:
    """Moves that breach constraints are rejected and the bank is restored."""

    @pytest.mark.asyncio
    async def test_adjustment_beyond_max_deviation_rejected(self, engine, small_schedule, go_train_opportunity):
        """An eight minute move is rejected when trips may only shift five minutes."""
        constraints = OptimizationConstraints(max_trip_deviation=5)
        result = await engine.optimize(small_schedule, [go_train_opportunity], constraints)

        assert result.applied_moves == []
        assert len(result.rejected_moves) == 1
        rejected = result.rejected_moves[0]
        assert rejected.reason == "Time adjustment 8min exceeds maximum deviation 5min"
        assert rejected.move.is_valid is False
        assert result.optimized_schedule.trip_map()[1].time_at("T3") == "07:30"

    @pytest.mark.asyncio
    async def test_rejection_leaves_result_successful(self, engine, small_schedule, go_train_opportunity):
        """Rejected moves are not failures; the connection is reported as failed instead."""
        constraints = OptimizationConstraints(max_trip_deviation=5)
        result = await engine.optimize(small_schedule, [go_train_opportunity], constraints)

        assert result.success is True
        assert len(result.failed_connections) == 1
        assert "Consider relaxing constraints - 1 moves were rejected" in result.recommendations
        assert "More moves rejected than applied - constraints may be too restrictive" in result.warnings

    @pytest.mark.asyncio
    async def test_bank_restored_after_rejected_trial(self, engine, small_schedule, go_train_opportunity):
        """A funded move rejected after the trial leaves no transaction behind."""
        constraints = OptimizationConstraints(enforce_headway_regularity=True, headway_tolerance=3)
        result = await engine.optimize(small_schedule, [go_train_opportunity], constraints)

        assert result.applied_moves == []
        assert len(result.rejected_moves) == 1
        assert "Headway deviation 8min exceeds tolerance 3min" in result.rejected_moves[0].reason
        assert result.final_recovery_state.total_borrowed_recovery == 0
        assert result.final_recovery_state.transactions == []
        assert engine.recovery_bank.get_transaction_history() == []

    @pytest.mark.asyncio
    async def test_recovery_ceiling_rejects_move(self, engine, small_schedule, go_train_opportunity):
        """The holding stop cannot take more recovery than its maximum."""
        constraints = OptimizationConstraints(max_recovery_time=5)
        result = await engine.optimize(small_schedule, [go_train_opportunity], constraints)

        assert result.applied_moves == []
        reasons = result.rejected_moves[0].move.constraint_violations
        assert "Insufficient recovery time available for adjustment" in reasons
        assert any("above maximum 5min" in r for r in reasons)

    @pytest.mark.asyncio
    async def test_recovery_floor_rejects_short_hold(self, engine, small_schedule):
        """A four minute hold is under the five minute floor, so it is rejected rather than committed."""
        constraints = OptimizationConstraints(min_recovery_time=5)
        train = make_opportunity("go_0746", "07:46")
        result = await engine.optimize(small_schedule, [train], constraints)

        assert result.applied_moves == []
        reasons = result.rejected_moves[0].move.constraint_violations
        assert "Recovery 4min at T2 below minimum 5min" in reasons
        assert result.success is True
        assert result.error is None
        assert _trip(result.optimized_schedule, 1).recovery_times == {}
        assert engine.validate_constraints(result.optimized_schedule, constraints, baseline=small_schedule) == []

    @pytest.mark.asyncio
    async def test_final_validation_agrees_with_committed_moves(self, engine, small_schedule, go_train_opportunity):
        """With a recovery floor in force, what the search commits passes the final check."""
        constraints = OptimizationConstraints(min_recovery_time=5)
        result = await engine.optimize(small_schedule, [go_train_opportunity], constraints)

        assert len(result.applied_moves) == 1
        assert _trip(result.optimized_schedule, 1).recovery_times["T2"] == 8
        assert result.success is True
        assert engine.validate_constraints(result.optimized_schedule, constraints, baseline=small_schedule) == []

    def test_validate_constraints_flags_raised_recovery_below_floor(self, engine, small_schedule):
        """A recovery value that changed but stays under the floor is a violation even though it grew."""
        constraints = OptimizationConstraints(min_recovery_time=5)
        engine.recovery_bank.initialize_bank(small_schedule, constraints=constraints)
        changed = small_schedule.clone()
        changed.trip_map()[1].recovery_times["T2"] = 4

        violations = engine.validate_constraints(changed, constraints, baseline=small_schedule)

        assert [v.kind for v in violations] == ["recovery_bounds"]
        assert violations[0].stop_id == "T2"

    @pytest.mark.asyncio
    async def test_committed_moves_never_carry_violations(self, engine, schedule_factory):
        """Every applied move is violation-free."""
        schedule = schedule_factory(60, spacing=4, blocks=6, rail_every=3)
        opportunities = [make_opportunity(f"rail_{i}", f"{3 + i // 2:02d}:{(i * 17) % 60:02d}") for i in range(12)]
        result = await engine.optimize(schedule, opportunities, OptimizationConstraints())

        for move in result.applied_moves:
            assert move.constraint_violations == []
        for rejected in result.rejected_moves:
            assert rejected.reason


# ============================================================
# HEADWAY REFINEMENT
# ============================================================

class TestHeadwayRefinement:
    """Headway corrections run after the search and are recorded as moves."""

    @pytest.mark.asyncio
    async def test_moves_record_whole_minutes_applied(self, engine, time_points):
        """A trip eight minutes late is pulled back; each move carries the step the trip really moved."""
        schedule = Schedule(
            id="route-8-late",
            route_name="Route 8",
            time_points=time_points,
            trips=[make_trip(i + 1, dep) for i, dep in enumerate([420, 458, 480, 510, 540, 570])],
        )
        result = await engine.optimize(schedule, [])

        moves = [m for m in result.applied_moves if m.kind == "headway_adjust"]
        assert [(m.trip_id, m.correction_minutes) for m in moves] == [
            ("2", -8), ("3", -5), ("4", -2), ("3", 8), ("4", 5), ("5", 2),
        ]
        assert result.success is True
        assert _trip(result.optimized_schedule, 2).departure_time == "07:30"

        replayed = engine.apply_optimization(schedule, moves)
        assert [t.departure_time for t in replayed.trips] == [t.departure_time for t in result.optimized_schedule.trips]


# ============================================================
# PROGRESSIVE SEARCH
# ============================================================

class TestProgressiveSearch:
    """Large inputs run in batches."""

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_large_schedule_uses_progressive_batches(self, engine, schedule_factory):
        """600 trips and 80 opportunities: progressive strategy, batches of 25, clean final schedule."""
        schedule = schedule_factory(600)
        opportunities = [
            make_opportunity(f"rail_{i}", f"{3 + (i * 11) // 60:02d}:{(i * 11) % 60:02d}")
            for i in range(80)
        ]
        constraints = OptimizationConstraints(target_headway=2, headway_tolerance=1)

        result = await engine.optimize(schedule, opportunities, constraints)

        assert result.statistics.strategy == "progressive"
        assert 1 <= result.statistics.batches_processed <= 4
        assert result.success is True
        assert engine.validate_constraints(result.optimized_schedule, constraints, baseline=schedule) == []
        assert result.statistics.total_connections_analyzed == 80

    @pytest.mark.asyncio
    async def test_connection_count_alone_triggers_progressive(self, engine, small_schedule):
        """More than 50 connections switch strategy even on a small schedule."""
        opportunities = [make_opportunity(f"rail_{i}", "07:50", priority=5) for i in range(51)]
        result = await engine.optimize(small_schedule, opportunities, OptimizationConstraints())

        assert result.statistics.strategy == "progressive"

    @pytest.mark.asyncio
    async def test_cancel_stops_at_batch_boundary(self, schedule_factory):
        """Cancelling from the progress callback ends the run after the current batch."""
        engine = OptimizationEngine(engine_config=EngineConfig(batch_pause_sec=0.0, batch_size=25))
        schedule = schedule_factory(600)
        opportunities = [
            make_opportunity(f"rail_{i}", f"{3 + (i * 11) // 60:02d}:{(i * 11) % 60:02d}")
            for i in range(80)
        ]
        constraints = OptimizationConstraints(
            target_headway=2,
            performance=PerformanceLimits(early_termination_threshold=1.1),
        )

        def on_progress(progress):
            if progress.phase == "searching":
                engine.cancel_optimization()

        result = await engine.optimize(schedule, opportunities, constraints, on_progress=on_progress)

        assert result.cancelled is True
        assert result.statistics.batches_processed == 1
        assert result.statistics.iterations_completed == 25
        assert "Optimization cancelled - returning best state found so far" in result.warnings

    @pytest.mark.asyncio
    async def test_timeout_returns_best_state(self, engine, small_schedule, go_train_opportunity):
        """A zero time budget stops the search and warns."""
        constraints = OptimizationConstraints(performance=PerformanceLimits(max_optimization_time_ms=0))
        result = await engine.optimize(small_schedule, [go_train_opportunity], constraints)

        assert "Optimization timed out - results may be suboptimal" in result.warnings
        assert result.applied_moves == []
        assert result.optimized_schedule.trip_map()[1].time_at("T3") == "07:30"


# ============================================================
# FAILURE RESULTS
# ============================================================

class TestFailureResults:
    """Malformed input and exhausted budgets yield structured failures."""

    @pytest.mark.asyncio
    async def test_unknown_location(self, engine, small_schedule):
        """A connection at an unknown stop fails the whole run."""
        opportunity = make_opportunity("rail_T9", "07:50", location_id="T9")
        result = await engine.optimize(small_schedule, [opportunity], OptimizationConstraints())

        assert result.success is False
        assert result.final_score == 0.0
        assert "unknown location T9" in result.error
        assert result.warnings == ["Complete optimization failure"]
        assert result.recommendations == ["Optimization failed - check constraints and retry"]
        assert result.failed_connections[0].reason == "Optimization failed"

    @pytest.mark.asyncio
    async def test_duplicate_trip_numbers(self, engine, small_schedule, go_train_opportunity):
        """Two trips with the same number are rejected."""
        schedule = small_schedule.model_copy(update={"trips": small_schedule.trips + [make_trip(1, 700)]})
        result = await engine.optimize(schedule, [go_train_opportunity], OptimizationConstraints())

        assert result.success is False
        assert "Duplicate trip number 1" in result.error

    @pytest.mark.asyncio
    async def test_priority_out_of_range(self, engine, small_schedule):
        """Priorities must be within 1-10."""
        opportunity = make_opportunity("rail_T3", "07:50", priority=11)
        result = await engine.optimize(small_schedule, [opportunity], OptimizationConstraints())

        assert result.success is False
        assert "priority 11 outside 1-10" in result.error

    @pytest.mark.asyncio
    async def test_inverted_recovery_bounds(self, engine, small_schedule, go_train_opportunity):
        """min_recovery_time above max_recovery_time is malformed."""
        constraints = OptimizationConstraints(min_recovery_time=10, max_recovery_time=5)
        result = await engine.optimize(small_schedule, [go_train_opportunity], constraints)

        assert result.success is False
        assert "exceeds max_recovery_time" in result.error

    @pytest.mark.asyncio
    async def test_negative_bound(self, engine, small_schedule, go_train_opportunity):
        """Negative deviation bounds are malformed."""
        constraints = OptimizationConstraints(max_trip_deviation=-1)
        result = await engine.optimize(small_schedule, [go_train_opportunity], constraints)

        assert result.success is False
        assert "max_trip_deviation" in result.error

    @pytest.mark.asyncio
    async def test_memory_over_budget_before_search(self, engine, small_schedule, go_train_opportunity):
        """A working set above the memory ceiling fails before searching."""
        constraints = OptimizationConstraints(performance=PerformanceLimits(max_memory_usage_mb=0.000001))
        result = await engine.optimize(small_schedule, [go_train_opportunity], constraints)

        assert result.success is False
        assert "memory budget exceeded" in result.error

    @pytest.mark.asyncio
    async def test_internal_fault_becomes_failure(self, engine, small_schedule, go_train_opportunity):
        """Unexpected exceptions are caught and reported."""
        engine.recovery_bank.initialize_bank = Mock(side_effect=RuntimeError("boom"))
        result = await engine.optimize(small_schedule, [go_train_opportunity], OptimizationConstraints())

        assert result.success is False
        assert result.error == "Internal failure: boom"
        assert engine.is_optimization_running() is False


# ============================================================
# PROGRESS
# ============================================================

class TestProgress:
    """Progress notifications during a run."""

    @pytest.mark.asyncio
    async def test_phases_reported_in_order(self, engine, small_schedule, go_train_opportunity):
        """Phases run from initializing to completed, ending at 100%."""
        updates = []
        await engine.optimize(small_schedule, [go_train_opportunity], OptimizationConstraints(),
                              on_progress=updates.append)

        phases = [u.phase for u in updates]
        assert phases[0] == "initializing"
        assert phases[-1] == "completed"
        assert "searching" in phases
        assert "validating" in phases
        assert updates[-1].progress == 100
        assert updates[-1].current_score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_async_callback_awaited(self, engine, small_schedule, go_train_opportunity):
        """Coroutine callbacks are awaited."""
        callback = AsyncMock()
        await engine.optimize(small_schedule, [go_train_opportunity], OptimizationConstraints(),
                              on_progress=callback)

        assert callback.await_count >= 4

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_abort(self, engine, small_schedule, go_train_opportunity):
        """A raising callback is logged and ignored."""
        callback = Mock(side_effect=RuntimeError("listener down"))
        result = await engine.optimize(small_schedule, [go_train_opportunity], OptimizationConstraints(),
                                       on_progress=callback)

        assert result.success is True
        assert result.final_score == pytest.approx(1.0)


# ============================================================
# STATE, APPLYING MOVES, VALIDATION
# ============================================================

class TestEngineState:
    """Accessors and helpers around a run."""

    @pytest.mark.asyncio
    async def test_states_after_run(self, engine, small_schedule, go_train_opportunity):
        """Current and best state are copies of the final state."""
        assert engine.get_current_state() is None
        await engine.optimize(small_schedule, [go_train_opportunity], OptimizationConstraints())

        current = engine.get_current_state()
        best = engine.get_best_state()
        assert current.current_score == pytest.approx(1.0)
        assert best.current_score == pytest.approx(1.0)
        current.current_schedule.trips[0].arrival_times["T3"] = "09:00"
        assert engine.get_current_state().current_schedule.trips[0].arrival_times["T3"] == "07:38"

    @pytest.mark.asyncio
    async def test_performance_stats(self, engine, small_schedule, go_train_opportunity):
        """Stats include phases, counters, cache and last run statistics."""
        await engine.optimize(small_schedule, [go_train_opportunity], OptimizationConstraints())
        stats = engine.get_performance_stats()

        assert stats["counters"]["moves_applied"] == 1
        assert "searching" in stats["phases_ms"]
        assert "bus_time_cache" in stats["cache"]
        assert stats["last_run"]["strategy"] == "greedy"

    @pytest.mark.asyncio
    async def test_reset(self, engine, small_schedule, go_train_opportunity):
        """reset() clears states and the bank."""
        await engine.optimize(small_schedule, [go_train_opportunity], OptimizationConstraints())
        engine.reset()

        assert engine.get_current_state() is None
        assert engine.get_best_state() is None
        assert engine.recovery_bank.get_transaction_history() == []

    @pytest.mark.asyncio
    async def test_apply_optimization_replays_moves(self, engine, small_schedule, go_train_opportunity):
        """Applied moves replayed on the input reproduce the optimized times."""
        result = await engine.optimize(small_schedule, [go_train_opportunity], OptimizationConstraints())
        replayed = engine.apply_optimization(small_schedule, result.applied_moves)

        assert replayed.trip_map()[1].time_at("T3") == "07:38"
        assert small_schedule.trip_map()[1].time_at("T3") == "07:30"

    @pytest.mark.asyncio
    async def test_apply_optimization_strict_rejects_invalid_moves(self, engine, small_schedule,
                                                                   go_train_opportunity):
        """Strict replay raises on a move with violations; lenient replay skips it."""
        constraints = OptimizationConstraints(max_trip_deviation=5)
        result = await engine.optimize(small_schedule, [go_train_opportunity], constraints)
        invalid = [r.move for r in result.rejected_moves]

        unchanged = engine.apply_optimization(small_schedule, invalid)
        assert unchanged.trip_map()[1].time_at("T3") == "07:30"
        with pytest.raises(ConstraintViolationError):
            engine.apply_optimization(small_schedule, invalid, strict=True)

    def test_validate_constraints_detects_block_reorder(self, engine, small_schedule, constraints):
        """A trip moved before its block predecessor is a violation."""
        changed = small_schedule.clone()
        changed.trips[1].departure_time = "06:55"

        violations = engine.validate_constraints(changed, constraints, baseline=small_schedule)
        kinds = {v.kind for v in violations}
        assert "block_order" in kinds
        assert "trip_shift" in kinds

    def test_validate_constraints_clean_schedule(self, engine, small_schedule, constraints):
        """An untouched schedule has no violations."""
        assert engine.validate_constraints(small_schedule, constraints, baseline=small_schedule) == []

    @pytest.mark.asyncio
    async def test_concurrent_runs_are_serialized(self, small_schedule, go_train_opportunity):
        """Two optimize() calls on one engine never overlap."""
        engine = OptimizationEngine(engine_config=EngineConfig(batch_pause_sec=0.0))
        first, second = await asyncio.gather(
            engine.optimize(small_schedule, [go_train_opportunity], OptimizationConstraints()),
            engine.optimize(small_schedule, [go_train_opportunity], OptimizationConstraints()),
        )

        assert first.final_score == pytest.approx(second.final_score)
        assert engine.is_optimization_running() is False


# ============================================================
# REQUEST WARNINGS, HISTORY AND REPORTS
# ============================================================

class TestRequestWarnings:
    """Inputs that are accepted but flagged."""

    @pytest.mark.asyncio
    async def test_warnings_lead_the_result(self, engine, small_schedule, go_train_opportunity):
        constraints = OptimizationConstraints(
            max_trip_deviation=40,
            performance=PerformanceLimits(max_optimization_time_ms=4000),
        )
        result = await engine.optimize(small_schedule, [go_train_opportunity], constraints)

        assert result.success is True
        assert result.warnings[:2] == [
            "Large maximum trip deviation (>30min) may affect schedule reliability",
            "Short optimization time limit may prevent finding optimal solutions",
        ]

    def test_many_connections(self, small_schedule, go_train_opportunity):
        warnings = OptimizationEngine._request_warnings(
            small_schedule, [go_train_opportunity] * 101, OptimizationConstraints()
        )
        assert warnings == [
            "High number of connection opportunities (>100) - consider filtering to the most important ones"
        ]

    def test_zero_deviation(self, small_schedule):
        warnings = OptimizationEngine._request_warnings(
            small_schedule, [], OptimizationConstraints(max_trip_deviation=0)
        )
        assert warnings == ["Maximum trip deviation is not positive - no trip can be moved"]

    def test_defaults_raise_nothing(self, small_schedule, go_train_opportunity, constraints):
        assert OptimizationEngine._request_warnings(small_schedule, [go_train_opportunity], constraints) == []


class TestOptimizationHistory:
    """Every run is kept under its run id."""

    @pytest.mark.asyncio
    async def test_results_kept_by_run_id(self, engine, small_schedule, go_train_opportunity, constraints):
        named = await engine.optimize(small_schedule, [go_train_opportunity], constraints, run_id="run-a")
        generated = await engine.optimize(small_schedule, [go_train_opportunity], constraints)

        assert named.run_id == "run-a"
        assert generated.run_id.startswith("opt_")
        assert named.constraints == constraints
        assert engine.get_optimization_history("run-a") is named
        assert set(engine.get_optimization_history()) == {"run-a", generated.run_id}
        assert engine.get_optimization_history("missing") is None

    @pytest.mark.asyncio
    async def test_failures_are_kept(self, engine, small_schedule):
        bad = make_opportunity("nowhere", "08:00", location_id="T9")
        result = await engine.optimize(small_schedule, [bad], run_id="run-bad")

        assert engine.get_optimization_history("run-bad") is result
        assert result.success is False

    @pytest.mark.asyncio
    async def test_clear_history(self, engine, small_schedule, go_train_opportunity):
        await engine.optimize(small_schedule, [go_train_opportunity], run_id="run-a")
        assert engine.headway_service.get_correction_history(small_schedule.id) is not None

        engine.clear_history()

        assert engine.get_optimization_history() == {}
        assert engine.headway_service.get_correction_history(small_schedule.id) is None
        assert engine.generate_optimization_report("run-a") is None


class TestOptimizationReport:
    """Before/after comparison of a kept run."""

    @pytest.mark.asyncio
    async def test_report_compares_input_and_output(self, engine, small_schedule, go_train_opportunity, constraints):
        await engine.optimize(small_schedule, [go_train_opportunity], constraints, run_id="run-r")
        report = engine.generate_optimization_report("run-r")

        summary = report.request_summary
        assert (summary.run_id, summary.schedule_id, summary.route_name) == ("run-r", "route-8-weekday", "Route 8")
        assert (summary.trip_count, summary.connection_count) == (6, 1)

        before, after = report.comparison.before, report.comparison.after
        assert before.connections_made == 0
        assert before.total_recovery_time == 0
        assert after.connections_made == 1
        assert after.average_connection_time == 12
        assert after.total_recovery_time == 8
        assert report.comparison.improvement.additional_connections == 1
        assert report.comparison.improvement.headway_regularity_improvement == pytest.approx(0.0)

    @pytest.mark.asyncio
    async def test_breakdowns(self, engine, small_schedule, go_train_opportunity, constraints):
        await engine.optimize(small_schedule, [go_train_opportunity], constraints, run_id="run-r")
        report = engine.generate_optimization_report("run-r")

        assert report.by_type == {"GO_TRAIN": ConnectionBreakdown(attempted=1, successful=1, average_score=1.0)}
        assert report.by_priority[8].successful == 1
        assert report.time_distribution == {"07:00": 1}

        recovery = report.recovery_analysis
        assert recovery.total_recovery_used == 8
        assert [(r.stop_id, r.amount) for r in recovery.top_borrowers] == [("T2", 8)]
        assert recovery.top_lenders[0].amount == 8

    @pytest.mark.asyncio
    async def test_recommendations_grouped(self, engine, small_schedule, go_train_opportunity):
        """A rejected move produces a constraint recommendation."""
        result = await engine.optimize(
            small_schedule, [go_train_opportunity], OptimizationConstraints(max_trip_deviation=5), run_id="run-x"
        )
        grouped = engine.generate_optimization_report("run-x").recommendations

        assert "Consider relaxing constraints - 1 moves were rejected" in grouped.performance_improvements
        for text in result.recommendations:
            if "recovery" in text.lower():
                assert text in grouped.recovery_time_adjustments

    def test_unknown_run(self, engine):
        assert engine.generate_optimization_report("nope") is None


class TestEngineConfig:
    """EngineConfig parsing."""

    def test_from_dict_clamps_values(self):
        """Out-of-range values are clamped."""
        cfg = EngineConfig.from_dict({"batch_size": 0, "memory_check_ratio": 5, "batch_pause_sec": -1})

        assert cfg.batch_size == 1
        assert cfg.memory_check_ratio == 1.0
        assert cfg.batch_pause_sec == 0.0

    def test_from_dict_ignores_non_dict(self):
        """Non-dict input yields defaults."""
        assert EngineConfig.from_dict(None) == EngineConfig()

    def test_round_trip_keys(self):
        """to_dict exposes every field."""
        data = EngineConfig(batch_size=10).to_dict()

        assert data["batch_size"] == 10
        assert set(data) == {
            "batch_size", "progressive_trip_threshold", "progressive_connection_threshold",
            "cache_max_size", "cache_evict_fraction", "batch_pause_sec", "memory_check_ratio",
            "apply_headway_refinement",
        }


class TestEngineSingleton:

    def test_singleton(self):
        """get_optimization_engine returns a shared instance until reset."""
        reset_optimization_engine()
        first = get_optimization_engine()
        assert get_optimization_engine() is first
        reset_optimization_engine()
        assert get_optimization_engine() is not first
        reset_optimization_engine()
