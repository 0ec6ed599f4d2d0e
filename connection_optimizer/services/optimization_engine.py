"""
Connection optimization engine.

Search:
1) initializing   validate input, build indexes, open the recovery bank
2) prioritizing   heap-order the connection opportunities
3) searching      greedy single pass, or progressive batches for large inputs
4) validating     headway refinement on a clone, final constraint check
5) finalizing     result, statistics, recommendations

Each connection proposes one move on the bus closest to the ideal time at its
stop. The move is tried on a copy-on-write trial schedule and committed only if
it is violation-free and raises the overall score; otherwise the recovery bank
is restored from its snapshot (backtracking).
"""

import asyncio
import bisect
import inspect
import itertools
import logging
import os
import tracemalloc
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from connection_optimizer.config import config
from connection_optimizer.errors import ConstraintViolationError, InternalFailure, ResourceExceeded, ValidationError
from connection_optimizer.models.connection import ConnectionOpportunity, WindowClassification
from connection_optimizer.models.headway import HeadwayCorrectionResult, HeadwayDeviation
from connection_optimizer.models.optimization import (
    ConnectionAlignMove,
    ConnectionBreakdown,
    ConnectionOptimizationResult,
    ConstraintViolation,
    FailedConnection,
    HeadwayAdjustMove,
    MoveKind,
    OptimizationConstraints,
    OptimizationProgress,
    OptimizationReport,
    OptimizationState,
    OptimizationStatistics,
    PerformanceMetrics,
    RecoveryAnalysis,
    RecoveryTransferMove,
    RejectedMove,
    ReportComparison,
    ReportImprovement,
    ReportRecommendations,
    RequestSummary,
    ScheduleSnapshot,
    TimeShiftMove,
)
from connection_optimizer.models.recovery import (
    AllocationRequest,
    RankedAccount,
    RecoveryBankState,
    RecoveryTransaction,
)
from connection_optimizer.models.schedule import Schedule, Trip
from connection_optimizer.services.connection_window_service import ConnectionWindowService
from connection_optimizer.services.headway_correction_service import HeadwayCorrectionService
from connection_optimizer.services.optimization_cache import (
    ConnectionPriorityQueue,
    OptimizationCache,
    PerformanceTracker,
    ScheduleIndex,
    estimate_memory_mb,
)
from connection_optimizer.services.recovery_bank_service import TOP_ACCOUNTS, RecoveryBankService
from connection_optimizer.time_utils import normalize_gap, shift_time, time_to_minutes
from connection_optimizer.type_defs import LocationTimes, ProgressCallback, StatsDict

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    """Read an integer from environment, falling back to *default*."""
    raw = os.environ.get(name, "").strip()
    if raw:
        try:
            return int(raw)
        except ValueError:
            pass
    return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if raw:
        try:
            return float(raw)
        except ValueError:
            pass
    return default


SCORE_EPSILON = 1e-9
UNFUNDED_ADJUSTMENT_LIMIT = 2

LARGE_SCHEDULE_TRIPS = 1000
LARGE_CONNECTION_COUNT = 100
LARGE_TRIP_DEVIATION = 30
SHORT_TIME_LIMIT_MS = 5000

_RECOMMENDATION_TOPICS = (
    ("schedule_adjustments", ("schedule", "headway")),
    ("recovery_time_adjustments", ("recovery",)),
    ("connection_opportunities", ("connection",)),
    ("performance_improvements", ("performance", "constraint")),
)

_CLASSIFICATION_RANK = {
    WindowClassification.IDEAL: 2,
    WindowClassification.PARTIAL: 1,
    WindowClassification.MISSED: 0,
}


@dataclass
class EngineConfig:
    batch_size: int = _env_int("CONNOPT_BATCH_SIZE", config.BATCH_SIZE)
    progressive_trip_threshold: int = _env_int(
        "CONNOPT_PROGRESSIVE_TRIP_THRESHOLD", config.PROGRESSIVE_TRIP_THRESHOLD
    )
    progressive_connection_threshold: int = _env_int(
        "CONNOPT_PROGRESSIVE_CONNECTION_THRESHOLD", config.PROGRESSIVE_CONNECTION_THRESHOLD
    )
    cache_max_size: int = _env_int("CONNOPT_CACHE_MAX_SIZE", config.CACHE_MAX_SIZE)
    cache_evict_fraction: float = 0.2
    batch_pause_sec: float = _env_float("CONNOPT_BATCH_PAUSE_SEC", config.BATCH_PAUSE_SEC)
    memory_check_ratio: float = 0.9
    apply_headway_refinement: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EngineConfig":
        if not isinstance(data, dict):
            return cls()
        defaults = cls()
        return cls(
            batch_size=max(1, int(data.get("batch_size", defaults.batch_size))),
            progressive_trip_threshold=max(0, int(data.get("progressive_trip_threshold",
                                                           defaults.progressive_trip_threshold))),
            progressive_connection_threshold=max(0, int(data.get("progressive_connection_threshold",
                                                                 defaults.progressive_connection_threshold))),
            cache_max_size=max(1, int(data.get("cache_max_size", defaults.cache_max_size))),
            cache_evict_fraction=min(1.0, max(0.01, float(data.get("cache_evict_fraction",
                                                                   defaults.cache_evict_fraction)))),
            batch_pause_sec=max(0.0, float(data.get("batch_pause_sec", defaults.batch_pause_sec))),
            memory_check_ratio=min(1.0, max(0.1, float(data.get("memory_check_ratio",
                                                                defaults.memory_check_ratio)))),
            apply_headway_refinement=bool(data.get("apply_headway_refinement", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_size": self.batch_size,
            "progressive_trip_threshold": self.progressive_trip_threshold,
            "progressive_connection_threshold": self.progressive_connection_threshold,
            "cache_max_size": self.cache_max_size,
            "cache_evict_fraction": self.cache_evict_fraction,
            "batch_pause_sec": self.batch_pause_sec,
            "memory_check_ratio": self.memory_check_ratio,
            "apply_headway_refinement": self.apply_headway_refinement,
        }


@dataclass
class _RunContext:
    """Per-run bookkeeping that does not belong in OptimizationState."""

    connections: List[ConnectionOpportunity]
    constraints: OptimizationConstraints
    baseline: Schedule
    baseline_trips: Dict[int, Trip]
    index: ScheduleIndex
    on_progress: Optional[ProgressCallback]
    strategy: str = "greedy"
    processed: int = 0
    batches: int = 0
    timed_out: bool = False
    cancelled: bool = False
    memory_stop: bool = False
    early_terminated: bool = False


async def _safe_emit_progress(callback: Optional[ProgressCallback], progress: OptimizationProgress) -> None:
    if not callback:
        return
    try:
        result = callback(progress)
        if inspect.isawaitable(result):
            await result
    except Exception as exc:
        logger.warning(f"Progress callback failed: {exc}")


class OptimizationEngine:
    """Priority search with backtracking over connection opportunities."""

    def __init__(
        self,
        window_service: Optional[ConnectionWindowService] = None,
        recovery_bank: Optional[RecoveryBankService] = None,
        headway_service: Optional[HeadwayCorrectionService] = None,
        engine_config: Optional[EngineConfig] = None,
    ):
        self.window_service = window_service or ConnectionWindowService()
        self.recovery_bank = recovery_bank or RecoveryBankService()
        self.headway_service = headway_service or HeadwayCorrectionService()
        self.engine_config = engine_config or EngineConfig()
        self.cache = OptimizationCache(self.engine_config.cache_max_size, self.engine_config.cache_evict_fraction)
        self.tracker = PerformanceTracker()

        self._lock = asyncio.Lock()
        self._running = False
        self._cancel_requested = False
        self._current_state: Optional[OptimizationState] = None
        self._best_state: Optional[OptimizationState] = None
        self._revisions = itertools.count(1)
        self._last_statistics: Optional[OptimizationStatistics] = None
        self._history: Dict[str, ConnectionOptimizationResult] = {}

    # =========================================================================
    # Public API
    # =========================================================================

    async def optimize(
        self,
        schedule: Schedule,
        connections: Iterable[ConnectionOpportunity],
        constraints: Optional[OptimizationConstraints] = None,
        on_progress: Optional[ProgressCallback] = None,
        run_id: Optional[str] = None,
    ) -> ConnectionOptimizationResult:
        """
        Optimize *schedule* for *connections*. Never raises; failures come back as results.

        Every result is kept in the run history under *run_id* (generated when
        not given) until clear_history() is called.
        """
        connections = list(connections)
        constraints = constraints or OptimizationConstraints()
        run_id = run_id or f"opt_{uuid.uuid4().hex[:12]}"

        async with self._lock:
            self._running = True
            self._cancel_requested = False
            started_tracing = False
            try:
                if config.TRACE_MEMORY and not tracemalloc.is_tracing():
                    tracemalloc.start()
                    started_tracing = True
                result = await self._run(schedule, connections, constraints, on_progress)
            except (ValidationError, ResourceExceeded) as exc:
                logger.warning(f"Optimization of {schedule.id} rejected: {exc}")
                result = self._failure_result(schedule, connections, str(exc))
            except Exception as exc:
                logger.exception(f"Optimization of {schedule.id} failed")
                failure = InternalFailure(f"Internal failure: {exc}")
                result = self._failure_result(schedule, connections, str(failure))
            finally:
                if started_tracing:
                    tracemalloc.stop()
                self._running = False

            result = result.model_copy(update={"run_id": run_id, "constraints": constraints})
            self._history[run_id] = result
            return result

    def cancel_optimization(self) -> None:
        """Request cancellation; honoured at the next batch boundary."""
        if self._running:
            logger.info("Optimization cancellation requested")
        self._cancel_requested = True

    def is_optimization_running(self) -> bool:
        return self._running

    def get_current_state(self) -> Optional[OptimizationState]:
        return self._current_state.clone() if self._current_state else None

    def get_best_state(self) -> Optional[OptimizationState]:
        return self._best_state.clone() if self._best_state else None

    def get_performance_stats(self) -> StatsDict:
        stats = self.tracker.get_metrics()
        stats["cache"] = self.cache.stats()
        stats["recovery_bank"] = self.recovery_bank.get_performance_statistics()
        if self._last_statistics is not None:
            stats["last_run"] = self._last_statistics.model_dump()
        return stats

    def reset(self) -> None:
        self._current_state = None
        self._best_state = None
        self._cancel_requested = False
        self._last_statistics = None
        self.cache.clear_all()
        self.tracker.reset()
        if self.recovery_bank.is_initialized:
            self.recovery_bank.reset_bank()

    def get_optimization_history(self, run_id: Optional[str] = None):
        """All kept results by run id, or the result of one run (None if unknown)."""
        if run_id is not None:
            return self._history.get(run_id)
        return dict(self._history)

    def clear_history(self) -> None:
        """Forget kept results and drop the engine and headway caches."""
        self._history.clear()
        self.cache.clear_all()
        self.headway_service.clear_correction_history()

    # =========================================================================
    # Run
    # =========================================================================

    async def _run(
        self,
        schedule: Schedule,
        connections: List[ConnectionOpportunity],
        constraints: OptimizationConstraints,
        on_progress: Optional[ProgressCallback],
    ) -> ConnectionOptimizationResult:
        self.tracker.start()
        self.cache.clear_all()

        with self.tracker.phase("initializing"):
            self._validate_inputs(schedule, connections, constraints)
            warnings = self._request_warnings(schedule, connections, constraints)
            await self._emit(on_progress, 0, "initializing", None)

            working = schedule.clone()
            self.recovery_bank.initialize_bank(working, constraints=constraints)
            ctx = _RunContext(
                connections=connections,
                constraints=constraints,
                baseline=schedule,
                baseline_trips=schedule.trip_map(),
                index=ScheduleIndex(working, connections),
                on_progress=on_progress,
            )
            state = OptimizationState(
                current_schedule=working,
                recovery_bank=self.recovery_bank.get_bank_state(),
                revision=next(self._revisions),
            )
            state.current_score = self.calculate_score(working, connections, revision=state.revision)
            initial_score = state.current_score
            self._current_state = state
            self._best_state = state

            memory_mb = self._measure_memory(working, len(connections))
            limit_mb = constraints.performance.max_memory_usage_mb
            if memory_mb > limit_mb:
                raise ResourceExceeded("memory", limit_mb, memory_mb)

        with self.tracker.phase("prioritizing"):
            queue = ConnectionPriorityQueue(constraints.connection_priorities)
            queue.extend(connections)
            progressive = (
                len(schedule.trips) > self.engine_config.progressive_trip_threshold
                or len(connections) > self.engine_config.progressive_connection_threshold
            )
            ctx.strategy = "progressive" if progressive else "greedy"
            logger.info(
                f"Optimizing {schedule.id}: {len(schedule.trips)} trips, {len(connections)} connections, "
                f"strategy={ctx.strategy}, initial score={initial_score:.3f}"
            )
            await self._emit(on_progress, 5, "prioritizing", state)

        with self.tracker.phase("searching"):
            if progressive:
                await self._progressive_search(state, queue, ctx)
            else:
                await self._greedy_search(state, queue, ctx)
            state.recovery_bank = self.recovery_bank.get_bank_state()

        with self.tracker.phase("validating"):
            await self._emit(on_progress, 90, "validating", state)
            correction = None
            if self.engine_config.apply_headway_refinement:
                correction = self._refine_headways(state, ctx, warnings)
            violations = self.validate_constraints(state.current_schedule, constraints, baseline=schedule)

        with self.tracker.phase("finalizing"):
            result = self._build_result(state, ctx, initial_score, violations, correction, warnings)
            await self._emit(on_progress, 100, "completed", state)

        logger.info(
            f"Optimization of {schedule.id} finished: score {initial_score:.3f} -> {result.final_score:.3f}, "
            f"{len(state.applied_moves)} applied, {len(state.rejected_moves)} rejected, "
            f"{result.statistics.optimization_time_ms:.0f}ms"
        )
        return result

    async def _greedy_search(self, state: OptimizationState, queue: ConnectionPriorityQueue, ctx: _RunContext) -> None:
        total = len(queue)
        for opportunity in queue.drain():
            if self._time_exceeded(ctx):
                break
            self._process_connection(state, opportunity, ctx)
            ctx.processed += 1
            if self._early_termination(state, ctx):
                break
        ctx.batches = 1 if total else 0
        await self._emit(ctx.on_progress, 85, "searching", state, ctx)

    async def _progressive_search(
        self,
        state: OptimizationState,
        queue: ConnectionPriorityQueue,
        ctx: _RunContext,
    ) -> None:
        batch_size = self.engine_config.batch_size
        total = len(queue)
        limit_mb = ctx.constraints.performance.max_memory_usage_mb

        while queue:
            if ctx.batches > 0:
                if self._cancel_requested:
                    ctx.cancelled = True
                    logger.warning(f"Optimization cancelled after {ctx.batches} batches")
                    break
                if self._time_exceeded(ctx):
                    break
                memory_mb = self._measure_memory(state.current_schedule, total)
                if memory_mb > limit_mb * self.engine_config.memory_check_ratio:
                    ctx.memory_stop = True
                    logger.warning(f"Memory {memory_mb:.1f}MB near ceiling {limit_mb:.1f}MB, stopping search")
                    break
                await asyncio.sleep(self.engine_config.batch_pause_sec)

            for opportunity in queue.pop_batch(batch_size):
                self._process_connection(state, opportunity, ctx)
                ctx.processed += 1
                if self._early_termination(state, ctx):
                    break
            ctx.batches += 1
            state.recovery_bank = self.recovery_bank.get_bank_state()
            progress = 10 + 75 * ctx.processed / max(total, 1)
            logger.debug(f"Batch {ctx.batches} done: {ctx.processed}/{total}, score={state.current_score:.3f}")
            await self._emit(ctx.on_progress, progress, "searching", state, ctx)
            if ctx.early_terminated:
                break

    def _time_exceeded(self, ctx: _RunContext) -> bool:
        if self.tracker.elapsed_ms() > ctx.constraints.performance.max_optimization_time_ms:
            if not ctx.timed_out:
                logger.warning("Optimization time budget exceeded, returning best state")
            ctx.timed_out = True
        return ctx.timed_out

    def _early_termination(self, state: OptimizationState, ctx: _RunContext) -> bool:
        if state.current_score >= ctx.constraints.performance.early_termination_threshold:
            ctx.early_terminated = True
        return ctx.early_terminated

    # =========================================================================
    # Moves
    # =========================================================================

    def _process_connection(self, state: OptimizationState, opportunity: ConnectionOpportunity, ctx: _RunContext) -> None:
        schedule = state.current_schedule
        minutes, trip_numbers = self._location_times(schedule, opportunity.location_id, state.revision)
        if not minutes:
            return
        if self.window_service.classify_bus_times(opportunity, minutes) == WindowClassification.IDEAL:
            return

        candidate = self._closest_to_ideal(opportunity, minutes, trip_numbers)
        if candidate is None:
            return
        adjustment, trip_number = candidate
        if adjustment == 0:
            return

        self.tracker.increment("moves_evaluated")
        constraints = ctx.constraints
        position = ctx.index.position_of(trip_number)
        trip = schedule.trips[position]
        location = opportunity.location_id
        holding = ctx.index.previous_stop(location) or location

        move = self._new_move(opportunity, adjustment, trip, location)
        if abs(adjustment) > constraints.max_trip_deviation:
            self._reject(state, move, [ConstraintViolation(
                kind="deviation",
                message=f"Time adjustment {adjustment}min exceeds maximum deviation "
                        f"{constraints.max_trip_deviation:g}min",
                trip_id=trip.trip_id,
            )])
            return

        snapshot = self.recovery_bank.snapshot()
        transactions = self._fund_adjustment(holding, adjustment, trip, opportunity) if abs(adjustment) > 1 else []
        violations: List[ConstraintViolation] = []
        if not transactions and abs(adjustment) > UNFUNDED_ADJUSTMENT_LIMIT:
            violations.append(ConstraintViolation(
                kind="insufficient_recovery",
                message="Insufficient recovery time available for adjustment",
                trip_id=trip.trip_id,
                stop_id=holding,
            ))

        trial_trip = trip.clone()
        self._shift_trip(trial_trip, holding, location, adjustment, ctx.index)
        trial_trips = list(schedule.trips)
        trial_trips[position] = trial_trip
        trial = schedule.model_copy(update={"trips": trial_trips})
        trial_revision = next(self._revisions)

        trip_shift = self._trip_shift(trial_trip, ctx.baseline_trips.get(trip_number))
        headway_impact = self._headway_impact(trial, location, trip_number, trial_revision, constraints)
        violations.extend(self._move_violations(
            state, ctx, trial, trial_trip, holding, adjustment, trip_shift, headway_impact
        ))

        move = move.model_copy(update={
            "required_transactions": transactions,
            "headway_impact": headway_impact,
        })
        if isinstance(move, RecoveryTransferMove):
            move = move.model_copy(update={"funded_minutes": sum(t.amount for t in transactions)})
        if isinstance(move, TimeShiftMove):
            move = move.model_copy(update={"shifted_to": trial_trip.time_at(location)})

        if violations:
            self.recovery_bank.restore(snapshot)
            self._reject(state, move, violations)
            return

        new_score = self.calculate_score(trial, ctx.connections, revision=trial_revision)
        improvement = new_score - state.current_score
        move = move.model_copy(update={"score_improvement": improvement})
        if improvement <= SCORE_EPSILON:
            self.recovery_bank.restore(snapshot)
            self._reject(state, move, [], reason="Score improvement insufficient")
            return

        state.current_schedule = trial
        state.revision = trial_revision
        state.current_score = new_score
        state.trip_shifts[trip_number] = trip_shift
        state.applied_moves.append(move)
        self._best_state = state
        self.tracker.increment("moves_applied")
        logger.debug(f"Applied {move.kind} {adjustment:+d}min on trip {trip.trip_id} for {opportunity.id}")

    def _new_move(self, opportunity: ConnectionOpportunity, adjustment: int, trip: Trip, location: str):
        common = dict(
            id=f"move_{uuid.uuid4().hex[:12]}",
            target_connection=opportunity,
            time_adjustment=adjustment,
            affected_trips=[trip.trip_id],
        )
        magnitude = abs(adjustment)
        if magnitude <= 1:
            return ConnectionAlignMove(location_id=location, **common)
        if magnitude <= 3:
            return RecoveryTransferMove(**common)
        return TimeShiftMove(shifted_from=trip.time_at(location), **common)

    def _reject(
        self,
        state: OptimizationState,
        move,
        violations: List[ConstraintViolation],
        reason: Optional[str] = None,
    ) -> None:
        messages = [v.message for v in violations]
        move = move.model_copy(update={"constraint_violations": messages, "violation_details": violations})
        state.rejected_moves.append(RejectedMove(move=move, reason=reason or "; ".join(messages)))
        self.tracker.increment("moves_rejected")
        logger.debug(f"Rejected move for {move.target_connection.id if move.target_connection else '?'}: "
                     f"{reason or messages}")

    def _closest_to_ideal(
        self,
        opportunity: ConnectionOpportunity,
        minutes: Sequence[float],
        trip_numbers: Sequence[int],
    ) -> Optional[Tuple[int, int]]:
        """(adjustment, trip number) of the bus needing the smallest move to the ideal time."""
        best: Optional[Tuple[int, int]] = None
        for target in self.window_service.ideal_bus_targets(opportunity):
            for i in _neighbour_indexes(minutes, target):
                adjustment = int(round(normalize_gap(target - minutes[i])))
                if best is None or abs(adjustment) < abs(best[0]):
                    best = (adjustment, trip_numbers[i])
        return best

    def _fund_adjustment(
        self,
        holding: str,
        adjustment: int,
        trip: Trip,
        opportunity: ConnectionOpportunity,
    ) -> List[RecoveryTransaction]:
        allocation = self.recovery_bank.find_optimal_allocation([AllocationRequest(
            borrower_stop_id=holding,
            amount=abs(adjustment),
            priority=min(max(opportunity.priority, 1), 10),
            affected_trips=[trip.trip_id],
            reason=f"Align trip {trip.trip_id} with {opportunity.id}",
        )])
        if not allocation.success:
            reasons = "; ".join(u.reason for u in allocation.unmet_requests)
            logger.debug(f"No recovery funding for {opportunity.id} at {holding}: {reasons}")
        return list(allocation.allocations)

    @staticmethod
    def _shift_trip(trip: Trip, holding: str, location: str, adjustment: float, index: ScheduleIndex) -> None:
        """
        Hold the trip *adjustment* minutes longer at *holding* (or less, if negative).

        The holding stop's departure and every later stop-time move; when the
        connection is at the first stop the whole trip moves.
        """
        def shift(times: Dict[str, str], stop_id: str) -> None:
            if stop_id in times:
                times[stop_id] = shift_time(times[stop_id], adjustment)

        first_stop = index.stop_ids[0] if index.stop_ids else None
        if holding == location:
            for stop_id in index.stops_from(holding):
                shift(trip.arrival_times, stop_id)
                shift(trip.departure_times, stop_id)
        else:
            shift(trip.departure_times, holding)
            for stop_id in index.stops_from(holding)[1:]:
                shift(trip.arrival_times, stop_id)
                shift(trip.departure_times, stop_id)
        if holding == first_stop:
            trip.departure_time = shift_time(trip.departure_time, adjustment)
        trip.recovery_times[holding] = trip.recovery_times.get(holding, 0.0) + adjustment

    # =========================================================================
    # Constraint checks
    # =========================================================================

    def _move_violations(
        self,
        state: OptimizationState,
        ctx: _RunContext,
        trial: Schedule,
        trial_trip: Trip,
        holding: str,
        adjustment: int,
        trip_shift: float,
        headway_impact: List[HeadwayDeviation],
    ) -> List[ConstraintViolation]:
        constraints = ctx.constraints
        violations: List[ConstraintViolation] = []
        trip_id = trial_trip.trip_id

        if trip_shift > constraints.max_trip_deviation:
            violations.append(ConstraintViolation(
                kind="trip_shift",
                message=f"Trip {trip_id} shifted {trip_shift:g}min in total, "
                        f"exceeds maximum deviation {constraints.max_trip_deviation:g}min",
                trip_id=trip_id,
            ))

        shifts = dict(state.trip_shifts)
        shifts[trial_trip.trip_number] = trip_shift
        total_shift = sum(shifts.values())
        if total_shift > constraints.max_schedule_shift:
            violations.append(ConstraintViolation(
                kind="schedule_shift",
                message=f"Total schedule shift {total_shift:g}min exceeds limit {constraints.max_schedule_shift:g}min",
                trip_id=trip_id,
            ))

        if constraints.enforce_headway_regularity and headway_impact:
            worst = max(abs(h.deviation) for h in headway_impact)
            if worst > constraints.headway_tolerance:
                violations.append(ConstraintViolation(
                    kind="headway",
                    message=f"Headway deviation {worst:g}min exceeds tolerance {constraints.headway_tolerance:g}min",
                    trip_id=trip_id,
                    stop_id=holding,
                ))

        violations.extend(self._recovery_violations(
            trial_trip, ctx.baseline_trips.get(trial_trip.trip_number), constraints, stops=[holding]
        ))
        violations.extend(self._block_order_violations(trial, ctx.index, trial_trip.block_number))
        return violations

    def _recovery_violations(
        self,
        trip: Trip,
        baseline: Optional[Trip],
        constraints: OptimizationConstraints,
        stops: Optional[Iterable[str]] = None,
    ) -> List[ConstraintViolation]:
        """Recovery values outside their stop's bounds, ignoring values unchanged from *baseline*."""
        violations = []
        for stop_id in (stops if stops is not None else list(trip.recovery_times)):
            if stop_id not in trip.recovery_times:
                continue
            value = trip.recovery_times[stop_id]
            if baseline is not None and baseline.recovery_times.get(stop_id) == value:
                continue
            low, high = self._recovery_bounds(stop_id, constraints)
            if value < low:
                message = f"Recovery {value:g}min at {stop_id} below minimum {low:g}min"
            elif value > high:
                message = f"Recovery {value:g}min at {stop_id} above maximum {high:g}min"
            else:
                continue
            violations.append(ConstraintViolation(
                kind="recovery_bounds",
                message=message,
                trip_id=trip.trip_id,
                stop_id=stop_id,
            ))
        return violations

    def _recovery_bounds(self, stop_id: str, constraints: OptimizationConstraints) -> Tuple[float, float]:
        account = self.recovery_bank.get_account(stop_id)
        if account is not None:
            return account.min_recovery_time, account.max_recovery_time
        return constraints.min_recovery_time, constraints.max_recovery_time

    @staticmethod
    def _block_order_violations(schedule: Schedule, index: ScheduleIndex, block_number: int) -> List[ConstraintViolation]:
        violations = []
        previous: Optional[Trip] = None
        for trip_number in index.trips_by_block.get(block_number, []):
            position = index.position_of(trip_number)
            if position is None or position >= len(schedule.trips):
                continue
            trip = schedule.trips[position]
            if previous is not None and trip.departure_minutes < previous.departure_minutes:
                violations.append(ConstraintViolation(
                    kind="block_order",
                    message=f"Trip {trip.trip_id} departs before trip {previous.trip_id} in block {block_number}",
                    trip_id=trip.trip_id,
                ))
            previous = trip
        return violations

    @staticmethod
    def _trip_shift(trip: Trip, baseline: Optional[Trip]) -> float:
        """Largest absolute stop-time change of *trip* against its input version."""
        if baseline is None:
            return 0.0
        shifts = [abs(normalize_gap(trip.departure_minutes - baseline.departure_minutes))]
        for times, base_times in ((trip.arrival_times, baseline.arrival_times),
                                  (trip.departure_times, baseline.departure_times)):
            for stop_id, value in times.items():
                base = base_times.get(stop_id)
                if base is not None:
                    shifts.append(abs(normalize_gap(time_to_minutes(value) - time_to_minutes(base))))
        return max(shifts)

    def _headway_impact(
        self,
        schedule: Schedule,
        location: str,
        trip_number: int,
        revision: int,
        constraints: OptimizationConstraints,
    ) -> List[HeadwayDeviation]:
        """Headways at *location* on either side of the moved trip."""
        minutes, trip_numbers = self._location_times(schedule, location, revision)
        if trip_number not in trip_numbers:
            return []
        i = trip_numbers.index(trip_number)
        impact = []
        for earlier, later in ((i - 1, i), (i, i + 1)):
            if earlier < 0 or later >= len(minutes):
                continue
            headway = minutes[later] - minutes[earlier]
            impact.append(HeadwayDeviation(
                trip_id=str(trip_numbers[later]),
                planned_headway=constraints.target_headway,
                current_headway=headway,
                deviation=headway - constraints.target_headway,
            ))
        return impact

    def validate_constraints(
        self,
        schedule: Schedule,
        constraints: OptimizationConstraints,
        baseline: Optional[Schedule] = None,
    ) -> List[ConstraintViolation]:
        """
        Hard constraint check of a whole schedule.

        Shift and block-order checks need *baseline*, the schedule before
        optimization; recovery values equal to the baseline are not re-judged.
        """
        violations: List[ConstraintViolation] = []
        base_trips = baseline.trip_map() if baseline is not None else {}

        if baseline is not None:
            total_shift = 0.0
            for trip in schedule.trips:
                shift = self._trip_shift(trip, base_trips.get(trip.trip_number))
                total_shift += shift
                if shift > constraints.max_trip_deviation:
                    violations.append(ConstraintViolation(
                        kind="trip_shift",
                        message=f"Trip {trip.trip_id} shifted {shift:g}min, exceeds maximum deviation "
                                f"{constraints.max_trip_deviation:g}min",
                        trip_id=trip.trip_id,
                    ))
            if total_shift > constraints.max_schedule_shift:
                violations.append(ConstraintViolation(
                    kind="schedule_shift",
                    message=f"Total schedule shift {total_shift:g}min exceeds limit "
                            f"{constraints.max_schedule_shift:g}min",
                ))

            current = schedule.trip_map()
            blocks: Dict[int, List[Trip]] = {}
            for base_trip in baseline.sorted_trips():
                trip = current.get(base_trip.trip_number)
                if trip is not None:
                    blocks.setdefault(base_trip.block_number, []).append(trip)
            for block_number, trips in blocks.items():
                for previous, trip in zip(trips, trips[1:]):
                    if trip.departure_minutes < previous.departure_minutes:
                        violations.append(ConstraintViolation(
                            kind="block_order",
                            message=f"Trip {trip.trip_id} departs before trip {previous.trip_id} "
                                    f"in block {block_number}",
                            trip_id=trip.trip_id,
                        ))

        for trip in schedule.trips:
            violations.extend(self._recovery_violations(trip, base_trips.get(trip.trip_number), constraints))

        bank_state = self.recovery_bank.get_bank_state()
        if bank_state is not None:
            for account in bank_state.accounts.values():
                if account.available_credit > account.max_credit:
                    violations.append(ConstraintViolation(
                        kind="lender_credit",
                        message=f"Stop {account.stop_name} holds more credit than its maximum",
                        stop_id=account.stop_id,
                    ))
        return violations

    # =========================================================================
    # Scoring
    # =========================================================================

    def _location_times(self, schedule: Schedule, location_id: str, revision: Optional[int] = None) -> LocationTimes:
        def compute() -> LocationTimes:
            pairs = []
            for trip in schedule.trips:
                value = trip.time_at(location_id)
                if value:
                    pairs.append((self.cache.time_to_minutes(value), trip.trip_number))
            pairs.sort()
            return [m for m, _ in pairs], [n for _, n in pairs]

        if revision is None:
            return compute()
        return self.cache.bus_times_at(revision, location_id, compute)

    def classify_connection(
        self,
        schedule: Schedule,
        opportunity: ConnectionOpportunity,
        revision: Optional[int] = None,
    ) -> WindowClassification:
        minutes, _ = self._location_times(schedule, opportunity.location_id, revision)
        return self.window_service.classify_bus_times(opportunity, minutes)

    def calculate_score(
        self,
        schedule: Schedule,
        connections: Sequence[ConnectionOpportunity],
        revision: Optional[int] = None,
    ) -> float:
        """Priority-weighted mean of window multipliers, in [0, 1]."""
        total_weight = 0.0
        weighted = 0.0
        for opportunity in connections:
            weight = max(opportunity.priority, 1)
            classification = self.classify_connection(schedule, opportunity, revision)
            weighted += self.window_service.window_for(opportunity).multiplier(classification) * weight
            total_weight += weight
        return weighted / total_weight if total_weight > 0 else 0.0

    def _connection_time(
        self,
        schedule: Schedule,
        opportunity: ConnectionOpportunity,
        revision: Optional[int] = None,
    ) -> Optional[float]:
        """|difference| of the best-classified bus, nearest first among equals."""
        minutes, _ = self._location_times(schedule, opportunity.location_id, revision)
        best: Optional[Tuple[int, float]] = None
        for bus_minutes in minutes:
            difference, classification = self.window_service.measure_connection(opportunity, bus_minutes)
            key = (_CLASSIFICATION_RANK[classification], -abs(difference))
            if best is None or key > best:
                best = key
        return -best[1] if best is not None else None

    # =========================================================================
    # Applying moves outside a run
    # =========================================================================

    def apply_optimization(self, schedule: Schedule, moves: Iterable[Any], strict: bool = False) -> Schedule:
        """
        Clone *schedule* and apply *moves* to the clone.

        Moves carrying constraint violations are skipped, or raise
        ConstraintViolationError when *strict* is set.
        """
        result = schedule.clone()
        index = ScheduleIndex(result)
        trips = result.trip_map()
        for move in moves:
            if not move.is_valid:
                if strict:
                    raise ConstraintViolationError(
                        f"Move {move.id} has constraint violations", move.constraint_violations
                    )
                continue
            if not move.affected_trips:
                continue
            try:
                trip = trips.get(int(move.affected_trips[0]))
            except ValueError:
                trip = None
            if trip is None:
                logger.warning(f"Move {move.id} references unknown trip {move.affected_trips[0]}")
                continue
            if move.kind == MoveKind.HEADWAY_ADJUST.value:
                self.headway_service.cascade_time_adjustment(trip, move.correction_minutes, result.first_time_point_id)
            elif move.target_connection is not None:
                location = move.target_connection.location_id
                holding = index.previous_stop(location) or location
                self._shift_trip(trip, holding, location, move.time_adjustment, index)
        return result

    # =========================================================================
    # Refinement
    # =========================================================================

    def _refine_headways(
        self,
        state: OptimizationState,
        ctx: _RunContext,
        warnings: List[str],
    ) -> Optional[HeadwayCorrectionResult]:
        constraints = ctx.constraints
        candidate = state.current_schedule.clone()
        deviations = self.headway_service.extract_headway_deviations(candidate, constraints.target_headway)
        correction = self.headway_service.correct_headways_within_blocks(
            candidate, deviations, constraints.target_headway, constraints.headway_tolerance, constraints
        )
        applied = [c for c in correction.trip_corrections if c.correction_applied]
        if not applied:
            return correction

        revision = next(self._revisions)
        score = self.calculate_score(candidate, ctx.connections, revision=revision)
        violations = self.validate_constraints(candidate, constraints, baseline=ctx.baseline)
        if score + SCORE_EPSILON < state.current_score or violations:
            logger.warning(
                f"Headway refinement discarded (score {score:.3f} vs {state.current_score:.3f}, "
                f"{len(violations)} violations)"
            )
            warnings.append("Headway refinement skipped - it would lower the connection score or violate constraints")
            return correction

        offsets: Dict[str, int] = {}
        for item in applied:
            if not item.applied_minutes:
                continue
            offset = offsets.get(item.trip_id, 0)
            offsets[item.trip_id] = offset + 1
            state.applied_moves.append(HeadwayAdjustMove(
                id=f"move_{uuid.uuid4().hex[:12]}",
                trip_id=item.trip_id,
                correction_minutes=item.applied_minutes,
                trip_offset=offset,
                time_adjustment=item.applied_minutes,
                affected_trips=[item.trip_id],
            ))
        for trip in candidate.trips:
            shift = self._trip_shift(trip, ctx.baseline_trips.get(trip.trip_number))
            if shift:
                state.trip_shifts[trip.trip_number] = shift
        state.current_schedule = candidate
        state.revision = revision
        state.current_score = score
        logger.info(f"Headway refinement applied {len(applied)} corrections")
        return correction

    # =========================================================================
    # Results
    # =========================================================================

    def _build_result(
        self,
        state: OptimizationState,
        ctx: _RunContext,
        initial_score: float,
        violations: List[ConstraintViolation],
        correction: Optional[HeadwayCorrectionResult],
        warnings: List[str],
    ) -> ConnectionOptimizationResult:
        constraints = ctx.constraints
        schedule = state.current_schedule
        state.headway_deviations = self.cache.headway_deviations(
            state.revision,
            lambda: self.headway_service.extract_headway_deviations(schedule, constraints.target_headway),
        )

        successful: List[ConnectionOpportunity] = []
        failed: List[FailedConnection] = []
        connection_times: List[float] = []
        for opportunity in ctx.connections:
            classification = self.classify_connection(schedule, opportunity, state.revision)
            connection_time = self._connection_time(schedule, opportunity, state.revision)
            updated = opportunity.model_copy(update={
                "window_type": classification,
                "current_connection_time": connection_time,
            })
            if classification == WindowClassification.MISSED:
                failed.append(FailedConnection(
                    opportunity=updated, reason="Unable to achieve connection within constraints"
                ))
            else:
                successful.append(updated)
                if connection_time is not None:
                    connection_times.append(connection_time)

        bank_state = state.recovery_bank or RecoveryBankState()
        regularity = self._headway_regularity(state.headway_deviations, constraints.target_headway)
        memory_mb = self._measure_memory(schedule, len(ctx.connections))
        self.tracker.record_memory(memory_mb)
        elapsed_ms = self.tracker.elapsed_ms()

        violating_trips = {v.trip_id for v in violations if v.trip_id}
        compliance = 1.0 - len(violating_trips) / len(schedule.trips) if schedule.trips else 1.0
        if violations and not violating_trips:
            compliance = min(compliance, 0.8)

        statistics = OptimizationStatistics(
            total_connections_analyzed=len(ctx.connections),
            total_moves_evaluated=len(state.applied_moves) + len(state.rejected_moves),
            total_moves_applied=len(state.applied_moves),
            optimization_time_ms=elapsed_ms,
            memory_used_mb=memory_mb,
            iterations_completed=ctx.processed,
            convergence_achieved=state.current_score >= constraints.performance.early_termination_threshold,
            strategy=ctx.strategy,
            batches_processed=ctx.batches,
            cache_hit_rate=self.cache.hit_rate,
            cache_stats=self.cache.stats(),
        )
        self._last_statistics = statistics

        performance = PerformanceMetrics(
            connection_success_rate=len(successful) / len(ctx.connections) if ctx.connections else 0.0,
            average_connection_time=sum(connection_times) / len(connection_times) if connection_times else 0.0,
            headway_regularity_score=regularity,
            recovery_utilization_rate=bank_state.utilization_rate,
            constraint_compliance_rate=compliance,
        )

        recommendations = []
        if state.rejected_moves:
            recommendations.append(f"Consider relaxing constraints - {len(state.rejected_moves)} moves were rejected")
        if bank_state.utilization_rate > 0.8:
            recommendations.append("Recovery bank utilization high - consider adding more recovery time")
        elif bank_state.utilization_rate < 0.2:
            recommendations.append("Low recovery utilization - constraints may be too strict")
        if regularity < 0.7:
            recommendations.append("Headway regularity below optimal - consider frequency adjustments")

        if ctx.timed_out:
            warnings.append("Optimization timed out - results may be suboptimal")
        if len(state.rejected_moves) > len(state.applied_moves):
            warnings.append("More moves rejected than applied - constraints may be too restrictive")
        if ctx.memory_stop or memory_mb > constraints.performance.max_memory_usage_mb * 0.9:
            warnings.append("High memory usage detected during optimization")
        if ctx.cancelled:
            warnings.append("Optimization cancelled - returning best state found so far")
        if violations:
            warnings.append(f"Final validation found {len(violations)} constraint violations")

        return ConnectionOptimizationResult(
            success=not violations,
            optimized_schedule=schedule,
            original_schedule=ctx.baseline,
            final_score=state.current_score,
            score=state.current_score,
            score_improvement=state.current_score - initial_score,
            successful_connections=successful,
            connections_improved=len(successful),
            failed_connections=failed,
            applied_moves=state.applied_moves,
            rejected_moves=state.rejected_moves,
            final_recovery_state=bank_state,
            headway_corrections=state.headway_deviations,
            headway_correction_result=correction,
            statistics=statistics,
            performance=performance,
            recommendations=recommendations,
            warnings=warnings,
            cancelled=ctx.cancelled,
            error="Some constraints were violated" if violations else None,
        )

    @staticmethod
    def _headway_regularity(deviations: List[HeadwayDeviation], target_headway: float) -> float:
        if not deviations or target_headway <= 0:
            return 1.0
        average = sum(abs(d.deviation) for d in deviations) / len(deviations)
        return max(0.0, 1 - average / target_headway)

    def _failure_result(
        self,
        schedule: Schedule,
        connections: List[ConnectionOpportunity],
        error: str,
    ) -> ConnectionOptimizationResult:
        return ConnectionOptimizationResult(
            success=False,
            optimized_schedule=schedule,
            original_schedule=schedule,
            final_score=0.0,
            score=0.0,
            failed_connections=[FailedConnection(opportunity=c, reason="Optimization failed") for c in connections],
            final_recovery_state=RecoveryBankState(),
            statistics=OptimizationStatistics(total_connections_analyzed=len(connections)),
            recommendations=["Optimization failed - check constraints and retry"],
            warnings=["Complete optimization failure"],
            error=error,
        )

    # =========================================================================
    # Reports
    # =========================================================================

    def generate_optimization_report(self, run_id: str) -> Optional[OptimizationReport]:
        """
        Before/after comparison and connection breakdowns of a kept run.

        The "before" figures are measured on the run's input schedule with the
        same opportunities, so both sides are comparable. Returns None when
        *run_id* is not in the history.
        """
        result = self._history.get(run_id)
        if result is None:
            return None

        original = result.original_schedule or result.optimized_schedule
        target_headway = (result.constraints or OptimizationConstraints()).target_headway
        opportunities = list(result.successful_connections) + [f.opportunity for f in result.failed_connections]
        before = self._schedule_snapshot(original, opportunities, target_headway)
        after = self._schedule_snapshot(result.optimized_schedule, opportunities, target_headway)

        distribution: Dict[str, int] = {}
        for opportunity in result.successful_connections:
            hour_key = f"{time_to_minutes(opportunity.target_time) // 60:02d}:00"
            distribution[hour_key] = distribution.get(hour_key, 0) + 1

        buckets: Dict[str, List[str]] = {name: [] for name, _ in _RECOMMENDATION_TOPICS}
        for text in result.recommendations:
            lowered = text.lower()
            for name, words in _RECOMMENDATION_TOPICS:
                if any(word in lowered for word in words):
                    buckets[name].append(text)

        return OptimizationReport(
            request_summary=RequestSummary(
                run_id=run_id,
                schedule_id=original.id,
                route_name=original.route_name,
                trip_count=len(original.trips),
                connection_count=len(opportunities),
            ),
            comparison=ReportComparison(
                before=before,
                after=after,
                improvement=ReportImprovement(
                    additional_connections=after.connections_made - before.connections_made,
                    connection_time_change=after.average_connection_time - before.average_connection_time,
                    headway_regularity_improvement=after.headway_regularity - before.headway_regularity,
                    recovery_time_efficiency=result.performance.recovery_utilization_rate,
                ),
            ),
            by_type=self._connection_breakdown(result, lambda o: o.type.value),
            by_priority=self._connection_breakdown(result, lambda o: o.priority),
            time_distribution=distribution,
            recovery_analysis=self._recovery_analysis(result.final_recovery_state or RecoveryBankState()),
            recommendations=ReportRecommendations(**buckets),
        )

    def _schedule_snapshot(
        self,
        schedule: Schedule,
        opportunities: List[ConnectionOpportunity],
        target_headway: float,
    ) -> ScheduleSnapshot:
        made = 0
        connection_times = []
        for opportunity in opportunities:
            if self.classify_connection(schedule, opportunity) == WindowClassification.MISSED:
                continue
            made += 1
            connection_time = self._connection_time(schedule, opportunity)
            if connection_time is not None:
                connection_times.append(connection_time)
        deviations = self.headway_service.extract_headway_deviations(schedule, target_headway)
        return ScheduleSnapshot(
            connections_made=made,
            average_connection_time=sum(connection_times) / len(connection_times) if connection_times else 0.0,
            headway_regularity=self._headway_regularity(deviations, target_headway),
            total_recovery_time=sum(sum(trip.recovery_times.values()) for trip in schedule.trips),
        )

    def _connection_breakdown(
        self,
        result: ConnectionOptimizationResult,
        key: Callable[[ConnectionOpportunity], Any],
    ) -> Dict[Any, ConnectionBreakdown]:
        tallies: Dict[Any, List[float]] = {}
        for opportunity in result.successful_connections:
            tally = tallies.setdefault(key(opportunity), [0, 0, 0.0])
            tally[0] += 1
            tally[1] += 1
            tally[2] += self.window_service.window_for(opportunity).multiplier(opportunity.window_type)
        for failed in result.failed_connections:
            tallies.setdefault(key(failed.opportunity), [0, 0, 0.0])[0] += 1
        return {
            name: ConnectionBreakdown(
                attempted=attempted,
                successful=successful,
                average_score=score / successful if successful else 0.0,
            )
            for name, (attempted, successful, score) in tallies.items()
        }

    @staticmethod
    def _recovery_analysis(bank: RecoveryBankState) -> RecoveryAnalysis:
        lent: Dict[str, float] = {}
        borrowed: Dict[str, float] = {}
        for transaction in bank.transactions:
            lent[transaction.lender_stop_id] = lent.get(transaction.lender_stop_id, 0.0) + transaction.amount
            borrowed[transaction.borrower_stop_id] = (
                borrowed.get(transaction.borrower_stop_id, 0.0) + transaction.amount
            )

        def ranked(amounts: Dict[str, float]) -> List[RankedAccount]:
            rows = [
                RankedAccount(
                    stop_id=stop_id,
                    stop_name=bank.accounts[stop_id].stop_name if stop_id in bank.accounts else stop_id,
                    amount=amount,
                )
                for stop_id, amount in amounts.items()
            ]
            rows.sort(key=lambda r: r.amount, reverse=True)
            return rows[:TOP_ACCOUNTS]

        return RecoveryAnalysis(
            total_recovery_available=bank.total_available_recovery,
            total_recovery_used=bank.total_borrowed_recovery,
            utilization_rate=bank.utilization_rate,
            top_lenders=ranked(lent),
            top_borrowers=ranked(borrowed),
        )

    # =========================================================================
    # Validation, progress and memory
    # =========================================================================

    def _validate_inputs(
        self,
        schedule: Schedule,
        connections: List[ConnectionOpportunity],
        constraints: OptimizationConstraints,
    ) -> None:
        seen = set()
        for trip in schedule.trips:
            if trip.trip_number in seen:
                raise ValidationError(f"Duplicate trip number {trip.trip_number}", field="trips")
            seen.add(trip.trip_number)

        stop_ids = {tp.id for tp in schedule.time_points}
        for opportunity in connections:
            if opportunity.location_id not in stop_ids:
                raise ValidationError(
                    f"Connection {opportunity.id} references unknown location {opportunity.location_id}",
                    field="location_id",
                )
            if not 1 <= opportunity.priority <= 10:
                raise ValidationError(
                    f"Connection {opportunity.id} priority {opportunity.priority} outside 1-10", field="priority"
                )
            self.window_service.window_for(opportunity)

        for name in ("max_trip_deviation", "max_schedule_shift", "max_recovery_deviation",
                     "allowed_headway_deviation", "headway_tolerance", "min_recovery_time", "max_recovery_time"):
            value = getattr(constraints, name)
            if value is not None and value < 0:
                raise ValidationError(f"Constraint {name} must not be negative, got {value}", field=name)
        if constraints.min_recovery_time > constraints.max_recovery_time:
            raise ValidationError(
                f"min_recovery_time {constraints.min_recovery_time} exceeds max_recovery_time "
                f"{constraints.max_recovery_time}",
                field="min_recovery_time",
            )
        if constraints.target_headway <= 0:
            raise ValidationError("target_headway must be positive", field="target_headway")

    @staticmethod
    def _request_warnings(
        schedule: Schedule,
        connections: List[ConnectionOpportunity],
        constraints: OptimizationConstraints,
    ) -> List[str]:
        """Inputs that are valid but likely to give a slow or poor run."""
        warnings = []
        if len(schedule.trips) > LARGE_SCHEDULE_TRIPS:
            warnings.append(f"Large schedule detected (>{LARGE_SCHEDULE_TRIPS} trips) - optimization may take longer")
        if len(connections) > LARGE_CONNECTION_COUNT:
            warnings.append(
                f"High number of connection opportunities (>{LARGE_CONNECTION_COUNT}) - "
                f"consider filtering to the most important ones"
            )
        if constraints.max_trip_deviation <= 0:
            warnings.append("Maximum trip deviation is not positive - no trip can be moved")
        elif constraints.max_trip_deviation > LARGE_TRIP_DEVIATION:
            warnings.append(
                f"Large maximum trip deviation (>{LARGE_TRIP_DEVIATION}min) may affect schedule reliability"
            )
        if constraints.performance.max_optimization_time_ms < SHORT_TIME_LIMIT_MS:
            warnings.append("Short optimization time limit may prevent finding optimal solutions")
        for warning in warnings:
            logger.warning(f"Optimization of {schedule.id}: {warning}")
        return warnings

    def _measure_memory(self, schedule: Schedule, connection_count: int) -> float:
        memory_mb = estimate_memory_mb(schedule, connection_count, self.cache)
        self.tracker.record_memory(memory_mb)
        return memory_mb

    async def _emit(
        self,
        callback: Optional[ProgressCallback],
        progress: float,
        phase: str,
        state: Optional[OptimizationState],
        ctx: Optional[_RunContext] = None,
    ) -> None:
        if not callback:
            return
        remaining_ms = 0.0
        if ctx is not None and ctx.processed:
            elapsed = self.tracker.elapsed_ms()
            remaining_ms = elapsed / ctx.processed * max(len(ctx.connections) - ctx.processed, 0)
        score = state.current_score if state else 0.0
        await _safe_emit_progress(callback, OptimizationProgress(
            progress=min(max(progress, 0.0), 100.0),
            phase=phase,
            current_score=score,
            best_score=score,
            connections_made=len(state.applied_moves) if state else 0,
            estimated_time_remaining_ms=remaining_ms,
            memory_usage_mb=self.tracker.last_memory_mb,
            can_cancel=phase == "searching",
        ))


def _neighbour_indexes(sorted_minutes: Sequence[float], target: float) -> List[int]:
    """Indexes of the values around *target*, plus both ends for midnight wraparound."""
    if not sorted_minutes:
        return []
    position = bisect.bisect_left(sorted_minutes, target)
    last = len(sorted_minutes) - 1
    candidates = {0, last, min(position, last), max(position - 1, 0)}
    return sorted(candidates)


# =============================================================================
# Singleton
# =============================================================================

_optimization_engine: Optional[OptimizationEngine] = None


def get_optimization_engine() -> OptimizationEngine:
    global _optimization_engine
    if _optimization_engine is None:
        _optimization_engine = OptimizationEngine()
    return _optimization_engine


def reset_optimization_engine():
    """Reset the singleton (for tests)."""
    global _optimization_engine
    _optimization_engine = None


__all__ = [
    "EngineConfig",
    "OptimizationEngine",
    "get_optimization_engine",
    "reset_optimization_engine",
]
