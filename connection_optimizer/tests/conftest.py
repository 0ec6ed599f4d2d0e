"""
Pytest configuration and shared fixtures for connection optimizer tests.
"""
import os
import sys
from typing import Callable, List, Optional

import pytest

# Add repository root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from connection_optimizer.models import (
    ConnectionMetadata,
    ConnectionOpportunity,
    ConnectionType,
    OptimizationConstraints,
    Schedule,
    TimePoint,
    Trip,
)
from connection_optimizer.services.connection_window_service import ConnectionWindowService
from connection_optimizer.services.headway_correction_service import HeadwayCorrectionService
from connection_optimizer.services.optimization_engine import EngineConfig, OptimizationEngine
from connection_optimizer.services.recovery_bank_service import RecoveryBankService
from connection_optimizer.time_utils import minutes_to_time


# ============================================================
# HELPERS
# ============================================================

def make_trip(
    trip_number: int,
    departure_minutes: int,
    block_number: int = 1,
    stop_offsets: Optional[dict] = None,
) -> Trip:
    """Build a trip departing T1 at *departure_minutes*; offsets are minutes after departure."""
    offsets = stop_offsets if stop_offsets is not None else {"T1": 0, "T2": 15, "T3": 30}
    arrivals = {}
    departures = {}
    for stop_id, offset in offsets.items():
        value = minutes_to_time(departure_minutes + offset)
        if offset > 0:
            arrivals[stop_id] = value
        departures[stop_id] = value
    return Trip(
        trip_number=trip_number,
        block_number=block_number,
        departure_time=minutes_to_time(departure_minutes),
        arrival_times=arrivals,
        departure_times=departures,
    )


def make_opportunity(
    opportunity_id: str,
    target_time: str,
    location_id: str = "T3",
    connection_type: ConnectionType = ConnectionType.GO_TRAIN,
    timing: Optional[str] = "before",
    priority: int = 8,
    walking_time: float = 0.0,
    source: Optional[str] = None,
) -> ConnectionOpportunity:
    return ConnectionOpportunity(
        id=opportunity_id,
        type=connection_type,
        location_id=location_id,
        target_time=target_time,
        priority=priority,
        metadata=ConnectionMetadata(
            service_name="GO Transit",
            description=f"Connection {opportunity_id}",
            timing=timing,
            walking_time=walking_time,
            source=source,
        ),
    )


# ============================================================
# FIXTURES FOR SCHEDULES
# ============================================================

@pytest.fixture
def time_points() -> List[TimePoint]:
    """Three time points: terminal, college stop, rail station."""
    return [
        TimePoint(id="T1", name="Downtown Terminal", sequence=0),
        TimePoint(id="T2", name="Georgian College", sequence=1),
        TimePoint(id="T3", name="Allandale GO Station", sequence=2),
    ]


@pytest.fixture
def small_schedule(time_points) -> Schedule:
    """Six trips every 30 minutes from 07:00, one block."""
    return Schedule(
        id="route-8-weekday",
        route_name="Route 8",
        day_type="weekday",
        time_points=time_points,
        trips=[make_trip(i + 1, 420 + 30 * i) for i in range(6)],
    )


@pytest.fixture
def schedule_factory(time_points) -> Callable[..., Schedule]:
    """
    Build schedules of any size.

    Every *rail_every*-th trip runs through to T3; the others short-turn at T2.
    """
    def build(
        trip_count: int,
        spacing: int = 2,
        start: int = 120,
        blocks: int = 20,
        rail_every: int = 10,
    ) -> Schedule:
        trips = []
        for i in range(trip_count):
            offsets = {"T1": 0, "T2": 15, "T3": 30} if i % rail_every == 0 else {"T1": 0, "T2": 15}
            trips.append(make_trip(i + 1, start + spacing * i, block_number=i % blocks + 1, stop_offsets=offsets))
        return Schedule(
            id=f"generated-{trip_count}",
            route_name="Generated",
            time_points=time_points,
            trips=trips,
        )

    return build


@pytest.fixture
def go_train_opportunity() -> ConnectionOpportunity:
    """GO train at T3 leaving 07:50; bus must arrive before it."""
    return make_opportunity("rail_T3_0750", "07:50")


@pytest.fixture
def constraints() -> OptimizationConstraints:
    return OptimizationConstraints()


# ============================================================
# FIXTURES FOR SERVICES
# ============================================================

@pytest.fixture
def window_service() -> ConnectionWindowService:
    return ConnectionWindowService()


@pytest.fixture
def recovery_bank() -> RecoveryBankService:
    return RecoveryBankService()


@pytest.fixture
def headway_service() -> HeadwayCorrectionService:
    return HeadwayCorrectionService()


@pytest.fixture
def engine() -> OptimizationEngine:
    """Engine without the inter-batch pause."""
    return OptimizationEngine(engine_config=EngineConfig(batch_pause_sec=0.0))


# ============================================================
# TEST CONFIGURATION
# ============================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
