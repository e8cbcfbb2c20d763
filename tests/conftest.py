"""
Shared pytest fixtures for Transit Predictor tests

Provides fixtures for:
- Database setup/teardown with in-memory SQLite
- FastAPI test client
- Small schedule graphs laid out along the equator
- A manual clock for deterministic prediction times
- Environment variable mocking

Stops A, B, C and D sit 0.01 degrees of longitude (about 1112 m) apart on
the equator. Outbound trips run A -> D and inbound trips D -> A, five
minutes between stops.
"""

from datetime import datetime, timezone
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from api.main import app, get_core, set_core
from transit_predictor.config import Settings
from transit_predictor.core import TransitCore
from transit_predictor.database import get_db
from transit_predictor.geo import Location
from transit_predictor.models import Base, Calendar
from transit_predictor.schedule import (
    Block,
    ScheduleGraph,
    ScheduleTime,
    Segment,
    StopPath,
    StopPathTravelTime,
    Trip,
    TripPattern,
)
from transit_predictor.sinks import MemorySink
from transit_predictor.vehicle_status import AvlReport

# A Monday
SERVICE_DATE = datetime(2026, 10, 19, tzinfo=timezone.utc)
DAY_START_MS = int(SERVICE_DATE.timestamp() * 1000)

STOP_LONGITUDES = {"A": 0.0, "B": 0.01, "C": 0.02, "D": 0.03}
SECS_BETWEEN_STOPS = 300


class ManualClock:
    """Callable returning a settable epoch msec, used as TransitCore.now"""

    def __init__(self, time_ms: int):
        self.time = time_ms

    def __call__(self) -> int:
        return self.time


@pytest.fixture(scope="session")
def test_engine():
    """
    Create an in-memory SQLite engine for testing

    Session-scoped so it's created once for all tests
    """
    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine) -> Generator[Session, None, None]:
    """
    Create a new database session for a test with transaction rollback

    Function-scoped so each test gets a clean database state
    """
    connection = test_engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(bind=connection)
    session = SessionLocal()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture
def at():
    """Convert seconds into the test service day to epoch msec"""
    def _at(secs: float) -> int:
        return DAY_START_MS + int(secs * 1000)

    return _at


@pytest.fixture
def manual_clock(at) -> ManualClock:
    return ManualClock(at(8 * 3600))


@pytest.fixture
def make_pattern():
    """Build an outbound (A->D) or inbound (D->A) pattern; the first stop is a wait stop"""
    def _make(direction: str = "outbound", break_time_sec=None, pattern_id=None) -> TripPattern:
        stops = ["A", "B", "C", "D"] if direction == "outbound" else ["D", "C", "B", "A"]
        step = 0.01 if direction == "outbound" else -0.01
        paths = []
        for seq, stop_id in enumerate(stops):
            end = STOP_LONGITUDES[stop_id]
            # First stop gets a short lead-in segment
            start = end - step / 10 if seq == 0 else end - step
            paths.append(
                StopPath(
                    stop_path_id=f"{stop_id}_{direction}",
                    stop_id=stop_id,
                    gtfs_stop_seq=seq + 1,
                    segments=[Segment(Location(0.0, start), Location(0.0, end))],
                    wait_stop=seq == 0,
                    break_time_sec=break_time_sec if seq == 0 else None,
                )
            )
        return TripPattern(
            pattern_id=pattern_id or f"P_{direction}",
            route_id="R1",
            direction_id="0" if direction == "outbound" else "1",
            stop_paths=paths,
        )

    return _make


@pytest.fixture
def make_trip():
    """Scheduled trip departing its first stop at start_secs, five minutes per stop"""
    def _make(trip_id: str, pattern: TripPattern, start_secs: int, block_id: str = "B1",
              first_dwell_secs: int = 0, service_id: str = "WKDY") -> Trip:
        times = [ScheduleTime(start_secs - first_dwell_secs, start_secs)]
        for i in range(1, len(pattern.stop_paths)):
            t = start_secs + i * SECS_BETWEEN_STOPS
            times.append(ScheduleTime(t, t))
        return Trip(
            trip_id=trip_id,
            route_id=pattern.route_id,
            direction_id=pattern.direction_id,
            service_id=service_id,
            block_id=block_id,
            pattern=pattern,
            start_time=start_secs,
            schedule_times=times,
        )

    return _make


@pytest.fixture
def make_frequency_trip():
    """No-schedule trip running between start_secs and end_secs"""
    def _make(trip_id: str, pattern: TripPattern, start_secs: int, end_secs: int,
              block_id: str = "F1", service_id: str = "WKDY") -> Trip:
        travel_times = [StopPathTravelTime(0, 0)] + [
            StopPathTravelTime(SECS_BETWEEN_STOPS * 1000, 0)
            for _ in range(len(pattern.stop_paths) - 1)
        ]
        return Trip(
            trip_id=trip_id,
            route_id=pattern.route_id,
            direction_id=pattern.direction_id,
            service_id=service_id,
            block_id=block_id,
            pattern=pattern,
            start_time=start_secs,
            end_time=end_secs,
            travel_times=travel_times,
            no_schedule=True,
        )

    return _make


@pytest.fixture
def weekday_calendar() -> Calendar:
    return Calendar(
        service_id="WKDY",
        monday=1,
        tuesday=1,
        wednesday=1,
        thursday=1,
        friday=1,
        saturday=0,
        sunday=0,
        start_date="20260101",
        end_date="20261231",
    )


@pytest.fixture
def make_graph(weekday_calendar):
    def _make(*blocks: Block, calendars=None, calendar_dates=()) -> ScheduleGraph:
        return ScheduleGraph(
            blocks,
            calendars=calendars if calendars is not None else [weekday_calendar],
            calendar_dates=calendar_dates,
            timezone="UTC",
        )

    return _make


@pytest.fixture
def two_trip_block(make_pattern, make_trip) -> Block:
    """
    Block B1: outbound T1 at 08:00 then outbound T2 at 09:00

    T2 is scheduled to arrive at A at 08:58:20 and depart at 09:00.
    """
    pattern = make_pattern("outbound")
    return Block(
        "B1",
        "WKDY",
        [
            make_trip("T1", pattern, 8 * 3600),
            make_trip("T2", pattern, 9 * 3600, first_dwell_secs=100),
        ],
    )


@pytest.fixture
def graph(make_graph, two_trip_block) -> ScheduleGraph:
    return make_graph(two_trip_block)


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def core(graph, settings, sink, manual_clock) -> Generator[TransitCore, None, None]:
    transit_core = TransitCore(graph, settings, sink=sink, now=manual_clock)
    yield transit_core
    transit_core.shutdown()


@pytest.fixture
def report_at(at):
    """AVL report on the equator at the given longitude and service-day second"""
    def _make(vehicle_id: str, lon: float, secs: float, assignment_id=None, lat: float = 0.0,
              **kwargs) -> AvlReport:
        return AvlReport(
            vehicle_id=vehicle_id,
            lat=lat,
            lon=lon,
            time=at(secs),
            assignment_id=assignment_id,
            **kwargs,
        )

    return _make


@pytest.fixture(scope="function")
def client(db_session, core):
    """
    FastAPI TestClient with core and database dependency overrides

    All API requests will use the test core and test database session
    """
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_core] = lambda: core
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    set_core(None)


@pytest.fixture(autouse=True)
def mock_env_vars(monkeypatch):
    """
    Mock environment variables for tests

    autouse=True means this runs for every test automatically
    """
    # Use in-memory SQLite for tests (overridden by db_session fixture)
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
