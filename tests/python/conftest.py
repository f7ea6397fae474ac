"""Test configuration for adding src to the import path."""

from __future__ import annotations

import sys
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from field_travel_expense import (
    ApprovalChain,
    ClaimApprovalEngine,
    Employee,
    ExpenseCalculator,
    InMemoryDirectory,
    InMemoryStore,
    Location,
    LocationSample,
    PolicyTable,
    RateTable,
    TrackingSettings,
    TripSessionService,
)

# Roughly 111 m per 0.001 degree of latitude.
BASE_LAT = 12.9716
BASE_LON = 77.5946


class FakeClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(seconds=1)):
        self.now = start or datetime(2024, 5, 10, 9, 0, tzinfo=UTC)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


def sequential_ids(prefix: str) -> Callable[[], str]:
    counter = iter(range(1, 1_000_000))
    return lambda: f"{prefix}-{next(counter):04d}"


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sample_factory() -> Callable[..., LocationSample]:
    def _factory(
        lat_offset: float = 0.0,
        lon_offset: float = 0.0,
        **overrides: object,
    ) -> LocationSample:
        data: dict[str, object] = {
            "latitude": BASE_LAT + lat_offset,
            "longitude": BASE_LON + lon_offset,
            "timestamp": datetime(2024, 5, 10, 9, 0, tzinfo=UTC),
            "accuracy": 10.0,
        }
        data.update(overrides)
        return LocationSample(**data)

    return _factory


@pytest.fixture()
def start_location() -> Location:
    return Location(latitude=BASE_LAT, longitude=BASE_LON, address="MG Road, Bengaluru")


@pytest.fixture()
def rate_table() -> RateTable:
    return RateTable.from_file()


@pytest.fixture()
def policy_table() -> PolicyTable:
    return PolicyTable.from_file()


@pytest.fixture()
def settings() -> TrackingSettings:
    return TrackingSettings()


@pytest.fixture()
def calculator(
    rate_table: RateTable, policy_table: PolicyTable, settings: TrackingSettings
) -> ExpenseCalculator:
    return ExpenseCalculator(rates=rate_table, policies=policy_table, settings=settings)


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def trip_service(
    store: InMemoryStore,
    calculator: ExpenseCalculator,
    settings: TrackingSettings,
    clock: FakeClock,
) -> TripSessionService:
    return TripSessionService(
        store,
        calculator,
        settings,
        clock=clock,
        id_factory=sequential_ids("TRIP"),
    )


@pytest.fixture()
def directory() -> InMemoryDirectory:
    return InMemoryDirectory(
        [
            Employee(
                employee_id="EMP-001",
                name="Priya Nair",
                grade="B Class",
                position="Sales Executive",
                approval_chain=ApprovalChain.from_mapping({"L1": "MGR-A", "L2": "MGR-B"}),
            ),
            Employee(
                employee_id="EMP-002",
                name="Arjun Rao",
                grade="Manager",
                position="Manager",
                approval_chain=ApprovalChain.from_mapping(
                    {"L1": "MGR-A", "L2": "MGR-B", "L3": "DIR-C"}
                ),
            ),
            Employee(employee_id="MGR-A", name="Meera Iyer", grade="L4"),
            Employee(employee_id="MGR-B", name="Rahul Das", grade="L2"),
            Employee(employee_id="DIR-C", name="Sunita Shah", grade="Director"),
        ]
    )


@pytest.fixture()
def engine(
    store: InMemoryStore, directory: InMemoryDirectory, clock: FakeClock
) -> ClaimApprovalEngine:
    return ClaimApprovalEngine(
        store, directory, clock=clock, id_factory=sequential_ids("CLM")
    )


@pytest.fixture()
def reset_log_config() -> Iterator[None]:
    from field_travel_expense.logging_config import LogContext, reset_logging

    reset_logging()
    LogContext.clear()
    yield
    reset_logging()
    LogContext.clear()
