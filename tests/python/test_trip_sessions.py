from __future__ import annotations

import threading
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from field_travel_expense import (
    AlreadyActiveError,
    InMemoryStore,
    Location,
    LocationSample,
    LocationType,
    SessionNotActiveError,
    SessionNotFoundError,
    SqliteStore,
    TripSessionService,
    TripStatus,
    WriteConflictError,
    recompute_distance,
)
from field_travel_expense.distance import sample_distance_m
from field_travel_expense.location import AcquiredSample, SampleQuality


def test_start_trip_creates_empty_active_session(trip_service, start_location) -> None:
    session = trip_service.start_trip("EMP-001", start_location, position="Sales Executive")

    assert session.status == TripStatus.ACTIVE
    assert session.samples == ()
    assert session.dealer_visits == ()
    assert session.total_distance_km == 0.0
    assert trip_service.active_session_for("EMP-001") == session


def test_second_start_for_same_employee_fails(trip_service, start_location) -> None:
    first = trip_service.start_trip("EMP-001", start_location)

    with pytest.raises(AlreadyActiveError) as excinfo:
        trip_service.start_trip("EMP-001", start_location)

    assert excinfo.value.session_id == first.session_id
    assert excinfo.value.code == "ALREADY_ACTIVE"


def test_other_employees_can_start_concurrently(trip_service, start_location) -> None:
    trip_service.start_trip("EMP-001", start_location)
    other = trip_service.start_trip("EMP-002", start_location)

    assert other.status == TripStatus.ACTIVE


def test_add_sample_accumulates_only_accepted_samples(
    trip_service, start_location, sample_factory
) -> None:
    session = trip_service.start_trip("EMP-001", start_location)
    origin = sample_factory()
    jitter = sample_factory(lat_offset=0.00001)
    moved = sample_factory(lat_offset=0.001)

    assert trip_service.add_sample(session.session_id, origin).accepted is True
    assert trip_service.add_sample(session.session_id, jitter).accepted is False
    assert trip_service.add_sample(session.session_id, moved).accepted is True

    stored = trip_service.get_session(session.session_id)
    assert stored.samples == (origin, moved)
    assert stored.total_distance_km == pytest.approx(sample_distance_m(origin, moved) / 1000.0)


def test_add_sample_accepts_acquired_samples(trip_service, start_location, sample_factory) -> None:
    session = trip_service.start_trip("EMP-001", start_location)
    reading = sample_factory(accuracy=2000.0)
    acquired = AcquiredSample(
        sample=reading, quality=SampleQuality.LOW_CONFIDENCE, high_accuracy_requested=True
    )

    assert trip_service.add_sample(session.session_id, acquired).accepted is True
    assert trip_service.get_session(session.session_id).samples == (reading,)


def test_stored_samples_recompute_to_stored_distance(
    trip_service, start_location, sample_factory, settings
) -> None:
    session = trip_service.start_trip("EMP-001", start_location)
    for offset in [0.0, 0.0004, 0.00041, 0.0011, 0.0019, 0.0019, 0.0031]:
        trip_service.add_sample(
            session.session_id, sample_factory(lat_offset=offset, lon_offset=offset)
        )

    stored = trip_service.get_session(session.session_id)
    assert recompute_distance(stored.samples, settings.min_distance_m) == stored.total_distance_km


def test_seeded_start_sample_counts_from_start_location(
    store, calculator, settings, clock, start_location, sample_factory
) -> None:
    service = TripSessionService(store, calculator, settings, clock=clock, seed_start_sample=True)
    session = service.start_trip("EMP-001", start_location)

    assert len(session.samples) == 1
    assert session.samples[0].latitude == start_location.latitude

    moved = sample_factory(lat_offset=0.001)
    service.add_sample(session.session_id, moved)
    stored = service.get_session(session.session_id)
    assert stored.total_distance_km == pytest.approx(
        sample_distance_m(session.samples[0], moved) / 1000.0
    )


def test_dealer_visit_does_not_change_distance(trip_service, start_location) -> None:
    session = trip_service.start_trip("EMP-001", start_location)

    visit = trip_service.add_dealer_visit(
        session.session_id,
        Location(latitude=12.98, longitude=77.60),
        dealer_name="Sri Balaji Motors",
        visit_duration_minutes=25,
    )

    stored = trip_service.get_session(session.session_id)
    assert stored.dealer_visits == (visit,)
    assert visit.session_id == session.session_id
    assert stored.total_distance_km == 0.0


def test_end_trip_computes_expense_from_rate_entry(trip_service, start_location) -> None:
    session = trip_service.start_trip("EMP-001", start_location)
    # 50 km straight north: 50 / 111.19493 degrees of latitude.
    trip_service.add_sample(
        session.session_id, _sample(start_location.latitude, start_location.longitude)
    )
    trip_service.add_sample(
        session.session_id,
        _sample(start_location.latitude + 50 / 111.19492664455873, start_location.longitude),
    )

    completed = trip_service.end_trip(
        session.session_id, Location(latitude=13.42, longitude=77.59), "Sales Executive"
    )

    assert completed.status == TripStatus.COMPLETED
    assert completed.total_distance_km == pytest.approx(50.0, abs=1e-6)
    assert completed.total_expense == Decimal("1100.00")
    assert completed.expense_breakdown is not None
    assert completed.expense_breakdown.travel_expense == Decimal("600.00")
    assert completed.end_time is not None
    assert trip_service.active_session_for("EMP-001") is None


def test_end_trip_with_policy_allowance(trip_service, start_location) -> None:
    session = trip_service.start_trip("EMP-001", start_location)

    completed = trip_service.end_trip(
        session.session_id,
        start_location,
        "Manager",
        grade="Manager",
        location_type=LocationType.METRO,
        days=2,
    )

    # L3 metro allowance 1600 per day, no distance travelled.
    assert completed.total_expense == Decimal("3200.00")


def test_end_trip_unknown_position_uses_default_rate(trip_service, start_location) -> None:
    session = trip_service.start_trip("EMP-001", start_location)

    completed = trip_service.end_trip(session.session_id, start_location, "Field Intern")

    assert completed.expense_breakdown.used_default_rate is True
    assert completed.total_expense == Decimal("500.00")


def test_completed_session_is_read_only(trip_service, start_location, sample_factory) -> None:
    session = trip_service.start_trip("EMP-001", start_location)
    trip_service.end_trip(session.session_id, start_location, "Sales Executive")

    with pytest.raises(SessionNotActiveError):
        trip_service.add_sample(session.session_id, sample_factory())
    with pytest.raises(SessionNotActiveError):
        trip_service.add_dealer_visit(session.session_id, start_location)
    with pytest.raises(SessionNotActiveError):
        trip_service.end_trip(session.session_id, start_location, "Sales Executive")


def test_employee_can_start_again_after_completion(trip_service, start_location) -> None:
    first = trip_service.start_trip("EMP-001", start_location)
    trip_service.end_trip(first.session_id, start_location, "Sales Executive")

    second = trip_service.start_trip("EMP-001", start_location)

    assert second.session_id != first.session_id


def test_unknown_session_raises_not_found(trip_service, sample_factory) -> None:
    with pytest.raises(SessionNotFoundError):
        trip_service.add_sample("missing", sample_factory())


def test_completed_trips_for_range(trip_service, start_location) -> None:
    first = trip_service.start_trip("EMP-001", start_location)
    trip_service.end_trip(first.session_id, start_location, "Sales Executive")
    second = trip_service.start_trip("EMP-001", start_location)
    completed = trip_service.end_trip(second.session_id, start_location, "Sales Executive")
    trip_service.start_trip("EMP-001", start_location)

    everything = trip_service.completed_trips_for("EMP-001")
    recent = trip_service.completed_trips_for("EMP-001", start=completed.end_time)

    assert [trip.session_id for trip in everything] == [first.session_id, second.session_id]
    assert [trip.session_id for trip in recent] == [second.session_id]


def test_concurrent_starts_yield_single_active_session(
    calculator, settings, start_location
) -> None:
    store = InMemoryStore()
    service = TripSessionService(store, calculator, settings)
    barrier = threading.Barrier(8)
    results: list[str] = []
    failures: list[Exception] = []

    def _start() -> None:
        barrier.wait()
        try:
            results.append(service.start_trip("EMP-001", start_location).session_id)
        except AlreadyActiveError as exc:
            failures.append(exc)

    threads = [threading.Thread(target=_start) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 1
    assert len(failures) == 7
    assert store.active_session_for("EMP-001").session_id == results[0]


def test_concurrent_samples_are_serialized(calculator, settings, start_location) -> None:
    store = InMemoryStore()
    service = TripSessionService(store, calculator, settings)
    session = service.start_trip("EMP-001", start_location)
    samples = [
        _sample(start_location.latitude + 0.001 * index, start_location.longitude)
        for index in range(1, 41)
    ]

    threads = [
        threading.Thread(target=service.add_sample, args=(session.session_id, sample))
        for sample in samples
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    stored = service.get_session(session.session_id)
    # Every reading is >= 111 m from every other, so all are accepted in some order.
    assert len(stored.samples) == 40
    assert stored.total_distance_km == pytest.approx(
        recompute_distance(stored.samples, settings.min_distance_m)
    )


def _sample(latitude: float, longitude: float) -> LocationSample:
    return LocationSample(
        latitude=latitude,
        longitude=longitude,
        timestamp=datetime(2024, 5, 10, 9, 0, tzinfo=UTC),
        accuracy=5.0,
    )


def _interleave_once(monkeypatch, store, action) -> None:
    """Run ``action`` right after the store's next session read returns."""

    original = store.get_session
    pending = [action]

    def _get_session(session_id: str):
        snapshot = original(session_id)
        if pending:
            pending.pop()()
        return snapshot

    monkeypatch.setattr(store, "get_session", _get_session)


@pytest.fixture()
def shared_database(tmp_path, calculator, settings):
    path = tmp_path / "trips.db"
    stores = [SqliteStore.open(path), SqliteStore.open(path)]
    services = [TripSessionService(store, calculator, settings) for store in stores]
    yield stores, services
    for store in stores:
        store.close()


def test_services_sharing_a_database_keep_every_sample(
    monkeypatch, shared_database, start_location
) -> None:
    (first_store, _), (first, second) = shared_database
    session = first.start_trip("EMP-001", start_location)
    north = _sample(start_location.latitude + 0.002, start_location.longitude)
    further = _sample(start_location.latitude + 0.004, start_location.longitude)
    _interleave_once(
        monkeypatch, first_store, lambda: second.add_sample(session.session_id, north)
    )

    decision = first.add_sample(session.session_id, further)

    stored = second.get_session(session.session_id)
    assert decision.accepted is True
    assert stored.samples == (north, further)
    assert stored.version == 2
    assert stored.total_distance_km == pytest.approx(sample_distance_m(north, further) / 1000.0)


def test_end_trip_prices_sample_written_by_another_service(
    monkeypatch, shared_database, start_location
) -> None:
    (first_store, _), (first, second) = shared_database
    session = first.start_trip("EMP-001", start_location)
    origin = _sample(start_location.latitude, start_location.longitude)
    north = _sample(start_location.latitude + 0.002, start_location.longitude)
    first.add_sample(session.session_id, origin)
    _interleave_once(
        monkeypatch, first_store, lambda: second.add_sample(session.session_id, north)
    )

    completed = first.end_trip(session.session_id, start_location, "Sales Executive")

    assert completed.samples == (origin, north)
    assert completed.total_distance_km == pytest.approx(sample_distance_m(origin, north) / 1000.0)
    assert second.get_session(session.session_id) == completed


def test_sample_racing_completion_is_refused(monkeypatch, shared_database, start_location) -> None:
    (first_store, _), (first, second) = shared_database
    session = first.start_trip("EMP-001", start_location)
    _interleave_once(
        monkeypatch,
        first_store,
        lambda: second.end_trip(session.session_id, start_location, "Sales Executive"),
    )

    with pytest.raises(SessionNotActiveError):
        first.add_sample(session.session_id, _sample(start_location.latitude + 0.002, 77.5946))

    assert first.get_session(session.session_id).samples == ()


class _AlwaysConflictingStore(InMemoryStore):
    def update_session(self, session, expected_version) -> None:
        raise WriteConflictError("trip_session", session.session_id)


def test_persistent_write_conflict_is_raised(calculator, settings, start_location) -> None:
    service = TripSessionService(_AlwaysConflictingStore(), calculator, settings)
    session = service.start_trip("EMP-001", start_location)

    with pytest.raises(WriteConflictError):
        service.add_sample(session.session_id, _sample(start_location.latitude + 0.002, 77.5946))


def test_session_locks_are_released(trip_service, start_location, sample_factory) -> None:
    for _ in range(50):
        session = trip_service.start_trip("EMP-001", start_location)
        trip_service.add_sample(session.session_id, sample_factory(lat_offset=0.002))
        trip_service.end_trip(session.session_id, start_location, "Sales Executive")
    with pytest.raises(SessionNotFoundError):
        trip_service.add_sample("missing", sample_factory())

    assert trip_service._locks == {}
