"""Trip session lifecycle: start, record samples and visits, end.

Sample and visit updates are read-modify-write cycles on the session. Within
one service they run under a lock per session id, and every write is a
conditional update on the session version, so services sharing a database
never overwrite each other's samples: the loser reloads and replays its change.
Starting a trip relies on the store's conditional insert instead of a lookup
followed by a write.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import TypeVar

from .distance import SampleDecision, evaluate_candidate
from .exceptions import SessionNotActiveError, SessionNotFoundError, WriteConflictError
from .expense import ExpenseCalculator
from .location import AcquiredSample
from .logging_config import LogContext, get_logger
from .models import DealerVisit, Location, LocationSample, TripSession, TripStatus
from .rates import LocationType
from .settings import TrackingSettings
from .store import TripStore, completed_in_range

logger = get_logger("trips")

WRITE_ATTEMPTS = 5

T = TypeVar("T")


def _new_id() -> str:
    return uuid.uuid4().hex


class TripSessionService:
    """Drive trip sessions through ``active`` to ``completed``."""

    def __init__(
        self,
        store: TripStore,
        calculator: ExpenseCalculator | None = None,
        settings: TrackingSettings | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
        seed_start_sample: bool = False,
    ) -> None:
        self.store = store
        self.settings = settings or TrackingSettings()
        self.calculator = calculator or ExpenseCalculator(settings=self.settings)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._new_id = id_factory or _new_id
        self.seed_start_sample = seed_start_sample
        self._locks_guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @contextmanager
    def _session_lock(self, session_id: str) -> Iterator[None]:
        # Locks of completed or unknown sessions are dropped.
        with self._locks_guard:
            lock = self._locks.setdefault(session_id, threading.Lock())
        with lock:
            try:
                yield
            except (SessionNotFoundError, SessionNotActiveError):
                self._forget_lock(session_id)
                raise

    def _forget_lock(self, session_id: str) -> None:
        with self._locks_guard:
            self._locks.pop(session_id, None)

    def _load_active(self, session_id: str) -> TripSession:
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.status != TripStatus.ACTIVE:
            raise SessionNotActiveError(session_id)
        return session

    def _commit(
        self,
        session_id: str,
        change: Callable[[TripSession], tuple[TripSession | None, T]],
    ) -> tuple[TripSession, T]:
        """Apply ``change`` to the stored session with a version-checked write.

        ``change`` returns the replacement session, or None to leave the
        session untouched, plus a result for the caller. When another writer
        got there first the session is reloaded and ``change`` runs again.
        """

        for attempt in range(1, WRITE_ATTEMPTS + 1):
            session = self._load_active(session_id)
            replacement, result = change(session)
            if replacement is None:
                return session, result
            replacement = replacement.model_copy(update={"version": session.version + 1})
            try:
                self.store.update_session(replacement, session.version)
            except WriteConflictError:
                logger.info(
                    "Trip session changed concurrently; reloading",
                    extra={"session_id": session_id, "attempt": attempt},
                )
                continue
            return replacement, result
        raise WriteConflictError("trip_session", session_id)

    def start_trip(
        self,
        employee_id: str,
        start_location: Location,
        *,
        position: str | None = None,
    ) -> TripSession:
        """Create the employee's active session; fails if one already exists."""

        now = self._clock()
        samples: tuple[LocationSample, ...] = ()
        if self.seed_start_sample:
            samples = (LocationSample.at(start_location, now),)
        session = TripSession(
            session_id=self._new_id(),
            employee_id=employee_id,
            status=TripStatus.ACTIVE,
            start_time=now,
            start_location=start_location,
            samples=samples,
            position=position,
        )
        with LogContext.bind(employee_id=employee_id, session_id=session.session_id):
            self.store.insert_active_session(session)
            logger.info(
                "Trip started",
                extra={"latitude": start_location.latitude, "longitude": start_location.longitude},
            )
        return session

    def add_sample(self, session_id: str, sample: LocationSample | AcquiredSample) -> SampleDecision:
        """Feed a reading through the noise filter and record it if accepted."""

        if isinstance(sample, AcquiredSample):
            if sample.low_confidence:
                logger.warning(
                    "Recording low confidence sample",
                    extra={"session_id": session_id, "quality": sample.quality.value},
                )
            sample = sample.sample
        reading = sample

        def record(session: TripSession) -> tuple[TripSession | None, SampleDecision]:
            decision = evaluate_candidate(
                session.last_sample, reading, self.settings.min_distance_m
            )
            if not decision.accepted:
                return None, decision
            return (
                session.model_copy(
                    update={
                        "samples": (*session.samples, reading),
                        "total_distance_km": session.total_distance_km + decision.increment_km,
                    }
                ),
                decision,
            )

        with self._session_lock(session_id):
            _, decision = self._commit(session_id, record)
        if not decision.accepted:
            logger.debug(
                "Sample below minimum distance dropped",
                extra={"session_id": session_id},
            )
        return decision

    def add_dealer_visit(
        self,
        session_id: str,
        location: Location,
        *,
        dealer_name: str | None = None,
        notes: str | None = None,
        visit_duration_minutes: int | None = None,
    ) -> DealerVisit:
        """Append a visit to the active session; distance is unaffected."""

        with self._session_lock(session_id):
            self._load_active(session_id)
            visit = DealerVisit(
                visit_id=self._new_id(),
                session_id=session_id,
                location=location,
                timestamp=self._clock(),
                dealer_name=dealer_name,
                notes=notes,
                visit_duration_minutes=visit_duration_minutes,
            )
            session, _ = self._commit(
                session_id,
                lambda current: (
                    current.model_copy(update={"dealer_visits": (*current.dealer_visits, visit)}),
                    None,
                ),
            )
        with LogContext.bind(employee_id=session.employee_id, session_id=session_id):
            logger.info("Dealer visit recorded", extra={"dealer_name": dealer_name})
        return visit

    def end_trip(
        self,
        session_id: str,
        end_location: Location,
        position: str | None = None,
        *,
        include_daily_allowance: bool = True,
        grade: str | None = None,
        location_type: LocationType | None = None,
        days: int = 1,
    ) -> TripSession:
        """Freeze the distance, compute the expense and complete the session."""

        def complete(session: TripSession) -> tuple[TripSession, None]:
            breakdown = self.calculator.calculate(
                session.total_distance_km,
                position or session.position,
                include_daily_allowance=include_daily_allowance,
                grade=grade,
                location_type=location_type,
                days=days,
            )
            completed = session.model_copy(
                update={
                    "status": TripStatus.COMPLETED,
                    "end_time": self._clock(),
                    "end_location": end_location,
                    "position": breakdown.position or None,
                    "total_expense": breakdown.total_amount,
                    "expense_breakdown": breakdown,
                }
            )
            # model_copy skips validation; re-validate the completed record.
            return TripSession.model_validate(completed.model_dump()), None

        with self._session_lock(session_id):
            completed, _ = self._commit(session_id, complete)
            self._forget_lock(session_id)

        with LogContext.bind(employee_id=completed.employee_id, session_id=session_id):
            logger.info(
                "Trip ended",
                extra={
                    "distance_km": completed.total_distance_km,
                    "total_expense": completed.total_expense,
                },
            )
        return completed

    def get_session(self, session_id: str) -> TripSession:
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def active_session_for(self, employee_id: str) -> TripSession | None:
        return self.store.active_session_for(employee_id)

    def completed_trips_for(
        self,
        employee_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[TripSession]:
        """Completed trips ending within ``[start, end]``, oldest first."""

        return completed_in_range(
            self.store.sessions_for(employee_id, TripStatus.COMPLETED), start, end
        )


__all__ = ["TripSessionService"]
