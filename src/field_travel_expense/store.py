"""Persistence for trip sessions and claims.

Two guarantees every store must give:

* at most one ``active`` session per employee, enforced by the insert itself
  rather than by a separate lookup;
* conditional writes: a session is only updated while still active, and both
  sessions and claims only when the stored ``version`` matches the version the
  caller read.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Protocol

from .exceptions import (
    AlreadyActiveError,
    ClaimNotFoundError,
    SessionNotActiveError,
    SessionNotFoundError,
    StoreUnavailableError,
    WriteConflictError,
)
from .logging_config import get_logger
from .models import Claim, ClaimStatus, TripSession, TripStatus

logger = get_logger("store")


class TripStore(Protocol):
    def insert_active_session(self, session: TripSession) -> None: ...

    def get_session(self, session_id: str) -> TripSession | None: ...

    def active_session_for(self, employee_id: str) -> TripSession | None: ...

    def update_session(self, session: TripSession, expected_version: int) -> None: ...

    def sessions_for(
        self, employee_id: str, status: TripStatus | None = None
    ) -> list[TripSession]: ...


class ClaimStore(Protocol):
    def insert_claim(self, claim: Claim) -> None: ...

    def get_claim(self, claim_id: str) -> Claim | None: ...

    def compare_and_swap_claim(self, claim: Claim, expected_version: int) -> None: ...

    def list_claims(
        self, employee_id: str | None = None, status: ClaimStatus | None = None
    ) -> list[Claim]: ...


def completed_in_range(
    sessions: list[TripSession],
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[TripSession]:
    """Completed sessions whose end time falls within ``[start, end]``."""

    selected = []
    for session in sessions:
        if session.status != TripStatus.COMPLETED or session.end_time is None:
            continue
        if start is not None and session.end_time < start:
            continue
        if end is not None and session.end_time > end:
            continue
        selected.append(session)
    return sorted(selected, key=lambda item: item.start_time)


def _check_next_version(record: str, version: int, expected_version: int) -> None:
    if version != expected_version + 1:
        raise ValueError(
            f"{record} must carry version {expected_version + 1}, got {version}"
        )


class InMemoryStore:
    """Thread-safe dictionary store; one lock covers every check-and-write."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, TripSession] = {}
        self._active_by_employee: dict[str, str] = {}
        self._claims: dict[str, Claim] = {}

    # Trip sessions

    def insert_active_session(self, session: TripSession) -> None:
        if session.status != TripStatus.ACTIVE:
            raise ValueError("Only active sessions can be inserted")
        with self._lock:
            existing = self._active_by_employee.get(session.employee_id)
            if existing is not None:
                raise AlreadyActiveError(session.employee_id, existing)
            if session.session_id in self._sessions:
                raise WriteConflictError("trip_session", session.session_id)
            self._sessions[session.session_id] = session
            self._active_by_employee[session.employee_id] = session.session_id

    def get_session(self, session_id: str) -> TripSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def active_session_for(self, employee_id: str) -> TripSession | None:
        with self._lock:
            session_id = self._active_by_employee.get(employee_id)
            return self._sessions.get(session_id) if session_id else None

    def update_session(self, session: TripSession, expected_version: int) -> None:
        _check_next_version(f"Session {session.session_id}", session.version, expected_version)
        with self._lock:
            stored = self._sessions.get(session.session_id)
            if stored is None:
                raise SessionNotFoundError(session.session_id)
            if stored.status != TripStatus.ACTIVE:
                raise SessionNotActiveError(session.session_id)
            if stored.version != expected_version:
                raise WriteConflictError("trip_session", session.session_id)
            self._sessions[session.session_id] = session
            if session.status != TripStatus.ACTIVE:
                self._active_by_employee.pop(session.employee_id, None)

    def sessions_for(
        self, employee_id: str, status: TripStatus | None = None
    ) -> list[TripSession]:
        with self._lock:
            return [
                session
                for session in self._sessions.values()
                if session.employee_id == employee_id
                and (status is None or session.status == status)
            ]

    # Claims

    def insert_claim(self, claim: Claim) -> None:
        with self._lock:
            if claim.claim_id in self._claims:
                raise WriteConflictError("claim", claim.claim_id)
            self._claims[claim.claim_id] = claim

    def get_claim(self, claim_id: str) -> Claim | None:
        with self._lock:
            return self._claims.get(claim_id)

    def compare_and_swap_claim(self, claim: Claim, expected_version: int) -> None:
        _check_next_version(f"Claim {claim.claim_id}", claim.version, expected_version)
        with self._lock:
            stored = self._claims.get(claim.claim_id)
            if stored is None:
                raise ClaimNotFoundError(claim.claim_id)
            if stored.version != expected_version:
                raise WriteConflictError("claim", claim.claim_id)
            self._claims[claim.claim_id] = claim

    def list_claims(
        self, employee_id: str | None = None, status: ClaimStatus | None = None
    ) -> list[Claim]:
        with self._lock:
            claims = list(self._claims.values())
        return [
            claim
            for claim in claims
            if (employee_id is None or claim.employee_id == employee_id)
            and (status is None or claim.status == status)
        ]


SCHEMA = """
CREATE TABLE IF NOT EXISTS trip_session (
    session_id TEXT PRIMARY KEY,
    employee_id TEXT NOT NULL,
    status TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT,
    version INTEGER NOT NULL,
    payload TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS trip_session_one_active
    ON trip_session(employee_id) WHERE status = 'active';
CREATE TABLE IF NOT EXISTS claim (
    claim_id TEXT PRIMARY KEY,
    employee_id TEXT NOT NULL,
    status TEXT NOT NULL,
    version INTEGER NOT NULL,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS claim_by_status ON claim(status);
"""


def connect_sqlite(path: str | Path = ":memory:") -> sqlite3.Connection:
    try:
        conn = sqlite3.connect(path, check_same_thread=False)
    except sqlite3.Error as exc:
        raise StoreUnavailableError(f"Cannot open store at {path}: {exc}") from exc
    conn.row_factory = sqlite3.Row
    return conn


class SqliteStore:
    """SQLite-backed store; records are kept as JSON documents beside indexed keys.

    The partial unique index on ``trip_session(employee_id)`` makes the
    single-active-session rule part of the insert, and session and claim updates are
    ``WHERE version = ?`` conditional updates.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._lock = threading.RLock()
        with self._guard():
            self.conn.executescript(SCHEMA)

    @classmethod
    def open(cls, path: str | Path = ":memory:") -> SqliteStore:
        return cls(connect_sqlite(path))

    def close(self) -> None:
        self.conn.close()

    @contextmanager
    def _guard(self) -> Iterator[None]:
        with self._lock:
            try:
                yield
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                logger.error("Store operation failed", extra={"error": str(exc)})
                raise StoreUnavailableError(str(exc)) from exc

    # Trip sessions

    def insert_active_session(self, session: TripSession) -> None:
        if session.status != TripStatus.ACTIVE:
            raise ValueError("Only active sessions can be inserted")
        with self._guard():
            try:
                with self.conn:
                    self.conn.execute(
                        """
                        INSERT INTO trip_session(
                            session_id, employee_id, status, start_time, end_time, version, payload
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            session.session_id,
                            session.employee_id,
                            session.status.value,
                            session.start_time.isoformat(),
                            None,
                            session.version,
                            session.model_dump_json(),
                        ),
                    )
            except sqlite3.IntegrityError as exc:
                existing = self.active_session_for(session.employee_id)
                if existing is not None:
                    raise AlreadyActiveError(
                        session.employee_id, existing.session_id
                    ) from exc
                raise WriteConflictError("trip_session", session.session_id) from exc

    def get_session(self, session_id: str) -> TripSession | None:
        with self._guard():
            row = self.conn.execute(
                "SELECT payload FROM trip_session WHERE session_id = ?", (session_id,)
            ).fetchone()
        return TripSession.model_validate_json(row["payload"]) if row else None

    def active_session_for(self, employee_id: str) -> TripSession | None:
        with self._guard():
            row = self.conn.execute(
                "SELECT payload FROM trip_session WHERE employee_id = ? AND status = ?",
                (employee_id, TripStatus.ACTIVE.value),
            ).fetchone()
        return TripSession.model_validate_json(row["payload"]) if row else None

    def update_session(self, session: TripSession, expected_version: int) -> None:
        _check_next_version(f"Session {session.session_id}", session.version, expected_version)
        with self._guard():
            with self.conn:
                cursor = self.conn.execute(
                    """
                    UPDATE trip_session
                    SET status = ?, end_time = ?, version = ?, payload = ?
                    WHERE session_id = ? AND status = ? AND version = ?
                    """,
                    (
                        session.status.value,
                        session.end_time.isoformat() if session.end_time else None,
                        session.version,
                        session.model_dump_json(),
                        session.session_id,
                        TripStatus.ACTIVE.value,
                        expected_version,
                    ),
                )
            if cursor.rowcount == 0:
                stored = self.get_session(session.session_id)
                if stored is None:
                    raise SessionNotFoundError(session.session_id)
                if stored.status != TripStatus.ACTIVE:
                    raise SessionNotActiveError(session.session_id)
                raise WriteConflictError("trip_session", session.session_id)

    def sessions_for(
        self, employee_id: str, status: TripStatus | None = None
    ) -> list[TripSession]:
        query = "SELECT payload FROM trip_session WHERE employee_id = ?"
        params: list[str] = [employee_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY start_time"
        with self._guard():
            rows = self.conn.execute(query, params).fetchall()
        return [TripSession.model_validate_json(row["payload"]) for row in rows]

    # Claims

    def insert_claim(self, claim: Claim) -> None:
        with self._guard():
            try:
                with self.conn:
                    self.conn.execute(
                        """
                        INSERT INTO claim(claim_id, employee_id, status, version, payload)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (
                            claim.claim_id,
                            claim.employee_id,
                            claim.status.value,
                            claim.version,
                            claim.model_dump_json(),
                        ),
                    )
            except sqlite3.IntegrityError as exc:
                raise WriteConflictError("claim", claim.claim_id) from exc

    def get_claim(self, claim_id: str) -> Claim | None:
        with self._guard():
            row = self.conn.execute(
                "SELECT payload FROM claim WHERE claim_id = ?", (claim_id,)
            ).fetchone()
        return Claim.model_validate_json(row["payload"]) if row else None

    def compare_and_swap_claim(self, claim: Claim, expected_version: int) -> None:
        _check_next_version(f"Claim {claim.claim_id}", claim.version, expected_version)
        with self._guard():
            with self.conn:
                cursor = self.conn.execute(
                    """
                    UPDATE claim SET status = ?, version = ?, payload = ?
                    WHERE claim_id = ? AND version = ?
                    """,
                    (
                        claim.status.value,
                        claim.version,
                        claim.model_dump_json(),
                        claim.claim_id,
                        expected_version,
                    ),
                )
            if cursor.rowcount == 0:
                if self.get_claim(claim.claim_id) is None:
                    raise ClaimNotFoundError(claim.claim_id)
                raise WriteConflictError("claim", claim.claim_id)

    def list_claims(
        self, employee_id: str | None = None, status: ClaimStatus | None = None
    ) -> list[Claim]:
        query = "SELECT payload FROM claim WHERE 1 = 1"
        params: list[str] = []
        if employee_id is not None:
            query += " AND employee_id = ?"
            params.append(employee_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        with self._guard():
            rows = self.conn.execute(query, params).fetchall()
        return [Claim.model_validate_json(row["payload"]) for row in rows]


__all__ = [
    "ClaimStore",
    "InMemoryStore",
    "SqliteStore",
    "TripStore",
    "completed_in_range",
    "connect_sqlite",
]
