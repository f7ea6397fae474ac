"""Typed error hierarchy for field travel tracking and claim approval.

Every error carries a class-level ``code`` for machine-readable handling and
keeps its context as attributes rather than only in the message text.

    FieldTravelError
    +-- PositioningError            (recoverable by retrying with relaxed settings)
    |   +-- SamplerAlreadyRunningError
    +-- TripSessionError            (usage errors, never retried)
    |   +-- AlreadyActiveError
    |   +-- SessionNotActiveError
    |   +-- SessionNotFoundError
    +-- ClaimError                  (reported, never retried)
    |   +-- UnauthorizedApproverError
    |   +-- RemarksRequiredError
    |   +-- StaleClaimStateError
    |   +-- ClaimNotFoundError
    |   +-- ClaimFinalizedError
    |   +-- InvalidApprovalChainError
    +-- PersistenceError            (callers re-fetch state before retrying)
        +-- StoreUnavailableError
        +-- WriteConflictError
"""

from __future__ import annotations

from enum import Enum


class FieldTravelError(Exception):
    """Base class for all domain errors raised by this package."""

    code: str = "FIELD_TRAVEL_ERROR"


# Positioning


class PositioningErrorKind(str, Enum):
    """Classified reasons a location reading could not be produced."""

    PERMISSION_DENIED = "permission_denied"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    UNSUPPORTED = "unsupported"


_POSITIONING_MESSAGES: dict[PositioningErrorKind, str] = {
    PositioningErrorKind.PERMISSION_DENIED: "Location access denied by user",
    PositioningErrorKind.UNAVAILABLE: "Location information is unavailable",
    PositioningErrorKind.TIMEOUT: "Location request timeout",
    PositioningErrorKind.UNSUPPORTED: "Location services are not supported on this device",
}


class PositioningError(FieldTravelError):
    """A location reading failed for a classified, user-displayable reason."""

    code: str = "POSITIONING_ERROR"

    def __init__(self, kind: PositioningErrorKind, detail: str | None = None):
        self.kind = kind
        self.code = kind.name
        self.detail = detail
        self.user_message = _POSITIONING_MESSAGES[kind]
        message = self.user_message if detail is None else f"{self.user_message}: {detail}"
        super().__init__(message)


class SamplerAlreadyRunningError(FieldTravelError):
    """A continuous stream was started while another one is still active."""

    code: str = "SAMPLER_ALREADY_RUNNING"

    def __init__(self) -> None:
        super().__init__(
            "A continuous location stream is already active; cancel it before starting another"
        )


# Trip sessions


class TripSessionError(FieldTravelError):
    """Base class for trip session state errors."""

    code: str = "TRIP_SESSION_ERROR"


class AlreadyActiveError(TripSessionError):
    """The employee already owns an active trip session."""

    code: str = "ALREADY_ACTIVE"

    def __init__(self, employee_id: str, session_id: str | None = None):
        self.employee_id = employee_id
        self.session_id = session_id
        super().__init__(f"Employee {employee_id} already has an active trip session")


class SessionNotActiveError(TripSessionError):
    """The operation requires an active session but the session is completed."""

    code: str = "SESSION_NOT_ACTIVE"

    def __init__(self, session_id: str, message: str | None = None):
        self.session_id = session_id
        super().__init__(message or f"Trip session {session_id} is not active")


class SessionNotFoundError(SessionNotActiveError):
    """No trip session exists with the given identifier."""

    code: str = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str):
        super().__init__(session_id, f"Trip session not found: {session_id}")


# Claims


class ClaimError(FieldTravelError):
    """Base class for claim approval errors."""

    code: str = "CLAIM_ERROR"


class UnauthorizedApproverError(ClaimError):
    """The actor is not the approver configured for the claim's current level."""

    code: str = "UNAUTHORIZED"

    def __init__(self, claim_id: str, actor_id: str, level: str | None):
        self.claim_id = claim_id
        self.actor_id = actor_id
        self.level = level
        super().__init__(
            f"Actor {actor_id} is not the configured approver for claim {claim_id}"
            f" at level {level}"
        )


class RemarksRequiredError(ClaimError):
    """Rejections must carry non-empty remarks."""

    code: str = "REMARKS_REQUIRED"

    def __init__(self, claim_id: str):
        self.claim_id = claim_id
        super().__init__(f"Rejecting claim {claim_id} requires remarks")


class StaleClaimStateError(ClaimError):
    """Another actor changed the claim first; this action lost the race."""

    code: str = "STALE_CLAIM_STATE"

    def __init__(self, claim_id: str, expected: str, actual: str):
        self.claim_id = claim_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Claim {claim_id} changed concurrently: expected {expected}, found {actual}"
        )


class ClaimNotFoundError(ClaimError):
    """No claim exists with the given identifier."""

    code: str = "CLAIM_NOT_FOUND"

    def __init__(self, claim_id: str):
        self.claim_id = claim_id
        super().__init__(f"Claim not found: {claim_id}")


class ClaimFinalizedError(ClaimError):
    """The claim is already approved or rejected."""

    code: str = "CLAIM_FINALIZED"

    def __init__(self, claim_id: str, status: str):
        self.claim_id = claim_id
        self.status = status
        super().__init__(f"Claim {claim_id} is already {status}")


class InvalidApprovalChainError(ClaimError, ValueError):
    """An approval chain is empty, unordered, or repeats a level."""

    code: str = "INVALID_APPROVAL_CHAIN"


# Persistence


class PersistenceError(FieldTravelError):
    """The backing store failed; in-memory changes of the operation are discarded."""

    code: str = "PERSISTENCE_ERROR"


class StoreUnavailableError(PersistenceError):
    """The store could not be reached or opened."""

    code: str = "STORE_UNAVAILABLE"


class WriteConflictError(PersistenceError):
    """A conditional write did not apply because the stored record changed."""

    code: str = "WRITE_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Write conflict on {entity_type} {entity_id}: record was modified concurrently"
        )


__all__ = [
    "AlreadyActiveError",
    "ClaimError",
    "ClaimFinalizedError",
    "ClaimNotFoundError",
    "FieldTravelError",
    "InvalidApprovalChainError",
    "PersistenceError",
    "PositioningError",
    "PositioningErrorKind",
    "RemarksRequiredError",
    "SamplerAlreadyRunningError",
    "SessionNotActiveError",
    "SessionNotFoundError",
    "StaleClaimStateError",
    "StoreUnavailableError",
    "TripSessionError",
    "UnauthorizedApproverError",
    "WriteConflictError",
]
