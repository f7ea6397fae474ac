"""Core models for trip sessions, location samples and reimbursement claims."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .exceptions import InvalidApprovalChainError


class Location(BaseModel):
    """A geographic point with an optional resolved address."""

    latitude: Annotated[float, Field(ge=-90, le=90)] = Field(
        ..., description="Latitude in decimal degrees"
    )
    longitude: Annotated[float, Field(ge=-180, le=180)] = Field(
        ..., description="Longitude in decimal degrees"
    )
    address: str | None = Field(default=None, description="Resolved street address")

    model_config = ConfigDict(frozen=True)


class LocationSample(BaseModel):
    """A single positioning reading. Never mutated after creation."""

    latitude: Annotated[float, Field(ge=-90, le=90)] = Field(
        ..., description="Latitude in decimal degrees"
    )
    longitude: Annotated[float, Field(ge=-180, le=180)] = Field(
        ..., description="Longitude in decimal degrees"
    )
    timestamp: datetime = Field(..., description="When the reading was taken")
    accuracy: Annotated[float, Field(ge=0)] | None = Field(
        default=None, description="Reported accuracy radius in meters"
    )
    speed: float | None = Field(default=None, description="Reported speed in m/s")

    model_config = ConfigDict(frozen=True)

    @classmethod
    def at(cls, location: Location, timestamp: datetime | None = None) -> LocationSample:
        """Build a sample for a known location, e.g. the trip start point."""

        return cls(
            latitude=location.latitude,
            longitude=location.longitude,
            timestamp=timestamp or datetime.now(UTC),
        )


class TripStatus(str, Enum):
    """Persisted status of a trip session. No record means no active trip."""

    ACTIVE = "active"
    COMPLETED = "completed"


class DealerVisit(BaseModel):
    """A geolocated check-in recorded during an active trip."""

    visit_id: str = Field(..., description="Unique visit identifier")
    session_id: str = Field(..., description="Owning trip session")
    location: Location = Field(..., description="Where the visit took place")
    timestamp: datetime = Field(..., description="When the visit was recorded")
    dealer_name: str | None = Field(default=None, description="Dealer visited")
    notes: str | None = Field(default=None, description="Free-form visit notes")
    visit_duration_minutes: Annotated[int, Field(ge=0)] | None = Field(
        default=None, description="Length of the visit in minutes"
    )

    model_config = ConfigDict(frozen=True)


class ExpenseBreakdown(BaseModel):
    """Result of applying a rate entry to a travelled distance."""

    position: str = Field(..., description="Position the rate was requested for")
    distance_km: Annotated[float, Field(ge=0)] = Field(..., description="Distance charged")
    rate_per_km: Decimal = Field(..., description="Per-kilometer rate applied")
    travel_expense: Decimal = Field(..., description="distance_km * rate_per_km")
    daily_allowance: Decimal = Field(..., description="Daily allowance applied")
    allowance_actual_basis: bool = Field(
        default=False,
        description="Policy allowance is zero: the receipted amount is paid separately",
    )
    total_amount: Decimal = Field(..., description="Rounded reimbursement amount")
    used_default_rate: bool = Field(
        default=False,
        description="True when the position was unmatched and the default entry applied",
    )

    model_config = ConfigDict(frozen=True)


class TripSession(BaseModel):
    """One employee's trip from start to completion.

    Instances are immutable; the trip service produces a new version for every
    accepted sample or visit, and refuses to do so once the trip is completed.
    """

    session_id: str = Field(..., description="Unique trip session identifier")
    employee_id: str = Field(..., description="Owning employee")
    status: TripStatus = Field(default=TripStatus.ACTIVE, description="Lifecycle status")
    start_time: datetime = Field(..., description="When the trip started")
    start_location: Location = Field(..., description="Where the trip started")
    end_time: datetime | None = Field(default=None, description="Set at completion")
    end_location: Location | None = Field(default=None, description="Set at completion")
    samples: tuple[LocationSample, ...] = Field(
        default_factory=tuple, description="Ordered accepted samples"
    )
    dealer_visits: tuple[DealerVisit, ...] = Field(
        default_factory=tuple, description="Ordered dealer visits"
    )
    total_distance_km: Annotated[float, Field(ge=0)] = Field(
        default=0.0, description="Cumulative accepted distance in kilometers"
    )
    position: str | None = Field(
        default=None, description="Position used for the expense calculation"
    )
    total_expense: Decimal | None = Field(
        default=None, description="Finalized reimbursement amount, set at completion"
    )
    expense_breakdown: ExpenseBreakdown | None = Field(
        default=None, description="How the finalized amount was derived"
    )
    version: int = Field(default=0, ge=0, description="Incremented on every stored change")

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_completion_fields(self) -> TripSession:
        if self.status == TripStatus.COMPLETED and (
            self.end_time is None or self.total_expense is None
        ):
            raise ValueError("Completed trip sessions require end_time and total_expense")
        return self

    @property
    def is_active(self) -> bool:
        return self.status == TripStatus.ACTIVE

    @property
    def last_sample(self) -> LocationSample | None:
        return self.samples[-1] if self.samples else None

    def duration(self, now: datetime | None = None) -> timedelta:
        """Elapsed time of the trip; running trips are measured up to ``now``."""

        end = self.end_time or now or datetime.now(UTC)
        return end - self.start_time


class ClaimType(str, Enum):
    """Enumerated expense categories a claim may be filed under."""

    TRAVEL = "travel"
    ACCOMMODATION = "accommodation"
    FOOD = "food"
    FUEL = "fuel"
    MEDICAL = "medical"
    COMMUNICATION = "communication"
    OTHER = "other"


class ApprovalLevel(str, Enum):
    """Approval tiers in the order a claim passes through them."""

    L1 = "L1"
    L2 = "L2"
    L3 = "L3"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    @property
    def pending_status(self) -> ClaimStatus:
        return _PENDING_BY_LEVEL[self]


_LEVEL_ORDER: tuple[ApprovalLevel, ...] = (
    ApprovalLevel.L1,
    ApprovalLevel.L2,
    ApprovalLevel.L3,
)


class ClaimStatus(str, Enum):
    """Closed set of claim states; only the pending ones map to a level."""

    PENDING_L1 = "pending_l1"
    PENDING_L2 = "pending_l2"
    PENDING_L3 = "pending_l3"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (ClaimStatus.APPROVED, ClaimStatus.REJECTED)

    @property
    def level(self) -> ApprovalLevel | None:
        return _LEVEL_BY_PENDING.get(self)


_PENDING_BY_LEVEL: dict[ApprovalLevel, ClaimStatus] = {
    ApprovalLevel.L1: ClaimStatus.PENDING_L1,
    ApprovalLevel.L2: ClaimStatus.PENDING_L2,
    ApprovalLevel.L3: ClaimStatus.PENDING_L3,
}
_LEVEL_BY_PENDING: dict[ClaimStatus, ApprovalLevel] = {
    status: level for level, status in _PENDING_BY_LEVEL.items()
}


class ApprovalStep(BaseModel):
    """A single (level, approver) pair of an approval chain."""

    level: ApprovalLevel
    approver_id: str = Field(..., min_length=1)

    model_config = ConfigDict(frozen=True)


def check_chain_steps(steps: tuple[ApprovalStep, ...]) -> None:
    if not steps:
        raise InvalidApprovalChainError("Approval chain must include at least one approver")
    if steps[0].level != ApprovalLevel.L1:
        raise InvalidApprovalChainError("Approval chain must start with an L1 approver")
    ranks = [step.level.rank for step in steps]
    if ranks != sorted(set(ranks)):
        raise InvalidApprovalChainError(
            "Approval chain levels must be unique and in ascending order"
        )


class ApprovalChain(BaseModel):
    """Ordered, non-empty list of approval steps starting at L1."""

    steps: tuple[ApprovalStep, ...] = Field(..., description="Steps in level order")

    model_config = ConfigDict(frozen=True)

    @field_validator("steps")
    @classmethod
    def _validate_steps(cls, steps: tuple[ApprovalStep, ...]) -> tuple[ApprovalStep, ...]:
        check_chain_steps(steps)
        return steps

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str | None]) -> ApprovalChain:
        """Build a chain from a loose ``{"L1": "mgr-1", "L2": None}`` mapping.

        Raises :class:`InvalidApprovalChainError` directly rather than a
        pydantic ``ValidationError``.
        """

        steps = tuple(
            ApprovalStep(level=ApprovalLevel(level), approver_id=approver)
            for level, approver in sorted(
                mapping.items(), key=lambda item: ApprovalLevel(item[0]).rank
            )
            if approver
        )
        check_chain_steps(steps)
        return cls(steps=steps)

    @property
    def first(self) -> ApprovalStep:
        return self.steps[0]

    def step_for(self, level: ApprovalLevel) -> ApprovalStep | None:
        """Return the configured step at ``level`` if present."""

        for step in self.steps:
            if step.level == level:
                return step
        return None

    def next_after(self, level: ApprovalLevel) -> ApprovalStep | None:
        """Return the next configured step after ``level`` or None at the end."""

        for step in self.steps:
            if step.level.rank > level.rank:
                return step
        return None

    def as_mapping(self) -> dict[str, str]:
        return {step.level.value: step.approver_id for step in self.steps}


class ApprovalAction(str, Enum):
    """Kinds of entries recorded in a claim's approval history."""

    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    ESCALATION_BLOCKED = "escalation_blocked"


SYSTEM_ACTOR = "system"


class ApprovalHistoryEntry(BaseModel):
    """Immutable audit record for a single approval action or escalation."""

    actor_id: str = Field(..., description="Approver, or 'system' for escalations")
    level: ApprovalLevel = Field(..., description="Level the action applied to")
    action: ApprovalAction = Field(..., description="What happened at this level")
    timestamp: datetime = Field(..., description="When the action was recorded")
    remarks: str | None = Field(default=None, description="Optional approver remarks")
    previous_status: ClaimStatus = Field(..., description="Status before the action")
    new_status: ClaimStatus = Field(..., description="Status after the action")

    model_config = ConfigDict(frozen=True)


class Claim(BaseModel):
    """A submitted reimbursement claim moving through its approval chain."""

    claim_id: str = Field(..., description="Unique claim identifier")
    employee_id: str = Field(..., description="Claimant")
    claim_type: ClaimType = Field(..., description="Expense category")
    amount: Annotated[Decimal, Field(ge=0)] = Field(..., description="Claimed amount")
    description: str = Field(..., description="Business purpose of the claim")
    claim_date: date = Field(..., description="Date the expense was incurred")
    submitted_at: datetime = Field(..., description="Submission timestamp")
    updated_at: datetime = Field(..., description="Last state change")
    status: ClaimStatus = Field(..., description="Current approval status")
    approval_chain: ApprovalChain = Field(
        ..., description="Chain copied from the employee at submission time"
    )
    history: tuple[ApprovalHistoryEntry, ...] = Field(
        default_factory=tuple, description="Append-only approval history"
    )
    version: Annotated[int, Field(ge=0)] = Field(
        default=0, description="Incremented on every stored change"
    )
    distance_km: Annotated[float, Field(ge=0)] | None = Field(
        default=None, description="Distance backing a travel claim"
    )
    session_id: str | None = Field(
        default=None, description="Trip session the amount was computed from"
    )
    receipt_attached: bool = Field(default=False, description="Supporting receipt present")
    rejection_reason: str | None = Field(default=None, description="Rejection remarks")

    model_config = ConfigDict(frozen=True)

    @property
    def current_level(self) -> ApprovalLevel | None:
        return self.status.level

    @property
    def current_approver(self) -> str | None:
        level = self.current_level
        if level is None:
            return None
        step = self.approval_chain.step_for(level)
        return step.approver_id if step else None

    def approvals(self) -> list[ApprovalHistoryEntry]:
        """History entries that record a human approval."""

        return [entry for entry in self.history if entry.action == ApprovalAction.APPROVED]


__all__ = [
    "ApprovalAction",
    "ApprovalChain",
    "ApprovalHistoryEntry",
    "ApprovalLevel",
    "ApprovalStep",
    "Claim",
    "ClaimStatus",
    "ClaimType",
    "DealerVisit",
    "ExpenseBreakdown",
    "Location",
    "LocationSample",
    "SYSTEM_ACTOR",
    "TripSession",
    "TripStatus",
]
