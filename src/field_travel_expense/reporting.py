"""Read-only monthly projections over trips and claims."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from .directory import EmployeeDirectory
from .models import Claim, ClaimStatus, ClaimType, TripSession, TripStatus
from .rates import PolicyTable
from .store import ClaimStore, TripStore


class MonthlyTravelSummary(BaseModel):
    """Travel spend of one employee in one calendar month against the grade limit."""

    employee_id: str
    year: int
    month: int = Field(..., ge=1, le=12)
    trip_count: int = Field(default=0, description="Completed trips ending in the month")
    total_distance_km: float = Field(default=0.0, description="Distance of those trips")
    claim_count: int = Field(default=0, description="Non-rejected claims dated in the month")
    total_amount: Decimal = Field(default=Decimal("0"), description="Sum of those claims")
    approved_amount: Decimal = Field(default=Decimal("0"), description="Sum of approved claims")
    fuel_claim_count: int = Field(default=0)
    fuel_amount: Decimal = Field(default=Decimal("0"))
    monthly_limit: Decimal = Field(..., description="Grade monthly travel limit")

    model_config = ConfigDict(frozen=True)

    @property
    def remaining_limit(self) -> Decimal:
        return max(self.monthly_limit - self.total_amount, Decimal("0"))

    @property
    def limit_exceeded(self) -> bool:
        return self.total_amount > self.monthly_limit


def _in_month(day: date, year: int, month: int) -> bool:
    return day.year == year and day.month == month


def summarize_month(
    employee_id: str,
    year: int,
    month: int,
    *,
    trips: Iterable[TripSession],
    claims: Iterable[Claim],
    monthly_limit: Decimal,
) -> MonthlyTravelSummary:
    """Aggregate already-fetched trips and claims for one employee and month."""

    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}")

    month_trips = [
        trip
        for trip in trips
        if trip.employee_id == employee_id
        and trip.status == TripStatus.COMPLETED
        and trip.end_time is not None
        and _in_month(trip.end_time.date(), year, month)
    ]
    month_claims = [
        claim
        for claim in claims
        if claim.employee_id == employee_id
        and claim.status != ClaimStatus.REJECTED
        and _in_month(claim.claim_date, year, month)
    ]
    fuel_claims = [claim for claim in month_claims if claim.claim_type == ClaimType.FUEL]

    return MonthlyTravelSummary(
        employee_id=employee_id,
        year=year,
        month=month,
        trip_count=len(month_trips),
        total_distance_km=sum(trip.total_distance_km for trip in month_trips),
        claim_count=len(month_claims),
        total_amount=sum((claim.amount for claim in month_claims), Decimal("0")),
        approved_amount=sum(
            (claim.amount for claim in month_claims if claim.status == ClaimStatus.APPROVED),
            Decimal("0"),
        ),
        fuel_claim_count=len(fuel_claims),
        fuel_amount=sum((claim.amount for claim in fuel_claims), Decimal("0")),
        monthly_limit=monthly_limit,
    )


class ReportingService:
    """Monthly summaries computed straight from the stores."""

    def __init__(
        self,
        trips: TripStore,
        claims: ClaimStore,
        directory: EmployeeDirectory,
        policies: PolicyTable | None = None,
    ) -> None:
        self.trips = trips
        self.claims = claims
        self.directory = directory
        self.policies = policies or PolicyTable.from_file()

    def monthly_limit_for(self, employee_id: str) -> Decimal:
        employee = self.directory.get(employee_id)
        grade = employee.grade if employee is not None else None
        if grade is None:
            return self.policies.monthly_limit_default
        return self.policies.monthly_limit(grade)

    def monthly_summary(self, employee_id: str, year: int, month: int) -> MonthlyTravelSummary:
        return summarize_month(
            employee_id,
            year,
            month,
            trips=self.trips.sessions_for(employee_id, TripStatus.COMPLETED),
            claims=self.claims.list_claims(employee_id=employee_id),
            monthly_limit=self.monthly_limit_for(employee_id),
        )


__all__ = ["MonthlyTravelSummary", "ReportingService", "summarize_month"]
