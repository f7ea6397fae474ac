"""Expense calculation from distance, rate tables and grade travel policy.

Everything here is side-effect free; the calculator reads its tables once and
never persists anything.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from .logging_config import get_logger
from .models import ClaimType, ExpenseBreakdown
from .rates import GradePolicy, LocationType, PolicyTable, RateEntry, RateTable, VehicleType
from .settings import TrackingSettings

logger = get_logger("expense")

CENT = Decimal("0.01")


def round_currency(amount: Decimal) -> Decimal:
    """Round to 2 decimal places, halves away from zero."""

    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def _as_decimal(value: float | Decimal) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def calculate_expense(
    distance_km: float,
    entry: RateEntry,
    *,
    include_daily_allowance: bool = True,
) -> Decimal:
    """``distance_km * rate_per_km`` plus the daily allowance, rounded."""

    if distance_km < 0:
        raise ValueError("distance_km must be non-negative")
    travel = _as_decimal(distance_km) * entry.rate_per_km
    allowance = entry.daily_allowance if include_daily_allowance else Decimal("0")
    return round_currency(travel + allowance)


@dataclass(frozen=True)
class AllowanceAmount:
    """Daily allowance for a grade and location type over a number of days."""

    level: str
    location_type: LocationType
    days: int
    daily_rate: Decimal
    amount: Decimal
    actual_basis: bool


@dataclass(frozen=True)
class FuelEntitlement:
    """Litres deemed used for a distance and their estimated cost."""

    level: str
    vehicle_type: VehicleType
    km_per_litre: Decimal
    distance_km: float
    litres: Decimal
    estimated_cost: Decimal
    actual_basis: bool


@dataclass(frozen=True)
class ClaimLimitCheck:
    """Outcome of comparing a claim amount with the grade's policy ceiling."""

    is_valid: bool
    max_allowed: Decimal | None
    actual_basis: bool
    message: str


class ExpenseCalculator:
    """Apply position rates and grade policy to finalized distances and claims."""

    def __init__(
        self,
        rates: RateTable | None = None,
        policies: PolicyTable | None = None,
        settings: TrackingSettings | None = None,
    ) -> None:
        self.rates = rates or RateTable.from_file()
        self.policies = policies or PolicyTable.from_file()
        self.settings = settings or TrackingSettings()

    def policy_for(self, grade: str | None) -> GradePolicy:
        return self.policies.lookup(grade).policy

    def calculate(
        self,
        distance_km: float,
        position: str | None,
        *,
        include_daily_allowance: bool = True,
        grade: str | None = None,
        location_type: LocationType | None = None,
        days: int = 1,
    ) -> ExpenseBreakdown:
        """Compute the reimbursement for a trip distance.

        Without ``location_type`` the position's fixed daily allowance applies
        once and ``days`` must stay 1. With it, the allowance comes from the
        grade policy (``grade`` defaults to ``position``) multiplied by ``days``;
        a zero policy value is reported as actual basis and contributes nothing
        to the total.
        """

        if distance_km < 0:
            raise ValueError("distance_km must be non-negative")
        if days < 1:
            raise ValueError("days must be at least 1")
        if days != 1 and location_type is None and include_daily_allowance:
            raise ValueError("days applies only to policy allowances; pass location_type")

        lookup = self.rates.lookup(position)
        entry = lookup.entry
        travel = _as_decimal(distance_km) * entry.rate_per_km

        actual_basis = False
        if not include_daily_allowance:
            allowance = Decimal("0")
        elif location_type is None:
            allowance = entry.daily_allowance
        else:
            policy_allowance = self.daily_allowance(grade or position, location_type, days)
            allowance = policy_allowance.amount
            actual_basis = policy_allowance.actual_basis

        total = round_currency(travel + allowance)
        logger.debug(
            "Expense calculated",
            extra={
                "position": lookup.requested,
                "distance_km": distance_km,
                "rate_per_km": entry.rate_per_km,
                "total_amount": total,
                "used_default_rate": lookup.used_default,
            },
        )
        return ExpenseBreakdown(
            position=lookup.requested,
            distance_km=distance_km,
            rate_per_km=entry.rate_per_km,
            travel_expense=round_currency(travel),
            daily_allowance=round_currency(allowance),
            allowance_actual_basis=actual_basis,
            total_amount=total,
            used_default_rate=lookup.used_default,
        )

    def daily_allowance(
        self,
        grade: str | None,
        location_type: LocationType,
        days: int = 1,
    ) -> AllowanceAmount:
        """Policy daily allowance for ``days`` days at ``location_type``."""

        if days < 1:
            raise ValueError("days must be at least 1")
        policy = self.policy_for(grade)
        daily_rate = policy.allowances[location_type]
        return AllowanceAmount(
            level=policy.level,
            location_type=location_type,
            days=days,
            daily_rate=daily_rate,
            amount=round_currency(daily_rate * days),
            actual_basis=daily_rate == 0,
        )

    def fuel_entitlement(self, grade: str | None, distance_km: float) -> FuelEntitlement:
        """Litres and estimated fuel cost for a distance under the grade's vehicle."""

        if distance_km < 0:
            raise ValueError("distance_km must be non-negative")
        policy = self.policy_for(grade)
        if policy.fuel_on_actual_basis:
            return FuelEntitlement(
                level=policy.level,
                vehicle_type=policy.vehicle_type,
                km_per_litre=policy.km_per_litre,
                distance_km=distance_km,
                litres=Decimal("0"),
                estimated_cost=Decimal("0"),
                actual_basis=True,
            )

        litres = _as_decimal(distance_km) / policy.km_per_litre
        return FuelEntitlement(
            level=policy.level,
            vehicle_type=policy.vehicle_type,
            km_per_litre=policy.km_per_litre,
            distance_km=distance_km,
            litres=round_currency(litres),
            estimated_cost=round_currency(litres * self.settings.fuel_price_per_litre),
            actual_basis=False,
        )

    def receipt_required(self, grade: str | None, claim_type: ClaimType) -> bool:
        """Fuel claims never need a receipt; other types follow the grade policy."""

        if claim_type == ClaimType.FUEL:
            return False
        return self.policy_for(grade).receipt_required

    def validate_claim_amount(
        self,
        grade: str | None,
        claim_type: ClaimType,
        amount: Decimal,
        *,
        location_type: LocationType | None = None,
        days: int | None = None,
    ) -> ClaimLimitCheck:
        """Compare a claim amount with the ceiling that applies to its type."""

        policy = self.policy_for(grade)

        if claim_type == ClaimType.ACCOMMODATION:
            return _ceiling_check(amount, policy.hotel_max, "Maximum allowed")
        if claim_type == ClaimType.TRAVEL:
            return _ceiling_check(amount, policy.travelling_entitlement, "Maximum allowed")
        if claim_type == ClaimType.COMMUNICATION:
            return ClaimLimitCheck(
                is_valid=amount <= policy.phone_limit,
                max_allowed=policy.phone_limit,
                actual_basis=False,
                message=f"Monthly phone limit: {policy.phone_limit}",
            )
        if claim_type == ClaimType.FOOD and location_type is not None and days:
            allowance = self.daily_allowance(grade, location_type, days)
            return _ceiling_check(
                amount, allowance.amount, f"Maximum DA for {days} day(s)"
            )
        return ClaimLimitCheck(
            is_valid=True,
            max_allowed=None,
            actual_basis=False,
            message="No policy ceiling; review as per company policy",
        )


def _ceiling_check(amount: Decimal, ceiling: Decimal, label: str) -> ClaimLimitCheck:
    if ceiling == 0:
        return ClaimLimitCheck(
            is_valid=True, max_allowed=None, actual_basis=True, message="On actual basis"
        )
    return ClaimLimitCheck(
        is_valid=amount <= ceiling,
        max_allowed=ceiling,
        actual_basis=False,
        message=f"{label}: {ceiling}",
    )


__all__ = [
    "AllowanceAmount",
    "ClaimLimitCheck",
    "ExpenseCalculator",
    "FuelEntitlement",
    "calculate_expense",
    "round_currency",
]
