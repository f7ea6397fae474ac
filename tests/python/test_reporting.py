from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from field_travel_expense import ClaimType, ReportingService
from field_travel_expense.reporting import summarize_month


def test_monthly_summary_aggregates_claims_and_trips(
    store, directory, policy_table, engine, trip_service, start_location
) -> None:
    session = trip_service.start_trip("EMP-001", start_location)
    trip_service.end_trip(session.session_id, start_location, "Sales Executive")
    travel = engine.submit_claim(
        "EMP-001", ClaimType.TRAVEL, Decimal("1100.00"), "Trip", date(2024, 5, 10)
    )
    engine.submit_claim("EMP-001", ClaimType.FUEL, Decimal("300.00"), "Fuel", date(2024, 5, 11))
    rejected = engine.submit_claim(
        "EMP-001", ClaimType.FOOD, Decimal("999.00"), "Dinner", date(2024, 5, 12)
    )
    engine.submit_claim("EMP-001", ClaimType.FUEL, Decimal("50.00"), "Fuel", date(2024, 6, 1))
    engine.reject(rejected.claim_id, "MGR-A", "No bill")
    engine.approve(travel.claim_id, "MGR-A")
    engine.approve(travel.claim_id, "MGR-B")

    service = ReportingService(store, store, directory, policy_table)
    summary = service.monthly_summary("EMP-001", 2024, 5)

    assert summary.trip_count == 1
    assert summary.claim_count == 2
    assert summary.total_amount == Decimal("1400.00")
    assert summary.approved_amount == Decimal("1100.00")
    assert summary.fuel_claim_count == 1
    assert summary.fuel_amount == Decimal("300.00")
    # B Class monthly travel limit.
    assert summary.monthly_limit == Decimal("7500")
    assert summary.remaining_limit == Decimal("6100.00")
    assert summary.limit_exceeded is False


def test_unknown_employee_uses_default_monthly_limit(store, directory, policy_table) -> None:
    service = ReportingService(store, store, directory, policy_table)

    summary = service.monthly_summary("EMP-404", 2024, 5)

    assert summary.monthly_limit == Decimal("10000")
    assert summary.claim_count == 0
    assert summary.total_amount == Decimal("0")


def test_limit_exceeded_and_remaining_floor() -> None:
    summary = summarize_month(
        "EMP-001", 2024, 5, trips=[], claims=[], monthly_limit=Decimal("0")
    )
    assert summary.remaining_limit == Decimal("0")
    assert summary.limit_exceeded is False


def test_invalid_month() -> None:
    with pytest.raises(ValueError, match="month"):
        summarize_month("EMP-001", 2024, 13, trips=[], claims=[], monthly_limit=Decimal("1"))
