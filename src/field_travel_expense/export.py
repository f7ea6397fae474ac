"""CSV and Excel exports of completed trips and claims for accounting."""

from __future__ import annotations

import csv
import io
from collections.abc import Iterable, Iterator, Sequence
from datetime import UTC, datetime
from decimal import Decimal

from .models import Claim, TripSession, TripStatus

ExportRow = dict[str, str]

MAX_BATCH_SIZE = 500


class ExportService:
    """Generate CSV and Excel exports for completed trips and claims."""

    trip_schema = [
        "session_id",
        "employee_id",
        "start_time",
        "end_time",
        "distance_km",
        "position",
        "rate_per_km",
        "total_expense",
        "dealer_visits",
    ]
    claim_schema = [
        "claim_id",
        "employee_id",
        "claim_date",
        "claim_type",
        "amount",
        "status",
        "approved_by",
        "rejection_reason",
    ]

    def __init__(self, *, currency_format: str = "₹#,##0.00") -> None:
        self.currency_format = currency_format

    def _completed_trips(self, sessions: Iterable[TripSession]) -> list[TripSession]:
        materialized = list(sessions)
        if len(materialized) > MAX_BATCH_SIZE:
            raise ValueError(f"Batch export supports up to {MAX_BATCH_SIZE} records")
        incomplete = [s.session_id for s in materialized if s.status != TripStatus.COMPLETED]
        if incomplete:
            raise ValueError(f"Only completed trips can be exported: {', '.join(incomplete)}")
        return materialized

    def _claims(self, claims: Iterable[Claim]) -> list[Claim]:
        materialized = list(claims)
        if len(materialized) > MAX_BATCH_SIZE:
            raise ValueError(f"Batch export supports up to {MAX_BATCH_SIZE} records")
        return materialized

    def _build_filename(self, kind: str, ext: str, batch_id: str, now: datetime) -> str:
        return f"{kind}_export_{now.date().isoformat()}_{batch_id}.{ext}"

    def _iter_trip_rows(self, sessions: list[TripSession]) -> Iterator[ExportRow]:
        for session in sessions:
            breakdown = session.expense_breakdown
            total = session.total_expense or Decimal("0")
            yield {
                "session_id": session.session_id,
                "employee_id": session.employee_id,
                "start_time": session.start_time.isoformat(),
                "end_time": session.end_time.isoformat() if session.end_time else "",
                "distance_km": f"{session.total_distance_km:.3f}",
                "position": session.position or "",
                "rate_per_km": f"{breakdown.rate_per_km:.2f}" if breakdown else "",
                "total_expense": f"{total.quantize(Decimal('0.01')):.2f}",
                "dealer_visits": str(len(session.dealer_visits)),
            }

    def _iter_claim_rows(self, claims: list[Claim]) -> Iterator[ExportRow]:
        for claim in claims:
            yield {
                "claim_id": claim.claim_id,
                "employee_id": claim.employee_id,
                "claim_date": claim.claim_date.isoformat(),
                "claim_type": claim.claim_type.value,
                "amount": f"{claim.amount.quantize(Decimal('0.01')):.2f}",
                "status": claim.status.value,
                "approved_by": ";".join(entry.actor_id for entry in claim.approvals()),
                "rejection_reason": claim.rejection_reason or "",
            }

    def _write_csv(self, schema: list[str], rows: Iterable[ExportRow]) -> str:
        output = io.StringIO(newline="")
        writer = csv.DictWriter(output, fieldnames=schema)
        writer.writeheader()
        writer.writerows(rows)
        return output.getvalue()

    def _write_excel(
        self,
        title: str,
        schema: list[str],
        rows: Iterable[ExportRow],
        amount_columns: Sequence[str],
        numeric_columns: Sequence[str] = (),
    ) -> bytes:
        from openpyxl import Workbook  # type: ignore[import-untyped]

        wb = Workbook()
        ws = wb.active
        ws.title = title
        ws.append(schema)
        as_number = set(amount_columns) | set(numeric_columns)
        for row in rows:
            ws.append(
                [float(row[key]) if key in as_number and row[key] else row[key] for key in schema]
            )
        for name in amount_columns:
            column = schema.index(name) + 1
            for cells in ws.iter_cols(min_col=column, max_col=column, min_row=2):
                for cell in cells:
                    cell.number_format = self.currency_format
        for index, name in enumerate(schema, start=1):
            ws.column_dimensions[ws.cell(row=1, column=index).column_letter].width = max(
                12, len(name) + 4
            )

        buffer = io.BytesIO()
        wb.save(buffer)
        return buffer.getvalue()

    def trips_to_csv(
        self,
        sessions: Iterable[TripSession],
        *,
        batch_id: str,
        now: datetime | None = None,
    ) -> tuple[str, str]:
        """Return filename and UTF-8 CSV content for completed trips."""

        current_time = now or datetime.now(UTC)
        rows = self._iter_trip_rows(self._completed_trips(sessions))
        filename = self._build_filename("trips", "csv", batch_id, current_time)
        return filename, self._write_csv(self.trip_schema, rows)

    def trips_to_excel(
        self,
        sessions: Iterable[TripSession],
        *,
        batch_id: str,
        now: datetime | None = None,
    ) -> tuple[str, bytes]:
        """Return filename and Excel binary content for completed trips."""

        current_time = now or datetime.now(UTC)
        rows = self._iter_trip_rows(self._completed_trips(sessions))
        content = self._write_excel(
            "Trips",
            self.trip_schema,
            rows,
            amount_columns=["rate_per_km", "total_expense"],
            numeric_columns=["distance_km", "dealer_visits"],
        )
        return self._build_filename("trips", "xlsx", batch_id, current_time), content

    def claims_to_csv(
        self,
        claims: Iterable[Claim],
        *,
        batch_id: str,
        now: datetime | None = None,
    ) -> tuple[str, str]:
        current_time = now or datetime.now(UTC)
        rows = self._iter_claim_rows(self._claims(claims))
        filename = self._build_filename("claims", "csv", batch_id, current_time)
        return filename, self._write_csv(self.claim_schema, rows)

    def claims_to_excel(
        self,
        claims: Iterable[Claim],
        *,
        batch_id: str,
        now: datetime | None = None,
    ) -> tuple[str, bytes]:
        current_time = now or datetime.now(UTC)
        rows = self._iter_claim_rows(self._claims(claims))
        content = self._write_excel("Claims", self.claim_schema, rows, amount_columns=["amount"])
        return self._build_filename("claims", "xlsx", batch_id, current_time), content


__all__ = ["ExportService", "MAX_BATCH_SIZE"]
