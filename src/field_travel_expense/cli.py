"""Command-line interface for recomputing a trip's expense from its samples."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from pydantic import ValidationError

from .distance import recompute_distance
from .expense import ExpenseCalculator
from .logging_config import configure_logging
from .models import TripSession
from .rates import RateTable
from .settings import TrackingSettings


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trip-expense",
        description=(
            "Recompute the distance of a stored trip session from its samples and"
            " print the resulting expense breakdown as JSON."
        ),
    )
    parser.add_argument("session_json", type=Path, help="Path to a trip session JSON file.")
    parser.add_argument(
        "--position",
        help="Position used for the rate lookup (defaults to the session's position).",
    )
    parser.add_argument(
        "--threshold",
        type=float,
        help="Minimum movement in meters for a sample to count (defaults to configuration).",
    )
    parser.add_argument("--rates", type=Path, help="Alternative position rates YAML file.")
    parser.add_argument(
        "--no-daily-allowance",
        action="store_true",
        help="Exclude the daily allowance from the total.",
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Emit structured logs on stderr."
    )
    return parser


def _load_session(path: Path) -> TripSession:
    try:
        raw_data = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        msg = f"Input file not found: {path}"
        raise FileNotFoundError(msg) from exc
    except OSError as exc:
        msg = f"Unable to read input file: {path}"
        raise OSError(msg) from exc

    try:
        payload = json.loads(raw_data)
    except json.JSONDecodeError as exc:
        msg = f"Invalid JSON in input file: {path}"
        raise ValueError(msg) from exc

    return TripSession.model_validate(payload)


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        configure_logging()

    try:
        session = _load_session(args.session_json)
        settings = TrackingSettings.from_file()
        threshold = settings.min_distance_m if args.threshold is None else args.threshold
        rates = RateTable.from_file(args.rates)
        calculator = ExpenseCalculator(rates=rates, settings=settings)
        distance_km = recompute_distance(session.samples, threshold)
        breakdown = calculator.calculate(
            distance_km,
            args.position or session.position,
            include_daily_allowance=not args.no_daily_allowance,
        )
    except ValidationError as exc:
        print("Error: trip session validation failed.", file=sys.stderr)
        print(str(exc), file=sys.stderr)
        return 1
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(breakdown.model_dump_json(indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
