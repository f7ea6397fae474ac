"""Position rate tables and grade travel policy supplied by administrators.

Both tables are read-only configuration. Lookups never fail for an unknown
key: they fall back to a documented default entry and say so in the result so
callers that need strict validation can reject the fallback themselves.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Annotated

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .logging_config import get_logger

logger = get_logger("rates")


def _default_config_path(name: str) -> Path | None:
    for parent in Path(__file__).resolve().parents:
        candidate = parent / "config" / name
        if candidate.exists():
            return candidate
    return None


def _read_config(path: str | Path | None, name: str) -> str:
    target_path = Path(path) if path is not None else _default_config_path(name)
    if target_path is None:
        raise FileNotFoundError(f"No {name} configuration file found")
    return target_path.read_text(encoding="utf-8")


class RateEntry(BaseModel):
    """Per-kilometer rate and fixed daily allowance for a position."""

    position: str = Field(..., min_length=1, description="Position or grade key")
    rate_per_km: Annotated[Decimal, Field(ge=0)] = Field(
        ..., description="Reimbursement per kilometer"
    )
    daily_allowance: Annotated[Decimal, Field(ge=0)] = Field(
        ..., description="Fixed allowance added once per trip day"
    )
    max_daily_expense: Annotated[Decimal, Field(ge=0)] | None = Field(
        default=None, description="Informational daily ceiling"
    )

    model_config = ConfigDict(extra="forbid", frozen=True)


@dataclass(frozen=True)
class RateLookup:
    """Outcome of resolving a position against the rate table."""

    requested: str
    entry: RateEntry
    used_default: bool


class RateTable(BaseModel):
    """Rate entries keyed by position with a mandatory default entry."""

    default: str = Field(..., description="Position whose entry is the fallback")
    positions: list[RateEntry] = Field(..., description="Configured rate entries")

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def _check_entries(self) -> RateTable:
        names = [entry.position for entry in self.positions]
        if len(names) != len(set(names)):
            raise ValueError("Rate table positions must be unique")
        if self.default not in names:
            raise ValueError(f"Default position '{self.default}' has no rate entry")
        return self

    @classmethod
    def from_yaml(cls, content: str) -> RateTable:
        data = yaml.safe_load(content) or {}
        if not data.get("positions"):
            raise ValueError("Rate configuration must include a 'positions' list")
        return cls.model_validate(data)

    @classmethod
    def from_file(cls, path: str | Path | None = None) -> RateTable:
        return cls.from_yaml(_read_config(path, "position_rates.yaml"))

    @classmethod
    def from_environment(cls, env_var: str = "FIELD_TRAVEL_RATES") -> RateTable:
        content = os.getenv(env_var)
        if not content:
            raise ValueError(f"Environment variable '{env_var}' is not set or empty")
        return cls.from_yaml(content)

    def _by_position(self) -> dict[str, RateEntry]:
        return {entry.position: entry for entry in self.positions}

    @property
    def default_entry(self) -> RateEntry:
        return self._by_position()[self.default]

    def lookup(self, position: str | None) -> RateLookup:
        """Resolve a position by exact key, falling back to the default entry."""

        requested = position or ""
        entry = self._by_position().get(requested)
        if entry is not None:
            return RateLookup(requested=requested, entry=entry, used_default=False)
        logger.warning(
            "No rate configured for position; using default entry",
            extra={"position": requested, "default_position": self.default},
        )
        return RateLookup(requested=requested, entry=self.default_entry, used_default=True)

    def available_positions(self) -> list[str]:
        return [entry.position for entry in self.positions]


class VehicleType(str, Enum):
    """Vehicle entitlement attached to a policy level."""

    CAR = "car"
    TWO_WHEELER = "two_wheeler"


class LocationType(str, Enum):
    """Destination classes used for daily allowance rates."""

    FOOD = "food"
    TOWN = "town"
    CAPITAL = "capital"
    METRO = "metro"


class GradePolicy(BaseModel):
    """Travel entitlements for one policy level.

    A zero allowance or ceiling means the actual receipted amount is paid.
    """

    level: str = Field(..., min_length=1, description="Policy level name")
    vehicle_type: VehicleType = Field(..., description="Entitled vehicle")
    km_per_litre: Annotated[Decimal, Field(ge=0)] = Field(
        ..., description="Fuel efficiency; 0 means fuel on actual basis"
    )
    allowances: dict[LocationType, Annotated[Decimal, Field(ge=0)]] = Field(
        ..., description="Daily allowance per location type"
    )
    hotel_max: Annotated[Decimal, Field(ge=0)] = Field(..., description="Hotel ceiling")
    travelling_entitlement: Annotated[Decimal, Field(ge=0)] = Field(
        ..., description="Travel claim ceiling"
    )
    meal_without_bill: Annotated[Decimal, Field(ge=0)] = Field(
        default=Decimal("0"), description="Daily meal amount payable without a bill"
    )
    phone_limit: Annotated[Decimal, Field(ge=0)] = Field(
        default=Decimal("0"), description="Monthly phone limit"
    )
    monthly_travel_limit: Annotated[Decimal, Field(ge=0)] | None = Field(
        default=None, description="Monthly travel spend limit"
    )
    receipt_required: bool = Field(
        default=True, description="Whether non-fuel claims need a supporting receipt"
    )

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def _check_allowances(self) -> GradePolicy:
        missing = set(LocationType) - set(self.allowances)
        if missing:
            names = ", ".join(sorted(item.value for item in missing))
            raise ValueError(f"Policy level '{self.level}' is missing allowances for: {names}")
        return self

    @property
    def fuel_on_actual_basis(self) -> bool:
        return self.km_per_litre == 0


@dataclass(frozen=True)
class PolicyLookup:
    """Outcome of resolving a grade against the policy table."""

    grade: str
    policy: GradePolicy
    used_default: bool


class PolicyTable(BaseModel):
    """Grade policies keyed by level plus the grade to level mapping."""

    default_level: str = Field(..., description="Level used for unmatched grades")
    monthly_limit_default: Annotated[Decimal, Field(ge=0)] = Field(
        default=Decimal("10000"), description="Monthly limit for levels without one"
    )
    grade_levels: dict[str, str] = Field(
        default_factory=dict, description="Grade or designation to policy level"
    )
    levels: list[GradePolicy] = Field(..., description="Configured policy levels")

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def _check_levels(self) -> PolicyTable:
        names = {policy.level for policy in self.levels}
        if self.default_level not in names:
            raise ValueError(f"Default level '{self.default_level}' is not configured")
        unknown = sorted(set(self.grade_levels.values()) - names)
        if unknown:
            raise ValueError(f"Grade mapping refers to unknown levels: {', '.join(unknown)}")
        return self

    @classmethod
    def from_yaml(cls, content: str) -> PolicyTable:
        data = yaml.safe_load(content) or {}
        if not data.get("levels"):
            raise ValueError("Travel policy configuration must include a 'levels' list")
        return cls.model_validate(data)

    @classmethod
    def from_file(cls, path: str | Path | None = None) -> PolicyTable:
        return cls.from_yaml(_read_config(path, "travel_policy.yaml"))

    def lookup(self, grade: str | None) -> PolicyLookup:
        """Resolve a grade (or a level name) to its policy, with default fallback."""

        by_level = {policy.level: policy for policy in self.levels}
        key = grade or ""
        level = self.grade_levels.get(key, key)
        policy = by_level.get(level)
        if policy is not None:
            return PolicyLookup(grade=key, policy=policy, used_default=False)
        logger.warning(
            "No travel policy for grade; using default level",
            extra={"grade": key, "default_level": self.default_level},
        )
        return PolicyLookup(grade=key, policy=by_level[self.default_level], used_default=True)

    def monthly_limit(self, grade: str | None) -> Decimal:
        policy = self.lookup(grade).policy
        if policy.monthly_travel_limit is None:
            return self.monthly_limit_default
        return policy.monthly_travel_limit


__all__ = [
    "GradePolicy",
    "LocationType",
    "PolicyLookup",
    "PolicyTable",
    "RateEntry",
    "RateLookup",
    "RateTable",
    "VehicleType",
]
