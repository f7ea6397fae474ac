"""Tracking and noise-filter settings loaded from YAML."""

from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Annotated

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator


def _default_settings_path() -> Path | None:
    """Return the bundled tracking configuration path if present."""

    for parent in Path(__file__).resolve().parents:
        candidate = parent / "config" / "tracking.yaml"
        if candidate.exists():
            return candidate
    return None


class TrackingSettings(BaseModel):
    """Positioning, noise-filter and fuel price configuration."""

    min_distance_m: Annotated[float, Field(ge=0)] = Field(
        default=5.0, description="Minimum movement for a sample to be accepted"
    )
    low_confidence_accuracy_m: Annotated[float, Field(gt=0)] = Field(
        default=1000.0,
        description="High-accuracy fixes worse than this raise a low-confidence warning",
    )
    coarse_accuracy_ceiling_m: Annotated[float, Field(gt=0)] = Field(
        default=5000.0,
        description="Readings worse than this are flagged as coarse network positioning",
    )
    interval_ms: Annotated[int, Field(gt=0)] = Field(
        default=15000, description="Continuous sampling interval"
    )
    timeout_ms: Annotated[int, Field(gt=0)] = Field(
        default=20000, description="Timeout for a single high-accuracy reading"
    )
    retry_timeout_ms: Annotated[int, Field(gt=0)] = Field(
        default=30000, description="Timeout for the relaxed retry reading"
    )
    max_cache_age_ms: Annotated[int, Field(ge=0)] = Field(
        default=0, description="0 forces a fresh reading"
    )
    high_accuracy: bool = Field(default=True, description="Request high-accuracy fixes")
    fuel_price_per_litre: Annotated[Decimal, Field(gt=0)] = Field(
        default=Decimal("100"), description="Assumed fuel price for entitlement estimates"
    )

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def _check_thresholds(self) -> TrackingSettings:
        if self.coarse_accuracy_ceiling_m < self.low_confidence_accuracy_m:
            msg = "coarse_accuracy_ceiling_m must not be below low_confidence_accuracy_m"
            raise ValueError(msg)
        return self

    @classmethod
    def from_yaml(cls, content: str) -> TrackingSettings:
        """Load settings from YAML content; missing keys keep their defaults."""

        data = yaml.safe_load(content) or {}
        if not isinstance(data, dict):
            raise ValueError("Tracking configuration must be a mapping")
        return cls.model_validate(data.get("tracking", data))

    @classmethod
    def from_file(cls, path: str | Path | None = None) -> TrackingSettings:
        """Load settings from a YAML file, falling back to the bundled defaults."""

        target_path = Path(path) if path is not None else _default_settings_path()
        if target_path is None:
            raise FileNotFoundError("No tracking.yaml configuration file found")
        return cls.from_yaml(target_path.read_text(encoding="utf-8"))

    @classmethod
    def from_environment(cls, env_var: str = "FIELD_TRAVEL_TRACKING") -> TrackingSettings:
        """Load settings from an environment variable containing YAML."""

        content = os.getenv(env_var)
        if not content:
            raise ValueError(f"Environment variable '{env_var}' is not set or empty")
        return cls.from_yaml(content)
