"""Haversine distance and the minimum-movement noise filter."""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass

from .models import LocationSample

EARTH_RADIUS_M = 6_371_000.0
DEFAULT_MIN_DISTANCE_M = 5.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two coordinates in meters."""

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def sample_distance_m(first: LocationSample, second: LocationSample) -> float:
    return haversine_m(first.latitude, first.longitude, second.latitude, second.longitude)


@dataclass(frozen=True)
class SampleDecision:
    """Whether a candidate sample extends the route, and by how much."""

    accepted: bool
    increment_m: float

    @property
    def increment_km(self) -> float:
        return self.increment_m / 1000.0


def evaluate_candidate(
    last_accepted: LocationSample | None,
    candidate: LocationSample,
    min_distance_m: float = DEFAULT_MIN_DISTANCE_M,
) -> SampleDecision:
    """Decide whether ``candidate`` is accepted after ``last_accepted``.

    The first sample is always accepted with no distance. Later candidates are
    accepted only when they moved at least ``min_distance_m`` from the last
    accepted sample; anything closer is dropped outright. Reported accuracy
    plays no part here; low-quality readings are flagged by the sampler.
    """

    if min_distance_m < 0:
        raise ValueError("min_distance_m must be non-negative")
    if last_accepted is None:
        return SampleDecision(accepted=True, increment_m=0.0)

    distance = sample_distance_m(last_accepted, candidate)
    if distance < min_distance_m:
        return SampleDecision(accepted=False, increment_m=0.0)
    return SampleDecision(accepted=True, increment_m=distance)


@dataclass
class DistanceAccumulator:
    """Running total over a stream of candidate samples.

    Holds nothing but the last accepted sample and the total; all decisions are
    delegated to :func:`evaluate_candidate`.
    """

    min_distance_m: float = DEFAULT_MIN_DISTANCE_M
    last_accepted: LocationSample | None = None
    total_km: float = 0.0

    def offer(self, candidate: LocationSample) -> SampleDecision:
        decision = evaluate_candidate(self.last_accepted, candidate, self.min_distance_m)
        if decision.accepted:
            self.last_accepted = candidate
            self.total_km += decision.increment_km
        return decision


def recompute_distance(
    samples: Iterable[LocationSample],
    min_distance_m: float = DEFAULT_MIN_DISTANCE_M,
) -> float:
    """Rebuild a cumulative distance in kilometers from an ordered sample sequence."""

    accumulator = DistanceAccumulator(min_distance_m=min_distance_m)
    for sample in samples:
        accumulator.offer(sample)
    return accumulator.total_km


__all__ = [
    "DEFAULT_MIN_DISTANCE_M",
    "DistanceAccumulator",
    "EARTH_RADIUS_M",
    "SampleDecision",
    "evaluate_candidate",
    "haversine_m",
    "recompute_distance",
    "sample_distance_m",
]
