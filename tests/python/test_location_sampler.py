from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import pytest

from field_travel_expense import (
    LocationSampler,
    PositioningError,
    PositioningErrorKind,
    ReplaySource,
    SampleQuality,
    SamplerAlreadyRunningError,
    TrackingSettings,
)
from field_travel_expense.location import classify_quality


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 10, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


@pytest.mark.parametrize(
    ("accuracy", "high_accuracy", "expected"),
    [
        (None, True, SampleQuality.LOW_CONFIDENCE),
        (None, False, SampleQuality.UNKNOWN),
        (10.0, True, SampleQuality.HIGH),
        (120.0, True, SampleQuality.GOOD),
        (600.0, True, SampleQuality.FAIR),
        (1500.0, True, SampleQuality.LOW_CONFIDENCE),
        (1500.0, False, SampleQuality.FAIR),
        (8000.0, True, SampleQuality.COARSE),
        (8000.0, False, SampleQuality.COARSE),
    ],
)
def test_classify_quality(sample_factory, accuracy, high_accuracy, expected) -> None:
    sample = sample_factory(accuracy=accuracy)

    quality = classify_quality(sample, high_accuracy=high_accuracy, settings=TrackingSettings())

    assert quality == expected


def test_acquire_once_returns_classified_sample(sample_factory) -> None:
    source = ReplaySource([sample_factory(accuracy=1500.0)])
    sampler = LocationSampler(source)

    acquired = sampler.acquire_once(high_accuracy=True)

    assert acquired.quality == SampleQuality.LOW_CONFIDENCE
    assert acquired.low_confidence is True
    assert acquired.from_cache is False
    assert source.requests[0].high_accuracy is True
    assert source.requests[0].max_cache_age_ms == 0


def test_reading_without_accuracy_is_low_confidence_for_precise_requests(sample_factory) -> None:
    sampler = LocationSampler(ReplaySource([sample_factory(accuracy=None)]))

    acquired = sampler.acquire_once(high_accuracy=True)

    assert acquired.quality == SampleQuality.LOW_CONFIDENCE
    assert acquired.low_confidence is True


def test_acquire_once_without_source_is_unsupported() -> None:
    sampler = LocationSampler(None)

    with pytest.raises(PositioningError) as excinfo:
        sampler.acquire_once()

    assert excinfo.value.kind == PositioningErrorKind.UNSUPPORTED
    assert excinfo.value.code == "UNSUPPORTED"


def test_acquire_once_surfaces_classified_errors() -> None:
    source = ReplaySource([PositioningError(PositioningErrorKind.PERMISSION_DENIED)])
    sampler = LocationSampler(source)

    with pytest.raises(PositioningError) as excinfo:
        sampler.acquire_once()

    assert excinfo.value.kind == PositioningErrorKind.PERMISSION_DENIED
    assert excinfo.value.user_message == "Location access denied by user"


def test_zero_cache_age_always_reads_fresh(sample_factory) -> None:
    first = sample_factory()
    second = sample_factory(lat_offset=0.001)
    source = ReplaySource([first, second])
    sampler = LocationSampler(source, clock=_Clock())

    assert sampler.acquire_once(max_cache_age_ms=0).sample == first
    assert sampler.acquire_once(max_cache_age_ms=0).sample == second
    assert source.remaining == 0


def test_cached_reading_served_within_max_age(sample_factory) -> None:
    clock = _Clock()
    first = sample_factory()
    source = ReplaySource([first, sample_factory(lat_offset=0.001)])
    sampler = LocationSampler(source, clock=clock)
    sampler.acquire_once(max_cache_age_ms=0)

    clock.now += timedelta(seconds=5)
    cached = sampler.acquire_once(max_cache_age_ms=10_000)

    assert cached.sample == first
    assert cached.from_cache is True
    assert source.remaining == 1

    clock.now += timedelta(seconds=30)
    assert sampler.acquire_once(max_cache_age_ms=10_000).from_cache is False


def test_non_positive_timeout_is_rejected(sample_factory) -> None:
    sampler = LocationSampler(ReplaySource([sample_factory()]))

    with pytest.raises(ValueError, match="timeout_ms"):
        sampler.acquire_once(timeout_ms=0)


def test_fallback_retries_with_relaxed_settings_after_timeout(sample_factory) -> None:
    relaxed = sample_factory(accuracy=300.0)
    source = ReplaySource([PositioningError(PositioningErrorKind.TIMEOUT), relaxed])
    settings = TrackingSettings(timeout_ms=1000, retry_timeout_ms=4000)
    sampler = LocationSampler(source, settings)

    acquired = sampler.acquire_with_fallback()

    assert acquired.sample == relaxed
    first_request, retry_request = source.requests
    assert first_request.high_accuracy is True
    assert first_request.timeout_ms == 1000
    assert retry_request.high_accuracy is False
    assert retry_request.timeout_ms == 4000
    assert retry_request.max_cache_age_ms == 0


def test_fallback_does_not_retry_permission_denied() -> None:
    source = ReplaySource([PositioningError(PositioningErrorKind.PERMISSION_DENIED)])
    sampler = LocationSampler(source)

    with pytest.raises(PositioningError) as excinfo:
        sampler.acquire_with_fallback()

    assert excinfo.value.kind == PositioningErrorKind.PERMISSION_DENIED
    assert len(source.requests) == 1


def test_fallback_raises_when_both_attempts_fail() -> None:
    source = ReplaySource(
        [
            PositioningError(PositioningErrorKind.TIMEOUT),
            PositioningError(PositioningErrorKind.UNAVAILABLE, "no fix"),
        ]
    )
    sampler = LocationSampler(source)

    with pytest.raises(PositioningError) as excinfo:
        sampler.acquire_with_fallback()

    assert excinfo.value.kind == PositioningErrorKind.UNAVAILABLE
    assert excinfo.value.detail == "no fix"


def test_fallback_keeps_more_accurate_reading(sample_factory) -> None:
    poor = sample_factory(accuracy=2500.0)
    better = sample_factory(accuracy=400.0)
    source = ReplaySource([poor, better])
    sampler = LocationSampler(source)

    assert sampler.acquire_with_fallback().sample == better


def test_fallback_keeps_first_low_confidence_reading_when_retry_fails(sample_factory) -> None:
    poor = sample_factory(accuracy=2500.0)
    source = ReplaySource([poor, PositioningError(PositioningErrorKind.TIMEOUT)])
    sampler = LocationSampler(source)

    acquired = sampler.acquire_with_fallback()

    assert acquired.sample == poor
    assert acquired.low_confidence is True


def test_continuous_stream_forwards_samples_until_cancelled(sample_factory) -> None:
    readings = [sample_factory(lat_offset=0.001 * index) for index in range(3)]
    source = ReplaySource(readings)
    sampler = LocationSampler(source)
    received = []
    done = threading.Event()

    def _on_sample(acquired) -> None:
        received.append(acquired.sample)
        if len(received) == 3:
            done.set()

    subscription = sampler.start_continuous(_on_sample, interval_ms=1)
    assert done.wait(5)
    subscription.cancel()

    assert received == readings
    assert subscription.active is False
    assert sampler.streaming is False


def test_second_stream_is_a_usage_error(sample_factory) -> None:
    source = ReplaySource([sample_factory() for _ in range(100)])
    sampler = LocationSampler(source)
    subscription = sampler.start_continuous(lambda acquired: None, interval_ms=50)
    try:
        with pytest.raises(SamplerAlreadyRunningError):
            sampler.start_continuous(lambda acquired: None, interval_ms=50)
    finally:
        subscription.cancel()

    replacement = sampler.start_continuous(lambda acquired: None, interval_ms=50)
    replacement.cancel()


def test_stream_reports_errors_to_callback() -> None:
    source = ReplaySource([PositioningError(PositioningErrorKind.TIMEOUT)])
    sampler = LocationSampler(source)
    errors: list[PositioningError] = []
    seen = threading.Event()

    def _on_error(exc: PositioningError) -> None:
        errors.append(exc)
        seen.set()

    subscription = sampler.start_continuous(
        lambda acquired: None, interval_ms=10, on_error=_on_error
    )
    assert seen.wait(5)
    subscription.cancel()

    assert errors[0].kind == PositioningErrorKind.TIMEOUT
