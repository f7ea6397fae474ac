"""Location sampling from a positioning source.

The sampler wraps any :class:`PositioningSource` with single-shot reads, a
relaxed retry helper and a cancellable periodic stream. It classifies the
quality of every reading but never discards one; dropping noise is the job of
the distance filter.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol

from .exceptions import PositioningError, PositioningErrorKind, SamplerAlreadyRunningError
from .logging_config import get_logger
from .models import LocationSample
from .settings import TrackingSettings

logger = get_logger("location")

HIGH_QUALITY_ACCURACY_M = 50.0
GOOD_QUALITY_ACCURACY_M = 200.0


@dataclass(frozen=True)
class PositionRequest:
    """Options for a single positioning read."""

    high_accuracy: bool
    timeout_ms: int
    max_cache_age_ms: int = 0


class PositioningSource(Protocol):
    """Anything able to produce a location reading.

    Implementations must return within ``request.timeout_ms`` or raise a
    :class:`PositioningError` of kind ``TIMEOUT``, and must not serve a cached
    fix when ``request.max_cache_age_ms`` is 0.
    """

    def read(self, request: PositionRequest) -> LocationSample: ...


class SampleQuality(str, Enum):
    """Confidence class of a reading derived from its reported accuracy."""

    HIGH = "high"
    GOOD = "good"
    FAIR = "fair"
    LOW_CONFIDENCE = "low_confidence"
    COARSE = "coarse"
    UNKNOWN = "unknown"


def classify_quality(
    sample: LocationSample,
    *,
    high_accuracy: bool,
    settings: TrackingSettings,
) -> SampleQuality:
    """Classify a reading; coarse and low-confidence fixes are flagged, not dropped."""

    accuracy = sample.accuracy
    if accuracy is None:
        # A fix without accuracy cannot satisfy a high-accuracy request.
        return SampleQuality.LOW_CONFIDENCE if high_accuracy else SampleQuality.UNKNOWN
    if accuracy > settings.coarse_accuracy_ceiling_m:
        return SampleQuality.COARSE
    if high_accuracy and accuracy > settings.low_confidence_accuracy_m:
        return SampleQuality.LOW_CONFIDENCE
    if accuracy < HIGH_QUALITY_ACCURACY_M:
        return SampleQuality.HIGH
    if accuracy < GOOD_QUALITY_ACCURACY_M:
        return SampleQuality.GOOD
    return SampleQuality.FAIR


@dataclass(frozen=True)
class AcquiredSample:
    """A reading together with the quality flag callers must surface."""

    sample: LocationSample
    quality: SampleQuality
    high_accuracy_requested: bool
    from_cache: bool = False

    @property
    def low_confidence(self) -> bool:
        return self.quality in (SampleQuality.LOW_CONFIDENCE, SampleQuality.COARSE)


SampleCallback = Callable[[AcquiredSample], None]
ErrorCallback = Callable[[PositioningError], None]


class LocationSubscription:
    """Handle for a running continuous stream; call :meth:`cancel` to stop it."""

    def __init__(
        self,
        sampler: LocationSampler,
        *,
        interval_ms: int,
        high_accuracy: bool,
        on_sample: SampleCallback,
        on_error: ErrorCallback | None,
    ) -> None:
        self._sampler = sampler
        self._interval_s = interval_ms / 1000.0
        self._high_accuracy = high_accuracy
        self._on_sample = on_sample
        self._on_error = on_error
        self._stopped = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name="location-subscription", daemon=True
        )

    @property
    def active(self) -> bool:
        return not self._stopped.is_set()

    def _start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        try:
            while not self._stopped.is_set():
                try:
                    acquired = self._sampler.acquire_once(high_accuracy=self._high_accuracy)
                except PositioningError as exc:
                    if self._on_error is not None:
                        self._on_error(exc)
                    else:
                        logger.warning(
                            "Continuous location read failed",
                            extra={"error_code": exc.code, "detail": exc.detail},
                        )
                else:
                    if not self._stopped.is_set():
                        self._on_sample(acquired)
                self._stopped.wait(self._interval_s)
        finally:
            # A callback that raises ends the stream and frees the sampler slot.
            self._stopped.set()
            self._sampler._release(self)

    def cancel(self, timeout: float | None = 5.0) -> None:
        """Stop the stream; safe to call more than once or from a callback."""

        self._stopped.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout)
        self._sampler._release(self)


class LocationSampler:
    """Acquire classified location readings from a positioning source."""

    def __init__(
        self,
        source: PositioningSource | None,
        settings: TrackingSettings | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.source = source
        self.settings = settings or TrackingSettings()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._cached: LocationSample | None = None
        self._cached_at: datetime | None = None
        self._lock = threading.Lock()
        self._subscription: LocationSubscription | None = None

    def _cached_within(self, max_cache_age_ms: int) -> LocationSample | None:
        if max_cache_age_ms <= 0 or self._cached is None or self._cached_at is None:
            return None
        age_ms = (self._clock() - self._cached_at).total_seconds() * 1000
        return self._cached if age_ms <= max_cache_age_ms else None

    def acquire_once(
        self,
        high_accuracy: bool | None = None,
        timeout_ms: int | None = None,
        max_cache_age_ms: int | None = None,
    ) -> AcquiredSample:
        """Take one reading, or raise a classified :class:`PositioningError`.

        ``max_cache_age_ms=0`` always goes to the source for a fresh fix.
        """

        if self.source is None:
            raise PositioningError(PositioningErrorKind.UNSUPPORTED)

        request = PositionRequest(
            high_accuracy=self.settings.high_accuracy if high_accuracy is None else high_accuracy,
            timeout_ms=self.settings.timeout_ms if timeout_ms is None else timeout_ms,
            max_cache_age_ms=(
                self.settings.max_cache_age_ms if max_cache_age_ms is None else max_cache_age_ms
            ),
        )
        if request.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
        if request.max_cache_age_ms < 0:
            raise ValueError("max_cache_age_ms must not be negative")

        with self._lock:
            cached = self._cached_within(request.max_cache_age_ms)
        if cached is not None:
            return AcquiredSample(
                sample=cached,
                quality=classify_quality(
                    cached, high_accuracy=request.high_accuracy, settings=self.settings
                ),
                high_accuracy_requested=request.high_accuracy,
                from_cache=True,
            )

        sample = self.source.read(request)
        with self._lock:
            self._cached = sample
            self._cached_at = self._clock()

        quality = classify_quality(
            sample, high_accuracy=request.high_accuracy, settings=self.settings
        )
        if quality in (SampleQuality.LOW_CONFIDENCE, SampleQuality.COARSE):
            logger.warning(
                "Low confidence location fix",
                extra={"accuracy_m": sample.accuracy, "quality": quality.value},
            )
        return AcquiredSample(
            sample=sample, quality=quality, high_accuracy_requested=request.high_accuracy
        )

    def acquire_with_fallback(self) -> AcquiredSample:
        """Fresh high-accuracy read, then one relaxed retry on failure or poor accuracy.

        Permission and support errors are raised immediately since a relaxed
        retry cannot fix them.
        """

        try:
            first = self.acquire_once(
                high_accuracy=True,
                timeout_ms=self.settings.timeout_ms,
                max_cache_age_ms=0,
            )
        except PositioningError as exc:
            if exc.kind in (
                PositioningErrorKind.PERMISSION_DENIED,
                PositioningErrorKind.UNSUPPORTED,
            ):
                raise
            logger.info(
                "High accuracy read failed; retrying with relaxed settings",
                extra={"error_code": exc.code},
            )
            return self.acquire_once(
                high_accuracy=False,
                timeout_ms=self.settings.retry_timeout_ms,
                max_cache_age_ms=0,
            )

        if not first.low_confidence:
            return first

        try:
            retry = self.acquire_once(
                high_accuracy=False,
                timeout_ms=self.settings.retry_timeout_ms,
                max_cache_age_ms=0,
            )
        except PositioningError as exc:
            logger.info(
                "Relaxed retry failed; keeping first reading",
                extra={"error_code": exc.code},
            )
            return first
        if _accuracy_or_inf(retry.sample) < _accuracy_or_inf(first.sample):
            return retry
        return first

    def start_continuous(
        self,
        on_sample: SampleCallback,
        *,
        interval_ms: int | None = None,
        high_accuracy: bool | None = None,
        on_error: ErrorCallback | None = None,
    ) -> LocationSubscription:
        """Begin periodic reads forwarded to ``on_sample``.

        Only one stream may run per sampler; cancel the returned subscription
        before starting another.
        """

        interval = self.settings.interval_ms if interval_ms is None else interval_ms
        if interval <= 0:
            raise ValueError("interval_ms must be positive")
        with self._lock:
            if self._subscription is not None and self._subscription.active:
                raise SamplerAlreadyRunningError()
            subscription = LocationSubscription(
                self,
                interval_ms=interval,
                high_accuracy=self.settings.high_accuracy if high_accuracy is None else high_accuracy,
                on_sample=on_sample,
                on_error=on_error,
            )
            self._subscription = subscription
        subscription._start()
        return subscription

    def _release(self, subscription: LocationSubscription) -> None:
        with self._lock:
            if self._subscription is subscription:
                self._subscription = None

    @property
    def streaming(self) -> bool:
        with self._lock:
            return self._subscription is not None and self._subscription.active


def _accuracy_or_inf(sample: LocationSample) -> float:
    return sample.accuracy if sample.accuracy is not None else float("inf")


@dataclass
class ReplaySource:
    """Positioning source that plays back recorded readings and failures.

    Each ``read`` consumes the next item; a :class:`PositioningError` item is
    raised instead of returned. An exhausted source reports ``UNAVAILABLE``.
    """

    readings: Iterable[LocationSample | PositioningError] = ()
    requests: list[PositionRequest] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._queue: deque[LocationSample | PositioningError] = deque(self.readings)
        self._lock = threading.Lock()

    def read(self, request: PositionRequest) -> LocationSample:
        with self._lock:
            self.requests.append(request)
            if not self._queue:
                raise PositioningError(PositioningErrorKind.UNAVAILABLE, "replay exhausted")
            item = self._queue.popleft()
        if isinstance(item, PositioningError):
            raise item
        return item

    @property
    def remaining(self) -> int:
        with self._lock:
            return len(self._queue)


__all__ = [
    "AcquiredSample",
    "LocationSampler",
    "LocationSubscription",
    "PositionRequest",
    "PositioningSource",
    "ReplaySource",
    "SampleQuality",
    "classify_quality",
]
