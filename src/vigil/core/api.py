"""External API call tracking: latency, success rate, rate limits, stability."""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, TypeVar

from vigil.core.scheduler import Clock, SystemClock
from vigil.models.enums import Stability, Trend
from vigil.models.metrics import ApiMetrics, ApiOutcome, CombinedApiMetrics, clamp_score

logger = logging.getLogger("vigil.api")

T = TypeVar("T")

RECENT_LIMIT = 100
STABILITY_WINDOW = 20
STABILITY_MIN_SAMPLES = 5
TREND_MIN_SAMPLES = 3
TREND_BAND = 10.0  # percent

RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "429", "quota exceeded")

STABILITY_SCORES: dict[Stability, float] = {
    Stability.EXCELLENT: 100.0,
    Stability.GOOD: 85.0,
    Stability.FAIR: 70.0,
    Stability.UNSTABLE: 50.0,
    Stability.POOR: 25.0,
    Stability.INSUFFICIENT_DATA: 75.0,
}


@dataclass(slots=True)
class _ApiCounters:
    requests: int = 0
    total_latency_ms: float = 0.0
    errors: int = 0
    rate_limits: int = 0
    last_latency_ms: float = 0.0
    recent: deque = field(default_factory=lambda: deque(maxlen=RECENT_LIMIT))


def is_rate_limit_error(error: BaseException | str) -> bool:
    """True when an error message reads like a rate-limit rejection."""
    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def assess_stability(outcomes: list[ApiOutcome]) -> Stability:
    """Label the last ``STABILITY_WINDOW`` outcomes by success rate and latency spread."""
    if len(outcomes) < STABILITY_MIN_SAMPLES:
        return Stability.INSUFFICIENT_DATA

    window = outcomes[-STABILITY_WINDOW:]
    success_rate = sum(1 for o in window if o.succeeded) / len(window) * 100
    latencies = [o.elapsed_ms for o in window]
    mean = sum(latencies) / len(latencies)
    variance = sum((v - mean) ** 2 for v in latencies) / len(latencies)
    cv = math.sqrt(variance) / mean if mean > 0 else 0.0

    if success_rate >= 95 and cv < 0.3:
        return Stability.EXCELLENT
    if success_rate >= 90 and cv < 0.5:
        return Stability.GOOD
    if success_rate >= 80 and cv < 0.7:
        return Stability.FAIR
    if success_rate >= 70:
        return Stability.UNSTABLE
    return Stability.POOR


def _gateway_stability(score: float) -> Stability:
    if score >= 90:
        return Stability.EXCELLENT
    if score >= 80:
        return Stability.GOOD
    if score >= 60:
        return Stability.FAIR
    if score >= 40:
        return Stability.UNSTABLE
    return Stability.POOR


def combined_trend(trends: Iterable[Trend]) -> Trend:
    """Majority vote of per-API trends, ignoring those without data."""
    known = [t for t in trends if t is not Trend.INSUFFICIENT_DATA]
    if not known:
        return Trend.INSUFFICIENT_DATA
    improving = known.count(Trend.IMPROVING)
    degrading = known.count(Trend.DEGRADING)
    if improving > degrading:
        return Trend.IMPROVING
    if degrading > improving:
        return Trend.DEGRADING
    return Trend.STABLE


class APIMonitor:
    """Per-API rolling counters. API names are case-insensitive."""

    def __init__(self, clock: Clock | None = None, apis: Iterable[str] = ()) -> None:
        self._clock = clock or SystemClock()
        self._configured = tuple(name.lower() for name in apis)
        self._apis: dict[str, _ApiCounters] = {}
        self.reset()

    def reset(self) -> None:
        """Forget all outcomes and restart the requests-per-hour clock."""
        self._apis = {name: _ApiCounters() for name in self._configured}
        self._started = self._clock.now()

    def tracked_apis(self) -> list[str]:
        return sorted(self._apis)

    def record_outcome(
        self,
        api_name: str,
        elapsed_ms: float,
        succeeded: bool,
        rate_limited: bool = False,
        error: str | None = None,
    ) -> ApiOutcome:
        elapsed = float(elapsed_ms)
        if not math.isfinite(elapsed):
            raise ValueError(f"elapsed_ms must be finite, got {elapsed_ms!r}")
        elapsed = max(0.0, elapsed)
        name = api_name.lower()
        counters = self._apis.setdefault(name, _ApiCounters())

        counters.requests += 1
        counters.total_latency_ms += elapsed
        counters.last_latency_ms = elapsed
        if not succeeded:
            counters.errors += 1
        if rate_limited:
            counters.rate_limits += 1

        outcome = ApiOutcome(
            api_name=name,
            elapsed_ms=elapsed,
            succeeded=succeeded,
            rate_limited=rate_limited,
            error=error,
            recorded_at=self._clock.utcnow(),
        )
        counters.recent.append(outcome)
        return outcome

    async def track(
        self, api_name: str, call: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Await ``call``, recording its latency and outcome. Errors are re-raised."""
        started = time.perf_counter()
        try:
            result = await call(*args, **kwargs)
        except Exception as exc:
            elapsed = (time.perf_counter() - started) * 1000
            self.record_outcome(
                api_name,
                elapsed,
                succeeded=False,
                rate_limited=is_rate_limit_error(exc),
                error=str(exc),
            )
            logger.info("%s call failed after %.0fms: %s", api_name, elapsed, exc)
            raise
        self.record_outcome(api_name, (time.perf_counter() - started) * 1000, succeeded=True)
        return result

    def metrics(self, api_name: str) -> ApiMetrics:
        name = api_name.lower()
        counters = self._apis.get(name)
        if counters is None or counters.requests == 0:
            return ApiMetrics(
                api_name=name,
                total_requests=0,
                avg_latency_ms=0.0,
                success_rate=100.0,
                rate_limit_rate=0.0,
                requests_per_hour=0.0,
                stability=Stability.INSUFFICIENT_DATA,
            )

        total = counters.requests
        hours = (self._clock.now() - self._started) / 3600
        return ApiMetrics(
            api_name=name,
            total_requests=total,
            avg_latency_ms=round(counters.total_latency_ms / total, 2),
            success_rate=round((total - counters.errors) / total * 100, 2),
            rate_limit_rate=round(counters.rate_limits / total * 100, 2),
            requests_per_hour=round(total / hours, 2) if hours > 0 else 0.0,
            stability=assess_stability(list(counters.recent)),
            last_latency_ms=counters.last_latency_ms,
        )

    def combined_metrics(self, names: Iterable[str] | None = None) -> CombinedApiMetrics:
        selected = [n.lower() for n in names] if names is not None else self.tracked_apis()
        per_api = [self.metrics(n) for n in selected]
        total = sum(m.total_requests for m in per_api)

        if total:
            avg_latency = sum(m.avg_latency_ms * m.total_requests for m in per_api) / total
        else:
            avg_latency = 0.0
        success = sum(m.success_rate for m in per_api) / len(per_api) if per_api else 100.0
        if per_api:
            stability_score = sum(STABILITY_SCORES[m.stability] for m in per_api) / len(per_api)
        else:
            stability_score = STABILITY_SCORES[Stability.INSUFFICIENT_DATA]

        health = 100.0
        if success < 90:
            health -= 20
        elif success < 95:
            health -= 10
        if avg_latency > 10_000:
            health -= 20
        elif avg_latency > 5_000:
            health -= 10
        if total == 0:
            health = 50.0

        return CombinedApiMetrics(
            apis=tuple(selected),
            total_requests=total,
            avg_latency_ms=round(avg_latency, 2),
            success_rate=round(success, 2),
            stability=_gateway_stability(stability_score),
            health_score=clamp_score(health),
        )

    def trends(self, window_minutes: float = 60) -> dict[str, Trend]:
        """Latency trend per API: first half of the window against the second."""
        cutoff = self._clock.utcnow() - timedelta(minutes=window_minutes)
        result = {}
        for name, counters in sorted(self._apis.items()):
            latencies = [o.elapsed_ms for o in counters.recent if o.recorded_at >= cutoff]
            result[name] = self._latency_trend(latencies)
        return result

    @staticmethod
    def _latency_trend(latencies: list[float]) -> Trend:
        if len(latencies) < TREND_MIN_SAMPLES:
            return Trend.INSUFFICIENT_DATA
        mid = len(latencies) // 2
        first = sum(latencies[:mid]) / mid
        second = sum(latencies[mid:]) / (len(latencies) - mid)
        if first == 0:
            return Trend.STABLE if second == 0 else Trend.DEGRADING
        improvement = (first - second) / first * 100
        if improvement > TREND_BAND:
            return Trend.IMPROVING
        if improvement < -TREND_BAND:
            return Trend.DEGRADING
        return Trend.STABLE

    def export(self) -> dict:
        """Raw copy of every counter and recent buffer."""
        return {
            "started_at": self._started,
            "exported_at": self._clock.now(),
            "apis": {
                name: {
                    "requests": c.requests,
                    "total_latency_ms": c.total_latency_ms,
                    "errors": c.errors,
                    "rate_limits": c.rate_limits,
                    "last_latency_ms": c.last_latency_ms,
                    "recent": [asdict(o) for o in c.recent],
                }
                for name, c in sorted(self._apis.items())
            },
        }
