"""Cross-monitor health snapshots, anomaly detection, and trend projection."""

from __future__ import annotations

import logging
import uuid
from collections import deque
from collections.abc import Callable
from datetime import timedelta

from vigil.core.agents import AgentMonitor
from vigil.core.api import APIMonitor
from vigil.core.scheduler import Clock, Job, Scheduler, SystemClock
from vigil.core.security import SecurityMonitor
from vigil.core.system import SystemMonitor
from vigil.models.enums import Category, Confidence, Metric, Risk, Severity, Stability, Trend
from vigil.models.metrics import (
    AgentMetrics,
    Anomaly,
    CombinedApiMetrics,
    HealthSnapshot,
    MetricSample,
    Prediction,
    PredictionSet,
    SecurityMetrics,
    SystemMetrics,
    clamp_score,
)

logger = logging.getLogger("vigil.analytics")

WEIGHTS: dict[Category, float] = {
    Category.SYSTEM: 0.30,
    Category.API: 0.25,
    Category.AGENTS: 0.25,
    Category.SECURITY: 0.20,
}

HISTORY_RETENTION = timedelta(hours=24)
DERIVED_RETENTION = timedelta(hours=6)
RECENT_ANOMALY_WINDOW = timedelta(hours=1)

ANOMALY_MIN_SNAPSHOTS = 20
BASELINE_WINDOW = 60
PREDICTION_MIN_SNAPSHOTS = 30
PREDICTION_WINDOW = 30
TREND_MIN_SNAPSHOTS = 10
TREND_WINDOW = 20
STABILITY_INDEX_WINDOW = 10
TREND_BAND = 5.0  # percent
RECOMMEND_BELOW = 70.0
NEUTRAL_SCORE = 50.0

STABILITY_PENALTIES: dict[Stability, float] = {
    Stability.EXCELLENT: 0.0,
    Stability.GOOD: 5.0,
    Stability.FAIR: 15.0,
    Stability.UNSTABLE: 30.0,
    Stability.POOR: 50.0,
    Stability.INSUFFICIENT_DATA: 10.0,
}

RECOMMENDATIONS: dict[Category, dict[str, str]] = {
    Category.SYSTEM: {
        "priority": "high",
        "recommendation": "Reduce host load",
        "action": "Consider reducing active processes or adding resources",
    },
    Category.API: {
        "priority": "medium",
        "recommendation": "Improve API gateway stability",
        "action": "Add response caching and connection pooling",
    },
    Category.AGENTS: {
        "priority": "medium",
        "recommendation": "Strengthen client connections",
        "action": "Add client health checks and automatic reconnection",
    },
    Category.SECURITY: {
        "priority": "high",
        "recommendation": "Reinforce security barriers",
        "action": "Enable additional monitoring and intrusion detection",
    },
}


# -- category scoring -----------------------------------------------------


def score_system(m: SystemMetrics) -> float:
    score = 100.0
    if m.cpu_percent > 90:
        score -= 30
    elif m.cpu_percent > 70:
        score -= 15
    if m.memory_percent > 95:
        score -= 30
    elif m.memory_percent > 80:
        score -= 15
    if m.disk_percent > 95:
        score -= 25
    elif m.disk_percent > 85:
        score -= 10
    return clamp_score(score)


def score_api(m: CombinedApiMetrics) -> float:
    score = 100.0
    if m.avg_latency_ms > 10_000:
        score -= 40
    elif m.avg_latency_ms > 5_000:
        score -= 20
    score -= STABILITY_PENALTIES.get(m.stability, 0.0)
    return clamp_score(score)


def score_agents(m: AgentMetrics) -> float:
    score = 100.0
    if m.active_connections == 0:
        score -= 50
    elif m.active_connections < 2:
        score -= 20
    if m.messages_per_minute == 0:
        score -= 30
    elif m.messages_per_minute < 5:
        score -= 15
    if m.stability_score < 50:
        score -= 20
    elif m.stability_score < 70:
        score -= 10
    return clamp_score(score)


def score_security(m: SecurityMetrics) -> float:
    score = 100.0
    if m.threat.level > 60:
        score -= 40
    elif m.threat.level > 30:
        score -= 20
    if m.intrusion_attempts > 50:
        score -= 30
    elif m.intrusion_attempts > 20:
        score -= 15
    if m.barrier_strength < 50:
        score -= 20
    elif m.barrier_strength < 70:
        score -= 10
    return clamp_score(score)


def weighted_overall(scores: dict[Category, float]) -> float:
    """Weighted mean over the categories present, weights re-normalised."""
    total_weight = sum(WEIGHTS[c] for c in scores)
    if total_weight <= 0:
        return 0.0
    return clamp_score(sum(WEIGHTS[c] * s for c, s in scores.items()) / total_weight)


# -- small statistics helpers ---------------------------------------------


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _variance(values: list[float]) -> float:
    if not values:
        return 0.0
    mean = _mean(values)
    return sum((v - mean) ** 2 for v in values) / len(values)


def ols_slope(values: list[float]) -> float:
    """Least-squares slope of ``values`` against 0..n-1."""
    n = len(values)
    if n < 2:
        return 0.0
    sum_x = n * (n - 1) / 2
    sum_xx = sum(x * x for x in range(n))
    sum_y = sum(values)
    sum_xy = sum(x * y for x, y in enumerate(values))
    denominator = n * sum_xx - sum_x * sum_x
    return (n * sum_xy - sum_x * sum_y) / denominator if denominator else 0.0


def _relative_trend(change: float, base: float) -> Trend:
    if base <= 0:
        pct = 0.0 if change == 0 else (100.0 if change > 0 else -100.0)
    else:
        pct = change / base * 100
    if pct > TREND_BAND:
        return Trend.IMPROVING
    if pct < -TREND_BAND:
        return Trend.DEGRADING
    return Trend.STABLE


def _risk(trend: Trend, current: float) -> Risk:
    if trend is Trend.DEGRADING and current < 50:
        return Risk.HIGH
    if trend is Trend.DEGRADING and current < 70:
        return Risk.MEDIUM
    if trend is Trend.STABLE and current < 40:
        return Risk.MEDIUM
    return Risk.LOW


def _confidence(overall: list[float]) -> Confidence:
    variance = _variance(overall)
    if variance < 10:
        return Confidence.HIGH
    if variance < 25:
        return Confidence.MEDIUM
    return Confidence.LOW


class HealthAnalytics:
    """The only component that reads every monitor.

    Each cycle captures a ``HealthSnapshot``, checks the newest snapshot
    against a trailing baseline, and projects a linear trend per category.
    """

    def __init__(
        self,
        system: SystemMonitor,
        api: APIMonitor,
        agents: AgentMonitor,
        security: SecurityMonitor,
        clock: Clock | None = None,
        interval: float = 60.0,
    ) -> None:
        self._system = system
        self._api = api
        self._agents = agents
        self._security = security
        self._clock = clock or SystemClock()
        self._interval = interval
        self._history: deque[HealthSnapshot] = deque()
        self._anomalies: deque[Anomaly] = deque()
        self._predictions: deque[PredictionSet] = deque()

    # -- capture ----------------------------------------------------------

    def _read_system(self) -> tuple[float, dict[Metric, float]]:
        m = self._system.sample()
        return score_system(m), {
            Metric.CPU: m.cpu_percent,
            Metric.MEMORY: m.memory_percent,
            Metric.STORAGE: m.disk_percent,
        }

    def _read_api(self) -> tuple[float, dict[Metric, float]]:
        m = self._api.combined_metrics()
        return score_api(m), {
            Metric.API_LATENCY: m.avg_latency_ms,
            Metric.API_SUCCESS_RATE: m.success_rate,
        }

    def _read_agents(self) -> tuple[float, dict[Metric, float]]:
        m = self._agents.metrics()
        return score_agents(m), {
            Metric.CONNECTIONS: float(m.active_connections),
            Metric.MESSAGE_FLOW: float(m.messages_per_minute),
        }

    def _read_security(self) -> tuple[float, dict[Metric, float]]:
        m = self._security.metrics()
        return score_security(m), {Metric.THREAT_LEVEL: m.threat.level}

    def _readers(self) -> tuple[tuple[Category, Callable[[], tuple[float, dict]]], ...]:
        return (
            (Category.SYSTEM, self._read_system),
            (Category.API, self._read_api),
            (Category.AGENTS, self._read_agents),
            (Category.SECURITY, self._read_security),
        )

    def capture(self) -> HealthSnapshot | None:
        """Score every monitor that can be read. None if none could."""
        stamp = self._clock.utcnow()
        scores: dict[Category, float] = {}
        readings: list[MetricSample] = []
        missing: list[Category] = []

        for category, read in self._readers():
            try:
                score, values = read()
            except Exception:
                logger.exception("Cannot read %s monitor; leaving it out", category.value)
                missing.append(category)
                continue
            scores[category] = round(score, 1)
            readings.extend(
                MetricSample(name=metric.value, value=float(value), captured_at=stamp)
                for metric, value in values.items()
            )

        if not scores:
            logger.error("Every monitor failed; skipping this snapshot")
            return None

        snap = HealthSnapshot(
            snapshot_id=uuid.uuid4().hex,
            captured_at=stamp,
            scores=tuple(scores.items()),
            overall=round(weighted_overall(scores), 1),
            readings=tuple(readings),
            missing=tuple(missing),
        )
        self._history.append(snap)
        self._expire(self._history, HISTORY_RETENTION)
        logger.debug(
            "Snapshot %s overall=%.1f missing=%s",
            snap.snapshot_id, snap.overall, [c.value for c in missing],
        )
        return snap

    # -- anomalies --------------------------------------------------------

    def _baseline(self, snapshots: list[HealthSnapshot], metric: Metric) -> float | None:
        values = [v for v in (s.reading(metric) for s in snapshots) if v is not None]
        return _mean(values) if values else None

    def detect_anomalies(self) -> list[Anomaly]:
        """Compare the newest snapshot against the mean of the ones before it."""
        if len(self._history) < ANOMALY_MIN_SNAPSHOTS:
            return []

        snapshots = list(self._history)
        newest = snapshots[-1]
        trailing = snapshots[-(BASELINE_WINDOW + 1):-1]
        stamp = self._clock.utcnow()
        found: list[Anomaly] = []

        def check(metric: Metric, kind: str, is_anomalous, severity) -> None:
            value = newest.reading(metric)
            expected = self._baseline(trailing, metric)
            if value is None or not expected:
                return
            if is_anomalous(value, expected):
                found.append(
                    Anomaly(
                        metric=metric,
                        kind=kind,
                        severity=severity(value, expected),
                        value=round(value, 2),
                        expected=round(expected, 2),
                        detected_at=stamp,
                    )
                )

        def high_if_above(value: float, expected: float) -> Severity:
            return Severity.HIGH if value > expected else Severity.MEDIUM

        check(Metric.CPU, "cpu_anomaly", lambda v, e: abs(v - e) > e * 0.5, high_if_above)
        check(Metric.MEMORY, "memory_anomaly", lambda v, e: abs(v - e) > e * 0.3, high_if_above)
        check(
            Metric.API_LATENCY, "api_latency_spike",
            lambda v, e: v > e * 2, lambda v, e: Severity.HIGH,
        )
        check(
            Metric.THREAT_LEVEL, "threat_spike",
            lambda v, e: v > e * 2, lambda v, e: Severity.CRITICAL,
        )

        for anomaly in found:
            logger.info(
                "Anomaly: %s = %.2f (baseline %.2f)",
                anomaly.kind, anomaly.value, anomaly.expected,
            )
        self._anomalies.extend(found)
        self._expire(self._anomalies, DERIVED_RETENTION, attr="detected_at")
        return found

    # -- predictions ------------------------------------------------------

    def predict(self) -> PredictionSet | None:
        """Linear projection per category over the last 30 snapshots."""
        if len(self._history) < PREDICTION_MIN_SNAPSHOTS:
            return None

        window = list(self._history)[-PREDICTION_WINDOW:]
        steps_per_hour = 3600.0 / self._interval if self._interval > 0 else 60.0
        predictions = []

        for category in Category:
            values = [v for v in (s.score(category) for s in window) if v is not None]
            if not values:
                continue
            current = values[-1]
            if len(values) < 2:
                predictions.append(
                    Prediction(category, Trend.INSUFFICIENT_DATA, 0.0, current, current, Risk.LOW)
                )
                continue

            slope = ols_slope(values)
            trend = _relative_trend(slope * (len(values) - 1), _mean(values))
            predictions.append(
                Prediction(
                    category=category,
                    trend=trend,
                    slope=round(slope, 4),
                    current=current,
                    next_hour=round(clamp_score(current + slope * steps_per_hour), 1),
                    risk=_risk(trend, current),
                )
            )

        result = PredictionSet(
            generated_at=self._clock.utcnow(),
            predictions=tuple(predictions),
            confidence=_confidence([s.overall for s in window]),
        )
        self._predictions.append(result)
        self._expire(self._predictions, DERIVED_RETENTION, attr="generated_at")
        return result

    # -- cycle ------------------------------------------------------------

    def prune(self) -> None:
        self._expire(self._history, HISTORY_RETENTION)
        self._expire(self._anomalies, DERIVED_RETENTION, attr="detected_at")
        self._expire(self._predictions, DERIVED_RETENTION, attr="generated_at")

    def _expire(self, items: deque, retention: timedelta, attr: str = "captured_at") -> None:
        cutoff = self._clock.utcnow() - retention
        while items and getattr(items[0], attr) < cutoff:
            items.popleft()

    def run_cycle(self) -> HealthSnapshot | None:
        """Capture, detect, predict, prune. A failed step drops only itself."""
        try:
            snap = self.capture()
        except Exception:
            logger.exception("Analytics cycle dropped: capture failed")
            return None
        if snap is None:
            return None

        for step in ("detect_anomalies", "predict", "prune"):
            try:
                getattr(self, step)()
            except Exception:
                logger.exception("Analytics step %s failed", step)
        return snap

    def schedule(
        self, scheduler: Scheduler, interval: float | None = None, delay: float = 5.0
    ) -> Job:
        if interval is not None:
            self._interval = interval
        return scheduler.every("analytics", self._interval, self.run_cycle, delay=delay)

    # -- read side --------------------------------------------------------

    def latest(self) -> HealthSnapshot | None:
        return self._history[-1] if self._history else None

    def history(self) -> tuple[HealthSnapshot, ...]:
        return tuple(self._history)

    def anomalies(self, within: timedelta | None = None) -> tuple[Anomaly, ...]:
        if within is None:
            return tuple(self._anomalies)
        cutoff = self._clock.utcnow() - within
        return tuple(a for a in self._anomalies if a.detected_at > cutoff)

    def predictions(self) -> tuple[PredictionSet, ...]:
        return tuple(self._predictions)

    def category_trends(self) -> dict[Category, Trend]:
        """Half-over-half trend per category across the last 20 snapshots."""
        if len(self._history) < TREND_MIN_SNAPSHOTS:
            return {c: Trend.INSUFFICIENT_DATA for c in Category}

        window = list(self._history)[-TREND_WINDOW:]
        trends = {}
        for category in Category:
            values = [v for v in (s.score(category) for s in window) if v is not None]
            if len(values) < 2:
                trends[category] = Trend.INSUFFICIENT_DATA
                continue
            mid = len(values) // 2
            first, second = _mean(values[:mid]), _mean(values[mid:])
            trends[category] = _relative_trend(second - first, first)
        return trends

    def harmony(self, snap: HealthSnapshot | None = None) -> float:
        """100 minus the variance of the category scores."""
        snap = snap or self.latest()
        if snap is None:
            return 100.0
        return round(max(0.0, 100 - _variance([score for _, score in snap.scores])), 1)

    def stability_index(self) -> float:
        if len(self._history) < STABILITY_INDEX_WINDOW:
            return NEUTRAL_SCORE
        recent = [s.overall for s in list(self._history)[-STABILITY_INDEX_WINDOW:]]
        return round(max(0.0, 100 - 2 * _variance(recent)), 1)

    def recommendations(self, snap: HealthSnapshot | None = None) -> list[dict[str, str]]:
        snap = snap or self.latest()
        if snap is None:
            return []
        return [
            {"category": category.value, **RECOMMENDATIONS[category]}
            for category in Category
            if snap.score_map().get(category, 100.0) < RECOMMEND_BELOW
        ]

    def analytics(self) -> dict:
        """Summary for the dashboard and the broadcast payload."""
        latest = self.latest()
        if latest is None:
            current = {
                "scores": {c.value: NEUTRAL_SCORE for c in Category},
                "overall": NEUTRAL_SCORE,
                "captured_at": None,
                "missing": [],
            }
        else:
            current = {
                "scores": {c.value: s for c, s in latest.scores},
                "overall": latest.overall,
                "captured_at": latest.captured_at,
                "missing": [c.value for c in latest.missing],
            }

        return {
            "current": current,
            "harmony": self.harmony(latest),
            "stability_index": self.stability_index(),
            "trends": {c.value: t for c, t in self.category_trends().items()},
            "predictions": self._predictions[-1] if self._predictions else None,
            "anomalies": list(self.anomalies(RECENT_ANOMALY_WINDOW)),
            "recommendations": self.recommendations(latest),
            "snapshot_count": len(self._history),
        }
