"""Frozen dataclass models for monitor output and health analytics."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from vigil.models.enums import (
    Category,
    Confidence,
    FlowRate,
    HealthStatus,
    LoadLevel,
    MemoryPressure,
    Metric,
    ResourceStatus,
    Risk,
    SecurityEventKind,
    Severity,
    Stability,
    ThreatStatus,
    Trend,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def clamp_score(value: float) -> float:
    """Clamp a score into [0, 100]."""
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(100.0, float(value)))


@dataclass(frozen=True, slots=True)
class MetricSample:
    """A named reading captured at a point in time."""

    name: str
    value: float
    captured_at: datetime = field(default_factory=_now)


@dataclass(frozen=True, slots=True)
class SystemMetrics:
    """Point-in-time host and process metrics."""

    cpu_percent: float
    cpu_cores: int
    load_average: tuple[float, float, float]
    load_level: LoadLevel
    memory_used_mb: float
    memory_total_gb: float
    memory_percent: float
    memory_status: ResourceStatus
    memory_pressure: MemoryPressure
    cache_mb: float
    swap_used_mb: float
    disk_total_gb: float
    disk_used_gb: float
    disk_free_gb: float
    disk_percent: float
    storage_status: ResourceStatus
    uptime_seconds: float
    process_rss_mb: float
    process_cpu_percent: float
    net_bytes_sent: int
    net_bytes_recv: int
    net_sent_delta: int
    net_recv_delta: int
    net_throughput_bps: float
    net_interfaces: int
    net_connections: int
    health_score: float
    health: HealthStatus
    captured_at: datetime = field(default_factory=_now)


@dataclass(frozen=True, slots=True)
class ApiOutcome:
    """One recorded external API call."""

    api_name: str
    elapsed_ms: float
    succeeded: bool
    rate_limited: bool = False
    error: str | None = None
    recorded_at: datetime = field(default_factory=_now)


@dataclass(frozen=True, slots=True)
class ApiMetrics:
    """Rolling statistics for a single API."""

    api_name: str
    total_requests: int
    avg_latency_ms: float
    success_rate: float
    rate_limit_rate: float
    requests_per_hour: float
    stability: Stability
    last_latency_ms: float = 0.0


@dataclass(frozen=True, slots=True)
class CombinedApiMetrics:
    """Aggregate view across several APIs."""

    apis: tuple[str, ...]
    total_requests: int
    avg_latency_ms: float
    success_rate: float
    stability: Stability
    health_score: float


@dataclass(frozen=True, slots=True)
class SecurityEvent:
    """A recorded security event."""

    event_id: str
    kind: SecurityEventKind | str  # unknown kinds keep their raw name
    severity: Severity
    details: dict = field(default_factory=dict)
    recorded_at: datetime = field(default_factory=_now)


@dataclass(frozen=True, slots=True)
class ThreatAssessment:
    """Severity-weighted threat total over the last hour."""

    score: int
    level: float  # score clamped to 100
    status: ThreatStatus


@dataclass(frozen=True, slots=True)
class SecurityMetrics:
    """Derived security view."""

    intrusion_attempts: int
    rate_limit_events: int
    blocked_intrusions: int
    enforcement_effectiveness: float
    suspicious_connections: int
    unique_ips: int
    unusual_traffic_patterns: int
    pattern_deviation: float
    barrier_strength: float
    active_protections: tuple[str, ...]
    monitoring_systems: tuple[str, ...]
    event_frequency: int  # events in the last hour
    threat: ThreatAssessment
    recent_events: tuple[SecurityEvent, ...] = ()


@dataclass(frozen=True, slots=True)
class ConnectionRecord:
    """One live real-time client session."""

    connection_id: str
    connected_at: datetime
    last_seen: datetime
    message_count: int = 0
    bytes_received: int = 0
    last_event: str | None = None


@dataclass(frozen=True, slots=True)
class AgentSample:
    """Periodic snapshot of connection-layer health."""

    active_connections: int
    stability_score: float
    messages_per_minute: int
    captured_at: datetime = field(default_factory=_now)


@dataclass(frozen=True, slots=True)
class AgentMetrics:
    """Derived view of connected clients and message flow."""

    active_connections: int
    active_streams: int
    total_connections: int
    total_messages: int
    messages_per_minute: int
    avg_message_size: float
    bandwidth_per_minute: int
    stability_score: float
    recent_disconnects: int
    flow: FlowRate
    health_score: float
    health: HealthStatus


@dataclass(frozen=True, slots=True)
class HealthSnapshot:
    """Composite score record for all categories at a point in time."""

    snapshot_id: str
    captured_at: datetime
    scores: tuple[tuple[Category, float], ...]
    overall: float
    readings: tuple[MetricSample, ...] = ()
    missing: tuple[Category, ...] = ()

    def score(self, category: Category) -> float | None:
        for name, value in self.scores:
            if name == category:
                return value
        return None

    def score_map(self) -> dict[Category, float]:
        """A fresh dict of the category scores."""
        return dict(self.scores)

    def reading(self, metric: Metric) -> float | None:
        for sample in self.readings:
            if sample.name == metric.value:
                return sample.value
        return None


@dataclass(frozen=True, slots=True)
class Anomaly:
    """A reading that strayed too far from its trailing baseline."""

    metric: Metric
    kind: str
    severity: Severity
    value: float
    expected: float
    detected_at: datetime = field(default_factory=_now)


@dataclass(frozen=True, slots=True)
class Prediction:
    """Linear trend projection for one category."""

    category: Category
    trend: Trend
    slope: float  # score change per snapshot
    current: float
    next_hour: float
    risk: Risk


@dataclass(frozen=True, slots=True)
class PredictionSet:
    generated_at: datetime
    predictions: tuple[Prediction, ...]
    confidence: Confidence
