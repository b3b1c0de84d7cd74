"""Vigil data models."""

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
from vigil.models.metrics import (
    AgentMetrics,
    AgentSample,
    Anomaly,
    ApiMetrics,
    ApiOutcome,
    CombinedApiMetrics,
    ConnectionRecord,
    HealthSnapshot,
    MetricSample,
    Prediction,
    PredictionSet,
    SecurityEvent,
    SecurityMetrics,
    SystemMetrics,
    ThreatAssessment,
    clamp_score,
)

__all__ = [
    "Category",
    "Metric",
    "HealthStatus",
    "LoadLevel",
    "ResourceStatus",
    "MemoryPressure",
    "Stability",
    "ThreatStatus",
    "Severity",
    "SecurityEventKind",
    "Trend",
    "Risk",
    "Confidence",
    "FlowRate",
    "MetricSample",
    "SystemMetrics",
    "ApiOutcome",
    "ApiMetrics",
    "CombinedApiMetrics",
    "SecurityEvent",
    "ThreatAssessment",
    "SecurityMetrics",
    "ConnectionRecord",
    "AgentSample",
    "AgentMetrics",
    "HealthSnapshot",
    "Anomaly",
    "Prediction",
    "PredictionSet",
    "clamp_score",
]
