"""Enumerations for Vigil metric models."""

from enum import Enum


class Category(str, Enum):
    """Health categories scored by the analytics aggregator."""

    SYSTEM = "system"
    API = "api"
    AGENTS = "agents"
    SECURITY = "security"


class Metric(str, Enum):
    """Raw readings carried on a health snapshot."""

    CPU = "cpu"
    MEMORY = "memory"
    STORAGE = "storage"
    API_LATENCY = "api_latency"
    API_SUCCESS_RATE = "api_success_rate"
    CONNECTIONS = "connections"
    MESSAGE_FLOW = "message_flow"
    THREAT_LEVEL = "threat_level"


class HealthStatus(str, Enum):
    """Four-level health classification shared by monitors."""

    OPTIMAL = "optimal"
    HEALTHY = "healthy"
    STRESSED = "stressed"
    CRITICAL = "critical"


class LoadLevel(str, Enum):
    """CPU load relative to core count."""

    BALANCED = "balanced"
    INTENSE = "intense"
    OVERLOADED = "overloaded"


class ResourceStatus(str, Enum):
    """Utilisation classification for memory and storage."""

    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class MemoryPressure(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"


class Stability(str, Enum):
    """API stability, best to worst, plus a not-enough-data state."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    UNSTABLE = "unstable"
    POOR = "poor"
    INSUFFICIENT_DATA = "insufficient_data"


class ThreatStatus(str, Enum):
    PROTECTED = "protected"
    VIGILANT = "vigilant"
    ALERT = "alert"
    UNDER_SIEGE = "under_siege"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SecurityEventKind(str, Enum):
    """Kinds of security events; the attack kinds double as analyzer output."""

    BRUTE_FORCE_DETECTED = "brute_force_detected"
    SUSPICIOUS_USER_AGENT = "suspicious_user_agent"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    UNUSUAL_ENDPOINT_ACCESS = "unusual_endpoint_access"
    FAILED_AUTHENTICATION = "failed_authentication"
    FAILED_SSH_ATTEMPT = "failed_ssh_attempt"
    POTENTIAL_SQL_INJECTION = "potential_sql_injection"
    XSS_ATTEMPT = "xss_attempt"
    DIRECTORY_TRAVERSAL = "directory_traversal"
    ANOMALOUS_TRAFFIC_PATTERN = "anomalous_traffic_pattern"


class Trend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DEGRADING = "degrading"
    INSUFFICIENT_DATA = "insufficient_data"


class Risk(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FlowRate(str, Enum):
    """How busy the real-time message stream is."""

    DORMANT = "dormant"
    TRICKLING = "trickling"
    CALM = "calm"
    STEADY = "steady"
    RAPID = "rapid"
