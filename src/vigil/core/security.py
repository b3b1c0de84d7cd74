"""Security event log, request analysis, and threat assessment."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import subprocess
import sys
import uuid
from collections import deque
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import timedelta

import psutil

from vigil.config import SecurityConfig
from vigil.core.scheduler import Clock, SystemClock
from vigil.models.enums import SecurityEventKind, Severity, ThreatStatus
from vigil.models.metrics import SecurityEvent, SecurityMetrics, ThreatAssessment

logger = logging.getLogger("vigil.security")

EVENT_LIMIT = 1000
BRUTE_FORCE_FAILURES = 10
SUSPICIOUS_ATTEMPTS = 100
TRAFFIC_CONNECTION_LIMIT = 1000
RETENTION = timedelta(days=7)
THREAT_WINDOW = timedelta(hours=1)
PROBE_TIMEOUT = 2.0
MAX_PROTECTIONS = 6

SEVERITY_BY_KIND: dict[SecurityEventKind, Severity] = {
    SecurityEventKind.BRUTE_FORCE_DETECTED: Severity.CRITICAL,
    SecurityEventKind.POTENTIAL_SQL_INJECTION: Severity.HIGH,
    SecurityEventKind.XSS_ATTEMPT: Severity.HIGH,
    SecurityEventKind.DIRECTORY_TRAVERSAL: Severity.HIGH,
    SecurityEventKind.SUSPICIOUS_USER_AGENT: Severity.MEDIUM,
    SecurityEventKind.UNUSUAL_ENDPOINT_ACCESS: Severity.MEDIUM,
    SecurityEventKind.ANOMALOUS_TRAFFIC_PATTERN: Severity.MEDIUM,
    SecurityEventKind.RATE_LIMIT_EXCEEDED: Severity.LOW,
    SecurityEventKind.FAILED_AUTHENTICATION: Severity.LOW,
    SecurityEventKind.FAILED_SSH_ATTEMPT: Severity.LOW,
}

SEVERITY_WEIGHTS: dict[Severity, int] = {
    Severity.CRITICAL: 20,
    Severity.HIGH: 10,
    Severity.MEDIUM: 5,
    Severity.LOW: 1,
}

SUSPICIOUS_AGENT_RE = re.compile(
    r"bot|crawler|scanner|sqlmap|nikto|nmap|curl|wget|python", re.IGNORECASE
)

SQL_PATTERNS = (
    re.compile(r"union.*select", re.IGNORECASE),
    re.compile(r"\bor\b.*1=1", re.IGNORECASE),
    # Quoted tautologies: 1' OR '1'='1, x' or 'a'='a
    re.compile(r"\bor\b\s*'?(\w+)'?\s*=\s*'?\1\b", re.IGNORECASE),
    re.compile(r"drop.*table", re.IGNORECASE),
    re.compile(r"insert.*into", re.IGNORECASE),
    re.compile(r"delete.*from", re.IGNORECASE),
)
XSS_PATTERNS = (
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"\bon\w+\s*=", re.IGNORECASE),
    re.compile(r"<iframe", re.IGNORECASE),
)
TRAVERSAL_PATTERNS = (
    re.compile(r"\.\./\.\./"),
    re.compile(r"\.\.\\\.\.\\"),
    re.compile(r"%2e%2e%2f", re.IGNORECASE),
    re.compile(r"%252e%252e%252f", re.IGNORECASE),
)

_ATTACK_PATTERNS = (
    (SecurityEventKind.POTENTIAL_SQL_INJECTION, SQL_PATTERNS),
    (SecurityEventKind.XSS_ATTEMPT, XSS_PATTERNS),
    (SecurityEventKind.DIRECTORY_TRAVERSAL, TRAVERSAL_PATTERNS),
)

FAILED_PASSWORD_RE = re.compile(r"Failed password.* from ([0-9A-Fa-f.:]+)")
AUTH_FAILURE_RE = re.compile(r"authentication failure|invalid user|failed login", re.IGNORECASE)

APP_PROTECTIONS = ("input_validation", "xss_protection", "rate_limiting")
BASE_MONITORING = ("connection_monitor", "request_analyzer", "pattern_detector")
LINUX_MONITORING = ("log_scanner", "system_monitor")


@dataclass(slots=True)
class _IpRecord:
    ip: str
    first_seen: float
    last_seen: float
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    user_agents: set[str] = field(default_factory=set)
    endpoints: set[str] = field(default_factory=set)


def _coerce_kind(kind: SecurityEventKind | str) -> SecurityEventKind | str:
    if isinstance(kind, SecurityEventKind):
        return kind
    try:
        return SecurityEventKind(str(kind).lower())
    except ValueError:
        return str(kind).lower()


def severity_for(kind: SecurityEventKind | str) -> Severity:
    """Fixed severity table; unknown kinds are LOW."""
    return SEVERITY_BY_KIND.get(_coerce_kind(kind), Severity.LOW)


def analyze_user_agent(user_agent: str | None) -> bool:
    """True for denylisted tools and for a missing or empty agent."""
    if not user_agent or not user_agent.strip():
        return True
    return SUSPICIOUS_AGENT_RE.search(user_agent) is not None


def analyze_request(
    url: str,
    params: Mapping[str, object] | None = None,
    headers: Mapping[str, str] | None = None,
) -> list[SecurityEventKind]:
    """Attack kinds found in the URL plus its JSON-encoded params.

    Each kind appears at most once, in SQL, XSS, traversal order.
    ``headers`` is accepted for call-site symmetry and not inspected.
    """
    haystack = url + json.dumps(dict(params or {}), default=str)
    return [
        kind
        for kind, patterns in _ATTACK_PATTERNS
        if any(p.search(haystack) for p in patterns)
    ]


def _open_connection_count() -> int:
    try:
        return len(psutil.net_connections(kind="inet"))
    except (OSError, psutil.Error):
        logger.debug("Cannot count open connections", exc_info=True)
        return 0


def _probe(cmd: list[str]) -> subprocess.CompletedProcess | None:
    try:
        return subprocess.run(
            cmd, capture_output=True, text=True, timeout=PROBE_TIMEOUT, check=False
        )
    except (OSError, subprocess.SubprocessError):
        logger.debug("Probe %s unavailable", cmd[0], exc_info=True)
        return None


def probe_protections() -> tuple[str, ...]:
    """Host protections found by ``ufw`` and ``systemctl``, plus the app's own. Blocks."""
    found = []
    ufw = _probe(["ufw", "status"])
    if ufw is not None and "Status: active" in (ufw.stdout or ""):
        found.append("firewall")
    fail2ban = _probe(["systemctl", "is-active", "fail2ban"])
    if fail2ban is not None and fail2ban.returncode == 0:
        found.append("fail2ban")
    return tuple(found) + APP_PROTECTIONS


class SecurityMonitor:
    """Per-IP connection tracking plus a bounded, severity-tagged event log."""

    def __init__(
        self,
        config: SecurityConfig | None = None,
        clock: Clock | None = None,
        platform: str | None = None,
    ) -> None:
        self._config = config or SecurityConfig()
        self._clock = clock or SystemClock()
        self._is_linux = (platform or sys.platform).startswith("linux")
        self._events: deque[SecurityEvent] = deque(maxlen=EVENT_LIMIT)
        self._ips: dict[str, _IpRecord] = {}
        self._log_offsets: dict[str, int] = {}
        self._protections: tuple[str, ...] = APP_PROTECTIONS

    # Module-level analyzers, exposed on the monitor for callers holding one
    analyze_user_agent = staticmethod(analyze_user_agent)
    analyze_request = staticmethod(analyze_request)

    @property
    def scanning(self) -> bool:
        """Whether host log scanning and protection probes are active."""
        return self._is_linux and self._config.scan_logs

    def record_connection(
        self,
        ip: str,
        succeeded: bool,
        user_agent: str | None = None,
        endpoint: str | None = None,
    ) -> None:
        now = self._clock.now()
        record = self._ips.get(ip)
        if record is None:
            record = self._ips[ip] = _IpRecord(ip=ip, first_seen=now, last_seen=now)

        record.attempts += 1
        record.last_seen = max(record.last_seen, now)
        if user_agent:
            record.user_agents.add(user_agent)
        if endpoint:
            record.endpoints.add(endpoint)

        if succeeded:
            record.successes += 1
            return

        record.failures += 1
        if record.failures > BRUTE_FORCE_FAILURES:
            self.record_event(
                SecurityEventKind.BRUTE_FORCE_DETECTED,
                {
                    "ip": ip,
                    "failures": record.failures,
                    "window_seconds": round(now - record.first_seen, 1),
                },
            )

    def record_event(
        self, kind: SecurityEventKind | str, details: Mapping[str, object] | None = None
    ) -> SecurityEvent:
        resolved = _coerce_kind(kind)
        event = SecurityEvent(
            event_id=uuid.uuid4().hex,
            kind=resolved,
            severity=severity_for(resolved),
            details=dict(details or {}),
            recorded_at=self._clock.utcnow(),
        )
        self._events.append(event)
        logger.warning(
            "Security event [%s]: %s %s",
            event.severity.value,
            getattr(resolved, "value", resolved),
            event.details,
        )
        return event

    def events(self, within: timedelta | None = None) -> tuple[SecurityEvent, ...]:
        """Logged events, oldest first, optionally only those inside ``within``."""
        if within is None:
            return tuple(self._events)
        cutoff = self._clock.utcnow() - within
        return tuple(e for e in self._events if e.recorded_at > cutoff)

    def threat_score(self) -> ThreatAssessment:
        total = sum(SEVERITY_WEIGHTS[e.severity] for e in self.events(THREAT_WINDOW))
        if total < 10:
            status = ThreatStatus.PROTECTED
        elif total < 30:
            status = ThreatStatus.VIGILANT
        elif total < 60:
            status = ThreatStatus.ALERT
        else:
            status = ThreatStatus.UNDER_SIEGE
        return ThreatAssessment(score=total, level=float(min(100, total)), status=status)

    def _suspicious_ips(self) -> int:
        cutoff = self._clock.now() - THREAT_WINDOW.total_seconds()
        return sum(
            1
            for r in self._ips.values()
            if r.last_seen > cutoff
            and (r.failures > r.successes * 2 or r.attempts > SUSPICIOUS_ATTEMPTS)
        )

    def active_protections(self) -> tuple[str, ...]:
        return self._protections

    def monitoring_systems(self) -> tuple[str, ...]:
        if self._is_linux:
            return BASE_MONITORING + LINUX_MONITORING
        return BASE_MONITORING

    def metrics(self) -> SecurityMetrics:
        recent = self.events(THREAT_WINDOW)

        def count(kind: SecurityEventKind) -> int:
            return sum(1 for e in recent if e.kind == kind)

        critical = sum(1 for e in recent if e.severity is Severity.CRITICAL)
        effectiveness = max(0.0, 100 - critical / len(recent) * 100) if recent else 100.0
        suspicious = self._suspicious_ips()
        unique = len(self._ips)
        deviation = min(100.0, suspicious / unique * 100) if unique else 0.0

        return SecurityMetrics(
            intrusion_attempts=count(SecurityEventKind.BRUTE_FORCE_DETECTED)
            + count(SecurityEventKind.FAILED_SSH_ATTEMPT),
            rate_limit_events=count(SecurityEventKind.RATE_LIMIT_EXCEEDED),
            blocked_intrusions=critical,
            enforcement_effectiveness=round(effectiveness, 1),
            suspicious_connections=suspicious,
            unique_ips=unique,
            unusual_traffic_patterns=count(SecurityEventKind.ANOMALOUS_TRAFFIC_PATTERN),
            pattern_deviation=round(deviation, 1),
            barrier_strength=round(len(self._protections) / MAX_PROTECTIONS * 100, 1),
            active_protections=self._protections,
            monitoring_systems=self.monitoring_systems(),
            event_frequency=len(recent),
            threat=self.threat_score(),
            recent_events=recent[-10:],
        )

    # -- platform enrichment ----------------------------------------------

    def scan(self) -> int:
        """Tail auth logs and check connection volume.

        Only runs on Linux with log scanning enabled. Returns the number of
        events recorded.
        """
        if not self.scanning:
            return 0

        recorded = 0
        for path in self._config.auth_logs:
            for line in self._read_new_lines(path):
                if self._classify_log_line(line):
                    recorded += 1

        connections = _open_connection_count()
        if connections > TRAFFIC_CONNECTION_LIMIT:
            self.record_event(
                SecurityEventKind.ANOMALOUS_TRAFFIC_PATTERN,
                {"connection_count": connections, "threshold": TRAFFIC_CONNECTION_LIMIT},
            )
            recorded += 1

        logger.debug("Security scan recorded %d events", recorded)
        return recorded

    def _classify_log_line(self, line: str) -> bool:
        match = FAILED_PASSWORD_RE.search(line)
        if match:
            self.record_event(
                SecurityEventKind.FAILED_SSH_ATTEMPT,
                {"ip": match.group(1), "log_entry": line.strip()},
            )
            return True
        if AUTH_FAILURE_RE.search(line):
            self.record_event(
                SecurityEventKind.FAILED_AUTHENTICATION, {"log_entry": line.strip()}
            )
            return True
        return False

    def _read_new_lines(self, path: str) -> list[str]:
        """Complete lines appended since the last read. First sight starts at the end."""
        try:
            size = os.path.getsize(path)
        except OSError:
            logger.debug("Auth log %s not readable", path)
            return []

        offset = self._log_offsets.get(path)
        if offset is None:
            self._log_offsets[path] = size
            return []
        if size < offset:
            offset = 0  # rotated
        if size == offset:
            return []

        try:
            with open(path, "rb") as f:
                f.seek(offset)
                raw = f.read(size - offset)
        except OSError:
            logger.debug("Cannot read auth log %s", path, exc_info=True)
            return []

        end = raw.rfind(b"\n")
        if end < 0:
            return []  # partial line, wait for the rest
        self._log_offsets[path] = offset + end + 1
        text = raw[: end + 1].decode("utf-8", errors="replace")
        return [line for line in text.splitlines() if line.strip()]

    async def refresh_protections(self) -> tuple[str, ...]:
        """Probe the host firewall and fail2ban off the event loop."""
        if self.scanning:
            self._protections = await asyncio.to_thread(probe_protections)
        return self._protections

    # -- housekeeping -----------------------------------------------------

    def prune(self) -> int:
        """Drop events and IP records older than seven days. Returns how many went."""
        cutoff_dt = self._clock.utcnow() - RETENTION
        cutoff_ts = self._clock.now() - RETENTION.total_seconds()

        kept = deque((e for e in self._events if e.recorded_at > cutoff_dt), maxlen=EVENT_LIMIT)
        dropped = len(self._events) - len(kept)
        self._events = kept

        stale = [ip for ip, r in self._ips.items() if r.last_seen < cutoff_ts]
        for ip in stale:
            del self._ips[ip]

        if dropped or stale:
            logger.debug("Pruned %d events and %d IP records", dropped, len(stale))
        return dropped + len(stale)

    def export(self) -> dict:
        return {
            "exported_at": self._clock.now(),
            "events": [asdict(e) for e in self._events],
            "connections": {
                ip: {
                    **{k: v for k, v in asdict(r).items() if k not in ("user_agents", "endpoints")},
                    "user_agents": sorted(r.user_agents),
                    "endpoints": sorted(r.endpoints),
                }
                for ip, r in self._ips.items()
            },
            "active_protections": list(self._protections),
        }
