"""Tests for the security monitor and request analyzers."""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from vigil.config import SecurityConfig
from vigil.core.security import (
    EVENT_LIMIT,
    SecurityMonitor,
    analyze_request,
    analyze_user_agent,
    severity_for,
)
from vigil.models import SecurityEventKind, Severity, ThreatStatus

SQL = SecurityEventKind.POTENTIAL_SQL_INJECTION
XSS = SecurityEventKind.XSS_ATTEMPT
TRAVERSAL = SecurityEventKind.DIRECTORY_TRAVERSAL


def _monitor(clock, **config) -> SecurityMonitor:
    return SecurityMonitor(SecurityConfig(**config), clock, platform="linux")


class TestUserAgent:
    def test_missing_agent_is_suspicious(self):
        assert analyze_user_agent(None) is True
        assert analyze_user_agent("   ") is True

    def test_denylisted_tools(self):
        assert analyze_user_agent("sqlmap/1.7.2#stable") is True
        assert analyze_user_agent("curl/8.4.0") is True
        assert analyze_user_agent("Googlebot/2.1") is True
        assert analyze_user_agent("python-requests/2.31") is True

    def test_browser(self):
        ua = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"
        assert analyze_user_agent(ua) is False


class TestAnalyzeRequest:
    def test_quoted_tautology(self):
        assert analyze_request("/x?id=1' OR '1'='1") == [SQL]

    def test_union_select(self):
        assert analyze_request("/items", {"q": "1 UNION ALL SELECT password"}) == [SQL]

    def test_xss(self):
        assert analyze_request("/search?q=<script>alert(1)</script>") == [XSS]
        assert analyze_request("/p", {"img": "x onerror=alert(1)"}) == [XSS]

    def test_traversal(self):
        assert analyze_request("/files/../../etc/passwd") == [TRAVERSAL]
        assert analyze_request("/files/%2E%2E%2Fetc") == [TRAVERSAL]

    def test_kinds_in_fixed_order(self):
        kinds = analyze_request("/../../x?q=<script>&id=1 or 1=1")
        assert kinds == [SQL, XSS, TRAVERSAL]

    def test_clean_requests(self):
        assert analyze_request("http://localhost:3001/api/health") == []
        assert analyze_request("/ws", {"connection_id": "abc", "limit": "10"}) == []


class TestSeverity:
    def test_table(self):
        assert severity_for(SecurityEventKind.BRUTE_FORCE_DETECTED) is Severity.CRITICAL
        assert severity_for(SQL) is Severity.HIGH
        assert severity_for(SecurityEventKind.SUSPICIOUS_USER_AGENT) is Severity.MEDIUM
        assert severity_for(SecurityEventKind.FAILED_SSH_ATTEMPT) is Severity.LOW

    def test_string_kinds(self):
        assert severity_for("XSS_ATTEMPT") is Severity.HIGH
        assert severity_for("something_new") is Severity.LOW


class TestRecordEvent:
    def test_known_kind_from_string(self, clock):
        event = _monitor(clock).record_event("potential_sql_injection", {"ip": "1.2.3.4"})
        assert event.kind is SQL
        assert event.severity is Severity.HIGH
        assert event.details == {"ip": "1.2.3.4"}
        assert event.recorded_at == clock.utcnow()

    def test_unknown_kind_kept(self, clock):
        event = _monitor(clock).record_event("odd_thing")
        assert event.kind == "odd_thing"
        assert event.severity is Severity.LOW

    def test_event_log_is_capped(self, clock):
        monitor = _monitor(clock)
        for i in range(EVENT_LIMIT + 5):
            monitor.record_event(SecurityEventKind.RATE_LIMIT_EXCEEDED, {"n": i})
        events = monitor.events()
        assert len(events) == EVENT_LIMIT
        assert events[0].details["n"] == 5

    def test_events_within(self, clock):
        monitor = _monitor(clock)
        monitor.record_event(SQL)
        clock.advance(120)
        monitor.record_event(XSS)
        assert [e.kind for e in monitor.events(timedelta(seconds=60))] == [XSS]


class TestBruteForce:
    def test_eleventh_failure_fires_once(self, clock):
        monitor = _monitor(clock)
        for _ in range(11):
            monitor.record_connection("10.0.0.9", False)
        events = monitor.events()
        assert len(events) == 1
        assert events[0].kind is SecurityEventKind.BRUTE_FORCE_DETECTED
        assert events[0].details["ip"] == "10.0.0.9"
        assert events[0].details["failures"] == 11

    def test_ten_failures_are_quiet(self, clock):
        monitor = _monitor(clock)
        for _ in range(10):
            monitor.record_connection("10.0.0.9", False)
        assert monitor.events() == ()

    def test_successes_do_not_count(self, clock):
        monitor = _monitor(clock)
        for _ in range(50):
            monitor.record_connection("10.0.0.9", True)
        assert monitor.events() == ()


class TestThreat:
    def test_quiet(self, clock):
        threat = _monitor(clock).threat_score()
        assert threat.score == 0
        assert threat.status is ThreatStatus.PROTECTED

    def test_statuses(self, clock):
        monitor = _monitor(clock)
        monitor.record_event(SecurityEventKind.BRUTE_FORCE_DETECTED)
        assert monitor.threat_score().status is ThreatStatus.VIGILANT
        monitor.record_event(SQL)
        assert monitor.threat_score().status is ThreatStatus.ALERT
        monitor.record_event(SecurityEventKind.BRUTE_FORCE_DETECTED)
        monitor.record_event(SecurityEventKind.BRUTE_FORCE_DETECTED)
        threat = monitor.threat_score()
        assert threat.score == 70
        assert threat.status is ThreatStatus.UNDER_SIEGE

    def test_level_is_capped(self, clock):
        monitor = _monitor(clock)
        for _ in range(10):
            monitor.record_event(SecurityEventKind.BRUTE_FORCE_DETECTED)
        threat = monitor.threat_score()
        assert threat.score == 200
        assert threat.level == 100.0

    def test_old_events_expire(self, clock):
        monitor = _monitor(clock)
        monitor.record_event(SecurityEventKind.BRUTE_FORCE_DETECTED)
        clock.advance(3601)
        assert monitor.threat_score().status is ThreatStatus.PROTECTED


class TestMetrics:
    def test_fresh_monitor(self, clock):
        metrics = _monitor(clock).metrics()
        assert metrics.barrier_strength == 50.0
        assert metrics.enforcement_effectiveness == 100.0
        assert metrics.unique_ips == 0
        assert "log_scanner" in metrics.monitoring_systems

    def test_non_linux_monitoring(self, clock):
        monitor = SecurityMonitor(SecurityConfig(), clock, platform="darwin")
        assert monitor.scanning is False
        assert "log_scanner" not in monitor.metrics().monitoring_systems

    def test_suspicious_ips(self, clock):
        monitor = _monitor(clock)
        monitor.record_connection("10.0.0.1", True)
        for _ in range(3):
            monitor.record_connection("10.0.0.2", False)
        monitor.record_connection("10.0.0.2", True)
        metrics = monitor.metrics()
        assert metrics.unique_ips == 2
        assert metrics.suspicious_connections == 1
        assert metrics.pattern_deviation == 50.0

    def test_critical_events_lower_effectiveness(self, clock):
        monitor = _monitor(clock)
        monitor.record_event(SecurityEventKind.BRUTE_FORCE_DETECTED)
        monitor.record_event(SecurityEventKind.FAILED_SSH_ATTEMPT)
        metrics = monitor.metrics()
        assert metrics.blocked_intrusions == 1
        assert metrics.intrusion_attempts == 2
        assert metrics.enforcement_effectiveness == 50.0


class TestPrune:
    def test_drops_week_old_entries(self, clock):
        monitor = _monitor(clock)
        monitor.record_event(SQL)
        monitor.record_connection("10.0.0.1", True)
        clock.advance(7 * 86400 + 1)
        monitor.record_event(XSS)
        assert monitor.prune() == 2
        assert [e.kind for e in monitor.events()] == [XSS]
        assert monitor.metrics().unique_ips == 0

    def test_nothing_to_prune(self, clock):
        assert _monitor(clock).prune() == 0


@patch("vigil.core.security.psutil.net_connections", return_value=[])
@patch("vigil.core.security.subprocess.run")
class TestScan:
    def _log(self, tmp_path):
        log = tmp_path / "auth.log"
        log.write_text("Jan 1 00:00:00 host sshd[1]: Accepted publickey for deploy\n")
        return log

    def test_first_scan_starts_at_end(self, mock_run, _mock_conns, clock, tmp_path):
        mock_run.return_value = MagicMock(stdout="", returncode=1)
        log = self._log(tmp_path)
        monitor = _monitor(clock, auth_logs=(str(log),))
        assert monitor.scan() == 0
        assert monitor.events() == ()

    def test_new_lines_become_events(self, mock_run, _mock_conns, clock, tmp_path):
        mock_run.return_value = MagicMock(stdout="", returncode=1)
        log = self._log(tmp_path)
        monitor = _monitor(clock, auth_logs=(str(log),))
        monitor.scan()

        with open(log, "a") as f:
            f.write("sshd[2]: Failed password for root from 203.0.113.5 port 22 ssh2\n")
            f.write("sudo: pam_unix(sudo:auth): authentication failure; user=bob\n")
            f.write("sshd[3]: Failed password for admin from 198.51.100.7")
        assert monitor.scan() == 2
        kinds = [e.kind for e in monitor.events()]
        assert kinds == [
            SecurityEventKind.FAILED_SSH_ATTEMPT,
            SecurityEventKind.FAILED_AUTHENTICATION,
        ]
        assert monitor.events()[0].details["ip"] == "203.0.113.5"

        with open(log, "a") as f:
            f.write(" port 22 ssh2\n")
        assert monitor.scan() == 1
        assert monitor.events()[-1].details["ip"] == "198.51.100.7"

    def test_rotated_log_is_read_from_start(self, mock_run, _mock_conns, clock, tmp_path):
        mock_run.return_value = MagicMock(stdout="", returncode=1)
        log = self._log(tmp_path)
        monitor = _monitor(clock, auth_logs=(str(log),))
        monitor.scan()
        log.write_text("invalid user x\n")
        assert monitor.scan() == 1

    def test_missing_log_is_skipped(self, mock_run, _mock_conns, clock, tmp_path):
        mock_run.return_value = MagicMock(stdout="", returncode=1)
        monitor = _monitor(clock, auth_logs=(str(tmp_path / "nope.log"),))
        assert monitor.scan() == 0

    def test_scan_runs_no_subprocess(self, mock_run, _mock_conns, clock):
        monitor = _monitor(clock, auth_logs=())
        monitor.scan()
        mock_run.assert_not_called()

    @pytest.mark.asyncio
    async def test_protections_probed(self, mock_run, _mock_conns, clock):
        mock_run.return_value = MagicMock(stdout="Status: active\n", returncode=0)
        monitor = _monitor(clock, auth_logs=())
        protections = await monitor.refresh_protections()
        assert protections[:2] == ("firewall", "fail2ban")
        assert monitor.active_protections() == protections
        assert monitor.metrics().barrier_strength == 83.3

    @pytest.mark.asyncio
    async def test_probe_failure_keeps_app_protections(self, mock_run, _mock_conns, clock):
        mock_run.side_effect = FileNotFoundError("ufw")
        monitor = _monitor(clock, auth_logs=())
        assert await monitor.refresh_protections() == (
            "input_validation", "xss_protection", "rate_limiting",
        )

    @pytest.mark.asyncio
    async def test_nothing_checked_when_scanning_is_off(self, mock_run, _mock_conns, clock):
        monitor = _monitor(clock, scan_logs=False)
        assert monitor.scanning is False
        await monitor.refresh_protections()
        mock_run.assert_not_called()

    def test_connection_flood(self, mock_run, mock_conns, clock):
        mock_run.return_value = MagicMock(stdout="", returncode=1)
        mock_conns.return_value = [object()] * 1001
        monitor = _monitor(clock, auth_logs=())
        assert monitor.scan() == 1
        assert monitor.events()[0].kind is SecurityEventKind.ANOMALOUS_TRAFFIC_PATTERN

    def test_disabled_off_linux(self, mock_run, _mock_conns, clock):
        monitor = SecurityMonitor(SecurityConfig(), clock, platform="darwin")
        assert monitor.scan() == 0
        mock_run.assert_not_called()

    def test_disabled_by_config(self, mock_run, _mock_conns, clock):
        assert _monitor(clock, scan_logs=False).scan() == 0
        mock_run.assert_not_called()


class TestExport:
    def test_export(self, clock):
        monitor = _monitor(clock)
        monitor.record_connection("10.0.0.1", True, "b-agent", "/api")
        monitor.record_connection("10.0.0.1", True, "a-agent", "/api")
        monitor.record_event(SQL)
        exported = monitor.export()
        assert len(exported["events"]) == 1
        assert exported["connections"]["10.0.0.1"]["user_agents"] == ["a-agent", "b-agent"]
        assert exported["connections"]["10.0.0.1"]["attempts"] == 2
