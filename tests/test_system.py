"""Tests for host sampling and health classification."""

from dataclasses import replace

from conftest import GIB, FakeSource, make_reading

from vigil.core.system import SystemMonitor, classify_health, system_health_score
from vigil.models.enums import HealthStatus, LoadLevel, MemoryPressure, ResourceStatus


class TestClassifyHealth:
    def test_bands(self):
        assert classify_health(100) is HealthStatus.OPTIMAL
        assert classify_health(80) is HealthStatus.OPTIMAL
        assert classify_health(79.9) is HealthStatus.HEALTHY
        assert classify_health(60) is HealthStatus.HEALTHY
        assert classify_health(40) is HealthStatus.STRESSED
        assert classify_health(39.9) is HealthStatus.CRITICAL


class TestSystemHealthScore:
    def test_idle_host(self):
        assert system_health_score(10, 30, 40) == 100.0

    def test_warning_penalties(self):
        assert system_health_score(85, 85, 85) == 55.0

    def test_critical_penalties(self):
        assert system_health_score(95, 95, 95) == 35.0

    def test_moderate_cpu(self):
        assert system_health_score(65, 0, 0) == 90.0


class TestSystemMonitor:
    def test_calm_host(self, clock, fake_source):
        metrics = SystemMonitor(fake_source, clock).sample()
        assert metrics.cpu_percent == 25.0
        assert metrics.cpu_cores == 4
        assert metrics.load_level is LoadLevel.BALANCED
        assert metrics.memory_percent == 50.0
        assert metrics.memory_status is ResourceStatus.HEALTHY
        assert metrics.memory_pressure is MemoryPressure.LOW
        assert metrics.memory_total_gb == 16.0
        assert metrics.disk_percent == 50.0
        assert metrics.uptime_seconds == 3600.0
        assert metrics.health_score == 100.0
        assert metrics.health is HealthStatus.OPTIMAL
        assert metrics.captured_at == clock.utcnow()

    def test_sample_does_not_change_state(self, clock, fake_source):
        monitor = SystemMonitor(fake_source, clock)
        assert monitor.sample() == monitor.sample()

    def test_stressed_host(self, clock):
        source = FakeSource(
            make_reading(
                load_average=(3.8, 3.0, 2.0),
                memory_used=int(15.2 * GIB),
                memory_available=int(0.8 * GIB),
                disk_percent=85.0,
            )
        )
        metrics = SystemMonitor(source, clock).sample()
        assert metrics.cpu_percent == 95.0
        assert metrics.load_level is LoadLevel.OVERLOADED
        assert metrics.memory_status is ResourceStatus.CRITICAL
        assert metrics.memory_pressure is MemoryPressure.HIGH
        assert metrics.storage_status is ResourceStatus.WARNING
        assert metrics.health_score == 45.0
        assert metrics.health is HealthStatus.STRESSED

    def test_intense_load(self, clock):
        source = FakeSource(make_reading(load_average=(3.0, 0.0, 0.0)))
        assert SystemMonitor(source, clock).sample().load_level is LoadLevel.INTENSE

    def test_cpu_is_clamped(self, clock):
        source = FakeSource(make_reading(load_average=(12.0, 8.0, 4.0)))
        assert SystemMonitor(source, clock).sample().cpu_percent == 100.0

    def test_zero_memory_total(self, clock):
        source = FakeSource(make_reading(memory_total=0, memory_used=0, memory_available=0))
        metrics = SystemMonitor(source, clock).sample()
        assert metrics.memory_percent == 0.0
        assert metrics.memory_pressure is MemoryPressure.LOW

    def test_unknown_boot_time(self, clock):
        source = FakeSource(make_reading(boot_time=0.0))
        assert SystemMonitor(source, clock).sample().uptime_seconds == 0.0

    def test_network_throughput(self, clock, fake_source):
        monitor = SystemMonitor(fake_source, clock)
        fake_source.reading = replace(
            fake_source.reading, net_bytes_sent=3000, net_bytes_recv=5000
        )
        clock.advance(10)
        metrics = monitor.sample()
        assert metrics.net_sent_delta == 2000
        assert metrics.net_recv_delta == 3000
        assert metrics.net_throughput_bps == 500.0

    def test_counter_reset_never_negative(self, clock, fake_source):
        monitor = SystemMonitor(fake_source, clock)
        fake_source.reading = replace(fake_source.reading, net_bytes_sent=0, net_bytes_recv=0)
        clock.advance(10)
        metrics = monitor.sample()
        assert metrics.net_sent_delta == 0
        assert metrics.net_throughput_bps == 0.0
