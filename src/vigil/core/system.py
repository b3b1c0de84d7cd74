"""Host resource sampling and health classification."""

from __future__ import annotations

import logging

from vigil.core.scheduler import Clock, SystemClock
from vigil.core.sources import MetricSource
from vigil.models.enums import HealthStatus, LoadLevel, MemoryPressure, ResourceStatus
from vigil.models.metrics import SystemMetrics, clamp_score

logger = logging.getLogger("vigil.system")

_MB = 1024 * 1024
_GB = 1024 ** 3

# Load ratio (1-minute load / cores) thresholds
LOAD_OVERLOADED = 0.9
LOAD_INTENSE = 0.7

# Percent-used thresholds for memory and storage
RESOURCE_CRITICAL = 90.0
RESOURCE_WARNING = 80.0

# Available-memory fractions for pressure
PRESSURE_HIGH = 0.10
PRESSURE_MODERATE = 0.20

# (threshold, penalty) pairs, checked highest first
CPU_PENALTIES = ((80.0, 20.0), (60.0, 10.0))
MEMORY_PENALTIES = ((90.0, 25.0), (80.0, 15.0))
STORAGE_PENALTIES = ((90.0, 20.0), (80.0, 10.0))

_HEALTH_BANDS = (
    (80.0, HealthStatus.OPTIMAL),
    (60.0, HealthStatus.HEALTHY),
    (40.0, HealthStatus.STRESSED),
)


def classify_health(score: float) -> HealthStatus:
    """Map a 0-100 health score to its four-level status."""
    for floor, status in _HEALTH_BANDS:
        if score >= floor:
            return status
    return HealthStatus.CRITICAL


def _penalty(value: float, table: tuple[tuple[float, float], ...]) -> float:
    for threshold, penalty in table:
        if value > threshold:
            return penalty
    return 0.0


def _load_level(ratio: float) -> LoadLevel:
    if ratio > LOAD_OVERLOADED:
        return LoadLevel.OVERLOADED
    if ratio > LOAD_INTENSE:
        return LoadLevel.INTENSE
    return LoadLevel.BALANCED


def _resource_status(percent: float) -> ResourceStatus:
    if percent > RESOURCE_CRITICAL:
        return ResourceStatus.CRITICAL
    if percent > RESOURCE_WARNING:
        return ResourceStatus.WARNING
    return ResourceStatus.HEALTHY


def _memory_pressure(available: int, total: int) -> MemoryPressure:
    if total <= 0:
        return MemoryPressure.LOW
    fraction = available / total
    if fraction < PRESSURE_HIGH:
        return MemoryPressure.HIGH
    if fraction < PRESSURE_MODERATE:
        return MemoryPressure.MODERATE
    return MemoryPressure.LOW


def system_health_score(cpu: float, memory: float, storage: float) -> float:
    score = 100.0
    score -= _penalty(cpu, CPU_PENALTIES)
    score -= _penalty(memory, MEMORY_PENALTIES)
    score -= _penalty(storage, STORAGE_PENALTIES)
    return clamp_score(score)


class SystemMonitor:
    """Turns raw ``HostReading``s into classified ``SystemMetrics``.

    Network deltas are measured against the counters seen when the monitor
    was built, so ``sample()`` never has to update state between calls.
    """

    def __init__(self, source: MetricSource, clock: Clock | None = None) -> None:
        self._source = source
        self._clock = clock or SystemClock()
        baseline = source.read_host()
        self._started = self._clock.now()
        self._net_sent_base = baseline.net_bytes_sent
        self._net_recv_base = baseline.net_bytes_recv

    def sample(self) -> SystemMetrics:
        reading = self._source.read_host()
        now = self._clock.now()

        cores = max(1, reading.cpu_count)
        load_ratio = reading.load_average[0] / cores
        cpu = round(clamp_score(load_ratio * 100), 1)

        if reading.memory_total > 0:
            memory_pct = round(reading.memory_used / reading.memory_total * 100, 1)
        else:
            memory_pct = 0.0
        disk_pct = round(clamp_score(reading.disk_percent), 1)

        sent_delta = max(0, reading.net_bytes_sent - self._net_sent_base)
        recv_delta = max(0, reading.net_bytes_recv - self._net_recv_base)
        elapsed = now - self._started
        throughput = (sent_delta + recv_delta) / elapsed if elapsed > 0 else 0.0

        uptime = max(0.0, now - reading.boot_time) if reading.boot_time else 0.0
        score = system_health_score(cpu, memory_pct, disk_pct)

        return SystemMetrics(
            cpu_percent=cpu,
            cpu_cores=cores,
            load_average=tuple(round(v, 2) for v in reading.load_average),
            load_level=_load_level(load_ratio),
            memory_used_mb=round(reading.memory_used / _MB, 1),
            memory_total_gb=round(reading.memory_total / _GB, 2),
            memory_percent=memory_pct,
            memory_status=_resource_status(memory_pct),
            memory_pressure=_memory_pressure(reading.memory_available, reading.memory_total),
            cache_mb=round(reading.memory_cached / _MB, 1),
            swap_used_mb=round(reading.swap_used / _MB, 1),
            disk_total_gb=round(reading.disk_total / _GB, 2),
            disk_used_gb=round(reading.disk_used / _GB, 2),
            disk_free_gb=round(reading.disk_free / _GB, 2),
            disk_percent=disk_pct,
            storage_status=_resource_status(disk_pct),
            uptime_seconds=round(uptime, 1),
            process_rss_mb=round(reading.process_rss / _MB, 2),
            process_cpu_percent=round(reading.process_cpu_percent, 1),
            net_bytes_sent=reading.net_bytes_sent,
            net_bytes_recv=reading.net_bytes_recv,
            net_sent_delta=sent_delta,
            net_recv_delta=recv_delta,
            net_throughput_bps=round(throughput, 1),
            net_interfaces=reading.net_interfaces,
            net_connections=reading.net_connections,
            health_score=score,
            health=classify_health(score),
            captured_at=self._clock.utcnow(),
        )
