"""Metric sources: live host counters via psutil, or a seeded simulation."""

from __future__ import annotations

import logging
import os
import random
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, TypeVar

import psutil

from vigil.config import VigilConfig
from vigil.core.scheduler import Clock, SystemClock
from vigil.models.metrics import ApiOutcome

logger = logging.getLogger("vigil.sources")

T = TypeVar("T")

_GIB = 1024 ** 3
_MIB = 1024 ** 2


@dataclass(frozen=True, slots=True)
class HostReading:
    """Raw host counters, in bytes and seconds. Zero means unreadable."""

    load_average: tuple[float, float, float] = (0.0, 0.0, 0.0)
    cpu_count: int = 1
    memory_total: int = 0
    memory_available: int = 0
    memory_used: int = 0
    memory_cached: int = 0
    swap_total: int = 0
    swap_used: int = 0
    disk_total: int = 0
    disk_used: int = 0
    disk_free: int = 0
    disk_percent: float = 0.0
    boot_time: float = 0.0
    process_rss: int = 0
    process_cpu_percent: float = 0.0
    net_bytes_sent: int = 0
    net_bytes_recv: int = 0
    net_interfaces: int = 0
    net_connections: int = 0


class MetricSource(Protocol):
    """Capability the monitors read from."""

    name: str

    def read_host(self) -> HostReading: ...

    def drain_api_outcomes(self) -> list[ApiOutcome]: ...


def _soft(read: Callable[[], T], fallback: T, what: str) -> T:
    """Run one host read, returning ``fallback`` if the platform refuses."""
    try:
        return read()
    except (OSError, psutil.Error, NotImplementedError, AttributeError):
        logger.debug("Could not read %s; using fallback", what, exc_info=True)
        return fallback


def _is_loopback(nic: str) -> bool:
    return nic == "lo" or nic.startswith("lo0") or nic.lower().startswith("loopback")


class PsutilSource:
    """Live host readings. Each counter fails soft on its own."""

    name = "live"

    def __init__(self, disk_path: str = "/") -> None:
        self._disk_path = disk_path
        self._process = _soft(lambda: psutil.Process(os.getpid()), None, "own process")
        if self._process is not None:
            # First call primes psutil's per-process CPU baseline
            _soft(lambda: self._process.cpu_percent(interval=None), 0.0, "process cpu")

    def read_host(self) -> HostReading:
        load = _soft(lambda: tuple(psutil.getloadavg()), (0.0, 0.0, 0.0), "load average")
        cores = _soft(lambda: psutil.cpu_count() or 1, 1, "cpu count")
        vm = _soft(psutil.virtual_memory, None, "virtual memory")
        swap = _soft(psutil.swap_memory, None, "swap memory")
        disk = _soft(lambda: psutil.disk_usage(self._disk_path), None, "disk usage")
        boot = _soft(psutil.boot_time, 0.0, "boot time")
        nics = _soft(lambda: psutil.net_io_counters(pernic=True) or {}, {}, "network counters")
        conns = _soft(lambda: len(psutil.net_connections(kind="inet")), 0, "connections")

        rss, proc_cpu = 0, 0.0
        if self._process is not None:
            rss = _soft(lambda: self._process.memory_info().rss, 0, "process memory")
            proc_cpu = _soft(lambda: self._process.cpu_percent(interval=None), 0.0, "process cpu")

        external = {name: c for name, c in nics.items() if not _is_loopback(name)}

        return HostReading(
            load_average=(float(load[0]), float(load[1]), float(load[2])),
            cpu_count=int(cores),
            memory_total=vm.total if vm else 0,
            memory_available=vm.available if vm else 0,
            memory_used=vm.used if vm else 0,
            memory_cached=(getattr(vm, "buffers", 0) + getattr(vm, "cached", 0)) if vm else 0,
            swap_total=swap.total if swap else 0,
            swap_used=swap.used if swap else 0,
            disk_total=disk.total if disk else 0,
            disk_used=disk.used if disk else 0,
            disk_free=disk.free if disk else 0,
            disk_percent=float(disk.percent) if disk else 0.0,
            boot_time=float(boot),
            process_rss=int(rss),
            process_cpu_percent=float(proc_cpu),
            net_bytes_sent=sum(c.bytes_sent for c in external.values()),
            net_bytes_recv=sum(c.bytes_recv for c in external.values()),
            net_interfaces=len(external),
            net_connections=int(conns),
        )

    def drain_api_outcomes(self) -> list[ApiOutcome]:
        # Real outcomes are reported over HTTP by the callers themselves
        return []


class SimulatedSource:
    """Seeded synthetic readings for demos and hosts without psutil access."""

    name = "simulated"

    def __init__(
        self,
        seed: int | None = None,
        apis: tuple[str, ...] = ("claude", "gemini"),
        clock: Clock | None = None,
        cores: int = 4,
    ) -> None:
        self._rng = random.Random(seed)
        self._apis = apis
        self._clock = clock or SystemClock()
        self._cores = cores
        self._boot_time = self._clock.now() - self._rng.uniform(3600, 7 * 86400)
        self._sent = 0
        self._recv = 0

    def read_host(self) -> HostReading:
        rng = self._rng
        total = 16 * _GIB
        used = int(total * rng.uniform(0.35, 0.75))
        disk_total = 500 * _GIB
        disk_pct = rng.uniform(40.0, 70.0)
        disk_used = int(disk_total * disk_pct / 100)
        swap_total = 2 * _GIB
        self._sent += rng.randint(10_000, 500_000)
        self._recv += rng.randint(10_000, 800_000)

        return HostReading(
            load_average=(
                self._cores * rng.uniform(0.1, 0.8),
                self._cores * rng.uniform(0.1, 0.7),
                self._cores * rng.uniform(0.1, 0.6),
            ),
            cpu_count=self._cores,
            memory_total=total,
            memory_available=total - used,
            memory_used=used,
            memory_cached=int(total * 0.1),
            swap_total=swap_total,
            swap_used=int(swap_total * rng.uniform(0.0, 0.1)),
            disk_total=disk_total,
            disk_used=disk_used,
            disk_free=disk_total - disk_used,
            disk_percent=round(disk_pct, 1),
            boot_time=self._boot_time,
            process_rss=int(rng.uniform(80, 160) * _MIB),
            process_cpu_percent=rng.uniform(0.0, 15.0),
            net_bytes_sent=self._sent,
            net_bytes_recv=self._recv,
            net_interfaces=1,
            net_connections=rng.randint(5, 50),
        )

    def drain_api_outcomes(self) -> list[ApiOutcome]:
        rng = self._rng
        outcomes = []
        for api in self._apis:
            for _ in range(rng.randint(0, 3)):
                succeeded = rng.random() > 0.05
                outcomes.append(
                    ApiOutcome(
                        api_name=api,
                        elapsed_ms=max(50.0, rng.gauss(800.0, 200.0)),
                        succeeded=succeeded,
                        rate_limited=not succeeded and rng.random() < 0.3,
                        recorded_at=self._clock.utcnow(),
                    )
                )
        return outcomes


def create_source(config: VigilConfig, clock: Clock | None = None) -> MetricSource:
    """Pick the source variant named by ``config.source.mode``."""
    if config.simulated:
        return SimulatedSource(seed=config.source.seed, apis=config.source.apis, clock=clock)
    return PsutilSource()
