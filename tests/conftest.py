"""Shared fixtures: a hand-driven clock and a fixed-reading metric source."""

import pytest

from vigil.config import SecurityConfig, SourceConfig, VigilConfig
from vigil.core.scheduler import ManualClock
from vigil.core.sources import HostReading

GIB = 1024 ** 3
START = 1_700_000_000.0


def make_reading(**overrides) -> HostReading:
    """A calm host: 25% CPU on 4 cores, half the memory and disk used."""
    values = dict(
        load_average=(1.0, 0.8, 0.5),
        cpu_count=4,
        memory_total=16 * GIB,
        memory_available=8 * GIB,
        memory_used=8 * GIB,
        memory_cached=GIB,
        swap_total=2 * GIB,
        disk_total=500 * GIB,
        disk_used=250 * GIB,
        disk_free=250 * GIB,
        disk_percent=50.0,
        boot_time=START - 3600,
        net_bytes_sent=1000,
        net_bytes_recv=2000,
        net_interfaces=1,
        net_connections=12,
    )
    values.update(overrides)
    return HostReading(**values)


class FakeSource:
    """Returns whatever reading the test last assigned."""

    name = "fake"

    def __init__(self, reading: HostReading | None = None) -> None:
        self.reading = reading or make_reading()
        self.outcomes = []

    def read_host(self) -> HostReading:
        return self.reading

    def drain_api_outcomes(self):
        drained, self.outcomes = self.outcomes, []
        return drained


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def fake_source():
    return FakeSource()


@pytest.fixture
def quiet_config(tmp_path):
    """Config that never touches host auth logs."""
    return VigilConfig(
        project_path=tmp_path,
        source=SourceConfig(mode="simulated", seed=1),
        security=SecurityConfig(scan_logs=False),
    )
