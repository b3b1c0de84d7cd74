"""Wires monitors, analytics, scheduler and broadcast into one runtime."""

from __future__ import annotations

import logging
from collections.abc import Callable

from vigil.config import VERSION, VigilConfig
from vigil.core.agents import AgentMonitor
from vigil.core.analytics import HealthAnalytics
from vigil.core.api import APIMonitor, combined_trend
from vigil.core.scheduler import Clock, Scheduler, SystemClock
from vigil.core.security import SecurityMonitor
from vigil.core.sources import MetricSource, create_source
from vigil.core.system import SystemMonitor
from vigil.web.broadcast import ClientDirectory, ConnectionManager, MessageLog

logger = logging.getLogger("vigil.runtime")


class Runtime:
    """Every long-lived component, built with explicit dependencies."""

    def __init__(
        self,
        config: VigilConfig | None = None,
        clock: Clock | None = None,
        source: MetricSource | None = None,
    ) -> None:
        self.config = config or VigilConfig()
        self.clock = clock or SystemClock()
        self.source = source or create_source(self.config, self.clock)
        self.started_at = self.clock.now()

        self.system = SystemMonitor(self.source, self.clock)
        self.api = APIMonitor(self.clock, apis=self.config.source.apis)
        self.agents = AgentMonitor(self.clock)
        self.security = SecurityMonitor(self.config.security, self.clock)
        self.analytics = HealthAnalytics(
            self.system,
            self.api,
            self.agents,
            self.security,
            clock=self.clock,
            interval=self.config.schedule.analytics_interval,
        )

        self.scheduler = Scheduler(self.clock)
        self.manager = ConnectionManager()
        self.directory = ClientDirectory(self.clock)
        self.messages = MessageLog(self.config.server.message_history, self.clock)

        self._register_jobs()

    def _register_jobs(self) -> None:
        schedule = self.config.schedule
        self.scheduler.every("agent_tick", schedule.agent_tick_interval, self.agents.tick)
        self.scheduler.every("security_scan", schedule.security_scan_interval, self.security.scan)
        self.scheduler.every(
            "security_probe", schedule.security_probe_interval, self.security.refresh_protections
        )
        self.scheduler.every(
            "security_prune", schedule.security_prune_interval, self.security.prune,
            delay=schedule.security_prune_interval,
        )
        self.scheduler.every(
            "api_drain", schedule.broadcast_interval, self.drain_api_outcomes,
            delay=schedule.broadcast_interval,
        )
        self.scheduler.every(
            "publish_state", schedule.broadcast_interval, self.publish_state,
            delay=schedule.broadcast_interval,
        )
        self.analytics.schedule(
            self.scheduler,
            interval=schedule.analytics_interval,
            delay=schedule.analytics_delay,
        )

    def drain_api_outcomes(self) -> int:
        outcomes = self.source.drain_api_outcomes()
        for o in outcomes:
            self.api.record_outcome(o.api_name, o.elapsed_ms, o.succeeded, o.rate_limited, o.error)
        return len(outcomes)

    # -- views ------------------------------------------------------------

    def api_view(self) -> dict:
        trends = self.api.trends()
        return {
            "apis": {name: self.api.metrics(name) for name in self.api.tracked_apis()},
            "combined": self.api.combined_metrics(),
            "trends": {**trends, "combined": combined_trend(trends.values())},
        }

    def agents_view(self) -> dict:
        return {
            "metrics": self.agents.metrics(),
            "connections": self.agents.connections(),
            "history": self.agents.history(since_seconds=3600),
        }

    def _guarded(self, name: str, read: Callable[[], object]) -> object | None:
        try:
            return read()
        except Exception:
            logger.exception("Reading %s for the composite state failed", name)
            return None

    def composite_state(self) -> dict:
        """One key per monitor plus health analytics. A failed read becomes None."""
        state = {
            "system": self._guarded("system", self.system.sample),
            "api": self._guarded("api", self.api_view),
            "agents": self._guarded("agents", self.agents.metrics),
            "security": self._guarded("security", self.security.metrics),
            "health": self._guarded("health", self.analytics.analytics),
        }
        degraded = [name for name, value in state.items() if value is None]
        state["status"] = "degraded" if degraded else "operational"
        state["clients"] = len(self.directory)
        state["timestamp"] = self.clock.utcnow()
        return state

    def publish_state(self) -> bool:
        return self.manager.broadcast({"type": "state_update", "payload": self.composite_state()})

    def liveness(self) -> dict:
        return {
            "status": "ok",
            "uptime_seconds": round(self.clock.now() - self.started_at, 1),
            "timestamp": self.clock.utcnow(),
            "version": VERSION,
            "source": self.source.name,
        }

    def export(self) -> dict:
        return {
            "exported_at": self.clock.utcnow(),
            "system": self._guarded("system", self.system.sample),
            "api": self.api.export(),
            "agents": self.agents.export(),
            "security": self.security.export(),
            "analytics": {
                "history": self.analytics.history(),
                "anomalies": self.analytics.anomalies(),
                "predictions": self.analytics.predictions(),
            },
            "messages": self.messages.recent(len(self.messages)),
            "clients": self.directory.entries(),
        }

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        await self.manager.start_broadcaster()
        await self.scheduler.start()
        logger.info("Runtime started (source=%s)", self.source.name)

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.manager.stop_broadcaster()
        logger.info("Runtime stopped")
