"""Real-time client connection tracking and message-flow health."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, replace
from datetime import timedelta

from vigil.core.scheduler import Clock, SystemClock
from vigil.core.system import classify_health
from vigil.models.enums import FlowRate
from vigil.models.metrics import AgentMetrics, AgentSample, ConnectionRecord, clamp_score

logger = logging.getLogger("vigil.agents")

MESSAGE_WINDOW = 60.0  # seconds
ACTIVE_STREAM_WINDOW = 300.0
STABLE_AFTER = 300.0  # a connection alive this long counts as stable
DISCONNECT_WINDOW = 3600.0
SAMPLE_RETENTION = timedelta(hours=1)
HISTORY_LIMIT = 1000
FLOW_SAMPLE = 10


def _flow_rate(timestamps: list[float]) -> FlowRate:
    """Classify the mean gap between the last few messages."""
    if not timestamps:
        return FlowRate.DORMANT
    recent = timestamps[-FLOW_SAMPLE:]
    if len(recent) < 2:
        return FlowRate.TRICKLING
    gap = (recent[-1] - recent[0]) / (len(recent) - 1)
    if gap < 1:
        return FlowRate.RAPID
    if gap < 5:
        return FlowRate.STEADY
    if gap < 15:
        return FlowRate.CALM
    return FlowRate.TRICKLING


class AgentMonitor:
    """Transport-agnostic lifecycle hooks for connected clients.

    The WebSocket endpoint calls ``on_connect``, ``on_message``, ``touch`` and
    ``on_disconnect``; the monitor never holds a socket. ``tick`` is driven by
    the scheduler and snapshots the derived values for trend queries.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._connections: dict[str, ConnectionRecord] = {}
        self._connected_at: dict[str, float] = {}
        self._last_seen: dict[str, float] = {}
        self._window: deque[tuple[float, int]] = deque()
        self._history: deque[dict] = deque(maxlen=HISTORY_LIMIT)
        self._samples: deque[AgentSample] = deque()
        self._total_connections = 0
        self._total_messages = 0

    # -- lifecycle hooks --------------------------------------------------

    def on_connect(self, connection_id: str) -> ConnectionRecord:
        now = self._clock.now()
        stamp = self._clock.utcnow()
        record = ConnectionRecord(connection_id=connection_id, connected_at=stamp, last_seen=stamp)
        self._connections[connection_id] = record
        self._connected_at[connection_id] = now
        self._last_seen[connection_id] = now
        self._total_connections += 1
        self._log_history("connect", connection_id, now)
        logger.info("Client connected: %s", connection_id)
        return record

    def on_message(self, connection_id: str, event_name: str, payload_size: int) -> None:
        now = self._clock.now()
        size = max(0, int(payload_size))
        self._total_messages += 1
        self._window.append((now, size))
        self._evict_window(now)

        record = self._connections.get(connection_id)
        if record is None:
            return
        self._connections[connection_id] = replace(
            self._refresh(record, now),
            message_count=record.message_count + 1,
            bytes_received=record.bytes_received + size,
            last_event=event_name,
        )

    def touch(self, connection_id: str) -> bool:
        """Heartbeat: refresh liveness only. False for an unknown connection."""
        record = self._connections.get(connection_id)
        if record is None:
            return False
        now = self._clock.now()
        self._connections[connection_id] = self._refresh(record, now)
        self._log_history("heartbeat", connection_id, now)
        return True

    def on_disconnect(self, connection_id: str, reason: str = "") -> None:
        now = self._clock.now()
        self._connections.pop(connection_id, None)
        self._connected_at.pop(connection_id, None)
        self._last_seen.pop(connection_id, None)
        self._log_history("disconnect", connection_id, now, reason=reason)
        logger.info("Client disconnected: %s (%s)", connection_id, reason or "closed")

    def _refresh(self, record: ConnectionRecord, now: float) -> ConnectionRecord:
        if now <= self._last_seen.get(record.connection_id, now):
            return record
        self._last_seen[record.connection_id] = now
        return replace(record, last_seen=self._clock.utcnow())

    def _log_history(self, event: str, connection_id: str, at: float, **extra: str) -> None:
        self._history.append({"event": event, "connection_id": connection_id, "at": at, **extra})

    def _evict_window(self, now: float) -> None:
        cutoff = now - MESSAGE_WINDOW
        while self._window and self._window[0][0] <= cutoff:
            self._window.popleft()

    # -- derived views ----------------------------------------------------

    def _recent_messages(self) -> list[tuple[float, int]]:
        cutoff = self._clock.now() - MESSAGE_WINDOW
        return [entry for entry in self._window if entry[0] > cutoff]

    def stability_score(self) -> float:
        """Percent of live connections that have stayed up past five minutes."""
        if not self._connected_at:
            return 100.0
        now = self._clock.now()
        stable = sum(1 for t in self._connected_at.values() if now - t > STABLE_AFTER)
        return round(stable / len(self._connected_at) * 100, 1)

    def metrics(self) -> AgentMetrics:
        now = self._clock.now()
        recent = self._recent_messages()
        per_minute = len(recent)
        bandwidth = sum(size for _, size in recent)
        active = len(self._connections)
        streams = sum(1 for t in self._last_seen.values() if now - t < ACTIVE_STREAM_WINDOW)
        disconnects = sum(
            1
            for h in self._history
            if h["event"] == "disconnect" and now - h["at"] < DISCONNECT_WINDOW
        )
        stability = self.stability_score()

        connection_part = 100.0
        if stability < 80:
            connection_part -= 20
        if active == 0:
            connection_part = 50.0
        throughput_part = 100.0
        if per_minute < 1:
            throughput_part -= 30
        if active < 2:
            throughput_part -= 20
        score = clamp_score((connection_part + throughput_part) / 2)

        return AgentMetrics(
            active_connections=active,
            active_streams=streams,
            total_connections=self._total_connections,
            total_messages=self._total_messages,
            messages_per_minute=per_minute,
            avg_message_size=round(bandwidth / per_minute, 1) if per_minute else 0.0,
            bandwidth_per_minute=bandwidth,
            stability_score=stability,
            recent_disconnects=disconnects,
            flow=_flow_rate([t for t, _ in recent]),
            health_score=score,
            health=classify_health(score),
        )

    def tick(self) -> AgentSample:
        """Snapshot the derived values; keeps one hour of samples."""
        stamp = self._clock.utcnow()
        sample = AgentSample(
            active_connections=len(self._connections),
            stability_score=self.stability_score(),
            messages_per_minute=len(self._recent_messages()),
            captured_at=stamp,
        )
        self._samples.append(sample)
        cutoff = stamp - SAMPLE_RETENTION
        while self._samples and self._samples[0].captured_at < cutoff:
            self._samples.popleft()
        return sample

    def history(self, since_seconds: float | None = None) -> tuple[AgentSample, ...]:
        if since_seconds is None:
            return tuple(self._samples)
        cutoff = self._clock.utcnow() - timedelta(seconds=since_seconds)
        return tuple(s for s in self._samples if s.captured_at >= cutoff)

    def connections(self) -> list[ConnectionRecord]:
        # Records are frozen, so handing them out cannot leak mutable state
        return list(self._connections.values())

    def connection(self, connection_id: str) -> ConnectionRecord | None:
        return self._connections.get(connection_id)

    def connection_history(self, limit: int = 100) -> list[dict]:
        return [dict(h) for h in list(self._history)[-limit:]]

    def export(self) -> dict:
        return {
            "exported_at": self._clock.now(),
            "connections": [asdict(r) for r in self._connections.values()],
            "connection_history": [dict(h) for h in self._history],
            "message_window": [list(entry) for entry in self._window],
            "samples": [asdict(s) for s in self._samples],
            "total_connections": self._total_connections,
            "total_messages": self._total_messages,
        }
