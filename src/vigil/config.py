"""Layered configuration: .vigil/config.toml -> VIGIL_* env vars -> defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

try:
    import tomllib  # 3.11+
except ModuleNotFoundError:
    import tomli as tomllib  # type: ignore[no-redef]

VERSION = "0.1.0"

SOURCE_MODES = ("live", "simulated")


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """HTTP/WebSocket server settings."""

    host: str = "0.0.0.0"
    port: int = 3001
    max_message_length: int = 1000
    message_history: int = 50
    max_frame_bytes: int = 8192


@dataclass(frozen=True, slots=True)
class ScheduleConfig:
    """Periodic job intervals, in seconds."""

    broadcast_interval: float = 5.0
    analytics_interval: float = 60.0
    analytics_delay: float = 5.0
    agent_tick_interval: float = 5.0
    security_scan_interval: float = 30.0
    security_prune_interval: float = 300.0
    security_probe_interval: float = 300.0


@dataclass(frozen=True, slots=True)
class SourceConfig:
    """Where host metrics and API outcomes come from."""

    mode: str = "live"
    seed: int | None = None
    apis: tuple[str, ...] = ("claude", "gemini")


@dataclass(frozen=True, slots=True)
class SecurityConfig:
    """Security monitor settings."""

    scan_logs: bool = True
    auth_logs: tuple[str, ...] = ("/var/log/auth.log", "/var/log/secure")


@dataclass(frozen=True, slots=True)
class VigilConfig:
    """Top-level configuration container."""

    project_path: Path = field(default_factory=Path.cwd)
    server: ServerConfig = field(default_factory=ServerConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)

    @property
    def vigil_dir(self) -> Path:
        return self.project_path / ".vigil"

    @property
    def simulated(self) -> bool:
        return self.source.mode == "simulated"

    @classmethod
    def load(cls, project_path: Path | None = None) -> VigilConfig:
        """Load config with layering: TOML file -> env vars -> defaults."""
        project = Path(project_path) if project_path else Path.cwd()
        toml_path = project / ".vigil" / "config.toml"

        toml_data: dict = {}
        if toml_path.is_file():
            with open(toml_path, "rb") as f:
                toml_data = tomllib.load(f)

        server_data = toml_data.get("server", {})
        schedule_data = toml_data.get("schedule", {})
        source_data = toml_data.get("source", {})
        security_data = toml_data.get("security", {})

        # Use literal defaults (slots=True prevents class-level attribute access)
        _server_defaults = ServerConfig()
        _schedule_defaults = ScheduleConfig()
        _source_defaults = SourceConfig()
        _security_defaults = SecurityConfig()

        server = ServerConfig(
            host=os.environ.get(
                "VIGIL_HOST", server_data.get("host", _server_defaults.host)
            ),
            port=int(
                os.environ.get(
                    "VIGIL_PORT", server_data.get("port", _server_defaults.port)
                )
            ),
            max_message_length=int(
                os.environ.get(
                    "VIGIL_MAX_MESSAGE_LENGTH",
                    server_data.get(
                        "max_message_length", _server_defaults.max_message_length
                    ),
                )
            ),
            message_history=int(
                os.environ.get(
                    "VIGIL_MESSAGE_HISTORY",
                    server_data.get(
                        "message_history", _server_defaults.message_history
                    ),
                )
            ),
            max_frame_bytes=int(
                os.environ.get(
                    "VIGIL_MAX_FRAME_BYTES",
                    server_data.get(
                        "max_frame_bytes", _server_defaults.max_frame_bytes
                    ),
                )
            ),
        )

        schedule = ScheduleConfig(
            **{
                name: float(
                    os.environ.get(
                        f"VIGIL_{name.upper()}",
                        schedule_data.get(name, getattr(_schedule_defaults, name)),
                    )
                )
                for name in (
                    "broadcast_interval",
                    "analytics_interval",
                    "analytics_delay",
                    "agent_tick_interval",
                    "security_scan_interval",
                    "security_prune_interval",
                    "security_probe_interval",
                )
            }
        )

        mode = os.environ.get("VIGIL_SOURCE", source_data.get("mode", _source_defaults.mode))
        if mode not in SOURCE_MODES:
            raise ValueError(f"Unknown source mode {mode!r}; expected one of {SOURCE_MODES}")

        seed_raw = os.environ.get("VIGIL_SOURCE_SEED", source_data.get("seed"))
        apis_env = os.environ.get("VIGIL_APIS")
        if apis_env is not None:
            apis = tuple(a.strip().lower() for a in apis_env.split(",") if a.strip())
        else:
            apis = tuple(a.lower() for a in source_data.get("apis", _source_defaults.apis))

        source = SourceConfig(
            mode=mode,
            seed=int(seed_raw) if seed_raw is not None else None,
            apis=apis,
        )

        scan_env = os.environ.get("VIGIL_SCAN_LOGS")
        if scan_env is not None:
            scan_logs = scan_env.strip().lower() in ("1", "true", "yes", "on")
        else:
            scan_logs = bool(security_data.get("scan_logs", _security_defaults.scan_logs))

        security = SecurityConfig(
            scan_logs=scan_logs,
            auth_logs=tuple(security_data.get("auth_logs", _security_defaults.auth_logs)),
        )

        return cls(
            project_path=project,
            server=server,
            schedule=schedule,
            source=source,
            security=security,
        )
