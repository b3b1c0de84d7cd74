"""FastAPI application: REST endpoints, the /ws endpoint, and the security middleware."""

from __future__ import annotations

import json
import logging
import math
from contextlib import asynccontextmanager
from urllib.parse import unquote

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vigil.config import VERSION, VigilConfig
from vigil.core.api import is_rate_limit_error
from vigil.core.scheduler import Clock
from vigil.core.sources import MetricSource
from vigil.models.enums import SecurityEventKind
from vigil.web.broadcast import InvalidMessageError, validate_message_text
from vigil.web.runtime import Runtime

logger = logging.getLogger("vigil.server")

MESSAGE_PAGE_LIMIT = 50


def _json(data: object, status_code: int = 200, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(jsonable_encoder(data), status_code=status_code, headers=headers)


async def _read_object(request: Request) -> dict:
    """Parse a JSON object body or raise INVALID_PAYLOAD."""
    try:
        body = await request.json()
    except ValueError:
        raise InvalidMessageError("INVALID_PAYLOAD", "Request body is not valid JSON") from None
    if not isinstance(body, dict):
        raise InvalidMessageError("INVALID_PAYLOAD", "Request body must be a JSON object")
    return body


def create_app(
    config: VigilConfig | None = None,
    clock: Clock | None = None,
    source: MetricSource | None = None,
    runtime: Runtime | None = None,
) -> FastAPI:
    """Build the server around a ``Runtime``; its jobs run for the app's lifespan."""
    runtime = runtime or Runtime(config, clock, source)
    max_length = runtime.config.server.max_message_length
    max_frame_bytes = runtime.config.server.max_frame_bytes

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.start()
        try:
            yield
        finally:
            await runtime.stop()

    app = FastAPI(
        title="Vigil",
        description="Real-time host and service health dashboard",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -- middleware and error handlers ------------------------------------

    @app.middleware("http")
    async def security_middleware(request: Request, call_next):
        monitor = runtime.security
        ip = request.client.host if request.client else "unknown"
        user_agent = request.headers.get("user-agent")
        path = request.url.path

        try:
            url = unquote(str(request.url))
            for kind in monitor.analyze_request(
                url, dict(request.query_params), dict(request.headers)
            ):
                monitor.record_event(kind, {"ip": ip, "url": url})
            if monitor.analyze_user_agent(user_agent):
                monitor.record_event(
                    SecurityEventKind.SUSPICIOUS_USER_AGENT,
                    {"ip": ip, "user_agent": user_agent or ""},
                )
        except Exception:
            logger.exception("Request analysis failed for %s; serving it anyway", path)

        def record(succeeded: bool) -> None:
            try:
                monitor.record_connection(ip, succeeded, user_agent, path)
            except Exception:
                logger.exception("Cannot record connection from %s", ip)

        try:
            response = await call_next(request)
        except Exception:
            record(False)
            raise
        record(response.status_code < 400)
        return response

    @app.exception_handler(InvalidMessageError)
    async def invalid_message_handler(request: Request, exc: InvalidMessageError):
        return JSONResponse({"error": exc.message, "code": exc.code}, status_code=400)

    @app.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return _json(
            {
                "error": "Internal server error",
                "code": "INTERNAL_ERROR",
                "timestamp": runtime.clock.utcnow(),
            },
            status_code=500,
        )

    # -- liveness, state, messages, clients -------------------------------

    @app.get("/api/health")
    async def health():
        return _json(runtime.liveness())

    @app.get("/api/state")
    async def state():
        return _json(runtime.composite_state())

    @app.get("/api/messages")
    async def list_messages(limit: int = MESSAGE_PAGE_LIMIT):
        limit = max(0, min(limit, MESSAGE_PAGE_LIMIT))
        return _json({"messages": runtime.messages.recent(limit)})

    @app.post("/api/messages")
    async def post_message(request: Request):
        body = await _read_object(request)
        text = validate_message_text(body.get("text"), max_length)
        sender = body.get("sender")
        message = runtime.messages.append(text, sender=str(sender) if sender else None)
        runtime.manager.broadcast({"type": "new_message", "payload": message})
        return _json({"message": message}, status_code=201)

    @app.get("/api/clients")
    async def clients():
        entries = runtime.directory.entries()
        return _json({"clients": entries, "count": len(entries)})

    # -- monitoring -------------------------------------------------------

    @app.get("/api/monitoring/system")
    async def monitoring_system():
        return _json(runtime.system.sample())

    @app.get("/api/monitoring/api-performance")
    async def monitoring_api():
        return _json(runtime.api_view())

    @app.get("/api/monitoring/agents")
    async def monitoring_agents():
        return _json(runtime.agents_view())

    @app.get("/api/monitoring/security")
    async def monitoring_security():
        return _json(runtime.security.metrics())

    @app.get("/api/monitoring/health-analytics")
    async def monitoring_health():
        return _json(runtime.analytics.analytics())

    @app.get("/api/monitoring/dashboard")
    async def monitoring_dashboard():
        state = runtime.composite_state()
        health = state["health"] or {}
        security = state["security"]
        state["summary"] = {
            "status": state["status"],
            "overall": health.get("current", {}).get("overall"),
            "threat": security.threat.status if security else None,
            "clients": len(runtime.directory),
            "connections": runtime.manager.connection_count,
            "recommendations": len(health.get("recommendations", [])),
        }
        return _json(state)

    @app.get("/api/monitoring/export")
    async def monitoring_export():
        filename = f"vigil-export-{int(runtime.clock.now())}.json"
        return _json(
            runtime.export(),
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.post("/api/monitoring/api/{api_name}/outcomes")
    async def ingest_outcome(api_name: str, request: Request):
        body = await _read_object(request)
        elapsed = body.get("elapsed_ms")
        succeeded = body.get("succeeded")
        if (
            isinstance(elapsed, bool)
            or not isinstance(elapsed, (int, float))
            or not math.isfinite(elapsed)
        ):
            raise InvalidMessageError("INVALID_PAYLOAD", "elapsed_ms must be a finite number")
        if not isinstance(succeeded, bool):
            raise InvalidMessageError("INVALID_PAYLOAD", "succeeded must be a boolean")
        error = body.get("error")
        error = str(error) if error else None
        rate_limited = body.get("rate_limited")
        if rate_limited is None:
            rate_limited = bool(error) and is_rate_limit_error(error)

        outcome = runtime.api.record_outcome(
            api_name, float(elapsed), succeeded, bool(rate_limited), error
        )
        return _json(
            {"outcome": outcome, "metrics": runtime.api.metrics(api_name)}, status_code=201
        )

    # -- websocket --------------------------------------------------------

    async def send_error(connection_id: str, exc: InvalidMessageError) -> None:
        await runtime.manager.send_to(
            connection_id, {"type": "error", "payload": {"code": exc.code, "message": exc.message}}
        )

    async def handle_frame(connection_id: str, raw: str) -> None:
        size = len(raw.encode("utf-8"))
        if size > max_frame_bytes:
            runtime.agents.on_message(connection_id, "oversized", size)
            await send_error(
                connection_id,
                InvalidMessageError(
                    "FRAME_TOO_LARGE", f"Frames are limited to {max_frame_bytes} bytes"
                ),
            )
            return
        try:
            frame = json.loads(raw)
        except ValueError:
            frame = None
        if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
            runtime.agents.on_message(connection_id, "invalid", size)
            await send_error(
                connection_id,
                InvalidMessageError("INVALID_PAYLOAD", "Frames must be JSON objects with a type"),
            )
            return

        kind = frame["type"]
        payload = frame.get("payload") or {}
        runtime.agents.on_message(connection_id, kind, size)

        try:
            if kind == "heartbeat":
                runtime.agents.touch(connection_id)
                runtime.directory.touch(connection_id)
            elif kind == "register":
                if not isinstance(payload, dict):
                    raise InvalidMessageError("INVALID_PAYLOAD", "Registration must be an object")
                entry = runtime.directory.register(connection_id, payload)
                await runtime.manager.send_to(
                    connection_id, {"type": "registered", "payload": {"client": entry}}
                )
                runtime.manager.relay(
                    {"type": "clients_update", "payload": {"clients": runtime.directory.entries()}},
                    exclude=connection_id,
                )
            elif kind == "message":
                raw_text = payload.get("text") if isinstance(payload, dict) else None
                text = validate_message_text(raw_text, max_length)
                message = runtime.messages.append(text, sender=connection_id)
                await runtime.manager.send_to(
                    connection_id, {"type": "message_ack", "payload": {"message": message}}
                )
                runtime.manager.relay(
                    {"type": "new_message", "payload": message}, exclude=connection_id
                )
            else:
                raise InvalidMessageError("UNKNOWN_EVENT", f"Unknown event type {kind!r}")
        except InvalidMessageError as exc:
            await send_error(connection_id, exc)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        manager = runtime.manager
        connection_id = await manager.connect(websocket)
        runtime.agents.on_connect(connection_id)
        runtime.directory.register(connection_id)
        reason = "closed"

        try:
            await manager.send_to(
                connection_id,
                {
                    "type": "welcome",
                    "payload": {
                        "connection_id": connection_id,
                        "clients": runtime.directory.entries(),
                        "state": runtime.composite_state(),
                    },
                },
            )
            while True:
                try:
                    raw = await websocket.receive_text()
                except WebSocketDisconnect as exc:
                    reason = f"code {exc.code}"
                    break
                await handle_frame(connection_id, raw)
        finally:
            runtime.agents.on_disconnect(connection_id, reason)
            runtime.directory.remove(connection_id)
            await manager.disconnect(connection_id)
            manager.relay(
                {"type": "clients_update", "payload": {"clients": runtime.directory.entries()}},
                exclude=connection_id,
            )

    return app
