"""
Dashboard API server for WiCare.

Provides:
- REST API for status, waveform samples, alerts, calibration and device config
- WebSocket push of state, alert and calibration changes
- Debug overrides, mounted only when the session was built with debug enabled

Rendering is left to the web client; everything here is plain JSON.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Request
import uvicorn

from wicare import __version__
from wicare.core.buffer import WaveformStats
from wicare.core.config import DashboardConfig
from wicare.core.errors import ConfigValidationError, PreconditionError
from wicare.core.events import AlertSeverity, AlertSnapshot, CalibrationRun, SystemState
from wicare.session import MonitorSession

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages WebSocket connections."""

    def __init__(self):
        self._connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections.append(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self._connections:
            self._connections.remove(websocket)

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Send message to all connected clients."""
        dead_connections = []

        for connection in self._connections:
            try:
                await connection.send_json(message)
            except Exception:
                dead_connections.append(connection)

        for conn in dead_connections:
            self.disconnect(conn)

    @property
    def connection_count(self) -> int:
        return len(self._connections)


class DashboardServer:
    """
    Web API in front of one MonitorSession.

    The server owns the session lifecycle: it is started when the app starts
    and closed when the app shuts down.
    """

    def __init__(
        self,
        session: MonitorSession,
        config: DashboardConfig | None = None,
    ):
        self._session = session
        self._config = config or DashboardConfig()
        self._app = FastAPI(
            title="WiCare Dashboard API",
            description="Fall-detection device telemetry and alerts",
            version=__version__,
            lifespan=self._lifespan,
        )

        self._ws_manager = ConnectionManager()
        self._running = False
        self._update_task: asyncio.Task | None = None
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task | None = None
        self._broadcast_tasks: set[asyncio.Task] = set()

        session.alerts.add_listener(self._on_alert_change)
        session.calibration.add_listener(self._on_calibration_change)

        self._setup_routes()

    @property
    def app(self) -> FastAPI:
        """Get FastAPI app instance."""
        return self._app

    @property
    def session(self) -> MonitorSession:
        return self._session

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI) -> AsyncIterator[None]:
        await self._session.start()
        self._running = True
        self._update_task = asyncio.create_task(self._update_loop())
        try:
            yield
        finally:
            self._running = False
            if self._update_task:
                self._update_task.cancel()
                try:
                    await self._update_task
                except asyncio.CancelledError:
                    pass
                self._update_task = None
            await self._session.close()

    def _setup_routes(self) -> None:
        """Configure all routes."""
        self._app.get("/health")(self._health_check)
        self._app.get("/api/status")(self._get_status)
        self._app.get("/api/samples")(self._get_samples)
        self._app.get("/api/alerts/history")(self._get_alert_history)
        self._app.post("/api/alert/acknowledge")(self._acknowledge_alert)
        self._app.post("/api/alert/escalate")(self._escalate_alert)
        self._app.post("/api/calibration/start")(self._start_calibration)
        self._app.post("/api/calibration/cancel")(self._cancel_calibration)
        self._app.get("/api/config")(self._get_config)
        self._app.put("/api/config")(self._update_config)
        self._app.post("/api/connection/check")(self._check_connection)
        self._app.post("/api/connection/stream")(self._upgrade_stream)
        self._app.post("/api/monitoring/pause")(self._pause_monitoring)
        self._app.post("/api/monitoring/resume")(self._resume_monitoring)
        self._app.websocket("/ws")(self._websocket_endpoint)

        # Debug overrides exist only when enabled at construction
        if self._session.alerts.debug_enabled:
            self._app.post("/api/debug/force-safe")(self._force_safe)
            self._app.post("/api/debug/force-fall")(self._force_fall)

    # ========================================================================
    # Health Check
    # ========================================================================

    async def _health_check(self) -> dict[str, Any]:
        return {
            "status": "healthy",
            "running": self._running,
            "connections": self._ws_manager.connection_count,
        }

    # ========================================================================
    # Status & Telemetry
    # ========================================================================

    async def _get_status(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "data": self._session.status(),
            "timestamp": time.time(),
        }

    async def _get_samples(self, limit: int | None = None) -> dict[str, Any]:
        samples = self._session.buffer.snapshot()
        if limit is not None:
            samples = samples[-limit:] if limit > 0 else []

        return {
            "samples": [s.to_dict() for s in samples],
            "count": len(samples),
            "capacity": self._session.buffer.capacity,
            "stats": WaveformStats.from_samples(samples).to_dict(),
        }

    # ========================================================================
    # Alerts
    # ========================================================================

    async def _get_alert_history(self, limit: int = 50) -> dict[str, Any]:
        return {
            "active": self._session.alerts.alert.to_dict() if self._session.alerts.alert else None,
            "history": [r.to_dict() for r in self._session.alerts.history(limit)],
        }

    async def _acknowledge_alert(self) -> dict[str, Any]:
        if not self._session.alerts.acknowledge():
            raise HTTPException(status_code=409, detail="No active fall alert")
        return {"status": "acknowledged", "system": self._session.alerts.snapshot().to_dict()}

    async def _escalate_alert(self) -> dict[str, Any]:
        alert = self._session.alerts.alert
        if alert is None or self._session.alerts.state is not SystemState.FALL:
            raise HTTPException(status_code=409, detail="No active fall alert")

        delivered = await self._session.alerts.escalate()
        return {
            "status": "escalated",
            "alert_id": alert.id,
            "delivered": delivered,
            "emergency_number": self._session.config.alerts.emergency_number,
        }

    # ========================================================================
    # Calibration
    # ========================================================================

    async def _start_calibration(self) -> dict[str, Any]:
        try:
            run = await self._session.calibration.start()
        except PreconditionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"status": "started", "calibration": run.to_dict()}

    async def _cancel_calibration(self) -> dict[str, Any]:
        cancelled = await self._session.calibration.cancel()
        return {
            "status": "cancelled" if cancelled else "idle",
            "calibration": self._session.calibration.run.to_dict(),
        }

    # ========================================================================
    # Device Config & Connection
    # ========================================================================

    async def _get_config(self) -> dict[str, Any]:
        return {
            "device": self._session.manager.get_config().model_dump(mode="json"),
            "dashboard": {
                "host": self._config.host,
                "port": self._config.port,
                "websocket_update_interval_ms": self._config.websocket_update_interval_ms,
            },
        }

    async def _update_config(self, request: Request) -> dict[str, Any]:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Body must be JSON")
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Body must be a JSON object")

        current = self._session.manager.get_config()
        try:
            device = await self._session.manager.update_config(
                host=body.get("host", current.host),
                port=body.get("port", current.port),
                mode=body.get("transport_mode", current.transport_mode),
            )
        except ConfigValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))

        return {
            "device": device.model_dump(mode="json"),
            "connection": self._session.manager.get_connection_status().value,
            "reason": self._session.manager.status_reason,
        }

    async def _check_connection(self) -> dict[str, Any]:
        healthy = await self._session.manager.check_health()
        return {
            "healthy": healthy,
            "connection": self._session.manager.get_connection_status().value,
            "reason": self._session.manager.status_reason,
        }

    async def _upgrade_stream(self) -> dict[str, Any]:
        streaming = await self._session.manager.connect()
        return {
            "streaming": streaming,
            "transport": self._session.manager.active_transport,
        }

    # ========================================================================
    # Monitoring Toggle
    # ========================================================================

    async def _pause_monitoring(self) -> dict[str, Any]:
        self._session.pause_monitoring()
        return {"monitoring": False}

    async def _resume_monitoring(self) -> dict[str, Any]:
        self._session.resume_monitoring()
        return {"monitoring": True}

    # ========================================================================
    # Debug Overrides
    # ========================================================================

    async def _force_safe(self) -> dict[str, Any]:
        applied = self._session.alerts.force_safe()
        return {"applied": applied, "system": self._session.alerts.snapshot().to_dict()}

    async def _force_fall(self, request: Request) -> dict[str, Any]:
        body: dict[str, Any] = {}
        raw = await request.body()
        if raw:
            try:
                body = json.loads(raw)
            except json.JSONDecodeError:
                raise HTTPException(status_code=400, detail="Body must be JSON")

        try:
            severity = AlertSeverity(body.get("severity", AlertSeverity.HIGH.value))
        except ValueError:
            raise HTTPException(status_code=422, detail="Severity must be high, medium or low")

        applied = self._session.alerts.force_fall(severity=severity, location=body.get("location"))
        return {"applied": applied, "system": self._session.alerts.snapshot().to_dict()}

    # ========================================================================
    # WebSocket
    # ========================================================================

    async def _websocket_endpoint(self, websocket: WebSocket) -> None:
        """Handle WebSocket connections."""
        await self._ws_manager.connect(websocket)

        try:
            await websocket.send_json({"type": "status", **self._session.status()})

            while True:
                try:
                    data = await asyncio.wait_for(websocket.receive_text(), timeout=30.0)
                    await self._handle_ws_message(websocket, data)
                except asyncio.TimeoutError:
                    await websocket.send_json({"type": "ping"})

        except WebSocketDisconnect:
            pass
        finally:
            self._ws_manager.disconnect(websocket)

    async def _handle_ws_message(self, websocket: WebSocket, data: str) -> None:
        """Handle incoming WebSocket message."""
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            return

        if not isinstance(message, dict):
            return

        msg_type = message.get("type")
        if msg_type == "status":
            await websocket.send_json({"type": "status", **self._session.status()})
        elif msg_type == "samples":
            samples = self._session.buffer.snapshot()
            await websocket.send_json({
                "type": "samples",
                "samples": [s.to_dict() for s in samples],
            })

    # ========================================================================
    # Change Push
    # ========================================================================

    def _on_alert_change(self, snapshot: AlertSnapshot) -> None:
        self._schedule_broadcast({"type": "alert", **snapshot.to_dict()})

    def _on_calibration_change(self, run: CalibrationRun) -> None:
        self._schedule_broadcast({"type": "calibration", **run.to_dict()})

    def _schedule_broadcast(self, message: dict[str, Any]) -> None:
        if not self._running or self._ws_manager.connection_count == 0:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._ws_manager.broadcast(message))
        self._broadcast_tasks.add(task)
        task.add_done_callback(self._broadcast_tasks.discard)

    async def _update_loop(self) -> None:
        """Periodically broadcast state and the latest samples."""
        interval = self._config.websocket_update_interval_ms / 1000.0

        while self._running:
            if self._ws_manager.connection_count:
                samples = self._session.buffer.snapshot()
                await self._ws_manager.broadcast({
                    "type": "status",
                    **self._session.status(),
                    "samples": [s.to_dict() for s in samples],
                })
            await asyncio.sleep(interval)

    # ========================================================================
    # Server Control
    # ========================================================================

    async def start(self) -> None:
        """Start the API server in background."""
        config = uvicorn.Config(
            self._app,
            host=self._config.host,
            port=self._config.port,
            log_level="info",
        )
        self._server = uvicorn.Server(config)
        self._server_task = asyncio.create_task(self._server.serve())

    async def stop(self) -> None:
        """Stop the API server (closing the session via the app lifespan)."""
        if self._server:
            self._server.should_exit = True
            if self._server_task:
                try:
                    await asyncio.wait_for(self._server_task, timeout=5.0)
                except asyncio.TimeoutError:
                    self._server_task.cancel()
                except asyncio.CancelledError:
                    pass
            self._server = None
            self._server_task = None

    def run(self) -> None:
        """Run server synchronously (for standalone use)."""
        uvicorn.run(self._app, host=self._config.host, port=self._config.port)
