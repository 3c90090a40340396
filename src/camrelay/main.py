"""
CamRelay Main Application
=========================

FastAPI entry point for the camera relay.

Endpoints:
    GET    /                         - Service information
    GET    /health                   - Liveness probe (is process alive?)
    GET    /ready                    - Readiness probe (frames flowing?)
    GET    /stream                   - MJPEG stream (multipart/x-mixed-replace)
    GET    /snapshot                 - Latest frame as JPEG
    GET    /status                   - Telemetry, clients, watchdog, pipelines
    GET    /connections              - Connected stream clients
    DELETE /connections/{client_id}  - Close one stream client
    POST   /config/fps               - Change target MJPEG/RTSP FPS
    POST   /watchdog/stop            - Operator stop (components -> STOPPED)
    POST   /watchdog/start           - Operator start (bypasses backoff)
    WS     /ws/telemetry             - Telemetry snapshots on change

Thread pools:
    Short sync endpoints run on AnyIO's default thread limiter, sized to
    server.request_pool_size. MJPEG bodies wait on the service's separate
    stream executor, so open streams never starve the control endpoints.
"""

import asyncio
import logging
import signal
import sys
import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import anyio.to_thread
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response, StreamingResponse

from camrelay.config import Settings, settings
from camrelay.models.status import (
    ConnectionsResponse,
    FpsTargets,
    FpsUpdate,
    StatusResponse,
)
from camrelay.observability.telemetry import TelemetrySnapshot
from camrelay.server import HttpServerError, HttpServerRunner
from camrelay.service import StreamingService
from camrelay.stream.clients import ClientLimitReached
from camrelay.transport.mjpeg_http import MEDIA_TYPE, STREAM_HEADERS, mjpeg_stream


logger = logging.getLogger(__name__)

# Seconds between keep-alive snapshots on an idle telemetry socket
_WS_KEEPALIVE_S = 5.0

# Frames older than this make /ready report not ready
_READY_MAX_FRAME_AGE_MS = 2000.0


# =============================================================================
# Application Factory
# =============================================================================

def create_app(
    service: Optional[StreamingService] = None,
    app_settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        service: Running service to expose. When None, the app builds and
            owns one for its lifespan (`uvicorn camrelay.main:app`).
        app_settings: Settings override (defaults to the service's or the
            global settings)

    Returns:
        FastAPI: Configured application
    """
    cfg = app_settings or (service.settings if service is not None else settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        limiter = anyio.to_thread.current_default_thread_limiter()
        limiter.total_tokens = cfg.server.request_pool_size
        logger.info(f"Request pool: {cfg.server.request_pool_size} threads")

        owned: Optional[StreamingService] = None
        if app.state.service is None:
            owned = StreamingService(cfg)
            app.state.service = owned
            await asyncio.to_thread(owned.start)

        yield

        if owned is not None:
            logger.info("Shutting down gracefully...")
            await asyncio.to_thread(owned.stop)
            app.state.service = None

    app = FastAPI(
        title="CamRelay",
        description="Camera relay: MJPEG over HTTP and H.264 over RTSP with self-monitoring",
        version=cfg.service.version,
        lifespan=lifespan,
    )
    app.state.service = service

    def get_service() -> StreamingService:
        current = app.state.service
        if current is None:
            raise HTTPException(status_code=503, detail="Service not initialized")
        return current

    # =========================================================================
    # Service Endpoints
    # =========================================================================

    @app.get("/")
    async def root() -> JSONResponse:
        """Service information endpoint."""
        svc = get_service()
        rtsp_url = None
        if svc.rtsp_server is not None:
            rtsp_url = f"rtsp://<host>:{cfg.rtsp.port}/{cfg.rtsp.path}"
        return JSONResponse({
            "service": cfg.service.name,
            "version": cfg.service.version,
            "status": "running",
            "source_backend": cfg.source.backend,
            "mjpeg_url": "/stream",
            "rtsp_url": rtsp_url,
        })

    @app.get("/health")
    async def health() -> JSONResponse:
        """
        Liveness probe - is the process alive?

        Always returns 200 while the HTTP server runs. Polled by the
        watchdog's http component.
        """
        svc = get_service()
        return JSONResponse({
            "status": "healthy",
            "uptime_seconds": round(svc.uptime_seconds(), 1),
        })

    @app.get("/ready")
    async def ready() -> JSONResponse:
        """
        Readiness probe - are frames flowing?

        Returns 503 while no frame arrived recently or after an operator stop.
        """
        svc = get_service()
        age = svc.bus.frame_age_ms()
        stop_requested = svc.watchdog.stop_requested if svc.watchdog else False
        frames_flowing = age is not None and age <= _READY_MAX_FRAME_AGE_MS
        body = {
            "frames_flowing": frames_flowing,
            "frames_published": svc.bus.frames_published,
            "stop_requested": stop_requested,
        }
        if frames_flowing and not stop_requested:
            return JSONResponse({"status": "ready", **body})
        return JSONResponse({"status": "not_ready", **body}, status_code=503)

    # =========================================================================
    # Stream Endpoints
    # =========================================================================

    @app.get("/stream")
    async def stream(request: Request) -> StreamingResponse:
        """MJPEG stream; one registered client per connection."""
        svc = get_service()
        remote = request.client.host if request.client else ""
        try:
            client = svc.register_mjpeg_client(remote=remote)
        except ClientLimitReached as e:
            raise HTTPException(status_code=503, detail=str(e))

        return StreamingResponse(
            mjpeg_stream(client, svc.registry, svc.stream_executor),
            media_type=MEDIA_TYPE,
            headers=STREAM_HEADERS,
        )

    @app.get("/snapshot")
    def snapshot() -> Response:
        """Latest frame as a single JPEG."""
        jpeg = get_service().snapshot_jpeg()
        if jpeg is None:
            raise HTTPException(status_code=503, detail="No frame available yet")
        return Response(content=jpeg, media_type="image/jpeg", headers={"Cache-Control": "no-cache"})

    # =========================================================================
    # Status and Control Endpoints
    # =========================================================================

    @app.get("/status", response_model=StatusResponse)
    def status() -> dict:
        """Telemetry snapshot, client counts, watchdog and pipeline state."""
        return get_service().status()

    @app.get("/connections", response_model=ConnectionsResponse)
    def connections() -> dict:
        clients = get_service().registry.all_clients()
        return {
            "count": len(clients),
            "connections": [client.to_dict() for client in clients],
        }

    @app.delete("/connections/{client_id}")
    def close_connection(client_id: int) -> JSONResponse:
        if not get_service().disconnect_client(client_id):
            raise HTTPException(status_code=404, detail=f"No client with id {client_id}")
        return JSONResponse({"closed": client_id})

    @app.post("/config/fps", response_model=FpsTargets)
    def set_fps(update: FpsUpdate) -> dict:
        """Change target FPS. Non-positive values are rejected with 422."""
        try:
            return get_service().set_target_fps(
                mjpeg_fps=update.mjpeg_fps,
                rtsp_fps=update.rtsp_fps,
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))

    @app.post("/watchdog/stop")
    def watchdog_stop() -> JSONResponse:
        svc = get_service()
        svc.user_stop()
        return JSONResponse({"stopped": True, **_watchdog_states(svc)})

    @app.post("/watchdog/start")
    def watchdog_start() -> JSONResponse:
        svc = get_service()
        svc.user_start()
        return JSONResponse({"stopped": False, **_watchdog_states(svc)})

    # =========================================================================
    # WebSocket Endpoints
    # =========================================================================

    @app.websocket("/ws/telemetry")
    async def telemetry_stream(websocket: WebSocket) -> None:
        """Push telemetry snapshots when they change by more than the threshold."""
        svc = get_service()
        await websocket.accept()
        logger.info("Client connected to /ws/telemetry")

        loop = asyncio.get_running_loop()
        updates: "asyncio.Queue[TelemetrySnapshot]" = asyncio.Queue(maxsize=8)

        def enqueue(snapshot: TelemetrySnapshot) -> None:
            if updates.full():
                updates.get_nowait()
            updates.put_nowait(snapshot)

        subscription = svc.telemetry.subscribe(
            lambda snapshot: loop.call_soon_threadsafe(enqueue, snapshot)
        )
        try:
            await websocket.send_json(svc.telemetry.latest_snapshot().to_dict())
            while True:
                try:
                    snapshot = await asyncio.wait_for(updates.get(), timeout=_WS_KEEPALIVE_S)
                except asyncio.TimeoutError:
                    snapshot = svc.telemetry.latest_snapshot()
                await websocket.send_json(snapshot.to_dict())
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.warning(f"WebSocket error: {e}")
        finally:
            subscription.release()
            logger.info("Client disconnected from /ws/telemetry")

    return app


def _watchdog_states(service: StreamingService) -> dict:
    if service.watchdog is None:
        return {"components": {}}
    return {"components": {name: state.value for name, state in service.watchdog.states().items()}}


# =============================================================================
# Main Entry Point
# =============================================================================

app = create_app()


def run() -> None:
    """Start the service and the HTTP server; block until SIGINT/SIGTERM."""
    service = StreamingService(settings)
    runner = HttpServerRunner(
        create_app(service),
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.logging.level,
    )
    service.attach_http(runner)

    shutdown = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        shutdown.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        runner.start()
    except HttpServerError as e:
        logger.error(f"Cannot start HTTP server: {e}")
        service.stream_executor.shutdown(wait=False)
        sys.exit(1)

    service.start()
    try:
        while not shutdown.wait(1.0):
            pass
    finally:
        service.stop()
        runner.stop()
        logger.info("Shutdown complete")


if __name__ == "__main__":
    run()
