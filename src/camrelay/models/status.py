"""
Status API Models
=================

Request and response contracts of the control/status HTTP endpoints.

Status Contract:
    {
        "service": "camrelay",
        "version": "v0.1.0",
        "uptime_seconds": 42.0,
        "telemetry": {"camera_fps": 30.0, "mjpeg_fps": 10.0, "rtsp_fps": 0.0},
        "clients": {"mjpeg": 3, "rtsp": 0},
        "watchdog": {
            "stop_requested": false,
            "components": {"camera": {"state": "healthy", ...}, ...}
        },
        "pipelines": {"mjpeg": {...}, "rtsp": {...}}
    }

Design Rules:
    - FPS updates are validated here and rejected with 422, never clamped
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class TelemetryPayload(BaseModel):
    """Current frame rates."""

    camera_fps: float = Field(..., ge=0.0, description="Capture callback rate")
    mjpeg_fps: float = Field(..., ge=0.0, description="Per-client MJPEG delivery rate")
    rtsp_fps: float = Field(..., ge=0.0, description="H.264 encoder output rate")


class ComponentHealth(BaseModel):
    """Watchdog view of one component."""

    state: str = Field(..., description="healthy, degraded, restarting or stopped")
    failures: int = Field(default=0, ge=0, description="Consecutive restart failures")
    backoff_s: float = Field(default=0.0, ge=0.0, description="Current backoff interval")
    last_attempt: Optional[float] = Field(default=None, description="Last restart attempt (monotonic s)")
    next_attempt: Optional[float] = Field(default=None, description="Next scheduled attempt (monotonic s)")
    restarts: int = Field(default=0, ge=0, description="Successful restarts")
    last_error: Optional[str] = Field(default=None, description="Last restart error")


class WatchdogStatus(BaseModel):
    stop_requested: bool
    components: Dict[str, ComponentHealth]


class StatusResponse(BaseModel):
    """Payload of GET /status."""

    service: str
    version: str
    uptime_seconds: float = Field(..., ge=0.0)
    telemetry: TelemetryPayload
    clients: Dict[str, int] = Field(..., description="Connected clients per protocol")
    watchdog: WatchdogStatus
    pipelines: Dict[str, dict] = Field(default_factory=dict)


class ConnectionInfo(BaseModel):
    """One connected stream client."""

    id: int
    protocol: str
    remote: str = ""
    connected_at: float
    duration_s: float
    delivered_frames: int = 0
    dropped_frames: int = 0
    consecutive_drops: int = 0
    bytes_sent: int = 0
    closed: bool = False


class ConnectionsResponse(BaseModel):
    """Payload of GET /connections."""

    count: int = Field(..., ge=0)
    connections: List[ConnectionInfo]


class FpsUpdate(BaseModel):
    """
    Body of POST /config/fps.

    At least one field is required; values must be positive.
    """

    mjpeg_fps: Optional[float] = Field(default=None, gt=0, description="New MJPEG target FPS")
    rtsp_fps: Optional[float] = Field(default=None, gt=0, description="New RTSP target FPS")

    @model_validator(mode="after")
    def _require_one(self) -> "FpsUpdate":
        if self.mjpeg_fps is None and self.rtsp_fps is None:
            raise ValueError("Provide mjpeg_fps and/or rtsp_fps")
        return self


class FpsTargets(BaseModel):
    """Current target FPS values."""

    mjpeg_fps: float
    rtsp_fps: float
