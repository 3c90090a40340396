"""
Data Models
===========

Pydantic models for the CamRelay HTTP API.

Models:
    - StatusResponse: telemetry, client counts, watchdog and pipeline state
    - ConnectionsResponse / ConnectionInfo: connected stream clients
    - FpsUpdate / FpsTargets: runtime target FPS control
"""

from camrelay.models.status import (
    ComponentHealth,
    ConnectionInfo,
    ConnectionsResponse,
    FpsTargets,
    FpsUpdate,
    StatusResponse,
    TelemetryPayload,
    WatchdogStatus,
)

__all__ = [
    "ComponentHealth",
    "ConnectionInfo",
    "ConnectionsResponse",
    "FpsTargets",
    "FpsUpdate",
    "StatusResponse",
    "TelemetryPayload",
    "WatchdogStatus",
]
