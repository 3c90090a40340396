"""
CamRelay Configuration
======================

This module handles configuration loading for the camera relay.

Configuration Sources (in order of precedence):
    1. Environment variables (highest priority)
    2. config.yaml file
    3. Default values (lowest priority)

Environment Variable Mapping:
    CAMRELAY_SOURCE_BACKEND   -> source.backend
    CAMRELAY_SOURCE_DEVICE    -> source.device
    CAMRELAY_MJPEG_FPS        -> mjpeg.target_fps
    CAMRELAY_JPEG_QUALITY     -> mjpeg.jpeg_quality
    CAMRELAY_RTSP_FPS         -> rtsp.target_fps
    CAMRELAY_RTSP_PORT        -> rtsp.port
    CAMRELAY_RTSP_ENABLED     -> rtsp.enabled
    CAMRELAY_WATCHDOG_POLL    -> watchdog.poll_interval_s
    CAMRELAY_HTTP_PORT        -> server.port
    CAMRELAY_LOG_LEVEL        -> logging.level
    PORT                      -> server.port

Example:
    from camrelay.config import settings

    print(settings.mjpeg.target_fps)
    print(settings.watchdog.backoff_ceiling_s)
"""

import os
import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, model_validator


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Models
# =============================================================================

class ServiceConfig(BaseModel):
    """Service identification configuration."""

    name: str = Field(default="camrelay", description="Service name")
    version: str = Field(default="v0.1.0", description="Service version")


class SourceConfig(BaseModel):
    """Frame source (camera) configuration."""

    backend: str = Field(
        default="synthetic",
        description="Frame source backend: 'opencv' or 'synthetic'",
    )
    device: str = Field(
        default="0",
        description="OpenCV device index or capture URL",
    )
    width: int = Field(default=1280, ge=16, description="Capture width in pixels")
    height: int = Field(default=720, ge=16, description="Capture height in pixels")
    fps: float = Field(default=30.0, gt=0, description="Requested capture rate")
    orientation: int = Field(
        default=0,
        description="Rotation applied to outgoing frames (0, 90, 180, 270)",
    )

    @model_validator(mode="after")
    def _check_orientation(self) -> "SourceConfig":
        if self.orientation not in (0, 90, 180, 270):
            raise ValueError("orientation must be one of 0, 90, 180, 270")
        return self


class MjpegConfig(BaseModel):
    """MJPEG over HTTP pipeline configuration."""

    target_fps: float = Field(
        default=10.0,
        gt=0,
        description="Maximum encoded JPEG frames per second",
    )
    jpeg_quality: int = Field(
        default=75,
        ge=1,
        le=100,
        description="JPEG quality used for stream frames",
    )
    client_queue_size: int = Field(
        default=2,
        ge=1,
        description="Per-client delivery queue depth",
    )
    max_consecutive_drops: int = Field(
        default=50,
        ge=1,
        description="Consecutive drops after which a slow client is disconnected",
    )
    max_clients: int = Field(
        default=32,
        ge=1,
        description="Maximum simultaneous MJPEG clients",
    )


class RtspConfig(BaseModel):
    """H.264 over RTSP pipeline configuration."""

    enabled: bool = Field(default=True, description="Enable the RTSP server")
    host: str = Field(default="0.0.0.0", description="RTSP bind host")
    port: int = Field(default=8554, ge=1, le=65535, description="RTSP bind port")
    path: str = Field(default="stream", description="RTSP stream path")
    target_fps: float = Field(
        default=30.0,
        gt=0,
        description="Maximum encoded access units per second",
    )
    bitrate: int = Field(default=2_000_000, gt=0, description="Encoder bitrate (bps)")
    gop_size: int = Field(default=30, ge=1, description="Frames between keyframes")
    max_payload_size: int = Field(
        default=1400,
        ge=200,
        description="Maximum RTP payload size in bytes",
    )
    max_clients: int = Field(
        default=16,
        ge=1,
        description="Maximum simultaneous RTSP sessions",
    )


class TelemetryConfig(BaseModel):
    """FPS telemetry configuration."""

    window_ms: float = Field(
        default=2000.0,
        gt=0,
        description="Sliding window length for FPS estimation",
    )
    recompute_ms: float = Field(
        default=500.0,
        gt=0,
        description="Minimum interval between rate recomputations",
    )
    publish_threshold: float = Field(
        default=0.5,
        ge=0,
        description="Minimum change in any FPS field before publishing",
    )


class WatchdogConfig(BaseModel):
    """Health watchdog configuration."""

    enabled: bool = Field(default=True, description="Run the watchdog thread")
    poll_interval_s: float = Field(
        default=5.0,
        gt=0,
        description="Seconds between health polls",
    )
    backoff_floor_s: float = Field(
        default=1.0,
        gt=0,
        description="Initial restart backoff",
    )
    backoff_ceiling_s: float = Field(
        default=30.0,
        gt=0,
        description="Maximum restart backoff",
    )
    frame_stale_s: float = Field(
        default=5.0,
        gt=0,
        description="Camera considered dead when no frame arrived for this long",
    )
    http_probe_timeout_s: float = Field(
        default=2.0,
        gt=0,
        description="Timeout for the HTTP liveness probe",
    )
    restart_settle_s: float = Field(
        default=5.0,
        ge=0,
        description="Time a restarted camera or HTTP server gets to pass its probe",
    )

    @model_validator(mode="after")
    def _check_backoff(self) -> "WatchdogConfig":
        if self.backoff_ceiling_s < self.backoff_floor_s:
            raise ValueError("backoff_ceiling_s must be >= backoff_floor_s")
        return self


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8080, ge=1, le=65535, description="Bind port")
    request_pool_size: int = Field(
        default=32,
        ge=1,
        description="Worker threads for short request/response endpoints",
    )
    stream_pool_size: int = Field(
        default=64,
        ge=1,
        description="Worker threads reserved for long-lived stream delivery",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format: json or text")


class Settings(BaseModel):
    """
    Main settings class for CamRelay.

    Loads configuration from YAML file and environment variables.
    Environment variables take precedence over file values.
    """

    service: ServiceConfig = Field(default_factory=ServiceConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)
    mjpeg: MjpegConfig = Field(default_factory=MjpegConfig)
    rtsp: RtspConfig = Field(default_factory=RtspConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# Configuration Loading
# =============================================================================

def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Load configuration from YAML file and environment variables.

    Priority (highest to lowest):
        1. Environment variables
        2. YAML config file
        3. Default values

    Args:
        config_path: Path to config.yaml. If None, searches common locations.

    Returns:
        Settings: Loaded configuration

    Raises:
        pydantic.ValidationError: If any value violates its constraints
    """
    if config_path is None:
        search_paths = [
            Path("config.yaml"),
            Path("config.yml"),
            Path("/etc/camrelay/config.yaml"),
            Path(__file__).parent.parent.parent / "config.yaml",
        ]
        for path in search_paths:
            if path.exists():
                config_path = str(path)
                break

    config_data = {}
    if config_path and Path(config_path).exists():
        logger.info(f"Loading config from: {config_path}")
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
    else:
        logger.warning("No config file found, using defaults and environment variables")

    _apply_env_overrides(config_data)

    return Settings.model_validate(config_data)


def _apply_env_overrides(config_data: dict) -> None:
    """Apply environment variable overrides to config data."""

    # Source settings
    if env_backend := os.environ.get("CAMRELAY_SOURCE_BACKEND"):
        config_data.setdefault("source", {})["backend"] = env_backend
    if env_device := os.environ.get("CAMRELAY_SOURCE_DEVICE"):
        config_data.setdefault("source", {})["device"] = env_device

    # Pipeline settings
    if env_mjpeg_fps := os.environ.get("CAMRELAY_MJPEG_FPS"):
        config_data.setdefault("mjpeg", {})["target_fps"] = float(env_mjpeg_fps)
    if env_quality := os.environ.get("CAMRELAY_JPEG_QUALITY"):
        config_data.setdefault("mjpeg", {})["jpeg_quality"] = int(env_quality)
    if env_rtsp_fps := os.environ.get("CAMRELAY_RTSP_FPS"):
        config_data.setdefault("rtsp", {})["target_fps"] = float(env_rtsp_fps)
    if env_rtsp_port := os.environ.get("CAMRELAY_RTSP_PORT"):
        config_data.setdefault("rtsp", {})["port"] = int(env_rtsp_port)
    if env_rtsp_enabled := os.environ.get("CAMRELAY_RTSP_ENABLED"):
        config_data.setdefault("rtsp", {})["enabled"] = env_rtsp_enabled.lower() in ("1", "true", "yes")

    # Watchdog settings
    if env_poll := os.environ.get("CAMRELAY_WATCHDOG_POLL"):
        config_data.setdefault("watchdog", {})["poll_interval_s"] = float(env_poll)

    # Server settings (container platforms use PORT)
    if env_port := os.environ.get("PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)
    elif env_port := os.environ.get("CAMRELAY_HTTP_PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)

    # Logging settings
    if env_log := os.environ.get("CAMRELAY_LOG_LEVEL"):
        config_data.setdefault("logging", {})["level"] = env_log


def setup_logging(settings: Settings) -> None:
    """Configure logging based on settings."""
    log_level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    if settings.logging.format == "json":
        log_format = '{"time": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "thread": "%(threadName)s", "message": "%(message)s"}'
    else:
        log_format = "%(asctime)s - %(name)s - %(threadName)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


# =============================================================================
# Global Settings Instance
# =============================================================================

# Global settings instance - loaded on import
settings = load_config()
setup_logging(settings)
