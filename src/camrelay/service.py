"""
Streaming Service
=================

Supervisor that wires the frame source, FrameBus, pipelines, RTSP server,
telemetry and watchdog together and owns their lifecycle.

Wiring:
    source --publish--> FrameBus --+--> MjpegPipeline --> MJPEG client queues
                                   +--> RtspPipeline  --> RtspServer (RTP/UDP)
                                   +--> preview callbacks
    ClientRegistry --count listener--> TelemetryAggregator.on_client_count
    Watchdog probes camera, http, mjpeg, rtsp, network

Design Rules:
    - Construction allocates nothing that needs teardown except the
      stream executor; threads and sockets start in start()
    - Watchdog restart callbacks and user stop share one lock; once
      streaming is halted a restart callback starts nothing, so a stop
      is never undone by an in-flight restart
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, List, Optional

from camrelay.config import Settings
from camrelay.observability.telemetry import Metric, TelemetryAggregator
from camrelay.pipeline.base import EncoderError
from camrelay.pipeline.h264 import PyAvH264Encoder
from camrelay.pipeline.mjpeg import JpegEncoder, MjpegPipeline
from camrelay.pipeline.rtsp import H264Encoder, RtspPipeline
from camrelay.server import HttpServerRunner
from camrelay.stream.bus import FrameBus, FrameSink, SinkRegistration
from camrelay.stream.clients import ClientRegistry, StreamClient, StreamProtocol
from camrelay.stream.source import FrameSource, FrameSourceError, create_frame_source
from camrelay.supervision.probes import frame_fresh_probe, http_probe, network_probe
from camrelay.supervision.watchdog import (
    NonTransientError,
    Watchdog,
    WatchdogState,
    WatchedComponent,
)
from camrelay.transport.rtsp_server import RtspServer, RtspServerError


logger = logging.getLogger(__name__)


class StreamingService:
    """
    Owns every streaming component.

    Attributes:
        registry: Connected MJPEG and RTSP clients
        telemetry: FPS aggregation
        bus: Frame fan-out
        mjpeg: MJPEG pipeline
        rtsp: RTSP pipeline
        rtsp_server: RTSP server (None when disabled)
        stream_executor: Thread pool for long-lived MJPEG deliveries
        watchdog: Created by start() when enabled

    Example:
        service = StreamingService(settings)
        service.start()
        ...
        service.stop()
    """

    def __init__(
        self,
        settings: Settings,
        source: Optional[FrameSource] = None,
        h264_encoder: Optional[H264Encoder] = None,
    ) -> None:
        """
        Build the component graph.

        Args:
            settings: Loaded configuration
            source: Frame source override (default from settings.source)
            h264_encoder: Encoder override (default PyAvH264Encoder)
        """
        self.settings = settings
        self.started_at: Optional[float] = None

        self.registry = ClientRegistry(
            max_clients={
                StreamProtocol.MJPEG: settings.mjpeg.max_clients,
                StreamProtocol.RTSP: settings.rtsp.max_clients,
            },
            queue_size=settings.mjpeg.client_queue_size,
        )
        self.telemetry = TelemetryAggregator(
            client_count=self.registry.count,
            window_ms=settings.telemetry.window_ms,
            recompute_ms=settings.telemetry.recompute_ms,
            publish_threshold=settings.telemetry.publish_threshold,
        )
        self.registry.add_count_listener(self.telemetry.on_client_count)

        self.bus = FrameBus(on_frame=self._record_camera_frame)

        self.mjpeg = MjpegPipeline(
            self.registry,
            self.telemetry,
            target_fps=settings.mjpeg.target_fps,
            encoder=JpegEncoder(quality=settings.mjpeg.jpeg_quality),
            max_consecutive_drops=settings.mjpeg.max_consecutive_drops,
        )
        self.rtsp = RtspPipeline(
            self.registry,
            self.telemetry,
            encoder=h264_encoder or PyAvH264Encoder(
                fps=settings.rtsp.target_fps,
                bitrate=settings.rtsp.bitrate,
                gop_size=settings.rtsp.gop_size,
            ),
            target_fps=settings.rtsp.target_fps,
        )

        self.rtsp_server: Optional[RtspServer] = None
        if settings.rtsp.enabled:
            self.rtsp_server = RtspServer(
                self.registry,
                host=settings.rtsp.host,
                port=settings.rtsp.port,
                path=settings.rtsp.path,
                parameter_sets=lambda: self.rtsp.parameter_sets,
                on_play=self.rtsp.request_keyframe,
                max_payload=settings.rtsp.max_payload_size,
                server_name=settings.service.name,
            )
            self.rtsp.attach(self.rtsp_server)

        self.source = source or create_frame_source(
            settings.source.backend,
            self.bus,
            device=settings.source.device,
            width=settings.source.width,
            height=settings.source.height,
            fps=settings.source.fps,
            orientation=settings.source.orientation,
        )

        self.stream_executor = ThreadPoolExecutor(
            max_workers=settings.server.stream_pool_size,
            thread_name_prefix="stream",
        )

        self.http: Optional[HttpServerRunner] = None
        self.watchdog: Optional[Watchdog] = None
        self._registrations: List[SinkRegistration] = []
        self._lifecycle_lock = threading.Lock()
        self._restart_lock = threading.Lock()
        self._running = False
        self._halted = True

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def attach_http(self, runner: HttpServerRunner) -> None:
        """Put the HTTP server under watchdog supervision."""
        self.http = runner

    def start(self) -> None:
        """Start pipelines, RTSP server, source and watchdog."""
        with self._lifecycle_lock:
            if self._running:
                return
            self._running = True
            self.started_at = time.time()

            with self._restart_lock:
                self._halted = False
                self._start_streaming()

            if self.settings.watchdog.enabled:
                self.watchdog = self._build_watchdog()
                self.watchdog.start()

        logger.info(
            f"{self.settings.service.name} {self.settings.service.version} started: "
            f"source={self.settings.source.backend}, mjpeg {self.settings.mjpeg.target_fps} fps, "
            f"rtsp {'on' if self.rtsp_server else 'off'}"
        )

    def stop(self) -> None:
        """Stop everything (process shutdown)."""
        with self._lifecycle_lock:
            if not self._running:
                return
            self._running = False

            if self.watchdog is not None:
                self.watchdog.shutdown()
            self._halt(reason="server shutdown")
            self.registry.clear(reason="server shutdown")
            self.stream_executor.shutdown(wait=False, cancel_futures=True)

        logger.info("Streaming service stopped")

    def _register_sinks(self) -> None:
        if self._registrations:
            return
        self._registrations.append(self.bus.register(self.mjpeg.offer, name="mjpeg"))
        if self.rtsp_server is not None:
            self._registrations.append(self.bus.register(self.rtsp.offer, name="rtsp"))

    def _start_streaming(self) -> None:
        self._register_sinks()
        self.mjpeg.start()
        if self.rtsp_server is not None:
            self.rtsp.start()
            try:
                self.rtsp_server.start()
            except RtspServerError as e:
                logger.error(f"RTSP server unavailable: {e}")

        try:
            self.source.start()
        except FrameSourceError as e:
            logger.error(f"Frame source unavailable: {e}")

    def _halt(self, reason: str) -> None:
        # Blocks until an in-flight restart returns; later ones see the flag
        with self._restart_lock:
            self._halted = True
            self._stop_streaming(reason)

    def _stop_streaming(self, reason: str) -> None:
        self.source.stop()
        self.telemetry.reset(Metric.CAMERA)
        for registration in self._registrations:
            registration.release()
        self._registrations.clear()

        self.mjpeg.stop()
        if self.rtsp_server is not None:
            self.rtsp_server.stop()
            self.rtsp.stop()

        for client in self.registry.snapshot(StreamProtocol.MJPEG):
            self.registry.unregister(client, reason=reason)

    # =========================================================================
    # User stop / start
    # =========================================================================

    def user_stop(self) -> None:
        """
        Operator stop: streaming halts and the watchdog holds every
        component in STOPPED. The HTTP control surface stays up.
        """
        if self.watchdog is not None:
            self.watchdog.request_stop()
        self._halt(reason="stream stopped")
        logger.info("Streaming stopped by operator")

    def user_start(self) -> None:
        """Operator start: components come back immediately, no backoff."""
        with self._restart_lock:
            self._halted = False
            self._register_sinks()
            if self.watchdog is None:
                self._start_streaming()
        if self.watchdog is not None:
            self.watchdog.request_start()
        logger.info("Streaming started by operator")

    # =========================================================================
    # Watchdog wiring
    # =========================================================================

    def _build_watchdog(self) -> Watchdog:
        cfg = self.settings.watchdog
        components = [
            WatchedComponent(
                "camera",
                probe=frame_fresh_probe(self.bus, cfg.frame_stale_s * 1000, self.source.is_alive),
                restart=self._guarded("camera", self._restart_camera),
                settle_s=cfg.restart_settle_s,
            ),
            WatchedComponent(
                "mjpeg",
                probe=self.mjpeg.is_alive,
                restart=self._guarded("mjpeg", self.mjpeg.restart),
            ),
        ]
        if self.rtsp_server is not None:
            components.append(
                WatchedComponent(
                    "rtsp",
                    probe=self._rtsp_alive,
                    restart=self._guarded("rtsp", self._restart_rtsp),
                )
            )
        if self.http is not None:
            components.append(
                WatchedComponent(
                    "http",
                    probe=http_probe(
                        f"http://127.0.0.1:{self.http.port}/health",
                        timeout=cfg.http_probe_timeout_s,
                    ),
                    restart=self._guarded("http", self.http.restart),
                    settle_s=cfg.restart_settle_s,
                )
            )
        components.append(
            WatchedComponent(
                "network",
                probe=network_probe(),
                restart=self._guarded("network", self._rebind_servers),
            )
        )

        return Watchdog(
            components,
            poll_interval_s=cfg.poll_interval_s,
            backoff_floor_s=cfg.backoff_floor_s,
            backoff_ceiling_s=cfg.backoff_ceiling_s,
            on_state_change=self._on_watchdog_state,
            on_fatal=self._on_watchdog_fatal,
        )

    def _guarded(self, name: str, restart: Callable[[], None]) -> Callable[[], None]:
        """Restart callback that starts nothing once streaming is halted."""
        def run() -> None:
            with self._restart_lock:
                if self._halted:
                    logger.info(f"Skipping restart of {name}: streaming is stopped")
                    return
                restart()

        return run

    def _restart_camera(self) -> None:
        device = self.settings.source.device
        if (
            self.settings.source.backend == "opencv"
            and device.startswith("/")
            and not Path(device).exists()
        ):
            raise NonTransientError(f"Capture device {device} does not exist")
        self.source.restart()

    def _rtsp_alive(self) -> bool:
        return (
            self.rtsp.is_alive()
            and self.rtsp_server is not None
            and self.rtsp_server.is_alive()
        )

    def _restart_rtsp(self) -> None:
        if not self.rtsp.is_alive():
            self.rtsp.restart()
        if self.rtsp_server is not None and not self.rtsp_server.is_alive():
            self.rtsp_server.restart()

    def _rebind_servers(self) -> None:
        """Network came back: rebind listeners to the current interfaces."""
        if not network_probe()():
            raise ConnectionError("No network connectivity")
        if self.rtsp_server is not None:
            self.rtsp_server.restart()
        if self.http is not None:
            self.http.restart()

    def _on_watchdog_state(self, component: str, state: WatchdogState) -> None:
        level = logging.INFO if state is WatchdogState.HEALTHY else logging.WARNING
        logger.log(level, f"Component {component} is {state.value}")

    def _on_watchdog_fatal(self, component: str, error: BaseException) -> None:
        logger.critical(f"Component {component} stopped after non-transient failure: {error}")

    # =========================================================================
    # Queries and controls used by the HTTP layer
    # =========================================================================

    def _record_camera_frame(self, timestamp_ms: float) -> None:
        self.telemetry.record_event(Metric.CAMERA, timestamp_ms)

    def add_preview_callback(self, callback: FrameSink) -> SinkRegistration:
        return self.bus.add_preview_callback(callback)

    def register_mjpeg_client(self, remote: str = "") -> StreamClient:
        """Raises ClientLimitReached when the MJPEG limit is reached."""
        return self.registry.register(StreamProtocol.MJPEG, remote=remote)

    def snapshot_jpeg(self) -> Optional[bytes]:
        """JPEG of the newest frame, or None before the first frame."""
        frame = self.bus.latest_frame
        if frame is None:
            return self.mjpeg.latest_jpeg
        try:
            return self.mjpeg.encoder.encode(frame)
        except EncoderError as e:
            logger.warning(f"Snapshot encode failed: {e}")
            return self.mjpeg.latest_jpeg

    def set_target_fps(
        self,
        mjpeg_fps: Optional[float] = None,
        rtsp_fps: Optional[float] = None,
    ) -> Dict[str, float]:
        """
        Change pipeline throttle rates.

        Raises:
            ValueError: If a value is not positive (nothing is changed)
        """
        for value in (mjpeg_fps, rtsp_fps):
            if value is not None and value <= 0:
                raise ValueError(f"target fps must be positive, got {value}")
        if mjpeg_fps is not None:
            self.mjpeg.set_target_fps(mjpeg_fps)
        if rtsp_fps is not None:
            self.rtsp.set_target_fps(rtsp_fps)
        logger.info(f"Target FPS: mjpeg={self.mjpeg.target_fps}, rtsp={self.rtsp.target_fps}")
        return self.target_fps()

    def target_fps(self) -> Dict[str, float]:
        return {"mjpeg_fps": self.mjpeg.target_fps, "rtsp_fps": self.rtsp.target_fps}

    def disconnect_client(self, client_id: int) -> bool:
        """Close one stream client. Returns False if it is unknown."""
        client = self.registry.get(client_id)
        if client is None:
            return False
        if client.protocol is StreamProtocol.RTSP and self.rtsp_server is not None:
            if self.rtsp_server.disconnect(client_id):
                return True
        return self.registry.unregister(client, reason="closed by operator")

    def uptime_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        return time.time() - self.started_at

    def status(self) -> dict:
        """Payload for GET /status."""
        if self.watchdog is not None:
            watchdog = self.watchdog.to_dict()
        else:
            watchdog = {"stop_requested": False, "components": {}}

        return {
            "service": self.settings.service.name,
            "version": self.settings.service.version,
            "uptime_seconds": round(self.uptime_seconds(), 1),
            "telemetry": self.telemetry.latest_snapshot().to_dict(),
            "clients": {
                protocol.value: self.registry.count(protocol) for protocol in StreamProtocol
            },
            "watchdog": watchdog,
            "pipelines": {
                "mjpeg": self.mjpeg.metrics_dict(),
                "rtsp": self.rtsp.metrics_dict(),
            },
        }

