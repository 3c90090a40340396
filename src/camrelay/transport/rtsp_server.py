"""
RTSP Server
===========

Minimal RTSP 1.0 server delivering H.264 over RTP/UDP unicast.

Runs its own asyncio event loop on a dedicated thread. The RtspPipeline
calls broadcast() from its encode thread; every PLAYING session gets
the access unit packetized with its own SSRC and sequence numbers.

Supported methods:
    OPTIONS, DESCRIBE, SETUP, PLAY, PAUSE, GET_PARAMETER, TEARDOWN

Design Rules:
    - A session is counted in the ClientRegistry from PLAY until
      TEARDOWN, disconnect or timeout
    - A UDP send failure affects only that session (counted, skipped)
    - SPS/PPS go into the SDP once known; keyframes carry them in-band
"""

import asyncio
import base64
import logging
import re
import secrets
import socket
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import urlsplit

from camrelay.pipeline.rtsp import AccessUnit
from camrelay.stream.clients import (
    ClientLimitReached,
    ClientRegistry,
    StreamClient,
    StreamProtocol,
)
from camrelay.transport.rtp import RtpPacketizer


logger = logging.getLogger(__name__)


RTSP_VERSION = "RTSP/1.0"
SUPPORTED_METHODS = ("OPTIONS", "DESCRIBE", "SETUP", "PLAY", "PAUSE", "GET_PARAMETER", "TEARDOWN")

_MAX_HEADER_LINES = 64
_CLIENT_PORT_RE = re.compile(r"client_port=(\d+)(?:-(\d+))?")

ParameterSets = Tuple[Optional[bytes], Optional[bytes]]


class RtspServerError(Exception):
    """Raised when the RTSP server cannot start."""
    pass


class RtspParseError(Exception):
    """Raised on a malformed RTSP request."""
    pass


# =============================================================================
# Request / Response
# =============================================================================

@dataclass
class RtspRequest:
    """Parsed RTSP request. Header names are lower-cased."""

    method: str
    url: str
    version: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def cseq(self) -> str:
        return self.headers.get("cseq", "0")


def parse_request(request_line: str, header_lines: List[str]) -> RtspRequest:
    """
    Parse a request line and its header lines.

    Raises:
        RtspParseError: If the request line is malformed
    """
    parts = request_line.strip().split()
    if len(parts) != 3 or not parts[2].startswith("RTSP/"):
        raise RtspParseError(f"Malformed request line: {request_line.strip()!r}")

    headers: Dict[str, str] = {}
    for line in header_lines:
        name, sep, value = line.partition(":")
        if not sep:
            continue
        headers[name.strip().lower()] = value.strip()

    return RtspRequest(method=parts[0].upper(), url=parts[1], version=parts[2], headers=headers)


def build_response(
    status: str,
    cseq: str,
    headers: Optional[Dict[str, str]] = None,
    body: str = "",
) -> bytes:
    """Serialize an RTSP response."""
    lines = [f"{RTSP_VERSION} {status}", f"CSeq: {cseq}"]
    for name, value in (headers or {}).items():
        lines.append(f"{name}: {value}")
    payload = body.encode("utf-8")
    if payload:
        lines.append(f"Content-Length: {len(payload)}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("utf-8") + payload


def parse_client_ports(transport: str) -> Optional[Tuple[int, int]]:
    """RTP/RTCP client ports from a Transport header, or None."""
    match = _CLIENT_PORT_RE.search(transport)
    if match is None:
        return None
    rtp_port = int(match.group(1))
    rtcp_port = int(match.group(2)) if match.group(2) else rtp_port + 1
    return rtp_port, rtcp_port


def build_sdp(
    parameter_sets: ParameterSets,
    payload_type: int = 96,
    session_name: str = "camrelay",
    origin_host: str = "0.0.0.0",
) -> str:
    """
    Build the SDP session description for the H.264 track.

    sprop-parameter-sets and profile-level-id are included once SPS and
    PPS are known.
    """
    sps, pps = parameter_sets
    fmtp = ["packetization-mode=1"]
    if sps is not None and len(sps) >= 4:
        fmtp.append(f"profile-level-id={sps[1:4].hex().upper()}")
    if sps is not None and pps is not None:
        encoded = ",".join(base64.b64encode(unit).decode("ascii") for unit in (sps, pps))
        fmtp.append(f"sprop-parameter-sets={encoded}")

    lines = [
        "v=0",
        f"o=- 0 0 IN IP4 {origin_host}",
        f"s={session_name}",
        "c=IN IP4 0.0.0.0",
        "t=0 0",
        "a=control:*",
        "a=range:npt=0-",
        f"m=video 0 RTP/AVP {payload_type}",
        f"a=rtpmap:{payload_type} H264/90000",
        f"a=fmtp:{payload_type} {';'.join(fmtp)}",
        "a=control:track0",
    ]
    return "\r\n".join(lines) + "\r\n"


# =============================================================================
# Sessions
# =============================================================================

class SessionState(str, Enum):
    INIT = "init"
    READY = "ready"
    PLAYING = "playing"


class RtspSession:
    """One RTSP control connection and its UDP transport."""

    def __init__(self, remote_host: str, payload_type: int, max_payload: int) -> None:
        self.session_id = secrets.token_hex(8)
        self.remote_host = remote_host
        self.state = SessionState.INIT
        self.packetizer = RtpPacketizer(payload_type=payload_type, max_payload=max_payload)
        self.timestamp_offset = secrets.randbits(32)

        self.client_ports: Optional[Tuple[int, int]] = None
        self.rtp_socket: Optional[socket.socket] = None
        self.rtcp_socket: Optional[socket.socket] = None
        self.client: Optional[StreamClient] = None
        self.writer: Optional[asyncio.StreamWriter] = None

        self.packets_sent: int = 0
        self.send_errors: int = 0

    @property
    def server_ports(self) -> Tuple[int, int]:
        if self.rtp_socket is None or self.rtcp_socket is None:
            return (0, 0)
        return self.rtp_socket.getsockname()[1], self.rtcp_socket.getsockname()[1]

    def open_transport(self, client_ports: Tuple[int, int]) -> None:
        self.close_transport()
        rtp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        rtcp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            rtp.bind(("", 0))
            rtcp.bind(("", 0))
        except OSError:
            rtp.close()
            rtcp.close()
            raise
        rtp.setblocking(False)
        self.rtp_socket = rtp
        self.rtcp_socket = rtcp
        self.client_ports = client_ports

    def close_transport(self) -> None:
        for sock in (self.rtp_socket, self.rtcp_socket):
            if sock is not None:
                sock.close()
        self.rtp_socket = None
        self.rtcp_socket = None

    def send(self, access_unit: AccessUnit) -> None:
        """Send one access unit. Errors are counted, never raised."""
        sock = self.rtp_socket
        if sock is None or self.client_ports is None:
            return
        destination = (self.remote_host, self.client_ports[0])
        timestamp = (access_unit.timestamp_90k + self.timestamp_offset) & 0xFFFFFFFF
        for packet in self.packetizer.packetize_access_unit(access_unit.nal_units, timestamp):
            try:
                sock.sendto(packet, destination)
                self.packets_sent += 1
            except OSError as e:
                self.send_errors += 1
                logger.debug(f"RTSP session {self.session_id} send failed: {e}")
                return

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "remote": self.remote_host,
            "state": self.state.value,
            "client_ports": list(self.client_ports) if self.client_ports else None,
            "packets_sent": self.packets_sent,
            "send_errors": self.send_errors,
        }


# =============================================================================
# Server
# =============================================================================

class RtspServer:
    """
    Threaded asyncio RTSP server.

    Attributes:
        host: Bind host
        port: Requested bind port (0 picks a free port)
        bound_port: Actual port once started
        path: Stream path ("stream" -> rtsp://host:port/stream)

    Example:
        server = RtspServer(registry, port=8554,
                            parameter_sets=lambda: pipeline.parameter_sets,
                            on_play=pipeline.request_keyframe)
        pipeline.attach(server)
        server.start()
    """

    def __init__(
        self,
        registry: ClientRegistry,
        host: str = "0.0.0.0",
        port: int = 8554,
        path: str = "stream",
        parameter_sets: Callable[[], ParameterSets] = lambda: (None, None),
        on_play: Optional[Callable[[], None]] = None,
        payload_type: int = 96,
        max_payload: int = 1400,
        session_timeout_s: float = 60.0,
        server_name: str = "camrelay",
    ) -> None:
        self.registry = registry
        self.host = host
        self.port = port
        self.path = path.strip("/")
        self._parameter_sets = parameter_sets
        self._on_play = on_play
        self.payload_type = payload_type
        self.max_payload = max_payload
        self.session_timeout_s = session_timeout_s
        self.server_name = server_name

        self.bound_port: Optional[int] = None
        self._sessions_lock = threading.Lock()
        self._sessions: Dict[str, RtspSession] = {}

        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks: Set[asyncio.Task] = set()
        self._ready = threading.Event()
        self._start_error: Optional[BaseException] = None

        self.access_units_broadcast: int = 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, timeout: float = 5.0) -> None:
        """
        Start the server thread and wait until it is listening.

        Raises:
            RtspServerError: If the socket cannot be bound
        """
        if self.is_alive():
            logger.warning("RTSP server already running")
            return

        self._ready.clear()
        self._start_error = None
        self._thread = threading.Thread(target=self._run, name="rtsp-server", daemon=True)
        self._thread.start()

        if not self._ready.wait(timeout):
            raise RtspServerError(f"RTSP server did not start within {timeout}s")
        if self._start_error is not None:
            self._thread.join(timeout=1.0)
            self._thread = None
            raise RtspServerError(f"Cannot bind RTSP server on {self.host}:{self.port}: {self._start_error}")

        logger.info(f"RTSP server listening on rtsp://{self.host}:{self.bound_port}/{self.path}")

    def stop(self, timeout: float = 5.0) -> None:
        loop = self._loop
        if loop is not None and loop.is_running():
            future = asyncio.run_coroutine_threadsafe(self._shutdown(), loop)
            try:
                future.result(timeout)
            except Exception as e:
                logger.warning(f"RTSP server shutdown incomplete: {e}")
            loop.call_soon_threadsafe(loop.stop)

        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

        for session in self.sessions():
            self._end_session(session, "server stopped")
        logger.info("RTSP server stopped")

    def restart(self) -> None:
        self.stop()
        self.start()

    def is_alive(self) -> bool:
        return (
            self._thread is not None
            and self._thread.is_alive()
            and self._loop is not None
            and self._loop.is_running()
        )

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            try:
                self._server = loop.run_until_complete(
                    asyncio.start_server(self._handle_connection, self.host, self.port)
                )
            except OSError as e:
                self._start_error = e
                return
            self.bound_port = self._server.sockets[0].getsockname()[1]
            self._loop = loop
            loop.call_soon(self._ready.set)
            loop.run_forever()
        finally:
            self._loop = None
            self._ready.set()
            loop.close()

    async def _shutdown(self) -> None:
        if self._server is not None:
            self._server.close()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._server is not None:
            await self._server.wait_closed()
            self._server = None

    # -------------------------------------------------------------------------
    # Delivery (encode thread)
    # -------------------------------------------------------------------------

    def broadcast(self, access_unit: AccessUnit) -> None:
        """Send an access unit to every PLAYING session."""
        self.access_units_broadcast += 1
        for session in self.sessions():
            if session.state is SessionState.PLAYING:
                session.send(access_unit)

    def sessions(self) -> Tuple[RtspSession, ...]:
        with self._sessions_lock:
            return tuple(self._sessions.values())

    def disconnect(self, client_id: int) -> bool:
        """
        Close the control connection of the session owning `client_id`.

        Returns:
            True if a matching session was found.
        """
        loop = self._loop
        for session in self.sessions():
            if session.client is None or session.client.client_id != client_id:
                continue
            session.state = SessionState.INIT
            if loop is not None and session.writer is not None:
                loop.call_soon_threadsafe(session.writer.close)
            self._end_session(session, "closed by operator")
            return True
        return False

    @property
    def playing_count(self) -> int:
        return sum(1 for s in self.sessions() if s.state is SessionState.PLAYING)

    # -------------------------------------------------------------------------
    # Control connection
    # -------------------------------------------------------------------------

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)

        peer = writer.get_extra_info("peername")
        session = RtspSession(
            peer[0] if peer else "",
            payload_type=self.payload_type,
            max_payload=self.max_payload,
        )
        session.writer = writer
        with self._sessions_lock:
            self._sessions[session.session_id] = session
        logger.info(f"RTSP connection from {session.remote_host} (session {session.session_id})")

        reason = "disconnected"
        try:
            while True:
                try:
                    request = await asyncio.wait_for(
                        self._read_request(reader), timeout=self.session_timeout_s
                    )
                except asyncio.TimeoutError:
                    reason = "timeout"
                    break
                if request is None:
                    break
                writer.write(self.handle_request(session, request))
                await writer.drain()
        except RtspParseError as e:
            reason = "bad request"
            logger.warning(f"RTSP session {session.session_id}: {e}")
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug(f"RTSP session {session.session_id} connection lost: {e}")
        finally:
            self._end_session(session, reason)
            writer.close()
            if task is not None:
                self._tasks.discard(task)

    async def _read_request(self, reader: asyncio.StreamReader) -> Optional[RtspRequest]:
        line = await reader.readline()
        while line in (b"\r\n", b"\n"):
            line = await reader.readline()
        if not line:
            return None

        header_lines: List[str] = []
        while True:
            header = await reader.readline()
            if header in (b"", b"\r\n", b"\n"):
                break
            header_lines.append(header.decode("utf-8", errors="replace"))
            if len(header_lines) > _MAX_HEADER_LINES:
                raise RtspParseError("Too many header lines")

        request = parse_request(line.decode("utf-8", errors="replace"), header_lines)
        raw_length = request.headers.get("content-length", "0") or "0"
        try:
            length = int(raw_length)
        except ValueError:
            raise RtspParseError(f"Invalid Content-Length: {raw_length!r}") from None
        if length < 0:
            raise RtspParseError(f"Invalid Content-Length: {raw_length!r}")
        if length > 0:
            request.body = await reader.readexactly(length)
        return request

    def _end_session(self, session: RtspSession, reason: str) -> None:
        with self._sessions_lock:
            self._sessions.pop(session.session_id, None)
        session.state = SessionState.INIT
        session.close_transport()
        if session.client is not None:
            self.registry.unregister(session.client, reason=reason)
            session.client = None

    # -------------------------------------------------------------------------
    # Method handlers
    # -------------------------------------------------------------------------

    def handle_request(self, session: RtspSession, request: RtspRequest) -> bytes:
        """Dispatch one request and return the serialized response."""
        handler = {
            "OPTIONS": self._handle_options,
            "DESCRIBE": self._handle_describe,
            "SETUP": self._handle_setup,
            "PLAY": self._handle_play,
            "PAUSE": self._handle_pause,
            "GET_PARAMETER": self._handle_get_parameter,
            "TEARDOWN": self._handle_teardown,
        }.get(request.method)

        if handler is None:
            return build_response(
                "405 Method Not Allowed",
                request.cseq,
                {"Allow": ", ".join(SUPPORTED_METHODS)},
            )
        logger.debug(f"RTSP {request.method} {request.url} (session {session.session_id})")
        return handler(session, request)

    def _session_header(self, session: RtspSession) -> str:
        return f"{session.session_id};timeout={int(self.session_timeout_s)}"

    def _path_matches(self, url: str) -> bool:
        path = urlsplit(url).path.strip("/")
        return path == self.path or path.startswith(self.path + "/")

    def _handle_options(self, session: RtspSession, request: RtspRequest) -> bytes:
        return build_response("200 OK", request.cseq, {"Public": ", ".join(SUPPORTED_METHODS)})

    def _handle_describe(self, session: RtspSession, request: RtspRequest) -> bytes:
        if not self._path_matches(request.url):
            return build_response("404 Not Found", request.cseq)

        sdp = build_sdp(
            self._parameter_sets(),
            payload_type=self.payload_type,
            session_name=self.server_name,
        )
        return build_response(
            "200 OK",
            request.cseq,
            {"Content-Base": request.url.rstrip("/") + "/", "Content-Type": "application/sdp"},
            body=sdp,
        )

    def _handle_setup(self, session: RtspSession, request: RtspRequest) -> bytes:
        transport = request.headers.get("transport", "")
        if "TCP" in transport.upper() or "interleaved" in transport:
            return build_response("461 Unsupported Transport", request.cseq)

        ports = parse_client_ports(transport)
        if ports is None:
            return build_response("400 Bad Request", request.cseq)

        try:
            session.open_transport(ports)
        except OSError as e:
            logger.error(f"RTSP session {session.session_id}: cannot open RTP sockets: {e}")
            return build_response("500 Internal Server Error", request.cseq)

        session.state = SessionState.READY
        server_rtp, server_rtcp = session.server_ports
        return build_response(
            "200 OK",
            request.cseq,
            {
                "Session": self._session_header(session),
                "Transport": (
                    f"RTP/AVP;unicast;client_port={ports[0]}-{ports[1]};"
                    f"server_port={server_rtp}-{server_rtcp};"
                    f"ssrc={session.packetizer.ssrc:08X}"
                ),
            },
        )

    def _handle_play(self, session: RtspSession, request: RtspRequest) -> bytes:
        if session.state is SessionState.INIT:
            return build_response("455 Method Not Valid in This State", request.cseq)

        if session.client is None:
            try:
                session.client = self.registry.register(StreamProtocol.RTSP, remote=session.remote_host)
            except ClientLimitReached as e:
                logger.warning(f"RTSP session {session.session_id} rejected: {e}")
                return build_response("453 Not Enough Bandwidth", request.cseq)

        session.state = SessionState.PLAYING
        if self._on_play is not None:
            self._on_play()

        return build_response(
            "200 OK",
            request.cseq,
            {
                "Session": self._session_header(session),
                "Range": "npt=0.000-",
                "RTP-Info": (
                    f"url={request.url.rstrip('/')}/track0;"
                    f"seq={session.packetizer.sequence};rtptime={session.timestamp_offset}"
                ),
            },
        )

    def _handle_pause(self, session: RtspSession, request: RtspRequest) -> bytes:
        if session.state is SessionState.INIT:
            return build_response("455 Method Not Valid in This State", request.cseq)
        session.state = SessionState.READY
        if session.client is not None:
            self.registry.unregister(session.client, reason="paused")
            session.client = None
        return build_response("200 OK", request.cseq, {"Session": self._session_header(session)})

    def _handle_get_parameter(self, session: RtspSession, request: RtspRequest) -> bytes:
        return build_response("200 OK", request.cseq, {"Session": self._session_header(session)})

    def _handle_teardown(self, session: RtspSession, request: RtspRequest) -> bytes:
        session.state = SessionState.INIT
        session.close_transport()
        if session.client is not None:
            self.registry.unregister(session.client, reason="teardown")
            session.client = None
        return build_response("200 OK", request.cseq, {"Session": self._session_header(session)})
