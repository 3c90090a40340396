"""
Client Registry
===============

Thread-safe bookkeeping of connected stream consumers.

This module provides:
    - StreamProtocol: MJPEG or RTSP
    - StreamClient: one connected consumer with a bounded delivery queue
    - ClientRegistry: per-protocol add/remove/count/snapshot

Design Rules:
    - One lock per protocol, never one global lock
    - snapshot() returns a point-in-time tuple so pipelines can fan out
      without holding a lock across slow per-client I/O
    - Only the registry owns client lifetime; unregister is idempotent
    - Count listeners are notified outside the lock
"""

import itertools
import logging
import queue
import threading
import time
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from camrelay.stream.frame import monotonic_ms


logger = logging.getLogger(__name__)


class StreamProtocol(str, Enum):
    """Delivery protocol of a stream client."""

    MJPEG = "mjpeg"
    RTSP = "rtsp"


class ClientLimitReached(Exception):
    """Raised when a protocol already has its maximum number of clients."""
    pass


class StreamClient:
    """
    One connected stream consumer.

    MJPEG clients receive JPEG buffers through `offer()`/`take()`.
    RTSP sessions register a client too (for counting and listing) but
    their packets go through the RTP transport, not this queue.

    Attributes:
        client_id: Registry-assigned identifier
        protocol: Delivery protocol
        remote: Peer address, for display
        connected_at: Wall-clock connect time (seconds)
    """

    def __init__(
        self,
        client_id: int,
        protocol: StreamProtocol,
        remote: str = "",
        queue_size: int = 2,
    ) -> None:
        self.client_id = client_id
        self.protocol = protocol
        self.remote = remote
        self.connected_at = time.time()

        self._queue: "queue.Queue[bytes]" = queue.Queue(maxsize=queue_size)
        self._closed = threading.Event()
        self._close_reason: Optional[str] = None
        self._stats_lock = threading.Lock()

        self.last_delivered_ms: Optional[float] = None
        self.delivered_frames: int = 0
        self.dropped_frames: int = 0
        self.consecutive_drops: int = 0
        self.bytes_sent: int = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def close_reason(self) -> Optional[str]:
        return self._close_reason

    @property
    def pending(self) -> int:
        """Payloads waiting in the delivery queue."""
        return self._queue.qsize()

    def offer(self, payload: bytes) -> bool:
        """
        Queue a payload without blocking.

        Returns:
            True if queued, False if the client is closed or its queue is
            full (the caller counts that as a drop).
        """
        if self._closed.is_set():
            return False
        try:
            self._queue.put_nowait(payload)
            return True
        except queue.Full:
            return False

    def take(self, timeout: float = 1.0) -> Optional[bytes]:
        """
        Wait for the next payload.

        Runs on a stream-delivery worker thread, never on the event loop.

        Returns:
            Next payload, or None on timeout or when the client is closed.
        """
        if self._closed.is_set():
            return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def record_delivery(self, size: int, now_ms: Optional[float] = None) -> None:
        """Account for a payload accepted by offer()."""
        with self._stats_lock:
            self.delivered_frames += 1
            self.consecutive_drops = 0
            self.bytes_sent += size
            self.last_delivered_ms = monotonic_ms() if now_ms is None else now_ms

    def record_drop(self) -> int:
        """
        Account for a payload that could not be queued.

        Returns:
            Current consecutive drop count.
        """
        with self._stats_lock:
            self.dropped_frames += 1
            self.consecutive_drops += 1
            return self.consecutive_drops

    def close(self, reason: str = "closed") -> None:
        """Mark the client closed. Idempotent; the first reason wins."""
        if self._closed.is_set():
            return
        self._close_reason = reason
        self._closed.set()

    def to_dict(self) -> dict:
        """Export client state for status endpoints."""
        with self._stats_lock:
            return {
                "id": self.client_id,
                "protocol": self.protocol.value,
                "remote": self.remote,
                "connected_at": self.connected_at,
                "duration_s": round(time.time() - self.connected_at, 1),
                "delivered_frames": self.delivered_frames,
                "dropped_frames": self.dropped_frames,
                "consecutive_drops": self.consecutive_drops,
                "bytes_sent": self.bytes_sent,
                "closed": self.closed,
            }

    def __repr__(self) -> str:
        return (
            f"StreamClient(id={self.client_id}, protocol={self.protocol.value}, "
            f"remote={self.remote!r})"
        )


CountListener = Callable[[StreamProtocol, int], None]


class ClientRegistry:
    """
    Thread-safe registry of stream clients, partitioned by protocol.

    Attributes:
        max_clients: Per-protocol client limit (missing = unlimited)

    Example:
        registry = ClientRegistry(max_clients={StreamProtocol.MJPEG: 32})
        client = registry.register(StreamProtocol.MJPEG, remote="10.0.0.5")
        try:
            ...
        finally:
            registry.unregister(client)
    """

    def __init__(
        self,
        max_clients: Optional[Dict[StreamProtocol, int]] = None,
        queue_size: int = 2,
    ) -> None:
        """
        Initialize the registry.

        Args:
            max_clients: Optional per-protocol limits
            queue_size: Delivery queue depth for new clients
        """
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")

        self.max_clients = dict(max_clients or {})
        self.queue_size = queue_size

        self._ids = itertools.count(1)
        self._locks = {protocol: threading.Lock() for protocol in StreamProtocol}
        self._clients: Dict[StreamProtocol, Dict[int, StreamClient]] = {
            protocol: {} for protocol in StreamProtocol
        }

        self._listeners_lock = threading.Lock()
        self._listeners: List[CountListener] = []

    def add_count_listener(self, listener: CountListener) -> None:
        """Call `listener(protocol, count)` after every register/unregister."""
        with self._listeners_lock:
            self._listeners.append(listener)

    def register(self, protocol: StreamProtocol, remote: str = "") -> StreamClient:
        """
        Register a new client.

        Raises:
            ClientLimitReached: If the protocol is at its limit
        """
        limit = self.max_clients.get(protocol)
        with self._locks[protocol]:
            clients = self._clients[protocol]
            if limit is not None and len(clients) >= limit:
                raise ClientLimitReached(
                    f"{protocol.value} client limit reached ({limit})"
                )
            client = StreamClient(
                client_id=next(self._ids),
                protocol=protocol,
                remote=remote,
                queue_size=self.queue_size,
            )
            clients[client.client_id] = client
            count = len(clients)

        logger.info(f"{protocol.value} client {client.client_id} connected from {remote or '?'} (active: {count})")
        self._notify(protocol, count)
        return client

    def unregister(self, client: StreamClient, reason: str = "disconnected") -> bool:
        """
        Remove a client and close it.

        Safe to call more than once and from any thread; a pipeline still
        holding the client only sees offer() return False afterwards.

        Returns:
            True if the client was registered, False if already removed.
        """
        client.close(reason)
        with self._locks[client.protocol]:
            removed = self._clients[client.protocol].pop(client.client_id, None)
            count = len(self._clients[client.protocol])

        if removed is None:
            return False

        logger.info(
            f"{client.protocol.value} client {client.client_id} removed: {reason} "
            f"(active: {count})"
        )
        self._notify(client.protocol, count)
        return True

    def snapshot(self, protocol: StreamProtocol) -> Tuple[StreamClient, ...]:
        """Point-in-time copy of a protocol's clients, in registration order."""
        with self._locks[protocol]:
            return tuple(self._clients[protocol].values())

    def count(self, protocol: StreamProtocol) -> int:
        with self._locks[protocol]:
            return len(self._clients[protocol])

    def get(self, client_id: int) -> Optional[StreamClient]:
        for protocol in StreamProtocol:
            with self._locks[protocol]:
                client = self._clients[protocol].get(client_id)
            if client is not None:
                return client
        return None

    def all_clients(self) -> List[StreamClient]:
        clients: List[StreamClient] = []
        for protocol in StreamProtocol:
            clients.extend(self.snapshot(protocol))
        return clients

    def clear(self, reason: str = "server shutdown") -> int:
        """Unregister every client. Returns the number removed."""
        removed = 0
        for client in self.all_clients():
            if self.unregister(client, reason=reason):
                removed += 1
        return removed

    def _notify(self, protocol: StreamProtocol, count: int) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(protocol, count)
            except Exception as e:
                logger.error(f"Client count listener failed: {e}")
