"""
MJPEG over HTTP
===============

multipart/x-mixed-replace framing and the per-client body generator.

Each connected client owns an async generator. The blocking wait on the
client queue runs on the dedicated stream executor, so long-lived
streams never occupy the request pool or the event loop.
"""

import asyncio
import logging
from concurrent.futures import Executor
from typing import AsyncIterator

from camrelay.stream.clients import ClientRegistry, StreamClient


logger = logging.getLogger(__name__)


BOUNDARY = "frame"
MEDIA_TYPE = f"multipart/x-mixed-replace; boundary={BOUNDARY}"

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Connection": "close",
    "X-Accel-Buffering": "no",
}


def multipart_chunk(jpeg: bytes) -> bytes:
    """Wrap one JPEG as a multipart part."""
    header = (
        f"--{BOUNDARY}\r\n"
        f"Content-Type: image/jpeg\r\n"
        f"Content-Length: {len(jpeg)}\r\n\r\n"
    ).encode("ascii")
    return header + jpeg + b"\r\n"


async def mjpeg_stream(
    client: StreamClient,
    registry: ClientRegistry,
    executor: Executor,
    poll_timeout: float = 1.0,
) -> AsyncIterator[bytes]:
    """
    Yield multipart chunks for one client until it is closed.

    The client is unregistered when the generator finishes for any reason:
    client disconnect (generator cancelled), eviction, or shutdown.

    Args:
        client: Registered MJPEG client
        registry: Registry the client belongs to
        executor: Stream-delivery thread pool
        poll_timeout: Max seconds per blocking take()
    """
    loop = asyncio.get_running_loop()
    try:
        while not client.closed:
            jpeg = await loop.run_in_executor(executor, client.take, poll_timeout)
            if jpeg is None:
                continue
            yield multipart_chunk(jpeg)
    finally:
        registry.unregister(client, reason=client.close_reason or "disconnected")
        logger.debug(f"MJPEG stream for client {client.client_id} finished")
