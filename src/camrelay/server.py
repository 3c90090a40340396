"""
HTTP Server Runner
==================

Runs the FastAPI app under uvicorn on a background thread so the
watchdog can restart the HTTP server without restarting the process.
"""

import logging
import threading
import time
from typing import Optional

import uvicorn
from fastapi import FastAPI


logger = logging.getLogger(__name__)


class HttpServerError(Exception):
    """Raised when uvicorn fails to start (e.g. the port is taken)."""
    pass


class HttpServerRunner:
    """
    Restartable uvicorn server.

    Attributes:
        host: Bind host
        port: Bind port
    """

    def __init__(
        self,
        app: FastAPI,
        host: str = "0.0.0.0",
        port: int = 8080,
        log_level: str = "info",
    ) -> None:
        self.app = app
        self.host = host
        self.port = port
        self.log_level = log_level.lower()

        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None

    def start(self, timeout: float = 10.0) -> None:
        """
        Start uvicorn and wait until it accepts connections.

        Raises:
            HttpServerError: If the server exits or does not start in time
        """
        if self.is_alive():
            logger.warning("HTTP server already running")
            return

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_config=None,
            log_level=self.log_level,
            lifespan="on",
        )
        server = uvicorn.Server(config)
        thread = threading.Thread(target=server.run, name="http-server", daemon=True)
        self._server = server
        self._thread = thread
        thread.start()

        deadline = time.monotonic() + timeout
        while not server.started:
            if not thread.is_alive():
                self._server = None
                self._thread = None
                raise HttpServerError(f"HTTP server failed to bind {self.host}:{self.port}")
            if time.monotonic() > deadline:
                server.should_exit = True
                raise HttpServerError(f"HTTP server did not start within {timeout}s")
            time.sleep(0.05)

        logger.info(f"HTTP server listening on http://{self.host}:{self.port}")

    def stop(self, timeout: float = 5.0) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive() and self._server is not None:
                self._server.force_exit = True
                self._thread.join(timeout)
        self._server = None
        self._thread = None
        logger.info("HTTP server stopped")

    def restart(self) -> None:
        self.stop()
        self.start()

    def is_alive(self) -> bool:
        return (
            self._thread is not None
            and self._thread.is_alive()
            and self._server is not None
            and self._server.started
            and not self._server.should_exit
        )
