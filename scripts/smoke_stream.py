#!/usr/bin/env python3
"""
Stream Smoke Test Script
========================

Standalone script to exercise a running CamRelay instance.

This script:
    1. Opens one or more MJPEG streams (GET /stream)
    2. Subscribes to /ws/telemetry
    3. Logs received frames and telemetry every few seconds
    4. Reports a final summary and compares it with GET /status

Prerequisites:
    - CamRelay must be running at the configured URL
    - Install the package: pip install -e .

Usage:
    python scripts/smoke_stream.py --duration 30
    python scripts/smoke_stream.py --url http://camera.local:8080 --clients 3
"""

import argparse
import asyncio
import json
import logging
import os
import sys
import threading
import time

import requests
import websockets
from websockets.exceptions import ConnectionClosed


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
logger = logging.getLogger(__name__)

BOUNDARY = b"--frame"


class StreamReader(threading.Thread):
    """Counts multipart parts on one MJPEG connection."""

    def __init__(self, url: str, stop: threading.Event) -> None:
        super().__init__(daemon=True)
        self.url = url
        self.stop_event = stop
        self.frames = 0
        self.bytes = 0
        self.error = None

    def run(self) -> None:
        try:
            with requests.get(self.url, stream=True, timeout=10) as response:
                response.raise_for_status()
                tail = b""
                for chunk in response.iter_content(chunk_size=16384):
                    if self.stop_event.is_set():
                        break
                    data = tail + chunk
                    self.frames += data.count(BOUNDARY)
                    self.bytes += len(chunk)
                    tail = data[-len(BOUNDARY):]
        except requests.RequestException as e:
            self.error = str(e)


async def watch_telemetry(ws_url: str, duration: float, report_interval: float) -> list:
    """Collect telemetry snapshots for `duration` seconds."""
    snapshots = []
    deadline = time.monotonic() + duration
    last_report = time.monotonic()
    try:
        async with websockets.connect(ws_url) as ws:
            while time.monotonic() < deadline:
                try:
                    message = await asyncio.wait_for(ws.recv(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                snapshots.append(json.loads(message))
                if time.monotonic() - last_report >= report_interval:
                    logger.info(f"Telemetry: {snapshots[-1]}")
                    last_report = time.monotonic()
    except (OSError, ConnectionClosed) as e:
        logger.error(f"Telemetry socket failed: {e}")
    return snapshots


def run_test(url: str, clients: int, duration: float, report_interval: float) -> dict:
    """
    Run the smoke test.

    Args:
        url: Base HTTP URL of CamRelay
        clients: Number of concurrent MJPEG connections
        duration: Test duration in seconds
        report_interval: Seconds between telemetry log lines

    Returns:
        Summary dict
    """
    logger.info("=" * 60)
    logger.info("CamRelay Smoke Test")
    logger.info("=" * 60)
    logger.info(f"URL: {url}")
    logger.info(f"MJPEG clients: {clients}")
    logger.info(f"Duration: {duration} seconds")
    logger.info("=" * 60)

    stop = threading.Event()
    readers = [StreamReader(f"{url}/stream", stop) for _ in range(clients)]
    for reader in readers:
        reader.start()

    ws_url = url.replace("http://", "ws://").replace("https://", "wss://") + "/ws/telemetry"
    start = time.monotonic()
    snapshots = asyncio.run(watch_telemetry(ws_url, duration, report_interval))
    elapsed = time.monotonic() - start

    status = requests.get(f"{url}/status", timeout=5).json()
    stop.set()
    for reader in readers:
        reader.join(timeout=5)

    logger.info("=" * 60)
    logger.info("FINAL SUMMARY")
    logger.info("=" * 60)
    for index, reader in enumerate(readers):
        fps = reader.frames / elapsed if elapsed > 0 else 0.0
        logger.info(
            f"Client {index}: {reader.frames} frames, {reader.bytes} bytes, "
            f"{fps:.1f} fps" + (f", error: {reader.error}" if reader.error else "")
        )
    logger.info(f"Telemetry snapshots received: {len(snapshots)}")
    logger.info(f"Server telemetry: {status['telemetry']}")
    logger.info(f"Server clients: {status['clients']}")
    logger.info("=" * 60)

    frames = min((reader.frames for reader in readers), default=0)
    if frames > 0:
        logger.info("TEST PASSED - every client received frames")
    else:
        logger.error("TEST FAILED - at least one client received no frames")

    return {
        "duration": elapsed,
        "min_frames": frames,
        "telemetry_snapshots": len(snapshots),
        "server_telemetry": status["telemetry"],
    }


def main():
    parser = argparse.ArgumentParser(description="Smoke test for a running CamRelay")
    parser.add_argument(
        "--url",
        type=str,
        default=os.environ.get("CAMRELAY_URL", "http://localhost:8080"),
        help="Base HTTP URL of CamRelay",
    )
    parser.add_argument(
        "--clients",
        type=int,
        default=2,
        help="Concurrent MJPEG connections (default: 2)",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=30,
        help="Test duration in seconds (default: 30)",
    )
    parser.add_argument(
        "--report-interval",
        type=float,
        default=5,
        help="Seconds between telemetry reports (default: 5)",
    )

    args = parser.parse_args()

    result = run_test(
        url=args.url.rstrip("/"),
        clients=args.clients,
        duration=args.duration,
        report_interval=args.report_interval,
    )

    sys.exit(0 if result["min_frames"] > 0 else 1)


if __name__ == "__main__":
    main()
