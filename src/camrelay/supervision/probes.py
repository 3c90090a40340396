"""
Health Probes
=============

Probe factories for the watchdog. Each returns a zero-argument callable
that answers "is this component healthy right now?".
"""

import logging
import socket
from typing import Callable, Optional

import requests

from camrelay.stream.bus import FrameBus


logger = logging.getLogger(__name__)


Probe = Callable[[], bool]


def frame_fresh_probe(bus: FrameBus, stale_ms: float, is_alive: Optional[Probe] = None) -> Probe:
    """
    Camera liveness: the capture thread runs and a frame arrived recently.

    Args:
        bus: FrameBus the camera publishes to
        stale_ms: Maximum frame age
        is_alive: Optional capture-thread liveness check
    """
    def probe() -> bool:
        if is_alive is not None and not is_alive():
            return False
        age = bus.frame_age_ms()
        return age is not None and age <= stale_ms

    return probe


def http_probe(url: str, timeout: float = 2.0) -> Probe:
    """HTTP server liveness: GET `url` answers 200."""
    def probe() -> bool:
        try:
            response = requests.get(url, timeout=timeout)
        except requests.RequestException as e:
            logger.debug(f"HTTP probe {url} failed: {e}")
            return False
        return response.status_code == 200

    return probe


def local_ip_address() -> Optional[str]:
    """
    Primary non-loopback IPv4 address, or None without connectivity.

    Connecting a UDP socket sends nothing; it only selects the route.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("10.255.255.255", 1))
        address = sock.getsockname()[0]
    except OSError:
        return None
    finally:
        sock.close()
    if address.startswith("127.") or address == "0.0.0.0":
        return None
    return address


def network_probe() -> Probe:
    """Network connectivity: a non-loopback address is available."""
    def probe() -> bool:
        return local_ip_address() is not None

    return probe
