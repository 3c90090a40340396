"""
Supervision Module
==================

Watchdog state machine and the probes it polls.
"""

from camrelay.supervision.probes import frame_fresh_probe, http_probe, network_probe
from camrelay.supervision.watchdog import (
    NonTransientError,
    WatchdogState,
    Watchdog,
    WatchedComponent,
    backoff_delay,
)

__all__ = [
    "frame_fresh_probe",
    "http_probe",
    "network_probe",
    "NonTransientError",
    "WatchdogState",
    "Watchdog",
    "WatchedComponent",
    "backoff_delay",
]
