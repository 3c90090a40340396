"""
Watchdog
========

Health-polling restart state machine with bounded exponential backoff.

States (per component):
    HEALTHY     -> probe passes
    DEGRADED    -> probe failed; left immediately
    RESTARTING  -> restart attempts under backoff
    STOPPED     -> user stop (or a non-transient restart error)

Transitions:
    HEALTHY    -> DEGRADED     probe fails
    DEGRADED   -> RESTARTING   immediately, unless stop was requested
    DEGRADED   -> STOPPED      stop was requested
    RESTARTING -> HEALTHY      restart succeeded and the probe passes within
                               the component's settle window
    RESTARTING -> RESTARTING   attempt failed; next one after the backoff
    any        -> STOPPED      request_stop()
    STOPPED    -> RESTARTING   request_start() only, no backoff

Backoff:
    delay = min(ceiling, floor * 2 ** (failures - 1))
    giving 1, 2, 4, 8, 16, 30, 30, ... seconds with the defaults.

Design Rules:
    - Restart attempts run on a single-worker executor, never on the
      polling thread, and are never awaited by request_stop()
    - Stop always wins: results of attempts started before the latest
      stop/start request are discarded (generation counter)
    - A failing restart never crashes the polling loop
"""

import logging
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple


logger = logging.getLogger(__name__)


class WatchdogState(str, Enum):
    """Health state of one watched component."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    RESTARTING = "restarting"
    STOPPED = "stopped"


class NonTransientError(Exception):
    """
    Raised by a restart callback when retrying cannot help
    (e.g. the configured camera device does not exist).
    """
    pass


@dataclass(frozen=True)
class WatchedComponent:
    """
    A component under supervision.

    Attributes:
        name: Component identifier reported to the supervisor
        probe: Returns True when the component is healthy
        restart: Restarts the component; raises on failure
        settle_s: How long a restarted component may take to pass its probe
    """

    name: str
    probe: Callable[[], bool]
    restart: Callable[[], None]
    settle_s: float = 0.0


class ComponentStatus:
    """Mutable per-component bookkeeping."""

    __slots__ = (
        "state",
        "failures",
        "backoff_s",
        "last_attempt",
        "next_attempt",
        "in_flight",
        "restarts",
        "last_error",
    )

    def __init__(self, backoff_floor_s: float) -> None:
        self.state: WatchdogState = WatchdogState.HEALTHY
        self.failures: int = 0
        self.backoff_s: float = backoff_floor_s
        self.last_attempt: Optional[float] = None
        self.next_attempt: Optional[float] = None
        self.in_flight: bool = False
        self.restarts: int = 0
        self.last_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "failures": self.failures,
            "backoff_s": self.backoff_s,
            "last_attempt": self.last_attempt,
            "next_attempt": self.next_attempt,
            "restarts": self.restarts,
            "last_error": self.last_error,
        }


StateCallback = Callable[[str, WatchdogState], None]
FatalCallback = Callable[[str, BaseException], None]


def backoff_delay(failures: int, floor_s: float, ceiling_s: float) -> float:
    """Delay before the next attempt after `failures` consecutive failures."""
    if failures <= 0:
        return floor_s
    return min(ceiling_s, floor_s * 2 ** (failures - 1))


class Watchdog:
    """
    Supervises components through health probes and restarts.

    Attributes:
        poll_interval_s: Seconds between health probes
        backoff_floor_s: First retry delay
        backoff_ceiling_s: Maximum retry delay

    Example:
        watchdog = Watchdog(
            components=[WatchedComponent("camera", source.is_alive, source.restart)],
            on_state_change=lambda name, state: print(name, state),
        )
        watchdog.start()
        ...
        watchdog.request_stop()
        watchdog.shutdown()
    """

    def __init__(
        self,
        components: Sequence[WatchedComponent],
        poll_interval_s: float = 5.0,
        backoff_floor_s: float = 1.0,
        backoff_ceiling_s: float = 30.0,
        on_state_change: Optional[StateCallback] = None,
        on_fatal: Optional[FatalCallback] = None,
        clock: Callable[[], float] = time.monotonic,
        executor: Optional[Executor] = None,
        settle_interval_s: float = 0.1,
    ) -> None:
        """
        Initialize the watchdog.

        Args:
            components: Components to supervise (names must be unique)
            poll_interval_s: Probe period
            backoff_floor_s: Backoff floor
            backoff_ceiling_s: Backoff ceiling
            on_state_change: Supervisor report, called on every transition
            on_fatal: Called when a restart raises NonTransientError
            clock: Monotonic clock in seconds
            executor: Runs restart attempts (default: one worker thread)
            settle_interval_s: Re-probe period while a restart settles
        """
        if poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be positive")
        if backoff_floor_s <= 0 or backoff_ceiling_s < backoff_floor_s:
            raise ValueError("backoff requires 0 < floor <= ceiling")

        names = [component.name for component in components]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate component names: {names}")

        self.poll_interval_s = poll_interval_s
        self.backoff_floor_s = backoff_floor_s
        self.backoff_ceiling_s = backoff_ceiling_s
        self.settle_interval_s = settle_interval_s
        self._on_state_change = on_state_change
        self._on_fatal = on_fatal
        self._clock = clock

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="watchdog-restart"
        )

        self._components: Dict[str, WatchedComponent] = {c.name: c for c in components}
        self._status: Dict[str, ComponentStatus] = {
            name: ComponentStatus(backoff_floor_s) for name in self._components
        }

        self._lock = threading.Lock()
        self._stop_requested = False
        self._generation = 0
        self._next_probe_at: Optional[float] = None

        self._thread: Optional[threading.Thread] = None
        self._shutdown = threading.Event()
        self._wake = threading.Event()

    # =========================================================================
    # Inspection
    # =========================================================================

    @property
    def stop_requested(self) -> bool:
        with self._lock:
            return self._stop_requested

    def states(self) -> Dict[str, WatchdogState]:
        with self._lock:
            return {name: status.state for name, status in self._status.items()}

    def status(self, name: str) -> ComponentStatus:
        return self._status[name]

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "stop_requested": self._stop_requested,
                "components": {name: s.to_dict() for name, s in self._status.items()},
            }

    # =========================================================================
    # Supervisor commands
    # =========================================================================

    def request_stop(self) -> None:
        """
        User-initiated stop: every component goes to STOPPED now.

        Pending retries are dropped and in-flight attempts are abandoned.
        """
        transitions: List[Tuple[str, WatchdogState]] = []
        with self._lock:
            self._stop_requested = True
            self._generation += 1
            for name, status in self._status.items():
                status.in_flight = False
                status.next_attempt = None
                self._transition(name, status, WatchdogState.STOPPED, transitions)
        logger.info("Watchdog stop requested")
        self._emit(transitions)

    def request_start(self) -> None:
        """
        User-initiated start: clear the stop flag and attempt every
        component immediately, bypassing backoff.

        Each attempt probes first; a component that is already healthy
        goes straight to HEALTHY without a restart.
        """
        transitions: List[Tuple[str, WatchdogState]] = []
        attempts: List[Tuple[WatchedComponent, int]] = []
        now = self._clock()
        with self._lock:
            self._stop_requested = False
            self._generation += 1
            for name, status in self._status.items():
                status.failures = 0
                status.backoff_s = self.backoff_floor_s
                status.last_error = None
                self._transition(name, status, WatchdogState.RESTARTING, transitions)
                attempts.append(self._begin_attempt(name, status, now))
            self._next_probe_at = now + self.poll_interval_s
        logger.info("Watchdog start requested")
        self._emit(transitions)
        self._submit(attempts, probe_first=True)
        self._wake.set()

    # =========================================================================
    # Polling
    # =========================================================================

    def poll_once(self, now: Optional[float] = None) -> Dict[str, WatchdogState]:
        """
        Run one polling step.

        Probes the non-restarting components when the poll interval has
        elapsed and launches any restart attempt whose backoff expired.

        Args:
            now: Clock reading (defaults to the injected clock)

        Returns:
            Component states after this step.
        """
        now = self._clock() if now is None else now

        with self._lock:
            if self._stop_requested:
                return {name: s.state for name, s in self._status.items()}
            generation = self._generation
            probe_due = self._next_probe_at is None or now >= self._next_probe_at
            if probe_due:
                self._next_probe_at = now + self.poll_interval_s
            to_probe = [
                name for name, status in self._status.items()
                if probe_due and status.state in (WatchdogState.HEALTHY, WatchdogState.DEGRADED)
            ]

        # Probes may block (HTTP timeout); run them without the lock
        results = {name: self._run_probe(name) for name in to_probe}

        transitions: List[Tuple[str, WatchdogState]] = []
        attempts: List[Tuple[WatchedComponent, int]] = []
        with self._lock:
            if generation == self._generation:
                for name, healthy in results.items():
                    status = self._status[name]
                    if healthy:
                        self._transition(name, status, WatchdogState.HEALTHY, transitions)
                        continue
                    self._transition(name, status, WatchdogState.DEGRADED, transitions)
                    if self._stop_requested:
                        self._transition(name, status, WatchdogState.STOPPED, transitions)
                        continue
                    self._transition(name, status, WatchdogState.RESTARTING, transitions)
                    attempts.append(self._begin_attempt(name, status, now))

                for name, status in self._status.items():
                    if (
                        status.state is WatchdogState.RESTARTING
                        and not status.in_flight
                        and status.next_attempt is not None
                        and now >= status.next_attempt
                    ):
                        attempts.append(self._begin_attempt(name, status, now))
            states = {name: s.state for name, s in self._status.items()}

        self._emit(transitions)
        self._submit(attempts)
        return states

    def seconds_until_next_action(self, now: Optional[float] = None) -> float:
        """Time the polling thread may sleep before poll_once() has work."""
        now = self._clock() if now is None else now
        with self._lock:
            deadlines = [] if self._next_probe_at is None else [self._next_probe_at]
            deadlines.extend(
                s.next_attempt for s in self._status.values()
                if s.state is WatchdogState.RESTARTING
                and not s.in_flight
                and s.next_attempt is not None
            )
        if not deadlines:
            return 0.0
        return max(0.0, min(deadlines) - now)

    # =========================================================================
    # Thread lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the polling thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._shutdown.clear()
        with self._lock:
            # Components get one poll interval to come up
            if self._next_probe_at is None:
                self._next_probe_at = self._clock() + self.poll_interval_s
        self._thread = threading.Thread(target=self._run, name="watchdog", daemon=True)
        self._thread.start()
        logger.info(
            f"Watchdog started: {len(self._components)} components, "
            f"poll {self.poll_interval_s}s, backoff {self.backoff_floor_s}-{self.backoff_ceiling_s}s"
        )

    def shutdown(self, timeout: float = 2.0) -> None:
        """Stop the polling thread (process teardown, not a user stop)."""
        self._shutdown.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("Watchdog shut down")

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._shutdown.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.exception(f"Watchdog poll failed: {e}")
            delay = min(self.poll_interval_s, self.seconds_until_next_action())
            self._wake.wait(max(delay, 0.05))
            self._wake.clear()

    # =========================================================================
    # Internals
    # =========================================================================

    def _run_probe(self, name: str) -> bool:
        try:
            return bool(self._components[name].probe())
        except Exception as e:
            logger.warning(f"Probe for {name} raised: {e}")
            return False

    def _transition(
        self,
        name: str,
        status: ComponentStatus,
        state: WatchdogState,
        transitions: List[Tuple[str, WatchdogState]],
    ) -> None:
        if status.state is state:
            return
        logger.info(f"Watchdog: {name} {status.state.value} -> {state.value}")
        status.state = state
        transitions.append((name, state))

    def _begin_attempt(
        self, name: str, status: ComponentStatus, now: float
    ) -> Tuple[WatchedComponent, int]:
        status.in_flight = True
        status.last_attempt = now
        status.next_attempt = None
        return self._components[name], self._generation

    def _submit(
        self,
        attempts: List[Tuple[WatchedComponent, int]],
        probe_first: bool = False,
    ) -> None:
        for component, generation in attempts:
            try:
                self._executor.submit(self._attempt, component, generation, probe_first)
            except RuntimeError as e:
                # Executor already shut down during process teardown
                logger.debug(f"Restart of {component.name} not scheduled: {e}")

    def _attempt(
        self,
        component: WatchedComponent,
        generation: int,
        probe_first: bool = False,
    ) -> None:
        if probe_first and self._run_probe(component.name):
            self._complete_attempt(component.name, generation, True, None, None, restarted=False)
            return

        logger.info(f"Restarting {component.name}")
        fatal: Optional[BaseException] = None
        error: Optional[str] = None
        healthy = False
        try:
            component.restart()
            healthy = self._await_healthy(component, generation)
            if not healthy:
                error = "probe failed after restart"
        except NonTransientError as e:
            fatal = e
            error = str(e)
        except Exception as e:
            error = str(e)

        self._complete_attempt(component.name, generation, healthy, error, fatal)

    def _await_healthy(self, component: WatchedComponent, generation: int) -> bool:
        """
        Probe a restarted component until it passes or `settle_s` expires.

        Settling is measured in real time; the injected clock only
        schedules attempts. A stop or start request ends the wait early.
        """
        deadline = time.monotonic() + component.settle_s
        while True:
            if self._run_probe(component.name):
                return True
            if time.monotonic() >= deadline or self._shutdown.is_set():
                return False
            with self._lock:
                if generation != self._generation or self._stop_requested:
                    return False
            self._shutdown.wait(self.settle_interval_s)

    def _complete_attempt(
        self,
        name: str,
        generation: int,
        healthy: bool,
        error: Optional[str],
        fatal: Optional[BaseException],
        restarted: bool = True,
    ) -> None:
        transitions: List[Tuple[str, WatchdogState]] = []
        with self._lock:
            if generation != self._generation or self._stop_requested:
                logger.info(f"Discarding stale restart result for {name}")
                return

            status = self._status[name]
            status.in_flight = False

            if fatal is not None:
                status.last_error = error
                status.next_attempt = None
                self._transition(name, status, WatchdogState.STOPPED, transitions)
            elif healthy:
                status.failures = 0
                status.backoff_s = self.backoff_floor_s
                if restarted:
                    status.restarts += 1
                status.last_error = None
                self._transition(name, status, WatchdogState.HEALTHY, transitions)
            else:
                status.failures += 1
                status.backoff_s = backoff_delay(
                    status.failures, self.backoff_floor_s, self.backoff_ceiling_s
                )
                status.last_error = error
                status.next_attempt = self._clock() + status.backoff_s
                logger.warning(
                    f"Restart of {name} failed ({status.failures} consecutive): {error}; "
                    f"retry in {status.backoff_s:g}s"
                )

        self._emit(transitions)
        if fatal is not None:
            logger.error(f"Non-transient failure restarting {name}: {fatal}")
            if self._on_fatal is not None:
                try:
                    self._on_fatal(name, fatal)
                except Exception as e:
                    logger.error(f"Fatal-error callback failed for {name}: {e}")
        self._wake.set()

    def _emit(self, transitions: List[Tuple[str, WatchdogState]]) -> None:
        if self._on_state_change is None:
            return
        for name, state in transitions:
            try:
                self._on_state_change(name, state)
            except Exception as e:
                logger.error(f"Watchdog state callback failed: {e}")
