"""
lifecycle.py — Service state machine, startup handshake and exit codes.

    STARTING -> READY -> RUNNING -> DRAINING -> STOPPED

fail(code) may be called in any state. It records the exit code, wakes
wait_ready() and breaks the startup barrier; the service still drains and
stops normally afterwards.

Startup handshake between the worker and the orchestrating (main) thread:
  1. Worker finishes session tracking and calls mark_ready().
  2. Main returns from wait_ready(timeout) and both meet at rendezvous().
     Only then does main install the foreground hook, so no focus event is
     produced before tracking is confirmed live.
  3. If the worker fails first, wait_ready() returns False immediately instead
     of waiting out the timeout. If main times out it calls abort_rendezvous(),
     which breaks the barrier so a late worker does not hang.
"""
import enum
import logging
import threading


class LifecycleState(enum.Enum):
    STARTING = "starting"
    READY = "ready"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class ExitCode(enum.IntEnum):
    """Process exit codes - tell the operator which startup phase failed."""

    OK = 0
    FATAL = 1
    TRACKER_INIT = 2
    WAIT_TIMEOUT = 3
    HOOK_INSTALL = 4
    REENTRANCY = 5


class LifecycleError(Exception):
    pass


_ALLOWED: dict[LifecycleState, set[LifecycleState]] = {
    LifecycleState.STARTING: {LifecycleState.READY, LifecycleState.DRAINING},
    LifecycleState.READY: {LifecycleState.RUNNING, LifecycleState.DRAINING},
    LifecycleState.RUNNING: {LifecycleState.DRAINING},
    LifecycleState.DRAINING: {LifecycleState.STOPPED},
    LifecycleState.STOPPED: set(),
}


class LifecycleController:
    def __init__(self, rendezvous_timeout: float | None = None) -> None:
        self._lock = threading.Lock()
        self._state = LifecycleState.STARTING
        self._exit_code = ExitCode.OK
        self._ready = threading.Event()
        # Set on ready OR failure, so the waiter wakes on whichever comes first.
        self._settled = threading.Event()
        self._stopped = threading.Event()
        self._barrier = threading.Barrier(2, timeout=rendezvous_timeout)

    @property
    def state(self) -> LifecycleState:
        with self._lock:
            return self._state

    @property
    def exit_code(self) -> ExitCode:
        with self._lock:
            return self._exit_code

    def _transition(self, new: LifecycleState) -> None:
        with self._lock:
            if new not in _ALLOWED[self._state]:
                raise LifecycleError(f"Illegal transition {self._state.value} -> {new.value}")
            logging.info("Lifecycle: %s -> %s", self._state.value, new.value)
            self._state = new
            if new is LifecycleState.STOPPED:
                self._stopped.set()

    # -- worker side ---------------------------------------------------

    def mark_ready(self) -> None:
        self._transition(LifecycleState.READY)
        self._ready.set()
        self._settled.set()

    def rendezvous(self) -> bool:
        """Meet the other side at the startup barrier. False if it was aborted."""
        try:
            self._barrier.wait()
        except threading.BrokenBarrierError:
            return False
        return True

    # -- orchestrator side ---------------------------------------------

    def wait_ready(self, timeout: float | None) -> bool:
        """True once the worker is READY; False on timeout or worker failure."""
        self._settled.wait(timeout)
        return self._ready.is_set() and self.exit_code is ExitCode.OK

    def abort_rendezvous(self) -> None:
        self._barrier.abort()

    def mark_running(self) -> None:
        self._transition(LifecycleState.RUNNING)

    def begin_draining(self) -> None:
        """Enter DRAINING. Safe to call again once draining or stopped."""
        with self._lock:
            if self._state in (LifecycleState.DRAINING, LifecycleState.STOPPED):
                return
        self._transition(LifecycleState.DRAINING)

    def mark_stopped(self) -> None:
        with self._lock:
            if self._state is LifecycleState.STOPPED:
                return
        if self.state is not LifecycleState.DRAINING:
            self._transition(LifecycleState.DRAINING)
        self._transition(LifecycleState.STOPPED)

    def wait_stopped(self, timeout: float | None = None) -> bool:
        return self._stopped.wait(timeout)

    # -- either side ---------------------------------------------------

    def fail(self, code: ExitCode) -> None:
        """Record a fatal failure. The first recorded code wins."""
        with self._lock:
            if self._exit_code is ExitCode.OK:
                self._exit_code = code
        logging.error("Lifecycle failure: %s (exit code %d)", code.name, int(code))
        self._settled.set()
        self._barrier.abort()
