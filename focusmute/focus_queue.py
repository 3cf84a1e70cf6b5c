"""
focus_queue.py — FIFO of focus-switch events from the hook thread to the worker.

CRITICAL: enqueue() is called from the Win32 message-loop thread inside the
WinEvent callback. It only appends under a lock and sets an Event; it must
never block or call into the audio capability.

Every event is delivered in arrival order. Nothing is coalesced: three quick
switches A->B->C produce two transitions, both applied.

drain_all() hands the worker the whole backlog at once, so a burst of focus
changes costs one wake-up rather than one per event.
"""
import threading
from collections import deque
from typing import NamedTuple


class FocusEvent(NamedTuple):
    old_pid: int
    new_pid: int


class FocusEventQueue:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: deque[FocusEvent] = deque()
        # Manual-reset: set by enqueue(), cleared by drain_all().
        self._work = threading.Event()
        self._shutdown = threading.Event()

    def enqueue(self, event: FocusEvent) -> None:
        with self._lock:
            self._events.append(event)
            self._work.set()

    def drain_all(self) -> list[FocusEvent]:
        """Remove and return every queued event, oldest first."""
        with self._lock:
            events = list(self._events)
            self._events.clear()
            self._work.clear()
        return events

    def wait(self, timeout: float | None = None) -> bool:
        """
        Block until work is available or shutdown is requested.

        Returns True if there are events to drain. Returns False on timeout,
        or on shutdown with an empty queue.
        """
        self._work.wait(timeout)
        with self._lock:
            return bool(self._events)

    def request_shutdown(self) -> None:
        self._shutdown.set()
        self._work.set()  # wake the waiter

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
