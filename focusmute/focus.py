"""
focus.py — Detection-context logic for foreground changes.

FocusDetector.on_window() runs inside the WinEvent hook callback on the
message-loop thread. It remembers the last foreground process, drops
same-process repeats, and enqueues FocusEvent(old, new). That is all.

CRITICAL: this module must not import the audio capability. COM calls can pump
the calling thread's message queue, and on the message-loop thread that means
the hook callback can be re-entered from inside itself. Mute work happens on
the worker thread after the event is dequeued.

The last-seen pid needs no lock: the OS serializes out-of-context WinEvent
callbacks on the thread that installed the hook, and nothing else reads it.
"""
import logging
import os
from typing import Callable

from focusmute.focus_queue import FocusEvent, FocusEventQueue


class FocusDetector:
    """
    Turns "process P now has focus" into FocusEvent(previous, P).

    Args:
        queue: Where events go.
        initial_pid: Assumed owner of the focus before the first event. Defaults
            to our own pid, which owns no audio sessions, so the first real
            switch only unmutes the new foreground process.
        reentrancy_limit: How many nested on_window() calls are tolerated
            before `on_reentrancy_exceeded` is invoked.
        on_reentrancy_exceeded: Called with the current depth when the limit is
            exceeded. The service terminates the process from here.
    """

    def __init__(
        self,
        queue: FocusEventQueue,
        initial_pid: int | None = None,
        reentrancy_limit: int = 0,
        on_reentrancy_exceeded: Callable[[int], None] | None = None,
    ) -> None:
        self._queue = queue
        self._last_pid = initial_pid if initial_pid is not None else os.getpid()
        self._reentrancy_limit = reentrancy_limit
        self._on_reentrancy_exceeded = on_reentrancy_exceeded
        self._depth = 0

    @property
    def last_pid(self) -> int:
        return self._last_pid

    def on_foreground(self, pid: int) -> bool:
        """Record a foreground change to an already resolved `pid`."""
        return self.on_window(lambda: pid)

    def on_window(self, resolve_pid: Callable[[], int]) -> bool:
        """
        Record a foreground change whose process id comes from `resolve_pid`.

        The whole callback path is counted for re-entrancy, including the
        process-id lookup, since Win32 calls made there can pump messages too.

        Returns True if an event was enqueued, False if it was dropped
        (pid 0, same process as before, or re-entrancy abort).
        """
        if self._depth > 0:
            logging.warning("Re-entrant foreground callback (depth %d).", self._depth)
            if self._depth > self._reentrancy_limit:
                logging.critical(
                    "Re-entrancy limit %d exceeded - aborting.", self._reentrancy_limit
                )
                if self._on_reentrancy_exceeded is not None:
                    self._on_reentrancy_exceeded(self._depth)
                return False

        self._depth += 1
        try:
            return self._record(resolve_pid())
        finally:
            self._depth -= 1

    def _record(self, pid: int) -> bool:
        if not pid:
            logging.debug("Foreground window has no resolvable process - ignored.")
            return False
        if pid == self._last_pid:
            return False

        # Update the last-seen pid before anything that could re-enter.
        old_pid, self._last_pid = self._last_pid, pid
        self._queue.enqueue(FocusEvent(old_pid, pid))
        logging.debug("Focus switch queued: %d -> %d", old_pid, pid)
        return True
