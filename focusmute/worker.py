"""
Audio worker module — the thread that owns the audio capability.

Everything that touches Core Audio runs here: capability acquire/release
(COM initialization is per-thread), session tracker startup and teardown, and
every mute/unmute call. The hook thread only enqueues FocusEvents.

Sequence:
  1. capability.acquire() on this thread
  2. SessionTracker.start() - registry populated, notifications live
  3. lifecycle.mark_ready(), then meet the main thread at the rendezvous
  4. loop: wait -> drain_all -> apply each transition in order -> reap(),
     then prune() the coordinator if anything was reaped
  5. on shutdown: finish the current batch, optionally restore mutes,
     tracker.stop(), capability.release()

A TrackerStartupError ends this thread (exit code TRACKER_INIT is recorded on
the lifecycle) but not the process; the main thread decides what to do.
"""
import logging
import threading

from focusmute.capability import AudioCapability, CapabilityError
from focusmute.coordinator import MuteCoordinator
from focusmute.focus_queue import FocusEvent, FocusEventQueue
from focusmute.lifecycle import ExitCode, LifecycleController, LifecycleError
from focusmute.registry import SessionRegistry
from focusmute.tracker import SessionTracker, TrackerStartupError


class AudioWorker:
    def __init__(
        self,
        capability: AudioCapability,
        registry: SessionRegistry,
        queue: FocusEventQueue,
        lifecycle: LifecycleController,
        restore_on_exit: bool = True,
    ) -> None:
        self._capability = capability
        self._queue = queue
        self._lifecycle = lifecycle
        self._restore_on_exit = restore_on_exit
        self.tracker = SessionTracker(capability, registry)
        self.coordinator = MuteCoordinator(capability, registry)
        self.transitions_applied = 0
        self._thread: threading.Thread | None = None

    def start(self) -> threading.Thread:
        """Start the worker daemon thread and return it."""
        t = threading.Thread(target=self.run, daemon=True, name="audio-worker")
        t.start()
        self._thread = t
        logging.info("Audio worker thread started.")
        return t

    def join(self, timeout: float | None = None) -> bool:
        """Join the worker thread. Returns False if it is still alive after `timeout`."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def run(self) -> None:
        """Thread body. Also callable directly (tests)."""
        logging.info("Audio worker thread running.")
        try:
            self._capability.acquire()
        except CapabilityError:
            logging.exception("Could not acquire the audio capability.")
            self._lifecycle.fail(ExitCode.TRACKER_INIT)
            return

        try:
            try:
                self.tracker.start()
            except TrackerStartupError as exc:
                logging.error("%s", exc)
                self._lifecycle.fail(ExitCode.TRACKER_INIT)
                return

            try:
                self._lifecycle.mark_ready()
            except LifecycleError:
                logging.warning("Service left STARTING before tracking was ready - worker exiting.")
                return
            if not self._lifecycle.rendezvous():
                logging.warning("Startup handshake aborted - worker exiting.")
                return

            self._loop()

            if self._restore_on_exit:
                self.coordinator.restore_all()
        finally:
            self.tracker.stop()
            try:
                self._capability.release()
            except CapabilityError:
                logging.warning("Audio capability release failed.", exc_info=True)
            logging.info("Audio worker thread exiting.")

    def _loop(self) -> None:
        while True:
            if self._queue.wait():
                for event in self._queue.drain_all():
                    self._apply(event)
            if self.tracker.reap():
                self.coordinator.prune()
            if self._queue.shutdown_requested:
                logging.info("Shutdown requested - audio worker draining.")
                return

    def _apply(self, event: FocusEvent) -> None:
        try:
            self.coordinator.apply_transition(event.old_pid, event.new_pid)
        except Exception:
            logging.exception("Mute transition %d -> %d failed - skipping.", event.old_pid, event.new_pid)
        else:
            self.transitions_applied += 1
