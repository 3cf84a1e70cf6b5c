"""
tracker.py — Populates the session registry and keeps it current.

Startup (SessionTracker.start, on the worker thread):
  1. Register the session-created notification FIRST, so a session created
     while existing ones are being enumerated is not lost.
  2. Enumerate existing sessions and try_register() each one.
  3. Install a per-session listener on every newly registered session.

Each session gets its own _SessionListener bound to that session's identity,
so a disconnect removes exactly that registry entry. Removed handles are parked
on a retired list; their notifications are unregistered later by reap() on the
worker thread, never from inside the notification callback itself.

Startup failures unwind everything already registered and raise
TrackerStartupError carrying the TrackerStep that failed.
"""
import enum
import logging
import threading

from focusmute.capability import AudioCapability, CapabilityError, SessionDescriptor
from focusmute.registry import RegisterResult, SessionHandle, SessionIdentity, SessionRegistry


class TrackerStep(enum.IntEnum):
    """Startup step that failed. Values are stable diagnostic codes."""

    REGISTER_CREATED = 4
    ENUMERATE = 5
    REGISTER_SESSION = 7


class TrackerStartupError(Exception):
    def __init__(self, step: TrackerStep, cause: BaseException | None = None) -> None:
        super().__init__(f"Session tracker failed at {step.name} (code {int(step)}): {cause}")
        self.step = step


class _SessionListener:
    """Notification sink for exactly one session."""

    def __init__(self, tracker: "SessionTracker", identity: SessionIdentity, name: str) -> None:
        self._tracker = tracker
        self._identity = identity
        self._name = name

    def on_volume_changed(self, volume: float, muted: bool) -> None:
        if muted:
            logging.debug("Session %s (pid %s): MUTE", self._name, self._identity.process_id)
        else:
            logging.debug(
                "Session %s (pid %s): volume = %d percent",
                self._name, self._identity.process_id, int(100 * volume + 0.5),
            )

    def on_state_changed(self, state: str) -> None:
        logging.debug("Session %s (pid %s): state = %s", self._name, self._identity.process_id, state)
        if state == "Expired":
            self._tracker.retire(self._identity)

    def on_disconnected(self, reason: str) -> None:
        logging.info(
            "Session %s (pid %s) disconnected (reason: %s)",
            self._name, self._identity.process_id, reason,
        )
        self._tracker.retire(self._identity)


class SessionTracker:
    """Keeps a SessionRegistry in sync with the sessions the capability reports."""

    def __init__(self, capability: AudioCapability, registry: SessionRegistry) -> None:
        self._capability = capability
        self._registry = registry
        self._lock = threading.Lock()
        self._retired: list[SessionHandle] = []
        self._created_registered = False
        self._closed = False

    # ------------------------------------------------------------------
    # Startup / teardown (worker thread)
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Bring the registry to its initial state.

        Raises:
            TrackerStartupError: a capability call failed; everything registered
                so far has been unwound.
        """
        try:
            self._capability.register_session_created(self.on_session_created)
        except CapabilityError as exc:
            raise TrackerStartupError(TrackerStep.REGISTER_CREATED, exc) from exc
        self._created_registered = True

        try:
            descriptors = self._capability.enumerate_sessions()
        except CapabilityError as exc:
            self.stop()
            raise TrackerStartupError(TrackerStep.ENUMERATE, exc) from exc

        for descriptor in descriptors:
            try:
                self._track(descriptor)
            except CapabilityError as exc:
                self.stop()
                raise TrackerStartupError(TrackerStep.REGISTER_SESSION, exc) from exc

        logging.info(
            "Session tracking live: %d session(s), %d process(es), %d shared.",
            len(self._registry), len(self._registry.process_ids()), self._registry.shared_count(),
        )
        self._registry.for_each(lambda h: logging.debug("Tracking %r", h))

    def stop(self) -> None:
        """Unregister every notification and release every handle. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

        if self._created_registered:
            try:
                self._capability.unregister_session_created()
            except CapabilityError:
                logging.warning("Failed to unregister session-created notification.", exc_info=True)
            self._created_registered = False

        for handle in self._registry.clear():
            self._dispose(handle)
        self.reap()
        logging.info("Session tracker stopped.")

    def reap(self) -> int:
        """Unregister and release handles retired by disconnect notifications."""
        with self._lock:
            retired, self._retired = self._retired, []
        for handle in retired:
            self._dispose(handle)
        return len(retired)

    # ------------------------------------------------------------------
    # Notifications (any thread)
    # ------------------------------------------------------------------

    def on_session_created(self, descriptor: SessionDescriptor) -> None:
        """Session-created callback. Runs on a capability callback thread."""
        try:
            if self._track(descriptor):
                logging.info(
                    "New audio session: %s (pid %s)",
                    descriptor.display_name or "<unnamed>", descriptor.process_id,
                )
        except CapabilityError:
            logging.warning(
                "Could not track new session %s.", descriptor.identity, exc_info=True
            )
        except Exception:
            logging.exception("Unexpected error in session-created callback.")

    def retire(self, identity: SessionIdentity) -> None:
        """Drop `identity` from the registry; its listener is unregistered by reap()."""
        handle = self._registry.remove(identity, release=False)
        if handle is None:
            return
        with self._lock:
            self._retired.append(handle)
        logging.debug("Retired %r", handle)

    @property
    def retired_count(self) -> int:
        with self._lock:
            return len(self._retired)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _track(self, descriptor: SessionDescriptor) -> bool:
        """
        Register one session and install its listener.

        Returns False for duplicates and for sessions arriving after stop().
        Raises CapabilityError if the listener cannot be installed; the entry
        is removed again in that case.
        """
        if self._closed:
            return False
        identity = descriptor.identity
        handle = SessionHandle(identity, descriptor.control, descriptor.display_name)
        if self._registry.try_register(identity, handle) is RegisterResult.DUPLICATE:
            handle.release()
            return False

        listener = _SessionListener(self, identity, descriptor.display_name or "<unnamed>")
        try:
            token = self._capability.register_session_events(descriptor.control, listener)
        except CapabilityError:
            self._registry.remove(identity)
            raise

        # Decided under the lock _dispose() uses: either the handle is marked
        # registered before stop()/reap() dispose it, or the token is unregistered here.
        with self._lock:
            closed = self._closed or handle.released
            if not closed:
                handle.listener_token = token
                handle.registered = True
        if not closed:
            return True

        if self._closed:
            self._registry.remove(identity)
        try:
            self._capability.unregister_session_events(descriptor.control, token)
        except CapabilityError:
            logging.warning("Failed to unregister notification for late session %s.", identity, exc_info=True)
        return False

    def _dispose(self, handle: SessionHandle) -> None:
        with self._lock:
            registered, control, token = handle.registered, handle.control, handle.listener_token
            handle.registered = False
            handle.release()
        if registered and control is not None:
            try:
                self._capability.unregister_session_events(control, token)
            except CapabilityError:
                logging.warning("Failed to unregister notification for %r.", handle, exc_info=True)
