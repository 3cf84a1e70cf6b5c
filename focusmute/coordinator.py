"""
coordinator.py — Applies focus-switch mute transitions.

MuteCoordinator is the only code that calls capability.set_mute(), and it only
runs on the worker thread, after events have been dequeued.

Per-session failures are logged and counted but never abort the batch: one
bad session must not stop the rest of the transition.
"""
import logging
import threading
from dataclasses import dataclass

import psutil

from focusmute.capability import AudioCapability, CapabilityError
from focusmute.registry import SessionHandle, SessionIdentity, SessionRegistry


@dataclass
class TransitionResult:
    muted: int = 0
    unmuted: int = 0
    failed: int = 0
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.failed == 0


def process_name(pid: int | None) -> str:
    """Best-effort process name for log lines."""
    if not pid:
        return "<none>"
    try:
        return psutil.Process(pid).name()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return f"pid {pid}"


class MuteCoordinator:
    """
    mute(old) / unmute(new) against the registry.

    Remembers which sessions it muted so restore_all() can unmute them at
    shutdown instead of leaving background applications silenced.
    """

    def __init__(self, capability: AudioCapability, registry: SessionRegistry) -> None:
        self._capability = capability
        self._registry = registry
        self._muted_lock = threading.Lock()
        self._muted: set[SessionIdentity] = set()

    def apply_transition(self, old_pid: int, new_pid: int) -> TransitionResult:
        """
        Mute every session of `old_pid`, unmute every session of `new_pid`.

        No-op (skipped=True) when the pids are equal or either is zero; the
        producer already filters these, this is a second line.
        """
        if not old_pid or not new_pid or old_pid == new_pid:
            logging.debug("Transition %s -> %s ignored.", old_pid, new_pid)
            return TransitionResult(skipped=True)

        result = TransitionResult()
        # Sessions belong to exactly one process key, so the two sets are
        # disjoint and the order of the two loops does not matter.
        for handle in self._registry.sessions_for(old_pid):
            applied = self._set_mute(handle, True)
            if applied:
                result.muted += 1
            elif applied is not None:
                result.failed += 1
        for handle in self._registry.sessions_for(new_pid):
            applied = self._set_mute(handle, False)
            if applied:
                result.unmuted += 1
            elif applied is not None:
                result.failed += 1

        logging.info(
            "Focus %s -> %s: muted %d, unmuted %d, failed %d.",
            process_name(old_pid), process_name(new_pid),
            result.muted, result.unmuted, result.failed,
        )
        return result

    def restore_all(self) -> int:
        """Unmute every still-registered session this coordinator muted."""
        with self._muted_lock:
            muted, self._muted = self._muted, set()
        restored = 0
        for identity in muted:
            for handle in self._registry.sessions_for(identity.process_id):
                if handle.identity == identity and self._set_mute(handle, False):
                    restored += 1
        if restored:
            logging.info("Restored %d muted session(s).", restored)
        return restored

    def prune(self) -> int:
        """Forget muted sessions that are no longer registered. Returns how many."""
        with self._muted_lock:
            gone = {identity for identity in self._muted if identity not in self._registry}
            self._muted -= gone
        return len(gone)

    @property
    def muted_count(self) -> int:
        with self._muted_lock:
            return len(self._muted)

    def _set_mute(self, handle: SessionHandle, muted: bool) -> bool | None:
        """True on success, False on failure, None if the handle was already released."""
        control = handle.control
        if handle.released or control is None:
            # Removed by a disconnect after the snapshot was taken.
            with self._muted_lock:
                self._muted.discard(handle.identity)
            return None
        try:
            self._capability.set_mute(control, muted)
        except CapabilityError:
            logging.warning(
                "SetMute(%s) failed for %r - continuing.", muted, handle, exc_info=True
            )
            return False
        with self._muted_lock:
            if muted:
                self._muted.add(handle.identity)
            else:
                self._muted.discard(handle.identity)
        return True
