"""
Shared fixtures: an in-memory AudioCapability and session factory.

FakeCapability records every call instead of touching Core Audio, so the
registry / tracker / coordinator / worker tests run on any platform.
"""
import itertools
import threading

import pytest

from focusmute.capability import CapabilityError, SessionDescriptor
from focusmute.config_loader import Settings
from focusmute.registry import SessionRegistry


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeControl:
    """Stands in for an IAudioSessionControl2 pointer."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self.muted = False
        self.fail_mute = False

    def __repr__(self) -> str:
        return f"FakeControl({self.name!r}, muted={self.muted})"


class FakeCapability:
    """
    Records calls; failure switches make a given step raise CapabilityError.
    """

    def __init__(self) -> None:
        self.sessions: list[SessionDescriptor] = []
        self.acquired = False
        self.released = False
        self.owner: int | None = None
        self.created_callback = None
        self.created_unregistered = 0
        self.listeners: dict = {}
        self.unregistered: list = []
        self.mute_calls: list[tuple] = []

        self.fail_acquire = False
        self.fail_register_created = False
        self.fail_enumerate = False
        self.fail_register_events: set = set()

    # -- AudioCapability ------------------------------------------------

    def acquire(self) -> None:
        if self.fail_acquire:
            raise CapabilityError("CoInitializeEx failed", 0x80004005)
        self.acquired = True
        self.owner = threading.get_ident()

    def release(self) -> None:
        self.acquired = False
        self.released = True

    def enumerate_sessions(self) -> list[SessionDescriptor]:
        if self.fail_enumerate:
            raise CapabilityError("GetSessionEnumerator failed", 0x88890004)
        return list(self.sessions)

    def set_mute(self, control, muted: bool) -> None:
        self.mute_calls.append((control.name, muted))
        if control.fail_mute:
            raise CapabilityError("SetMute failed", 0x88890004)
        control.muted = muted

    def register_session_created(self, callback) -> None:
        if self.fail_register_created:
            raise CapabilityError("RegisterSessionNotification failed", 0x80070005)
        self.created_callback = callback

    def unregister_session_created(self) -> None:
        self.created_callback = None
        self.created_unregistered += 1

    def register_session_events(self, control, listener):
        if control in self.fail_register_events:
            raise CapabilityError("RegisterAudioSessionNotification failed", 0x80070005)
        self.listeners[control] = listener
        return ("token", control.name)

    def unregister_session_events(self, control, token) -> None:
        assert token == ("token", control.name)
        self.listeners.pop(control, None)
        self.unregistered.append(control.name)

    # -- test helpers ---------------------------------------------------

    def announce(self, descriptor: SessionDescriptor) -> None:
        """Simulate OnSessionCreated for `descriptor`."""
        self.sessions.append(descriptor)
        if self.created_callback is not None:
            self.created_callback(descriptor)

    def listener_for(self, descriptor: SessionDescriptor):
        return self.listeners.get(descriptor.control)


_instance_ids = itertools.count(1)


def make_session(pid: int | None, name: str = "", session_id: str | None = None) -> SessionDescriptor:
    n = next(_instance_ids)
    name = name or f"app{n}"
    return SessionDescriptor(
        process_id=pid,
        session_id=session_id or f"{{session}}|{name}",
        instance_id=f"{{instance}}|{name}|{n}",
        control=FakeControl(name),
        display_name=name,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def capability():
    return FakeCapability()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def session():
    """Factory: session(pid, name="") -> SessionDescriptor with a FakeControl."""
    return make_session


@pytest.fixture
def settings():
    return Settings(startup_timeout=5.0, join_timeout=5.0)
