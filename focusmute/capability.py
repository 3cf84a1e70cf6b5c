"""
capability.py — The narrow audio-session interface the core consumes.

The registry, tracker and coordinator only ever talk to an AudioCapability.
On Windows that is focusmute.wasapi.WasapiCapability (pycaw + comtypes);
tests substitute in-memory fakes.

Failures raise CapabilityError. "Not applicable" results are not errors: a
session with no single owning process is reported as a SessionDescriptor with
process_id=None.
"""
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from focusmute.registry import SessionIdentity


class CapabilityError(Exception):
    """An audio-capability call returned a failure result."""

    def __init__(self, message: str, hresult: int | None = None) -> None:
        super().__init__(message)
        self.hresult = hresult

    def __str__(self) -> str:
        msg = super().__str__()
        if self.hresult is None:
            return msg
        return f"{msg} (hr=0x{self.hresult & 0xFFFFFFFF:08X})"


@dataclass(frozen=True)
class SessionDescriptor:
    """One enumerated or newly created session, as reported by the capability."""

    process_id: int | None
    session_id: str
    instance_id: str
    control: Any
    display_name: str = ""

    @property
    def identity(self) -> SessionIdentity:
        return SessionIdentity(self.process_id, self.session_id, self.instance_id)


class SessionListener(Protocol):
    """Per-session notification sink installed by register_session_events()."""

    def on_volume_changed(self, volume: float, muted: bool) -> None: ...

    def on_state_changed(self, state: str) -> None: ...

    def on_disconnected(self, reason: str) -> None: ...


class AudioCapability(Protocol):
    """
    Audio-session control for the default render device.

    acquire() binds the capability to the calling thread; every other method
    except the notification callbacks themselves must be called from that
    same thread, until release().
    """

    def acquire(self) -> None: ...

    def release(self) -> None: ...

    def enumerate_sessions(self) -> list[SessionDescriptor]: ...

    def set_mute(self, control: Any, muted: bool) -> None: ...

    def register_session_created(self, callback: Callable[[SessionDescriptor], None]) -> None: ...

    def unregister_session_created(self) -> None: ...

    def register_session_events(self, control: Any, listener: SessionListener) -> Any: ...

    def unregister_session_events(self, control: Any, token: Any) -> None: ...
