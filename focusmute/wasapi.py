"""
wasapi.py — AudioCapability over Windows Core Audio via pycaw + comtypes.

Provides WasapiCapability: session enumeration, ISimpleAudioVolume mute control,
and session-created / per-session notifications for the default render endpoint.

Design decisions:
  - COM initialization: CoInitializeEx(COINIT_MULTITHREADED) in acquire(), on
    the worker thread. MTA because session notifications arrive on Core Audio's
    own threads and must reach our COM objects without a message pump.
  - Thread affinity: acquire() records the owning thread. enumerate_sessions(),
    set_mute(), unregister_*() and release() raise CapabilityError anywhere
    else. register_session_events() is also legal from the session-created
    callback thread (same apartment).
  - Cross-process sessions: GetProcessId returns the success code
    AUDCLNT_S_NO_SINGLE_PROCESS. comtypes drops success codes for methods with
    an [out] parameter, so the raw vtable method is called to see it. Those
    sessions and the system-sounds session are reported with process_id=None.
  - One session whose properties cannot be read is logged and skipped; it does
    not fail the enumeration.
"""
import logging
import threading
from ctypes import byref
from ctypes.wintypes import DWORD
from typing import Any, Callable

import comtypes
from comtypes import COMError, COMObject
from pycaw.api.audiopolicy import IAudioSessionEvents, IAudioSessionNotification
from pycaw.constants import CLSID_MMDeviceEnumerator
from pycaw.pycaw import (
    IAudioSessionControl2,
    IAudioSessionManager2,
    IMMDeviceEnumerator,
    ISimpleAudioVolume,
)

from focusmute.capability import CapabilityError, SessionDescriptor, SessionListener

_E_RENDER = 0
_E_CONSOLE = 0
_S_OK = 0
AUDCLNT_S_NO_SINGLE_PROCESS = 0x0889000D

_SESSION_STATES = {0: "Inactive", 1: "Active", 2: "Expired"}
_DISCONNECT_REASONS = {
    0: "device removed",
    1: "server shut down",
    2: "format changed",
    3: "user logged off",
    4: "session disconnected",
    5: "exclusive-mode override",
}


def _wrap(step: str, exc: Exception) -> CapabilityError:
    hresult = getattr(exc, "hresult", None)
    if hresult is None:
        hresult = getattr(exc, "winerror", None)
    return CapabilityError(f"{step} failed: {exc}", hresult)


def describe_session(ctl2: Any) -> SessionDescriptor:
    """Build a SessionDescriptor from an IAudioSessionControl2 pointer."""
    try:
        shared = ctl2.IsSystemSoundsSession() == _S_OK
        pid = DWORD(0)
        hr = ctl2._IAudioSessionControl2__com_GetProcessId(byref(pid))
        if hr == AUDCLNT_S_NO_SINGLE_PROCESS or not pid.value:
            shared = True
        return SessionDescriptor(
            process_id=None if shared else pid.value,
            session_id=ctl2.GetSessionIdentifier() or "",
            instance_id=ctl2.GetSessionInstanceIdentifier() or "",
            control=ctl2,
            display_name=ctl2.GetDisplayName() or "",
        )
    except (COMError, OSError) as exc:
        raise _wrap("Reading session properties", exc) from exc


class _SessionCreatedNotification(COMObject):
    """IAudioSessionNotification sink forwarding SessionDescriptors."""

    _com_interfaces_ = [IAudioSessionNotification]

    def __init__(self, callback: Callable[[SessionDescriptor], None]) -> None:
        super().__init__()
        self._callback = callback

    def OnSessionCreated(self, new_session):
        try:
            ctl2 = new_session.QueryInterface(IAudioSessionControl2)
            descriptor = describe_session(ctl2)
        except (COMError, OSError, CapabilityError):
            logging.warning("Could not read newly created session.", exc_info=True)
            return
        self._callback(descriptor)


class _SessionEvents(COMObject):
    """IAudioSessionEvents sink for a single session."""

    _com_interfaces_ = [IAudioSessionEvents]

    def __init__(self, listener: SessionListener) -> None:
        super().__init__()
        self._listener = listener

    def OnDisplayNameChanged(self, NewDisplayName, EventContext):
        pass

    def OnIconPathChanged(self, NewIconPath, EventContext):
        pass

    def OnSimpleVolumeChanged(self, NewVolume, NewMute, EventContext):
        try:
            self._listener.on_volume_changed(float(NewVolume), bool(NewMute))
        except Exception:
            logging.exception("Session volume listener failed.")

    def OnChannelVolumeChanged(self, ChannelCount, NewChannelVolumeArray, ChangedChannel, EventContext):
        pass

    def OnGroupingParamChanged(self, NewGroupingParam, EventContext):
        pass

    def OnStateChanged(self, NewState):
        try:
            self._listener.on_state_changed(_SESSION_STATES.get(NewState, "?????"))
        except Exception:
            logging.exception("Session state listener failed.")

    def OnSessionDisconnected(self, DisconnectReason):
        try:
            self._listener.on_disconnected(_DISCONNECT_REASONS.get(DisconnectReason, "?????"))
        except Exception:
            logging.exception("Session disconnect listener failed.")


class WasapiCapability:
    """Core Audio sessions of the default console render endpoint."""

    def __init__(self) -> None:
        self._owner: int | None = None
        self._manager = None
        self._created_sink: _SessionCreatedNotification | None = None

    # ------------------------------------------------------------------
    # Thread binding
    # ------------------------------------------------------------------

    def acquire(self) -> None:
        """Initialize COM on this thread and activate IAudioSessionManager2."""
        if self._owner is not None:
            raise CapabilityError("Audio capability already acquired")
        try:
            comtypes.CoInitializeEx(comtypes.COINIT_MULTITHREADED)
        except OSError as exc:
            raise _wrap("CoInitializeEx", exc) from exc
        try:
            enumerator = comtypes.CoCreateInstance(
                CLSID_MMDeviceEnumerator, IMMDeviceEnumerator, comtypes.CLSCTX_INPROC_SERVER
            )
            device = enumerator.GetDefaultAudioEndpoint(_E_RENDER, _E_CONSOLE)
            activated = device.Activate(IAudioSessionManager2._iid_, comtypes.CLSCTX_ALL, None)
            self._manager = activated.QueryInterface(IAudioSessionManager2)
        except (COMError, OSError) as exc:
            self._manager = None
            comtypes.CoUninitialize()
            raise _wrap("Activating IAudioSessionManager2", exc) from exc
        self._owner = threading.get_ident()
        logging.info("IAudioSessionManager2 initialized.")

    def release(self) -> None:
        self._require_owner()
        self._created_sink = None
        self._manager = None
        self._owner = None
        comtypes.CoUninitialize()
        logging.info("Audio capability released.")

    def _require_owner(self) -> None:
        if self._owner is None:
            raise CapabilityError("Audio capability not acquired")
        if threading.get_ident() != self._owner:
            raise CapabilityError(
                f"Audio capability used from thread {threading.get_ident()}, owned by {self._owner}"
            )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def enumerate_sessions(self) -> list[SessionDescriptor]:
        self._require_owner()
        try:
            session_enum = self._manager.GetSessionEnumerator()
            count = session_enum.GetCount()
        except (COMError, OSError) as exc:
            raise _wrap("GetSessionEnumerator", exc) from exc

        descriptors = []
        for i in range(count):
            try:
                ctl = session_enum.GetSession(i)
                ctl2 = ctl.QueryInterface(IAudioSessionControl2)
                descriptors.append(describe_session(ctl2))
            except (COMError, OSError, CapabilityError):
                logging.warning("Session %d of %d unreadable - skipped.", i, count, exc_info=True)
        logging.debug("Enumerated %d audio session(s).", len(descriptors))
        return descriptors

    def set_mute(self, control: Any, muted: bool) -> None:
        self._require_owner()
        try:
            volume = control.QueryInterface(ISimpleAudioVolume)
            volume.SetMute(int(muted), None)
        except (COMError, OSError) as exc:
            raise _wrap("SetMute", exc) from exc

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def register_session_created(self, callback: Callable[[SessionDescriptor], None]) -> None:
        self._require_owner()
        sink = _SessionCreatedNotification(callback)
        try:
            self._manager.RegisterSessionNotification(sink)
        except (COMError, OSError) as exc:
            raise _wrap("RegisterSessionNotification", exc) from exc
        self._created_sink = sink

    def unregister_session_created(self) -> None:
        self._require_owner()
        if self._created_sink is None:
            return
        sink, self._created_sink = self._created_sink, None
        try:
            self._manager.UnregisterSessionNotification(sink)
        except (COMError, OSError) as exc:
            raise _wrap("UnregisterSessionNotification", exc) from exc

    def register_session_events(self, control: Any, listener: SessionListener) -> Any:
        sink = _SessionEvents(listener)
        try:
            control.RegisterAudioSessionNotification(sink)
        except (COMError, OSError) as exc:
            raise _wrap("RegisterAudioSessionNotification", exc) from exc
        return sink

    def unregister_session_events(self, control: Any, token: Any) -> None:
        self._require_owner()
        try:
            control.UnregisterAudioSessionNotification(token)
        except (COMError, OSError) as exc:
            raise _wrap("UnregisterAudioSessionNotification", exc) from exc
