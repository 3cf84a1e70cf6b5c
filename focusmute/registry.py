"""
registry.py — Lock-guarded registry of audio sessions keyed by owning process.

Provides:
  - SessionIdentity: frozen (process_id, session_id, instance_id) key.
  - SessionHandle: the registry's reference to one session control object.
  - SessionRegistry: process id -> {identity: handle}, plus shared sessions.

Design decisions:
  - One threading.Lock serializes every operation. Session counts are small
    (single or double digits) and mutations are rare, so a single lock is enough.
  - No method calls into the audio capability. sessions_for() and clear()
    return list copies so mute/unregister calls happen after the lock is released.
  - Shared (cross-process / system sounds) sessions have process_id None. They
    are tracked so teardown can release them, but sessions_for() never returns them.
  - A duplicate try_register() is an expected race between startup enumeration
    and the session-created callback. The registry keeps the first handle; the
    caller releases the one it passed in.
"""
import enum
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable


@dataclass(frozen=True)
class SessionIdentity:
    """Identity of one audio session. Assigned at registration, never changes."""

    process_id: int | None
    session_id: str
    instance_id: str

    @property
    def is_shared(self) -> bool:
        return self.process_id is None


class SessionHandle:
    """
    Owns the registry's reference to a session control object.

    `listener_token` and `registered` are set by the tracker once the
    per-session notification is installed. release() drops the control
    reference and is safe to call more than once.
    """

    def __init__(self, identity: SessionIdentity, control: Any, display_name: str = "") -> None:
        self.identity = identity
        self.display_name = display_name
        self.registered = False
        self.listener_token: Any = None
        self._control = control
        self._released = False

    @property
    def process_id(self) -> int | None:
        return self.identity.process_id

    @property
    def control(self) -> Any:
        return self._control

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._control = None

    def __repr__(self) -> str:
        return (
            f"SessionHandle(pid={self.process_id}, name={self.display_name!r}, "
            f"instance={self.identity.instance_id!r}, released={self._released})"
        )


class RegisterResult(enum.Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"


class SessionRegistry:
    """
    Single source of truth for "what can be muted for process P".

    Invariant: an identity is in `_index` iff exactly one handle with that
    identity is stored, either under `_by_process[pid]` or in `_shared`.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._index: dict[SessionIdentity, SessionHandle] = {}
        self._by_process: dict[int, dict[SessionIdentity, SessionHandle]] = {}
        self._shared: dict[SessionIdentity, SessionHandle] = {}

    def try_register(self, identity: SessionIdentity, handle: SessionHandle) -> RegisterResult:
        """
        Insert `handle` unless `identity` is already present.

        On DUPLICATE nothing is stored and ownership stays with the caller,
        which must release `handle`.
        """
        with self._lock:
            if identity in self._index:
                logging.debug("Duplicate session registration ignored: %s", identity)
                return RegisterResult.DUPLICATE
            self._index[identity] = handle
            if identity.is_shared:
                self._shared[identity] = handle
            else:
                self._by_process.setdefault(identity.process_id, {})[identity] = handle
        return RegisterResult.INSERTED

    def sessions_for(self, process_id: int | None) -> list[SessionHandle]:
        """Snapshot of the handles owned by `process_id`. Empty for 0/None/unknown."""
        if not process_id:
            return []
        with self._lock:
            return list(self._by_process.get(process_id, {}).values())

    def remove(self, identity: SessionIdentity, release: bool = True) -> SessionHandle | None:
        """
        Erase `identity` from the index and the process mapping.

        Returns the removed handle, or None if `identity` was not present.
        With release=False the handle is returned unreleased and ownership
        passes to the caller, which still needs the control object to
        unregister the session's notification before releasing it.
        """
        with self._lock:
            handle = self._index.pop(identity, None)
            if handle is None:
                return None
            if identity.is_shared:
                self._shared.pop(identity, None)
            else:
                sessions = self._by_process.get(identity.process_id)
                if sessions is not None:
                    sessions.pop(identity, None)
                    if not sessions:
                        del self._by_process[identity.process_id]
        if release:
            handle.release()
        return handle

    def for_each(self, visitor: Callable[[SessionHandle], None]) -> None:
        """Call `visitor` on every handle, owned and shared, under the lock."""
        with self._lock:
            for handle in self._index.values():
                visitor(handle)

    def clear(self) -> list[SessionHandle]:
        """Empty the registry and hand every handle back to the caller for teardown."""
        with self._lock:
            handles = list(self._index.values())
            self._index.clear()
            self._by_process.clear()
            self._shared.clear()
        return handles

    def process_ids(self) -> list[int]:
        with self._lock:
            return list(self._by_process)

    def shared_count(self) -> int:
        with self._lock:
            return len(self._shared)

    def __len__(self) -> int:
        with self._lock:
            return len(self._index)

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._index
