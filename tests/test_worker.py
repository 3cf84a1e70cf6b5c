"""
Unit tests for focusmute/worker.py — the worker thread against FakeCapability.
"""
import threading
from unittest.mock import patch

import pytest

from focusmute.focus_queue import FocusEvent, FocusEventQueue
from focusmute.lifecycle import ExitCode, LifecycleController
from focusmute.worker import AudioWorker


@pytest.fixture(autouse=True)
def _no_psutil_lookups():
    with patch("focusmute.coordinator.process_name", side_effect=lambda pid: f"pid {pid}"):
        yield


def _make_worker(capability, registry, restore_on_exit=False):
    queue = FocusEventQueue()
    lifecycle = LifecycleController(rendezvous_timeout=5)
    worker = AudioWorker(capability, registry, queue, lifecycle, restore_on_exit=restore_on_exit)
    return worker, queue, lifecycle


def _start(worker, lifecycle):
    worker.start()
    assert lifecycle.wait_ready(5)
    assert lifecycle.rendezvous()


def _stop(worker, queue, lifecycle):
    lifecycle.begin_draining()
    queue.request_shutdown()
    assert worker.join(5)
    lifecycle.mark_stopped()


class TestAudioWorker:

    def test_applies_queued_transitions_in_order(self, capability, registry, session):
        p1, p2, p3 = session(1, "p1"), session(2, "p2"), session(3, "p3")
        capability.sessions = [p1, p2, p3]
        worker, queue, lifecycle = _make_worker(capability, registry)

        _start(worker, lifecycle)
        for e in [FocusEvent(0, 1), FocusEvent(1, 2), FocusEvent(2, 3)]:
            queue.enqueue(e)
        _stop(worker, queue, lifecycle)

        assert p1.control.muted and p2.control.muted
        assert not p3.control.muted
        assert worker.transitions_applied == 3
        assert lifecycle.exit_code is ExitCode.OK

    def test_capability_used_only_on_worker_thread(self, capability, registry, session):
        capability.sessions = [session(1, "a")]
        worker, queue, lifecycle = _make_worker(capability, registry)
        _start(worker, lifecycle)
        _stop(worker, queue, lifecycle)
        assert capability.owner is not None
        assert capability.owner != threading.get_ident()

    def test_shutdown_tears_down_tracking(self, capability, registry, session):
        capability.sessions = [session(1, "a"), session(None, "system")]
        worker, queue, lifecycle = _make_worker(capability, registry)
        _start(worker, lifecycle)
        _stop(worker, queue, lifecycle)

        assert len(registry) == 0
        assert sorted(capability.unregistered) == ["a", "system"]
        assert capability.created_callback is None
        assert capability.released

    def test_restore_on_exit_unmutes(self, capability, registry, session):
        a, b = session(1, "a"), session(2, "b")
        capability.sessions = [a, b]
        worker, queue, lifecycle = _make_worker(capability, registry, restore_on_exit=True)
        _start(worker, lifecycle)
        queue.enqueue(FocusEvent(1, 2))
        _stop(worker, queue, lifecycle)

        assert capability.mute_calls == [("a", True), ("b", False), ("a", False)]
        assert not a.control.muted

    def test_disconnected_sessions_reaped_between_batches(self, capability, registry, session):
        a = session(1, "a")
        capability.sessions = [a]
        worker, queue, lifecycle = _make_worker(capability, registry)
        _start(worker, lifecycle)

        capability.listener_for(a).on_disconnected("device removed")
        queue.enqueue(FocusEvent(1, 2))
        _stop(worker, queue, lifecycle)

        assert capability.unregistered == ["a"]
        assert capability.mute_calls == []

    def test_session_created_after_start_is_muted(self, capability, registry, session):
        worker, queue, lifecycle = _make_worker(capability, registry)
        _start(worker, lifecycle)
        late = session(7, "late")
        capability.announce(late)
        queue.enqueue(FocusEvent(7, 8))
        _stop(worker, queue, lifecycle)
        assert late.control.muted


class TestStartupFailure:

    def test_acquire_failure_records_tracker_init(self, capability, registry):
        capability.fail_acquire = True
        worker, queue, lifecycle = _make_worker(capability, registry)
        worker.start()
        assert lifecycle.wait_ready(5) is False
        assert worker.join(5)
        assert lifecycle.exit_code is ExitCode.TRACKER_INIT

    @pytest.mark.parametrize("switch", ["fail_register_created", "fail_enumerate"])
    def test_tracker_failure_releases_capability(self, capability, registry, switch):
        setattr(capability, switch, True)
        worker, queue, lifecycle = _make_worker(capability, registry)
        worker.start()
        assert lifecycle.wait_ready(5) is False
        assert worker.join(5)
        assert lifecycle.exit_code is ExitCode.TRACKER_INIT
        assert capability.released

    def test_aborted_handshake_ends_worker(self, capability, registry):
        worker, queue, lifecycle = _make_worker(capability, registry)
        lifecycle.abort_rendezvous()
        worker.start()
        assert worker.join(5)
        assert capability.released

    def test_transition_error_does_not_kill_worker(self, capability, registry, session):
        capability.sessions = [session(1, "a"), session(2, "b")]
        worker, queue, lifecycle = _make_worker(capability, registry)
        _start(worker, lifecycle)
        with patch.object(worker.coordinator, "apply_transition",
                          side_effect=[RuntimeError("boom"), None]):
            queue.enqueue(FocusEvent(1, 2))
            queue.enqueue(FocusEvent(2, 1))
            _stop(worker, queue, lifecycle)
        assert worker.transitions_applied == 1


class TestMutedBookkeeping:

    def test_disconnected_muted_session_is_forgotten(self, capability, registry, session):
        a, b = session(1, "a"), session(2, "b")
        capability.sessions = [a, b]
        worker, queue, lifecycle = _make_worker(capability, registry, restore_on_exit=True)
        _start(worker, lifecycle)

        queue.enqueue(FocusEvent(1, 2))
        for _ in range(100):
            if worker.transitions_applied == 1:
                break
            threading.Event().wait(0.01)
        assert worker.coordinator.muted_count == 1

        capability.listener_for(a).on_disconnected("session disconnected")
        queue.enqueue(FocusEvent(3, 4))
        _stop(worker, queue, lifecycle)

        assert worker.coordinator.muted_count == 0
        # Nothing left to restore for the vanished session.
        assert ("a", False) not in capability.mute_calls
