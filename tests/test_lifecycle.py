"""
Unit tests for focusmute/lifecycle.py.
"""
import threading

import pytest

from focusmute.lifecycle import ExitCode, LifecycleController, LifecycleError, LifecycleState


class TestStateMachine:

    def test_happy_path(self):
        lc = LifecycleController()
        lc.mark_ready()
        lc.mark_running()
        lc.begin_draining()
        lc.mark_stopped()
        assert lc.state is LifecycleState.STOPPED
        assert lc.wait_stopped(0)
        assert lc.exit_code is ExitCode.OK

    def test_running_requires_ready(self):
        lc = LifecycleController()
        with pytest.raises(LifecycleError):
            lc.mark_running()

    def test_ready_after_draining_is_illegal(self):
        lc = LifecycleController()
        lc.begin_draining()
        with pytest.raises(LifecycleError):
            lc.mark_ready()

    def test_begin_draining_is_idempotent(self):
        lc = LifecycleController()
        lc.begin_draining()
        lc.begin_draining()
        lc.mark_stopped()
        lc.begin_draining()
        assert lc.state is LifecycleState.STOPPED

    def test_mark_stopped_passes_through_draining(self):
        lc = LifecycleController()
        lc.mark_stopped()
        lc.mark_stopped()
        assert lc.state is LifecycleState.STOPPED

    def test_exit_codes_are_stable(self):
        assert [int(c) for c in ExitCode] == [0, 1, 2, 3, 4, 5]


class TestHandshake:

    def test_wait_ready_times_out(self):
        lc = LifecycleController()
        assert lc.wait_ready(0.01) is False

    def test_wait_ready_and_rendezvous(self):
        lc = LifecycleController(rendezvous_timeout=5)
        met = []

        def worker():
            lc.mark_ready()
            met.append(lc.rendezvous())

        t = threading.Thread(target=worker)
        t.start()
        assert lc.wait_ready(5) is True
        assert lc.rendezvous() is True
        t.join(5)
        assert met == [True]

    def test_failure_wakes_waiter_early(self):
        lc = LifecycleController()
        t = threading.Timer(0.05, lc.fail, args=(ExitCode.TRACKER_INIT,))
        t.start()
        assert lc.wait_ready(5) is False
        t.join()
        assert lc.exit_code is ExitCode.TRACKER_INIT

    def test_abort_releases_late_worker(self):
        lc = LifecycleController(rendezvous_timeout=5)
        lc.abort_rendezvous()
        lc.mark_ready()
        assert lc.rendezvous() is False

    def test_first_failure_code_wins(self):
        lc = LifecycleController()
        lc.fail(ExitCode.WAIT_TIMEOUT)
        lc.fail(ExitCode.TRACKER_INIT)
        assert lc.exit_code is ExitCode.WAIT_TIMEOUT

    def test_ready_then_failure_is_not_ready(self):
        lc = LifecycleController()
        lc.mark_ready()
        lc.fail(ExitCode.HOOK_INSTALL)
        assert lc.wait_ready(0) is False
