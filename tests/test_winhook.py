"""
Unit tests for the platform-independent parts of focusmute/winhook.py.
"""
from unittest.mock import MagicMock

import pytest

from focusmute.winhook import (
    _CTRL_EVENT_NAMES,
    CHILDID_SELF,
    ENDSESSION_LOGOFF,
    EVENT_SYSTEM_FOREGROUND,
    OBJID_WINDOW,
    WM_ENDSESSION,
    WM_QUERYENDSESSION,
    SessionEndHandler,
    is_foreground_event,
)


class TestIsForegroundEvent:

    def test_top_level_window(self):
        assert is_foreground_event(EVENT_SYSTEM_FOREGROUND, 0x1234, OBJID_WINDOW, CHILDID_SELF)

    @pytest.mark.parametrize("event,hwnd,id_object,id_child", [
        (EVENT_SYSTEM_FOREGROUND, None, OBJID_WINDOW, CHILDID_SELF),
        (EVENT_SYSTEM_FOREGROUND, 0, OBJID_WINDOW, CHILDID_SELF),
        (0x8005, 0x1234, OBJID_WINDOW, CHILDID_SELF),
        (EVENT_SYSTEM_FOREGROUND, 0x1234, -4, CHILDID_SELF),
        (EVENT_SYSTEM_FOREGROUND, 0x1234, OBJID_WINDOW, 3),
    ])
    def test_rejected(self, event, hwnd, id_object, id_child):
        assert not is_foreground_event(event, hwnd, id_object, id_child)


class TestSessionEndHandler:

    def test_query_is_allowed_without_draining(self):
        drain = MagicMock(return_value=True)
        handler = SessionEndHandler(drain)
        assert handler.handle(WM_QUERYENDSESSION, 0, ENDSESSION_LOGOFF) == 1
        drain.assert_not_called()

    @pytest.mark.parametrize("lparam", [0, ENDSESSION_LOGOFF])
    def test_end_session_drains_with_grace(self, lparam):
        drain = MagicMock(return_value=True)
        handler = SessionEndHandler(drain, grace=2.5)
        assert handler.handle(WM_ENDSESSION, 1, lparam) == 0
        drain.assert_called_once_with(2.5)
        assert handler.ended

    def test_cancelled_end_session_does_not_drain(self):
        drain = MagicMock()
        handler = SessionEndHandler(drain)
        assert handler.handle(WM_ENDSESSION, 0) == 0
        drain.assert_not_called()
        assert not handler.ended

    def test_drain_failure_is_contained(self):
        handler = SessionEndHandler(MagicMock(side_effect=RuntimeError("boom")))
        assert handler.handle(WM_ENDSESSION, 1) == 0

    def test_other_messages_fall_through(self):
        handler = SessionEndHandler(MagicMock())
        assert handler.handle(0x0010, 0) is None  # WM_CLOSE


class TestConsoleEvents:

    def test_logoff_and_shutdown_not_claimed(self):
        # CTRL_LOGOFF_EVENT / CTRL_SHUTDOWN_EVENT arrive as window messages instead.
        assert set(_CTRL_EVENT_NAMES) == {0, 1, 2}
