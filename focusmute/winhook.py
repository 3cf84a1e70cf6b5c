"""
winhook.py — Foreground-window hook, message loop and shutdown notifications.

ForegroundHook wraps SetWinEventHook(EVENT_SYSTEM_FOREGROUND) with
WINEVENT_OUTOFCONTEXT | WINEVENT_SKIPOWNPROCESS. Out-of-context events are
delivered through the installing thread's message queue, so install(),
run_message_loop() and uninstall() must all run on the same thread (the main
thread in service.py).

The WinEvent callback hands `on_window` a resolver for the window's process id
and does nothing else, so the detector's re-entrancy guard covers the lookup.

Logoff and shutdown reach a GUI-subsystem process (pythonw.exe) only as
WM_QUERYENDSESSION / WM_ENDSESSION sent to its top-level windows. When given
`on_end_session`, the hook creates a hidden top-level window on the same thread
and routes those messages through SessionEndHandler. Message-only windows do
not receive them. ConsoleCtrlHandler covers Ctrl+C, Ctrl+Break and console
close when a console is attached.

CRITICAL: the ctypes callback objects are kept on the instance. If they are
garbage collected while the hook or window exists, the next event crashes the
process.
"""
import ctypes
import logging
import platform
from typing import Callable

if platform.system() == "Windows":
    from ctypes import wintypes

    _user32 = ctypes.WinDLL("user32", use_last_error=True)
    _kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)

    LRESULT = wintypes.LPARAM
    WINEVENTPROC = ctypes.WINFUNCTYPE(
        None,
        wintypes.HANDLE,  # hWinEventHook
        wintypes.DWORD,   # event
        wintypes.HWND,    # hwnd
        wintypes.LONG,    # idObject
        wintypes.LONG,    # idChild
        wintypes.DWORD,   # dwEventThread
        wintypes.DWORD,   # dwmsEventTime
    )
    WNDPROC = ctypes.WINFUNCTYPE(LRESULT, wintypes.HWND, wintypes.UINT, wintypes.WPARAM, wintypes.LPARAM)
    HANDLER_ROUTINE = ctypes.WINFUNCTYPE(wintypes.BOOL, wintypes.DWORD)

    class WNDCLASSW(ctypes.Structure):
        _fields_ = [
            ("style", wintypes.UINT),
            ("lpfnWndProc", WNDPROC),
            ("cbClsExtra", ctypes.c_int),
            ("cbWndExtra", ctypes.c_int),
            ("hInstance", wintypes.HINSTANCE),
            ("hIcon", wintypes.HICON),
            ("hCursor", wintypes.HANDLE),
            ("hbrBackground", wintypes.HBRUSH),
            ("lpszMenuName", wintypes.LPCWSTR),
            ("lpszClassName", wintypes.LPCWSTR),
        ]

    _user32.SetWinEventHook.restype = wintypes.HANDLE
    _user32.SetWinEventHook.argtypes = [
        wintypes.DWORD, wintypes.DWORD, wintypes.HMODULE, WINEVENTPROC,
        wintypes.DWORD, wintypes.DWORD, wintypes.DWORD,
    ]
    _user32.UnhookWinEvent.restype = wintypes.BOOL
    _user32.UnhookWinEvent.argtypes = [wintypes.HANDLE]
    _user32.GetWindowThreadProcessId.restype = wintypes.DWORD
    _user32.GetWindowThreadProcessId.argtypes = [wintypes.HWND, ctypes.POINTER(wintypes.DWORD)]
    _user32.GetMessageW.restype = wintypes.BOOL
    _user32.GetMessageW.argtypes = [ctypes.POINTER(wintypes.MSG), wintypes.HWND, wintypes.UINT, wintypes.UINT]
    _user32.TranslateMessage.argtypes = [ctypes.POINTER(wintypes.MSG)]
    _user32.DispatchMessageW.argtypes = [ctypes.POINTER(wintypes.MSG)]
    _user32.PostThreadMessageW.restype = wintypes.BOOL
    _user32.PostThreadMessageW.argtypes = [wintypes.DWORD, wintypes.UINT, wintypes.WPARAM, wintypes.LPARAM]
    _user32.RegisterClassW.restype = wintypes.ATOM
    _user32.RegisterClassW.argtypes = [ctypes.POINTER(WNDCLASSW)]
    _user32.UnregisterClassW.restype = wintypes.BOOL
    _user32.UnregisterClassW.argtypes = [wintypes.LPCWSTR, wintypes.HINSTANCE]
    _user32.CreateWindowExW.restype = wintypes.HWND
    _user32.CreateWindowExW.argtypes = [
        wintypes.DWORD, wintypes.LPCWSTR, wintypes.LPCWSTR, wintypes.DWORD,
        ctypes.c_int, ctypes.c_int, ctypes.c_int, ctypes.c_int,
        wintypes.HWND, wintypes.HMENU, wintypes.HINSTANCE, wintypes.LPVOID,
    ]
    _user32.DestroyWindow.restype = wintypes.BOOL
    _user32.DestroyWindow.argtypes = [wintypes.HWND]
    _user32.DefWindowProcW.restype = LRESULT
    _user32.DefWindowProcW.argtypes = [wintypes.HWND, wintypes.UINT, wintypes.WPARAM, wintypes.LPARAM]
    _kernel32.GetCurrentThreadId.restype = wintypes.DWORD
    _kernel32.GetModuleHandleW.restype = wintypes.HMODULE
    _kernel32.GetModuleHandleW.argtypes = [wintypes.LPCWSTR]
    _kernel32.SetConsoleCtrlHandler.restype = wintypes.BOOL
    _kernel32.SetConsoleCtrlHandler.argtypes = [HANDLER_ROUTINE, wintypes.BOOL]

EVENT_SYSTEM_FOREGROUND = 0x0003
WINEVENT_OUTOFCONTEXT = 0x0000
WINEVENT_SKIPOWNPROCESS = 0x0002
OBJID_WINDOW = 0
CHILDID_SELF = 0
WM_QUERYENDSESSION = 0x0011
WM_QUIT = 0x0012
WM_ENDSESSION = 0x0016
ENDSESSION_LOGOFF = 0x80000000
ERROR_CLASS_ALREADY_EXISTS = 1410

SESSION_END_WINDOW_CLASS = "FocusMuteSessionEnd"

_CTRL_EVENT_NAMES = {
    0: "CTRL_C_EVENT",
    1: "CTRL_BREAK_EVENT",
    2: "CTRL_CLOSE_EVENT",
}


class HookInstallError(Exception):
    pass


def is_foreground_event(event: int, hwnd, id_object: int, id_child: int) -> bool:
    """True for a top-level window gaining the foreground."""
    return (
        bool(hwnd)
        and event == EVENT_SYSTEM_FOREGROUND
        and id_object == OBJID_WINDOW
        and id_child == CHILDID_SELF
    )


class SessionEndHandler:
    """
    Window-procedure logic for logoff and shutdown.

    WM_QUERYENDSESSION is always allowed. WM_ENDSESSION with wParam TRUE means
    the session really ends and Windows may terminate the process as soon as
    the message returns, so `on_end_session(grace)` must drain synchronously.

    handle() returns the LRESULT to send back, or None for DefWindowProc.
    """

    def __init__(self, on_end_session: Callable[[float], object], grace: float = 5.0) -> None:
        self._on_end_session = on_end_session
        self._grace = grace
        self.ended = False

    def handle(self, msg: int, wparam: int, lparam: int = 0) -> int | None:
        if msg == WM_QUERYENDSESSION:
            logging.info("Session end queried - allowing.")
            return 1
        if msg == WM_ENDSESSION:
            if not wparam:
                logging.info("Session end cancelled.")
                return 0
            kind = "logoff" if lparam & ENDSESSION_LOGOFF else "shutdown"
            logging.info("Session ending (%s) - draining.", kind)
            self.ended = True
            try:
                if not self._on_end_session(self._grace):
                    logging.warning("Drain did not finish within %.1fs.", self._grace)
            except Exception:
                logging.exception("Session-end drain failed.")
            return 0
        return None


class ForegroundHook:
    """
    Foreground-change source for the current thread.

    Args:
        on_window: Called with a zero-argument resolver for the process id that
            now owns the foreground window. Runs on the message-loop thread.
        on_end_session: Optional drain callback for logoff/shutdown; see
            SessionEndHandler.
    """

    def __init__(self, on_window: Callable[[Callable[[], int]], object],
                 on_end_session: Callable[[float], object] | None = None) -> None:
        self._on_window = on_window
        self._session_end = SessionEndHandler(on_end_session) if on_end_session is not None else None
        self._hook = None
        self._hwnd = None
        self._hinstance = None
        self._thread_id: int | None = None
        self._proc = WINEVENTPROC(self._callback)
        self._wndproc = WNDPROC(self._window_proc)

    @staticmethod
    def _window_pid(hwnd) -> int:
        pid = wintypes.DWORD(0)
        _user32.GetWindowThreadProcessId(hwnd, ctypes.byref(pid))
        return pid.value

    def _callback(self, hWinEventHook, event, hwnd, idObject, idChild, dwEventThread, dwmsEventTime):
        if not is_foreground_event(event, hwnd, idObject, idChild):
            return
        try:
            self._on_window(lambda: self._window_pid(hwnd))
        except Exception:
            logging.exception("Foreground callback failed.")

    def _window_proc(self, hwnd, msg, wparam, lparam):
        if self._session_end is not None:
            try:
                result = self._session_end.handle(msg, wparam, lparam)
            except Exception:
                logging.exception("Session-end window procedure failed.")
                result = None
            if result is not None:
                return result
        return _user32.DefWindowProcW(hwnd, msg, wparam, lparam)

    def install(self) -> None:
        """Install the hook on the calling thread. Raises HookInstallError."""
        self._thread_id = _kernel32.GetCurrentThreadId()
        self._hook = _user32.SetWinEventHook(
            EVENT_SYSTEM_FOREGROUND, EVENT_SYSTEM_FOREGROUND,
            None, self._proc, 0, 0,
            WINEVENT_OUTOFCONTEXT | WINEVENT_SKIPOWNPROCESS,
        )
        if not self._hook:
            raise HookInstallError(f"SetWinEventHook failed (error {ctypes.get_last_error()})")
        logging.info("Foreground hook installed on thread %d.", self._thread_id)
        if self._session_end is not None:
            self._create_session_window()

    def _create_session_window(self) -> None:
        # Not fatal: focus muting still works, only the logoff drain is lost.
        self._hinstance = _kernel32.GetModuleHandleW(None)
        wc = WNDCLASSW()
        wc.lpfnWndProc = self._wndproc
        wc.hInstance = self._hinstance
        wc.lpszClassName = SESSION_END_WINDOW_CLASS
        if not _user32.RegisterClassW(ctypes.byref(wc)):
            error = ctypes.get_last_error()
            if error != ERROR_CLASS_ALREADY_EXISTS:
                logging.warning("RegisterClassW failed (error %d); no logoff drain.", error)
                return
        # Top-level and never shown: WS_OVERLAPPED (0) without WS_VISIBLE.
        self._hwnd = _user32.CreateWindowExW(
            0, SESSION_END_WINDOW_CLASS, "FocusMute", 0,
            0, 0, 0, 0, None, None, self._hinstance, None,
        )
        if not self._hwnd:
            logging.warning("CreateWindowExW failed (error %d); no logoff drain.", ctypes.get_last_error())
            return
        logging.info("Session-end window created.")

    def uninstall(self) -> None:
        if self._hwnd:
            _user32.DestroyWindow(self._hwnd)
            _user32.UnregisterClassW(SESSION_END_WINDOW_CLASS, self._hinstance)
            self._hwnd = None
        if self._hook:
            _user32.UnhookWinEvent(self._hook)
            self._hook = None
            logging.info("Foreground hook removed.")

    def run_message_loop(self) -> int:
        """
        Pump messages until WM_QUIT. Returns the WM_QUIT exit code.

        GetMessage returns -1 on error; that ends the loop as well.
        """
        msg = wintypes.MSG()
        while True:
            result = _user32.GetMessageW(ctypes.byref(msg), None, 0, 0)
            if result == 0:
                return int(msg.wParam)
            if result == -1:
                logging.error("GetMessage failed (error %d).", ctypes.get_last_error())
                return -1
            _user32.TranslateMessage(ctypes.byref(msg))
            _user32.DispatchMessageW(ctypes.byref(msg))

    def post_quit(self, exit_code: int = 0) -> bool:
        """Ask the message loop to end. Safe from any thread."""
        if self._thread_id is None:
            return False
        return bool(_user32.PostThreadMessageW(self._thread_id, WM_QUIT, exit_code, 0))


class ConsoleCtrlHandler:
    """
    Turns Ctrl+C / Ctrl+Break / console close into `on_stop()`. Windows runs
    the handler on a thread of its own, so it can wait for the service to
    finish draining before returning.
    """

    def __init__(self, on_stop: Callable[[], None],
                 wait_stopped: Callable[[float], bool] | None = None,
                 grace: float = 5.0) -> None:
        self._on_stop = on_stop
        self._wait_stopped = wait_stopped
        self._grace = grace
        self._routine = HANDLER_ROUTINE(self._handle)

    def _handle(self, ctrl_type):
        if ctrl_type not in _CTRL_EVENT_NAMES:
            # Logoff/shutdown arrive as window messages for this process.
            return False
        logging.info("Console control event %s - shutting down.", _CTRL_EVENT_NAMES[ctrl_type])
        try:
            self._on_stop()
        except Exception:
            logging.exception("Stop request failed.")
        if self._wait_stopped is not None:
            self._wait_stopped(self._grace)
        return True

    def install(self) -> None:
        if not _kernel32.SetConsoleCtrlHandler(self._routine, True):
            logging.warning("SetConsoleCtrlHandler failed (error %d).", ctypes.get_last_error())

    def uninstall(self) -> None:
        _kernel32.SetConsoleCtrlHandler(self._routine, False)
