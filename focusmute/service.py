"""
FocusMute background service — mutes every application except the foreground one.

Launch via: pythonw.exe -m focusmute.service   (or the `focusmute` console script)

Threads:
  main          installs the foreground hook and runs the Win32 message loop
                (the hook callback only enqueues FocusEvents)
  audio-worker  owns Core Audio: session tracking and every mute/unmute call

Exit codes (ExitCode): 0 ok, 1 fatal, 2 session tracking failed to start,
3 tracking not ready within startup_timeout, 4 hook install failed,
5 re-entrant hook callback limit exceeded.
"""
import atexit
import logging
import os
import platform
import sys
import threading
from typing import Callable

import psutil

from focusmute.capability import AudioCapability
from focusmute.config_loader import Settings, _config_dir, load_settings
from focusmute.focus import FocusDetector
from focusmute.focus_queue import FocusEventQueue
from focusmute.lifecycle import ExitCode, LifecycleController
from focusmute.registry import SessionRegistry
from focusmute.worker import AudioWorker

# ---------------------------------------------------------------------------
# APPDATA paths
# ---------------------------------------------------------------------------
APPDATA_DIR = _config_dir()
LOG_FILE    = APPDATA_DIR / "focusmute.log"
PID_FILE    = APPDATA_DIR / "service.pid"

# ---------------------------------------------------------------------------
# Logging: must be initialised before any other code runs in main()
# ---------------------------------------------------------------------------

def setup_logging() -> None:
    """Log to %APPDATA%\\FocusMute\\focusmute.log only; pythonw.exe has no console."""
    APPDATA_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s [%(levelname)s] %(threadName)s: %(message)s",
        handlers=[
            logging.FileHandler(LOG_FILE, encoding="utf-8"),
        ],
    )

    def _log_uncaught(exc_type, exc_value, exc_tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        logging.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))

    sys.excepthook = _log_uncaught

    def _thread_excepthook(args):
        if args.exc_type is SystemExit:
            return
        logging.critical(
            "Unhandled exception in thread '%s'",
            args.thread.name if args.thread else "unknown",
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )
    threading.excepthook = _thread_excepthook


# ---------------------------------------------------------------------------
# PID lock: prevents duplicate instances
# ---------------------------------------------------------------------------

def acquire_pid_lock() -> None:
    """
    One FocusMute per user session: two instances would fight over every mute.

    A live python/focusmute process named in service.pid makes this one exit 0.
    A dead, reused or unreadable pid is treated as stale and overwritten.
    The file is removed again at exit.
    """
    if PID_FILE.exists():
        try:
            pid = int(PID_FILE.read_text(encoding="utf-8").strip())
            if pid != os.getpid() and psutil.pid_exists(pid):
                try:
                    proc = psutil.Process(pid)
                    if "python" in proc.name().lower() or "focusmute" in proc.name().lower():
                        logging.warning("FocusMute already running (PID %d). Exiting.", pid)
                        sys.exit(0)
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    pass  # PID reuse or access denied: treat as stale
        except (ValueError, OSError):
            pass  # Corrupt PID file: overwrite it

        logging.info("Stale PID file %s - replacing.", PID_FILE)
        PID_FILE.unlink(missing_ok=True)

    PID_FILE.parent.mkdir(parents=True, exist_ok=True)
    PID_FILE.write_text(str(os.getpid()), encoding="utf-8")
    logging.info("PID lock acquired: %s (PID %d)", PID_FILE, os.getpid())
    atexit.register(_release_pid_lock)


def _release_pid_lock() -> None:
    PID_FILE.unlink(missing_ok=True)
    logging.debug("PID file %s removed.", PID_FILE)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

def _abort_reentrancy(depth: int) -> None:
    logging.critical("Foreground hook re-entered %d deep - terminating.", depth)
    logging.shutdown()
    # os._exit: sys.exit() inside a ctypes callback would only be printed and ignored.
    os._exit(int(ExitCode.REENTRANCY))


class FocusMuteService:
    """
    Wires registry, queue, worker, detector and hook together and runs them.

    Args:
        settings: Validated Settings.
        capability: The AudioCapability the worker acquires (WasapiCapability
            on Windows).
        hook_factory: Builds the foreground source from the detector's
            on_window callback and the end_session drain. The returned object
            needs install(), uninstall(), run_message_loop() and post_quit().
    """

    def __init__(
        self,
        settings: Settings,
        capability: AudioCapability,
        hook_factory: Callable[..., object],
        on_reentrancy_exceeded: Callable[[int], None] = _abort_reentrancy,
    ) -> None:
        self.settings = settings
        self.registry = SessionRegistry()
        self.queue = FocusEventQueue()
        self.lifecycle = LifecycleController(rendezvous_timeout=settings.startup_timeout)
        self.worker = AudioWorker(
            capability, self.registry, self.queue, self.lifecycle,
            restore_on_exit=settings.restore_on_exit,
        )
        self.detector = FocusDetector(
            self.queue,
            reentrancy_limit=settings.reentrancy_limit,
            on_reentrancy_exceeded=on_reentrancy_exceeded,
        )
        self._hook_factory = hook_factory
        self._hook = None
        self._stop_requested = threading.Event()

    def run(self) -> ExitCode:
        """Run until the message loop ends. Returns the process exit code."""
        self.worker.start()

        if not self.lifecycle.wait_ready(self.settings.startup_timeout):
            if self.lifecycle.exit_code is ExitCode.OK:
                logging.error(
                    "Session tracking not ready after %.1fs.", self.settings.startup_timeout
                )
                self.lifecycle.fail(ExitCode.WAIT_TIMEOUT)
            return self._shutdown()

        if not self.lifecycle.rendezvous():
            logging.error("Audio worker abandoned the startup handshake.")
            self.lifecycle.fail(ExitCode.FATAL)
            return self._shutdown()

        if self._stop_requested.is_set():
            return self._shutdown()

        try:
            hook = self._hook_factory(self.detector.on_window, self.end_session)
            hook.install()
        except Exception:
            logging.exception("Could not install the foreground hook.")
            self.lifecycle.fail(ExitCode.HOOK_INSTALL)
            return self._shutdown()

        self._hook = hook
        self.lifecycle.mark_running()
        try:
            if not self._stop_requested.is_set():
                hook.run_message_loop()
        finally:
            self._hook = None
            hook.uninstall()
        return self._shutdown()

    def stop(self) -> None:
        """Request shutdown. Safe from any thread."""
        self._stop_requested.set()
        hook = self._hook
        if hook is not None:
            hook.post_quit(0)

    def end_session(self, grace: float) -> bool:
        """
        Drain now, on the calling thread. Used when Windows ends the session:
        the process may be terminated as soon as the caller returns, before
        run() gets back from the message loop. Returns True if the worker
        finished within `grace` seconds.
        """
        self.stop()
        self.lifecycle.begin_draining()
        self.queue.request_shutdown()
        return self.worker.join(grace)

    def _shutdown(self) -> ExitCode:
        self.lifecycle.begin_draining()
        self.queue.request_shutdown()
        if not self.worker.join(self.settings.join_timeout):
            logging.error("Audio worker did not stop within %ss.", self.settings.join_timeout)
        self.lifecycle.mark_stopped()
        return self.lifecycle.exit_code


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def main() -> None:
    setup_logging()  # MUST be first
    logging.info("=== FocusMute service starting ===")
    if platform.system() != "Windows":
        logging.critical("FocusMute requires Windows (Core Audio + WinEvent hooks).")
        sys.exit(int(ExitCode.FATAL))
    try:
        acquire_pid_lock()

        settings = load_settings()
        logging.getLogger().setLevel(settings.log_level)
        logging.info("Settings: %s", settings.model_dump())

        from focusmute.wasapi import WasapiCapability
        from focusmute.winhook import ConsoleCtrlHandler, ForegroundHook

        service = FocusMuteService(settings, WasapiCapability(), ForegroundHook)
        ctrl_handler = ConsoleCtrlHandler(service.stop, service.lifecycle.wait_stopped)
        ctrl_handler.install()
        code = service.run()
        ctrl_handler.uninstall()
    except Exception:
        logging.exception("Fatal error during startup")
        sys.exit(int(ExitCode.FATAL))

    logging.info("=== FocusMute service stopped (exit code %d) ===", int(code))
    sys.exit(int(code))


if __name__ == "__main__":
    main()
