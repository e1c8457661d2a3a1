from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from enum import StrEnum
import logging
import os
import signal
import sys
import threading
from typing import Any, TextIO

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler


logger = logging.getLogger(__name__)

NEXT_CHECK_JOB_ID = "next_check"
MANUAL_TRIGGER_KEYS = ("r", "R")


class WakeReason(StrEnum):
    TIMER = "timer"
    MANUAL = "manual"
    SHUTDOWN = "shutdown"


class MonitorState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    SLEEPING = "sleeping"
    STOPPED = "stopped"


class WakeSignal:
    """One-shot wake-up carrying the reason of whoever fired first."""

    def __init__(self) -> None:
        self._event = threading.Event()
        # Reentrant: the signal handler fires on the main thread, possibly while it holds the lock.
        self._lock = threading.RLock()
        self._reason: WakeReason | None = None

    def fire(self, reason: WakeReason) -> None:
        with self._lock:
            if not self._event.is_set():
                self._reason = reason
                self._event.set()

    def clear(self) -> None:
        with self._lock:
            self._reason = None
            self._event.clear()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> WakeReason | None:
        self._event.wait(timeout)
        return self._reason


class MonitorLoop:
    def __init__(
        self,
        cycle: Callable[[], object],
        *,
        interval_seconds: float,
        shutdown: threading.Event,
        wake: WakeSignal | None = None,
        scheduler: BackgroundScheduler | None = None,
        on_sleep: Callable[[datetime], None] | None = None,
    ) -> None:
        self.cycle = cycle
        self.interval_seconds = interval_seconds
        self.shutdown = shutdown
        self.wake = wake or WakeSignal()
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self.on_sleep = on_sleep
        self.state = MonitorState.IDLE
        self.cycles = 0

    def run(self) -> int:
        self.scheduler.start()
        logger.info("monitor started", extra={"check_again_after_seconds": self.interval_seconds})
        try:
            while not self.shutdown.is_set():
                self.state = MonitorState.RUNNING
                self.cycle()
                self.cycles += 1
                if self.shutdown.is_set():
                    break
                reason = self.sleep_until_next_check()
                logger.info("monitor woke", extra={"reason": reason.value if reason else None, "cycles": self.cycles})
        finally:
            self.state = MonitorState.STOPPED
            self.scheduler.shutdown(wait=False)
            logger.info("monitor stopped", extra={"cycles": self.cycles})
        return self.cycles

    def sleep_until_next_check(self) -> WakeReason | None:
        deadline = datetime.now(UTC) + timedelta(seconds=self.interval_seconds)
        self.wake.clear()
        if self.shutdown.is_set():
            return WakeReason.SHUTDOWN

        self.scheduler.add_job(
            self.wake.fire,
            "date",
            run_date=deadline,
            args=[WakeReason.TIMER],
            id=NEXT_CHECK_JOB_ID,
            replace_existing=True,
            misfire_grace_time=None,
        )
        self.state = MonitorState.SLEEPING
        if self.on_sleep:
            self.on_sleep(deadline)

        reason = self.wake.wait()
        try:
            self.scheduler.remove_job(NEXT_CHECK_JOB_ID)
        except JobLookupError:
            # Timer already fired.
            pass
        return reason


class KeypressListener:
    """Fires a manual wake-up when ``r`` is typed on an interactive stdin."""

    def __init__(self, wake: WakeSignal, stream: TextIO | None = None) -> None:
        self.wake = wake
        self.stream = stream or sys.stdin
        self._saved_mode: list[Any] | None = None
        self._thread: threading.Thread | None = None

    def __enter__(self) -> "KeypressListener":
        if not self.stream.isatty():
            logger.info("stdin is not a terminal, manual trigger disabled")
            return self
        if os.name == "posix":
            import termios
            import tty

            fd = self.stream.fileno()
            self._saved_mode = termios.tcgetattr(fd)
            tty.setcbreak(fd)
        self._thread = threading.Thread(target=self.listen, name="keypress-listener", daemon=True)
        self._thread.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self._saved_mode is not None:
            import termios

            termios.tcsetattr(self.stream.fileno(), termios.TCSADRAIN, self._saved_mode)
            self._saved_mode = None

    def listen(self) -> None:
        while True:
            char = self.stream.read(1)
            if not char:
                return
            if char in MANUAL_TRIGGER_KEYS:
                logger.info("manual check triggered by key press")
                self.wake.fire(WakeReason.MANUAL)


@contextmanager
def shutdown_handlers(shutdown: threading.Event, wake: WakeSignal | None = None) -> Iterator[threading.Event]:
    """Install SIGINT/SIGTERM handlers that set ``shutdown`` and wake the monitor.

    The first signal requests a graceful stop; the default SIGINT handler is
    restored so a second Ctrl-C force-kills. Outside the main thread no
    handlers are installed and the event is only set programmatically.
    """
    if threading.current_thread() is not threading.main_thread():
        yield shutdown
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, frame: Any) -> None:
        logger.warning("shutdown requested", extra={"signal": signum})
        shutdown.set()
        if wake is not None:
            wake.fire(WakeReason.SHUTDOWN)
        signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
    try:
        yield shutdown
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
