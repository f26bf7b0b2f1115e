"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Worker Thread Harness

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Runs a procedure on a dedicated daemon thread with cooperative
cancellation.  The cancellation flag is a ``threading.Event`` that is
clear by default; :meth:`ProcessThread.stop` sets it.
"""

import abc
import logging
import threading
import time
from typing import Callable, Optional

from .exceptions import AlreadyRunning, Cancelled

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------
class Clock(abc.ABC):
    """Time source used by procedures, actuators and devices."""

    @abc.abstractmethod
    def now(self) -> float:
        """Monotonic time in seconds."""

    @abc.abstractmethod
    def sleep(self, seconds: float) -> None:
        """Block for *seconds*; never interrupted."""

    @abc.abstractmethod
    def wait(self, event: threading.Event, seconds: float) -> bool:
        """Block for *seconds* or until *event* is set; True if it was set."""


class SystemClock(Clock):
    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)

    def wait(self, event: threading.Event, seconds: float) -> bool:
        if seconds <= 0:
            return event.is_set()
        return event.wait(seconds)


# ---------------------------------------------------------------------------
# Worker thread
# ---------------------------------------------------------------------------
class ProcessThread:
    """Run ``target(thread)`` on a daemon thread.

    The target polls :attr:`terminate` (or calls :meth:`check_cancelled`)
    at the top of each loop iteration.
    """

    def __init__(self, target: Callable[["ProcessThread"], None], name: str = "guider-worker"):
        self._target = target
        self._name = name
        self._terminate = threading.Event()
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.error: Optional[BaseException] = None

    @property
    def terminate(self) -> bool:
        """True once a stop was requested."""
        return self._terminate.is_set()

    @property
    def stop_event(self) -> threading.Event:
        return self._terminate

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._done.is_set()

    def start(self) -> None:
        if self._thread is not None:
            raise AlreadyRunning(f"{self._name} already started")
        self._thread = threading.Thread(target=self._main, name=self._name, daemon=True)
        self._thread.start()

    def _main(self) -> None:
        logger.debug("%s started", self._name)
        try:
            self._target(self)
        except Cancelled:
            logger.info("%s cancelled", self._name)
        except Exception as exc:
            self.error = exc
            logger.critical("%s crashed: %s", self._name, exc, exc_info=True)
        finally:
            self._done.set()
            logger.debug("%s terminated", self._name)

    def stop(self) -> None:
        """Request cancellation; the target exits at its next check."""
        self._terminate.set()

    def check_cancelled(self) -> None:
        if self._terminate.is_set():
            raise Cancelled(f"{self._name} cancelled")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for the target to return; False on timeout."""
        if self._thread is None:
            return True
        if not self._done.wait(timeout):
            return False
        if self._thread is not threading.current_thread():
            self._thread.join()
        return True
