"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Guider Events

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Event records emitted by the guiding procedures and a dispatcher that
delivers them to registered observers.  Delivery is best-effort: an
observer that raises is logged and skipped.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from .calibration import CalibrationModel
from .guide_types import (
    BacklashPoint,
    BacklashResult,
    CalibrationPoint,
    ProcessState,
    ProgressInfo,
    TrackingPoint,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalibrationPointObserved:
    calibration_id: int
    point: CalibrationPoint


@dataclass(frozen=True)
class CalibrationProgress:
    info: ProgressInfo


@dataclass(frozen=True)
class CalibrationCompleted:
    calibration_id: int
    model: CalibrationModel


@dataclass(frozen=True)
class BacklashPointObserved:
    point: BacklashPoint


@dataclass(frozen=True)
class BacklashResultUpdated:
    result: BacklashResult


@dataclass(frozen=True)
class TrackingPointObserved:
    tracking_id: int
    point: TrackingPoint


@dataclass(frozen=True)
class StateChanged:
    old: ProcessState
    new: ProcessState
    error: Optional[BaseException] = None


Observer = Callable[[object], None]


class EventDispatcher:
    """Thread-safe list of observers receiving every event."""

    def __init__(self) -> None:
        self._observers: List[Observer] = []
        self._lock = threading.Lock()

    def add(self, observer: Observer) -> None:
        with self._lock:
            if observer not in self._observers:
                self._observers.append(observer)

    def remove(self, observer: Observer) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def __len__(self) -> int:
        with self._lock:
            return len(self._observers)

    def emit(self, event: object) -> None:
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(event)
            except Exception:
                logger.exception(
                    "Observer %r failed on %s", observer, type(event).__name__
                )
