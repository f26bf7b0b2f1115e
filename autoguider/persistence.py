"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Guiding History Store

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Write-only sink for calibration and tracking history.  The guiding loop
never reads it back.  ``MemoryStore`` keeps everything in memory and is
the default store.
"""

import abc
import itertools
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .calibration import CalibrationModel
from .guide_types import CalibrationPoint, TrackingPoint


class PersistenceStore(abc.ABC):
    @abc.abstractmethod
    def add_calibration(self, model: CalibrationModel) -> int:
        """Create a calibration record and return its id."""

    @abc.abstractmethod
    def add_calibration_point(self, calibration_id: int, point: CalibrationPoint) -> None:
        ...

    @abc.abstractmethod
    def complete_calibration(self, calibration_id: int, model: CalibrationModel) -> None:
        """Store the fitted model of a finished calibration run."""

    @abc.abstractmethod
    def add_tracking(self, info: dict) -> int:
        """Create a tracking history record and return its id."""

    @abc.abstractmethod
    def add_tracking_point(self, tracking_id: int, point: TrackingPoint) -> None:
        ...


@dataclass
class CalibrationRecord:
    id: int
    model: CalibrationModel
    complete: bool = False
    points: List[CalibrationPoint] = field(default_factory=list)


@dataclass
class TrackingRecord:
    id: int
    info: dict
    points: List[TrackingPoint] = field(default_factory=list)


class MemoryStore(PersistenceStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.calibrations: Dict[int, CalibrationRecord] = {}
        self.trackings: Dict[int, TrackingRecord] = {}

    def add_calibration(self, model: CalibrationModel) -> int:
        with self._lock:
            calibration_id = next(self._ids)
            self.calibrations[calibration_id] = CalibrationRecord(calibration_id, model)
            return calibration_id

    def add_calibration_point(self, calibration_id: int, point: CalibrationPoint) -> None:
        with self._lock:
            self.calibrations[calibration_id].points.append(point)

    def complete_calibration(self, calibration_id: int, model: CalibrationModel) -> None:
        with self._lock:
            record = self.calibrations[calibration_id]
            record.model = model
            record.complete = True

    def add_tracking(self, info: dict) -> int:
        with self._lock:
            tracking_id = next(self._ids)
            self.trackings[tracking_id] = TrackingRecord(tracking_id, dict(info))
            return tracking_id

    def add_tracking_point(self, tracking_id: int, point: TrackingPoint) -> None:
        with self._lock:
            self.trackings[tracking_id].points.append(point)

    def latest_calibration(self) -> Optional[CalibrationRecord]:
        """Most recent complete calibration, for tools outside the loop."""
        with self._lock:
            complete = [r for r in self.calibrations.values() if r.complete]
            return complete[-1] if complete else None
