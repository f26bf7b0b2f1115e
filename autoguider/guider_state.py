"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Guider State Machine

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Pure transition logic; the Guider serialises access with its lock.
"""

import logging
from typing import Optional

from .exceptions import AlreadyRunning, BadState
from .guide_types import ProcessState

logger = logging.getLogger(__name__)

IDLE = ProcessState.IDLE
CALIBRATING = ProcessState.CALIBRATING
CALIBRATED = ProcessState.CALIBRATED
GUIDING = ProcessState.GUIDING
BACKLASH_TESTING = ProcessState.BACKLASH_TESTING
FAILED = ProcessState.FAILED

# states each activity may be started from
START_EDGES = {
    CALIBRATING: (IDLE, CALIBRATED),
    BACKLASH_TESTING: (IDLE, CALIBRATED),
    GUIDING: (IDLE, CALIBRATED),
}


class GuiderStateMachine:
    def __init__(self) -> None:
        self._state = IDLE
        self._return_state: Optional[ProcessState] = None

    @property
    def state(self) -> ProcessState:
        return self._state

    def _set(self, state: ProcessState) -> ProcessState:
        old = self._state
        self._state = state
        if old != state:
            logger.info("Guider state %s -> %s", old.value, state.value)
        return old

    def can_start(self, activity: ProcessState, calibrated: bool) -> bool:
        if self._state not in START_EDGES.get(activity, ()):
            return False
        if activity == GUIDING:
            return calibrated
        return True

    def start(self, activity: ProcessState, calibrated: bool) -> None:
        """Enter *activity*.

        Raises:
            AlreadyRunning: while another activity is active.
            BadState:       if *activity* cannot start from this state.
        """
        if self._state.active:
            raise AlreadyRunning(f"cannot start {activity.value} while {self._state.value}")
        if not self.can_start(activity, calibrated):
            raise BadState(f"cannot start {activity.value} in state {self._state.value}")
        self._return_state = self._state
        self._set(activity)

    def finish(self, completed: bool, calibrated: bool) -> None:
        """Leave the active state after a normal end or a cancellation."""
        state = self._state
        if state == CALIBRATING:
            if completed or calibrated:
                self._set(CALIBRATED)
            else:
                self._set(IDLE)
        elif state == GUIDING:
            self._set(IDLE)
        elif state == BACKLASH_TESTING:
            self._set(self._return_state or IDLE)
        self._return_state = None

    def fail(self) -> None:
        self._set(FAILED)
        self._return_state = None

    def reset(self) -> None:
        if self._state.active:
            raise BadState(f"cannot reset while {self._state.value}")
        if self._state == FAILED:
            self._set(IDLE)

    def calibration_installed(self) -> None:
        if self._state.active or self._state == FAILED:
            raise BadState(f"cannot accept calibration while {self._state.value}")
        self._set(CALIBRATED)

    def calibration_removed(self) -> None:
        if self._state.active:
            raise BadState(f"cannot uncalibrate while {self._state.value}")
        if self._state == CALIBRATED:
            self._set(IDLE)
