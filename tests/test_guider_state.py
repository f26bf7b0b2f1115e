"""Tests for the guider state machine transitions."""

import sys
from pathlib import Path

import pytest

# Ensure the package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from autoguider.exceptions import AlreadyRunning, BadState
from autoguider.guide_types import ProcessState
from autoguider.guider_state import GuiderStateMachine

IDLE = ProcessState.IDLE
CALIBRATING = ProcessState.CALIBRATING
CALIBRATED = ProcessState.CALIBRATED
GUIDING = ProcessState.GUIDING
BACKLASH = ProcessState.BACKLASH_TESTING
FAILED = ProcessState.FAILED


class TestGuiderStateMachine:
    def test_normal_cycle(self):
        m = GuiderStateMachine()
        m.start(CALIBRATING, calibrated=False)
        m.finish(completed=True, calibrated=True)
        assert m.state == CALIBRATED
        m.start(GUIDING, calibrated=True)
        m.finish(completed=True, calibrated=True)
        assert m.state == IDLE

    def test_cancelled_calibration_without_model(self):
        m = GuiderStateMachine()
        m.start(CALIBRATING, calibrated=False)
        m.finish(completed=False, calibrated=False)
        assert m.state == IDLE

    def test_cancelled_recalibration_keeps_model(self):
        m = GuiderStateMachine()
        m.calibration_installed()
        m.start(CALIBRATING, calibrated=True)
        m.finish(completed=False, calibrated=True)
        assert m.state == CALIBRATED

    def test_guiding_needs_calibration(self):
        m = GuiderStateMachine()
        assert not m.can_start(GUIDING, calibrated=False)
        with pytest.raises(BadState):
            m.start(GUIDING, calibrated=False)
        assert m.can_start(GUIDING, calibrated=True)

    def test_second_activity_rejected(self):
        m = GuiderStateMachine()
        m.start(CALIBRATING, calibrated=False)
        with pytest.raises(AlreadyRunning):
            m.start(BACKLASH, calibrated=False)
        assert m.state == CALIBRATING

    def test_backlash_returns_to_entry_state(self):
        m = GuiderStateMachine()
        m.calibration_installed()
        m.start(BACKLASH, calibrated=True)
        m.finish(completed=True, calibrated=True)
        assert m.state == CALIBRATED

        m = GuiderStateMachine()
        m.start(BACKLASH, calibrated=False)
        m.finish(completed=False, calibrated=False)
        assert m.state == IDLE

    def test_failure_and_reset(self):
        m = GuiderStateMachine()
        m.start(GUIDING, calibrated=True)
        m.fail()
        assert m.state == FAILED
        with pytest.raises(BadState):
            m.start(CALIBRATING, calibrated=True)
        m.reset()
        assert m.state == IDLE

    def test_reset_while_active(self):
        m = GuiderStateMachine()
        m.start(CALIBRATING, calibrated=False)
        with pytest.raises(BadState):
            m.reset()

    def test_calibration_changes(self):
        m = GuiderStateMachine()
        m.calibration_installed()
        assert m.state == CALIBRATED
        m.calibration_removed()
        assert m.state == IDLE
        m.start(CALIBRATING, calibrated=False)
        with pytest.raises(BadState):
            m.calibration_installed()
