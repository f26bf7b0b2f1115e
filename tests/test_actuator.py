"""Tests for the guide port base class, the pulse actuator and the
duty-cycle driving thread.

All devices are simulated; virtual time advances instantly.
"""

import math
import sys
import threading
import time
from pathlib import Path

import pytest

# Ensure the package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from autoguider.actuator import DrivingProcess, GuidePortActuator
from autoguider.exceptions import DeviceError
from autoguider.guide_types import GuidePortCommand, Offset
from autoguider.simulation import SimulatedClock, SimulatedGuidePort, SimulatedMount


@pytest.fixture
def clock():
    return SimulatedClock()


@pytest.fixture
def port(clock):
    return SimulatedGuidePort(SimulatedMount(clock, pixel_speed=1.0))


@pytest.fixture
def actuator(port, clock):
    return GuidePortActuator(port, clock)


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.005)
    return True


# ---------------------------------------------------------------------------
# GuidePortDevice
# ---------------------------------------------------------------------------
class TestGuidePortDevice:
    def test_overlapping_activation_rejected(self, port, clock):
        port.activate(ra_plus=2.0)
        assert port.busy
        with pytest.raises(DeviceError):
            port.activate(dec_plus=1.0)
        clock.advance(2.0)
        assert not port.busy
        port.activate(dec_plus=1.0)
        assert len(port.history) == 2

    def test_invalid_widths_rejected(self, port):
        with pytest.raises(ValueError):
            port.activate(ra_plus=1.0, ra_minus=1.0)
        assert port.history == []

    def test_hardware_failure_releases_port(self, port):
        port.fail = True
        with pytest.raises(DeviceError):
            port.activate(ra_plus=5.0)
        assert not port.busy


# ---------------------------------------------------------------------------
# GuidePortActuator
# ---------------------------------------------------------------------------
class TestGuidePortActuator:
    def test_parallel_pulses_clamped_per_axis(self, actuator, port, clock):
        command = actuator.apply(Offset(5.0, 5.0), 2.0)
        assert command == GuidePortCommand(ra_plus=2.0, dec_plus=2.0)
        assert port.history == [command]
        assert clock.now() == pytest.approx(2.0)

    def test_sequential_pulses_share_interval(self, actuator, port, clock):
        command = actuator.apply(Offset(5.0, 5.0), 2.0, sequential=True)
        assert command.ra_plus + command.dec_plus == pytest.approx(2.0)
        assert port.history == [
            GuidePortCommand(ra_plus=1.0),
            GuidePortCommand(dec_plus=1.0),
        ]
        assert clock.now() == pytest.approx(2.0)

    def test_signs_map_to_directions(self, actuator, port):
        command = actuator.apply(Offset(-0.5, 0.25), 10.0)
        assert command.ra_minus == pytest.approx(0.5)
        assert command.dec_plus == pytest.approx(0.25)
        assert command.ra_plus == 0.0 and command.dec_minus == 0.0

    def test_stepped_pulses(self, actuator, port, clock):
        actuator.apply(Offset(1.5, -0.6), 3.0, stepped=True)
        assert len(port.history) == 3
        for step in port.history:
            assert step.ra_plus == pytest.approx(0.5)
            assert step.dec_minus == pytest.approx(0.2)
        assert clock.now() == pytest.approx(1.5)

    def test_stepped_stops_when_cancelled(self, actuator, port):
        cancel = threading.Event()
        cancel.set()
        actuator.apply(Offset(2.0, 0.0), 4.0, stepped=True, cancel=cancel)
        assert len(port.history) == 1

    def test_sequential_skips_dec_when_cancelled(self, actuator, port):
        cancel = threading.Event()
        cancel.set()
        actuator.apply(Offset(1.0, 1.0), 5.0, sequential=True, cancel=cancel)
        assert port.history == [GuidePortCommand(ra_plus=1.0)]

    def test_nan_correction_discarded(self, actuator, port):
        assert actuator.apply(Offset(math.nan, 1.0), 5.0) is None
        assert port.history == []

    def test_non_positive_interval_discarded(self, actuator, port):
        assert actuator.apply(Offset(1.0, 1.0), 0.0) is None
        assert port.history == []

    def test_zero_correction_sends_nothing(self, actuator, port):
        command = actuator.apply(Offset(0.0, 0.0), 5.0)
        assert command.is_empty()
        assert port.history == []

    def test_move_is_unclamped_and_sequential(self, actuator, port, clock):
        actuator.move(20.0, -10.0)
        assert port.history == [
            GuidePortCommand(ra_plus=20.0),
            GuidePortCommand(dec_minus=10.0),
        ]
        assert clock.now() == pytest.approx(30.0)

    def test_move_displaces_star(self, actuator, port):
        actuator.move(2.0, 0.0)
        moved = port.mount.offset()
        ra = port.mount.ra_vector
        assert moved.x == pytest.approx(2.0 * ra.x)
        assert moved.y == pytest.approx(2.0 * ra.y)


# ---------------------------------------------------------------------------
# DrivingProcess
# ---------------------------------------------------------------------------
class TestDrivingProcess:
    def test_duty_cycle_clamped(self, port):
        driving = DrivingProcess(port, 1.0)
        driving.set_correction(3.0, -2.0)
        assert driving.correction == (1.0, -1.0)

    def test_nan_duty_cycle_ignored(self, port):
        driving = DrivingProcess(port, 1.0)
        driving.set_correction(0.2, 0.1)
        driving.set_correction(math.nan, 0.5)
        assert driving.correction == (0.2, 0.1)

    def test_invalid_interval(self, port):
        with pytest.raises(ValueError):
            DrivingProcess(port, 0.0)

    def test_pulses_every_interval(self):
        clock = SimulatedClock(real_time_factor=0.001)
        port = SimulatedGuidePort(SimulatedMount(clock))
        driving = DrivingProcess(port, 2.0, clock)
        driving.set_correction(0.5, -0.25)
        driving.start()
        try:
            assert _wait_until(lambda: driving.cycles >= 3)
        finally:
            driving.stop()
            assert driving.wait(5.0)
        assert not driving.running
        assert driving.error is None
        first = port.history[0]
        assert first.ra_plus == pytest.approx(1.0)
        assert first.dec_minus == pytest.approx(0.5)

    def test_device_failure_stops_thread(self):
        clock = SimulatedClock(real_time_factor=0.001)
        port = SimulatedGuidePort(SimulatedMount(clock))
        port.fail = True
        driving = DrivingProcess(port, 1.0, clock)
        driving.set_correction(0.5, 0.0)
        driving.start()
        assert driving.wait(5.0)
        assert isinstance(driving.error, DeviceError)
