"""Tests for the serial link.

These tests do NOT require a serial port – pyserial is mocked.
"""

import sys
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import serial

# Ensure the package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from autoguider.serial_ctrl import SerialController


def _connected(line_ending="\n"):
    ctrl = SerialController("COM99", line_ending=line_ending)
    ctrl.connected = True
    ctrl.ser = MagicMock()
    return ctrl


class TestConnect:
    def test_connect_success(self):
        with patch("autoguider.serial_ctrl.serial.Serial") as serial_cls, \
                patch("autoguider.serial_ctrl.time.sleep"):
            ctrl = SerialController("COM5", 19200, 0.5)
            assert ctrl.connect() is True
        serial_cls.assert_called_once_with(port="COM5", baudrate=19200, timeout=0.5)
        assert ctrl.connected

    def test_connect_failure(self):
        with patch("autoguider.serial_ctrl.serial.Serial",
                   side_effect=serial.SerialException("no port")):
            ctrl = SerialController("COM5")
            assert ctrl.connect() is False
        assert not ctrl.connected

    def test_disconnect(self):
        ctrl = _connected()
        port = ctrl.ser
        ctrl.disconnect()
        port.close.assert_called_once()
        assert not ctrl.connected


class TestSendCommand:
    def test_appends_line_ending(self):
        ctrl = _connected()
        assert ctrl.send_command("STOP") is True
        ctrl.ser.write.assert_called_once_with(b"STOP\n")

    def test_no_line_ending(self):
        ctrl = _connected(line_ending="")
        ctrl.send_command(":Mgn0100#")
        ctrl.ser.write.assert_called_once_with(b":Mgn0100#")

    def test_not_connected(self):
        ctrl = SerialController("COM99")
        assert ctrl.send_command("STOP") is False

    def test_reconnect_and_retry(self):
        ctrl = _connected()
        ctrl.ser.write.side_effect = [serial.SerialException("gone"), None]
        with patch.object(ctrl, "connect", return_value=True) as mock_connect:
            assert ctrl.send_command("STOP") is True
        mock_connect.assert_called_once()
        assert ctrl.ser.write.call_count == 2

    def test_reconnect_fails(self):
        ctrl = _connected()
        ctrl.ser.write.side_effect = serial.SerialException("gone")
        with patch.object(ctrl, "connect", return_value=False):
            assert ctrl.send_command("STOP") is False
        assert ctrl.connected is False

    def test_reconnect_backoff(self):
        ctrl = _connected()
        ctrl.connected = False
        ctrl._last_reconnect_attempt = time.time()
        with patch.object(ctrl, "connect", return_value=True) as mock_connect:
            assert ctrl._attempt_reconnect() is False
        mock_connect.assert_not_called()


class TestReadResponse:
    def test_strips_terminator(self):
        ctrl = _connected()
        ctrl.ser.read_until.return_value = b"1#"
        assert ctrl.read_response("#") == "1"
        ctrl.ser.read_until.assert_called_once_with(b"#")

    def test_timeout(self):
        ctrl = _connected()
        ctrl.ser.read_until.return_value = b""
        assert ctrl.read_response() is None

    def test_io_error(self):
        ctrl = _connected()
        ctrl.ser.read_until.side_effect = serial.SerialException("gone")
        assert ctrl.read_response() is None
        assert not ctrl.connected
