"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Serial Control Module

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Line-oriented serial link to a guide-port relay box or a mount that
accepts pulse-guide commands, via pyserial.  Writes are serialised with
a lock because the duty-cycle thread and the guiding loop may share the
link.  Includes automatic reconnection on IO errors.
"""

import logging
import threading
import time
from typing import Optional

import serial


class SerialController:
    """Serial link with auto-reconnect."""

    RECONNECT_DELAY = 5.0  # seconds between reconnect attempts
    RESET_DELAY = 2.0      # Arduino based boxes reset on connect

    def __init__(
        self,
        port: str,
        baud_rate: int = 9600,
        timeout: float = 1.0,
        line_ending: str = "\n",
    ):
        """
        Initialize serial controller.

        Args:
            port: Serial port name (e.g. '/dev/ttyUSB0' or 'COM3')
            baud_rate: Communication baud rate
            timeout: Read timeout in seconds
            line_ending: Appended to every command that lacks it
        """
        self.logger = logging.getLogger(__name__)
        self.port = port
        self.baud_rate = baud_rate
        self.timeout = timeout
        self.line_ending = line_ending
        self.ser = None
        self.connected = False
        self._lock = threading.Lock()
        self._last_reconnect_attempt = 0.0

    def connect(self) -> bool:
        """
        Open the serial port.

        Returns:
            True if successful, False otherwise
        """
        try:
            self.logger.info("Connecting to serial port %s at %d baud", self.port, self.baud_rate)
            self.ser = serial.Serial(
                port=self.port,
                baudrate=self.baud_rate,
                timeout=self.timeout,
            )
            time.sleep(self.RESET_DELAY)
            self.connected = True
            self.logger.info("Serial port %s connected", self.port)
            return True
        except serial.SerialException as e:
            self.logger.error("Failed to connect to serial port %s: %s", self.port, e)
            self.connected = False
            return False

    def disconnect(self) -> None:
        """Close the serial port."""
        if self.ser and self.connected:
            try:
                self.ser.close()
                self.logger.info("Serial port %s disconnected", self.port)
            except serial.SerialException as e:
                self.logger.error("Error disconnecting serial port: %s", e)
            finally:
                self.connected = False

    def _attempt_reconnect(self) -> bool:
        """Re-open the port, at most once per RECONNECT_DELAY."""
        now = time.time()
        if now - self._last_reconnect_attempt < self.RECONNECT_DELAY:
            return False
        self._last_reconnect_attempt = now

        self.logger.warning("Attempting serial reconnect on %s", self.port)
        if self.ser:
            try:
                self.ser.close()
            except serial.SerialException as e:
                self.logger.debug("Closing stale port failed: %s", e)
        return self.connect()

    def _write(self, command: str) -> None:
        if self.line_ending and not command.endswith(self.line_ending):
            command += self.line_ending
        self.ser.write(command.encode("ascii"))
        self.logger.debug("Sent command: %s", command.strip())

    def send_command(self, command: str) -> bool:
        """
        Send a command, reconnecting once on an IO error.

        Returns:
            True if the command was written, False otherwise
        """
        if not self.connected:
            self.logger.warning("Serial port %s not connected", self.port)
            return False

        with self._lock:
            try:
                self._write(command)
                return True
            except serial.SerialException as e:
                self.logger.error("Serial IO error sending %r: %s", command, e)
                self.connected = False
                if not self._attempt_reconnect():
                    self.logger.critical("Serial reconnect failed, command %r lost", command)
                    return False
            try:
                self._write(command)
                return True
            except serial.SerialException as e:
                self.logger.critical("Command %r failed after reconnect: %s", command, e)
                self.connected = False
                return False

    def read_response(self, terminator: str = "\n") -> Optional[str]:
        """
        Read one response up to *terminator*.

        Returns:
            Response string or None if nothing was received
        """
        if not self.connected:
            self.logger.warning("Serial port %s not connected", self.port)
            return None

        with self._lock:
            try:
                raw = self.ser.read_until(terminator.encode("ascii"))
            except serial.SerialException as e:
                self.logger.error("Serial IO error reading response: %s", e)
                self.connected = False
                return None
        if not raw:
            return None
        response = raw.decode("ascii", errors="replace").strip().rstrip(terminator)
        self.logger.debug("Received response: %s", response)
        return response
