"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Guide Port Drivers

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Serial guide-port driver with a protocol translation layer:

* **RelayBoxProtocol** – ST-4 relay box firmware (``PULSE ra+ ra- dec+ dec-``
  in milliseconds, ``STOP``, ``STATUS``)
* **LX200Protocol**    – pulse-guide commands of LX200 compatible mounts
  (``:Mgn0500#``)

``create_guideport`` builds the configured device.
"""

import abc
import logging
from typing import List, Optional

from .devices import GuidePortDevice
from .exceptions import DeviceError
from .guide_types import GuidePortCommand
from .process import Clock
from .serial_ctrl import SerialController
from .simulation import SimulatedGuidePort

logger = logging.getLogger(__name__)


def _ms(seconds: float) -> int:
    return int(round(seconds * 1000.0))


# ---------------------------------------------------------------------------
# Protocol translators
# ---------------------------------------------------------------------------
class GuidePortProtocol(abc.ABC):
    """Translate guide-port commands into wire-format strings."""

    line_ending = "\n"
    response_terminator = "\n"

    @abc.abstractmethod
    def pulse(self, command: GuidePortCommand) -> List[str]:
        """Return the command strings that start the pulses."""

    @abc.abstractmethod
    def stop(self) -> str:
        """Return the command string that releases all outputs."""

    def status(self) -> Optional[str]:
        """Return the status query, or None if the protocol has none."""
        return None


class RelayBoxProtocol(GuidePortProtocol):
    """Native relay box protocol; all four pulses in one line."""

    def pulse(self, command: GuidePortCommand) -> List[str]:
        return [
            "PULSE {} {} {} {}".format(
                _ms(command.ra_plus),
                _ms(command.ra_minus),
                _ms(command.dec_plus),
                _ms(command.dec_minus),
            )
        ]

    def stop(self) -> str:
        return "STOP"

    def status(self) -> Optional[str]:
        return "STATUS"


class LX200Protocol(GuidePortProtocol):
    """LX200 pulse guiding, one command per active direction.

    RA+ maps to west, DEC+ to north.  Pulses are limited to 9999 ms.
    """

    line_ending = ""
    response_terminator = "#"
    MAX_MS = 9999

    def _guide(self, direction: str, seconds: float) -> str:
        return f":Mg{direction}{min(_ms(seconds), self.MAX_MS):04d}#"

    def pulse(self, command: GuidePortCommand) -> List[str]:
        commands = []
        if command.ra_plus > 0:
            commands.append(self._guide("w", command.ra_plus))
        if command.ra_minus > 0:
            commands.append(self._guide("e", command.ra_minus))
        if command.dec_plus > 0:
            commands.append(self._guide("n", command.dec_plus))
        if command.dec_minus > 0:
            commands.append(self._guide("s", command.dec_minus))
        return commands

    def stop(self) -> str:
        return ":Q#"


def get_protocol(name: str) -> GuidePortProtocol:
    """Factory that returns a protocol translator by config name."""
    name = (name or "relay").lower().strip()
    if name == "lx200":
        return LX200Protocol()
    return RelayBoxProtocol()


# ---------------------------------------------------------------------------
# Serial guide port
# ---------------------------------------------------------------------------
class SerialGuidePort(GuidePortDevice):
    """Guide port reached through a :class:`SerialController`."""

    def __init__(
        self,
        serial_ctrl: SerialController,
        protocol: Optional[GuidePortProtocol] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(clock)
        self._serial = serial_ctrl
        self._protocol = protocol or RelayBoxProtocol()

    @property
    def protocol(self) -> GuidePortProtocol:
        return self._protocol

    def _send(self, command: str) -> None:
        if not self._serial.send_command(command):
            raise DeviceError(f"guide port command {command!r} failed")

    def _activate(self, command: GuidePortCommand) -> None:
        for line in self._protocol.pulse(command):
            self._send(line)

    def abort(self) -> None:
        """Release all outputs immediately."""
        logger.warning("Guide port abort")
        self._send(self._protocol.stop())

    def status(self) -> Optional[str]:
        query = self._protocol.status()
        if query is None:
            return None
        self._send(query)
        return self._serial.read_response(self._protocol.response_terminator)


def create_guideport(config: dict, clock: Optional[Clock] = None, mount=None) -> GuidePortDevice:
    """Build the guide port selected by ``hardware.guideport``.

    ``simulator`` needs a :class:`~simulation.SimulatedMount` in *mount*;
    ``serial`` opens ``hardware.serial_port``.

    Raises:
        DeviceError: if the serial port cannot be opened.
        ValueError:  for an unknown guide port type.
    """
    hw = config.get("hardware", {})
    kind = hw.get("guideport", "simulator").lower()
    if kind == "simulator":
        if mount is None:
            raise ValueError("simulated guide port needs a simulated mount")
        return SimulatedGuidePort(mount)
    if kind == "serial":
        protocol = get_protocol(hw.get("protocol", "relay"))
        ctrl = SerialController(
            hw.get("serial_port", "/dev/ttyUSB0"),
            hw.get("baud_rate", 9600),
            hw.get("timeout", 1.0),
            line_ending=protocol.line_ending,
        )
        if not ctrl.connect():
            raise DeviceError(f"cannot open guide port {ctrl.port}")
        logger.info("Serial guide port on %s (%s protocol)", ctrl.port, type(protocol).__name__)
        return SerialGuidePort(ctrl, protocol, clock)
    raise ValueError(f"unknown guide port type {kind!r}")
