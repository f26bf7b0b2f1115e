"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Control Filters

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Filters applied to the raw tracking offset before it is converted into
a correction.  The filter parameters are published as an immutable
tuple so they can be replaced while guiding.
"""

import logging
from typing import Sequence, Tuple

from .guide_types import Offset
from .kalman import KalmanFilter

logger = logging.getLogger(__name__)


class ControlBase:
    """Pass-through filter.

    Subclasses list their parameter defaults in ``defaults``; a shorter
    parameter tuple is completed from them.
    """

    method = "none"
    defaults: Tuple[float, ...] = ()

    def __init__(self, interval: float, parameters: Sequence[float] = ()):
        self.interval = interval
        self._parameters = self._complete(parameters)

    def _complete(self, values: Sequence[float]) -> Tuple[float, ...]:
        values = tuple(float(v) for v in values)
        return values + self.defaults[len(values):]

    @property
    def parameters(self) -> Tuple[float, ...]:
        return self._parameters

    @parameters.setter
    def parameters(self, values: Sequence[float]) -> None:
        values = self._complete(values)
        if values != self._parameters:
            self._parameters = values
            self.reconfigure()

    def reconfigure(self) -> None:
        pass

    def correct(self, offset: Offset) -> Offset:
        return offset


class GainControl(ControlBase):
    """Scale the offset by ``parameters[0]``."""

    method = "gain"
    defaults = (1.0,)

    @property
    def gain(self) -> float:
        return self._parameters[0]

    def correct(self, offset: Offset) -> Offset:
        return offset * self.gain


class OptimalControl(ControlBase):
    """Kalman-filtered offset; parameters are (system_error, measurement_error)."""

    method = "kalman"
    defaults = (1.0, 1.0)

    def __init__(self, interval: float, parameters: Sequence[float] = ()):
        super().__init__(interval, parameters)
        self.filter = KalmanFilter(interval, self._parameters[0], self._parameters[1])

    def reconfigure(self) -> None:
        self.filter.configure(self._parameters[0], self._parameters[1])

    def correct(self, offset: Offset) -> Offset:
        return self.filter.update(offset)


_METHODS = {
    "none": ControlBase,
    "gain": GainControl,
    "kalman": OptimalControl,
}


def create_control(method: str, interval: float, parameters: Sequence[float] = ()) -> ControlBase:
    """Factory that returns a control filter by config name."""
    name = (method or "none").lower().strip()
    cls = _METHODS.get(name)
    if cls is None:
        logger.warning("Unknown control method %r, using no filter", method)
        cls = ControlBase
    return cls(interval, parameters)
