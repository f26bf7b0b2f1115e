"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Package initialization

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.
"""

__version__ = "0.1.0"
__author__ = "AUTOGUIDER Development Team"
__description__ = "Calibration, closed-loop guiding and backlash measurement for telescope mounts"

from .basic_process import GuiderContext
from .calibration import CalibrationModel, CalibrationSolver, GridConstant
from .guide_types import Offset, ProcessState
from .guider import Guider
from .simulation import SimulatedClock, SimulatedGuidePort, SimulatedImager, SimulatedMount
from .tracker import PhaseTracker, StarTracker

__all__ = [
    'GuiderContext',
    'CalibrationModel',
    'CalibrationSolver',
    'GridConstant',
    'Offset',
    'ProcessState',
    'Guider',
    'SimulatedClock',
    'SimulatedGuidePort',
    'SimulatedImager',
    'SimulatedMount',
    'PhaseTracker',
    'StarTracker',
]
