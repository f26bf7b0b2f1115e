"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Guiding Errors

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Per-cycle problems (``TrackingFailed``) are recovered inside the
guiding loop; everything else ends the current run.
"""


class GuidingError(Exception):
    """Base class for all guiding errors."""


class TrackingFailed(GuidingError):
    """No guide star could be located in the current image."""


class SingularCalibration(GuidingError):
    """The calibration matrix cannot be inverted."""


class InsufficientCalibrationData(GuidingError):
    """Too few or degenerate points for a calibration fit."""


class AlreadyRunning(GuidingError):
    """An activity was started while another one is still running."""


class BadState(GuidingError):
    """The requested operation is not allowed in the current state."""


class DeviceError(GuidingError):
    """The imager or the guide port reported a failure."""


class Cancelled(GuidingError):
    """The running procedure was asked to stop."""
