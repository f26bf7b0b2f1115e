"""
AUTOGUIDER - Closed-loop Telescope Autoguiding Core
Main Application Entry Point

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Loads config.yaml, builds the guide port, camera and guider, and runs a
calibration, guiding or backlash procedure from the command line.
Includes production-grade rotating log files.
"""

import argparse
import copy
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import List, Optional

import yaml

from .basic_process import GuiderContext
from .calibration import CalibrationModel
from .exceptions import GuidingError
from .guide_types import Exposure, Offset, ProcessState
from .guider import Guider
from .guideport_drivers import create_guideport
from .process import SystemClock
from .simulation import PIXEL_SPEED, SimulatedClock, SimulatedImager, SimulatedMount

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"

# used for continuous guiding on the simulator, where 0 never blocks
CONTINUOUS_REAL_TIME_FACTOR = 0.01


# ---------------------------------------------------------------------------
# Defaults, also the fallback for missing or mistyped keys
# ---------------------------------------------------------------------------
DEFAULT_CONFIG: dict = {
    "logging": {
        "level": "INFO",
        "file": "autoguider.log",
        "console": True,
    },
    "guider": {
        "name": "guider",
        "max_tracking_failures": 3,
        "max_image_failures": 3,
        "exposure_time": 1.0,
    },
    "calibration": {
        "focal_length": 0.6,
        "pixel_size": 10e-6,
        "guide_rate": 0.5,
        "grid_constant": 0.0,
        "grid_range": 1,
        "settle_time": 0.0,
        "model": [],
    },
    "guiding": {
        "interval": 10.0,
        "gain": 1.0,
        "mode": "pulse",
        "sequential": False,
        "stepped": False,
        "filter": "kalman",
        "filter_gain": 1.0,
        "system_error": 1.0,
        "measurement_error": 1.0,
        "driving_interval": 1.0,
        "duration": 0.0,
    },
    "backlash": {
        "direction": "DEC",
        "interval": 5.0,
        "last_points": 0,
        "max_points": 0,
        "settle_time": 0.0,
    },
    "tracker": {
        "method": "star",
        "search_radius": 50,
        "threshold": 5.0,
        "smoothing": 1.0,
        "quantization": 0.0,
        "min_response": 0.05,
    },
    "hardware": {
        "guideport": "simulator",
        "serial_port": "/dev/ttyUSB0",
        "baud_rate": 9600,
        "timeout": 1.0,
        "protocol": "relay",
    },
    "simulation": {
        "width": 160,
        "height": 160,
        "star_x": 80.0,
        "star_y": 80.0,
        "sigma": 2.0,
        "noise": 0.0,
        "drift_x": 0.01,
        "drift_y": -0.005,
        "backlash": 0.0,
        "pixel_speed": PIXEL_SPEED * 0.5,   # guide rate 0.5
        "real_time_factor": 0.0,
    },
}


# ---------------------------------------------------------------------------
# Config helpers
# ---------------------------------------------------------------------------
def _deep_merge(defaults: dict, overrides: dict, prefix: str = "") -> dict:
    """Merge *overrides* over a copy of *defaults*, reporting bad keys by
    their dotted path (``guiding.gain``)."""
    merged = copy.deepcopy(defaults)
    for key, default_val in defaults.items():
        name = f"{prefix}{key}"
        if key not in overrides:
            logger.warning("Config %s not set, default %r applies", name, default_val)
            continue
        value = overrides[key]
        if isinstance(default_val, dict):
            if isinstance(value, dict):
                merged[key] = _deep_merge(default_val, value, prefix=f"{name}.")
            else:
                logger.warning("Config %s must be a section, default applies", name)
        elif _type_ok(default_val, value):
            merged[key] = value
        else:
            logger.warning(
                "Config %s is %s, expected %s; default %r applies",
                name,
                type(value).__name__,
                type(default_val).__name__,
                default_val,
            )
    # unknown keys are kept as they are
    for key in overrides.keys() - defaults.keys():
        merged[key] = overrides[key]
    return merged


def _type_ok(default, value) -> bool:
    """bool only matches bool; ints and floats are interchangeable."""
    if isinstance(default, bool):
        return isinstance(value, bool)
    if isinstance(default, (int, float)):
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if isinstance(default, (str, list)):
        return isinstance(value, type(default))
    return True


def load_config(path: Optional[str] = None) -> dict:
    """Read *path* (default: the repository ``config.yaml``) and merge it
    over ``DEFAULT_CONFIG``.

    Never raises: an absent, unreadable or non-mapping file yields a copy
    of the defaults.
    """
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh)
        if not isinstance(raw, dict):
            logger.warning("Config %s is not a mapping, using defaults", config_path)
            return copy.deepcopy(DEFAULT_CONFIG)
        logger.info("Config loaded: %s", config_path)
        return _deep_merge(DEFAULT_CONFIG, raw)
    except FileNotFoundError:
        logger.warning("No config at %s, using defaults", config_path)
        return copy.deepcopy(DEFAULT_CONFIG)
    except yaml.YAMLError as exc:
        logger.error("Config %s unreadable (%s), using defaults", config_path, exc)
        return copy.deepcopy(DEFAULT_CONFIG)


def save_config(config: dict, path: Optional[str] = None) -> None:
    """Dump *config* to *path* (default: the repository ``config.yaml``)."""
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    try:
        with open(config_path, "w", encoding="utf-8") as fh:
            yaml.dump(config, fh, default_flow_style=False, sort_keys=False)
        logger.info("Config written: %s", config_path)
    except OSError as exc:
        logger.error("Failed to save configuration: %s", exc)


def setup_logging(config: dict) -> None:
    """Attach console and rotating-file (5 MB x 5) handlers to the root logger."""
    log_cfg = config.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    handlers: list = []
    if log_cfg.get("console", True):
        handlers.append(logging.StreamHandler())
    if log_file:
        rotating = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,   # 5 MB
            backupCount=5,
        )
        handlers.append(rotating)

    logging.basicConfig(
        level=level,
        format=fmt,
        handlers=handlers or [logging.StreamHandler()],
    )


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------
def build_guider(config: dict) -> Guider:
    """Create devices and a :class:`Guider` from a validated config.

    Only a simulated camera exists; with a serial guide port it renders
    a static star on the system clock.
    """
    hw = config.get("hardware", {})
    sim = config.get("simulation", {})
    guider_cfg = config.get("guider", {})

    if hw.get("guideport", "simulator").lower() == "simulator":
        factor = float(sim.get("real_time_factor", 0.0))
        if factor <= 0 and config.get("guiding", {}).get("mode") == "continuous":
            logger.warning(
                "Continuous guiding on the simulator needs a real time factor, using %.2f",
                CONTINUOUS_REAL_TIME_FACTOR,
            )
            factor = CONTINUOUS_REAL_TIME_FACTOR
        clock = SimulatedClock(real_time_factor=factor)
    else:
        clock = SystemClock()
        logger.warning("No camera driver available, pairing the guide port with a simulated camera")

    mount = SimulatedMount(
        clock,
        pixel_speed=float(sim.get("pixel_speed", PIXEL_SPEED)),
        drift=Offset(float(sim.get("drift_x", 0.0)), float(sim.get("drift_y", 0.0))),
        backlash=float(sim.get("backlash", 0.0)),
    )
    guideport = create_guideport(config, clock, mount)
    imager = SimulatedImager(
        mount,
        size=(int(sim.get("width", 160)), int(sim.get("height", 160))),
        star=(float(sim.get("star_x", 80.0)), float(sim.get("star_y", 80.0))),
        sigma=float(sim.get("sigma", 2.0)),
        noise=float(sim.get("noise", 0.0)),
    )
    context = GuiderContext(
        imager=imager,
        guideport=guideport,
        clock=clock,
        exposure=Exposure(float(guider_cfg.get("exposure_time", 1.0))),
        tracker_config=dict(config.get("tracker", {})),
        max_image_failures=int(guider_cfg.get("max_image_failures", 3)),
    )
    guider = Guider(context, config, name=guider_cfg.get("name", "guider"))

    coefficients = config.get("calibration", {}).get("model") or []
    if coefficients:
        try:
            guider.use_calibration(CalibrationModel.from_coefficients(coefficients))
        except (GuidingError, ValueError) as exc:
            logger.warning("Stored calibration %r ignored: %s", coefficients, exc)
    return guider


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------
def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="autoguider", description="Closed-loop telescope autoguiding"
    )
    parser.add_argument("--config", default=None, help="path to config.yaml")
    sub = parser.add_subparsers(dest="command", required=True)

    calibrate = sub.add_parser("calibrate", help="measure the pulse-to-pixel calibration")
    calibrate.add_argument(
        "--save", action="store_true", help="store the fitted model in the config file"
    )

    guide = sub.add_parser("guide", help="guide with the stored or a fresh calibration")
    guide.add_argument("--duration", type=float, default=None,
                       help="stop after this many seconds (0 = until interrupted)")

    backlash = sub.add_parser("backlash", help="characterise mount backlash")
    backlash.add_argument("--points", type=int, default=None,
                          help="number of points to record (0 = until interrupted)")
    return parser.parse_args(argv)


def _run(guider: Guider) -> bool:
    """Wait for the running activity; Ctrl-C requests a clean stop."""
    try:
        guider.wait()
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping %s", guider.name)
        guider.stop()
        guider.wait()
    return guider.state != ProcessState.FAILED


def _calibrate(guider: Guider) -> bool:
    guider.start_calibration()
    if not _run(guider) or not guider.calibrated:
        logger.error("Calibration failed: %s", guider.last_error)
        return False
    print(f"calibration: {guider.calibration}")
    return True


def main(argv: Optional[List[str]] = None) -> int:
    """Console entry point; returns the process exit code."""
    args = _parse_args(argv)
    config = load_config(args.config)
    setup_logging(config)

    try:
        guider = build_guider(config)
    except (GuidingError, ValueError) as exc:
        logger.critical("Cannot set up guider: %s", exc)
        return 2

    try:
        if args.command == "calibrate":
            if not _calibrate(guider):
                return 1
            if args.save:
                config["calibration"]["model"] = list(guider.calibration.coefficients)
                save_config(config, args.config)
            return 0

        if args.command == "guide":
            if not guider.calibrated and not _calibrate(guider):
                return 1
            overrides = {}
            if args.duration is not None:
                overrides["duration"] = args.duration
            guider.start_guiding(**overrides)
            ok = _run(guider)
            summary = guider.summary()
            print(f"guiding: {summary.count} points, rms {summary.rms:.3f} px")
            if not ok:
                logger.error("Guiding failed: %s", guider.last_error)
            return 0 if ok else 1

        overrides = {}
        if args.points is not None:
            overrides["max_points"] = args.points
        guider.start_backlash(**overrides)
        ok = _run(guider)
        print(f"backlash: {guider.last_backlash}")
        return 0 if ok else 1
    except GuidingError as exc:
        logger.critical("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
