"""Tests for config loading, logging setup, guider assembly and the
command line.

The command line runs against the simulated devices with instant
virtual time.
"""

import logging
import sys
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

# Ensure the package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from autoguider.guide_types import ProcessState
from autoguider.guider import Guider
from autoguider.main import (
    CONTINUOUS_REAL_TIME_FACTOR,
    DEFAULT_CONFIG,
    _deep_merge,
    build_guider,
    load_config,
    main,
    save_config,
    setup_logging,
)
from autoguider.simulation import SimulatedClock, SimulatedGuidePort, SimulatedImager


# ---------------------------------------------------------------------------
# load_config tests
# ---------------------------------------------------------------------------
class TestLoadConfig:
    """Unit tests for the YAML config loader."""

    def test_load_existing_config(self, tmp_path):
        """A valid YAML file should be parsed and merged with defaults."""
        cfg_file = tmp_path / "config.yaml"
        cfg_file.write_text("guiding:\n  interval: 4.0\n  mode: continuous\n")
        result = load_config(str(cfg_file))
        assert result["guiding"]["interval"] == 4.0
        assert result["guiding"]["mode"] == "continuous"
        # Missing keys should be filled from defaults
        assert result["guiding"]["gain"] == 1.0
        assert "hardware" in result

    def test_missing_config_returns_defaults(self, tmp_path):
        result = load_config(str(tmp_path / "does_not_exist.yaml"))
        assert result == DEFAULT_CONFIG

    def test_invalid_yaml_returns_defaults(self, tmp_path):
        cfg_file = tmp_path / "bad.yaml"
        cfg_file.write_text(":::\n  - ][")
        assert load_config(str(cfg_file)) == DEFAULT_CONFIG

    def test_empty_file_returns_defaults(self, tmp_path):
        cfg_file = tmp_path / "empty.yaml"
        cfg_file.write_text("")
        assert load_config(str(cfg_file)) == DEFAULT_CONFIG

    def test_defaults_are_not_shared(self, tmp_path):
        result = load_config(str(tmp_path / "none.yaml"))
        result["guiding"]["interval"] = 99.0
        assert DEFAULT_CONFIG["guiding"]["interval"] == 10.0

    def test_wrong_types_fall_back(self, tmp_path):
        cfg_file = tmp_path / "config.yaml"
        cfg_file.write_text(
            "guiding:\n  interval: fast\n  sequential: 1\n"
            "tracker: star\n"
            "calibration:\n  grid_range: 2\n"
        )
        result = load_config(str(cfg_file))
        assert result["guiding"]["interval"] == 10.0
        assert result["guiding"]["sequential"] is False
        assert result["tracker"] == DEFAULT_CONFIG["tracker"]
        assert result["calibration"]["grid_range"] == 2

    def test_extra_keys_carried_forward(self):
        merged = _deep_merge({"a": 1}, {"a": 2, "b": "x"})
        assert merged == {"a": 2, "b": "x"}

    def test_default_config_loads(self):
        """The repo config.yaml should load without error."""
        result = load_config()
        assert isinstance(result, dict)
        assert result["calibration"]["pixel_size"] == pytest.approx(10e-6)
        assert result["hardware"]["guideport"] == "simulator"


class TestSaveConfig:
    def test_round_trip(self, tmp_path):
        path = tmp_path / "out.yaml"
        config = load_config(str(tmp_path / "none.yaml"))
        config["calibration"]["model"] = [1.0, 0.0, 0.0, 0.0, 1.0, 0.0]
        save_config(config, str(path))
        assert load_config(str(path)) == config

    def test_unwritable_path_is_logged(self, tmp_path, caplog):
        save_config(dict(DEFAULT_CONFIG), str(tmp_path / "missing" / "out.yaml"))
        assert "Failed to save configuration" in caplog.text


class TestSetupLogging:
    def test_rotating_file_handler(self, tmp_path):
        config = {"logging": {"level": "DEBUG", "file": str(tmp_path / "ag.log"), "console": False}}
        with patch("autoguider.main.logging.basicConfig") as basic:
            setup_logging(config)
        kwargs = basic.call_args.kwargs
        assert kwargs["level"] == logging.DEBUG
        (handler,) = kwargs["handlers"]
        assert isinstance(handler, logging.handlers.RotatingFileHandler)
        assert handler.maxBytes == 5 * 1024 * 1024
        assert handler.backupCount == 5
        handler.close()

    def test_console_only(self):
        config = {"logging": {"level": "bogus", "file": "", "console": True}}
        with patch("autoguider.main.logging.basicConfig") as basic:
            setup_logging(config)
        kwargs = basic.call_args.kwargs
        assert kwargs["level"] == logging.INFO
        assert isinstance(kwargs["handlers"][0], logging.StreamHandler)


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------
class TestBuildGuider:
    def _config(self, tmp_path):
        return load_config(str(tmp_path / "none.yaml"))

    def test_simulator(self, tmp_path):
        guider = build_guider(self._config(tmp_path))
        assert isinstance(guider, Guider)
        assert isinstance(guider.context.clock, SimulatedClock)
        assert isinstance(guider.context.guideport, SimulatedGuidePort)
        assert isinstance(guider.context.imager, SimulatedImager)
        assert guider.state == ProcessState.IDLE

    def test_stored_calibration(self, tmp_path):
        config = self._config(tmp_path)
        config["calibration"]["model"] = [2.0, 0.0, 0.0, 0.0, 2.0, 0.0]
        guider = build_guider(config)
        assert guider.state == ProcessState.CALIBRATED
        assert guider.calibration.a0 == 2.0

    def test_continuous_mode_gets_blocking_clock(self, tmp_path, caplog):
        config = self._config(tmp_path)
        config["guiding"]["mode"] = "continuous"
        guider = build_guider(config)
        assert guider.context.clock.real_time_factor == pytest.approx(CONTINUOUS_REAL_TIME_FACTOR)
        assert "needs a real time factor" in caplog.text

    def test_pulse_mode_keeps_instant_clock(self, tmp_path):
        guider = build_guider(self._config(tmp_path))
        assert guider.context.clock.real_time_factor == 0.0

    @pytest.mark.parametrize("model", [[1.0, 0.5, 0.0, 2.0, 1.0, 0.0], [1.0, 2.0]])
    def test_unusable_stored_calibration(self, tmp_path, model):
        config = self._config(tmp_path)
        config["calibration"]["model"] = model
        guider = build_guider(config)
        assert guider.state == ProcessState.IDLE


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------
@pytest.fixture
def cli_config(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({"logging": {"file": "", "console": False}}))
    return path


@pytest.fixture(autouse=True)
def _no_root_logging():
    with patch("autoguider.main.logging.basicConfig"):
        yield


class TestCommandLine:
    def test_calibrate_and_save(self, cli_config, capsys):
        assert main(["--config", str(cli_config), "calibrate", "--save"]) == 0
        assert "calibration:" in capsys.readouterr().out
        saved = load_config(str(cli_config))
        assert len(saved["calibration"]["model"]) == 6

    def test_guide_calibrates_first(self, cli_config, capsys):
        assert main(["--config", str(cli_config), "guide", "--duration", "25"]) == 0
        out = capsys.readouterr().out
        assert "calibration:" in out
        assert "guiding: 3 points" in out

    def test_backlash(self, cli_config, capsys):
        assert main(["--config", str(cli_config), "backlash", "--points", "6"]) == 0
        assert "backlash: DEC:" in capsys.readouterr().out

    def test_bad_hardware(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({
            "logging": {"file": "", "console": False},
            "hardware": {"guideport": "parallel"},
        }))
        assert main(["--config", str(path), "calibrate"]) == 2

    def test_command_required(self):
        with pytest.raises(SystemExit):
            main([])
