"""
Tests for configuration module.

Tests Pydantic BaseSettings configuration including validation,
environment variable support, and default values.
"""

import pytest
from pydantic import ValidationError

from camera_node.config import NodeConfig


class TestNodeConfig:
    """Test cases for NodeConfig."""

    def test_default_values(self):
        """Test that default configuration values are set correctly."""
        config = NodeConfig()

        assert config.width == 1280
        assert config.height == 720
        assert config.desired_framerate == -1.0
        assert config.frame_id == "camera"
        assert config.poll_rate_hz == 10.0
        assert config.exposure_timeout_s == 5.0
        assert config.gain_timeout_s == 5.0
        assert config.brightness_timeout_s == 5.0
        assert config.brightness_high_timeout_s == 15.0
        assert config.brightness_high_threshold == 205.0
        assert config.stall_delta == 1.0
        assert config.stall_limit == 5
        assert config.host == "0.0.0.0"
        assert config.port == 8000
        assert config.api_key is None
        assert config.log_level == "INFO"

    def test_poll_interval(self):
        """Test that the poll interval follows the poll rate."""
        assert NodeConfig().poll_interval_s == pytest.approx(0.1)
        assert NodeConfig(poll_rate_hz=50).poll_interval_s == pytest.approx(0.02)

    def test_environment_variable_override(self, monkeypatch):
        """Test that environment variables override defaults."""
        monkeypatch.setenv("CAMERA_NODE_WIDTH", "640")
        monkeypatch.setenv("CAMERA_NODE_DESIRED_FRAMERATE", "15")
        monkeypatch.setenv("CAMERA_NODE_STALL_LIMIT", "8")
        monkeypatch.setenv("CAMERA_NODE_API_KEY", "secret-key")

        config = NodeConfig()

        assert config.width == 640
        assert config.desired_framerate == 15.0
        assert config.stall_limit == 8
        assert config.api_key == "secret-key"

    def test_resolution_validation(self):
        """Test that resolutions outside the sensor range are rejected."""
        with pytest.raises(ValidationError):
            NodeConfig(width=32)
        with pytest.raises(ValidationError):
            NodeConfig(height=5000)

    def test_framerate_validation(self):
        """Test that only -1 or a positive framerate is accepted."""
        assert NodeConfig(desired_framerate=-1).desired_framerate == -1
        with pytest.raises(ValidationError):
            NodeConfig(desired_framerate=0)
        with pytest.raises(ValidationError):
            NodeConfig(desired_framerate=-5)

    def test_timeouts_must_be_positive(self):
        with pytest.raises(ValidationError):
            NodeConfig(exposure_timeout_s=0)
        with pytest.raises(ValidationError):
            NodeConfig(poll_rate_hz=0)

    def test_log_level_validation(self):
        """Test that log level is validated and normalized."""
        assert NodeConfig(log_level="debug").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            NodeConfig(log_level="VERBOSE")

    def test_ordered_ranges(self):
        """Test that paired limits must be ordered."""
        with pytest.raises(ValidationError):
            NodeConfig(auto_brightness_min=200, auto_brightness_max=100)
        with pytest.raises(ValidationError):
            NodeConfig(min_exposure_us=5000, max_exposure_us=1000)
