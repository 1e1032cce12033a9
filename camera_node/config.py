"""
Configuration management for Camera Node Service.

Uses Pydantic BaseSettings for type-safe configuration with environment variable support.
All settings can be overridden via environment variables with the CAMERA_NODE_ prefix.
"""

from __future__ import annotations

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class NodeConfig(BaseSettings):
    """
    Camera node configuration.

    All settings can be overridden via environment variables, e.g.:
    - CAMERA_NODE_WIDTH / CAMERA_NODE_HEIGHT: Sensor output size in pixels
    - CAMERA_NODE_DESIRED_FRAMERATE: Streaming rate in Hz (-1 = device maximum)
    - CAMERA_NODE_POLL_RATE_HZ: Convergence polling cadence
    - CAMERA_NODE_STALL_LIMIT: Unchanged brightness readings tolerated before aborting
    - CAMERA_NODE_BRIGHTNESS_HIGH_THRESHOLD: Targets above this get the long timeout
    - CAMERA_NODE_API_KEY: API key for authentication (optional, disables auth if not set)
    - CAMERA_NODE_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    model_config = SettingsConfigDict(
        env_prefix="CAMERA_NODE_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Image geometry
    width: int = Field(
        default=1280,
        description="Image width in pixels",
        ge=64,
        le=4608,
    )
    height: int = Field(
        default=720,
        description="Image height in pixels",
        ge=64,
        le=2592,
    )
    desired_framerate: float = Field(
        default=-1.0,
        description="Streaming rate in Hz, -1 selects the device maximum",
    )
    frame_id: str = Field(
        default="camera",
        description="Frame id stamped on every published image",
    )
    binning: int = Field(
        default=1,
        description="Binning factor reported in the camera info",
        ge=1,
        le=4,
    )

    # Device selection
    camera_num: int = Field(
        default=0,
        description="Index of the camera to open",
        ge=0,
    )
    camera_model: str = Field(
        default="imx708",
        description="Camera sensor model (imx708, imx477, etc.)",
    )
    tuning_file: str | None = Field(
        default=None,
        description="Path to libcamera tuning file (auto-detected if None)",
    )
    is_noir: bool = Field(
        default=False,
        description="True if using NoIR (No IR filter) camera module",
    )

    # Startup settings
    startup_exposure_us: float | None = Field(
        default=None,
        description="Exposure applied when the device is opened",
        gt=0,
    )
    startup_gain: float | None = Field(
        default=None,
        description="Gain applied when the device is opened",
        ge=0,
    )

    # Convergence policy
    poll_rate_hz: float = Field(
        default=10.0,
        description="Polling cadence of the convergence loops",
        gt=0,
        le=1000,
    )
    exposure_timeout_s: float = Field(default=5.0, gt=0, description="Exposure convergence budget")
    gain_timeout_s: float = Field(default=5.0, gt=0, description="Gain convergence budget")
    gain_tolerance_ratio: float = Field(
        default=0.01,
        gt=0,
        lt=1,
        description="Gain tolerance as a fraction of the target",
    )
    min_gain_tolerance: float = Field(
        default=0.001,
        gt=0,
        description="Lower bound on the gain tolerance",
    )
    brightness_timeout_s: float = Field(default=5.0, gt=0, description="Brightness convergence budget")
    brightness_high_timeout_s: float = Field(
        default=15.0,
        gt=0,
        description="Brightness budget for targets above brightness_high_threshold",
    )
    brightness_high_threshold: float = Field(
        default=205.0,
        description="Brightness targets above this value get the long timeout",
    )
    brightness_ready_timeout_s: float = Field(
        default=3.0,
        gt=0,
        description="How long a brightness request waits for the device to become ready",
    )
    stall_delta: float = Field(
        default=1.0,
        ge=0,
        description="Brightness change at or below which a reading counts as stalled",
    )
    stall_limit: int = Field(
        default=5,
        ge=1,
        description="Stalled readings tolerated before a brightness request is aborted",
    )

    # Picamera2 backend tuning
    brightness_tolerance: float = Field(
        default=2.5,
        gt=0,
        description="Accepted deviation between measured and target brightness",
    )
    exposure_step_us: float = Field(
        default=20.0,
        gt=0,
        description="Exposure granularity reported by the device",
    )
    auto_brightness_min: float = Field(default=50.0, ge=0, le=255)
    auto_brightness_max: float = Field(default=205.0, ge=0, le=255)
    min_exposure_us: float = Field(default=100.0, gt=0)
    max_exposure_us: float = Field(default=1_000_000.0, gt=0)

    # Streaming
    subscriber_queue_size: int = Field(
        default=2,
        ge=1,
        le=64,
        description="Frames buffered per stream subscriber before the oldest is dropped",
    )

    # API server configuration
    host: str = Field(
        default="0.0.0.0",
        description="API server host",
    )
    port: int = Field(
        default=8000,
        description="API server port",
        ge=1,
        le=65535,
    )

    # Security
    api_key: str | None = Field(
        default=None,
        description="API key for authentication (if not set, authentication is disabled)",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard Python logging levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v_upper

    @field_validator("desired_framerate")
    @classmethod
    def validate_desired_framerate(cls, v: float) -> float:
        """Accept -1 (device maximum) or a positive rate."""
        if v != -1 and v <= 0:
            raise ValueError("desired_framerate must be -1 or > 0")
        return v

    @model_validator(mode="after")
    def validate_ranges(self) -> "NodeConfig":
        """Check that paired limits are ordered."""
        if self.auto_brightness_min >= self.auto_brightness_max:
            raise ValueError("auto_brightness_min must be below auto_brightness_max")
        if self.min_exposure_us >= self.max_exposure_us:
            raise ValueError("min_exposure_us must be below max_exposure_us")
        return self

    @property
    def poll_interval_s(self) -> float:
        """Seconds between two convergence polls."""
        return 1.0 / self.poll_rate_hz


# Global configuration instance
CONFIG = NodeConfig()
