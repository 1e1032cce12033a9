"""
Picamera2 camera device.

Implements CameraDevice on a Raspberry Pi camera module through Picamera2:
exposure and gain through set_controls, readbacks from capture_metadata, and
a brightness search built on the libcamera AE loop plus a binary exposure
search for targets outside the AE range.
"""

from __future__ import annotations

import logging
import math
import os
from typing import TYPE_CHECKING, Any, Dict, Optional

import numpy as np

from camera_node.config import CONFIG, NodeConfig
from camera_node.device import CameraDevice
from camera_node.exceptions import CameraNotAvailableError, ConfigurationError

if TYPE_CHECKING:
    from picamera2 import Picamera2

logger = logging.getLogger(__name__)

# libcamera ExposureValue range
MIN_EV = -8.0
MAX_EV = 8.0


# (minimum pixel count, max framerate), largest first. Approximate limits for
# the IMX708; other camera_model values are given the same table.
IMX708_FRAMERATE_LIMITS = (
    (8_000_000, 30.0),
    (3_500_000, 40.0),
    (2_000_000, 50.0),
    (1_500_000, 60.0),
    (0, 120.0),
)


def calculate_max_framerate(width: int, height: int) -> float:
    """
    Approximate maximum framerate for a readout of ``width`` x ``height``.

    Larger readouts take longer, so the limit drops with the pixel count.
    """
    total_pixels = width * height
    for min_pixels, framerate in IMX708_FRAMERATE_LIMITS:
        if total_pixels >= min_pixels:
            return framerate
    return IMX708_FRAMERATE_LIMITS[-1][1]


def _load_picamera2() -> Any:
    from picamera2 import Picamera2

    return Picamera2


class Picamera2Device(CameraDevice):
    """
    Raspberry Pi camera behind the CameraDevice interface.

    The brightness search has two modes. Inside the AE range
    [auto_brightness_min, auto_brightness_max] the AE loop is enabled and its
    ExposureValue compensation is nudged by log2(target / current) per call.
    Outside that range AE cannot get there, so each call bisects the
    exposure time between min_exposure_us and max_exposure_us.
    """

    def __init__(self, config: NodeConfig = CONFIG, picam2: Optional["Picamera2"] = None) -> None:
        """
        Args:
            config: Node configuration
            picam2: Already constructed Picamera2 instance (created on open() if None)
        """
        self._config = config
        self._picam2 = picam2
        self._configured = False
        self._started = False
        self._has_frame = False
        self._metadata: Dict[str, Any] = {}

        # Brightness search state
        self._search_running = False
        self._ev = 0.0
        self._search_low: Optional[float] = None
        self._search_high: Optional[float] = None
        self._search_exposure: Optional[float] = None

    # ---------- Lifecycle ----------

    def _check_camera_available(self) -> bool:
        """
        Check if the configured camera is present.

        Returns:
            bool: True if the camera index is detected
        """
        try:
            cameras = _load_picamera2().global_camera_info()
            return len(cameras) > self._config.camera_num
        except Exception as e:
            logger.error(f"Error checking camera availability: {e}")
            return False

    def _detect_tuning_file(self) -> Optional[str]:
        """
        Auto-detect the appropriate tuning file for the camera.

        Returns:
            str: Path to tuning file, or None if not found
        """
        if self._config.tuning_file is not None:
            if os.path.exists(self._config.tuning_file):
                logger.info(f"Using configured tuning file: {self._config.tuning_file}")
                return self._config.tuning_file
            logger.warning(f"Configured tuning file not found: {self._config.tuning_file}")

        model = self._config.camera_model
        noir_suffix = "_noir" if self._config.is_noir else ""

        # Pi 5 (pisp) first, then Pi 4/Zero 2W (vc4)
        for platform in ("pisp", "vc4"):
            path = f"/usr/share/libcamera/ipa/rpi/{platform}/{model}{noir_suffix}.json"
            if os.path.exists(path):
                logger.info(f"Auto-detected tuning file ({platform}): {path}")
                return path

        logger.warning("Could not auto-detect tuning file, using default")
        return None

    def open(self) -> None:
        """
        Open and configure the camera.

        Raises:
            CameraNotAvailableError: If no camera is detected
            ConfigurationError: If configuration fails
        """
        if self._configured:
            logger.debug("Camera already configured, skipping")
            return

        logger.info("Configuring camera...")

        if self._picam2 is None:
            if not self._check_camera_available():
                raise CameraNotAvailableError("No camera detected. Check hardware connection.")

        try:
            if self._picam2 is None:
                picamera2_class = _load_picamera2()
                tuning_file = self._detect_tuning_file()
                if tuning_file:
                    self._picam2 = picamera2_class(
                        self._config.camera_num,
                        tuning=picamera2_class.load_tuning_file(tuning_file),
                    )
                else:
                    self._picam2 = picamera2_class(self._config.camera_num)

            video_config = self._picam2.create_video_configuration(
                main={
                    "size": (self._config.width, self._config.height),
                    "format": "RGB888",
                },
                controls={"FrameRate": self.max_framerate()},
            )
            self._picam2.configure(video_config)
            self._configured = True

            logger.info(f"Camera configured: {self._config.width}x{self._config.height} RGB888")

        except Exception as e:
            logger.error(f"Failed to configure camera: {e}")
            raise ConfigurationError(f"Camera configuration failed: {e}") from e

    def start_grabbing(self) -> None:
        if self._picam2 is None or not self._configured:
            raise CameraNotAvailableError("Camera not configured")
        if not self._started:
            self._picam2.start()
            self._started = True
        self._refresh_metadata()

    def close(self) -> None:
        if self._picam2 is None:
            return
        try:
            logger.info("Cleaning up camera resources...")
            self._picam2.close()
            logger.info("Camera closed successfully")
        except Exception as e:
            logger.error(f"Error closing camera: {e}")
        finally:
            self._picam2 = None
            self._configured = False
            self._started = False
            self._has_frame = False

    def is_ready(self) -> bool:
        return self._started and self._has_frame

    def is_removed(self) -> bool:
        return not self._check_camera_available()

    # ---------- Geometry ----------

    @property
    def width(self) -> int:
        return self._config.width

    @property
    def height(self) -> int:
        return self._config.height

    @property
    def channels(self) -> int:
        return 3

    @property
    def encoding(self) -> str:
        return "bgr8"

    def max_framerate(self) -> float:
        return calculate_max_framerate(self._config.width, self._config.height)

    # ---------- Acquisition ----------

    def _camera(self) -> "Picamera2":
        if self._picam2 is None or not self._started:
            raise CameraNotAvailableError("Camera not started")
        return self._picam2

    def _refresh_metadata(self) -> Dict[str, Any]:
        try:
            self._metadata = self._camera().capture_metadata()
            self._has_frame = True
        except CameraNotAvailableError:
            raise
        except Exception as e:
            logger.error(f"Error retrieving camera metadata: {e}")
        return self._metadata

    def grab(self, pixels: np.ndarray) -> bool:
        try:
            request = self._camera().capture_request()
        except CameraNotAvailableError:
            return False
        except Exception as e:
            logger.error(f"Error capturing frame: {e}")
            return False

        try:
            array = request.make_array("main")
            self._metadata = request.get_metadata()
        finally:
            request.release()

        if array.shape != pixels.shape:
            logger.warning(f"Frame shape {array.shape} does not match buffer {pixels.shape}")
            return False
        np.copyto(pixels, array)
        self._has_frame = True
        return True

    # ---------- Exposure / gain ----------

    def set_exposure(self, exposure_us: float) -> None:
        self._clear_search()
        self._camera().set_controls({"AeEnable": False, "ExposureTime": int(round(exposure_us))})
        logger.debug(f"ExposureTime set to {exposure_us}µs")

    def current_exposure(self) -> float:
        return float(self._refresh_metadata().get("ExposureTime", 0.0))

    def exposure_step(self) -> float:
        return self._config.exposure_step_us

    def set_gain(self, gain: float) -> None:
        self._camera().set_controls({"AeEnable": False, "AnalogueGain": gain})
        logger.debug(f"AnalogueGain set to {gain}")

    def current_gain(self) -> float:
        return float(self._refresh_metadata().get("AnalogueGain", 0.0))

    # ---------- Brightness auto search ----------

    def _in_auto_range(self, target: float) -> bool:
        return self._config.auto_brightness_min <= target <= self._config.auto_brightness_max

    def _clear_search(self) -> None:
        # Every search starts from the tuning file's own AE target
        self._ev = 0.0
        self._search_running = False
        self._search_low = None
        self._search_high = None
        self._search_exposure = None

    def set_brightness(self, target: float, current: float) -> bool:
        picam2 = self._camera()
        if self._in_auto_range(target):
            if current <= 0:
                return False
            step = math.log2(target / current)
            self._ev = min(MAX_EV, max(MIN_EV, self._ev + step))
            picam2.set_controls({"AeEnable": True, "ExposureValue": self._ev})
            self._search_running = True
            logger.debug(f"AE brightness search: EV={self._ev:.2f}")
            return True

        # Binary search over exposure time
        if self._search_exposure is None:
            self._search_low = self._config.min_exposure_us
            self._search_high = self._config.max_exposure_us
        elif current < target:
            self._search_low = self._search_exposure
        else:
            self._search_high = self._search_exposure

        self._search_exposure = (self._search_low + self._search_high) / 2.0
        picam2.set_controls({"AeEnable": False, "ExposureTime": int(round(self._search_exposure))})
        self._search_running = (self._search_high - self._search_low) > self._config.exposure_step_us
        logger.debug(
            f"Binary exposure search: [{self._search_low:.0f}, {self._search_high:.0f}] "
            f"-> {self._search_exposure:.0f}µs"
        )
        return True

    def disable_auto_search(self) -> None:
        if self._picam2 is not None and self._started:
            self._picam2.set_controls({"AeEnable": False})
        self._clear_search()

    def is_brightness_search_running(self) -> bool:
        return self._search_running

    def max_brightness_tolerance(self) -> float:
        return self._config.brightness_tolerance
