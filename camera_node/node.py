"""
Camera node: the single owner of the camera device.

Provides thread-safe access to the device for streaming grabs, setpoint
requests (exposure, gain, brightness) and batch acquisitions. Every device
access goes through one reentrant lock.
"""

from __future__ import annotations

import logging
from threading import Event, RLock
from typing import Any, Callable, Dict, Optional

from camera_node.batch import BatchRequest, BatchResult, ProgressCallback, run_batch
from camera_node.config import CONFIG, NodeConfig
from camera_node.convergence import ConvergenceOutcome, SetpointKind, converge
from camera_node.device import CameraDevice
from camera_node.exceptions import (
    CameraNotAvailableError,
    ConfigurationError,
    DeviceNotReadyError,
    DeviceRemovedError,
    GrabError,
    InvalidFrameError,
    InvalidParameterError,
)
from camera_node.frames import CameraInfo, Frame

logger = logging.getLogger(__name__)

MAX_BRIGHTNESS = 255.0

FatalCallback = Callable[[str], None]


class CameraNode:
    """
    Thread-safe controller around one CameraDevice.

    Owns the device handle, the reusable last frame, the administrative pause
    flag and the process-wide shutdown event. Uses an RLock so that a
    brightness request can grab frames while already holding the lock.
    """

    def __init__(
        self,
        device: CameraDevice,
        config: NodeConfig = CONFIG,
        on_fatal: Optional[FatalCallback] = None,
    ) -> None:
        """
        Initialize the camera node.

        Args:
            device: Camera hardware to drive
            config: Node configuration
            on_fatal: Called once, with a reason, when the device is lost
        """
        self._device = device
        self._config = config
        self._on_fatal = on_fatal
        self._lock = RLock()  # Reentrant lock for nested lock acquisition
        self._shutdown = Event()
        self._started = False
        self._paused = False
        self._fatal_reason: Optional[str] = None
        self._last_frame: Optional[Frame] = None
        self._camera_info: Optional[CameraInfo] = None
        self._framerate = config.desired_framerate

        logger.debug("CameraNode initialized")

    # ---------- Lifecycle ----------

    def start(self) -> None:
        """
        Open the device, apply startup settings and start grabbing.

        Raises:
            CameraNotAvailableError: If the device cannot be opened
            ConfigurationError: If startup settings are rejected
        """
        with self._lock:
            if self._started:
                logger.debug("Node already started, skipping")
                return

            logger.info("Starting camera node...")
            self._device.open()

            try:
                if self._config.startup_exposure_us is not None:
                    self._device.set_exposure(self._config.startup_exposure_us)
                if self._config.startup_gain is not None:
                    self._device.set_gain(self._config.startup_gain)
            except Exception as e:
                logger.error(f"Failed to apply startup settings: {e}")
                raise ConfigurationError(f"Startup settings rejected: {e}") from e

            self._device.start_grabbing()

            self._last_frame = self.new_frame()
            self._camera_info = CameraInfo(
                frame_id=self._config.frame_id,
                width=self._device.width,
                height=self._device.height,
                binning_x=self._config.binning,
                binning_y=self._config.binning,
            )
            self._framerate = self._resolve_framerate()
            self._started = True

            logger.info(
                f"Camera node started: {self._device.width}x{self._device.height} "
                f"{self._device.encoding} @ {self._framerate:.2f}Hz"
            )

    def _resolve_framerate(self) -> float:
        max_rate = self._device.max_framerate()
        desired = self._config.desired_framerate
        if desired == -1:
            logger.info(f"Max possible framerate is {max_rate:.2f} Hz")
            return max_rate
        if desired > max_rate:
            logger.info(
                f"Desired framerate {desired:.2f} is higher than max possible. "
                f"Will limit framerate to: {max_rate:.2f} Hz"
            )
            return max_rate
        return desired

    def close(self) -> None:
        """
        Stop every loop and release the device.

        Should be called during application shutdown.
        """
        self._shutdown.set()
        with self._lock:
            if not self._started:
                return
            try:
                logger.info("Closing camera device...")
                self._device.close()
                logger.info("Camera device closed successfully")
            except Exception as e:
                logger.error(f"Error closing camera device: {e}")
            finally:
                self._started = False

    def request_shutdown(self, reason: str) -> None:
        """
        Run the fatal shutdown path.

        Sets the shutdown event so that every loop exits, then notifies
        on_fatal. Only the first call has any effect.
        """
        with self._lock:
            if self._fatal_reason is not None:
                return
            self._fatal_reason = reason
        logger.critical(f"Shutting down camera node: {reason}")
        self._shutdown.set()
        if self._on_fatal is not None:
            self._on_fatal(reason)

    # ---------- Accessors ----------

    @property
    def lock(self) -> RLock:
        return self._lock

    @property
    def device(self) -> CameraDevice:
        return self._device

    @property
    def config(self) -> NodeConfig:
        return self._config

    @property
    def shutdown_event(self) -> Event:
        return self._shutdown

    @property
    def started(self) -> bool:
        return self._started

    @property
    def framerate(self) -> float:
        return self._framerate

    @property
    def fatal_reason(self) -> Optional[str]:
        return self._fatal_reason

    @property
    def last_frame(self) -> Frame:
        """
        The reusable streaming frame. Only valid while holding the lock.

        Raises:
            CameraNotAvailableError: If the node has not been started
        """
        if self._last_frame is None:
            raise CameraNotAvailableError("Camera node not started")
        return self._last_frame

    @property
    def camera_info(self) -> CameraInfo:
        if self._camera_info is None:
            raise CameraNotAvailableError("Camera node not started")
        return self._camera_info

    def is_ready(self) -> bool:
        with self._lock:
            return self._started and self._device.is_ready()

    def new_frame(self) -> Frame:
        """Allocate a frame matching the device geometry."""
        return Frame.allocate(
            width=self._device.width,
            height=self._device.height,
            channels=self._device.channels,
            encoding=self._device.encoding,
            frame_id=self._config.frame_id,
        )

    # ---------- Pause ----------

    @property
    def paused(self) -> bool:
        return self._paused

    def set_paused(self, paused: bool) -> bool:
        """
        Set the administrative pause flag.

        Pausing only stops the continuous stream; setpoint and batch requests
        keep working.
        """
        self._paused = bool(paused)
        if self._paused:
            logger.info("Setting camera node to sleep...")
        else:
            logger.info("Camera node continues grabbing")
        return True

    # ---------- Acquisition ----------

    def _grab(self, frame: Frame) -> None:
        """
        Grab one frame into ``frame``.

        Raises:
            CameraNotAvailableError: If the node has not been started
            DeviceRemovedError: If the device has been disconnected
            InvalidFrameError: If the device returned no valid frame
        """
        with self._lock:
            if not self._started:
                raise CameraNotAvailableError("Camera node not started")
            if not self._device.grab(frame.pixels):
                if self._device.is_removed():
                    raise DeviceRemovedError("Camera has been removed")
                raise InvalidFrameError("Camera returned invalid image")
            frame.stamp()

    def grab_into(self, frame: Frame) -> bool:
        """
        Grab into ``frame`` and classify failures.

        A removed device runs the fatal shutdown path, any other failure is
        logged and skipped. Never retries.
        """
        try:
            self._grab(frame)
            return True
        except DeviceRemovedError as e:
            logger.error(f"{e}!")
            self.request_shutdown(str(e))
        except GrabError as e:
            logger.warning(f"{e}! Skipping")
        return False

    def grab_image(self) -> bool:
        """Grab into the reusable last frame."""
        with self._lock:
            ok = self.grab_into(self.last_frame)
            if ok:
                self.camera_info.timestamp = self.last_frame.timestamp
            return ok

    # ---------- Setpoints ----------

    def converge(self, kind: SetpointKind, target: float) -> ConvergenceOutcome:
        """
        Drive a setpoint toward ``target`` under the lock.

        Holds the lock for the entire convergence, including the poll sleeps,
        so no other caller can touch the device meanwhile.

        Raises:
            CameraNotAvailableError: If the node has not been started
        """
        with self._lock:
            if not self._started:
                raise CameraNotAvailableError("Camera node not started")
            return converge(self, kind, target)

    def set_exposure(self, target_us: float) -> ConvergenceOutcome:
        """
        Set exposure time and wait until the device reports it.

        Args:
            target_us: Exposure time in microseconds

        Raises:
            InvalidParameterError: If the target is not positive
        """
        if target_us <= 0:
            raise InvalidParameterError(f"exposure must be > 0 (got {target_us})")
        return self.converge(SetpointKind.EXPOSURE, target_us)

    def set_gain(self, target: float) -> ConvergenceOutcome:
        """
        Set gain and wait until the device reports it.

        Raises:
            InvalidParameterError: If the target is negative
        """
        if target < 0:
            raise InvalidParameterError(f"gain must be >= 0 (got {target})")
        return self.converge(SetpointKind.GAIN, target)

    def set_brightness(self, target: float) -> ConvergenceOutcome:
        """
        Search for settings that give the requested mean image brightness.

        Args:
            target: Mean brightness (0-255)

        Raises:
            InvalidParameterError: If the target is outside 0-255
        """
        if target < 0 or target > MAX_BRIGHTNESS:
            raise InvalidParameterError(
                f"brightness must be between 0 and {MAX_BRIGHTNESS:.0f} (got {target})"
            )
        return self.converge(SetpointKind.BRIGHTNESS, target)

    def run_batch(
        self, request: BatchRequest, on_progress: Optional[ProgressCallback] = None
    ) -> BatchResult:
        """
        Run a batch acquisition.

        Raises:
            CameraNotAvailableError: If the node has not been started
        """
        with self._lock:
            if not self._started:
                raise CameraNotAvailableError("Camera node not started")
            return run_batch(self, request, on_progress)

    # ---------- Digital outputs ----------

    def set_user_output(self, output_id: int, value: bool) -> bool:
        """
        Drive one of the device's digital outputs.

        Raises:
            InvalidParameterError: If the device has no such output
        """
        with self._lock:
            if output_id not in self._device.user_output_ids():
                raise InvalidParameterError(f"Unknown digital output {output_id}")
            success = self._device.set_user_output(output_id, value)
            logger.info(f"Digital output {output_id} set to {value}: success={success}")
            return success

    # ---------- Status ----------

    def get_status(self) -> Dict[str, Any]:
        """
        Get current node status.

        Raises:
            CameraNotAvailableError: If the node has not been started
            DeviceNotReadyError: If the device cannot report its settings yet
        """
        with self._lock:
            if not self._started:
                raise CameraNotAvailableError("Camera node not started")
            if not self._device.is_ready():
                raise DeviceNotReadyError("Camera is not ready")
            return {
                "device_ready": True,
                "paused": self._paused,
                "exposure_us": self._device.current_exposure(),
                "gain": self._device.current_gain(),
                "brightness_search_running": self._device.is_brightness_search_running(),
                "width": self._device.width,
                "height": self._device.height,
                "encoding": self._device.encoding,
                "framerate": self._framerate,
                "user_outputs": list(self._device.user_output_ids()),
            }
