"""
Camera hardware interface.

Everything the node needs from a physical camera. Implementations perform the
actual register writes and pixel transfers; the node serializes every call
through its resource lock, so implementations need not be thread-safe.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

import numpy as np


class CameraDevice(ABC):
    """Abstract camera device driven by CameraNode."""

    # ---------- Lifecycle ----------

    @abstractmethod
    def open(self) -> None:
        """Open the device and apply its configuration."""

    @abstractmethod
    def start_grabbing(self) -> None:
        """Start acquisition so that grab() can deliver frames."""

    @abstractmethod
    def close(self) -> None:
        """Release the device."""

    @abstractmethod
    def is_ready(self) -> bool:
        """True once the device is open and producing data."""

    @abstractmethod
    def is_removed(self) -> bool:
        """True if the device has been physically disconnected."""

    # ---------- Geometry ----------

    @property
    @abstractmethod
    def width(self) -> int: ...

    @property
    @abstractmethod
    def height(self) -> int: ...

    @property
    @abstractmethod
    def channels(self) -> int: ...

    @property
    @abstractmethod
    def encoding(self) -> str: ...

    @abstractmethod
    def max_framerate(self) -> float:
        """Highest frame rate the current configuration supports."""

    # ---------- Acquisition ----------

    @abstractmethod
    def grab(self, pixels: np.ndarray) -> bool:
        """
        Acquire one frame into ``pixels`` in place.

        Args:
            pixels: Preallocated uint8 array of shape (height, width, channels)

        Returns:
            bool: False if no valid frame could be acquired
        """

    # ---------- Exposure / gain ----------

    @abstractmethod
    def set_exposure(self, exposure_us: float) -> None: ...

    @abstractmethod
    def current_exposure(self) -> float: ...

    @abstractmethod
    def exposure_step(self) -> float:
        """Smallest exposure difference the device can resolve."""

    @abstractmethod
    def set_gain(self, gain: float) -> None: ...

    @abstractmethod
    def current_gain(self) -> float: ...

    # ---------- Brightness auto search ----------

    @abstractmethod
    def set_brightness(self, target: float, current: float) -> bool:
        """
        Advance the device's brightness search toward ``target``.

        The search is opaque: it may run an internal auto function or a
        binary search over exposure. ``current`` is the most recent measured
        brightness. Returns False if the device rejected the request.
        """

    @abstractmethod
    def disable_auto_search(self) -> None:
        """Stop any running brightness search."""

    @abstractmethod
    def is_brightness_search_running(self) -> bool: ...

    @abstractmethod
    def max_brightness_tolerance(self) -> float:
        """Accepted deviation between measured and target brightness."""

    # ---------- Digital outputs ----------

    def user_output_ids(self) -> Sequence[int]:
        """Ids of the digital outputs this device exposes."""
        return ()

    def set_user_output(self, output_id: int, value: bool) -> bool:
        """Drive a digital output. Devices without outputs report failure."""
        return False
