"""
Frame model, camera info metadata and the brightness measurement.
"""

from __future__ import annotations

import base64
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List

import numpy as np

from camera_node.exceptions import InvalidFrameError


@dataclass
class Frame:
    """
    One image buffer plus its geometry.

    The node reuses a single Frame for streaming; ``pixels`` is overwritten in
    place by every grab, so callers that keep a frame must copy() it.
    """

    pixels: np.ndarray
    encoding: str
    frame_id: str
    timestamp: float = 0.0

    @classmethod
    def allocate(
        cls, width: int, height: int, channels: int, encoding: str, frame_id: str
    ) -> "Frame":
        """Create a zeroed frame with the given geometry."""
        pixels = np.zeros((height, width, channels), dtype=np.uint8)
        return cls(pixels=pixels, encoding=encoding, frame_id=frame_id)

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def step(self) -> int:
        """Full row length in bytes."""
        return int(self.pixels.strides[0])

    def stamp(self) -> None:
        self.timestamp = time.time()

    def copy(self) -> "Frame":
        return Frame(
            pixels=self.pixels.copy(),
            encoding=self.encoding,
            frame_id=self.frame_id,
            timestamp=self.timestamp,
        )

    def header(self) -> Dict[str, Any]:
        """Geometry and timestamp without the pixel data."""
        return {
            "frame_id": self.frame_id,
            "timestamp": self.timestamp,
            "width": self.width,
            "height": self.height,
            "step": self.step,
            "encoding": self.encoding,
        }

    def to_dict(self, include_pixels: bool = True) -> Dict[str, Any]:
        data = self.header()
        if include_pixels:
            data["data"] = base64.b64encode(self.pixels.tobytes()).decode("ascii")
        return data


@dataclass
class CameraInfo:
    """
    Calibration metadata for an uncalibrated camera.

    Clients may assume that K[0] == 0.0 means the camera is uncalibrated, so
    D, K, R and P stay zeroed and the distortion model stays empty.
    """

    frame_id: str
    width: int
    height: int
    binning_x: int = 1
    binning_y: int = 1
    timestamp: float = 0.0
    distortion_model: str = ""
    D: List[float] = field(default_factory=lambda: [0.0] * 5)
    K: List[float] = field(default_factory=lambda: [0.0] * 9)
    R: List[float] = field(default_factory=lambda: [0.0] * 9)
    P: List[float] = field(default_factory=lambda: [0.0] * 12)
    # A zero ROI means full resolution
    roi: Dict[str, int] = field(
        default_factory=lambda: {"x_offset": 0, "y_offset": 0, "width": 0, "height": 0}
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frame_id": self.frame_id,
            "timestamp": self.timestamp,
            "width": self.width,
            "height": self.height,
            "distortion_model": self.distortion_model,
            "D": list(self.D),
            "K": list(self.K),
            "R": list(self.R),
            "P": list(self.P),
            "binning_x": self.binning_x,
            "binning_y": self.binning_y,
            "roi": dict(self.roi),
        }


def mean_brightness(frame: Frame) -> float:
    """
    Mean over every sample of the frame's pixel buffer.

    Raises:
        InvalidFrameError: If the frame holds no samples
    """
    if frame.pixels.size == 0:
        raise InvalidFrameError("Cannot measure brightness of an empty frame")
    return float(frame.pixels.mean())
