"""
Custom exceptions for the Camera Node Service.

This module defines all custom exceptions used throughout the application
for better error handling and categorization.

Convergence failures (timeout, stall, not ready) are not exceptions: they are
reported through ConvergenceStatus so every setpoint response carries the
best value reached.
"""

from __future__ import annotations

from enum import Enum


class CameraError(Exception):
    """
    Base exception for all camera-related errors.

    This is the parent class for all camera node exceptions,
    allowing for broad exception handling when needed.
    """
    pass


class CameraNotAvailableError(CameraError):
    """
    Raised when the camera hardware is not available or cannot be initialized.

    This typically occurs when:
    - No camera is physically connected
    - Camera is already in use by another process
    - The node has not been started yet
    """
    pass


class DeviceNotReadyError(CameraError):
    """
    Raised when the device is open but not producing data yet.
    """
    pass


class GrabError(CameraError):
    """
    Raised when a single frame acquisition fails.
    """
    pass


class DeviceRemovedError(GrabError):
    """
    Raised when a grab failed because the device is physically gone.

    Fatal: no further operation can succeed, the node shuts down.
    """
    pass


class InvalidFrameError(GrabError):
    """
    Raised when the device returned an unusable frame.

    Transient: the frame is skipped and the next grab may succeed.
    """
    pass


class InvalidParameterError(CameraError):
    """
    Raised when invalid parameters are provided to camera operations.

    This includes:
    - Out of range setpoint targets
    - Setpoint kinds a batch does not support
    - Unknown digital output ids
    """
    pass


class ConfigurationError(CameraError):
    """
    Raised when camera configuration fails.

    This typically occurs when:
    - Hardware doesn't support the requested geometry
    - The device rejects its startup settings
    """
    pass


class ConvergenceStatus(str, Enum):
    """Why a convergence call returned."""

    CONVERGED = "converged"
    ALREADY_REACHED = "already_reached"
    NOT_READY = "not_ready"
    TIMEOUT = "timeout"
    STALLED = "stalled"
    GRAB_FAILED = "grab_failed"
    SHUTDOWN = "shutdown"

    @property
    def converged(self) -> bool:
        return self in (ConvergenceStatus.CONVERGED, ConvergenceStatus.ALREADY_REACHED)
