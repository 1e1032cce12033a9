"""
Setpoint convergence for exposure, gain and brightness.

All three setpoints share one polling skeleton (converge()): readiness gate,
short-circuit when already within tolerance, one command, then a fixed-rate
poll until the target is reached, the time budget runs out, the reading
stalls or the node shuts down. Each kind plugs into the skeleton through a
ConvergenceStrategy.

The device's own auto search is opaque and may never terminate, so the
timeout and the stall detector are enforced here, not trusted to the device.
Convergence never raises for a missed target; the outcome says why it
stopped and carries the best value reached.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from camera_node.exceptions import ConvergenceStatus, InvalidParameterError
from camera_node.frames import mean_brightness

if TYPE_CHECKING:
    from camera_node.node import CameraNode

logger = logging.getLogger(__name__)

# Cadence of the brightness readiness poll
READY_POLL_INTERVAL_S = 0.02


class SetpointKind(str, Enum):
    """Hardware parameter a setpoint request targets."""

    EXPOSURE = "exposure"
    GAIN = "gain"
    BRIGHTNESS = "brightness"


@dataclass(frozen=True)
class Setpoint:
    """A target plus the tolerance and time budget used to reach it."""

    kind: SetpointKind
    target: float
    tolerance: float
    timeout_s: float

    def __post_init__(self) -> None:
        if not self.tolerance > 0:
            raise InvalidParameterError(
                f"{self.kind.value} tolerance must be > 0 (got {self.tolerance})"
            )
        if not self.timeout_s > 0:
            raise InvalidParameterError(
                f"{self.kind.value} timeout must be > 0 (got {self.timeout_s})"
            )

    def is_reached(self, value: float) -> bool:
        return abs(value - self.target) < self.tolerance


@dataclass(frozen=True)
class ConvergenceOutcome:
    """Result of one convergence call."""

    kind: SetpointKind
    target: float
    reached: float
    status: ConvergenceStatus
    elapsed_s: float = 0.0
    iterations: int = 0

    @property
    def converged(self) -> bool:
        return self.status.converged


class StallDetector:
    """
    Counts consecutive readings that barely move.

    A reading within ``delta`` of the previous one extends the streak, any
    larger change resets it. Stalled once the streak exceeds ``limit``.
    """

    def __init__(self, initial: float, delta: float, limit: int) -> None:
        self._last = initial
        self._delta = delta
        self._limit = limit
        self.count = 0

    def update(self, value: float) -> bool:
        if abs(value - self._last) <= self._delta:
            self.count += 1
        else:
            self.count = 0
        self._last = value
        return self.count > self._limit


class ConvergenceStrategy(ABC):
    """Per-kind hooks plugged into the converge() skeleton."""

    kind: SetpointKind
    detects_stall = False

    def __init__(self, node: "CameraNode") -> None:
        self.node = node
        self.device = node.device
        self.config = node.config

    @abstractmethod
    def setpoint(self, target: float) -> Setpoint: ...

    def wait_until_ready(self) -> bool:
        return self.device.is_ready()

    @abstractmethod
    def measure(self) -> Optional[float]:
        """Current value, or None if it could not be read."""

    @abstractmethod
    def command(self, target: float, current: float) -> None: ...

    def refresh(self, target: float, current: float) -> None:
        """Called before every measurement after the first."""

    def finish(self, converged: bool) -> None:
        """Called once when the poll loop ends."""


class ExposureStrategy(ConvergenceStrategy):
    kind = SetpointKind.EXPOSURE

    def setpoint(self, target: float) -> Setpoint:
        return Setpoint(
            kind=self.kind,
            target=target,
            tolerance=self.device.exposure_step(),
            timeout_s=self.config.exposure_timeout_s,
        )

    def measure(self) -> Optional[float]:
        return float(self.device.current_exposure())

    def command(self, target: float, current: float) -> None:
        self.device.set_exposure(target)


class GainStrategy(ConvergenceStrategy):
    kind = SetpointKind.GAIN

    def setpoint(self, target: float) -> Setpoint:
        tolerance = max(
            abs(target) * self.config.gain_tolerance_ratio,
            self.config.min_gain_tolerance,
        )
        return Setpoint(
            kind=self.kind,
            target=target,
            tolerance=tolerance,
            timeout_s=self.config.gain_timeout_s,
        )

    def measure(self) -> Optional[float]:
        return float(self.device.current_gain())

    def command(self, target: float, current: float) -> None:
        self.device.set_gain(target)


class BrightnessStrategy(ConvergenceStrategy):
    """
    Brightness is measured, not read back: every poll grabs a frame and
    averages it. The device search is re-issued before each poll because a
    binary search over exposure needs the latest measurement to advance.
    """

    kind = SetpointKind.BRIGHTNESS
    detects_stall = True

    def setpoint(self, target: float) -> Setpoint:
        if target > self.config.brightness_high_threshold:
            # Bright targets need long exposures, give the search more time
            timeout_s = self.config.brightness_high_timeout_s
        else:
            timeout_s = self.config.brightness_timeout_s
        return Setpoint(
            kind=self.kind,
            target=target,
            tolerance=self.device.max_brightness_tolerance(),
            timeout_s=timeout_s,
        )

    def wait_until_ready(self) -> bool:
        # Measuring needs at least one valid frame from the device
        deadline = time.monotonic() + self.config.brightness_ready_timeout_s
        shutdown = self.node.shutdown_event
        while not shutdown.is_set():
            if self.device.is_ready():
                return True
            if time.monotonic() >= deadline:
                logger.error(
                    f"Device not ready after waiting "
                    f"{self.config.brightness_ready_timeout_s}s for brightness search"
                )
                return False
            shutdown.wait(READY_POLL_INTERVAL_S)
        return False

    def measure(self) -> Optional[float]:
        if not self.node.grab_image():
            return None
        return mean_brightness(self.node.last_frame)

    def command(self, target: float, current: float) -> None:
        if not self.device.set_brightness(target, current):
            logger.warning(f"Device rejected brightness search step toward {target}")

    def refresh(self, target: float, current: float) -> None:
        if not self.device.is_brightness_search_running():
            logger.debug(f"Brightness search not running, current brightness = {current}")
        self.command(target, current)

    def finish(self, converged: bool) -> None:
        # Stop the device from hunting once the caller has its answer
        self.device.disable_auto_search()


STRATEGIES = {
    SetpointKind.EXPOSURE: ExposureStrategy,
    SetpointKind.GAIN: GainStrategy,
    SetpointKind.BRIGHTNESS: BrightnessStrategy,
}


def converge(node: "CameraNode", kind: SetpointKind, target: float) -> ConvergenceOutcome:
    """
    Drive ``kind`` toward ``target`` and wait for the device to get there.

    The caller must hold node.lock for the whole call.

    Args:
        node: Node owning the device
        kind: Setpoint kind
        target: Requested value

    Returns:
        ConvergenceOutcome: Final reading and the reason the call returned
    """
    strategy = STRATEGIES[SetpointKind(kind)](node)
    setpoint = strategy.setpoint(target)
    shutdown = node.shutdown_event
    interval = node.config.poll_interval_s
    kind = setpoint.kind

    if not strategy.wait_until_ready():
        logger.warning(f"Cannot set {kind.value}: device is not ready")
        return ConvergenceOutcome(kind, target, 0.0, ConvergenceStatus.NOT_READY)

    current = strategy.measure()
    if current is None:
        logger.error(f"Cannot set {kind.value}: failed to measure the current value")
        return ConvergenceOutcome(kind, target, 0.0, ConvergenceStatus.GRAB_FAILED)

    logger.info(f"New {kind.value} request: target={target}, current={current}")

    if setpoint.is_reached(current):
        logger.info(f"Desired {kind.value} already reached: {current}")
        return ConvergenceOutcome(kind, target, current, ConvergenceStatus.ALREADY_REACHED)

    if shutdown.is_set():
        logger.info(f"{kind.value.capitalize()} request dropped, node is shutting down")
        return ConvergenceOutcome(kind, target, current, ConvergenceStatus.SHUTDOWN)

    strategy.command(target, current)

    stall = None
    if strategy.detects_stall:
        stall = StallDetector(current, node.config.stall_delta, node.config.stall_limit)

    start = time.monotonic()
    iterations = 0
    status = ConvergenceStatus.SHUTDOWN
    while not shutdown.is_set():
        if iterations > 0:
            strategy.refresh(target, current)
        iterations += 1

        measured = strategy.measure()
        if measured is not None:
            current = measured

        if setpoint.is_reached(current):
            status = ConvergenceStatus.CONVERGED
            break

        elapsed = time.monotonic() - start
        if elapsed >= setpoint.timeout_s:
            logger.error(
                f"Did not reach the desired {kind.value} within {setpoint.timeout_s}s, "
                f"stuck at {current} (target {target})"
            )
            status = ConvergenceStatus.TIMEOUT
            break

        if stall is not None and measured is not None and stall.update(current):
            logger.error(
                f"{kind.value.capitalize()} stalled at {current} for {stall.count} readings, "
                f"target {target} seems unreachable with the current settings"
            )
            status = ConvergenceStatus.STALLED
            break

        shutdown.wait(interval)

    strategy.finish(status is ConvergenceStatus.CONVERGED)
    elapsed = time.monotonic() - start
    if status is ConvergenceStatus.CONVERGED:
        logger.info(f"{kind.value.capitalize()} reached: {current} after {elapsed:.2f}s")
    elif status is ConvergenceStatus.SHUTDOWN:
        logger.info(f"{kind.value.capitalize()} request interrupted by shutdown at {current}")
    return ConvergenceOutcome(kind, target, current, status, elapsed, iterations)
