"""
Batch acquisition: one frame per setpoint, taken right after that setpoint
was applied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence

from camera_node.convergence import ConvergenceOutcome, SetpointKind, converge
from camera_node.exceptions import InvalidParameterError
from camera_node.frames import Frame

if TYPE_CHECKING:
    from camera_node.node import CameraNode

logger = logging.getLogger(__name__)

BATCH_KINDS = (SetpointKind.EXPOSURE, SetpointKind.BRIGHTNESS)

ProgressCallback = Callable[[int], None]


@dataclass(frozen=True)
class BatchRequest:
    """Setpoint kind plus the ordered targets, one frame per target."""

    kind: SetpointKind
    targets: Sequence[float]

    def __post_init__(self) -> None:
        try:
            kind = SetpointKind(self.kind)
        except ValueError as e:
            raise InvalidParameterError(f"Unknown setpoint kind '{self.kind}'") from e
        if kind not in BATCH_KINDS:
            raise InvalidParameterError(
                f"Batch acquisition supports {[k.value for k in BATCH_KINDS]}, not '{kind.value}'"
            )
        object.__setattr__(self, "kind", kind)
        object.__setattr__(self, "targets", tuple(float(t) for t in self.targets))


@dataclass
class BatchResult:
    """
    Outcome of a batch.

    ``frames`` holds one frame per target only when ``success`` is True. A
    failed batch keeps the reached values and outcomes of every item it
    processed, including the one that failed, but no imagery.
    """

    kind: SetpointKind
    frames: List[Frame] = field(default_factory=list)
    reached: List[float] = field(default_factory=list)
    outcomes: List[ConvergenceOutcome] = field(default_factory=list)
    success: bool = True
    failed_index: Optional[int] = None

    @property
    def completed(self) -> int:
        return len(self.reached)

    def to_dict(self, include_pixels: bool = True) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "success": self.success,
            "completed": self.completed,
            "failed_index": self.failed_index,
            "reached": list(self.reached),
            "converged": [o.converged for o in self.outcomes],
            "outcomes": [o.status.value for o in self.outcomes],
            "frames": [f.to_dict(include_pixels) for f in self.frames],
        }


def _abort(result: BatchResult, index: int, total: int, reason: str) -> None:
    logger.error(f"Batch acquisition aborted: {reason} at item {index + 1} of {total}")
    result.success = False
    result.failed_index = index


def run_batch(
    node: "CameraNode",
    request: BatchRequest,
    on_progress: Optional[ProgressCallback] = None,
) -> BatchResult:
    """
    Run a batch acquisition on ``node``.

    Holds node.lock for the whole batch so that no stream grab or other
    setpoint request can change the device between a setpoint and its frame.

    Args:
        node: Node owning the device
        request: Kind and targets
        on_progress: Called with the 1-based count of finished items

    Returns:
        BatchResult: Frames, reached values and the aggregate success flag
    """
    result = BatchResult(kind=request.kind)
    logger.info(f"Batch acquisition started: {request.kind.value} x {len(request.targets)}")

    with node.lock:
        for index, target in enumerate(request.targets):
            if node.shutdown_event.is_set():
                _abort(result, index, len(request.targets), "shutdown requested")
                break

            # A missed setpoint is best effort, only a failed grab fails the batch
            outcome = converge(node, request.kind, target)
            result.outcomes.append(outcome)
            result.reached.append(outcome.reached)

            if node.shutdown_event.is_set():
                _abort(result, index, len(request.targets), "shutdown requested")
                break

            frame = node.new_frame()
            grabbed = node.grab_into(frame)
            result.frames.append(frame)

            if on_progress is not None:
                on_progress(index + 1)

            if not grabbed:
                _abort(result, index, len(request.targets), "grab failed")
                break

    if not result.success:
        result.frames.clear()
    else:
        logger.info(f"Batch acquisition finished: {result.completed} frames")
    return result
