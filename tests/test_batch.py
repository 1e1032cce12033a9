"""
Tests for batch acquisition.

Tests ordering between setpoints and grabs, partial failure handling,
progress reporting and request validation.
"""

import pytest

from camera_node.batch import BatchRequest, BatchResult
from camera_node.convergence import SetpointKind
from camera_node.exceptions import ConvergenceStatus, InvalidParameterError
from camera_node.node import CameraNode


class TestBatchRequest:
    """Test batch request validation."""

    def test_kind_from_string(self):
        """Test that kind strings are converted to SetpointKind."""
        request = BatchRequest(kind="brightness", targets=[10, 20])

        assert request.kind is SetpointKind.BRIGHTNESS
        assert request.targets == (10.0, 20.0)

    def test_gain_not_supported(self):
        """Test that gain batches are rejected."""
        with pytest.raises(InvalidParameterError):
            BatchRequest(kind=SetpointKind.GAIN, targets=[1.0])

    def test_unknown_kind(self):
        """Test that unknown kinds are rejected."""
        with pytest.raises(InvalidParameterError):
            BatchRequest(kind="focus", targets=[1.0])


class TestRunBatch:
    """Test the batch state machine."""

    def test_empty_batch(self, camera_node, fake_device):
        """Test that an empty batch succeeds without touching the device."""
        result = camera_node.run_batch(BatchRequest(kind="exposure", targets=[]))

        assert result.success is True
        assert result.frames == []
        assert result.reached == []
        assert fake_device.count("grab") == 0

    def test_frame_taken_after_its_setpoint(self, camera_node, fake_device):
        """Test that each frame is grabbed only after its setpoint converged."""
        result = camera_node.run_batch(
            BatchRequest(kind="exposure", targets=[1000, 2000, 3000])
        )

        assert result.success is True
        assert result.reached == [1000.0, 2000.0, 3000.0]
        assert len(result.frames) == 3
        assert fake_device.filtered("set_exposure", "grab") == [
            ("set_exposure", 1000.0),
            ("grab",),
            ("set_exposure", 2000.0),
            ("grab",),
            ("set_exposure", 3000.0),
            ("grab",),
        ]

    def test_frames_are_distinct_buffers(self, camera_node, fake_device):
        """Test that batch frames do not share pixel memory with each other."""
        fake_device.brightness_sequence = [10, 20, 30]

        result = camera_node.run_batch(BatchRequest(kind="exposure", targets=[1000, 2000, 3000]))

        assert [int(f.pixels[0, 0, 0]) for f in result.frames] == [10, 20, 30]
        assert result.frames[0].pixels is not camera_node.last_frame.pixels

    def test_partial_failure_clears_frames(self, camera_node, fake_device, on_fatal):
        """Test that a failed grab aborts the batch and drops all frames."""
        fake_device.grab_results = [True, False, True]
        progress = []

        result = camera_node.run_batch(
            BatchRequest(kind="exposure", targets=[1000, 2000, 3000]),
            on_progress=progress.append,
        )

        assert result.success is False
        assert result.frames == []
        assert result.reached == [1000.0, 2000.0]
        assert result.failed_index == 1
        assert result.completed == 2
        assert progress == [1, 2]
        # Third target never processed
        assert ("set_exposure", 3000.0) not in fake_device.calls
        on_fatal.assert_not_called()

    def test_progress_is_one_based_and_monotonic(self, camera_node):
        """Test that progress counts finished items starting at 1."""
        progress = []

        camera_node.run_batch(
            BatchRequest(kind="exposure", targets=[1000, 2000, 3000, 4000]),
            on_progress=progress.append,
        )

        assert progress == [1, 2, 3, 4]

    def test_non_converged_item_does_not_fail_batch(self, fake_device, make_config):
        """Test that a missed setpoint is best effort and still yields a frame."""
        node = CameraNode(fake_device, make_config(exposure_timeout_s=0.05))
        node.start()
        fake_device.frozen = True

        result = node.run_batch(BatchRequest(kind="exposure", targets=[1000, 2000]))
        node.close()

        assert result.success is True
        assert len(result.frames) == 2
        assert result.reached == [500.0, 500.0]
        assert [o.status for o in result.outcomes] == [ConvergenceStatus.TIMEOUT] * 2

    def test_brightness_batch(self, camera_node, fake_device):
        """Test a brightness batch, where convergence itself grabs frames."""
        fake_device.brightness_sequence = [50, 100, 100, 150, 150]

        result = camera_node.run_batch(BatchRequest(kind="brightness", targets=[100, 150]))

        assert result.success is True
        assert result.reached == [100.0, 150.0]
        assert [int(f.pixels.mean()) for f in result.frames] == [100, 150]

    def test_shutdown_stops_remaining_items(self, camera_node, fake_device):
        """Test that a shutdown during a batch leaves later targets untouched."""
        progress = []

        def on_progress(completed):
            progress.append(completed)
            camera_node.shutdown_event.set()

        result = camera_node.run_batch(
            BatchRequest(kind="exposure", targets=[1000, 2000, 3000, 4000]),
            on_progress=on_progress,
        )

        assert progress == [1]
        assert fake_device.filtered("set_exposure") == [("set_exposure", 1000.0)]
        assert fake_device.count("grab") == 1
        assert result.success is False
        assert result.frames == []
        assert result.reached == [1000.0]
        assert result.failed_index == 1

    def test_shutdown_before_batch(self, camera_node, fake_device):
        """Test that a batch started during shutdown does nothing."""
        camera_node.shutdown_event.set()

        result = camera_node.run_batch(BatchRequest(kind="exposure", targets=[1000]))

        assert result.success is False
        assert result.reached == []
        assert fake_device.count("set_exposure") == 0
        assert fake_device.count("grab") == 0

    def test_device_removed_mid_batch(self, camera_node, fake_device, on_fatal):
        """Test that a removed device aborts the batch and triggers shutdown once."""
        fake_device.grab_results = [False]
        fake_device.removed = True

        result = camera_node.run_batch(BatchRequest(kind="exposure", targets=[1000, 2000]))

        assert result.success is False
        assert result.frames == []
        assert result.failed_index == 0
        on_fatal.assert_called_once()
        assert camera_node.shutdown_event.is_set()


class TestBatchResult:
    """Test batch result serialization."""

    def test_to_dict(self, camera_node):
        """Test serialization with and without pixel data."""
        result = camera_node.run_batch(BatchRequest(kind="exposure", targets=[1000]))

        data = result.to_dict()
        assert data["kind"] == "exposure"
        assert data["success"] is True
        assert data["completed"] == 1
        assert data["converged"] == [True]
        assert data["outcomes"] == ["converged"]
        assert "data" in data["frames"][0]

        assert "data" not in result.to_dict(include_pixels=False)["frames"][0]

    def test_empty_result_defaults(self):
        """Test that a fresh result is a successful empty batch."""
        result = BatchResult(kind=SetpointKind.EXPOSURE)

        assert result.success is True
        assert result.completed == 0
        assert result.failed_index is None
