"""
Pytest configuration and fixtures for Camera Node Service tests.

Provides a scriptable fake camera device, fast test configurations and
common fixtures.
"""

from typing import List, Sequence

import numpy as np
import pytest
from unittest.mock import MagicMock
from fastapi.testclient import TestClient

from camera_node.config import NodeConfig
from camera_node.device import CameraDevice


class FakeCameraDevice(CameraDevice):
    """
    In-memory camera for testing.

    Every hardware call is appended to ``calls`` so tests can check ordering.
    Grabbed frames are filled with a uniform value taken from
    ``brightness_sequence`` (the last value repeats once it runs out).
    """

    def __init__(self, width: int = 8, height: int = 6) -> None:
        self._width = width
        self._height = height
        self.calls: List[tuple] = []

        self.ready = True
        self.removed = False
        self.grab_results: List[bool] = []
        self.max_rate = 100.0

        self.exposure = 500.0
        self.gain = 1.0
        # When frozen, exposure and gain writes are accepted but never take effect
        self.frozen = False

        self.brightness_sequence: List[float] = [100.0]
        self.accept_brightness = True
        self.search_running = False

        self.outputs = {1: False, 2: False}

    # ---------- Lifecycle ----------

    def open(self) -> None:
        self.calls.append(("open",))

    def start_grabbing(self) -> None:
        self.calls.append(("start_grabbing",))

    def close(self) -> None:
        self.calls.append(("close",))

    def is_ready(self) -> bool:
        return self.ready

    def is_removed(self) -> bool:
        return self.removed

    # ---------- Geometry ----------

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def channels(self) -> int:
        return 3

    @property
    def encoding(self) -> str:
        return "bgr8"

    def max_framerate(self) -> float:
        return self.max_rate

    # ---------- Acquisition ----------

    def grab(self, pixels: np.ndarray) -> bool:
        self.calls.append(("grab",))
        if self.grab_results and not self.grab_results.pop(0):
            return False
        if len(self.brightness_sequence) > 1:
            value = self.brightness_sequence.pop(0)
        else:
            value = self.brightness_sequence[0]
        pixels.fill(int(value))
        return True

    # ---------- Exposure / gain ----------

    def set_exposure(self, exposure_us: float) -> None:
        self.calls.append(("set_exposure", exposure_us))
        if not self.frozen:
            self.exposure = exposure_us

    def current_exposure(self) -> float:
        return self.exposure

    def exposure_step(self) -> float:
        return 20.0

    def set_gain(self, gain: float) -> None:
        self.calls.append(("set_gain", gain))
        if not self.frozen:
            self.gain = gain

    def current_gain(self) -> float:
        return self.gain

    # ---------- Brightness ----------

    def set_brightness(self, target: float, current: float) -> bool:
        self.calls.append(("set_brightness", target))
        self.search_running = self.accept_brightness
        return self.accept_brightness

    def disable_auto_search(self) -> None:
        self.calls.append(("disable_auto_search",))
        self.search_running = False

    def is_brightness_search_running(self) -> bool:
        return self.search_running

    def max_brightness_tolerance(self) -> float:
        return 2.5

    # ---------- Digital outputs ----------

    def user_output_ids(self) -> Sequence[int]:
        return tuple(self.outputs)

    def set_user_output(self, output_id: int, value: bool) -> bool:
        self.calls.append(("set_user_output", output_id, value))
        self.outputs[output_id] = value
        return True

    # ---------- Helpers ----------

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def filtered(self, *names: str) -> List[tuple]:
        return [call for call in self.calls if call[0] in names]


def make_test_config(**overrides) -> NodeConfig:
    """Configuration with a fast poll rate and short timeouts."""
    values = dict(
        desired_framerate=50.0,
        poll_rate_hz=200.0,
        exposure_timeout_s=0.3,
        gain_timeout_s=0.3,
        brightness_timeout_s=0.3,
        brightness_high_timeout_s=0.5,
        brightness_ready_timeout_s=0.1,
        api_key=None,
        log_level="DEBUG",
    )
    values.update(overrides)
    return NodeConfig(**values)


@pytest.fixture
def fake_device():
    """
    Create a scriptable fake camera.

    Returns:
        FakeCameraDevice: Device for testing
    """
    return FakeCameraDevice()


@pytest.fixture
def make_config():
    """Factory for fast test configurations with overrides."""
    return make_test_config


@pytest.fixture
def test_config():
    """
    Provide a fast test configuration.

    Returns:
        NodeConfig: Test configuration
    """
    return make_test_config()


@pytest.fixture
def on_fatal():
    """Mock for the fatal shutdown callback."""
    return MagicMock()


@pytest.fixture
def camera_node(fake_device, test_config, on_fatal):
    """
    Create and start a CameraNode around the fake device.

    Returns:
        CameraNode: Started node for testing
    """
    from camera_node.node import CameraNode

    node = CameraNode(fake_device, test_config, on_fatal=on_fatal)
    node.start()
    yield node
    node.close()


@pytest.fixture
def streaming_manager(camera_node):
    """
    Create a StreamingManager for the test node.

    Returns:
        StreamingManager: Manager instance for testing
    """
    from camera_node.streaming_manager import StreamingManager

    manager = StreamingManager(camera_node)
    yield manager
    manager.stop()


@pytest.fixture
def api_key():
    return "test-api-key-12345"


@pytest.fixture
def auth_headers(api_key):
    """
    Provide authentication headers for API requests.

    Returns:
        dict: Headers with API key
    """
    return {"X-API-Key": api_key}


def _make_client(monkeypatch, device: FakeCameraDevice, config: NodeConfig, fatal: MagicMock):
    import camera_node.api

    monkeypatch.setattr(camera_node.api, "CONFIG", config)
    monkeypatch.setattr(camera_node.api, "create_device", lambda: device)
    monkeypatch.setattr(camera_node.api, "terminate_process", fatal)
    return TestClient(camera_node.api.app)


@pytest.fixture
def client_no_auth(monkeypatch, fake_device, test_config, on_fatal):
    """
    Create a FastAPI test client without authentication.

    The client is entered so that the application lifespan runs.

    Returns:
        TestClient: Test client with authentication disabled
    """
    with _make_client(monkeypatch, fake_device, test_config, on_fatal) as client:
        yield client


@pytest.fixture
def client_with_auth(monkeypatch, fake_device, api_key, on_fatal):
    """
    Create a FastAPI test client with authentication enabled.

    Returns:
        TestClient: Test client with authentication enabled
    """
    config = make_test_config(api_key=api_key)
    with _make_client(monkeypatch, fake_device, config, on_fatal) as client:
        yield client


@pytest.fixture(autouse=True)
def reset_logging():
    """
    Reset logging configuration between tests.

    This prevents log level changes from affecting other tests.
    """
    import logging

    # Store original level
    original_level = logging.root.level

    yield

    # Restore original level
    logging.root.setLevel(original_level)


@pytest.fixture
def mock_picamera2():
    """
    Mock Picamera2 instance for testing.

    Returns a mock object that simulates Picamera2 behavior without
    requiring actual camera hardware.
    """
    mock = MagicMock()

    # Mock configuration methods
    mock.create_video_configuration.return_value = {
        "main": {"size": (64, 64), "format": "RGB888"},
        "controls": {"FrameRate": 120.0},
    }

    # Mock metadata
    mock.capture_metadata.return_value = {
        "ExposureTime": 10000,
        "AnalogueGain": 1.5,
    }

    return mock


@pytest.fixture
def mock_picamera2_class(monkeypatch, mock_picamera2):
    """
    Patch the Picamera2 class loader to return a mock class.

    The mock class returns ``mock_picamera2`` when constructed and reports
    one connected camera.
    """
    picamera2_class = MagicMock(return_value=mock_picamera2)
    picamera2_class.global_camera_info.return_value = [
        {"Model": "imx708", "Location": 2, "Rotation": 0}
    ]
    monkeypatch.setattr(
        "camera_node.picamera2_device._load_picamera2",
        lambda: picamera2_class,
    )
    return picamera2_class
