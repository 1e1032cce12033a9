"""
FastAPI application for Camera Node Service.

Provides HTTP API for driving exposure, gain and brightness setpoints,
pausing the image stream, running batch acquisitions and subscribing to the
continuous frame stream.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import queue
import signal
from contextlib import asynccontextmanager
from threading import Thread
from typing import Annotated, AsyncGenerator, Iterator, List, Literal

from fastapi import Depends, FastAPI, HTTPException, Request, Security, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from camera_node.batch import BatchRequest, BatchResult
from camera_node.config import CONFIG
from camera_node.convergence import ConvergenceOutcome
from camera_node.device import CameraDevice
from camera_node.exceptions import (
    CameraError,
    CameraNotAvailableError,
    DeviceNotReadyError,
    InvalidParameterError,
)
from camera_node.node import CameraNode
from camera_node.picamera2_device import Picamera2Device
from camera_node.streaming_manager import StreamingManager

# Configure logging
logging.basicConfig(
    level=CONFIG.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

# Seconds a stream subscriber waits for a frame before checking the connection
STREAM_POLL_S = 0.5

# Global instances (initialized in lifespan)
camera: CameraNode | None = None
streaming_manager: StreamingManager | None = None

# API Key authentication
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def verify_api_key(api_key: str | None = Security(api_key_header)) -> None:
    """
    Verify API key for authentication.

    Args:
        api_key: API key from X-API-Key header

    Raises:
        HTTPException: If authentication is required and key is invalid
    """
    # If no API key is configured, skip authentication
    if not CONFIG.api_key:
        return

    if api_key is None or api_key != CONFIG.api_key:
        logger.warning("Authentication failed: invalid or missing API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


def create_device() -> CameraDevice:
    """Build the camera device the service drives."""
    return Picamera2Device(CONFIG)


def terminate_process(reason: str) -> None:
    """
    Stop the whole service after a fatal device error.

    Sends SIGINT to this process so that uvicorn runs its normal shutdown.
    """
    logger.critical(f"Fatal camera error, stopping service: {reason}")
    os.kill(os.getpid(), signal.SIGINT)


# Dependency injection functions
def get_camera_node() -> CameraNode:
    """
    Dependency injection for the camera node.

    Raises:
        HTTPException: If the node is not initialized
    """
    if camera is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Camera not initialized",
        )
    return camera


def get_streaming_manager() -> StreamingManager:
    """
    Dependency injection for streaming manager.

    Raises:
        HTTPException: If streaming manager is not initialized
    """
    if streaming_manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Streaming manager not initialized",
        )
    return streaming_manager


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Manage application lifecycle: startup and shutdown events.

    Opens the camera and starts the acquisition loop on startup, stops both
    on shutdown.
    """
    global camera, streaming_manager

    logger.info("=== Camera Node Service Starting ===")
    logger.info(f"Configuration: {CONFIG.width}x{CONFIG.height}, poll rate {CONFIG.poll_rate_hz}Hz")
    logger.info(f"API Key Auth: {'Enabled' if CONFIG.api_key else 'Disabled'}")

    try:
        camera = CameraNode(create_device(), CONFIG, on_fatal=terminate_process)
        camera.start()

        streaming_manager = StreamingManager(camera)
        streaming_manager.start()

        logger.info("=== Camera Node Service Started Successfully ===")

    except CameraError as e:
        logger.error(f"Failed to start camera node: {e}")
        raise

    yield

    logger.info("=== Camera Node Service Shutting Down ===")

    if streaming_manager is not None:
        try:
            streaming_manager.stop()
        except Exception as e:
            logger.error(f"Error stopping streaming: {e}")

    if camera is not None:
        try:
            camera.close()
        except Exception as e:
            logger.error(f"Error closing camera node: {e}")

    camera = None
    streaming_manager = None
    logger.info("=== Camera Node Service Shutdown Complete ===")


# Create FastAPI app
app = FastAPI(
    title="Camera Node Service",
    description="API for driving camera setpoints, batch acquisitions and the frame stream",
    version=API_VERSION,
    lifespan=lifespan,
)


# ========== Pydantic Models ==========

class StatusResponse(BaseModel):
    """Base response model with status."""
    status: str = "ok"


class ExposureRequest(BaseModel):
    """Request model for an exposure setpoint."""
    target: float = Field(..., gt=0, description="Exposure time in microseconds")


class GainRequest(BaseModel):
    """Request model for a gain setpoint."""
    target: float = Field(..., ge=0, description="Target gain")


class BrightnessRequest(BaseModel):
    """Request model for a brightness setpoint."""
    target: float = Field(..., ge=0, le=255, description="Target mean image brightness (0-255)")


class SetpointResponse(StatusResponse):
    """Response model for setpoint endpoints."""
    reached: float = Field(..., description="Value reached when the request returned")
    success: bool = Field(..., description="Target reached within tolerance")
    outcome: str = Field(..., description="Why the request returned")
    elapsed_s: float = Field(..., description="Time spent polling")


class PausedRequest(BaseModel):
    """Request model for the administrative pause flag."""
    paused: bool = Field(..., description="Suspend the continuous frame stream")


class PausedResponse(StatusResponse):
    """Response model for the pause endpoint."""
    success: bool
    paused: bool


class GrabImagesRequest(BaseModel):
    """Request model for a batch acquisition."""
    kind: Literal["exposure", "brightness"] = Field(..., description="Setpoint applied before each frame")
    targets: List[float] = Field(..., max_length=1000, description="One target per frame")
    include_pixels: bool = Field(True, description="Return base64 pixel data with each frame")
    stream_progress: bool = Field(False, description="Stream NDJSON progress lines before the result")


class GrabImagesResponse(StatusResponse):
    """Response model for a batch acquisition."""
    kind: str
    success: bool
    completed: int
    failed_index: int | None = None
    reached: List[float]
    converged: List[bool]
    outcomes: List[str]
    frames: List[dict]


class UserOutputRequest(BaseModel):
    """Request model for a digital output."""
    value: bool


class UserOutputResponse(StatusResponse):
    """Response model for a digital output."""
    success: bool


class CameraStatusResponse(BaseModel):
    """Camera status response model."""
    device_ready: bool
    paused: bool
    streaming: bool
    subscribers: int
    exposure_us: float
    gain: float
    brightness_search_running: bool
    width: int
    height: int
    encoding: str
    framerate: float
    user_outputs: List[int]


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    device_ready: bool = Field(..., description="Camera is producing frames")
    paused: bool = Field(..., description="Stream is paused")
    streaming_active: bool = Field(..., description="Acquisition loop is running")
    version: str = Field(..., description="API version")


def _setpoint_response(outcome: ConvergenceOutcome) -> SetpointResponse:
    return SetpointResponse(
        reached=outcome.reached,
        success=outcome.converged,
        outcome=outcome.status.value,
        elapsed_s=outcome.elapsed_s,
    )


# ========== Exception Handlers ==========

@app.exception_handler(InvalidParameterError)
async def invalid_parameter_handler(request: Request, exc: InvalidParameterError) -> JSONResponse:
    """Handle invalid parameter errors."""
    logger.warning(f"Invalid parameter: {exc}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc)},
    )


@app.exception_handler(CameraNotAvailableError)
async def camera_not_available_handler(request: Request, exc: CameraNotAvailableError) -> JSONResponse:
    """Handle camera not available errors."""
    logger.error(f"Camera not available: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Camera is not available"},
    )


@app.exception_handler(DeviceNotReadyError)
async def device_not_ready_handler(request: Request, exc: DeviceNotReadyError) -> JSONResponse:
    """Handle device not ready errors."""
    logger.warning(f"Camera not ready: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Camera is not ready"},
    )


@app.exception_handler(CameraError)
async def camera_error_handler(request: Request, exc: CameraError) -> JSONResponse:
    """Handle general camera errors."""
    logger.error(f"Camera error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Camera operation failed"},
    )


# ========== API Endpoints ==========

@app.get("/health", response_model=HealthResponse, tags=["System"])
def health_check() -> HealthResponse:
    """
    Health check endpoint for monitoring.

    Does not require authentication.
    """
    return HealthResponse(
        status="healthy" if camera is not None else "initializing",
        device_ready=camera.is_ready() if camera else False,
        paused=camera.paused if camera else False,
        streaming_active=streaming_manager.is_streaming() if streaming_manager else False,
        version=API_VERSION,
    )


@app.get(
    "/v1/camera/status",
    response_model=CameraStatusResponse,
    tags=["Camera"],
    dependencies=[Depends(verify_api_key)],
)
def get_camera_status(
    node: Annotated[CameraNode, Depends(get_camera_node)],
    streaming: Annotated[StreamingManager, Depends(get_streaming_manager)],
) -> CameraStatusResponse:
    """
    Get current camera status.

    Blocks while a setpoint or batch request holds the camera.
    """
    logger.debug("Getting camera status")
    status_data = node.get_status()
    return CameraStatusResponse(
        streaming=streaming.is_streaming(),
        subscribers=streaming.num_subscribers(),
        **status_data,
    )


@app.get(
    "/v1/camera/info",
    tags=["Camera"],
    dependencies=[Depends(verify_api_key)],
)
def get_camera_info(
    node: Annotated[CameraNode, Depends(get_camera_node)],
) -> dict:
    """Get the (uncalibrated) camera info published with every frame."""
    return node.camera_info.to_dict()


@app.post(
    "/v1/camera/exposure",
    response_model=SetpointResponse,
    tags=["Camera - Setpoints"],
    dependencies=[Depends(verify_api_key)],
)
def set_exposure(
    req: ExposureRequest,
    node: Annotated[CameraNode, Depends(get_camera_node)],
) -> SetpointResponse:
    """
    Set the exposure time and wait until the camera reports it.

    Returns success=false with the last reading if the camera does not get
    there in time. Retrying is left to the caller.
    """
    logger.info(f"Setting exposure: {req.target}µs")
    return _setpoint_response(node.set_exposure(req.target))


@app.post(
    "/v1/camera/gain",
    response_model=SetpointResponse,
    tags=["Camera - Setpoints"],
    dependencies=[Depends(verify_api_key)],
)
def set_gain(
    req: GainRequest,
    node: Annotated[CameraNode, Depends(get_camera_node)],
) -> SetpointResponse:
    """Set the gain and wait until the camera reports it."""
    logger.info(f"Setting gain: {req.target}")
    return _setpoint_response(node.set_gain(req.target))


@app.post(
    "/v1/camera/brightness",
    response_model=SetpointResponse,
    tags=["Camera - Setpoints"],
    dependencies=[Depends(verify_api_key)],
)
def set_brightness(
    req: BrightnessRequest,
    node: Annotated[CameraNode, Depends(get_camera_node)],
) -> SetpointResponse:
    """
    Search for camera settings giving the requested mean brightness.

    The search stops early if the brightness stops changing, which means
    the target cannot be reached with the current gain.
    """
    logger.info(f"Setting brightness: {req.target}")
    return _setpoint_response(node.set_brightness(req.target))


@app.post(
    "/v1/camera/paused",
    response_model=PausedResponse,
    tags=["Camera"],
    dependencies=[Depends(verify_api_key)],
)
def set_paused(
    req: PausedRequest,
    node: Annotated[CameraNode, Depends(get_camera_node)],
) -> PausedResponse:
    """
    Pause or resume the continuous frame stream.

    Setpoint and batch requests keep working while paused.
    """
    success = node.set_paused(req.paused)
    return PausedResponse(success=success, paused=node.paused)


def _stream_batch(node: CameraNode, batch: BatchRequest, include_pixels: bool) -> Iterator[str]:
    """Run ``batch`` on a worker thread and yield NDJSON progress and result lines."""
    events: "queue.Queue[dict]" = queue.Queue()

    def worker() -> None:
        try:
            result = node.run_batch(batch, on_progress=lambda n: events.put({"type": "progress", "completed": n}))
            events.put({"type": "result", **result.to_dict(include_pixels)})
        except CameraError as e:
            logger.error(f"Batch acquisition failed: {e}")
            events.put({"type": "error", "detail": str(e)})
        except Exception as e:
            # The response only ends on a terminal event, one must always be sent
            logger.exception(f"Unexpected error during batch acquisition: {e}")
            events.put({"type": "error", "detail": "Camera operation failed"})

    Thread(target=worker, name="batch-acquisition", daemon=True).start()
    while True:
        event = events.get()
        yield json.dumps(event) + "\n"
        if event["type"] != "progress":
            return


@app.post(
    "/v1/camera/grab_images",
    response_model=GrabImagesResponse,
    tags=["Camera - Capture"],
    dependencies=[Depends(verify_api_key)],
)
def grab_images(
    req: GrabImagesRequest,
    node: Annotated[CameraNode, Depends(get_camera_node)],
):
    """
    Take one frame per target, each after applying that target.

    The camera is held for the whole batch. If any grab fails the batch is
    aborted and no frames are returned, only the values reached so far.
    With stream_progress the response is NDJSON: one progress line per
    finished frame followed by the result line.
    """
    logger.info(f"Batch acquisition requested: {req.kind} x {len(req.targets)}")
    batch = BatchRequest(kind=req.kind, targets=req.targets)

    if req.stream_progress:
        return StreamingResponse(
            _stream_batch(node, batch, req.include_pixels),
            media_type="application/x-ndjson",
        )

    result: BatchResult = node.run_batch(batch)
    return GrabImagesResponse(**result.to_dict(req.include_pixels))


@app.post(
    "/v1/camera/outputs/{output_id}",
    response_model=UserOutputResponse,
    tags=["Camera"],
    dependencies=[Depends(verify_api_key)],
)
def set_user_output(
    output_id: int,
    req: UserOutputRequest,
    node: Annotated[CameraNode, Depends(get_camera_node)],
) -> UserOutputResponse:
    """Drive a digital output of the camera."""
    return UserOutputResponse(success=node.set_user_output(output_id, req.value))


@app.websocket("/v1/stream")
async def stream_frames(websocket: WebSocket) -> None:
    """
    Subscribe to the continuous frame stream.

    Each frame is sent as a JSON message (frame header and camera info)
    followed by a binary message with the raw pixel buffer.
    """
    if CONFIG.api_key and websocket.headers.get("x-api-key") != CONFIG.api_key:
        await websocket.close(code=1008)
        return
    if streaming_manager is None:
        await websocket.close(code=1011)
        return

    manager = streaming_manager
    await websocket.accept()
    subscriber = manager.subscribe()
    disconnected = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        while manager.is_streaming() and not disconnected.done():
            item = await asyncio.to_thread(subscriber.get, STREAM_POLL_S)
            if item is None or disconnected.done():
                continue
            await websocket.send_json({"frame": item.frame.header(), "camera_info": item.info.to_dict()})
            await websocket.send_bytes(item.frame.pixels.tobytes())
    except WebSocketDisconnect:
        pass
    finally:
        disconnected.cancel()
        manager.unsubscribe(subscriber)
        logger.debug("Stream subscriber disconnected")


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    # Subscribers only listen, anything they send is ignored
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
