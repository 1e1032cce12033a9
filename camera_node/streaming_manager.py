"""
Streaming manager module for Camera Node Service.

Runs the continuous acquisition loop: once per scheduler tick, grab a frame
and publish it to every attached subscriber.
"""

from __future__ import annotations

import logging
import queue
import time
from dataclasses import dataclass, replace
from threading import Event, RLock, Thread
from typing import List, Optional

from camera_node.exceptions import CameraError
from camera_node.frames import CameraInfo, Frame
from camera_node.node import CameraNode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishedFrame:
    """A detached frame plus the camera info captured with it."""

    frame: Frame
    info: CameraInfo


class FrameSubscriber:
    """
    Bounded mailbox for one downstream consumer.

    Delivery never blocks the publisher: when the mailbox is full the oldest
    frame is dropped.
    """

    def __init__(self, maxsize: int = 2) -> None:
        self._queue: "queue.Queue[PublishedFrame]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def deliver(self, item: PublishedFrame) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[PublishedFrame]:
        """Next published frame, or None if none arrived within ``timeout``."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None


class StreamingManager:
    """
    Thread-safe manager for the continuous acquisition loop.

    Handles subscriber bookkeeping, the scheduler thread lifecycle and frame
    publication.
    """

    def __init__(self, node: CameraNode) -> None:
        """
        Initialize the streaming manager.

        Args:
            node: CameraNode to grab from
        """
        self._node = node
        self._subscribers: List[FrameSubscriber] = []
        self._thread: Optional[Thread] = None
        self._stop = Event()
        self._streaming: bool = False
        self._lock = RLock()  # Reentrant lock

        logger.debug("StreamingManager initialized")

    # ---------- Subscribers ----------

    def subscribe(self) -> FrameSubscriber:
        subscriber = FrameSubscriber(self._node.config.subscriber_queue_size)
        with self._lock:
            self._subscribers.append(subscriber)
            count = len(self._subscribers)
        logger.info(f"Stream subscriber attached ({count} total)")
        return subscriber

    def unsubscribe(self, subscriber: FrameSubscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)
            count = len(self._subscribers)
        logger.info(f"Stream subscriber detached ({count} left)")

    def num_subscribers(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, frame: Frame, info: CameraInfo) -> None:
        """Hand a frame to every subscriber without waiting for any of them."""
        item = PublishedFrame(frame=frame, info=info)
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            subscriber.deliver(item)

    # ---------- Acquisition ----------

    def tick(self) -> bool:
        """
        Run one scheduler tick.

        Grabs and publishes only when someone is listening and the node is
        not paused. A failed grab skips the tick, it is never retried.

        Returns:
            bool: True if a frame was published
        """
        if self.num_subscribers() == 0 or self._node.paused:
            return False
        if self._node.shutdown_event.is_set():
            return False

        with self._node.lock:
            if not self._node.grab_image():
                return False
            frame = self._node.last_frame.copy()
            info = replace(self._node.camera_info)

        self.publish(frame, info)
        return True

    def _run(self) -> None:
        period = 1.0 / self._node.framerate
        logger.debug(f"Acquisition loop running at {self._node.framerate:.2f}Hz")
        next_tick = time.monotonic()
        while not self._stop.is_set() and not self._node.shutdown_event.is_set():
            try:
                self.tick()
            except CameraError as e:
                logger.error(f"Acquisition tick failed: {e}")
            next_tick += period
            delay = next_tick - time.monotonic()
            if delay < 0:
                # Fell behind, restart the schedule from now
                next_tick = time.monotonic()
                delay = 0.0
            self._stop.wait(delay)
        logger.debug("Acquisition loop exited")

    # ---------- Lifecycle ----------

    def start(self) -> None:
        """Start the acquisition loop thread."""
        with self._lock:
            if self._streaming:
                logger.debug("Streaming already active, skipping start")
                return

            logger.info("Starting continuous acquisition loop")
            self._stop.clear()
            self._thread = Thread(target=self._run, name="acquisition-loop", daemon=True)
            self._thread.start()
            self._streaming = True

    def stop(self) -> None:
        """Stop the acquisition loop and wait for the thread to exit."""
        with self._lock:
            if not self._streaming:
                logger.debug("Streaming not active, skipping stop")
                return

            logger.info("Stopping continuous acquisition loop...")
            self._stop.set()
            thread = self._thread

        if thread is not None:
            thread.join(timeout=5.0)
            if thread.is_alive():
                logger.warning("Acquisition loop did not exit in time")

        with self._lock:
            self._thread = None
            self._streaming = False
            logger.debug("Streaming resources cleaned up")

    def is_streaming(self) -> bool:
        """
        Check if the acquisition loop is running.

        Returns:
            bool: True if streaming, False otherwise
        """
        with self._lock:
            return self._streaming and not self._node.shutdown_event.is_set()
