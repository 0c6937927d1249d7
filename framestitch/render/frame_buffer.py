"""Bounded FIFO between frame capture and the staging writer.

The buffer is the only backpressure mechanism in a render: the driver
suspends in ``put()`` while ``capacity`` frames are waiting, so peak pixel
memory stays at ``capacity`` frames no matter how slow the writer is.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass

from framestitch.config import get_settings
from framestitch.exceptions import BufferClosedError, ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Frame:
    """Encoded raster of one timeline frame."""

    index: int
    data: bytes


class FrameBuffer:
    """Async bounded queue of frames with an explicit end-of-stream."""

    def __init__(self, capacity: int | None = None):
        if capacity is None:
            capacity = get_settings().frame_buffer_depth
        if capacity < 1:
            raise ConfigurationError(
                f"Frame buffer capacity must be >= 1, got {capacity}",
                field="frame_buffer_depth",
                value=capacity,
            )
        self._capacity = capacity
        self._frames: deque[Frame] = deque()
        self._closed = False
        self._high_water = 0
        self._cond = asyncio.Condition()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def depth(self) -> int:
        return len(self._frames)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def high_water(self) -> int:
        """Largest depth observed so far."""
        return self._high_water

    async def put(self, frame: Frame) -> None:
        """Append a frame, suspending while the buffer is full.

        Raises:
            BufferClosedError: if the buffer is closed before or while waiting
        """
        async with self._cond:
            await self._cond.wait_for(lambda: self._closed or len(self._frames) < self._capacity)
            if self._closed:
                raise BufferClosedError(f"Cannot put frame {frame.index}: buffer is closed")
            self._frames.append(frame)
            self._high_water = max(self._high_water, len(self._frames))
            self._cond.notify_all()

    async def take(self) -> Frame | None:
        """Remove the oldest frame, or return None at end of stream."""
        async with self._cond:
            await self._cond.wait_for(lambda: self._closed or self._frames)
            if not self._frames:
                return None
            frame = self._frames.popleft()
            self._cond.notify_all()
            return frame

    async def close(self) -> None:
        """Stop accepting frames. Buffered frames are still delivered."""
        async with self._cond:
            if self._closed:
                return
            self._closed = True
            logger.debug(f"[CAPTURE] Frame buffer closed with {len(self._frames)} frame(s) pending")
            self._cond.notify_all()

    async def wait_drained(self) -> None:
        """Wait until the buffer is closed and every frame has been taken."""
        async with self._cond:
            await self._cond.wait_for(lambda: self._closed and not self._frames)

    async def discard(self) -> int:
        """Drop all buffered frames (failure path). Returns how many were dropped."""
        async with self._cond:
            dropped = len(self._frames)
            self._frames.clear()
            self._cond.notify_all()
        return dropped

    def __aiter__(self):
        return self

    async def __anext__(self) -> Frame:
        frame = await self.take()
        if frame is None:
            raise StopAsyncIteration
        return frame
