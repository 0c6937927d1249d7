"""Frame sequencing: advance the timeline, paint, capture, buffer.

The driver never paints directly. It posts a ``CaptureRequest`` on a
single-slot ``PaintChannel`` and awaits the response; a ``PaintLoop`` task
owns the surface and services requests one at a time on a dedicated paint
thread. Frame ``i + 1`` is never requested before frame ``i`` is captured
and buffered.
"""

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable

from framestitch.exceptions import CaptureError
from framestitch.render.frame_buffer import Frame, FrameBuffer
from framestitch.render.surface import CaptureSurface, FrameContext

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass
class CaptureRequest:
    frame_index: int
    pixel_ratio: float
    response: asyncio.Future = field(repr=False)


class PaintChannel:
    """Single-slot request/response rendezvous between driver and paint loop."""

    def __init__(self):
        self._slot: CaptureRequest | None = None
        self._closed = False
        self._cond = asyncio.Condition()

    @property
    def closed(self) -> bool:
        return self._closed

    async def request(self, frame_index: int, pixel_ratio: float) -> bytes:
        """Ask the paint loop for one frame and wait for its bytes."""
        async with self._cond:
            await self._cond.wait_for(lambda: self._closed or self._slot is None)
            if self._closed:
                raise CaptureError("Paint loop is shut down", frame_index=frame_index)
            request = CaptureRequest(
                frame_index=frame_index,
                pixel_ratio=pixel_ratio,
                response=asyncio.get_running_loop().create_future(),
            )
            self._slot = request
            self._cond.notify_all()
        return await request.response

    async def receive(self) -> CaptureRequest | None:
        """Next pending request, or None once the channel is shut down."""
        async with self._cond:
            await self._cond.wait_for(lambda: self._closed or self._slot is not None)
            if self._slot is None:
                return None
            request, self._slot = self._slot, None
            self._cond.notify_all()
            return request

    async def shutdown(self) -> None:
        async with self._cond:
            if self._closed:
                return
            self._closed = True
            if self._slot is not None and not self._slot.response.done():
                self._slot.response.set_exception(
                    CaptureError("Paint loop shut down", frame_index=self._slot.frame_index)
                )
            self._slot = None
            self._cond.notify_all()


class PaintLoop:
    """Owns the capture surface; paints and captures one request at a time."""

    def __init__(self, surface: CaptureSurface, context: FrameContext, channel: PaintChannel):
        self.surface = surface
        self.context = context
        self.channel = channel
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="framestitch-paint")

    def _paint(self, request: CaptureRequest) -> bytes:
        if self.context.frame != request.frame_index:
            raise CaptureError(
                f"Context is at frame {self.context.frame}, request is for another frame",
                frame_index=request.frame_index,
            )
        self.surface.paint(self.context)
        return self.surface.capture(request.pixel_ratio)

    async def serve(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while True:
                request = await self.channel.receive()
                if request is None:
                    break
                if request.response.done():
                    continue
                try:
                    data = await loop.run_in_executor(self._executor, self._paint, request)
                except CaptureError as e:
                    if not request.response.done():
                        request.response.set_exception(e)
                except Exception as e:
                    error = CaptureError(f"Paint failed: {e}", frame_index=request.frame_index)
                    error.__cause__ = e
                    if not request.response.done():
                        request.response.set_exception(error)
                else:
                    if not request.response.done():
                        request.response.set_result(data)
        finally:
            self._executor.shutdown(wait=False)


class FrameDriver:
    """Walks frame indices ``0 .. total_frames - 1`` in order."""

    def __init__(
        self,
        context: FrameContext,
        channel: PaintChannel,
        buffer: FrameBuffer,
        pixel_ratio: float = 1.0,
        on_progress: ProgressCallback | None = None,
    ):
        self.context = context
        self.channel = channel
        self.buffer = buffer
        self.pixel_ratio = pixel_ratio
        self.on_progress = on_progress
        self.frames_captured = 0
        self._halted = False

    @property
    def total_frames(self) -> int:
        return self.context.timeline.total_frames

    @property
    def halted(self) -> bool:
        return self._halted

    def halt(self) -> None:
        """Stop before the next frame is started."""
        self._halted = True

    def _seek(self, index: int) -> None:
        self.context._seek(index)

    async def run(self) -> int:
        """Capture every frame into the buffer, then close it.

        Returns:
            Number of frames captured (less than total_frames only when halted)
        """
        total = self.total_frames
        start = time.monotonic()
        logger.info(f"[CAPTURE] Capturing {total} frames at pixel ratio {self.pixel_ratio}")

        for index in range(total):
            if self._halted:
                logger.info(f"[CAPTURE] Halted before frame {index}")
                return self.frames_captured

            self._seek(index)
            data = await self.channel.request(index, self.pixel_ratio)
            if not data:
                raise CaptureError("Surface returned an empty frame", frame_index=index)

            await self.buffer.put(Frame(index=index, data=data))
            self.frames_captured = index + 1
            logger.debug(f"[CAPTURE] Frame {index} captured ({len(data)} bytes)")

            if self.on_progress:
                self.on_progress(index, total)

        await self.buffer.close()
        elapsed = time.monotonic() - start
        logger.info(f"[CAPTURE] Captured {total} frames in {elapsed:.2f}s")
        return self.frames_captured
