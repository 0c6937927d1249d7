"""
Render orchestrator.

One ``RenderPipeline`` renders one composition:
1. Compile the filter graph (fails fast, before any frame is painted)
2. Capture every frame through the paint loop into a bounded buffer
3. Drain the buffer into a private staging directory as PNGs
4. Run the encoder over the staged frames and media inputs
5. Move the encoded file to the requested output path

The capture driver and the staging writer run concurrently and only meet
at the frame buffer, so memory stays bounded by the buffer depth however
slow the disk is. Any failure or cancellation closes the buffer, stops
every task and removes the staging directory before the error propagates.
"""

import asyncio
import logging
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional
from uuid import uuid4

from framestitch.config import Settings, get_settings
from framestitch.exceptions import (
    BufferClosedError,
    CaptureError,
    ConfigurationError,
    EncoderError,
    EncoderNotAvailableError,
    FramestitchError,
    InvalidTransitionError,
    MissingOutputError,
    RenderCancelledError,
)
from framestitch.render.compiler import CANVAS_FRAME_PATTERN, CompiledGraph, FilterGraphCompiler
from framestitch.render.encoder import Encoder, build_encoder_command, get_encoder
from framestitch.render.frame_buffer import FrameBuffer
from framestitch.render.frame_driver import FrameDriver, PaintChannel, PaintLoop, ProgressCallback
from framestitch.render.surface import CaptureSurface, FrameContext
from framestitch.schemas.composition import Composition, parse_composition
from framestitch.utils.media_info import get_media_info

logger = logging.getLogger(__name__)


class RenderStatus(Enum):
    """Render job status."""

    IDLE = "idle"
    CAPTURING = "capturing"
    ENCODING = "encoding"
    COMPLETE = "complete"
    FAILED = "failed"


_TRANSITIONS: dict[RenderStatus, set[RenderStatus]] = {
    RenderStatus.IDLE: {RenderStatus.CAPTURING, RenderStatus.FAILED},
    RenderStatus.CAPTURING: {RenderStatus.ENCODING, RenderStatus.FAILED},
    RenderStatus.ENCODING: {RenderStatus.COMPLETE, RenderStatus.FAILED},
    RenderStatus.COMPLETE: set(),
    RenderStatus.FAILED: set(),
}


# ============================================================================
# Dataclasses
# ============================================================================


@dataclass
class RenderProgress:
    """Progress information for a render job."""

    job_id: str
    status: RenderStatus
    frames_captured: int = 0
    total_frames: int = 0
    elapsed_ms: int = 0
    error_message: Optional[str] = None

    @property
    def percent(self) -> float:
        if not self.total_frames:
            return 0.0
        return round(self.frames_captured / self.total_frames * 100, 1)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "frames_captured": self.frames_captured,
            "total_frames": self.total_frames,
            "percent": self.percent,
            "elapsed_ms": self.elapsed_ms,
            "error_message": self.error_message,
        }


@dataclass
class RenderJob:
    """Render job information."""

    id: str
    composition: Composition
    status: RenderStatus = RenderStatus.IDLE
    output_path: Optional[str] = None
    staging_dir: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def transition(self, status: RenderStatus) -> None:
        """Move forward to ``status``.

        Raises:
            InvalidTransitionError: for any move not in the forward lifecycle
        """
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status.value, status.value)
        logger.debug(f"[RENDER] Job {self.id}: {self.status.value} -> {status.value}")
        self.status = status
        if status == RenderStatus.CAPTURING:
            self.started_at = datetime.now(timezone.utc)
        elif status in (RenderStatus.COMPLETE, RenderStatus.FAILED):
            self.completed_at = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "status": self.status.value,
            "output_path": self.output_path,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


@dataclass
class RenderResult:
    output_path: Path
    duration_s: float
    total_frames: int
    elapsed_s: float
    stderr: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "output_path": str(self.output_path),
            "duration_s": self.duration_s,
            "total_frames": self.total_frames,
            "elapsed_s": self.elapsed_s,
        }


# ============================================================================
# Pipeline
# ============================================================================


class RenderPipeline:
    """Renders one composition to one video file."""

    def __init__(
        self,
        composition: Composition | dict,
        surface: CaptureSurface,
        *,
        encoder: Optional[Encoder] = None,
        settings: Optional[Settings] = None,
        job_id: Optional[str] = None,
        pixel_ratio: Optional[float] = None,
        buffer_depth: Optional[int] = None,
        keep_staging: Optional[bool] = None,
        verify_assets: bool = True,
    ):
        if composition is None:
            raise ConfigurationError("A composition is required", field="composition")
        if isinstance(composition, dict):
            composition = parse_composition(composition)
        if not isinstance(composition, Composition):
            raise ConfigurationError(
                f"Expected a Composition, got {type(composition).__name__}",
                field="composition",
            )
        if surface is None:
            raise ConfigurationError("A capture surface is required", field="surface")

        self.settings = settings or get_settings()
        self.composition = composition
        self.timeline = composition.timeline
        self.surface = surface
        self.encoder = encoder or get_encoder(self.settings)
        self.pixel_ratio = pixel_ratio if pixel_ratio is not None else self.settings.capture_pixel_ratio
        self.buffer_depth = buffer_depth if buffer_depth is not None else self.settings.frame_buffer_depth
        self.keep_staging = self.settings.keep_staging if keep_staging is None else keep_staging
        self.verify_assets = verify_assets

        if self.pixel_ratio <= 0:
            raise ConfigurationError("Pixel ratio must be > 0", field="pixel_ratio", value=self.pixel_ratio)
        if self.buffer_depth < 1:
            raise ConfigurationError("Buffer depth must be >= 1", field="buffer_depth", value=self.buffer_depth)

        self.job = RenderJob(id=job_id or uuid4().hex[:12], composition=composition)
        self._progress_callback: Optional[ProgressCallback] = None
        self._frames_captured = 0
        self._started = 0.0
        self._cancelled = False
        self._driver: Optional[FrameDriver] = None
        self._buffer: Optional[FrameBuffer] = None
        self._process = None

    def set_progress_callback(self, callback: ProgressCallback) -> None:
        """Set callback invoked with (frame_index, total_frames) after each capture."""
        self._progress_callback = callback

    def _on_frame(self, frame_index: int, total_frames: int) -> None:
        self._frames_captured = frame_index + 1
        if self._progress_callback:
            self._progress_callback(frame_index, total_frames)

    @property
    def progress(self) -> RenderProgress:
        elapsed = time.monotonic() - self._started if self._started else 0.0
        return RenderProgress(
            job_id=self.job.id,
            status=self.job.status,
            frames_captured=self._frames_captured,
            total_frames=self.timeline.total_frames,
            elapsed_ms=int(elapsed * 1000),
            error_message=self.job.error_message,
        )

    # ------------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------------

    async def render(self, output_path: str | Path) -> RenderResult:
        """Render the composition to ``output_path``.

        Raises:
            CompileError, CaptureError, EncoderError, RenderCancelledError:
                the job is FAILED and nothing is left at ``output_path``
        """
        output_path = Path(output_path)
        self._started = time.monotonic()
        self.job.output_path = str(output_path)
        self.job.transition(RenderStatus.CAPTURING)

        staging = Path(tempfile.mkdtemp(prefix=f"{self.settings.staging_prefix}{self.job.id}_"))
        self.job.staging_dir = str(staging)
        logger.info(
            f"[RENDER] Job {self.job.id}: {self.timeline.total_frames} frames "
            f"@ {self.timeline.fps}fps {self.timeline.width}x{self.timeline.height}, staging={staging}"
        )

        succeeded = False
        try:
            compiler = FilterGraphCompiler(self.timeline, self.settings, verify_assets=self.verify_assets)
            compiled = compiler.compile(self.composition, str(staging / CANVAS_FRAME_PATTERN))

            await self._capture(staging)
            self._check_cancelled()

            self.job.transition(RenderStatus.ENCODING)
            result = await self._encode(compiled, staging, output_path)

            self.job.transition(RenderStatus.COMPLETE)
            succeeded = True
            logger.info(f"[RENDER] Job {self.job.id} complete in {result.elapsed_s:.2f}s: {output_path}")
            return result
        except FramestitchError as e:
            self._fail(e)
            raise
        except asyncio.CancelledError:
            self._fail(RenderCancelledError())
            raise
        except Exception as e:
            error = FramestitchError(f"Unexpected render failure: {e}")
            self._fail(error)
            raise error from e
        finally:
            if succeeded and self.keep_staging:
                logger.info(f"[RENDER] Keeping staging directory {staging}")
            else:
                shutil.rmtree(staging, ignore_errors=True)

    async def cancel(self) -> None:
        """Halt capture, close the buffer and stop the encoder if it is running."""
        self._cancelled = True
        logger.info(f"[RENDER] Cancelling job {self.job.id}")
        if self._driver:
            self._driver.halt()
        if self._buffer:
            await self._buffer.close()
        if self._process:
            self._process.terminate()

    # ------------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------------

    def _check_cancelled(self) -> None:
        if self._cancelled:
            raise RenderCancelledError(f"Render job {self.job.id} was cancelled")

    async def _capture(self, staging: Path) -> None:
        context = FrameContext(self.timeline)
        channel = PaintChannel()
        buffer = FrameBuffer(self.buffer_depth)
        driver = FrameDriver(
            context,
            channel,
            buffer,
            pixel_ratio=self.pixel_ratio,
            on_progress=self._on_frame,
        )
        self._driver, self._buffer = driver, buffer

        paint_task = asyncio.create_task(
            PaintLoop(self.surface, context, channel).serve(), name=f"paint-{self.job.id}"
        )
        driver_task = asyncio.create_task(driver.run(), name=f"capture-{self.job.id}")
        drain_task = asyncio.create_task(self._drain(buffer, staging), name=f"drain-{self.job.id}")
        try:
            captured, written = await asyncio.gather(driver_task, drain_task)
            self._check_cancelled()
            await buffer.wait_drained()
            if written != self.timeline.total_frames:
                raise CaptureError(
                    f"Staged {written} of {self.timeline.total_frames} frames",
                    frame_index=written,
                )
            logger.info(
                f"[CAPTURE] {captured} frames staged, peak buffer depth {buffer.high_water}/{buffer.capacity}"
            )
        except BufferClosedError as e:
            await self._abort_capture(buffer, driver, driver_task, drain_task)
            if self._cancelled:
                raise RenderCancelledError(f"Render job {self.job.id} was cancelled") from e
            raise
        except BaseException:
            await self._abort_capture(buffer, driver, driver_task, drain_task)
            raise
        finally:
            await channel.shutdown()
            await asyncio.gather(paint_task, return_exceptions=True)
            self._driver = None

    async def _abort_capture(self, buffer: FrameBuffer, driver: FrameDriver, *tasks: asyncio.Task) -> None:
        driver.halt()
        await buffer.close()
        dropped = await buffer.discard()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.warning(
            f"[CAPTURE] Aborted after {driver.frames_captured} frame(s), {dropped} in-flight frame(s) discarded"
        )

    async def _drain(self, buffer: FrameBuffer, staging: Path) -> int:
        """Write frames to staging in index order. Returns the number written."""
        written = 0
        async for frame in buffer:
            if frame.index != written:
                raise CaptureError(f"Expected frame {written}, got a gap", frame_index=frame.index)
            path = staging / (CANVAS_FRAME_PATTERN % frame.index)
            try:
                await asyncio.to_thread(path.write_bytes, frame.data)
            except OSError as e:
                raise CaptureError(f"Failed to stage frame: {e}", frame_index=frame.index) from e
            written += 1
        return written

    # ------------------------------------------------------------------------
    # Encode
    # ------------------------------------------------------------------------

    async def _encode(self, compiled: CompiledGraph, staging: Path, output_path: Path) -> RenderResult:
        if not await self.encoder.is_available():
            raise EncoderNotAvailableError(f"ffmpeg not available at '{self.settings.ffmpeg_path}'")

        staged_output = staging / f"output{output_path.suffix or '.mp4'}"
        command = build_encoder_command(compiled, self.timeline, staged_output, self.settings)
        logger.info(f"[ENCODE] Running {self.encoder.name} encoder: {' '.join(command)}")

        self._process = await self.encoder.start(command, on_progress=self._on_encode_progress)
        try:
            if self._cancelled:
                self._process.terminate()
            result = await self._process.wait()
        except asyncio.CancelledError:
            self._process.terminate()
            # The child must be gone before staging is removed
            await asyncio.shield(self._process.reap(self.settings.encoder_terminate_timeout_s))
            raise
        finally:
            self._process = None

        self._check_cancelled()
        if result.exit_code != 0:
            logger.error(f"[ENCODE] ffmpeg exited with {result.exit_code}: {result.stderr[-2000:]}")
            raise EncoderError(
                f"ffmpeg exited with code {result.exit_code}",
                exit_code=result.exit_code,
                stderr=result.stderr,
                command=command,
            )
        if not staged_output.exists() or staged_output.stat().st_size == 0:
            raise MissingOutputError(exit_code=result.exit_code, stderr=result.stderr, command=command)

        duration_s = self.timeline.duration_s
        if self.settings.probe_output:
            duration_s = await self._probe_duration(staged_output, duration_s)

        output_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(staged_output), str(output_path))
        logger.info(f"[ENCODE] Encoded {self.timeline.total_frames} frames in {result.elapsed_s:.2f}s")

        return RenderResult(
            output_path=output_path,
            duration_s=duration_s,
            total_frames=self.timeline.total_frames,
            elapsed_s=time.monotonic() - self._started,
            stderr=result.stderr,
        )

    def _on_encode_progress(self, out_time_s: float) -> None:
        logger.debug(f"[ENCODE] {out_time_s:.2f}s / {self.timeline.duration_s:.2f}s encoded")

    async def _probe_duration(self, path: Path, fallback: float) -> float:
        try:
            info = await asyncio.to_thread(get_media_info, str(path))
        except RuntimeError as e:
            logger.warning(f"[ENCODE] Could not probe output, using timeline duration: {e}")
            return fallback
        return info.duration_s if info.duration_s is not None else fallback

    # ------------------------------------------------------------------------
    # Failure
    # ------------------------------------------------------------------------

    def _fail(self, error: FramestitchError) -> None:
        self.job.error_code = error.code
        self.job.error_message = error.message
        if self.job.status not in (RenderStatus.COMPLETE, RenderStatus.FAILED):
            self.job.transition(RenderStatus.FAILED)
        logger.error(f"[RENDER] Job {self.job.id} failed ({error.code}): {error.message}")


async def render_composition(
    composition: Composition | dict,
    surface: CaptureSurface,
    output_path: str | Path,
    on_progress: Callable[[int, int], None] | None = None,
    **kwargs: Any,
) -> RenderResult:
    """Convenience wrapper: build a pipeline and render once."""
    pipeline = RenderPipeline(composition, surface, **kwargs)
    if on_progress:
        pipeline.set_progress_callback(on_progress)
    return await pipeline.render(output_path)
