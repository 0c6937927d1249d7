"""External encoder (ffmpeg) capability.

The backend is chosen once per process by ``get_encoder()`` from
``Settings.encoder_backend``:

- ``AsyncProcessEncoder`` drives ffmpeg with ``asyncio.create_subprocess_exec``
  and reports progress from ``-progress pipe:1`` while it runs.
- ``ThreadedProcessEncoder`` runs a blocking ``subprocess.Popen`` in a worker
  thread, for event loops that cannot spawn child processes.

Both return an ``EncoderProcess`` whose ``wait()`` yields the exit code and
the captured stderr; neither raises on a non-zero exit (the orchestrator
classifies failures).
"""

import asyncio
import logging
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from framestitch.config import Settings, get_settings
from framestitch.exceptions import EncoderNotAvailableError
from framestitch.render.compiler import CompiledGraph
from framestitch.render.timecode import format_number, format_seconds
from framestitch.schemas.composition import Timeline

logger = logging.getLogger(__name__)

# Called with the encoded output time in seconds
EncodeProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class EncoderResult:
    exit_code: int
    stderr: str
    elapsed_s: float


class EncoderProcess(ABC):
    """Handle on one running encoder invocation."""

    @abstractmethod
    async def wait(self) -> EncoderResult:
        """Wait for the process to exit."""

    @abstractmethod
    def terminate(self) -> None:
        """Stop the process. Safe to call after it has exited."""

    @abstractmethod
    async def reap(self, timeout: float) -> None:
        """Wait for the process to exit, killing it after ``timeout`` seconds."""


class Encoder(ABC):
    name: str = "encoder"

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    @abstractmethod
    async def is_available(self) -> bool:
        """True when the ffmpeg executable can be run."""

    @abstractmethod
    async def start(
        self,
        command: list[str],
        on_progress: EncodeProgressCallback | None = None,
    ) -> EncoderProcess:
        """Spawn ``command``.

        Raises:
            EncoderNotAvailableError: if the executable cannot be started
        """


# =============================================================================
# asyncio subprocess backend
# =============================================================================


class _AsyncProcess(EncoderProcess):
    def __init__(self, proc: asyncio.subprocess.Process, on_progress: EncodeProgressCallback | None):
        self._proc = proc
        self._on_progress = on_progress
        self._started = time.monotonic()

    async def _read_progress(self) -> None:
        assert self._proc.stdout is not None
        async for raw_line in self._proc.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if line.startswith("out_time_us=") and self._on_progress:
                try:
                    self._on_progress(int(line.split("=", 1)[1]) / 1_000_000)
                except ValueError:
                    # ffmpeg prints N/A before the first frame is muxed
                    continue

    async def wait(self) -> EncoderResult:
        assert self._proc.stderr is not None
        # Drain both pipes together so neither can fill up and stall ffmpeg
        _, stderr = await asyncio.gather(self._read_progress(), self._proc.stderr.read())
        exit_code = await self._proc.wait()
        return EncoderResult(
            exit_code=exit_code,
            stderr=stderr.decode("utf-8", errors="replace"),
            elapsed_s=time.monotonic() - self._started,
        )

    def terminate(self) -> None:
        if self._proc.returncode is None:
            try:
                self._proc.terminate()
            except ProcessLookupError:
                pass

    async def reap(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._proc.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[ENCODE] pid {self._proc.pid} ignored terminate, killing")
            if self._proc.returncode is None:
                self._proc.kill()
            await self._proc.wait()


class AsyncProcessEncoder(Encoder):
    name = "async"

    async def is_available(self) -> bool:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.settings.ffmpeg_path,
                "-version",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError:
            return False
        return await proc.wait() == 0

    async def start(self, command, on_progress=None) -> EncoderProcess:
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EncoderNotAvailableError(f"Cannot start encoder: {e}", command=command) from e
        logger.debug(f"[ENCODE] Started pid {proc.pid}")
        return _AsyncProcess(proc, on_progress)


# =============================================================================
# Worker-thread backend
# =============================================================================


class _ThreadedProcess(EncoderProcess):
    def __init__(self, proc: subprocess.Popen, on_progress: EncodeProgressCallback | None):
        self._proc = proc
        self._on_progress = on_progress
        self._started = time.monotonic()

    async def wait(self) -> EncoderResult:
        # communicate() drains both pipes; progress is only known at exit
        stdout, stderr = await asyncio.to_thread(self._proc.communicate)
        if self._on_progress:
            for line in reversed(stdout.decode("utf-8", errors="replace").splitlines()):
                if line.startswith("out_time_us="):
                    try:
                        self._on_progress(int(line.split("=", 1)[1]) / 1_000_000)
                    except ValueError:
                        pass
                    break
        return EncoderResult(
            exit_code=self._proc.returncode,
            stderr=stderr.decode("utf-8", errors="replace"),
            elapsed_s=time.monotonic() - self._started,
        )

    def terminate(self) -> None:
        if self._proc.poll() is None:
            self._proc.terminate()

    async def reap(self, timeout: float) -> None:
        try:
            await asyncio.to_thread(self._proc.wait, timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"[ENCODE] pid {self._proc.pid} ignored terminate, killing")
            self._proc.kill()
            await asyncio.to_thread(self._proc.wait)


class ThreadedProcessEncoder(Encoder):
    name = "threaded"

    async def is_available(self) -> bool:
        def probe() -> bool:
            try:
                result = subprocess.run(
                    [self.settings.ffmpeg_path, "-version"],
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                )
            except OSError:
                return False
            return result.returncode == 0

        return await asyncio.to_thread(probe)

    async def start(self, command, on_progress=None) -> EncoderProcess:
        try:
            proc = await asyncio.to_thread(
                subprocess.Popen,
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise EncoderNotAvailableError(f"Cannot start encoder: {e}", command=command) from e
        logger.debug(f"[ENCODE] Started pid {proc.pid} in worker thread")
        return _ThreadedProcess(proc, on_progress)


_BACKENDS: dict[str, type[Encoder]] = {
    AsyncProcessEncoder.name: AsyncProcessEncoder,
    ThreadedProcessEncoder.name: ThreadedProcessEncoder,
}


def get_encoder(settings: Settings | None = None) -> Encoder:
    """Encoder for the configured backend."""
    settings = settings or get_settings()
    return _BACKENDS[settings.encoder_backend](settings)


def build_encoder_command(
    compiled: CompiledGraph,
    timeline: Timeline,
    output_path: str | Path,
    settings: Settings | None = None,
) -> list[str]:
    """Full ffmpeg argv for a compiled graph.

    ``-frames:v`` pins the output to exactly ``total_frames`` frames.
    """
    settings = settings or get_settings()

    cmd = [settings.ffmpeg_path, "-y", "-nostdin", "-threads", str(settings.render_ffmpeg_threads)]
    for spec in compiled.inputs:
        cmd.extend(spec.to_args())

    cmd.extend(["-filter_complex", compiled.filter_complex, "-map", f"[{compiled.video_label}]"])
    if compiled.audio_label:
        cmd.extend(["-map", f"[{compiled.audio_label}]"])

    cmd.extend([
        "-c:v", settings.render_video_codec,
        "-preset", settings.render_preset,
        "-crf", str(settings.render_crf),
        "-pix_fmt", settings.render_pixel_format,
        "-r", format_number(timeline.fps),
        "-frames:v", str(timeline.total_frames),
    ])
    if compiled.audio_label:
        cmd.extend([
            "-c:a", settings.render_audio_codec,
            "-b:a", settings.render_audio_bitrate,
            "-ar", str(settings.render_audio_sample_rate),
        ])
    cmd.extend([
        "-t", format_seconds(timeline.total_frames, timeline.fps),
        "-movflags", "+faststart",
        "-progress", "pipe:1",
        "-nostats",
        str(output_path),
    ])
    return cmd
