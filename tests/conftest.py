"""
Pytest fixtures for framestitch tests.

Most tests run without ffmpeg: encoder interactions go through
FakeEncoder / FakeEncoderProcess, which record the command and write a
stand-in output file.

CI/CD Note:
Tests that spawn a real ffmpeg are marked with @pytest.mark.requires_ffmpeg
and skipped when no ffmpeg executable is found.
Run `pytest -m "not requires_ffmpeg"` to skip them explicitly.
"""

import asyncio
import tempfile
from pathlib import Path

import pytest

from framestitch.config import Settings
from framestitch.render.encoder import Encoder, EncoderProcess, EncoderResult
from framestitch.schemas.composition import Composition, Timeline


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring a real ffmpeg executable (skipped when absent)",
    )


@pytest.fixture
def temp_output_dir():
    """Temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(_env_file=None, staging_prefix="framestitch_test_")


@pytest.fixture
def timeline() -> Timeline:
    """3 seconds at 30fps, small canvas to keep PNG encoding fast."""
    return Timeline(fps=30, total_frames=90, width=64, height=36)


@pytest.fixture
def media_file(temp_output_dir: Path):
    """Factory for placeholder media files (the compiler only checks existence)."""

    def _create(name: str) -> str:
        path = temp_output_dir / "media" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\x00")
        return str(path)

    return _create


@pytest.fixture
def make_composition(timeline: Timeline):
    """Build a Composition on the default timeline from node dicts."""

    def _make(*nodes: dict, **timeline_overrides) -> Composition:
        tl = timeline.model_copy(update=timeline_overrides) if timeline_overrides else timeline
        return Composition.model_validate({"timeline": tl.model_dump(), "nodes": list(nodes)})

    return _make


# =============================================================================
# Fake encoder
# =============================================================================


class FakeEncoderProcess(EncoderProcess):
    """Finishes immediately (or when released) and writes the output file."""

    def __init__(self, command: list[str], exit_code: int, stderr: str, output_bytes: bytes, hold: bool):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        self.output_bytes = output_bytes
        self.terminated = False
        self.reaped = False
        self._release = None if not hold else asyncio.Event()

    @property
    def output_path(self) -> Path:
        return Path(self.command[-1])

    def release(self) -> None:
        if self._release is not None:
            self._release.set()

    async def wait(self) -> EncoderResult:
        if self._release is not None:
            await self._release.wait()
        if self.terminated:
            return EncoderResult(exit_code=255, stderr="Exiting normally, received signal 15.", elapsed_s=0.0)
        if self.exit_code == 0 and self.output_bytes:
            self.output_path.write_bytes(self.output_bytes)
        return EncoderResult(exit_code=self.exit_code, stderr=self.stderr, elapsed_s=0.01)

    def terminate(self) -> None:
        self.terminated = True
        self.release()

    async def reap(self, timeout: float) -> None:
        self.reaped = True


class FakeEncoder(Encoder):
    """Records every command instead of spawning ffmpeg."""

    name = "fake"

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        available: bool = True,
        exit_code: int = 0,
        stderr: str = "",
        output_bytes: bytes = b"fake-mp4-data",
        hold: bool = False,
    ):
        super().__init__(settings or Settings(_env_file=None))
        self.available = available
        self.exit_code = exit_code
        self.stderr = stderr
        self.output_bytes = output_bytes
        self.hold = hold
        self.commands: list[list[str]] = []
        self.processes: list[FakeEncoderProcess] = []
        # Frame files present in staging when each process was started
        self.staged_frames: list[list[str]] = []

    async def is_available(self) -> bool:
        return self.available

    async def start(self, command, on_progress=None) -> EncoderProcess:
        self.commands.append(list(command))
        staging = Path(command[-1]).parent
        self.staged_frames.append(sorted(p.name for p in staging.glob("frame_*.png")))
        process = FakeEncoderProcess(command, self.exit_code, self.stderr, self.output_bytes, self.hold)
        self.processes.append(process)
        return process


@pytest.fixture
def fake_encoder(settings: Settings) -> FakeEncoder:
    return FakeEncoder(settings)


@pytest.fixture
def make_fake_encoder(settings: Settings):
    """Factory for FakeEncoder with custom exit code, availability or hold."""

    def _make(**kwargs) -> FakeEncoder:
        return FakeEncoder(settings, **kwargs)

    return _make
