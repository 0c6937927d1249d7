"""
Integration tests against a real ffmpeg.

Skipped when ffmpeg is not on PATH.
"""

import shutil
import subprocess

import pytest

from framestitch.config import Settings
from framestitch.render.compiler import FilterGraphCompiler
from framestitch.render.encoder import get_encoder
from framestitch.render.pipeline import RenderPipeline
from framestitch.render.surface import PillowSurface, layer_painter
from framestitch.schemas.composition import Composition
from framestitch.utils.media_info import get_media_info

requires_ffmpeg = pytest.mark.skipif(shutil.which("ffmpeg") is None, reason="ffmpeg not available on PATH")


@pytest.fixture
def sine_wav(temp_output_dir):
    path = temp_output_dir / "sine.wav"
    subprocess.run(
        ["ffmpeg", "-y", "-f", "lavfi", "-i", "sine=frequency=440:duration=2", str(path)],
        capture_output=True,
        check=True,
    )
    return str(path)


@requires_ffmpeg
@pytest.mark.requires_ffmpeg
class TestFfmpegRender:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", ["async", "threaded"])
    async def test_render_frame_exact(self, temp_output_dir, backend):
        settings = Settings(_env_file=None, encoder_backend=backend, render_preset="ultrafast", probe_output=True)
        composition = Composition.model_validate(
            {
                "timeline": {"fps": 30, "total_frames": 45, "width": 64, "height": 36},
                "nodes": [{"kind": "layer", "id": "box", "color": "#ff0000", "start_frame": 15, "end_frame": 30}],
            }
        )
        surface = PillowSurface(composition.timeline, painter=layer_painter(composition))
        output = temp_output_dir / f"render_{backend}.mp4"

        pipeline = RenderPipeline(composition, surface, encoder=get_encoder(settings), settings=settings)
        result = await pipeline.render(output)

        assert output.stat().st_size > 0
        info = get_media_info(str(output))
        assert info.has_video
        assert (info.width, info.height) == (64, 36)
        assert info.fps == 30
        assert info.frame_count == 45
        assert result.duration_s == pytest.approx(1.5, abs=0.1)

    @pytest.mark.asyncio
    async def test_render_with_audio(self, temp_output_dir, sine_wav):
        settings = Settings(_env_file=None, render_preset="ultrafast")
        composition = Composition.model_validate(
            {
                "timeline": {"fps": 30, "total_frames": 30, "width": 64, "height": 36},
                "nodes": [
                    {"kind": "audio_track", "id": "tone", "source": sine_wav, "volume": 0.5, "start_frame": 6},
                ],
            }
        )
        output = temp_output_dir / "audio.mp4"
        pipeline = RenderPipeline(
            composition, PillowSurface(composition.timeline), encoder=get_encoder(settings), settings=settings
        )
        await pipeline.render(output)

        info = get_media_info(str(output))
        assert info.has_video and info.has_audio
        assert info.sample_rate == 48000

    def test_looped_trimmed_track_fills_node(self, temp_output_dir, sine_wav):
        settings = Settings(_env_file=None)
        composition = Composition.model_validate(
            {
                "timeline": {"fps": 30, "total_frames": 90, "width": 64, "height": 36},
                "nodes": [
                    {"kind": "audio_track", "id": "bgm", "source": sine_wav, "loop": True, "trim_end_frame": 15},
                ],
            }
        )
        compiled = FilterGraphCompiler(composition.timeline, settings).compile(composition, "frame_%06d.png")
        chain = next(c for c in compiled.graph.chains if c.nodes[0].node_id == "bgm")
        output = temp_output_dir / "looped.wav"

        subprocess.run(
            [
                "ffmpeg", "-y", "-i", sine_wav,
                "-filter_complex", chain.serialize().replace("[1:a]", "[0:a]", 1),
                "-map", f"[{chain.output}]", str(output),
            ],
            capture_output=True,
            check=True,
        )

        # 0.5s of source repeated to the 3s node
        assert get_media_info(str(output)).duration_s == pytest.approx(3.0, abs=0.05)
