from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="FRAMESTITCH_",
        extra="ignore",
    )

    # Application
    app_name: str = "framestitch"
    app_version: str = "0.1.0"

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    # Encoder backend, chosen once per process: "async" drives ffmpeg through
    # asyncio subprocesses, "threaded" runs a blocking subprocess in a worker
    # thread (for event loops without child process support).
    encoder_backend: Literal["async", "threaded"] = "async"
    # Seconds a terminated ffmpeg gets to exit before it is killed
    encoder_terminate_timeout_s: float = 5.0

    # Capture
    # Frames held between capture and the staging writer. Each 1080p RGBA
    # frame is ~8MB raw, so the default keeps peak pixel memory near 40MB.
    frame_buffer_depth: int = 5
    capture_pixel_ratio: float = 1.0
    staging_prefix: str = "framestitch_render_"
    keep_staging: bool = False

    # Render settings
    render_video_codec: str = "libx264"
    render_preset: str = "medium"
    render_crf: int = 18
    render_pixel_format: str = "yuv420p"
    render_audio_codec: str = "aac"
    render_audio_bitrate: str = "192k"
    render_audio_sample_rate: int = 48000
    render_ffmpeg_threads: int = 2

    # Rounding applied whenever a fractional frame/sample position has to
    # become an integer ("round" = half-up, "truncate" = toward zero).
    frame_rounding: Literal["round", "truncate"] = "round"

    # Read the output duration back with ffprobe instead of trusting the timeline
    probe_output: bool = False

    @field_validator("frame_buffer_depth")
    @classmethod
    def _depth_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("frame_buffer_depth must be >= 1")
        return v

    @field_validator("capture_pixel_ratio")
    @classmethod
    def _ratio_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("capture_pixel_ratio must be > 0")
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
