"""Frame arithmetic shared by the compiler and the capture loop.

All timeline positions are integer frame indices. Conversions to seconds,
milliseconds or audio samples go through ``quantize`` so that every place a
fractional value becomes an integer follows the same rounding policy.
"""

import math
from dataclasses import dataclass

ROUNDING_POLICIES = ("round", "truncate")


def quantize(value: float, rounding: str = "round") -> int:
    """Convert a non-negative fractional position to an integer.

    "round" rounds half up (not banker's rounding), "truncate" drops the
    fraction.
    """
    if rounding == "round":
        return int(math.floor(value + 0.5))
    if rounding == "truncate":
        return int(value)
    raise ValueError(f"Unknown rounding policy: {rounding}")


def frames_to_seconds(frames: int, fps: float) -> float:
    return frames / fps


def frames_to_ms(frames: int, fps: float, rounding: str = "round") -> int:
    return quantize(frames * 1000 / fps, rounding)


def frames_to_samples(frames: int, fps: float, sample_rate: int, rounding: str = "round") -> int:
    return quantize(frames * sample_rate / fps, rounding)


def seconds_to_frames(seconds: float, fps: float, rounding: str = "round") -> int:
    return quantize(seconds * fps, rounding)


def format_number(value: float) -> str:
    """Render a number for a filter argument without float noise.

    Integral values print without a decimal point, others with at most six
    decimals.
    """
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.6f}".rstrip("0").rstrip(".")


def format_seconds(frames: int, fps: float) -> str:
    return format_number(frames_to_seconds(frames, fps))


@dataclass(frozen=True)
class FrameWindow:
    """Half-open visibility window ``[start, end)`` in frames."""

    start: int
    end: int

    def contains(self, frame: int) -> bool:
        return self.start <= frame < self.end

    @property
    def length(self) -> int:
        return self.end - self.start

    def enable_expression(self) -> str:
        # ffmpeg's between() is inclusive on both ends
        return f"between(n,{self.start},{self.end - 1})"


@dataclass(frozen=True)
class TransitionWeight:
    """Blend weight of the incoming stream across a crossfade.

    0.0 at ``start``, rising linearly to 1.0 at ``start + duration`` and
    clamped outside that range.
    """

    start: int
    duration: int

    def at(self, frame: int) -> float:
        if self.duration <= 0:
            return 1.0 if frame >= self.start else 0.0
        return min(max((frame - self.start) / self.duration, 0.0), 1.0)

    def expression(self) -> str:
        return f"clip((n-{self.start})/{self.duration},0,1)"

    def fade_args(self, stream_start: int) -> tuple[str, ...]:
        """Arguments for an alpha ``fade`` on a stream that begins at ``stream_start``.

        ffmpeg's fade counts frames of its own input, so the ramp start is
        shifted into the stream's local frame numbering.
        """
        return (
            "t=in",
            f"s={self.start - stream_start}",
            f"n={self.duration}",
            "alpha=1",
        )
