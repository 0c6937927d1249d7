"""Off-screen render surface and the time state it paints from."""

import io
import logging
from abc import ABC, abstractmethod
from typing import Callable

from PIL import Image, ImageColor, ImageDraw

from framestitch.exceptions import CaptureError
from framestitch.render.compiler import resolve_sync_anchors
from framestitch.render.timecode import FrameWindow, frames_to_seconds
from framestitch.schemas.composition import Composition, LayerNode, Timeline

logger = logging.getLogger(__name__)


class FrameContext:
    """Current frame index shared by everything that paints a frame.

    Readers use ``frame``; only ``FrameDriver`` moves it (via ``_seek``).
    """

    def __init__(self, timeline: Timeline):
        self.timeline = timeline
        self._frame = 0

    @property
    def frame(self) -> int:
        return self._frame

    @property
    def time_s(self) -> float:
        return frames_to_seconds(self._frame, self.timeline.fps)

    @property
    def progress(self) -> float:
        if self.timeline.total_frames <= 1:
            return 1.0
        return self._frame / (self.timeline.total_frames - 1)

    def is_visible(self, start_frame: int, end_frame: int) -> bool:
        return FrameWindow(start_frame, end_frame).contains(self._frame)

    def _seek(self, index: int) -> None:
        if not 0 <= index < self.timeline.total_frames:
            raise CaptureError(
                f"Frame index outside timeline of {self.timeline.total_frames} frames",
                frame_index=index,
            )
        self._frame = index


Painter = Callable[[Image.Image, FrameContext], None]


class CaptureSurface(ABC):
    """Root surface the frame driver paints and captures once per frame."""

    @abstractmethod
    def paint(self, context: FrameContext) -> None:
        """Lay out and paint the surface for ``context.frame``."""

    @abstractmethod
    def capture(self, pixel_ratio: float = 1.0) -> bytes:
        """Return the last paint as encoded image bytes.

        Raises:
            CaptureError: if the surface is unmounted or encoding fails
        """


class PillowSurface(CaptureSurface):
    """Pillow canvas painted by a user-supplied ``painter(image, context)``.

    The canvas is allocated at ``pixel_ratio`` times the timeline size and
    resampled back down, so painters can draw at higher density than the
    output. Painters scale their own coordinates by
    ``image.width / context.timeline.width``.
    """

    def __init__(
        self,
        timeline: Timeline,
        painter: Painter | None = None,
        background: str = "#000000",
        image_format: str = "PNG",
    ):
        self.timeline = timeline
        self.painter = painter
        self.background = background
        self.image_format = image_format
        self._context: FrameContext | None = None
        self._mounted = True

    @property
    def mounted(self) -> bool:
        return self._mounted

    def unmount(self) -> None:
        self._mounted = False
        logger.debug("[CAPTURE] Render surface unmounted")

    def paint(self, context: FrameContext) -> None:
        if not self._mounted:
            raise CaptureError("Render surface is not mounted", frame_index=context.frame)
        self._context = context

    def capture(self, pixel_ratio: float = 1.0) -> bytes:
        context = self._context
        if context is None:
            raise CaptureError("capture() called before paint()")
        if not self._mounted:
            raise CaptureError("Render surface is not mounted", frame_index=context.frame)

        width, height = self.timeline.width, self.timeline.height
        scaled = (max(1, round(width * pixel_ratio)), max(1, round(height * pixel_ratio)))
        try:
            image = Image.new("RGBA", scaled, ImageColor.getcolor(self.background, "RGBA"))
            if self.painter is not None:
                self.painter(image, context)
            if scaled != (width, height):
                image = image.resize((width, height), Image.Resampling.LANCZOS)
            out = io.BytesIO()
            image.save(out, format=self.image_format)
        except (OSError, ValueError) as e:
            raise CaptureError(f"Failed to encode frame: {e}", frame_index=context.frame) from e

        data = out.getvalue()
        if not data:
            raise CaptureError("Encoded frame is empty", frame_index=context.frame)
        return data


def layer_painter(composition: Composition) -> Painter:
    """Painter that fills the rectangle of every source-less layer visible at the current frame.

    Layers are drawn in ascending z_order; layers without ``color`` are skipped.
    """
    timeline = composition.timeline
    nodes = resolve_sync_anchors(composition)
    layers = sorted(
        (n for n in nodes if isinstance(n, LayerNode) and n.source is None and n.color),
        key=lambda n: n.z_order,
    )

    def paint(image: Image.Image, context: FrameContext) -> None:
        scale = image.width / timeline.width
        draw = ImageDraw.Draw(image)
        for layer in layers:
            end = layer.end_frame if layer.end_frame is not None else timeline.total_frames
            if not context.is_visible(layer.start_frame, end):
                continue
            w = layer.width if layer.width is not None else timeline.width - layer.x
            h = layer.height if layer.height is not None else timeline.height - layer.y
            box = (
                layer.x * scale,
                layer.y * scale,
                (layer.x + w) * scale - 1,
                (layer.y + h) * scale - 1,
            )
            draw.rectangle(box, fill=layer.color)

    return paint
