"""Frame-exact video composition: paint, capture, and hand off to ffmpeg."""

from framestitch.render import PillowSurface, RenderPipeline, RenderResult, render_composition
from framestitch.schemas import Composition, Timeline, load_composition

__version__ = "0.1.0"

__all__ = [
    "Composition",
    "Timeline",
    "load_composition",
    "PillowSurface",
    "RenderPipeline",
    "RenderResult",
    "render_composition",
]
