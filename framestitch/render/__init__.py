from framestitch.render.compiler import CompiledGraph, FilterGraphCompiler, InputSpec
from framestitch.render.encoder import (
    AsyncProcessEncoder,
    Encoder,
    EncoderProcess,
    EncoderResult,
    ThreadedProcessEncoder,
    get_encoder,
)
from framestitch.render.frame_buffer import Frame, FrameBuffer
from framestitch.render.frame_driver import FrameDriver, PaintChannel, PaintLoop
from framestitch.render.pipeline import (
    RenderJob,
    RenderPipeline,
    RenderResult,
    RenderStatus,
    render_composition,
)
from framestitch.render.surface import CaptureSurface, FrameContext, PillowSurface, layer_painter

__all__ = [
    "RenderPipeline",
    "RenderJob",
    "RenderResult",
    "RenderStatus",
    "render_composition",
    "FilterGraphCompiler",
    "CompiledGraph",
    "InputSpec",
    "Encoder",
    "EncoderProcess",
    "EncoderResult",
    "AsyncProcessEncoder",
    "ThreadedProcessEncoder",
    "get_encoder",
    "Frame",
    "FrameBuffer",
    "FrameDriver",
    "PaintChannel",
    "PaintLoop",
    "CaptureSurface",
    "FrameContext",
    "PillowSurface",
    "layer_painter",
]
