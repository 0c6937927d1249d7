import json
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from framestitch.exceptions import ConfigurationError


# =============================================================================
# Timeline
# =============================================================================


class Timeline(BaseModel):
    """Frame rate, length and canvas size of one render. Immutable."""

    model_config = ConfigDict(frozen=True)

    fps: float = Field(gt=0)
    total_frames: int = Field(ge=1)
    width: int = Field(gt=0)
    height: int = Field(gt=0)

    @model_validator(mode="after")
    def _even_dimensions(self) -> "Timeline":
        # yuv420p chroma subsampling needs even sizes
        if self.width % 2 or self.height % 2:
            raise ValueError(f"width and height must be even, got {self.width}x{self.height}")
        return self

    @property
    def duration_s(self) -> float:
        return self.total_frames / self.fps

    @classmethod
    def from_duration(
        cls,
        fps: float,
        duration_s: float,
        width: int,
        height: int,
        rounding: str = "round",
    ) -> "Timeline":
        """Build a timeline covering ``duration_s`` seconds."""
        # Imported here: the render package imports this module
        from framestitch.render.timecode import seconds_to_frames

        return cls(
            fps=fps,
            total_frames=seconds_to_frames(duration_s, fps, rounding),
            width=width,
            height=height,
        )


# =============================================================================
# Composition Nodes
# =============================================================================


class SyncBehavior(str, Enum):
    STOP_WHEN_ENDS = "stop_when_ends"
    LOOP_TO_MATCH = "loop_to_match"


class NodeBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1)
    start_frame: int = 0
    # None runs the node to the end of the timeline
    end_frame: int | None = None
    z_order: int = 0

    # Anchor-relative placement, resolved before range validation
    sync_start_with: str | None = None
    sync_end_with: str | None = None
    start_offset: int = 0
    end_offset: int = 0
    sync_behavior: SyncBehavior = SyncBehavior.STOP_WHEN_ENDS


class LayerNode(NodeBase):
    """Still image overlaid on the canvas.

    Without ``source`` the layer is drawn straight into the captured canvas
    by the surface painter and adds nothing to the filter graph.
    """

    kind: Literal["layer"] = "layer"
    source: str | None = None
    x: int = 0
    y: int = 0
    width: int | None = Field(default=None, gt=0)
    height: int | None = Field(default=None, gt=0)
    color: str | None = None


class VideoLayerNode(NodeBase):
    kind: Literal["video_layer"] = "video_layer"
    source: str
    x: int = 0
    y: int = 0
    trim_start_frame: int = Field(default=0, ge=0)
    trim_end_frame: int | None = Field(default=None, ge=0)
    include_audio: bool = False
    volume: float = Field(default=1.0, ge=0)
    fade_in_frames: int = Field(default=0, ge=0)
    fade_out_frames: int = Field(default=0, ge=0)


class AudioTrackNode(NodeBase):
    kind: Literal["audio_track"] = "audio_track"
    source: str
    trim_start_frame: int = Field(default=0, ge=0)
    trim_end_frame: int | None = Field(default=None, ge=0)
    volume: float = Field(default=1.0, ge=0)
    fade_in_frames: int = Field(default=0, ge=0)
    fade_out_frames: int = Field(default=0, ge=0)
    loop: bool = False
    # Mixed output keeps going until this track ends
    extend_duration: bool = False


class TransitionNode(NodeBase):
    """Crossfade from ``from_node`` into ``to_node``."""

    kind: Literal["transition"] = "transition"
    from_node: str
    to_node: str
    duration_frames: int

    @model_validator(mode="before")
    @classmethod
    def _derive_end(cls, data):
        if isinstance(data, dict) and data.get("end_frame") is None and "duration_frames" in data:
            data = {**data, "end_frame": data.get("start_frame", 0) + data["duration_frames"]}
        return data


class SyncAnchorNode(NodeBase):
    kind: Literal["sync_anchor"] = "sync_anchor"
    anchor_id: str = Field(min_length=1)


CompositionNode = Annotated[
    Union[LayerNode, VideoLayerNode, AudioTrackNode, TransitionNode, SyncAnchorNode],
    Field(discriminator="kind"),
]

VisualNode = Union[LayerNode, VideoLayerNode]
AudioNode = Union[AudioTrackNode, VideoLayerNode]


# =============================================================================
# Composition
# =============================================================================


class Composition(BaseModel):
    """Timeline plus the ordered nodes rendered onto it."""

    timeline: Timeline
    nodes: list[CompositionNode] = Field(default_factory=list)

    @property
    def visual_nodes(self) -> list[VisualNode]:
        return [n for n in self.nodes if isinstance(n, (LayerNode, VideoLayerNode))]

    @property
    def audio_nodes(self) -> list[AudioNode]:
        return [
            n
            for n in self.nodes
            if isinstance(n, AudioTrackNode)
            or (isinstance(n, VideoLayerNode) and n.include_audio)
        ]

    @property
    def transitions(self) -> list[TransitionNode]:
        return [n for n in self.nodes if isinstance(n, TransitionNode)]

    @property
    def anchors(self) -> list[SyncAnchorNode]:
        return [n for n in self.nodes if isinstance(n, SyncAnchorNode)]

    def get_node(self, node_id: str):
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None


def parse_composition(data: dict) -> Composition:
    """Validate raw composition data, surfacing schema problems as ConfigurationError."""
    try:
        return Composition.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first["loc"])
        raise ConfigurationError(
            f"Invalid composition: {e.error_count()} error(s), first at {field}: {first['msg']}",
            field=field,
            value=first.get("input"),
        ) from e


def load_composition(path: str | Path) -> Composition:
    """Read a composition from a JSON file."""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read composition {path}: {e}", field="path", value=str(path)) from e
    return parse_composition(data)
