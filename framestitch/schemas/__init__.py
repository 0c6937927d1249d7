from framestitch.schemas.composition import (
    AudioTrackNode,
    Composition,
    LayerNode,
    SyncAnchorNode,
    SyncBehavior,
    Timeline,
    TransitionNode,
    VideoLayerNode,
    load_composition,
    parse_composition,
)

__all__ = [
    "Timeline",
    "Composition",
    "LayerNode",
    "VideoLayerNode",
    "AudioTrackNode",
    "TransitionNode",
    "SyncAnchorNode",
    "SyncBehavior",
    "load_composition",
    "parse_composition",
]
