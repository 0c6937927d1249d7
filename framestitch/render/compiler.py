"""Compile a composition into an ffmpeg filter graph.

Input 0 is always the captured canvas (the staged PNG sequence). Every
media-backed node gets its own input index in declaration order. Visual
nodes are overlaid onto the canvas in ascending z_order, audio nodes are
trimmed, faded, delayed to their start frame and mixed with a single amix.

All timing is expressed in integer frames: overlay visibility uses
``between(n, start, end - 1)`` and stream offsets use
``PTS-STARTPTS+start/(FRAME_RATE*TB)``, so nothing depends on how a
fractional frame rate rounds to seconds.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from framestitch.config import Settings, get_settings
from framestitch.exceptions import (
    CompileError,
    InvalidFrameRangeError,
    MissingAnchorError,
    MissingAssetError,
)
from framestitch.render.filter_graph import FilterGraph, FilterNode
from framestitch.render.timecode import (
    FrameWindow,
    TransitionWeight,
    format_number,
    format_seconds,
    frames_to_samples,
)
from framestitch.schemas.composition import (
    AudioTrackNode,
    Composition,
    LayerNode,
    SyncAnchorNode,
    SyncBehavior,
    Timeline,
    TransitionNode,
    VideoLayerNode,
)

logger = logging.getLogger(__name__)

CANVAS_FRAME_PATTERN = "frame_%06d.png"


@dataclass(frozen=True)
class InputSpec:
    """One ``-i`` input with the decode options placed before it."""

    index: int
    path: str
    kind: str  # canvas, image, video, audio
    options: tuple[str, ...] = ()
    node_id: str | None = None

    def to_args(self) -> list[str]:
        return [*self.options, "-i", self.path]


@dataclass
class CompiledGraph:
    graph: FilterGraph
    inputs: list[InputSpec]
    video_label: str
    audio_label: str | None = None
    mix_duration: str | None = None
    nodes: list = field(default_factory=list)

    @property
    def filter_complex(self) -> str:
        return self.graph.serialize()

    @property
    def filter_nodes(self) -> list[FilterNode]:
        return self.graph.nodes


def _end_frame(node, timeline: Timeline) -> int:
    return node.end_frame if node.end_frame is not None else timeline.total_frames


def resolve_sync_anchors(composition: Composition) -> list:
    """Replace anchor-relative start/end frames with absolute ones.

    An anchor without end_frame spans to the timeline end. A node synced
    only at its start keeps its duration; a node synced at its end with
    ``loop_to_match`` loops its audio to fill the anchored span.
    """
    timeline = composition.timeline
    anchors: dict[str, tuple[int, int]] = {}
    for node in composition.anchors:
        if node.anchor_id in anchors:
            raise CompileError(f"Duplicate sync anchor: {node.anchor_id}", node_id=node.id)
        anchors[node.anchor_id] = (
            node.start_frame + node.start_offset,
            _end_frame(node, timeline) + node.end_offset,
        )

    def lookup(anchor_id: str, node_id: str) -> tuple[int, int]:
        if anchor_id not in anchors:
            raise MissingAnchorError(anchor_id, node_id=node_id)
        return anchors[anchor_id]

    resolved = []
    for node in composition.nodes:
        if isinstance(node, SyncAnchorNode) or not (node.sync_start_with or node.sync_end_with):
            resolved.append(node)
            continue

        start, end = node.start_frame, node.end_frame
        update = {}
        if node.sync_start_with:
            new_start = lookup(node.sync_start_with, node.id)[0] + node.start_offset
            if not node.sync_end_with and end is not None:
                end = new_start + (end - start)
            start = new_start
        if node.sync_end_with:
            end = lookup(node.sync_end_with, node.id)[1] + node.end_offset
            if node.sync_behavior == SyncBehavior.LOOP_TO_MATCH and isinstance(node, AudioTrackNode):
                update["loop"] = True

        update["start_frame"] = start
        update["end_frame"] = end
        resolved.append(node.model_copy(update=update))
        logger.debug(f"[COMPILE] Node {node.id} synced to [{start}, {end})")
    return resolved


class FilterGraphCompiler:
    """Builds, validates and serializes the filter graph for one render."""

    def __init__(
        self,
        timeline: Timeline,
        settings: Settings | None = None,
        verify_assets: bool = True,
    ):
        self.timeline = timeline
        self.settings = settings or get_settings()
        self.verify_assets = verify_assets

    @property
    def _fps(self) -> str:
        return format_number(self.timeline.fps)

    def compile(self, composition: Composition, canvas_pattern: str) -> CompiledGraph:
        """Compile ``composition`` with the canvas read from ``canvas_pattern``.

        Raises:
            CompileError: on any timing, reference or topology problem.
                Nothing is spawned before this returns.
        """
        resolved = composition.model_copy(update={"nodes": resolve_sync_anchors(composition)})
        nodes = resolved.nodes
        self._validate(resolved)

        inputs = [
            InputSpec(
                index=0,
                path=canvas_pattern,
                kind="canvas",
                options=("-framerate", self._fps, "-start_number", "0"),
                node_id=None,
            )
        ]
        input_index: dict[str, int] = {}
        for node in nodes:
            spec = self._input_for(node, len(inputs))
            if spec is not None:
                inputs.append(spec)
                input_index[node.id] = spec.index

        graph = FilterGraph(f"{spec.index}:v" for spec in inputs if spec.kind != "audio")
        for spec in inputs:
            if spec.kind in ("video", "audio"):
                graph.register_input_stream(f"{spec.index}:a")

        video_label = self._compile_visual(graph, resolved, input_index)
        audio_label, mix_duration = self._compile_audio(graph, resolved, input_index)

        terminals = [video_label] + ([audio_label] if audio_label else [])
        graph.validate(terminals)

        compiled = CompiledGraph(
            graph=graph,
            inputs=inputs,
            video_label=video_label,
            audio_label=audio_label,
            mix_duration=mix_duration,
            nodes=nodes,
        )
        logger.info(
            f"[COMPILE] {len(inputs)} input(s), {len(graph.nodes)} filter(s): {compiled.filter_complex}"
        )
        return compiled

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _validate(self, composition: Composition) -> None:
        nodes = composition.nodes
        total = self.timeline.total_frames
        by_id: dict[str, object] = {}
        for node in nodes:
            if node.id in by_id:
                raise CompileError(f"Duplicate node id: {node.id}", node_id=node.id)
            by_id[node.id] = node

        for node in nodes:
            start, end = node.start_frame, _end_frame(node, self.timeline)
            if start < 0 or end > total or start >= end:
                raise InvalidFrameRangeError(
                    f"Node range must satisfy 0 <= start < end <= {total}",
                    node_id=node.id,
                    start_frame=start,
                    end_frame=end,
                )

            trim_end = getattr(node, "trim_end_frame", None)
            if trim_end is not None and trim_end <= node.trim_start_frame:
                raise InvalidFrameRangeError(
                    "Trim end must be after trim start",
                    node_id=node.id,
                    start_frame=node.trim_start_frame,
                    end_frame=trim_end,
                )

            source = getattr(node, "source", None)
            if source and self.verify_assets and not Path(source).exists():
                raise MissingAssetError(source, node_id=node.id)

        targeted: set[str] = set()
        for transition in composition.transitions:
            self._validate_transition(transition, by_id, targeted)

    def _validate_transition(self, transition: TransitionNode, by_id: dict, targeted: set[str]) -> None:
        if transition.duration_frames <= 0:
            raise InvalidFrameRangeError(
                "Transition duration must be positive",
                node_id=transition.id,
                start_frame=transition.start_frame,
                end_frame=transition.start_frame + transition.duration_frames,
            )
        if transition.start_frame + transition.duration_frames > self.timeline.total_frames:
            raise InvalidFrameRangeError(
                "Transition runs past the end of the timeline",
                node_id=transition.id,
                start_frame=transition.start_frame,
                end_frame=transition.start_frame + transition.duration_frames,
            )

        source = by_id.get(transition.from_node)
        target = by_id.get(transition.to_node)
        for ref, node in ((transition.from_node, source), (transition.to_node, target)):
            if not isinstance(node, (LayerNode, VideoLayerNode)):
                raise CompileError(f"Transition references unknown visual node: {ref}", node_id=transition.id)
        if isinstance(target, LayerNode) and target.source is None:
            raise CompileError(
                f"Transition target {target.id} is painted into the canvas and cannot be blended",
                node_id=transition.id,
            )
        if target.z_order < source.z_order:
            raise CompileError(
                f"Transition target {target.id} is stacked below {source.id}",
                node_id=transition.id,
            )
        if transition.start_frame < target.start_frame:
            raise InvalidFrameRangeError(
                f"Transition starts before its target {target.id} is visible",
                node_id=transition.id,
                start_frame=transition.start_frame,
                end_frame=target.start_frame,
            )
        if target.id in targeted:
            raise CompileError(f"Node {target.id} is the target of more than one transition", node_id=transition.id)
        targeted.add(target.id)

    # -------------------------------------------------------------------------
    # Inputs
    # -------------------------------------------------------------------------

    def _input_for(self, node, index: int) -> InputSpec | None:
        duration = _end_frame(node, self.timeline) - node.start_frame

        if isinstance(node, LayerNode):
            if node.source is None:
                return None
            return InputSpec(
                index=index,
                path=node.source,
                kind="image",
                options=("-loop", "1", "-framerate", self._fps, "-t", format_seconds(duration, self.timeline.fps)),
                node_id=node.id,
            )

        if isinstance(node, VideoLayerNode):
            consumed = duration
            if node.trim_end_frame is not None:
                consumed = min(consumed, node.trim_end_frame - node.trim_start_frame)
            options: tuple[str, ...] = ()
            if node.trim_start_frame > 0:
                options += ("-ss", format_seconds(node.trim_start_frame, self.timeline.fps))
            options += ("-t", format_seconds(consumed, self.timeline.fps))
            return InputSpec(index=index, path=node.source, kind="video", options=options, node_id=node.id)

        if isinstance(node, AudioTrackNode):
            return InputSpec(index=index, path=node.source, kind="audio", node_id=node.id)

        return None

    # -------------------------------------------------------------------------
    # Video
    # -------------------------------------------------------------------------

    def _compile_visual(self, graph: FilterGraph, composition: Composition, input_index: dict[str, int]) -> str:
        accumulator = graph.add_chain(
            ["0:v"],
            [("fps", (self._fps,)), ("format", (self.settings.render_pixel_format,))],
            kind="v",
            node_id="canvas",
        )

        incoming = {n.to_node: n for n in composition.transitions}
        overlaid = [n for n in composition.visual_nodes if n.id in input_index]
        # sorted() is stable: equal z_order keeps declaration order
        for node in sorted(overlaid, key=lambda n: n.z_order):
            window = FrameWindow(node.start_frame, _end_frame(node, self.timeline))

            setpts = "PTS-STARTPTS"
            if window.start > 0:
                setpts += f"+{window.start}/(FRAME_RATE*TB)"
            prep = [("fps", (self._fps,))]
            if isinstance(node, LayerNode) and (node.width or node.height):
                # -1 keeps the aspect ratio for the side left unset
                prep.append(("scale", (str(node.width or -1), str(node.height or -1))))
            prep.append(("setpts", (setpts,)))

            transition = incoming.get(node.id)
            if transition is not None:
                weight = TransitionWeight(transition.start_frame, transition.duration_frames)
                prep += [("format", ("yuva420p",)), ("fade", weight.fade_args(window.start))]
                logger.debug(f"[COMPILE] Crossfade into {node.id}: weight {weight.expression()}")

            stream = graph.add_chain([f"{input_index[node.id]}:v"], prep, kind="v", node_id=node.id)
            accumulator = graph.add_chain(
                [accumulator, stream],
                [
                    (
                        "overlay",
                        (
                            f"x={node.x}",
                            f"y={node.y}",
                            f"enable='{window.enable_expression()}'",
                            "eof_action=pass",
                        ),
                    )
                ],
                kind="v",
                node_id=node.id,
            )
        return accumulator

    # -------------------------------------------------------------------------
    # Audio
    # -------------------------------------------------------------------------

    def _compile_audio(
        self, graph: FilterGraph, composition: Composition, input_index: dict[str, int]
    ) -> tuple[str | None, str | None]:
        audio_nodes = composition.audio_nodes
        if not audio_nodes:
            return None, None

        outputs = [
            graph.add_chain([f"{input_index[n.id]}:a"], self._audio_filters(n), kind="a", node_id=n.id)
            for n in audio_nodes
        ]

        extend = any(isinstance(n, AudioTrackNode) and n.extend_duration for n in audio_nodes)
        mix_duration = "longest" if extend else "shortest"
        mixed = graph.add_chain(
            outputs,
            [
                (
                    "amix",
                    (
                        f"inputs={len(outputs)}",
                        f"duration={mix_duration}",
                        "dropout_transition=0",
                        "normalize=0",
                    ),
                )
            ],
            kind="a",
            node_id="mix",
        )
        logger.debug(f"[COMPILE] Mixing {len(outputs)} audio stream(s), duration={mix_duration}")
        return mixed, mix_duration

    def _audio_filters(self, node) -> list[tuple[str, tuple[str, ...]]]:
        fps = self.timeline.fps
        start = node.start_frame
        duration = _end_frame(node, self.timeline) - start
        sample_rate = self.settings.render_audio_sample_rate
        # adelay counts samples at the stream rate, so fix the rate first
        filters: list[tuple[str, tuple[str, ...]]] = [("aresample", (str(sample_rate),))]

        # Video layers are already trimmed at decode time with -ss/-t
        if isinstance(node, AudioTrackNode) and (node.trim_start_frame > 0 or node.trim_end_frame is not None):
            trim = (f"start={format_seconds(node.trim_start_frame, fps)}",)
            if node.trim_end_frame is not None:
                trim += (f"end={format_seconds(node.trim_end_frame, fps)}",)
            filters += [("atrim", trim), ("asetpts", ("PTS-STARTPTS",))]

        if isinstance(node, AudioTrackNode) and node.loop:
            # Loop the trimmed window. Without a trim end the window is at most the
            # node duration; aloop shrinks to whatever was read when the source ends first.
            window = duration
            if node.trim_end_frame is not None:
                window = node.trim_end_frame - node.trim_start_frame
            size = frames_to_samples(window, fps, sample_rate, self.settings.frame_rounding)
            filters += [("aloop", ("loop=-1", f"size={size}")), ("asetpts", ("PTS-STARTPTS",))]

        filters += [
            ("atrim", ("start=0", f"end={format_seconds(duration, fps)}")),
            ("asetpts", ("PTS-STARTPTS",)),
            ("volume", (format_number(node.volume),)),
        ]

        fade_in = min(node.fade_in_frames, duration)
        if fade_in > 0:
            filters.append(("afade", ("t=in", "st=0", f"d={format_seconds(fade_in, fps)}")))
        fade_out = min(node.fade_out_frames, duration)
        if fade_out > 0:
            filters.append(
                (
                    "afade",
                    (
                        "t=out",
                        f"st={format_seconds(duration - fade_out, fps)}",
                        f"d={format_seconds(fade_out, fps)}",
                    ),
                )
            )

        if start > 0:
            delay = frames_to_samples(start, fps, sample_rate, self.settings.frame_rounding)
            filters.append(("adelay", (f"{delay}S", "all=1")))
        return filters
