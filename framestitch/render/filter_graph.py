"""Filter graph model for ``-filter_complex``.

Building a graph and rendering it are separate steps: the compiler adds
chains of ``FilterNode``s with labelled edges, ``FilterGraph.validate()``
checks the topology, and only then ``serialize()`` turns it into text.
"""

from dataclasses import dataclass, field
from typing import Iterable, Sequence

from framestitch.exceptions import CompileError, LabelCollisionError, UnresolvedLabelError


@dataclass(frozen=True)
class FilterNode:
    """One filter invocation: N input labels in, exactly one label out."""

    name: str
    inputs: tuple[str, ...]
    output: str
    args: tuple[str, ...] = ()
    node_id: str | None = None

    def expression(self) -> str:
        if not self.args:
            return self.name
        return f"{self.name}={':'.join(self.args)}"


@dataclass
class FilterChain:
    """Linear run of filters; every node after the first consumes its predecessor."""

    nodes: list[FilterNode] = field(default_factory=list)

    @property
    def inputs(self) -> tuple[str, ...]:
        return self.nodes[0].inputs

    @property
    def output(self) -> str:
        return self.nodes[-1].output

    def serialize(self) -> str:
        pads_in = "".join(f"[{label}]" for label in self.inputs)
        body = ",".join(node.expression() for node in self.nodes)
        return f"{pads_in}{body}[{self.output}]"


class StreamLabelAllocator:
    """Hands out labels from one strictly increasing counter.

    Video and audio labels share the counter, so allocation order is total
    across both kinds.
    """

    def __init__(self):
        self._counter = 0
        self._issued: set[str] = set()

    @property
    def count(self) -> int:
        return self._counter

    def allocate(self, kind: str = "v") -> str:
        self._counter += 1
        label = f"{kind}{self._counter}"
        if label in self._issued:
            raise LabelCollisionError(label)
        self._issued.add(label)
        return label


FilterSpec = tuple[str, Sequence[str]]


class FilterGraph:
    """Ordered chains plus the input stream pads they may consume."""

    def __init__(self, input_streams: Iterable[str] = ()):
        self.chains: list[FilterChain] = []
        self.input_streams: set[str] = set(input_streams)
        self.labels = StreamLabelAllocator()

    def register_input_stream(self, stream: str) -> str:
        self.input_streams.add(stream)
        return stream

    @property
    def nodes(self) -> list[FilterNode]:
        return [node for chain in self.chains for node in chain.nodes]

    def add_chain(
        self,
        inputs: Sequence[str],
        filters: Sequence[FilterSpec],
        kind: str = "v",
        node_id: str | None = None,
    ) -> str:
        """Append a chain of ``(name, args)`` filters and return its output label.

        Every filter gets a freshly allocated label; only the last one is
        visible in the serialized text.
        """
        if not filters:
            raise CompileError("Filter chain needs at least one filter", node_id=node_id)

        nodes: list[FilterNode] = []
        pads = tuple(inputs)
        for name, args in filters:
            node = FilterNode(
                name=name,
                inputs=pads,
                output=self.labels.allocate(kind),
                args=tuple(args),
                node_id=node_id,
            )
            nodes.append(node)
            pads = (node.output,)

        self.chains.append(FilterChain(nodes))
        return nodes[-1].output

    def validate(self, terminals: Iterable[str] = ()) -> None:
        """Check that the graph is a valid DAG in registration order.

        Raises:
            UnresolvedLabelError: a label is consumed before any node produces it
            LabelCollisionError: a label is produced twice
            CompileError: a chain is not linear, a label is consumed twice,
                or a terminal label is missing or consumed
        """
        produced: set[str] = set()
        consumed: set[str] = set()

        for chain in self.chains:
            if not chain.nodes:
                raise CompileError("Empty filter chain")
            for i, node in enumerate(chain.nodes):
                if i > 0 and node.inputs != (chain.nodes[i - 1].output,):
                    raise CompileError(
                        f"Filter '{node.name}' breaks chain linearity",
                        node_id=node.node_id,
                        label=node.output,
                    )
                for label in node.inputs:
                    if label in self.input_streams:
                        continue
                    if label not in produced:
                        raise UnresolvedLabelError(label, node_id=node.node_id)
                    if label in consumed:
                        raise CompileError(
                            f"Stream label consumed twice: [{label}]",
                            node_id=node.node_id,
                            label=label,
                        )
                    consumed.add(label)
                if node.output in produced or node.output in self.input_streams:
                    raise LabelCollisionError(node.output, node_id=node.node_id)
                produced.add(node.output)

        for label in terminals:
            if label not in produced and label not in self.input_streams:
                raise UnresolvedLabelError(label)
            if label in consumed:
                raise CompileError(f"Terminal label is consumed inside the graph: [{label}]", label=label)

    def serialize(self) -> str:
        return ";".join(chain.serialize() for chain in self.chains)
