"""
Tests for the filter graph model: label allocation, topology validation, serialization.
"""

import pytest

from framestitch.exceptions import CompileError, LabelCollisionError, UnresolvedLabelError
from framestitch.render.filter_graph import FilterChain, FilterGraph, FilterNode, StreamLabelAllocator


class TestStreamLabelAllocator:
    def test_strictly_increasing_shared_counter(self):
        labels = StreamLabelAllocator()
        assert [labels.allocate("v"), labels.allocate("a"), labels.allocate("v")] == ["v1", "a2", "v3"]
        assert labels.count == 3


class TestFilterGraph:
    def test_chain_elides_intermediate_labels(self):
        graph = FilterGraph(["0:v"])
        out = graph.add_chain(["0:v"], [("fps", ("30",)), ("format", ("yuv420p",))])

        assert out == "v2"
        assert graph.serialize() == "[0:v]fps=30,format=yuv420p[v2]"
        assert [n.output for n in graph.nodes] == ["v1", "v2"]

    def test_chains_joined_with_semicolons(self):
        graph = FilterGraph(["0:v", "1:v"])
        base = graph.add_chain(["0:v"], [("null", ())])
        top = graph.add_chain(["1:v"], [("scale", ("32", "18"))])
        graph.add_chain([base, top], [("overlay", ("x=0", "y=0"))])

        assert graph.serialize() == "[0:v]null[v1];[1:v]scale=32:18[v2];[v1][v2]overlay=x=0:y=0[v3]"
        graph.validate(["v3"])

    def test_consuming_unproduced_label_is_rejected(self):
        graph = FilterGraph(["0:v"])
        graph.chains.append(FilterChain([FilterNode("overlay", ("0:v", "v9"), "v1")]))
        with pytest.raises(UnresolvedLabelError) as exc_info:
            graph.validate()
        assert exc_info.value.label == "v9"

    def test_label_consumed_before_production_is_rejected(self):
        graph = FilterGraph(["0:v"])
        graph.chains.append(FilterChain([FilterNode("null", ("v2",), "v1")]))
        graph.chains.append(FilterChain([FilterNode("null", ("0:v",), "v2")]))
        with pytest.raises(UnresolvedLabelError):
            graph.validate()

    def test_duplicate_output_is_rejected(self):
        graph = FilterGraph(["0:v", "1:v"])
        graph.chains.append(FilterChain([FilterNode("null", ("0:v",), "v1")]))
        graph.chains.append(FilterChain([FilterNode("null", ("1:v",), "v1")]))
        with pytest.raises(LabelCollisionError):
            graph.validate()

    def test_label_consumed_twice_is_rejected(self):
        graph = FilterGraph(["0:v"])
        graph.chains.append(FilterChain([FilterNode("null", ("0:v",), "v1")]))
        graph.chains.append(FilterChain([FilterNode("null", ("v1",), "v2")]))
        graph.chains.append(FilterChain([FilterNode("null", ("v1",), "v3")]))
        with pytest.raises(CompileError):
            graph.validate()

    def test_non_linear_chain_is_rejected(self):
        graph = FilterGraph(["0:v", "1:v"])
        graph.chains.append(
            FilterChain([FilterNode("null", ("0:v",), "v1"), FilterNode("null", ("1:v",), "v2")])
        )
        with pytest.raises(CompileError):
            graph.validate()

    def test_missing_terminal_is_rejected(self):
        graph = FilterGraph(["0:v"])
        graph.add_chain(["0:v"], [("null", ())])
        with pytest.raises(UnresolvedLabelError):
            graph.validate(["a7"])

    def test_empty_chain_spec_is_rejected(self):
        with pytest.raises(CompileError):
            FilterGraph(["0:v"]).add_chain(["0:v"], [])
