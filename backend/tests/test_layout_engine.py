"""Tests for the layered layout engine."""

import asyncio
import math

import pytest

from flowstudio.workflow.layout_engine import (
    LayoutNode,
    LayoutOptions,
    apply_layout,
    compute_layout,
    compute_layout_async,
)
from flowstudio.workflow.workflow_model import FlowDirection

from conftest import command_node, http_node

OPTIONS = LayoutOptions(node_gap=50, layer_gap=75)


def nodes(*ids, width=200, height=100):
    return [LayoutNode(id=i, width=width, height=height) for i in ids]


class TestLayering:
    """Every DAG edge points from an earlier to a later layer."""

    def test_chain(self):
        result = compute_layout(nodes("a", "b", "c"), [("a", "b"), ("b", "c")], options=OPTIONS)
        assert result.layers == [["a"], ["b"], ["c"]]

    def test_longest_path(self):
        """A node is placed below its deepest predecessor."""
        edges = [("a", "b"), ("b", "c"), ("a", "c")]
        result = compute_layout(nodes("a", "b", "c"), edges, options=OPTIONS)
        assert result.layer_of("c") == 2

    def test_dag_edges_go_forward(self):
        ids = [f"n{i}" for i in range(8)]
        edges = [("n0", "n1"), ("n0", "n2"), ("n1", "n3"), ("n2", "n3"),
                 ("n3", "n4"), ("n5", "n6"), ("n6", "n7"), ("n2", "n7")]
        result = compute_layout(nodes(*ids), edges, options=OPTIONS)
        for source, target in edges:
            assert result.layer_of(source) < result.layer_of(target)

    def test_cycle_still_positions_every_node(self):
        edges = [("a", "b"), ("b", "c"), ("c", "a"), ("c", "c")]
        result = compute_layout(nodes("a", "b", "c"), edges, options=OPTIONS)
        assert set(result.positions) == {"a", "b", "c"}
        for pos in result.positions.values():
            assert math.isfinite(pos.x) and math.isfinite(pos.y)
        assert ("c", "a") in result.back_edges
        assert ("c", "c") in result.back_edges

    def test_dangling_edges_ignored(self):
        result = compute_layout(nodes("a"), [("a", "ghost")], options=OPTIONS)
        assert result.layers == [["a"]]

    def test_empty_graph(self):
        result = compute_layout([], [], options=OPTIONS)
        assert result.positions == {}
        assert result.layers == []


class TestCoordinates:
    """Test spacing, centering and direction."""

    def test_top_bottom_spacing(self):
        result = compute_layout(nodes("a", "b", "c"), [("a", "b"), ("a", "c")], options=OPTIONS)
        a, b, c = (result.positions[n] for n in "abc")
        # Layer 1 holds b and c side by side, 200 wide with a 50 gap
        assert (b.y, c.y) == (175, 175)
        assert c.x - b.x == 250
        # Layer 0 is centered over the wider layer below
        assert a.x == 125
        assert a.y == 0

    def test_left_right_swaps_axes(self):
        result = compute_layout(
            nodes("a", "b"), [("a", "b")], direction=FlowDirection.LEFT_RIGHT, options=OPTIONS
        )
        assert result.positions["a"].x == 0
        assert result.positions["b"].x == 275
        assert result.positions["b"].y == 0

    def test_string_direction_accepted(self):
        result = compute_layout(nodes("a", "b"), [("a", "b")], direction="LR", options=OPTIONS)
        assert result.positions["b"].x > 0

    def test_invalid_direction_raises(self):
        with pytest.raises(ValueError):
            compute_layout(nodes("a"), [], direction="diagonal", options=OPTIONS)

    def test_no_overlap_within_layer(self):
        ids = [f"n{i}" for i in range(5)]
        edges = [("root", i) for i in ids]
        result = compute_layout(nodes("root", *ids), edges, options=OPTIONS)
        xs = sorted(result.positions[i].x for i in ids)
        for left, right in zip(xs, xs[1:]):
            assert right - left >= 200 + 50

    def test_reproducible_regardless_of_input_order(self):
        edges = [("a", "c"), ("b", "c"), ("c", "d"), ("a", "d")]
        first = compute_layout(nodes("a", "b", "c", "d"), edges, options=OPTIONS)
        second = compute_layout(nodes("d", "c", "b", "a"), list(reversed(edges)), options=OPTIONS)
        assert first.positions == second.positions

    def test_barycenter_ordering(self):
        """Children follow the order of their parents."""
        edges = [("a", "y"), ("b", "x")]
        result = compute_layout(nodes("a", "b", "x", "y"), edges, options=OPTIONS)
        assert result.layers[1] == ["y", "x"]

    def test_default_options_come_from_config(self, monkeypatch):
        monkeypatch.setenv("FLOWSTUDIO_LAYOUT_LAYER_GAP", "10")
        result = compute_layout(nodes("a", "b"), [("a", "b")])
        assert result.positions["b"].y == 110


class TestAsyncAndApply:
    """Test the async wrapper and snapshot helper."""

    @pytest.mark.asyncio
    async def test_async_matches_sync(self):
        edges = [("a", "b"), ("b", "c")]
        expected = compute_layout(nodes("a", "b", "c"), edges, options=OPTIONS)
        result = await compute_layout_async(nodes("a", "b", "c"), edges, options=OPTIONS)
        assert result.positions == expected.positions

    @pytest.mark.asyncio
    async def test_async_yields_to_event_loop(self):
        ran = []

        async def other():
            ran.append(True)

        task = asyncio.ensure_future(other())
        await compute_layout_async(nodes("a"), [], options=OPTIONS)
        assert ran == [True]
        await task

    def test_apply_layout_sets_positions_and_direction(self, fetch_notify):
        laid_out = apply_layout(fetch_notify, FlowDirection.LEFT_RIGHT, OPTIONS)
        assert laid_out.direction == FlowDirection.LEFT_RIGHT
        assert laid_out.get_node("notify").position.x == 275
        assert fetch_notify.get_node("notify").position.x == 0

    def test_apply_layout_keeps_recorded_direction(self):
        from flowstudio.workflow.workflow_model import build_workflow

        wf = build_workflow([http_node("a"), command_node("b")], direction="LR").connect("a", "b")
        laid_out = apply_layout(wf, options=OPTIONS)
        assert laid_out.direction == FlowDirection.LEFT_RIGHT
