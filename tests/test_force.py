import asyncio
import math
import time

import pytest

from flowtrace.force import ForceSimulation, force_layout, link_distance
from flowtrace.graph_builder import build_graph
from flowtrace.layout import Viewport
from flowtrace.models import FlowLink, FlowNode


@pytest.fixture
def graph():
    nodes = [FlowNode(id=i) for i in "ABCD"]
    links = [
        FlowLink(source="A", target="B", amount=1000),
        FlowLink(source="A", target="C", amount=10),
        FlowLink(source="C", target="D", amount=1),
    ]
    return build_graph(nodes, links)


async def _yield(_):
    await asyncio.sleep(0)


def test_link_distance_shrinks_with_amount():
    assert link_distance(0) == 110
    assert link_distance(1e12) == 50
    assert link_distance(1000) < link_distance(10)


def test_force_layout_is_deterministic_and_complete(graph):
    first = force_layout(graph)
    second = force_layout(graph)

    assert first.mode == "force"
    assert set(first.positions) == set("ABCD")
    assert {(e.source, e.target) for e in first.edges} == {("A", "B"), ("A", "C"), ("C", "D")}
    for node_id, p in first.positions.items():
        assert math.isfinite(p.x) and math.isfinite(p.y)
        assert p.x == second.positions[node_id].x
        assert p.y == second.positions[node_id].y


def test_simulation_cools_down(graph):
    sim = ForceSimulation(graph, Viewport(800, 600))
    ticks = sim.run()
    assert sim.settled
    assert 250 < ticks < 400


def test_layout_stays_near_viewport_center(graph):
    result = force_layout(graph, Viewport(800, 600))
    cx = sum(p.x for p in result.positions.values()) / 4
    cy = sum(p.y for p in result.positions.values()) / 4
    assert abs(cx - 400) < 150
    assert abs(cy - 300) < 150


def test_collision_keeps_nodes_apart(graph):
    positions = force_layout(graph, avoid_overlap=True).positions
    ids = list(positions)
    for i, a in enumerate(ids):
        for b in ids[i + 1:]:
            pa, pb = positions[a], positions[b]
            assert math.hypot(pa.x - pb.x, pa.y - pb.y) > max(pa.radius, pb.radius)


def test_drag_pins_and_releases(graph):
    sim = ForceSimulation(graph)
    sim.run()

    sim.drag_start("B", 10, 20)
    assert sim.alpha_target == 0.3
    sim.tick()
    assert (sim.bodies["B"].x, sim.bodies["B"].y) == (10, 20)

    sim.drag("B", 50, 60)
    sim.tick(5)
    assert (sim.bodies["B"].x, sim.bodies["B"].y) == (50, 60)
    assert not sim.settled

    sim.drag_end("B")
    assert sim.alpha_target == 0
    assert sim.bodies["B"].fx is None and sim.bodies["B"].fy is None
    sim.run()
    assert sim.settled


@pytest.mark.asyncio
async def test_start_reports_ticks_and_stop_halts(graph):
    seen = []
    sim = ForceSimulation(graph, sleep=_yield)

    sim.start(lambda positions: seen.append(len(positions)))
    for _ in range(10):
        await asyncio.sleep(0)
    assert sim.running
    assert seen and all(n == 4 for n in seen)

    sim.stop()
    await asyncio.sleep(0)
    count = len(seen)
    for _ in range(5):
        await asyncio.sleep(0)
    assert not sim.running
    assert len(seen) == count


@pytest.mark.asyncio
async def test_loop_finishes_when_settled_and_restarts_on_drag(graph):
    ticks = []

    async def on_tick(positions):
        ticks.append(positions)

    sim = ForceSimulation(graph, sleep=_yield)
    await sim.start(on_tick)
    assert sim.settled
    assert not sim.running

    sim.drag_start("A", 0, 0)
    assert sim.running
    sim.drag_end("A")
    sim.stop()
    assert ticks


def _fanout_graph(fanout=12):
    nodes = [FlowNode(id="R")]
    links = []
    for i in range(fanout):
        child = f"c{i}"
        nodes.append(FlowNode(id=child))
        links.append(FlowLink(source="R", target=child, amount=10 ** (i % 6)))
        for j in range(fanout):
            grandchild = f"g{i}_{j}"
            nodes.append(FlowNode(id=grandchild))
            links.append(FlowLink(source=child, target=grandchild, amount=j + 1))
    return build_graph(nodes, links, "R")


def test_force_layout_on_a_default_sized_trace_stays_fast():
    graph = _fanout_graph()
    assert len(graph.nodes) == 157

    started = time.perf_counter()
    result = force_layout(graph, Viewport(1200, 800))
    elapsed = time.perf_counter() - started

    assert elapsed < 2.0
    assert len(result.positions) == 157
    assert all(math.isfinite(p.x) and math.isfinite(p.y) for p in result.positions.values())
    assert len({(round(p.x, 3), round(p.y, 3)) for p in result.positions.values()}) == 157
    cx = sum(p.x for p in result.positions.values()) / 157
    cy = sum(p.y for p in result.positions.values()) / 157
    assert abs(cx - 600) < 200
    assert abs(cy - 400) < 200
