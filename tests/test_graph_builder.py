from flowtrace.graph_builder import build_graph, build_graph_cached, build_graph_from_result
from flowtrace.models import FlowLink, FlowNode, TraceResult


def _nodes(*ids):
    return [FlowNode(id=i) for i in ids]


def _link(s, t, amount):
    return FlowLink(source=s, target=t, amount=amount)


def test_flow_aggregation_and_depths():
    links = [_link("A", "B", 100), _link("B", "C", 40), _link("C", "B", 10)]
    graph = build_graph(_nodes("A", "B", "C"), links)
    by_id = graph.node_map()

    assert graph.seeds == ["A"]
    assert [by_id[i].depth for i in "ABC"] == [0, 1, 2]

    assert by_id["B"].total_received == 110
    assert by_id["B"].total_sent == 40
    assert by_id["B"].net_flow == 70
    assert by_id["C"].total_received == 40
    assert by_id["C"].total_sent == 10
    assert by_id["C"].net_flow == 30
    assert by_id["A"].is_start
    assert not by_id["B"].is_start


def test_start_node_overrides_seed_selection():
    links = [_link("A", "B", 1), _link("B", "C", 1)]
    graph = build_graph(_nodes("A", "B", "C"), links, start_node="B")
    by_id = graph.node_map()
    assert graph.seeds == ["B"]
    assert by_id["B"].depth == 0 and by_id["B"].is_start
    assert by_id["C"].depth == 1
    assert by_id["A"].depth is None


def test_unknown_start_node_is_ignored():
    graph = build_graph(_nodes("A", "B"), [_link("A", "B", 1)], start_node="Z")
    assert graph.seeds == ["A"]


def test_cyclic_graph_falls_back_to_highest_out_degree():
    links = [_link("A", "B", 1), _link("B", "C", 1), _link("C", "A", 1), _link("B", "A", 1)]
    graph = build_graph(_nodes("A", "B", "C"), links)
    assert graph.seeds == ["B"]
    assert graph.node_map()["B"].depth == 0


def test_cycle_tie_breaks_on_first_seen():
    links = [_link("A", "B", 1), _link("B", "A", 1)]
    assert build_graph(_nodes("A", "B"), links).seeds == ["A"]


def test_multiple_seeds_and_unreachable_nodes():
    links = [_link("A", "C", 1), _link("B", "C", 1), _link("X", "D", 1)]
    graph = build_graph(_nodes("A", "B", "C", "D"), links)
    by_id = graph.node_map()
    assert graph.seeds == ["A", "B"]
    assert by_id["C"].depth == 1
    # D is only fed by X, which is not a node in the trace
    assert by_id["D"].depth is None
    assert not by_id["D"].reachable


def test_bfs_passes_through_unlisted_endpoints():
    links = [_link("A", "X", 1), _link("X", "B", 1)]
    graph = build_graph(_nodes("A", "B"), links)
    assert graph.node_map()["B"].depth == 2


def test_build_is_deterministic():
    links = [_link("A", "B", 3), _link("A", "C", 2), _link("C", "D", 1), _link("B", "D", 1)]
    first = build_graph(_nodes("A", "B", "C", "D"), links)
    second = build_graph(_nodes("A", "B", "C", "D"), links)
    assert first == second
    assert first.node_map()["D"].depth == 2


def test_empty_input():
    graph = build_graph([], [])
    assert graph.nodes == [] and graph.seeds == []


def test_cached_build_returns_independent_copies():
    nodes, links = _nodes("A", "B"), [_link("A", "B", 1)]
    first = build_graph_cached(nodes, links)
    first.nodes[0].label = "changed"
    second = build_graph_cached(nodes, links)
    assert second.nodes[0].label == ""
    assert second == build_graph(nodes, links)


def test_build_from_result():
    result = TraceResult(nodes=_nodes("A", "B"), links=[_link("A", "B", 2)])
    graph = build_graph_from_result(result, "A")
    assert graph.node_map()["B"].total_received == 2
    assert build_graph_from_result(None).nodes == []
