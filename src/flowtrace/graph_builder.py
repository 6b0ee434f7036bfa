from collections import defaultdict, deque
from functools import lru_cache
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
import logging

from flowtrace.models import EnrichedNode, FlowLink, FlowNode, GraphData, TraceResult

logger = logging.getLogger(__name__)


def _select_seeds(nodes: Sequence[FlowNode], links: Sequence[FlowLink], start_node: Optional[str]) -> List[str]:
    """
    Pick the BFS origins.

    A valid start node wins. Otherwise every node nobody sends to is a seed;
    a fully cyclic graph falls back to the node with the most outgoing links
    (first seen wins on ties).
    """
    node_ids = {n.id for n in nodes}
    if start_node and start_node in node_ids:
        return [start_node]

    in_degree: Dict[str, int] = {n.id: 0 for n in nodes}
    for link in links:
        if link.target in in_degree:
            in_degree[link.target] += 1

    seeds = [node_id for node_id, degree in in_degree.items() if degree == 0]
    if seeds or not nodes:
        return seeds

    out_degree: Dict[str, int] = {}
    for link in links:
        if link.source in node_ids:
            out_degree[link.source] = out_degree.get(link.source, 0) + 1

    best: Optional[str] = None
    for node_id, count in out_degree.items():
        if best is None or count > out_degree[best]:
            best = node_id
    return [best] if best is not None else []


def _bfs_depths(links: Sequence[FlowLink], seeds: Iterable[str]) -> Dict[str, int]:
    adj: Dict[str, Dict[str, None]] = defaultdict(dict)
    for link in links:
        adj[link.source][link.target] = None

    depths: Dict[str, int] = {}
    queue = deque()
    for seed in seeds:
        depths[seed] = 0
        queue.append(seed)

    while queue:
        u = queue.popleft()
        for v in adj.get(u, ()):
            if v not in depths:
                depths[v] = depths[u] + 1
                queue.append(v)
    return depths


def build_graph(
    nodes: Sequence[FlowNode],
    links: Sequence[FlowLink],
    start_node: Optional[str] = None,
) -> GraphData:
    """
    Annotate a raw trace with BFS depth and per-node flow totals.

    Nodes that BFS never reaches get ``depth=None``. Links are passed through
    untouched; repeated transfers between the same pair add up.
    """
    seeds = _select_seeds(nodes, links, start_node)
    depths = _bfs_depths(links, seeds)

    received: Dict[str, float] = defaultdict(float)
    sent: Dict[str, float] = defaultdict(float)
    for link in links:
        received[link.target] += link.amount
        sent[link.source] += link.amount

    node_ids = {n.id for n in nodes}
    if start_node and start_node in node_ids:
        highlight = start_node
    else:
        highlight = seeds[0] if seeds else None

    enriched: List[EnrichedNode] = []
    for n in nodes:
        depth = depths.get(n.id)
        enriched.append(EnrichedNode(
            id=n.id,
            label=n.label,
            type=n.type,
            depth=depth,
            total_received=received.get(n.id, 0.0),
            total_sent=sent.get(n.id, 0.0),
            net_flow=received.get(n.id, 0.0) - sent.get(n.id, 0.0),
            is_start=n.id == highlight,
            group=depth,
        ))

    unreachable = sum(1 for n in enriched if n.depth is None)
    logger.debug(f"Graph built: {len(enriched)} nodes, {len(links)} links, seeds={seeds}, unreachable={unreachable}")
    return GraphData(nodes=enriched, links=list(links), seeds=seeds)


NodeKey = Tuple[str, str, Optional[str]]
LinkKey = Tuple[str, str, float, Optional[int], Optional[str]]


@lru_cache(maxsize=32)
def _build_graph_from_key(node_key: Tuple[NodeKey, ...], link_key: Tuple[LinkKey, ...], start_node: Optional[str]) -> GraphData:
    nodes = [FlowNode(id=i, label=label, type=t) for i, label, t in node_key]
    links = [FlowLink(source=s, target=t, amount=a, ts=ts, signature=sig) for s, t, a, ts, sig in link_key]
    return build_graph(nodes, links, start_node)


def build_graph_cached(
    nodes: Sequence[FlowNode],
    links: Sequence[FlowLink],
    start_node: Optional[str] = None,
) -> GraphData:
    """Memoized build_graph keyed by the value of its inputs.

    Returns a deep copy so callers may mutate the result freely.
    """
    node_key = tuple((n.id, n.label, n.type) for n in nodes)
    link_key = tuple((l.source, l.target, l.amount, l.ts, l.signature) for l in links)
    return _build_graph_from_key(node_key, link_key, start_node or None).model_copy(deep=True)


def build_graph_from_result(result: Optional[TraceResult], start_node: Optional[str] = None) -> GraphData:
    if result is None:
        return GraphData()
    return build_graph_cached(result.nodes, result.links, start_node)
