"""
Spatial layouts for annotated flow graphs.

Every layout takes a GraphData plus a Viewport and returns a LayoutResult:
node positions keyed by id and edge geometry, ready for any renderer.
Nodes BFS never reached (``depth is None``) take no part in hierarchy
building; tree and column layouts park them in a detached column so nothing
from the input disappears.
"""
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Literal, Optional, Tuple

import networkx as nx

from flowtrace.models import EnrichedNode, FlowLink, GraphData

logger = logging.getLogger(__name__)

LayoutMode = Literal["tree", "column", "force", "sankey"]

START_RADIUS = 28
MIN_RADIUS = 14
MAX_RADIUS = 42
RADIUS_SCALE = 10

MIN_LINK_WIDTH = 1.5
MAX_LINK_WIDTH = 14
LINK_WIDTH_SCALE = 80

HIGH_AMOUNT = 100_000
MEDIUM_AMOUNT = 10_000
HIGH_COLOR = "#ef4444"
MEDIUM_COLOR = "#f59e0b"
LOW_COLOR = "#2563eb"

SANKEY_NODE_WIDTH = 18
SANKEY_NODE_PADDING = 14
SANKEY_MIN_THICKNESS = 6
SANKEY_ITERATIONS = 6


def node_radius(node: EnrichedNode) -> float:
    if node.is_start:
        return START_RADIUS
    return max(MIN_RADIUS, min(MAX_RADIUS, math.log10(node.total_received + 1) * RADIUS_SCALE))


def link_width(amount: float) -> float:
    return max(MIN_LINK_WIDTH, min(MAX_LINK_WIDTH, math.sqrt(max(amount or 0, 0)) / LINK_WIDTH_SCALE))


def link_color(amount: float) -> str:
    if amount > HIGH_AMOUNT:
        return HIGH_COLOR
    if amount > MEDIUM_AMOUNT:
        return MEDIUM_COLOR
    return LOW_COLOR


@dataclass(frozen=True)
class Margin:
    top: float = 80
    right: float = 80
    bottom: float = 80
    left: float = 80


@dataclass(frozen=True)
class Viewport:
    width: float = 1200
    height: float = 800

    def inner(self, margin: Margin) -> Tuple[float, float]:
        return (
            max(200, self.width - margin.left - margin.right),
            max(200, self.height - margin.top - margin.bottom),
        )


@dataclass
class NodePosition:
    id: str
    x: float
    y: float
    radius: float
    depth: Optional[int] = None
    detached: bool = False
    # Sankey rectangles
    x0: Optional[float] = None
    x1: Optional[float] = None
    y0: Optional[float] = None
    y1: Optional[float] = None
    value: Optional[float] = None


@dataclass
class EdgeGeometry:
    source: str
    target: str
    amount: float
    width: float
    color: str
    points: List[Tuple[float, float]] = field(default_factory=list)
    circular: bool = False


@dataclass
class LayoutResult:
    mode: LayoutMode
    positions: Dict[str, NodePosition] = field(default_factory=dict)
    edges: List[EdgeGeometry] = field(default_factory=list)
    fallback: bool = False

    def bounds(self) -> Tuple[float, float, float, float]:
        """(x, y, width, height) of everything drawn, node radii included."""
        if not self.positions:
            return (0.0, 0.0, 0.0, 0.0)
        xs0, ys0, xs1, ys1 = [], [], [], []
        for p in self.positions.values():
            if p.x0 is not None:
                xs0.append(p.x0)
                xs1.append(p.x1)
                ys0.append(p.y0)
                ys1.append(p.y1)
            else:
                xs0.append(p.x - p.radius)
                xs1.append(p.x + p.radius)
                ys0.append(p.y - p.radius)
                ys1.append(p.y + p.radius)
        x, y = min(xs0), min(ys0)
        return (x, y, max(xs1) - x, max(ys1) - y)

    def to_dict(self) -> dict:
        return {
            "mode": self.mode,
            "fallback": self.fallback,
            "positions": {k: vars(v) for k, v in self.positions.items()},
            "edges": [vars(e) for e in self.edges],
        }


@dataclass
class ViewportTransform:
    """Zoom/pan state handed to a renderer instead of global zoom hooks."""

    k: float = 1.0
    x: float = 0.0
    y: float = 0.0
    min_scale: float = 0.1
    max_scale: float = 4.0

    def _scale_by(self, factor: float, viewport: Viewport) -> "ViewportTransform":
        new_k = max(self.min_scale, min(self.max_scale, self.k * factor))
        cx, cy = viewport.width / 2, viewport.height / 2
        # keep the viewport center fixed
        self.x = cx - (cx - self.x) * (new_k / self.k)
        self.y = cy - (cy - self.y) * (new_k / self.k)
        self.k = new_k
        return self

    def zoom_in(self, viewport: Viewport = Viewport()) -> "ViewportTransform":
        return self._scale_by(1.3, viewport)

    def zoom_out(self, viewport: Viewport = Viewport()) -> "ViewportTransform":
        return self._scale_by(0.7, viewport)

    def reset(self) -> "ViewportTransform":
        self.k, self.x, self.y = 1.0, 0.0, 0.0
        return self

    def fit_to_bounds(self, bounds: Tuple[float, float, float, float], viewport: Viewport, fill: float = 0.85) -> "ViewportTransform":
        bx, by, bw, bh = bounds
        if bw <= 0 and bh <= 0:
            return self.reset()
        scale = fill / max(bw / viewport.width, bh / viewport.height)
        self.k = scale
        self.x = viewport.width / 2 - scale * (bx + bw / 2)
        self.y = viewport.height / 2 - scale * (by + bh / 2)
        return self

    def apply(self, x: float, y: float) -> Tuple[float, float]:
        return (x * self.k + self.x, y * self.k + self.y)


def _links_between(links: Iterable[FlowLink], source: str, target: str) -> float:
    direct = [l.amount for l in links if l.source == source and l.target == target]
    if direct:
        return sum(direct)
    return sum(l.amount for l in links if l.source == target and l.target == source)


def edge_geometry(source: NodePosition, target: NodePosition, amount: float, curved: bool) -> EdgeGeometry:
    if curved:
        mid_y = (source.y + target.y) / 2
        points = [(source.x, source.y), (source.x, mid_y), (target.x, mid_y), (target.x, target.y)]
    else:
        points = [(source.x, source.y), (target.x, target.y)]
    return EdgeGeometry(
        source=source.id,
        target=target.id,
        amount=amount,
        width=link_width(amount),
        color=link_color(amount),
        points=points,
    )


# ---------- tree ----------

def _tree_parents(graph: GraphData) -> Dict[str, Optional[str]]:
    depth = {n.id: n.depth for n in graph.nodes}
    parent_of: Dict[str, Optional[str]] = {n.id: None for n in graph.nodes if n.depth == 0}
    for link in graph.links:
        sd, td = depth.get(link.source), depth.get(link.target)
        if sd is None or td is None:
            continue
        if td == sd + 1 and link.target not in parent_of:
            parent_of[link.target] = link.source
    return parent_of


def _breadth_slots(
    roots: List[str],
    children: Dict[str, List[str]],
    parent_of: Dict[str, Optional[str]],
    sibling_gap: float,
    cousin_gap: float,
) -> Dict[str, float]:
    """Leaves take consecutive slots; parents sit centered over their children."""
    slots: Dict[str, float] = {}
    last_leaf: Optional[str] = None

    # post-order walk; deep chains must not hit the recursion limit
    stack: List[Tuple[str, bool]] = [(root, False) for root in reversed(roots)]
    while stack:
        node_id, expanded = stack.pop()
        kids = children.get(node_id, [])
        if expanded:
            slots[node_id] = (slots[kids[0]] + slots[kids[-1]]) / 2
        elif kids:
            stack.append((node_id, True))
            stack.extend((kid, False) for kid in reversed(kids))
        else:
            if last_leaf is None:
                slots[node_id] = 0.0
            else:
                same_parent = parent_of.get(last_leaf) == parent_of.get(node_id)
                slots[node_id] = slots[last_leaf] + (sibling_gap if same_parent else cousin_gap)
            last_leaf = node_id
    return slots


def _place_detached_row(nodes: List[EnrichedNode], positions: Dict[str, NodePosition], y: float, x_start: float, step: float) -> None:
    for i, n in enumerate(nodes):
        positions[n.id] = NodePosition(id=n.id, x=x_start + i * step, y=y, radius=node_radius(n), depth=n.depth, detached=True)


def tree_layout(graph: GraphData, viewport: Viewport = Viewport(), avoid_overlap: bool = True) -> LayoutResult:
    """
    Top-down tree over BFS depths.

    A link becomes a parent edge only when it goes exactly one level deeper;
    the first such link wins. Falls back to column_layout when no node gets
    a parent.
    """
    if not graph.nodes:
        return LayoutResult(mode="tree")

    margin = Margin()
    inner_w, inner_h = viewport.inner(margin)
    parent_of = _tree_parents(graph)
    if not any(p is not None for p in parent_of.values()):
        logger.info("No parent edges found; using column layout")
        result = column_layout(graph, viewport, avoid_overlap)
        result.fallback = True
        return result

    by_id = graph.node_map()
    children: Dict[str, List[str]] = defaultdict(list)
    for n in graph.nodes:
        parent = parent_of.get(n.id)
        if parent is not None:
            children[parent].append(n.id)
    roots = [n.id for n in graph.nodes if n.depth == 0 and n.id in parent_of]

    max_r = max((node_radius(n) for n in graph.nodes), default=24)
    max_depth = max((n.depth for n in graph.nodes if n.depth is not None), default=0)
    columns_count = max(2, max_depth + 1)

    if avoid_overlap:
        x_step = max(max_r * 2 + 2, min(80, inner_w / max(columns_count + 2, 6)))
        y_step = max(max_r * 2 + 56, 104)
        slots = _breadth_slots(roots, children, parent_of, 1.01, 1.2)
        center = (min(slots.values()) + max(slots.values())) / 2
        to_x = lambda s: (s - center) * x_step + margin.left
        to_y = lambda d: d * y_step + margin.top
    else:
        slots = _breadth_slots(roots, children, parent_of, 1.0, 2.0)
        lo, hi = min(slots.values()), max(slots.values())
        pad = 0.5
        span = hi - lo + 2 * pad
        y_step = inner_h / max_depth if max_depth else 0
        to_x = lambda s: (s - lo + pad) / span * inner_w + margin.left
        to_y = lambda d: d * y_step + margin.top

    positions: Dict[str, NodePosition] = {}
    for node_id, slot in slots.items():
        n = by_id[node_id]
        positions[node_id] = NodePosition(id=node_id, x=to_x(slot), y=to_y(n.depth), radius=node_radius(n), depth=n.depth)

    edges = [
        edge_geometry(positions[parent], positions[child], _links_between(graph.links, parent, child), curved=True)
        for child, parent in parent_of.items()
        if parent is not None and child in positions and parent in positions
    ]

    detached = [n for n in graph.nodes if n.id not in positions]
    if detached:
        # two levels below the deepest row, never adjacent to a real depth
        x_step_detached = max(max_r * 2 + 8, 60)
        _place_detached_row(detached, positions, to_y(max_depth + 2), min(p.x for p in positions.values()), x_step_detached)

    return LayoutResult(mode="tree", positions=positions, edges=edges)


# ---------- column ----------

def column_layout(graph: GraphData, viewport: Viewport = Viewport(), avoid_overlap: bool = True) -> LayoutResult:
    """Columns by BFS depth, heaviest nodes first within a column."""
    if not graph.nodes:
        return LayoutResult(mode="column")

    margin = Margin()
    inner_w, inner_h = viewport.inner(margin)

    by_depth: Dict[int, List[EnrichedNode]] = defaultdict(list)
    detached: List[EnrichedNode] = []
    for n in graph.nodes:
        if n.depth is None:
            detached.append(n)
        else:
            by_depth[n.depth].append(n)

    depths = sorted(by_depth)
    columns = max(1, len(depths))
    tight_w = inner_w * 0.65 if avoid_overlap else inner_w
    start_x = margin.left + (inner_w - tight_w) / 2
    col_gap = tight_w / (columns - 1) if columns > 1 else tight_w / 2

    def col_x(idx: int) -> float:
        return start_x + (idx * tight_w / (columns - 1) if columns > 1 else tight_w / 2)

    def place_column(nodes: List[EnrichedNode], x: float, is_detached: bool) -> None:
        ordered = sorted(nodes, key=lambda n: -(n.total_received + n.total_sent))
        max_r = max((node_radius(n) for n in ordered), default=20)
        min_spacing = max_r * 2 + 56
        spacing = inner_h / (len(ordered) + 1)
        if avoid_overlap:
            spacing = max(spacing, min_spacing)
        for i, n in enumerate(ordered):
            positions[n.id] = NodePosition(
                id=n.id,
                x=x,
                y=margin.top + (i + 1) * spacing,
                radius=node_radius(n),
                depth=n.depth,
                detached=is_detached,
            )

    positions: Dict[str, NodePosition] = {}
    for idx, depth in enumerate(depths):
        place_column(by_depth[depth], col_x(idx), False)
    if detached:
        last_x = col_x(len(depths) - 1) if depths else start_x
        place_column(detached, last_x + 2 * max(col_gap, 120), True)

    edges = [
        edge_geometry(positions[l.source], positions[l.target], l.amount, curved=False)
        for l in graph.links
        if l.source in positions and l.target in positions
    ]
    return LayoutResult(mode="column", positions=positions, edges=edges)


# ---------- sankey ----------

@dataclass
class _SankeyLink:
    source: str
    target: str
    value: float
    width: float = 0.0
    y0: float = 0.0
    y1: float = 0.0
    circular: bool = False


def _sankey_layers(graph: GraphData, links: List[FlowLink]) -> Dict[str, int]:
    """Column index per node from the SCC condensation, centered alignment."""
    g = nx.DiGraph()
    g.add_nodes_from(n.id for n in graph.nodes)
    g.add_edges_from((l.source, l.target) for l in links if l.source != l.target)

    condensed = nx.condensation(g)
    mapping = condensed.graph["mapping"]
    depth: Dict[int, int] = {}
    for component in nx.topological_sort(condensed):
        preds = list(condensed.predecessors(component))
        depth[component] = max((depth[p] + 1 for p in preds), default=0)

    layer: Dict[str, int] = {}
    for node_id in g.nodes:
        component = mapping[node_id]
        has_in = condensed.in_degree(component) > 0
        has_out = condensed.out_degree(component) > 0
        if has_in or not has_out:
            layer[node_id] = depth[component]
        else:
            # pure sources sit right before their nearest target
            layer[node_id] = min(depth[s] for s in condensed.successors(component)) - 1

    shift = min(layer.values(), default=0)
    return {k: v - shift for k, v in layer.items()}


def _resolve_collisions(column: List[NodePosition], y_min: float, y_max: float, padding: float) -> None:
    column.sort(key=lambda p: p.y0)
    y = y_min
    for p in column:
        dy = y - p.y0
        if dy > 0:
            p.y0 += dy
            p.y1 += dy
        y = p.y1 + padding
    if y - padding > y_max:
        y = y_max
        for p in reversed(column):
            dy = p.y1 - y
            if dy > 0:
                p.y0 -= dy
                p.y1 -= dy
            y = p.y0 - padding


def sankey_layout(graph: GraphData, viewport: Viewport = Viewport()) -> LayoutResult:
    """
    Layered flow diagram: node thickness follows total flow, link width
    follows amount. Cycles are tolerated by layering strongly connected
    components together; links that do not move rightwards are flagged
    ``circular``.
    """
    if not graph.nodes:
        return LayoutResult(mode="sankey")

    margin = Margin(30, 30, 30, 30)
    x_lo, y_lo = margin.left, margin.top
    x_hi, y_hi = viewport.width - margin.right, viewport.height - margin.bottom

    known = {n.id for n in graph.nodes}
    links = [l for l in graph.links if l.source in known and l.target in known]
    layer = _sankey_layers(graph, links)

    inflow: Dict[str, float] = defaultdict(float)
    outflow: Dict[str, float] = defaultdict(float)
    for l in links:
        outflow[l.source] += l.amount
        inflow[l.target] += l.amount

    n_layers = max(layer.values()) + 1
    kx = (x_hi - x_lo - SANKEY_NODE_WIDTH) / max(1, n_layers - 1)

    columns: List[List[NodePosition]] = [[] for _ in range(n_layers)]
    positions: Dict[str, NodePosition] = {}
    for n in graph.nodes:
        x0 = x_lo + layer[n.id] * kx
        pos = NodePosition(
            id=n.id,
            x=x0 + SANKEY_NODE_WIDTH / 2,
            y=0.0,
            radius=SANKEY_NODE_WIDTH / 2,
            depth=n.depth,
            x0=x0,
            x1=x0 + SANKEY_NODE_WIDTH,
            y0=0.0,
            y1=0.0,
            value=max(inflow[n.id], outflow[n.id]),
        )
        positions[n.id] = pos
        columns[layer[n.id]].append(pos)

    ky_candidates = []
    for column in columns:
        total = sum(p.value for p in column)
        if total > 0:
            ky_candidates.append((y_hi - y_lo - (len(column) - 1) * SANKEY_NODE_PADDING) / total)
    ky = max(0.0, min(ky_candidates)) if ky_candidates else 0.0

    # initial breadths: stack, then spread leftover space evenly
    for column in columns:
        y = y_lo
        for p in column:
            p.y0 = y
            p.y1 = y + p.value * ky
            y = p.y1 + SANKEY_NODE_PADDING
        leftover = (y_hi - y + SANKEY_NODE_PADDING) / (len(column) + 1) if column else 0
        for i, p in enumerate(column):
            p.y0 += leftover * (i + 1)
            p.y1 += leftover * (i + 1)

    sankey_links = [_SankeyLink(l.source, l.target, l.amount, width=l.amount * ky) for l in links]
    for sl in sankey_links:
        sl.circular = layer[sl.target] <= layer[sl.source]

    incoming: Dict[str, List[_SankeyLink]] = defaultdict(list)
    outgoing: Dict[str, List[_SankeyLink]] = defaultdict(list)
    for sl in sankey_links:
        outgoing[sl.source].append(sl)
        incoming[sl.target].append(sl)

    def center(p: NodePosition) -> float:
        return (p.y0 + p.y1) / 2

    def relax(ordered_columns: List[List[NodePosition]], neighbours, alpha: float) -> None:
        for column in ordered_columns:
            for p in column:
                weighted = [(positions[other], sl.value) for other, sl in neighbours(p.id)]
                total = sum(w for _, w in weighted)
                if total <= 0:
                    continue
                target_center = sum(center(o) * w for o, w in weighted) / total
                dy = (target_center - center(p)) * alpha
                p.y0 += dy
                p.y1 += dy
            _resolve_collisions(column, y_lo, y_hi, SANKEY_NODE_PADDING)

    upstream = lambda node_id: [(sl.source, sl) for sl in incoming[node_id] if not sl.circular]
    downstream = lambda node_id: [(sl.target, sl) for sl in outgoing[node_id] if not sl.circular]
    for i in range(SANKEY_ITERATIONS):
        alpha = 0.99 ** i
        relax(columns[1:], upstream, alpha)
        relax(list(reversed(columns[:-1])), downstream, alpha)

    for node_id, p in positions.items():
        y = p.y0
        for sl in sorted(outgoing[node_id], key=lambda s: positions[s.target].y0):
            sl.y0 = y + sl.width / 2
            y += sl.width
        y = p.y0
        for sl in sorted(incoming[node_id], key=lambda s: positions[s.source].y0):
            sl.y1 = y + sl.width / 2
            y += sl.width

    for p in positions.values():
        # keep tiny flows visible
        if p.y1 - p.y0 < SANKEY_MIN_THICKNESS:
            mid = center(p)
            p.y0 = mid - SANKEY_MIN_THICKNESS / 2
            p.y1 = mid + SANKEY_MIN_THICKNESS / 2
        p.y = center(p)

    edges = [
        EdgeGeometry(
            source=sl.source,
            target=sl.target,
            amount=sl.value,
            width=max(1.0, sl.width),
            color=link_color(sl.value),
            points=[(positions[sl.source].x1, sl.y0), (positions[sl.target].x0, sl.y1)],
            circular=sl.circular,
        )
        for sl in sankey_links
    ]
    return LayoutResult(mode="sankey", positions=positions, edges=edges)


def compute_layout(graph: GraphData, mode: LayoutMode = "tree", viewport: Viewport = Viewport(), avoid_overlap: bool = True) -> LayoutResult:
    if mode == "tree":
        return tree_layout(graph, viewport, avoid_overlap)
    if mode == "column":
        return column_layout(graph, viewport, avoid_overlap)
    if mode == "sankey":
        return sankey_layout(graph, viewport)
    if mode == "force":
        from flowtrace.force import force_layout
        return force_layout(graph, viewport, avoid_overlap=avoid_overlap)
    raise ValueError(f"Unknown layout mode: {mode}")
