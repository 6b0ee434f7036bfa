"""
Force-directed layout.

ForceSimulation is a small velocity-Verlet style simulation with link,
charge, centering and collision forces and an alpha that cools towards
``alpha_target``. It can be run to completion for a static layout
(``force_layout``) or driven on the event loop with ``start``/``stop`` while
nodes are dragged.
"""
import asyncio
import inspect
import logging
import math
import random
from collections import defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from flowtrace.layout import LayoutResult, NodePosition, Viewport, edge_geometry, node_radius
from flowtrace.models import GraphData

logger = logging.getLogger(__name__)

ALPHA_MIN = 0.001
ALPHA_DECAY = 1 - ALPHA_MIN ** (1 / 300)
VELOCITY_DECAY = 0.4
DRAG_ALPHA_TARGET = 0.3

LINK_STRENGTH = 0.12
CHARGE_STRENGTH = -220
CENTER_STRENGTH = 0.06
COLLIDE_PADDING = 2

CHARGE_EXACT_LIMIT = 64

INITIAL_RADIUS = 10
INITIAL_ANGLE = math.pi * (3 - math.sqrt(5))

TickCallback = Callable[[Dict[str, NodePosition]], Union[None, Awaitable[None]]]


def link_distance(amount: float) -> float:
    """Heavier links pull their endpoints closer."""
    return 110 - min(60, math.log(max(amount, 0) + 1) * 8)


@dataclass
class _Body:
    id: str
    radius: float
    depth: Optional[int]
    x: float = 0.0
    y: float = 0.0
    vx: float = 0.0
    vy: float = 0.0
    fx: Optional[float] = None
    fy: Optional[float] = None


@dataclass
class _Spring:
    source: _Body
    target: _Body
    amount: float
    distance: float
    bias: float


class ForceSimulation:
    def __init__(
        self,
        graph: GraphData,
        viewport: Viewport = Viewport(),
        avoid_overlap: bool = True,
        seed: int = 0,
        tick_interval: float = 1 / 60,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.graph = graph
        self.viewport = viewport
        self.avoid_overlap = avoid_overlap
        self.tick_interval = tick_interval
        self._sleep = sleep
        self._random = random.Random(seed)

        self.alpha = 1.0
        self.alpha_target = 0.0
        self.alpha_min = ALPHA_MIN
        self.alpha_decay = ALPHA_DECAY
        self.velocity_decay = VELOCITY_DECAY

        self._center = (viewport.width / 2, viewport.height / 2)
        self.bodies: Dict[str, _Body] = {}
        for i, node in enumerate(graph.nodes):
            r = INITIAL_RADIUS * math.sqrt(0.5 + i)
            angle = i * INITIAL_ANGLE
            self.bodies[node.id] = _Body(
                id=node.id,
                radius=node_radius(node),
                depth=node.depth,
                x=self._center[0] + r * math.cos(angle),
                y=self._center[1] + r * math.sin(angle),
            )

        degree: Dict[str, int] = {k: 0 for k in self.bodies}
        usable = [l for l in graph.links if l.source in self.bodies and l.target in self.bodies]
        for l in usable:
            degree[l.source] += 1
            degree[l.target] += 1
        self.springs: List[_Spring] = [
            _Spring(
                source=self.bodies[l.source],
                target=self.bodies[l.target],
                amount=l.amount,
                distance=link_distance(l.amount),
                bias=degree[l.source] / (degree[l.source] + degree[l.target]),
            )
            for l in usable
        ]

        self._on_tick: Optional[TickCallback] = None
        self._task: Optional[asyncio.Task] = None

    # ---------- stepping ----------

    def _jiggle(self) -> float:
        return (self._random.random() - 0.5) * 1e-6

    def _apply_links(self) -> None:
        for s in self.springs:
            if s.source is s.target:
                continue
            dx = s.target.x + s.target.vx - s.source.x - s.source.vx or self._jiggle()
            dy = s.target.y + s.target.vy - s.source.y - s.source.vy or self._jiggle()
            length = math.sqrt(dx * dx + dy * dy)
            k = (length - s.distance) / length * self.alpha * LINK_STRENGTH
            dx, dy = dx * k, dy * k
            s.target.vx -= dx * s.bias
            s.target.vy -= dy * s.bias
            s.source.vx += dx * (1 - s.bias)
            s.source.vy += dy * (1 - s.bias)

    def _charge_sources(self, bodies: List[_Body]) -> List[List[Tuple[Optional[_Body], float, float, int]]]:
        """
        Per body, the points that repel it as ``(body, x, y, weight)``.

        Small graphs use every other body. Larger ones are bucketed into a
        grid (a single Barnes-Hut level): bodies in the 3x3 neighbourhood act
        one by one, farther cells act through their centroid weighted by
        their population.
        """
        if len(bodies) <= CHARGE_EXACT_LIMIT:
            points = [(b, b.x, b.y, 1) for b in bodies]
            return [points] * len(bodies)

        grid = max(3, math.ceil(math.sqrt(3 * math.sqrt(len(bodies)))))
        x0 = min(b.x for b in bodies)
        y0 = min(b.y for b in bodies)
        span = max(max(b.x for b in bodies) - x0, max(b.y for b in bodies) - y0)
        size = span / grid or 1.0
        cells: Dict[Tuple[int, int], List[_Body]] = defaultdict(list)
        keys: List[Tuple[int, int]] = []
        for b in bodies:
            key = (min(int((b.x - x0) / size), grid - 1), min(int((b.y - y0) / size), grid - 1))
            cells[key].append(b)
            keys.append(key)
        centroids = {
            key: (None, sum(b.x for b in members) / len(members), sum(b.y for b in members) / len(members), len(members))
            for key, members in cells.items()
        }

        sources = []
        by_cell: Dict[Tuple[int, int], list] = {}
        for ai, aj in keys:
            if (ai, aj) not in by_cell:
                points = []
                for (ci, cj), members in cells.items():
                    if abs(ci - ai) <= 1 and abs(cj - aj) <= 1:
                        points.extend((b, b.x, b.y, 1) for b in members)
                    else:
                        points.append(centroids[(ci, cj)])
                by_cell[(ai, aj)] = points
            sources.append(by_cell[(ai, aj)])
        return sources

    def _apply_charge(self) -> None:
        bodies = list(self.bodies.values())
        strength = CHARGE_STRENGTH * self.alpha
        for a, points in zip(bodies, self._charge_sources(bodies)):
            ax, ay = a.x, a.y
            vx = vy = 0.0
            for b, x, y, weight in points:
                if b is a:
                    continue
                dx = x - ax or self._jiggle()
                dy = y - ay or self._jiggle()
                dist2 = dx * dx + dy * dy
                if dist2 < 1:
                    dist2 = math.sqrt(dist2)
                w = strength * weight / dist2
                vx += dx * w
                vy += dy * w
            a.vx += vx
            a.vy += vy

    def _apply_centering(self) -> None:
        cx, cy = self._center
        for b in self.bodies.values():
            b.vx += (cx - b.x) * CENTER_STRENGTH * self.alpha
            b.vy += (cy - b.y) * CENTER_STRENGTH * self.alpha

    def _collide(self, a: _Body, b: _Body) -> None:
        ra, rb = a.radius + COLLIDE_PADDING, b.radius + COLLIDE_PADDING
        reach = ra + rb
        dx = (a.x + a.vx) - (b.x + b.vx) or self._jiggle()
        dy = (a.y + a.vy) - (b.y + b.vy) or self._jiggle()
        dist = math.sqrt(dx * dx + dy * dy)
        if dist >= reach:
            return
        push = (reach - dist) / dist
        share = rb * rb / (ra * ra + rb * rb)
        a.vx += dx * push * share
        a.vy += dy * push * share
        b.vx -= dx * push * (1 - share)
        b.vy -= dy * push * (1 - share)

    def _apply_collisions(self) -> None:
        bodies = list(self.bodies.values())
        if not bodies:
            return
        # cells as wide as the largest reach, so overlapping pairs are always in adjacent cells
        size = 2 * (max(b.radius for b in bodies) + COLLIDE_PADDING)
        cells: Dict[Tuple[int, int], List[int]] = defaultdict(list)
        keys: List[Tuple[int, int]] = []
        for i, b in enumerate(bodies):
            key = (math.floor((b.x + b.vx) / size), math.floor((b.y + b.vy) / size))
            cells[key].append(i)
            keys.append(key)

        for i, (ci, cj) in enumerate(keys):
            for di in (-1, 0, 1):
                for dj in (-1, 0, 1):
                    for j in cells.get((ci + di, cj + dj), ()):
                        if j > i:
                            self._collide(bodies[i], bodies[j])

    def tick(self, iterations: int = 1) -> None:
        for _ in range(iterations):
            self.alpha += (self.alpha_target - self.alpha) * self.alpha_decay
            self._apply_links()
            self._apply_charge()
            self._apply_centering()
            if self.avoid_overlap:
                self._apply_collisions()
            for b in self.bodies.values():
                if b.fx is None:
                    b.vx *= 1 - self.velocity_decay
                    b.x += b.vx
                else:
                    b.x, b.vx = b.fx, 0.0
                if b.fy is None:
                    b.vy *= 1 - self.velocity_decay
                    b.y += b.vy
                else:
                    b.y, b.vy = b.fy, 0.0

    @property
    def settled(self) -> bool:
        return self.alpha < self.alpha_min

    def run(self, iterations: Optional[int] = None, max_ticks: int = 1000) -> int:
        """Tick ``iterations`` times, or until the simulation cools down. Returns the number of ticks."""
        if iterations is not None:
            self.tick(iterations)
            return iterations
        ticks = 0
        while not self.settled and ticks < max_ticks:
            self.tick()
            ticks += 1
        return ticks

    # ---------- output ----------

    def positions(self) -> Dict[str, NodePosition]:
        return {
            b.id: NodePosition(id=b.id, x=b.x, y=b.y, radius=b.radius, depth=b.depth)
            for b in self.bodies.values()
        }

    def layout(self) -> LayoutResult:
        positions = self.positions()
        edges = [
            edge_geometry(positions[s.source.id], positions[s.target.id], s.amount, curved=False)
            for s in self.springs
        ]
        return LayoutResult(mode="force", positions=positions, edges=edges)

    # ---------- interaction ----------

    def drag_start(self, node_id: str, x: Optional[float] = None, y: Optional[float] = None) -> None:
        body = self.bodies[node_id]
        self.alpha_target = DRAG_ALPHA_TARGET
        body.fx = body.x if x is None else x
        body.fy = body.y if y is None else y
        self._restart()

    def drag(self, node_id: str, x: float, y: float) -> None:
        body = self.bodies[node_id]
        body.fx, body.fy = x, y

    def drag_end(self, node_id: str) -> None:
        body = self.bodies[node_id]
        self.alpha_target = 0.0
        body.fx = body.fy = None

    # ---------- event loop driver ----------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, on_tick: Optional[TickCallback] = None) -> asyncio.Task:
        """Step the simulation on the running loop until it settles or stop() is called."""
        if on_tick is not None:
            self._on_tick = on_tick
        if not self.running:
            self._task = asyncio.create_task(self._loop())
        return self._task

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def _restart(self) -> None:
        if self.alpha < DRAG_ALPHA_TARGET:
            self.alpha = max(self.alpha, self.alpha_min)
        if self._task is not None and not self.running:
            try:
                self._task = asyncio.get_running_loop().create_task(self._loop())
            except RuntimeError:
                self._task = None

    async def _loop(self) -> None:
        while not self.settled or self.alpha_target > 0:
            self.tick()
            if self._on_tick is not None:
                outcome = self._on_tick(self.positions())
                if inspect.isawaitable(outcome):
                    await outcome
            await self._sleep(self.tick_interval)
        logger.debug(f"Force simulation settled at alpha={self.alpha:.4f}")


def force_layout(
    graph: GraphData,
    viewport: Viewport = Viewport(),
    iterations: Optional[int] = 300,
    avoid_overlap: bool = True,
    seed: int = 0,
) -> LayoutResult:
    """Run a simulation for ``iterations`` ticks (None: until it settles) and return the layout."""
    if not graph.nodes:
        return LayoutResult(mode="force")
    sim = ForceSimulation(graph, viewport, avoid_overlap=avoid_overlap, seed=seed)
    ticks = sim.run(iterations)
    logger.debug(f"Force layout for {len(graph.nodes)} nodes done after {ticks} ticks")
    return sim.layout()
