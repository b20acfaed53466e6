"""Graph layout: layered (Sugiyama-style) for DAGs, force-directed otherwise.

Both algorithms are deterministic for a given graph and seed.  Finished
layouts can be stored in the persistent cache under the graph's content
hash so identical graphs are not laid out twice.
"""

from __future__ import annotations

import json
import logging
import math
import random
from hashlib import blake2b
from typing import Dict, List, Optional, Set, Tuple

from .cache import KIND_LAYOUT, AnalysisCache, Fingerprint
from .config_manager import LayoutSettings
from .models import EdgeKind, GraphNode, RelayGraph

logger = logging.getLogger(__name__)

LAYERED = "layered"
FORCE_DIRECTED = "force-directed"
TRIVIAL = "trivial"

# Structural edges never make a graph "cyclic" for algorithm selection.
_CYCLE_EXEMPT = (EdgeKind.INCLUDE, EdgeKind.INHERIT)


class GraphLayout:
    """Assign ``x``/``y`` to every node of a :class:`RelayGraph`."""

    def __init__(self, settings: Optional[LayoutSettings] = None) -> None:
        self.settings = settings or LayoutSettings()

    def auto_layout(self, graph: RelayGraph, seed: int = 0) -> str:
        """Lay out *graph* in place and return the algorithm used."""
        if len(graph) <= 1:
            for node in graph.nodes:
                node.x, node.y = 0.0, 0.0
            return TRIVIAL

        if self.has_cycle(graph):
            logger.debug("Cycle detected, using force-directed layout for %d nodes", len(graph))
            self.layout_force_directed(graph, seed=seed)
            return FORCE_DIRECTED

        self.layout_layered(graph)
        return LAYERED

    # ===== Cycle detection =====

    def has_cycle(self, graph: RelayGraph) -> bool:
        """DFS cycle check ignoring ``Include`` and ``Inherit`` edges."""
        adjacency: Dict[int, List[int]] = {n.id: [] for n in graph.nodes}
        for edge in graph.edges:
            if edge.edge_kind in _CYCLE_EXEMPT:
                continue
            if edge.source_id == edge.target_id:
                return True
            adjacency[edge.source_id].append(edge.target_id)

        visited: Set[int] = set()
        on_stack: Set[int] = set()
        for root in graph.nodes:
            if root.id in visited:
                continue
            visited.add(root.id)
            on_stack.add(root.id)
            stack = [(root.id, iter(adjacency[root.id]))]
            while stack:
                node_id, successors = stack[-1]
                advanced = False
                for nxt in successors:
                    if nxt in on_stack:
                        return True
                    if nxt not in visited:
                        visited.add(nxt)
                        on_stack.add(nxt)
                        stack.append((nxt, iter(adjacency[nxt])))
                        advanced = True
                        break
                if not advanced:
                    on_stack.discard(node_id)
                    stack.pop()
        return False

    # ===== Layered layout =====

    def layout_layered(self, graph: RelayGraph) -> List[List[int]]:
        """Layer, order and place nodes. Returns the ordered layers."""
        layer_of = self.assign_layers(graph)
        if not layer_of:
            return []

        low = min(layer_of.values())
        layers: List[List[int]] = [[] for _ in range(max(layer_of.values()) - low + 1)]
        for node in graph.nodes:
            layers[layer_of[node.id] - low].append(node.id)

        layers = self._minimize_crossings(layers, graph)

        step_x = self.settings.node_width + self.settings.gap_x
        step_y = self.settings.node_height + self.settings.gap_y
        for offset, layer in enumerate(layers):
            layer_index = offset + low
            for ordinal, node_id in enumerate(layer):
                node = graph.find_node(node_id)
                node.x = float(layer_index * step_x)
                node.y = float(ordinal * step_y)
        return layers

    def assign_layers(self, graph: RelayGraph) -> Dict[int, int]:
        """Longest-path layering, shifted so the first error origin is centred.

        With ``T`` layers every layer moves by ``T // 2 - layer(origin)``.
        This is a translation only: relative layer distances, and therefore
        the picture, are unchanged; the origin lands on layer ``T // 2``.

        DFS back edges and self-edges are ignored, so every remaining edge
        satisfies ``layer(target) > layer(source)``.
        """
        if not graph.nodes:
            return {}

        forward = _forward_edges(graph)
        indegree = {n.id: 0 for n in graph.nodes}
        successors: Dict[int, List[int]] = {n.id: [] for n in graph.nodes}
        for src, dst in forward:
            successors[src].append(dst)
            indegree[dst] += 1

        layer_of = {n.id: 0 for n in graph.nodes}
        ready = [n.id for n in graph.nodes if indegree[n.id] == 0]
        while ready:
            current = ready.pop(0)
            for nxt in successors[current]:
                layer_of[nxt] = max(layer_of[nxt], layer_of[current] + 1)
                indegree[nxt] -= 1
                if indegree[nxt] == 0:
                    ready.append(nxt)

        origin = next((n for n in graph.nodes if n.is_error_origin), None)
        if origin is not None:
            total = max(layer_of.values()) + 1
            shift = total // 2 - layer_of[origin.id]
            if shift:
                layer_of = {node_id: layer + shift for node_id, layer in layer_of.items()}
        return layer_of

    def _minimize_crossings(self, layers: List[List[int]], graph: RelayGraph) -> List[List[int]]:
        neighbours: Dict[int, Set[int]] = {n.id: set() for n in graph.nodes}
        for edge in graph.edges:
            if edge.source_id == edge.target_id:
                continue
            neighbours[edge.source_id].add(edge.target_id)
            neighbours[edge.target_id].add(edge.source_id)

        passes = min(3, max(2, self.settings.crossing_passes))
        layers = [list(layer) for layer in layers]
        for pass_index in range(passes):
            downward = pass_index % 2 == 0
            order = range(1, len(layers)) if downward else range(len(layers) - 2, -1, -1)
            for idx in order:
                reference = layers[idx - 1] if downward else layers[idx + 1]
                ref_pos = {node_id: i for i, node_id in enumerate(reference)}
                current = layers[idx]

                def key(item: Tuple[int, int]) -> float:
                    ordinal, node_id = item
                    hits = [ref_pos[n] for n in neighbours[node_id] if n in ref_pos]
                    if not hits:
                        return float(ordinal)
                    return sum(hits) / len(hits)

                layers[idx] = [node_id for _, node_id in sorted(enumerate(current), key=key)]
        return layers

    # ===== Force-directed layout =====

    def layout_force_directed(
        self,
        graph: RelayGraph,
        iterations: Optional[int] = None,
        seed: int = 0,
    ) -> None:
        nodes = graph.nodes
        count = len(nodes)
        if count <= 1:
            for node in nodes:
                node.x, node.y = 0.0, 0.0
            return

        s = self.settings
        iterations = s.iterations if iterations is None else iterations
        side = count * s.spread
        # per-iteration displacement cap
        max_step = side
        for node in nodes:
            rng = random.Random(seed * 1_000_003 + node.id)
            node.x = rng.uniform(0.0, side)
            node.y = rng.uniform(0.0, side)

        index = {node.id: i for i, node in enumerate(nodes)}
        pairs = [
            (index[e.source_id], index[e.target_id])
            for e in graph.edges
            if e.source_id != e.target_id
        ]
        vx = [0.0] * count
        vy = [0.0] * count

        for _ in range(iterations):
            px = [n.x for n in nodes]
            py = [n.y for n in nodes]

            for i in range(count):
                for j in range(i + 1, count):
                    dx, dy = px[i] - px[j], py[i] - py[j]
                    length = math.hypot(dx, dy)
                    if length == 0.0:
                        continue
                    dist = max(length, 1.0)
                    force = s.repulsion / (dist * dist)
                    fx, fy = dx / length * force, dy / length * force
                    vx[i] += fx
                    vy[i] += fy
                    vx[j] -= fx
                    vy[j] -= fy

            for si, ti in pairs:
                dx, dy = px[ti] - px[si], py[ti] - py[si]
                length = math.hypot(dx, dy)
                if length == 0.0:
                    continue
                force = s.attraction * length
                fx, fy = dx / length * force, dy / length * force
                vx[si] += fx
                vy[si] += fy
                vx[ti] -= fx
                vy[ti] -= fy

            for i, node in enumerate(nodes):
                vx[i] *= s.damping
                vy[i] *= s.damping
                speed = math.hypot(vx[i], vy[i])
                if speed > max_step:
                    vx[i] *= max_step / speed
                    vy[i] *= max_step / speed
                node.x += vx[i]
                node.y += vy[i]


def _forward_edges(graph: RelayGraph) -> List[Tuple[int, int]]:
    """Edges minus self-edges and DFS back edges (insertion-order DFS)."""
    adjacency: Dict[int, List[int]] = {n.id: [] for n in graph.nodes}
    for edge in graph.edges:
        if edge.source_id != edge.target_id:
            adjacency[edge.source_id].append(edge.target_id)

    back: Set[Tuple[int, int]] = set()
    visited: Set[int] = set()
    on_stack: Set[int] = set()
    for root in graph.nodes:
        if root.id in visited:
            continue
        visited.add(root.id)
        on_stack.add(root.id)
        stack = [(root.id, iter(adjacency[root.id]))]
        while stack:
            node_id, successors = stack[-1]
            advanced = False
            for nxt in successors:
                if nxt in on_stack:
                    back.add((node_id, nxt))
                elif nxt not in visited:
                    visited.add(nxt)
                    on_stack.add(nxt)
                    stack.append((nxt, iter(adjacency[nxt])))
                    advanced = True
                    break
            if not advanced:
                on_stack.discard(node_id)
                stack.pop()

    forward: List[Tuple[int, int]] = []
    seen: Set[Tuple[int, int]] = set()
    for src, targets in adjacency.items():
        for dst in targets:
            pair = (src, dst)
            if pair in back or pair in seen:
                continue
            seen.add(pair)
            forward.append(pair)
    return forward


# ===== Content hash and layout cache =====

def _node_key(node: GraphNode) -> str:
    return f"{node.location.file_path}:{node.location.line}"


def graph_content_hash(graph: RelayGraph) -> str:
    """Hash of node locations/kinds and edge endpoints/kinds, id-independent."""
    nodes = sorted(
        [n.location.file_path, n.location.line, n.node_kind.value] for n in graph.nodes
    )
    edges = []
    for edge in graph.edges:
        src = graph.find_node(edge.source_id)
        dst = graph.find_node(edge.target_id)
        edges.append([
            src.location.file_path, src.location.line,
            dst.location.file_path, dst.location.line,
            edge.edge_kind.value,
        ])
    edges.sort()
    blob = json.dumps({"nodes": nodes, "edges": edges}, separators=(",", ":"))
    return blake2b(blob.encode("utf-8"), digest_size=16).hexdigest()


def layout_params_hash(settings: LayoutSettings, seed: int = 0) -> str:
    params = dict(settings.as_dict(), seed=seed)
    blob = json.dumps(params, sort_keys=True)
    return blake2b(blob.encode("utf-8"), digest_size=8).hexdigest()


def _layout_fingerprint(graph: RelayGraph, settings: LayoutSettings, seed: int) -> Fingerprint:
    return Fingerprint(graph_content_hash(graph), 0, layout_params_hash(settings, seed))


def apply_cached_layout(
    cache: Optional[AnalysisCache],
    graph: RelayGraph,
    settings: LayoutSettings,
    seed: int = 0,
) -> bool:
    """Copy cached coordinates onto *graph*. True only if every node was covered."""
    if cache is None or not graph.nodes:
        return False
    fingerprint = _layout_fingerprint(graph, settings, seed)
    payload = cache.load(KIND_LAYOUT, fingerprint.subject, fingerprint)
    if payload is None:
        return False
    try:
        coords = json.loads(payload.decode("utf-8"))
        positions = {key: (float(x), float(y)) for key, (x, y) in coords.items()}
    except (UnicodeDecodeError, ValueError, TypeError, AttributeError) as exc:
        logger.warning("Discarding corrupt layout cache record: %s", exc)
        return False

    if any(_node_key(n) not in positions for n in graph.nodes):
        return False
    for node in graph.nodes:
        node.x, node.y = positions[_node_key(node)]
    logger.debug("Layout cache hit for %s", fingerprint.subject)
    return True


def store_layout(
    cache: Optional[AnalysisCache],
    graph: RelayGraph,
    settings: LayoutSettings,
    seed: int = 0,
) -> None:
    if cache is None or not graph.nodes:
        return
    fingerprint = _layout_fingerprint(graph, settings, seed)
    coords = {_node_key(n): [n.x, n.y] for n in graph.nodes}
    cache.store(
        KIND_LAYOUT,
        fingerprint.subject,
        fingerprint,
        json.dumps(coords, sort_keys=True).encode("utf-8"),
    )
