"""Core data models shared by parsing, analysis, layout and orchestration."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    NOTE = "note"


class NodeKind(str, Enum):
    FUNCTION = "Function"
    TYPE = "Type"
    VARIABLE = "Variable"
    INCLUDE = "Include"
    ERROR_SOURCE = "ErrorSource"


class EdgeKind(str, Enum):
    CALL = "Call"
    REFERENCE = "Reference"
    INCLUDE = "Include"
    INHERIT = "Inherit"
    ERROR_PATH = "ErrorPath"


@dataclass(frozen=True)
class SourceLocation:
    file_path: str
    line: int
    column: int = 0

    @property
    def key(self) -> Tuple[str, int]:
        """Dedup key: one graph node per ``(file_path, line)``."""
        return (self.file_path, self.line)

    def __str__(self) -> str:
        return f"{self.file_path}:{self.line}"


@dataclass(frozen=True)
class Diagnostic:
    file_path: str
    line: int
    column: int
    code: str
    message: str
    severity: Severity

    @property
    def location(self) -> SourceLocation:
        return SourceLocation(self.file_path, self.line, self.column)

    @property
    def is_error(self) -> bool:
        return self.severity is Severity.ERROR


@dataclass(frozen=True)
class SymbolReference:
    location: SourceLocation
    symbol_name: str
    node_kind: NodeKind
    edge_kind_from_origin: EdgeKind

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_path": self.location.file_path,
            "line": self.location.line,
            "column": self.location.column,
            "symbol_name": self.symbol_name,
            "node_kind": self.node_kind.value,
            "edge_kind": self.edge_kind_from_origin.value,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SymbolReference":
        return cls(
            location=SourceLocation(
                payload["file_path"], int(payload["line"]), int(payload.get("column", 0)),
            ),
            symbol_name=payload["symbol_name"],
            node_kind=NodeKind(payload["node_kind"]),
            edge_kind_from_origin=EdgeKind(payload["edge_kind"]),
        )


@dataclass
class GraphNode:
    id: int
    location: SourceLocation
    symbol_name: str
    node_kind: NodeKind
    is_error_origin: bool = False
    x: float = 0.0
    y: float = 0.0
    diagnostics: List[Diagnostic] = field(default_factory=list)


@dataclass
class GraphEdge:
    source_id: int
    target_id: int
    edge_kind: EdgeKind
    on_error_path: bool = False


@dataclass(frozen=True)
class PipelineIssue:
    """A degraded-but-not-fatal condition met while building a graph."""

    kind: str
    detail: str
    feature: str = ""


@dataclass(frozen=True)
class AssemblyLine:
    address: int
    instruction: str
    source_file: str
    source_line: int


class NodeIdAllocator:
    """Monotonically increasing node id source for one graph build."""

    def __init__(self, start: int = 0) -> None:
        self._next = start

    def allocate(self) -> int:
        node_id = self._next
        self._next += 1
        return node_id

    @property
    def issued(self) -> int:
        return self._next


class RelayGraph:
    """Nodes (in insertion order) and edges for one build-from-error run.

    Nodes are unique per ``(file_path, line)``; adding a node for a known
    location returns the existing one.
    """

    def __init__(self) -> None:
        self.nodes: List[GraphNode] = []
        self.edges: List[GraphEdge] = []
        self.issues: List[PipelineIssue] = []
        self.layout_algorithm = ""
        self._by_location: Dict[Tuple[str, int], GraphNode] = {}
        self._by_id: Dict[int, GraphNode] = {}
        self._edge_keys: set = set()

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[GraphNode]:
        return iter(self.nodes)

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def find_node(self, node_id: int) -> Optional[GraphNode]:
        return self._by_id.get(node_id)

    def find_by_location(self, location: SourceLocation) -> Optional[GraphNode]:
        return self._by_location.get(location.key)

    def get_or_create_node(
        self,
        location: SourceLocation,
        symbol_name: str,
        node_kind: NodeKind,
        allocator: NodeIdAllocator,
    ) -> Tuple[GraphNode, bool]:
        """Return ``(node, created)`` for *location*, merging on its key."""
        existing = self._by_location.get(location.key)
        if existing is not None:
            if not existing.symbol_name and symbol_name:
                existing.symbol_name = symbol_name
            return existing, False

        node = GraphNode(
            id=allocator.allocate(),
            location=location,
            symbol_name=symbol_name,
            node_kind=node_kind,
        )
        if node.id in self._by_id:
            raise ValueError(f"Node id {node.id} already used in this graph")
        self.nodes.append(node)
        self._by_location[location.key] = node
        self._by_id[node.id] = node
        return node, True

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def add_edge(
        self,
        source_id: int,
        target_id: int,
        edge_kind: EdgeKind,
        on_error_path: bool = False,
    ) -> GraphEdge:
        if source_id not in self._by_id or target_id not in self._by_id:
            raise KeyError(f"Edge {source_id}->{target_id} references an unknown node")

        key = (source_id, target_id, edge_kind)
        if key in self._edge_keys:
            for edge in self.edges:
                if (edge.source_id, edge.target_id, edge.edge_kind) == key:
                    edge.on_error_path = edge.on_error_path or on_error_path
                    return edge

        edge = GraphEdge(source_id, target_id, edge_kind, on_error_path)
        self.edges.append(edge)
        self._edge_keys.add(key)
        return edge

    def out_edges(self, node_id: int) -> List[GraphEdge]:
        return [e for e in self.edges if e.source_id == node_id]

    def error_origins(self) -> List[GraphNode]:
        return [n for n in self.nodes if n.is_error_origin]

    def record_issue(self, kind: str, detail: str, feature: str = "") -> None:
        issue = PipelineIssue(kind=kind, detail=detail, feature=feature)
        if issue not in self.issues:
            self.issues.append(issue)
