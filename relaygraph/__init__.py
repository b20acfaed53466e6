"""relaygraph: compiler diagnostics to laid-out symbol dependency graphs."""

__version__ = "0.1.0"

from .build_context import BuildContext
from .diagnostics import DiagnosticParser, parse_diagnostics
from .layout import GraphLayout, graph_content_hash
from .models import Diagnostic, EdgeKind, GraphEdge, GraphNode, NodeKind, RelayGraph, Severity
from .orchestrator import Orchestrator, build_graph

__all__ = [
    "__version__",
    "BuildContext",
    "Diagnostic",
    "DiagnosticParser",
    "EdgeKind",
    "GraphEdge",
    "GraphLayout",
    "GraphNode",
    "NodeKind",
    "Orchestrator",
    "RelayGraph",
    "Severity",
    "build_graph",
    "graph_content_hash",
    "parse_diagnostics",
]
