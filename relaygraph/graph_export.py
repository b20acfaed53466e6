"""Graph export helpers for JSON and DOT outputs."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

from .models import GraphNode, NodeKind, RelayGraph

_DOT_SHAPES = {
    NodeKind.ERROR_SOURCE: "octagon",
    NodeKind.FUNCTION: "box",
    NodeKind.TYPE: "component",
    NodeKind.VARIABLE: "ellipse",
    NodeKind.INCLUDE: "note",
}


def graph_to_dict(graph: RelayGraph) -> Dict[str, Any]:
    return {
        "layout": graph.layout_algorithm,
        "nodes": [
            {
                "id": node.id,
                "file_path": node.location.file_path,
                "line": node.location.line,
                "column": node.location.column,
                "symbol_name": node.symbol_name,
                "node_kind": node.node_kind.value,
                "is_error_origin": node.is_error_origin,
                "x": node.x,
                "y": node.y,
                "diagnostics": [
                    {
                        "severity": d.severity.value,
                        "code": d.code,
                        "message": d.message,
                        "line": d.line,
                        "column": d.column,
                    }
                    for d in node.diagnostics
                ],
            }
            for node in graph.nodes
        ],
        "edges": [
            {
                "source_id": edge.source_id,
                "target_id": edge.target_id,
                "edge_kind": edge.edge_kind.value,
                "on_error_path": edge.on_error_path,
            }
            for edge in graph.edges
        ],
        "issues": [
            {"kind": issue.kind, "detail": issue.detail, "feature": issue.feature}
            for issue in graph.issues
        ],
    }


def export_json(graph: RelayGraph, output_file: Optional[Path] = None) -> str:
    doc = json.dumps(graph_to_dict(graph), indent=2)
    if output_file is not None:
        output_file.write_text(doc, encoding="utf-8")
    return doc


def export_dot(graph: RelayGraph, output_file: Optional[Path] = None) -> str:
    """Render *graph* as Graphviz DOT, pinning nodes at their layout position."""
    lines = ["digraph RelayGraph {"]
    lines.append("  rankdir=LR;")

    for node in graph.nodes:
        shape = _DOT_SHAPES.get(node.node_kind, "box")
        attrs = [
            f'label="{_esc(_label(node))}"',
            f"shape={shape}",
            f'pos="{node.x:.1f},{-node.y:.1f}!"',
        ]
        if node.is_error_origin:
            attrs.append("color=red")
        lines.append(f'  "{node.id}" [{", ".join(attrs)}];')

    for edge in graph.edges:
        style = ', color=red' if edge.on_error_path else ""
        lines.append(
            f'  "{edge.source_id}" -> "{edge.target_id}" [label="{_esc(edge.edge_kind.value)}"{style}];'
        )

    lines.append("}")
    doc = "\n".join(lines)
    if output_file is not None:
        output_file.write_text(doc, encoding="utf-8")
    return doc


def _label(node: GraphNode) -> str:
    name = Path(node.location.file_path).name or node.location.file_path
    title = node.symbol_name or node.node_kind.value
    return f"{node.node_kind.value}\\n{title}\\n{name}:{node.location.line}"


def _esc(text: str) -> str:
    return text.replace('"', '\\"')
