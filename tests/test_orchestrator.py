"""Tests for the orchestrator (scripted backend, real cache)."""

import math
from pathlib import Path

import pytest

from relaygraph.backend import ChildRole
from relaygraph.build_context import BuildContext
from relaygraph.cache import AnalysisCache
from relaygraph.errors import CacheStorageError
from relaygraph.models import EdgeKind, NodeKind, Severity, SourceLocation
from relaygraph.orchestrator import Orchestrator


def _context(temp_dir: Path, source_tree: Path, **kwargs) -> BuildContext:
    kwargs.setdefault("use_cache", False)
    return BuildContext(build_dir=temp_dir / "build", project_root=source_tree, **kwargs)


def _loc(path: Path, line: int) -> SourceLocation:
    return SourceLocation(str(path.resolve()), line)


class TestGraphConstruction:
    """Error nodes, expansion and the merge rule."""

    def test_relative_paths_resolve_against_project_root(self, fake_backend, make_child, source_tree, temp_dir):
        util = source_tree / "util.h"
        fake_backend.children[("main.cpp", 3)] = [
            make_child(ChildRole.CALL, "helper", util.resolve(), 1, NodeKind.FUNCTION),
        ]
        orch = Orchestrator(_context(temp_dir, source_tree), backend=fake_backend)

        graph = orch.build_graph("main.cpp:3:12: error: use of undeclared identifier 'helper'")

        origin = graph.find_by_location(_loc(source_tree / "main.cpp", 3))
        assert origin is not None
        assert origin.is_error_origin
        assert origin.node_kind is NodeKind.ERROR_SOURCE
        assert origin.diagnostics[0].code == ""
        helper = graph.find_by_location(_loc(util, 1))
        assert helper.node_kind is NodeKind.FUNCTION
        assert graph.edges[0].edge_kind is EdgeKind.CALL
        assert graph.issues == []

    def test_two_diagnostics_on_one_line_share_a_node(self, fake_backend, source_tree, temp_dir):
        fake_backend.children[("main.cpp", 3)] = []
        orch = Orchestrator(_context(temp_dir, source_tree), backend=fake_backend)

        graph = orch.build_graph(
            "main.cpp:3:12: error: first problem\n"
            "main.cpp:3:25: error: second problem\n"
        )

        assert len(graph) == 1
        assert [d.message for d in graph.nodes[0].diagnostics] == ["first problem", "second problem"]
        assert len(fake_backend.parsed) == 1

    def test_referenced_node_is_promoted(self, fake_backend, make_child, source_tree, temp_dir):
        """A later error on a referenced symbol turns it into an error origin."""
        main = source_tree / "main.cpp"
        fake_backend.children[("main.cpp", 3)] = [
            make_child(ChildRole.REFERENCE, "counter", main.resolve(), 5, NodeKind.VARIABLE),
        ]
        fake_backend.children[("main.cpp", 5)] = []
        orch = Orchestrator(_context(temp_dir, source_tree), backend=fake_backend)

        graph = orch.build_graph(
            "main.cpp:3:23: error: invalid operands\n"
            "main.cpp:5:5: error: redefinition of 'counter'\n"
        )

        assert len(graph) == 2
        counter = graph.find_by_location(_loc(main, 5))
        assert counter.node_kind is NodeKind.ERROR_SOURCE
        assert counter.is_error_origin
        assert counter.symbol_name == "counter"
        assert len(graph.error_origins()) == 2

    def test_ids_unique_and_edges_valid(self, fake_backend, make_child, source_tree, temp_dir):
        main = source_tree / "main.cpp"
        util = source_tree / "util.h"
        fake_backend.children[("main.cpp", 3)] = [
            make_child(ChildRole.CALL, "helper", util.resolve(), 1, NodeKind.FUNCTION),
            make_child(ChildRole.REFERENCE, "counter", main.resolve(), 5, NodeKind.VARIABLE),
        ]
        fake_backend.children[("util.h", 1)] = [
            make_child(ChildRole.REFERENCE, "counter", main.resolve(), 5, NodeKind.VARIABLE),
        ]
        orch = Orchestrator(_context(temp_dir, source_tree), backend=fake_backend)

        graph = orch.build_graph("main.cpp:3:1: error: a\nutil.h:1:5: error: b\n")

        ids = [n.id for n in graph.nodes]
        assert len(ids) == len(set(ids))
        keys = [n.location.key for n in graph.nodes]
        assert len(keys) == len(set(keys))
        for edge in graph.edges:
            assert graph.find_node(edge.source_id) is not None
            assert graph.find_node(edge.target_id) is not None


class TestDiagnosticPolicy:
    """Warnings and notes."""

    LOG = (
        "main.cpp:3:1: error: boom\n"
        "main.cpp:2:1: note: declared here\n"
        "main.cpp:5:1: warning: unused\n"
        "main.cpp:4:1: note: belongs to the warning\n"
    )

    def test_warnings_excluded_by_default(self, fake_backend, source_tree, temp_dir):
        orch = Orchestrator(_context(temp_dir, source_tree), backend=fake_backend)

        graph = orch.build_graph(self.LOG)

        origins = graph.error_origins()
        assert [n.location.line for n in origins] == [3]
        assert graph.find_by_location(_loc(source_tree / "main.cpp", 4)) is None

    def test_warnings_included_on_request(self, fake_backend, source_tree, temp_dir):
        orch = Orchestrator(_context(temp_dir, source_tree, include_warnings=True), backend=fake_backend)

        graph = orch.build_graph(self.LOG)

        assert sorted(n.location.line for n in graph.error_origins()) == [3, 5]
        assert graph.find_by_location(_loc(source_tree / "main.cpp", 4)) is not None

    def test_note_becomes_error_path(self, fake_backend, source_tree, temp_dir):
        orch = Orchestrator(_context(temp_dir, source_tree), backend=fake_backend)

        graph = orch.build_graph(self.LOG)

        main = source_tree / "main.cpp"
        error = graph.find_by_location(_loc(main, 3))
        note = graph.find_by_location(_loc(main, 2))
        assert note.node_kind is NodeKind.ERROR_SOURCE
        assert not note.is_error_origin
        assert note.diagnostics[0].severity is Severity.NOTE
        path_edges = [e for e in graph.edges if e.edge_kind is EdgeKind.ERROR_PATH]
        assert [(e.source_id, e.target_id) for e in path_edges] == [(error.id, note.id)]
        assert path_edges[0].on_error_path

    def test_leading_note_is_dropped(self, fake_backend, source_tree, temp_dir):
        orch = Orchestrator(_context(temp_dir, source_tree), backend=fake_backend)

        graph = orch.build_graph("main.cpp:2:1: note: orphan\n")

        assert len(graph) == 0


class TestDegradation:
    """Issues instead of exceptions."""

    def test_backend_unavailable_recorded_once(self, unavailable_backend, source_tree, temp_dir):
        orch = Orchestrator(_context(temp_dir, source_tree), backend=unavailable_backend)

        graph = orch.build_graph("main.cpp:3:1: error: a\nmain.cpp:5:1: error: b\n")

        assert len(graph.error_origins()) == 2
        assert [(i.kind, i.feature) for i in graph.issues] == [("backend-unavailable", "semantic-analysis")]

    def test_analysis_miss_recorded(self, fake_backend, source_tree, temp_dir):
        orch = Orchestrator(_context(temp_dir, source_tree), backend=fake_backend)

        graph = orch.build_graph("nowhere.cpp:3:1: error: a\n")

        assert len(graph) == 1
        assert graph.issues[0].kind == "analysis-miss"

    def test_locked_cache_degrades(self, fake_backend, source_tree, temp_dir):
        context = _context(temp_dir, source_tree, use_cache=True)
        holder = AnalysisCache(context.resolved_cache_path).open()
        try:
            graph = Orchestrator(context, backend=fake_backend).build_graph("main.cpp:3:1: error: a\n")
        finally:
            holder.close()

        assert len(graph) == 1
        assert graph.issues[0].kind == "cache-unavailable"

    def test_storage_failure_propagates(self, fake_backend, source_tree, temp_dir):
        class BrokenCache(AnalysisCache):
            def store(self, kind, subject, fingerprint, payload):
                raise CacheStorageError("disk full")

        fake_backend.children[("main.cpp", 3)] = []
        with BrokenCache(temp_dir / "broken.db") as cache:
            orch = Orchestrator(_context(temp_dir, source_tree), backend=fake_backend, cache=cache)
            with pytest.raises(CacheStorageError):
                orch.build_graph("main.cpp:3:1: error: a\n")


class TestLayoutAndCache:
    def test_every_node_has_finite_coordinates(self, fake_backend, make_child, source_tree, temp_dir):
        util = source_tree / "util.h"
        fake_backend.children[("main.cpp", 3)] = [
            make_child(ChildRole.CALL, "helper", util.resolve(), 1, NodeKind.FUNCTION),
        ]
        orch = Orchestrator(_context(temp_dir, source_tree), backend=fake_backend)

        graph = orch.build_graph("main.cpp:3:1: error: a\n")

        assert graph.layout_algorithm == "layered"
        assert all(math.isfinite(n.x) and math.isfinite(n.y) for n in graph.nodes)

    def test_second_run_uses_caches(self, fake_backend, fake_backend_factory, make_child, source_tree, temp_dir):
        util = source_tree / "util.h"
        fake_backend.children[("main.cpp", 3)] = [
            make_child(ChildRole.CALL, "helper", util.resolve(), 1, NodeKind.FUNCTION),
        ]
        context = _context(temp_dir, source_tree, use_cache=True)
        log = "main.cpp:3:1: error: a\n"

        first = Orchestrator(context, backend=fake_backend).build_graph(log)
        cold = fake_backend_factory()
        second = Orchestrator(context, backend=cold).build_graph(log)

        assert context.resolved_cache_path.exists()
        assert cold.parsed == []
        assert second.layout_algorithm == "cached"
        assert [(n.x, n.y) for n in second.nodes] == [(n.x, n.y) for n in first.nodes]

    def test_module_level_build_graph(self, source_tree, temp_dir):
        from relaygraph import build_graph

        graph = build_graph("ld: warning: nothing here\n", _context(temp_dir, source_tree))

        assert len(graph) == 0
