"""Pipeline orchestrator: diagnostics text -> laid-out relay graph."""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .analyzer import SymbolAnalyzer
from .assembly import AssemblyAnalyzer
from .backend import SemanticBackend, TreeSitterBackend
from .build_context import BuildContext, CompilationDatabase
from .cache import AnalysisCache
from .diagnostics import DiagnosticParser
from .errors import BackendUnavailableError, CacheUnavailableError
from .layout import GraphLayout, apply_cached_layout, store_layout
from .models import (
    AssemblyLine,
    Diagnostic,
    EdgeKind,
    GraphNode,
    NodeIdAllocator,
    NodeKind,
    RelayGraph,
    Severity,
)

logger = logging.getLogger(__name__)


class Orchestrator:
    """Coordinates parsing, symbol analysis, caching and layout."""

    def __init__(
        self,
        context: Optional[BuildContext] = None,
        backend: Optional[SemanticBackend] = None,
        cache: Optional[AnalysisCache] = None,
        parser: Optional[DiagnosticParser] = None,
        layout: Optional[GraphLayout] = None,
        objdump: Optional[str] = None,
    ):
        self.context = context or BuildContext()
        self.backend = backend or TreeSitterBackend()
        self.cache = cache
        self.parser = parser or DiagnosticParser()
        self.layout = layout or GraphLayout()
        self.objdump = objdump
        self._analyzer: Optional[SymbolAnalyzer] = None

    # ------------------------------------------------------------------
    # Graph building
    # ------------------------------------------------------------------

    def build_graph(self, diagnostic_text: str, context: Optional[BuildContext] = None) -> RelayGraph:
        """Parse *diagnostic_text* and expand every kept diagnostic into a graph.

        Analysis misses and an unavailable backend or cache degrade the
        result (see ``graph.issues``); ``CacheStorageError`` propagates.
        """
        context = context or self.context
        graph = RelayGraph()
        allocator = NodeIdAllocator()

        groups = self._kept_groups(self.parser.parse(diagnostic_text), context)
        logger.info("Building relay graph from %d diagnostics", len(groups))

        cache, owned = self._acquire_cache(context, graph)
        try:
            analyzer = self._analyzer_for(context, cache)
            for diagnostic, notes in groups:
                origin = self._add_error_node(graph, diagnostic, allocator)
                try:
                    analyzer.analyze(diagnostic, graph, allocator, context)
                except BackendUnavailableError as exc:
                    logger.warning("Skipping analysis of %s: %s", diagnostic.location, exc.reason)
                    graph.record_issue("backend-unavailable", exc.reason, feature=exc.feature)
                for note in notes:
                    self._add_note(graph, origin, note, allocator)

            self._layout(graph, cache, context)
        finally:
            if owned:
                cache.close()

        logger.info(
            "Relay graph ready: %d nodes, %d edges, %d issues (%s layout)",
            len(graph.nodes), len(graph.edges), len(graph.issues), graph.layout_algorithm,
        )
        return graph

    def assembly_for(
        self,
        object_path: Union[str, Path],
        source_file: str,
        line: int,
        context: Optional[BuildContext] = None,
    ) -> List[AssemblyLine]:
        """Instructions compiled from ``source_file:line`` in *object_path*."""
        context = context or self.context
        scratch = RelayGraph()
        cache, owned = self._acquire_cache(context, scratch)
        try:
            kwargs = {"objdump": self.objdump} if self.objdump else {}
            mapper = AssemblyAnalyzer(cache=cache, **kwargs)
            mapper.analyze_object(object_path)
            return mapper.lines_for(source_file, line)
        finally:
            if owned:
                cache.close()

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _kept_groups(
        self,
        diagnostics: List[Diagnostic],
        context: BuildContext,
    ) -> List[Tuple[Diagnostic, List[Diagnostic]]]:
        """Apply the warning policy and attach notes to their owner."""
        groups: List[Tuple[Diagnostic, List[Diagnostic]]] = []
        owner_kept = False
        for diagnostic in diagnostics:
            diagnostic = _normalize(diagnostic, context)
            if diagnostic.severity is Severity.NOTE:
                if owner_kept:
                    groups[-1][1].append(diagnostic)
                else:
                    logger.debug("Dropping note without kept owner: %s", diagnostic.location)
                continue
            owner_kept = diagnostic.is_error or context.include_warnings
            if owner_kept:
                groups.append((diagnostic, []))
        return groups

    def _add_error_node(
        self,
        graph: RelayGraph,
        diagnostic: Diagnostic,
        allocator: NodeIdAllocator,
    ) -> GraphNode:
        node, created = graph.get_or_create_node(
            diagnostic.location, diagnostic.message, NodeKind.ERROR_SOURCE, allocator,
        )
        if not created and node.node_kind is not NodeKind.ERROR_SOURCE:
            logger.debug("Promoting %s node %s to ErrorSource", node.node_kind.value, node.id)
        node.node_kind = NodeKind.ERROR_SOURCE
        node.is_error_origin = True
        node.diagnostics.append(diagnostic)
        return node

    def _add_note(
        self,
        graph: RelayGraph,
        owner: GraphNode,
        note: Diagnostic,
        allocator: NodeIdAllocator,
    ) -> None:
        node, _ = graph.get_or_create_node(
            note.location, note.message, NodeKind.ERROR_SOURCE, allocator,
        )
        node.diagnostics.append(note)
        graph.add_edge(owner.id, node.id, EdgeKind.ERROR_PATH, on_error_path=True)

    def _layout(self, graph: RelayGraph, cache: Optional[AnalysisCache], context: BuildContext) -> None:
        settings = self.layout.settings
        seed = context.layout_seed
        if apply_cached_layout(cache, graph, settings, seed):
            graph.layout_algorithm = "cached"
            return
        graph.layout_algorithm = self.layout.auto_layout(graph, seed=seed)
        store_layout(cache, graph, settings, seed)

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    def _acquire_cache(
        self,
        context: BuildContext,
        graph: RelayGraph,
    ) -> Tuple[Optional[AnalysisCache], bool]:
        """Return ``(cache, owned)``; owned caches must be closed by the caller."""
        if self.cache is not None:
            return self.cache, False
        if not context.use_cache:
            return None, False
        cache = AnalysisCache(context.resolved_cache_path)
        try:
            cache.open()
        except CacheUnavailableError as exc:
            logger.warning("Continuing without cache: %s", exc.message)
            graph.record_issue("cache-unavailable", exc.message)
            return None, False
        return cache, True

    def _analyzer_for(self, context: BuildContext, cache: Optional[AnalysisCache]) -> SymbolAnalyzer:
        analyzer = self._analyzer
        if analyzer is None or analyzer.context.build_dir != context.build_dir:
            analyzer = SymbolAnalyzer(
                self.backend,
                context=context,
                compile_db=CompilationDatabase.load(context.build_dir),
            )
            self._analyzer = analyzer
        analyzer.cache = cache
        return analyzer


def _normalize(diagnostic: Diagnostic, context: BuildContext) -> Diagnostic:
    """Rewrite the diagnostic path to the absolute source path when it exists."""
    resolved = context.resolve_source(diagnostic.file_path)
    if not resolved.exists():
        return diagnostic
    return dataclasses.replace(diagnostic, file_path=str(resolved.resolve()))


def build_graph(diagnostic_text: str, build_context: Optional[BuildContext] = None) -> RelayGraph:
    """One-shot convenience around :class:`Orchestrator`."""
    return Orchestrator(context=build_context).build_graph(diagnostic_text)
