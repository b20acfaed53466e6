"""Symbol relationship analysis around a diagnostic location.

For one diagnostic the analyzer finds the smallest syntactic unit at the
reported position, enumerates what that unit calls, references, includes
and inherits from, and folds each relationship into the graph as a node
(merged by ``(file, line)``) plus an edge from the diagnostic's error node.

Parse handles live in an :class:`AnalysisSession` for the analyzer's
lifetime: a file is re-parsed only when its fingerprint (path, mtime,
compilation-flags hash) changes.  Completed relationship sets are also
persisted in the ``ast`` cache so later processes skip the backend
entirely for untouched files.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .backend import ChildCursor, ChildRole, Definition, SemanticBackend, TranslationUnit
from .build_context import BuildContext, CompilationDatabase, flags_hash
from .cache import KIND_AST, AnalysisCache, Fingerprint
from .errors import AnalysisError, BackendUnavailableError
from .models import (
    Diagnostic,
    EdgeKind,
    GraphNode,
    NodeIdAllocator,
    NodeKind,
    RelayGraph,
    SourceLocation,
    SymbolReference,
)

logger = logging.getLogger(__name__)

_EDGE_FOR_ROLE = {
    ChildRole.CALL: EdgeKind.CALL,
    ChildRole.REFERENCE: EdgeKind.REFERENCE,
    ChildRole.INCLUDE: EdgeKind.INCLUDE,
    ChildRole.BASE: EdgeKind.INHERIT,
}


@dataclass
class ParseHandle:
    fingerprint: Fingerprint
    unit: TranslationUnit


class AnalysisSession:
    """Arena of parse handles indexed by subject path."""

    def __init__(self) -> None:
        self._handles: Dict[str, ParseHandle] = {}
        self.parse_count = 0
        self.eviction_count = 0

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, subject: str) -> bool:
        return subject in self._handles

    def acquire(
        self,
        backend: SemanticBackend,
        path: Path,
        flags: Sequence[str],
        fingerprint: Fingerprint,
    ) -> ParseHandle:
        handle = self._handles.get(fingerprint.subject)
        if handle is not None:
            if handle.fingerprint == fingerprint:
                return handle
            logger.debug("Evicting stale parse handle for %s", fingerprint.subject)
            del self._handles[fingerprint.subject]
            self.eviction_count += 1

        unit = backend.parse(path, flags)
        self.parse_count += 1
        handle = ParseHandle(fingerprint=fingerprint, unit=unit)
        self._handles[fingerprint.subject] = handle
        return handle

    def clear(self) -> None:
        self._handles.clear()


class SymbolAnalyzer:
    """Expand diagnostics into related symbol nodes."""

    def __init__(
        self,
        backend: SemanticBackend,
        context: Optional[BuildContext] = None,
        cache: Optional[AnalysisCache] = None,
        compile_db: Optional[CompilationDatabase] = None,
    ) -> None:
        self.backend = backend
        self.context = context or BuildContext()
        self.cache = cache
        self.compile_db = compile_db if compile_db is not None else CompilationDatabase.load(
            self.context.build_dir
        )
        self.session = AnalysisSession()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def analyze(
        self,
        diagnostic: Diagnostic,
        graph: RelayGraph,
        allocator: NodeIdAllocator,
        context: Optional[BuildContext] = None,
    ) -> List[SymbolReference]:
        """Add the diagnostic's related symbols to *graph*.

        Analysis misses are logged and leave the graph unchanged;
        :class:`BackendUnavailableError` propagates.
        """
        origin = graph.find_by_location(diagnostic.location)
        if origin is None:
            raise ValueError(f"No error node for {diagnostic.location}; create it before analyzing")

        try:
            references = self.references_for(diagnostic, context)
        except AnalysisError as exc:
            logger.warning("Analysis miss at %s: %s", diagnostic.location, exc)
            graph.record_issue("analysis-miss", f"{diagnostic.location}: {exc.message}")
            return []

        self.fold(origin, references, graph, allocator)
        return references

    def references_for(
        self,
        diagnostic: Diagnostic,
        context: Optional[BuildContext] = None,
    ) -> List[SymbolReference]:
        """Relationship set for the diagnostic position (cache, then backend)."""
        context = context or self.context
        path = context.resolve_source(diagnostic.file_path)
        if not self.backend.supports(path):
            raise AnalysisError(f"Unsupported source file {path.name}", {"path": str(path)})

        flags = self.compile_db.flags_for(path) + list(context.extra_flags)
        fingerprint = Fingerprint.of_path(path, flags_hash(flags))
        if fingerprint is None:
            raise AnalysisError(f"Source file not found: {path}", {"path": str(path)})

        position = f"{diagnostic.line}:{diagnostic.column}"
        cached = self._load_cached(fingerprint)
        if cached is not None and position in cached:
            logger.debug("AST cache hit for %s @ %s", path, position)
            return [SymbolReference.from_dict(item) for item in cached[position]]

        references = self._compute(path, flags, fingerprint, diagnostic)

        if self.cache is not None:
            sets = dict(cached or {})
            sets[position] = [ref.to_dict() for ref in references]
            self.cache.store(
                KIND_AST,
                fingerprint.subject,
                fingerprint,
                json.dumps(sets, sort_keys=True).encode("utf-8"),
            )
        return references

    def fold(
        self,
        origin: GraphNode,
        references: Sequence[SymbolReference],
        graph: RelayGraph,
        allocator: NodeIdAllocator,
    ) -> None:
        """Merge *references* into *graph* as nodes plus edges from *origin*."""
        for ref in references:
            # a reference to the origin line (recursion) folds into a self-edge
            node, created = graph.get_or_create_node(
                ref.location, ref.symbol_name, ref.node_kind, allocator,
            )
            graph.add_edge(origin.id, node.id, ref.edge_kind_from_origin, on_error_path=True)
            if created:
                logger.debug("Added %s node %s for %s", ref.node_kind.value, node.id, ref.location)

    # ------------------------------------------------------------------
    # Backend walk
    # ------------------------------------------------------------------

    def _compute(
        self,
        path: Path,
        flags: Sequence[str],
        fingerprint: Fingerprint,
        diagnostic: Diagnostic,
    ) -> List[SymbolReference]:
        handle = self.session.acquire(self.backend, path, flags, fingerprint)
        cursor = self.backend.locate(handle.unit, diagnostic.line, diagnostic.column)
        if cursor is None:
            raise AnalysisError(
                f"No syntactic unit at line {diagnostic.line}",
                {"path": str(path)},
            )

        references: List[SymbolReference] = []
        seen = set()
        for child in self.backend.enumerate_children(cursor):
            ref = self._to_reference(child, handle.unit, flags)
            if ref is None:
                logger.debug("Unresolved %s '%s' at %s", child.role.value, child.name, child.site)
                continue
            key = (ref.location.key, ref.edge_kind_from_origin)
            if key in seen:
                continue
            seen.add(key)
            references.append(ref)
        logger.debug(
            "Resolved %d references in %s around %s",
            len(references), cursor.kind, diagnostic.location,
        )
        return references

    def _to_reference(
        self,
        child: ChildCursor,
        unit: TranslationUnit,
        flags: Sequence[str],
    ) -> Optional[SymbolReference]:
        edge_kind = _EDGE_FOR_ROLE[child.role]

        if child.role is ChildRole.INCLUDE:
            location = (
                child.definition.location
                if child.definition is not None
                else SourceLocation(child.name, 0, 0)
            )
            return SymbolReference(location, child.name, NodeKind.INCLUDE, edge_kind)

        definition = child.definition or self._resolve_in_headers(unit, child.name, flags)
        if definition is None:
            return None

        if child.role is ChildRole.CALL:
            node_kind = NodeKind.FUNCTION if definition.kind is NodeKind.FUNCTION else definition.kind
        elif child.role is ChildRole.BASE:
            node_kind = NodeKind.TYPE
        else:
            node_kind = definition.kind
        return SymbolReference(definition.location, child.name, node_kind, edge_kind)

    def _resolve_in_headers(
        self,
        unit: TranslationUnit,
        name: str,
        flags: Sequence[str],
    ) -> Optional[Definition]:
        fallback: Optional[Definition] = None
        for header in self.backend.included_headers(unit):
            header_fp = Fingerprint.of_path(header, flags_hash(flags))
            if header_fp is None or not self.backend.supports(header):
                continue
            try:
                header_handle = self.session.acquire(self.backend, header, flags, header_fp)
            except AnalysisError as exc:
                logger.debug("Skipping header %s: %s", header, exc)
                continue
            except BackendUnavailableError as exc:
                logger.warning("Skipping header %s: %s", header, exc.reason)
                continue
            definition = self.backend.find_definition(header_handle.unit, name)
            if definition is None:
                continue
            if not definition.declaration_only:
                return definition
            if fallback is None:
                fallback = definition
        return fallback

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_cached(self, fingerprint: Fingerprint) -> Optional[Dict[str, list]]:
        if self.cache is None:
            return None
        payload = self.cache.load(KIND_AST, fingerprint.subject, fingerprint)
        if payload is None:
            return None
        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Discarding corrupt AST cache record for %s: %s", fingerprint.subject, exc)
            return None
        return data if isinstance(data, dict) else None
