"""Semantic-analysis backends that resolve what a source location refers to.

The analyzer talks to a :class:`SemanticBackend` through four pull-style
operations: ``parse`` a file into a :class:`TranslationUnit`, ``locate`` the
smallest syntactic unit around a position, ``enumerate_children`` of that
unit as a lazy, restartable :class:`ChildSequence`, and ``find_definition``
of a name in another unit (used for included headers).

:class:`TreeSitterBackend` is the shipped implementation.  It uses
Tree-sitter grammars for C, C++ and C#, so it tolerates broken code and
needs no compiler installation; name resolution is by definition lookup in
the unit itself (scope-aware for locals and parameters) and, through the
analyzer, in directly-included headers.
"""

from __future__ import annotations

import importlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Optional, Sequence, Tuple

from . import config
from .build_context import include_dirs
from .errors import AnalysisError, BackendUnavailableError
from .models import NodeKind, SourceLocation

logger = logging.getLogger(__name__)

FEATURE = "semantic-analysis"


class ChildRole(str, Enum):
    CALL = "call"
    REFERENCE = "reference"
    INCLUDE = "include"
    BASE = "base"


@dataclass(frozen=True)
class Definition:
    name: str
    kind: NodeKind
    location: SourceLocation
    declaration_only: bool = False
    # (start_byte, end_byte) of the enclosing function for locals, None for globals
    scope: Optional[Tuple[int, int]] = None


@dataclass(frozen=True)
class ChildCursor:
    """One typed relationship found under a cursor."""

    role: ChildRole
    name: str
    site: SourceLocation
    definition: Optional[Definition] = None


@dataclass(frozen=True)
class IncludeDirective:
    spelled: str
    site: SourceLocation
    resolved: Optional[Path] = None
    system: bool = False


@dataclass
class TranslationUnit:
    path: Path
    language: str
    flags: Tuple[str, ...]
    tree: Any
    source: bytes
    definitions: Dict[str, List[Definition]] = field(default_factory=dict)
    includes: List[IncludeDirective] = field(default_factory=list)

    def lookup(
        self,
        name: str,
        at_byte: Optional[int] = None,
        prefer: Optional[NodeKind] = None,
    ) -> Optional[Definition]:
        """Resolve *name* as seen from *at_byte*.

        Innermost enclosing local scope wins over globals; full definitions
        win over declarations; a definition of the *prefer* kind wins over
        others at the same level.
        """
        candidates = self.definitions.get(name)
        if not candidates:
            return None

        def rank(d: Definition) -> Tuple[int, int, int, int]:
            if d.scope is None:
                scope_rank = 1 << 62
            elif at_byte is not None and d.scope[0] <= at_byte < d.scope[1]:
                scope_rank = d.scope[1] - d.scope[0]
            else:
                return (1, 0, 0, 0)
            kind_rank = 0 if prefer is None or d.kind is prefer else 1
            return (0, scope_rank, kind_rank, 1 if d.declaration_only else 0)

        visible = [d for d in candidates if rank(d)[0] == 0]
        if not visible:
            return None
        return min(visible, key=rank)


@dataclass
class Cursor:
    unit: TranslationUnit
    node: Any
    kind: str
    location: SourceLocation


class ChildSequence:
    """Lazy, finite, restartable sequence of :class:`ChildCursor`.

    Each ``iter()`` restarts the walk from the cursor.
    """

    def __init__(self, factory: Callable[[], Iterator[ChildCursor]]) -> None:
        self._factory = factory

    def __iter__(self) -> Iterator[ChildCursor]:
        return self._factory()


# ===================================================================
# Abstract Backend Interface
# ===================================================================

class SemanticBackend(ABC):
    """Abstract base class for semantic-analysis providers."""

    @abstractmethod
    def supports(self, path: Path) -> bool:
        """Return True if this backend can analyze *path*."""
        ...

    @abstractmethod
    def parse(self, path: Path, flags: Sequence[str] = ()) -> TranslationUnit:
        """Parse *path*; raise AnalysisError or BackendUnavailableError."""
        ...

    @abstractmethod
    def locate(self, unit: TranslationUnit, line: int, column: int) -> Optional[Cursor]:
        """Smallest syntactic unit enclosing 1-based ``(line, column)``."""
        ...

    @abstractmethod
    def enumerate_children(self, cursor: Cursor) -> ChildSequence:
        ...

    def find_definition(self, unit: TranslationUnit, name: str) -> Optional[Definition]:
        """Global definition of *name* in *unit*, if any."""
        return unit.lookup(name)

    def included_headers(self, unit: TranslationUnit) -> List[Path]:
        return [inc.resolved for inc in unit.includes if inc.resolved is not None]


# ===================================================================
# Grammar profiles
# ===================================================================

@dataclass(frozen=True)
class GrammarProfile:
    """Node-type vocabulary of one Tree-sitter grammar."""

    module: str
    scope_types: FrozenSet[str]
    container_types: FrozenSet[str]
    call_types: Dict[str, str]
    include_types: FrozenSet[str]
    base_clause_types: FrozenSet[str]
    name_types: FrozenSet[str]
    function_types: FrozenSet[str]
    type_types: FrozenSet[str]
    variable_types: FrozenSet[str]
    bodied_type_types: FrozenSet[str] = frozenset()


_C_FAMILY = dict(
    scope_types=frozenset({
        "function_definition", "class_specifier", "struct_specifier",
        "union_specifier", "enum_specifier",
    }),
    container_types=frozenset({
        "translation_unit", "declaration_list", "preproc_if", "preproc_ifdef",
        "preproc_else", "preproc_elif", "linkage_specification", "template_declaration",
    }),
    call_types={"call_expression": "function"},
    include_types=frozenset({"preproc_include"}),
    base_clause_types=frozenset({"base_class_clause"}),
    name_types=frozenset({"identifier", "type_identifier", "field_identifier"}),
    function_types=frozenset({"function_definition"}),
    type_types=frozenset({"type_definition", "alias_declaration"}),
    bodied_type_types=frozenset({
        "class_specifier", "struct_specifier", "union_specifier", "enum_specifier",
    }),
    variable_types=frozenset({
        "declaration", "field_declaration", "parameter_declaration",
        "optional_parameter_declaration", "enumerator",
    }),
)

PROFILES: Dict[str, GrammarProfile] = {
    "c": GrammarProfile(module="tree_sitter_c", **_C_FAMILY),
    "cpp": GrammarProfile(module="tree_sitter_cpp", **_C_FAMILY),
    "c_sharp": GrammarProfile(
        module="tree_sitter_c_sharp",
        scope_types=frozenset({
            "method_declaration", "constructor_declaration", "destructor_declaration",
            "local_function_statement", "property_declaration", "class_declaration",
            "struct_declaration", "interface_declaration", "enum_declaration",
            "record_declaration",
        }),
        container_types=frozenset({
            "compilation_unit", "declaration_list", "namespace_declaration",
            "file_scoped_namespace_declaration",
        }),
        call_types={"invocation_expression": "function", "object_creation_expression": "type"},
        include_types=frozenset({"using_directive"}),
        base_clause_types=frozenset({"base_list"}),
        name_types=frozenset({"identifier"}),
        function_types=frozenset({
            "method_declaration", "constructor_declaration", "destructor_declaration",
            "local_function_statement",
        }),
        type_types=frozenset({
            "class_declaration", "struct_declaration", "interface_declaration",
            "enum_declaration", "record_declaration", "delegate_declaration",
        }),
        variable_types=frozenset({
            "variable_declarator", "parameter", "property_declaration",
            "enum_member_declaration",
        }),
    ),
}

_TERMINAL_TYPES = frozenset({
    "identifier", "field_identifier", "type_identifier", "destructor_name",
    "operator_name", "primitive_type",
})


# ===================================================================
# Tree-sitter Backend
# ===================================================================

class TreeSitterBackend(SemanticBackend):
    """Error-tolerant C / C++ / C# backend built on Tree-sitter.

    Grammars come from the per-language ``tree-sitter-<lang>`` packages and
    are loaded on first use.  A missing ``tree_sitter`` package or grammar
    surfaces as :class:`BackendUnavailableError` from :meth:`parse`.
    """

    def __init__(self, languages: Optional[Sequence[str]] = None) -> None:
        self._parsers: Dict[str, Any] = {}
        self._unavailable: Dict[str, str] = {}
        self._languages = set(languages or PROFILES.keys())

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    def _parser_for(self, language: str) -> Any:
        if language in self._parsers:
            return self._parsers[language]
        if language in self._unavailable:
            raise BackendUnavailableError(FEATURE, self._unavailable[language])

        try:
            from tree_sitter import Language, Parser as TSParser
        except ImportError:
            reason = (
                "tree-sitter is not installed. "
                "Install with: pip install tree-sitter tree-sitter-cpp"
            )
            self._unavailable[language] = reason
            logger.warning(reason)
            raise BackendUnavailableError(FEATURE, reason)

        mod_name = PROFILES[language].module
        try:
            mod = importlib.import_module(mod_name)
            parser = TSParser(Language(mod.language()))
        except ImportError:
            reason = (
                f"Grammar package '{mod_name}' not installed for language '{language}'. "
                f"Install with: pip install {mod_name.replace('_', '-')}"
            )
            self._unavailable[language] = reason
            logger.warning(reason)
            raise BackendUnavailableError(FEATURE, reason)

        self._parsers[language] = parser
        logger.debug("Loaded tree-sitter parser for %s", language)
        return parser

    @staticmethod
    def language_of(path: Path) -> Optional[str]:
        return config.SOURCE_EXTENSIONS.get(Path(path).suffix.lower())

    def supports(self, path: Path) -> bool:
        language = self.language_of(path)
        return language is not None and language in self._languages

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse(self, path: Path, flags: Sequence[str] = ()) -> TranslationUnit:
        path = Path(path)
        language = self.language_of(path)
        if language is None or language not in self._languages:
            raise AnalysisError(f"No grammar for {path.suffix or path.name}", {"path": str(path)})
        try:
            source = path.read_bytes()
        except OSError as exc:
            raise AnalysisError(f"Cannot read {path}: {exc}", {"path": str(path)}) from exc

        parser = self._parser_for(language)
        tree = parser.parse(source)
        unit = TranslationUnit(
            path=path.resolve(),
            language=language,
            flags=tuple(flags),
            tree=tree,
            source=source,
        )
        profile = PROFILES[language]
        _index_definitions(unit, profile)
        unit.includes = _collect_includes(unit, profile)
        logger.debug(
            "Parsed %s (%s): %d names, %d includes",
            path, language, len(unit.definitions), len(unit.includes),
        )
        return unit

    def locate(self, unit: TranslationUnit, line: int, column: int) -> Optional[Cursor]:
        root = unit.tree.root_node
        row = line - 1
        lines = unit.source.split(b"\n")
        if row < 0 or row >= len(lines):
            return None
        if column > 0:
            col = column - 1
        else:
            text = lines[row]
            col = len(text) - len(text.lstrip())

        leaf = root.named_descendant_for_point_range((row, col), (row, col))
        if leaf is None:
            return None

        profile = PROFILES[unit.language]
        statement = None
        node = leaf
        while node is not None:
            if node.type in profile.scope_types and (
                node.type not in profile.bodied_type_types
                or node.child_by_field_name("body") is not None
            ):
                return _cursor(unit, node)
            parent = node.parent
            if statement is None and parent is not None and parent.type in profile.container_types:
                statement = node
            node = parent

        if statement is not None:
            return _cursor(unit, statement)
        return _cursor(unit, root)

    def enumerate_children(self, cursor: Cursor) -> ChildSequence:
        profile = PROFILES[cursor.unit.language]
        return ChildSequence(lambda: _walk_children(cursor, profile))


# ===================================================================
# Tree walking helpers
# ===================================================================

def _text(node: Any) -> str:
    return node.text.decode("utf-8", errors="replace") if node.text is not None else ""


def _site(unit: TranslationUnit, node: Any) -> SourceLocation:
    row, col = node.start_point[0], node.start_point[1]
    return SourceLocation(str(unit.path), row + 1, col + 1)


def _cursor(unit: TranslationUnit, node: Any) -> Cursor:
    return Cursor(unit=unit, node=node, kind=node.type, location=_site(unit, node))


def _iter_nodes(root: Any) -> Iterator[Any]:
    """Pre-order walk, document order."""
    stack = [root]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children))


def _terminal_name(node: Any) -> Optional[Any]:
    """Follow declarator/name fields down to the identifier that names *node*."""
    current = node
    for _ in range(16):
        if current is None:
            return None
        if current.type in _TERMINAL_TYPES:
            return current
        nxt = None
        for fld in ("name", "field", "declarator", "function", "type"):
            nxt = current.child_by_field_name(fld)
            if nxt is not None:
                break
        if nxt is None:
            named = [c for c in current.named_children if c.type != "comment"]
            nxt = named[-1] if named else None
        current = nxt
    return None


def _declares_function(node: Any) -> bool:
    current = node
    for _ in range(16):
        if current is None:
            return False
        if current.type == "function_declarator":
            return True
        current = current.child_by_field_name("declarator")
    return False


def _index_definitions(unit: TranslationUnit, profile: GrammarProfile) -> None:
    stack: List[Tuple[Any, Optional[Tuple[int, int]]]] = [(unit.tree.root_node, None)]
    while stack:
        node, scope = stack.pop()
        kind: Optional[NodeKind] = None
        declaration_only = False
        name_nodes: List[Any] = []

        if node.type in profile.function_types:
            kind = NodeKind.FUNCTION
            name_nodes = [_terminal_name(node.child_by_field_name("declarator") or node)]
        elif node.type in profile.bodied_type_types:
            if node.child_by_field_name("body") is not None:
                kind = NodeKind.TYPE
                name_nodes = [node.child_by_field_name("name")]
        elif node.type in profile.type_types:
            kind = NodeKind.TYPE
            if node.type == "type_definition":
                name_nodes = [_terminal_name(d) for d in node.children_by_field_name("declarator")]
            else:
                name_nodes = [node.child_by_field_name("name")]
        elif node.type in profile.variable_types:
            if node.type in ("parameter_declaration", "optional_parameter_declaration") and scope is None:
                name_nodes = []
            elif node.type in ("declaration", "field_declaration", "parameter_declaration",
                               "optional_parameter_declaration"):
                declarators = node.children_by_field_name("declarator")
                if any(_declares_function(d) for d in declarators):
                    kind = NodeKind.FUNCTION
                    declaration_only = True
                else:
                    kind = NodeKind.VARIABLE
                name_nodes = [_terminal_name(d) for d in declarators]
            else:
                kind = NodeKind.VARIABLE
                name_nodes = [node.child_by_field_name("name")]

        if kind is not None:
            for name_node in name_nodes:
                if name_node is None or name_node.type == "primitive_type":
                    continue
                name = _text(name_node)
                if not name:
                    continue
                unit.definitions.setdefault(name, []).append(Definition(
                    name=name,
                    kind=kind,
                    location=_site(unit, name_node),
                    declaration_only=declaration_only,
                    scope=scope,
                ))

        child_scope = scope
        if node.type in profile.function_types:
            child_scope = (node.start_byte, node.end_byte)
        for child in reversed(node.children):
            stack.append((child, child_scope))


def _collect_includes(unit: TranslationUnit, profile: GrammarProfile) -> List[IncludeDirective]:
    search_dirs = include_dirs(unit.flags)
    includes: List[IncludeDirective] = []
    for node in _iter_nodes(unit.tree.root_node):
        if node.type not in profile.include_types:
            continue
        directive = _include_directive(unit, node, search_dirs)
        if directive is not None:
            includes.append(directive)
    return includes


def _include_directive(
    unit: TranslationUnit,
    node: Any,
    search_dirs: Sequence[Path],
) -> Optional[IncludeDirective]:
    if node.type == "preproc_include":
        path_node = node.child_by_field_name("path")
        if path_node is None:
            return None
        raw = _text(path_node).strip()
        system = path_node.type == "system_lib_string" or raw.startswith("<")
        spelled = raw.strip('"<>')
        candidates = list(search_dirs) if system else [unit.path.parent, *search_dirs]
        resolved = None
        for base in candidates:
            candidate = Path(base) / spelled
            if candidate.is_file():
                resolved = candidate.resolve()
                break
        return IncludeDirective(spelled, _site(unit, node), resolved, system)

    # using directives name a namespace, never a file
    named = [c for c in node.named_children if c.type != "comment"]
    if not named:
        return None
    return IncludeDirective(_text(named[-1]), _site(unit, node), None, True)


def _walk_children(cursor: Cursor, profile: GrammarProfile) -> Iterator[ChildCursor]:
    unit = cursor.unit
    claimed: set = set()
    include_by_site = {
        (inc.site.line, inc.site.column): inc for inc in unit.includes
    }

    for node in _iter_nodes(cursor.node):
        span = (node.start_byte, node.end_byte)

        if node.type in profile.call_types:
            callee = node.child_by_field_name(profile.call_types[node.type])
            name_node = _terminal_name(callee) if callee is not None else None
            if name_node is None:
                continue
            claimed.add((name_node.start_byte, name_node.end_byte))
            name = _text(name_node)
            prefer = NodeKind.FUNCTION if node.type != "object_creation_expression" else NodeKind.TYPE
            yield ChildCursor(
                role=ChildRole.CALL,
                name=name,
                site=_site(unit, name_node),
                definition=unit.lookup(name, name_node.start_byte, prefer=prefer),
            )

        elif node.type in profile.include_types:
            site = _site(unit, node)
            directive = include_by_site.get((site.line, site.column))
            if directive is None:
                continue
            for inner in _iter_nodes(node):
                claimed.add((inner.start_byte, inner.end_byte))
            definition = None
            if directive.resolved is not None:
                definition = Definition(
                    name=directive.spelled,
                    kind=NodeKind.INCLUDE,
                    location=SourceLocation(str(directive.resolved), 1, 1),
                )
            yield ChildCursor(ChildRole.INCLUDE, directive.spelled, site, definition)

        elif node.type in profile.base_clause_types:
            for base in node.named_children:
                name_node = _terminal_name(base)
                if name_node is None or name_node.type not in profile.name_types:
                    continue
                claimed.add((name_node.start_byte, name_node.end_byte))
                name = _text(name_node)
                yield ChildCursor(
                    role=ChildRole.BASE,
                    name=name,
                    site=_site(unit, name_node),
                    definition=unit.lookup(name, name_node.start_byte, prefer=NodeKind.TYPE),
                )

        elif node.type in profile.name_types and span not in claimed:
            name = _text(node)
            site = _site(unit, node)
            definition = unit.lookup(name, node.start_byte)
            if definition is not None and definition.location == site:
                # the declaring occurrence itself
                continue
            yield ChildCursor(ChildRole.REFERENCE, name, site, definition)
