"""Pytest configuration and fixtures for relaygraph tests."""

import shutil
import tempfile
from pathlib import Path
from typing import Callable, Dict, Generator, List, Optional, Sequence, Tuple

import pytest

from relaygraph.backend import (
    ChildCursor,
    ChildRole,
    ChildSequence,
    Cursor,
    Definition,
    IncludeDirective,
    SemanticBackend,
    TranslationUnit,
)
from relaygraph.errors import BackendUnavailableError
from relaygraph.models import NodeKind, SourceLocation


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    """Keep tests away from the developer's ~/.relaygraph/config.toml."""
    monkeypatch.setattr("relaygraph.config.CONFIG_FILE", tmp_path / "no-config.toml")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def game_project_path() -> Path:
    """Path to the small C++ fixture project."""
    return Path(__file__).parent / "fixtures" / "game"


@pytest.fixture
def source_tree(temp_dir: Path) -> Path:
    """A source directory with a couple of real files to fingerprint."""
    src = temp_dir / "src"
    src.mkdir()
    (src / "main.cpp").write_text(
        '#include "util.h"\n'
        "int main() {\n"
        "    return helper() + counter;\n"
        "}\n"
        "int counter = 0;\n",
        encoding="utf-8",
    )
    (src / "util.h").write_text("int helper();\n", encoding="utf-8")
    return src


class FakeBackend(SemanticBackend):
    """Scripted backend.

    ``children`` maps ``(file name, line)`` to the child cursors of the unit
    found at that line; lines without an entry have no enclosing unit.
    ``definitions`` and ``includes`` are keyed by file name and end up on
    the parsed :class:`TranslationUnit`.
    """

    def __init__(self, unavailable_reason: Optional[str] = None):
        self.children: Dict[Tuple[str, int], List[ChildCursor]] = {}
        self.definitions: Dict[str, List[Definition]] = {}
        self.includes: Dict[str, List[IncludeDirective]] = {}
        self.unavailable_reason = unavailable_reason
        self.parsed: List[Path] = []
        self.enumerations = 0

    def supports(self, path: Path) -> bool:
        return Path(path).suffix in {".c", ".cpp", ".h"}

    def parse(self, path: Path, flags: Sequence[str] = ()) -> TranslationUnit:
        if self.unavailable_reason:
            raise BackendUnavailableError("semantic-analysis", self.unavailable_reason)
        path = Path(path)
        self.parsed.append(path)
        unit = TranslationUnit(
            path=path.resolve(),
            language="cpp",
            flags=tuple(flags),
            tree=None,
            source=path.read_bytes(),
        )
        for definition in self.definitions.get(path.name, []):
            unit.definitions.setdefault(definition.name, []).append(definition)
        unit.includes = list(self.includes.get(path.name, []))
        return unit

    def locate(self, unit: TranslationUnit, line: int, column: int) -> Optional[Cursor]:
        key = (unit.path.name, line)
        if key not in self.children:
            return None
        return Cursor(unit, key, "function_definition", SourceLocation(str(unit.path), line, 1))

    def enumerate_children(self, cursor: Cursor) -> ChildSequence:
        self.enumerations += 1
        items = list(self.children[cursor.node])
        return ChildSequence(lambda: iter(items))


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def fake_backend_factory():
    """The scripted backend class, for tests that need a second instance."""
    return FakeBackend


@pytest.fixture
def unavailable_backend() -> FakeBackend:
    return FakeBackend(unavailable_reason="tree-sitter is not installed")


@pytest.fixture
def make_child() -> Callable[..., ChildCursor]:
    """Factory for child cursors resolved to ``file:line``."""

    def _make(
        role: ChildRole,
        name: str,
        file_path: Optional[Path] = None,
        line: int = 1,
        kind: NodeKind = NodeKind.FUNCTION,
    ) -> ChildCursor:
        site = SourceLocation("site.cpp", 1, 1)
        definition = None
        if file_path is not None:
            definition = Definition(name, kind, SourceLocation(str(file_path), line, 1))
        return ChildCursor(role=role, name=name, site=site, definition=definition)

    return _make


@pytest.fixture
def sample_build_log() -> str:
    """Mixed GCC/Clang, MSVC and Unity output with build noise."""
    return (
        "[1/3] Building CXX object src/CMakeFiles/game.dir/player.cpp.o\n"
        "src/player.cpp:16:15: error: use of undeclared identifier 'undefined_thing'\n"
        "src/player.cpp:12:6: note: in definition of 'Player::update'\n"
        "C:\\game\\src\\world.cpp(88): warning C4244: conversion from 'double' to 'float'\n"
        "Assets/Scripts/Enemy.cs(42,17): error CS0103: The name 'target' does not exist in the current context\n"
        "ninja: build stopped: subcommand failed.\n"
    )
