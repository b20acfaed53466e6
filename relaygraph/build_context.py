"""Build context: compilation database lookup and per-file flags."""

from __future__ import annotations

import json
import logging
import shlex
from dataclasses import dataclass, field
from hashlib import blake2b
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from . import config

logger = logging.getLogger(__name__)

# Flags that never change how a file parses
_DROP_WITH_VALUE = {"-o", "-MF", "-MT", "-MQ"}
_DROP = {"-c", "-MD", "-MMD", "-MP"}


@dataclass
class BuildContext:
    """Where diagnostics came from and how the analysis should behave."""

    build_dir: Path = field(default_factory=Path.cwd)
    project_root: Optional[Path] = None
    extra_flags: Tuple[str, ...] = ()
    include_warnings: bool = False
    use_cache: bool = True
    cache_path: Optional[Path] = None
    layout_seed: int = 0

    def __post_init__(self) -> None:
        self.build_dir = Path(self.build_dir)
        if self.project_root is not None:
            self.project_root = Path(self.project_root)
        self.extra_flags = tuple(self.extra_flags)

    @property
    def resolved_cache_path(self) -> Path:
        return Path(self.cache_path) if self.cache_path else self.build_dir / config.CACHE_FILE_NAME

    def resolve_source(self, file_path: str) -> Path:
        """Resolve a diagnostic path against the project root / build dir."""
        candidate = Path(file_path.replace("\\", "/"))
        if candidate.is_absolute():
            return candidate
        for base in (self.project_root, self.build_dir):
            if base is None:
                continue
            joined = base / candidate
            if joined.exists():
                return joined.resolve()
        return (self.project_root or self.build_dir) / candidate


class CompilationDatabase:
    """Read-only view of a ``compile_commands.json`` file."""

    def __init__(self, entries: Optional[Dict[str, Tuple[Path, List[str]]]] = None) -> None:
        # resolved source path -> (directory, raw argument list)
        self._entries: Dict[str, Tuple[Path, List[str]]] = entries or {}

    def __len__(self) -> int:
        return len(self._entries)

    @classmethod
    def load(cls, build_dir: Path) -> "CompilationDatabase":
        db_file = Path(build_dir) / config.COMPILE_COMMANDS
        if not db_file.exists():
            logger.debug("No compilation database at %s", db_file)
            return cls()
        try:
            raw = json.loads(db_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable compilation database %s: %s", db_file, exc)
            return cls()

        entries: Dict[str, Tuple[Path, List[str]]] = {}
        for item in raw if isinstance(raw, list) else []:
            try:
                directory = Path(item.get("directory", build_dir))
                source = Path(item["file"])
                if "arguments" in item:
                    args = [str(a) for a in item["arguments"]]
                else:
                    args = shlex.split(item["command"])
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                logger.debug("Skipping malformed compile command %r: %s", item, exc)
                continue
            if not source.is_absolute():
                source = directory / source
            entries[str(source.resolve())] = (directory, args)
        logger.debug("Loaded %d compile commands from %s", len(entries), db_file)
        return cls(entries)

    def flags_for(self, source: Path) -> List[str]:
        """Return parse-relevant flags for *source* (empty if unknown)."""
        key = str(Path(source).resolve())
        entry = self._entries.get(key)
        if entry is None:
            return []
        directory, args = entry
        return _normalize_flags(args[1:], directory, key)


def _normalize_flags(args: Sequence[str], directory: Path, source: str) -> List[str]:
    flags: List[str] = []
    skip_next = False
    for arg in args:
        if skip_next:
            skip_next = False
            continue
        if arg in _DROP_WITH_VALUE:
            skip_next = True
            continue
        if arg in _DROP:
            continue
        if not arg.startswith("-"):
            as_path = Path(arg)
            if not as_path.is_absolute():
                as_path = directory / as_path
            if str(as_path.resolve()) == source:
                continue
        if arg.startswith("-I") and len(arg) > 2 and not Path(arg[2:]).is_absolute():
            arg = "-I" + str((directory / arg[2:]).resolve())
        flags.append(arg)
    return flags


def flags_hash(flags: Sequence[str]) -> Optional[str]:
    """Stable 64-bit hash of a flag list, ``None`` for no flags."""
    if not flags:
        return None
    digest = blake2b("\0".join(flags).encode("utf-8"), digest_size=8)
    return digest.hexdigest()


def include_dirs(flags: Sequence[str], directory: Optional[Path] = None) -> List[Path]:
    """Extract ``-I``/``-isystem`` search directories from *flags*."""
    dirs: List[Path] = []
    pending = False
    for arg in flags:
        if pending:
            dirs.append(Path(arg))
            pending = False
        elif arg in ("-I", "-isystem", "-iquote"):
            pending = True
        elif arg.startswith("-I") and len(arg) > 2:
            dirs.append(Path(arg[2:]))
        elif arg.startswith("-isystem") and len(arg) > len("-isystem"):
            dirs.append(Path(arg[len("-isystem"):]))
    if directory is not None:
        dirs = [d if d.is_absolute() else directory / d for d in dirs]
    return dirs
