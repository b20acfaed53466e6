"""Map source lines to machine instructions using ``llvm-objdump``."""

from __future__ import annotations

import json
import logging
import re
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional, Union

from . import config
from .cache import KIND_ASM, AnalysisCache, Fingerprint
from .errors import AnalysisError, BackendUnavailableError
from .models import AssemblyLine

logger = logging.getLogger(__name__)

FEATURE = "disassembly"

# "; /src/player.cpp:42" optionally followed by " (discriminator 2)"
_SOURCE_RE = re.compile(r"^;\s*(?P<file>.+):(?P<line>\d+)(?:\s+\(discriminator \d+\))?$")
# "  1130:      pushq   %rbp"
_INSN_RE = re.compile(r"^(?:0x)?(?P<addr>[0-9a-fA-F]+):\s*(?P<insn>\S.*)$")


def parse_objdump_output(text: str) -> List[AssemblyLine]:
    """Parse ``llvm-objdump -d -l`` output into :class:`AssemblyLine` records.

    Instructions seen before the first source comment carry an empty file
    and line ``0``.
    """
    records: List[AssemblyLine] = []
    current_file = ""
    current_line = 0

    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue

        if line.startswith(";"):
            src = _SOURCE_RE.match(line)
            if src:
                current_file = src.group("file").strip()
                current_line = int(src.group("line"))
            continue

        insn = _INSN_RE.match(line)
        if insn is None:
            continue
        records.append(AssemblyLine(
            address=int(insn.group("addr"), 16),
            instruction=insn.group("insn").strip(),
            source_file=current_file,
            source_line=current_line,
        ))
    return records


class AssemblyAnalyzer:
    """Disassemble object files and answer line -> instructions queries."""

    def __init__(
        self,
        cache: Optional[AnalysisCache] = None,
        objdump: str = config.OBJDUMP,
    ) -> None:
        self.cache = cache
        self.objdump = objdump
        self.lines: List[AssemblyLine] = []

    def analyze_object(self, obj_path: Union[str, Path]) -> List[AssemblyLine]:
        """Disassemble *obj_path*, serving from the ``asm`` cache when valid."""
        path = Path(obj_path)
        fingerprint = Fingerprint.of_path(path)
        if fingerprint is None:
            raise AnalysisError(f"Object file not found: {path}", {"path": str(path)})

        cached = self._load_cached(fingerprint)
        if cached is not None:
            logger.debug("ASM cache hit for %s", path)
            self.lines = cached
            return self.lines

        output = self._run_objdump(path)
        self.lines = parse_objdump_output(output)
        logger.info("Disassembled %s: %d instructions", path.name, len(self.lines))

        if self.cache is not None:
            payload = json.dumps([
                [al.address, al.instruction, al.source_file, al.source_line]
                for al in self.lines
            ])
            self.cache.store(KIND_ASM, fingerprint.subject, fingerprint, payload.encode("utf-8"))
        return self.lines

    def lines_for(self, source_file: str, line: int) -> List[AssemblyLine]:
        """Instructions generated for *line* of any file ending in *source_file*."""
        suffix = source_file.replace("\\", "/")
        return [
            al for al in self.lines
            if al.source_line == line and al.source_file.replace("\\", "/").endswith(suffix)
        ]

    def _run_objdump(self, path: Path) -> str:
        tool = shutil.which(self.objdump)
        if tool is None:
            raise BackendUnavailableError(FEATURE, f"'{self.objdump}' not found on PATH")

        try:
            result = subprocess.run(
                [tool, "-d", "-l", "--no-show-raw-insn", str(path)],
                capture_output=True,
                text=True,
                errors="replace",
            )
        except OSError as exc:
            raise BackendUnavailableError(FEATURE, str(exc)) from exc

        if result.returncode != 0:
            raise AnalysisError(
                f"{self.objdump} failed on {path.name}",
                {"returncode": str(result.returncode), "stderr": result.stderr.strip()[:200]},
            )
        return result.stdout

    def _load_cached(self, fingerprint: Fingerprint) -> Optional[List[AssemblyLine]]:
        if self.cache is None:
            return None
        payload = self.cache.load(KIND_ASM, fingerprint.subject, fingerprint)
        if payload is None:
            return None
        try:
            rows = json.loads(payload.decode("utf-8"))
            return [AssemblyLine(int(a), str(i), str(f), int(n)) for a, i, f, n in rows]
        except (UnicodeDecodeError, ValueError, TypeError) as exc:
            logger.warning("Discarding corrupt ASM cache record for %s: %s", fingerprint.subject, exc)
            return None
