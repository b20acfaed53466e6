"""Compiler diagnostic parser for GCC/Clang, MSVC and IDE (Unity C#) output.

Each line is matched independently against a fixed-priority chain of
matchers; the first structural match wins and lines matching nothing are
dropped.  Build logs interleave arbitrary noise, so parsing never fails.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from .models import Diagnostic, Severity

logger = logging.getLogger(__name__)

_SEVERITY = r"(?P<severity>fatal error|error|warning|note)"


@dataclass(frozen=True)
class DiagnosticMatcher:
    """One diagnostic line format."""

    name: str
    pattern: re.Pattern
    build: Callable[[re.Match], Diagnostic]

    def match(self, line: str) -> Optional[Diagnostic]:
        found = self.pattern.match(line)
        if found is None:
            return None
        return self.build(found)


def _severity(raw: str) -> Severity:
    if raw == "fatal error":
        return Severity.ERROR
    return Severity(raw)


def _build_gnu(m: re.Match) -> Diagnostic:
    return Diagnostic(
        file_path=m.group("path"),
        line=int(m.group("line")),
        column=int(m.group("col")),
        code="",
        message=m.group("message"),
        severity=_severity(m.group("severity")),
    )


def _build_gnu_no_column(m: re.Match) -> Diagnostic:
    return Diagnostic(
        file_path=m.group("path"),
        line=int(m.group("line")),
        column=0,
        code="",
        message=m.group("message"),
        severity=_severity(m.group("severity")),
    )


def _build_msvc(m: re.Match) -> Diagnostic:
    return Diagnostic(
        file_path=m.group("path"),
        line=int(m.group("line")),
        column=0,
        code=m.group("code"),
        message=m.group("message"),
        severity=_severity(m.group("severity")),
    )


def _build_ide(m: re.Match) -> Diagnostic:
    return Diagnostic(
        file_path=m.group("path"),
        line=int(m.group("line")),
        column=int(m.group("col")),
        code=m.group("code"),
        message=m.group("message"),
        severity=_severity(m.group("severity")),
    )


GNU = DiagnosticMatcher(
    "gnu",
    re.compile(
        r"^(?P<path>.+?):(?P<line>\d+):(?P<col>\d+):\s*"
        + _SEVERITY
        + r":\s*(?P<message>.+)$"
    ),
    _build_gnu,
)

MSVC = DiagnosticMatcher(
    "msvc",
    re.compile(
        r"^(?P<path>.+?)\((?P<line>\d+)\)\s*:\s*"
        + _SEVERITY
        + r"\s+(?P<code>\w+)\s*:\s*(?P<message>.+)$"
    ),
    _build_msvc,
)

IDE = DiagnosticMatcher(
    "ide",
    re.compile(
        r"^(?P<path>.+?)\((?P<line>\d+),(?P<col>\d+)\)\s*:\s*"
        + _SEVERITY
        + r"\s+(?P<code>\w+)\s*:\s*(?P<message>.+)$"
    ),
    _build_ide,
)

GNU_NO_COLUMN = DiagnosticMatcher(
    "gnu-no-column",
    re.compile(
        r"^(?P<path>.+?):(?P<line>\d+):\s*"
        + _SEVERITY
        + r":\s*(?P<message>.+)$"
    ),
    _build_gnu_no_column,
)

DEFAULT_MATCHERS = (GNU, MSVC, IDE, GNU_NO_COLUMN)


class DiagnosticParser:
    """Turn raw build output into :class:`Diagnostic` records."""

    def __init__(self, matchers: Optional[Iterable[DiagnosticMatcher]] = None) -> None:
        self._matchers: List[DiagnosticMatcher] = list(
            DEFAULT_MATCHERS if matchers is None else matchers
        )

    @property
    def matchers(self) -> List[DiagnosticMatcher]:
        return list(self._matchers)

    def register(self, matcher: DiagnosticMatcher) -> None:
        """Append *matcher* at the lowest priority."""
        self._matchers.append(matcher)

    def parse(self, raw_text: str) -> List[Diagnostic]:
        diagnostics: List[Diagnostic] = []
        for raw_line in raw_text.splitlines():
            line = raw_line.strip()
            if not line:
                continue
            diagnostic = self.parse_line(line)
            if diagnostic is not None:
                diagnostics.append(diagnostic)
        logger.debug("Parsed %d diagnostics", len(diagnostics))
        return diagnostics

    def parse_line(self, line: str) -> Optional[Diagnostic]:
        for matcher in self._matchers:
            diagnostic = matcher.match(line)
            if diagnostic is not None:
                return diagnostic
        return None


def parse_diagnostics(raw_text: str) -> List[Diagnostic]:
    """Parse *raw_text* with the default matcher chain."""
    return DiagnosticParser().parse(raw_text)
