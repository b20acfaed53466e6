"""SQLite-backed persistent cache for analysis, disassembly and layout results.

Every record is addressed by ``(kind, subject)`` and carries the fingerprint
of its subject at store time.  A record is only served while that stored
fingerprint equals the subject's current one; any mismatch is a miss.

Kinds:
- ``ast``: serialized symbol-reference sets, subject = source file path.
- ``asm``: serialized address -> source-line maps, subject = object file path.
- ``layout``: serialized coordinates, subject = graph-content hash.

The backing file is single-process: ``open()`` takes an exclusive advisory
lock on ``<db>.lock`` and fails with :class:`CacheLockedError` if another
process holds it.
"""

from __future__ import annotations

import fcntl
import logging
import os
import sqlite3
from dataclasses import dataclass, replace
from pathlib import Path
from typing import IO, Optional, Union

from .errors import CacheLockedError, CacheStorageError, CacheUnavailableError

logger = logging.getLogger(__name__)

KIND_AST = "ast"
KIND_ASM = "asm"
KIND_LAYOUT = "layout"
RECORD_KINDS = (KIND_AST, KIND_ASM, KIND_LAYOUT)

# Kinds whose subject is a file on disk and must be re-stat'ed on lookup.
FILE_KINDS = (KIND_AST, KIND_ASM)

_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class Fingerprint:
    subject: str
    mtime_ns: int
    flags_hash: Optional[str] = None

    @classmethod
    def of_path(
        cls,
        path: Union[str, Path],
        flags_hash: Optional[str] = None,
    ) -> Optional["Fingerprint"]:
        """Fingerprint the file at *path*, or ``None`` if it cannot be stat'ed."""
        resolved = str(Path(path).resolve())
        try:
            mtime_ns = os.stat(resolved).st_mtime_ns
        except OSError:
            return None
        return cls(subject=resolved, mtime_ns=mtime_ns, flags_hash=flags_hash)

    def refreshed(self) -> Optional["Fingerprint"]:
        """Re-stat the subject, keeping the flags hash."""
        current = Fingerprint.of_path(self.subject, self.flags_hash)
        if current is None:
            return None
        return replace(self, mtime_ns=current.mtime_ns)


class AnalysisCache:
    """Fingerprinted key/value store (one record per subject per kind).

    Usage::

        with AnalysisCache(build_dir / ".relay-cache.db") as cache:
            fp = Fingerprint.of_path("src/main.cpp", flags_hash)
            if cache.has("ast", fp):
                payload = cache.load("ast", fp.subject, fp)
    """

    def __init__(self, db_path: Union[str, Path]) -> None:
        self.db_path = Path(db_path)
        self.lock_path = self.db_path.with_name(self.db_path.name + ".lock")
        self._conn: Optional[sqlite3.Connection] = None
        self._lock_file: Optional[IO[str]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> "AnalysisCache":
        if self._conn is not None:
            return self
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._lock_file = open(self.lock_path, "w", encoding="utf-8")
        except OSError as exc:
            raise CacheUnavailableError(
                f"Cannot create cache at {self.db_path}: {exc}",
                details={"path": str(self.db_path)},
            ) from exc

        try:
            fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            self._lock_file.close()
            self._lock_file = None
            raise CacheLockedError(str(self.db_path)) from exc

        try:
            self._conn = sqlite3.connect(str(self.db_path))
            self._conn.row_factory = sqlite3.Row
            self._init_schema()
        except sqlite3.Error as exc:
            self._release()
            raise CacheUnavailableError(
                f"Cannot open cache database {self.db_path}: {exc}",
                details={"path": str(self.db_path)},
            ) from exc

        logger.debug("Opened analysis cache %s", self.db_path)
        return self

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.commit()
            finally:
                self._release()
            logger.debug("Closed analysis cache %s", self.db_path)

    def _release(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        if self._lock_file is not None:
            try:
                fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_UN)
            finally:
                self._lock_file.close()
                self._lock_file = None

    def __enter__(self) -> "AnalysisCache":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None and self._conn is not None:
            self._conn.rollback()
        self.close()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_schema(self) -> None:
        conn = self._require_conn()
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS cache_meta (
                key   TEXT PRIMARY KEY,
                value TEXT
            );
            CREATE TABLE IF NOT EXISTS records (
                kind       TEXT NOT NULL,
                subject    TEXT NOT NULL,
                mtime_ns   INTEGER NOT NULL,
                flags_hash TEXT,
                payload    BLOB NOT NULL,
                updated_at INTEGER DEFAULT (strftime('%s','now')),
                PRIMARY KEY (kind, subject)
            );
            """
        )
        row = conn.execute(
            "SELECT value FROM cache_meta WHERE key = 'schema_version'"
        ).fetchone()
        if row is None:
            conn.execute(
                "INSERT INTO cache_meta (key, value) VALUES ('schema_version', ?)",
                (str(_SCHEMA_VERSION),),
            )
        elif int(row["value"]) != _SCHEMA_VERSION:
            logger.warning(
                "Cache schema version mismatch: %s vs %s. Clearing cache.",
                row["value"], _SCHEMA_VERSION,
            )
            conn.execute("DELETE FROM records")
            conn.execute(
                "UPDATE cache_meta SET value = ? WHERE key = 'schema_version'",
                (str(_SCHEMA_VERSION),),
            )
        conn.commit()

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise CacheUnavailableError(f"Cache {self.db_path} is not open")
        return self._conn

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def _stored_row(self, kind: str, subject: str) -> Optional[sqlite3.Row]:
        _check_kind(kind)
        try:
            return self._require_conn().execute(
                "SELECT mtime_ns, flags_hash, payload FROM records WHERE kind = ? AND subject = ?",
                (kind, subject),
            ).fetchone()
        except sqlite3.Error as exc:
            raise CacheStorageError(f"Cache read failed: {exc}") from exc

    def _current(self, kind: str, fingerprint: Fingerprint) -> Optional[Fingerprint]:
        if kind in FILE_KINDS:
            return fingerprint.refreshed()
        return fingerprint

    def has(self, kind: str, fingerprint: Fingerprint) -> bool:
        """True only if a record exists and matches the subject's current fingerprint."""
        current = self._current(kind, fingerprint)
        if current is None:
            return False
        row = self._stored_row(kind, current.subject)
        if row is None:
            return False
        return row["mtime_ns"] == current.mtime_ns and row["flags_hash"] == current.flags_hash

    def load(
        self,
        kind: str,
        subject: Union[str, Path],
        fingerprint: Optional[Fingerprint] = None,
    ) -> Optional[bytes]:
        """Return the payload for *subject*, or ``None`` on a miss.

        Without *fingerprint*, file-backed subjects are re-fingerprinted
        with the stored flags hash.
        """
        key = _subject_key(kind, subject)
        row = self._stored_row(kind, key)
        if row is None:
            return None
        if fingerprint is None:
            if kind in FILE_KINDS:
                fingerprint = Fingerprint.of_path(key, row["flags_hash"])
            else:
                fingerprint = Fingerprint(key, row["mtime_ns"], row["flags_hash"])
        if fingerprint is None or not self.has(kind, fingerprint):
            return None
        return bytes(row["payload"])

    def store(
        self,
        kind: str,
        subject: Union[str, Path],
        fingerprint: Fingerprint,
        payload: bytes,
    ) -> None:
        """Overwrite the record for *subject* in a single transaction."""
        _check_kind(kind)
        key = _subject_key(kind, subject)
        conn = self._require_conn()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO records (kind, subject, mtime_ns, flags_hash, payload)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (kind, key, fingerprint.mtime_ns, fingerprint.flags_hash, sqlite3.Binary(payload)),
                )
        except sqlite3.Error as exc:
            raise CacheStorageError(
                f"Cache write failed for {kind}:{key}: {exc}",
                details={"kind": kind, "subject": key},
            ) from exc

    def invalidate(self, kind: str, subject: Union[str, Path]) -> None:
        _check_kind(kind)
        key = _subject_key(kind, subject)
        conn = self._require_conn()
        try:
            with conn:
                conn.execute("DELETE FROM records WHERE kind = ? AND subject = ?", (kind, key))
        except sqlite3.Error as exc:
            raise CacheStorageError(
                f"Cache delete failed for {kind}:{key}: {exc}",
                details={"kind": kind, "subject": key},
            ) from exc

    def clear(self, kind: Optional[str] = None) -> None:
        if kind is not None:
            _check_kind(kind)
        conn = self._require_conn()
        try:
            with conn:
                if kind is None:
                    conn.execute("DELETE FROM records")
                else:
                    conn.execute("DELETE FROM records WHERE kind = ?", (kind,))
        except sqlite3.Error as exc:
            raise CacheStorageError(f"Cache clear failed: {exc}") from exc

    def record_count(self, kind: Optional[str] = None) -> int:
        conn = self._require_conn()
        try:
            if kind is None:
                row = conn.execute("SELECT COUNT(*) FROM records").fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM records WHERE kind = ?", (kind,)).fetchone()
        except sqlite3.Error as exc:
            raise CacheStorageError(f"Cache read failed: {exc}") from exc
        return int(row[0])


def _check_kind(kind: str) -> None:
    if kind not in RECORD_KINDS:
        raise ValueError(f"Unknown cache record kind '{kind}'")


def _subject_key(kind: str, subject: Union[str, Path]) -> str:
    if kind in FILE_KINDS:
        return str(Path(subject).resolve())
    return str(subject)
