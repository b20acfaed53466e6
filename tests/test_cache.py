"""Tests for the persistent analysis cache."""

import os
from pathlib import Path

import pytest

from relaygraph.cache import KIND_ASM, KIND_AST, KIND_LAYOUT, AnalysisCache, Fingerprint
from relaygraph.errors import CacheLockedError, CacheStorageError, CacheUnavailableError


@pytest.fixture
def cache(temp_dir: Path):
    store = AnalysisCache(temp_dir / "build" / ".relay-cache.db")
    store.open()
    yield store
    store.close()


@pytest.fixture
def source_file(temp_dir: Path) -> Path:
    path = temp_dir / "main.cpp"
    path.write_text("int main() { return 0; }\n", encoding="utf-8")
    return path


def _bump_mtime(path: Path) -> None:
    st = path.stat()
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 2_000_000_000))


class TestFingerprint:
    def test_missing_file_has_no_fingerprint(self, temp_dir: Path):
        assert Fingerprint.of_path(temp_dir / "absent.cpp") is None

    def test_fingerprint_tracks_mtime(self, source_file: Path):
        before = Fingerprint.of_path(source_file, "abc")
        _bump_mtime(source_file)
        after = before.refreshed()

        assert after.flags_hash == "abc"
        assert after.subject == before.subject
        assert after.mtime_ns != before.mtime_ns


class TestRecords:
    """Store / has / load semantics."""

    def test_round_trip(self, cache: AnalysisCache, source_file: Path):
        fp = Fingerprint.of_path(source_file, "flags1")
        cache.store(KIND_AST, source_file, fp, b'{"3:5": []}')

        assert cache.has(KIND_AST, fp)
        assert cache.load(KIND_AST, source_file, fp) == b'{"3:5": []}'
        assert cache.load(KIND_AST, source_file) == b'{"3:5": []}'

    def test_mtime_change_invalidates(self, cache: AnalysisCache, source_file: Path):
        """A touched file is a miss even though the record still exists."""
        fp = Fingerprint.of_path(source_file)
        cache.store(KIND_AST, source_file, fp, b"payload")

        _bump_mtime(source_file)

        assert not cache.has(KIND_AST, fp)
        assert cache.load(KIND_AST, source_file) is None
        assert cache.record_count(KIND_AST) == 1

    def test_flags_change_invalidates(self, cache: AnalysisCache, source_file: Path):
        cache.store(KIND_AST, source_file, Fingerprint.of_path(source_file, "old"), b"payload")

        assert not cache.has(KIND_AST, Fingerprint.of_path(source_file, "new"))
        assert cache.has(KIND_AST, Fingerprint.of_path(source_file, "old"))

    def test_deleted_subject_is_miss(self, cache: AnalysisCache, source_file: Path):
        fp = Fingerprint.of_path(source_file)
        cache.store(KIND_ASM, source_file, fp, b"[]")

        source_file.unlink()

        assert not cache.has(KIND_ASM, fp)

    def test_store_overwrites(self, cache: AnalysisCache, source_file: Path):
        fp = Fingerprint.of_path(source_file)
        cache.store(KIND_AST, source_file, fp, b"first")
        cache.store(KIND_AST, source_file, fp, b"second")

        assert cache.record_count(KIND_AST) == 1
        assert cache.load(KIND_AST, source_file, fp) == b"second"

    def test_kinds_are_independent(self, cache: AnalysisCache, source_file: Path):
        fp = Fingerprint.of_path(source_file)
        cache.store(KIND_AST, source_file, fp, b"ast")
        cache.store(KIND_ASM, source_file, fp, b"asm")

        assert cache.load(KIND_AST, source_file) == b"ast"
        assert cache.load(KIND_ASM, source_file) == b"asm"
        assert cache.record_count() == 2

    def test_layout_subject_is_not_a_file(self, cache: AnalysisCache):
        """Layout records are keyed by content hash and never re-stat'ed."""
        fp = Fingerprint("0123abcd", 0, "params")
        cache.store(KIND_LAYOUT, fp.subject, fp, b"{}")

        assert cache.has(KIND_LAYOUT, fp)
        assert not cache.has(KIND_LAYOUT, Fingerprint("0123abcd", 0, "other-params"))
        assert cache.load(KIND_LAYOUT, "0123abcd") == b"{}"

    def test_invalidate_and_clear(self, cache: AnalysisCache, source_file: Path):
        fp = Fingerprint.of_path(source_file)
        cache.store(KIND_AST, source_file, fp, b"a")
        cache.store(KIND_ASM, source_file, fp, b"b")
        cache.store(KIND_LAYOUT, "h", Fingerprint("h", 0), b"c")

        cache.invalidate(KIND_AST, source_file)
        assert cache.record_count(KIND_AST) == 0

        cache.clear(KIND_ASM)
        assert cache.record_count() == 1

        cache.clear()
        assert cache.record_count() == 0

    def test_maintenance_failures_are_storage_errors(self, cache: AnalysisCache, source_file: Path):
        """SQLite failures during delete and count surface as CacheStorageError."""
        cache._conn.execute("DROP TABLE records")

        with pytest.raises(CacheStorageError):
            cache.record_count()
        with pytest.raises(CacheStorageError):
            cache.record_count(KIND_AST)
        with pytest.raises(CacheStorageError):
            cache.clear()
        with pytest.raises(CacheStorageError):
            cache.clear(KIND_ASM)
        with pytest.raises(CacheStorageError):
            cache.invalidate(KIND_AST, source_file)

    def test_unknown_kind(self, cache: AnalysisCache):
        with pytest.raises(ValueError):
            cache.has("symbols", Fingerprint("x", 0))


class TestLifecycle:
    """Open/close, locking and persistence."""

    def test_context_manager_closes(self, temp_dir: Path):
        store = AnalysisCache(temp_dir / "c.db")
        with store:
            assert store.is_open
        assert not store.is_open

    def test_second_process_is_locked_out(self, temp_dir: Path):
        first = AnalysisCache(temp_dir / "c.db").open()
        try:
            with pytest.raises(CacheLockedError) as excinfo:
                AnalysisCache(temp_dir / "c.db").open()
            assert "locked" in str(excinfo.value)
            assert isinstance(excinfo.value, CacheUnavailableError)
        finally:
            first.close()

        second = AnalysisCache(temp_dir / "c.db").open()
        assert second.is_open
        second.close()

    def test_records_survive_reopen(self, temp_dir: Path, source_file: Path):
        fp = Fingerprint.of_path(source_file)
        with AnalysisCache(temp_dir / "c.db") as store:
            store.store(KIND_AST, source_file, fp, b"persisted")

        with AnalysisCache(temp_dir / "c.db") as store:
            assert store.load(KIND_AST, source_file, fp) == b"persisted"

    def test_use_before_open(self, temp_dir: Path):
        with pytest.raises(CacheUnavailableError):
            AnalysisCache(temp_dir / "c.db").record_count()
