"""Tests for builds/cache.py module.

Tests cache lookup, replacement and invalidation.
"""

import threading
from datetime import datetime, timezone

from monodeploy.builds.cache import SqlCacheStore
from monodeploy.db import create_all_tables, get_engine, get_session_factory
from monodeploy.types import BuildResult


def _result(target_id: str, reference: str, success: bool = True) -> BuildResult:
    return BuildResult(target_id, reference, datetime.now(timezone.utc), success)


class TestGetPut:
    """Tests for get and put."""

    def test_miss_returns_none(self, cache_store):
        """An empty store has no entries."""
        assert cache_store.get("//a:a", "sha256:x") is None

    def test_hit_after_put(self, cache_store):
        """A stored result is returned for the same fingerprint."""
        cache_store.put("//a:a", "sha256:x", _result("//a:a", "repo@sha256:1"))
        hit = cache_store.get("//a:a", "sha256:x")
        assert hit is not None
        assert hit.target_id == "//a:a"
        assert hit.reference == "repo@sha256:1"
        assert hit.success

    def test_fingerprint_mismatch_is_miss(self, cache_store):
        """A different fingerprint does not match."""
        cache_store.put("//a:a", "sha256:x", _result("//a:a", "repo@sha256:1"))
        assert cache_store.get("//a:a", "sha256:y") is None

    def test_put_replaces_previous_entry(self, cache_store):
        """Only the latest fingerprint is kept per target."""
        cache_store.put("//a:a", "sha256:x", _result("//a:a", "repo@sha256:1"))
        cache_store.put("//a:a", "sha256:y", _result("//a:a", "repo@sha256:2"))
        assert cache_store.get("//a:a", "sha256:x") is None
        assert cache_store.get("//a:a", "sha256:y").reference == "repo@sha256:2"
        assert len(cache_store.entries()) == 1

    def test_failed_result_is_miss(self, cache_store):
        """Unsuccessful results never satisfy a lookup."""
        cache_store.put(
            "//a:a", "sha256:x", _result("//a:a", "repo@sha256:1", success=False)
        )
        assert cache_store.get("//a:a", "sha256:x") is None

    def test_concurrent_puts(self, cache_store):
        """Puts from several threads all land."""

        def put(i: int) -> None:
            tid = f"//t:t{i}"
            cache_store.put(tid, f"sha256:{i}", _result(tid, f"ref{i}"))

        threads = [threading.Thread(target=put, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert len(cache_store.entries()) == 8


class TestMaintenance:
    """Tests for entries, invalidate and clear."""

    def test_entries_ordered(self, cache_store):
        """Entries come back ordered by target id."""
        cache_store.put("//b:b", "sha256:b", _result("//b:b", "rb"))
        cache_store.put("//a:a", "sha256:a", _result("//a:a", "ra"))
        assert [e.target_id for e in cache_store.entries()] == ["//a:a", "//b:b"]

    def test_invalidate(self, cache_store):
        """Invalidating removes exactly one target."""
        cache_store.put("//a:a", "sha256:a", _result("//a:a", "ra"))
        cache_store.put("//b:b", "sha256:b", _result("//b:b", "rb"))
        assert cache_store.invalidate("//a:a")
        assert not cache_store.invalidate("//a:a")
        assert cache_store.get("//a:a", "sha256:a") is None
        assert cache_store.get("//b:b", "sha256:b") is not None

    def test_clear(self, cache_store):
        """Clearing removes everything and reports the count."""
        cache_store.put("//a:a", "sha256:a", _result("//a:a", "ra"))
        cache_store.put("//b:b", "sha256:b", _result("//b:b", "rb"))
        assert cache_store.clear() == 2
        assert cache_store.entries() == []


class TestPersistence:
    """Tests for persistence across store instances."""

    def test_survives_new_store(self, tmp_path):
        """Entries written to a file database are seen by a later process."""
        db_url = f"sqlite:///{tmp_path / 'cache' / 'monodeploy.db'}"
        engine = get_engine(db_url)
        create_all_tables(engine)
        SqlCacheStore(get_session_factory(engine)).put(
            "//a:a", "sha256:a", _result("//a:a", "ra")
        )
        engine.dispose()

        engine = get_engine(db_url)
        store = SqlCacheStore(get_session_factory(engine))
        hit = store.get("//a:a", "sha256:a")
        assert hit is not None
        assert hit.reference == "ra"
