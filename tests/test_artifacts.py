"""Tests for the SQLite-backed artifact and cache store."""

import asyncio
from datetime import timedelta

import aiosqlite
import pytest
import pytest_asyncio

from conveyor.artifacts import ArtifactStore, artifact_key
from conveyor.errors import ArtifactExistsError, ArtifactNotFound
from conveyor.models import ArtifactKind, utcnow


@pytest_asyncio.fixture
async def db(tmp_path):
    """Create an in-memory-like SQLite DB for testing."""
    db_path = tmp_path / "test.db"
    conn = await aiosqlite.connect(str(db_path))
    conn.row_factory = aiosqlite.Row
    yield conn
    await conn.close()


@pytest_asyncio.fixture
async def store(db):
    s = ArtifactStore(db)
    await s.initialize()
    return s


# ── Artifacts ────────────────────────────────────────────────────────────────


class TestArtifacts:
    @pytest.mark.asyncio
    async def test_put_and_get(self, store):
        key = artifact_key("pl-1", "build", "archive")
        meta = await store.put(key, b"payload", pipeline_id="pl-1", job_name="build")
        assert key == "pl-1/build/archive"
        assert meta.size == 7
        assert meta.name == "archive"
        assert meta.expires_at is None
        assert await store.get(key) == b"payload"
        assert await store.exists(key)

    @pytest.mark.asyncio
    async def test_missing_key(self, store):
        with pytest.raises(ArtifactNotFound):
            await store.get("pl-1/build/archive")
        assert not await store.exists("pl-1/build/archive")

    @pytest.mark.asyncio
    async def test_not_found_is_a_key_error(self, store):
        with pytest.raises(KeyError):
            await store.get("nope")

    @pytest.mark.asyncio
    async def test_artifacts_are_immutable(self, store):
        await store.put("pl-1/build/archive", b"first")
        with pytest.raises(ArtifactExistsError):
            await store.put("pl-1/build/archive", b"second")
        assert await store.get("pl-1/build/archive") == b"first"

    @pytest.mark.asyncio
    async def test_concurrent_puts_keep_one_artifact(self, store):
        results = await asyncio.gather(
            store.put("pl-1/build/archive", b"a"),
            store.put("pl-1/build/archive", b"b"),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], ArtifactExistsError)
        assert await store.get("pl-1/build/archive") in (b"a", b"b")

    @pytest.mark.asyncio
    async def test_expired_artifact_reads_as_missing(self, store):
        await store.put("pl-1/build/archive", b"old", timedelta(seconds=0))
        with pytest.raises(ArtifactNotFound):
            await store.get("pl-1/build/archive")
        with pytest.raises(ArtifactNotFound):
            await store.get_metadata("pl-1/build/archive")

    @pytest.mark.asyncio
    async def test_expired_key_can_be_rewritten(self, store):
        await store.put("pl-1/build/archive", b"old", timedelta(seconds=0))
        await store.put("pl-1/build/archive", b"new")
        assert await store.get("pl-1/build/archive") == b"new"

    @pytest.mark.asyncio
    async def test_invalidate_expired(self, store):
        await store.put("pl-1/a/archive", b"a", timedelta(hours=1))
        await store.put("pl-1/b/archive", b"b", timedelta(days=7))
        await store.put("pl-1/c/archive", b"c")

        removed = await store.invalidate_expired(utcnow() + timedelta(hours=2))
        assert removed == 1
        assert await store.exists("pl-1/b/archive")
        assert await store.exists("pl-1/c/archive")
        with pytest.raises(ArtifactNotFound):
            await store.get("pl-1/a/archive")

    @pytest.mark.asyncio
    async def test_list_artifacts(self, store):
        await store.put("pl-1/build/archive", b"x", pipeline_id="pl-1", job_name="build")
        await store.put(
            "pl-1/build/trace", b"log", pipeline_id="pl-1", job_name="build", kind=ArtifactKind.TRACE
        )
        await store.put("pl-1/test/archive", b"y", pipeline_id="pl-1", job_name="test")
        await store.put("pl-2/build/archive", b"z", pipeline_id="pl-2", job_name="build")
        await store.put(
            "pl-1/old/archive", b"gone", timedelta(seconds=0), pipeline_id="pl-1", job_name="old"
        )

        all_keys = [a.key for a in await store.list_artifacts("pl-1")]
        assert sorted(all_keys) == ["pl-1/build/archive", "pl-1/build/trace", "pl-1/test/archive"]

        build = await store.list_artifacts("pl-1", job_name="build")
        assert {a.kind for a in build} == {ArtifactKind.GENERIC, ArtifactKind.TRACE}

    @pytest.mark.asyncio
    async def test_metadata_digest(self, store):
        meta = await store.put("k", b"abc")
        assert meta.sha256 == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        assert (await store.get_metadata("k")).sha256 == meta.sha256


# ── Caches ───────────────────────────────────────────────────────────────────


class TestCache:
    @pytest.mark.asyncio
    async def test_empty_cache(self, store):
        assert await store.get_cache("deps") == {}

    @pytest.mark.asyncio
    async def test_later_write_layers_on_earlier(self, store):
        await store.put_cache("deps", {"a.txt": b"1", "b.txt": b"1"})
        await store.put_cache("deps", {"b.txt": b"2", "c.txt": b"2"})
        assert await store.get_cache("deps") == {"a.txt": b"1", "b.txt": b"2", "c.txt": b"2"}

    @pytest.mark.asyncio
    async def test_reset_drops_previous_contents(self, store):
        await store.put_cache("deps", {"a.txt": b"1"})
        await store.put_cache("deps", {"b.txt": b"2"}, reset=True)
        assert await store.get_cache("deps") == {"b.txt": b"2"}

    @pytest.mark.asyncio
    async def test_keys_are_isolated(self, store):
        await store.put_cache("main", {"a": b"1"})
        await store.put_cache("feature", {"a": b"2"})
        assert await store.get_cache("main") == {"a": b"1"}

    @pytest.mark.asyncio
    async def test_identical_writes_are_idempotent(self, store):
        files = {"node_modules/x.js": b"x", "node_modules/y.js": b"y"}
        await store.put_cache("deps", files)
        once = await store.cache_digest("deps")
        await store.put_cache("deps", files)
        assert await store.cache_digest("deps") == once

    @pytest.mark.asyncio
    async def test_disjoint_writes_commute(self, store):
        left = {"a": b"1"}
        right = {"b": b"2"}

        await store.put_cache("one", left)
        await store.put_cache("one", right)
        await store.put_cache("two", right)
        await store.put_cache("two", left)

        assert await store.cache_digest("one") == await store.cache_digest("two")

    @pytest.mark.asyncio
    async def test_concurrent_writes_to_one_key(self, store):
        await asyncio.gather(
            *(store.put_cache("deps", {f"f{i}": bytes([i])}) for i in range(10))
        )
        assert len(await store.get_cache("deps")) == 10

    @pytest.mark.asyncio
    async def test_clear_cache(self, store):
        await store.put_cache("deps", {"a": b"1"})
        await store.clear_cache("deps")
        assert await store.get_cache("deps") == {}
        assert await store.cache_digest("deps") == await store.cache_digest("never-written")
