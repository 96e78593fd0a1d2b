"""Tests for the row store backends."""

import asyncio
import json

import httpx
import pytest

from scanmatch.config import Settings
from scanmatch.services.errors import PersistenceError
from scanmatch.services.store import (
    InMemoryRowStore,
    PostgrestRowStore,
    build_store,
    default_unique_keys,
)


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def store(settings):
    return InMemoryRowStore(unique_keys=default_unique_keys(settings))


class TestInMemoryRowStore:
    """Dictionary-backed store semantics."""

    def test_upsert_merges_on_conflict_key(self, store):
        async def scenario():
            first = await store.upsert("scan_items", [{"session_id": "s1", "text": "A", "matched": False}],
                                       on_conflict="session_id,text")
            second = await store.upsert("scan_items", [{"session_id": "s1", "text": "A", "matched": True}],
                                        on_conflict="session_id,text")
            return first, second

        first, second = asyncio.run(scenario())
        rows = store.rows("scan_items")
        assert len(rows) == 1
        assert rows[0]["matched"] is True
        assert first[0]["id"] == second[0]["id"]
        assert "created_at" in rows[0]

    def test_same_text_in_other_session_is_separate(self, store):
        async def scenario():
            await store.upsert("scan_items", [{"session_id": "s1", "text": "A"}], on_conflict="session_id,text")
            await store.upsert("scan_items", [{"session_id": "s2", "text": "A"}], on_conflict="session_id,text")

        asyncio.run(scenario())
        assert len(store.rows("scan_items")) == 2

    def test_unique_violation_on_insert(self, store):
        async def scenario():
            await store.insert("ocr_results", {"text": "A"})
            await store.insert("ocr_results", {"text": "A"})

        with pytest.raises(PersistenceError) as exc:
            asyncio.run(scenario())
        assert "unique" in exc.value.message

    def test_none_filter_means_is_null(self, store):
        async def scenario():
            await store.insert("inventory", {"barcode": "2M1", "disposed_at": "2026-01-01T00:00:00+00:00"})
            await store.insert("inventory", {"barcode": "2M1", "disposed_at": None})
            return await store.select("inventory", filters={"barcode": "2M1", "disposed_at": None})

        rows = asyncio.run(scenario())
        assert len(rows) == 1
        assert rows[0]["disposed_at"] is None

    def test_select_columns_and_order(self, store):
        async def scenario():
            await store.insert("ocr_results", {"text": "B", "confidence": 1})
            await store.insert("ocr_results", {"text": "A", "confidence": 2})
            return await store.select("ocr_results", columns="text", order_by="text", descending=True)

        assert asyncio.run(scenario()) == [{"text": "B"}, {"text": "A"}]

    def test_update_and_delete(self, store):
        async def scenario():
            row = await store.insert("inventory", {"barcode": "2M1", "disposed_at": None})
            updated = await store.update("inventory", {"disposed_at": "now"}, filters={"id": row["id"]})
            removed = await store.delete("inventory")
            return updated, removed

        updated, removed = asyncio.run(scenario())
        assert updated[0]["disposed_at"] == "now"
        assert removed == 1
        assert store.rows("inventory") == []

    def test_fail_next(self, store):
        store.fail_next(1, "timeout", after=1)

        async def scenario():
            await store.count("ocr_results")
            with pytest.raises(PersistenceError) as exc:
                await store.count("ocr_results")
            assert exc.value.detail == "timeout"
            return await store.count("ocr_results")

        assert asyncio.run(scenario()) == 0


class TestPostgrestRowStore:
    """Wire format against a mocked PostgREST endpoint."""

    def make_store(self, handler):
        return PostgrestRowStore(
            "http://db.local/rest/v1",
            api_key="secret",
            transport=httpx.MockTransport(handler),
        )

    def test_select_builds_filters(self):
        seen = {}

        def handler(request):
            seen["request"] = request
            return httpx.Response(200, json=[{"text": "2M1"}])

        async def scenario():
            store = self.make_store(handler)
            rows = await store.select(
                "inventory", columns="text", filters={"barcode": "2M1", "disposed_at": None},
                order_by="received_at", descending=True,
            )
            await store.aclose()
            return rows

        rows = asyncio.run(scenario())
        request = seen["request"]
        assert rows == [{"text": "2M1"}]
        assert request.method == "GET"
        assert request.url.path == "/rest/v1/inventory"
        assert request.url.params["select"] == "text"
        assert request.url.params["barcode"] == "eq.2M1"
        assert request.url.params["disposed_at"] == "is.null"
        assert request.url.params["order"] == "received_at.desc"
        assert request.headers["apikey"] == "secret"
        assert request.headers["Authorization"] == "Bearer secret"

    def test_upsert_merge_duplicates(self):
        seen = {}

        def handler(request):
            seen["request"] = request
            body = json.loads(request.content)
            return httpx.Response(201, json=body)

        async def scenario():
            store = self.make_store(handler)
            rows = await store.upsert("scan_items", [{"session_id": "s1", "text": "A", "matched": True}],
                                      on_conflict="session_id,text")
            await store.aclose()
            return rows

        rows = asyncio.run(scenario())
        request = seen["request"]
        assert request.method == "POST"
        assert request.url.params["on_conflict"] == "session_id,text"
        assert "resolution=merge-duplicates" in request.headers["Prefer"]
        assert rows == [{"session_id": "s1", "text": "A", "matched": True}]

    def test_unfiltered_delete_targets_all_ids(self):
        seen = {}

        def handler(request):
            seen["request"] = request
            return httpx.Response(200, json=[{"id": 1}, {"id": 2}])

        async def scenario():
            store = self.make_store(handler)
            removed = await store.delete("ocr_results")
            await store.aclose()
            return removed

        assert asyncio.run(scenario()) == 2
        assert seen["request"].method == "DELETE"
        assert seen["request"].url.params["id"] == "gt.0"

    def test_error_body_becomes_persistence_error(self):
        def handler(request):
            return httpx.Response(409, json={
                "code": "23505",
                "message": "duplicate key value violates unique constraint",
                "details": "Key (text)=(A) already exists.",
                "hint": None,
            })

        async def scenario():
            store = self.make_store(handler)
            try:
                await store.insert("ocr_results", {"text": "A"})
            finally:
                await store.aclose()

        with pytest.raises(PersistenceError) as exc:
            asyncio.run(scenario())
        assert exc.value.message == "duplicate key value violates unique constraint"
        assert exc.value.detail == "Key (text)=(A) already exists."

    def test_transport_error_becomes_persistence_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async def scenario():
            store = self.make_store(handler)
            try:
                await store.select("ocr_results")
            finally:
                await store.aclose()

        with pytest.raises(PersistenceError):
            asyncio.run(scenario())

    def test_count_reads_content_range(self):
        def handler(request):
            assert request.headers["Prefer"] == "count=exact"
            return httpx.Response(206, json=[{"id": 1}], headers={"Content-Range": "0-0/42"})

        async def scenario():
            store = self.make_store(handler)
            total = await store.count("ocr_results")
            await store.aclose()
            return total

        assert asyncio.run(scenario()) == 42


class TestBuildStore:
    def test_memory_default(self, settings):
        assert isinstance(build_store(settings), InMemoryRowStore)

    def test_postgrest_requires_url(self):
        with pytest.raises(ValueError):
            build_store(Settings(_env_file=None, store_backend="postgrest"))

    def test_postgrest_backend(self):
        store = build_store(Settings(_env_file=None, store_backend="postgrest", postgrest_url="http://db.local"))
        assert isinstance(store, PostgrestRowStore)
        asyncio.run(store.aclose())
