"""
Tests for the record store implementations

Covers the in-memory store's filtering, ordering and batch semantics, and the
REST store's request shape and error handling against httpx.MockTransport.
"""

import json

import httpx
import pytest
import pytest_asyncio

from loan_backoffice.config import BackofficeConfig
from loan_backoffice.errors import UpstreamStoreError, ValidationError
from loan_backoffice.storage import (
    Filter, InMemoryRecordStore, RestRecordStore, create_record_store, render_filters
)


class TestInMemoryRecordStore:
    """Test InMemoryRecordStore functionality"""

    @pytest_asyncio.fixture
    async def store(self):
        store = InMemoryRecordStore()
        await store.insert("installments", [
            {"id": "a", "loan_id": "L1", "installment_number": 2, "amount_due": "50.00"},
            {"id": "b", "loan_id": "L1", "installment_number": 1, "amount_due": "100.00"},
            {"id": "c", "loan_id": "L2", "installment_number": 10, "amount_due": "7.50"},
        ])
        return store

    @pytest.mark.asyncio
    async def test_insert_assigns_id_and_timestamps(self):
        store = InMemoryRecordStore()
        rows = await store.insert("loans", {"status": "running"})

        assert len(rows) == 1
        assert rows[0]["id"]
        assert rows[0]["created_at"]
        assert rows[0]["updated_at"]

    @pytest.mark.asyncio
    async def test_insert_without_returning(self):
        store = InMemoryRecordStore()
        assert await store.insert("loans", {"status": "running"}, returning=False) == []
        assert await store.count("loans") == 1

    @pytest.mark.asyncio
    async def test_batch_insert_is_all_or_nothing(self, store):
        with pytest.raises(UpstreamStoreError):
            await store.insert("installments", [
                {"id": "d", "loan_id": "L3"},
                {"id": "a", "loan_id": "L3"},
            ])
        assert await store.count("installments", {"loan_id": "L3"}) == 0

    @pytest.mark.asyncio
    async def test_equality_filter_and_order(self, store):
        rows = await store.select("installments", {"loan_id": "L1"}, order="installment_number.asc")
        assert [r["id"] for r in rows] == ["b", "a"]

    @pytest.mark.asyncio
    async def test_numeric_ordering(self, store):
        """Numbers order numerically, not lexically"""
        rows = await store.select("installments", order="installment_number.desc")
        assert [r["installment_number"] for r in rows] == [10, 2, 1]

    @pytest.mark.asyncio
    async def test_operator_filters(self, store):
        rows = await store.select("installments", {"amount_due": Filter("gt", "20")})
        assert {r["id"] for r in rows} == {"a", "b"}

        rows = await store.select("installments", {"id": Filter("in", ["a", "c"])})
        assert {r["id"] for r in rows} == {"a", "c"}

        rows = await store.select("installments", {"loan_id": Filter("neq", "L1")})
        assert [r["id"] for r in rows] == ["c"]

    @pytest.mark.asyncio
    async def test_decimal_equality(self, store):
        """Stored "100.00" matches a filter value of 100"""
        rows = await store.select("installments", {"amount_due": 100})
        assert [r["id"] for r in rows] == ["b"]

    @pytest.mark.asyncio
    async def test_limit_and_offset(self, store):
        rows = await store.select("installments", order="installment_number.asc", limit=1, offset=1)
        assert [r["id"] for r in rows] == ["a"]

    @pytest.mark.asyncio
    async def test_update_returns_affected_rows(self, store):
        rows = await store.update("installments", {"loan_id": "L1"}, {"payment_verified": True})
        assert {r["id"] for r in rows} == {"a", "b"}
        assert all(r["payment_verified"] is True for r in rows)

        untouched = await store.get("installments", "c")
        assert "payment_verified" not in untouched

    @pytest.mark.asyncio
    async def test_conditional_update_misses(self, store):
        """An update whose filter no longer matches affects nothing"""
        rows = await store.update("installments", {"id": "a", "amount_due": "999"}, {"amount_due": "0"})
        assert rows == []
        assert (await store.get("installments", "a"))["amount_due"] == "50.00"

    @pytest.mark.asyncio
    async def test_delete_returns_deleted_rows(self, store):
        deleted = await store.delete("installments", {"loan_id": "L1"})
        assert {r["id"] for r in deleted} == {"a", "b"}
        assert await store.count("installments") == 1

    @pytest.mark.asyncio
    async def test_unfiltered_mutation_refused(self, store):
        with pytest.raises(ValidationError):
            await store.update("installments", {}, {"amount_due": "0"})
        with pytest.raises(ValidationError):
            await store.delete("installments", {})

    @pytest.mark.asyncio
    async def test_returned_rows_are_copies(self, store):
        rows = await store.select("installments", {"id": "a"})
        rows[0]["amount_due"] = "0.00"
        assert (await store.get("installments", "a"))["amount_due"] == "50.00"


class TestRenderFilters:
    """Test PostgREST filter rendering"""

    def test_render(self):
        params = render_filters({
            "loan_id": "L1",
            "payment_confirmed": False,
            "amount_due": Filter("gte", "10.00"),
            "id": Filter("in", ["a", "b"]),
            "settlement_date": Filter("is", None),
        })
        assert params == [
            ("loan_id", "eq.L1"),
            ("payment_confirmed", "eq.false"),
            ("amount_due", "gte.10.00"),
            ("id", "in.(a,b)"),
            ("settlement_date", "is.null"),
        ]

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValidationError):
            Filter("between", (1, 2))


class TestRestRecordStore:
    """Test RestRecordStore against a mocked HTTP transport"""

    def make_store(self, handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return RestRecordStore("https://store.example.com/rest/v1/", api_key="secret", client=client)

    @pytest.mark.asyncio
    async def test_select_request_shape(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(200, json=[{"id": "L1", "status": "running"}])

        store = self.make_store(handler)
        rows = await store.select("loans", {"status": "running"}, order="created_at.desc", limit=5)

        request = seen["request"]
        assert rows == [{"id": "L1", "status": "running"}]
        assert request.method == "GET"
        assert request.url.path == "/rest/v1/loans"
        assert request.url.params["status"] == "eq.running"
        assert request.url.params["order"] == "created_at.desc"
        assert request.url.params["limit"] == "5"
        assert request.headers["apikey"] == "secret"
        assert request.headers["authorization"] == "Bearer secret"
        await store.close()

    @pytest.mark.asyncio
    async def test_update_sends_patch_with_representation(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=[{"id": "L1", "status": "completed"}])

        store = self.make_store(handler)
        rows = await store.update("loans", {"id": "L1", "status": "running"}, {"status": "completed"})

        request = seen["request"]
        assert rows[0]["status"] == "completed"
        assert request.method == "PATCH"
        assert request.headers["prefer"] == "return=representation"
        assert request.url.params["id"] == "eq.L1"
        assert request.url.params["status"] == "eq.running"
        assert seen["body"]["status"] == "completed"
        assert "updated_at" in seen["body"]

    @pytest.mark.asyncio
    async def test_insert_posts_batch(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            seen["prefer"] = request.headers["prefer"]
            return httpx.Response(201, json=seen["body"])

        store = self.make_store(handler)
        rows = await store.insert("installments", [{"installment_number": 1}, {"installment_number": 2}])

        assert seen["body"] == [{"installment_number": 1}, {"installment_number": 2}]
        assert seen["prefer"] == "return=representation"
        assert len(rows) == 2

    @pytest.mark.asyncio
    async def test_minimal_insert_with_empty_body(self):
        store = self.make_store(lambda request: httpx.Response(201))
        assert await store.insert("status_change_logs", {"id": "e1"}, returning=False) == []

    @pytest.mark.asyncio
    async def test_error_status_raises_upstream_error(self):
        store = self.make_store(lambda request: httpx.Response(500, text="boom"))

        with pytest.raises(UpstreamStoreError) as exc_info:
            await store.delete("installments", {"loan_id": "L1"})

        assert exc_info.value.step == "delete installments"
        assert exc_info.value.details["status_code"] == 500

    @pytest.mark.asyncio
    async def test_transport_error_raises_upstream_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        store = self.make_store(handler)
        with pytest.raises(UpstreamStoreError) as exc_info:
            await store.select("loans")
        assert exc_info.value.step == "get loans"


class TestCreateRecordStore:
    """Test the store factory"""

    def test_in_memory_without_url(self):
        assert isinstance(create_record_store(BackofficeConfig(record_store_url="")), InMemoryRecordStore)

    def test_rest_with_url(self):
        store = create_record_store(BackofficeConfig(
            record_store_url="https://store.example.com/rest/v1", record_store_api_key="k"
        ))
        assert isinstance(store, RestRecordStore)
        assert store.base_url == "https://store.example.com/rest/v1"
