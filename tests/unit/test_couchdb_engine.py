"""
Unit tests for the CouchDB engine against a mocked HTTP transport.

Tests cover:
- Database creation on connect
- Status code to engine error mapping
- Request shapes for documents, bulk writes, queries and indexes
- Bookmark pagination of _find
"""

import json

import httpx
import pytest

from gendao.config import CouchDBConfig
from gendao.engines.base import (
    ConflictError,
    DocumentNotFoundError,
    EngineConnectionError,
    EngineError,
    InvalidDocumentError,
)
from gendao.engines.couchdb import CouchDBEngine


class FakeCouch:
    """Canned CouchDB responses keyed by (method, path)."""

    def __init__(self):
        self.requests = []
        self.routes = {("PUT", "/gendao"): [httpx.Response(201, json={"ok": True})]}

    def add(self, method, path, *responses):
        self.routes.setdefault((method, path), []).extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.raw_path.decode("ascii").split("?", 1)[0]
        queue = self.routes.get((request.method, path))
        if not queue:
            return httpx.Response(500, json={"error": "unexpected", "reason": path})
        return queue.pop(0) if len(queue) > 1 else queue[0]


def body_of(request: httpx.Request):
    return json.loads(request.content)


class TestCouchDBEngine:
    """Tests for CouchDBEngine."""

    @pytest.fixture
    def couch(self):
        return FakeCouch()

    @pytest.fixture
    def engine(self, couch):
        config = CouchDBConfig(url="http://couch.test:5984", username="admin", password="pw")
        return CouchDBEngine(config, transport=httpx.MockTransport(couch), page_size=2)

    @pytest.mark.asyncio
    async def test_connect_creates_database(self, engine, couch):
        """Connect issues PUT /<db> with basic auth."""
        await engine.connect()

        assert engine.is_connected
        request = couch.requests[0]
        assert request.method == "PUT"
        assert request.url.raw_path == b"/gendao"
        assert request.headers["authorization"].startswith("Basic ")
        await engine.close()
        assert not engine.is_connected

    @pytest.mark.asyncio
    async def test_connect_accepts_existing_database(self, couch):
        """412 (database exists) is not an error."""
        couch.routes[("PUT", "/gendao")] = [httpx.Response(412, json={"error": "file_exists"})]
        engine = CouchDBEngine(CouchDBConfig(), transport=httpx.MockTransport(couch))

        await engine.connect()

        assert engine.is_connected

    @pytest.mark.asyncio
    async def test_connect_without_create_requires_database(self, couch):
        """A missing database fails connect when creation is disabled."""
        couch.add("GET", "/gendao", httpx.Response(404, json={"error": "not_found"}))
        engine = CouchDBEngine(
            CouchDBConfig(create_database=False), transport=httpx.MockTransport(couch)
        )

        with pytest.raises(EngineConnectionError):
            await engine.connect()
        assert not engine.is_connected

    @pytest.mark.asyncio
    async def test_transport_failure_is_connection_error(self):
        """httpx transport errors surface as EngineConnectionError."""

        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        engine = CouchDBEngine(CouchDBConfig(), transport=httpx.MockTransport(refuse))

        with pytest.raises(EngineConnectionError):
            await engine.connect()

    @pytest.mark.asyncio
    async def test_operations_require_connection(self, engine):
        """Calls before connect fail."""
        with pytest.raises(EngineConnectionError):
            await engine.get("a")

    @pytest.mark.asyncio
    async def test_get(self, engine, couch):
        """get fetches /<db>/<id> with the id quoted."""
        couch.add(
            "GET",
            "/gendao/order%2F1",
            httpx.Response(200, json={"_id": "order/1", "_rev": "1-a"}),
        )
        await engine.connect()

        doc = await engine.get("order/1")

        assert doc["_rev"] == "1-a"
        assert couch.requests[-1].url.raw_path == b"/gendao/order%2F1"

    @pytest.mark.asyncio
    async def test_get_missing(self, engine, couch):
        """404 maps to DocumentNotFoundError."""
        couch.add("GET", "/gendao/a", httpx.Response(404, json={"error": "not_found", "reason": "deleted"}))
        await engine.connect()

        with pytest.raises(DocumentNotFoundError):
            await engine.get("a")

    @pytest.mark.asyncio
    async def test_put_returns_revision(self, engine, couch):
        """put sends the document and returns the new revision."""
        couch.add("PUT", "/gendao/a", httpx.Response(201, json={"ok": True, "id": "a", "rev": "2-b"}))
        await engine.connect()

        rev = await engine.put({"_id": "a", "_rev": "1-a", "n": 1})

        assert rev == "2-b"
        assert body_of(couch.requests[-1]) == {"_id": "a", "_rev": "1-a", "n": 1}

    @pytest.mark.asyncio
    async def test_put_conflict(self, engine, couch):
        """409 maps to ConflictError."""
        couch.add("PUT", "/gendao/a", httpx.Response(409, json={"error": "conflict"}))
        await engine.connect()

        with pytest.raises(ConflictError):
            await engine.put({"_id": "a", "_rev": "1-stale"})

    @pytest.mark.asyncio
    async def test_put_bad_request(self, engine, couch):
        """400 maps to InvalidDocumentError."""
        couch.add("PUT", "/gendao/_x", httpx.Response(400, json={"error": "bad_request", "reason": "reserved id"}))
        await engine.connect()

        with pytest.raises(InvalidDocumentError, match="reserved id"):
            await engine.put({"_id": "_x"})

    @pytest.mark.asyncio
    async def test_server_error(self, engine, couch):
        """Other failures map to EngineError."""
        couch.add("GET", "/gendao/a", httpx.Response(503, text="maintenance"))
        await engine.connect()

        with pytest.raises(EngineError, match="503"):
            await engine.get("a")

    @pytest.mark.asyncio
    async def test_remove_passes_revision(self, engine, couch):
        """remove sends the revision as a query parameter."""
        couch.add("DELETE", "/gendao/a", httpx.Response(200, json={"ok": True, "rev": "3-c"}))
        await engine.connect()

        tombstone = await engine.remove("a", "2-b")

        assert tombstone == "3-c"
        assert couch.requests[-1].url.params["rev"] == "2-b"

    @pytest.mark.asyncio
    async def test_bulk_docs(self, engine, couch):
        """bulk_docs returns one result per item."""
        couch.add(
            "POST",
            "/gendao/_bulk_docs",
            httpx.Response(
                201,
                json=[
                    {"ok": True, "id": "a", "rev": "1-a"},
                    {"id": "b", "error": "conflict", "reason": "Document update conflict."},
                ],
            ),
        )
        await engine.connect()

        results = await engine.bulk_docs([{"_id": "a"}, {"_id": "b", "_rev": "1-x"}])

        assert body_of(couch.requests[-1]) == {"docs": [{"_id": "a"}, {"_id": "b", "_rev": "1-x"}]}
        assert results[0].ok and results[0].rev == "1-a"
        assert not results[1].ok and results[1].error == "conflict"

    @pytest.mark.asyncio
    async def test_all_docs_with_keys(self, engine, couch):
        """Missing and deleted rows are skipped."""
        couch.add(
            "POST",
            "/gendao/_all_docs",
            httpx.Response(
                200,
                json={
                    "rows": [
                        {"id": "a", "key": "a", "value": {"rev": "1-a"}, "doc": {"_id": "a", "_rev": "1-a"}},
                        {"key": "x", "error": "not_found"},
                        {"id": "b", "key": "b", "value": {"rev": "2-b", "deleted": True}, "doc": None},
                    ]
                },
            ),
        )
        await engine.connect()

        docs = await engine.all_docs(keys=["a", "x", "b"])

        assert docs == [{"_id": "a", "_rev": "1-a"}]
        request = couch.requests[-1]
        assert request.url.params["include_docs"] == "true"
        assert body_of(request) == {"keys": ["a", "x", "b"]}

    @pytest.mark.asyncio
    async def test_all_docs_empty_keys(self, engine, couch):
        """No request is made for an empty key list."""
        await engine.connect()
        sent = len(couch.requests)

        assert await engine.all_docs(keys=[]) == []
        assert len(couch.requests) == sent

    @pytest.mark.asyncio
    async def test_find_follows_bookmarks(self, engine, couch):
        """find pages through results with bookmarks."""
        couch.add(
            "POST",
            "/gendao/_find",
            httpx.Response(200, json={"docs": [{"_id": "a"}, {"_id": "b"}], "bookmark": "bm1"}),
            httpx.Response(200, json={"docs": [{"_id": "c"}], "bookmark": "bm2"}),
        )
        await engine.connect()

        docs = await engine.find({"entityType": "order"})

        assert [doc["_id"] for doc in docs] == ["a", "b", "c"]
        first, second = couch.requests[-2:]
        assert body_of(first) == {"selector": {"entityType": "order"}, "limit": 2}
        assert body_of(second)["bookmark"] == "bm1"

    @pytest.mark.asyncio
    async def test_create_index(self, engine, couch):
        """create_index posts a JSON index definition."""
        couch.add("POST", "/gendao/_index", httpx.Response(200, json={"result": "created"}))
        await engine.connect()

        await engine.create_index(["entityType", "status"], name="order-status")

        assert body_of(couch.requests[-1]) == {
            "index": {"fields": ["entityType", "status"]},
            "type": "json",
            "name": "order-status",
        }
