"""
CouchDB document engine implementation.

Talks to CouchDB's HTTP API with httpx. A single database holds every
logical entity type; DAOs scope queries with the ``entityType`` field.

Invariants:
    - HTTP 409 maps to ConflictError, 404 to DocumentNotFoundError
    - Transport failures surface as EngineConnectionError
    - Credentials are never logged

How to change safely:
    - Keep response parsing tolerant of extra fields in CouchDB replies
    - Test against CouchDB 3.x before changing request shapes
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from urllib.parse import quote
import logging

import httpx

from .base import (
    BulkResult,
    ConflictError,
    DocumentNotFoundError,
    EngineConnectionError,
    EngineError,
    InvalidDocumentError,
)

if TYPE_CHECKING:
    from ..config import CouchDBConfig

logger = logging.getLogger(__name__)

FIND_PAGE_SIZE = 1000


class CouchDBEngine:
    """CouchDB implementation of DocumentEngine.

    Attributes:
        config: CouchDB configuration

    Example:
        >>> engine = CouchDBEngine(CouchDBConfig(url="http://localhost:5984"))
        >>> await engine.connect()
        >>> rev = await engine.put({"_id": "order1", "entityType": "order"})
        >>> await engine.close()
    """

    def __init__(
        self,
        config: "CouchDBConfig",
        transport: httpx.AsyncBaseTransport | None = None,
        page_size: int = FIND_PAGE_SIZE,
    ) -> None:
        """Initialize the CouchDB engine.

        Args:
            config: CouchDB configuration
            transport: Optional httpx transport (tests pass a MockTransport)
            page_size: Page size for paginated ``_find`` queries
        """
        self.config = config
        self._transport = transport
        self._page_size = page_size
        self._client: httpx.AsyncClient | None = None
        self._db_path = quote(config.database, safe="")

    @property
    def is_connected(self) -> bool:
        """Whether connected to CouchDB."""
        return self._client is not None

    async def connect(self) -> None:
        """Open the HTTP client and make sure the database exists.

        Raises:
            EngineConnectionError: If CouchDB is unreachable or the database
                is missing and may not be created
        """
        if self._client is not None:
            return

        auth = None
        if self.config.username is not None:
            auth = httpx.BasicAuth(self.config.username, self.config.password or "")

        client = httpx.AsyncClient(
            base_url=self.config.url,
            auth=auth,
            timeout=self.config.timeout_seconds,
            transport=self._transport,
        )
        self._client = client

        try:
            if self.config.create_database:
                response = await self._request("PUT", self._db_path)
                if response.status_code not in (201, 202, 412):
                    raise EngineConnectionError(
                        f"Could not create database {self.config.database}: "
                        f"HTTP {response.status_code}"
                    )
            else:
                response = await self._request("GET", self._db_path)
                if response.status_code != 200:
                    raise EngineConnectionError(
                        f"Database {self.config.database} is not available: "
                        f"HTTP {response.status_code}"
                    )
        except EngineConnectionError:
            self._client = None
            await client.aclose()
            raise

        logger.info(
            "Connected to CouchDB",
            extra={"url": self.config.url, "database": self.config.database},
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("CouchDB engine closed")

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if self._client is None:
            raise EngineConnectionError("Not connected")
        try:
            return await self._client.request(method, f"/{path}", **kwargs)
        except httpx.HTTPError as e:
            raise EngineConnectionError(f"CouchDB request failed: {e}") from e

    def _doc_path(self, doc_id: str) -> str:
        return f"{self._db_path}/{quote(doc_id, safe='')}"

    @staticmethod
    def _check(response: httpx.Response, subject: str) -> None:
        if response.status_code < 400:
            return
        try:
            body = response.json()
        except ValueError:
            body = {}
        reason = body.get("reason") or response.text
        if response.status_code == 404:
            raise DocumentNotFoundError(f"Document not found: {subject}")
        if response.status_code == 409:
            raise ConflictError(f"Document update conflict: {subject}")
        if response.status_code == 400:
            raise InvalidDocumentError(f"Document rejected: {subject}: {reason}")
        raise EngineError(f"CouchDB returned HTTP {response.status_code} for {subject}: {reason}")

    async def get(self, doc_id: str) -> dict[str, Any]:
        """Fetch the current revision of a document."""
        response = await self._request("GET", self._doc_path(doc_id))
        self._check(response, doc_id)
        return response.json()

    async def put(self, doc: dict[str, Any]) -> str:
        """Create or replace a document."""
        doc_id = doc.get("_id")
        if not doc_id:
            raise InvalidDocumentError("Document must have an _id")
        response = await self._request("PUT", self._doc_path(doc_id), json=doc)
        self._check(response, doc_id)
        return response.json()["rev"]

    async def remove(self, doc_id: str, rev: str) -> str:
        """Delete a document at the given revision."""
        response = await self._request("DELETE", self._doc_path(doc_id), params={"rev": rev})
        self._check(response, doc_id)
        return response.json()["rev"]

    async def bulk_docs(self, docs: list[dict[str, Any]]) -> list[BulkResult]:
        """Write many documents through ``_bulk_docs``."""
        response = await self._request("POST", f"{self._db_path}/_bulk_docs", json={"docs": docs})
        self._check(response, "_bulk_docs")
        return [BulkResult.from_dict(row) for row in response.json()]

    async def all_docs(self, keys: list[str] | None = None) -> list[dict[str, Any]]:
        """Fetch live documents through ``_all_docs``."""
        params = {"include_docs": "true"}
        if keys is not None:
            if not keys:
                return []
            response = await self._request(
                "POST", f"{self._db_path}/_all_docs", params=params, json={"keys": keys}
            )
        else:
            response = await self._request("GET", f"{self._db_path}/_all_docs", params=params)
        self._check(response, "_all_docs")

        docs = []
        for row in response.json().get("rows", []):
            if "error" in row or row.get("value", {}).get("deleted"):
                continue
            doc = row.get("doc")
            if doc is None or doc["_id"].startswith("_design/"):
                continue
            docs.append(doc)
        return docs

    async def find(self, selector: dict[str, Any]) -> list[dict[str, Any]]:
        """Run a Mango query, following bookmarks until exhausted."""
        docs: list[dict[str, Any]] = []
        bookmark: str | None = None
        while True:
            body: dict[str, Any] = {"selector": selector, "limit": self._page_size}
            if bookmark:
                body["bookmark"] = bookmark
            response = await self._request("POST", f"{self._db_path}/_find", json=body)
            self._check(response, "_find")
            data = response.json()
            page = data.get("docs", [])
            docs.extend(page)
            bookmark = data.get("bookmark")
            if len(page) < self._page_size or not bookmark:
                return docs

    async def create_index(self, fields: list[str], name: str | None = None) -> None:
        """Create a Mango JSON index."""
        body: dict[str, Any] = {"index": {"fields": fields}, "type": "json"}
        if name:
            body["name"] = name
        response = await self._request("POST", f"{self._db_path}/_index", json=body)
        self._check(response, "_index")
        logger.info(
            "CouchDB index ensured",
            extra={"fields": fields, "result": response.json().get("result")},
        )
