"""
Unit tests for the in-memory document engine.

Tests cover:
- Connection lifecycle
- Revision checks on put and remove
- Tombstones and re-creation
- Bulk writes with per-item results
- Queries and testing helpers
"""

import pytest

from gendao.engines.base import (
    ConflictError,
    DocumentEngine,
    DocumentNotFoundError,
    EngineConnectionError,
    EngineError,
)
from gendao.engines.memory import InMemoryDocumentEngine


class TestInMemoryDocumentEngine:
    """Tests for InMemoryDocumentEngine."""

    @pytest.fixture
    def engine(self):
        """Create a fresh engine."""
        return InMemoryDocumentEngine()

    def test_implements_protocol(self, engine):
        """The engine satisfies the DocumentEngine protocol."""
        assert isinstance(engine, DocumentEngine)

    @pytest.mark.asyncio
    async def test_requires_connection(self, engine):
        """Operations fail before connect."""
        with pytest.raises(EngineConnectionError):
            await engine.get("a")

        await engine.connect()
        assert engine.is_connected
        await engine.close()
        assert not engine.is_connected

    @pytest.mark.asyncio
    async def test_put_assigns_revisions(self, engine):
        """Each write bumps the revision generation."""
        await engine.connect()

        rev1 = await engine.put({"_id": "a", "n": 1})
        rev2 = await engine.put({"_id": "a", "_rev": rev1, "n": 2})

        assert rev1.startswith("1-")
        assert rev2.startswith("2-")
        doc = await engine.get("a")
        assert doc == {"_id": "a", "_rev": rev2, "n": 2}

    @pytest.mark.asyncio
    async def test_stale_revision_conflicts(self, engine):
        """A stale revision is rejected and the document is unchanged."""
        await engine.connect()
        rev1 = await engine.put({"_id": "a", "n": 1})
        await engine.put({"_id": "a", "_rev": rev1, "n": 2})

        with pytest.raises(ConflictError):
            await engine.put({"_id": "a", "_rev": rev1, "n": 3})

        assert (await engine.get("a"))["n"] == 2

    @pytest.mark.asyncio
    async def test_put_without_revision_on_live_document_conflicts(self, engine):
        """Replacing a live document requires its revision."""
        await engine.connect()
        await engine.put({"_id": "a"})

        with pytest.raises(ConflictError):
            await engine.put({"_id": "a"})

    @pytest.mark.asyncio
    async def test_put_with_revision_on_missing_document_conflicts(self, engine):
        """A revision for a document that never existed is a conflict."""
        await engine.connect()

        with pytest.raises(ConflictError):
            await engine.put({"_id": "a", "_rev": "1-abc"})

    @pytest.mark.asyncio
    async def test_remove_leaves_tombstone(self, engine):
        """Removed documents are gone but keep a tombstone revision."""
        await engine.connect()
        rev = await engine.put({"_id": "a"})

        tombstone = await engine.remove("a", rev)

        assert tombstone.startswith("2-")
        assert engine.is_deleted("a")
        assert engine.get_revision("a") == tombstone
        with pytest.raises(DocumentNotFoundError):
            await engine.get("a")

    @pytest.mark.asyncio
    async def test_remove_stale_revision_conflicts(self, engine):
        """Removing at a stale revision is rejected."""
        await engine.connect()
        rev1 = await engine.put({"_id": "a"})
        await engine.put({"_id": "a", "_rev": rev1})

        with pytest.raises(ConflictError):
            await engine.remove("a", rev1)

    @pytest.mark.asyncio
    async def test_recreate_over_tombstone(self, engine):
        """Writing without a revision over a tombstone re-creates the document."""
        await engine.connect()
        rev = await engine.put({"_id": "a", "n": 1})
        await engine.remove("a", rev)

        new_rev = await engine.put({"_id": "a", "n": 1})

        assert new_rev.startswith("3-")
        assert (await engine.get("a"))["n"] == 1

    @pytest.mark.asyncio
    async def test_bulk_docs_partial_failure(self, engine):
        """Bulk writes report each item independently."""
        await engine.connect()

        results = await engine.bulk_docs(
            [
                {"_id": "a"},
                {"_id": "b", "_rev": "1-stale"},
                {"_id": "_bad"},
                {"_id": "c"},
            ]
        )

        assert [r.ok for r in results] == [True, False, False, True]
        assert results[1].error == "conflict"
        assert results[2].error == "bad_request"
        assert engine.live_count() == 2

    @pytest.mark.asyncio
    async def test_all_docs_skips_missing_and_deleted(self, engine):
        """all_docs returns only live documents, in key order."""
        await engine.connect()
        await engine.put({"_id": "a"})
        rev = await engine.put({"_id": "b"})
        await engine.remove("b", rev)
        await engine.put({"_id": "c"})

        docs = await engine.all_docs(keys=["c", "b", "x", "a"])

        assert [doc["_id"] for doc in docs] == ["c", "a"]
        assert len(await engine.all_docs()) == 2

    @pytest.mark.asyncio
    async def test_find_equality(self, engine):
        """find matches every selector field."""
        await engine.connect()
        await engine.put({"_id": "a", "entityType": "order", "status": "open"})
        await engine.put({"_id": "b", "entityType": "order", "status": "paid"})
        await engine.put({"_id": "c", "entityType": "invoice", "status": "open"})

        docs = await engine.find({"entityType": "order", "status": "open"})

        assert [doc["_id"] for doc in docs] == ["a"]

    @pytest.mark.asyncio
    async def test_returned_documents_are_copies(self, engine):
        """Mutating a fetched document does not change the store."""
        await engine.connect()
        await engine.put({"_id": "a", "lines": [1]})

        doc = await engine.get("a")
        doc["lines"].append(2)

        assert (await engine.get("a"))["lines"] == [1]

    @pytest.mark.asyncio
    async def test_create_index(self, engine):
        """Index definitions are recorded."""
        await engine.connect()

        await engine.create_index(["entityType", "status"], name="order-status")

        assert engine.indexes == {"order-status": ["entityType", "status"]}

    @pytest.mark.asyncio
    async def test_inject_failure(self, engine):
        """An injected failure is raised once."""
        await engine.connect()
        engine.inject_failure()

        with pytest.raises(EngineError):
            await engine.put({"_id": "a"})

        await engine.put({"_id": "a"})
        assert engine.live_count() == 1
