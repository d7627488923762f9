"""
Unit tests for validating DAOs and the DAO factory.

Tests cover:
- pydantic validation before writes on both backends
- create_dao backend selection from configuration
"""

import os
import tempfile

import pydantic
import pytest

from gendao.config import DaoBackend, DaoConfig, DocumentEngineKind, SqliteConfig
from gendao.dao.base import create_dao
from gendao.dao.document import DocumentDAO
from gendao.dao.relational import RelationalDAO
from gendao.dao.validating import ValidatingDocumentDAO, ValidatingRelationalDAO
from gendao.engines.memory import InMemoryDocumentEngine
from gendao.engines.sqlite import RelationalTable, SqliteEngine
from gendao.errors import GenericError, ValidationError


class Product(pydantic.BaseModel):
    name: str
    quantity: int = pydantic.Field(ge=0)


PRODUCTS = RelationalTable("products", {"name": "TEXT NOT NULL", "quantity": "INTEGER"})


class TestValidatingDocumentDAO:
    """Tests for ValidatingDocumentDAO."""

    @pytest.fixture
    def engine(self):
        return InMemoryDocumentEngine()

    @pytest.fixture
    def dao(self, engine):
        return ValidatingDocumentDAO(engine, "product", app_version="1.4.0", model=Product)

    @pytest.mark.asyncio
    async def test_valid_record_is_created(self, engine, dao):
        """Valid records pass through to the document store."""
        await engine.connect()

        doc = await dao.create({"name": "widget", "quantity": 3})

        assert doc["entityType"] == "product"

    @pytest.mark.asyncio
    async def test_invalid_record_lists_every_error(self, engine, dao):
        """Every validation problem is reported and nothing is written."""
        await engine.connect()

        with pytest.raises(ValidationError) as exc_info:
            await dao.create({"quantity": -1})

        errors = exc_info.value.errors
        assert len(errors) == 2
        assert any(error.startswith("name:") for error in errors)
        assert any(error.startswith("quantity:") for error in errors)
        assert engine.live_count() == 0

    @pytest.mark.asyncio
    async def test_update_is_validated(self, engine, dao):
        """Updates are validated before the stored record is touched."""
        await engine.connect()
        doc = await dao.create({"name": "widget", "quantity": 3})

        with pytest.raises(ValidationError):
            await dao.update({**doc, "quantity": "many"})

        assert (await dao.get_one(doc["_id"]))["quantity"] == 3


class TestValidatingRelationalDAO:
    """Tests for ValidatingRelationalDAO."""

    @pytest.fixture
    def engine(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield SqliteEngine(os.path.join(tmpdir, "products.db"), wal_mode=False)

    @pytest.mark.asyncio
    async def test_validation_inside_transaction(self, engine):
        """A rejected record registers nothing and writes nothing."""
        dao = ValidatingRelationalDAO(engine, PRODUCTS, app_version="1.4.0", model=Product)
        await dao.initialize()
        tx = await dao.begin_transaction()

        await dao.create({"name": "widget", "quantity": 1}, transaction=tx)
        with pytest.raises(ValidationError):
            await dao.create({"name": "gadget", "quantity": -5}, transaction=tx)
        await tx.commit()

        rows = await dao.get_all()
        assert [row["name"] for row in rows] == ["widget"]


class TestCreateDao:
    """Tests for create_dao."""

    @pytest.mark.asyncio
    async def test_document_backend(self):
        """The document backend builds a connected DocumentDAO."""
        config = DaoConfig(
            backend=DaoBackend.DOCUMENT,
            document_engine=DocumentEngineKind.MEMORY,
            app_version="3.0.0",
        )

        dao = await create_dao(config, "order")

        assert isinstance(dao, DocumentDAO)
        doc = await dao.create({"customer": "acme"})
        assert doc["appVersion"] == "3.0.0"

    @pytest.mark.asyncio
    async def test_relational_backend(self):
        """The relational backend builds an initialized RelationalDAO."""
        with tempfile.TemporaryDirectory() as tmpdir:
            config = DaoConfig(
                backend=DaoBackend.RELATIONAL,
                sqlite=SqliteConfig(path=os.path.join(tmpdir, "app.db"), wal_mode=False),
            )

            dao = await create_dao(config, "products", table=PRODUCTS)

            assert isinstance(dao, RelationalDAO)
            row = await dao.create({"name": "widget"})
            assert row["version"] == 1
            assert await dao.get_next_sequence_id("po") == 1

    @pytest.mark.asyncio
    async def test_shared_document_engine(self):
        """A supplied engine is reused across DAOs."""
        engine = InMemoryDocumentEngine()
        config = DaoConfig(document_engine=DocumentEngineKind.MEMORY)

        orders = await create_dao(config, "order", document_engine=engine)
        invoices = await create_dao(config, "invoice", document_engine=engine)
        await orders.create({"n": 1})
        await invoices.create({"n": 2})

        assert engine.live_count() == 2

    @pytest.mark.asyncio
    async def test_mismatched_table_rejected(self):
        """The table must be named after the entity type."""
        config = DaoConfig(backend=DaoBackend.RELATIONAL)

        with pytest.raises(GenericError):
            await create_dao(config, "orders", table=PRODUCTS)
