"""
Unit tests for mappers and date helpers.

Tests cover:
- ISO-8601 formatting and parsing
- Minimal document and relational mappers
- Expanding mappers round-tripping records field for field
- MappingError on missing canonical fields
"""

from datetime import datetime, timedelta, timezone

import pytest

from gendao.dates import from_iso, now_iso, to_iso
from gendao.errors import MappingError
from gendao.mapper import (
    DocumentMapper,
    Entity,
    ExpandingDocumentMapper,
    ExpandingRelationalMapper,
    RelationalMapper,
)


class TestDates:
    """Tests for the ISO-8601 helpers."""

    def test_to_iso_uses_z_suffix_and_milliseconds(self):
        """UTC datetimes format with millisecond precision and Z."""
        value = datetime(2024, 5, 1, 12, 30, 0, 123456, tzinfo=timezone.utc)

        assert to_iso(value) == "2024-05-01T12:30:00.123Z"

    def test_to_iso_treats_naive_as_utc(self):
        """Naive datetimes are taken to be UTC."""
        assert to_iso(datetime(2024, 5, 1)) == "2024-05-01T00:00:00.000Z"

    def test_to_iso_converts_offsets(self):
        """Aware datetimes in other zones are converted to UTC."""
        value = datetime(2024, 5, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))

        assert to_iso(value) == "2024-05-01T12:00:00.000Z"

    def test_round_trip(self):
        """Text in canonical form survives parse and format."""
        text = "2024-05-01T12:30:00.123Z"

        parsed = from_iso(text)

        assert parsed.tzinfo is not None
        assert to_iso(parsed) == text

    def test_now_iso_is_parseable(self):
        """now_iso produces canonical text."""
        text = now_iso()

        assert text.endswith("Z")
        assert to_iso(from_iso(text)) == text


class TestDocumentMapper:
    """Tests for the document mappers."""

    @pytest.fixture
    def record(self):
        return {
            "_id": "order0a1b",
            "_rev": "2-abc",
            "entityType": "order",
            "appVersion": "1.4.0",
            "createdDate": "2024-05-01T12:30:00.000Z",
            "updatedDate": "2024-05-02T08:00:00.500Z",
            "customer": "acme",
            "lines": [{"sku": "W-1", "quantity": 3}],
        }

    def test_to_domain_fixed_fields(self, record):
        """Minimal mapper reads only the fixed fields."""
        entity = DocumentMapper().to_domain(record)

        assert entity.id == "order0a1b"
        assert entity.revision == "2-abc"
        assert entity.entity_type == "order"
        assert entity.created_date == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        assert entity.updated_date is not None
        assert entity.fields == {}

    def test_to_db_fixed_fields(self, record):
        """Minimal mapper writes only the fixed fields."""
        mapper = DocumentMapper()

        assert mapper.to_db(mapper.to_domain(record)) == {
            "_id": "order0a1b",
            "_rev": "2-abc",
            "entityType": "order",
            "createdDate": "2024-05-01T12:30:00.000Z",
            "updatedDate": "2024-05-02T08:00:00.500Z",
        }

    def test_expanding_round_trip(self, record):
        """Expanding mapper reproduces the record exactly."""
        mapper = ExpandingDocumentMapper()

        entity = mapper.to_domain(record)

        assert entity.fields["customer"] == "acme"
        assert entity.fields["appVersion"] == "1.4.0"
        assert mapper.to_db(entity) == record

    def test_expanding_round_trip_without_updated_date(self, record):
        """A never-updated record round-trips without gaining updatedDate."""
        del record["updatedDate"]
        mapper = ExpandingDocumentMapper()

        assert mapper.to_db(mapper.to_domain(record)) == record

    @pytest.mark.parametrize("missing", ["_id", "_rev", "entityType", "createdDate"])
    def test_missing_required_field(self, record, missing):
        """Each canonical field is required."""
        del record[missing]

        with pytest.raises(MappingError, match=missing):
            DocumentMapper().to_domain(record)

    def test_invalid_date(self, record):
        """Unparseable dates raise MappingError."""
        record["createdDate"] = "yesterday"

        with pytest.raises(MappingError, match="createdDate"):
            DocumentMapper().to_domain(record)


class TestRelationalMapper:
    """Tests for the relational mappers."""

    @pytest.fixture
    def row(self):
        return {
            "_id": "5b1f7c1e-0000-4000-8000-000000000001",
            "version": 3,
            "appVersion": "1.4.0",
            "createdDate": "2024-05-01T12:30:00.000Z",
            "updatedDate": None,
            "name": "widget",
            "quantity": 7,
        }

    def test_to_domain(self, row):
        """Version becomes the revision; the table name the entity type."""
        entity = RelationalMapper(entity_type="products").to_domain(row)

        assert entity.revision == 3
        assert entity.entity_type == "products"
        assert entity.updated_date is None

    def test_only_id_and_created_date_required(self, row):
        """A row without version still maps."""
        del row["version"]

        entity = RelationalMapper().to_domain(row)

        assert entity.revision is None

    @pytest.mark.parametrize("missing", ["_id", "createdDate"])
    def test_missing_required_field(self, row, missing):
        """Identity and creation date are required."""
        row[missing] = None

        with pytest.raises(MappingError):
            RelationalMapper().to_domain(row)

    def test_expanding_round_trip(self, row):
        """Expanding mapper reproduces the row exactly, NULLs included."""
        mapper = ExpandingRelationalMapper()

        assert mapper.to_db(mapper.to_domain(row)) == row

    def test_to_db_from_new_entity(self):
        """Entities built in code map to rows."""
        entity = Entity(
            id="r1",
            created_date=datetime(2024, 1, 1, tzinfo=timezone.utc),
            revision=1,
            fields={"name": "widget"},
        )

        assert ExpandingRelationalMapper().to_db(entity) == {
            "_id": "r1",
            "version": 1,
            "createdDate": "2024-01-01T00:00:00.000Z",
            "updatedDate": None,
            "name": "widget",
        }
