"""
Mapping between backend records and the canonical Entity.

Minimal mappers carry only the fixed identity, revision and timestamp
fields; expanding mappers also pass every other field through
``Entity.fields`` so that ``to_db(to_domain(record)) == record``.

Invariants:
    - to_domain and to_db are pure
    - to_domain raises MappingError when identity or creation date is missing
    - Dates are datetime in the domain and ISO-8601 text in records
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from .dates import from_iso, to_iso
from .errors import MappingError


@dataclass
class Entity:
    """Backend-agnostic record shape exposed to domain code.

    Attributes:
        id: Identifier, unique within the logical type
        created_date: Creation time (UTC)
        revision: Document revision (str) or relational version (int)
        entity_type: Logical type discriminator
        updated_date: Last update time (UTC), if ever updated
        fields: Domain fields (expanding mappers only)
    """
    id: str
    created_date: datetime
    revision: str | int | None = None
    entity_type: str | None = None
    updated_date: datetime | None = None
    fields: dict[str, Any] = field(default_factory=dict)


class Mapper(Protocol):
    """Converts records to entities and back."""

    @abstractmethod
    def to_domain(self, record: dict[str, Any]) -> Entity:
        ...

    @abstractmethod
    def to_db(self, entity: Entity) -> dict[str, Any]:
        ...


def _require(record: dict[str, Any], required: tuple[str, ...]) -> None:
    missing = [name for name in required if record.get(name) in (None, "")]
    if missing:
        raise MappingError(
            f"Record is missing required field(s): {', '.join(missing)}",
            details={"missing": missing, "id": record.get("_id")},
        )


def _parse_date(record: dict[str, Any], name: str) -> datetime | None:
    value = record.get(name)
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return from_iso(value)
    except (TypeError, ValueError) as e:
        raise MappingError(f"Field {name} is not an ISO-8601 date", e) from e


class DocumentMapper:
    """Maps document-store records (``_id``, ``_rev``, ``entityType``)."""

    FIXED_FIELDS = ("_id", "_rev", "entityType", "createdDate", "updatedDate")
    REQUIRED_FIELDS = ("_id", "_rev", "entityType", "createdDate")

    def to_domain(self, record: dict[str, Any]) -> Entity:
        _require(record, self.REQUIRED_FIELDS)
        return Entity(
            id=record["_id"],
            created_date=_parse_date(record, "createdDate"),
            revision=record["_rev"],
            entity_type=record["entityType"],
            updated_date=_parse_date(record, "updatedDate"),
        )

    def to_db(self, entity: Entity) -> dict[str, Any]:
        record: dict[str, Any] = {"_id": entity.id}
        if entity.revision is not None:
            record["_rev"] = entity.revision
        if entity.entity_type is not None:
            record["entityType"] = entity.entity_type
        record["createdDate"] = to_iso(entity.created_date)
        if entity.updated_date is not None:
            record["updatedDate"] = to_iso(entity.updated_date)
        return record


class ExpandingDocumentMapper(DocumentMapper):
    """DocumentMapper that also carries every non-fixed field."""

    def to_domain(self, record: dict[str, Any]) -> Entity:
        entity = super().to_domain(record)
        entity.fields = {k: v for k, v in record.items() if k not in self.FIXED_FIELDS}
        return entity

    def to_db(self, entity: Entity) -> dict[str, Any]:
        return {**super().to_db(entity), **entity.fields}


class RelationalMapper:
    """Maps relational rows (``_id``, integer ``version``).

    Args:
        entity_type: Logical type set on mapped entities (usually the table name)
    """

    FIXED_FIELDS = ("_id", "version", "createdDate", "updatedDate")
    REQUIRED_FIELDS = ("_id", "createdDate")

    def __init__(self, entity_type: str | None = None) -> None:
        self.entity_type = entity_type

    def to_domain(self, record: dict[str, Any]) -> Entity:
        _require(record, self.REQUIRED_FIELDS)
        return Entity(
            id=record["_id"],
            created_date=_parse_date(record, "createdDate"),
            revision=record.get("version"),
            entity_type=self.entity_type,
            updated_date=_parse_date(record, "updatedDate"),
        )

    def to_db(self, entity: Entity) -> dict[str, Any]:
        record: dict[str, Any] = {"_id": entity.id}
        if entity.revision is not None:
            record["version"] = entity.revision
        record["createdDate"] = to_iso(entity.created_date)
        # The column always exists, so NULL maps back to None
        record["updatedDate"] = (
            to_iso(entity.updated_date) if entity.updated_date is not None else None
        )
        return record


class ExpandingRelationalMapper(RelationalMapper):
    """RelationalMapper that also carries every non-fixed column."""

    def to_domain(self, record: dict[str, Any]) -> Entity:
        entity = super().to_domain(record)
        entity.fields = {k: v for k, v in record.items() if k not in self.FIXED_FIELDS}
        return entity

    def to_db(self, entity: Entity) -> dict[str, Any]:
        return {**super().to_db(entity), **entity.fields}
