"""
DAOs that validate records against a pydantic model before writing.

The model describes the domain fields only; backend fields (``_id``,
``_rev``, ``version``, dates) are ignored unless the model declares them.
Validation happens before any I/O, so a rejected record never reaches
the engine and never registers an undo action.
"""

from __future__ import annotations

from typing import Any

import pydantic

from ..errors import ValidationError
from ..transaction import Transaction
from .document import DocumentDAO
from .relational import RelationalDAO


def format_errors(error: pydantic.ValidationError) -> list[str]:
    """Render pydantic errors as ``"field.path: message"`` strings."""
    messages = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail.get("loc", ()))
        messages.append(f"{location}: {detail['msg']}" if location else detail["msg"])
    return messages


class ValidatingMixin:
    """Adds model validation to create and update.

    Args:
        model: pydantic model class describing valid records
    """

    entity_type: str

    def __init__(self, *args: Any, model: type[pydantic.BaseModel], **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.model = model

    def validate_record(self, record: dict[str, Any]) -> None:
        """Raise ValidationError listing every problem with the record."""
        try:
            self.model.model_validate(record)
        except pydantic.ValidationError as e:
            errors = format_errors(e)
            raise ValidationError(
                f"Invalid {self.entity_type}: {'; '.join(errors)}",
                errors=errors,
            ) from e

    async def create(
        self, record: dict[str, Any], *, transaction: Transaction | None = None
    ) -> dict[str, Any]:
        self.validate_record(record)
        return await super().create(record, transaction=transaction)

    async def update(
        self, record: dict[str, Any], *, transaction: Transaction | None = None
    ) -> dict[str, Any]:
        self.validate_record(record)
        return await super().update(record, transaction=transaction)


class ValidatingDocumentDAO(ValidatingMixin, DocumentDAO):
    """DocumentDAO that validates against a pydantic model.

    Example:
        >>> class Order(pydantic.BaseModel):
        ...     customer: str
        ...     quantity: int = pydantic.Field(gt=0)
        >>> dao = ValidatingDocumentDAO(engine, "order", app_version="1.4.0", model=Order)
    """


class ValidatingRelationalDAO(ValidatingMixin, RelationalDAO):
    """RelationalDAO that validates against a pydantic model."""
