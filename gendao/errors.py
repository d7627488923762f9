"""
Error types for gendao.

Every failure that crosses the DAO boundary is one of these types:
- DaoError: Base exception
- ValidationError: Record shape rejected before any I/O
- CreateError / GetError / UpdateError / DeleteError: Operation failures
- BulkSaveError: One or more items of a bulk write failed
- MappingError: Persisted record lacks a required canonical field
- GenericError: Backend selection, transaction state, retry exhaustion
- RollbackError: An undo action failed during rollback

Invariants:
    - Engine-native exceptions never escape a DAO unwrapped
    - Wrapped errors keep the original as ``cause`` and ``__cause__``
    - RollbackError is never used for the failure that triggered a rollback

How to change safely:
    - Add new error kinds to ErrorType and _ERROR_CLASSES together
    - Keep ``code`` values stable, callers branch on them
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Any


class DaoError(Exception):
    """Base exception for all gendao errors.

    Attributes:
        message: Error message (including the chained cause, if any)
        code: Error code for programmatic handling
        details: Additional error context
        cause: The wrapped exception, if any
    """

    default_code = "DAO_ERROR"

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if cause is not None:
            message = f"{message} | Caused by: {cause}"
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


class ValidationError(DaoError):
    """Record failed validation before any I/O took place."""

    default_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        errors: list[str] | None = None,
        **details: Any,
    ) -> None:
        super().__init__(message, cause, details={"errors": errors or [], **details})
        self.errors = errors or []


class CreateError(DaoError):
    """Record could not be created."""

    default_code = "CREATE_ERROR"


class GetError(DaoError):
    """Record(s) could not be read, or do not exist."""

    default_code = "GET_ERROR"


class UpdateError(DaoError):
    """Record could not be updated.

    Attributes:
        conflict: True when the caller's revision/version was stale
    """

    default_code = "UPDATE_ERROR"

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        conflict: bool = False,
        **details: Any,
    ) -> None:
        super().__init__(
            message,
            cause,
            code="UPDATE_CONFLICT" if conflict else None,
            details={"conflict": conflict, **details},
        )
        self.conflict = conflict


class DeleteError(DaoError):
    """Record could not be deleted."""

    default_code = "DELETE_ERROR"


class BulkSaveError(DaoError):
    """Some items of a bulk save failed.

    Attributes:
        failed_ids: Identifiers of every item that failed
        saved: Records that were written successfully
    """

    default_code = "BULK_SAVE_ERROR"

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        failed_ids: list[str] | None = None,
        saved: list[dict[str, Any]] | None = None,
        **details: Any,
    ) -> None:
        failed_ids = failed_ids or []
        saved = saved or []
        super().__init__(
            message,
            cause,
            details={
                "failed_ids": failed_ids,
                "saved_ids": [doc.get("_id") for doc in saved],
                **details,
            },
        )
        self.failed_ids = failed_ids
        self.saved = saved


class MappingError(DaoError):
    """A persisted record is missing a required canonical field."""

    default_code = "MAPPING_ERROR"


class GenericError(DaoError):
    """Backend selection, transaction state or retry exhaustion failure."""

    default_code = "GENERIC_ERROR"


class RollbackError(DaoError):
    """One or more undo actions failed while rolling back.

    The store may be left partially restored; callers should treat this
    differently from a clean abort.

    Attributes:
        failed_undos: Labels of the undo actions that raised
    """

    default_code = "ROLLBACK_ERROR"

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        failed_undos: list[str] | None = None,
    ) -> None:
        super().__init__(message, cause, details={"failed_undos": failed_undos or []})
        self.failed_undos = failed_undos or []


class ErrorType(Enum):
    """Error kinds understood by create_error()."""

    VALIDATION = "validation"
    CREATE = "create"
    GET = "get"
    UPDATE = "update"
    DELETE = "delete"
    BULK_SAVE = "bulk_save"
    MAPPING = "mapping"
    GENERIC = "generic"
    ROLLBACK = "rollback"


_ERROR_CLASSES: dict[ErrorType, type[DaoError]] = {
    ErrorType.VALIDATION: ValidationError,
    ErrorType.CREATE: CreateError,
    ErrorType.GET: GetError,
    ErrorType.UPDATE: UpdateError,
    ErrorType.DELETE: DeleteError,
    ErrorType.BULK_SAVE: BulkSaveError,
    ErrorType.MAPPING: MappingError,
    ErrorType.GENERIC: GenericError,
    ErrorType.ROLLBACK: RollbackError,
}


def create_error(
    error_type: ErrorType,
    message: str,
    cause: BaseException | None = None,
    **kwargs: Any,
) -> DaoError:
    """Build an error of the given kind.

    Args:
        error_type: Which error class to instantiate
        message: Error message
        cause: Optional wrapped exception
        **kwargs: Class-specific arguments (e.g. ``conflict``, ``failed_ids``)

    Returns:
        The error instance (not raised)
    """
    error_class = _ERROR_CLASSES.get(error_type, DaoError)
    return error_class(message, cause, **kwargs)


@contextmanager
def wrap_errors(error_type: ErrorType, message: str) -> Iterator[None]:
    """Wrap any non-gendao exception raised in the block.

    DaoError instances pass through untouched so that a more specific
    error raised deeper down is not re-labelled.

    Example:
        >>> with wrap_errors(ErrorType.GET, "Failed to read order"):
        ...     row = await engine.get(order_id)
    """
    try:
        yield
    except DaoError:
        raise
    except Exception as e:
        raise create_error(error_type, message, e) from e
