"""
Transactions for gendao.

Two kinds share one lifecycle:
- CompensatingTransaction: an undo log only; used by the document backend,
  which has no multi-statement transactions
- NativeTransaction: an open SQLite connection inside BEGIN IMMEDIATE, plus
  an undo log for compensations the relational backend registers on top

Lifecycle: OPEN -> COMMITTED | ROLLED_BACK -> RELEASED. Commit and rollback
both release afterwards; release() may also be called directly and is
idempotent.

Invariants:
    - Undo entries run in strict reverse registration order
    - Rollback attempts every undo entry even when earlier ones fail
    - Undo failures surface as RollbackError, never as the error that
      triggered the rollback
    - A native connection is closed exactly once

How to change safely:
    - Undo actions must tolerate running after the native ROLLBACK
    - Keep state checks ahead of any I/O
"""

from __future__ import annotations

import sqlite3
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol
import logging

from .errors import GenericError, RollbackError

if TYPE_CHECKING:
    from .engines.sqlite import SqliteEngine

logger = logging.getLogger(__name__)

UndoAction = Callable[[], Awaitable[Any]]


class TransactionState(Enum):
    """Transaction lifecycle states."""

    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    RELEASED = "released"


@dataclass(frozen=True)
class UndoEntry:
    """A compensating action restoring the state before one mutation.

    Attributes:
        label: Description used in logs and RollbackError (e.g. ``delete-undo:order1``)
        action: Coroutine function performing the compensation
    """
    label: str
    action: UndoAction


class Transaction:
    """Base transaction holding the undo log and lifecycle state.

    Transactions are async context managers: a clean exit commits, an
    exception rolls back and the original exception propagates. If that
    rollback is incomplete, RollbackError propagates instead with the
    original exception as its ``__cause__``.

    Example:
        >>> async with await dao.begin_transaction() as tx:
        ...     await dao.create({"name": "widget"}, transaction=tx)
    """

    def __init__(self) -> None:
        self.transaction_id = uuid.uuid4().hex
        self.executed_undos: list[str] = []
        self._undo_entries: list[UndoEntry] = []
        self._state = TransactionState.OPEN
        self._outcome: TransactionState | None = None

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def outcome(self) -> TransactionState | None:
        """COMMITTED or ROLLED_BACK once decided, else None."""
        return self._outcome

    @property
    def is_open(self) -> bool:
        return self._state == TransactionState.OPEN

    @property
    def connection(self) -> sqlite3.Connection | None:
        """Native connection, if this transaction has one."""
        return None

    @property
    def undo_labels(self) -> list[str]:
        """Labels of the registered undo entries, in registration order."""
        return [entry.label for entry in self._undo_entries]

    def register_undo(self, label: str, action: UndoAction) -> None:
        """Append a compensating action to the undo log.

        Raises:
            GenericError: If the transaction is no longer open
        """
        if not self.is_open:
            raise GenericError(
                f"Cannot register undo on a {self._state.value} transaction",
                details={"transaction_id": self.transaction_id, "label": label},
            )
        self._undo_entries.append(UndoEntry(label, action))

    def _require_open(self, operation: str) -> None:
        if not self.is_open:
            raise GenericError(
                f"Cannot {operation} a {self._state.value} transaction",
                details={"transaction_id": self.transaction_id},
            )

    async def commit(self) -> None:
        """Commit, then release.

        Raises:
            GenericError: If the transaction is not open or the native
                commit fails
        """
        self._require_open("commit")
        try:
            await self._commit_native()
        except Exception as e:
            logger.error(
                "Transaction commit failed",
                extra={"transaction_id": self.transaction_id, "error": str(e)},
            )
            raise GenericError("Failed to commit transaction", e) from e
        else:
            self._state = self._outcome = TransactionState.COMMITTED
            logger.debug(
                "Transaction committed",
                extra={
                    "transaction_id": self.transaction_id,
                    "undo_entries": len(self._undo_entries),
                },
            )
        finally:
            await self.release()

    async def rollback(self) -> None:
        """Roll back: native rollback first, then undo entries newest first.

        Raises:
            GenericError: If the transaction is not open
            RollbackError: If the native rollback or any undo action failed
        """
        self._require_open("roll back")
        self._state = self._outcome = TransactionState.ROLLED_BACK
        failures: list[tuple[str, Exception]] = []
        try:
            try:
                await self._rollback_native()
            except Exception as e:
                failures.append(("native-rollback", e))
                logger.error(
                    "Native rollback failed",
                    extra={"transaction_id": self.transaction_id, "error": str(e)},
                )

            for entry in reversed(self._undo_entries):
                self.executed_undos.append(entry.label)
                try:
                    await entry.action()
                except Exception as e:
                    failures.append((entry.label, e))
                    logger.error(
                        "Undo action failed",
                        extra={
                            "transaction_id": self.transaction_id,
                            "label": entry.label,
                            "error": str(e),
                        },
                    )
        finally:
            await self.release()

        if failures:
            raise RollbackError(
                f"Rollback incomplete: {len(failures)} compensation(s) failed",
                failures[0][1],
                failed_undos=[label for label, _ in failures],
            )

        logger.debug(
            "Transaction rolled back",
            extra={
                "transaction_id": self.transaction_id,
                "executed_undos": len(self.executed_undos),
            },
        )

    async def release(self) -> None:
        """Release resources. Safe to call more than once."""
        if self._state == TransactionState.RELEASED:
            return
        self._state = TransactionState.RELEASED
        self._undo_entries.clear()
        await self._release_native()

    async def _commit_native(self) -> None:
        pass

    async def _rollback_native(self) -> None:
        pass

    async def _release_native(self) -> None:
        pass

    async def __aenter__(self) -> Transaction:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> bool:
        if not self.is_open:
            return False
        if exc is None:
            await self.commit()
            return False
        try:
            await self.rollback()
        except RollbackError as rollback_error:
            logger.error(
                "Rollback after failure was incomplete",
                extra={
                    "transaction_id": self.transaction_id,
                    "failed_undos": rollback_error.failed_undos,
                    "original_error": str(exc),
                },
            )
            raise rollback_error from exc
        return False


class CompensatingTransaction(Transaction):
    """Undo-log-only transaction; commit is bookkeeping."""


class NativeTransaction(Transaction):
    """Transaction over an open SQLite connection.

    Attributes:
        engine: Engine that opened the connection
    """

    def __init__(self, engine: "SqliteEngine", connection: sqlite3.Connection) -> None:
        super().__init__()
        self.engine = engine
        self._connection: sqlite3.Connection | None = connection

    @property
    def connection(self) -> sqlite3.Connection | None:
        return self._connection if self.is_open else None

    async def _commit_native(self) -> None:
        conn = self._connection
        if conn is not None:
            await self.engine.run(lambda c: c.execute("COMMIT"), conn)

    async def _rollback_native(self) -> None:
        conn = self._connection
        if conn is not None and conn.in_transaction:
            await self.engine.run(lambda c: c.execute("ROLLBACK"), conn)

    async def _release_native(self) -> None:
        conn, self._connection = self._connection, None
        if conn is not None:
            await self.engine.close_connection(conn)


class TransactionFactory(Protocol):
    """Source of new transactions, supplied to each DAO at construction."""

    async def begin(self) -> Transaction:
        ...


class CompensatingTransactionFactory:
    """Creates CompensatingTransaction instances."""

    async def begin(self) -> CompensatingTransaction:
        return CompensatingTransaction()


class NativeTransactionFactory:
    """Creates NativeTransaction instances on a SQLite engine."""

    def __init__(self, engine: "SqliteEngine") -> None:
        self._engine = engine

    async def begin(self) -> NativeTransaction:
        connection = await self._engine.open_transaction()
        return NativeTransaction(self._engine, connection)
