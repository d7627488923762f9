"""
Named integer sequences with optimistic concurrency.

One algorithm serves both backends; each supplies a CounterStore that can
load a counter, insert a fresh one, and save a new value conditionally on
the revision/version it was loaded at.

Invariants:
    - A fresh counter's first value is 1
    - Callers in one process sharing a generator are served in FIFO order
      and never receive the same value
    - A counter's lock lives only while a call for it is in flight, so
      dynamically generated counter names do not accumulate
    - Callers in other processes are only excluded by the store's
      conditional save; a lost race is retried

How to change safely:
    - CounterStore implementations must raise ConflictError (and only
      ConflictError) for lost races, other failures abort immediately
"""

from __future__ import annotations

import asyncio
from abc import abstractmethod
from dataclasses import dataclass
from typing import Protocol
import logging

from .engines.base import ConflictError
from .errors import CreateError, ErrorType, GenericError, UpdateError, wrap_errors

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 200


@dataclass(frozen=True)
class Counter:
    """A stored counter.

    Attributes:
        name: Counter name
        value: Last value handed out (0 when fresh)
        revision: Store-specific token guarding the next save
    """
    name: str
    value: int
    revision: str | int | None = None


class CounterStore(Protocol):
    """Backend persistence for counters."""

    @abstractmethod
    async def load_counter(self, name: str) -> Counter | None:
        """Return the counter, or None if it does not exist yet."""
        ...

    @abstractmethod
    async def insert_counter(self, name: str) -> Counter:
        """Create the counter with value 0.

        Raises:
            ConflictError: If another caller created it first
        """
        ...

    @abstractmethod
    async def save_counter(self, counter: Counter) -> None:
        """Store ``counter.value`` if the stored revision still matches.

        Raises:
            ConflictError: If the counter changed since it was loaded
        """
        ...


class SequenceGenerator:
    """Hands out increasing integers per counter name.

    Example:
        >>> generator = SequenceGenerator(store)
        >>> await generator.next_value("purchase-order")
        1
    """

    def __init__(self, store: CounterStore, max_retries: int = DEFAULT_MAX_RETRIES) -> None:
        self._store = store
        self.max_retries = max_retries
        # name -> (lock, callers holding or waiting); dropped at zero
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    def _acquire_lock_ref(self, name: str) -> asyncio.Lock:
        entry = self._locks.get(name)
        lock, users = entry if entry is not None else (asyncio.Lock(), 0)
        self._locks[name] = (lock, users + 1)
        return lock

    def _release_lock_ref(self, name: str) -> None:
        lock, users = self._locks[name]
        if users <= 1:
            del self._locks[name]
        else:
            self._locks[name] = (lock, users - 1)

    async def next_value(self, name: str, max_retries: int | None = None) -> int:
        """Increment the named counter and return the new value.

        Args:
            name: Counter name
            max_retries: Attempts before giving up (defaults to the
                generator's setting)

        Raises:
            GenericError: If every attempt lost a race
            GetError / CreateError / UpdateError: On any other failure
        """
        retries = max_retries if max_retries is not None else self.max_retries
        lock = self._acquire_lock_ref(name)
        try:
            return await self._next_value_locked(name, lock, retries)
        finally:
            self._release_lock_ref(name)

    async def _next_value_locked(self, name: str, lock: asyncio.Lock, retries: int) -> int:
        for attempt in range(1, retries + 1):
            async with lock:
                with wrap_errors(ErrorType.GET, f"Failed to load counter {name}"):
                    counter = await self._store.load_counter(name)

                if counter is None:
                    try:
                        counter = await self._store.insert_counter(name)
                    except ConflictError:
                        logger.debug(
                            "Counter creation raced, retrying",
                            extra={"counter": name, "attempt": attempt},
                        )
                        continue
                    except Exception as e:
                        raise CreateError(f"Failed to create counter {name}", e) from e

                next_counter = Counter(name, counter.value + 1, counter.revision)
                try:
                    await self._store.save_counter(next_counter)
                except ConflictError:
                    logger.debug(
                        "Counter save conflicted, retrying",
                        extra={"counter": name, "attempt": attempt},
                    )
                    continue
                except Exception as e:
                    raise UpdateError(f"Failed to save counter {name}", e) from e

                return next_counter.value

        raise GenericError(
            f"Could not obtain next value for counter {name} after {retries} attempts",
            details={"counter": name, "max_retries": retries},
        )
