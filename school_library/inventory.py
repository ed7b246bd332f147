"""Copy-count bookkeeping.

BookInventory is the only writer of a book's copy counters. Every
read-modify-write runs under that book's lock, so two borrows racing for
the last copy cannot both see ``available_copies >= 1``.
"""

from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from .book import Book
from .clock import Clock, utc_now
from .errors import BookNotFound, InvalidCopyCount, InvariantViolation, OutOfStock

logger = logging.getLogger(__name__)

COPY_OPERATIONS = ("add", "subtract", "set")


class BookInventory:
    def __init__(self, store, now: Optional[Clock] = None) -> None:
        self.store = store
        self.now = now or utc_now
        # Entries disappear once no caller holds the lock
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, book_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(book_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[book_id] = lock
            return lock

    @contextmanager
    def lock(self, book_id: str) -> Iterator[None]:
        """Hold the book's lock; re-entrant so callers can nest operations."""
        lock = self._lock_for(book_id)
        with lock:
            yield

    def get(self, book_id: str) -> Book:
        book = self.store.get_book(book_id)
        if book is None:
            raise BookNotFound(book_id)
        return book

    def _apply(self, book_id: str, mutate: Callable[[Book], None]) -> Book:
        with self.lock(book_id):
            book = self.get(book_id)
            mutate(book)
            self._check_invariant(book)
            book.updated_at = self.now()
            return self.store.update_book(book)

    @staticmethod
    def _check_invariant(book: Book) -> None:
        if not book.counters_consistent():
            logger.critical(
                f"Copy counters broken for book {book.id}: total={book.total_copies} "
                f"available={book.available_copies} borrowed={book.borrowed_copies} "
                f"reserved={book.reserved_copies}"
            )
            raise InvariantViolation(
                f"Copy counters of book {book.id} no longer add up to its total copies."
            )

    def reserve_copy_for_loan(self, book_id: str) -> Book:
        """Move one copy from available to borrowed."""

        def mutate(book: Book) -> None:
            if book.available_copies < 1:
                raise OutOfStock(f"No copies of '{book.title}' are available.")
            book.available_copies -= 1
            book.borrowed_copies += 1

        book = self._apply(book_id, mutate)
        logger.debug(f"Reserved a copy of {book_id}; {book.available_copies} left")
        return book

    def release_copy_from_loan(self, book_id: str) -> Book:
        """Move one copy from borrowed back to available."""

        def mutate(book: Book) -> None:
            if book.borrowed_copies < 1:
                logger.critical(f"Release requested for book {book_id} with no borrowed copies")
                raise InvariantViolation(
                    f"Book {book_id} has no borrowed copies to release."
                )
            book.borrowed_copies -= 1
            book.available_copies += 1

        book = self._apply(book_id, mutate)
        logger.debug(f"Released a copy of {book_id}; {book.available_copies} available")
        return book

    def set_total_copies(self, book_id: str, new_total: int, operation: str = "set") -> Book:
        """Change the number of copies owned.

        ``operation`` is ``add`` / ``subtract`` (``new_total`` is a delta) or
        ``set`` (``new_total`` is the absolute count). The total can never drop
        below the copies currently on loan plus those reserved.
        """
        if operation not in COPY_OPERATIONS:
            raise InvalidCopyCount(
                f"Unknown copy operation '{operation}'. Use one of: {', '.join(COPY_OPERATIONS)}."
            )
        amount = int(new_total)
        if amount < 0:
            raise InvalidCopyCount("Copy count cannot be negative.")

        def mutate(book: Book) -> None:
            if operation == "add":
                target = book.total_copies + amount
            elif operation == "subtract":
                target = book.total_copies - amount
            else:
                target = amount
            if target < 0:
                raise InvalidCopyCount("Total copies cannot be negative.")
            if target < book.borrowed_copies:
                raise InvalidCopyCount(
                    f"Cannot set total copies to {target}: {book.borrowed_copies} "
                    f"{'copy is' if book.borrowed_copies == 1 else 'copies are'} currently on loan."
                )
            available = target - book.borrowed_copies - book.reserved_copies
            if available < 0:
                raise InvalidCopyCount(
                    f"Cannot set total copies to {target}: {book.reserved_copies} "
                    f"reserved and {book.borrowed_copies} borrowed."
                )
            book.total_copies = target
            book.available_copies = available

        book = self._apply(book_id, mutate)
        logger.info(f"Book {book_id} now has {book.total_copies} copies ({operation} {amount})")
        return book
