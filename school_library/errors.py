from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .loan import BorrowingStatus


class LibraryError(Exception):
    """Base class for failures a caller can recover from.

    ``message`` is meant to be shown to the librarian verbatim.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class BookNotFound(LibraryError, LookupError):
    def __init__(self, book_id: str) -> None:
        super().__init__(f"Book {book_id} not found.")
        self.book_id = book_id


class LoanNotFound(LibraryError, LookupError):
    def __init__(self, loan_id: str) -> None:
        super().__init__(f"Loan {loan_id} not found.")
        self.loan_id = loan_id


class BorrowingDenied(LibraryError):
    """The borrowing policy refused a borrow request."""

    def __init__(self, reason: str, status: Optional["BorrowingStatus"] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status = status


class OutOfStock(BorrowingDenied):
    """No copy of the book is available to lend."""


class RenewalDenied(LibraryError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class AlreadyReturned(LibraryError):
    def __init__(self, loan_id: str) -> None:
        super().__init__(f"Loan {loan_id} has already been returned.")
        self.loan_id = loan_id


class InvalidDueDate(LibraryError, ValueError):
    pass


class InvalidCopyCount(LibraryError, ValueError):
    pass


class InvalidFineUpdate(LibraryError, ValueError):
    pass


class InvalidBookData(LibraryError, ValueError):
    pass


class ExternalServiceError(LibraryError):
    """The REST backend could not be reached or answered with an error."""


class InvariantViolation(RuntimeError):
    """Copy-count bookkeeping is broken.

    This is an internal bug, not a policy decision, and is kept out of the
    LibraryError hierarchy so that denial handlers never catch it.
    """
