"""School Library - Loan Lifecycle Package

This package contains the circulation core of the school library console:
- Copy-count bookkeeping (inventory.py)
- Borrowing policy rules (policy.py)
- Loan state machine (lifecycle.py)
- Dashboards and summaries (reporting.py)
- Storage collaborators (database.py, services/rest_storage.py)
- HTTP adapter (api.py)
"""

from .book import Book
from .config import AppSettings, PolicyConfig
from .errors import (
    AlreadyReturned,
    BookNotFound,
    BorrowingDenied,
    ExternalServiceError,
    InvalidBookData,
    InvalidCopyCount,
    InvalidDueDate,
    InvalidFineUpdate,
    InvariantViolation,
    LibraryError,
    LoanNotFound,
    OutOfStock,
    RenewalDenied,
)
from .library import Library
from .loan import BorrowingStatus, Loan, LoanStatus, ReturnCondition

__all__ = [
    "AlreadyReturned",
    "AppSettings",
    "Book",
    "BookNotFound",
    "BorrowingDenied",
    "BorrowingStatus",
    "ExternalServiceError",
    "InvalidBookData",
    "InvalidCopyCount",
    "InvalidDueDate",
    "InvalidFineUpdate",
    "InvariantViolation",
    "Library",
    "LibraryError",
    "Loan",
    "LoanNotFound",
    "LoanStatus",
    "OutOfStock",
    "PolicyConfig",
    "RenewalDenied",
    "ReturnCondition",
]
