from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from .book import to_money
from .clock import format_datetime, parse_datetime


class LoanStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RETURNED = "RETURNED"
    # Reporting value only; stored loans stay ACTIVE until returned.
    OVERDUE = "OVERDUE"


class ReturnCondition(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"
    DAMAGED = "DAMAGED"


class Loan:
    """One lending of one copy; the permanent audit record of a borrow."""

    def __init__(self, loan_id: str, borrower_id: str, book_id: str,
                 borrow_date: datetime, due_date: datetime,
                 return_date: Optional[datetime] = None,
                 status: Any = LoanStatus.ACTIVE, renewal_count: int = 0,
                 fine_amount: Any = 0, fine_paid_amount: Any = 0, fine_waived_amount: Any = 0,
                 condition: Any = None, notes: Optional[str] = None) -> None:
        self.id = loan_id
        self.borrower_id = borrower_id
        self.book_id = book_id
        self.borrow_date = parse_datetime(borrow_date)
        self.due_date = parse_datetime(due_date)
        self.return_date = parse_datetime(return_date)
        self.status = LoanStatus(status)
        self.renewal_count = int(renewal_count)
        self.fine_amount = to_money(fine_amount)
        self.fine_paid_amount = to_money(fine_paid_amount)
        self.fine_waived_amount = to_money(fine_waived_amount)
        self.condition = ReturnCondition(condition) if condition else None
        self.notes = notes

    def __repr__(self) -> str:  # pragma: no cover
        return f"Loan(id={self.id!r}, book_id={self.book_id!r}, status={self.status.value})"

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def outstanding_fine(self) -> Decimal:
        return self.fine_amount - self.fine_paid_amount - self.fine_waived_amount

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "borrower_id": self.borrower_id,
            "book_id": self.book_id,
            "borrow_date": format_datetime(self.borrow_date),
            "due_date": format_datetime(self.due_date),
            "return_date": format_datetime(self.return_date),
            "status": self.status.value,
            "renewal_count": self.renewal_count,
            "fine_amount": str(self.fine_amount),
            "fine_paid_amount": str(self.fine_paid_amount),
            "fine_waived_amount": str(self.fine_waived_amount),
            "condition": self.condition.value if self.condition else None,
            "notes": self.notes,
        }

    @staticmethod
    def from_dict(data: dict) -> "Loan":
        status = data.get("status") or LoanStatus.ACTIVE.value
        # Some backends persist the presentation value; it is still an open loan.
        if status == LoanStatus.OVERDUE.value:
            status = LoanStatus.ACTIVE.value
        return Loan(
            loan_id=data["id"],
            borrower_id=data["borrower_id"],
            book_id=data["book_id"],
            borrow_date=data["borrow_date"],
            due_date=data["due_date"],
            return_date=data.get("return_date"),
            status=status,
            renewal_count=data.get("renewal_count") or 0,
            fine_amount=data.get("fine_amount"),
            fine_paid_amount=data.get("fine_paid_amount"),
            fine_waived_amount=data.get("fine_waived_amount"),
            condition=data.get("condition"),
            notes=data.get("notes"),
        )


@dataclass(frozen=True)
class BorrowingStatus:
    """Derived view of whether a borrower may take another book."""

    can_borrow: bool
    currently_borrowed: int
    max_allowed: int
    remaining_allowed: int
    has_fines: bool
    fine_amount: Decimal
    borrowing_enabled: bool
    message: str
    book_available: Optional[bool] = None
    # Which rule refused the borrow: "disabled", "limit", "fines" or "stock".
    denial_code: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["fine_amount"] = str(self.fine_amount)
        return data
