"""Borrowing policy.

Pure functions only: nothing here reads the clock, touches storage or
mutates its arguments. Callers pass the evaluation time and the
library-wide :class:`~school_library.config.PolicyConfig` explicitly.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from .book import Book, to_money
from .clock import ensure_aware
from .config import PolicyConfig
from .errors import InvalidDueDate
from .loan import BorrowingStatus, Loan, LoanStatus

SECONDS_PER_DAY = 86400


def outstanding_fines(loans: Iterable[Loan]) -> Decimal:
    """Sum of fine balances not yet paid or waived."""
    zero = Decimal("0.00")
    # An overpaid loan never offsets another loan's unpaid fine
    total = sum((max(loan.outstanding_fine, zero) for loan in loans), zero)
    return to_money(total)


def evaluate_eligibility(loans: Iterable[Loan], config: PolicyConfig,
                         book: Optional[Book] = None) -> BorrowingStatus:
    """Decide whether a borrower may take (another) book.

    ``loans`` is the borrower's loan history: active loans count against the
    cap and every loan contributes its unsettled fine. Rules are checked in
    order and ``message`` explains the first one that fails:

    1. fewer active loans than ``config.max_books_per_user``;
    2. outstanding fines not above ``config.fine_block_threshold``;
    3. ``book.available_copies > 0`` (only when a book is given).
    """
    loans = list(loans)
    currently_borrowed = sum(1 for loan in loans if loan.status == LoanStatus.ACTIVE)
    max_allowed = config.max_books_per_user
    remaining = max(0, max_allowed - currently_borrowed)
    fine_amount = outstanding_fines(loans)
    has_fines = fine_amount > 0
    book_available = book.available_copies > 0 if book is not None else None

    denial_code = None
    if not config.borrowing_enabled:
        denial_code = "disabled"
        message = "Borrowing is currently disabled."
    elif currently_borrowed >= max_allowed:
        denial_code = "limit"
        message = (
            f"Borrowing limit reached: {currently_borrowed} of {max_allowed} "
            f"books already borrowed."
        )
    elif fine_amount > config.fine_block_threshold:
        denial_code = "fines"
        message = f"Outstanding fines of {fine_amount} must be settled before borrowing."
    elif book_available is False:
        denial_code = "stock"
        message = f"No copies of '{book.title}' are available."
    else:
        message = f"Can borrow {remaining} more book{'s' if remaining != 1 else ''}."

    return BorrowingStatus(
        can_borrow=denial_code is None,
        currently_borrowed=currently_borrowed,
        max_allowed=max_allowed,
        remaining_allowed=remaining,
        has_fines=has_fines,
        fine_amount=fine_amount,
        borrowing_enabled=config.borrowing_enabled,
        message=message,
        book_available=book_available,
        denial_code=denial_code,
    )


def compute_due_date(borrow_date: datetime, max_borrow_days: int,
                     explicit_due_date: Optional[datetime] = None,
                     today: Optional[datetime] = None) -> datetime:
    """Explicit due dates must not lie before ``today`` (the evaluation time);
    otherwise add the loan period."""
    if explicit_due_date is not None:
        explicit_due_date = ensure_aware(explicit_due_date)
        today = ensure_aware(today or borrow_date)
        if explicit_due_date < today:
            raise InvalidDueDate(f"Due date {explicit_due_date.isoformat()} is in the past.")
        return explicit_due_date
    return ensure_aware(borrow_date) + timedelta(days=max_borrow_days)


def compute_renewal_due_date(current_due_date: datetime, renewal_extension_days: int) -> datetime:
    return ensure_aware(current_due_date) + timedelta(days=renewal_extension_days)


def renewal_extension_days(book: Book, config: PolicyConfig) -> int:
    if config.renewal_extension_days is not None:
        return config.renewal_extension_days
    return book.max_borrow_days


def is_overdue(loan: Loan, as_of: datetime) -> bool:
    return loan.status == LoanStatus.ACTIVE and ensure_aware(as_of) > loan.due_date


def days_overdue(loan: Loan, as_of: datetime) -> int:
    """Whole days past due; any partial day counts as a full one.

    A returned loan stops accruing at its return date.
    """
    reference = ensure_aware(as_of)
    if loan.status == LoanStatus.RETURNED and loan.return_date is not None:
        reference = min(reference, loan.return_date)
    seconds = (reference - loan.due_date).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / SECONDS_PER_DAY)


def compute_fine(loan: Loan, as_of: datetime, daily_fine_amount, max_fine_amount,
                 grace_days: int = 0) -> Decimal:
    """``min(chargeable days * daily fine, max fine)``.

    Returned loans are evaluated at their return date, so the result is
    frozen once the copy is back.
    """
    if loan.status == LoanStatus.RETURNED:
        if loan.return_date is None:
            return Decimal("0.00")
        as_of = loan.return_date
    chargeable = max(0, days_overdue(loan, as_of) - grace_days)
    if chargeable == 0:
        return Decimal("0.00")
    fine = to_money(daily_fine_amount) * chargeable
    return to_money(min(fine, to_money(max_fine_amount)))


def fine_for_book(loan: Loan, book: Book, as_of: datetime, config: PolicyConfig) -> Decimal:
    """Fine of ``loan`` using the book's rates and the library grace period."""
    return compute_fine(
        loan, as_of, book.daily_fine_amount, book.max_fine_amount, config.fine_grace_days
    )


def renewal_denial_reason(loan: Loan, book: Book, as_of: datetime) -> Optional[str]:
    if loan.status != LoanStatus.ACTIVE:
        return "Only active loans can be renewed."
    if loan.renewal_count >= book.max_renewals:
        return f"Maximum renewals reached ({book.max_renewals})."
    if is_overdue(loan, as_of):
        return "Overdue loans cannot be renewed."
    return None


def can_renew(loan: Loan, book: Book, as_of: datetime) -> bool:
    return renewal_denial_reason(loan, book, as_of) is None
