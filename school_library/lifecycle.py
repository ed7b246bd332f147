"""Loan state machine: ACTIVE -> RETURNED.

"Overdue" is never stored. An ACTIVE loan past its due date is reported
as overdue by the read side and stays ACTIVE until it is returned.
"""

from __future__ import annotations

import logging
import threading
import uuid
import weakref
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from . import policy
from .book import to_money
from .clock import Clock, ensure_aware, utc_now
from .config import PolicyConfig
from .errors import (
    AlreadyReturned,
    BorrowingDenied,
    InvalidDueDate,
    InvalidFineUpdate,
    LoanNotFound,
    OutOfStock,
    RenewalDenied,
)
from .inventory import BookInventory
from .loan import Loan, LoanStatus, ReturnCondition
from .services.notifications import (
    FINE_UPDATED,
    LOAN_ISSUED,
    LOAN_RENEWED,
    LOAN_RETURNED,
    NotificationDispatcher,
)

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


class LoanLifecycle:
    def __init__(self, store, inventory: BookInventory, config: Optional[PolicyConfig] = None,
                 now: Optional[Clock] = None,
                 notifier: Optional[NotificationDispatcher] = None) -> None:
        self.store = store
        self.inventory = inventory
        self.config = config or PolicyConfig()
        self.now = now or utc_now
        self.notifier = notifier or NotificationDispatcher()
        self._borrower_locks = weakref.WeakValueDictionary()
        self._borrower_locks_guard = threading.Lock()

    def _borrower_lock(self, borrower_id: str) -> threading.Lock:
        with self._borrower_locks_guard:
            lock = self._borrower_locks.get(borrower_id)
            if lock is None:
                lock = threading.Lock()
                self._borrower_locks[borrower_id] = lock
            return lock

    def get_loan(self, loan_id: str) -> Loan:
        loan = self.store.get_loan(loan_id)
        if loan is None:
            raise LoanNotFound(loan_id)
        return loan

    def _notify(self, event: str, loan: Loan) -> None:
        # Runs after the transition has been committed.
        self.notifier.dispatch(event, loan)

    # ------------------------- Transitions ------------------------- #
    def borrow(self, borrower_id: str, book_id: str,
               explicit_due_date: Optional[datetime] = None,
               notes: Optional[str] = None) -> Loan:
        """Issue one copy of ``book_id`` to ``borrower_id``.

        The eligibility check and the copy reservation happen under the
        borrower's lock and then the book's lock (always in that order), so
        the inventory snapshot the policy saw is the one that gets reserved.
        """
        with self._borrower_lock(borrower_id), self.inventory.lock(book_id):
            now = ensure_aware(self.now())
            book = self.inventory.get(book_id)
            if not book.is_active:
                raise BorrowingDenied(f"'{book.title}' is not in circulation.")

            history = self.store.list_loans(borrower_id=borrower_id)
            status = policy.evaluate_eligibility(history, self.config, book)
            if not status.can_borrow:
                logger.info(
                    f"Borrow of {book_id} by {borrower_id} denied: {status.message}"
                )
                if status.denial_code == "stock":
                    raise OutOfStock(status.message, status)
                raise BorrowingDenied(status.message, status)

            due_date = policy.compute_due_date(
                now, book.max_borrow_days, explicit_due_date, today=now
            )
            self.inventory.reserve_copy_for_loan(book_id)
            loan = Loan(
                loan_id=_new_id(),
                borrower_id=borrower_id,
                book_id=book_id,
                borrow_date=now,
                due_date=due_date,
                status=LoanStatus.ACTIVE,
                notes=notes,
            )
            try:
                loan = self.store.create_loan(loan)
            except Exception:
                # Give the copy back; the loan never existed.
                self.inventory.release_copy_from_loan(book_id)
                raise

        logger.info(
            f"Loan {loan.id} issued: book={book_id} borrower={borrower_id} "
            f"due={loan.due_date.date().isoformat()}"
        )
        self._notify(LOAN_ISSUED, loan)
        return loan

    def renew(self, loan_id: str, new_due_date: Optional[datetime] = None) -> Loan:
        """Extend an active, not yet overdue loan; inventory is untouched."""
        loan = self.get_loan(loan_id)
        with self.inventory.lock(loan.book_id):
            loan = self.get_loan(loan_id)
            book = self.inventory.get(loan.book_id)
            now = ensure_aware(self.now())

            reason = policy.renewal_denial_reason(loan, book, now)
            if reason:
                logger.info(f"Renewal of loan {loan_id} denied: {reason}")
                raise RenewalDenied(reason)

            if new_due_date is not None:
                new_due_date = policy.compute_due_date(now, book.max_borrow_days, new_due_date, today=now)
                if new_due_date <= loan.due_date:
                    raise InvalidDueDate("New due date must be later than the current due date.")
            else:
                new_due_date = policy.compute_renewal_due_date(
                    loan.due_date, policy.renewal_extension_days(book, self.config)
                )

            loan.due_date = new_due_date
            loan.renewal_count += 1
            loan = self.store.update_loan(loan)

        logger.info(
            f"Loan {loan.id} renewed ({loan.renewal_count}/{book.max_renewals}), "
            f"due={loan.due_date.date().isoformat()}"
        )
        self._notify(LOAN_RENEWED, loan)
        return loan

    def return_book(self, loan_id: str, condition: Any = ReturnCondition.GOOD,
                    notes: Optional[str] = None) -> Loan:
        """Close a loan, freeze its fine and put the copy back on the shelf.

        POOR and DAMAGED returns are released to ``available_copies`` like any
        other; there is no separate maintenance pool.
        """
        condition = ReturnCondition(condition)
        loan = self.get_loan(loan_id)
        with self.inventory.lock(loan.book_id):
            loan = self.get_loan(loan_id)
            if loan.status != LoanStatus.ACTIVE:
                raise AlreadyReturned(loan_id)
            book = self.inventory.get(loan.book_id)
            now = ensure_aware(self.now())

            fine = policy.fine_for_book(loan, book, now, self.config)
            self.inventory.release_copy_from_loan(loan.book_id)

            loan.return_date = now
            loan.status = LoanStatus.RETURNED
            loan.fine_amount = fine
            loan.condition = condition
            if notes:
                loan.notes = notes
            try:
                loan = self.store.update_loan(loan)
            except Exception:
                self.inventory.reserve_copy_for_loan(loan.book_id)
                raise

        if condition in (ReturnCondition.POOR, ReturnCondition.DAMAGED):
            logger.warning(f"Loan {loan.id} returned in {condition.value} condition")
        logger.info(f"Loan {loan.id} returned, fine={loan.fine_amount}")
        self._notify(LOAN_RETURNED, loan)
        return loan

    # ------------------------- Fines ------------------------- #
    def update_fine(self, loan_id: str, fine_amount: Any = None, paid_amount: Any = None,
                    waived_amount: Any = None, notes: Optional[str] = None) -> Loan:
        """Set the fine, paid and waived amounts of a loan.

        Only returned loans carry a settled fine. Amounts not given keep
        their current value. The result must satisfy
        ``paid + waived <= fine`` with every amount >= 0.
        """
        def amounts(loan: Loan):
            return (
                loan.fine_amount if fine_amount is None else to_money(fine_amount),
                loan.fine_paid_amount if paid_amount is None else to_money(paid_amount),
                loan.fine_waived_amount if waived_amount is None else to_money(waived_amount),
            )

        return self._change_fine(loan_id, amounts, notes)

    def _change_fine(self, loan_id: str, amounts, notes: Optional[str]) -> Loan:
        loan = self.get_loan(loan_id)
        with self.inventory.lock(loan.book_id):
            loan = self.get_loan(loan_id)
            if loan.status != LoanStatus.RETURNED:
                raise InvalidFineUpdate("Fines can only be settled on returned loans.")
            fine, paid, waived = amounts(loan)

            if min(fine, paid, waived) < Decimal("0.00"):
                raise InvalidFineUpdate("Fine amounts cannot be negative.")
            if paid + waived > fine:
                raise InvalidFineUpdate(
                    f"Paid ({paid}) and waived ({waived}) amounts exceed the fine of {fine}."
                )

            loan.fine_amount = fine
            loan.fine_paid_amount = paid
            loan.fine_waived_amount = waived
            if notes:
                loan.notes = notes
            loan = self.store.update_loan(loan)

        logger.info(
            f"Fine of loan {loan.id} updated: fine={fine} paid={paid} waived={waived}"
        )
        self._notify(FINE_UPDATED, loan)
        return loan

    def pay_fine(self, loan_id: str, amount: Any, notes: Optional[str] = None) -> Loan:
        amount = self._positive(amount)
        return self._change_fine(
            loan_id,
            lambda loan: (loan.fine_amount, loan.fine_paid_amount + amount, loan.fine_waived_amount),
            notes,
        )

    def waive_fine(self, loan_id: str, amount: Any, notes: Optional[str] = None) -> Loan:
        amount = self._positive(amount)
        return self._change_fine(
            loan_id,
            lambda loan: (loan.fine_amount, loan.fine_paid_amount, loan.fine_waived_amount + amount),
            notes,
        )

    @staticmethod
    def _positive(amount: Any) -> Decimal:
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidFineUpdate("Amount must be greater than zero.")
        return amount
