"""Read-only aggregates over books and loans.

Overdue status and accruing fines are evaluated against ``now`` on every
call; nothing here writes to the store.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from . import policy
from .book import Book
from .clock import Clock, ensure_aware, utc_now
from .config import PolicyConfig
from .loan import Loan, LoanStatus


class ReportingView:
    def __init__(self, store, config: Optional[PolicyConfig] = None,
                 now: Optional[Clock] = None) -> None:
        self.store = store
        self.config = config or PolicyConfig()
        self.now = now or utc_now

    def _books_by_id(self) -> Dict[str, Book]:
        return {book.id: book for book in self.store.list_books()}

    def _accrued_fine(self, loan: Loan, book: Optional[Book], as_of) -> Decimal:
        if book is None or not policy.is_overdue(loan, as_of):
            return Decimal("0.00")
        return policy.fine_for_book(loan, book, as_of, self.config)

    def loan_view(self, loan: Loan, book: Optional[Book] = None) -> Dict[str, Any]:
        """Loan as a dict plus the derived overdue fields."""
        as_of = ensure_aware(self.now())
        overdue = policy.is_overdue(loan, as_of)
        data = loan.to_dict()
        data["display_status"] = LoanStatus.OVERDUE.value if overdue else loan.status.value
        data["is_overdue"] = overdue
        data["days_overdue"] = policy.days_overdue(loan, as_of) if loan.is_active else 0
        data["accrued_fine"] = str(self._accrued_fine(loan, book, as_of))
        if book is not None:
            data["book"] = {
                "id": book.id,
                "title": book.title,
                "author": book.author,
                "isbn": book.isbn,
                "format": book.format,
                "daily_fine_amount": str(book.daily_fine_amount),
                "max_renewals": book.max_renewals,
            }
        return data

    def loan_views(self, loans: Iterable[Loan]) -> List[Dict[str, Any]]:
        books = self._books_by_id()
        return [self.loan_view(loan, books.get(loan.book_id)) for loan in loans]

    # ------------------------- Queries ------------------------- #
    def active_loans(self, borrower_id: Optional[str] = None) -> List[Loan]:
        return self.store.list_loans(borrower_id=borrower_id, status=LoanStatus.ACTIVE)

    def overdue_loans(self, borrower_id: Optional[str] = None) -> List[Loan]:
        as_of = ensure_aware(self.now())
        return [
            loan for loan in self.active_loans(borrower_id)
            if policy.is_overdue(loan, as_of)
        ]

    def due_soon(self, within_days: Optional[int] = None) -> List[Loan]:
        """Active loans falling due within the reminder window, not yet overdue."""
        if within_days is None:
            within_days = self.config.due_date_reminder_days
        as_of = ensure_aware(self.now())
        horizon = as_of + timedelta(days=within_days)
        loans = [
            loan for loan in self.active_loans()
            if as_of <= loan.due_date <= horizon
        ]
        return sorted(loans, key=lambda loan: loan.due_date)

    # ------------------------- Summaries ------------------------- #
    def loan_summary(self, loans: Optional[Iterable[Loan]] = None) -> Dict[str, int]:
        loans = list(self.store.list_loans() if loans is None else loans)
        as_of = ensure_aware(self.now())
        active = [loan for loan in loans if loan.status == LoanStatus.ACTIVE]
        return {
            "total": len(loans),
            "active": len(active),
            "overdue": sum(1 for loan in active if policy.is_overdue(loan, as_of)),
            "returned": sum(1 for loan in loans if loan.status == LoanStatus.RETURNED),
        }

    def book_summary(self, books: Optional[Iterable[Book]] = None) -> Dict[str, int]:
        books = list(self.store.list_books() if books is None else books)
        return {
            "total_books": len(books),
            "total_copies": sum(book.total_copies for book in books),
            "available_copies": sum(book.available_copies for book in books),
            "borrowed_copies": sum(book.borrowed_copies for book in books),
        }

    def borrower_fines(self, borrower_id: str) -> Dict[str, Any]:
        """Settled-or-not balances plus the fine still accruing on open loans."""
        as_of = ensure_aware(self.now())
        books = self._books_by_id()
        loans = self.store.list_loans(borrower_id=borrower_id)
        details = []
        for loan in loans:
            if loan.fine_amount <= 0:
                continue
            book = books.get(loan.book_id)
            details.append({
                "id": loan.id,
                "fine_amount": str(loan.fine_amount),
                "fine_paid_amount": str(loan.fine_paid_amount),
                "fine_waived_amount": str(loan.fine_waived_amount),
                "outstanding": str(loan.outstanding_fine),
                "return_date": loan.to_dict()["return_date"],
                "book": {
                    "title": book.title if book else None,
                    "author": book.author if book else None,
                },
            })
        calculated = sum(
            (self._accrued_fine(loan, books.get(loan.book_id), as_of) for loan in loans),
            Decimal("0.00"),
        )
        return {
            "total_fine_amount": str(policy.outstanding_fines(loans)),
            "calculated_fine_amount": str(calculated),
            "fine_details": details,
        }

    def dashboard(self, recent_limit: int = 5, popular_limit: int = 5) -> Dict[str, Any]:
        as_of = ensure_aware(self.now())
        books = self.store.list_books()
        loans = self.store.list_loans()
        active = [loan for loan in loans if loan.status == LoanStatus.ACTIVE]

        overview = self.book_summary(books)
        overview.update({
            "active_loans": len(active),
            "overdue_loans": sum(1 for loan in active if policy.is_overdue(loan, as_of)),
            "total_fines": str(policy.outstanding_fines(loans)),
        })

        categories: Dict[str, Dict[str, int]] = defaultdict(
            lambda: {"count": 0, "total_copies": 0, "available_copies": 0}
        )
        for book in books:
            stats = categories[book.category or "Uncategorized"]
            stats["count"] += 1
            stats["total_copies"] += book.total_copies
            stats["available_copies"] += book.available_copies
        category_stats = [
            {"category": name, **stats} for name, stats in sorted(categories.items())
        ]

        by_id = {book.id: book for book in books}
        recent = sorted(loans, key=lambda loan: loan.borrow_date, reverse=True)[:recent_limit]
        popularity = Counter(loan.book_id for loan in loans)
        popular = [
            {**by_id[book_id].to_dict(), "loan_count": count}
            for book_id, count in popularity.most_common()
            if book_id in by_id
        ][:popular_limit]

        return {
            "overview": overview,
            "category_stats": category_stats,
            "recent_loans": [self.loan_view(loan, by_id.get(loan.book_id)) for loan in recent],
            "popular_books": popular,
        }
