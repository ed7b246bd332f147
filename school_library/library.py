import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from . import policy
from .book import COUNTER_FIELDS, EDITABLE_FIELDS, Book, to_money
from .clock import Clock, ensure_aware, utc_now
from .config import AppSettings, PolicyConfig, settings
from .database import LibraryDatabase
from .errors import InvalidBookData, InvalidCopyCount, LibraryError
from .inventory import BookInventory
from .lifecycle import LoanLifecycle
from .loan import BorrowingStatus, Loan, LoanStatus
from .reporting import ReportingView
from .services.notifications import NotificationDispatcher
from .validators import ISBNValidator, TextValidator

logger = logging.getLogger(__name__)

MONEY_FIELDS = ("daily_fine_amount", "max_fine_amount")
TEXT_FIELDS = ("title", "author", "description")


def _make_store(app_settings: AppSettings, db_file: Optional[str]):
    if db_file is None and app_settings.backend_url:
        from .services.rest_storage import RestBackendStore

        return RestBackendStore.from_settings(app_settings)
    return LibraryDatabase(db_file or app_settings.db_file)


class Library:
    """Manages the catalog, circulation and reports of one school library.

    Wires the storage collaborator, the clock and the borrowing policy into
    BookInventory, LoanLifecycle and ReportingView, and offers the operations
    callers (the HTTP adapter, scripts) need.
    """

    def __init__(self, store=None, db_file: Optional[str] = None,
                 config: Optional[PolicyConfig] = None, now: Optional[Clock] = None,
                 notifier: Optional[NotificationDispatcher] = None,
                 app_settings: Optional[AppSettings] = None) -> None:
        self.store = store if store is not None else _make_store(app_settings or settings, db_file)
        self.config = config or self._load_policy()
        self.now = now or utc_now
        self.notifier = notifier or NotificationDispatcher()

        self.inventory = BookInventory(self.store, now=self.now)
        self.lifecycle = LoanLifecycle(
            self.store, self.inventory, self.config, now=self.now, notifier=self.notifier
        )
        self.reports = ReportingView(self.store, self.config, now=self.now)

    # ------------------------- Settings ------------------------- #
    def _load_policy(self) -> PolicyConfig:
        """Policy from the backend's settings document when the store has one,
        otherwise from the environment."""
        fetch = getattr(self.store, "fetch_policy_config", None)
        if fetch is not None:
            config = fetch()
            logger.info(f"Borrowing policy loaded from the library backend: {config.to_dict()}")
            return config
        return PolicyConfig.from_env()

    def update_policy(self, **changes: Any) -> PolicyConfig:
        """Swap in a new policy configuration built from the current one."""
        self.config = self.config.updated(**changes)
        self.lifecycle.config = self.config
        self.reports.config = self.config
        logger.info(f"Borrowing policy updated: {changes}")
        return self.config

    # ------------------------- Catalog ------------------------- #
    @staticmethod
    def _clean_isbn(isbn: Optional[str]) -> Optional[str]:
        if not isbn:
            return None
        normalized = ISBNValidator.normalize_isbn(isbn)
        if not ISBNValidator.is_valid_isbn(normalized):
            raise InvalidBookData(f"Invalid ISBN format: {isbn}")
        return normalized

    def create_book(self, title: str, author: str = "", isbn: Optional[str] = None,
                    total_copies: int = 1, **fields: Any) -> Book:
        """Catalog a new title; every copy starts out available."""
        if not TextValidator.validate_title(TextValidator.sanitize_text(title)):
            raise InvalidBookData("Title is required.")
        if int(total_copies) < 0:
            raise InvalidCopyCount("Total copies cannot be negative.")
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise InvalidBookData(f"Unknown book fields: {', '.join(sorted(unknown))}")

        fields.setdefault("max_borrow_days", self.config.default_loan_days)
        fields.setdefault("max_renewals", self.config.max_renewals)
        fields.setdefault("daily_fine_amount", self.config.default_daily_fine)
        fields.setdefault("max_fine_amount", self.config.max_fine_amount)
        if not fields.get("barcode"):
            fields["barcode"] = str(uuid.uuid4().int)[:12]
        if fields.get("description"):
            fields["description"] = TextValidator.sanitize_text(fields["description"])

        now = ensure_aware(self.now())
        book = Book(
            book_id=uuid.uuid4().hex,
            title=TextValidator.sanitize_text(title),
            author=TextValidator.sanitize_text(author),
            isbn=self._clean_isbn(isbn),
            total_copies=int(total_copies),
            created_at=now,
            updated_at=now,
            **fields,
        )
        self._check_policy_fields(book)
        book = self.store.create_book(book)
        logger.info(f"Catalogued '{book.title}' ({book.id}) with {book.total_copies} copies")
        return book

    @staticmethod
    def _check_policy_fields(book: Book) -> None:
        if book.max_borrow_days < 1:
            raise InvalidBookData("max_borrow_days must be at least 1.")
        if book.max_renewals < 0:
            raise InvalidBookData("max_renewals cannot be negative.")
        if book.daily_fine_amount < 0 or book.max_fine_amount < 0:
            raise InvalidBookData("Fine amounts cannot be negative.")

    def get_book(self, book_id: str) -> Book:
        return self.inventory.get(book_id)

    def list_books(self, category: Optional[str] = None, available: Optional[bool] = None,
                   search: Optional[str] = None) -> List[Book]:
        return self.store.list_books(category=category, available=available, search=search)

    def update_book(self, book_id: str, **changes: Any) -> Book:
        """Edit bibliographic and policy fields. Copy counters are off limits here."""
        counters = set(changes) & set(COUNTER_FIELDS)
        if counters:
            raise InvalidBookData(
                f"Copy counters cannot be edited directly ({', '.join(sorted(counters))}); "
                "use the copy-count update."
            )
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise InvalidBookData(f"Unknown book fields: {', '.join(sorted(unknown))}")
        if not changes:
            raise InvalidBookData("Nothing to update.")
        if "title" in changes and not TextValidator.validate_title(
            TextValidator.sanitize_text(changes["title"])
        ):
            raise InvalidBookData("Title is required.")

        with self.inventory.lock(book_id):
            book = self.inventory.get(book_id)
            for name, value in changes.items():
                if name == "isbn":
                    value = self._clean_isbn(value)
                elif name in TEXT_FIELDS:
                    value = TextValidator.sanitize_text(value)
                elif name in MONEY_FIELDS:
                    value = to_money(value)
                elif name in ("max_borrow_days", "max_renewals"):
                    value = int(value)
                setattr(book, name, value)
            self._check_policy_fields(book)
            book.updated_at = ensure_aware(self.now())
            book = self.store.update_book(book)
        logger.info(f"Book {book_id} updated: {', '.join(sorted(changes))}")
        return book

    # ------------------------- Inventory ------------------------- #
    def update_copies(self, book_id: str, total_copies: int, operation: str = "set") -> Book:
        return self.inventory.set_total_copies(book_id, total_copies, operation)

    def reserve_copy_for_loan(self, book_id: str) -> Book:
        return self.inventory.reserve_copy_for_loan(book_id)

    def release_copy_from_loan(self, book_id: str) -> Book:
        return self.inventory.release_copy_from_loan(book_id)

    # ------------------------- Circulation ------------------------- #
    def borrowing_status(self, borrower_id: str, book_id: Optional[str] = None) -> BorrowingStatus:
        book = self.get_book(book_id) if book_id else None
        loans = self.store.list_loans(borrower_id=borrower_id)
        return policy.evaluate_eligibility(loans, self.config, book)

    def borrow(self, borrower_id: str, book_id: str, due_date: Optional[datetime] = None,
               notes: Optional[str] = None) -> Loan:
        return self.lifecycle.borrow(borrower_id, book_id, due_date, notes)

    def borrow_many(self, borrower_id: str, book_ids: List[str],
                    due_date: Optional[datetime] = None,
                    notes: Optional[str] = None) -> List[Dict[str, Any]]:
        """Issue several books as independent borrows.

        Earlier successes stay committed when a later book is refused; the
        result lists the outcome of every book in request order.
        """
        outcomes: List[Dict[str, Any]] = []
        for book_id in book_ids:
            try:
                loan = self.lifecycle.borrow(borrower_id, book_id, due_date, notes)
            except LibraryError as e:
                outcomes.append({"book_id": book_id, "success": False, "loan": None,
                                 "message": e.message})
            else:
                outcomes.append({"book_id": book_id, "success": True, "loan": loan,
                                 "message": "Book issued."})
        issued = sum(1 for outcome in outcomes if outcome["success"])
        logger.info(f"Issued {issued} of {len(book_ids)} books to {borrower_id}")
        return outcomes

    def renew(self, loan_id: str, new_due_date: Optional[datetime] = None) -> Loan:
        return self.lifecycle.renew(loan_id, new_due_date)

    def return_book(self, loan_id: str, condition: Any = "GOOD", notes: Optional[str] = None) -> Loan:
        return self.lifecycle.return_book(loan_id, condition, notes)

    def update_fine(self, loan_id: str, fine_amount: Any = None, paid_amount: Any = None,
                    waived_amount: Any = None, notes: Optional[str] = None) -> Loan:
        return self.lifecycle.update_fine(loan_id, fine_amount, paid_amount, waived_amount, notes)

    def pay_fine(self, loan_id: str, amount: Any, notes: Optional[str] = None) -> Loan:
        return self.lifecycle.pay_fine(loan_id, amount, notes)

    def waive_fine(self, loan_id: str, amount: Any, notes: Optional[str] = None) -> Loan:
        return self.lifecycle.waive_fine(loan_id, amount, notes)

    def compute_fine(self, loan_id: str) -> Decimal:
        """Current fine of a loan: accruing if open, frozen at return otherwise."""
        loan = self.get_loan(loan_id)
        book = self.get_book(loan.book_id)
        return policy.fine_for_book(loan, book, ensure_aware(self.now()), self.config)

    # ------------------------- Queries ------------------------- #
    def get_loan(self, loan_id: str) -> Loan:
        return self.lifecycle.get_loan(loan_id)

    def list_loans(self, status: Optional[str] = None, borrower_id: Optional[str] = None,
                   book_id: Optional[str] = None, overdue: Optional[bool] = None) -> List[Loan]:
        """Loans matching every filter given; ``OVERDUE`` is a derived status."""
        if status:
            status = LoanStatus(status.upper())
        if status == LoanStatus.OVERDUE:
            status, overdue = LoanStatus.ACTIVE, True
        loans = self.store.list_loans(borrower_id=borrower_id, book_id=book_id, status=status)
        if overdue is not None:
            as_of = ensure_aware(self.now())
            loans = [loan for loan in loans if policy.is_overdue(loan, as_of) == overdue]
        return loans

    def active_loans(self, borrower_id: Optional[str] = None) -> List[Loan]:
        return self.reports.active_loans(borrower_id)

    def overdue_loans(self, borrower_id: Optional[str] = None) -> List[Loan]:
        return self.reports.overdue_loans(borrower_id)

    def due_soon(self, within_days: Optional[int] = None) -> List[Loan]:
        return self.reports.due_soon(within_days)

    def borrower_loans(self, borrower_id: str) -> List[Loan]:
        return self.store.list_loans(borrower_id=borrower_id)

    # ------------------------- Reports ------------------------- #
    def borrower_fines(self, borrower_id: str) -> Dict[str, Any]:
        return self.reports.borrower_fines(borrower_id)

    def loan_summary(self) -> Dict[str, int]:
        return self.reports.loan_summary()

    def book_summary(self) -> Dict[str, int]:
        return self.reports.book_summary()

    def get_statistics(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = self.reports.book_summary()
        loans = self.reports.loan_summary()
        stats["active_borrows"] = loans["active"]
        stats["overdue_books"] = loans["overdue"]
        stats["total_genres"] = len({b.category for b in self.store.list_books() if b.category})
        return stats

    def dashboard(self, recent_limit: int = 5, popular_limit: int = 5) -> Dict[str, Any]:
        return self.reports.dashboard(recent_limit, popular_limit)

    def close(self) -> None:
        """Release the storage collaborator's resources."""
        self.store.close()
