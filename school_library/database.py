"""SQLite storage collaborator for books and loans.

Every public method opens its own connection, so one ``LibraryDatabase`` can
be shared between request threads. Atomicity is per entity: a single
INSERT or UPDATE inside one transaction.
"""

import logging
import os
import sqlite3
from typing import List, Optional

from .book import Book
from .config import settings
from .errors import BookNotFound, InvalidBookData, LoanNotFound
from .loan import Loan, LoanStatus

logger = logging.getLogger(__name__)

# Priority: LIBRARY_DB_FILE from the environment, then AppSettings' default.
DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE") or settings.db_file

BOOK_COLUMNS = (
    "id", "isbn", "barcode", "title", "author", "publisher", "category", "format",
    "location", "publication_year", "edition", "language", "pages", "description",
    "total_copies", "available_copies", "borrowed_copies", "reserved_copies",
    "max_borrow_days", "max_renewals", "is_reservable", "daily_fine_amount",
    "max_fine_amount", "is_active", "created_at", "updated_at",
)

LOAN_COLUMNS = (
    "id", "borrower_id", "book_id", "borrow_date", "due_date", "return_date", "status",
    "renewal_count", "fine_amount", "fine_paid_amount", "fine_waived_amount",
    "condition", "notes",
)


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database."""
    conn = sqlite3.connect(db_file or DATABASE_FILE, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def create_tables(conn: sqlite3.Connection) -> None:
    """Create the tables if they do not exist yet."""
    cursor = conn.cursor()
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS books (
            id TEXT PRIMARY KEY,
            isbn TEXT,
            barcode TEXT,
            title TEXT NOT NULL,
            author TEXT NOT NULL DEFAULT '',
            publisher TEXT,
            category TEXT,
            format TEXT NOT NULL DEFAULT 'PHYSICAL',
            location TEXT,
            publication_year INTEGER,
            edition TEXT,
            language TEXT,
            pages INTEGER,
            description TEXT,
            total_copies INTEGER NOT NULL CHECK(total_copies >= 0),
            available_copies INTEGER NOT NULL CHECK(available_copies >= 0),
            borrowed_copies INTEGER NOT NULL DEFAULT 0 CHECK(borrowed_copies >= 0),
            reserved_copies INTEGER NOT NULL DEFAULT 0 CHECK(reserved_copies >= 0),
            max_borrow_days INTEGER NOT NULL,
            max_renewals INTEGER NOT NULL,
            is_reservable INTEGER NOT NULL DEFAULT 1,
            daily_fine_amount TEXT NOT NULL,
            max_fine_amount TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMP,
            updated_at TIMESTAMP
        )
    """)

    # Loans are never deleted; they are the audit trail.
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS loans (
            id TEXT PRIMARY KEY,
            borrower_id TEXT NOT NULL,
            book_id TEXT NOT NULL,
            borrow_date TIMESTAMP NOT NULL,
            due_date TIMESTAMP NOT NULL,
            return_date TIMESTAMP,
            status TEXT NOT NULL CHECK(status IN ('ACTIVE', 'RETURNED')),
            renewal_count INTEGER NOT NULL DEFAULT 0,
            fine_amount TEXT NOT NULL DEFAULT '0.00',
            fine_paid_amount TEXT NOT NULL DEFAULT '0.00',
            fine_waived_amount TEXT NOT NULL DEFAULT '0.00',
            condition TEXT,
            notes TEXT,
            FOREIGN KEY (book_id) REFERENCES books(id)
        )
    """)

    cursor.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_books_barcode ON books(barcode)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_category ON books(category)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_borrower_status ON loans(borrower_id, status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_book_status ON loans(book_id, status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_due_date ON loans(due_date)")
    conn.commit()


def _book_row(book: Book) -> tuple:
    data = book.to_dict()
    data["is_reservable"] = int(book.is_reservable)
    data["is_active"] = int(book.is_active)
    return tuple(data[column] for column in BOOK_COLUMNS)


def _loan_row(loan: Loan) -> tuple:
    data = loan.to_dict()
    return tuple(data[column] for column in LOAN_COLUMNS)


class LibraryDatabase:
    """Books and loans persisted in a single SQLite file."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or DATABASE_FILE
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            create_tables(conn)
        finally:
            conn.close()
        logger.debug(f"SQLite store ready at {self.db_file}")

    def _connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_file)

    # ------------------------- Books ------------------------- #
    def get_book(self, book_id: str) -> Optional[Book]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def create_book(self, book: Book) -> Book:
        placeholders = ", ".join("?" for _ in BOOK_COLUMNS)
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    f"INSERT INTO books ({', '.join(BOOK_COLUMNS)}) VALUES ({placeholders})",
                    _book_row(book),
                )
            return book
        except sqlite3.IntegrityError as e:
            raise InvalidBookData(
                f"A book with id {book.id} or barcode {book.barcode} already exists."
            ) from e
        finally:
            conn.close()

    def update_book(self, book: Book) -> Book:
        assignments = ", ".join(f"{column} = ?" for column in BOOK_COLUMNS[1:])
        row = _book_row(book)
        conn = self._connect()
        try:
            with conn:
                cursor = conn.execute(
                    f"UPDATE books SET {assignments} WHERE id = ?", row[1:] + (book.id,)
                )
            if cursor.rowcount == 0:
                raise BookNotFound(book.id)
            return book
        finally:
            conn.close()

    def list_books(self, category: Optional[str] = None, available: Optional[bool] = None,
                   search: Optional[str] = None) -> List[Book]:
        clauses, params = [], []
        if category:
            clauses.append("LOWER(category) = LOWER(?)")
            params.append(category)
        if available is True:
            clauses.append("available_copies > 0")
        elif available is False:
            clauses.append("available_copies = 0")
        if search:
            like = f"%{search.strip().lower()}%"
            clauses.append(
                "(LOWER(title) LIKE ? OR LOWER(author) LIKE ? OR LOWER(COALESCE(isbn, '')) LIKE ?"
                " OR LOWER(COALESCE(barcode, '')) LIKE ?)"
            )
            params.extend([like] * 4)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = self._connect()
        try:
            rows = conn.execute(f"SELECT * FROM books{where} ORDER BY title", params).fetchall()
            return [Book.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    # ------------------------- Loans ------------------------- #
    def get_loan(self, loan_id: str) -> Optional[Loan]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM loans WHERE id = ?", (loan_id,)).fetchone()
            return Loan.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def create_loan(self, loan: Loan) -> Loan:
        placeholders = ", ".join("?" for _ in LOAN_COLUMNS)
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    f"INSERT INTO loans ({', '.join(LOAN_COLUMNS)}) VALUES ({placeholders})",
                    _loan_row(loan),
                )
            return loan
        finally:
            conn.close()

    def update_loan(self, loan: Loan) -> Loan:
        assignments = ", ".join(f"{column} = ?" for column in LOAN_COLUMNS[1:])
        row = _loan_row(loan)
        conn = self._connect()
        try:
            with conn:
                cursor = conn.execute(
                    f"UPDATE loans SET {assignments} WHERE id = ?", row[1:] + (loan.id,)
                )
            if cursor.rowcount == 0:
                raise LoanNotFound(loan.id)
            return loan
        finally:
            conn.close()

    def list_loans(self, borrower_id: Optional[str] = None, book_id: Optional[str] = None,
                   status: Optional[LoanStatus] = None) -> List[Loan]:
        clauses, params = [], []
        if borrower_id:
            clauses.append("borrower_id = ?")
            params.append(borrower_id)
        if book_id:
            clauses.append("book_id = ?")
            params.append(book_id)
        if status:
            clauses.append("status = ?")
            params.append(LoanStatus(status).value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT * FROM loans{where} ORDER BY borrow_date DESC, id", params
            ).fetchall()
            return [Loan.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def close(self) -> None:
        # Connections are per call; nothing is held open.
        pass
