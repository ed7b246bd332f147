from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from .clock import format_datetime, parse_datetime

CENTS = Decimal("0.01")

# Counter fields only change through BookInventory.
COUNTER_FIELDS = ("total_copies", "available_copies", "borrowed_copies", "reserved_copies")

# Bibliographic and policy fields a catalog update may touch.
EDITABLE_FIELDS = (
    "isbn", "barcode", "title", "author", "publisher", "category", "format",
    "location", "publication_year", "edition", "language", "pages", "description",
    "max_borrow_days", "max_renewals", "is_reservable", "daily_fine_amount",
    "max_fine_amount", "is_active",
)


def to_money(value: Any) -> Decimal:
    """Coerce a number or numeric string to a two-decimal amount."""
    if value is None or value == "":
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


class Book:
    """A catalogued title and the counters of its copies."""

    def __init__(self, book_id: str, title: str, author: str = "", isbn: Optional[str] = None,
                 barcode: Optional[str] = None, publisher: Optional[str] = None,
                 category: Optional[str] = None, format: str = "PHYSICAL",
                 location: Optional[str] = None, publication_year: Optional[int] = None,
                 edition: Optional[str] = None, language: Optional[str] = None,
                 pages: Optional[int] = None, description: Optional[str] = None,
                 # Copy counters
                 total_copies: int = 1, available_copies: Optional[int] = None,
                 borrowed_copies: int = 0, reserved_copies: int = 0,
                 # Borrowing policy
                 max_borrow_days: int = 14, max_renewals: int = 2, is_reservable: bool = True,
                 daily_fine_amount: Any = 0, max_fine_amount: Any = 50,
                 is_active: bool = True, created_at: Any = None, updated_at: Any = None) -> None:
        self.id = book_id
        self.title = title.strip()
        self.author = (author or "").strip()
        self.isbn = isbn
        self.barcode = barcode
        self.publisher = publisher
        self.category = category
        self.format = format
        self.location = location
        self.publication_year = publication_year
        self.edition = edition
        self.language = language
        self.pages = pages
        self.description = description

        self.total_copies = int(total_copies)
        self.borrowed_copies = int(borrowed_copies)
        self.reserved_copies = int(reserved_copies)
        if available_copies is None:
            available_copies = self.total_copies - self.borrowed_copies - self.reserved_copies
        self.available_copies = int(available_copies)

        self.max_borrow_days = int(max_borrow_days)
        self.max_renewals = int(max_renewals)
        self.is_reservable = bool(is_reservable)
        self.daily_fine_amount = to_money(daily_fine_amount)
        self.max_fine_amount = to_money(max_fine_amount)

        self.is_active = bool(is_active)
        self.created_at = parse_datetime(created_at)
        self.updated_at = parse_datetime(updated_at)

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available_copies}/{self.total_copies} available)"

    def __repr__(self) -> str:  # pragma: no cover
        return f"Book(id={self.id!r}, title={self.title!r})"

    def counters_consistent(self) -> bool:
        counters = (self.available_copies, self.borrowed_copies, self.reserved_copies)
        return (
            all(c >= 0 for c in counters)
            and sum(counters) == self.total_copies
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "isbn": self.isbn,
            "barcode": self.barcode,
            "title": self.title,
            "author": self.author,
            "publisher": self.publisher,
            "category": self.category,
            "format": self.format,
            "location": self.location,
            "publication_year": self.publication_year,
            "edition": self.edition,
            "language": self.language,
            "pages": self.pages,
            "description": self.description,
            # Copy counters
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "borrowed_copies": self.borrowed_copies,
            "reserved_copies": self.reserved_copies,
            # Borrowing policy
            "max_borrow_days": self.max_borrow_days,
            "max_renewals": self.max_renewals,
            "is_reservable": self.is_reservable,
            "daily_fine_amount": str(self.daily_fine_amount),
            "max_fine_amount": str(self.max_fine_amount),
            "is_active": self.is_active,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        # SQLite hands booleans back as 0/1
        optional = {
            key: data[key]
            for key in (
                "isbn", "barcode", "publisher", "category", "location", "publication_year",
                "edition", "language", "pages", "description", "available_copies",
                "created_at", "updated_at",
            )
            if key in data
        }
        return Book(
            book_id=data["id"],
            title=data["title"],
            author=data.get("author") or "",
            format=data.get("format") or "PHYSICAL",
            total_copies=data.get("total_copies", 1),
            borrowed_copies=data.get("borrowed_copies") or 0,
            reserved_copies=data.get("reserved_copies") or 0,
            max_borrow_days=data.get("max_borrow_days", 14),
            max_renewals=data.get("max_renewals", 2),
            is_reservable=bool(data.get("is_reservable", True)),
            daily_fine_amount=data.get("daily_fine_amount", 0),
            max_fine_amount=data.get("max_fine_amount", 50),
            is_active=bool(data.get("is_active", True)),
            **optional,
        )
