"""Thin HTTP adapter over :class:`~school_library.library.Library`.

Paths follow the ones the librarian console already calls. Every response
uses one envelope, ``{"success", "message", "data"}``; policy denials come
back with the engine's message verbatim so the console can show it.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Literal, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .config import settings
from .errors import (
    AlreadyReturned,
    BorrowingDenied,
    ExternalServiceError,
    InvariantViolation,
    LibraryError,
    RenewalDenied,
)
from .library import Library
from .loan import ReturnCondition

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

_library: Optional[Library] = None


def get_library() -> Library:
    """Process-wide Library, created on first use."""
    global _library
    if _library is None:
        _library = Library()
    return _library


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        yield
    finally:
        # Release the storage collaborator (HTTP pool or nothing for SQLite)
        if _library is not None:
            _library.close()


app = FastAPI(title=f"{settings.app_name} API", version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def ok(data: Any = None, message: str = "OK") -> dict:
    return {"success": True, "message": message, "data": data}


# --- Errors ---
def _status_for(exc: LibraryError) -> int:
    if isinstance(exc, LookupError):
        return 404
    if isinstance(exc, (BorrowingDenied, RenewalDenied, AlreadyReturned)):
        return 409
    if isinstance(exc, ExternalServiceError):
        return 502
    return 400


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    return JSONResponse(
        status_code=_status_for(exc),
        content={"success": False, "message": exc.message, "data": None},
    )


@app.exception_handler(InvariantViolation)
async def invariant_violation_handler(request: Request, exc: InvariantViolation):
    logger.critical(f"Bookkeeping invariant broken on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal bookkeeping error.", "data": None},
    )


# --- Request models ---
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BookCreateModel(CamelModel):
    title: str
    author: str = ""
    isbn: Optional[str] = None
    total_copies: int = Field(1, ge=0)
    barcode: Optional[str] = None
    publisher: Optional[str] = None
    category: Optional[str] = None
    format: Literal["PHYSICAL", "DIGITAL"] = "PHYSICAL"
    location: Optional[str] = None
    publication_year: Optional[int] = None
    edition: Optional[str] = None
    language: Optional[str] = None
    pages: Optional[int] = None
    description: Optional[str] = None
    max_borrow_days: Optional[int] = Field(None, ge=1)
    max_renewals: Optional[int] = Field(None, ge=0)
    is_reservable: bool = True
    daily_fine_amount: Optional[Decimal] = Field(None, ge=0)
    max_fine_amount: Optional[Decimal] = Field(None, ge=0)


class BookUpdateModel(CamelModel):
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    category: Optional[str] = None
    format: Optional[Literal["PHYSICAL", "DIGITAL"]] = None
    location: Optional[str] = None
    publication_year: Optional[int] = None
    edition: Optional[str] = None
    language: Optional[str] = None
    pages: Optional[int] = None
    description: Optional[str] = None
    max_borrow_days: Optional[int] = Field(None, ge=1)
    max_renewals: Optional[int] = Field(None, ge=0)
    is_reservable: Optional[bool] = None
    daily_fine_amount: Optional[Decimal] = Field(None, ge=0)
    max_fine_amount: Optional[Decimal] = Field(None, ge=0)
    is_active: Optional[bool] = None


class CopyUpdateModel(CamelModel):
    total_copies: int = Field(..., ge=0)
    operation: Literal["add", "subtract", "set"] = "set"


class BorrowModel(CamelModel):
    borrower_id: str
    due_date: Optional[datetime] = None
    notes: Optional[str] = None


class IssueModel(BorrowModel):
    book_ids: List[str] = Field(..., min_length=1)


class ReturnModel(CamelModel):
    condition: ReturnCondition
    notes: Optional[str] = None


class RenewModel(CamelModel):
    new_due_date: Optional[datetime] = None


class FineUpdateModel(CamelModel):
    fine_amount: Optional[Decimal] = Field(None, ge=0)
    paid_amount: Optional[Decimal] = Field(None, ge=0)
    waived_amount: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None


class SettingsUpdateModel(CamelModel):
    max_books_per_user: Optional[int] = Field(None, ge=0)
    default_loan_days: Optional[int] = Field(None, ge=1)
    max_renewals: Optional[int] = Field(None, ge=0)
    renewal_extension_days: Optional[int] = Field(None, ge=1)
    fine_grace_days: Optional[int] = Field(None, ge=0)
    default_daily_fine: Optional[Decimal] = Field(None, ge=0)
    max_fine_amount: Optional[Decimal] = Field(None, ge=0)
    fine_block_threshold: Optional[Decimal] = Field(None, ge=0)
    borrowing_enabled: Optional[bool] = None
    due_date_reminder_days: Optional[int] = Field(None, ge=0)


# --- Health ---
@app.get("/health")
def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.app_version,
    }


# --- Books ---
@app.get("/library/books")
def list_books(
    category: Optional[str] = None,
    available: Optional[bool] = None,
    search: Optional[str] = None,
    library: Library = Depends(get_library),
):
    books = library.list_books(category=category, available=available, search=search)
    return {
        **ok([b.to_dict() for b in books], f"{len(books)} books"),
        "summary": library.reports.book_summary(books),
    }


@app.post("/library/books", status_code=201)
def create_book(payload: BookCreateModel, library: Library = Depends(get_library)):
    fields = payload.model_dump(exclude_none=True)
    book = library.create_book(
        fields.pop("title"), fields.pop("author", ""), fields.pop("isbn", None),
        fields.pop("total_copies", 1), **fields,
    )
    return ok(book.to_dict(), "Book created")


@app.get("/library/books/{book_id}")
def get_book(book_id: str, library: Library = Depends(get_library)):
    return ok(library.get_book(book_id).to_dict())


@app.put("/library/books/{book_id}")
def update_book(book_id: str, payload: BookUpdateModel, library: Library = Depends(get_library)):
    book = library.update_book(book_id, **payload.model_dump(exclude_none=True))
    return ok(book.to_dict(), "Book updated")


@app.put("/library/books/{book_id}/copies")
def update_copies(book_id: str, payload: CopyUpdateModel, library: Library = Depends(get_library)):
    book = library.update_copies(book_id, payload.total_copies, payload.operation)
    return ok(book.to_dict(), "Copies updated")


# --- Circulation ---
@app.post("/library/books/{book_id}/borrow", status_code=201)
def borrow_book(book_id: str, payload: BorrowModel, library: Library = Depends(get_library)):
    loan = library.borrow(payload.borrower_id, book_id, payload.due_date, payload.notes)
    return ok(library.reports.loan_view(loan, library.get_book(book_id)), "Book issued")


@app.post("/library/issue")
def issue_books(payload: IssueModel, library: Library = Depends(get_library)):
    outcomes = library.borrow_many(payload.borrower_id, payload.book_ids, payload.due_date, payload.notes)
    data = [
        {**outcome, "loan": outcome["loan"].to_dict() if outcome["loan"] else None}
        for outcome in outcomes
    ]
    issued = sum(1 for outcome in outcomes if outcome["success"])
    return {
        "success": issued > 0,
        "message": f"Issued {issued} of {len(outcomes)} books",
        "data": data,
    }


@app.post("/library/loans/{loan_id}/return")
def return_book(loan_id: str, payload: ReturnModel, library: Library = Depends(get_library)):
    loan = library.return_book(loan_id, payload.condition, payload.notes)
    return ok(library.reports.loan_view(loan), "Book returned")


@app.post("/library/loans/{loan_id}/renew")
def renew_loan(loan_id: str, payload: Optional[RenewModel] = None,
               library: Library = Depends(get_library)):
    loan = library.renew(loan_id, payload.new_due_date if payload else None)
    return ok(library.reports.loan_view(loan), "Loan renewed")


@app.put("/library/loans/{loan_id}/fine")
def update_fine(loan_id: str, payload: FineUpdateModel, library: Library = Depends(get_library)):
    loan = library.update_fine(
        loan_id, payload.fine_amount, payload.paid_amount, payload.waived_amount, payload.notes
    )
    return ok(library.reports.loan_view(loan), "Fine updated")


@app.get("/library/loans")
def list_loans(
    status: Optional[Literal["ACTIVE", "RETURNED", "OVERDUE"]] = None,
    borrower_id: Optional[str] = Query(None, alias="borrowerId"),
    book_id: Optional[str] = Query(None, alias="bookId"),
    overdue: Optional[bool] = None,
    library: Library = Depends(get_library),
):
    loans = library.list_loans(status=status, borrower_id=borrower_id, book_id=book_id, overdue=overdue)
    return {**ok(library.reports.loan_views(loans)), "summary": library.reports.loan_summary(loans)}


@app.get("/library/loans/active")
def active_loans(library: Library = Depends(get_library)):
    return ok(library.reports.loan_views(library.active_loans()))


@app.get("/library/loans/overdue")
def overdue_loans(library: Library = Depends(get_library)):
    return ok(library.reports.loan_views(library.overdue_loans()))


@app.get("/library/loans/due-soon")
def due_soon_loans(days: Optional[int] = Query(None, ge=0), library: Library = Depends(get_library)):
    return ok(library.reports.loan_views(library.due_soon(days)))


@app.get("/library/loans/{loan_id}")
def get_loan(loan_id: str, library: Library = Depends(get_library)):
    loan = library.get_loan(loan_id)
    return ok(library.reports.loan_view(loan, library.get_book(loan.book_id)))


# --- Borrowers ---
@app.get("/users/{borrower_id}/borrowing-status")
def borrowing_status(borrower_id: str, book_id: Optional[str] = Query(None, alias="bookId"),
                     library: Library = Depends(get_library)):
    status = library.borrowing_status(borrower_id, book_id)
    return ok(status.to_dict(), status.message)


@app.get("/users/{borrower_id}/loans")
def borrower_loans(borrower_id: str, library: Library = Depends(get_library)):
    return ok(library.reports.loan_views(library.borrower_loans(borrower_id)))


@app.get("/users/{borrower_id}/fines")
def borrower_fines(borrower_id: str, library: Library = Depends(get_library)):
    return ok(library.borrower_fines(borrower_id))


# --- Reports and settings ---
@app.get("/library/dashboard")
def dashboard(library: Library = Depends(get_library)):
    return ok(library.dashboard())


@app.get("/library/statistics")
def statistics(library: Library = Depends(get_library)):
    return ok(library.get_statistics())


@app.get("/library/settings")
def get_settings(library: Library = Depends(get_library)):
    return ok(library.config.to_dict())


@app.put("/library/settings")
def update_settings(payload: SettingsUpdateModel, library: Library = Depends(get_library)):
    changes = payload.model_dump(exclude_none=True)
    try:
        config = library.update_policy(**changes)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"success": False, "message": str(e), "data": None})
    return ok(config.to_dict(), "Settings updated")
