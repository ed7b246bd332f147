"""REST backend storage collaborator.

The backend has answered the same logical list in several envelopes over
time (``{"data": [...]}``, ``{"data": {"data": [...], "pagination": ...}}``,
``{"data": {"loans": [...]}}`` or a bare list) and uses camelCase keys.
All of that is absorbed here; the engine only ever sees ``Book`` and
``Loan`` objects.
"""

import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from ..book import Book
from ..config import AppSettings, PolicyConfig
from ..errors import ExternalServiceError
from ..loan import Loan, LoanStatus
from .http_client import BackendHTTPClient

logger = logging.getLogger(__name__)

PAGE_SIZE = 100

# Flat key -> nested (section, key) fallbacks seen in the settings document.
SETTINGS_ALIASES = {
    "max_books_per_user": [("general", "maxBorrowLimit")],
    "default_loan_days": [("borrowing", "defaultLoanPeriod")],
    "max_renewals": [("borrowing", "maxRenewals")],
    "fine_grace_days": [("borrowing", "gracePeriodDays")],
    "default_daily_fine": [("borrowing", "dailyFineAmount")],
    "max_fine_amount": [("borrowing", "maxFineAmount")],
    "due_date_reminder_days": [("notifications", "dueSoonReminderDays")],
}


def to_snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def to_camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)


def _snake_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {to_snake(k): v for k, v in data.items()}


def _camel_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {to_camel(k): v for k, v in data.items()}


def unwrap_item(payload: Any) -> Dict[str, Any]:
    """Dig the single record out of whatever envelope surrounds it."""
    item = payload
    while isinstance(item, dict) and "id" not in item:
        if isinstance(item.get("data"), dict):
            item = item["data"]
            continue
        nested = [v for k, v in item.items() if k in ("book", "loan", "item") and isinstance(v, dict)]
        if len(nested) == 1:
            item = nested[0]
            continue
        break
    if not isinstance(item, dict) or "id" not in item:
        raise ExternalServiceError("Unexpected response shape from library backend.")
    return item


def unwrap_list(payload: Any, *keys: str) -> List[Dict[str, Any]]:
    """Dig the list of records out of whatever envelope surrounds it."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("data",) + keys + ("items", "results"):
            value = payload.get(key)
            if isinstance(value, list):
                return value
            if isinstance(value, dict) and key == "data":
                return unwrap_list(value, *keys)
    raise ExternalServiceError("Unexpected list response shape from library backend.")


def _total_pages(payload: Any) -> int:
    """Page count from a pagination block at the top or one level down."""
    for holder in (payload, payload.get("data") if isinstance(payload, dict) else None):
        if isinstance(holder, dict) and isinstance(holder.get("pagination"), dict):
            return int(holder["pagination"].get("totalPages") or 1)
    return 1


def policy_from_settings_document(document: Dict[str, Any]) -> PolicyConfig:
    """Build a PolicyConfig from a flat or nested settings document."""
    flat = _snake_keys({k: v for k, v in document.items() if not isinstance(v, dict)})
    for name, aliases in SETTINGS_ALIASES.items():
        if flat.get(name) is not None:
            continue
        for section, key in aliases:
            value = (document.get(section) or {}).get(key)
            if value is not None:
                flat[name] = value
                break
    if "is_active" in flat and "borrowing_enabled" not in flat:
        flat["borrowing_enabled"] = flat["is_active"]
    return PolicyConfig.from_mapping(flat)


class RestBackendStore:
    """Storage operations mapped onto the library REST API."""

    def __init__(self, client: BackendHTTPClient) -> None:
        self.client = client

    @classmethod
    def from_settings(cls, app_settings: AppSettings,
                      transport: Optional[httpx.BaseTransport] = None) -> "RestBackendStore":
        if not app_settings.backend_url:
            raise ValueError("LIBRARY_BACKEND_URL is not configured.")
        client = BackendHTTPClient(
            app_settings.backend_url,
            token=app_settings.backend_token,
            timeout=app_settings.http_timeout,
            retries=app_settings.http_retries,
            backoff=app_settings.http_backoff,
            transport=transport,
        )
        return cls(client)

    # ------------------------- Transport ------------------------- #
    @staticmethod
    def _check(response: httpx.Response) -> Any:
        if response.status_code >= 400:
            message = response.reason_phrase
            try:
                body = response.json()
                if isinstance(body, dict):
                    message = body.get("message") or body.get("detail") or message
            except ValueError:
                pass
            raise ExternalServiceError(
                f"Library backend returned {response.status_code}: {message}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise ExternalServiceError("Library backend returned invalid JSON.") from e

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        try:
            response = self.client.get_with_retry(path, params=params)
        except httpx.RequestError as e:
            raise ExternalServiceError(f"Library backend unreachable: {e}") from e
        if response.status_code == 404:
            return None
        return self._check(response)

    def _send(self, method: str, path: str, payload: Dict[str, Any]) -> Any:
        try:
            response = self.client.request(method, path, json=payload)
        except httpx.RequestError as e:
            raise ExternalServiceError(f"Library backend unreachable: {e}") from e
        return self._check(response)

    def _get_all(self, path: str, params: Dict[str, Any], *keys: str) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        page = 1
        while True:
            payload = self._get(path, {**params, "page": page, "limit": PAGE_SIZE})
            if payload is None:
                return records
            records.extend(unwrap_list(payload, *keys))
            if page >= _total_pages(payload):
                return records
            page += 1

    # ------------------------- Books ------------------------- #
    @staticmethod
    def _book(record: Dict[str, Any]) -> Book:
        return Book.from_dict(_snake_keys(record))

    @staticmethod
    def _book_payload(book: Book) -> Dict[str, Any]:
        return _camel_keys(book.to_dict())

    def get_book(self, book_id: str) -> Optional[Book]:
        payload = self._get(f"/library/books/{book_id}")
        return self._book(unwrap_item(payload)) if payload is not None else None

    def create_book(self, book: Book) -> Book:
        return self._book(unwrap_item(self._send("POST", "/library/books", self._book_payload(book))))

    def update_book(self, book: Book) -> Book:
        payload = self._send("PUT", f"/library/books/{book.id}", self._book_payload(book))
        return self._book(unwrap_item(payload))

    def list_books(self, category: Optional[str] = None, available: Optional[bool] = None,
                   search: Optional[str] = None) -> List[Book]:
        params: Dict[str, Any] = {}
        if category:
            params["category"] = category
        if available is not None:
            params["available"] = "true" if available else "false"
        if search:
            params["search"] = search
        return [self._book(r) for r in self._get_all("/library/books", params, "books")]

    # ------------------------- Loans ------------------------- #
    @staticmethod
    def _loan(record: Dict[str, Any]) -> Loan:
        return Loan.from_dict(_snake_keys(record))

    @staticmethod
    def _loan_payload(loan: Loan) -> Dict[str, Any]:
        return _camel_keys(loan.to_dict())

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        payload = self._get(f"/library/loans/{loan_id}")
        return self._loan(unwrap_item(payload)) if payload is not None else None

    def create_loan(self, loan: Loan) -> Loan:
        return self._loan(unwrap_item(self._send("POST", "/library/loans", self._loan_payload(loan))))

    def update_loan(self, loan: Loan) -> Loan:
        payload = self._send("PUT", f"/library/loans/{loan.id}", self._loan_payload(loan))
        return self._loan(unwrap_item(payload))

    def list_loans(self, borrower_id: Optional[str] = None, book_id: Optional[str] = None,
                   status: Optional[LoanStatus] = None) -> List[Loan]:
        params: Dict[str, Any] = {}
        if borrower_id:
            params["borrowerId"] = borrower_id
        if book_id:
            params["bookId"] = book_id
        if status:
            params["status"] = LoanStatus(status).value
        loans = [self._loan(r) for r in self._get_all("/library/loans", params, "loans")]
        # Not every backend version honours the filters.
        return [
            loan for loan in loans
            if (not borrower_id or loan.borrower_id == borrower_id)
            and (not book_id or loan.book_id == book_id)
            and (not status or loan.status == LoanStatus(status))
        ]

    # ------------------------- Settings ------------------------- #
    def fetch_policy_config(self) -> PolicyConfig:
        payload = self._get("/library/settings")
        if payload is None:
            return PolicyConfig()
        document = payload.get("data", payload) if isinstance(payload, dict) else {}
        return policy_from_settings_document(document if isinstance(document, dict) else {})

    def close(self) -> None:
        self.client.close()
