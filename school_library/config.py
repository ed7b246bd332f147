import os
from dataclasses import dataclass, fields, replace
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

from .book import to_money

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class AppSettings:
    # Storage
    db_file: str = os.getenv("LIBRARY_DB_FILE", "school_library.db")
    backend_url: Optional[str] = os.getenv("LIBRARY_BACKEND_URL")
    backend_token: Optional[str] = os.getenv("LIBRARY_BACKEND_TOKEN")

    # HTTP client for the REST backend
    http_timeout: float = float(os.getenv("LIBRARY_HTTP_TIMEOUT", "10"))
    http_retries: int = int(os.getenv("LIBRARY_HTTP_RETRIES", "3"))
    http_backoff: float = float(os.getenv("LIBRARY_HTTP_BACKOFF", "0.5"))

    # Application
    app_name: str = os.getenv("APP_NAME", "School Library")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = _env_bool("DEBUG", "False")


settings = AppSettings()


@dataclass(frozen=True)
class PolicyConfig:
    """Library-wide borrowing rules.

    Passed explicitly into every policy evaluation; there is no shared
    mutable copy. Use ``dataclasses.replace`` (or :meth:`updated`) to derive
    a changed configuration.
    """

    max_books_per_user: int = 5
    default_loan_days: int = 14
    max_renewals: int = 2
    # None means "extend by the book's own max_borrow_days".
    renewal_extension_days: Optional[int] = None
    fine_grace_days: int = 0
    default_daily_fine: Decimal = Decimal("0.00")
    max_fine_amount: Decimal = Decimal("50.00")
    # Outstanding balances strictly above this block borrowing.
    fine_block_threshold: Decimal = Decimal("0.00")
    borrowing_enabled: bool = True
    due_date_reminder_days: int = 2

    def __post_init__(self) -> None:
        for name in ("default_daily_fine", "max_fine_amount", "fine_block_threshold"):
            object.__setattr__(self, name, to_money(getattr(self, name)))
        if self.max_books_per_user < 0:
            raise ValueError("max_books_per_user must be >= 0")
        if self.default_loan_days < 1:
            raise ValueError("default_loan_days must be >= 1")
        if self.max_renewals < 0 or self.fine_grace_days < 0:
            raise ValueError("max_renewals and fine_grace_days must be >= 0")
        if self.renewal_extension_days is not None and self.renewal_extension_days < 1:
            raise ValueError("renewal_extension_days must be >= 1")

    def updated(self, **changes: Any) -> "PolicyConfig":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        for key, value in data.items():
            if isinstance(value, Decimal):
                data[key] = str(value)
        return data

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PolicyConfig":
        """Build from snake_case keys, ignoring anything unknown."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known and v is not None})

    @classmethod
    def from_env(cls) -> "PolicyConfig":
        values: Dict[str, Any] = {}
        ints = {
            "max_books_per_user": "LIBRARY_MAX_BOOKS_PER_USER",
            "default_loan_days": "LIBRARY_DEFAULT_LOAN_DAYS",
            "max_renewals": "LIBRARY_MAX_RENEWALS",
            "renewal_extension_days": "LIBRARY_RENEWAL_EXTENSION_DAYS",
            "fine_grace_days": "LIBRARY_FINE_GRACE_DAYS",
            "due_date_reminder_days": "LIBRARY_DUE_DATE_REMINDER_DAYS",
        }
        amounts = {
            "default_daily_fine": "LIBRARY_DEFAULT_DAILY_FINE",
            "max_fine_amount": "LIBRARY_MAX_FINE_AMOUNT",
            "fine_block_threshold": "LIBRARY_FINE_BLOCK_THRESHOLD",
        }
        for name, var in ints.items():
            raw = os.getenv(var)
            if raw:
                values[name] = int(raw)
        for name, var in amounts.items():
            raw = os.getenv(var)
            if raw:
                values[name] = Decimal(raw)
        if os.getenv("LIBRARY_BORROWING_ENABLED"):
            values["borrowing_enabled"] = _env_bool("LIBRARY_BORROWING_ENABLED", "True")
        return cls(**values)
