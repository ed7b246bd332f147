from decimal import Decimal

import pytest

from school_library.config import PolicyConfig
from school_library.services.notifications import NotificationDispatcher, log_notification


def test_policy_defaults():
    config = PolicyConfig()
    assert config.max_books_per_user == 5
    assert config.default_loan_days == 14
    assert config.renewal_extension_days is None
    assert config.max_fine_amount == Decimal("50.00")
    assert config.borrowing_enabled is True


def test_policy_is_immutable():
    config = PolicyConfig()
    with pytest.raises(AttributeError):
        config.max_books_per_user = 10
    changed = config.updated(max_books_per_user=10)
    assert changed.max_books_per_user == 10
    assert config.max_books_per_user == 5


@pytest.mark.parametrize("changes", [
    {"max_books_per_user": -1},
    {"default_loan_days": 0},
    {"max_renewals": -1},
    {"fine_grace_days": -2},
    {"renewal_extension_days": 0},
])
def test_policy_validation(changes):
    with pytest.raises(ValueError):
        PolicyConfig(**changes)


def test_policy_from_env(monkeypatch):
    monkeypatch.setenv("LIBRARY_MAX_BOOKS_PER_USER", "3")
    monkeypatch.setenv("LIBRARY_FINE_BLOCK_THRESHOLD", "2.5")
    monkeypatch.setenv("LIBRARY_BORROWING_ENABLED", "false")
    config = PolicyConfig.from_env()
    assert config.max_books_per_user == 3
    assert config.fine_block_threshold == Decimal("2.50")
    assert config.borrowing_enabled is False
    assert config.default_loan_days == 14


def test_from_mapping_ignores_unknown_keys():
    config = PolicyConfig.from_mapping({"max_renewals": 4, "library_name": "Main", "fine_grace_days": None})
    assert config.max_renewals == 4
    assert config.fine_grace_days == 0


def test_to_dict_serializes_money():
    assert PolicyConfig(default_daily_fine=1).to_dict()["default_daily_fine"] == "1.00"


def test_dispatcher_survives_failing_handler(caplog):
    received = []

    def broken(event, loan):
        raise RuntimeError("mail server down")

    dispatcher = NotificationDispatcher([broken, lambda event, loan: received.append(event)])

    class StubLoan:
        id = "l1"
        borrower_id = "s1"
        book_id = "b1"

    dispatcher.dispatch("loan.issued", StubLoan())
    assert received == ["loan.issued"]
    assert "mail server down" in caplog.text


def test_default_dispatcher_logs():
    assert NotificationDispatcher().handlers == [log_notification]
