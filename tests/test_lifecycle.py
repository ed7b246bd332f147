import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import START
from school_library.errors import (
    AlreadyReturned,
    BorrowingDenied,
    InvalidDueDate,
    InvalidFineUpdate,
    LoanNotFound,
    OutOfStock,
    RenewalDenied,
)
from school_library.library import Library
from school_library.loan import LoanStatus, ReturnCondition
from school_library.services.notifications import NotificationDispatcher


def test_borrow_and_late_return(lib, make_book, clock, events):
    book = make_book()

    loan = lib.borrow("student-1", book.id)
    assert loan.due_date == START + timedelta(days=14)
    assert loan.status == LoanStatus.ACTIVE
    assert lib.get_book(book.id).available_copies == 0

    clock.advance(days=20)
    returned = lib.return_book(loan.id)

    assert returned.status == LoanStatus.RETURNED
    assert returned.fine_amount == Decimal("3.00")
    assert returned.return_date == START + timedelta(days=20)
    stored = lib.get_book(book.id)
    assert stored.available_copies == 1
    assert stored.borrowed_copies == 0
    assert events == [("loan.issued", loan.id), ("loan.returned", loan.id)]


def test_fine_is_capped(lib, make_book, clock):
    book = make_book(daily_fine_amount="1", max_fine_amount="50")
    loan = lib.borrow("student-1", book.id)

    clock.advance(days=14 + 200)
    returned = lib.return_book(loan.id)

    assert returned.fine_amount == Decimal("50.00")


def test_on_time_return_has_no_fine(lib, make_book, clock):
    book = make_book()
    loan = lib.borrow("student-1", book.id)
    clock.advance(days=14)
    assert lib.return_book(loan.id).fine_amount == Decimal("0.00")


def test_borrowing_limit(lib, make_book):
    lib.update_policy(max_books_per_user=2)
    first, second, third = (make_book(f"Book {n}") for n in range(3))
    lib.borrow("student-1", first.id)
    lib.borrow("student-1", second.id)

    status = lib.borrowing_status("student-1", third.id)
    assert status.can_borrow is False
    assert status.currently_borrowed == 2
    assert status.remaining_allowed == 0

    with pytest.raises(BorrowingDenied) as exc_info:
        lib.borrow("student-1", third.id)
    assert exc_info.value.message == "Borrowing limit reached: 2 of 2 books already borrowed."
    assert lib.get_book(third.id).available_copies == 1


def test_limit_is_per_borrower(lib, make_book):
    lib.update_policy(max_books_per_user=1)
    book = make_book(total_copies=2)
    lib.borrow("student-1", book.id)
    loan = lib.borrow("student-2", book.id)
    assert loan.borrower_id == "student-2"


def test_concurrent_borrows_of_last_copy(lib, make_book):
    book = make_book(total_copies=1)
    barrier = threading.Barrier(2)
    outcomes = {}

    def borrower(name):
        barrier.wait()
        try:
            outcomes[name] = lib.borrow(name, book.id)
        except OutOfStock as e:
            outcomes[name] = e

    threads = [threading.Thread(target=borrower, args=(name,)) for name in ("ana", "ben")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    failures = [v for v in outcomes.values() if isinstance(v, OutOfStock)]
    assert len(outcomes) == 2
    assert len(failures) == 1
    assert isinstance(failures[0], BorrowingDenied)
    stored = lib.get_book(book.id)
    assert stored.available_copies == 0
    assert stored.borrowed_copies == 1
    assert len(lib.list_loans(book_id=book.id)) == 1


def test_out_of_stock_message(lib, make_book):
    book = make_book()
    lib.borrow("student-1", book.id)
    with pytest.raises(OutOfStock, match="No copies of 'Things Fall Apart' are available."):
        lib.borrow("student-2", book.id)


def test_double_return_does_not_release_twice(lib, make_book):
    book = make_book(total_copies=2)
    loan = lib.borrow("student-1", book.id)
    lib.borrow("student-2", book.id)
    lib.return_book(loan.id)

    with pytest.raises(AlreadyReturned):
        lib.return_book(loan.id)

    stored = lib.get_book(book.id)
    assert stored.available_copies == 1
    assert stored.borrowed_copies == 1


def test_borrow_return_round_trip_restores_counters(lib, make_book):
    book = make_book(total_copies=3)
    loan = lib.borrow("student-1", book.id)
    lib.return_book(loan.id)
    stored = lib.get_book(book.id)
    assert (stored.total_copies, stored.available_copies, stored.borrowed_copies) == (3, 3, 0)


def test_damaged_return_puts_copy_back(lib, make_book):
    book = make_book()
    loan = lib.borrow("student-1", book.id)
    returned = lib.return_book(loan.id, ReturnCondition.DAMAGED, notes="Cover torn")
    assert returned.condition == ReturnCondition.DAMAGED
    assert returned.notes == "Cover torn"
    assert lib.get_book(book.id).available_copies == 1


def test_unknown_loan(lib):
    with pytest.raises(LoanNotFound):
        lib.return_book("nope")


def test_past_explicit_due_date_leaves_inventory_alone(lib, make_book):
    book = make_book()
    with pytest.raises(InvalidDueDate):
        lib.borrow("student-1", book.id, due_date=START - timedelta(days=1))
    assert lib.get_book(book.id).available_copies == 1
    assert lib.list_loans() == []


def test_explicit_due_date_today_is_accepted(lib, make_book):
    book = make_book()
    due = START + timedelta(hours=6)
    loan = lib.borrow("student-1", book.id, due_date=due)
    assert loan.due_date == due


def test_inactive_book_cannot_be_borrowed(lib, make_book):
    book = make_book()
    lib.update_book(book.id, is_active=False)
    with pytest.raises(BorrowingDenied):
        lib.borrow("student-1", book.id)


def test_disabled_borrowing(lib, make_book):
    book = make_book()
    lib.update_policy(borrowing_enabled=False)
    with pytest.raises(BorrowingDenied, match="Borrowing is currently disabled."):
        lib.borrow("student-1", book.id)


# --- Renewals ---
def test_renew_extends_by_loan_period(lib, make_book, events):
    book = make_book()
    loan = lib.borrow("student-1", book.id)
    renewed = lib.renew(loan.id)
    assert renewed.due_date == START + timedelta(days=28)
    assert renewed.renewal_count == 1
    assert lib.get_book(book.id).borrowed_copies == 1
    assert events[-1] == ("loan.renewed", loan.id)


def test_renew_uses_configured_extension(lib, make_book):
    lib.update_policy(renewal_extension_days=7)
    loan = lib.borrow("student-1", make_book().id)
    assert lib.renew(loan.id).due_date == START + timedelta(days=21)


def test_renewal_limit(lib, make_book):
    book = make_book(max_renewals=2)
    loan = lib.borrow("student-1", book.id)
    lib.renew(loan.id)
    second = lib.renew(loan.id)
    assert second.renewal_count == 2

    with pytest.raises(RenewalDenied, match=r"Maximum renewals reached \(2\)."):
        lib.renew(loan.id)
    assert lib.get_loan(loan.id).due_date == second.due_date


def test_overdue_loan_cannot_be_renewed(lib, make_book, clock):
    loan = lib.borrow("student-1", make_book().id)
    clock.advance(days=15)
    with pytest.raises(RenewalDenied, match="Overdue loans cannot be renewed."):
        lib.renew(loan.id)


def test_returned_loan_cannot_be_renewed(lib, make_book):
    loan = lib.borrow("student-1", make_book().id)
    lib.return_book(loan.id)
    with pytest.raises(RenewalDenied, match="Only active loans can be renewed."):
        lib.renew(loan.id)


def test_renew_to_explicit_date(lib, make_book):
    loan = lib.borrow("student-1", make_book().id)
    target = START + timedelta(days=20)
    assert lib.renew(loan.id, target).due_date == target

    with pytest.raises(InvalidDueDate):
        lib.renew(loan.id, START + timedelta(days=10))


# --- Collaborator failures ---
def test_failing_notification_keeps_the_loan(db, clock, make_book):
    def broken(event, loan):
        raise ConnectionError("smtp down")

    library = Library(store=db, now=clock, notifier=NotificationDispatcher([broken]))
    book = make_book()
    loan = library.borrow("student-1", book.id)

    assert library.get_loan(loan.id).status == LoanStatus.ACTIVE
    assert library.get_book(book.id).available_copies == 0


def test_store_failure_releases_the_copy(lib, db, make_book, monkeypatch):
    book = make_book()

    def fail(loan):
        raise RuntimeError("disk full")

    monkeypatch.setattr(db, "create_loan", fail)
    with pytest.raises(RuntimeError):
        lib.borrow("student-1", book.id)

    stored = lib.get_book(book.id)
    assert stored.available_copies == 1
    assert stored.borrowed_copies == 0


def test_store_failure_on_return_keeps_copy_on_loan(lib, db, make_book, monkeypatch):
    book = make_book()
    loan = lib.borrow("student-1", book.id)

    def fail(loan):
        raise RuntimeError("disk full")

    monkeypatch.setattr(db, "update_loan", fail)
    with pytest.raises(RuntimeError):
        lib.return_book(loan.id)

    stored = lib.get_book(book.id)
    assert stored.available_copies == 0
    assert stored.borrowed_copies == 1


# --- Batch issue ---
def test_borrow_many_reports_each_book(lib, make_book):
    lib.update_policy(max_books_per_user=2)
    books = [make_book(f"Book {n}") for n in range(3)]
    taken = make_book("Taken")
    lib.borrow("someone-else", taken.id)

    outcomes = lib.borrow_many("student-1", [books[0].id, taken.id, books[1].id, books[2].id])

    assert [o["success"] for o in outcomes] == [True, False, True, False]
    assert outcomes[1]["message"] == "No copies of 'Taken' are available."
    assert outcomes[3]["message"] == "Borrowing limit reached: 2 of 2 books already borrowed."
    assert len(lib.active_loans("student-1")) == 2


# --- Fines ---
def test_unpaid_fine_blocks_borrowing_until_paid(lib, make_book, clock, events):
    loan = lib.borrow("student-1", make_book("Late").id)
    clock.advance(days=20)
    lib.return_book(loan.id)
    other = make_book("Next")

    with pytest.raises(BorrowingDenied) as exc_info:
        lib.borrow("student-1", other.id)
    assert exc_info.value.message == "Outstanding fines of 3.00 must be settled before borrowing."
    assert exc_info.value.status.denial_code == "fines"

    paid = lib.pay_fine(loan.id, "3.00")
    assert paid.outstanding_fine == Decimal("0.00")
    assert events[-1] == ("loan.fine_updated", loan.id)
    assert lib.borrow("student-1", other.id).status == LoanStatus.ACTIVE


def test_fine_below_threshold_does_not_block(lib, make_book, clock):
    lib.update_policy(fine_block_threshold="5")
    loan = lib.borrow("student-1", make_book("Late").id)
    clock.advance(days=20)
    lib.return_book(loan.id)
    assert lib.borrowing_status("student-1").can_borrow is True


def test_waive_and_update_fine(lib, make_book, clock):
    loan = lib.borrow("student-1", make_book().id)
    clock.advance(days=24)
    lib.return_book(loan.id)

    waived = lib.waive_fine(loan.id, "2")
    assert waived.fine_waived_amount == Decimal("2.00")
    assert waived.outstanding_fine == Decimal("3.00")

    updated = lib.update_fine(loan.id, fine_amount="4", paid_amount="2")
    assert updated.outstanding_fine == Decimal("0.00")


def test_fine_settlement_cannot_exceed_fine(lib, make_book, clock):
    loan = lib.borrow("student-1", make_book().id)
    clock.advance(days=16)
    lib.return_book(loan.id)

    with pytest.raises(InvalidFineUpdate):
        lib.pay_fine(loan.id, "1.50")
    with pytest.raises(InvalidFineUpdate):
        lib.pay_fine(loan.id, "0")
    with pytest.raises(InvalidFineUpdate):
        lib.update_fine(loan.id, fine_amount="-1")
    assert lib.get_loan(loan.id).fine_paid_amount == Decimal("0.00")


def test_compute_fine_accrues_while_open(lib, make_book, clock):
    loan = lib.borrow("student-1", make_book().id)
    clock.advance(days=16, hours=1)
    assert lib.compute_fine(loan.id) == Decimal("1.50")
    lib.return_book(loan.id)
    clock.advance(days=30)
    assert lib.compute_fine(loan.id) == Decimal("1.50")


def test_fine_cannot_be_settled_while_loan_is_open(lib, make_book):
    loan = lib.borrow("student-1", make_book().id)

    with pytest.raises(InvalidFineUpdate, match="Fines can only be settled on returned loans."):
        lib.update_fine(loan.id, fine_amount="5.00")
    with pytest.raises(InvalidFineUpdate):
        lib.pay_fine(loan.id, "5.00")
    with pytest.raises(InvalidFineUpdate):
        lib.waive_fine(loan.id, "1.00")

    returned = lib.return_book(loan.id)
    assert returned.fine_amount == Decimal("0.00")
    assert returned.fine_paid_amount == Decimal("0.00")
    assert returned.outstanding_fine >= 0


def test_due_date_earlier_today_is_rejected(lib, make_book):
    book = make_book()
    midnight = START.replace(hour=0)
    with pytest.raises(InvalidDueDate):
        lib.borrow("student-1", book.id, due_date=midnight)
    assert lib.get_book(book.id).available_copies == 1
