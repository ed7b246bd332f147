import gc
import threading

import pytest

from school_library.book import Book
from school_library.errors import (
    BookNotFound,
    InvalidCopyCount,
    InvariantViolation,
    OutOfStock,
)


def assert_consistent(book):
    assert book.available_copies + book.borrowed_copies + book.reserved_copies == book.total_copies
    assert min(book.available_copies, book.borrowed_copies, book.reserved_copies) >= 0


def test_reserve_moves_copy_to_borrowed(lib, make_book):
    book = make_book(total_copies=2)
    updated = lib.inventory.reserve_copy_for_loan(book.id)
    assert updated.available_copies == 1
    assert updated.borrowed_copies == 1
    assert_consistent(lib.get_book(book.id))


def test_reserve_without_stock_fails(lib, make_book):
    book = make_book(total_copies=1)
    lib.inventory.reserve_copy_for_loan(book.id)
    with pytest.raises(OutOfStock):
        lib.inventory.reserve_copy_for_loan(book.id)
    stored = lib.get_book(book.id)
    assert stored.available_copies == 0
    assert stored.borrowed_copies == 1


def test_release_returns_copy(lib, make_book):
    book = make_book(total_copies=1)
    lib.inventory.reserve_copy_for_loan(book.id)
    updated = lib.inventory.release_copy_from_loan(book.id)
    assert updated.available_copies == 1
    assert updated.borrowed_copies == 0


def test_release_with_nothing_borrowed_is_invariant_violation(lib, make_book):
    book = make_book(total_copies=1)
    with pytest.raises(InvariantViolation):
        lib.inventory.release_copy_from_loan(book.id)
    stored = lib.get_book(book.id)
    assert stored.available_copies == 1
    assert stored.borrowed_copies == 0


def test_unknown_book(lib):
    with pytest.raises(BookNotFound):
        lib.inventory.reserve_copy_for_loan("missing")


@pytest.mark.parametrize("operation, amount, expected_total, expected_available", [
    ("set", 5, 5, 4),
    ("add", 2, 5, 4),
    ("subtract", 1, 2, 1),
])
def test_set_total_copies(lib, make_book, operation, amount, expected_total, expected_available):
    book = make_book(total_copies=3)
    lib.inventory.reserve_copy_for_loan(book.id)
    updated = lib.inventory.set_total_copies(book.id, amount, operation)
    assert updated.total_copies == expected_total
    assert updated.available_copies == expected_available
    assert updated.borrowed_copies == 1
    assert_consistent(updated)


def test_cannot_shrink_below_borrowed(lib, make_book):
    book = make_book(total_copies=3)
    lib.inventory.reserve_copy_for_loan(book.id)
    lib.inventory.reserve_copy_for_loan(book.id)
    with pytest.raises(InvalidCopyCount):
        lib.inventory.set_total_copies(book.id, 1, "set")
    stored = lib.get_book(book.id)
    assert stored.total_copies == 3
    assert stored.borrowed_copies == 2


def test_subtract_below_zero(lib, make_book):
    book = make_book(total_copies=2)
    with pytest.raises(InvalidCopyCount):
        lib.inventory.set_total_copies(book.id, 3, "subtract")


def test_reserved_copies_count_against_new_total(lib, db):
    book = Book("b-reserved", "Atlas", total_copies=3, reserved_copies=1)
    db.create_book(book)
    assert db.get_book("b-reserved").available_copies == 2

    updated = lib.inventory.set_total_copies("b-reserved", 1, "set")
    assert updated.available_copies == 0
    with pytest.raises(InvalidCopyCount):
        lib.inventory.set_total_copies("b-reserved", 0, "set")


def test_unknown_operation_and_negative_amount(lib, make_book):
    book = make_book()
    with pytest.raises(InvalidCopyCount):
        lib.inventory.set_total_copies(book.id, 2, "multiply")
    with pytest.raises(InvalidCopyCount):
        lib.inventory.set_total_copies(book.id, -1, "set")


def test_concurrent_reservations_never_overcommit(lib, make_book):
    book = make_book(total_copies=5)
    results = []
    lock = threading.Lock()

    def worker():
        try:
            lib.inventory.reserve_copy_for_loan(book.id)
            outcome = "ok"
        except OutOfStock:
            outcome = "out"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(12)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("ok") == 5
    assert results.count("out") == 7
    stored = lib.get_book(book.id)
    assert stored.available_copies == 0
    assert stored.borrowed_copies == 5


def test_locks_are_shared_while_held_and_freed_afterwards(lib, make_book):
    book = make_book(total_copies=2)

    with lib.inventory.lock(book.id):
        assert lib.inventory._lock_for(book.id) is lib.inventory._lock_for(book.id)
        assert book.id in lib.inventory._locks

    lib.borrow("student-1", book.id)
    gc.collect()
    assert book.id not in lib.inventory._locks
    assert "student-1" not in lib.lifecycle._borrower_locks
