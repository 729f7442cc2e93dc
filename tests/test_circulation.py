import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError, OperationalError

from circulation_service.circulation import CirculationManager, is_contention
from circulation_service.errors import (
    AlreadyReturned,
    ConstraintViolation,
    NotFound,
    PreconditionViolation,
    Unavailable,
)
from circulation_service.models import (
    BookInstance,
    Fine,
    InstanceStatus,
    InstanceStatusEvent,
    Loan,
)

from helpers import DAY_0


def instance_status(session_factory, instance_id):
    session = session_factory()
    try:
        return session.get(BookInstance, instance_id).status
    finally:
        session.close()


def count(session_factory, model, *criteria):
    session = session_factory()
    try:
        q = select(func.count()).select_from(model)
        for c in criteria:
            q = q.where(c)
        return session.execute(q).scalar_one()
    finally:
        session.close()


def assert_consistent(session_factory):
    """on_loan iff exactly one open loan, for every instance."""
    session = session_factory()
    try:
        for instance in session.execute(select(BookInstance)).scalars():
            open_loans = session.execute(
                select(func.count(Loan.id)).where(
                    Loan.instance_id == instance.id, Loan.return_date.is_(None)
                )
            ).scalar_one()
            if instance.status == InstanceStatus.ON_LOAN:
                assert open_loans == 1
            else:
                assert open_loans == 0
    finally:
        session.close()


# ----------------- issue -----------------

def test_issue_creates_loan_and_marks_instance_on_loan(manager, session_factory, library):
    loan_id = manager.issue_book(library["INV-001"], library["reader1"], 14)

    session = session_factory()
    try:
        loan = session.get(Loan, loan_id)
        assert loan.loan_date == DAY_0
        assert loan.due_date == DAY_0 + timedelta(days=14)
        assert loan.return_date is None
    finally:
        session.close()

    assert instance_status(session_factory, library["INV-001"]) == InstanceStatus.ON_LOAN
    assert_consistent(session_factory)


def test_issue_uses_default_duration(manager, session_factory, library):
    loan_id = manager.issue_book(library["INV-002"], library["reader1"])

    session = session_factory()
    try:
        assert session.get(Loan, loan_id).due_date == DAY_0 + timedelta(days=14)
    finally:
        session.close()


def test_issue_of_loaned_instance_reports_status(manager, session_factory, library):
    manager.issue_book(library["INV-001"], library["reader1"])

    with pytest.raises(PreconditionViolation) as excinfo:
        manager.issue_book(library["INV-001"], library["reader2"])

    assert excinfo.value.status == "on_loan"
    assert count(session_factory, Loan) == 1
    assert_consistent(session_factory)


def test_issue_of_instance_in_repair_is_rejected(manager, session_factory, library):
    manager.change_instance_status(library["INV-003"], "in_repair")

    with pytest.raises(PreconditionViolation) as excinfo:
        manager.issue_book(library["INV-003"], library["reader1"])

    assert excinfo.value.status == "in_repair"
    assert count(session_factory, Loan) == 0


def test_issue_unknown_instance(manager, library):
    with pytest.raises(NotFound):
        manager.issue_book(9999, library["reader1"])


def test_issue_unknown_reader_leaves_instance_available(manager, session_factory, library):
    with pytest.raises(NotFound):
        manager.issue_book(library["INV-001"], 9999)

    assert instance_status(session_factory, library["INV-001"]) == InstanceStatus.AVAILABLE
    assert count(session_factory, Loan) == 0


@pytest.mark.parametrize("days", [0, -3])
def test_issue_rejects_non_positive_duration(manager, session_factory, library, days):
    with pytest.raises(ConstraintViolation):
        manager.issue_book(library["INV-001"], library["reader1"], days)

    assert instance_status(session_factory, library["INV-001"]) == InstanceStatus.AVAILABLE


def test_concurrent_issue_of_same_instance(session_factory, clock, library):
    manager = CirculationManager(
        session_factory, retry_attempts=10, retry_backoff=0.02, clock=clock
    )
    barrier = threading.Barrier(2)
    results = []

    def desk(reader_id):
        barrier.wait()
        try:
            results.append(manager.issue_book(library["INV-001"], reader_id))
        except PreconditionViolation as exc:
            results.append(exc)

    threads = [
        threading.Thread(target=desk, args=(library["reader1"],)),
        threading.Thread(target=desk, args=(library["reader2"],)),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    loans = [r for r in results if isinstance(r, int)]
    failures = [r for r in results if isinstance(r, PreconditionViolation)]
    assert len(loans) == 1
    assert len(failures) == 1
    assert failures[0].status == "on_loan"
    assert count(session_factory, Loan, Loan.return_date.is_(None)) == 1
    assert instance_status(session_factory, library["INV-001"]) == InstanceStatus.ON_LOAN


# ----------------- return -----------------

def test_kobzar_scenario_overdue_return(manager, session_factory, clock, library):
    loan_id = manager.issue_book(library["INV-001"], library["reader1"], 14)

    result = manager.return_book(loan_id, DAY_0 + timedelta(days=20))

    assert result.fine_created is True
    assert result.fine_amount == Decimal("30.00")
    assert instance_status(session_factory, library["INV-001"]) == InstanceStatus.AVAILABLE

    session = session_factory()
    try:
        fine = session.execute(select(Fine).where(Fine.loan_id == loan_id)).scalar_one()
        assert fine.amount == Decimal("30.00")
        assert fine.fine_date == DAY_0 + timedelta(days=20)
        assert fine.payment_date is None
        assert session.get(Loan, loan_id).return_date == DAY_0 + timedelta(days=20)
    finally:
        session.close()
    assert_consistent(session_factory)


def test_return_defaults_to_today(manager, session_factory, clock, library):
    loan_id = manager.issue_book(library["INV-001"], library["reader1"], 14)
    clock.advance(3)

    result = manager.return_book(loan_id)

    assert result.fine_created is False
    session = session_factory()
    try:
        assert session.get(Loan, loan_id).return_date == DAY_0 + timedelta(days=3)
    finally:
        session.close()


def test_return_on_due_date_creates_no_fine(manager, session_factory, library):
    loan_id = manager.issue_book(library["INV-001"], library["reader1"], 14)

    result = manager.return_book(loan_id, DAY_0 + timedelta(days=14))

    assert result.fine_created is False
    assert result.fine_amount is None
    assert count(session_factory, Fine) == 0


def test_second_return_fails_and_changes_nothing(manager, session_factory, library):
    loan_id = manager.issue_book(library["INV-001"], library["reader1"], 14)
    manager.return_book(loan_id, DAY_0 + timedelta(days=16))

    with pytest.raises(AlreadyReturned):
        manager.return_book(loan_id, DAY_0 + timedelta(days=30))

    session = session_factory()
    try:
        assert session.get(Loan, loan_id).return_date == DAY_0 + timedelta(days=16)
        fine = session.execute(select(Fine).where(Fine.loan_id == loan_id)).scalar_one()
        assert fine.amount == Decimal("10.00")
    finally:
        session.close()
    assert instance_status(session_factory, library["INV-001"]) == InstanceStatus.AVAILABLE


def test_return_unknown_loan(manager, library):
    with pytest.raises(NotFound):
        manager.return_book(4242)


def test_return_before_loan_date_rolls_back(manager, session_factory, library):
    loan_id = manager.issue_book(library["INV-001"], library["reader1"], 14)

    with pytest.raises(ConstraintViolation):
        manager.return_book(loan_id, DAY_0 - timedelta(days=1))

    assert instance_status(session_factory, library["INV-001"]) == InstanceStatus.ON_LOAN
    assert count(session_factory, Loan, Loan.return_date.is_(None)) == 1
    assert_consistent(session_factory)


def test_instance_can_be_reissued_after_return(manager, session_factory, clock, library):
    first = manager.issue_book(library["INV-001"], library["reader1"], 7)
    manager.return_book(first, DAY_0 + timedelta(days=5))
    clock.advance(6)

    second = manager.issue_book(library["INV-001"], library["reader2"], 7)

    assert second != first
    assert count(session_factory, Loan, Loan.instance_id == library["INV-001"]) == 2
    assert_consistent(session_factory)


def test_transitions_are_audited(manager, session_factory, library):
    loan_id = manager.issue_book(library["INV-001"], library["reader1"])
    manager.return_book(loan_id, DAY_0 + timedelta(days=2))

    session = session_factory()
    try:
        events = session.execute(
            select(InstanceStatusEvent)
            .where(InstanceStatusEvent.instance_id == library["INV-001"])
            .order_by(InstanceStatusEvent.id)
        ).scalars().all()
        assert [(e.from_status, e.to_status, e.reason) for e in events] == [
            (InstanceStatus.AVAILABLE, InstanceStatus.ON_LOAN, "issue"),
            (InstanceStatus.ON_LOAN, InstanceStatus.AVAILABLE, "return"),
        ]
    finally:
        session.close()


# ----------------- administrative -----------------

def test_admin_status_change_round_trip(manager, session_factory, library):
    assert manager.change_instance_status(library["INV-002"], "in_repair") == InstanceStatus.IN_REPAIR
    assert manager.change_instance_status(library["INV-002"], "available") == InstanceStatus.AVAILABLE
    assert instance_status(session_factory, library["INV-002"]) == InstanceStatus.AVAILABLE


def test_admin_cannot_touch_loaned_instance(manager, session_factory, library):
    manager.issue_book(library["INV-001"], library["reader1"])

    with pytest.raises(PreconditionViolation) as excinfo:
        manager.change_instance_status(library["INV-001"], "lost")

    assert excinfo.value.status == "on_loan"
    assert_consistent(session_factory)


def test_admin_cannot_put_instance_on_loan(manager, library):
    with pytest.raises(PreconditionViolation):
        manager.change_instance_status(library["INV-001"], "on_loan")


def test_admin_unknown_status(manager, library):
    with pytest.raises(ConstraintViolation):
        manager.change_instance_status(library["INV-001"], "misplaced")


def test_written_off_is_terminal(manager, library):
    manager.change_instance_status(library["INV-003"], "written_off")

    with pytest.raises(PreconditionViolation) as excinfo:
        manager.change_instance_status(library["INV-003"], "available")

    assert excinfo.value.status == "written_off"


# ----------------- unit of work -----------------

def test_contention_is_retried(manager):
    calls = []

    def flaky(session):
        calls.append(1)
        if len(calls) < 3:
            raise OperationalError("UPDATE book_instance", {}, Exception("database is locked"))
        return "done"

    assert manager.run_atomic(flaky) == "done"
    assert len(calls) == 3


def test_contention_exhausts_into_unavailable(session_factory, clock):
    manager = CirculationManager(session_factory, retry_attempts=2, retry_backoff=0, clock=clock)
    calls = []

    def locked(session):
        calls.append(1)
        raise OperationalError("UPDATE book_instance", {}, Exception("database is locked"))

    with pytest.raises(Unavailable):
        manager.run_atomic(locked)
    assert len(calls) == 2


def test_integrity_error_becomes_constraint_violation(manager):
    def broken(session):
        raise IntegrityError("INSERT INTO fine", {}, Exception("UNIQUE constraint failed"))

    with pytest.raises(ConstraintViolation):
        manager.run_atomic(broken)


def test_non_contention_operational_error_is_not_retried(manager):
    calls = []

    def bad_sql(session):
        calls.append(1)
        session.execute(text("SELECT * FROM no_such_table"))

    with pytest.raises(OperationalError):
        manager.run_atomic(bad_sql)
    assert len(calls) == 1


class DriverError(Exception):
    def __init__(self, *args, pgcode=None):
        super().__init__(*args)
        self.pgcode = pgcode


@pytest.mark.parametrize(
    "orig,contended",
    [
        (DriverError("deadlock detected", pgcode="40P01"), True),
        (DriverError("could not serialize access", pgcode="40001"), True),
        (DriverError("canceling statement due to lock timeout", pgcode="55P03"), True),
        (DriverError("relation does not exist", pgcode="42P01"), False),
        (DriverError(1213, "Deadlock found when trying to get lock"), True),
        (DriverError(1205, "Lock wait timeout exceeded"), True),
        (DriverError(1054, "Unknown column"), False),
        (DriverError("database is locked"), True),
        (DriverError("no such table: no_such_table"), False),
    ],
)
def test_is_contention(orig, contended):
    assert is_contention(OperationalError("UPDATE book_instance", {}, orig)) is contended


def test_failed_fine_rolls_back_whole_return(manager, session_factory, library, monkeypatch):
    loan_id = manager.issue_book(library["INV-001"], library["reader1"], 14)

    def broken_record(*args, **kwargs):
        raise RuntimeError("fine ledger unavailable")

    monkeypatch.setattr(manager.fines, "record", broken_record)

    with pytest.raises(RuntimeError):
        manager.return_book(loan_id, DAY_0 + timedelta(days=20))

    session = session_factory()
    try:
        assert session.get(Loan, loan_id).return_date is None
    finally:
        session.close()
    assert instance_status(session_factory, library["INV-001"]) == InstanceStatus.ON_LOAN
    assert count(session_factory, Fine) == 0
    assert_consistent(session_factory)
