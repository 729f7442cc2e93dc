"""
Circulation transaction manager.

Issue, return and administrative status changes each run as one unit of
work: a fresh session, one commit on success, a full rollback on any error.
Contention reported by the store (lock timeouts, deadlocks, serialization
failures, SQLite's "database is locked") is retried a bounded number of
times before surfacing as ``Unavailable``.

Issue relies on the compare-and-set in state_machine.apply_transition, so
two desks issuing the same copy serialize on the instance row and the loser
sees the winner's ``on_loan``.
"""
import logging
import time
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from . import state_machine
from .errors import AlreadyReturned, ConstraintViolation, NotFound, Unavailable
from .fines import FineCalculator
from .models import InstanceStatus, Loan, Reader

logger = logging.getLogger(__name__)

# serialization failure, deadlock, lock not available
PG_CONTENTION_CODES = {"40001", "40P01", "55P03"}
# lock wait timeout, deadlock
MYSQL_CONTENTION_CODES = {1205, 1213}
SQLITE_CONTENTION_MESSAGES = ("database is locked", "database is busy")


def is_contention(exc):
    """True when an OperationalError is transient lock contention."""
    orig = getattr(exc, "orig", None)
    if orig is None:
        return False
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in PG_CONTENTION_CODES:
        return True
    args = getattr(orig, "args", ())
    if args and args[0] in MYSQL_CONTENTION_CODES:
        return True
    message = str(orig).lower()
    return any(m in message for m in SQLITE_CONTENTION_MESSAGES)


@dataclass
class ReturnResult:
    loan_id: int
    fine_created: bool
    fine_amount: Optional[Decimal] = None

    def to_dict(self):
        data = {"loan_id": self.loan_id, "fine_created": self.fine_created}
        if self.fine_created:
            data["fine_amount"] = str(self.fine_amount)
        return data


class CirculationManager:
    def __init__(
        self,
        session_factory,
        fine_calculator: Optional[FineCalculator] = None,
        default_loan_days: int = 14,
        retry_attempts: int = 3,
        retry_backoff: float = 0.05,
        clock: Callable[[], date] = date.today,
    ):
        self.session_factory = session_factory
        self.fines = fine_calculator or FineCalculator(Decimal("5.00"))
        self.default_loan_days = default_loan_days
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff
        self.clock = clock

    @classmethod
    def from_config(cls, session_factory, config, clock=date.today):
        return cls(
            session_factory,
            fine_calculator=FineCalculator(config["FINE_DAILY_RATE"]),
            default_loan_days=config["DEFAULT_LOAN_DAYS"],
            retry_attempts=config["TRANSACTION_RETRY_ATTEMPTS"],
            retry_backoff=config["RETRY_BACKOFF_SECONDS"],
            clock=clock,
        )

    # ----------------- unit of work -----------------

    def run_atomic(self, unit, *args, **kwargs):
        """
        Run ``unit(session, *args, **kwargs)`` and commit it, retrying on
        store contention.
        """
        for attempt in range(1, self.retry_attempts + 1):
            session = self.session_factory()
            try:
                result = unit(session, *args, **kwargs)
                session.commit()
                return result
            except OperationalError as exc:
                session.rollback()
                if not is_contention(exc):
                    raise
                logger.warning(
                    "%s contended (attempt %s/%s): %s",
                    unit.__name__,
                    attempt,
                    self.retry_attempts,
                    exc.orig,
                )
                if attempt == self.retry_attempts:
                    raise Unavailable(
                        f"{unit.__name__} could not complete: store is busy"
                    ) from exc
                time.sleep(self.retry_backoff * attempt)
            except IntegrityError as exc:
                session.rollback()
                raise ConstraintViolation(str(exc.orig)) from exc
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    # ----------------- issue -----------------

    def issue_book(self, instance_id, reader_id, duration_days=None):
        """Lend an available instance; returns the new loan id."""
        if duration_days is None:
            duration_days = self.default_loan_days
        if int(duration_days) < 1:
            raise ConstraintViolation("Loan duration must be at least one day")
        return self.run_atomic(self._issue, instance_id, reader_id, int(duration_days))

    def _issue(self, session, instance_id, reader_id, duration_days):
        if session.get(Reader, reader_id) is None:
            raise NotFound("Reader", reader_id)

        state_machine.apply_transition(
            session,
            instance_id,
            InstanceStatus.AVAILABLE,
            InstanceStatus.ON_LOAN,
            reason="issue",
        )

        today = self.clock()
        loan = Loan(
            instance_id=instance_id,
            reader_id=reader_id,
            loan_date=today,
            due_date=today + timedelta(days=duration_days),
        )
        session.add(loan)
        session.flush()
        logger.info(
            "Issued instance %s to reader %s as loan %s, due %s",
            instance_id,
            reader_id,
            loan.id,
            loan.due_date,
        )
        return loan.id

    # ----------------- return -----------------

    def return_book(self, loan_id, return_date=None):
        """Close an open loan, release its instance and assess any fine."""
        return self.run_atomic(self._return, loan_id, return_date)

    def _return(self, session, loan_id, return_date):
        loan = session.execute(
            select(Loan).where(Loan.id == loan_id).with_for_update()
        ).scalar_one_or_none()
        if loan is None:
            raise NotFound("Loan", loan_id)
        if loan.return_date is not None:
            raise AlreadyReturned(loan_id)

        if return_date is None:
            return_date = self.clock()
        if return_date < loan.loan_date:
            raise ConstraintViolation(
                f"Return date {return_date} is before loan date {loan.loan_date}"
            )

        # row locks are not available everywhere (SQLite), so stamp
        # conditionally as well
        result = session.execute(
            update(Loan)
            .where(Loan.id == loan_id, Loan.return_date.is_(None))
            .values(return_date=return_date)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AlreadyReturned(loan_id)

        state_machine.apply_transition(
            session,
            loan.instance_id,
            InstanceStatus.ON_LOAN,
            InstanceStatus.AVAILABLE,
            reason="return",
        )

        fine = self.fines.record(session, loan.id, loan.due_date, return_date)
        logger.info("Returned loan %s on %s", loan_id, return_date)
        if fine is None:
            return ReturnResult(loan_id=loan.id, fine_created=False)
        return ReturnResult(loan_id=loan.id, fine_created=True, fine_amount=fine.amount)

    # ----------------- administrative -----------------

    def change_instance_status(self, instance_id, target):
        """Administrative move (repair, loss, write-off). Never touches on_loan."""
        try:
            target = InstanceStatus(target)
        except ValueError:
            raise ConstraintViolation(f"Unknown instance status: {target}")
        return self.run_atomic(self._change_status, instance_id, target)

    def _change_status(self, session, instance_id, target):
        source = state_machine.current_status(session, instance_id)
        state_machine.apply_transition(session, instance_id, source, target, reason="admin")
        return target
