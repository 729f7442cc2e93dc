import logging
from decimal import Decimal

from .errors import ConstraintViolation
from .models import Fine

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


class FineCalculator:
    """
    Derives the overdue penalty of a returned loan.

    Only the circulation manager calls ``record``, from inside a return unit,
    so a fine is written at most once per loan.
    """

    def __init__(self, daily_rate):
        daily_rate = Decimal(str(daily_rate))
        if daily_rate < 0:
            raise ConstraintViolation("Daily fine rate must not be negative")
        self.daily_rate = daily_rate

    def days_overdue(self, due_date, return_date):
        return max(0, (return_date - due_date).days)

    def assess(self, due_date, return_date):
        """Return the fine amount, or None when returned on time."""
        days = self.days_overdue(due_date, return_date)
        if days == 0:
            return None
        return (self.daily_rate * days).quantize(CENTS)

    def record(self, session, loan_id, due_date, return_date):
        amount = self.assess(due_date, return_date)
        if amount is None:
            return None

        fine = Fine(loan_id=loan_id, amount=amount, fine_date=return_date)
        session.add(fine)
        session.flush()
        logger.info(
            "Fine %s for loan %s: %s days overdue, amount %s",
            fine.id,
            loan_id,
            self.days_overdue(due_date, return_date),
            amount,
        )
        return fine
