"""
Reservation ledger.

Reservations are advisory: they record that a reader wants a title, but
issuing never consults them and a returned copy is not held for anyone.
"""
import logging
from datetime import datetime

from sqlalchemy import func, select, update

from .errors import ConstraintViolation, NotFound, PreconditionViolation
from .models import (
    Book,
    BookInstance,
    InstanceStatus,
    Reader,
    Reservation,
    ReservationStatus,
)

logger = logging.getLogger(__name__)


def available_count(session, book_id):
    return session.execute(
        select(func.count(BookInstance.id)).where(
            BookInstance.book_id == book_id,
            BookInstance.status == InstanceStatus.AVAILABLE,
        )
    ).scalar_one()


def serialize_reservation(reservation, available_instances=None):
    data = {
        "reservation_id": reservation.id,
        "book_id": reservation.book_id,
        "reader_id": reservation.reader_id,
        "reservation_date": reservation.reservation_date.isoformat(),
        "status": ReservationStatus(reservation.status).value,
    }
    if available_instances is not None:
        data["available_instances"] = available_instances
    return data


class ReservationLedger:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def reserve(self, book_id, reader_id):
        session = self.session_factory()
        try:
            if session.get(Book, book_id) is None:
                raise NotFound("Book", book_id)
            if session.get(Reader, reader_id) is None:
                raise NotFound("Reader", reader_id)

            reservation = Reservation(
                book_id=book_id,
                reader_id=reader_id,
                reservation_date=datetime.utcnow(),
                status=ReservationStatus.ACTIVE,
            )
            session.add(reservation)
            session.commit()

            available = available_count(session, book_id)
            logger.info(
                "Reservation %s: reader %s for book %s (%s copies available)",
                reservation.id,
                reader_id,
                book_id,
                available,
            )
            return serialize_reservation(reservation, available)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def complete_reservation(self, reservation_id):
        return self._close(reservation_id, ReservationStatus.COMPLETED)

    def cancel_reservation(self, reservation_id):
        return self._close(reservation_id, ReservationStatus.CANCELED)

    def _close(self, reservation_id, target):
        session = self.session_factory()
        try:
            result = session.execute(
                update(Reservation)
                .where(
                    Reservation.id == reservation_id,
                    Reservation.status == ReservationStatus.ACTIVE,
                )
                .values(status=target)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                reservation = session.get(Reservation, reservation_id)
                if reservation is None:
                    raise NotFound("Reservation", reservation_id)
                status = ReservationStatus(reservation.status).value
                raise PreconditionViolation(
                    f"Reservation {reservation_id} is not active. Status: {status}",
                    status=status,
                )
            session.commit()

            reservation = session.get(Reservation, reservation_id)
            logger.info("Reservation %s -> %s", reservation_id, target.value)
            return serialize_reservation(reservation)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def list_reservations(self, reader_id=None, book_id=None, status=None):
        session = self.session_factory()
        try:
            q = select(Reservation).order_by(Reservation.reservation_date, Reservation.id)
            if reader_id is not None:
                q = q.where(Reservation.reader_id == reader_id)
            if book_id is not None:
                q = q.where(Reservation.book_id == book_id)
            if status:
                try:
                    status = ReservationStatus(status)
                except ValueError:
                    raise ConstraintViolation(f"Unknown reservation status: {status}")
                q = q.where(Reservation.status == status)

            reservations = session.execute(q).scalars().all()
            return [serialize_reservation(r) for r in reservations]
        finally:
            session.close()
