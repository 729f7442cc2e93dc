"""
Catalog and reader records: plain storage with value checks, no lifecycle.
"""
import logging
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from .errors import ConstraintViolation, NotFound
from .models import (
    Author,
    Book,
    BookInstance,
    Genre,
    InstanceStatus,
    Loan,
    Publisher,
    Reader,
)

logger = logging.getLogger(__name__)


def parse_date(value, field):
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ConstraintViolation(f"{field} must be an ISO date (YYYY-MM-DD)")


def _required(data, *fields):
    missing = [f for f in fields if not data.get(f)]
    if missing:
        raise ConstraintViolation(f"{', '.join(missing)} required")


def _commit(session):
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConstraintViolation(str(exc.orig)) from exc


def _load(session, model, ids, entity, field):
    if ids is None:
        return []
    if not isinstance(ids, list):
        raise ConstraintViolation(f"{field} must be a list")
    records = []
    for record_id in ids:
        record = session.get(model, record_id)
        if record is None:
            raise NotFound(entity, record_id)
        records.append(record)
    return records


# ----------------- authors, publishers, genres -----------------

def create_author(session, data):
    _required(data, "full_name")
    author = Author(
        full_name=data["full_name"],
        birth_date=parse_date(data.get("birth_date"), "birth_date"),
        biography=data.get("biography"),
    )
    session.add(author)
    _commit(session)
    return {"author_id": author.id, "full_name": author.full_name}


def create_publisher(session, data):
    _required(data, "name")
    publisher = Publisher(name=data["name"], city=data.get("city"))
    session.add(publisher)
    _commit(session)
    return {"publisher_id": publisher.id, "name": publisher.name}


def create_genre(session, data):
    _required(data, "name")
    genre = Genre(name=data["name"])
    session.add(genre)
    _commit(session)
    return {"genre_id": genre.id, "name": genre.name}


# ----------------- books and instances -----------------

def _int_or_none(data, field):
    value = data.get(field)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConstraintViolation(f"{field} must be an integer")


def _validate_book(data):
    year = _int_or_none(data, "publication_year")
    if year is not None and not (1000 < year <= date.today().year):
        raise ConstraintViolation(
            f"publication_year must be after 1000 and not later than {date.today().year}"
        )
    pages = _int_or_none(data, "pages")
    if pages is not None and pages <= 0:
        raise ConstraintViolation("pages must be positive")


def create_book(session, data):
    _required(data, "title")
    _validate_book(data)

    publisher_id = data.get("publisher_id")
    if publisher_id is not None and session.get(Publisher, publisher_id) is None:
        raise NotFound("Publisher", publisher_id)

    book = Book(
        title=data["title"],
        isbn=data.get("isbn"),
        publication_year=_int_or_none(data, "publication_year"),
        pages=_int_or_none(data, "pages"),
        annotation=data.get("annotation"),
        publisher_id=publisher_id,
    )
    book.authors = _load(session, Author, data.get("author_ids"), "Author", "author_ids")
    book.genres = _load(session, Genre, data.get("genre_ids"), "Genre", "genre_ids")
    session.add(book)
    _commit(session)
    logger.info("Created book %s (%s)", book.id, book.title)
    return serialize_book(book)


def serialize_book(book):
    return {
        "book_id": book.id,
        "title": book.title,
        "isbn": book.isbn,
        "publication_year": book.publication_year,
        "pages": book.pages,
        "publisher": book.publisher.name if book.publisher else None,
        "authors": [a.full_name for a in book.authors],
        "genres": [g.name for g in book.genres],
        "instances": [
            {
                "instance_id": i.id,
                "inventory_number": i.inventory_number,
                "status": InstanceStatus(i.status).value,
            }
            for i in book.instances
        ],
    }


def get_book(session, book_id):
    book = session.get(Book, book_id)
    if book is None:
        raise NotFound("Book", book_id)
    return serialize_book(book)


def delete_book(session, book_id):
    """Delete a book and its copies, unless any copy has loan history."""
    book = session.get(Book, book_id)
    if book is None:
        raise NotFound("Book", book_id)

    loans = session.execute(
        select(func.count(Loan.id))
        .join(BookInstance, Loan.instance_id == BookInstance.id)
        .where(BookInstance.book_id == book_id)
    ).scalar_one()
    if loans:
        raise ConstraintViolation(
            f"Book {book_id} has {loans} loan(s) on its instances and cannot be deleted"
        )

    session.delete(book)
    _commit(session)
    logger.info("Deleted book %s", book_id)


def add_instance(session, book_id, data):
    _required(data, "inventory_number")
    if session.get(Book, book_id) is None:
        raise NotFound("Book", book_id)

    # new copies always enter circulation as available
    instance = BookInstance(
        book_id=book_id,
        inventory_number=data["inventory_number"],
        status=InstanceStatus.AVAILABLE,
    )
    session.add(instance)
    _commit(session)
    logger.info("Catalogued instance %s (%s) of book %s", instance.id, instance.inventory_number, book_id)
    return {
        "instance_id": instance.id,
        "book_id": book_id,
        "inventory_number": instance.inventory_number,
        "status": InstanceStatus(instance.status).value,
    }


# ----------------- readers -----------------

def serialize_reader(reader):
    return {
        "reader_id": reader.id,
        "full_name": reader.full_name,
        "ticket_number": reader.ticket_number,
        "registration_date": reader.registration_date.isoformat(),
        "phone_number": reader.phone_number,
        "email": reader.email,
        "address": reader.address,
    }


def create_reader(session, data):
    _required(data, "full_name", "ticket_number")
    reader = Reader(
        full_name=data["full_name"],
        ticket_number=data["ticket_number"],
        registration_date=parse_date(data.get("registration_date"), "registration_date")
        or date.today(),
        phone_number=data.get("phone_number"),
        email=data.get("email"),
        address=data.get("address"),
    )
    session.add(reader)
    _commit(session)
    return serialize_reader(reader)


def get_reader(session, reader_id):
    reader = session.get(Reader, reader_id)
    if reader is None:
        raise NotFound("Reader", reader_id)
    return serialize_reader(reader)
