"""
Read-only projections over instances, loans and the catalog.

Nothing here is stored; every call recomputes from the current rows.
"""
from sqlalchemy import func, or_, select
from sqlalchemy.orm import selectinload

from .models import Author, Book, BookInstance, InstanceStatus, Loan, Reader


def _author_names(book):
    names = []
    for author in book.authors:
        if author.full_name not in names:
            names.append(author.full_name)
    return ", ".join(names)


def list_active_loans(session, today):
    rows = session.execute(
        select(Loan, Reader, Book)
        .join(Reader, Loan.reader_id == Reader.id)
        .join(BookInstance, Loan.instance_id == BookInstance.id)
        .join(Book, BookInstance.book_id == Book.id)
        .where(Loan.return_date.is_(None))
        .order_by(Loan.due_date, Loan.id)
    ).all()

    return [
        {
            "loan_id": loan.id,
            "reader": reader.full_name,
            "ticket_number": reader.ticket_number,
            "title": book.title,
            "loan_date": loan.loan_date.isoformat(),
            "due_date": loan.due_date.isoformat(),
            "days_overdue": max(0, (today - loan.due_date).days),
        }
        for loan, reader, book in rows
    ]


def list_available_titles(session):
    available = (
        select(
            BookInstance.book_id.label("book_id"),
            func.count(BookInstance.id).label("available_count"),
        )
        .where(BookInstance.status == InstanceStatus.AVAILABLE)
        .group_by(BookInstance.book_id)
        .having(func.count(BookInstance.id) > 0)
        .subquery()
    )

    rows = session.execute(
        select(Book, available.c.available_count)
        .join(available, available.c.book_id == Book.id)
        .options(selectinload(Book.authors))
        .order_by(Book.title, Book.id)
    ).all()

    return [
        {
            "book_id": book.id,
            "title": book.title,
            "authors": _author_names(book),
            "available_count": count,
        }
        for book, count in rows
    ]


def search_catalog(session, text):
    """Case-insensitive substring match on title or any author's name."""
    q = select(Book).options(selectinload(Book.authors)).order_by(Book.title, Book.id)
    if text:
        like = f"%{text}%"
        q = q.where(
            or_(
                Book.title.ilike(like),
                Book.authors.any(Author.full_name.ilike(like)),
            )
        )

    books = session.execute(q).scalars().all()
    return [
        {"book_id": b.id, "title": b.title, "authors": _author_names(b)}
        for b in books
    ]
