import enum
from datetime import date, datetime

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    text,
)

Base = declarative_base()


class InstanceStatus(str, enum.Enum):
    AVAILABLE = "available"
    ON_LOAN = "on_loan"
    RESERVED = "reserved"
    IN_REPAIR = "in_repair"
    LOST = "lost"
    WRITTEN_OFF = "written_off"


class ReservationStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELED = "canceled"


def _values(enum_cls):
    return [member.value for member in enum_cls]


instance_status_type = Enum(
    InstanceStatus, name="book_instance_status", values_callable=_values
)
reservation_status_type = Enum(
    ReservationStatus, name="reservation_status", values_callable=_values
)


book_author = Table(
    "book_author",
    Base.metadata,
    Column("book_id", Integer, ForeignKey("book.id", ondelete="CASCADE"), primary_key=True),
    Column("author_id", Integer, ForeignKey("author.id", ondelete="CASCADE"), primary_key=True),
)

book_genre = Table(
    "book_genre",
    Base.metadata,
    Column("book_id", Integer, ForeignKey("book.id", ondelete="CASCADE"), primary_key=True),
    Column("genre_id", Integer, ForeignKey("genre.id", ondelete="CASCADE"), primary_key=True),
)


class Author(Base):
    __tablename__ = "author"

    id = Column(Integer, primary_key=True, autoincrement=True)
    full_name = Column(String(255), nullable=False, index=True)
    birth_date = Column(Date)
    biography = Column(Text)


class Publisher(Base):
    __tablename__ = "publisher"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), unique=True, nullable=False)
    city = Column(String(100))


class Genre(Base):
    __tablename__ = "genre"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False)


class Book(Base):
    __tablename__ = "book"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False, index=True)
    isbn = Column(String(20), unique=True)
    publication_year = Column(Integer)
    pages = Column(Integer)
    annotation = Column(Text)
    publisher_id = Column(Integer, ForeignKey("publisher.id", ondelete="SET NULL"))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("pages IS NULL OR pages > 0", name="chk_book_pages"),
        CheckConstraint(
            "publication_year IS NULL OR publication_year > 1000",
            name="chk_book_publication_year",
        ),
    )

    publisher = relationship("Publisher")
    authors = relationship("Author", secondary=book_author, order_by="Author.full_name")
    genres = relationship("Genre", secondary=book_genre, order_by="Genre.name")
    instances = relationship(
        "BookInstance",
        back_populates="book",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="BookInstance.id",
    )


class BookInstance(Base):
    """
    One physical copy. ``status`` is only ever written through
    state_machine.apply_transition.
    """
    __tablename__ = "book_instance"

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("book.id", ondelete="CASCADE"), nullable=False)
    inventory_number = Column(String(50), unique=True, nullable=False)
    status = Column(
        instance_status_type,
        nullable=False,
        default=InstanceStatus.AVAILABLE,
        index=True,
    )

    book = relationship("Book", back_populates="instances")


class Reader(Base):
    __tablename__ = "reader"

    id = Column(Integer, primary_key=True, autoincrement=True)
    full_name = Column(String(255), nullable=False, index=True)
    ticket_number = Column(String(20), unique=True, nullable=False)
    registration_date = Column(Date, nullable=False, default=date.today)
    phone_number = Column(String(20))
    email = Column(String(255), unique=True)
    address = Column(Text)


class Loan(Base):
    __tablename__ = "loan"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(Integer, ForeignKey("book_instance.id"), nullable=False)
    reader_id = Column(Integer, ForeignKey("reader.id"), nullable=False)
    loan_date = Column(Date, nullable=False, default=date.today)
    due_date = Column(Date, nullable=False)
    return_date = Column(Date)

    __table_args__ = (
        CheckConstraint("due_date > loan_date", name="chk_loan_due_date"),
        CheckConstraint(
            "return_date IS NULL OR return_date >= loan_date",
            name="chk_loan_return_date",
        ),
        # At most one open loan per instance
        Index(
            "uq_loan_open_instance",
            "instance_id",
            unique=True,
            sqlite_where=text("return_date IS NULL"),
            postgresql_where=text("return_date IS NULL"),
        ),
    )

    instance = relationship("BookInstance")
    reader = relationship("Reader")
    fine = relationship("Fine", back_populates="loan", uselist=False)


class Fine(Base):
    __tablename__ = "fine"

    id = Column(Integer, primary_key=True, autoincrement=True)
    loan_id = Column(Integer, ForeignKey("loan.id"), unique=True, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    fine_date = Column(Date, nullable=False, default=date.today)
    payment_date = Column(Date)

    __table_args__ = (CheckConstraint("amount >= 0", name="chk_fine_amount"),)

    loan = relationship("Loan", back_populates="fine")


class Reservation(Base):
    __tablename__ = "reservation"

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("book.id", ondelete="CASCADE"), nullable=False)
    reader_id = Column(Integer, ForeignKey("reader.id", ondelete="CASCADE"), nullable=False)
    reservation_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    status = Column(
        reservation_status_type,
        nullable=False,
        default=ReservationStatus.ACTIVE,
    )

    book = relationship("Book")
    reader = relationship("Reader")


class InstanceStatusEvent(Base):
    """
    Audit trail of instance status transitions, written in the same unit as
    the transition itself.
    """
    __tablename__ = "instance_status_event"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(
        Integer, ForeignKey("book_instance.id", ondelete="CASCADE"), nullable=False
    )
    from_status = Column(instance_status_type, nullable=False)
    to_status = Column(instance_status_type, nullable=False)
    reason = Column(String(20), nullable=False)  # issue, return or admin
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
