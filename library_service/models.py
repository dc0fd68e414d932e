import enum
from datetime import datetime

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Column,
    Integer,
    String,
    Date,
    DateTime,
    Boolean,
    Enum,
    ForeignKey,
    Index,
    text,
)

Base = declarative_base()


class Role(str, enum.Enum):
    STUDENT = "STUDENT"
    ADMIN = "ADMIN"


class BorrowStatus(str, enum.Enum):
    """
    BORROWED -> RETURNED is the only transition; RETURNED is terminal.
    """
    BORROWED = "BORROWED"
    RETURNED = "RETURNED"


class User(Base):
    __tablename__ = "user"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(100), unique=True, nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=False)
    role = Column(Enum(Role, name="user_role"), nullable=False, default=Role.STUDENT)
    registration_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    # soft delete: users are deactivated, never removed
    active = Column(Boolean, nullable=False, default=True)

    borrows = relationship("BorrowRequest", back_populates="user")


class Book(Base):
    """
    Remaining copies are not stored here; they are derived from the
    BORROWED rows of the ledger (see catalog.get_remaining_copies).
    """
    __tablename__ = "book"

    id = Column(Integer, primary_key=True, autoincrement=True)
    isbn = Column(String(20), unique=True)
    title = Column(String(255), nullable=False)
    author = Column(String(255), nullable=False)
    total_copies = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    borrows = relationship("BorrowRequest", back_populates="book")


class BorrowRequest(Base):
    __tablename__ = "borrow_request"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("user.id"), nullable=False)
    book_id = Column(Integer, ForeignKey("book.id"), nullable=False)
    request_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    borrow_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)
    return_date = Column(Date)
    status = Column(
        Enum(BorrowStatus, name="borrow_status"),
        nullable=False,
        default=BorrowStatus.BORROWED,
    )

    user = relationship("User", back_populates="borrows")
    book = relationship("Book", back_populates="borrows")

    __table_args__ = (
        # at most one active borrow per (user, book)
        Index(
            "uq_active_borrow",
            "user_id",
            "book_id",
            unique=True,
            sqlite_where=text("status = 'BORROWED'"),
            postgresql_where=text("status = 'BORROWED'"),
        ),
    )
