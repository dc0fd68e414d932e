"""
Catalog accessor: book lookup and remaining-copy accounting.

Remaining copies are always recomputed from the ledger
(``total_copies - active borrows``) instead of being kept on the book row,
so there is no counter that can drift.
"""
import logging

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError

from .errors import Conflict, NotFound, ValidationError
from .models import Book, BorrowRequest, BorrowStatus

logger = logging.getLogger(__name__)


def get_book(db, book_id, for_update=False):
    q = select(Book).where(Book.id == book_id)
    if for_update:
        q = q.with_for_update()
    book = db.execute(q).scalar_one_or_none()
    if not book:
        raise NotFound(f"Book not found: {book_id}")
    return book


def count_active_borrows(db, book_id):
    q = (
        select(func.count(BorrowRequest.id))
        .where(BorrowRequest.book_id == book_id)
        .where(BorrowRequest.status == BorrowStatus.BORROWED)
    )
    return db.execute(q).scalar_one()


def get_remaining_copies(db, book):
    return max(book.total_copies - count_active_borrows(db, book.id), 0)


def has_active_borrow(db, user_id, book_id):
    q = (
        select(BorrowRequest.id)
        .where(BorrowRequest.user_id == user_id)
        .where(BorrowRequest.book_id == book_id)
        .where(BorrowRequest.status == BorrowStatus.BORROWED)
        .limit(1)
    )
    return db.execute(q).first() is not None


def can_borrow(db, book, user_id):
    return get_remaining_copies(db, book) > 0 and not has_active_borrow(db, user_id, book.id)


def remaining_copies_map(db, books):
    """
    Remaining copies for many books with a single grouped count.
    Returns {book_id: remaining}.
    """
    ids = [b.id for b in books]
    if not ids:
        return {}
    q = (
        select(BorrowRequest.book_id, func.count(BorrowRequest.id))
        .where(BorrowRequest.book_id.in_(ids))
        .where(BorrowRequest.status == BorrowStatus.BORROWED)
        .group_by(BorrowRequest.book_id)
    )
    active = dict(db.execute(q).all())
    return {b.id: max(b.total_copies - active.get(b.id, 0), 0) for b in books}


def list_books(db):
    return db.execute(select(Book).order_by(Book.id)).scalars().all()


def recent_books(db, limit=5):
    q = select(Book).order_by(Book.created_at.desc(), Book.id.desc()).limit(limit)
    return db.execute(q).scalars().all()


def search_books(db, term=None, available_only=False):
    """
    Case-insensitive substring match on title or author.
    """
    q = select(Book)
    if term:
        like = f"%{term.strip()}%"
        q = q.where(or_(Book.title.ilike(like), Book.author.ilike(like)))
    books = db.execute(q.order_by(Book.id)).scalars().all()
    if available_only:
        remaining = remaining_copies_map(db, books)
        books = [b for b in books if remaining[b.id] > 0]
    return books


def add_book(db, title, author, total_copies, isbn=None):
    title = (title or "").strip()
    author = (author or "").strip()
    isbn = (isbn or "").strip() or None

    if not title:
        raise ValidationError("Title cannot be empty")
    if not author:
        raise ValidationError("Author cannot be empty")
    try:
        total_copies = int(total_copies)
    except (TypeError, ValueError):
        raise ValidationError("Total copies must be a number")
    if total_copies < 1:
        raise ValidationError("Total copies must be at least 1")

    if isbn:
        existing = db.execute(select(Book).where(Book.isbn == isbn)).scalar_one_or_none()
        if existing:
            raise Conflict(f"ISBN already exists in the catalog: {isbn}")

    book = Book(isbn=isbn, title=title, author=author, total_copies=total_copies)
    db.add(book)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict(f"ISBN already exists in the catalog: {isbn}")

    logger.info("Added book %s (%s copies)", book.title, book.total_copies)
    return book
