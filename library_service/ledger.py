"""
Borrow ledger.

Borrows are approved instantly: a new record starts as BORROWED and the
only later change is the return (BORROWED -> RETURNED). Records are never
deleted, so the ledger doubles as the borrowing history.

Every mutation runs in one transaction that locks the book row, re-reads
availability, checks it and writes, so two concurrent borrows of the last
copy cannot both succeed.
"""
import logging
from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from . import catalog
from .config import Config
from .errors import Conflict, InvalidState, NotFound
from .models import BorrowRequest, BorrowStatus, User

logger = logging.getLogger(__name__)


def _get_user(db, user_id):
    user = db.execute(select(User).where(User.id == user_id)).scalar_one_or_none()
    if not user:
        raise NotFound(f"User not found: {user_id}")
    return user


def create_borrow_request(db, user_id, book_id, loan_days=None):
    user = _get_user(db, user_id)
    book = catalog.get_book(db, book_id, for_update=True)

    if catalog.has_active_borrow(db, user.id, book.id):
        raise Conflict("User has already borrowed this book")
    if catalog.get_remaining_copies(db, book) <= 0:
        raise Conflict("No copies available for this book")

    if loan_days is None:
        loan_days = Config.LOAN_PERIOD_DAYS
    borrow_date = date.today()
    record = BorrowRequest(
        user=user,
        book=book,
        request_date=datetime.utcnow(),
        borrow_date=borrow_date,
        due_date=borrow_date + timedelta(days=loan_days),
        status=BorrowStatus.BORROWED,
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        # lost a race against the same user's other request
        db.rollback()
        raise Conflict("User has already borrowed this book")

    logger.info("User %s borrowed book %s (due %s)", user.username, book.id, record.due_date)
    return record


def return_book(db, request_id):
    q = select(BorrowRequest).where(BorrowRequest.id == request_id).with_for_update()
    record = db.execute(q).scalar_one_or_none()
    if not record:
        raise NotFound(f"Borrow record not found: {request_id}")
    if record.status != BorrowStatus.BORROWED:
        raise InvalidState("Cannot return a book that is not borrowed")

    record.status = BorrowStatus.RETURNED
    record.return_date = date.today()
    db.commit()

    logger.info("Borrow %s returned (book %s, user %s)", record.id, record.book_id, record.user_id)
    return record


def get_active_borrows_by_user(db, user_id):
    _get_user(db, user_id)
    q = (
        select(BorrowRequest)
        .where(BorrowRequest.user_id == user_id)
        .where(BorrowRequest.status == BorrowStatus.BORROWED)
        .order_by(BorrowRequest.id)
    )
    return db.execute(q).scalars().all()


def get_all_borrows_by_user(db, user_id):
    _get_user(db, user_id)
    q = (
        select(BorrowRequest)
        .where(BorrowRequest.user_id == user_id)
        .order_by(BorrowRequest.id)
    )
    return db.execute(q).scalars().all()


def get_all_borrowed(db):
    q = (
        select(BorrowRequest)
        .where(BorrowRequest.status == BorrowStatus.BORROWED)
        .order_by(BorrowRequest.due_date, BorrowRequest.id)
    )
    return db.execute(q).scalars().all()


def get_recent_returns(db, limit=5):
    q = (
        select(BorrowRequest)
        .where(BorrowRequest.status == BorrowStatus.RETURNED)
        .order_by(BorrowRequest.return_date.desc(), BorrowRequest.id.desc())
        .limit(limit)
    )
    return db.execute(q).scalars().all()


def is_overdue(record, today=None):
    today = today or date.today()
    return record.status == BorrowStatus.BORROWED and record.due_date < today
