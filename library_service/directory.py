"""
User directory: account creation, authentication and soft deletion.

Usernames and emails are stored trimmed and lowercased, so uniqueness is
case-insensitive. Passwords are only ever stored as salted hashes.
"""
import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash

from .errors import Conflict, NotFound, ValidationError
from .models import Role, User

logger = logging.getLogger(__name__)

MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 6


def validate_user_input(username, email, password, full_name):
    if not username or not username.strip():
        raise ValidationError("Username cannot be empty")
    if len(username.strip()) < MIN_USERNAME_LENGTH:
        raise ValidationError(f"Username must be at least {MIN_USERNAME_LENGTH} characters")
    if not email or not email.strip():
        raise ValidationError("Email cannot be empty")
    if "@" not in email:
        raise ValidationError("Invalid email format")
    _validate_password(password)
    if not full_name or not full_name.strip():
        raise ValidationError("Full name cannot be empty")


def _validate_password(password):
    if not password or len(password.strip()) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def get_user(db, user_id, role=None):
    user = db.execute(select(User).where(User.id == user_id)).scalar_one_or_none()
    if not user or (role is not None and user.role != role):
        raise NotFound("User not found")
    return user


def find_by_username(db, username):
    if not username or not username.strip():
        return None
    q = select(User).where(User.username == username.strip().lower())
    return db.execute(q).scalar_one_or_none()


def register(db, username, email, raw_password, full_name, role=Role.STUDENT):
    validate_user_input(username, email, raw_password, full_name)
    try:
        role = Role(role)
    except ValueError:
        raise ValidationError(f"Unknown role: {role}")

    username = username.strip().lower()
    email = email.strip().lower()

    if find_by_username(db, username):
        raise Conflict(f"Username already exists: {username}")
    if db.execute(select(User).where(User.email == email)).scalar_one_or_none():
        raise Conflict(f"Email already exists: {email}")

    user = User(
        username=username,
        email=email,
        password_hash=generate_password_hash(raw_password),
        full_name=full_name.strip(),
        role=role,
        registration_date=datetime.utcnow(),
        active=True,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict(f"Username or email already exists: {username}")

    logger.info("New %s registered: %s (%s)", user.role.value.lower(), user.username, user.full_name)
    return user


def register_student(db, username, email, raw_password, full_name):
    return register(db, username, email, raw_password, full_name, Role.STUDENT)


def create_admin(db, username, email, raw_password, full_name):
    return register(db, username, email, raw_password, full_name, Role.ADMIN)


def authenticate(db, username, password):
    """Return the user if the credentials match an active account, else None."""
    user = find_by_username(db, username)
    if not user or not user.active:
        return None
    if not password or not check_password_hash(user.password_hash, password):
        return None
    return user


def update_password(db, user_id, raw_password):
    _validate_password(raw_password)
    user = get_user(db, user_id)
    user.password_hash = generate_password_hash(raw_password)
    db.commit()
    logger.info("Password updated for %s", user.username)
    return user


def _set_active(db, user_id, active, role):
    user = get_user(db, user_id, role)
    user.active = active
    db.commit()
    logger.info("User %s %s", user.username, "reactivated" if active else "deactivated")
    return user


def deactivate(db, user_id, role=None):
    return _set_active(db, user_id, False, role)


def reactivate(db, user_id, role=None):
    return _set_active(db, user_id, True, role)


def list_users(db, role, active=None):
    q = select(User).where(User.role == role)
    if active is not None:
        q = q.where(User.active == active)
    return db.execute(q.order_by(User.username)).scalars().all()


def user_stats(db):
    """Counts of active accounts per role."""
    q = (
        select(User.role, func.count(User.id))
        .where(User.active.is_(True))
        .group_by(User.role)
    )
    counts = dict(db.execute(q).all())
    students = counts.get(Role.STUDENT, 0)
    admins = counts.get(Role.ADMIN, 0)
    return {
        "total_users": students + admins,
        "total_students": students,
        "total_admins": admins,
    }
