import pytest
from werkzeug.security import check_password_hash

from library_service import directory, ledger
from library_service.errors import Conflict, NotFound, ValidationError
from library_service.models import Role


def test_register_normalizes_and_hashes(db):
    user = directory.register(db, "  John.Doe ", " John.Doe@Student.EDU ", "student123", " John Doe ")

    assert user.username == "john.doe"
    assert user.email == "john.doe@student.edu"
    assert user.full_name == "John Doe"
    assert user.role == Role.STUDENT
    assert user.active is True
    assert user.registration_date is not None
    assert user.password_hash != "student123"
    assert check_password_hash(user.password_hash, "student123")


def test_password_hashes_are_salted(db):
    a = directory.register_student(db, "alice", "alice@x.edu", "samepass", "Alice")
    b = directory.register_student(db, "bobby", "bobby@x.edu", "samepass", "Bobby")
    assert a.password_hash != b.password_hash


def test_duplicate_username_is_a_conflict(db):
    first = directory.register_student(db, "john.doe", "john@x.edu", "student123", "John Doe")

    with pytest.raises(Conflict):
        directory.register_student(db, "john.doe", "other@x.edu", "student123", "Other John")

    # usernames are case-insensitive
    with pytest.raises(Conflict):
        directory.register_student(db, "JOHN.DOE", "third@x.edu", "student123", "Third John")

    kept = directory.find_by_username(db, "john.doe")
    assert kept.id == first.id
    assert kept.email == "john@x.edu"
    assert kept.full_name == "John Doe"


def test_duplicate_email_is_a_conflict(db):
    directory.register_student(db, "john.doe", "john@x.edu", "student123", "John Doe")
    with pytest.raises(Conflict):
        directory.register_student(db, "johnny", "JOHN@x.edu", "student123", "Johnny")


@pytest.mark.parametrize(
    "username, email, password, full_name, message",
    [
        ("jo", "jo@x.edu", "student123", "Jo", "at least 3"),
        ("", "jo@x.edu", "student123", "Jo", "cannot be empty"),
        ("john", "not-an-email", "student123", "John", "Invalid email"),
        ("john", "john@x.edu", "12345", "John", "at least 6"),
        ("john", "john@x.edu", "      abc", "John", "at least 6"),
        ("john", "john@x.edu", "student123", "   ", "Full name"),
    ],
)
def test_register_validates_input(db, username, email, password, full_name, message):
    with pytest.raises(ValidationError, match=message):
        directory.register(db, username, email, password, full_name)
    assert directory.list_users(db, Role.STUDENT) == []


def test_create_admin_sets_role(db):
    admin = directory.create_admin(db, "admin", "admin@library.com", "admin123", "System Administrator")
    assert admin.role == Role.ADMIN
    assert directory.list_users(db, Role.ADMIN) == [admin]
    assert directory.list_users(db, Role.STUDENT) == []


def test_authenticate(db):
    directory.register_student(db, "jane.smith", "jane@x.edu", "student123", "Jane Smith")

    assert directory.authenticate(db, "Jane.Smith", "student123").username == "jane.smith"
    assert directory.authenticate(db, "jane.smith", "wrong-password") is None
    assert directory.authenticate(db, "nobody", "student123") is None
    assert directory.authenticate(db, "", "") is None


def test_deactivated_user_cannot_authenticate_but_history_remains(db, make_book):
    book_id = make_book()
    user = directory.register_student(db, "bob.wilson", "bob@x.edu", "student123", "Bob Wilson")
    ledger.create_borrow_request(db, user.id, book_id)

    directory.deactivate(db, user.id)

    assert directory.authenticate(db, "bob.wilson", "student123") is None
    history = ledger.get_all_borrows_by_user(db, user.id)
    assert len(history) == 1
    assert history[0].book_id == book_id


def test_reactivate_restores_login(db):
    user = directory.register_student(db, "bob.wilson", "bob@x.edu", "student123", "Bob Wilson")
    directory.deactivate(db, user.id)
    directory.reactivate(db, user.id)
    assert directory.authenticate(db, "bob.wilson", "student123").id == user.id


def test_deactivate_unknown_user(db):
    with pytest.raises(NotFound):
        directory.deactivate(db, 999)


def test_update_password(db):
    user = directory.register_student(db, "jane.smith", "jane@x.edu", "student123", "Jane Smith")

    with pytest.raises(ValidationError):
        directory.update_password(db, user.id, "short")

    directory.update_password(db, user.id, "new-password")
    assert directory.authenticate(db, "jane.smith", "student123") is None
    assert directory.authenticate(db, "jane.smith", "new-password").id == user.id


def test_list_users_filters_on_active(db):
    a = directory.register_student(db, "alice", "alice@x.edu", "student123", "Alice")
    b = directory.register_student(db, "bobby", "bobby@x.edu", "student123", "Bobby")
    directory.deactivate(db, b.id)

    assert [u.id for u in directory.list_users(db, Role.STUDENT)] == [a.id, b.id]
    assert [u.id for u in directory.list_users(db, Role.STUDENT, active=True)] == [a.id]


def test_user_stats_count_active_accounts(db):
    directory.create_admin(db, "admin", "admin@library.com", "admin123", "Admin")
    directory.register_student(db, "alice", "alice@x.edu", "student123", "Alice")
    gone = directory.register_student(db, "bobby", "bobby@x.edu", "student123", "Bobby")
    directory.deactivate(db, gone.id)

    assert directory.user_stats(db) == {
        "total_users": 2,
        "total_students": 1,
        "total_admins": 1,
    }


def test_register_rejects_unknown_role(db):
    with pytest.raises(ValidationError, match="Unknown role"):
        directory.register(db, "libby", "libby@x.edu", "student123", "Libby", "LIBRARIAN")
    assert directory.find_by_username(db, "libby") is None


def test_register_accepts_role_name(db):
    user = directory.register(db, "root", "root@x.edu", "admin123", "Root", "ADMIN")
    assert user.role == Role.ADMIN


def test_deactivate_restricted_to_role(db):
    admin = directory.create_admin(db, "admin", "admin@library.com", "admin123", "Admin")

    with pytest.raises(NotFound):
        directory.deactivate(db, admin.id, Role.STUDENT)
    assert directory.get_user(db, admin.id).active is True
