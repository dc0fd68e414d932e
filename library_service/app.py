import os
import logging
from datetime import date

from flask import (
    Flask,
    abort,
    flash,
    g,
    get_flashed_messages,
    jsonify,
    redirect,
    request,
    session,
    url_for,
)
from flask_cors import CORS
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from . import catalog, directory, ledger
from .config import Config
from .errors import Conflict, LibraryError
from .models import Base, Role, User

# ---------------------------------------------------------
# Logging
# ---------------------------------------------------------
logging.basicConfig(level=Config.LOG_LEVEL)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------
# Flask + DB setup
# ---------------------------------------------------------

app = Flask(__name__)
app.config.from_object(Config)
# Credentialed cross-origin requests only for an explicit origin list
CORS(
    app,
    origins=app.config["CORS_ORIGINS"],
    supports_credentials="*" not in app.config["CORS_ORIGINS"],
)

_db_uri = app.config["SQLALCHEMY_DATABASE_URI"]
engine = create_engine(
    _db_uri,
    echo=app.config["SQLALCHEMY_ECHO"],
    future=True,
    connect_args={"check_same_thread": False} if _db_uri.startswith("sqlite") else {},
)

if engine.dialect.name == "sqlite":
    # SQLite ignores FOR UPDATE; take the write lock when the transaction
    # starts instead, so borrow/return check-and-set is serialized.
    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

SAMPLE_STUDENTS = [
    ("john.doe", "john.doe@student.edu", "student123", "John Doe"),
    ("jane.smith", "jane.smith@student.edu", "student123", "Jane Smith"),
    ("bob.wilson", "bob.wilson@student.edu", "student123", "Bob Wilson"),
]


def seed_defaults(db):
    """
    Create the default admin when there is no admin yet, and the sample
    students when there is no student yet.
    """
    if not directory.list_users(db, Role.ADMIN):
        admin = directory.create_admin(
            db,
            app.config["DEFAULT_ADMIN_USERNAME"],
            app.config["DEFAULT_ADMIN_EMAIL"],
            app.config["DEFAULT_ADMIN_PASSWORD"],
            app.config["DEFAULT_ADMIN_FULL_NAME"],
        )
        logger.warning("Default admin %s created; change its password", admin.username)

    if not directory.list_users(db, Role.STUDENT):
        for username, email, password, full_name in SAMPLE_STUDENTS:
            try:
                directory.register_student(db, username, email, password, full_name)
            except Conflict as e:
                logger.info("Skipping sample student %s: %s", username, e.message)


def init_db():
    Base.metadata.create_all(engine)
    if not app.config["SEED_DEFAULTS"]:
        return
    db = SessionLocal()
    try:
        seed_defaults(db)
    finally:
        db.close()


init_db()


# ---------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------

def _messages():
    return [
        {"category": category, "message": message}
        for category, message in get_flashed_messages(with_categories=True)
    ]


def _user_summary(user):
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "full_name": user.full_name,
        "role": user.role.value,
        "active": user.active,
        "registration_date": user.registration_date.isoformat(),
    }


def _book_summary(book, remaining, borrowable=None):
    data = {
        "id": book.id,
        "isbn": book.isbn,
        "title": book.title,
        "author": book.author,
        "total_copies": book.total_copies,
        "available_copies": remaining,
    }
    if borrowable is not None:
        data["can_borrow"] = borrowable
    return data


def _borrow_summary(record, today):
    return {
        "id": record.id,
        "student": {
            "id": record.user.id,
            "username": record.user.username,
            "full_name": record.user.full_name,
        },
        "book": {
            "id": record.book.id,
            "title": record.book.title,
            "author": record.book.author,
        },
        "request_date": record.request_date.isoformat(),
        "borrow_date": record.borrow_date.isoformat(),
        "due_date": record.due_date.isoformat(),
        "return_date": record.return_date.isoformat() if record.return_date else None,
        "status": record.status.value,
        "overdue": ledger.is_overdue(record, today),
    }


def _dashboard_url(role):
    if role == Role.ADMIN.value:
        return url_for("admin_dashboard")
    return url_for("student_dashboard")


# ---------------------------------------------------------
# Authorization: checked once per request, by URL namespace
# ---------------------------------------------------------

PUBLIC_ADMIN_PATHS = {"/admin/login"}


def _required_role(path):
    if path in PUBLIC_ADMIN_PATHS:
        return None
    if path.startswith("/admin/"):
        return Role.ADMIN
    if path.startswith("/student/"):
        return Role.STUDENT
    return None


@app.before_request
def authorize():
    required = _required_role(request.path)
    if required is None:
        return None

    user_id = session.get("user_id")
    if user_id is None:
        return redirect(url_for("index"))

    db = SessionLocal()
    try:
        user = db.get(User, user_id)
        if not user or not user.active:
            logger.warning("Session for inactive or missing user %s cleared", user_id)
            session.clear()
            return redirect(url_for("index"))
        if user.role != required:
            logger.warning("User %s denied access to %s", user.username, request.path)
            abort(403)
        g.user_id = user.id
        g.username = user.username
    finally:
        db.close()
    return None


@app.errorhandler(LibraryError)
def handle_library_error(e):
    return jsonify({"error": e.message}), e.status_code


# ---------------------------------------------------------
# Public: landing, health, login/logout
# ---------------------------------------------------------

@app.get("/")
def index():
    return jsonify(
        {
            "app": "library_service",
            "authenticated": "user_id" in session,
            "role": session.get("role"),
            "error": request.args.get("error") == "true"
            or request.args.get("adminError") == "true",
            "logout": request.args.get("logout") == "true",
            "messages": _messages(),
        }
    )


@app.get("/api/health")
def health():
    return jsonify({"status": "ok", "service": "library_service"})


def _login(failure_url, required_role=None):
    username = request.form.get("username", "")
    password = request.form.get("password", "")

    db = SessionLocal()
    try:
        user = directory.authenticate(db, username, password)
        if user and required_role and user.role != required_role:
            user = None
        if not user:
            logger.warning("Failed login for %r", username)
            return redirect(failure_url)

        session.clear()
        session["user_id"] = user.id
        session["role"] = user.role.value
        logger.info("User %s logged in", user.username)
        return redirect(_dashboard_url(user.role.value))
    finally:
        db.close()


@app.post("/login")
def login():
    return _login("/?error=true")


@app.post("/admin/login")
def admin_login():
    return _login("/?adminError=true", Role.ADMIN)


@app.route("/logout", methods=["GET", "POST"])
def logout():
    session.clear()
    return redirect("/?logout=true")


@app.get("/default")
def default_landing():
    role = session.get("role")
    if role is None:
        return redirect(url_for("index"))
    return redirect(_dashboard_url(role))


# ---------------------------------------------------------
# Student pages
# ---------------------------------------------------------

@app.get("/student/dashboard")
def student_dashboard():
    db = SessionLocal()
    try:
        user = directory.get_user(db, g.user_id)
        borrowed = ledger.get_active_borrows_by_user(db, user.id)
        history = ledger.get_all_borrows_by_user(db, user.id)
        books = catalog.list_books(db)
        remaining = catalog.remaining_copies_map(db, books)
        borrowed_ids = [br.book_id for br in borrowed]
        today = date.today()

        return jsonify(
            {
                "current_user": _user_summary(user),
                "welcome_message": f"Welcome back, {user.full_name}!",
                "borrowed_books": [_borrow_summary(br, today) for br in borrowed],
                "borrow_history": [_borrow_summary(br, today) for br in history],
                "available_books": [
                    _book_summary(b, remaining[b.id], remaining[b.id] > 0 and b.id not in borrowed_ids)
                    for b in books
                ],
                "borrowed_book_ids": borrowed_ids,
                "messages": _messages(),
            }
        )
    finally:
        db.close()


@app.get("/student/books")
def browse_books():
    search = request.args.get("search")
    available_only = request.args.get("available", "false").lower() == "true"

    db = SessionLocal()
    try:
        books = catalog.search_books(db, search, available_only)
        remaining = catalog.remaining_copies_map(db, books)
        borrowed_ids = {
            br.book_id for br in ledger.get_active_borrows_by_user(db, g.user_id)
        }
        return jsonify(
            {
                "search_query": search,
                "books": [
                    _book_summary(b, remaining[b.id], remaining[b.id] > 0 and b.id not in borrowed_ids)
                    for b in books
                ],
            }
        )
    finally:
        db.close()


@app.get("/student/borrowed")
def my_borrowed_books():
    db = SessionLocal()
    try:
        today = date.today()
        return jsonify(
            {
                "borrowed_books": [
                    _borrow_summary(br, today)
                    for br in ledger.get_active_borrows_by_user(db, g.user_id)
                ],
                "borrow_history": [
                    _borrow_summary(br, today)
                    for br in ledger.get_all_borrows_by_user(db, g.user_id)
                ],
            }
        )
    finally:
        db.close()


@app.get("/student/profile")
def student_profile():
    db = SessionLocal()
    try:
        user = directory.get_user(db, g.user_id)
        return jsonify({"current_user": _user_summary(user), "messages": _messages()})
    finally:
        db.close()


@app.post("/student/profile/password")
def change_password():
    current = request.form.get("current_password", "")
    new = request.form.get("new_password", "")

    db = SessionLocal()
    try:
        if not directory.authenticate(db, g.username, current):
            flash("Current password is incorrect", "error")
        else:
            directory.update_password(db, g.user_id, new)
            flash("Password updated", "success")
    except LibraryError as e:
        flash(e.message, "error")
    finally:
        db.close()
    return redirect(url_for("student_profile"))


@app.post("/student/borrow/<int:book_id>")
def request_borrow(book_id):
    db = SessionLocal()
    try:
        record = ledger.create_borrow_request(
            db, g.user_id, book_id, app.config["LOAN_PERIOD_DAYS"]
        )
        flash(
            f"Borrowed {record.book.title}; due back {record.due_date.isoformat()}",
            "success",
        )
    except LibraryError as e:
        flash(f"Cannot borrow this book: {e.message}", "error")
    finally:
        db.close()
    return redirect(url_for("student_dashboard"))


# ---------------------------------------------------------
# Admin pages
# ---------------------------------------------------------

@app.get("/admin/dashboard")
def admin_dashboard():
    db = SessionLocal()
    try:
        today = date.today()
        stats = directory.user_stats(db)
        active = ledger.get_all_borrowed(db)
        recent = catalog.recent_books(db, 5)
        remaining = catalog.remaining_copies_map(db, recent)

        return jsonify(
            {
                "current_user": _user_summary(directory.get_user(db, g.user_id)),
                "total_books": len(catalog.list_books(db)),
                "total_students": stats["total_students"],
                "active_borrows": len(active),
                "overdue_borrows": sum(1 for br in active if ledger.is_overdue(br, today)),
                "active_borrows_list": [_borrow_summary(br, today) for br in active],
                "recent_books": [_book_summary(b, remaining[b.id]) for b in recent],
                "recent_returns": [
                    _borrow_summary(br, today) for br in ledger.get_recent_returns(db, 5)
                ],
                "messages": _messages(),
            }
        )
    finally:
        db.close()


@app.get("/admin/students")
def manage_students():
    db = SessionLocal()
    try:
        students = directory.list_users(db, Role.STUDENT)
        return jsonify(
            {
                "students": [_user_summary(s) for s in students],
                "total_students": len(students),
                "active_students": sum(1 for s in students if s.active),
                "messages": _messages(),
            }
        )
    finally:
        db.close()


@app.get("/admin/students/<int:user_id>/borrows")
def student_borrows(user_id):
    db = SessionLocal()
    try:
        today = date.today()
        student = directory.get_user(db, user_id)
        return jsonify(
            {
                "student": _user_summary(student),
                "borrow_history": [
                    _borrow_summary(br, today)
                    for br in ledger.get_all_borrows_by_user(db, student.id)
                ],
            }
        )
    finally:
        db.close()


@app.get("/admin/students/create")
def create_student_form():
    form = session.pop("form_data", None) or {"username": "", "email": "", "full_name": ""}
    return jsonify({"form": form, "messages": _messages()})


@app.post("/admin/students/create")
def create_student():
    username = request.form.get("username", "")
    email = request.form.get("email", "")
    password = request.form.get("password", "")
    full_name = request.form.get("full_name", "")

    db = SessionLocal()
    try:
        student = directory.register_student(db, username, email, password, full_name)
        flash(
            f"Student account created: {student.full_name} ({student.username})",
            "success",
        )
        return redirect(url_for("manage_students"))
    except LibraryError as e:
        flash(e.message, "error")
        session["form_data"] = {"username": username, "email": email, "full_name": full_name}
        return redirect(url_for("create_student_form"))
    finally:
        db.close()


@app.post("/admin/students/<int:user_id>/deactivate")
def deactivate_student(user_id):
    db = SessionLocal()
    try:
        user = directory.deactivate(db, user_id, Role.STUDENT)
        flash(f"Student account deactivated: {user.full_name}", "success")
    except LibraryError:
        flash("Unable to deactivate student account", "error")
    finally:
        db.close()
    return redirect(url_for("manage_students"))


@app.post("/admin/students/<int:user_id>/reactivate")
def reactivate_student(user_id):
    db = SessionLocal()
    try:
        user = directory.reactivate(db, user_id, Role.STUDENT)
        flash(f"Student account reactivated: {user.full_name}", "success")
    except LibraryError:
        flash("Unable to reactivate student account", "error")
    finally:
        db.close()
    return redirect(url_for("manage_students"))


@app.post("/admin/books/add")
def add_book():
    db = SessionLocal()
    try:
        book = catalog.add_book(
            db,
            title=request.form.get("title"),
            author=request.form.get("author"),
            total_copies=request.form.get("total_copies", 1),
            isbn=request.form.get("isbn"),
        )
        flash(f"Book added successfully: {book.title}", "success")
    except LibraryError as e:
        flash(f"Failed to add book: {e.message}", "error")
    finally:
        db.close()
    return redirect(url_for("admin_dashboard"))


@app.post("/admin/return/<int:borrow_id>")
def return_book(borrow_id):
    db = SessionLocal()
    try:
        record = ledger.return_book(db, borrow_id)
        flash(
            f"Book returned: {record.book.title} by {record.user.full_name}",
            "success",
        )
    except LibraryError as e:
        flash(f"Failed to process return: {e.message}", "error")
    finally:
        db.close()
    return redirect(url_for("admin_dashboard"))


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    app.run(host="0.0.0.0", port=port, debug=True)
