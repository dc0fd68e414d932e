import os
import tempfile

import pytest

# The app builds its engine at import time, so point it at a throwaway
# database before anything imports it.
_db_dir = tempfile.mkdtemp(prefix="library_test_")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_db_dir, "library.db")
os.environ["SEED_DEFAULTS"] = "false"
os.environ.setdefault("SECRET_KEY", "test-secret")

from library_service import app as app_module  # noqa: E402
from library_service import catalog, directory  # noqa: E402
from library_service.models import Base, Role  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_schema():
    # Recreate tables for every test so each one starts from an empty library
    Base.metadata.drop_all(app_module.engine)
    Base.metadata.create_all(app_module.engine)
    yield


@pytest.fixture
def db():
    session = app_module.SessionLocal()
    yield session
    session.close()


@pytest.fixture
def client():
    app_module.app.config["TESTING"] = True
    return app_module.app.test_client()


@pytest.fixture
def make_user():
    """Create an account in its own session and return its id."""
    def _make(username, role=Role.STUDENT, password="secret123", full_name=None):
        session = app_module.SessionLocal()
        try:
            user = directory.register(
                session,
                username,
                f"{username}@library.test",
                password,
                full_name or username.title(),
                role,
            )
            return user.id
        finally:
            session.close()

    return _make


@pytest.fixture
def make_book():
    def _make(title="Clean Code", author="Robert C. Martin", total_copies=1, isbn=None):
        session = app_module.SessionLocal()
        try:
            return catalog.add_book(session, title, author, total_copies, isbn).id
        finally:
            session.close()

    return _make


@pytest.fixture
def login(client):
    def _login(username, password="secret123", path="/login"):
        return client.post(path, data={"username": username, "password": password})

    return _login
