from pathlib import Path

import pytest

from library_service.app import create_app
from library_service.models import Book


ADMIN_CODE = "test-admin-code"


@pytest.fixture
def app(tmp_path: Path):
    # Each test gets its own SQLite file so state never leaks between tests
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'test_library.db'}",
            "BCRYPT_ROUNDS": 4,
            "JWT_SECRET": "test-jwt-secret",
            "ADMIN_SECRET_CODE": ADMIN_CODE,
        }
    )
    yield app
    app.extensions["library"].close()


@pytest.fixture
def library(app):
    return app.extensions["library"]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers(client):
    resp = client.post(
        "/api/auth/register-admin",
        json={
            "name": "Ada Librarian",
            "email": "ada@example.com",
            "password": "admin-password",
            "secretCode": ADMIN_CODE,
        },
    )
    assert resp.status_code == 201
    return {"Authorization": f"Bearer {resp.get_json()['token']}"}


@pytest.fixture
def member(client):
    """Registered member: (member id, auth headers)."""
    resp = client.post(
        "/api/auth/register",
        json={
            "firstName": "Alice",
            "lastName": "Reader",
            "email": "alice@example.com",
            "password": "alice-pass",
        },
    )
    assert resp.status_code == 201
    body = resp.get_json()
    return body["user"]["id"], {"Authorization": f"Bearer {body['token']}"}


@pytest.fixture
def make_book(library):
    """Create a book directly through the catalog store and return its id."""
    counter = {"n": 0}

    def _make(copies=3, title="Foundation"):
        counter["n"] += 1
        return library.catalog.add_book(
            title=title,
            isbn=f"978000000{counter['n']:04d}",
            copies_owned=copies,
        )

    return _make


@pytest.fixture
def make_member(library):
    counter = {"n": 0}

    def _make():
        counter["n"] += 1
        principal = library.identity.register_member(
            first_name="Member",
            last_name=str(counter["n"]),
            email=f"member{counter['n']}@example.com",
            password="member-pass",
        )
        return principal.subject_id

    return _make


@pytest.fixture
def read_book(library):
    """Fresh copy of a book row, read outside any store."""

    def _read(book_id):
        session = library.db.session()
        try:
            return session.get(Book, book_id)
        finally:
            session.close()

    return _read
