from datetime import date, timedelta

from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from library_service.models import Admin, Member


def add_book(client, headers, **overrides):
    payload = {"title": "Foundation", "isbn": "9780553293357", "copiesOwned": 3}
    payload.update(overrides)
    return client.post("/api/books", headers=headers, json=payload)


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "OK"


def test_unknown_route_is_json(client):
    resp = client.get("/api/nope")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "not_found"


def test_register_and_login_member(client, member):
    resp = client.post(
        "/api/auth/login", json={"email": "alice@example.com", "password": "alice-pass"}
    )
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["user"]["role"] == "user"
    assert body["user"]["id"] == member[0]
    assert body["token"]


def test_register_duplicate_email_conflicts(client, member):
    resp = client.post(
        "/api/auth/register",
        json={
            "firstName": "Alice",
            "lastName": "Again",
            "email": "ALICE@example.com",
            "password": "another-pass",
        },
    )
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "conflict"


def test_register_validation(client):
    resp = client.post(
        "/api/auth/register",
        json={"firstName": "Bob", "lastName": "B", "email": "not-an-email", "password": "secret1"},
    )
    assert resp.status_code == 400

    resp = client.post(
        "/api/auth/register",
        json={"firstName": "Bob", "lastName": "B", "email": "bob@example.com", "password": "short"},
    )
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "validation"


def test_login_wrong_password(client, member):
    resp = client.post(
        "/api/auth/login", json={"email": "alice@example.com", "password": "nope-nope"}
    )
    assert resp.status_code == 401


def test_login_unknown_email(client):
    resp = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "x"})
    assert resp.status_code == 401


def test_admin_registration_requires_secret_code(client):
    resp = client.post(
        "/api/auth/register-admin",
        json={
            "name": "Mallory",
            "email": "mallory@example.com",
            "password": "long-enough",
            "secretCode": "guess",
        },
    )
    assert resp.status_code == 401


def test_admin_login_reports_admin_role(client, admin_headers):
    resp = client.post(
        "/api/auth/login", json={"email": "ada@example.com", "password": "admin-password"}
    )
    assert resp.status_code == 200
    assert resp.get_json()["user"]["role"] == "admin"


def test_add_book_requires_admin(client, member):
    _, member_headers = member
    assert add_book(client, {}).status_code == 401
    assert add_book(client, member_headers).status_code == 403


def test_invalid_token_rejected(client):
    resp = add_book(client, {"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "unauthorized"


def test_add_and_list_books(client, admin_headers):
    category = client.post(
        "/api/categories", headers=admin_headers, json={"categoryName": "Science"}
    ).get_json()["categoryId"]
    author = client.post(
        "/api/authors", headers=admin_headers, json={"firstName": "Isaac", "lastName": "Asimov"}
    ).get_json()["authorId"]

    resp = add_book(client, admin_headers, categoryId=category, authors=[author])
    assert resp.status_code == 201
    book_id = resp.get_json()["bookId"]

    book = client.get(f"/api/books/{book_id}").get_json()
    assert book["copiesOwned"] == 3
    assert book["copiesAvailable"] == 3
    assert book["categoryName"] == "Science"
    assert book["authors"] == ["Isaac Asimov"]

    assert [b["bookId"] for b in client.get("/api/books").get_json()] == [book_id]


def test_duplicate_isbn_and_category_conflict(client, admin_headers):
    assert add_book(client, admin_headers).status_code == 201
    assert add_book(client, admin_headers, title="Other").status_code == 409

    client.post("/api/categories", headers=admin_headers, json={"categoryName": "Fiction"})
    resp = client.post("/api/categories", headers=admin_headers, json={"categoryName": "fiction"})
    assert resp.status_code == 409


def test_add_book_rejects_bad_input(client, admin_headers):
    assert add_book(client, admin_headers, copiesOwned=0).status_code == 400
    assert add_book(client, admin_headers, categoryId=77).status_code == 404


def test_get_missing_book(client):
    assert client.get("/api/books/404").status_code == 404


def test_borrow_and_return_flow(client, admin_headers, member):
    member_id, headers = member
    book_id = add_book(client, admin_headers).get_json()["bookId"]

    resp = client.post("/api/loans", headers=headers, json={"bookId": book_id, "memberId": member_id})
    assert resp.status_code == 201
    body = resp.get_json()
    out = date.fromisoformat(body["dateOut"][:10])
    assert date.fromisoformat(body["dueDate"]) == out + timedelta(days=14)
    assert client.get(f"/api/books/{book_id}").get_json()["copiesAvailable"] == 2

    resp = client.put(f"/api/loans/{body['loanId']}/return", headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["dateReturned"]
    assert client.get(f"/api/books/{book_id}").get_json()["copiesAvailable"] == 3

    resp = client.put(f"/api/loans/{body['loanId']}/return", headers=headers)
    assert resp.status_code == 409
    assert client.get(f"/api/books/{book_id}").get_json()["copiesAvailable"] == 3


def register_second_member(client):
    resp = client.post(
        "/api/auth/register",
        json={
            "firstName": "Bob",
            "lastName": "Borrower",
            "email": "bob@example.com",
            "password": "bob-pass",
        },
    )
    body = resp.get_json()
    return body["user"]["id"], {"Authorization": f"Bearer {body['token']}"}


def deactivate(library, model, email):
    session = library.db.session()
    try:
        session.execute(update(model).where(model.email == email).values(is_active=False))
        session.commit()
    finally:
        session.close()


def test_return_unknown_loan(client, member):
    _, headers = member
    resp = client.put("/api/loans/999/return", headers=headers)
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "not_found"


def test_member_cannot_return_someone_elses_loan(client, admin_headers, member):
    member_id, headers = member
    _, other_headers = register_second_member(client)
    book_id = add_book(client, admin_headers).get_json()["bookId"]
    loan_id = client.post(
        "/api/loans", headers=headers, json={"bookId": book_id, "memberId": member_id}
    ).get_json()["loanId"]

    resp = client.put(f"/api/loans/{loan_id}/return", headers=other_headers)
    assert resp.status_code == 403
    assert client.get(f"/api/books/{book_id}").get_json()["copiesAvailable"] == 2

    assert client.put(f"/api/loans/{loan_id}/return", headers=headers).status_code == 200


def test_deactivated_admin_token_loses_loan_access(client, library, admin_headers, member):
    member_id, _ = member
    book_id = add_book(client, admin_headers).get_json()["bookId"]
    deactivate(library, Admin, "ada@example.com")

    assert client.get("/api/members", headers=admin_headers).status_code == 401
    resp = client.post(
        "/api/loans", headers=admin_headers, json={"bookId": book_id, "memberId": member_id}
    )
    assert resp.status_code == 401
    assert client.get("/api/loans", headers=admin_headers).status_code == 401
    assert client.get(f"/api/books/{book_id}").get_json()["copiesAvailable"] == 3


def test_deactivated_member_token_cannot_borrow(client, library, admin_headers, member):
    member_id, headers = member
    book_id = add_book(client, admin_headers).get_json()["bookId"]
    deactivate(library, Member, "alice@example.com")

    resp = client.post("/api/loans", headers=headers, json={"bookId": book_id, "memberId": member_id})
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "unauthorized"


def test_database_failure_is_json_500(client, library, monkeypatch):
    def locked():
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr(library.catalog, "list_books", locked)
    resp = client.get("/api/books")
    assert resp.status_code == 500
    assert resp.get_json()["error"] == "error"


def test_borrow_unavailable_and_missing(client, admin_headers, member):
    member_id, headers = member
    book_id = add_book(client, admin_headers, copiesOwned=1).get_json()["bookId"]

    payload = {"bookId": book_id, "memberId": member_id}
    assert client.post("/api/loans", headers=headers, json=payload).status_code == 201

    resp = client.post("/api/loans", headers=headers, json=payload)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "unavailable"

    resp = client.post("/api/loans", headers=headers, json={"bookId": 999, "memberId": member_id})
    assert resp.status_code == 404


def test_borrow_requires_token_and_fields(client, member):
    member_id, headers = member
    assert client.post("/api/loans", json={"bookId": 1, "memberId": member_id}).status_code == 401
    resp = client.post("/api/loans", headers=headers, json={"bookId": "1"})
    assert resp.status_code == 400


def test_member_cannot_borrow_for_someone_else(client, admin_headers, member):
    member_id, headers = member
    book_id = add_book(client, admin_headers).get_json()["bookId"]
    resp = client.post(
        "/api/loans", headers=headers, json={"bookId": book_id, "memberId": member_id + 1}
    )
    assert resp.status_code == 403


def test_admin_borrows_for_member_and_lists_loans(client, admin_headers, member):
    member_id, headers = member
    book_id = add_book(client, admin_headers).get_json()["bookId"]
    resp = client.post(
        "/api/loans", headers=admin_headers, json={"bookId": book_id, "memberId": member_id}
    )
    assert resp.status_code == 201

    loans = client.get("/api/loans", headers=admin_headers).get_json()
    assert len(loans) == 1
    assert loans[0]["email"] == "alice@example.com"
    assert loans[0]["dateReturned"] is None

    mine = client.get("/api/loans", headers=headers).get_json()
    assert [l["loanId"] for l in mine] == [loans[0]["loanId"]]


def test_admin_views(client, admin_headers, member):
    member_id, _ = member
    add_book(client, admin_headers)

    members = client.get("/api/members", headers=admin_headers).get_json()
    assert [m["memberId"] for m in members] == [member_id]

    admins = client.get("/api/admin/list", headers=admin_headers).get_json()
    assert admins[0]["email"] == "ada@example.com"

    stats = client.get("/api/admin/stats", headers=admin_headers).get_json()
    assert stats["books"] == {"totalBooks": 1, "totalCopies": 3, "availableCopies": 3}
    assert stats["members"]["totalMembers"] == 1
    assert stats["loans"]["activeLoans"] == 0
    assert stats["admins"]["totalAdmins"] == 1

    audit = client.get("/api/admin/ledger/audit", headers=admin_headers).get_json()
    assert audit == {"consistent": True, "mismatches": []}


def test_admin_resets_member_password(client, admin_headers, member):
    member_id, headers = member
    assert client.get("/api/members", headers=headers).status_code == 403

    resp = client.put(
        f"/api/admin/users/{member_id}/reset-password",
        headers=admin_headers,
        json={"password": "fresh-pass"},
    )
    assert resp.status_code == 200

    resp = client.post(
        "/api/auth/login", json={"email": "alice@example.com", "password": "fresh-pass"}
    )
    assert resp.status_code == 200

    resp = client.put(
        "/api/admin/users/999/reset-password", headers=admin_headers, json={"password": "fresh-pass"}
    )
    assert resp.status_code == 404
