import os
import logging

from flask import Flask, current_app, g, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from .auth import issue_token, require_admin, require_token
from .catalog import CatalogStore
from .config import Config
from .database import Database
from .errors import Forbidden, LibraryError, ValidationFailed
from .identity import IdentityStore
from .ledger import LoanLedger
from .models import utcnow

logger = logging.getLogger(__name__)


class Library:
    """Per-app handles: the database plus the stores built on it."""

    def __init__(self, config):
        self.db = Database(
            config["SQLALCHEMY_DATABASE_URI"],
            echo=config["SQLALCHEMY_ECHO"],
            busy_timeout=config["DB_BUSY_TIMEOUT"],
        )
        self.db.create_all()
        self.catalog = CatalogStore(self.db)
        self.identity = IdentityStore(
            self.db,
            bcrypt_rounds=config["BCRYPT_ROUNDS"],
            admin_secret_code=config["ADMIN_SECRET_CODE"],
        )
        self.ledger = LoanLedger(self.db, loan_period_days=config["LOAN_PERIOD_DAYS"])

    def close(self):
        self.db.close()


def create_app(config=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if config:
        app.config.update(config)

    logging.basicConfig(level=app.config["LOG_LEVEL"])

    CORS(
        app,
        origins=app.config["CORS_ORIGINS"],
        supports_credentials=True,
        methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )

    library = Library(app.config)
    app.extensions["library"] = library
    logger.info(
        "Library service using %s",
        library.db.engine.url.render_as_string(hide_password=True),
    )

    app.register_error_handler(LibraryError, handle_library_error)
    app.register_error_handler(HTTPException, handle_http_error)
    app.register_error_handler(Exception, handle_unexpected_error)
    register_routes(app)
    return app


def services():
    return current_app.extensions["library"]


# ----------------- error rendering -----------------

def handle_library_error(err):
    return jsonify(err.to_dict()), err.status_code


def handle_http_error(err):
    kind = (err.name or "error").lower().replace(" ", "_")
    return jsonify({"error": kind, "message": err.description}), err.code


def handle_unexpected_error(err):
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({"error": "error", "message": "Internal server error"}), 500


# ----------------- request helpers -----------------

def json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationFailed("Request body must be a JSON object")
    return data


def required_str(data, key, strip=True):
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationFailed(f"{key} is required")
    return value.strip() if strip else value


def required_int(data, key, minimum=None):
    value = data.get(key)
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationFailed(f"{key} must be an integer")
    if minimum is not None and value < minimum:
        raise ValidationFailed(f"{key} must be at least {minimum}")
    return value


def optional_int(data, key):
    if data.get(key) is None:
        return None
    return required_int(data, key)


def valid_email(data):
    email = required_str(data, "email")
    local, _, domain = email.partition("@")
    if not local or "." not in domain or " " in email:
        raise ValidationFailed("email must be a valid address")
    return email


# ----------------- payloads -----------------

def book_payload(book):
    return {
        "bookId": book.id,
        "isbn": book.isbn,
        "title": book.title,
        "copiesOwned": book.copies_owned,
        "copiesAvailable": book.copies_available,
        "categoryId": book.category_id,
        "categoryName": book.category.name if book.category else None,
        "authors": [a.full_name for a in book.authors],
    }


def loan_payload(loan):
    return {
        "loanId": loan.id,
        "bookId": loan.book_id,
        "memberId": loan.member_id,
        "title": loan.book.title,
        "isbn": loan.book.isbn,
        "firstName": loan.member.first_name,
        "lastName": loan.member.last_name,
        "email": loan.member.email,
        "dateOut": loan.date_out.isoformat(),
        "dateDue": loan.date_due.isoformat(),
        "dateReturned": loan.returned_at.isoformat() if loan.returned_at else None,
    }


def auth_payload(principal):
    return {
        "token": issue_token(principal),
        "user": {
            "id": principal.subject_id,
            "email": principal.email,
            "firstName": principal.first_name,
            "lastName": principal.last_name,
            "role": principal.role,
        },
    }


def register_routes(app):
    # ----------------- health -----------------

    @app.get("/api/health")
    def health():
        return jsonify({"status": "OK", "timestamp": utcnow().isoformat() + "Z"})

    # ----------------- auth endpoints -----------------

    @app.post("/api/auth/register")
    def register_member():
        data = json_body()
        email = valid_email(data)
        password = required_str(data, "password", strip=False)
        principal = services().identity.register_member(
            first_name=required_str(data, "firstName"),
            last_name=required_str(data, "lastName"),
            email=email,
            password=password,
        )
        body = auth_payload(principal)
        body["message"] = "User created successfully"
        return jsonify(body), 201

    @app.post("/api/auth/register-admin")
    def register_admin():
        data = json_body()
        principal = services().identity.register_admin(
            name=required_str(data, "name"),
            email=valid_email(data),
            password=required_str(data, "password", strip=False),
            secret_code=required_str(data, "secretCode"),
        )
        body = auth_payload(principal)
        body["message"] = "Admin registered successfully"
        return jsonify(body), 201

    @app.post("/api/auth/login")
    def login():
        data = json_body()
        principal = services().identity.verify(
            required_str(data, "email"), required_str(data, "password", strip=False)
        )
        return jsonify(auth_payload(principal))

    # ----------------- catalog endpoints -----------------

    @app.get("/api/books")
    def list_books():
        return jsonify([book_payload(b) for b in services().catalog.list_books()])

    @app.get("/api/books/<int:book_id>")
    def get_book(book_id):
        return jsonify(book_payload(services().catalog.find_book(book_id)))

    @app.post("/api/books")
    @require_admin
    def add_book():
        data = json_body()
        author_ids = data.get("authors") or []
        if not isinstance(author_ids, list) or not all(
            isinstance(a, int) and not isinstance(a, bool) for a in author_ids
        ):
            raise ValidationFailed("authors must be a list of author ids")

        book_id = services().catalog.add_book(
            title=required_str(data, "title"),
            isbn=required_str(data, "isbn"),
            copies_owned=required_int(data, "copiesOwned", minimum=1),
            category_id=optional_int(data, "categoryId"),
            author_ids=author_ids,
        )
        return jsonify({"message": "Book added successfully", "bookId": book_id}), 201

    @app.get("/api/categories")
    def list_categories():
        return jsonify(
            [{"categoryId": c.id, "categoryName": c.name} for c in services().catalog.list_categories()]
        )

    @app.post("/api/categories")
    @require_admin
    def add_category():
        data = json_body()
        category_id = services().catalog.add_category(required_str(data, "categoryName"))
        return jsonify({"categoryId": category_id}), 201

    @app.get("/api/authors")
    def list_authors():
        return jsonify(
            [
                {"authorId": a.id, "firstName": a.first_name, "lastName": a.last_name}
                for a in services().catalog.list_authors()
            ]
        )

    @app.post("/api/authors")
    @require_admin
    def add_author():
        data = json_body()
        first_name = data.get("firstName")
        if first_name is not None and not isinstance(first_name, str):
            raise ValidationFailed("firstName must be a string")
        author_id = services().catalog.add_author(
            last_name=required_str(data, "lastName"),
            first_name=first_name,
        )
        return jsonify({"authorId": author_id}), 201

    # ----------------- loan endpoints -----------------

    @app.get("/api/loans")
    @require_token
    def list_loans():
        member_id = None
        if g.user["role"] != "admin":
            member_id = g.user["subject_id"]
        elif request.args.get("memberId"):
            try:
                member_id = int(request.args["memberId"])
            except ValueError:
                raise ValidationFailed("memberId must be an integer")
        open_only = request.args.get("open", "").lower() in ("1", "true", "yes")

        loans = services().ledger.list_loans(member_id=member_id, open_only=open_only)
        return jsonify([loan_payload(loan) for loan in loans])

    @app.post("/api/loans")
    @require_token
    def borrow_book():
        data = json_body()
        book_id = required_int(data, "bookId")
        member_id = required_int(data, "memberId")

        if g.user["role"] != "admin" and member_id != g.user["subject_id"]:
            raise Forbidden("Members can only borrow for themselves")

        loan = services().ledger.borrow(book_id, member_id)
        return jsonify(
            {
                "message": "Book borrowed successfully",
                "loanId": loan.id,
                "dateOut": loan.date_out.isoformat(),
                "dueDate": loan.date_due.date().isoformat(),
            }
        ), 201

    @app.put("/api/loans/<int:loan_id>/return")
    @require_token
    def return_book(loan_id):
        acting_member_id = None
        if g.user["role"] != "admin":
            acting_member_id = g.user["subject_id"]

        loan = services().ledger.return_loan(loan_id, acting_member_id=acting_member_id)
        return jsonify(
            {
                "message": "Returned",
                "loanId": loan.id,
                "dateReturned": loan.returned_at.isoformat(),
            }
        )

    # ----------------- member / admin endpoints -----------------

    @app.get("/api/members")
    @require_admin
    def list_members():
        return jsonify(
            [
                {
                    "memberId": m.id,
                    "firstName": m.first_name,
                    "lastName": m.last_name,
                    "email": m.email,
                    "joinDate": m.join_date.isoformat(),
                    "isActive": m.is_active,
                }
                for m in services().identity.list_members()
            ]
        )

    @app.get("/api/admin/list")
    @require_admin
    def list_admins():
        return jsonify(
            [
                {
                    "adminId": a.id,
                    "firstName": a.first_name,
                    "lastName": a.last_name,
                    "email": a.email,
                    "role": a.role,
                    "createdDate": a.created_at.isoformat(),
                    "isActive": a.is_active,
                    "lastLoginDate": a.last_login_at.isoformat() if a.last_login_at else None,
                }
                for a in services().identity.list_admins()
            ]
        )

    @app.put("/api/admin/users/<int:member_id>/reset-password")
    @require_admin
    def reset_password(member_id):
        data = json_body()
        password = required_str(data, "password", strip=False)
        services().identity.reset_member_password(member_id, password)
        return jsonify({"message": "Password reset successfully"})

    @app.get("/api/admin/stats")
    @require_admin
    def admin_stats():
        return jsonify(services().identity.stats())

    @app.get("/api/admin/ledger/audit")
    @require_admin
    def ledger_audit():
        mismatches = services().ledger.audit()
        return jsonify({"consistent": not mismatches, "mismatches": mismatches})


if __name__ == "__main__":
    app = create_app()
    port = int(os.getenv("PORT", "5000"))
    try:
        app.run(host="0.0.0.0", port=port, debug=True)
    finally:
        app.extensions["library"].close()
