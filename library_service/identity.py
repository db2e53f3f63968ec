import hmac
import logging
from dataclasses import dataclass

import bcrypt
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from .errors import Conflict, NotFound, Unauthorized, ValidationFailed
from .models import Admin, Book, Loan, Member, utcnow

logger = logging.getLogger(__name__)

MEMBER_MIN_PASSWORD = 6
ADMIN_MIN_PASSWORD = 8


@dataclass(frozen=True)
class Principal:
    subject_id: int
    role: str
    email: str
    first_name: str
    last_name: str


def hash_password(password, rounds=10):
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds)).decode("utf-8")


def check_password(password, hashed):
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # stored value is not a bcrypt hash
        return False


class IdentityStore:
    def __init__(self, db, bcrypt_rounds=10, admin_secret_code=None):
        self.db = db
        self.bcrypt_rounds = bcrypt_rounds
        self.admin_secret_code = admin_secret_code
        # Compared against when the email is unknown so both paths cost a hash
        self._dummy_hash = hash_password("dummy-password", bcrypt_rounds)

    def _email_taken(self, session, email):
        for model in (Admin, Member):
            q = select(model.id).where(func.lower(model.email) == email.lower())
            if session.execute(q).first() is not None:
                return True
        return False

    def register_member(self, first_name, last_name, email, password):
        if len(password) < MEMBER_MIN_PASSWORD:
            raise ValidationFailed(
                f"Password must be at least {MEMBER_MIN_PASSWORD} characters long"
            )

        session = self.db.session()
        try:
            if self._email_taken(session, email):
                raise Conflict("User already exists")

            member = Member(
                first_name=first_name,
                last_name=last_name,
                email=email,
                password_hash=hash_password(password, self.bcrypt_rounds),
            )
            session.add(member)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise Conflict("User already exists")

            logger.info("Registered member %s (%s)", member.id, email)
            return Principal(member.id, "user", member.email, member.first_name, member.last_name)
        finally:
            session.close()

    def register_admin(self, name, email, password, secret_code):
        if not self.admin_secret_code or not hmac.compare_digest(
            secret_code.encode("utf-8"), self.admin_secret_code.encode("utf-8")
        ):
            logger.warning("Admin registration for %s rejected: bad secret code", email)
            raise Unauthorized("Invalid secret code")
        if len(password) < ADMIN_MIN_PASSWORD:
            raise ValidationFailed(
                f"Password must be at least {ADMIN_MIN_PASSWORD} characters"
            )

        parts = name.split()
        first_name = parts[0] if parts else ""
        last_name = " ".join(parts[1:]) or "Admin"

        session = self.db.session()
        try:
            if self._email_taken(session, email):
                raise Conflict("Admin with this email already exists")

            admin = Admin(
                first_name=first_name,
                last_name=last_name,
                email=email,
                password_hash=hash_password(password, self.bcrypt_rounds),
            )
            session.add(admin)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise Conflict("Admin with this email already exists")

            logger.info("Registered admin %s (%s)", admin.id, email)
            return Principal(admin.id, "admin", admin.email, admin.first_name, admin.last_name)
        finally:
            session.close()

    def verify(self, email, password):
        """
        Check credentials against active admins first, then active members.
        Raises Unauthorized for any mismatch without saying which part failed.
        """
        session = self.db.session()
        try:
            for model, role in ((Admin, "admin"), (Member, "user")):
                q = select(model).where(
                    func.lower(model.email) == email.lower(),
                    model.is_active.is_(True),
                )
                record = session.execute(q).scalar_one_or_none()
                if record is not None:
                    break
            else:
                check_password(password, self._dummy_hash)
                logger.info("Login failed for unknown email %s", email)
                raise Unauthorized("Invalid credentials")

            if not check_password(password, record.password_hash):
                logger.info("Login failed for %s: wrong password", email)
                raise Unauthorized("Invalid credentials")

            if role == "admin":
                record.last_login_at = utcnow()
                session.commit()

            return Principal(record.id, role, record.email, record.first_name, record.last_name)
        finally:
            session.close()

    def list_members(self, active_only=True):
        session = self.db.session()
        try:
            q = select(Member).order_by(Member.id)
            if active_only:
                q = q.where(Member.is_active.is_(True))
            return session.execute(q).scalars().all()
        finally:
            session.close()

    def list_admins(self):
        session = self.db.session()
        try:
            q = select(Admin).order_by(Admin.created_at.desc(), Admin.id.desc())
            return session.execute(q).scalars().all()
        finally:
            session.close()

    def is_active(self, subject_id, role):
        """True when the token subject still names an active admin or member."""
        model = Admin if role == "admin" else Member
        session = self.db.session()
        try:
            record = session.get(model, subject_id)
            return record is not None and record.is_active
        finally:
            session.close()

    def reset_member_password(self, member_id, password):
        if len(password) < MEMBER_MIN_PASSWORD:
            raise ValidationFailed(
                f"Password must be at least {MEMBER_MIN_PASSWORD} characters long"
            )

        session = self.db.session()
        try:
            member = session.get(Member, member_id)
            if member is None:
                raise NotFound(f"Member {member_id} not found")
            member.password_hash = hash_password(password, self.bcrypt_rounds)
            session.commit()
            logger.info("Password reset for member %s", member_id)
        finally:
            session.close()

    def stats(self):
        session = self.db.session()
        try:
            total_books, total_copies, available_copies = session.execute(
                select(
                    func.count(Book.id),
                    func.coalesce(func.sum(Book.copies_owned), 0),
                    func.coalesce(func.sum(Book.copies_available), 0),
                )
            ).one()
            members = session.execute(
                select(func.count(Member.id)).where(Member.is_active.is_(True))
            ).scalar_one()
            open_loans = session.execute(
                select(func.count(Loan.id)).where(Loan.returned_at.is_(None))
            ).scalar_one()
            admins = session.execute(
                select(func.count(Admin.id)).where(Admin.is_active.is_(True))
            ).scalar_one()
            return {
                "books": {
                    "totalBooks": total_books,
                    "totalCopies": int(total_copies),
                    "availableCopies": int(available_copies),
                },
                "members": {"totalMembers": members},
                "loans": {"activeLoans": open_loans},
                "admins": {"totalAdmins": admins},
            }
        finally:
            session.close()
