import logging
from datetime import timedelta

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import joinedload

from .catalog import decrement_availability, get_book, increment_availability
from .errors import Conflict, Forbidden, NotFound, Unavailable
from .models import Book, Loan, Member, utcnow

logger = logging.getLogger(__name__)


class LoanLedger:
    """
    Authoritative record of which copies are out.

    Every borrow and return is one transaction that touches both the loan row
    and the book's copies_available, so for each book
    copies_available == copies_owned - open loans holds between requests.
    """

    def __init__(self, db, loan_period_days=14, clock=utcnow):
        self.db = db
        self.loan_period = timedelta(days=loan_period_days)
        self.clock = clock

    def borrow(self, book_id, member_id):
        session = self.db.session()
        try:
            member = session.get(Member, member_id)
            if member is None or not member.is_active:
                raise NotFound(f"Member {member_id} not found")

            if not decrement_availability(session, book_id):
                session.rollback()
                get_book(session, book_id)
                logger.info("Borrow refused: book %s has no copies left", book_id)
                raise Unavailable("Book not available for borrowing")

            now = self.clock()
            loan = Loan(
                book_id=book_id,
                member_id=member_id,
                date_out=now,
                date_due=now + self.loan_period,
            )
            session.add(loan)
            session.commit()

            logger.info(
                "Loan %s created: book %s -> member %s, due %s",
                loan.id,
                book_id,
                member_id,
                loan.date_due.date().isoformat(),
            )
            return loan
        finally:
            session.close()

    def return_loan(self, loan_id, acting_member_id=None):
        """
        Close an open loan and put its copy back on the shelf.

        acting_member_id restricts the call to that member's own loans.
        """
        session = self.db.session()
        try:
            loan = session.get(Loan, loan_id)
            if loan is None:
                raise NotFound(f"Loan {loan_id} not found")
            if acting_member_id is not None and loan.member_id != acting_member_id:
                raise Forbidden("Members can only return their own loans")

            now = self.clock()
            closed = session.execute(
                update(Loan)
                .where(Loan.id == loan_id, Loan.returned_at.is_(None))
                .values(returned_at=now)
                .execution_options(synchronize_session=False)
            )
            if closed.rowcount != 1:
                raise Conflict(f"Loan {loan_id} has already been returned")

            if not increment_availability(session, loan.book_id):
                session.rollback()
                logger.error(
                    "Return of loan %s would push book %s past its owned copies",
                    loan_id,
                    loan.book_id,
                )
                raise Conflict(f"Book {loan.book_id} already has all copies on the shelf")

            session.commit()
            session.refresh(loan)
            logger.info("Loan %s returned: book %s", loan_id, loan.book_id)
            return loan
        finally:
            session.close()

    def list_loans(self, member_id=None, open_only=False):
        session = self.db.session()
        try:
            q = (
                select(Loan)
                .options(joinedload(Loan.book), joinedload(Loan.member))
                .order_by(Loan.date_out.desc(), Loan.id.desc())
            )
            if member_id is not None:
                q = q.where(Loan.member_id == member_id)
            if open_only:
                q = q.where(Loan.returned_at.is_(None))
            return session.execute(q).scalars().all()
        finally:
            session.close()

    def audit(self):
        """
        Recount open loans per book and list every book whose stored
        copies_available disagrees with copies_owned - open loans.
        """
        session = self.db.session()
        try:
            open_loans = func.count(Loan.id)
            q = (
                select(Book.id, Book.isbn, Book.copies_owned, Book.copies_available, open_loans)
                .outerjoin(Loan, and_(Loan.book_id == Book.id, Loan.returned_at.is_(None)))
                .group_by(Book.id, Book.isbn, Book.copies_owned, Book.copies_available)
                .order_by(Book.id)
            )
            mismatches = []
            for book_id, isbn, owned, available, out in session.execute(q):
                expected = owned - out
                if expected != available:
                    mismatches.append(
                        {
                            "bookId": book_id,
                            "isbn": isbn,
                            "copiesOwned": owned,
                            "copiesAvailable": available,
                            "openLoans": out,
                            "expectedAvailable": expected,
                        }
                    )
            if mismatches:
                logger.warning("Ledger audit found %s inconsistent books", len(mismatches))
            return mismatches
        finally:
            session.close()
