import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from .errors import Conflict, NotFound
from .models import Author, Book, Category

logger = logging.getLogger(__name__)


# ----------------- availability primitives -----------------
# These run inside the caller's transaction; committing is the caller's job.

def get_book(session, book_id):
    book = session.get(Book, book_id)
    if book is None:
        raise NotFound(f"Book {book_id} not found")
    return book


def decrement_availability(session, book_id):
    """
    Take one copy off the shelf. Returns False when the book is unknown or
    has no copies left; the guard and the write are one UPDATE statement so
    concurrent callers cannot both take the last copy.
    """
    result = session.execute(
        update(Book)
        .where(Book.id == book_id, Book.copies_available > 0)
        .values(copies_available=Book.copies_available - 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def increment_availability(session, book_id):
    """Put one copy back, never past copies_owned. Returns False if capped."""
    result = session.execute(
        update(Book)
        .where(Book.id == book_id, Book.copies_available < Book.copies_owned)
        .values(copies_available=Book.copies_available + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ----------------- catalog records -----------------

class CatalogStore:
    def __init__(self, db):
        self.db = db

    def list_books(self):
        session = self.db.session()
        try:
            q = (
                select(Book)
                .options(selectinload(Book.category), selectinload(Book.authors))
                .order_by(Book.id)
            )
            return session.execute(q).scalars().all()
        finally:
            session.close()

    def find_book(self, book_id):
        session = self.db.session()
        try:
            q = (
                select(Book)
                .where(Book.id == book_id)
                .options(selectinload(Book.category), selectinload(Book.authors))
            )
            book = session.execute(q).scalar_one_or_none()
            if book is None:
                raise NotFound(f"Book {book_id} not found")
            return book
        finally:
            session.close()

    def add_book(self, title, isbn, copies_owned, category_id=None, author_ids=()):
        session = self.db.session()
        try:
            existing = session.execute(
                select(Book.id).where(Book.isbn == isbn)
            ).scalar_one_or_none()
            if existing is not None:
                raise Conflict(f"A book with ISBN {isbn} already exists")

            if category_id is not None and session.get(Category, category_id) is None:
                raise NotFound(f"Category {category_id} not found")

            authors = []
            for author_id in author_ids:
                author = session.get(Author, author_id)
                if author is None:
                    raise NotFound(f"Author {author_id} not found")
                authors.append(author)

            book = Book(
                isbn=isbn,
                title=title,
                copies_owned=copies_owned,
                copies_available=copies_owned,
                category_id=category_id,
                authors=authors,
            )
            session.add(book)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise Conflict(f"A book with ISBN {isbn} already exists")

            logger.info("Added book %s (%s) with %s copies", book.id, isbn, copies_owned)
            return book.id
        finally:
            session.close()

    def list_categories(self):
        session = self.db.session()
        try:
            return session.execute(select(Category).order_by(Category.name)).scalars().all()
        finally:
            session.close()

    def add_category(self, name):
        session = self.db.session()
        try:
            existing = session.execute(
                select(Category).where(func.lower(Category.name) == name.lower())
            ).scalar_one_or_none()
            if existing:
                raise Conflict(f"Category {name!r} already exists")

            category = Category(name=name)
            session.add(category)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise Conflict(f"Category {name!r} already exists")
            return category.id
        finally:
            session.close()

    def list_authors(self):
        session = self.db.session()
        try:
            q = select(Author).order_by(Author.last_name, Author.first_name)
            return session.execute(q).scalars().all()
        finally:
            session.close()

    def add_author(self, last_name, first_name=None):
        session = self.db.session()
        try:
            author = Author(first_name=first_name, last_name=last_name)
            session.add(author)
            session.commit()
            return author.id
        finally:
            session.close()
