from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Table,
)

Base = declarative_base()


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


book_authors = Table(
    "book_authors",
    Base.metadata,
    Column("book_id", Integer, ForeignKey("book.id"), primary_key=True),
    Column("author_id", Integer, ForeignKey("author.id"), primary_key=True),
)


class Category(Base):
    __tablename__ = "category"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False)


class Author(Base):
    __tablename__ = "author"

    id = Column(Integer, primary_key=True, autoincrement=True)
    first_name = Column(String(100))
    last_name = Column(String(100), nullable=False)

    @property
    def full_name(self):
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class Book(Base):
    __tablename__ = "book"
    __table_args__ = (
        CheckConstraint("copies_owned >= 1", name="ck_book_copies_owned"),
        CheckConstraint(
            "copies_available >= 0 AND copies_available <= copies_owned",
            name="ck_book_copies_available",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    isbn = Column(String(20), unique=True, nullable=False)
    title = Column(String(255), nullable=False)
    copies_owned = Column(Integer, nullable=False, default=1)
    copies_available = Column(Integer, nullable=False, default=1)
    category_id = Column(Integer, ForeignKey("category.id"))

    category = relationship("Category")
    authors = relationship("Author", secondary=book_authors, order_by="Author.id")


class Member(Base):
    __tablename__ = "member"

    id = Column(Integer, primary_key=True, autoincrement=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(150), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    join_date = Column(Date, nullable=False, default=lambda: utcnow().date())
    is_active = Column(Boolean, nullable=False, default=True)


class Admin(Base):
    __tablename__ = "admin"

    id = Column(Integer, primary_key=True, autoincrement=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(150), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(50), nullable=False, default="admin")
    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_login_at = Column(DateTime)
    is_active = Column(Boolean, nullable=False, default=True)


class Loan(Base):
    """
    One copy of a book lent to a member. Open while returned_at is NULL.
    """
    __tablename__ = "loan"

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("book.id"), nullable=False)
    member_id = Column(Integer, ForeignKey("member.id"), nullable=False)
    date_out = Column(DateTime, nullable=False, default=utcnow)
    date_due = Column(DateTime, nullable=False)
    returned_at = Column(DateTime)

    book = relationship("Book")
    member = relationship("Member")

    @property
    def is_open(self):
        return self.returned_at is None
