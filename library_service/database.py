import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .models import Base

logger = logging.getLogger(__name__)


class Database:
    """
    Engine + session factory for one process.

    Opened by the app factory at startup and closed at shutdown; the stores
    and the loan ledger receive it explicitly instead of importing a global.
    """

    def __init__(self, url, echo=False, busy_timeout=15.0):
        connect_args = {}
        if url.startswith("sqlite"):
            # Pooled connections move between request threads; the timeout
            # makes concurrent writers queue on the file lock.
            connect_args = {"check_same_thread": False, "timeout": busy_timeout}

        self.url = url
        self.engine = create_engine(url, echo=echo, future=True, connect_args=connect_args)
        # Records handed back to route handlers stay readable after commit
        self.SessionLocal = sessionmaker(
            bind=self.engine, autoflush=False, autocommit=False, expire_on_commit=False
        )

    def create_all(self):
        Base.metadata.create_all(self.engine)

    def session(self):
        return self.SessionLocal()

    def close(self):
        logger.info(
            "Disposing database engine for %s",
            self.engine.url.render_as_string(hide_password=True),
        )
        self.engine.dispose()
