"""Engine, sessions and the transaction manager.

The engine is created lazily from ``settings.DATABASE_URL`` so importing
the package never opens a connection.
"""

from contextlib import contextmanager
from functools import lru_cache

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .config import settings
from .errors import PersistenceError
from .models import Base


@lru_cache(maxsize=1)
def get_engine():
    return create_engine(settings.DATABASE_URL, pool_pre_ping=True)


def make_session_factory(engine) -> sessionmaker:
    # Repositories hand out dataclasses, but keep loaded rows usable after commit.
    return sessionmaker(bind=engine, expire_on_commit=False)


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    return make_session_factory(get_engine())


def init_db(engine=None) -> None:
    """Create every billing table that does not exist yet."""
    Base.metadata.create_all(engine or get_engine())


def ping(session_factory) -> bool:
    """Return True when the database answers ``SELECT 1``."""
    try:
        with session_factory() as s:
            s.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        return False


class SqlTransactionManager:
    """Open a database transaction and yield its ``Session`` as the handle.

    Leaving the block commits. Any exception rolls back; SQLAlchemy errors
    are re-raised as ``PersistenceError``, everything else unchanged.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    @contextmanager
    def begin(self):
        session: Session = self.session_factory()
        try:
            with session.begin():
                yield session
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Transaction rolled back: {exc.__class__.__name__}") from exc
        finally:
            session.close()
