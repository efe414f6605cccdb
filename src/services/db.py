"""Database engine and session management.

In-memory SQLite (tests) uses StaticPool so every session sees the same
database. File SQLite and server databases use a regular pool, so each
session owns its own connection and transaction. Row locks
(SELECT ... FOR UPDATE) are real on PostgreSQL/MySQL and ignored by SQLite.
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from src.services.errors import ConflictError, PersistenceError


def is_memory_sqlite(database_url: str) -> bool:
    """True for "sqlite://", "sqlite:///:memory:" and memory-mode URIs."""
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return False
    database = url.database or ""
    return database in ("", ":memory:") or url.query.get("mode") == "memory"


def create_db_engine(database_url: str) -> Engine:
    """Create an engine for the given URL (e.g., "sqlite:///./billing.db")."""
    if is_memory_sqlite(database_url):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


def create_session_factory(database_url: str) -> sessionmaker:
    """Create a session factory bound to a new engine."""
    engine = create_db_engine(database_url)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@contextmanager
def unit_of_work(db: Session, commit: bool = True) -> Generator[Session, None, None]:
    """Run one mutating unit in its own transaction.

    Commits on success (rolls back instead when ``commit`` is False, for
    previews). Any failure rolls the whole unit back. A unique constraint
    violation surfaces as ConflictError, other storage failures as
    PersistenceError.
    """
    try:
        yield db
        db.flush()
        if commit:
            db.commit()
        else:
            db.rollback()
    except IntegrityError as e:
        db.rollback()
        raise ConflictError(f"Record already exists: {e.orig}") from e
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Database error: {e}") from e
    except Exception:
        db.rollback()
        raise


__all__ = [
    "unit_of_work",
    "is_memory_sqlite",
    "create_db_engine",
    "create_session_factory",
]
