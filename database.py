import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings
from errors import ConflictError, StorageError

logger = logging.getLogger(__name__)


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    from sqlalchemy import create_engine

    eng = create_engine(settings.database_url, connect_args=connect_args)
    if settings.database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def atomic(session: Session, operation: str, **context: object) -> Iterator[Session]:
    """Run one all-or-nothing unit of work on ``session``.

    Commits when the block exits cleanly. Any exception rolls the whole unit
    back; integrity violations surface as ``ConflictError`` and other store
    failures as ``StorageError``, logged with ``operation`` and ``context``.
    """
    details = " ".join(f"{key}={value}" for key, value in context.items())
    try:
        yield session
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.warning(f"{operation}_conflict: {details} error={exc.orig}")
        raise ConflictError(f"{operation} violates a uniqueness constraint") from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception(f"{operation}_failed: {details}")
        raise StorageError(f"{operation} failed") from exc
    except Exception:
        session.rollback()
        raise


def dialect_insert(session: Session, table):
    """Return an INSERT supporting ``ON CONFLICT`` for the session's dialect."""
    name = session.get_bind().dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise StorageError(f"Upserts are not supported on {name}")
    return insert(table)
