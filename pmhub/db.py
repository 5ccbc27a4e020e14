from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.types import TypeDecorator, DateTime
import structlog

from .config import settings
from .errors import ConflictOrDuplicate


log = structlog.get_logger(__name__)


def build_engine(url: str, **kwargs):
    if url.startswith("sqlite"):
        engine = create_engine(url, future=True, connect_args={"check_same_thread": False}, **kwargs)

        # SQLite ignores foreign keys unless asked per connection
        @event.listens_for(engine, "connect")
        def _fk_pragma(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine
    # Configure connection pool for better performance
    return create_engine(
        url,
        future=True,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        pool_recycle=3600,  # Recycle connections after 1 hour
        **kwargs,
    )


engine = build_engine(settings.database_url)

# Fresh Session per request
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always comes back as UTC.

    SQLite drops tzinfo on the way out; PostgreSQL keeps it. Either way callers
    get an aware value they can compare with ``datetime.now(timezone.utc)``.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session):
    """Commit everything done inside the block, or nothing.

    Constraint and version-counter failures surface as ``ConflictOrDuplicate``;
    every other exception is re-raised after the rollback.
    """
    try:
        yield db
        db.commit()
    except IntegrityError as e:
        db.rollback()
        log.warning("unit_of_work_integrity_error", error=str(e.orig))
        raise ConflictOrDuplicate("Record conflicts with existing data") from e
    except StaleDataError as e:
        db.rollback()
        log.warning("unit_of_work_stale_data", error=str(e))
        raise ConflictOrDuplicate("Record was modified concurrently, reload and retry") from e
    except Exception:
        db.rollback()
        raise
