# zurihealth/database.py
"""Persistence context: owns the engine and session factory for one process.

Open it at start-up, pass it to every repository and close it at shutdown.
Nothing here is a module-level singleton.
"""
import re
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from zurihealth.config import settings
from zurihealth.errors import ReferentialIntegrityError, UniquenessViolation, ValidationError, ZuriHealthError
from zurihealth.logging_setup import get_logger
from zurihealth.schema.tables import registry

logger = get_logger(__name__)

SQLITE_UNIQUE = re.compile(r"UNIQUE constraint failed: (.+)$")


def _unique_columns(message: str, constraint: Optional[str]):
    match = SQLITE_UNIQUE.search(message)
    if match:
        return [part.strip().split(".")[-1] for part in match.group(1).split(",")]
    if constraint:
        for spec in registry:
            for index in spec.all_indexes():
                if index.name == constraint:
                    return list(index.columns)
    return []


def translate_integrity_error(exc: IntegrityError) -> ZuriHealthError:
    """Map a driver integrity error onto the record store's error kinds."""
    orig = exc.orig
    message = str(orig)
    lowered = message.lower()
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    diag = getattr(orig, "diag", None)
    constraint = getattr(diag, "constraint_name", None)

    if code == "23505" or "unique constraint" in lowered or "duplicate key" in lowered:
        columns = _unique_columns(message, constraint)
        return UniquenessViolation(
            f"A record with the same {', '.join(columns) or 'unique key'} already exists",
            constraint=constraint,
            columns=columns,
        )
    if code == "23503" or "foreign key constraint" in lowered:
        return ReferentialIntegrityError(
            "Operation would leave a dangling or orphaned reference", details={"constraint": constraint},
        )
    if code in ("23514", "23502") or "check constraint" in lowered or "not null constraint" in lowered:
        return ValidationError(f"Record violates a storage constraint: {message}")
    return ValidationError(f"Integrity error: {message}")


class PersistenceContext:
    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        self.database_url = database_url or settings.DATABASE_URL
        self.echo = settings.DB_ECHO if echo is None else echo
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Persistence context is not open")
        return self._engine

    def open(self) -> "PersistenceContext":
        if self._engine is not None:
            return self

        kwargs = {"echo": self.echo, "pool_pre_ping": True}
        if self.database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
        else:
            kwargs["pool_size"] = settings.DB_POOL_SIZE
            kwargs["max_overflow"] = settings.DB_MAX_OVERFLOW

        engine = create_engine(self.database_url, **kwargs)
        if engine.dialect.name == "sqlite":
            event.listen(engine, "connect", _enable_sqlite_foreign_keys)

        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        logger.info("Opened persistence context (%s)", engine.url.render_as_string(hide_password=True))
        return self

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Closed persistence context")
        self._engine = None
        self._session_factory = None

    def session(self) -> Session:
        if self._session_factory is None:
            raise RuntimeError("Persistence context is not open")
        return self._session_factory()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """One unit of work: commits on success, rolls back on any error."""
        session = self.session()
        try:
            yield session
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise translate_integrity_error(exc) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
