# zurihealth/migrations/ledger.py
"""Bookkeeping tables owned by the migration engine: the ledger of applied
steps and the lock marker used on databases without advisory locks."""
import os
import socket
from typing import Dict

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError

from zurihealth.errors import MigrationConflictError
from zurihealth.logging_setup import get_logger
from zurihealth.utils.clock import hospital_now

logger = get_logger(__name__)

APPLIED = "applied"
FAILED = "failed"

ledger_metadata = sa.MetaData()

schema_migrations = sa.Table(
    "schema_migrations",
    ledger_metadata,
    sa.Column("key", sa.String(14), primary_key=True),
    sa.Column("name", sa.String(255), nullable=False),
    sa.Column("status", sa.String(16), nullable=False),
    sa.Column("applied_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("error", sa.Text),
)

schema_migration_lock = sa.Table(
    "schema_migration_lock",
    ledger_metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=False),
    sa.Column("holder", sa.String(255), nullable=False),
    sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
)

ENGINE_TABLES = frozenset(ledger_metadata.tables)


def ensure_tables(connection) -> None:
    ledger_metadata.create_all(connection, checkfirst=True)


def read(connection) -> Dict[str, sa.Row]:
    rows = connection.execute(sa.select(schema_migrations).order_by(schema_migrations.c.key))
    return {row.key: row for row in rows}


def record(connection, key: str, name: str, status: str = APPLIED, error: str = None) -> None:
    connection.execute(schema_migrations.delete().where(schema_migrations.c.key == key))
    connection.execute(schema_migrations.insert().values(
        key=key, name=name, status=status, applied_at=hospital_now(), error=error,
    ))


def remove(connection, key: str) -> None:
    connection.execute(schema_migrations.delete().where(schema_migrations.c.key == key))


class MigrationLock:
    """Mutual exclusion between migration runs.

    PostgreSQL uses a session-level advisory lock held on a dedicated
    connection. Other backends insert a marker row; a second run fails on the
    primary key until the first one deletes it.
    """

    MARKER_ID = 1

    def __init__(self, engine: sa.engine.Engine, lock_id: int):
        self.engine = engine
        self.lock_id = lock_id
        self.holder = f"{socket.gethostname()}:{os.getpid()}"
        self._connection = None

    @property
    def uses_advisory_lock(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    def acquire(self) -> None:
        if self.uses_advisory_lock:
            connection = self.engine.connect()
            acquired = connection.execute(
                sa.text("SELECT pg_try_advisory_lock(:lock_id)"), {"lock_id": self.lock_id}
            ).scalar()
            connection.commit()
            if not acquired:
                connection.close()
                raise MigrationConflictError("Another migration run holds the advisory lock")
            self._connection = connection
        else:
            try:
                with self.engine.begin() as connection:
                    ensure_tables(connection)
                    connection.execute(schema_migration_lock.insert().values(
                        id=self.MARKER_ID, holder=self.holder, acquired_at=hospital_now(),
                    ))
            except IntegrityError as exc:
                with self.engine.connect() as connection:
                    holder = connection.execute(
                        sa.select(schema_migration_lock.c.holder)
                    ).scalar()
                raise MigrationConflictError(
                    f"Migration lock is held by {holder}", details={"holder": holder}
                ) from exc
        logger.debug("Migration lock acquired by %s", self.holder)

    def release(self) -> None:
        if self.uses_advisory_lock:
            if self._connection is not None:
                self._connection.execute(
                    sa.text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": self.lock_id}
                )
                self._connection.commit()
                self._connection.close()
                self._connection = None
        else:
            with self.engine.begin() as connection:
                connection.execute(schema_migration_lock.delete().where(
                    schema_migration_lock.c.id == self.MARKER_ID,
                    schema_migration_lock.c.holder == self.holder,
                ))
        logger.debug("Migration lock released by %s", self.holder)

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
