# zurihealth/migrations/engine.py
"""Runs the ordered migration steps against a database.

Each step runs in its own transaction under the migration lock and is
recorded in the ``schema_migrations`` ledger. Transient connection problems
are retried a few times; any other failure flags the step as failed and stops
the run, and later runs refuse to continue until the flag is cleared.
"""
import logging
import re
from typing import Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc
from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_fixed

from zurihealth.config import settings
from zurihealth.errors import MigrationConflictError, MigrationError
from zurihealth.logging_setup import get_logger
from zurihealth.migrations import ledger
from zurihealth.migrations.operations import Migration, StepContext, compile_type
from zurihealth.migrations.versions import MIGRATIONS
from zurihealth.schema.registry import ColumnSpec, SchemaRegistry
from zurihealth.schema.tables import registry as default_registry
from zurihealth.schema.vocabularies import VOCABULARIES, Vocabulary, check_vocabulary_evolution

logger = get_logger(__name__)

KEY_PATTERN = re.compile(r"^\d{14}$")

UNCOMPARED_KINDS = ("json", "array")


def is_transient(exc: BaseException) -> bool:
    """Errors worth retrying: dropped connections and pool/lock timeouts."""
    if isinstance(exc, (sa_exc.DisconnectionError, sa_exc.TimeoutError)):
        return True
    if isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, sa_exc.OperationalError) and "database is locked" in str(exc)


class MigrationEngine:
    def __init__(
        self,
        engine: sa.engine.Engine,
        migrations: Optional[List[Migration]] = None,
        registry: Optional[SchemaRegistry] = None,
        max_attempts: Optional[int] = None,
        retry_wait: Optional[float] = None,
        lock_id: Optional[int] = None,
    ):
        self.engine = engine
        self.migrations = list(MIGRATIONS if migrations is None else migrations)
        self.registry = registry or default_registry
        self.max_attempts = max_attempts or settings.MIGRATION_MAX_ATTEMPTS
        self.retry_wait = settings.MIGRATION_RETRY_WAIT_SECONDS if retry_wait is None else retry_wait
        self.lock_id = lock_id or settings.MIGRATION_LOCK_ID
        self._check_ordering()

    def _check_ordering(self) -> None:
        previous = None
        for migration in self.migrations:
            if not KEY_PATTERN.match(migration.key):
                raise MigrationConflictError(f"Migration key {migration.key!r} is not a 14-digit timestamp")
            if previous is not None and migration.key <= previous:
                raise MigrationConflictError(
                    f"Migration {migration.label} is out of order (follows {previous})"
                )
            previous = migration.key

    def _lock(self) -> ledger.MigrationLock:
        return ledger.MigrationLock(self.engine, self.lock_id)

    # ================================
    # LEDGER
    # ================================

    def _load_ledger(self) -> Dict[str, sa.Row]:
        """Read the ledger, refusing to continue past unknown, failed or out-of-order entries."""
        with self.engine.begin() as connection:
            ledger.ensure_tables(connection)
            entries = ledger.read(connection)

        known = {migration.key for migration in self.migrations}
        unknown = sorted(set(entries) - known)
        if unknown:
            raise MigrationConflictError(
                f"Ledger lists migrations this release does not know: {', '.join(unknown)}",
                details={"keys": unknown},
            )

        failed = [entry for entry in entries.values() if entry.status == ledger.FAILED]
        if failed:
            entry = failed[0]
            raise MigrationConflictError(
                f"Migration {entry.key}-{entry.name} previously failed ({entry.error}); "
                f"repair the schema and clear the flag before migrating again",
                details={"key": entry.key},
            )

        seen_pending = None
        for migration in self.migrations:
            if migration.key not in entries:
                seen_pending = seen_pending or migration.key
            elif seen_pending:
                raise MigrationConflictError(
                    f"Migration {migration.label} is applied but earlier step {seen_pending} is not"
                )
        return entries

    def applied(self) -> List[Migration]:
        entries = self._load_ledger()
        return [migration for migration in self.migrations if migration.key in entries]

    def pending(self) -> List[Migration]:
        entries = self._load_ledger()
        return [migration for migration in self.migrations if migration.key not in entries]

    def status(self) -> List[Dict[str, Optional[str]]]:
        """Every known step with its ledger state; does not validate the ledger."""
        with self.engine.begin() as connection:
            ledger.ensure_tables(connection)
            entries = ledger.read(connection)
        report = []
        for migration in self.migrations:
            entry = entries.get(migration.key)
            report.append({
                "key": migration.key,
                "name": migration.name,
                "status": entry.status if entry else "pending",
                "applied_at": entry.applied_at.isoformat() if entry else None,
                "error": entry.error if entry else None,
            })
        return report

    def clear_failed(self, key: str, mark_applied: bool = False) -> None:
        """Drop a failure flag after the schema was repaired by hand."""
        with self.engine.begin() as connection:
            ledger.ensure_tables(connection)
            entry = ledger.read(connection).get(key)
            if entry is None or entry.status != ledger.FAILED:
                raise MigrationError(f"Migration {key} is not flagged as failed", key=key)
            if mark_applied:
                ledger.record(connection, key, entry.name)
            else:
                ledger.remove(connection, key)
        logger.warning("Cleared failure flag on migration %s", key)

    # ================================
    # RUNNING
    # ================================

    def upgrade(self, target: Optional[str] = None) -> List[str]:
        """Apply pending steps up to and including ``target`` (default: all)."""
        if target is not None:
            self._migration(target)
        with self._lock():
            entries = self._load_ledger()
            batch = [
                migration for migration in self.migrations
                if migration.key not in entries and (target is None or migration.key <= target)
            ]
            if not batch:
                logger.info("Schema is up to date")
            for migration in batch:
                self._run(migration, "apply")
        return [migration.key for migration in batch]

    def downgrade(self, target: Optional[str] = None, steps: Optional[int] = None) -> List[str]:
        """Revert applied steps newer than ``target``, or the last ``steps`` ones.

        With neither given everything is reverted, back to an empty schema.
        """
        if target is not None:
            self._migration(target)
        if steps is not None and steps < 1:
            raise ValueError("steps must be a positive number")
        with self._lock():
            entries = self._load_ledger()
            applied = [migration for migration in self.migrations if migration.key in entries]
            if steps is not None:
                batch = applied[-steps:]
            else:
                batch = [migration for migration in applied if target is None or migration.key > target]
            batch.reverse()
            for migration in batch:
                self._run(migration, "revert")
        return [migration.key for migration in batch]

    def _migration(self, key: str) -> Migration:
        for migration in self.migrations:
            if migration.key == key:
                return migration
        raise MigrationError(f"Unknown migration {key}", key=key)

    def _run(self, migration: Migration, direction: str) -> None:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.retry_wait),
            retry=retry_if_exception(is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        logger.info("%s %s", "Applying" if direction == "apply" else "Reverting", migration.label)
        try:
            for attempt in retrying:
                with attempt:
                    self._execute(migration, direction)
        except Exception as exc:
            self._flag_failed(migration, exc)
            logger.error("Migration %s failed to %s: %s", migration.label, direction, exc)
            if isinstance(exc, (MigrationError, MigrationConflictError)):
                raise
            raise MigrationError(
                f"Migration {migration.label} failed to {direction}: {exc}", key=migration.key
            ) from exc

    def _execute(self, migration: Migration, direction: str) -> None:
        with self.engine.connect() as connection:
            sqlite = connection.dialect.name == "sqlite"
            if sqlite:
                # Table rebuilds in batch mode would trip foreign key checks
                connection.exec_driver_sql("PRAGMA foreign_keys=OFF")
                connection.commit()
            try:
                with connection.begin():
                    ctx = StepContext(connection)
                    if direction == "apply":
                        migration.apply(ctx)
                        ledger.record(connection, migration.key, migration.name)
                    else:
                        migration.revert(ctx)
                        ledger.remove(connection, migration.key)
            finally:
                if sqlite:
                    connection.exec_driver_sql("PRAGMA foreign_keys=ON")
                    connection.commit()

    def _flag_failed(self, migration: Migration, exc: BaseException) -> None:
        with self.engine.begin() as connection:
            ledger.record(connection, migration.key, migration.name, status=ledger.FAILED, error=str(exc)[:2000])

    # ================================
    # DRIFT
    # ================================

    def drift(self) -> List[str]:
        """Differences between the live schema and the registry."""
        problems: List[str] = []
        with self.engine.connect() as connection:
            inspector = sa.inspect(connection)
            live = set(inspector.get_table_names()) - ledger.ENGINE_TABLES
            expected = set(self.registry.tables)

            problems.extend(f"missing table {name}" for name in sorted(expected - live))
            problems.extend(f"unexpected table {name}" for name in sorted(live - expected))

            for spec in self.registry:
                if spec.name not in live:
                    continue
                columns = {column["name"]: column for column in inspector.get_columns(spec.name)}
                for column in spec.columns:
                    reflected = columns.pop(column.name, None)
                    if reflected is None:
                        problems.append(f"missing column {spec.name}.{column.name}")
                    else:
                        if not column.primary_key and bool(reflected["nullable"]) != column.nullable:
                            problems.append(f"nullability differs on {spec.name}.{column.name}")
                        if self._type_differs(column, reflected["type"], connection.dialect):
                            problems.append(f"type differs on {spec.name}.{column.name}")
                problems.extend(f"unexpected column {spec.name}.{name}" for name in sorted(columns))

                indexes = {index["name"]: index for index in inspector.get_indexes(spec.name)}
                for index in spec.all_indexes():
                    reflected = indexes.pop(index.name, None)
                    if reflected is None:
                        problems.append(f"missing index {index.name}")
                    elif bool(reflected["unique"]) != index.unique:
                        problems.append(f"uniqueness differs on index {index.name}")
                problems.extend(f"unexpected index {name}" for name in sorted(indexes))

            if "vocabulary_members" in live:
                stored = self._stored_vocabularies(connection)
                for name, vocabulary in VOCABULARIES.items():
                    found = stored.get(name)
                    if found is None:
                        problems.append(f"vocabulary {name} not recorded")
                    elif found.members != vocabulary.members or found.deprecated != vocabulary.deprecated:
                        problems.append(f"vocabulary {name} differs from the registry")
        return problems

    @staticmethod
    def _type_differs(column: ColumnSpec, reflected: sa.types.TypeEngine, dialect) -> bool:
        # JSON blobs and arrays reflect differently per backend
        if column.type.kind in UNCOMPARED_KINDS or isinstance(reflected, sa.types.NullType):
            return False
        return compile_type(reflected, dialect) != compile_type(column.type.to_sqlalchemy(), dialect)

    def verify(self) -> None:
        """Raise ``MigrationConflictError`` unless the database is fully migrated
        and matches the registry."""
        pending = self.pending()
        if pending:
            raise MigrationConflictError(
                f"{len(pending)} migration(s) pending",
                details={"pending": [migration.label for migration in pending]},
            )
        with self.engine.connect() as connection:
            stored = self._stored_vocabularies(connection)
        for name, vocabulary in stored.items():
            if name in VOCABULARIES:
                check_vocabulary_evolution(vocabulary, VOCABULARIES[name])
        problems = self.drift()
        if problems:
            raise MigrationConflictError("Live schema differs from the registry", details={"problems": problems})
        logger.info("Schema verified against the registry")

    @staticmethod
    def _stored_vocabularies(connection) -> Dict[str, Vocabulary]:
        members = sa.table(
            "vocabulary_members",
            sa.column("vocabulary"), sa.column("member"), sa.column("version"), sa.column("deprecated_in"),
        )
        rows = connection.execute(sa.select(members)).fetchall()
        releases: Dict[str, Dict[int, List[str]]] = {}
        deprecations: Dict[str, List] = {}
        for row in rows:
            releases.setdefault(row.vocabulary, {}).setdefault(row.version, []).append(row.member)
            if row.deprecated_in is not None:
                deprecations.setdefault(row.vocabulary, []).append((row.member, row.deprecated_in))

        stored = {}
        for name, by_version in releases.items():
            order = VOCABULARIES[name].members if name in VOCABULARIES else ()
            stored[name] = Vocabulary(
                name,
                tuple(
                    (version, tuple(sorted(added, key=lambda m: order.index(m) if m in order else len(order))))
                    for version, added in sorted(by_version.items())
                ),
                deprecations=tuple(deprecations.get(name, ())),
            )
        return stored
