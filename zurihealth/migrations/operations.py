# zurihealth/migrations/operations.py
"""Schema and data operations that make up a migration step.

Every operation checks the live database before mutating it, so applying one
against a schema that already has the target shape does nothing. ``inverse()``
returns the operation that undoes it.
"""
import re
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations

from zurihealth.errors import MigrationConflictError, MigrationDependencyError
from zurihealth.logging_setup import get_logger
from zurihealth.schema.registry import ColumnSpec, ColumnType, IndexSpec, TableSpec
from zurihealth.utils.clock import hospital_now

logger = get_logger(__name__)

# Namespace for ids of rows inserted by data steps, so reruns mint the same ids
SEED_NAMESPACE = uuid.UUID("6f1c9a52-4a8e-4d83-9d0e-2f63a1b7c5e4")

# Keywords that make a query write, including inside a CTE
WRITE_KEYWORDS = re.compile(r"\b(INSERT|UPDATE|DELETE|MERGE|UPSERT|DROP|ALTER|CREATE|TRUNCATE|GRANT|REVOKE)\b", re.IGNORECASE)


def compile_type(type_: sa.types.TypeEngine, dialect) -> str:
    """DDL spelling of a type, normalised so reflected and declared types compare equal."""
    return type_.compile(dialect=dialect).replace(" ", "").upper()


class StepContext:
    """Connection plus an Alembic ``Operations`` facade for one migration step."""

    def __init__(self, connection: sa.engine.Connection):
        self.connection = connection
        self.op = Operations(MigrationContext.configure(connection))

    @property
    def is_sqlite(self) -> bool:
        return self.connection.dialect.name == "sqlite"

    def inspector(self):
        # A fresh inspector each time; DDL in this step invalidates cached reflection
        return sa.inspect(self.connection)

    def has_table(self, name: str) -> bool:
        return self.inspector().has_table(name)

    def column_names(self, table: str) -> List[str]:
        return [column["name"] for column in self.inspector().get_columns(table)]

    def index_names(self, table: str) -> List[str]:
        return [index["name"] for index in self.inspector().get_indexes(table) if index.get("name")]

    def column_type(self, table: str, column: str) -> Optional[str]:
        for reflected in self.inspector().get_columns(table):
            if reflected["name"] == column:
                return self.compile_type(reflected["type"])
        return None

    def compile_type(self, type_: sa.types.TypeEngine) -> str:
        return compile_type(type_, self.connection.dialect)

    @contextmanager
    def batch(self, table: str, recreate: str = "auto"):
        with self.op.batch_alter_table(table, recreate=recreate) as batch:
            yield batch


class Operation:
    """Base class; subclasses are frozen dataclasses."""

    def apply(self, ctx: StepContext) -> None:
        raise NotImplementedError

    def inverse(self) -> "Operation":
        raise NotImplementedError

    def describe(self) -> str:
        return type(self).__name__


# ================================
# TABLES
# ================================

@dataclass(frozen=True)
class CreateTable(Operation):
    spec: TableSpec

    def apply(self, ctx):
        if ctx.has_table(self.spec.name):
            logger.debug("Table %s already exists, skipping", self.spec.name)
            return
        ctx.op.create_table(self.spec.name, *self.spec.schema_items())

    def inverse(self):
        return DropTable(self.spec)

    def describe(self):
        return f"create table {self.spec.name}"


@dataclass(frozen=True)
class DropTable(Operation):
    spec: TableSpec

    def apply(self, ctx):
        if not ctx.has_table(self.spec.name):
            logger.debug("Table %s already dropped, skipping", self.spec.name)
            return
        ctx.op.drop_table(self.spec.name)

    def inverse(self):
        return CreateTable(self.spec)

    def describe(self):
        return f"drop table {self.spec.name}"


# ================================
# COLUMNS
# ================================

@dataclass(frozen=True)
class AddColumn(Operation):
    table: str
    column: ColumnSpec

    def apply(self, ctx):
        if self.column.name not in ctx.column_names(self.table):
            # SQLite cannot ALTER in a foreign key; rebuild the table instead
            recreate = "always" if ctx.is_sqlite and self.column.foreign_key else "auto"
            with ctx.batch(self.table, recreate=recreate) as batch:
                batch.add_column(self.column.to_column(self.table))
        else:
            logger.debug("Column %s.%s already exists, skipping", self.table, self.column.name)

        if self.column.unique:
            CreateIndex(self.table, IndexSpec(
                self.column.unique_index_name(self.table), (self.column.name,), unique=True,
            )).apply(ctx)

    def inverse(self):
        return DropColumn(self.table, self.column)

    def describe(self):
        return f"add column {self.table}.{self.column.name}"


@dataclass(frozen=True)
class DropColumn(Operation):
    table: str
    column: ColumnSpec

    def apply(self, ctx):
        if self.column.unique:
            DropIndex(self.table, IndexSpec(
                self.column.unique_index_name(self.table), (self.column.name,), unique=True,
            )).apply(ctx)

        if self.column.name not in ctx.column_names(self.table):
            logger.debug("Column %s.%s already dropped, skipping", self.table, self.column.name)
            return
        with ctx.batch(self.table) as batch:
            batch.drop_column(self.column.name)

    def inverse(self):
        return AddColumn(self.table, self.column)

    def describe(self):
        return f"drop column {self.table}.{self.column.name}"


@dataclass(frozen=True)
class AlterColumnType(Operation):
    """Change a column's type. Shortening a type can lose data, so it always
    gets a step of its own."""
    table: str
    column: str
    from_type: ColumnType
    to_type: ColumnType
    nullable: bool = True

    def apply(self, ctx):
        current = ctx.column_type(self.table, self.column)
        if current is None:
            raise MigrationDependencyError(f"Cannot alter missing column {self.table}.{self.column}")
        if current == ctx.compile_type(self.to_type.to_sqlalchemy()):
            logger.debug("Column %s.%s already %s, skipping", self.table, self.column, self.to_type.describe())
            return
        with ctx.batch(self.table) as batch:
            batch.alter_column(
                self.column,
                type_=self.to_type.to_sqlalchemy(),
                existing_type=self.from_type.to_sqlalchemy(),
                existing_nullable=self.nullable,
            )

    def inverse(self):
        return AlterColumnType(self.table, self.column, self.to_type, self.from_type, self.nullable)

    def describe(self):
        return f"alter {self.table}.{self.column} {self.from_type.describe()} -> {self.to_type.describe()}"


# ================================
# INDEXES
# ================================

@dataclass(frozen=True)
class CreateIndex(Operation):
    table: str
    index: IndexSpec

    def apply(self, ctx):
        if self.index.name in ctx.index_names(self.table):
            logger.debug("Index %s already exists, skipping", self.index.name)
            return
        ctx.op.create_index(self.index.name, self.table, list(self.index.columns), unique=self.index.unique)

    def inverse(self):
        return DropIndex(self.table, self.index)

    def describe(self):
        return f"create index {self.index.name}"


@dataclass(frozen=True)
class DropIndex(Operation):
    table: str
    index: IndexSpec

    def apply(self, ctx):
        if self.index.name not in ctx.index_names(self.table):
            logger.debug("Index %s already dropped, skipping", self.index.name)
            return
        ctx.op.drop_index(self.index.name, table_name=self.table)

    def inverse(self):
        return CreateIndex(self.table, self.index)

    def describe(self):
        return f"drop index {self.index.name}"


# ================================
# VOCABULARIES
# ================================

vocabulary_members = sa.table(
    "vocabulary_members",
    sa.column("vocabulary", sa.String),
    sa.column("member", sa.String),
    sa.column("version", sa.Integer),
    sa.column("deprecated_in", sa.Integer),
)


def _member_row(ctx: StepContext, vocabulary: str, member: str):
    return ctx.connection.execute(
        sa.select(vocabulary_members.c.version, vocabulary_members.c.deprecated_in).where(
            vocabulary_members.c.vocabulary == vocabulary,
            vocabulary_members.c.member == member,
        )
    ).first()


@dataclass(frozen=True)
class ExtendVocabulary(Operation):
    vocabulary: str
    members: Tuple[str, ...]
    version: int
    deprecated_in: Optional[int] = None

    def apply(self, ctx):
        for member in self.members:
            if _member_row(ctx, self.vocabulary, member) is not None:
                continue
            ctx.connection.execute(vocabulary_members.insert().values(
                vocabulary=self.vocabulary,
                member=member,
                version=self.version,
                deprecated_in=self.deprecated_in,
            ))

    def inverse(self):
        return WithdrawVocabularyMembers(self.vocabulary, self.members, self.version, self.deprecated_in)

    def describe(self):
        return f"extend vocabulary {self.vocabulary} v{self.version}: {', '.join(self.members)}"


@dataclass(frozen=True)
class WithdrawVocabularyMembers(Operation):
    """Rollback of ``ExtendVocabulary``. Forward migrations retire members
    through ``DeprecateVocabularyMember`` and ``RetireVocabularyMember``."""
    vocabulary: str
    members: Tuple[str, ...]
    version: int
    deprecated_in: Optional[int] = None

    def apply(self, ctx):
        ctx.connection.execute(vocabulary_members.delete().where(
            vocabulary_members.c.vocabulary == self.vocabulary,
            vocabulary_members.c.member.in_(self.members),
        ))

    def inverse(self):
        return ExtendVocabulary(self.vocabulary, self.members, self.version, self.deprecated_in)

    def describe(self):
        return f"withdraw {', '.join(self.members)} from vocabulary {self.vocabulary}"


@dataclass(frozen=True)
class DeprecateVocabularyMember(Operation):
    vocabulary: str
    member: str
    version: int

    def apply(self, ctx):
        row = _member_row(ctx, self.vocabulary, self.member)
        if row is None:
            raise MigrationDependencyError(
                f"Cannot deprecate {self.vocabulary}.{self.member}: member is not registered"
            )
        if row.deprecated_in is not None:
            return
        ctx.connection.execute(vocabulary_members.update().where(
            vocabulary_members.c.vocabulary == self.vocabulary,
            vocabulary_members.c.member == self.member,
        ).values(deprecated_in=self.version))

    def inverse(self):
        return RestoreVocabularyMember(self.vocabulary, self.member, self.version)

    def describe(self):
        return f"deprecate {self.vocabulary}.{self.member} in v{self.version}"


@dataclass(frozen=True)
class RestoreVocabularyMember(Operation):
    """Rollback of ``DeprecateVocabularyMember``."""
    vocabulary: str
    member: str
    version: int

    def apply(self, ctx):
        ctx.connection.execute(vocabulary_members.update().where(
            vocabulary_members.c.vocabulary == self.vocabulary,
            vocabulary_members.c.member == self.member,
        ).values(deprecated_in=None))

    def inverse(self):
        return DeprecateVocabularyMember(self.vocabulary, self.member, self.version)


@dataclass(frozen=True)
class RetireVocabularyMember(Operation):
    """Remove a member for good. Only members deprecated by an earlier step can
    be retired."""
    vocabulary: str
    member: str
    introduced_in: int
    deprecated_in: int

    def apply(self, ctx):
        row = _member_row(ctx, self.vocabulary, self.member)
        if row is None:
            logger.debug("%s.%s already retired, skipping", self.vocabulary, self.member)
            return
        if row.deprecated_in is None:
            raise MigrationConflictError(
                f"{self.vocabulary}.{self.member} must be deprecated before it can be retired"
            )
        ctx.connection.execute(vocabulary_members.delete().where(
            vocabulary_members.c.vocabulary == self.vocabulary,
            vocabulary_members.c.member == self.member,
        ))

    def inverse(self):
        return ExtendVocabulary(
            self.vocabulary, (self.member,), self.introduced_in, deprecated_in=self.deprecated_in
        )

    def describe(self):
        return f"retire {self.vocabulary}.{self.member}"


# ================================
# DATA
# ================================

@dataclass(frozen=True)
class Lookup:
    """Id of an existing row, resolved when the step runs."""
    table: str
    column: str
    value: Any

    def resolve(self, ctx: StepContext, needed_by: str):
        if not ctx.has_table(self.table):
            raise MigrationDependencyError(
                f"{needed_by} needs table {self.table}, which does not exist yet"
            )
        target = sa.table(self.table, sa.column("id", sa.Uuid()), sa.column(self.column))
        found = ctx.connection.execute(
            sa.select(target.c.id).where(target.c[self.column] == self.value)
        ).scalar()
        if found is None:
            raise MigrationDependencyError(
                f"{needed_by} needs {self.table}.{self.column} = {self.value!r}, which is missing"
            )
        return found


def _lightweight_table(name: str, columns: Tuple[ColumnSpec, ...]) -> sa.TableClause:
    return sa.table(name, *[sa.column(column.name, column.type.to_sqlalchemy()) for column in columns])


@dataclass(frozen=True)
class InsertRows(Operation):
    """Insert reference rows identified by ``key``. Rows already present are
    left alone; ``lookups`` fill foreign keys from rows earlier steps inserted."""
    table: str
    columns: Tuple[ColumnSpec, ...]
    rows: Tuple[Dict[str, Any], ...]
    key: str
    lookups: Dict[str, Lookup] = field(default_factory=dict)

    def apply(self, ctx):
        target = _lightweight_table(self.table, self.columns)
        names = {column.name for column in self.columns}
        for row in self.rows:
            exists = ctx.connection.execute(
                sa.select(target.c[self.key]).where(target.c[self.key] == row[self.key])
            ).first()
            if exists:
                continue

            values = dict(row)
            for column, lookup in self.lookups.items():
                values[column] = lookup.resolve(ctx, f"{self.table} row {row[self.key]!r}")
            if "id" in names and "id" not in values:
                values["id"] = uuid.uuid5(SEED_NAMESPACE, f"{self.table}:{row[self.key]}")
            now = hospital_now()
            for stamp in ("created_at", "updated_at"):
                if stamp in names and stamp not in values:
                    values[stamp] = now
            ctx.connection.execute(target.insert().values(**values))
        logger.info("Inserted reference rows into %s", self.table)

    def inverse(self):
        return DeleteRows(self.table, self.key, tuple(row[self.key] for row in self.rows), restore=self)

    def describe(self):
        return f"insert {len(self.rows)} rows into {self.table}"


@dataclass(frozen=True)
class DeleteRows(Operation):
    table: str
    key: str
    values: Tuple[Any, ...]
    restore: Optional[InsertRows] = None

    def apply(self, ctx):
        target = sa.table(self.table, sa.column(self.key))
        ctx.connection.execute(target.delete().where(target.c[self.key].in_(self.values)))

    def inverse(self):
        if self.restore is None:
            return NoOp(f"rows deleted from {self.table} are not restored")
        return self.restore

    def describe(self):
        return f"delete {len(self.values)} rows from {self.table}"


@dataclass(frozen=True)
class RunQuery(Operation):
    """Read-only query, typically a report logged while migrating.

    Nothing is mutated, so its inverse is an explicit ``NoOp``.
    """
    description: str
    sql: str

    def __post_init__(self):
        statement = self.sql.strip().rstrip(";")
        if (
            not statement.upper().startswith(("SELECT", "WITH"))
            or ";" in statement
            or WRITE_KEYWORDS.search(statement)
        ):
            raise ValueError(f"RunQuery only accepts read-only queries: {self.description}")

    def apply(self, ctx):
        rows = ctx.connection.execute(sa.text(self.sql)).fetchall()
        logger.info("%s: %d row(s)", self.description, len(rows))
        for row in rows:
            logger.info("  %s", tuple(row))

    def inverse(self):
        return NoOp(f"'{self.description}' is read-only; nothing to revert")

    def describe(self):
        return f"query: {self.description}"


@dataclass(frozen=True)
class NoOp(Operation):
    reason: str

    def apply(self, ctx):
        logger.info("No-op: %s", self.reason)

    def inverse(self):
        return self

    def describe(self):
        return f"no-op ({self.reason})"


# ================================
# MIGRATION
# ================================

@dataclass(frozen=True)
class Migration:
    key: str
    name: str
    operations: Tuple[Operation, ...]

    def apply(self, ctx: StepContext) -> None:
        for operation in self.operations:
            logger.debug("[%s] %s", self.key, operation.describe())
            operation.apply(ctx)

    def revert(self, ctx: StepContext) -> None:
        for operation in reversed(self.operations):
            inverse = operation.inverse()
            logger.debug("[%s] %s", self.key, inverse.describe())
            inverse.apply(ctx)

    @property
    def label(self) -> str:
        return f"{self.key}-{self.name}"
