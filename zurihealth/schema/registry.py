# zurihealth/schema/registry.py
"""Schema descriptors.

Tables are described as plain data (``TableSpec`` / ``ColumnSpec``) and turned
into SQLAlchemy objects on demand. The same descriptors feed the model layer
and the migration operations, and ``drift`` checks compare them against the
live database.
"""
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from zurihealth.schema.vocabularies import VOCABULARIES
from zurihealth.utils.clock import hospital_now

# Enumerated columns are stored as plain strings wide enough for any member,
# so extending a vocabulary never requires DDL.
ENUM_LENGTH = 32


@dataclass(frozen=True)
class ColumnType:
    kind: str
    length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    vocabulary: Optional[str] = None
    item: Optional["ColumnType"] = None

    def to_sqlalchemy(self) -> sa.types.TypeEngine:
        if self.kind == "uuid":
            return sa.Uuid()
        if self.kind == "string":
            return sa.String(self.length)
        if self.kind == "text":
            return sa.Text()
        if self.kind == "integer":
            return sa.Integer()
        if self.kind == "decimal":
            return sa.Numeric(self.precision, self.scale)
        if self.kind == "boolean":
            return sa.Boolean()
        if self.kind == "timestamp":
            return sa.DateTime(timezone=True)
        if self.kind == "date":
            return sa.Date()
        if self.kind == "enum":
            return sa.Enum(
                *VOCABULARIES[self.vocabulary].members,
                name=self.vocabulary,
                native_enum=False,
                create_constraint=False,
                length=ENUM_LENGTH,
                validate_strings=True,
            )
        if self.kind == "json":
            return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
        if self.kind == "array":
            return sa.JSON().with_variant(postgresql.ARRAY(self.item.to_sqlalchemy()), "postgresql")
        raise ValueError(f"Unknown column type {self.kind!r}")

    def describe(self) -> str:
        if self.kind == "string":
            return f"string({self.length})"
        if self.kind == "decimal":
            return f"decimal({self.precision},{self.scale})"
        if self.kind == "enum":
            return f"enum({self.vocabulary})"
        if self.kind == "array":
            return f"array({self.item.describe()})"
        return self.kind


UUID = ColumnType("uuid")
TEXT = ColumnType("text")
INTEGER = ColumnType("integer")
BOOLEAN = ColumnType("boolean")
TIMESTAMP = ColumnType("timestamp")
DATE = ColumnType("date")
JSON = ColumnType("json")


def STRING(length: int) -> ColumnType:
    return ColumnType("string", length=length)


def DECIMAL(precision: int, scale: int) -> ColumnType:
    return ColumnType("decimal", precision=precision, scale=scale)


def ENUM(vocabulary: str) -> ColumnType:
    if vocabulary not in VOCABULARIES:
        raise KeyError(f"Unknown vocabulary {vocabulary!r}")
    return ColumnType("enum", vocabulary=vocabulary)


def ARRAY(item: ColumnType) -> ColumnType:
    return ColumnType("array", item=item)


@dataclass(frozen=True)
class ForeignKeySpec:
    table: str
    column: str = "id"
    ondelete: str = "RESTRICT"


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    type: ColumnType
    nullable: bool = True
    unique: bool = False
    primary_key: bool = False
    default: Any = None
    onupdate: Optional[Callable[[], Any]] = None
    server_default: Optional[str] = None
    foreign_key: Optional[ForeignKeySpec] = None

    def to_column(self, table_name: str) -> sa.Column:
        args = [self.name, self.type.to_sqlalchemy()]
        if self.foreign_key:
            args.append(sa.ForeignKey(
                f"{self.foreign_key.table}.{self.foreign_key.column}",
                name=f"fk_{table_name}_{self.name}",
                ondelete=self.foreign_key.ondelete,
            ))
        kwargs = {"nullable": self.nullable, "primary_key": self.primary_key}
        if self.default is not None:
            kwargs["default"] = self.default
        if self.onupdate is not None:
            kwargs["onupdate"] = self.onupdate
        if self.server_default is not None:
            kwargs["server_default"] = sa.text(self.server_default)
        return sa.Column(*args, **kwargs)

    def unique_index_name(self, table_name: str) -> str:
        return f"uq_{table_name}_{self.name}"


@dataclass(frozen=True)
class IndexSpec:
    name: str
    columns: Tuple[str, ...]
    unique: bool = False


@dataclass(frozen=True)
class CheckSpec:
    name: str
    sqltext: str


@dataclass(frozen=True)
class TableSpec:
    name: str
    columns: Tuple[ColumnSpec, ...]
    indexes: Tuple[IndexSpec, ...] = ()
    checks: Tuple[CheckSpec, ...] = ()

    def column(self, name: str) -> ColumnSpec:
        for column in self.columns:
            if column.name == name:
                return column
        raise KeyError(f"{self.name} has no column {name!r}")

    @property
    def column_names(self) -> List[str]:
        return [column.name for column in self.columns]

    @property
    def soft_delete(self) -> bool:
        return "deleted_at" in self.column_names

    def all_indexes(self) -> List[IndexSpec]:
        """Declared indexes plus one named unique index per unique column."""
        derived = [
            IndexSpec(column.unique_index_name(self.name), (column.name,), unique=True)
            for column in self.columns if column.unique
        ]
        return derived + list(self.indexes)

    def foreign_keys(self) -> List[Tuple[str, ForeignKeySpec]]:
        return [(column.name, column.foreign_key) for column in self.columns if column.foreign_key]

    def with_columns(self, *columns: ColumnSpec) -> "TableSpec":
        return replace(self, columns=self.columns + tuple(columns))

    def without_columns(self, *names: str) -> "TableSpec":
        return replace(
            self,
            columns=tuple(column for column in self.columns if column.name not in names),
            indexes=tuple(index for index in self.indexes if not set(index.columns) & set(names)),
        )

    def altered(self, name: str, **changes) -> "TableSpec":
        """Copy with one column's descriptor changed, e.g. an earlier type."""
        self.column(name)
        return replace(self, columns=tuple(
            replace(column, **changes) if column.name == name else column for column in self.columns
        ))

    def schema_items(self) -> List[Any]:
        """Columns, indexes and checks as SQLAlchemy schema items."""
        items: List[Any] = [column.to_column(self.name) for column in self.columns]
        items.extend(
            sa.Index(index.name, *index.columns, unique=index.unique) for index in self.all_indexes()
        )
        items.extend(sa.CheckConstraint(check.sqltext, name=check.name) for check in self.checks)
        return items

    def to_table(self, metadata: sa.MetaData) -> sa.Table:
        return sa.Table(self.name, metadata, *self.schema_items())


# Column helpers shared by every entity table

def primary_key() -> ColumnSpec:
    return ColumnSpec("id", UUID, nullable=False, primary_key=True, default=uuid.uuid4)


def timestamps() -> Tuple[ColumnSpec, ColumnSpec]:
    return (
        ColumnSpec("created_at", TIMESTAMP, nullable=False, default=hospital_now),
        ColumnSpec("updated_at", TIMESTAMP, nullable=False, default=hospital_now, onupdate=hospital_now),
    )


def references(name: str, table: str, nullable: bool = False, ondelete: str = "RESTRICT",
               unique: bool = False) -> ColumnSpec:
    return ColumnSpec(name, UUID, nullable=nullable, unique=unique,
                      foreign_key=ForeignKeySpec(table, ondelete=ondelete))


@dataclass
class SchemaRegistry:
    tables: Dict[str, TableSpec] = field(default_factory=dict)

    def register(self, spec: TableSpec) -> TableSpec:
        if spec.name in self.tables:
            raise ValueError(f"Table {spec.name!r} registered twice")
        self.tables[spec.name] = spec
        return spec

    def __getitem__(self, name: str) -> TableSpec:
        return self.tables[name]

    def __iter__(self):
        return iter(self.tables.values())

    def build_metadata(self, names: Optional[Iterable[str]] = None) -> sa.MetaData:
        metadata = sa.MetaData()
        for spec in self.tables.values():
            if names is None or spec.name in names:
                spec.to_table(metadata)
        return metadata

    def referencing(self, table_name: str) -> List[Tuple[str, str, str]]:
        """Every ``(table, column, ondelete)`` whose foreign key targets ``table_name``."""
        found = []
        for spec in self.tables.values():
            for column_name, fk in spec.foreign_keys():
                if fk.table == table_name:
                    found.append((spec.name, column_name, fk.ondelete))
        return found
