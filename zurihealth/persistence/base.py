# zurihealth/persistence/base.py
"""Generic repository over one mapped entity."""
import math
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterator, List, Optional, Type, TypeVar, Union
from uuid import UUID

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from zurihealth.config import settings
from zurihealth.database import PersistenceContext, translate_integrity_error
from zurihealth.errors import NotFoundError, ReferentialIntegrityError, ValidationError
from zurihealth.logging_setup import get_logger
from zurihealth.models.all_models import Base
from zurihealth.models.associations import BELONGS_TO, HAS_MANY, HAS_ONE, MANY_TO_MANY_THROUGH
from zurihealth.schema.tables import registry

logger = get_logger(__name__)

T = TypeVar("T")

# A filter is a SQL expression or a callable building one from the model class
Predicate = Union[Any, Callable[[type], Any]]


@dataclass(frozen=True)
class Actor:
    """Authenticated caller, supplied by the request layer."""
    user_id: UUID
    role: str


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.total else 0


def model_for_table(table_name: str) -> type:
    for mapper in Base.registry.mappers:
        if mapper.local_table.name == table_name:
            return mapper.class_
    raise KeyError(table_name)


def model_named(name: str) -> type:
    for mapper in Base.registry.mappers:
        if mapper.class_.__name__ == name:
            return mapper.class_
    raise KeyError(name)


def resolve_predicate(model: type, predicate: Predicate):
    return predicate(model) if callable(predicate) else predicate


class Repository:
    model: Type = None
    create_schema: Type[BaseModel] = None
    update_schema: Type[BaseModel] = None

    def __init__(self, context: PersistenceContext):
        self.context = context

    @property
    def entity(self) -> str:
        return self.model.__name__

    @property
    def spec(self):
        return registry[self.model.__table__.name]

    # ================================
    # HELPERS
    # ================================

    @contextmanager
    def _session(self, session: Optional[Session] = None) -> Iterator[Session]:
        """Join the caller's unit of work, or open a new one."""
        if session is not None:
            yield session
        else:
            with self.context.transaction() as session:
                yield session

    def validate(self, schema: Type[BaseModel], data: Any) -> BaseModel:
        if isinstance(data, schema):
            return data
        if isinstance(data, BaseModel):
            data = data.model_dump(exclude_unset=True)
        try:
            return schema.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError.from_pydantic(self.entity, exc) from exc

    @staticmethod
    def _flush(session: Session) -> None:
        try:
            session.flush()
        except IntegrityError as exc:
            raise translate_integrity_error(exc) from exc

    def _check_references(self, session: Session, values: dict) -> None:
        """Referenced rows must exist and must not be soft-deleted."""
        for column, fk in self.spec.foreign_keys():
            value = values.get(column)
            if value is None:
                continue
            target = model_for_table(fk.table)
            found = session.get(target, value)
            if found is None or getattr(found, "deleted_at", None) is not None:
                raise ReferentialIntegrityError(
                    f"{self.entity}.{column} references missing {target.__name__} {value}",
                    details={"column": column, "value": str(value)},
                )

    def _lock(self, session: Session, id: UUID, include_deleted: bool = False):
        """Load a row with ``SELECT ... FOR UPDATE`` for read-then-write changes."""
        instance = session.execute(
            select(self.model).where(self.model.id == id).with_for_update().execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if instance is None or (not include_deleted and getattr(instance, "deleted_at", None) is not None):
            raise NotFoundError(self.entity, id)
        return instance

    def _base_query(self, include_deleted: bool = False):
        query = select(self.model)
        if self.spec.soft_delete and not include_deleted:
            query = query.where(self.model.deleted_at.is_(None))
        return query

    # Hooks for entity repositories

    def _build(self, session: Session, values: dict, actor: Optional[Actor]):
        if actor is not None and "created_by" in self.spec.column_names:
            values.setdefault("created_by", actor.user_id)
        return self.model(**values)

    def _before_update(self, session: Session, instance, values: dict) -> None:
        pass

    # ================================
    # CREATE / READ
    # ================================

    def create(self, data: Any, actor: Optional[Actor] = None, session: Optional[Session] = None):
        payload = self.validate(self.create_schema, data)
        values = payload.model_dump()
        with self._session(session) as session:
            self._check_references(session, values)
            instance = self._build(session, values, actor)
            session.add(instance)
            self._flush(session)
            logger.debug("Created %s %s", self.entity, instance.id)
            return instance

    def get(self, id: UUID, include_deleted: bool = False, session: Optional[Session] = None):
        with self._session(session) as session:
            instance = session.get(self.model, id)
            if instance is None or (not include_deleted and getattr(instance, "deleted_at", None) is not None):
                raise NotFoundError(self.entity, id)
            return instance

    def find(self, where: Optional[Predicate] = None, order_by=None, include_deleted: bool = False,
             session: Optional[Session] = None) -> list:
        query = self._base_query(include_deleted)
        if where is not None:
            query = query.where(resolve_predicate(self.model, where))
        query = query.order_by(*(order_by if isinstance(order_by, (list, tuple)) else [order_by or self.model.created_at]))
        with self._session(session) as session:
            return list(session.execute(query).scalars())

    def find_one(self, where: Predicate, include_deleted: bool = False, session: Optional[Session] = None):
        query = self._base_query(include_deleted).where(resolve_predicate(self.model, where))
        with self._session(session) as session:
            return session.execute(query.limit(1)).scalars().first()

    def list_page(self, page: int = 1, page_size: Optional[int] = None, where: Optional[Predicate] = None,
                  order_by=None, include_deleted: bool = False, session: Optional[Session] = None) -> Page:
        page_size = page_size or settings.DEFAULT_PAGE_SIZE
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive")
        page_size = min(page_size, settings.MAX_PAGE_SIZE)

        query = self._base_query(include_deleted)
        if where is not None:
            query = query.where(resolve_predicate(self.model, where))
        ordering = order_by if isinstance(order_by, (list, tuple)) else [order_by or self.model.created_at]

        with self._session(session) as session:
            total = session.execute(select(func.count()).select_from(query.subquery())).scalar_one()
            items = session.execute(
                query.order_by(*ordering, self.model.id).offset((page - 1) * page_size).limit(page_size)
            ).scalars().all()
            return Page(items=list(items), total=total, page=page, page_size=page_size)

    # ================================
    # UPDATE
    # ================================

    def _apply(self, id: UUID, values: dict, session: Optional[Session]):
        with self._session(session) as session:
            instance = self._lock(session, id)
            self._check_references(session, values)
            self._before_update(session, instance, values)
            for field, value in values.items():
                setattr(instance, field, value)
            self._flush(session)
            logger.debug("Updated %s %s (%s)", self.entity, id, ", ".join(sorted(values)))
            return instance

    def update(self, id: UUID, data: Any, session: Optional[Session] = None):
        """Full update: the payload must be complete, as for create."""
        payload = self.validate(self.create_schema, data)
        return self._apply(id, payload.model_dump(), session)

    def patch(self, id: UUID, data: Any, session: Optional[Session] = None):
        """Partial update: only the fields present in the payload change."""
        payload = self.validate(self.update_schema, data)
        return self._apply(id, payload.model_dump(exclude_unset=True), session)

    # ================================
    # DELETE
    # ================================

    def _referencing_counts(self, session: Session, id: UUID) -> dict:
        counts = {}
        for table, column, ondelete in registry.referencing(self.model.__table__.name):
            if ondelete == "CASCADE":
                continue
            referencing = model_for_table(table)
            count = session.execute(
                select(func.count()).select_from(referencing).where(getattr(referencing, column) == id)
            ).scalar_one()
            if count:
                counts[f"{table}.{column}"] = count
        return counts

    def delete(self, id: UUID, hard: bool = False, session: Optional[Session] = None):
        """Soft delete where the table supports it, otherwise (or with
        ``hard=True``) remove the row if nothing references it."""
        with self._session(session) as session:
            instance = self._lock(session, id, include_deleted=hard)
            if self.spec.soft_delete and not hard:
                instance.soft_delete()
                self._flush(session)
                logger.info("Soft-deleted %s %s", self.entity, id)
                return instance

            self._before_delete(session, instance)
            counts = self._referencing_counts(session, id)
            if counts:
                raise ReferentialIntegrityError(
                    f"{self.entity} {id} is still referenced by "
                    + ", ".join(f"{count} {where}" for where, count in counts.items()),
                    details=counts,
                )
            session.delete(instance)
            self._flush(session)
            logger.info("Deleted %s %s", self.entity, id)
            return instance

    def _before_delete(self, session: Session, instance) -> None:
        pass

    def restore(self, id: UUID, session: Optional[Session] = None):
        if not self.spec.soft_delete:
            raise ValidationError(f"{self.entity} does not support soft delete")
        with self._session(session) as session:
            instance = self._lock(session, id, include_deleted=True)
            instance.restore()
            self._flush(session)
            return instance

    # ================================
    # ASSOCIATIONS
    # ================================

    def related(self, instance_or_id, name: str, scope: Optional[Predicate] = None,
                session: Optional[Session] = None):
        """Resolve a declared association with an explicit query.

        ``scope`` narrows the result to what the caller may see; it is supplied
        by the authorization layer as an expression or a callable taking the
        target model.
        """
        relationship = self.model.__mapper__.relationships.get(name)
        if relationship is None or "association" not in relationship.info:
            raise ValidationError(f"{self.entity} has no association {name!r}")
        association = relationship.info["association"]
        target = relationship.mapper.class_

        with self._session(session) as session:
            instance = instance_or_id
            if not isinstance(instance_or_id, self.model):
                instance = self.get(instance_or_id, include_deleted=True, session=session)

            if association.kind == BELONGS_TO:
                key = getattr(instance, association.foreign_key)
                if key is None:
                    return None
                query = select(target).where(target.id == key)
            elif association.kind in (HAS_ONE, HAS_MANY):
                query = select(target).where(getattr(target, association.foreign_key) == instance.id)
            elif association.kind == MANY_TO_MANY_THROUGH:
                through = model_named(association.through)
                query = (
                    select(target)
                    .join(through, getattr(through, association.through_target_key) == target.id)
                    .where(getattr(through, association.foreign_key) == instance.id)
                )
            else:
                raise ValidationError(f"Unsupported association kind {association.kind!r}")

            if "deleted_at" in target.__table__.c:
                query = query.where(target.deleted_at.is_(None))
            if scope is not None:
                query = query.where(resolve_predicate(target, scope))

            if association.kind in (BELONGS_TO, HAS_ONE):
                return session.execute(query).scalars().first()
            return list(session.execute(query.order_by(target.created_at)).scalars())
