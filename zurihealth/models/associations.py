# zurihealth/models/associations.py
"""Relationship helpers, one per association kind.

Every helper returns a lazily loaded ``relationship()`` wired through an
explicit foreign key, and stores an ``Association`` descriptor in its
``info`` so the persistence layer can resolve it with plain queries.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import relationship

BELONGS_TO = "belongs_to"
HAS_ONE = "has_one"
HAS_MANY = "has_many"
MANY_TO_MANY_THROUGH = "many_to_many_through"


@dataclass(frozen=True)
class Association:
    kind: str
    target: str
    foreign_key: str
    required: bool = False
    through: Optional[str] = None
    through_target_key: Optional[str] = None


def _column(qualified: str) -> str:
    return qualified.rsplit(".", 1)[-1]


def belongs_to(target: str, foreign_key: str, required: bool = True, **kwargs):
    """This entity holds ``foreign_key`` pointing at ``target``."""
    association = Association(BELONGS_TO, target, _column(foreign_key), required=required)
    return relationship(target, foreign_keys=foreign_key, lazy="select",
                        info={"association": association}, **kwargs)


def has_one(target: str, foreign_key: str, **kwargs):
    """``target`` holds a unique ``foreign_key`` pointing back here."""
    association = Association(HAS_ONE, target, _column(foreign_key))
    return relationship(target, foreign_keys=foreign_key, uselist=False, lazy="select",
                        info={"association": association}, **kwargs)


def has_many(target: str, foreign_key: str, **kwargs):
    association = Association(HAS_MANY, target, _column(foreign_key))
    return relationship(target, foreign_keys=foreign_key, lazy="select",
                        info={"association": association}, **kwargs)


def many_to_many_through(owner: str, target: str, through: str, secondary: str,
                         local_key: str, remote_key: str):
    """Read-only view across an explicit join entity. Rows are written through
    the join entity itself, never through this collection."""
    association = Association(
        MANY_TO_MANY_THROUGH, target, local_key, through=through, through_target_key=remote_key,
    )
    return relationship(
        target,
        secondary=secondary,
        primaryjoin=f"{owner}.id == {through}.{local_key}",
        secondaryjoin=f"{target}.id == {through}.{remote_key}",
        viewonly=True,
        lazy="select",
        info={"association": association},
    )
