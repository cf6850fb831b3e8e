# zurihealth/errors.py
"""Typed errors surfaced by the record store.

Every error carries a ``kind`` so the request layer can map it to a status
code without inspecting messages.
"""
from typing import Any, Dict, List, Optional


class ZuriHealthError(Exception):
    kind = "error"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload = {"code": self.kind, "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(ZuriHealthError):
    """Missing or malformed field, vocabulary or range violation."""
    kind = "validation_error"

    @classmethod
    def from_pydantic(cls, entity: str, exc) -> "ValidationError":
        errors: List[Dict[str, Any]] = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        fields = ", ".join(err["field"] or "<payload>" for err in errors)
        return cls(f"Invalid {entity} payload: {fields}", details=errors)


class UniquenessViolation(ZuriHealthError):
    kind = "uniqueness_violation"

    def __init__(self, message: str, constraint: Optional[str] = None, columns: Optional[List[str]] = None):
        super().__init__(message, details={"constraint": constraint, "columns": columns or []})
        self.constraint = constraint
        self.columns = columns or []


class ReferentialIntegrityError(ZuriHealthError):
    """Dangling reference or a delete that would orphan referencing rows."""
    kind = "referential_integrity_error"


ReferencedEntityExists = ReferentialIntegrityError


class InvalidStateTransition(ZuriHealthError):
    kind = "invalid_state_transition"

    def __init__(self, entity: str, current: str, target: str, reason: Optional[str] = None):
        message = f"{entity} cannot move from '{current}' to '{target}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, details={"from": current, "to": target})
        self.current = current
        self.target = target


class NotFoundError(ZuriHealthError):
    kind = "not_found"

    def __init__(self, entity: str, identifier: Any):
        super().__init__(f"{entity} {identifier} not found")
        self.entity = entity
        self.identifier = identifier


class MigrationConflictError(ZuriHealthError):
    """Drift between the schema registry, the live schema and the migration ledger."""
    kind = "migration_conflict"


class MigrationError(ZuriHealthError):
    kind = "migration_error"

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message, details={"key": key} if key else None)
        self.key = key


class MigrationDependencyError(MigrationError):
    """A step needs data that an earlier step should have inserted."""
    kind = "migration_dependency_error"
