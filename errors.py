"""
Error Kinds
===========
Every failure the sale engine reports is one of these classes, so callers
can tell them apart by type instead of by message text.
"""

from typing import Any, Dict, List, Optional


class SaleError(Exception):
    """Base class for all engine errors."""

    kind = "sale_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.message, **self.details}


class DuplicateCode(SaleError):
    """Line code already used in the same session."""

    kind = "duplicate_code"

    def __init__(self, code: str, session_id: str):
        super().__init__(
            f"Code {code!r} already exists in this session",
            code=code,
            session_id=session_id
        )
        self.code = code
        self.session_id = session_id


class InvalidAmount(SaleError):
    """Non-numeric, non-finite or negative price, or a bad quantity."""

    kind = "invalid_amount"

    def __init__(self, field: str, value: Any):
        super().__init__(
            f"Invalid {field}: {value!r}",
            field=field,
            value=str(value)
        )
        self.field = field
        self.value = value


class NotFound(SaleError):
    """Referenced entity is missing."""

    kind = "not_found"

    def __init__(self, entity: str, key: Any):
        super().__init__(f"{entity} not found: {key}", entity=entity, key=str(key))
        self.entity = entity
        self.key = key


class Conflict(SaleError):
    """Uniqueness or primary-contact invariant would be violated."""

    kind = "conflict"


class ValidationError(SaleError):
    """
    One or more checkout fields are missing or invalid.

    Carries the full list of offending field ids, never just the first.
    """

    kind = "validation_error"

    def __init__(self, missing_fields: List[str], message: Optional[str] = None):
        super().__init__(
            message or f"Invalid or missing fields: {', '.join(missing_fields)}",
            missing_fields=list(missing_fields)
        )
        self.missing_fields = list(missing_fields)


class PreconditionFailed(SaleError):
    """Illegal lifecycle transition or edit of a locked order."""

    kind = "precondition_failed"

    def __init__(
        self,
        rule: str,
        message: Optional[str] = None,
        missing_fields: Optional[List[str]] = None
    ):
        details: Dict[str, Any] = {"rule": rule}
        if missing_fields:
            details["missing_fields"] = list(missing_fields)
        super().__init__(message or f"Precondition failed: {rule}", **details)
        self.rule = rule
        self.missing_fields = list(missing_fields or [])


class DecisionRequired(Conflict):
    """Captured line matches an existing one and no merge decision was given."""

    kind = "decision_required"


class CaptureAborted(SaleError):
    """Operator dismissed the merge-or-duplicate prompt. Nothing was written."""

    kind = "capture_aborted"


class StoreError(SaleError):
    """Backing store failed or is unavailable."""

    kind = "store_error"


class UniqueViolation(StoreError):
    """Store rejected a write on a uniqueness constraint."""

    kind = "unique_violation"

    def __init__(self, table: str, constraint: str):
        super().__init__(
            f"Unique constraint {constraint} violated on {table}",
            table=table,
            constraint=constraint
        )
        self.table = table
        self.constraint = constraint
