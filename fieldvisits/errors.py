"""
Error taxonomy for the persistence layer.

Every rejected write surfaces as one of these, so callers can tell a duplicate
from a dangling reference from a broken business rule:

- UniquenessViolation   : duplicate email / place id / tag name
- ReferentialViolation  : reference to a missing or foreign-owned row
- EnumerationViolation  : value outside a closed set
- InvariantViolation    : application rule checked before commit

`translate_integrity_error()` maps raw engine errors onto the same classes.
"""
from __future__ import annotations

from sqlalchemy.exc import IntegrityError

# SQLSTATE codes (PostgreSQL)
UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"
CHECK_VIOLATION = "23514"


class IntegrityRuleError(ValueError):
    """Base class: a write was rejected by an integrity rule."""


class UniquenessViolation(IntegrityRuleError):
    pass


class ReferentialViolation(IntegrityRuleError):
    pass


class NotFound(ReferentialViolation):
    def __init__(self, entity: str, key: object):
        super().__init__(f"{entity} not found: {key}")
        self.entity = entity
        self.key = key


class EnumerationViolation(IntegrityRuleError):
    def __init__(self, enum_name: str, value: object):
        super().__init__(f"Invalid {enum_name} value: {value!r}")
        self.enum_name = enum_name
        self.value = value


class InvariantViolation(IntegrityRuleError):
    pass


def _sqlstate(e: IntegrityError) -> str | None:
    orig = e.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code is None:
        diag = getattr(orig, "diag", None)
        code = getattr(diag, "sqlstate", None)
    return code


def translate_integrity_error(e: IntegrityError) -> IntegrityRuleError:
    """Map an engine IntegrityError to the matching taxonomy class."""
    code = _sqlstate(e)
    message = str(e.orig)
    lowered = message.lower()

    if code == UNIQUE_VIOLATION or "unique constraint" in lowered:
        return UniquenessViolation(message)
    if code == FOREIGN_KEY_VIOLATION or "foreign key constraint" in lowered:
        return ReferentialViolation(message)
    if code == CHECK_VIOLATION or "check constraint" in lowered:
        return EnumerationViolation("column", message)
    return InvariantViolation(message)
