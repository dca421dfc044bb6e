"""Typed error taxonomy for deal commands.

Every command of the deal core fails with one of these. They are raised
inside the unit of work, so the surrounding transaction rolls back and no
partial state is committed. The API layer renders them through a single
exception handler using ``code`` and ``status_code``.
"""

from __future__ import annotations

from typing import Any


class DealError(Exception):
    """Base class for all deal-core failures."""

    code: str = "deal_error"
    status_code: int = 400

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message, **self.context}


class InvalidStateTransition(DealError):
    """Requested action is not legal from the deal's current status."""

    code = "invalid_state_transition"
    status_code = 409


class VersionConflict(DealError):
    """A concurrent writer produced a newer terms version first."""

    code = "version_conflict"
    status_code = 409


class StaleStateConflict(DealError):
    """The deal row changed between read and write."""

    code = "stale_state_conflict"
    status_code = 409


class DealValidationError(DealError):
    """Required input is missing or malformed."""

    code = "validation_error"
    status_code = 422


# Public name used throughout the contract.
ValidationError = DealValidationError


class IllegalOperation(DealError):
    """Operation targets a resource in an incompatible state."""

    code = "illegal_operation"
    status_code = 409


class NotAuthorized(DealError):
    """Actor is not a party to the deal, or it is not their turn."""

    code = "not_authorized"
    status_code = 403


class DealNotFound(DealError):
    """Deal (or a resource inside it) does not exist."""

    code = "not_found"
    status_code = 404


class AuditWriteError(DealError):
    """Audit entry could not be written; the enclosing operation is aborted."""

    code = "audit_write_failed"
    status_code = 500
