"""
Domain error taxonomy for the scheduling engine.

Every error carries a list of FieldError entries so callers can attribute a
failure to a request field (and, for list fields, to an index).
"""

from dataclasses import dataclass, asdict
from typing import Optional


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str
    index: Optional[int] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.index is None:
            data.pop("index")
        return data


class DomainError(Exception):
    """Base class for all engine errors recovered at the operation boundary."""

    status_code = 400
    code = "domain_error"

    def __init__(
        self,
        message: str,
        errors: Optional[list[FieldError]] = None,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.errors = list(errors or [])
        if field and not self.errors:
            self.errors.append(FieldError(field=field, message=message))

    def to_dict(self) -> dict:
        return {
            "detail": self.message,
            "code": self.code,
            "errors": [e.to_dict() for e in self.errors],
        }


class ValidationError(DomainError):
    """Malformed or out-of-range input, caught before touching domain state."""

    status_code = 422
    code = "validation_error"


class InvalidRange(ValidationError):
    code = "invalid_range"


class InvalidCapacity(ValidationError):
    code = "invalid_capacity"


class InvalidSelection(ValidationError):
    code = "invalid_selection"


class AdvanceWindowViolation(DomainError):
    status_code = 422
    code = "advance_window_violation"


class NotFoundError(DomainError):
    status_code = 404
    code = "not_found"


class CapacityExhausted(DomainError):
    """No room left in a capacity cell. Safe to retry with another slot."""

    status_code = 409
    code = "capacity_exhausted"


class InvalidTransition(DomainError):
    status_code = 409
    code = "invalid_transition"


def raise_if_errors(errors: list[FieldError], exc_class=ValidationError, message: str | None = None) -> None:
    """Raise exc_class carrying all collected errors, if there are any."""
    if errors:
        raise exc_class(message or errors[0].message, errors=errors)
