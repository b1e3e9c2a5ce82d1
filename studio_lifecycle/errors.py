"""
Typed lifecycle failures and the Outcome wrapper returned by the engine.
Errors are raised inside a store unit so the unit rolls back; the engine catches
them at its boundary and hands them back as Outcome(error=...).
"""
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class LifecycleError(Exception):
    kind = "LifecycleError"

    def __init__(self, message: str = "", **context: Any):
        self.message = message or self.kind
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, **self.context}


class NotFound(LifecycleError):
    """Referenced entity id does not exist."""
    kind = "NotFound"


class InvalidTransition(LifecycleError):
    """Status change is not an edge of the registry's table."""
    kind = "InvalidTransition"


class DuplicateRelation(LifecycleError):
    """Second Appointment for a TattooRequest, or second Invoice for an Appointment."""
    kind = "DuplicateRelation"


class DuplicateKey(LifecycleError):
    """Unique column (email, invoice number, Square payment id) already taken."""
    kind = "DuplicateKey"


class InsufficientPayment(LifecycleError):
    kind = "InsufficientPayment"


class InvariantViolation(LifecycleError):
    """A rule that depends on a related entity's state does not hold."""
    kind = "InvariantViolation"


class ConcurrentModification(LifecycleError):
    """Status changed between read and write. Caller may retry."""
    kind = "ConcurrentModification"


class StoreError(LifecycleError):
    kind = "StoreError"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    value: T | None = None
    error: LifecycleError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_kind(self) -> str | None:
        return self.error.kind if self.error is not None else None

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value
