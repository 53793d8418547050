# errors.py
from dataclasses import dataclass
from typing import Any, Optional


class PaymentsError(Exception):
    """Base class for every error the scheduling core raises."""

    kind = "error"


class ValidationError(PaymentsError):
    kind = "validation"


class NotFoundError(PaymentsError):
    kind = "not_found"

    def __init__(self, entity, entity_id):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class InvalidTransitionError(PaymentsError):
    kind = "invalid_transition"


class TransientFailure(PaymentsError):
    kind = "transient"


class PermanentFailure(PaymentsError):
    kind = "permanent"


class AuthRequired(PaymentsError):
    kind = "auth_required"


@dataclass
class Result:
    """Outcome of a public operation: either a value or a PaymentsError."""

    ok: bool
    value: Any = None
    error: Optional[PaymentsError] = None

    @classmethod
    def success(cls, value=None):
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error):
        return cls(ok=False, error=error)

    def unwrap(self):
        if not self.ok:
            raise self.error
        return self.value
