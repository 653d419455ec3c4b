"""
Typed errors raised by the scheduling and leave services.

Each error carries the HTTP status and machine-readable code the API layer
renders, so routers never translate errors by hand.
"""

from typing import Optional


class PlannerError(Exception):
    """Base class for every recoverable engine error"""

    status_code = 400
    code = "planner_error"

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        payload = {"detail": self.message, "error": self.code}
        payload.update(self.extra)
        return payload


class CapacityError(PlannerError):
    """Slot is full and no override was granted"""

    status_code = 409
    code = "capacity_exceeded"


class BalanceError(PlannerError):
    """Approving leave would exceed the employee's allocation"""

    status_code = 409
    code = "balance_exceeded"


class ConflictError(PlannerError):
    """A concurrent writer took the same slot rank, even after one retry"""

    status_code = 409
    code = "rank_conflict"


class NotFoundError(PlannerError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: Optional[int] = None):
        message = f"{entity} not found" if entity_id is None else f"{entity} {entity_id} not found"
        super().__init__(message, entity=entity, id=entity_id)


class ValidationError(PlannerError):
    status_code = 422
    code = "validation_error"


class InvalidTransitionError(ValidationError):
    """Leave records only move Pending -> Approved or Pending -> Rejected"""

    code = "invalid_transition"


class PermissionDeniedError(PlannerError):
    status_code = 403
    code = "forbidden"


class InvariantViolation(PlannerError):
    """Stored state broke a slot invariant; indicates a bug, never user-correctable"""

    status_code = 500
    code = "invariant_violation"
