"""Dispatch error taxonomy.

Services raise these; the HTTP layer maps each kind to a status code.
"""
from typing import Optional


class DispatchError(Exception):
    """Base class for all dispatch-domain errors."""

    kind = "dispatch_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(DispatchError):
    """A listing, target, record, digest or suggestion does not exist."""

    kind = "not_found"

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class InvalidStateError(DispatchError):
    """The entity is not in a state that allows the requested action."""

    kind = "invalid_state"

    def __init__(self, message: str, *, required: Optional[str] = None):
        super().__init__(message)
        self.required = required


class PrivilegeDeniedError(DispatchError):
    """The actor lacks the capability for a sensitive action."""

    kind = "privilege_denied"

    def __init__(self, actor_id: str, capability: str):
        super().__init__(f"actor {actor_id} lacks capability '{capability}'")
        self.actor_id = actor_id
        self.capability = capability


class ValidationError(DispatchError):
    """Malformed input that no state change could fix."""

    kind = "validation_error"
