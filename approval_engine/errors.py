"""
Typed Exception Hierarchy

Every failure a caller can act on has its own class and a machine-readable
``code``. Nothing is written to the store when one of these is raised.

    WorkflowError
    +-- ValidationError          (bad input, rejected before any read)
    |   +-- PolicyLimitError     (configured resubmit/appeal cap reached)
    +-- NotFoundError            (unknown template/instance/step/rule)
    +-- AuthorizationError       (wrong approver or not the requestor)
    +-- StateConflictError       (stale status/step or version conflict)
    +-- PersistenceError         (store unavailable or failed)
"""

from typing import Optional


class WorkflowError(Exception):
    """Base exception for all workflow engine errors."""

    code: str = "WORKFLOW_ERROR"


class ValidationError(WorkflowError, ValueError):
    """Input failed validation."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class PolicyLimitError(ValidationError):
    """A configured policy limit would be exceeded."""

    code: str = "POLICY_LIMIT_EXCEEDED"

    def __init__(self, limit_name: str, limit: int):
        self.limit_name = limit_name
        self.limit = limit
        super().__init__(f"{limit_name} limit of {limit} reached", field=limit_name)


class NotFoundError(WorkflowError, LookupError):
    """A referenced record does not exist (for this tenant)."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class AuthorizationError(WorkflowError):
    """Actor is not allowed to perform the transition."""

    code: str = "NOT_AUTHORIZED"

    def __init__(self, actor_id: str, message: str):
        self.actor_id = actor_id
        super().__init__(message)


class StateConflictError(WorkflowError):
    """
    The instance is not in the state the transition requires.

    Also raised when another caller committed a change between our read and
    our write. Callers should re-fetch and decide again.
    """

    code: str = "STATE_CONFLICT"

    def __init__(self, instance_id: str, message: str,
                 current_status: Optional[str] = None,
                 current_version: Optional[int] = None):
        self.instance_id = instance_id
        self.current_status = current_status
        self.current_version = current_version
        super().__init__(message)


class PersistenceError(WorkflowError):
    """The record store failed. The enclosing transaction was rolled back."""

    code: str = "PERSISTENCE_ERROR"
