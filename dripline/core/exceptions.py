"""
Domain exceptions for the drip engine.

Conflicts are expected outcomes that callers usually treat as a no-op;
transport errors carry whether a retry can help.
"""
from __future__ import annotations


class DriplineError(Exception):
    """Base exception for dripline."""

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class NotFoundError(DriplineError):
    """Resource not found"""

    def __init__(self, resource: str = "Resource", resource_id: object = None):
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} with id '{resource_id}' not found"
        super().__init__(message)


class ConflictError(DriplineError):
    """A uniqueness fence rejected the write."""


class AlreadyEnrolledError(ConflictError):
    def __init__(self, campaign_id: int, project_id: int):
        self.campaign_id = campaign_id
        self.project_id = project_id
        super().__init__(f"Project {project_id} is already enrolled in campaign {campaign_id}")


class InvalidTransitionError(DriplineError):
    """A lifecycle transition that the state machine does not allow."""

    def __init__(self, entity: str, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"{entity} cannot move from {current} to {target}")


class VersionRequiredError(DriplineError):
    """Content already referenced by a delivery must be edited through a new version."""

    def __init__(self, email_id: int, reason: str = "has deliveries"):
        super().__init__(f"Campaign email {email_id} {reason}; create a new campaign version instead")


class DataIntegrityViolation(DriplineError):
    """Stored data breaks an invariant (sequence gap, orphaned row)."""


class TransportError(DriplineError):
    """Base for failures raised by a transport collaborator."""

    permanent = False


class TransientTransportError(TransportError):
    """Network or throttling failure; the same send may succeed later."""


class PermanentTransportError(TransportError):
    """Invalid recipient or hard rejection; retrying will not help."""

    permanent = True
