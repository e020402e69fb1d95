"""
Domain error classifications for protocol definitions and runs.

These exceptions are the expected outcomes of caller mistakes or races
(unknown names, an already active run, a finished run). They are never
retried internally; the caller decides what to offer the user.
"""

from typing import Optional, Dict, Any


class ProtocolError(Exception):
    """Base class for expected protocol engine errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}
        self.recoverable = True


class ValidationError(ProtocolError):
    """Malformed protocol definition (empty steps, non-positive duration)."""

    def __init__(self, message: str, field: Optional[str] = None,
                 value: Any = None, **kwargs):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value
        self.recoverable = False


class NotFoundError(ProtocolError):
    """Unknown protocol name, unknown run, or no active run."""

    def __init__(self, message: str, resource: Optional[str] = None,
                 identifier: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.resource = resource
        self.identifier = identifier


class ConflictError(ProtocolError):
    """An owner already has a run in progress."""

    def __init__(self, message: str, owner_id: Optional[str] = None,
                 active_run_id: Optional[str] = None,
                 active_protocol_name: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.owner_id = owner_id
        self.active_run_id = active_run_id
        self.active_protocol_name = active_protocol_name


class InvalidStateError(ProtocolError):
    """Transition requested for a run that is not in progress."""

    def __init__(self, message: str, run_id: Optional[str] = None,
                 current_status: Optional[str] = None,
                 attempted_transition: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.run_id = run_id
        self.current_status = current_status
        self.attempted_transition = attempted_transition


class RunNotFoundError(NotFoundError, InvalidStateError):
    """Run id does not exist; catchable as either not-found or invalid state."""

    def __init__(self, run_id: str, context: Optional[Dict[str, Any]] = None):
        ProtocolError.__init__(self, f"Run not found: {run_id}", context=context)
        self.resource = "run"
        self.identifier = run_id
        self.run_id = run_id
        self.current_status = None
        self.attempted_transition = None
