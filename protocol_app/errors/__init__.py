"""
Error classification for the protocol execution engine.

Domain errors are reported to callers verbatim; system failures indicate
that persistence or delivery infrastructure misbehaved.
"""

from .protocol_errors import (
    ProtocolError,
    ValidationError,
    NotFoundError,
    ConflictError,
    InvalidStateError,
    RunNotFoundError,
)
from .system_failures import (
    SystemFailureError,
    PersistenceError,
    DeliveryError,
)

__all__ = [
    # Domain errors
    "ProtocolError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "InvalidStateError",
    "RunNotFoundError",
    # System failures
    "SystemFailureError",
    "PersistenceError",
    "DeliveryError",
]
