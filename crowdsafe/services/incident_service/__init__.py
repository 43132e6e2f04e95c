"""Incident Service: the human workflow for volunteer observations.

Provides:
- ObservationLifecycle: submit, instruct, acknowledge, resolve
- Expiration vocabulary shared with the sweeper
- HTTP API (``http_handler``) for volunteer and admin clients
"""

from .lifecycle import (
    ALREADY_RESOLVED,
    EXPIRABLE_STATUSES,
    EXPIRY_MESSAGE,
    SYSTEM_ACTOR,
    InvalidTransitionError,
    ObservationLifecycle,
    TransitionResult,
    expiry_changes,
)

__all__ = [
    "ALREADY_RESOLVED",
    "EXPIRABLE_STATUSES",
    "EXPIRY_MESSAGE",
    "SYSTEM_ACTOR",
    "InvalidTransitionError",
    "ObservationLifecycle",
    "TransitionResult",
    "expiry_changes",
]
