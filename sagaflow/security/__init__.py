"""Actor context and authorization helpers."""

from .context import (
    SYSTEM_ACTOR,
    SYSTEM_OPERATIONS,
    ActorContext,
    Role,
    require_system_operation,
)
from .policy import Authorizer, Decision, authorize_step

__all__ = [
    "ActorContext",
    "Role",
    "SYSTEM_ACTOR",
    "SYSTEM_OPERATIONS",
    "require_system_operation",
    "Authorizer",
    "Decision",
    "authorize_step",
]
