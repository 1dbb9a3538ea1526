"""Actor context carried through every workflow step and job."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping

from pydantic import BaseModel, ConfigDict, Field

from ..errors import ActorDeserializationError

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Roles an actor can hold within its tenant."""

    ADMIN = "admin"
    EDITOR = "editor"
    VIEWER = "viewer"
    SYSTEM = "system"


class ActorContext(BaseModel):
    """Identity, tenant boundary and role of whoever triggered the work.

    The context is built once at the boundary (a request handler, or a worker
    rebuilding it from job arguments) and passed unchanged to every step,
    compensation and nested workflow. Instances are frozen; build a new one
    instead of patching an existing one.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Actor identity")
    tenant_id: str = Field(..., min_length=1, description="Tenant boundary")
    role: Role

    @property
    def is_system(self) -> bool:
        return self.role is Role.SYSTEM

    def to_job_args(self) -> Dict[str, str]:
        """Serialize into the string-keyed form stored in job arguments."""
        return {"id": self.id, "tenant_id": self.tenant_id, "role": self.role.value}

    @classmethod
    def from_job_args(cls, data: Any) -> "ActorContext":
        """Rebuild an actor from its job-argument form.

        Raises:
            ActorDeserializationError: If the payload is not a mapping, a field
                is missing, or the role is not one of the known roles.
        """
        if not isinstance(data, Mapping):
            raise ActorDeserializationError(
                f"Actor payload must be a mapping, got {type(data).__name__}"
            )

        actor_id = data.get("id")
        # Older payloads carry the tenant under ``organization_id``.
        tenant_id = data.get("tenant_id", data.get("organization_id"))
        raw_role = data.get("role")

        if not actor_id or not tenant_id:
            raise ActorDeserializationError("Actor payload requires 'id' and 'tenant_id'")
        if not isinstance(raw_role, str):
            raise ActorDeserializationError(f"Actor role must be a string, got {raw_role!r}")
        try:
            role = Role(raw_role)
        except ValueError:
            raise ActorDeserializationError(f"Unknown actor role: {raw_role!r}") from None

        return cls(id=str(actor_id), tenant_id=str(tenant_id), role=role)


SYSTEM_ACTOR = ActorContext(id="system", tenant_id="system", role=Role.SYSTEM)

# Bootstrap operations that may run as ``SYSTEM_ACTOR``. Ordinary business
# steps must always run as the actor that triggered them.
SYSTEM_OPERATIONS: FrozenSet[str] = frozenset(
    {
        "load_principal",
        "resolve_tenant",
        "refresh_session",
    }
)


def require_system_operation(actor: ActorContext, operation: str) -> ActorContext:
    """Return ``actor`` after checking system-actor usage for ``operation``.

    The check is advisory: misuse is logged, not blocked.
    """
    if actor.is_system and operation not in SYSTEM_OPERATIONS:
        logger.warning(
            f"System actor used for non-bootstrap operation '{operation}'"
        )
    return actor
