"""Authorization collaborator contract consumed by workflow steps."""

from __future__ import annotations

import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Protocol, Union

from ..errors import PermanentError
from .context import ActorContext

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    """Outcome returned by an authorization engine."""

    ALLOW = "allow"
    DENY = "deny"
    NOT_FOUND = "not_found"


class Authorizer(Protocol):
    """External policy engine deciding whether ``actor`` may act on ``resource``.

    Implementations own every policy detail, including reporting cross-tenant
    denials as ``NOT_FOUND``. sagaflow only interprets the decision.
    """

    def authorize(
        self, actor: ActorContext, resource: Any, action: str
    ) -> Union[Decision, Awaitable[Decision]]:
        """Return the decision for ``action`` on ``resource``."""


async def authorize_step(
    authorizer: Authorizer, context: Any, resource: Any, action: str
) -> None:
    """Ask ``authorizer`` about ``action`` and raise on anything but ``ALLOW``.

    ``context`` is either a :class:`~sagaflow.run.RunContext` or an
    :class:`ActorContext`. Denials and not-found answers are raised as
    :class:`PermanentError` so they are never retried.
    """
    actor = context if isinstance(context, ActorContext) else context.actor
    decision = authorizer.authorize(actor, resource, action)
    if inspect.isawaitable(decision):
        decision = await decision
    decision = Decision(decision)

    if decision is Decision.ALLOW:
        return

    logger.warning(
        f"Authorization {decision.value} for actor={actor.id} tenant={actor.tenant_id} "
        f"role={actor.role.value} action={action}"
    )
    if decision is Decision.NOT_FOUND:
        raise PermanentError("not_found", details={"action": action})
    raise PermanentError("forbidden", details={"action": action})
