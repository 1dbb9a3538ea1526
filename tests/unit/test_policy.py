import pytest

from sagaflow.errors import PermanentError
from sagaflow.run import RunContext
from sagaflow.security import ActorContext, Decision, Role, authorize_step


class RoleAuthorizer:
    """Editors and admins may write; everyone may read; other tenants see nothing."""

    def authorize(self, actor, resource, action):
        if resource["tenant_id"] != actor.tenant_id:
            return Decision.NOT_FOUND
        if action == "read" or actor.role in (Role.ADMIN, Role.EDITOR):
            return Decision.ALLOW
        return Decision.DENY


class AsyncAuthorizer:
    async def authorize(self, actor, resource, action):
        return "allow"


@pytest.mark.asyncio
async def test_allow_returns_quietly(editor):
    await authorize_step(RoleAuthorizer(), RunContext(actor=editor), {"tenant_id": "acme"}, "write")


@pytest.mark.asyncio
async def test_deny_is_permanent_forbidden(viewer):
    with pytest.raises(PermanentError) as excinfo:
        await authorize_step(RoleAuthorizer(), RunContext(actor=viewer), {"tenant_id": "acme"}, "write")
    assert excinfo.value.reason == "forbidden"
    assert excinfo.value.details == {"action": "write"}


@pytest.mark.asyncio
async def test_other_tenant_is_not_found(editor):
    with pytest.raises(PermanentError) as excinfo:
        await authorize_step(RoleAuthorizer(), editor, {"tenant_id": "globex"}, "read")
    assert excinfo.value.reason == "not_found"


@pytest.mark.asyncio
async def test_async_authorizer_is_awaited():
    actor = ActorContext(id="u1", tenant_id="t1", role=Role.VIEWER)
    await authorize_step(AsyncAuthorizer(), actor, {"tenant_id": "t1"}, "write")
