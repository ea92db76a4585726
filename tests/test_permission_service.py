"""Capability checks and operator role management."""
import pytest

from adrouter.core.errors import PrivilegeDeniedError, ValidationError
from adrouter.services.audit_service import AuditAction, EntityType
from adrouter.services.permission_service import CAPABILITIES, operator_to_dict

ADMIN = "admin-1"


async def test_super_admin_has_every_capability(container):
    perms = container.permission_service
    assert await perms.capabilities_for(ADMIN) == {cap: True for cap in CAPABILITIES}
    await perms.require(ADMIN, "override")


async def test_unknown_actor_is_denied(container):
    with pytest.raises(PrivilegeDeniedError) as exc:
        await container.permission_service.require("stranger", "operate")
    assert exc.value.capability == "operate"
    assert exc.value.actor_id == "stranger"


async def test_unknown_capability_is_a_validation_error(container):
    with pytest.raises(ValidationError):
        await container.permission_service.has_capability(ADMIN, "launch_rockets")


async def test_role_presets(container):
    perms = container.permission_service
    await perms.grant_role("mod-1", "moderator", ADMIN)
    await perms.grant_role("adm-2", "ADMIN", ADMIN)

    assert await perms.has_capability("mod-1", "operate")
    assert not await perms.has_capability("mod-1", "override")
    assert not await perms.has_capability("mod-1", "view_audit")
    assert await perms.has_capability("adm-2", "view_audit")
    assert not await perms.has_capability("adm-2", "manage_targets")


async def test_regrant_replaces_previous_flags(container):
    perms = container.permission_service
    await perms.grant_role("op-1", "SUPER_ADMIN", ADMIN)
    assert await perms.has_capability("op-1", "override")

    operator = await perms.grant_role("op-1", "INTERN", ADMIN)

    assert operator.role == "INTERN"
    assert not any((await perms.capabilities_for("op-1")).values())


async def test_set_capability_creates_custom_operator(container):
    perms = container.permission_service
    operator = await perms.set_capability("op-3", "manage_targets", True, ADMIN)

    assert operator_to_dict(operator)["capabilities"] == ["manage_targets"]
    assert operator.role == "CUSTOM"
    assert not await perms.has_capability("op-3", "operate")


async def test_revoke(container):
    perms = container.permission_service
    await perms.grant_role("mod-1", "MODERATOR", ADMIN)

    assert await perms.revoke("mod-1", ADMIN)
    assert not await perms.revoke("mod-1", ADMIN)
    assert not await perms.has_capability("mod-1", "operate")
    assert [o.actor_id for o in await perms.list_operators()] == []


async def test_role_changes_are_audited(container):
    perms = container.permission_service
    await perms.grant_role("mod-1", "MODERATOR", ADMIN)
    await perms.revoke("mod-1", ADMIN)

    history = await container.audit_service.get_entity_history(EntityType.OPERATOR, "mod-1")

    assert [e.action for e in history] == [AuditAction.REVOKE_ROLE.value, AuditAction.GRANT_ROLE.value]
