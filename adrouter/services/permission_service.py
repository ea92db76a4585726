"""Permission service - operator roles and capability checks."""
import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, delete

from adrouter.core.errors import PrivilegeDeniedError, ValidationError
from adrouter.services.audit_service import AuditAction, EntityType
from adrouter.utils.datetime_utils import isoformat, utcnow
from database.db import db
from database.models import Operator

logger = logging.getLogger(__name__)


# capability -> Operator column
CAPABILITIES = {
    "operate": "can_operate",
    "override": "can_override",
    "manage_targets": "can_manage_targets",
    "change_quota": "can_change_quota",
    "review_suggestions": "can_review_suggestions",
    "view_audit": "can_view_audit",
    "manage_operators": "can_manage_operators",
}

ROLE_PRESETS = {
    "SUPER_ADMIN": dict(
        can_operate=True,
        can_override=True,
        can_manage_targets=True,
        can_change_quota=True,
        can_review_suggestions=True,
        can_view_audit=True,
        can_manage_operators=True,
    ),
    "ADMIN": dict(
        can_operate=True,
        can_override=False,
        can_manage_targets=False,
        can_change_quota=False,
        can_review_suggestions=False,
        can_view_audit=True,
        can_manage_operators=False,
    ),
    "MODERATOR": dict(
        can_operate=True,
        can_override=False,
        can_manage_targets=False,
        can_change_quota=False,
        can_review_suggestions=False,
        can_view_audit=False,
        can_manage_operators=False,
    ),
}


def operator_to_dict(operator: Operator) -> dict:
    return {
        "actor_id": operator.actor_id,
        "role": operator.role,
        "capabilities": sorted(cap for cap, column in CAPABILITIES.items() if getattr(operator, column)),
        "granted_by": operator.granted_by,
        "granted_at": isoformat(operator.granted_at),
    }


class PermissionService:
    """
    Capability checks for sensitive dispatch actions.

    Call sites ask for a capability, never a role, so new tiers only need a
    new preset. Actors listed in SUPER_ADMIN_IDS hold every capability
    without an operators row.
    """

    _FLAG_FIELDS = tuple(CAPABILITIES.values())

    def __init__(self, super_admin_ids: Iterable[str] = (), audit_service=None):
        self.super_admin_ids = frozenset(str(a) for a in super_admin_ids)
        self.audit = audit_service

    def is_super_admin(self, actor_id) -> bool:
        return str(actor_id) in self.super_admin_ids

    async def get_operator(self, actor_id) -> Optional[Operator]:
        async with db.session() as session:
            return await session.get(Operator, str(actor_id))

    async def capabilities_for(self, actor_id) -> Dict[str, bool]:
        if self.is_super_admin(actor_id):
            return {cap: True for cap in CAPABILITIES}
        operator = await self.get_operator(actor_id)
        return {cap: bool(operator is not None and getattr(operator, column)) for cap, column in CAPABILITIES.items()}

    async def has_capability(self, actor_id, capability: str) -> bool:
        column = CAPABILITIES.get(capability)
        if column is None:
            raise ValidationError(f"unknown capability '{capability}'")
        if self.is_super_admin(actor_id):
            return True
        operator = await self.get_operator(actor_id)
        return bool(operator is not None and getattr(operator, column))

    async def require(self, actor_id, capability: str) -> None:
        """
        Raises:
            PrivilegeDeniedError: If the actor lacks `capability`
        """
        if not await self.has_capability(actor_id, capability):
            logger.warning(f"Denied: actor {actor_id} lacks '{capability}'")
            raise PrivilegeDeniedError(str(actor_id), capability)

    async def grant_role(self, actor_id, role: str, granted_by) -> Operator:
        """Assign a role; unknown role names get least privilege."""
        role = (role or "").strip().upper()
        if not role:
            raise ValidationError("role is required")
        flags = ROLE_PRESETS.get(role)

        async with db.session() as session:
            operator = await session.get(Operator, str(actor_id))
            if operator is None:
                operator = Operator(actor_id=str(actor_id))
                session.add(operator)
            operator.role = role
            for column in self._FLAG_FIELDS:
                setattr(operator, column, False)
            for column, value in (flags or {}).items():
                setattr(operator, column, value)
            operator.granted_by = str(granted_by)
            operator.granted_at = utcnow()

        logger.info(f"Assigned role {role} to actor {actor_id}")
        if self.audit is not None:
            await self.audit.log(AuditAction.GRANT_ROLE, granted_by, EntityType.OPERATOR, actor_id, {"role": role})
        return operator

    async def set_capability(self, actor_id, capability: str, enabled: bool, granted_by) -> Operator:
        column = CAPABILITIES.get(capability)
        if column is None:
            raise ValidationError(f"unknown capability '{capability}'")

        async with db.session() as session:
            operator = await session.get(Operator, str(actor_id))
            if operator is None:
                operator = Operator(actor_id=str(actor_id), role="CUSTOM")
                for f in self._FLAG_FIELDS:
                    setattr(operator, f, False)
                session.add(operator)
            setattr(operator, column, bool(enabled))
            operator.granted_by = str(granted_by)
            operator.granted_at = utcnow()

        if self.audit is not None:
            await self.audit.log(
                AuditAction.GRANT_ROLE,
                granted_by,
                EntityType.OPERATOR,
                actor_id,
                {"capability": capability, "enabled": bool(enabled)},
            )
        return operator

    async def revoke(self, actor_id, revoked_by) -> bool:
        async with db.session() as session:
            result = await session.execute(delete(Operator).where(Operator.actor_id == str(actor_id)))
            removed = result.rowcount > 0
        if removed:
            logger.info(f"Revoked operator {actor_id}")
            if self.audit is not None:
                await self.audit.log(AuditAction.REVOKE_ROLE, revoked_by, EntityType.OPERATOR, actor_id)
        return removed

    async def list_operators(self) -> List[Operator]:
        async with db.session() as session:
            result = await session.execute(select(Operator).order_by(Operator.role, Operator.actor_id))
            return list(result.scalars().all())
