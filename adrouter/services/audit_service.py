"""Audit service - append-only record of dispatch actions."""
import json
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select, delete, func, and_, or_

from adrouter.core.errors import ValidationError
from adrouter.utils.datetime_utils import isoformat, utcnow, today_bounds_utc
from database.db import db
from database.models import DispatchAuditLog

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    APPROVE_LISTING = "approve_listing"
    APPROVE_AND_DISTRIBUTE = "approve_and_distribute"
    CREATE_DISPATCH_ITEMS = "create_dispatch_items"
    CREATE_UNASSIGNED_ITEM = "create_unassigned_item"
    ASSIGN_ITEM = "assign_item"
    AUTO_ASSIGN = "auto_assign"
    MARK_IN_PROGRESS = "mark_in_progress"
    CANCEL_IN_PROGRESS = "cancel_in_progress"
    MARK_SENT = "mark_sent"
    MARK_DEFERRED = "mark_deferred"
    MARK_FAILED = "mark_failed"
    OVERRIDE_RESEND = "override_resend"
    CREATE_DIGEST = "create_digest"
    MARK_DIGEST_SENT = "mark_digest_sent"
    CREATE_TARGET = "create_target"
    UPDATE_TARGET = "update_target"
    CHANGE_TARGET_STATUS = "change_target_status"
    SUGGEST_TARGET = "suggest_target"
    APPROVE_SUGGESTION = "approve_suggestion"
    REJECT_SUGGESTION = "reject_suggestion"
    GRANT_ROLE = "grant_role"
    REVOKE_ROLE = "revoke_role"
    PURGE_AUDIT = "purge_audit"


class EntityType(str, Enum):
    LISTING = "listing"
    DISPATCH_ITEM = "dispatch_item"
    TARGET = "target"
    DIGEST = "digest"
    SUGGESTION = "suggestion"
    OPERATOR = "operator"


def _value(v) -> str:
    return v.value if isinstance(v, Enum) else str(v)


def decode_payload(entry: DispatchAuditLog) -> Dict[str, Any]:
    if not entry.payload:
        return {}
    try:
        data = json.loads(entry.payload)
    except (TypeError, ValueError):
        return {"raw": entry.payload}
    return data if isinstance(data, dict) else {"value": data}


def entry_to_dict(entry: DispatchAuditLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "action": entry.action,
        "actor_id": entry.actor_id,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "listing_id": entry.listing_id,
        "target_id": entry.target_id,
        "payload": decode_payload(entry),
        "created_at": isoformat(entry.created_at),
    }


class AuditService:
    """
    Append-only audit trail.

    Writes run in their own session so an audit outage never rolls back the
    caller's mutation; failures are logged and counted instead of raised.
    Nothing in the dispatch flow reads this table to make a decision.
    """

    def __init__(self, metrics_service=None, *, tz_name: str = ""):
        self.metrics = metrics_service
        self.tz_name = tz_name

    async def log(
        self,
        action,
        actor_id: str,
        entity_type,
        entity_id,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Append one audit entry (best-effort).

        Returns:
            True if the entry was written, False if the write failed
        """
        action = _value(action)
        entity_type = _value(entity_type)
        entity_id = str(entity_id)
        payload = dict(payload or {})

        listing_id = payload.get("listing_id")
        target_id = payload.get("target_id")
        if entity_type == EntityType.LISTING.value:
            listing_id = entity_id
        elif entity_type == EntityType.TARGET.value:
            target_id = entity_id

        try:
            async with db.session() as session:
                session.add(
                    DispatchAuditLog(
                        action=action,
                        actor_id=str(actor_id),
                        entity_type=entity_type,
                        entity_id=entity_id,
                        listing_id=str(listing_id) if listing_id is not None else None,
                        target_id=str(target_id) if target_id is not None else None,
                        payload=json.dumps(payload, ensure_ascii=False, default=str),
                    )
                )
            logger.info(f"Audit: {action} by {actor_id} on {entity_type}/{entity_id}")
            return True
        except Exception as e:
            logger.error(f"Failed to write audit entry {action} on {entity_type}/{entity_id}: {e}", exc_info=True)
            if self.metrics is not None:
                await self.metrics.incr_audit_failure()
            return False

    async def get_listing_history(self, listing_id: str, limit: int = 50) -> List[DispatchAuditLog]:
        """
        Entries for a listing: direct listing entries plus any entry
        (dispatch items, digests, ...) that references the listing.
        """
        async with db.session() as session:
            result = await session.execute(
                select(DispatchAuditLog)
                .where(
                    or_(
                        and_(
                            DispatchAuditLog.entity_type == EntityType.LISTING.value,
                            DispatchAuditLog.entity_id == str(listing_id),
                        ),
                        DispatchAuditLog.listing_id == str(listing_id),
                    )
                )
                .order_by(DispatchAuditLog.created_at.desc(), DispatchAuditLog.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_target_history(self, target_id, limit: int = 50) -> List[DispatchAuditLog]:
        async with db.session() as session:
            result = await session.execute(
                select(DispatchAuditLog)
                .where(DispatchAuditLog.target_id == str(target_id))
                .order_by(DispatchAuditLog.created_at.desc(), DispatchAuditLog.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_entity_history(self, entity_type, entity_id, limit: int = 50) -> List[DispatchAuditLog]:
        async with db.session() as session:
            result = await session.execute(
                select(DispatchAuditLog)
                .where(
                    DispatchAuditLog.entity_type == _value(entity_type),
                    DispatchAuditLog.entity_id == str(entity_id),
                )
                .order_by(DispatchAuditLog.created_at.desc(), DispatchAuditLog.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_actor_actions(self, actor_id: str, limit: int = 100) -> List[DispatchAuditLog]:
        async with db.session() as session:
            result = await session.execute(
                select(DispatchAuditLog)
                .where(DispatchAuditLog.actor_id == str(actor_id))
                .order_by(DispatchAuditLog.created_at.desc(), DispatchAuditLog.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_action_stats(
        self,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Count entries per action in [from_date, to_date), most frequent first."""
        conditions = []
        if from_date is not None:
            conditions.append(DispatchAuditLog.created_at >= from_date)
        if to_date is not None:
            conditions.append(DispatchAuditLog.created_at < to_date)

        count = func.count(DispatchAuditLog.id)
        async with db.session() as session:
            result = await session.execute(
                select(DispatchAuditLog.action, count)
                .where(*conditions)
                .group_by(DispatchAuditLog.action)
                .order_by(count.desc(), DispatchAuditLog.action)
            )
            return [{"action": action, "count": int(n)} for action, n in result.all()]

    async def get_override_events(self, limit: int = 50) -> List[DispatchAuditLog]:
        async with db.session() as session:
            result = await session.execute(
                select(DispatchAuditLog)
                .where(DispatchAuditLog.action == AuditAction.OVERRIDE_RESEND.value)
                .order_by(DispatchAuditLog.created_at.desc(), DispatchAuditLog.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def count_today(self, action=None) -> int:
        """Entries written since local midnight, optionally for one action."""
        start, end = today_bounds_utc(self.tz_name)
        conditions = [DispatchAuditLog.created_at >= start, DispatchAuditLog.created_at < end]
        if action is not None:
            conditions.append(DispatchAuditLog.action == _value(action))
        async with db.session() as session:
            result = await session.execute(
                select(func.count(DispatchAuditLog.id)).where(*conditions)
            )
            return int(result.scalar() or 0)

    async def purge_older_than(self, days: int) -> int:
        """
        Retention sweep.

        Returns:
            Number of deleted entries
        """
        if days < 1:
            raise ValidationError("days must be at least 1")
        cutoff = utcnow() - timedelta(days=days)
        async with db.session() as session:
            result = await session.execute(
                delete(DispatchAuditLog).where(DispatchAuditLog.created_at < cutoff)
            )
            deleted = int(result.rowcount or 0)
        logger.info(f"Purged {deleted} audit entries older than {days} days")
        return deleted
