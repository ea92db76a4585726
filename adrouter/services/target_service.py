"""Target service - dispatch targets and target suggestions."""
import logging
import re
import time
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, or_, case
from sqlalchemy.exc import IntegrityError

from adrouter.core.errors import InvalidStateError, NotFoundError, ValidationError
from adrouter.core.scopes import ScopeFilters, ScopeFilterError, dump_scope
from adrouter.core.transitions import (
    DispatchStatus,
    SuggestionStatus,
    TargetStatus,
    check_target_transition,
)
from adrouter.services.audit_service import AuditAction, EntityType
from adrouter.utils.datetime_utils import isoformat, utcnow
from database.db import db
from database.models import DispatchItem, DispatchTarget, TargetSuggestion

logger = logging.getLogger(__name__)

CHANNELS = ("group", "channel", "broadcast")
MAX_DAILY_QUOTA = 10000
SCOPE_FIELDS = ("city_scopes", "region_scopes", "category_scopes")
UPDATABLE_FIELDS = ("name", "channel", "daily_quota", "allow_digest", "invite_link") + SCOPE_FIELDS


def _scope_dict(row) -> dict:
    try:
        return ScopeFilters.for_target(row).to_dict()
    except ScopeFilterError:
        return {"cities": [], "regions": [], "categories": [], "malformed": True}


def target_to_dict(target: DispatchTarget, counts: Optional[dict] = None) -> dict:
    data = {
        "id": target.id,
        "name": target.name,
        "internal_code": target.internal_code,
        "status": target.status,
        "channel": target.channel,
        "scopes": _scope_dict(target),
        "daily_quota": target.daily_quota,
        "allow_digest": target.allow_digest,
        "invite_link": target.invite_link,
        "created_by": target.created_by,
        "created_at": isoformat(target.created_at),
        "updated_at": isoformat(target.updated_at),
    }
    if counts is not None:
        data["dispatch_counts"] = counts
    return data


def suggestion_to_dict(suggestion: TargetSuggestion) -> dict:
    return {
        "id": suggestion.id,
        "name": suggestion.name,
        "internal_code": suggestion.internal_code,
        "channel": suggestion.channel,
        "scopes": _scope_dict(suggestion),
        "daily_quota": suggestion.daily_quota,
        "allow_digest": suggestion.allow_digest,
        "invite_link": suggestion.invite_link,
        "status": suggestion.status,
        "suggested_by": suggestion.suggested_by,
        "suggested_at": isoformat(suggestion.suggested_at),
        "reviewed_by": suggestion.reviewed_by,
        "reviewed_at": isoformat(suggestion.reviewed_at),
        "review_notes": suggestion.review_notes,
        "approved_target_id": suggestion.approved_target_id,
    }


def generate_internal_code(name: str) -> str:
    base = re.sub(r"\s+", "-", (name or "").strip()).lower()
    return f"{base}-{int(time.time() * 1000)}"


class TargetService:
    """
    Target CRUD and the suggestion review flow.

    Targets are archived, never deleted, so dispatch history keeps its
    references. Creating or activating a target picks up unassigned records
    that now match it.
    """

    def __init__(
        self,
        *,
        permission_service,
        audit_service,
        distribution_service=None,
        default_daily_quota: int = 10,
    ):
        self.permissions = permission_service
        self.audit = audit_service
        self.distribution = distribution_service
        self.default_daily_quota = default_daily_quota

    def _clean(self, fields: Dict[str, Any], *, partial: bool) -> Dict[str, Any]:
        cleaned: Dict[str, Any] = {}
        for key, value in fields.items():
            if key not in UPDATABLE_FIELDS:
                raise ValidationError(f"unknown target field '{key}'")
            if partial and value is None and key not in ("invite_link",):
                continue
            if key == "name":
                value = (value or "").strip()
                if not value:
                    raise ValidationError("target name is required")
            elif key == "channel":
                value = (value or "group").strip().lower()
                if value not in CHANNELS:
                    raise ValidationError(f"channel must be one of {', '.join(CHANNELS)}")
            elif key == "daily_quota":
                if value is None:
                    value = self.default_daily_quota
                value = int(value)
                if value < 0 or value > MAX_DAILY_QUOTA:
                    raise ValidationError(f"daily_quota must be between 0 and {MAX_DAILY_QUOTA}")
            elif key == "allow_digest":
                value = True if value is None else bool(value)
            elif key == "invite_link":
                value = (value or "").strip() or None
            elif key in SCOPE_FIELDS:
                try:
                    value = dump_scope(value)
                except ScopeFilterError as e:
                    raise ValidationError(str(e)) from e
            cleaned[key] = value
        return cleaned

    # ------------------------------------------------------------------
    # Targets
    # ------------------------------------------------------------------

    async def create_target(self, actor_id, *, internal_code: Optional[str] = None, **fields) -> DispatchTarget:
        await self.permissions.require(actor_id, "manage_targets")
        fields.setdefault("daily_quota", None)
        data = self._clean(fields, partial=False)
        if "name" not in data:
            raise ValidationError("target name is required")
        code = (internal_code or "").strip() or generate_internal_code(data["name"])

        try:
            async with db.session() as session:
                target = DispatchTarget(
                    internal_code=code,
                    status=TargetStatus.ACTIVE.value,
                    created_by=str(actor_id),
                    **data,
                )
                session.add(target)
                await session.flush()
        except IntegrityError:
            raise ValidationError(f"internal code '{code}' is already in use") from None

        logger.info(f"Target {target.id} ({target.name}) created by {actor_id}")
        await self.audit.log(
            AuditAction.CREATE_TARGET,
            actor_id,
            EntityType.TARGET,
            target.id,
            {"name": target.name, "internal_code": code, "daily_quota": target.daily_quota},
        )
        await self._auto_assign(target.id, actor_id)
        return target

    async def update_target(self, target_id: int, actor_id, changes: Dict[str, Any]) -> DispatchTarget:
        """Quota changes additionally need the `change_quota` capability."""
        await self.permissions.require(actor_id, "manage_targets")
        data = self._clean(changes, partial=True)

        async with db.session() as session:
            target = await session.get(DispatchTarget, target_id)
            if target is None:
                raise NotFoundError("target", target_id)
            if "daily_quota" in data and data["daily_quota"] != target.daily_quota:
                await self.permissions.require(actor_id, "change_quota")

            before = {key: getattr(target, key) for key in data}
            for key, value in data.items():
                setattr(target, key, value)
            target.updated_at = utcnow()

        changed = {k: {"from": before[k], "to": v} for k, v in data.items() if before[k] != v}
        await self.audit.log(AuditAction.UPDATE_TARGET, actor_id, EntityType.TARGET, target_id, {"changes": changed})
        logger.info(f"Target {target_id} updated by {actor_id}: {sorted(changed)}")
        if set(changed) & set(SCOPE_FIELDS) and target.status == TargetStatus.ACTIVE.value:
            await self._auto_assign(target_id, actor_id)
        return target

    async def change_status(self, target_id: int, status: str, actor_id) -> DispatchTarget:
        await self.permissions.require(actor_id, "manage_targets")
        try:
            new_status = TargetStatus(str(status).upper())
        except ValueError:
            raise ValidationError(f"unknown target status '{status}'") from None

        async with db.session() as session:
            target = await session.get(DispatchTarget, target_id)
            if target is None:
                raise NotFoundError("target", target_id)
            previous = target.status
            check_target_transition(previous, new_status)
            target.status = new_status.value
            target.updated_at = utcnow()

        await self.audit.log(
            AuditAction.CHANGE_TARGET_STATUS,
            actor_id,
            EntityType.TARGET,
            target_id,
            {"from": previous, "to": new_status.value},
        )
        logger.info(f"Target {target_id} {previous} -> {new_status.value} by {actor_id}")
        if new_status == TargetStatus.ACTIVE:
            await self._auto_assign(target_id, actor_id)
        return target

    async def get_target(self, target_id: int) -> DispatchTarget:
        async with db.session() as session:
            target = await session.get(DispatchTarget, target_id)
            if target is None:
                raise NotFoundError("target", target_id)
            return target

    async def list_targets(self, *, status: Optional[str] = None, search: Optional[str] = None) -> List[dict]:
        """Targets with per-target dispatch counts, newest first."""
        conditions = []
        if status:
            try:
                conditions.append(DispatchTarget.status == TargetStatus(status.upper()).value)
            except ValueError:
                raise ValidationError(f"unknown target status '{status}'") from None
        if search:
            pattern = f"%{search.strip().lower()}%"
            conditions.append(
                or_(
                    func.lower(DispatchTarget.name).like(pattern),
                    func.lower(DispatchTarget.internal_code).like(pattern),
                )
            )

        async with db.session() as session:
            result = await session.execute(
                select(DispatchTarget).where(*conditions).order_by(DispatchTarget.created_at.desc(), DispatchTarget.id.desc())
            )
            targets = list(result.scalars().all())
            ids = [t.id for t in targets]
            counts: Dict[int, dict] = {}
            if ids:
                rows = await session.execute(
                    select(
                        DispatchItem.target_id,
                        func.count(DispatchItem.id),
                        func.sum(case((DispatchItem.status == DispatchStatus.SENT.value, 1), else_=0)),
                        func.sum(case((DispatchItem.status == DispatchStatus.PENDING.value, 1), else_=0)),
                    )
                    .where(DispatchItem.target_id.in_(ids))
                    .group_by(DispatchItem.target_id)
                )
                for tid, total, sent, pending in rows.all():
                    counts[tid] = {"total": int(total or 0), "sent": int(sent or 0), "pending": int(pending or 0)}

        empty = {"total": 0, "sent": 0, "pending": 0}
        return [target_to_dict(t, counts.get(t.id, dict(empty))) for t in targets]

    async def _auto_assign(self, target_id: int, actor_id) -> int:
        if self.distribution is None:
            return 0
        return await self.distribution.assign_unassigned_to(target_id, actor_id)

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    async def suggest(self, actor_id, *, internal_code: Optional[str] = None, **fields) -> TargetSuggestion:
        fields.setdefault("daily_quota", None)
        data = self._clean(fields, partial=False)
        if "name" not in data:
            raise ValidationError("target name is required")
        code = (internal_code or "").strip() or generate_internal_code(data["name"])

        async with db.session() as session:
            suggestion = TargetSuggestion(
                internal_code=code,
                status=SuggestionStatus.PENDING.value,
                suggested_by=str(actor_id),
                **data,
            )
            session.add(suggestion)
            await session.flush()

        await self.audit.log(
            AuditAction.SUGGEST_TARGET,
            actor_id,
            EntityType.SUGGESTION,
            suggestion.id,
            {"name": suggestion.name, "internal_code": code},
        )
        logger.info(f"Target suggestion {suggestion.id} ({suggestion.name}) from {actor_id}")
        return suggestion

    async def list_suggestions(self, status: Optional[str] = None) -> List[TargetSuggestion]:
        conditions = []
        if status:
            try:
                conditions.append(TargetSuggestion.status == SuggestionStatus(status.upper()).value)
            except ValueError:
                raise ValidationError(f"unknown suggestion status '{status}'") from None
        async with db.session() as session:
            result = await session.execute(
                select(TargetSuggestion)
                .where(*conditions)
                .order_by(TargetSuggestion.suggested_at.desc(), TargetSuggestion.id.desc())
            )
            return list(result.scalars().all())

    async def approve_suggestion(self, suggestion_id: int, actor_id, notes: Optional[str] = None) -> dict:
        """Copy a PENDING suggestion into a new ACTIVE target and link the two."""
        await self.permissions.require(actor_id, "review_suggestions")
        try:
            async with db.session() as session:
                suggestion = await self._pending_suggestion(session, suggestion_id)
                code = suggestion.internal_code
                target = DispatchTarget(
                    name=suggestion.name,
                    internal_code=code,
                    status=TargetStatus.ACTIVE.value,
                    channel=suggestion.channel,
                    city_scopes=suggestion.city_scopes,
                    region_scopes=suggestion.region_scopes,
                    category_scopes=suggestion.category_scopes,
                    daily_quota=suggestion.daily_quota,
                    allow_digest=suggestion.allow_digest,
                    invite_link=suggestion.invite_link,
                    created_by=str(actor_id),
                )
                session.add(target)
                await session.flush()

                suggestion.status = SuggestionStatus.APPROVED.value
                suggestion.reviewed_by = str(actor_id)
                suggestion.reviewed_at = utcnow()
                suggestion.review_notes = notes
                suggestion.approved_target_id = target.id
        except IntegrityError:
            raise InvalidStateError(
                f"a target with internal code '{code}' already exists"
            ) from None

        await self.audit.log(
            AuditAction.APPROVE_SUGGESTION,
            actor_id,
            EntityType.SUGGESTION,
            suggestion_id,
            {"target_id": target.id, "review_notes": notes},
        )
        logger.info(f"Suggestion {suggestion_id} approved by {actor_id} as target {target.id}")
        await self._auto_assign(target.id, actor_id)
        return {"suggestion": suggestion_to_dict(suggestion), "target": target_to_dict(target)}

    async def reject_suggestion(self, suggestion_id: int, actor_id, notes: Optional[str] = None) -> TargetSuggestion:
        await self.permissions.require(actor_id, "review_suggestions")
        async with db.session() as session:
            suggestion = await self._pending_suggestion(session, suggestion_id)
            suggestion.status = SuggestionStatus.REJECTED.value
            suggestion.reviewed_by = str(actor_id)
            suggestion.reviewed_at = utcnow()
            suggestion.review_notes = notes

        await self.audit.log(
            AuditAction.REJECT_SUGGESTION,
            actor_id,
            EntityType.SUGGESTION,
            suggestion_id,
            {"review_notes": notes},
        )
        logger.info(f"Suggestion {suggestion_id} rejected by {actor_id}")
        return suggestion

    @staticmethod
    async def _pending_suggestion(session, suggestion_id: int) -> TargetSuggestion:
        suggestion = await session.get(TargetSuggestion, suggestion_id)
        if suggestion is None:
            raise NotFoundError("suggestion", suggestion_id)
        if suggestion.status != SuggestionStatus.PENDING.value:
            raise InvalidStateError(
                f"suggestion {suggestion_id} is already {suggestion.status}",
                required=SuggestionStatus.PENDING.value,
            )
        return suggestion
