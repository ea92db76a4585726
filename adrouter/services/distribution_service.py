"""Distribution service - creates dispatch records and drives their lifecycle."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError

from adrouter.core.errors import InvalidStateError, NotFoundError, ValidationError
from adrouter.core.scopes import ScopeFilters, ScopeFilterError
from adrouter.core.transitions import (
    DigestStatus,
    DispatchAction,
    DispatchStatus,
    TargetStatus,
    next_digest_status,
    next_status,
)
from adrouter.services.audit_service import AuditAction, EntityType
from adrouter.services.listing_service import ListingService
from adrouter.services.message_builder import ListingSnapshot, MessageBuilder, MessagePayload
from adrouter.services.routing_engine import RouteMatch, dedupe_key, evaluate_target
from adrouter.utils.datetime_utils import isoformat, to_naive_utc, utcnow
from database.db import db
from database.models import DispatchDigest, DispatchItem, DispatchTarget, Listing

logger = logging.getLogger(__name__)

SKIP_DUPLICATE = "duplicate"
SKIP_QUOTA = "quota_reached"

QUEUE_DEFAULT_LIMIT = 50
QUEUE_MAX_LIMIT = 200


@dataclass
class CreateResult:
    listing_id: str
    created: List[dict] = field(default_factory=list)
    skipped: List[dict] = field(default_factory=list)
    sentinel_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "listing_id": self.listing_id,
            "created": len(self.created),
            "skipped": len(self.skipped),
            "items": self.created,
            "skipped_targets": self.skipped,
            "unassigned_item_id": self.sentinel_id,
        }


@dataclass
class QueueFilters:
    target_id: Optional[int] = None
    channel: Optional[str] = None
    statuses: Sequence[str] = ()
    city_id: Optional[str] = None
    category_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    unassigned: bool = False
    limit: int = QUEUE_DEFAULT_LIMIT
    offset: int = 0


def listing_summary(listing: Optional[Listing]) -> Optional[dict]:
    if listing is None:
        return None
    return {
        "id": listing.id,
        "display_number": listing.display_number,
        "title": listing.title,
        "city_name": listing.city_name,
        "category_name": listing.category_name,
        "status": listing.status,
    }


def item_to_dict(item: DispatchItem, *, target_name: Optional[str] = None, listing: Optional[Listing] = None) -> dict:
    payload = MessagePayload.from_json(item.payload_snapshot)
    return {
        "id": item.id,
        "listing_id": item.listing_id,
        "target_id": item.target_id,
        "target_name": target_name,
        "channel": item.channel,
        "status": item.status,
        "priority": item.priority,
        "dedupe_key": item.dedupe_key,
        "attempt_count": item.attempt_count,
        "last_error": item.last_error,
        "sent_at": isoformat(item.sent_at),
        "sent_by": item.sent_by,
        "digest_id": item.digest_id,
        "created_at": isoformat(item.created_at),
        "updated_at": isoformat(item.updated_at),
        "message": payload.text if payload else "",
        "image_url": payload.image_url if payload else None,
        "canonical_url": payload.canonical_url if payload else None,
        "listing": listing_summary(listing),
    }


def digest_to_dict(digest: DispatchDigest) -> dict:
    payload = MessagePayload.from_json(digest.payload_snapshot)
    return {
        "id": digest.id,
        "target_id": digest.target_id,
        "title": digest.title,
        "item_count": digest.item_count,
        "status": digest.status,
        "created_by": digest.created_by,
        "created_at": isoformat(digest.created_at),
        "sent_at": isoformat(digest.sent_at),
        "sent_by": digest.sent_by,
        "message": payload.text if payload else "",
    }


class DistributionService:
    """
    Orchestrates dispatch records.

    Duplicate creation is prevented only by the unique dedupe key: concurrent
    creates for the same pair both try to insert and the loser is reported
    as skipped. The quota check is check-then-act, so a target near its
    quota can overshoot slightly under concurrent approvals.
    """

    def __init__(
        self,
        *,
        listing_service: ListingService,
        routing_engine,
        message_builder: MessageBuilder,
        audit_service,
        permission_service,
        metrics_service=None,
    ):
        self.listings = listing_service
        self.routing = routing_engine
        self.builder = message_builder
        self.audit = audit_service
        self.permissions = permission_service
        self.metrics = metrics_service

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_for_listing(self, listing_id: str, actor_id: str) -> CreateResult:
        """
        Create PENDING records for every eligible target of a listing.

        Safe to re-run: existing pairs are skipped. When nothing can be
        routed, one unassigned (target-less) record is created instead.
        """
        listing = await self.listings.get_snapshot(listing_id)
        matches = await self.routing.find_matches_for(listing)
        payload = self.builder.build_listing_message(listing)
        result = CreateResult(listing_id=listing.id)

        for match in matches:
            if await self.routing.check_duplicate(listing.id, match.target_id):
                logger.info(f"Skipping duplicate: listing {listing.id} -> target {match.target_id}")
                result.skipped.append({"target_id": match.target_id, "reason": SKIP_DUPLICATE})
                continue

            quota = await self.routing.check_daily_quota(match.target_id)
            if not quota.can_send:
                logger.info(f"Skipping (quota reached {quota.used}/{quota.total}): target {match.target_id}")
                result.skipped.append({"target_id": match.target_id, "reason": SKIP_QUOTA})
                continue

            item = await self._insert_item(listing, payload, match)
            if item is None:
                result.skipped.append({"target_id": match.target_id, "reason": SKIP_DUPLICATE})
                continue

            result.created.append({
                "id": item.id,
                "target_id": match.target_id,
                "target_name": match.target_name,
                "status": item.status,
                "priority": item.priority,
                "reason": match.reason,
            })
            await self.audit.log(
                AuditAction.CREATE_DISPATCH_ITEMS,
                actor_id,
                EntityType.DISPATCH_ITEM,
                item.id,
                {"listing_id": listing.id, "target_id": match.target_id, "priority": match.priority},
            )

        if not result.created and await self._needs_sentinel(listing.id, matches, result.skipped):
            item = await self._insert_item(listing, payload, None)
            if item is not None:
                result.sentinel_id = item.id
                result.created.append({
                    "id": item.id,
                    "target_id": None,
                    "target_name": None,
                    "status": item.status,
                    "priority": item.priority,
                    "reason": "no eligible target",
                })
                logger.info(f"No eligible target for listing {listing.id}; created unassigned item {item.id}")
                await self.audit.log(
                    AuditAction.CREATE_UNASSIGNED_ITEM,
                    actor_id,
                    EntityType.DISPATCH_ITEM,
                    item.id,
                    {"listing_id": listing.id, "reason": "no eligible target", "matches": len(matches)},
                )

        logger.info(
            f"Dispatch for listing {listing.id}: created {len(result.created)}, skipped {len(result.skipped)}"
        )
        await self._count("create")
        return result

    async def approve_and_dispatch(self, listing_id: str, actor_id: str) -> CreateResult:
        """Approve a listing through the listing accessor, then create its records."""
        changed = await self.listings.approve(listing_id, actor_id)
        if changed:
            await self.audit.log(AuditAction.APPROVE_LISTING, actor_id, EntityType.LISTING, listing_id)
        result = await self.create_for_listing(listing_id, actor_id)
        await self.audit.log(
            AuditAction.APPROVE_AND_DISTRIBUTE,
            actor_id,
            EntityType.LISTING,
            listing_id,
            {"created": len(result.created), "skipped": len(result.skipped)},
        )
        return result

    async def _insert_item(
        self,
        listing: ListingSnapshot,
        payload: MessagePayload,
        match: Optional[RouteMatch],
    ) -> Optional[DispatchItem]:
        target_id = match.target_id if match else None
        try:
            async with db.session() as session:
                item = DispatchItem(
                    listing_id=listing.id,
                    target_id=target_id,
                    channel=match.channel if match else None,
                    status=DispatchStatus.PENDING.value,
                    priority=match.priority if match else 0,
                    payload_snapshot=payload.to_json(),
                    dedupe_key=dedupe_key(listing.id, target_id),
                    attempt_count=0,
                )
                session.add(item)
                await session.flush()
            return item
        except IntegrityError:
            logger.info(f"Dispatch record for listing {listing.id} / target {target_id} already exists")
            return None

    async def _needs_sentinel(self, listing_id: str, matches: Sequence[RouteMatch], skipped: List[dict]) -> bool:
        if not matches:
            return True
        # Only quota skips: surface the listing unless it is already queued somewhere.
        if all(s["reason"] == SKIP_QUOTA for s in skipped):
            async with db.session() as session:
                result = await session.execute(
                    select(func.count(DispatchItem.id)).where(DispatchItem.listing_id == listing_id)
                )
                return int(result.scalar() or 0) == 0
        return False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, item_id: int, actor_id: str) -> dict:
        """
        PENDING -> IN_PROGRESS.

        Returns:
            The item, its payload and prefilled deep links for manual sending
        """
        async with db.session() as session:
            item = await self._get_item(session, item_id)
            target = await self._require_target(session, item, require_active=True)
            await self._apply(session, item, DispatchAction.START)
            data = item_to_dict(item, target_name=target.name)

        payload = await self._payload_for(item)
        await self.audit.log(
            AuditAction.MARK_IN_PROGRESS,
            actor_id,
            EntityType.DISPATCH_ITEM,
            item_id,
            {"listing_id": item.listing_id, "target_id": item.target_id},
        )
        await self._count("start")
        logger.info(f"Item {item_id} started by {actor_id}")
        return {
            "item": data,
            "payload": payload.to_dict(),
            "web_link": self.builder.build_web_link(payload.text),
            "app_link": self.builder.build_app_link(payload.text),
            "invite_link": target.invite_link,
        }

    async def cancel(self, item_id: int, actor_id: str) -> dict:
        """IN_PROGRESS -> PENDING; a still-pending listing is approved as a side effect."""
        async with db.session() as session:
            item = await self._get_item(session, item_id)
            await self._apply(session, item, DispatchAction.CANCEL)
            approved = await ListingService.approve_if_pending(session, item.listing_id)
            data = item_to_dict(item)

        await self.audit.log(
            AuditAction.CANCEL_IN_PROGRESS,
            actor_id,
            EntityType.DISPATCH_ITEM,
            item_id,
            {"listing_id": item.listing_id, "target_id": item.target_id, "listing_approved": approved},
        )
        await self._count("cancel")
        logger.info(f"Item {item_id} cancelled by {actor_id}")
        return data

    async def confirm_sent(self, item_id: int, actor_id: str) -> dict:
        """
        PENDING/IN_PROGRESS -> SENT.

        The first confirmed send of a listing flags it as distributed; a
        still-pending listing is approved.
        """
        now = utcnow()
        async with db.session() as session:
            item = await self._get_item(session, item_id)
            await self._require_target(session, item, require_active=False)
            await self._apply(session, item, DispatchAction.CONFIRM_SENT, sent_at=now, sent_by=str(actor_id))
            first_send = await ListingService.mark_distributed(session, item.listing_id, actor_id, now)
            approved = await ListingService.approve_if_pending(session, item.listing_id)
            data = item_to_dict(item)

        await self.audit.log(
            AuditAction.MARK_SENT,
            actor_id,
            EntityType.DISPATCH_ITEM,
            item_id,
            {
                "listing_id": item.listing_id,
                "target_id": item.target_id,
                "sent_at": now.isoformat(),
                "first_send": first_send,
                "listing_approved": approved,
            },
        )
        await self._count("confirm_sent")
        logger.info(f"Item {item_id} confirmed sent by {actor_id}")
        return data

    async def defer(self, item_id: int, actor_id: str, reason: Optional[str] = None) -> dict:
        reason = (reason or "").strip() or "Manually deferred"
        async with db.session() as session:
            item = await self._get_item(session, item_id)
            await self._apply(session, item, DispatchAction.DEFER, last_error=reason)
            data = item_to_dict(item)

        await self.audit.log(
            AuditAction.MARK_DEFERRED,
            actor_id,
            EntityType.DISPATCH_ITEM,
            item_id,
            {"listing_id": item.listing_id, "target_id": item.target_id, "reason": reason},
        )
        await self._count("defer")
        logger.info(f"Item {item_id} deferred by {actor_id}: {reason}")
        return data

    async def fail(self, item_id: int, actor_id: str, error: str) -> dict:
        error = (error or "").strip()
        if not error:
            raise ValidationError("error text is required")

        async with db.session() as session:
            item = await self._get_item(session, item_id)
            await self._apply(
                session,
                item,
                DispatchAction.FAIL,
                last_error=error,
                attempt_count=(item.attempt_count or 0) + 1,
            )
            data = item_to_dict(item)

        await self.audit.log(
            AuditAction.MARK_FAILED,
            actor_id,
            EntityType.DISPATCH_ITEM,
            item_id,
            {"listing_id": item.listing_id, "target_id": item.target_id, "error": error},
        )
        await self._count("fail")
        logger.info(f"Item {item_id} failed ({data['attempt_count']} attempts): {error}")
        return data

    async def override_resend(self, item_id: int, actor_id: str, reason: str) -> dict:
        """
        Force a FAILED, DEFERRED or SENT record back to PENDING.

        Requires the `override` capability and a non-empty justification.
        Always writes an `override_resend` audit entry.
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("override requires a non-empty reason")
        await self.permissions.require(actor_id, "override")

        async with db.session() as session:
            item = await self._get_item(session, item_id)
            if item.digest_id is not None:
                raise InvalidStateError(
                    f"item {item_id} is part of digest {item.digest_id}",
                    required="not linked to a digest",
                )
            previous = {
                "previous_status": item.status,
                "previous_sent_at": isoformat(item.sent_at),
                "previous_sent_by": item.sent_by,
                "previous_error": item.last_error,
            }
            await self._apply(
                session,
                item,
                DispatchAction.OVERRIDE_RESEND,
                last_error=None,
                sent_at=None,
                sent_by=None,
            )
            data = item_to_dict(item)

        await self.audit.log(
            AuditAction.OVERRIDE_RESEND,
            actor_id,
            EntityType.DISPATCH_ITEM,
            item_id,
            {"listing_id": item.listing_id, "target_id": item.target_id, "reason": reason, **previous},
        )
        await self._count("override_resend")
        logger.warning(f"Override resend for item {item_id} by {actor_id}: {reason}")
        return data

    async def assign(self, item_id: int, target_id: int, actor_id: str) -> dict:
        """Attach an unassigned PENDING record to an ACTIVE target."""
        try:
            async with db.session() as session:
                item = await self._get_item(session, item_id)
                if item.target_id is not None:
                    raise InvalidStateError(f"item {item_id} is already assigned to target {item.target_id}")
                if item.status != DispatchStatus.PENDING.value:
                    raise InvalidStateError(
                        f"cannot assign an item in status {item.status}",
                        required=DispatchStatus.PENDING.value,
                    )
                target = await session.get(DispatchTarget, target_id)
                if target is None:
                    raise NotFoundError("target", target_id)
                if target.status != TargetStatus.ACTIVE.value:
                    raise InvalidStateError(
                        f"target {target_id} is {target.status}",
                        required=TargetStatus.ACTIVE.value,
                    )
                listing = await session.get(Listing, item.listing_id)
                priority = self._priority_for(ListingSnapshot.from_row(listing), target) if listing else 0

                item.target_id = target.id
                item.channel = target.channel
                item.priority = priority
                item.dedupe_key = dedupe_key(item.listing_id, target.id)
                item.updated_at = utcnow()
                await session.flush()
                data = item_to_dict(item, target_name=target.name)
        except IntegrityError:
            raise InvalidStateError(
                f"listing already has a dispatch record for target {target_id}",
            ) from None

        await self.audit.log(
            AuditAction.ASSIGN_ITEM,
            actor_id,
            EntityType.DISPATCH_ITEM,
            item_id,
            {"listing_id": data["listing_id"], "target_id": target_id},
        )
        await self._count("assign")
        logger.info(f"Item {item_id} assigned to target {target_id} by {actor_id}")
        return data

    async def assign_unassigned_to(self, target_id: int, actor_id: str) -> int:
        """
        Move matching unassigned PENDING records onto a newly available target.

        Returns:
            Number of records assigned
        """
        async with db.session() as session:
            target = await session.get(DispatchTarget, target_id)
            if target is None:
                raise NotFoundError("target", target_id)
            rows = await session.execute(
                select(DispatchItem, Listing)
                .join(Listing, Listing.id == DispatchItem.listing_id)
                .where(
                    DispatchItem.target_id.is_(None),
                    DispatchItem.status == DispatchStatus.PENDING.value,
                )
                .order_by(DispatchItem.created_at, DispatchItem.id)
            )
            candidates = [(item.id, ListingSnapshot.from_row(listing)) for item, listing in rows.all()]

        if target.status != TargetStatus.ACTIVE.value:
            return 0
        try:
            filters = ScopeFilters.for_target(target)
        except ScopeFilterError as e:
            logger.warning(f"Not auto-assigning to target {target_id}: malformed scope filter: {e}")
            return 0

        assigned = 0
        for item_id, listing in candidates:
            scored = evaluate_target(listing, filters)
            if scored is None:
                continue
            try:
                async with db.session() as session:
                    result = await session.execute(
                        update(DispatchItem)
                        .where(
                            DispatchItem.id == item_id,
                            DispatchItem.target_id.is_(None),
                            DispatchItem.status == DispatchStatus.PENDING.value,
                        )
                        .values(
                            target_id=target.id,
                            channel=target.channel,
                            priority=scored[0],
                            dedupe_key=dedupe_key(listing.id, target.id),
                            updated_at=utcnow(),
                        )
                    )
                    if result.rowcount != 1:
                        continue
            except IntegrityError:
                logger.info(f"Listing {listing.id} already has a record for target {target_id}; left unassigned")
                continue

            assigned += 1
            await self.audit.log(
                AuditAction.AUTO_ASSIGN,
                actor_id,
                EntityType.DISPATCH_ITEM,
                item_id,
                {"listing_id": listing.id, "target_id": target.id, "priority": scored[0], "reason": scored[1]},
            )

        if assigned:
            logger.info(f"Auto-assigned {assigned} unassigned item(s) to target {target_id}")
        return assigned

    # ------------------------------------------------------------------
    # Digests
    # ------------------------------------------------------------------

    async def create_digest(self, target_id: int, item_ids: Sequence[int], actor_id: str) -> dict:
        """
        Fold PENDING records of one target into a single digest message.

        The records move to DEFERRED with the digest reference; the digest's
        own SENT confirmation is the authoritative outcome for them.
        """
        ids = list(dict.fromkeys(int(i) for i in item_ids))
        if not ids:
            raise ValidationError("no items provided for digest")

        async with db.session() as session:
            target = await session.get(DispatchTarget, target_id)
            if target is None:
                raise NotFoundError("target", target_id)
            if not target.allow_digest:
                raise InvalidStateError(f"target {target_id} does not allow digests", required="allow_digest")

            rows = await session.execute(
                select(DispatchItem, Listing)
                .join(Listing, Listing.id == DispatchItem.listing_id)
                .where(DispatchItem.id.in_(ids))
                .order_by(Listing.display_number.desc(), DispatchItem.id)
            )
            pairs = rows.all()
            found = {item.id for item, _ in pairs}
            missing = [i for i in ids if i not in found]
            if missing:
                raise NotFoundError("dispatch item", missing[0])
            for item, _ in pairs:
                if item.target_id != target.id:
                    raise InvalidStateError(f"item {item.id} does not belong to target {target_id}")
                next_status(item.status, DispatchAction.ABSORB_INTO_DIGEST)

            payload = self.builder.build_digest_message(
                [ListingSnapshot.from_row(listing) for _, listing in pairs], target.name
            )
            now = utcnow()
            digest = DispatchDigest(
                target_id=target.id,
                title=f"Digest - {target.name} - {now.date().isoformat()}",
                item_count=len(pairs),
                status=DigestStatus.PENDING.value,
                payload_snapshot=payload.to_json(),
                created_by=str(actor_id),
            )
            session.add(digest)
            await session.flush()

            result = await session.execute(
                update(DispatchItem)
                .where(
                    DispatchItem.id.in_(ids),
                    DispatchItem.status == DispatchStatus.PENDING.value,
                )
                .values(
                    digest_id=digest.id,
                    status=next_status(DispatchStatus.PENDING, DispatchAction.ABSORB_INTO_DIGEST).value,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != len(ids):
                raise InvalidStateError("items changed while building the digest", required="PENDING")
            data = digest_to_dict(digest)

        await self.audit.log(
            AuditAction.CREATE_DIGEST,
            actor_id,
            EntityType.DIGEST,
            digest.id,
            {"target_id": target.id, "item_count": len(ids), "item_ids": ids},
        )
        await self._count("create_digest")
        logger.info(f"Created digest {digest.id} with {len(ids)} items for target {target_id}")
        return {
            "digest": data,
            "payload": payload.to_dict(),
            "web_link": self.builder.build_web_link(payload.text),
            "app_link": self.builder.build_app_link(payload.text),
        }

    async def confirm_digest_sent(self, digest_id: int, actor_id: str) -> dict:
        """Digest PENDING -> SENT. Linked records stay DEFERRED."""
        now = utcnow()
        async with db.session() as session:
            digest = await session.get(DispatchDigest, digest_id)
            if digest is None:
                raise NotFoundError("digest", digest_id)
            digest.status = next_digest_status(digest.status, DispatchAction.CONFIRM_SENT).value
            digest.sent_at = now
            digest.sent_by = str(actor_id)
            data = digest_to_dict(digest)

        await self.audit.log(
            AuditAction.MARK_DIGEST_SENT,
            actor_id,
            EntityType.DIGEST,
            digest_id,
            {"target_id": digest.target_id, "item_count": digest.item_count},
        )
        await self._count("confirm_digest_sent")
        logger.info(f"Digest {digest_id} confirmed sent by {actor_id}")
        return data

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_item(self, item_id: int) -> dict:
        async with db.session() as session:
            item = await self._get_item(session, item_id)
            target = await session.get(DispatchTarget, item.target_id) if item.target_id else None
            listing = await session.get(Listing, item.listing_id)
            return item_to_dict(item, target_name=target.name if target else None, listing=listing)

    async def get_clipboard_text(self, item_id: int) -> str:
        async with db.session() as session:
            item = await self._get_item(session, item_id)
        payload = await self._payload_for(item)
        return payload.text

    async def render_listing(self, listing_id: str) -> dict:
        """Render a listing's message without touching any record."""
        listing = await self.listings.get_snapshot(listing_id)
        payload = self.builder.build_listing_message(listing)
        return {
            "payload": payload.to_dict(),
            "web_link": self.builder.build_web_link(payload.text),
            "app_link": self.builder.build_app_link(payload.text),
        }

    async def get_queue(self, filters: Optional[QueueFilters] = None) -> Dict[str, Any]:
        """
        Filtered, paginated queue.

        Ordered by listing recency (display number), then priority, then
        creation order.
        """
        filters = filters or QueueFilters()
        limit = max(1, min(int(filters.limit or QUEUE_DEFAULT_LIMIT), QUEUE_MAX_LIMIT))
        offset = max(0, int(filters.offset or 0))

        conditions = []
        if filters.target_id is not None:
            conditions.append(DispatchItem.target_id == filters.target_id)
        if filters.unassigned:
            conditions.append(DispatchItem.target_id.is_(None))
        if filters.channel:
            conditions.append(DispatchItem.channel == filters.channel)
        if filters.statuses:
            statuses = [DispatchStatus(s).value for s in filters.statuses]
            conditions.append(DispatchItem.status.in_(statuses))
        if filters.date_from is not None:
            conditions.append(DispatchItem.created_at >= to_naive_utc(filters.date_from))
        if filters.date_to is not None:
            conditions.append(DispatchItem.created_at <= to_naive_utc(filters.date_to))
        if filters.city_id:
            conditions.append(Listing.city_id == filters.city_id)
        if filters.category_id:
            conditions.append(Listing.category_id == filters.category_id)

        async with db.session() as session:
            total_result = await session.execute(
                select(func.count(DispatchItem.id))
                .select_from(DispatchItem)
                .join(Listing, Listing.id == DispatchItem.listing_id)
                .where(*conditions)
            )
            total = int(total_result.scalar() or 0)

            rows = await session.execute(
                select(DispatchItem, Listing, DispatchTarget.name)
                .join(Listing, Listing.id == DispatchItem.listing_id)
                .outerjoin(DispatchTarget, DispatchTarget.id == DispatchItem.target_id)
                .where(*conditions)
                .order_by(
                    Listing.display_number.desc(),
                    DispatchItem.priority.desc(),
                    DispatchItem.created_at.asc(),
                    DispatchItem.id.asc(),
                )
                .limit(limit)
                .offset(offset)
            )
            items = [
                item_to_dict(item, target_name=target_name, listing=listing)
                for item, listing, target_name in rows.all()
            ]

        return {"items": items, "total": total, "limit": limit, "offset": offset}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _get_item(session, item_id: int) -> DispatchItem:
        item = await session.get(DispatchItem, item_id)
        if item is None:
            raise NotFoundError("dispatch item", item_id)
        return item

    @staticmethod
    async def _require_target(session, item: DispatchItem, *, require_active: bool) -> DispatchTarget:
        if item.target_id is None:
            raise InvalidStateError(f"item {item.id} has no target; assign a target first", required="assigned target")
        target = await session.get(DispatchTarget, item.target_id)
        if target is None:
            raise NotFoundError("target", item.target_id)
        if require_active and target.status != TargetStatus.ACTIVE.value:
            raise InvalidStateError(f"target {target.id} is {target.status}", required=TargetStatus.ACTIVE.value)
        return target

    @staticmethod
    async def _apply(session, item: DispatchItem, action: DispatchAction, **values) -> DispatchStatus:
        """
        Move `item` along the transition table with a conditional update.

        A concurrent transition of the same record misses the WHERE on the
        current status and raises InvalidStateError.
        """
        current = item.status
        new = next_status(current, action)
        values["updated_at"] = utcnow()
        result = await session.execute(
            update(DispatchItem)
            .where(DispatchItem.id == item.id, DispatchItem.status == current)
            .values(status=new.value, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateError(f"item {item.id} changed concurrently", required=current)
        await session.refresh(item)
        return new

    async def _payload_for(self, item: DispatchItem) -> MessagePayload:
        payload = MessagePayload.from_json(item.payload_snapshot)
        if payload is not None:
            return payload
        # No snapshot stored: render from the current listing.
        listing = await self.listings.get_snapshot(item.listing_id)
        return self.builder.build_listing_message(listing)

    @staticmethod
    def _priority_for(listing: ListingSnapshot, target: DispatchTarget) -> int:
        try:
            scored = evaluate_target(listing, ScopeFilters.for_target(target))
        except ScopeFilterError:
            return 0
        return scored[0] if scored else 0

    async def _count(self, action: str) -> None:
        if self.metrics is not None:
            await self.metrics.incr_dispatch_action(action)
