"""Routing engine - match listings to dispatch targets."""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, func

from adrouter.core.errors import NotFoundError
from adrouter.core.scopes import ScopeFilters, ScopeFilterError
from adrouter.core.transitions import DispatchStatus, OPEN_STATUSES, TargetStatus
from adrouter.services.message_builder import ListingSnapshot
from adrouter.utils.datetime_utils import today_bounds_utc
from database.db import db
from database.models import DispatchItem, DispatchTarget

logger = logging.getLogger(__name__)

CITY_WEIGHT = 10
CATEGORY_WEIGHT = 10
REGION_WEIGHT = 5
ACCEPT_ALL_WEIGHT = 1

NO_TARGET = "no-target"


def dedupe_key(listing_id, target_id) -> str:
    """Uniqueness key for one listing/target pair (`no-target` for sentinels)."""
    return f"{listing_id}:{target_id if target_id is not None else NO_TARGET}"


class PickStrategy(str, Enum):
    FIRST_AVAILABLE = "first_available"
    LEAST_LOADED = "least_loaded"
    PRIORITY = "priority"


@dataclass(frozen=True)
class RouteMatch:
    target_id: int
    target_name: str
    priority: int
    reason: str
    channel: str = "group"


@dataclass(frozen=True)
class QuotaStatus:
    target_id: int
    used: int
    total: int

    @property
    def available(self) -> int:
        return max(0, self.total - self.used)

    @property
    def can_send(self) -> bool:
        return self.used < self.total

    def to_dict(self) -> dict:
        return {
            "target_id": self.target_id,
            "used": self.used,
            "total": self.total,
            "available": self.available,
            "can_send": self.can_send,
        }


def evaluate_target(listing: ListingSnapshot, filters: ScopeFilters) -> Optional[tuple]:
    """
    Score one target's filters against a listing.

    A non-empty filter that does not contain the listing's value rejects the
    target. A listing missing the attribute never satisfies a non-empty filter.

    Returns:
        (priority, reason) or None when the target does not match
    """
    priority = 0
    reasons = []

    checks = (
        (filters.cities, listing.city_id, CITY_WEIGHT, "city match"),
        (filters.regions, listing.region, REGION_WEIGHT, "region match"),
        (filters.categories, listing.category_id, CATEGORY_WEIGHT, "category match"),
    )
    for allowed, value, weight, label in checks:
        if not allowed:
            continue
        if value is None or str(value) not in allowed:
            return None
        priority += weight
        reasons.append(label)

    if filters.accepts_all:
        priority += ACCEPT_ALL_WEIGHT
        reasons.append("accepts all")

    if priority <= 0:
        return None
    return priority, ", ".join(reasons)


class RoutingEngine:
    """
    Evaluate ACTIVE targets for a listing and answer quota/duplicate questions.

    Read-only: nothing here writes to the database.
    """

    def __init__(self, listing_service, *, tz_name: str = ""):
        self.listings = listing_service
        self.tz_name = tz_name

    async def find_matches(self, listing_id: str) -> List[RouteMatch]:
        """All matching ACTIVE targets, highest priority first, one per target."""
        listing = await self.listings.get_snapshot(listing_id)
        return await self.find_matches_for(listing)

    async def find_matches_for(self, listing: ListingSnapshot) -> List[RouteMatch]:
        async with db.session() as session:
            result = await session.execute(
                select(DispatchTarget)
                .where(DispatchTarget.status == TargetStatus.ACTIVE.value)
                .order_by(DispatchTarget.id)
            )
            targets = list(result.scalars().all())
        return self.match_targets(listing, targets)

    def match_targets(self, listing: ListingSnapshot, targets: Iterable[DispatchTarget]) -> List[RouteMatch]:
        matches: Dict[int, RouteMatch] = {}
        for target in targets:
            try:
                filters = ScopeFilters.for_target(target)
            except ScopeFilterError as e:
                logger.warning(f"Skipping target {target.id} ({target.name}): malformed scope filter: {e}")
                continue

            scored = evaluate_target(listing, filters)
            if scored is None:
                continue
            priority, reason = scored
            existing = matches.get(target.id)
            if existing is None or existing.priority < priority:
                matches[target.id] = RouteMatch(
                    target_id=target.id,
                    target_name=target.name,
                    priority=priority,
                    reason=reason,
                    channel=target.channel or "group",
                )

        ordered = sorted(matches.values(), key=lambda m: (-m.priority, m.target_id))
        logger.debug(f"Listing {listing.id} matched {len(ordered)} target(s)")
        return ordered

    async def check_daily_quota(self, target_id: int) -> QuotaStatus:
        """Sent-today count against the target's quota (local calendar day)."""
        async with db.session() as session:
            target = await session.get(DispatchTarget, target_id)
            if target is None:
                raise NotFoundError("target", target_id)
            used = await self._sent_today(session, [target_id])
        return QuotaStatus(target_id=target_id, used=used.get(target_id, 0), total=int(target.daily_quota or 0))

    async def check_quotas(self, target_ids: Sequence[int]) -> Dict[int, QuotaStatus]:
        ids = list(dict.fromkeys(target_ids))
        if not ids:
            return {}
        async with db.session() as session:
            result = await session.execute(select(DispatchTarget).where(DispatchTarget.id.in_(ids)))
            targets = {t.id: t for t in result.scalars().all()}
            used = await self._sent_today(session, ids)
        return {
            tid: QuotaStatus(target_id=tid, used=used.get(tid, 0), total=int(t.daily_quota or 0))
            for tid, t in targets.items()
        }

    async def check_duplicate(self, listing_id: str, target_id: Optional[int]) -> bool:
        async with db.session() as session:
            result = await session.execute(
                select(DispatchItem.id).where(DispatchItem.dedupe_key == dedupe_key(listing_id, target_id))
            )
            return result.first() is not None

    async def pick_one(
        self,
        matches: Sequence[RouteMatch],
        strategy: PickStrategy = PickStrategy.LEAST_LOADED,
    ) -> Optional[RouteMatch]:
        """
        Choose a single target among `matches` that still has quota today.

        Returns:
            The chosen match, or None if every candidate is at quota
        """
        if not matches:
            return None
        strategy = PickStrategy(strategy)
        quotas = await self.check_quotas([m.target_id for m in matches])
        available = [m for m in matches if m.target_id in quotas and quotas[m.target_id].can_send]
        if not available:
            return None

        if strategy == PickStrategy.LEAST_LOADED:
            # Most remaining quota wins; ties keep match order.
            return max(available, key=lambda m: (quotas[m.target_id].available, -available.index(m)))
        if strategy == PickStrategy.PRIORITY:
            return max(available, key=lambda m: (m.priority, -available.index(m)))
        return available[0]

    async def today_target_stats(self) -> List[dict]:
        """Per ACTIVE target: sent today, open items, quota and utilization."""
        async with db.session() as session:
            result = await session.execute(
                select(DispatchTarget).where(DispatchTarget.status == TargetStatus.ACTIVE.value)
            )
            targets = list(result.scalars().all())
            ids = [t.id for t in targets]
            sent = await self._sent_today(session, ids)

            pending_rows = await session.execute(
                select(DispatchItem.target_id, func.count(DispatchItem.id))
                .where(
                    DispatchItem.target_id.in_(ids),
                    DispatchItem.status.in_([s.value for s in OPEN_STATUSES]),
                )
                .group_by(DispatchItem.target_id)
            )
            pending = {tid: int(n) for tid, n in pending_rows.all()}

        stats = []
        for target in targets:
            quota = int(target.daily_quota or 0)
            used = sent.get(target.id, 0)
            stats.append({
                "target_id": target.id,
                "target_name": target.name,
                "sent": used,
                "pending": pending.get(target.id, 0),
                "quota": quota,
                "available": max(0, quota - used),
                "utilization_percent": round(used / quota * 100) if quota > 0 else 0,
            })
        stats.sort(key=lambda s: (-s["utilization_percent"], s["target_id"]))
        return stats

    async def _sent_today(self, session, target_ids: Sequence[int]) -> Dict[int, int]:
        if not target_ids:
            return {}
        start, end = today_bounds_utc(self.tz_name)
        result = await session.execute(
            select(DispatchItem.target_id, func.count(DispatchItem.id))
            .where(
                DispatchItem.target_id.in_(list(target_ids)),
                DispatchItem.status == DispatchStatus.SENT.value,
                DispatchItem.sent_at >= start,
                DispatchItem.sent_at < end,
            )
            .group_by(DispatchItem.target_id)
        )
        return {tid: int(n) for tid, n in result.all()}
