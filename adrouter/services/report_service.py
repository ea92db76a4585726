"""Report service - daily report and dashboard snapshot."""
import logging
from collections import Counter
from datetime import date
from typing import Optional

from sqlalchemy import select, func

from adrouter.core.transitions import DispatchStatus, OPEN_STATUSES, TargetStatus
from adrouter.services.audit_service import AuditAction
from adrouter.utils.datetime_utils import day_bounds_utc, isoformat, local_today
from database.db import db
from database.models import DispatchDigest, DispatchItem, DispatchTarget, Listing

logger = logging.getLogger(__name__)

UNSPECIFIED = "לא מוגדר"
RECENT_ACTIVITY_LIMIT = 10


def _ranked(counter: Counter) -> list:
    return [{"name": name, "count": count} for name, count in sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))]


class ReportService:
    """Aggregations over dispatch records; read-only."""

    def __init__(self, *, routing_engine, audit_service, tz_name: str = ""):
        self.routing = routing_engine
        self.audit = audit_service
        self.tz_name = tz_name

    async def daily_report(self, day: Optional[date] = None) -> dict:
        """
        Sent and failed counts for one local calendar day, grouped by
        category and by city.
        """
        day = day or local_today(self.tz_name)
        start, end = day_bounds_utc(day, self.tz_name)

        async with db.session() as session:
            sent_rows = await session.execute(
                select(DispatchItem.target_id, Listing.category_name, Listing.city_name)
                .join(Listing, Listing.id == DispatchItem.listing_id)
                .where(
                    DispatchItem.status == DispatchStatus.SENT.value,
                    DispatchItem.sent_at >= start,
                    DispatchItem.sent_at < end,
                )
            )
            sent = sent_rows.all()

            failed_result = await session.execute(
                select(func.count(DispatchItem.id)).where(
                    DispatchItem.status == DispatchStatus.FAILED.value,
                    DispatchItem.updated_at >= start,
                    DispatchItem.updated_at < end,
                )
            )
            failed = int(failed_result.scalar() or 0)

        by_category = Counter(category or UNSPECIFIED for _, category, _ in sent)
        by_city = Counter(city or UNSPECIFIED for _, _, city in sent)
        return {
            "date": day.isoformat(),
            "total_sent": len(sent),
            "total_failed": failed,
            "targets_used": len({target_id for target_id, _, _ in sent if target_id is not None}),
            "by_category": _ranked(by_category),
            "by_city": _ranked(by_city),
        }

    async def dashboard(self) -> dict:
        """Today's snapshot for the operator home screen."""
        day = local_today(self.tz_name)
        start, end = day_bounds_utc(day, self.tz_name)

        async with db.session() as session:
            async def count(*conditions, column=DispatchItem.id) -> int:
                result = await session.execute(select(func.count(column)).where(*conditions))
                return int(result.scalar() or 0)

            sent_today = await count(
                DispatchItem.status == DispatchStatus.SENT.value,
                DispatchItem.sent_at >= start,
                DispatchItem.sent_at < end,
            )
            pending = await count(DispatchItem.status.in_([s.value for s in OPEN_STATUSES]))
            unassigned = await count(
                DispatchItem.target_id.is_(None),
                DispatchItem.status == DispatchStatus.PENDING.value,
            )
            failed_today = await count(
                DispatchItem.status == DispatchStatus.FAILED.value,
                DispatchItem.updated_at >= start,
                DispatchItem.updated_at < end,
            )
            created_today = await count(DispatchItem.created_at >= start, DispatchItem.created_at < end)
            active_targets = await count(
                DispatchTarget.status == TargetStatus.ACTIVE.value, column=DispatchTarget.id
            )
            total_targets = await count(column=DispatchTarget.id)
            digests_today = await count(
                DispatchDigest.created_at >= start,
                DispatchDigest.created_at < end,
                column=DispatchDigest.id,
            )

            recent_rows = await session.execute(
                select(DispatchItem, Listing, DispatchTarget.name)
                .join(Listing, Listing.id == DispatchItem.listing_id)
                .outerjoin(DispatchTarget, DispatchTarget.id == DispatchItem.target_id)
                .where(DispatchItem.status == DispatchStatus.SENT.value)
                .order_by(DispatchItem.sent_at.desc(), DispatchItem.id.desc())
                .limit(RECENT_ACTIVITY_LIMIT)
            )
            recent = [
                {
                    "item_id": item.id,
                    "listing_id": listing.id,
                    "display_number": listing.display_number,
                    "title": listing.title,
                    "target_id": item.target_id,
                    "target_name": target_name,
                    "sent_at": isoformat(item.sent_at),
                    "sent_by": item.sent_by,
                }
                for item, listing, target_name in recent_rows.all()
            ]

        utilization = await self.routing.today_target_stats()
        overrides_today = await self.audit.count_today(AuditAction.OVERRIDE_RESEND)

        return {
            "date": day.isoformat(),
            "today": {
                "sent": sent_today,
                "failed": failed_today,
                "created": created_today,
                "digests": digests_today,
                "overrides": overrides_today,
            },
            "pending": pending,
            "unassigned": unassigned,
            "targets": {
                "active": active_targets,
                "total": total_targets,
                "at_quota": sum(1 for s in utilization if s["available"] == 0),
            },
            "target_utilization": utilization,
            "recent_activity": recent,
        }
