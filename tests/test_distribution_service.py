"""Distribution service tests: creation, lifecycle, override, digests, queue."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from adrouter.core.errors import InvalidStateError, NotFoundError, PrivilegeDeniedError, ValidationError
from adrouter.services.distribution_service import QueueFilters
from database.db import db
from database.models import DispatchItem, Listing

ADMIN = "admin-1"
OPERATOR = "op-7"


async def items_for(listing_id):
    async with db.session() as session:
        result = await session.execute(
            select(DispatchItem).where(DispatchItem.listing_id == listing_id).order_by(DispatchItem.id)
        )
        return list(result.scalars().all())


async def load_listing(listing_id):
    async with db.session() as session:
        return await session.get(Listing, listing_id)


class TestCreate:
    async def test_creates_one_record_per_matching_target(self, container, add_listing, add_target):
        listing = await add_listing()
        sales = await add_target("Sales", cities=["city-ta"], categories=["cat-sale"])
        everything = await add_target("Everything")
        await add_target("Haifa", cities=["city-haifa"])

        result = await container.distribution_service.create_for_listing(listing.id, ADMIN)

        assert [c["target_id"] for c in result.created] == [sales.id, everything.id]
        assert result.skipped == []
        assert result.sentinel_id is None

        items = await items_for(listing.id)
        assert {i.dedupe_key for i in items} == {f"{listing.id}:{sales.id}", f"{listing.id}:{everything.id}"}
        assert all(i.status == "PENDING" for i in items)
        assert all(i.payload_snapshot for i in items)

    async def test_rerun_skips_existing_pairs(self, container, add_listing, add_target):
        listing = await add_listing()
        target = await add_target()
        await container.distribution_service.create_for_listing(listing.id, ADMIN)

        again = await container.distribution_service.create_for_listing(listing.id, ADMIN)

        assert again.created == []
        assert again.skipped == [{"target_id": target.id, "reason": "duplicate"}]
        assert again.sentinel_id is None
        assert len(await items_for(listing.id)) == 1

    async def test_concurrent_runs_create_each_pair_once(self, container, add_listing, add_target):
        listing = await add_listing()
        target = await add_target()

        results = await asyncio.gather(
            container.distribution_service.create_for_listing(listing.id, ADMIN),
            container.distribution_service.create_for_listing(listing.id, ADMIN),
        )

        assert len(await items_for(listing.id)) == 1
        assert sorted(len(r.created) for r in results) == [0, 1]
        loser = next(r for r in results if not r.created)
        assert loser.skipped == [{"target_id": target.id, "reason": "duplicate"}]
        assert all(r.sentinel_id is None for r in results)

    async def test_no_match_creates_single_unassigned_record(self, container, add_listing, add_target):
        listing = await add_listing()
        await add_target("Haifa", cities=["city-haifa"])

        result = await container.distribution_service.create_for_listing(listing.id, ADMIN)
        await container.distribution_service.create_for_listing(listing.id, ADMIN)

        items = await items_for(listing.id)
        assert len(items) == 1
        assert items[0].id == result.sentinel_id
        assert items[0].target_id is None
        assert items[0].dedupe_key == f"{listing.id}:no-target"

    async def test_quota_reached_falls_back_to_unassigned(self, container, add_listing, add_target):
        listing = await add_listing()
        target = await add_target(daily_quota=0)

        result = await container.distribution_service.create_for_listing(listing.id, ADMIN)

        assert result.skipped == [{"target_id": target.id, "reason": "quota_reached"}]
        assert result.sentinel_id is not None

    async def test_unknown_listing(self, container):
        with pytest.raises(NotFoundError):
            await container.distribution_service.create_for_listing("nope", ADMIN)

    async def test_approve_and_dispatch(self, container, add_listing, add_target):
        listing = await add_listing(status="PENDING")
        await add_target()

        result = await container.distribution_service.approve_and_dispatch(listing.id, ADMIN)

        assert len(result.created) == 1
        assert (await load_listing(listing.id)).status == "APPROVED"
        history = await container.audit_service.get_listing_history(listing.id)
        actions = {e.action for e in history}
        assert {"approve_listing", "approve_and_distribute", "create_dispatch_items"} <= actions


class TestLifecycle:
    async def _item(self, container, add_listing, add_target, **target_fields):
        listing = await add_listing(status="PENDING")
        target = await add_target(invite_link="https://chat.example/invite", **target_fields)
        result = await container.distribution_service.create_for_listing(listing.id, ADMIN)
        return listing, target, result.created[0]["id"]

    async def test_start_returns_links(self, container, add_listing, add_target):
        _, _, item_id = await self._item(container, add_listing, add_target)

        started = await container.distribution_service.start(item_id, ADMIN)

        assert started["item"]["status"] == "IN_PROGRESS"
        assert started["web_link"].startswith("https://web.whatsapp.com/send?text=")
        assert started["app_link"].startswith("whatsapp://send?text=")
        assert started["invite_link"] == "https://chat.example/invite"
        assert "מודעה מס'" in started["payload"]["text"]

    async def test_start_requires_active_target(self, container, add_listing, add_target):
        _, target, item_id = await self._item(container, add_listing, add_target)
        await container.target_service.change_status(target.id, "PAUSED", ADMIN)

        with pytest.raises(InvalidStateError) as exc:
            await container.distribution_service.start(item_id, ADMIN)
        assert exc.value.required == "ACTIVE"

    async def test_unassigned_record_cannot_start(self, container, add_listing):
        listing = await add_listing()
        result = await container.distribution_service.create_for_listing(listing.id, ADMIN)

        with pytest.raises(InvalidStateError) as exc:
            await container.distribution_service.start(result.sentinel_id, ADMIN)
        assert exc.value.required == "assigned target"

    async def test_cancel_returns_to_pending_and_approves_listing(self, container, add_listing, add_target):
        listing, _, item_id = await self._item(container, add_listing, add_target)
        await container.distribution_service.start(item_id, ADMIN)

        cancelled = await container.distribution_service.cancel(item_id, ADMIN)

        assert cancelled["status"] == "PENDING"
        assert (await load_listing(listing.id)).status == "APPROVED"

    async def test_confirm_sent_marks_listing_distributed(self, container, add_listing, add_target):
        listing, _, item_id = await self._item(container, add_listing, add_target)

        sent = await container.distribution_service.confirm_sent(item_id, ADMIN)

        assert sent["status"] == "SENT"
        assert sent["sent_by"] == ADMIN
        assert sent["sent_at"] is not None
        row = await load_listing(listing.id)
        assert row.distributed is True
        assert row.distributed_by == ADMIN
        assert row.status == "APPROVED"

        with pytest.raises(InvalidStateError):
            await container.distribution_service.confirm_sent(item_id, ADMIN)

    async def test_defer_uses_default_reason(self, container, add_listing, add_target):
        _, _, item_id = await self._item(container, add_listing, add_target)

        deferred = await container.distribution_service.defer(item_id, ADMIN, "  ")

        assert deferred["status"] == "DEFERRED"
        assert deferred["last_error"] == "Manually deferred"

    async def test_defer_in_progress_is_rejected(self, container, add_listing, add_target):
        _, _, item_id = await self._item(container, add_listing, add_target)
        await container.distribution_service.start(item_id, ADMIN)

        with pytest.raises(InvalidStateError):
            await container.distribution_service.defer(item_id, ADMIN)

    async def test_fail_requires_error_and_counts_attempts(self, container, add_listing, add_target):
        _, _, item_id = await self._item(container, add_listing, add_target)

        with pytest.raises(ValidationError):
            await container.distribution_service.fail(item_id, ADMIN, " ")

        failed = await container.distribution_service.fail(item_id, ADMIN, "group link expired")
        assert failed["status"] == "FAILED"
        assert failed["attempt_count"] == 1
        assert failed["last_error"] == "group link expired"

    async def test_unknown_item(self, container):
        with pytest.raises(NotFoundError):
            await container.distribution_service.start(12345, ADMIN)


class TestOverride:
    async def _sent_item(self, container, add_listing, add_target):
        listing = await add_listing()
        await add_target()
        result = await container.distribution_service.create_for_listing(listing.id, ADMIN)
        item_id = result.created[0]["id"]
        await container.distribution_service.confirm_sent(item_id, ADMIN)
        return item_id

    async def test_override_requires_reason(self, container, add_listing, add_target):
        item_id = await self._sent_item(container, add_listing, add_target)
        with pytest.raises(ValidationError):
            await container.distribution_service.override_resend(item_id, ADMIN, "")

    async def test_override_requires_capability(self, container, add_listing, add_target):
        item_id = await self._sent_item(container, add_listing, add_target)
        await container.permission_service.grant_role(OPERATOR, "MODERATOR", ADMIN)

        with pytest.raises(PrivilegeDeniedError) as exc:
            await container.distribution_service.override_resend(item_id, OPERATOR, "customer asked again")
        assert exc.value.capability == "override"

    async def test_override_resets_record_and_audits_previous_values(self, container, add_listing, add_target):
        item_id = await self._sent_item(container, add_listing, add_target)

        data = await container.distribution_service.override_resend(item_id, ADMIN, "message was deleted")

        assert data["status"] == "PENDING"
        assert data["sent_at"] is None
        assert data["sent_by"] is None
        assert data["last_error"] is None

        events = await container.audit_service.get_override_events()
        assert len(events) == 1
        assert events[0].entity_id == str(item_id)
        assert '"previous_status": "SENT"' in events[0].payload
        assert "message was deleted" in events[0].payload

    async def test_override_of_open_item_is_rejected(self, container, add_listing, add_target):
        listing = await add_listing()
        await add_target()
        result = await container.distribution_service.create_for_listing(listing.id, ADMIN)

        with pytest.raises(InvalidStateError):
            await container.distribution_service.override_resend(result.created[0]["id"], ADMIN, "why not")


class TestAssign:
    async def test_assign_unassigned_record(self, container, add_listing, add_target):
        listing = await add_listing()
        result = await container.distribution_service.create_for_listing(listing.id, ADMIN)
        target = await add_target("Late target", cities=["city-ta"])

        data = await container.distribution_service.assign(result.sentinel_id, target.id, ADMIN)

        assert data["target_id"] == target.id
        assert data["dedupe_key"] == f"{listing.id}:{target.id}"
        assert data["priority"] == 10

        with pytest.raises(InvalidStateError):
            await container.distribution_service.assign(result.sentinel_id, target.id, ADMIN)

    async def test_assign_to_paused_target(self, container, add_listing, add_target):
        listing = await add_listing()
        result = await container.distribution_service.create_for_listing(listing.id, ADMIN)
        target = await add_target(status="PAUSED")

        with pytest.raises(InvalidStateError):
            await container.distribution_service.assign(result.sentinel_id, target.id, ADMIN)

    async def test_assign_conflicting_pair(self, container, add_listing, add_target, add_item):
        listing = await add_listing()
        target = await add_target()
        await add_item(listing, target, status="SENT")
        sentinel = await add_item(listing, None)

        with pytest.raises(InvalidStateError):
            await container.distribution_service.assign(sentinel.id, target.id, ADMIN)

    async def test_assign_unassigned_to_matches_scopes(self, container, add_listing, add_target):
        ta = await add_listing()
        haifa = await add_listing(city_id="city-haifa", city_name="חיפה")
        for listing in (ta, haifa):
            await container.distribution_service.create_for_listing(listing.id, ADMIN)
        target = await add_target("Tel Aviv", cities=["city-ta"])

        assigned = await container.distribution_service.assign_unassigned_to(target.id, ADMIN)

        assert assigned == 1
        assert (await items_for(ta.id))[0].target_id == target.id
        assert (await items_for(haifa.id))[0].target_id is None


class TestDigest:
    async def _pending_items(self, container, add_listing, target, count=2):
        ids = []
        for _ in range(count):
            listing = await add_listing()
            result = await container.distribution_service.create_for_listing(listing.id, ADMIN)
            ids.extend(c["id"] for c in result.created if c["target_id"] == target.id)
        return ids

    async def test_digest_absorbs_items_and_confirms_once(self, container, add_listing, add_target):
        target = await add_target("Digest group")
        ids = await self._pending_items(container, add_listing, target)

        created = await container.distribution_service.create_digest(target.id, ids, ADMIN)
        digest = created["digest"]

        assert digest["item_count"] == 2
        assert digest["status"] == "PENDING"
        assert created["payload"]["text"].startswith("📢 עדכון נכסים חדשים - Digest group")
        for item_id in ids:
            item = await container.distribution_service.get_item(item_id)
            assert item["status"] == "DEFERRED"
            assert item["digest_id"] == digest["id"]

        with pytest.raises(InvalidStateError):
            await container.distribution_service.override_resend(ids[0], ADMIN, "resend alone")

        sent = await container.distribution_service.confirm_digest_sent(digest["id"], ADMIN)
        assert sent["status"] == "SENT"
        with pytest.raises(InvalidStateError):
            await container.distribution_service.confirm_digest_sent(digest["id"], ADMIN)
        for item_id in ids:
            assert (await container.distribution_service.get_item(item_id))["status"] == "DEFERRED"
            with pytest.raises(InvalidStateError):
                await container.distribution_service.confirm_sent(item_id, ADMIN)

    async def test_digest_requires_allow_digest(self, container, add_listing, add_target):
        target = await add_target(allow_digest=False)
        ids = await self._pending_items(container, add_listing, target, count=1)

        with pytest.raises(InvalidStateError):
            await container.distribution_service.create_digest(target.id, ids, ADMIN)

    async def test_digest_rejects_foreign_or_started_items_atomically(self, container, add_listing, add_target):
        target = await add_target("Digest group")
        ids = await self._pending_items(container, add_listing, target)
        await container.distribution_service.start(ids[1], ADMIN)

        with pytest.raises(InvalidStateError):
            await container.distribution_service.create_digest(target.id, ids, ADMIN)

        first = await container.distribution_service.get_item(ids[0])
        assert first["status"] == "PENDING"
        assert first["digest_id"] is None

    async def test_digest_input_validation(self, container, add_target):
        target = await add_target()
        with pytest.raises(ValidationError):
            await container.distribution_service.create_digest(target.id, [], ADMIN)
        with pytest.raises(NotFoundError):
            await container.distribution_service.create_digest(target.id, [999], ADMIN)
        with pytest.raises(NotFoundError):
            await container.distribution_service.confirm_digest_sent(999, ADMIN)


class TestReads:
    async def test_queue_order_and_filters(self, container, add_listing, add_target):
        target = await add_target("Everything")
        older = await add_listing()
        newer = await add_listing()
        orphan = await add_listing(city_id="city-haifa")
        await add_target("Tel Aviv", cities=["city-ta"])
        for listing in (older, newer):
            await container.distribution_service.create_for_listing(listing.id, ADMIN)
        await container.target_service.change_status(target.id, "PAUSED", ADMIN)
        await container.distribution_service.create_for_listing(orphan.id, ADMIN)

        queue = await container.distribution_service.get_queue()
        assert queue["total"] == 5
        assert [i["listing_id"] for i in queue["items"]] == [
            orphan.id, newer.id, newer.id, older.id, older.id,
        ]
        # Within one listing the higher priority record comes first.
        assert queue["items"][1]["priority"] > queue["items"][2]["priority"]

        unassigned = await container.distribution_service.get_queue(QueueFilters(unassigned=True))
        assert [i["listing_id"] for i in unassigned["items"]] == [orphan.id]

        by_target = await container.distribution_service.get_queue(QueueFilters(target_id=target.id, limit=1))
        assert by_target["total"] == 2
        assert len(by_target["items"]) == 1
        assert by_target["items"][0]["target_name"] == "Everything"

        by_city = await container.distribution_service.get_queue(QueueFilters(city_id="city-haifa"))
        assert by_city["total"] == 1

    async def test_queue_status_filter(self, container, add_listing, add_target):
        await add_target()
        listing = await add_listing()
        result = await container.distribution_service.create_for_listing(listing.id, ADMIN)
        await container.distribution_service.confirm_sent(result.created[0]["id"], ADMIN)

        sent = await container.distribution_service.get_queue(QueueFilters(statuses=["SENT"]))
        pending = await container.distribution_service.get_queue(QueueFilters(statuses=["PENDING", "IN_PROGRESS"]))

        assert sent["total"] == 1
        assert pending["total"] == 0

    async def test_queue_date_filter_accepts_aware_bounds(self, container, add_listing, add_target):
        await add_target()
        listing = await add_listing()
        await container.distribution_service.create_for_listing(listing.id, ADMIN)
        now = datetime.now(timezone(timedelta(hours=3)))

        around = await container.distribution_service.get_queue(
            QueueFilters(date_from=now - timedelta(hours=1), date_to=now + timedelta(hours=1))
        )
        later = await container.distribution_service.get_queue(QueueFilters(date_from=now + timedelta(hours=1)))

        assert around["total"] == 1
        assert later["total"] == 0

    async def test_clipboard_text_falls_back_to_current_listing(self, container, add_listing, add_target, add_item):
        listing = await add_listing(title="Fresh title")
        item = await add_item(listing, await add_target())

        text = await container.distribution_service.get_clipboard_text(item.id)

        assert text.startswith("🏘️ Fresh title")

    async def test_render_listing(self, container, add_listing):
        listing = await add_listing()
        rendered = await container.distribution_service.render_listing(listing.id)
        assert rendered["payload"]["canonical_url"].endswith(f"/ads/{listing.id}/bright-4-rooms-near-the-park")
