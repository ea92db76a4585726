"""Daily report and dashboard tests."""
from datetime import timedelta

from adrouter.services.report_service import UNSPECIFIED
from adrouter.utils.datetime_utils import local_today, utcnow

ADMIN = "admin-1"


async def test_daily_report_groups_todays_sends(container, add_listing, add_target, add_item):
    sales = await add_target("Sales")
    rentals = await add_target("Rentals")
    await add_item(await add_listing(), sales, status="SENT")
    await add_item(await add_listing(), rentals, status="SENT")
    await add_item(await add_listing(category_name=None, city_name="חיפה"), sales, status="SENT")
    await add_item(await add_listing(), sales, status="SENT", sent_at=utcnow() - timedelta(days=3))
    await add_item(await add_listing(), rentals, status="FAILED")

    report = await container.report_service.daily_report()

    assert report["date"] == local_today("UTC").isoformat()
    assert report["total_sent"] == 3
    assert report["total_failed"] == 1
    assert report["targets_used"] == 2
    assert report["by_category"] == [
        {"name": "דירות למכירה", "count": 2},
        {"name": UNSPECIFIED, "count": 1},
    ]
    assert report["by_city"] == [{"name": "תל אביב", "count": 2}, {"name": "חיפה", "count": 1}]


async def test_daily_report_for_a_past_day(container, add_listing, add_target, add_item):
    target = await add_target()
    three_days_ago = utcnow() - timedelta(days=3)
    await add_item(await add_listing(), target, status="SENT", sent_at=three_days_ago)

    report = await container.report_service.daily_report(three_days_ago.date())

    assert report["total_sent"] == 1
    assert (await container.report_service.daily_report())["total_sent"] == 0


async def test_dashboard_snapshot(container, add_listing, add_target):
    full = await add_target("Full", daily_quota=1)
    await add_target("Paused", status="PAUSED")
    first = await add_listing()
    second = await add_listing(city_id="city-haifa")

    created = await container.distribution_service.create_for_listing(first.id, ADMIN)
    await container.distribution_service.confirm_sent(created.created[0]["id"], ADMIN)
    await container.distribution_service.override_resend(created.created[0]["id"], ADMIN, "deleted by group admin")
    await container.distribution_service.confirm_sent(created.created[0]["id"], ADMIN)
    await container.distribution_service.create_for_listing(second.id, ADMIN)

    dashboard = await container.report_service.dashboard()

    assert dashboard["today"]["sent"] == 1
    assert dashboard["today"]["created"] == 2
    assert dashboard["today"]["overrides"] == 1
    assert dashboard["unassigned"] == 1
    assert dashboard["pending"] == 1
    assert dashboard["targets"] == {"active": 1, "total": 2, "at_quota": 1}
    assert dashboard["target_utilization"][0]["target_id"] == full.id
    assert dashboard["recent_activity"][0]["listing_id"] == first.id
