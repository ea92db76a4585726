"""
Pytest fixtures for the dispatch module.

Every test gets a fresh SQLite file behind the shared `db` handle, so the
services run against real tables without a Postgres server.
"""
import itertools
import json
from datetime import datetime

import pytest

from adrouter.config import Config
from adrouter.container import ServiceContainer
from adrouter.utils.datetime_utils import utcnow
from database.db import db
from database.models import DispatchItem, DispatchTarget, Listing

SUPER_ADMIN = "admin-1"
BASE_URL = "https://homes.example"


@pytest.fixture
async def database(tmp_path):
    await db.disconnect()
    db.database_url = f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}"
    await db.create_tables()
    yield db
    await db.disconnect()


@pytest.fixture
def config():
    return Config(
        admin_api_token="test-token",
        public_base_url=BASE_URL,
        timezone_name="UTC",
        super_admin_ids=frozenset({SUPER_ADMIN}),
    )


@pytest.fixture
async def container(database, config):
    container = await ServiceContainer.create(config)
    yield container
    await container.cleanup()


@pytest.fixture
def add_listing(database):
    """Insert a listing row; keyword overrides win over the defaults."""
    numbers = itertools.count(1001)

    async def _add(**fields) -> Listing:
        number = next(numbers)
        data = dict(
            id=f"lst-{number}",
            display_number=number,
            title="Bright 4 rooms near the park",
            description="Renovated apartment with a large balcony.",
            price=2500000,
            category_id="cat-sale",
            category_name="דירות למכירה",
            category_slug="apartments-for-sale",
            city_id="city-ta",
            city_name="תל אביב",
            region="center",
            street="הרצל 10",
            attributes={"rooms": 4, "floor": 3, "area": 95},
            images=[],
            status="APPROVED",
        )
        data.update(fields)
        for key in ("attributes", "images"):
            if isinstance(data[key], (dict, list)):
                data[key] = json.dumps(data[key], ensure_ascii=False)
        async with db.session() as session:
            listing = Listing(**data)
            session.add(listing)
        return listing

    return _add


@pytest.fixture
def add_target(database):
    """Insert a target row directly, bypassing permission checks."""
    codes = itertools.count(1)

    async def _add(
        name: str = "Tel Aviv Sales",
        *,
        cities=(),
        regions=(),
        categories=(),
        daily_quota: int = 10,
        status: str = "ACTIVE",
        allow_digest: bool = True,
        channel: str = "group",
        invite_link: str | None = None,
        raw_city_scopes: str | None = None,
    ) -> DispatchTarget:
        async with db.session() as session:
            target = DispatchTarget(
                name=name,
                internal_code=f"target-{next(codes)}",
                status=status,
                channel=channel,
                city_scopes=raw_city_scopes if raw_city_scopes is not None else json.dumps(list(cities)),
                region_scopes=json.dumps(list(regions)),
                category_scopes=json.dumps(list(categories)),
                daily_quota=daily_quota,
                allow_digest=allow_digest,
                invite_link=invite_link,
            )
            session.add(target)
            await session.flush()
        return target

    return _add


@pytest.fixture
def add_item(database):
    """Insert a dispatch record in any status (for quota and report tests)."""

    async def _add(
        listing: Listing,
        target: DispatchTarget | None,
        *,
        status: str = "PENDING",
        sent_at: datetime | None = None,
        digest_id: int | None = None,
    ) -> DispatchItem:
        if status == "SENT" and sent_at is None:
            sent_at = utcnow()
        target_id = target.id if target is not None else None
        async with db.session() as session:
            item = DispatchItem(
                listing_id=listing.id,
                target_id=target_id,
                channel=target.channel if target is not None else None,
                status=status,
                priority=0,
                dedupe_key=f"{listing.id}:{target_id if target_id is not None else 'no-target'}",
                attempt_count=0,
                sent_at=sent_at,
                sent_by=SUPER_ADMIN if sent_at else None,
                digest_id=digest_id,
            )
            session.add(item)
            await session.flush()
        return item

    return _add
