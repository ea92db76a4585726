"""Metrics service - operational counters for the dispatch module (persistent)."""
import asyncio
import logging
from collections import Counter
from datetime import datetime
from typing import Dict, Tuple

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from adrouter.utils.datetime_utils import utcnow
from database.db import db
from database.models import MetricCounter

logger = logging.getLogger(__name__)

AUDIT_WRITE_FAILED = "audit_write_failed"


class MetricsService:
    """Small metrics store with database-backed counters (survives restarts)."""

    def __init__(self, *, persist: bool = True):
        self.counters = Counter()  # key -> count
        self.last_update_at: datetime | None = None
        self.lock = asyncio.Lock()
        self.persist = persist

    async def _incr_persistent(self, key: str, delta: int = 1) -> None:
        if not self.persist:
            return
        try:
            async with db.session() as session:
                insert = sqlite_insert if db.dialect_name == "sqlite" else pg_insert
                now = utcnow()
                stmt = insert(MetricCounter).values(key=key, value=int(delta), updated_at=now)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[MetricCounter.key],
                    set_={"value": MetricCounter.value + int(delta), "updated_at": now},
                )
                await session.execute(stmt)
        except Exception as e:
            # The side channel must never break the caller.
            logger.warning(f"Failed to persist metric {key}: {e}")

    async def incr(self, key: str, delta: int = 1) -> None:
        async with self.lock:
            self.counters[key] += delta
            self.last_update_at = utcnow()
        await self._incr_persistent(key, delta)

    async def incr_dispatch_action(self, action: str) -> None:
        await self.incr(f"dispatch:{action}")

    async def incr_audit_failure(self) -> None:
        await self.incr(AUDIT_WRITE_FAILED)

    async def get(self, key: str) -> int:
        snapshot, _ = await self.snapshot()
        return int(snapshot.get(key, 0))

    async def snapshot(self) -> Tuple[Dict[str, int], datetime | None]:
        if self.persist:
            try:
                async with db.session() as session:
                    result = await session.execute(select(MetricCounter))
                    rows = list(result.scalars().all())

                last_update_at: datetime | None = None
                values: dict[str, int] = {}
                for row in rows:
                    values[str(row.key)] = int(row.value or 0)
                    if row.updated_at and (last_update_at is None or row.updated_at > last_update_at):
                        last_update_at = row.updated_at
                return values, last_update_at
            except Exception as e:
                logger.warning(f"Metrics snapshot fell back to memory: {e}")

        async with self.lock:
            return dict(self.counters), self.last_update_at
