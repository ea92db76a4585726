"""Listing accessor - the narrow read/write surface onto listings."""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from adrouter.core.errors import NotFoundError
from adrouter.services.message_builder import ListingSnapshot
from adrouter.utils.datetime_utils import utcnow
from database.db import db
from database.models import Listing

logger = logging.getLogger(__name__)

LISTING_PENDING = "PENDING"
LISTING_APPROVED = "APPROVED"


class ListingService:
    """
    Listings are owned elsewhere. Dispatch reads them for routing and
    rendering, and writes exactly two things: pending -> approved, and the
    distributed flag on first confirmed send.
    """

    async def get_snapshot(self, listing_id: str) -> ListingSnapshot:
        async with db.session() as session:
            listing = await session.get(Listing, str(listing_id))
            if listing is None:
                raise NotFoundError("listing", listing_id)
            return ListingSnapshot.from_row(listing)

    async def approve(self, listing_id: str, actor_id: str) -> bool:
        """
        Approve a listing (used by approve-and-distribute).

        Returns:
            True if the status changed
        """
        async with db.session() as session:
            listing = await session.get(Listing, str(listing_id))
            if listing is None:
                raise NotFoundError("listing", listing_id)
            if listing.status == LISTING_APPROVED:
                return False
            previous = listing.status
            listing.status = LISTING_APPROVED
            listing.updated_at = utcnow()
        logger.info(f"Listing {listing_id} approved by {actor_id} (was {previous})")
        return True

    @staticmethod
    async def approve_if_pending(session: AsyncSession, listing_id: str) -> bool:
        """Advance a still-pending listing to approved inside the caller's transaction."""
        listing = await session.get(Listing, str(listing_id))
        if listing is None or listing.status != LISTING_PENDING:
            return False
        listing.status = LISTING_APPROVED
        listing.updated_at = utcnow()
        logger.info(f"Listing {listing_id} auto-approved by dispatch side effect")
        return True

    @staticmethod
    async def mark_distributed(
        session: AsyncSession,
        listing_id: str,
        actor_id: str,
        at=None,
    ) -> bool:
        """
        Flag the listing as distributed on its first confirmed send.

        Returns:
            True if this call set the flag
        """
        listing: Optional[Listing] = await session.get(Listing, str(listing_id))
        if listing is None or listing.distributed:
            return False
        listing.distributed = True
        listing.distributed_at = at or utcnow()
        listing.distributed_by = str(actor_id)
        return True
