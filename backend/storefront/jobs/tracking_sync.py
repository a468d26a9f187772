"""
Background tracking sync

Polls carriers for shipments that have not reached a terminal status and
stores the normalized status. Enabled with TRACKING_SYNC_ENABLED.

Shipments are polled oldest last_tracked_at first, never-polled first of all.
Every attempt stamps last_tracked_at, so a backlog larger than the batch size
rotates through instead of re-polling the same rows. A shipment whose carrier
fails is skipped and retried once the rest of the backlog has had a turn.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import settings
from storefront.core.database import get_db_session
from storefront.core.exceptions import ShippingError
from storefront.models.shipment import ShipmentRecord, ShipmentStatus
from storefront.services.label_service import LabelService

logger = logging.getLogger(__name__)

# Statuses that still change; delivered, returned and cancelled are final
ACTIVE_TRACKING_STATUSES = [
    ShipmentStatus.LABEL_CREATED,
    ShipmentStatus.IN_TRANSIT,
    ShipmentStatus.OUT_FOR_DELIVERY,
    ShipmentStatus.EXCEPTION,
]


async def get_shipments_for_tracking(db: AsyncSession, batch_size: int) -> List[ShipmentRecord]:
    """Least recently polled active shipments first."""
    result = await db.execute(
        select(ShipmentRecord)
        .where(ShipmentRecord.status.in_(ACTIVE_TRACKING_STATUSES))
        .order_by(ShipmentRecord.last_tracked_at.asc().nullsfirst())
        .limit(batch_size)
    )
    return list(result.scalars().all())


async def run_tracking_sync(
    db: AsyncSession,
    label_service: Optional[LabelService] = None,
    batch_size: Optional[int] = None,
) -> Dict[str, int]:
    """Run one sync cycle. Returns checked/updated/failed counts."""
    label_service = label_service or LabelService(db)
    shipments = await get_shipments_for_tracking(db, batch_size or settings.TRACKING_SYNC_BATCH_SIZE)

    stats = {"checked": len(shipments), "updated": 0, "failed": 0}
    if not shipments:
        logger.debug("No shipments need tracking update")
        return stats

    logger.info(f"Syncing tracking for {len(shipments)} shipments")

    for shipment in shipments:
        previous = shipment.status
        try:
            await label_service.refresh_record(shipment)
        except ShippingError as e:
            stats["failed"] += 1
            logger.warning(f"Tracking sync failed for shipment {shipment.id} ({shipment.carrier.value}): {e.message}")
            continue
        except Exception as e:
            stats["failed"] += 1
            logger.error(f"Tracking update error for shipment {shipment.id}: {e}")
            continue
        if shipment.status != previous:
            stats["updated"] += 1

    logger.info(
        f"Tracking sync complete: {stats['updated']} updated, {stats['failed']} failed "
        f"of {stats['checked']}"
    )
    return stats


class TrackingSyncRunner:
    """Runs run_tracking_sync on an interval until stopped."""

    def __init__(self, interval_seconds: Optional[int] = None):
        self.interval_seconds = interval_seconds or settings.TRACKING_SYNC_INTERVAL_SECONDS
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            logger.warning("Tracking sync already running")
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Tracking sync started (every {self.interval_seconds}s)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            logger.info("Tracking sync stopped")
        self._task = None

    async def _loop(self):
        while True:
            try:
                async with get_db_session() as db:
                    await run_tracking_sync(db)
            except Exception as e:
                logger.error(f"Tracking sync job error: {e}")
            await asyncio.sleep(self.interval_seconds)
