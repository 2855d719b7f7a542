"""Background scheduler task for the periodic Stripe catalog sync"""
import asyncio
import logging

from subpirate.core.config import settings
from subpirate.db.session import SessionLocal
from subpirate.services.catalog_sync import CatalogSyncJob
from subpirate.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


async def catalog_sync_scheduler_task(gateway: StripeGateway, interval_seconds: int = None):
    """Run the catalog sync every `interval_seconds` for the lifetime of the process.

    The job itself is synchronous (SDK and database calls), so each pass runs in a worker
    thread to keep the event loop free for webhook deliveries.
    """
    interval = interval_seconds or settings.CATALOG_SYNC_INTERVAL_SECONDS
    job = CatalogSyncJob(SessionLocal, gateway)
    while True:
        try:
            await asyncio.sleep(interval)
            report = await asyncio.to_thread(job.run)
            if not report.ok:
                logger.warning(f"Scheduled catalog sync finished with status {report.status}")
        except asyncio.CancelledError:
            logger.info("Catalog sync scheduler stopped")
            raise
        except Exception as e:
            logger.error(f"Error in catalog sync scheduler: {e}", exc_info=True)
