#!/usr/bin/env python3
"""
Scheduled Stripe catalog sync.

Pulls the active products and prices from Stripe, reconciles the local tables against them
and exits 0 when every write succeeded, 1 otherwise. Meant to be run from cron.
"""

import argparse
import logging
import sys

from subpirate.core.config import settings
from subpirate.core.logging import setup_logging
from subpirate.db.session import SessionLocal
from subpirate.services.catalog_sync import CatalogSyncJob
from subpirate.services.stripe_gateway import build_gateway

logger = logging.getLogger("catalog_sync")


def resolve_api_key(mode):
    if mode == "live":
        return settings.STRIPE_SECRET_KEY
    if mode == "test":
        return settings.STRIPE_TEST_SECRET_KEY
    return settings.stripe_api_key


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile the local product/price catalog with Stripe.")
    parser.add_argument("--mode", choices=["test", "live"], help="Stripe mode (defaults to STRIPE_MODE)")
    parser.add_argument("--batch-size", type=int, default=50, help="Writes per savepoint batch")
    args = parser.parse_args(argv)

    setup_logging()

    api_key = resolve_api_key(args.mode)
    if not api_key:
        logger.error("No Stripe secret key configured for the selected mode")
        return 1

    gateway = build_gateway(settings, api_key=api_key)
    logger.info(f"Syncing catalog in {'live' if gateway.live_mode else 'test'} mode")

    report = CatalogSyncJob(SessionLocal, gateway, batch_size=args.batch_size).run()
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
