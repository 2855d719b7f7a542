"""Logging configuration for the billing service"""
import logging
from typing import Optional

from subpirate.core.config import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Third-party loggers that would otherwise echo every Stripe request or SQL statement
QUIET_LOGGERS = ("stripe", "urllib3", "sqlalchemy.engine", "opentelemetry")


def setup_logging(level: Optional[str] = None):
    """Configure root logging for the API process and the catalog sync CLI"""
    level_name = (level or settings.LOG_LEVEL).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# Delivery and job logs, filterable by name in the collector
webhook_logger = logging.getLogger("webhook")
catalog_sync_logger = logging.getLogger("catalog_sync")
checkout_logger = logging.getLogger("checkout")
