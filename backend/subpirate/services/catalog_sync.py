"""Bulk catalog sync: diff Stripe's active products and prices against the local tables.

The diff is computed only from two snapshots taken at the start of a run, so the job can run
on any cadence, alongside webhook delivery, and repairs whatever events were missed.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from subpirate.core.logging import catalog_sync_logger
from subpirate.core.metrics import catalog_sync_operations_counter, catalog_sync_runs_counter
from subpirate.core.otel import billing_span, mark_span_failed
from subpirate.models.price import Price
from subpirate.models.product import Product
from subpirate.services.reconciliation import (
    apply_price_update, ensure_product, price_values, product_values, upsert_price, upsert_product,
)
from subpirate.services.stripe_gateway import StripeGateway, get_stripe_value

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50


# ============================================================================
# SNAPSHOTS & DIFF
# ============================================================================

@dataclass(frozen=True)
class LocalProduct:
    stripe_product_id: str
    name: str
    active: bool
    description: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None

    @classmethod
    def from_row(cls, row: Product) -> "LocalProduct":
        return cls(row.stripe_product_id, row.name, bool(row.active), row.description, row.product_metadata)


@dataclass(frozen=True)
class LocalPrice:
    stripe_price_id: str
    stripe_product_id: str
    active: bool
    unit_amount: Optional[int] = None

    @classmethod
    def from_row(cls, row: Price) -> "LocalPrice":
        return cls(row.stripe_price_id, row.stripe_product_id, bool(row.active), row.unit_amount)


@dataclass
class CatalogDiff:
    product_inserts: List[Dict] = field(default_factory=list)
    product_updates: List[Dict] = field(default_factory=list)
    product_deactivations: List[str] = field(default_factory=list)
    price_inserts: List[Dict] = field(default_factory=list)
    price_updates: List[Dict] = field(default_factory=list)
    price_deactivations: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not any((
            self.product_inserts, self.product_updates, self.product_deactivations,
            self.price_inserts, self.price_updates, self.price_deactivations,
        ))


def _product_changed(remote: Dict, local: LocalProduct) -> bool:
    values = product_values(remote)
    return (
        values["name"] != local.name
        or values["active"] != local.active
        or values["description"] != local.description
        or values["product_metadata"] != (local.metadata or {})
    )


def _price_changed(remote: Dict, local: LocalPrice) -> bool:
    values = price_values(remote)
    if values["active"] != local.active or values["stripe_product_id"] != local.stripe_product_id:
        return True
    # Amounts are immutable; only a missing local amount counts as divergence
    return local.unit_amount is None and values["unit_amount"] is not None


def diff_catalog(
    remote_products: Iterable[Dict],
    remote_prices: Iterable[Dict],
    local_products: Iterable[LocalProduct],
    local_prices: Iterable[LocalPrice],
    deactivate_products: bool = True,
    deactivate_prices: bool = True,
) -> CatalogDiff:
    """Pure diff of the remote active catalog against local snapshots.

    Pass `deactivate_products=False` or `deactivate_prices=False` when the corresponding remote
    listing is incomplete; absence from a partial listing says nothing about a row.
    """
    diff = CatalogDiff()
    local_products_by_id = {p.stripe_product_id: p for p in local_products}
    local_prices_by_id = {p.stripe_price_id: p for p in local_prices}

    remote_product_ids = set()
    for remote in remote_products:
        product_id = get_stripe_value(remote, "id")
        remote_product_ids.add(product_id)
        local = local_products_by_id.get(product_id)
        if local is None:
            diff.product_inserts.append(remote)
        elif _product_changed(remote, local):
            diff.product_updates.append(remote)

    remote_price_ids = set()
    for remote in remote_prices:
        price_id = get_stripe_value(remote, "id")
        remote_price_ids.add(price_id)
        local = local_prices_by_id.get(price_id)
        if local is None:
            diff.price_inserts.append(remote)
        elif _price_changed(remote, local):
            diff.price_updates.append(remote)

    if deactivate_products:
        diff.product_deactivations = sorted(
            product_id for product_id, local in local_products_by_id.items()
            if local.active and product_id not in remote_product_ids
        )
    if deactivate_prices:
        diff.price_deactivations = sorted(
            price_id for price_id, local in local_prices_by_id.items()
            if local.active and price_id not in remote_price_ids
        )
    return diff


# ============================================================================
# REPORT
# ============================================================================

@dataclass
class EntityCounts:
    fetched: int = 0
    added: int = 0
    updated: int = 0
    deactivated: int = 0
    failed: int = 0


@dataclass
class SyncReport:
    products: EntityCounts = field(default_factory=EntityCounts)
    prices: EntityCounts = field(default_factory=EntityCounts)
    failures: List[str] = field(default_factory=list)
    truncated: List[str] = field(default_factory=list)  # entities whose listing hit the page cap
    error: Optional[str] = None  # set when the run could not start (e.g. listing failed)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def failed_count(self) -> int:
        return self.products.failed + self.prices.failed

    @property
    def writes(self) -> int:
        return sum(
            counts.added + counts.updated + counts.deactivated
            for counts in (self.products, self.prices)
        )

    @property
    def ok(self) -> bool:
        return self.error is None and self.failed_count == 0 and not self.truncated

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    @property
    def status(self) -> str:
        if self.error is not None:
            return "failed"
        return "success" if self.failed_count == 0 and not self.truncated else "partial"

    def summary_lines(self) -> List[str]:
        lines = []
        for label, counts in (("Products", self.products), ("Prices", self.prices)):
            lines.append(
                f"{label}: fetched={counts.fetched} added={counts.added} updated={counts.updated} "
                f"deactivated={counts.deactivated} failed={counts.failed}"
            )
        if self.error:
            lines.append(f"Run aborted: {self.error}")
        for entity in self.truncated:
            lines.append(f"Deactivation skipped: {entity} listing truncated by the page limit")
        for failure in self.failures:
            lines.append(f"Failed: {failure}")
        lines.append(f"Status: {self.status}")
        return lines


# ============================================================================
# JOB
# ============================================================================

class CatalogSyncJob:
    """One pass of the catalog reconciliation.

    Each write category is applied in batches inside a SAVEPOINT. A batch that fails is
    replayed one item at a time so sibling writes still land; only the failing items are
    counted as failures. Committed writes are never undone by later failures.
    """

    def __init__(self, session_factory: Callable[[], Session], gateway: StripeGateway,
                 batch_size: int = DEFAULT_BATCH_SIZE):
        self.session_factory = session_factory
        self.gateway = gateway
        self.batch_size = max(1, batch_size)

    def run(self) -> SyncReport:
        with billing_span("stripe.catalog_sync", batch_size=self.batch_size) as span:
            report = self._sync()
            span.set_attribute("billing.writes", report.writes)
            span.set_attribute("billing.failed", report.failed_count)
            if report.ok:
                span.set_attribute("billing.outcome", report.status)
            else:
                mark_span_failed(span, report.status, report.error)
        return report

    def _sync(self) -> SyncReport:
        report = SyncReport()
        catalog_sync_logger.info("Starting Stripe catalog sync")

        try:
            remote_products = self.gateway.list_active_products()
            remote_prices = self.gateway.list_active_prices()
        except Exception as e:
            logger.error(f"Failed to fetch Stripe catalog: {e}", exc_info=True)
            report.error = f"fetch failed: {e}"
            return self._finish(report)

        report.products.fetched = len(remote_products)
        report.prices.fetched = len(remote_prices)
        for entity, listing in (("products", remote_products), ("prices", remote_prices)):
            if getattr(listing, "truncated", False):
                report.truncated.append(entity)
                logger.warning(f"Stripe {entity} listing was truncated; skipping {entity} deactivation this run")
        catalog_sync_logger.info(
            f"Fetched {len(remote_products)} active products and {len(remote_prices)} active prices from Stripe"
        )

        db = self.session_factory()
        try:
            local_products = [LocalProduct.from_row(row) for row in db.query(Product).all()]
            local_prices = [LocalPrice.from_row(row) for row in db.query(Price).all()]
            diff = diff_catalog(
                remote_products, remote_prices, local_products, local_prices,
                deactivate_products="products" not in report.truncated,
                deactivate_prices="prices" not in report.truncated,
            )
            if diff.is_empty:
                catalog_sync_logger.info("Local catalog already matches Stripe")
            self.apply(db, diff, report)
        except Exception as e:
            db.rollback()
            logger.error(f"Catalog sync aborted: {e}", exc_info=True)
            report.error = str(e)
        finally:
            db.close()

        return self._finish(report)

    def apply(self, db: Session, diff: CatalogDiff, report: SyncReport):
        """Apply a diff in dependency order: products before the prices that reference them"""
        self._apply_category(db, "product", "insert", diff.product_inserts,
                             lambda item: upsert_product(db, item), report.products, "added", report)
        self._apply_category(db, "product", "update", diff.product_updates,
                             lambda item: upsert_product(db, item), report.products, "updated", report)
        self._apply_category(db, "price", "insert", diff.price_inserts,
                             lambda item: upsert_price(db, self.gateway, item), report.prices, "added", report)
        self._apply_category(db, "price", "update", diff.price_updates,
                             lambda item: self._update_price(db, item), report.prices, "updated", report)
        self._apply_category(db, "product", "deactivate", diff.product_deactivations,
                             lambda product_id: self._deactivate(db, Product, Product.stripe_product_id, product_id),
                             report.products, "deactivated", report)
        self._apply_category(db, "price", "deactivate", diff.price_deactivations,
                             lambda price_id: self._deactivate(db, Price, Price.stripe_price_id, price_id),
                             report.prices, "deactivated", report)

    def _apply_category(self, db: Session, entity: str, operation: str, items: Sequence[Any],
                        write: Callable[[Any], Any], counts: EntityCounts, counter: str,
                        report: SyncReport):
        for start in range(0, len(items), self.batch_size):
            batch = items[start:start + self.batch_size]
            try:
                with db.begin_nested():
                    for item in batch:
                        write(item)
                db.commit()
                self._record(entity, operation, "success", len(batch))
                setattr(counts, counter, getattr(counts, counter) + len(batch))
                continue
            except Exception as e:
                logger.warning(f"Batch of {len(batch)} {entity} {operation}s failed, retrying one by one: {e}")

            for item in batch:
                item_id = item if isinstance(item, str) else get_stripe_value(item, "id")
                try:
                    with db.begin_nested():
                        write(item)
                    db.commit()
                except Exception as e:
                    counts.failed += 1
                    report.failures.append(f"{entity} {operation} {item_id}: {e}")
                    self._record(entity, operation, "failure")
                    logger.error(f"Failed to {operation} {entity} {item_id}: {e}")
                else:
                    setattr(counts, counter, getattr(counts, counter) + 1)
                    self._record(entity, operation, "success")

    def _update_price(self, db: Session, remote: Dict):
        values = price_values(remote)
        row = db.query(Price).filter(Price.stripe_price_id == values["stripe_price_id"]).first()
        if row is None:
            raise LookupError(f"price {values['stripe_price_id']} disappeared locally")
        if row.stripe_product_id != values["stripe_product_id"]:
            ensure_product(db, self.gateway, get_stripe_value(remote, "product"))
        apply_price_update(row, values)
        db.flush()

    @staticmethod
    def _deactivate(db: Session, model, column, external_id: str):
        row = db.query(model).filter(column == external_id).first()
        if row is None:
            raise LookupError(f"{model.__tablename__} row {external_id} disappeared locally")
        row.active = False
        db.flush()

    @staticmethod
    def _record(entity: str, operation: str, status: str, amount: int = 1):
        catalog_sync_operations_counter.labels(entity=entity, operation=operation, status=status).inc(amount)

    @staticmethod
    def _finish(report: SyncReport) -> SyncReport:
        report.finished_at = datetime.now(timezone.utc)
        catalog_sync_runs_counter.labels(status=report.status).inc()
        for line in report.summary_lines():
            catalog_sync_logger.info(line)
        return report
