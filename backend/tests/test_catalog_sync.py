"""
Tests for the bulk catalog sync job.
"""
import asyncio
from unittest.mock import Mock, patch

import pytest
import stripe
from sqlalchemy.orm import Session

from factories import stripe_price, stripe_product
from subpirate.models.price import Price
from subpirate.models.product import Product
from subpirate.services.catalog_sync import (
    CatalogSyncJob, LocalPrice, LocalProduct, SyncReport, diff_catalog,
)
from subpirate.services.stripe_gateway import StripeGateway
from subpirate.tasks.scheduler import catalog_sync_scheduler_task


def run_job(db_session: Session, gateway: Mock, batch_size: int = 50) -> SyncReport:
    report = CatalogSyncJob(lambda: db_session, gateway, batch_size=batch_size).run()
    db_session.expire_all()
    return report


def remote_catalog(gateway: Mock, products, prices):
    gateway.list_active_products.return_value = products
    gateway.list_active_prices.return_value = prices


@pytest.mark.critical
class TestDiffCatalog:
    """Pure diff of remote against local snapshots"""

    def test_missing_remote_product_is_deactivated(self):
        diff = diff_catalog(
            [stripe_product("p1", name="Pro")],
            [],
            [LocalProduct("p1", "Pro", True, None, {}), LocalProduct("p2", "Old", True, None, {})],
            [],
        )

        assert diff.product_inserts == []
        assert diff.product_updates == []
        assert diff.product_deactivations == ["p2"]

    def test_already_inactive_rows_are_left_alone(self):
        diff = diff_catalog([], [], [LocalProduct("p2", "Old", False)], [LocalPrice("price_2", "p2", False, 100)])
        assert diff.is_empty

    def test_inserts_and_updates(self):
        diff = diff_catalog(
            [stripe_product("p1", name="Pro v2"), stripe_product("p3")],
            [stripe_price("price_1", product="p1"), stripe_price("price_3", product="p3")],
            [LocalProduct("p1", "Pro", True, None, {})],
            [LocalPrice("price_1", "p1", True, None)],
        )

        assert [p["id"] for p in diff.product_inserts] == ["p3"]
        assert [p["id"] for p in diff.product_updates] == ["p1"]
        assert [p["id"] for p in diff.price_inserts] == ["price_3"]
        # missing local amount is backfilled
        assert [p["id"] for p in diff.price_updates] == ["price_1"]

    def test_amount_change_alone_is_not_divergence(self):
        diff = diff_catalog(
            [stripe_product("p1")],
            [stripe_price("price_1", product="p1", unit_amount=9900)],
            [LocalProduct("p1", "Pro", True, None, {})],
            [LocalPrice("price_1", "p1", True, 4900)],
        )
        assert diff.is_empty

    def test_incomplete_listing_disables_deactivation(self):
        diff = diff_catalog(
            [stripe_product("p1")],
            [],
            [LocalProduct("p1", "Pro", True, None, {}), LocalProduct("p2", "Old", True, None, {})],
            [LocalPrice("price_2", "p2", True, 4900)],
            deactivate_products=False,
        )

        assert diff.product_deactivations == []
        assert diff.price_deactivations == ["price_2"]

    def test_metadata_change_is_divergence(self):
        diff = diff_catalog(
            [stripe_product("p1", metadata={"feature_export_data": "true"})],
            [],
            [LocalProduct("p1", "Pro", True, None, {})],
            [],
        )
        assert [p["id"] for p in diff.product_updates] == ["p1"]


@pytest.mark.critical
class TestCatalogSyncJob:

    def test_second_run_makes_no_writes(self, db_session: Session, gateway: Mock):
        remote_catalog(
            gateway,
            [stripe_product("p1", name="Starter"), stripe_product("p2", name="Pro", metadata={"feature_api_access": "true"})],
            [stripe_price("price_1", product="p1", unit_amount=1900), stripe_price("price_2", product="p2")],
        )

        first = run_job(db_session, gateway)
        second = run_job(db_session, gateway)

        assert first.products.added == 2
        assert first.prices.added == 2
        assert first.exit_code == 0
        assert second.writes == 0
        assert second.status == "success"
        assert db_session.query(Product).count() == 2
        assert db_session.query(Price).count() == 2

    def test_product_missing_remotely_is_deactivated_once(self, db_session: Session, gateway: Mock):
        db_session.add_all([
            Product(stripe_product_id="p1", name="Pro", active=True, product_metadata={}),
            Product(stripe_product_id="p2", name="Old", active=True, product_metadata={}),
        ])
        db_session.commit()
        remote_catalog(gateway, [stripe_product("p1", name="Pro")], [])

        report = run_job(db_session, gateway)

        assert report.products.added == 0
        assert report.products.updated == 0
        assert report.products.deactivated == 1
        assert report.writes == 1
        rows = {row.stripe_product_id: row for row in db_session.query(Product).all()}
        assert len(rows) == 2
        assert rows["p1"].active is True
        assert rows["p2"].active is False

    def test_missing_price_is_deactivated(self, db_session: Session, gateway: Mock):
        db_session.add(Product(stripe_product_id="p1", name="Pro", active=True, product_metadata={}))
        db_session.add(Price(stripe_price_id="price_old", stripe_product_id="p1", unit_amount=4900, active=True))
        db_session.commit()
        remote_catalog(gateway, [stripe_product("p1", name="Pro")], [])

        report = run_job(db_session, gateway)

        assert report.prices.deactivated == 1
        assert db_session.query(Price).one().active is False

    def test_price_for_product_outside_active_list_fetches_product(self, db_session: Session, gateway: Mock):
        gateway.retrieve_product.return_value = stripe_product("p_archived", name="Archived", active=False)
        remote_catalog(gateway, [], [stripe_price("price_1", product="p_archived")])

        report = run_job(db_session, gateway)

        assert report.prices.added == 1
        assert db_session.query(Product).one().stripe_product_id == "p_archived"

    def test_failed_item_does_not_block_siblings(self, db_session: Session, gateway: Mock):
        gateway.retrieve_product.side_effect = stripe.InvalidRequestError(
            "No such product: 'p_gone'", "id", http_status=404
        )
        remote_catalog(
            gateway,
            [stripe_product("p1")],
            [stripe_price("price_ok", product="p1"), stripe_price("price_bad", product="p_gone")],
        )

        report = run_job(db_session, gateway)

        assert report.prices.added == 1
        assert report.prices.failed == 1
        assert report.status == "partial"
        assert report.exit_code == 1
        assert any("price_bad" in failure for failure in report.failures)
        assert [row.stripe_price_id for row in db_session.query(Price).all()] == ["price_ok"]

    def test_fetch_failure_aborts_without_writes(self, db_session: Session, gateway: Mock):
        gateway.list_active_products.side_effect = stripe.APIConnectionError("Network down")

        report = run_job(db_session, gateway)

        assert report.status == "failed"
        assert report.exit_code == 1
        assert report.error
        assert report.writes == 0
        gateway.list_active_prices.assert_not_called()

    @patch("stripe.Price.list")
    @patch("stripe.Product.list")
    def test_truncated_listing_keeps_unseen_rows_active(self, mock_product_list, mock_price_list,
                                                        db_session: Session):
        db_session.add_all([
            Product(stripe_product_id=f"p{i}", name=f"Plan {i}", active=True, product_metadata={})
            for i in range(3)
        ])
        db_session.commit()
        mock_product_list.return_value = {"data": [stripe_product("p0", name="Plan 0")], "has_more": True}
        mock_price_list.return_value = {"data": [], "has_more": False}
        stripe_gateway = StripeGateway("sk_test_123", page_limit=1, max_pages=1, sleep=Mock())

        report = run_job(db_session, stripe_gateway)

        assert report.products.fetched == 1
        assert report.products.deactivated == 0
        assert report.truncated == ["products"]
        assert report.status == "partial"
        assert report.exit_code == 1
        assert "Deactivation skipped: products listing truncated by the page limit" in report.summary_lines()
        assert {row.stripe_product_id: row.active for row in db_session.query(Product).all()} == {
            "p0": True, "p1": True, "p2": True,
        }

    def test_run_is_traced(self, db_session: Session, gateway: Mock, finished_spans):
        remote_catalog(gateway, [stripe_product("p1")], [stripe_price("price_1", product="p1")])

        report = run_job(db_session, gateway)

        span = next(s for s in finished_spans.get_finished_spans() if s.name == "stripe.catalog_sync")
        assert span.attributes["billing.writes"] == report.writes == 2
        assert span.attributes["billing.failed"] == 0
        assert span.attributes["billing.outcome"] == "success"

    def test_small_batches(self, db_session: Session, gateway: Mock):
        remote_catalog(gateway, [stripe_product(f"p{i}", name=f"Plan {i}") for i in range(5)], [])

        report = run_job(db_session, gateway, batch_size=2)

        assert report.products.added == 5
        assert db_session.query(Product).count() == 5


@pytest.mark.medium
class TestSyncReport:

    def test_summary_lines(self):
        report = SyncReport()
        report.products.added = 1
        report.prices.failed = 1
        report.failures.append("price insert price_bad: boom")

        lines = report.summary_lines()

        assert lines[0].startswith("Products: fetched=0 added=1")
        assert "Failed: price insert price_bad: boom" in lines
        assert lines[-1] == "Status: partial"


@pytest.mark.medium
class TestSyncEntryPoints:

    @patch("scripts.sync_stripe_catalog.CatalogSyncJob")
    @patch("scripts.sync_stripe_catalog.build_gateway")
    def test_cli_exit_code_follows_report(self, mock_build_gateway, mock_job_class):
        from scripts import sync_stripe_catalog

        mock_job_class.return_value.run.return_value = Mock(exit_code=1)

        assert sync_stripe_catalog.main(["--mode", "test", "--batch-size", "10"]) == 1
        assert mock_build_gateway.call_args.kwargs["api_key"] == "sk_test_dummy"
        assert mock_job_class.call_args.kwargs["batch_size"] == 10

    def test_scheduler_runs_job_until_cancelled(self, gateway: Mock):
        job = Mock()
        job.run.return_value = SyncReport()

        async def drive():
            task = asyncio.create_task(catalog_sync_scheduler_task(gateway, interval_seconds=0.01))
            for _ in range(200):
                if job.run.called:
                    break
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        with patch("subpirate.tasks.scheduler.CatalogSyncJob", return_value=job):
            asyncio.run(drive())

        assert job.run.called

    def test_shutdown_waits_for_scheduler_to_stop(self, test_settings):
        from subpirate import main

        events = []

        async def scheduler_task(gateway):
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                await asyncio.sleep(0)
                events.append("scheduler stopped")
                raise

        async def drive():
            async with main.lifespan(main.app):
                await asyncio.sleep(0)
                await asyncio.sleep(0)
            events.append("lifespan exited")

        scheduled_settings = test_settings.model_copy(update={"CATALOG_SYNC_INTERVAL_SECONDS": 3600})
        with patch.object(main, "settings", scheduled_settings), patch.object(main, "init_db"), \
                patch("subpirate.tasks.scheduler.catalog_sync_scheduler_task", scheduler_task):
            asyncio.run(drive())

        assert events == ["scheduler stopped", "lifespan exited"]
