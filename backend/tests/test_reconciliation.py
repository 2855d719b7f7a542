"""
Tests for the reconciliation handlers (subscriptions, products, prices, checkout, invoices).
"""
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
import stripe
from sqlalchemy.orm import Session

from factories import T_END, stripe_customer, stripe_price, stripe_product, stripe_subscription
from subpirate.core.errors import IdentityResolutionError
from subpirate.models.feature import Feature, ProductFeature
from subpirate.models.price import Price
from subpirate.models.product import Product
from subpirate.models.subscription import Subscription
from subpirate.models.user import User
from subpirate.services.reconciliation import (
    apply_price_update, deactivate_price, deactivate_product, handle_checkout_completed,
    handle_invoice_event, invoice_subscription_id, price_values, resolve_user_id, subscription_values,
    sync_price, sync_product, sync_subscription, to_datetime,
)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@pytest.mark.critical
class TestSubscriptionSync:
    """Subscription upserts keyed by the Stripe subscription id"""

    def test_creates_row_from_customer_metadata(self, db_session: Session, gateway: Mock, test_user: User):
        gateway.retrieve_customer.return_value = stripe_customer("cus_1", user_id="u_1")

        row = sync_subscription(db_session, gateway, stripe_subscription(status="trialing"))

        assert row.user_id == "u_1"
        assert row.stripe_subscription_id == "sub_1"
        assert row.stripe_customer_id == "cus_1"
        assert row.stripe_price_id == "price_1"
        assert row.status == "trialing"
        assert as_utc(row.current_period_end) == datetime.fromtimestamp(T_END, tz=timezone.utc)

    def test_same_event_twice_leaves_one_row(self, db_session: Session, gateway: Mock, test_user: User):
        gateway.retrieve_customer.return_value = stripe_customer()
        subscription = stripe_subscription(status="active", cancel_at_period_end=True)

        sync_subscription(db_session, gateway, subscription)
        first = {k: getattr(db_session.query(Subscription).one(), k) for k in ("status", "cancel_at_period_end")}
        sync_subscription(db_session, gateway, subscription)

        rows = db_session.query(Subscription).all()
        assert len(rows) == 1
        assert {k: getattr(rows[0], k) for k in first} == first

    def test_user_recovered_from_prior_row_for_same_customer(self, db_session: Session, gateway: Mock,
                                                             test_user: User):
        db_session.add(Subscription(user_id="u_1", stripe_subscription_id="sub_old",
                                    stripe_customer_id="cus_1", status="canceled"))
        db_session.commit()
        gateway.retrieve_customer.return_value = stripe_customer("cus_1", user_id=None)

        row = sync_subscription(db_session, gateway, stripe_subscription("sub_new", status="active"))

        assert row.user_id == "u_1"
        assert row.stripe_subscription_id == "sub_new"
        assert row.status == "active"
        assert db_session.query(Subscription).count() == 1

    def test_subscription_metadata_is_last_resort(self, db_session: Session, gateway: Mock, test_user: User):
        gateway.retrieve_customer.return_value = stripe_customer(user_id=None)
        subscription = stripe_subscription(metadata={"user_id": "u_1"})

        assert sync_subscription(db_session, gateway, subscription).user_id == "u_1"

    def test_customer_lookup_failure_falls_through(self, db_session: Session, gateway: Mock, test_user: User):
        gateway.retrieve_customer.side_effect = stripe.APIConnectionError("Network down")

        row = sync_subscription(db_session, gateway, stripe_subscription(), override_user_id="u_1")

        assert row.user_id == "u_1"

    def test_no_user_writes_nothing(self, db_session: Session, gateway: Mock):
        gateway.retrieve_customer.return_value = stripe_customer(user_id=None)

        with pytest.raises(IdentityResolutionError):
            sync_subscription(db_session, gateway, stripe_subscription())

        assert db_session.query(Subscription).count() == 0
        assert db_session.query(User).count() == 0

    def test_user_known_only_to_auth_backend_is_mirrored(self, db_session: Session, gateway: Mock):
        gateway.retrieve_customer.return_value = stripe_customer("cus_1", user_id="u_9")

        row = sync_subscription(db_session, gateway, stripe_subscription("sub_1", status="trialing"))

        assert row.user_id == "u_9"
        user = db_session.query(User).one()
        assert user.id == "u_9"
        assert user.email is None
        assert user.subscriptions == [row]

    def test_existing_profile_is_left_alone(self, db_session: Session, gateway: Mock, test_user: User):
        gateway.retrieve_customer.return_value = stripe_customer("cus_1", user_id="u_1")

        sync_subscription(db_session, gateway, stripe_subscription())

        user = db_session.query(User).one()
        assert user.email == "pirate@example.com"
        assert user.full_name == "Test Pirate"

    def test_expanded_customer_is_not_refetched(self, db_session: Session, gateway: Mock, test_user: User):
        subscription = stripe_subscription(customer=stripe_customer("cus_1", user_id="u_1"))

        row = sync_subscription(db_session, gateway, subscription)

        assert row.stripe_customer_id == "cus_1"
        gateway.retrieve_customer.assert_not_called()


@pytest.mark.high
class TestSubscriptionValues:

    def test_period_falls_back_to_item(self):
        subscription = stripe_subscription(current_period_start=None, current_period_end=None)
        subscription["items"]["data"][0]["current_period_end"] = T_END

        values = subscription_values(subscription)

        assert values["current_period_end"] == datetime.fromtimestamp(T_END, tz=timezone.utc)
        assert values["current_period_start"] is None

    def test_to_datetime(self):
        assert to_datetime(None) is None
        assert to_datetime(0) is None
        assert to_datetime(T_END).tzinfo == timezone.utc

    def test_resolve_user_id_order(self, gateway: Mock):
        existing = Subscription(user_id="u_existing", stripe_subscription_id="sub_1")
        gateway.retrieve_customer.return_value = stripe_customer(user_id="u_customer")
        assert resolve_user_id(gateway, "cus_1", existing, "u_override") == "u_customer"

        gateway.retrieve_customer.return_value = stripe_customer(user_id=None)
        assert resolve_user_id(gateway, "cus_1", existing, "u_override") == "u_existing"
        assert resolve_user_id(gateway, "cus_1", None, None, "u_override") == "u_override"
        assert resolve_user_id(gateway, None, None) is None


@pytest.mark.critical
class TestProductAndPriceSync:

    def test_price_for_unknown_product_creates_product_first(self, db_session: Session, gateway: Mock):
        gateway.retrieve_product.return_value = stripe_product("prod_1", name="Pro")

        price = sync_price(db_session, gateway, stripe_price("price_1", product="prod_1"))

        gateway.retrieve_product.assert_called_once_with("prod_1")
        product = db_session.query(Product).filter(Product.stripe_product_id == "prod_1").one()
        assert product.name == "Pro"
        assert price.stripe_product_id == "prod_1"
        assert price.product is product
        assert price.unit_amount == 4900
        assert price.recurring_interval == "month"

    def test_expanded_product_is_not_refetched(self, db_session: Session, gateway: Mock):
        sync_price(db_session, gateway, stripe_price("price_1", product=stripe_product("prod_1")))

        gateway.retrieve_product.assert_not_called()
        assert db_session.query(Product).count() == 1

    def test_product_deletion_deactivates(self, db_session: Session):
        sync_product(db_session, stripe_product("prod_1"))

        deactivate_product(db_session, stripe_product("prod_1", active=True))

        rows = db_session.query(Product).all()
        assert len(rows) == 1
        assert rows[0].active is False

    def test_price_deletion_deactivates(self, db_session: Session, gateway: Mock):
        sync_product(db_session, stripe_product("prod_1"))
        sync_price(db_session, gateway, stripe_price("price_1"))

        deactivate_price(db_session, stripe_price("price_1"))

        assert db_session.query(Price).one().active is False

    def test_deleting_unknown_price_is_a_no_op(self, db_session: Session):
        assert deactivate_price(db_session, stripe_price("price_never_seen")) is None
        assert db_session.query(Price).count() == 0

    def test_product_metadata_syncs_features(self, db_session: Session):
        sync_product(db_session, stripe_product("prod_1", metadata={
            "feature_export_data": "true",
            "feature_limit_projects": "5",
        }))

        rows = {row.feature_key: row for row in db_session.query(ProductFeature).all()}
        assert set(rows) == {"export_data", "projects"}
        assert rows["projects"].limit == 5
        assert db_session.query(Feature).filter(Feature.feature_key == "projects").one().description == \
            "Projects (Limit: 5)"

    def test_removed_feature_is_disabled(self, db_session: Session):
        sync_product(db_session, stripe_product("prod_1", metadata={"feature_export_data": "true",
                                                                    "feature_api_access": "true"}))
        sync_product(db_session, stripe_product("prod_1", metadata={"feature_export_data": "true"}))

        rows = {row.feature_key: row for row in db_session.query(ProductFeature).all()}
        assert rows["export_data"].enabled is True
        assert rows["api_access"].enabled is False


@pytest.mark.high
class TestPriceImmutability:

    def test_amount_change_is_ignored(self):
        row = Price(stripe_price_id="price_1", stripe_product_id="prod_1", currency="usd", unit_amount=4900,
                    recurring_interval="month", type="recurring", active=True, price_metadata={})

        changed = apply_price_update(row, price_values(stripe_price("price_1", unit_amount=5900)))

        assert not changed
        assert row.unit_amount == 4900

    def test_missing_amount_is_backfilled(self):
        row = Price(stripe_price_id="price_1", stripe_product_id="prod_1", currency="usd", unit_amount=None,
                    recurring_interval="month", type="recurring", active=True, price_metadata={})

        assert apply_price_update(row, price_values(stripe_price("price_1", unit_amount=4900)))
        assert row.unit_amount == 4900

    def test_active_flag_updates(self):
        row = Price(stripe_price_id="price_1", stripe_product_id="prod_1", currency="usd", unit_amount=4900,
                    recurring_interval="month", type="recurring", active=True, price_metadata={})

        assert apply_price_update(row, price_values(stripe_price("price_1", active=False)))
        assert row.active is False


@pytest.mark.critical
class TestCheckoutCompleted:

    @staticmethod
    def session(**extra):
        session = {
            "id": "cs_1",
            "object": "checkout.session",
            "mode": "subscription",
            "subscription": "sub_1",
            "customer": "cus_1",
            "client_reference_id": "u_1",
            "metadata": {},
        }
        session.update(extra)
        return session

    def test_records_subscription_and_catalog(self, db_session: Session, gateway: Mock, test_user: User):
        gateway.retrieve_subscription.return_value = stripe_subscription()
        gateway.retrieve_customer.return_value = stripe_customer(user_id=None)
        gateway.retrieve_price.return_value = stripe_price()
        gateway.retrieve_product.return_value = stripe_product()

        row = handle_checkout_completed(db_session, gateway, self.session())

        assert row.user_id == "u_1"
        assert row.stripe_subscription_id == "sub_1"
        assert db_session.query(Price).count() == 1
        assert db_session.query(Product).count() == 1

    def test_replaces_users_previous_row(self, db_session: Session, gateway: Mock, test_user: User):
        db_session.add(Subscription(user_id="u_1", stripe_subscription_id="sub_old",
                                    stripe_customer_id="cus_other", status="canceled"))
        db_session.commit()
        gateway.retrieve_subscription.return_value = stripe_subscription()
        gateway.retrieve_customer.return_value = stripe_customer(user_id="u_1")
        gateway.retrieve_price.return_value = stripe_price()
        gateway.retrieve_product.return_value = stripe_product()

        handle_checkout_completed(db_session, gateway, self.session())

        row = db_session.query(Subscription).one()
        assert row.stripe_subscription_id == "sub_1"
        assert row.stripe_customer_id == "cus_1"

    def test_client_reference_id_without_profile(self, db_session: Session, gateway: Mock):
        gateway.retrieve_subscription.return_value = stripe_subscription()
        gateway.retrieve_customer.return_value = stripe_customer(user_id=None)
        gateway.retrieve_price.return_value = stripe_price()
        gateway.retrieve_product.return_value = stripe_product()

        row = handle_checkout_completed(db_session, gateway, self.session(client_reference_id="u_new"))

        assert row.user_id == "u_new"
        assert db_session.query(User).one().id == "u_new"

    def test_payment_mode_session_is_ignored(self, db_session: Session, gateway: Mock):
        assert handle_checkout_completed(db_session, gateway, self.session(mode="payment", subscription=None)) is None
        gateway.retrieve_subscription.assert_not_called()

    def test_no_user_raises(self, db_session: Session, gateway: Mock):
        gateway.retrieve_subscription.return_value = stripe_subscription()
        gateway.retrieve_customer.return_value = stripe_customer(user_id=None)

        with pytest.raises(IdentityResolutionError):
            handle_checkout_completed(db_session, gateway, self.session(client_reference_id=None))

        assert db_session.query(Subscription).count() == 0


@pytest.mark.high
class TestInvoiceEvents:

    def test_invoice_refetches_subscription(self, db_session: Session, gateway: Mock, test_user: User):
        gateway.retrieve_subscription.return_value = stripe_subscription(status="past_due")
        gateway.retrieve_customer.return_value = stripe_customer()

        row = handle_invoice_event(db_session, gateway, {"id": "in_1", "subscription": "sub_1"})

        gateway.retrieve_subscription.assert_called_once_with("sub_1")
        assert row.status == "past_due"

    def test_subscription_id_from_parent_details(self):
        invoice = {"id": "in_1", "parent": {"subscription_details": {"subscription": "sub_9"}}}
        assert invoice_subscription_id(invoice) == "sub_9"

    def test_invoice_without_subscription(self, db_session: Session, gateway: Mock):
        assert handle_invoice_event(db_session, gateway, {"id": "in_1"}) is None
        gateway.retrieve_subscription.assert_not_called()
