"""Reconciliation handlers: upsert local billing state from Stripe objects.

Every handler treats the incoming object as the latest known state and writes the whole row,
keyed by the Stripe id. Redelivered events therefore converge on the same row, and rows are
never deleted (deletion events deactivate).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from subpirate.core.errors import IdentityResolutionError
from subpirate.models.feature import Feature, ProductFeature
from subpirate.models.price import Price
from subpirate.models.product import Product
from subpirate.models.subscription import Subscription
from subpirate.models.user import User
from subpirate.services.entitlements import feature_description, feature_display_name, parse_feature_metadata
from subpirate.services.stripe_gateway import StripeGateway, get_stripe_value, stripe_id

logger = logging.getLogger(__name__)


def to_datetime(timestamp: Optional[int]) -> Optional[datetime]:
    """Stripe epoch seconds -> aware UTC datetime"""
    if not timestamp:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)


def _metadata(obj: Any) -> Dict[str, str]:
    return dict(get_stripe_value(obj, "metadata", {}) or {})


# ============================================================================
# IDENTITY RESOLUTION
# ============================================================================

def user_id_from_customer(gateway: StripeGateway, customer: Any) -> Optional[str]:
    """user_id stored in the Stripe customer's metadata, if any"""
    if customer is None:
        return None
    if isinstance(customer, str):
        try:
            customer = gateway.retrieve_customer(customer)
        except stripe.StripeError as e:
            logger.warning(f"Could not retrieve customer {customer} for identity resolution: {e}")
            return None
    return _metadata(customer).get("user_id") or None


def latest_subscription_for_customer(db: Session, customer_id: Optional[str]) -> Optional[Subscription]:
    if not customer_id:
        return None
    return (
        db.query(Subscription)
        .filter(Subscription.stripe_customer_id == customer_id)
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .first()
    )


def resolve_user_id(gateway: StripeGateway, customer: Any, existing: Optional[Subscription] = None,
                    *overrides: Optional[str]) -> Optional[str]:
    """Identity chain: customer metadata, then the matching local subscription row, then each
    explicit override in order. First non-empty value wins."""
    user_id = user_id_from_customer(gateway, customer)
    if user_id:
        return user_id

    if existing is not None and existing.user_id:
        logger.info(f"Resolved user {existing.user_id} from existing subscription {existing.stripe_subscription_id}")
        return existing.user_id

    for override in overrides:
        if override:
            return override
    return None


def ensure_user(db: Session, user_id: str) -> None:
    """Mirror an auth-backend user id locally so subscription rows can reference it.

    Only the id is written; an existing profile row is never touched.
    """
    if db.get(User, user_id) is not None:
        return
    try:
        with db.begin_nested():
            db.add(User(id=user_id))
    except IntegrityError:
        # Another delivery created it first
        logger.info(f"User {user_id} was created concurrently")
    else:
        logger.info(f"Created local user record for {user_id}")


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

def _first_item(subscription: Any) -> Dict:
    items = get_stripe_value(get_stripe_value(subscription, "items", {}), "data", [])
    return items[0] if items else {}


def subscription_values(subscription: Any) -> Dict:
    """Column values for a Subscription row built from a Stripe subscription"""
    item = _first_item(subscription)
    price = get_stripe_value(item, "price")

    # Newer API versions report the billing period on the item
    period_start = get_stripe_value(subscription, "current_period_start") or get_stripe_value(item, "current_period_start")
    period_end = get_stripe_value(subscription, "current_period_end") or get_stripe_value(item, "current_period_end")

    return {
        "stripe_subscription_id": get_stripe_value(subscription, "id"),
        "stripe_customer_id": stripe_id(get_stripe_value(subscription, "customer")),
        "stripe_price_id": stripe_id(price),
        "status": get_stripe_value(subscription, "status", "incomplete"),
        "quantity": get_stripe_value(item, "quantity", 1),
        "current_period_start": to_datetime(period_start),
        "current_period_end": to_datetime(period_end),
        "cancel_at_period_end": bool(get_stripe_value(subscription, "cancel_at_period_end", False)),
        "cancel_at": to_datetime(get_stripe_value(subscription, "cancel_at")),
        "canceled_at": to_datetime(get_stripe_value(subscription, "canceled_at")),
        "ended_at": to_datetime(get_stripe_value(subscription, "ended_at")),
        "trial_start": to_datetime(get_stripe_value(subscription, "trial_start")),
        "trial_end": to_datetime(get_stripe_value(subscription, "trial_end")),
        "stripe_created_at": to_datetime(get_stripe_value(subscription, "created")),
    }


def _write_subscription(db: Session, existing: Optional[Subscription], values: Dict) -> Subscription:
    if existing is not None:
        for key, value in values.items():
            setattr(existing, key, value)
        db.commit()
        return existing

    row = Subscription(**values)
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent delivery inserted the same subscription first
        db.rollback()
        row = db.query(Subscription).filter(
            Subscription.stripe_subscription_id == values["stripe_subscription_id"]
        ).first()
        if row is None:
            raise
        for key, value in values.items():
            setattr(row, key, value)
        db.commit()
    return row


def sync_subscription(db: Session, gateway: StripeGateway, subscription: Any,
                      override_user_id: Optional[str] = None) -> Subscription:
    """Upsert a Subscription row from a Stripe subscription object.

    Raises IdentityResolutionError without writing anything when no user id can be found.
    """
    values = subscription_values(subscription)
    sub_id = values["stripe_subscription_id"]
    customer = get_stripe_value(subscription, "customer")
    customer_id = values["stripe_customer_id"]

    existing = db.query(Subscription).filter(Subscription.stripe_subscription_id == sub_id).first()
    if existing is None:
        existing = latest_subscription_for_customer(db, customer_id)

    user_id = resolve_user_id(gateway, customer, existing, override_user_id, _metadata(subscription).get("user_id"))
    if not user_id:
        logger.error(f"Unable to determine user_id for subscription {sub_id} (customer {customer_id}); skipping")
        raise IdentityResolutionError(f"No user_id for subscription {sub_id} (customer {customer_id})")

    values["user_id"] = user_id
    ensure_user(db, user_id)
    row = _write_subscription(db, existing, values)
    action = "Updated" if existing is not None else "Created"
    logger.info(f"{action} subscription {sub_id} for user {user_id}: status={values['status']}")
    return row


def sync_subscription_by_id(db: Session, gateway: StripeGateway, subscription_id: str,
                            override_user_id: Optional[str] = None) -> Subscription:
    """Re-fetch a subscription from Stripe and reconcile it"""
    subscription = gateway.retrieve_subscription(subscription_id)
    return sync_subscription(db, gateway, subscription, override_user_id=override_user_id)


# ============================================================================
# PRODUCTS & FEATURES
# ============================================================================

def product_values(product: Any) -> Dict:
    return {
        "stripe_product_id": get_stripe_value(product, "id"),
        "name": get_stripe_value(product, "name", "") or get_stripe_value(product, "id"),
        "description": get_stripe_value(product, "description"),
        "active": bool(get_stripe_value(product, "active", True)),
        "product_metadata": _metadata(product),
    }


def sync_product_features(db: Session, stripe_product_id: str, metadata: Optional[Dict[str, str]]) -> int:
    """Make the product's feature join rows match its metadata. Returns the number of entries."""
    entries = parse_feature_metadata(metadata)
    existing_rows = {
        row.feature_key: row
        for row in db.query(ProductFeature).filter(ProductFeature.stripe_product_id == stripe_product_id).all()
    }

    for entry in entries:
        feature = db.query(Feature).filter(Feature.feature_key == entry.key).first()
        if feature is None:
            db.add(Feature(
                feature_key=entry.key,
                name=feature_display_name(entry.key),
                description=feature_description(entry.key, entry.limit),
            ))
            db.flush()
            logger.info(f"Created feature '{entry.key}'")

        row = existing_rows.pop(entry.key, None)
        if row is None:
            db.add(ProductFeature(
                stripe_product_id=stripe_product_id,
                feature_key=entry.key,
                enabled=entry.enabled,
                limit=entry.limit,
            ))
        else:
            row.enabled = entry.enabled
            row.limit = entry.limit

    # Features no longer in metadata are disabled, not removed
    for row in existing_rows.values():
        row.enabled = False

    return len(entries)


def upsert_product(db: Session, product: Any, active: Optional[bool] = None) -> Product:
    """Upsert a Product row and its feature rows without committing"""
    values = product_values(product)
    if active is not None:
        values["active"] = active

    row = db.query(Product).filter(Product.stripe_product_id == values["stripe_product_id"]).first()
    if row is None:
        row = Product(**values)
        db.add(row)
    else:
        for key, value in values.items():
            setattr(row, key, value)
    db.flush()

    sync_product_features(db, row.stripe_product_id, values["product_metadata"])
    return row


def sync_product(db: Session, product: Any) -> Product:
    row = upsert_product(db, product)
    db.commit()
    logger.info(f"Synced product {row.stripe_product_id} ({row.name}), active={row.active}")
    return row


def deactivate_product(db: Session, product: Any) -> Product:
    """Deletion of a product: keep the row, mark it inactive"""
    row = upsert_product(db, product, active=False)
    db.commit()
    logger.info(f"Deactivated product {row.stripe_product_id}")
    return row


def ensure_product(db: Session, gateway: StripeGateway, product_ref: Any) -> Product:
    """Local Product row for a price's product reference, fetched from Stripe if missing"""
    product_id = stripe_id(product_ref)
    row = db.query(Product).filter(Product.stripe_product_id == product_id).first()
    if row is not None:
        return row

    logger.info(f"Product {product_id} missing locally, fetching it before its price")
    product = product_ref if isinstance(product_ref, dict) else gateway.retrieve_product(product_id)
    return upsert_product(db, product)


# ============================================================================
# PRICES
# ============================================================================

def price_values(price: Any) -> Dict:
    recurring = get_stripe_value(price, "recurring")
    return {
        "stripe_price_id": get_stripe_value(price, "id"),
        "stripe_product_id": stripe_id(get_stripe_value(price, "product")),
        "currency": (get_stripe_value(price, "currency") or "").lower() or None,
        "unit_amount": get_stripe_value(price, "unit_amount"),
        "recurring_interval": get_stripe_value(recurring, "interval"),
        "type": get_stripe_value(price, "type") or ("recurring" if recurring else "one_time"),
        "active": bool(get_stripe_value(price, "active", True)),
        "price_metadata": _metadata(price),
    }


def apply_price_update(row: Price, values: Dict) -> bool:
    """Apply the mutable fields of `values` to an existing row. Returns True when anything changed.

    Amount, currency, interval and type are fixed at creation in Stripe; they are only written
    here to fill a missing local value.
    """
    changed = False
    for key in ("stripe_product_id", "active", "price_metadata"):
        if getattr(row, key) != values[key]:
            setattr(row, key, values[key])
            changed = True

    for key in ("unit_amount", "currency", "recurring_interval", "type"):
        incoming = values[key]
        current = getattr(row, key)
        if current is None and incoming is not None:
            setattr(row, key, incoming)
            changed = True
        elif current is not None and incoming is not None and current != incoming:
            logger.warning(
                f"Ignoring change of immutable field {key} on price {row.stripe_price_id}: "
                f"{current!r} -> {incoming!r}"
            )
    return changed


def upsert_price(db: Session, gateway: StripeGateway, price: Any, active: Optional[bool] = None) -> Price:
    """Upsert a Price row without committing, creating its product first when needed"""
    values = price_values(price)
    if active is not None:
        values["active"] = active

    ensure_product(db, gateway, get_stripe_value(price, "product"))

    row = db.query(Price).filter(Price.stripe_price_id == values["stripe_price_id"]).first()
    if row is None:
        row = Price(**values)
        db.add(row)
    else:
        apply_price_update(row, values)
    db.flush()
    return row


def sync_price(db: Session, gateway: StripeGateway, price: Any) -> Price:
    row = upsert_price(db, gateway, price)
    db.commit()
    logger.info(f"Synced price {row.stripe_price_id} for product {row.stripe_product_id}, active={row.active}")
    return row


def deactivate_price(db: Session, price: Any) -> Optional[Price]:
    """Deletion of a price: keep the row, mark it inactive"""
    price_id = get_stripe_value(price, "id")
    row = db.query(Price).filter(Price.stripe_price_id == price_id).first()
    if row is None:
        logger.info(f"Deleted price {price_id} was never synced locally; nothing to deactivate")
        return None
    row.active = False
    row.price_metadata = _metadata(price) or row.price_metadata
    db.commit()
    logger.info(f"Deactivated price {price_id}")
    return row


def ensure_price(db: Session, gateway: StripeGateway, price_id: str) -> Price:
    row = db.query(Price).filter(Price.stripe_price_id == price_id).first()
    if row is not None:
        return row
    logger.info(f"Price {price_id} missing locally, fetching it")
    return sync_price(db, gateway, gateway.retrieve_price(price_id))


# ============================================================================
# CHECKOUT & INVOICES
# ============================================================================

def handle_checkout_completed(db: Session, gateway: StripeGateway, session: Any) -> Optional[Subscription]:
    """Record the subscription created by a completed checkout session"""
    session_id = get_stripe_value(session, "id")
    subscription_ref = get_stripe_value(session, "subscription")
    if get_stripe_value(session, "mode") != "subscription" or not subscription_ref:
        logger.info(f"Checkout session {session_id} is not a subscription purchase; nothing to record")
        return None

    subscription = gateway.retrieve_subscription(stripe_id(subscription_ref))
    customer = get_stripe_value(session, "customer") or get_stripe_value(subscription, "customer")
    customer_id = stripe_id(customer)

    user_id = resolve_user_id(
        gateway, customer, None,
        _metadata(session).get("user_id"), get_stripe_value(session, "client_reference_id")
    )
    if not user_id:
        logger.error(f"No user_id for checkout session {session_id} (customer {customer_id}); skipping")
        raise IdentityResolutionError(f"No user_id for checkout session {session_id}")

    price_id = stripe_id(get_stripe_value(_first_item(subscription), "price"))
    if price_id:
        ensure_price(db, gateway, price_id)

    values = subscription_values(subscription)
    values["user_id"] = user_id
    values["stripe_customer_id"] = customer_id or values["stripe_customer_id"]

    existing = db.query(Subscription).filter(
        Subscription.stripe_subscription_id == values["stripe_subscription_id"]
    ).first()
    if existing is None:
        existing = (
            db.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .first()
        )
    if existing is None:
        existing = latest_subscription_for_customer(db, customer_id)

    ensure_user(db, user_id)
    row = _write_subscription(db, existing, values)
    logger.info(
        f"Checkout {session_id} recorded subscription {values['stripe_subscription_id']} "
        f"for user {user_id}: status={values['status']}"
    )
    return row


def invoice_subscription_id(invoice: Any) -> Optional[str]:
    subscription = get_stripe_value(invoice, "subscription")
    if subscription:
        return stripe_id(subscription)
    # Newer API versions nest it under parent.subscription_details
    details = get_stripe_value(get_stripe_value(invoice, "parent"), "subscription_details")
    return stripe_id(get_stripe_value(details, "subscription"))


def handle_invoice_event(db: Session, gateway: StripeGateway, invoice: Any) -> Optional[Subscription]:
    """Invoices carry no state of their own; re-fetch and reconcile the subscription"""
    subscription_id = invoice_subscription_id(invoice)
    if not subscription_id:
        logger.info(f"Invoice {get_stripe_value(invoice, 'id')} has no subscription; nothing to reconcile")
        return None
    return sync_subscription_by_id(db, gateway, subscription_id)
