"""Checkout and billing portal sessions"""
import logging
from typing import Dict, Optional

import stripe
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from subpirate.core.errors import (
    CheckoutError, ErrorKind, PaymentConfigurationError, PlanUnavailableError,
    classify_stripe_error, is_stale_customer,
)
from subpirate.core.logging import checkout_logger
from subpirate.models.user import User
from subpirate.services.stripe_gateway import StripeGateway, get_stripe_value

logger = logging.getLogger(__name__)

GENERIC_CHECKOUT_MESSAGE = "Unable to start checkout right now. Please try again later."


def _set_cached_customer_id(db: Session, user: Optional[User], customer_id: Optional[str]):
    """Best-effort update of the user's cached customer id"""
    if user is None:
        return
    try:
        user.stripe_customer_id = customer_id
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Failed to update cached Stripe customer id for user {user.id}: {e}")


def get_or_create_customer(db: Session, gateway: StripeGateway, user_id: str) -> str:
    """Stripe customer id for a local user.

    A cached id is verified against the current Stripe mode first; if it belongs to the other
    mode (or no longer exists) it is cleared and a new customer is created.
    """
    user = db.query(User).filter(User.id == user_id).first()

    if user is not None and user.stripe_customer_id:
        cached_id = user.stripe_customer_id
        try:
            customer = gateway.retrieve_customer(cached_id)
            if not get_stripe_value(customer, "deleted", False):
                return cached_id
            checkout_logger.warning(f"Cached customer {cached_id} for user {user_id} was deleted in Stripe")
        except stripe.StripeError as e:
            if not is_stale_customer(classify_stripe_error(e)):
                raise
            checkout_logger.warning(
                f"Cached customer {cached_id} for user {user_id} is not usable in the current Stripe mode: {e}"
            )
        _set_cached_customer_id(db, user, None)

    email = user.email if user is not None else None
    name = user.full_name if user is not None else None
    if not email:
        logger.warning(f"No email on file for user {user_id}; using a placeholder")
        email = f"user-{user_id[:8]}@example.com"
        name = f"User {user_id[:8]}"

    customer = gateway.create_customer(email=email, name=name or email.split("@")[0], metadata={"user_id": user_id})
    customer_id = get_stripe_value(customer, "id")
    checkout_logger.info(f"Created Stripe customer {customer_id} for user {user_id}")

    _set_cached_customer_id(db, user, customer_id)
    return customer_id


def validate_price(gateway: StripeGateway, price_id: str) -> Dict:
    """Make sure the price exists and is active in the current Stripe mode"""
    try:
        price = gateway.retrieve_price(price_id)
    except stripe.StripeError as e:
        kind = classify_stripe_error(e)
        checkout_logger.error(f"Error validating price {price_id} [{kind.value}]: {e}")
        if kind == ErrorKind.ENVIRONMENT_MISMATCH:
            raise PlanUnavailableError() from e
        raise CheckoutError(f"Invalid price ID: {price_id}") from e

    if not price or not get_stripe_value(price, "active", False):
        raise CheckoutError(f"Invalid price ID: {price_id} is not active")
    return price


def build_checkout_params(price_id: str, success_url: str, cancel_url: str,
                          user_id: Optional[str] = None, trial_days: int = 14) -> Dict:
    params = {
        "mode": "subscription",
        "payment_method_types": ["card"],
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "allow_promotion_codes": True,
        "billing_address_collection": "required",
        "tax_id_collection": {"enabled": True},
        "subscription_data": {},
    }
    if trial_days:
        params["subscription_data"]["trial_period_days"] = trial_days
    if user_id:
        params["client_reference_id"] = user_id
        params["metadata"] = {"user_id": user_id}
        params["subscription_data"]["metadata"] = {"user_id": user_id}
    return params


def _attach_customer(params: Dict, customer_id: str):
    params["customer"] = customer_id
    params["customer_update"] = {"name": "auto", "address": "auto"}


def _detach_customer(params: Dict):
    params.pop("customer", None)
    params.pop("customer_update", None)


def create_checkout_session(
    db: Session,
    gateway: StripeGateway,
    price_id: str,
    success_url: str,
    cancel_url: str,
    user_id: Optional[str] = None,
    trial_days: int = 14,
) -> Dict:
    """Create a hosted checkout session and return `{"id", "url"}`.

    Raises CheckoutError (or a subclass) whose message is safe to show to the user.
    """
    params = build_checkout_params(price_id, success_url, cancel_url, user_id, trial_days)

    # No customer is created or re-cached for a price this mode cannot sell
    validate_price(gateway, price_id)

    if user_id:
        try:
            _attach_customer(params, get_or_create_customer(db, gateway, user_id))
        except stripe.StripeError as e:
            # Stripe creates a customer during checkout when none is attached
            checkout_logger.warning(f"Continuing checkout for user {user_id} without a customer: {e}")

    try:
        session = gateway.create_checkout_session(**params)
    except stripe.StripeError as e:
        kind = classify_stripe_error(e)
        checkout_logger.error(f"Checkout session creation failed [{kind.value}]: {e}")
        if not is_stale_customer(kind):
            raise CheckoutError(GENERIC_CHECKOUT_MESSAGE) from e
        if "customer" not in params:
            raise PaymentConfigurationError() from e

        checkout_logger.warning(f"Retrying checkout for user {user_id} without customer {params['customer']}")
        _detach_customer(params)
        try:
            session = gateway.create_checkout_session(**params)
        except stripe.StripeError as recovery_error:
            checkout_logger.error(f"Checkout recovery attempt failed: {recovery_error}")
            raise PaymentConfigurationError() from recovery_error

    session_id = get_stripe_value(session, "id")
    url = get_stripe_value(session, "url")
    if not url:
        raise CheckoutError("Failed to create checkout session URL")

    checkout_logger.info(f"Created checkout session {session_id} for price {price_id}")
    return {"id": session_id, "url": url}


def create_billing_portal_session(db: Session, gateway: StripeGateway, user_id: str, return_url: str) -> Optional[str]:
    """Billing portal URL for a user, or None when the user has no Stripe customer"""
    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.stripe_customer_id:
        return None
    session = gateway.create_billing_portal_session(user.stripe_customer_id, return_url)
    return get_stripe_value(session, "url")
