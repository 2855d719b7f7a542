"""Stripe webhook processing: verify, log, dispatch to reconciliation handlers"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from subpirate.core.errors import WebhookTimeout, classify_stripe_error
from subpirate.core.logging import webhook_logger
from subpirate.core.metrics import webhook_events_counter
from subpirate.core.otel import billing_span, mark_span_failed
from subpirate.models.webhook_event import WebhookEvent
from subpirate.services import reconciliation
from subpirate.services.stripe_gateway import Deadline, StripeGateway, get_stripe_value, stripe_id
from subpirate.services.webhook_verifier import VerifiedEvent, verify_event

logger = logging.getLogger(__name__)

OUTCOME_PROCESSED = "processed"
OUTCOME_FAILED = "failed"
OUTCOME_IGNORED = "ignored"
OUTCOME_TIMED_OUT = "timed_out"


@dataclass
class DispatchResult:
    """Internal result of handling one delivery"""
    event_id: str
    event_type: str
    outcome: str
    error: Optional[str] = None

    @property
    def handled(self) -> bool:
        return self.outcome == OUTCOME_PROCESSED

    @property
    def success(self) -> bool:
        return self.outcome in (OUTCOME_PROCESSED, OUTCOME_IGNORED)

    def to_response(self) -> Dict[str, Any]:
        """Body returned to Stripe. Always a 2xx: handler failures are not retried by redelivery."""
        body = {"received": True, "handled": self.handled}
        if self.error:
            body["error"] = self.outcome
        return body


# ============================================================================
# HANDLERS
# ============================================================================

def _on_checkout_completed(db: Session, gateway: StripeGateway, event: VerifiedEvent):
    reconciliation.handle_checkout_completed(db, gateway, event.data_object)


def _on_subscription_changed(db: Session, gateway: StripeGateway, event: VerifiedEvent):
    reconciliation.sync_subscription(db, gateway, event.data_object)


def _on_subscription_deleted(db: Session, gateway: StripeGateway, event: VerifiedEvent):
    subscription = dict(event.data_object)
    subscription["status"] = "canceled"
    reconciliation.sync_subscription(db, gateway, subscription)


def _on_invoice(db: Session, gateway: StripeGateway, event: VerifiedEvent):
    reconciliation.handle_invoice_event(db, gateway, event.data_object)


def _on_product_changed(db: Session, gateway: StripeGateway, event: VerifiedEvent):
    reconciliation.sync_product(db, event.data_object)


def _on_product_deleted(db: Session, gateway: StripeGateway, event: VerifiedEvent):
    reconciliation.deactivate_product(db, event.data_object)


def _on_price_changed(db: Session, gateway: StripeGateway, event: VerifiedEvent):
    reconciliation.sync_price(db, gateway, event.data_object)


def _on_price_deleted(db: Session, gateway: StripeGateway, event: VerifiedEvent):
    reconciliation.deactivate_price(db, event.data_object)


EVENT_HANDLERS: Dict[str, Callable[[Session, StripeGateway, VerifiedEvent], None]] = {
    "checkout.session.completed": _on_checkout_completed,
    "customer.subscription.created": _on_subscription_changed,
    "customer.subscription.updated": _on_subscription_changed,
    "customer.subscription.deleted": _on_subscription_deleted,
    "invoice.payment_succeeded": _on_invoice,
    "invoice.payment_failed": _on_invoice,
    "product.created": _on_product_changed,
    "product.updated": _on_product_changed,
    "product.deleted": _on_product_deleted,
    "price.created": _on_price_changed,
    "price.updated": _on_price_changed,
    "price.deleted": _on_price_deleted,
}

HANDLED_EVENT_TYPES = tuple(EVENT_HANDLERS)


# ============================================================================
# DELIVERY LOG
# ============================================================================

def describe_event(event: VerifiedEvent) -> str:
    """One-line summary of an event for the delivery log"""
    obj = event.data_object
    if event.type.startswith("checkout.session."):
        return (
            f"{event.type} {event.id}: session={obj.get('id')} mode={obj.get('mode')} "
            f"customer={stripe_id(obj.get('customer'))} subscription={stripe_id(obj.get('subscription'))} "
            f"client_reference_id={obj.get('client_reference_id')}"
        )
    if event.type.startswith("customer.subscription."):
        return (
            f"{event.type} {event.id}: subscription={obj.get('id')} customer={stripe_id(obj.get('customer'))} "
            f"status={obj.get('status')} cancel_at_period_end={obj.get('cancel_at_period_end')}"
        )
    if event.type.startswith("invoice."):
        return (
            f"{event.type} {event.id}: invoice={obj.get('id')} customer={stripe_id(obj.get('customer'))} "
            f"subscription={reconciliation.invoice_subscription_id(obj)} amount_due={obj.get('amount_due')}"
        )
    return f"{event.type} {event.id}: object={obj.get('id')}"


def _entity_ids(event: VerifiedEvent) -> str:
    obj = event.data_object
    ids = {
        "object": obj.get("id"),
        "customer": stripe_id(get_stripe_value(obj, "customer")),
        "subscription": stripe_id(get_stripe_value(obj, "subscription")),
        "product": stripe_id(get_stripe_value(obj, "product")),
    }
    return " ".join(f"{key}={value}" for key, value in ids.items() if value)


def log_webhook_event(db: Session, event: VerifiedEvent) -> Optional[WebhookEvent]:
    """Record a verified delivery. Redeliveries bump the counter on the existing row."""
    try:
        row = db.query(WebhookEvent).filter(WebhookEvent.event_id == event.id).first()
        if row is None:
            row = WebhookEvent(
                event_id=event.id,
                event_type=event.type,
                payload=event.payload,
                outcome="received",
            )
            db.add(row)
        else:
            row.delivery_count = (row.delivery_count or 0) + 1
            row.outcome = "received"
            row.error_message = None
        db.commit()
        return row
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Failed to record webhook event {event.id}: {e}")
        return None


def mark_webhook_event(db: Session, event_id: str, outcome: str, error_message: Optional[str] = None):
    try:
        row = db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id).first()
        if row is None:
            return
        row.outcome = outcome
        row.error_message = error_message
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Failed to update webhook event {event_id}: {e}")


# ============================================================================
# DISPATCH
# ============================================================================

def dispatch_event(db: Session, gateway: StripeGateway, event: VerifiedEvent,
                   deadline: Optional[Deadline] = None) -> DispatchResult:
    """Route a verified event to its handler.

    Handler errors never escape: they are logged with enough context to replay the event and
    reported as a failed result. Writes committed before a failure are kept.
    """
    handler = EVENT_HANDLERS.get(event.type)
    if handler is None:
        webhook_logger.info(f"Ignoring unhandled event type {event.type} ({event.id})")
        webhook_events_counter.labels(event_type=event.type, outcome=OUTCOME_IGNORED).inc()
        mark_webhook_event(db, event.id, OUTCOME_IGNORED)
        return DispatchResult(event.id, event.type, OUTCOME_IGNORED)

    bound_gateway = gateway.bound(deadline) if deadline is not None else gateway
    with billing_span("stripe.webhook.dispatch", event_type=event.type, event_id=event.id) as span:
        result = _run_handler(db, bound_gateway, event, handler, deadline)
        if result.outcome == OUTCOME_PROCESSED:
            span.set_attribute("billing.outcome", result.outcome)
        else:
            mark_span_failed(span, result.outcome, result.error)

    webhook_events_counter.labels(event_type=event.type, outcome=result.outcome).inc()
    mark_webhook_event(db, event.id, result.outcome, result.error)
    return result


def _run_handler(db: Session, gateway: StripeGateway, event: VerifiedEvent, handler: Callable,
                 deadline: Optional[Deadline]) -> DispatchResult:
    try:
        if deadline is not None:
            deadline.check(event.type)
        handler(db, gateway, event)
    except WebhookTimeout as e:
        db.rollback()
        webhook_logger.error(
            f"Timed out handling {event.type} {event.id} ({_entity_ids(event)}): {e}"
        )
        return DispatchResult(event.id, event.type, OUTCOME_TIMED_OUT, str(e))
    except Exception as e:
        db.rollback()
        kind = classify_stripe_error(e)
        webhook_logger.error(
            f"Error handling {event.type} {event.id} ({_entity_ids(event)}) [{kind.value}]: {e}",
            exc_info=True
        )
        webhook_logger.error(f"Payload of failed event {event.id}: {event.payload}")
        return DispatchResult(event.id, event.type, OUTCOME_FAILED, str(e))

    webhook_logger.info(f"Successfully processed {event.type} {event.id}")
    return DispatchResult(event.id, event.type, OUTCOME_PROCESSED)


def process_stripe_webhook(
    payload: bytes,
    sig_header: Optional[str],
    db: Session,
    gateway: StripeGateway,
    secrets: Sequence[str],
    timeout_seconds: Optional[float] = None,
) -> DispatchResult:
    """Process one Stripe webhook delivery.

    Args:
        payload: Raw request body as bytes (must not be parsed before verification)
        sig_header: Value of the stripe-signature header
        db: Database session
        gateway: Stripe gateway used by handlers that re-fetch objects
        secrets: Webhook signing secrets, tried in order
        timeout_seconds: Wall-clock budget for handler work

    Raises:
        SignatureInvalid: When the delivery cannot be authenticated. Nothing is written.
    """
    deadline = Deadline(timeout_seconds) if timeout_seconds else None
    event = verify_event(payload, sig_header, secrets)

    webhook_logger.info(describe_event(event))
    log_webhook_event(db, event)
    return dispatch_event(db, gateway, event, deadline)
