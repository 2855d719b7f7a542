"""Stripe webhook signature verification"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Union

import stripe

from subpirate.core.errors import SignatureInvalid
from subpirate.core.metrics import webhook_signature_failures_counter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedEvent:
    """A webhook event whose signature has been checked"""
    id: str
    type: str
    data_object: Dict[str, Any]
    livemode: bool = False
    created: Optional[int] = None
    previous_attributes: Optional[Dict[str, Any]] = None
    payload: Dict[str, Any] = field(default_factory=dict, repr=False)


def verify_event(
    payload: Union[bytes, str, None],
    sig_header: Optional[str],
    secrets: Sequence[str],
    tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
) -> VerifiedEvent:
    """Authenticate a raw webhook body against each secret in order.

    The body must be the exact bytes Stripe sent; it is only parsed after a secret has
    matched. Raises SignatureInvalid when the body or header is missing, when no secret is
    configured, or when every secret fails.
    """
    if not payload:
        raise SignatureInvalid("Missing request body")
    if not sig_header:
        raise SignatureInvalid("Missing stripe-signature header")

    secrets = [secret for secret in secrets if secret]
    if not secrets:
        logger.error("Webhook received but no webhook signing secret is configured")
        raise SignatureInvalid("Webhook signing secret not configured")

    last_error = None
    for index, secret in enumerate(secrets):
        try:
            stripe.Webhook.construct_event(payload, sig_header, secret, tolerance=tolerance)
        except stripe.SignatureVerificationError as e:
            last_error = e
            continue
        except ValueError as e:
            # Body is not valid JSON; no other secret can fix that
            webhook_signature_failures_counter.inc()
            raise SignatureInvalid(f"Invalid payload: {e}") from e

        if index > 0:
            logger.info("Webhook signature matched fallback secret")
        return _build_event(payload)

    webhook_signature_failures_counter.inc()
    logger.warning(f"Webhook signature verification failed against {len(secrets)} secret(s): {last_error}")
    raise SignatureInvalid("Invalid signature") from last_error


def _build_event(payload: Union[bytes, str]) -> VerifiedEvent:
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8")
    body = json.loads(payload)
    data = body.get("data") or {}
    return VerifiedEvent(
        id=body.get("id", ""),
        type=body.get("type", ""),
        data_object=data.get("object") or {},
        livemode=bool(body.get("livemode", False)),
        created=body.get("created"),
        previous_attributes=data.get("previous_attributes"),
        payload=body,
    )
