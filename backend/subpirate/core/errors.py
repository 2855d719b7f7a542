"""Billing error taxonomy and Stripe error classification"""
import re
from enum import Enum
from typing import Optional

import stripe


class ErrorKind(str, Enum):
    """What went wrong, independent of where it was raised"""
    SIGNATURE_INVALID = "signature_invalid"
    IDENTITY_UNRESOLVED = "identity_unresolved"
    ENVIRONMENT_MISMATCH = "environment_mismatch"
    RESOURCE_MISSING = "resource_missing"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    CLIENT = "client"
    UNKNOWN = "unknown"


_ENVIRONMENT_MISMATCH_PATTERN = re.compile(r"\b(live|test) mode\b", re.IGNORECASE)
_RESOURCE_MISSING_PATTERN = re.compile(
    r"no such (customer|price|product|subscription|checkout\.session|invoice)", re.IGNORECASE
)


def _error_message(exc: BaseException) -> str:
    return getattr(exc, "user_message", None) or str(exc) or ""


def classify_stripe_error(exc: BaseException) -> ErrorKind:
    """Map a Stripe SDK exception to an ErrorKind.

    This is the only place Stripe error text is pattern-matched. Stripe reports
    test/live mismatches ("a similar object exists in live mode, but a test mode
    key was used") only in the message, so the wording check lives here.
    """
    if isinstance(exc, BillingError):
        return exc.kind
    if isinstance(exc, stripe.SignatureVerificationError):
        return ErrorKind.SIGNATURE_INVALID
    if isinstance(exc, stripe.RateLimitError):
        return ErrorKind.RATE_LIMITED
    if isinstance(exc, stripe.APIConnectionError):
        return ErrorKind.TRANSIENT

    message = _error_message(exc)
    if _ENVIRONMENT_MISMATCH_PATTERN.search(message):
        return ErrorKind.ENVIRONMENT_MISMATCH
    if _RESOURCE_MISSING_PATTERN.search(message):
        return ErrorKind.RESOURCE_MISSING

    status = getattr(exc, "http_status", None)
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status is not None and status >= 500:
        return ErrorKind.TRANSIENT
    if isinstance(exc, stripe.APIError) and status is None:
        return ErrorKind.TRANSIENT
    if status == 404:
        return ErrorKind.RESOURCE_MISSING
    if status is not None and 400 <= status < 500:
        return ErrorKind.CLIENT
    if isinstance(exc, stripe.StripeError):
        return ErrorKind.CLIENT
    return ErrorKind.UNKNOWN


def is_retryable(kind: ErrorKind) -> bool:
    """Only rate limiting and provider-side failures are worth another attempt"""
    return kind in (ErrorKind.RATE_LIMITED, ErrorKind.TRANSIENT)


def is_stale_customer(kind: ErrorKind) -> bool:
    """A cached customer id that cannot be used in the current Stripe mode"""
    return kind in (ErrorKind.ENVIRONMENT_MISMATCH, ErrorKind.RESOURCE_MISSING)


class BillingError(Exception):
    """Base class for billing errors"""
    kind = ErrorKind.UNKNOWN

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


class SignatureInvalid(BillingError):
    """Webhook payload could not be authenticated. Never retried, never mutates state."""
    kind = ErrorKind.SIGNATURE_INVALID


class IdentityResolutionError(BillingError):
    """No local user id could be resolved for a provider object"""
    kind = ErrorKind.IDENTITY_UNRESOLVED


class WebhookTimeout(BillingError):
    """The wall-clock budget for handling a webhook delivery ran out"""
    kind = ErrorKind.TIMEOUT


class CheckoutError(BillingError):
    """Checkout session could not be created. `message` is safe to show to users."""
    kind = ErrorKind.CLIENT


class PlanUnavailableError(CheckoutError):
    kind = ErrorKind.ENVIRONMENT_MISMATCH

    def __init__(self, message: str = "This plan is not available in the current environment. Please contact support."):
        super().__init__(message)


class PaymentConfigurationError(CheckoutError):
    kind = ErrorKind.ENVIRONMENT_MISMATCH

    def __init__(self, message: str = "There was a configuration error with the payment system. Please try again later or contact support."):
        super().__init__(message)
