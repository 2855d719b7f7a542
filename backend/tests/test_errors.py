"""
Tests for Stripe error classification.

Messages are taken from real Stripe API responses.
"""
import pytest
import stripe

from subpirate.core.errors import (
    CheckoutError, ErrorKind, IdentityResolutionError, PlanUnavailableError, SignatureInvalid,
    WebhookTimeout, classify_stripe_error, is_retryable, is_stale_customer,
)

LIVE_OBJECT_TEST_KEY = (
    "No such customer: 'cus_Q1w2e3r4t5y6u7'; a similar object exists in live mode, "
    "but a test mode key was used to make this request."
)
TEST_OBJECT_LIVE_KEY = (
    "No such price: 'price_1PqRsTuVwXyZ'; a similar object exists in test mode, "
    "but a live mode key was used to make this request."
)


@pytest.mark.critical
class TestClassifyStripeError:
    """Every Stripe failure maps to exactly one ErrorKind"""

    def test_live_object_with_test_key_is_environment_mismatch(self):
        exc = stripe.InvalidRequestError(LIVE_OBJECT_TEST_KEY, "customer", http_status=400)
        assert classify_stripe_error(exc) == ErrorKind.ENVIRONMENT_MISMATCH

    def test_test_object_with_live_key_is_environment_mismatch(self):
        exc = stripe.InvalidRequestError(TEST_OBJECT_LIVE_KEY, "price", http_status=400)
        assert classify_stripe_error(exc) == ErrorKind.ENVIRONMENT_MISMATCH

    def test_no_such_object_is_resource_missing(self):
        exc = stripe.InvalidRequestError("No such customer: 'cus_gone'", "customer", http_status=404)
        assert classify_stripe_error(exc) == ErrorKind.RESOURCE_MISSING

    def test_rate_limit(self):
        exc = stripe.RateLimitError("Too many requests made to the API too quickly", http_status=429)
        assert classify_stripe_error(exc) == ErrorKind.RATE_LIMITED

    def test_connection_error_is_transient(self):
        exc = stripe.APIConnectionError("Unexpected error communicating with Stripe.")
        assert classify_stripe_error(exc) == ErrorKind.TRANSIENT

    def test_server_error_is_transient(self):
        exc = stripe.APIError("An unknown error occurred", http_status=500)
        assert classify_stripe_error(exc) == ErrorKind.TRANSIENT

    def test_authentication_error_is_client(self):
        exc = stripe.AuthenticationError("Invalid API Key provided: sk_test_****", http_status=401)
        assert classify_stripe_error(exc) == ErrorKind.CLIENT

    def test_validation_error_is_client(self):
        exc = stripe.InvalidRequestError("Missing required param: line_items.", "line_items", http_status=400)
        assert classify_stripe_error(exc) == ErrorKind.CLIENT

    def test_signature_error(self):
        exc = stripe.SignatureVerificationError("No signatures found matching the expected signature", "t=1,v1=x")
        assert classify_stripe_error(exc) == ErrorKind.SIGNATURE_INVALID

    def test_billing_errors_keep_their_kind(self):
        assert classify_stripe_error(SignatureInvalid("bad")) == ErrorKind.SIGNATURE_INVALID
        assert classify_stripe_error(IdentityResolutionError("who")) == ErrorKind.IDENTITY_UNRESOLVED
        assert classify_stripe_error(WebhookTimeout("late")) == ErrorKind.TIMEOUT
        assert classify_stripe_error(PlanUnavailableError()) == ErrorKind.ENVIRONMENT_MISMATCH

    def test_non_stripe_error_is_unknown(self):
        assert classify_stripe_error(ValueError("boom")) == ErrorKind.UNKNOWN


@pytest.mark.high
class TestErrorKindPredicates:

    @pytest.mark.parametrize("kind", [ErrorKind.RATE_LIMITED, ErrorKind.TRANSIENT])
    def test_retryable_kinds(self, kind):
        assert is_retryable(kind)

    @pytest.mark.parametrize("kind", [
        ErrorKind.CLIENT, ErrorKind.RESOURCE_MISSING, ErrorKind.ENVIRONMENT_MISMATCH,
        ErrorKind.SIGNATURE_INVALID, ErrorKind.TIMEOUT, ErrorKind.UNKNOWN,
    ])
    def test_non_retryable_kinds(self, kind):
        assert not is_retryable(kind)

    def test_stale_customer_kinds(self):
        assert is_stale_customer(ErrorKind.ENVIRONMENT_MISMATCH)
        assert is_stale_customer(ErrorKind.RESOURCE_MISSING)
        assert not is_stale_customer(ErrorKind.TRANSIENT)

    def test_checkout_error_message_is_user_facing(self):
        error = CheckoutError("Invalid price ID: price_x")
        assert error.message == "Invalid price ID: price_x"
        assert str(error) == "Invalid price ID: price_x"
        assert error.kind == ErrorKind.CLIENT
