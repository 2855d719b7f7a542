"""Stripe API gateway with bounded retries and an optional wall-clock budget"""
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import stripe
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from subpirate.core.config import Settings
from subpirate.core.errors import WebhookTimeout, classify_stripe_error, is_retryable
from subpirate.core.metrics import stripe_retries_counter

logger = logging.getLogger(__name__)


def get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract a value from a Stripe payload (dicts and Stripe objects)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
    else:
        value = getattr(obj, key, default)
    return default if value is None else value


def stripe_id(value: Any) -> Optional[str]:
    """Id of a reference that may be a bare id or an expanded object"""
    if value is None or isinstance(value, str):
        return value
    return get_stripe_value(value, "id")


def to_plain(obj: Any):
    """Convert a Stripe SDK object into plain dicts and lists"""
    if obj is None or type(obj) in (dict, list, str, int, float, bool):
        return obj
    # StripeObject renders itself as JSON
    return json.loads(str(obj))


class Listing(list):
    """Items of a paginated list call. `truncated` is set when the page cap stopped it early."""

    truncated = False


class Deadline:
    """Monotonic wall-clock budget shared by every call made on behalf of one delivery"""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self, operation: str = "operation"):
        if self.expired:
            raise WebhookTimeout(f"Time budget of {self.seconds}s exhausted before {operation}")


class StripeGateway:
    """Thin wrapper around the Stripe SDK.

    Every request carries its own api_key, so live and test gateways can coexist in one
    process. Rate limits and provider-side failures are retried with exponential backoff up to
    `max_attempts` in total; client errors (not found, validation, bad key) are raised at once.
    All results are returned as plain dicts.
    """

    def __init__(
        self,
        api_key: str,
        max_attempts: int = 3,
        min_wait: float = 0.5,
        max_wait: float = 4.0,
        page_limit: int = 100,
        max_pages: int = 10,
        deadline: Optional[Deadline] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = api_key
        self.max_attempts = max_attempts
        self.min_wait = min_wait
        self.max_wait = max_wait
        self.page_limit = page_limit
        self.max_pages = max_pages
        self.deadline = deadline
        self._sleep = sleep

    @property
    def live_mode(self) -> bool:
        return bool(self.api_key) and self.api_key.startswith(("sk_live_", "rk_live_"))

    def bound(self, deadline: Optional[Deadline]) -> "StripeGateway":
        """Copy of this gateway that refuses to start calls once `deadline` has expired"""
        return StripeGateway(
            self.api_key,
            max_attempts=self.max_attempts,
            min_wait=self.min_wait,
            max_wait=self.max_wait,
            page_limit=self.page_limit,
            max_pages=self.max_pages,
            deadline=deadline,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Retry plumbing
    # ------------------------------------------------------------------

    def _call(self, operation: str, fn: Callable, *args, **kwargs):
        def _should_retry(exc: BaseException) -> bool:
            return is_retryable(classify_stripe_error(exc))

        def _before_sleep(retry_state):
            exc = retry_state.outcome.exception()
            stripe_retries_counter.labels(operation=operation).inc()
            logger.warning(
                f"Stripe {operation} failed (attempt {retry_state.attempt_number}/{self.max_attempts}), "
                f"retrying: {exc}"
            )

        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.min_wait, min=self.min_wait, max=self.max_wait),
            retry=retry_if_exception(_should_retry),
            before_sleep=_before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        return retryer(self._attempt, operation, fn, *args, **kwargs)

    def _attempt(self, operation: str, fn: Callable, *args, **kwargs):
        if self.deadline is not None:
            self.deadline.check(operation)
        return to_plain(fn(*args, api_key=self.api_key, **kwargs))

    def _list_all(self, operation: str, fn: Callable, **params) -> Listing:
        items = Listing()
        starting_after = None
        for _ in range(self.max_pages):
            page_params = dict(params, limit=self.page_limit)
            if starting_after:
                page_params["starting_after"] = starting_after
            page = self._call(operation, fn, **page_params)
            data = get_stripe_value(page, "data", [])
            items.extend(data)
            if not data or not get_stripe_value(page, "has_more", False):
                break
            starting_after = get_stripe_value(data[-1], "id")
        else:
            logger.warning(f"Stripe {operation} stopped after {self.max_pages} pages; listing may be incomplete")
            items.truncated = True
        return items

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def retrieve_subscription(self, subscription_id: str) -> Dict:
        return self._call("retrieve_subscription", stripe.Subscription.retrieve, subscription_id)

    def retrieve_price(self, price_id: str) -> Dict:
        return self._call("retrieve_price", stripe.Price.retrieve, price_id)

    def retrieve_product(self, product_id: str) -> Dict:
        return self._call("retrieve_product", stripe.Product.retrieve, product_id)

    def retrieve_customer(self, customer_id: str) -> Dict:
        return self._call("retrieve_customer", stripe.Customer.retrieve, customer_id)

    def list_active_products(self) -> Listing:
        return self._list_all("list_products", stripe.Product.list, active=True)

    def list_active_prices(self) -> Listing:
        return self._list_all("list_prices", stripe.Price.list, active=True)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_customer(self, email: str, name: Optional[str] = None, metadata: Optional[Dict] = None) -> Dict:
        params = {"email": email, "metadata": metadata or {}}
        if name:
            params["name"] = name
        return self._call("create_customer", stripe.Customer.create, **params)

    def update_customer(self, customer_id: str, **params) -> Dict:
        return self._call("update_customer", stripe.Customer.modify, customer_id, **params)

    def create_checkout_session(self, **params) -> Dict:
        return self._call("create_checkout_session", stripe.checkout.Session.create, **params)

    def create_billing_portal_session(self, customer_id: str, return_url: str) -> Dict:
        return self._call(
            "create_billing_portal_session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )


def build_gateway(settings: Settings, api_key: Optional[str] = None) -> StripeGateway:
    """Construct the gateway for the configured Stripe mode"""
    return StripeGateway(
        api_key if api_key is not None else settings.stripe_api_key,
        max_attempts=settings.STRIPE_MAX_RETRIES,
        min_wait=settings.STRIPE_RETRY_MIN_WAIT,
        max_wait=settings.STRIPE_RETRY_MAX_WAIT,
        page_limit=settings.STRIPE_PAGE_LIMIT,
        max_pages=settings.STRIPE_CATALOG_MAX_PAGES,
    )
