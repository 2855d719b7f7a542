"""Stripe webhook endpoint"""
import logging

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from subpirate.api.deps import get_gateway
from subpirate.core.config import Settings, get_settings
from subpirate.core.errors import SignatureInvalid
from subpirate.db.session import get_db
from subpirate.services.stripe_gateway import StripeGateway
from subpirate.services.webhook_service import process_stripe_webhook

router = APIRouter(prefix="/api/stripe", tags=["stripe"])
logger = logging.getLogger(__name__)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    """Handle Stripe webhook events

    Note: the body is read as raw bytes; it must reach signature verification unparsed.
    Processing makes blocking Stripe and database calls, so it runs in the threadpool.
    Responds 400 when the delivery cannot be authenticated and 200 once it has been
    verified and dispatched, even if the handler failed (see the `handled` flag).
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        result = await run_in_threadpool(
            process_stripe_webhook,
            payload,
            sig_header,
            db,
            gateway,
            settings.webhook_secrets,
            timeout_seconds=settings.WEBHOOK_TIMEOUT_SECONDS,
        )
    except SignatureInvalid as e:
        logger.warning(f"Rejected webhook delivery: {e.message}")
        return JSONResponse(
            status_code=400,
            content={"error": "signature_invalid", "message": e.message}
        )

    return result.to_response()
