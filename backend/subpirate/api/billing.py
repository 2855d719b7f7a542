"""Checkout, billing portal and plan endpoints"""
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from subpirate.api.deps import get_gateway
from subpirate.core.config import Settings, get_settings
from subpirate.core.errors import CheckoutError
from subpirate.db.session import get_db
from subpirate.schemas.billing import CheckoutRequest, CheckoutResponse, PortalRequest, PortalResponse
from subpirate.services.checkout_service import create_billing_portal_session, create_checkout_session
from subpirate.services.entitlements import list_available_plans
from subpirate.services.stripe_gateway import StripeGateway

router = APIRouter(prefix="/api/stripe", tags=["billing"])
logger = logging.getLogger(__name__)


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    request_data: CheckoutRequest,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    """Create a Stripe checkout session for a plan"""
    try:
        return create_checkout_session(
            db,
            gateway,
            request_data.price_id,
            request_data.success_url,
            request_data.cancel_url,
            user_id=request_data.user_id,
            trial_days=settings.CHECKOUT_TRIAL_DAYS,
        )
    except CheckoutError as e:
        return JSONResponse(
            status_code=400,
            content={"error": e.kind.value, "message": e.message}
        )


@router.post("/portal", response_model=PortalResponse)
def create_portal(
    request_data: PortalRequest,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    """Get Stripe customer portal URL"""
    return_url = request_data.return_url or f"{settings.FRONTEND_URL}/account/billing"
    try:
        url = create_billing_portal_session(db, gateway, request_data.user_id, return_url)
    except stripe.StripeError as e:
        logger.error(f"Error creating portal session for user {request_data.user_id}: {e}")
        raise HTTPException(500, "Failed to create portal session")

    if not url:
        raise HTTPException(404, "No billing account found for this user")
    return {"url": url}


@router.get("/plans")
def get_plans(db: Session = Depends(get_db)):
    """Get available subscription plans"""
    return {"plans": list_available_plans(db)}
