"""Shared FastAPI dependencies"""
from fastapi import Request

from subpirate.services.stripe_gateway import StripeGateway


def get_gateway(request: Request) -> StripeGateway:
    """Stripe gateway built once at startup and stored on app state"""
    return request.app.state.stripe_gateway
