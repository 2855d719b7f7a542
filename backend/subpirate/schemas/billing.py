"""Pydantic schemas for billing and entitlements"""
from pydantic import BaseModel
from typing import Dict, List, Optional


class CheckoutRequest(BaseModel):
    price_id: str
    success_url: str
    cancel_url: str
    user_id: Optional[str] = None


class CheckoutResponse(BaseModel):
    id: str
    url: str


class PortalRequest(BaseModel):
    user_id: str
    return_url: Optional[str] = None


class PortalResponse(BaseModel):
    url: str


class EntitlementsResponse(BaseModel):
    user_id: str
    tier: str
    tier_name: str
    features: List[str]
    limits: Dict[str, Optional[int]]
    is_admin: bool
    is_gift: bool
    subscription_status: Optional[str] = None


class FeatureAccessResponse(BaseModel):
    feature_key: str
    has_access: bool


class UsageLimitResponse(BaseModel):
    metric: str
    current_usage: int
    limit: Optional[int] = None  # None means unlimited
    allowed: bool
