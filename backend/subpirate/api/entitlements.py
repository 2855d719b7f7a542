"""Feature-access query endpoints"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from subpirate.db.session import get_db
from subpirate.schemas.billing import EntitlementsResponse, FeatureAccessResponse, UsageLimitResponse
from subpirate.services.entitlements import EntitlementService

router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


@router.get("/{user_id}", response_model=EntitlementsResponse)
def get_entitlements(user_id: str, db: Session = Depends(get_db)):
    """Tier, features and usage limits for a user"""
    return EntitlementService(db).for_user(user_id).to_dict()


@router.get("/{user_id}/access/{feature_key}", response_model=FeatureAccessResponse)
def check_feature_access(user_id: str, feature_key: str, db: Session = Depends(get_db)):
    return {
        "feature_key": feature_key,
        "has_access": EntitlementService(db).has_access(user_id, feature_key),
    }


@router.get("/{user_id}/usage/{metric}", response_model=UsageLimitResponse)
def check_usage_limit(
    user_id: str,
    metric: str,
    current_usage: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    entitlements = EntitlementService(db).for_user(user_id)
    return {
        "metric": metric,
        "current_usage": current_usage,
        "limit": entitlements.get_limit(metric),
        "allowed": entitlements.check_usage_limit(metric, current_usage),
    }
