"""Entitlement model: feature metadata parsing, plan tiers and the feature-access queries"""
import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Mapping, Optional

from sqlalchemy.orm import Session

from subpirate.models.feature import Feature, ProductFeature
from subpirate.models.price import Price
from subpirate.models.product import Product
from subpirate.models.subscription import Subscription
from subpirate.models.user import User

logger = logging.getLogger(__name__)

FEATURE_PREFIX = "feature_"
FEATURE_LIMIT_PREFIX = "feature_limit_"

# Statuses that grant the subscribed plan
ACTIVE_STATUSES = ("active", "trialing")

# Feature keys
ANALYZE_SUBREDDIT = "analyze_subreddit"
ANALYZE_UNLIMITED = "analyze_unlimited"
CREATE_PROJECT = "create_project"
ADVANCED_ANALYTICS = "advanced_analytics"
EXPORT_DATA = "export_data"
TEAM_COLLABORATION = "team_collaboration"
CUSTOM_TRACKING = "custom_tracking"
API_ACCESS = "api_access"
PRIORITY_SUPPORT = "priority_support"
DEDICATED_ACCOUNT = "dedicated_account"
ADMIN_PANEL = "admin_panel"

FEATURE_KEYS = (
    ANALYZE_SUBREDDIT, ANALYZE_UNLIMITED, CREATE_PROJECT, ADVANCED_ANALYTICS, EXPORT_DATA,
    TEAM_COLLABORATION, CUSTOM_TRACKING, API_ACCESS, PRIORITY_SUPPORT, DEDICATED_ACCOUNT,
    ADMIN_PANEL,
)

_PRO_FEATURES = (
    ANALYZE_UNLIMITED, CREATE_PROJECT, ADVANCED_ANALYTICS, EXPORT_DATA, TEAM_COLLABORATION,
    CUSTOM_TRACKING, API_ACCESS, PRIORITY_SUPPORT,
)

TIER_FEATURES: Dict[str, FrozenSet[str]] = {
    "free": frozenset({ANALYZE_SUBREDDIT}),
    "starter": frozenset({ANALYZE_SUBREDDIT, CREATE_PROJECT, EXPORT_DATA}),
    "creator": frozenset({
        ANALYZE_SUBREDDIT, CREATE_PROJECT, ADVANCED_ANALYTICS, CUSTOM_TRACKING, EXPORT_DATA,
        PRIORITY_SUPPORT,
    }),
    "pro": frozenset(_PRO_FEATURES),
    "agency": frozenset(_PRO_FEATURES + (DEDICATED_ACCOUNT,)),
    "admin": frozenset(FEATURE_KEYS),
    "gift": frozenset(_PRO_FEATURES),
}

# None means unlimited
USAGE_LIMITS: Dict[str, Dict[str, Optional[int]]] = {
    "free": {"subreddit_analysis_count": 3, "saved_subreddits": 10, "projects": 1, "reddit_accounts": 1},
    "starter": {"subreddit_analysis_count": 10, "saved_subreddits": 25, "projects": 2, "reddit_accounts": 3},
    "creator": {"subreddit_analysis_count": 50, "saved_subreddits": 100, "projects": 5, "reddit_accounts": 10},
    "pro": {"subreddit_analysis_count": None, "saved_subreddits": 500, "projects": 10, "reddit_accounts": 25},
    "agency": {"subreddit_analysis_count": None, "saved_subreddits": None, "projects": None, "reddit_accounts": 100},
    "admin": {"subreddit_analysis_count": None, "saved_subreddits": None, "projects": None, "reddit_accounts": None},
    "gift": {"subreddit_analysis_count": None, "saved_subreddits": 500, "projects": 10, "reddit_accounts": 25},
}

TIER_DISPLAY_NAMES = {
    "free": "Free Plan",
    "starter": "Starter Plan",
    "creator": "Creator Plan",
    "pro": "Pro Plan",
    "agency": "Agency Plan",
    "admin": "Admin Plan",
    "gift": "Gift Plan",
}


@dataclass(frozen=True)
class FeatureEntitlement:
    """One feature entry parsed from product metadata"""
    key: str
    enabled: bool = True
    limit: Optional[int] = None  # None means unlimited


def _parse_bool(value) -> bool:
    return str(value).strip().lower() in ("true", "1", "yes", "on")


def _parse_limit(key: str, value) -> Optional[int]:
    text = str(value).strip().lower()
    if text in ("", "unlimited", "infinity", "inf", "-1"):
        return None
    try:
        return int(text)
    except ValueError:
        logger.warning(f"Ignoring non-integer limit for feature '{key}': {value!r}")
        return None


def parse_feature_metadata(metadata: Optional[Mapping[str, str]]) -> List[FeatureEntitlement]:
    """Parse `feature_<key>=true|false` and `feature_limit_<key>=<int>` product metadata.

    This is the only place the flattened metadata convention is read. A limit without a
    matching enablement entry implies the feature is enabled. Entries are sorted by key.
    """
    if not metadata:
        return []

    enabled: Dict[str, bool] = {}
    limits: Dict[str, Optional[int]] = {}
    for raw_key, value in metadata.items():
        if raw_key.startswith(FEATURE_LIMIT_PREFIX):
            key = raw_key[len(FEATURE_LIMIT_PREFIX):]
            if key:
                limits[key] = _parse_limit(key, value)
        elif raw_key.startswith(FEATURE_PREFIX):
            key = raw_key[len(FEATURE_PREFIX):]
            if key:
                enabled[key] = _parse_bool(value)

    return [
        FeatureEntitlement(key=key, enabled=enabled.get(key, True), limit=limits.get(key))
        for key in sorted(set(enabled) | set(limits))
    ]


def feature_display_name(key: str) -> str:
    """'export_data' -> 'Export Data'"""
    return " ".join(part.capitalize() for part in key.split("_") if part)


def feature_description(key: str, limit: Optional[int] = None) -> str:
    name = feature_display_name(key)
    if limit is not None:
        return f"{name} (Limit: {limit})"
    return name


def get_tier_from_product_name(product_name: Optional[str]) -> str:
    name = (product_name or "").lower()
    # admin and gift win over the paid tiers
    for tier in ("admin", "gift", "starter", "creator", "pro", "agency"):
        if tier in name:
            return tier
    return "free"


@dataclass
class Entitlements:
    """What a user may do right now"""
    user_id: str
    tier: str = "free"
    features: FrozenSet[str] = frozenset()
    limits: Dict[str, Optional[int]] = field(default_factory=dict)
    is_admin: bool = False
    is_gift: bool = False
    subscription_status: Optional[str] = None
    stripe_product_id: Optional[str] = None

    def has_access(self, feature_key: str) -> bool:
        if self.is_admin:
            return True
        return feature_key in self.features

    def get_limit(self, metric: str) -> Optional[int]:
        if self.is_admin:
            return None
        return self.limits.get(metric)

    def check_usage_limit(self, metric: str, current_usage: int) -> bool:
        """True when one more unit of `metric` is allowed"""
        limit = self.get_limit(metric)
        if limit is None:
            return True
        return current_usage < limit

    def to_dict(self) -> Dict:
        return {
            "user_id": self.user_id,
            "tier": self.tier,
            "tier_name": TIER_DISPLAY_NAMES.get(self.tier, TIER_DISPLAY_NAMES["free"]),
            "features": sorted(self.features),
            "limits": dict(self.limits),
            "is_admin": self.is_admin,
            "is_gift": self.is_gift,
            "subscription_status": self.subscription_status,
        }


class EntitlementService:
    """Derives entitlements from the local subscription, product and feature rows"""

    def __init__(self, db: Session):
        self.db = db

    def active_subscription(self, user_id: str) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id, Subscription.status.in_(ACTIVE_STATUSES))
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .first()
        )

    def for_user(self, user_id: str) -> Entitlements:
        user = self.db.query(User).filter(User.id == user_id).first()
        is_admin = bool(user and user.is_admin)
        is_gift = bool(user and user.is_gift)

        if is_admin:
            return self._tier_entitlements(user_id, "admin", is_admin=True, is_gift=is_gift)
        if is_gift:
            return self._tier_entitlements(user_id, "gift", is_gift=True)

        subscription = self.active_subscription(user_id)
        if not subscription or not subscription.stripe_price_id:
            status = subscription.status if subscription else None
            return self._tier_entitlements(user_id, "free", subscription_status=status)

        price = self.db.query(Price).filter(Price.stripe_price_id == subscription.stripe_price_id).first()
        product = None
        if price:
            product = self.db.query(Product).filter(Product.stripe_product_id == price.stripe_product_id).first()
        if not product:
            logger.warning(
                f"Subscription {subscription.stripe_subscription_id} references unknown price "
                f"{subscription.stripe_price_id}; treating user {user_id} as free tier"
            )
            return self._tier_entitlements(user_id, "free", subscription_status=subscription.status)

        tier = get_tier_from_product_name(product.name)
        features = set(TIER_FEATURES.get(tier, TIER_FEATURES["free"]))
        limits = dict(USAGE_LIMITS.get(tier, USAGE_LIMITS["free"]))

        rows = self.db.query(ProductFeature).filter(
            ProductFeature.stripe_product_id == product.stripe_product_id
        ).all()
        if rows:
            # Product metadata is authoritative for feature grants once present
            features = set()
            for row in rows:
                if not row.enabled:
                    continue
                features.add(row.feature_key)
                if row.feature_key in limits or row.limit is not None:
                    limits[row.feature_key] = row.limit

        return Entitlements(
            user_id=user_id,
            tier=tier,
            features=frozenset(features),
            limits=limits,
            subscription_status=subscription.status,
            stripe_product_id=product.stripe_product_id,
        )

    def has_access(self, user_id: str, feature_key: str) -> bool:
        return self.for_user(user_id).has_access(feature_key)

    def check_usage_limit(self, user_id: str, metric: str, current_usage: int) -> bool:
        return self.for_user(user_id).check_usage_limit(metric, current_usage)

    @staticmethod
    def _tier_entitlements(user_id: str, tier: str, is_admin: bool = False, is_gift: bool = False,
                           subscription_status: Optional[str] = None) -> Entitlements:
        return Entitlements(
            user_id=user_id,
            tier=tier,
            features=TIER_FEATURES[tier],
            limits=dict(USAGE_LIMITS[tier]),
            is_admin=is_admin,
            is_gift=is_gift,
            subscription_status=subscription_status,
        )


def list_available_plans(db: Session) -> List[Dict]:
    """Active products with their active prices and enabled features, cheapest first"""
    products = db.query(Product).filter(Product.active.is_(True)).all()
    feature_names = {f.feature_key: f.name for f in db.query(Feature).all()}

    plans = []
    for product in products:
        prices = [
            {
                "id": price.stripe_price_id,
                "currency": price.currency,
                "unit_amount": price.unit_amount,
                "recurring_interval": price.recurring_interval,
            }
            for price in sorted(product.prices, key=lambda p: p.unit_amount or 0)
            if price.active
        ]
        if not prices:
            continue
        features = [
            {
                "key": row.feature_key,
                "name": feature_names.get(row.feature_key, feature_display_name(row.feature_key)),
                "limit": row.limit,
            }
            for row in sorted(product.features, key=lambda r: r.feature_key)
            if row.enabled
        ]
        plans.append({
            "id": product.stripe_product_id,
            "name": product.name,
            "description": product.description,
            "tier": get_tier_from_product_name(product.name),
            "prices": prices,
            "features": features,
        })

    plans.sort(key=lambda plan: plan["prices"][0]["unit_amount"] or 0)
    return plans
