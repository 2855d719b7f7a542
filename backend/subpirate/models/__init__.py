"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from subpirate.models.base import Base
from subpirate.models.user import User
from subpirate.models.product import Product
from subpirate.models.price import Price
from subpirate.models.feature import Feature, ProductFeature
from subpirate.models.subscription import Subscription
from subpirate.models.webhook_event import WebhookEvent

# Export all for convenience
__all__ = [
    "Base", "User", "Product", "Price", "Feature", "ProductFeature",
    "Subscription", "WebhookEvent"
]
