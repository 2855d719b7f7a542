"""Feature models"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from subpirate.models.base import Base


class Feature(Base):
    """Named capability that a product can grant"""
    __tablename__ = "features"

    id = Column(Integer, primary_key=True, index=True)
    feature_key = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)


class ProductFeature(Base):
    """Product <-> Feature join row"""
    __tablename__ = "product_features"
    __table_args__ = (
        UniqueConstraint("stripe_product_id", "feature_key", name="uq_product_features_product_feature"),
    )

    id = Column(Integer, primary_key=True, index=True)
    stripe_product_id = Column(String(255), ForeignKey("products.stripe_product_id"), nullable=False, index=True)
    feature_key = Column(String(100), ForeignKey("features.feature_key"), nullable=False, index=True)
    enabled = Column(Boolean, default=True, nullable=False)
    limit = Column(Integer, nullable=True)  # None means unlimited
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    product = relationship("Product", back_populates="features")
    feature = relationship("Feature")
