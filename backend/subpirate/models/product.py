"""Product model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, JSON
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from subpirate.models.base import Base


class Product(Base):
    """Purchasable plan mirrored from Stripe. Never deleted, only deactivated."""
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    stripe_product_id = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    product_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    prices = relationship("Price", back_populates="product")
    features = relationship("ProductFeature", back_populates="product", cascade="all, delete-orphan")
