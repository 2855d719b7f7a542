"""Price model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, JSON
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from subpirate.models.base import Base


class Price(Base):
    """Priced offering of a product. Amount and currency never change after insert."""
    __tablename__ = "prices"

    id = Column(Integer, primary_key=True, index=True)
    stripe_price_id = Column(String(255), unique=True, nullable=False, index=True)
    stripe_product_id = Column(String(255), ForeignKey("products.stripe_product_id"), nullable=False, index=True)
    currency = Column(String(3), nullable=True)
    unit_amount = Column(Integer, nullable=True)  # minor units (cents)
    recurring_interval = Column(String(10), nullable=True)  # 'day', 'week', 'month', 'year' or None for one-time
    type = Column(String(20), nullable=True)  # 'recurring' or 'one_time'
    active = Column(Boolean, default=True, nullable=False)
    price_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    product = relationship("Product", back_populates="prices")
