"""User model"""
from sqlalchemy import Column, String, DateTime, Boolean
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from subpirate.models.base import Base


class User(Base):
    """User profiles (accounts themselves live in the hosted auth backend)"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, index=True)  # auth backend user id (uuid)
    email = Column(String(255), nullable=True, index=True)
    full_name = Column(String(255), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)  # cached, best-effort
    is_admin = Column(Boolean, default=False, nullable=False)
    is_gift = Column(Boolean, default=False, nullable=False)  # complimentary access, no payment
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    subscriptions = relationship("Subscription", back_populates="user", cascade="all, delete-orphan")
