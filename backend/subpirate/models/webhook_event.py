"""WebhookEvent model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime
from datetime import datetime, timezone
from subpirate.models.base import Base


class WebhookEvent(Base):
    """Delivery log of verified Stripe webhook events, kept for operator replay.

    Not consulted to skip duplicates: redelivered events are re-applied and rely on
    upserts keyed by Stripe ids.
    """
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    outcome = Column(String(20), nullable=False, default="received")  # 'received', 'processed', 'failed', 'ignored', 'timed_out'
    payload = Column(JSON, nullable=False)
    error_message = Column(Text, nullable=True)
    delivery_count = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
