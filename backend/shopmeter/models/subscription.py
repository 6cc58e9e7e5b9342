"""Subscription model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Text, Index, text
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from shopmeter.models.base import Base

_LIVE_STATUS_FILTER = "status IN ('ACTIVE', 'ON_HOLD', 'TRIAL')"


class Subscription(Base):
    """A shop's subscription to a plan for one or more billing cycles"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False, index=True)
    usage_id = Column(Integer, ForeignKey("usages.id", ondelete="SET NULL"), nullable=True)
    status = Column(String(30), nullable=False, index=True)  # See SubscriptionStatus
    status_updated_at = Column(DateTime(timezone=True), nullable=True)  # Last explicit status change
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    external_subscription_id = Column(String(255), nullable=True, index=True)  # Opaque billing-flow reference
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(Text, nullable=True)

    # Trial metadata
    has_trial = Column(Boolean, default=False, nullable=False)
    trial_start_date = Column(DateTime(timezone=True), nullable=True)
    trial_end_date = Column(DateTime(timezone=True), nullable=True)
    has_trial_ended = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    shop = relationship("Shop", back_populates="subscriptions")
    plan = relationship("Plan")
    usage = relationship("Usage", foreign_keys=[usage_id])
    payments = relationship("Payment", back_populates="subscription", order_by="[Payment.created_at, Payment.id]")

    __table_args__ = (
        # At most one live subscription per shop
        Index(
            'uq_subscriptions_live_per_shop', 'shop_id', unique=True,
            postgresql_where=text(_LIVE_STATUS_FILTER),
            sqlite_where=text(_LIVE_STATUS_FILTER),
        ),
        Index('ix_subscriptions_shop_created', 'shop_id', 'created_at'),
    )

    @property
    def latest_payment(self):
        return self.payments[-1] if self.payments else None

    def __repr__(self):
        return f"<Subscription(id={self.id}, shop_id={self.shop_id}, plan_id={self.plan_id}, status={self.status})>"
