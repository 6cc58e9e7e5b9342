"""Payment model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from shopmeter.models.base import Base


class Payment(Base):
    """Append-only record of one billing event"""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id", ondelete="CASCADE"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)
    credit_purchase_id = Column(Integer, ForeignKey("credit_purchases.id", ondelete="SET NULL"), nullable=True, index=True)
    billing_type = Column(String(20), nullable=False)  # 'SUBSCRIPTION', 'ONE_TIME'
    status = Column(String(20), nullable=False)  # See PaymentStatus

    list_price = Column(Numeric(10, 2), nullable=False)  # Catalog price before adjustments
    discount_amount = Column(Numeric(10, 2), default=0, nullable=False)  # Promotion/discount reduction
    amount = Column(Numeric(10, 2), nullable=False)  # Charged for the period
    adjusted_amount = Column(Numeric(10, 2), nullable=False)  # Charged after proration
    refunded_amount = Column(Numeric(10, 2), default=0, nullable=False)
    currency = Column(String(3), default="USD", nullable=False)

    billing_period_start = Column(DateTime(timezone=True), nullable=True)
    billing_period_end = Column(DateTime(timezone=True), nullable=True)
    external_transaction_id = Column(String(255), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    subscription = relationship("Subscription", back_populates="payments")
    credit_purchase = relationship("CreditPurchase", back_populates="payments")
    billing_events = relationship("BillingEvent", back_populates="payment")

    __table_args__ = (
        Index('ix_payments_subscription_created', 'subscription_id', 'created_at'),
    )

    def __repr__(self):
        return f"<Payment(id={self.id}, amount={self.amount}, adjusted={self.adjusted_amount}, status={self.status})>"
