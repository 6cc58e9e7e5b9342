"""Promotion and BillingEvent models"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Numeric, Text
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from shopmeter.models.base import Base


class Promotion(Base):
    """Price adjustment (promotion or discount) offered on plans or packages"""
    __tablename__ = "promotions"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(100), unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)
    kind = Column(String(20), nullable=False)  # 'PROMOTION', 'DISCOUNT'
    unit = Column(String(20), nullable=False)  # 'PERCENTAGE', 'FIXED'
    value = Column(Numeric(10, 2), nullable=False)
    is_early_adopter = Column(Boolean, default=False, nullable=False)  # Applies before any other adjustment

    # Targeting; NULL means "any"
    plan_id = Column(Integer, ForeignKey("plans.id", ondelete="CASCADE"), nullable=True, index=True)
    package_id = Column(Integer, ForeignKey("credit_packages.id", ondelete="CASCADE"), nullable=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id", ondelete="CASCADE"), nullable=True, index=True)

    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=False)
    max_uses = Column(Integer, nullable=True)  # NULL = unlimited
    used_count = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    billing_events = relationship("BillingEvent", back_populates="promotion")

    def __repr__(self):
        return f"<Promotion(code={self.code}, kind={self.kind}, unit={self.unit}, value={self.value})>"


class BillingEvent(Base):
    """Join record linking an applied promotion to the payment it adjusted"""
    __tablename__ = "billing_events"

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id", ondelete="CASCADE"), nullable=False, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    promotion_id = Column(Integer, ForeignKey("promotions.id", ondelete="SET NULL"), nullable=True)
    event_type = Column(String(20), nullable=False)  # 'PROMOTION', 'DISCOUNT'
    amount = Column(Numeric(10, 2), nullable=False)  # Reduction applied
    duration_days = Column(Integer, nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    payment = relationship("Payment", back_populates="billing_events")
    promotion = relationship("Promotion", back_populates="billing_events")

    def __repr__(self):
        return f"<BillingEvent(payment_id={self.payment_id}, type={self.event_type}, amount={self.amount})>"
