"""CreditPurchase model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from shopmeter.models.base import Base


class CreditPurchase(Base):
    """A purchased credit package, frozen at purchase time"""
    __tablename__ = "credit_purchases"

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id", ondelete="CASCADE"), nullable=False, index=True)
    package_id = Column(Integer, ForeignKey("credit_packages.id", ondelete="SET NULL"), nullable=True)
    usage_id = Column(Integer, ForeignKey("usages.id", ondelete="SET NULL"), nullable=True)
    status = Column(String(20), nullable=False, default="ACTIVE")  # 'ACTIVE', 'EXPIRED'
    # {name, credit_amount, price, currency, limits: {service: {...}}}
    purchase_snapshot = Column(JSON, nullable=False)
    external_purchase_id = Column(String(255), nullable=True, index=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    shop = relationship("Shop", back_populates="credit_purchases")
    package = relationship("CreditPackage")
    usage = relationship("Usage", foreign_keys=[usage_id])
    payments = relationship("Payment", back_populates="credit_purchase", order_by="[Payment.created_at, Payment.id]")

    __table_args__ = (
        Index('ix_credit_purchases_shop_status_created', 'shop_id', 'status', 'created_at'),
    )

    def __repr__(self):
        return f"<CreditPurchase(id={self.id}, shop_id={self.shop_id}, status={self.status})>"
