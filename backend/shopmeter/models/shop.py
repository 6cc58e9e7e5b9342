"""Shop model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from shopmeter.models.base import Base


class Shop(Base):
    """Tenant identity, keyed by the shop's platform domain"""
    __tablename__ = "shops"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), unique=True, nullable=False, index=True)  # e.g. 'acme.myshopify.com'
    email = Column(String(255), nullable=True)  # Billing contact
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    users = relationship("ShopUser", back_populates="shop", cascade="all, delete-orphan")
    subscriptions = relationship("Subscription", back_populates="shop", order_by="Subscription.created_at")
    credit_purchases = relationship("CreditPurchase", back_populates="shop", order_by="CreditPurchase.created_at")

    def __repr__(self):
        return f"<Shop(id={self.id}, name={self.name})>"


class ShopUser(Base):
    """Staff account associated with a shop"""
    __tablename__ = "shop_users"

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    is_owner = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    shop = relationship("Shop", back_populates="users")
