"""IdempotencyKey model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, UniqueConstraint
from datetime import datetime, timezone
from shopmeter.models.base import Base


class IdempotencyKey(Base):
    """External transaction ids already applied for a shop"""
    __tablename__ = "idempotency_keys"

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id", ondelete="CASCADE"), nullable=False, index=True)
    external_transaction_id = Column(String(255), nullable=False)
    operation = Column(String(50), nullable=False)  # 'subscribe', 'renew', 'update', 'purchase', 'usage'
    result = Column(JSON, default=dict)  # Ids of the rows the operation produced
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        UniqueConstraint('shop_id', 'external_transaction_id', name='uq_idempotency_keys_shop_txn'),
    )

    def __repr__(self):
        return f"<IdempotencyKey(shop_id={self.shop_id}, txn={self.external_transaction_id}, op={self.operation})>"
