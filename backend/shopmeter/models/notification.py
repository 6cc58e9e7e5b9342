"""Notification model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, JSON, Text, Index
from datetime import datetime, timezone
from shopmeter.models.base import Base


class Notification(Base):
    """User-facing notification log; also the dedup record for alerts"""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(50), nullable=False)  # See NotificationType
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    dedup_key = Column(String(255), nullable=True)  # Condition identity within the dedup window
    notification_metadata = Column("metadata", JSON, default=dict)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index('ix_notifications_shop_type_created', 'shop_id', 'type', 'created_at'),
    )

    def __repr__(self):
        return f"<Notification(id={self.id}, shop_id={self.shop_id}, type={self.type})>"
