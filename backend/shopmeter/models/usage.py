"""Usage and ServiceUsageDetail models"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from shopmeter.models.base import Base


class Usage(Base):
    """Allowance aggregate of one subscription or one credit purchase"""
    __tablename__ = "usages"

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    details = relationship(
        "ServiceUsageDetail", back_populates="usage",
        cascade="all, delete-orphan", order_by="ServiceUsageDetail.service"
    )

    def detail_for(self, service: str):
        for detail in self.details:
            if detail.service == service:
                return detail
        return None

    def __repr__(self):
        return f"<Usage(id={self.id}, shop_id={self.shop_id})>"


class ServiceUsageDetail(Base):
    """Counters of one service inside a Usage aggregate.

    used + remaining == granted for requests and credits.
    """
    __tablename__ = "service_usage_details"

    id = Column(Integer, primary_key=True, index=True)
    usage_id = Column(Integer, ForeignKey("usages.id", ondelete="CASCADE"), nullable=False, index=True)
    service = Column(String(20), nullable=False)  # 'AI_API', 'CRAWL_API'

    total_requests = Column(Integer, default=0, nullable=False)
    total_requests_used = Column(Integer, default=0, nullable=False)
    total_remaining_requests = Column(Integer, default=0, nullable=False)

    total_credits = Column(Numeric(14, 4), default=0, nullable=False)
    total_credits_used = Column(Numeric(14, 4), default=0, nullable=False)
    total_remaining_credits = Column(Numeric(14, 4), default=0, nullable=False)
    conversion_rate = Column(Numeric(10, 4), nullable=False)

    # AI token counters
    total_tokens = Column(Integer, default=0, nullable=False)
    total_tokens_used = Column(Integer, default=0, nullable=False)
    total_remaining_tokens = Column(Integer, default=0, nullable=False)
    input_tokens_count = Column(Integer, default=0, nullable=False)
    output_tokens_count = Column(Integer, default=0, nullable=False)
    model_name = Column(String(100), nullable=True)

    # Fixed rate-limit windows (AI only, advisory)
    requests_per_minute_limit = Column(Integer, default=0, nullable=False)
    requests_per_day_limit = Column(Integer, default=0, nullable=False)
    remaining_requests_per_minute = Column(Integer, default=0, nullable=False)
    remaining_requests_per_day = Column(Integer, default=0, nullable=False)
    reset_time_for_minute_requests = Column(DateTime(timezone=True), nullable=True)
    reset_time_for_day_requests = Column(DateTime(timezone=True), nullable=True)
    tokens_consumed_per_minute = Column(Integer, default=0, nullable=False)
    tokens_consumed_per_day = Column(Integer, default=0, nullable=False)
    last_token_usage_update_time = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    usage = relationship("Usage", back_populates="details")

    __table_args__ = (
        UniqueConstraint('usage_id', 'service', name='uq_service_usage_details_usage_service'),
    )

    def __repr__(self):
        return (
            f"<ServiceUsageDetail(usage_id={self.usage_id}, service={self.service}, "
            f"requests={self.total_requests_used}/{self.total_requests}, "
            f"credits={self.total_credits_used}/{self.total_credits})>"
        )
