"""Plan, CreditPackage and ServiceLimit models"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Numeric, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from shopmeter.models.base import Base


class Plan(Base):
    """Subscription plan template"""
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False, index=True)  # 'FREE', 'PRO', ...
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), default=0, nullable=False)  # Monthly price
    currency = Column(String(3), default="USD", nullable=False)
    trial_days = Column(Integer, default=0, nullable=False)
    credit_amount = Column(Numeric(14, 4), default=0, nullable=False)  # Credits granted per cycle
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    limits = relationship("ServiceLimit", back_populates="plan", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Plan(id={self.id}, name={self.name}, price={self.price})>"


class CreditPackage(Base):
    """One-time prepaid credit package template"""
    __tablename__ = "credit_packages"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False, index=True)  # 'SMALL', 'MEDIUM', ...
    description = Column(Text, nullable=True)
    credit_amount = Column(Numeric(14, 4), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    limits = relationship("ServiceLimit", back_populates="package", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<CreditPackage(id={self.id}, name={self.name}, credits={self.credit_amount})>"


class ServiceLimit(Base):
    """Per-service feature limits of a plan or a credit package"""
    __tablename__ = "service_limits"

    id = Column(Integer, primary_key=True, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id", ondelete="CASCADE"), nullable=True, index=True)
    package_id = Column(Integer, ForeignKey("credit_packages.id", ondelete="CASCADE"), nullable=True, index=True)
    service = Column(String(20), nullable=False)  # 'AI_API', 'CRAWL_API'

    request_limit = Column(Integer, nullable=True)
    credit_limit = Column(Numeric(14, 4), nullable=True)
    conversion_rate = Column(Numeric(10, 4), nullable=True)  # Credits per request; policy default when NULL
    token_limit = Column(Integer, nullable=True)
    max_tokens = Column(Integer, nullable=True)

    # Rate-limit windows (AI only)
    rpm = Column(Integer, nullable=True)
    rpd = Column(Integer, nullable=True)
    tpm = Column(Integer, nullable=True)
    tpd = Column(Integer, nullable=True)

    plan = relationship("Plan", back_populates="limits")
    package = relationship("CreditPackage", back_populates="limits")

    __table_args__ = (
        UniqueConstraint('plan_id', 'service', name='uq_service_limits_plan_service'),
        UniqueConstraint('package_id', 'service', name='uq_service_limits_package_service'),
    )

    def __repr__(self):
        owner = f"plan_id={self.plan_id}" if self.plan_id else f"package_id={self.package_id}"
        return f"<ServiceLimit({owner}, service={self.service}, requests={self.request_limit}, credits={self.credit_limit})>"
