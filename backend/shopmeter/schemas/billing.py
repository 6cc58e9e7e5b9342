"""Pydantic schemas for subscription billing"""
from pydantic import BaseModel
from typing import Optional


class SubscribeRequest(BaseModel):
    plan_name: str
    external_transaction_id: str
    email: Optional[str] = None


class RenewRequest(BaseModel):
    external_transaction_id: str
    email: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None
    prorate: bool = False
    email: Optional[str] = None


class FreezeRequest(BaseModel):
    reason: Optional[str] = None


class PaymentStatusRequest(BaseModel):
    status: str  # 'SCHEDULED', 'SUCCEEDED', 'FAILED', 'FROZEN', 'CANCELLED'
    external_transaction_id: Optional[str] = None


class SubscriptionStatusRequest(BaseModel):
    status: str
    cancel_reason: Optional[str] = None
    prorate: bool = False
    external_subscription_id: Optional[str] = None


class OnboardShopRequest(BaseModel):
    name: str
    email: Optional[str] = None
    owner_name: Optional[str] = None
