"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from shopmeter.models.base import Base
from shopmeter.models.shop import Shop, ShopUser
from shopmeter.models.plan import Plan, CreditPackage, ServiceLimit
from shopmeter.models.usage import Usage, ServiceUsageDetail
from shopmeter.models.subscription import Subscription
from shopmeter.models.credit_purchase import CreditPurchase
from shopmeter.models.payment import Payment
from shopmeter.models.promotion import Promotion, BillingEvent
from shopmeter.models.notification import Notification
from shopmeter.models.idempotency_key import IdempotencyKey

# Export all for convenience
__all__ = [
    "Base", "Shop", "ShopUser", "Plan", "CreditPackage", "ServiceLimit",
    "Usage", "ServiceUsageDetail", "Subscription", "CreditPurchase",
    "Payment", "Promotion", "BillingEvent", "Notification", "IdempotencyKey"
]
