"""Shop directory - tenant and associated user lookups"""
from typing import Optional
import logging

from sqlalchemy.orm import Session

from shopmeter.core.errors import MissingParameters, ShopNotFound
from shopmeter.models.shop import Shop, ShopUser

logger = logging.getLogger(__name__)


def find_shop_by_name(name: str, db: Session) -> Optional[Shop]:
    if not name:
        return None
    return db.query(Shop).filter(Shop.name == name).first()


def get_shop(name: str, db: Session) -> Shop:
    """Get a shop by name, raising ShopNotFound if it does not exist"""
    if not name:
        raise MissingParameters("shop")
    shop = find_shop_by_name(name, db)
    if not shop:
        raise ShopNotFound(f"Shop not found: {name}")
    return shop


def find_associated_user_by_email(email: str, db: Session) -> Optional[ShopUser]:
    if not email:
        return None
    return db.query(ShopUser).filter(ShopUser.email == email.lower()).first()


def resolve_contact_email(shop: Shop, email: Optional[str], db: Session) -> Optional[str]:
    """Email to notify for a shop: an associated user's address if given, else the shop's own"""
    if email:
        user = find_associated_user_by_email(email, db)
        if user and user.shop_id == shop.id:
            return user.email
        logger.warning(f"Email {email} is not associated with shop {shop.name}, using the shop contact")
    return shop.email


def create_shop(name: str, db: Session, email: Optional[str] = None, owner_name: Optional[str] = None) -> Shop:
    """
    Onboard a shop: create the tenant row and its owner account.

    The FREE default subscription is created lazily by the first
    get_current_subscription call. Does not commit.
    """
    if not name:
        raise MissingParameters("name")
    shop = find_shop_by_name(name, db)
    if shop:
        return shop

    shop = Shop(name=name, email=email.lower() if email else None)
    db.add(shop)
    db.flush()
    if email and not find_associated_user_by_email(email, db):
        db.add(ShopUser(shop_id=shop.id, email=email.lower(), name=owner_name, is_owner=True))
        db.flush()
    logger.info(f"Created shop {name} (id={shop.id})")
    return shop
