"""Idempotency keys for externally triggered billing operations"""
from typing import Optional, Dict, Any, Iterable
import logging

from sqlalchemy.orm import Session

from shopmeter.core.errors import IdempotencyConflict
from shopmeter.models.idempotency_key import IdempotencyKey

logger = logging.getLogger("billing")


def find_idempotency_key(shop_id: int, external_transaction_id: str, db: Session) -> Optional[IdempotencyKey]:
    return db.query(IdempotencyKey).filter(
        IdempotencyKey.shop_id == shop_id,
        IdempotencyKey.external_transaction_id == external_transaction_id,
    ).first()


def check_idempotency(
    shop_id: int,
    external_transaction_id: Optional[str],
    operations: Iterable[str],
    db: Session,
) -> Optional[Dict[str, Any]]:
    """
    Look up an external transaction id before mutating anything.

    Returns:
        The stored result when the id was already applied by one of
        ``operations``, None when it is new

    Raises:
        IdempotencyConflict: the id was used by a different operation
    """
    if not external_transaction_id:
        return None
    key = find_idempotency_key(shop_id, external_transaction_id, db)
    if key is None:
        return None
    operations = tuple(operations)
    if key.operation not in operations:
        raise IdempotencyConflict(
            f"Transaction {external_transaction_id} was already used for {key.operation}"
        )
    logger.info(f"Replay of {key.operation} for shop {shop_id} (txn {external_transaction_id}), skipping")
    return dict(key.result or {})


def record_idempotency_key(
    shop_id: int,
    external_transaction_id: Optional[str],
    operation: str,
    result: Dict[str, Any],
    db: Session,
) -> Optional[IdempotencyKey]:
    if not external_transaction_id:
        return None
    key = IdempotencyKey(
        shop_id=shop_id,
        external_transaction_id=external_transaction_id,
        operation=operation,
        result=result,
    )
    db.add(key)
    db.flush()
    return key
