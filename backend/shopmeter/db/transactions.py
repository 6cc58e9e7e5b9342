"""Serializable transaction harness with retry on serialization conflicts"""
import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_fixed

from shopmeter.core.config import settings
from shopmeter.core.errors import TransactionFailed
from shopmeter.core.metrics import transaction_retries_counter, transaction_failures_counter
from shopmeter.core.otel import billing_span

logger = logging.getLogger("transactions")

T = TypeVar("T")

AFTER_COMMIT_KEY = "shopmeter.after_commit"
DEPTH_KEY = "shopmeter.transaction_depth"

# PostgreSQL serialization_failure / deadlock_detected
SERIALIZATION_SQLSTATES = frozenset({"40001", "40P01"})
_CONFLICT_MESSAGES = ("could not serialize access", "database is locked", "deadlock detected")


def after_commit(db: Session, callback: Callable[[], object]) -> None:
    """Queue a side effect to run once the current transaction commits.

    Callbacks are dropped when the transaction rolls back.
    """
    db.info.setdefault(AFTER_COMMIT_KEY, []).append(callback)


def is_serialization_conflict(exc: BaseException) -> bool:
    """True when the store aborted the transaction because of a concurrent writer"""
    if not isinstance(exc, DBAPIError) or exc.orig is None:
        return False
    orig = exc.orig
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in SERIALIZATION_SQLSTATES:
        return True
    message = str(orig).lower()
    return any(fragment in message for fragment in _CONFLICT_MESSAGES)


def _discard_after_commit(db: Session) -> None:
    db.info.pop(AFTER_COMMIT_KEY, None)


def _run_after_commit(db: Session, operation: str) -> None:
    callbacks = db.info.pop(AFTER_COMMIT_KEY, [])
    first_error = None
    for callback in callbacks:
        try:
            callback()
        except Exception as e:
            # The transaction is committed; report, never undo
            logger.error(f"After-commit hook failed for {operation}: {e}", exc_info=True)
            if first_error is None:
                first_error = e
    if first_error is not None:
        raise first_error


def _log_retry(operation: str, max_attempts: int):
    def before_sleep(retry_state: RetryCallState) -> None:
        transaction_retries_counter.labels(operation=operation).inc()
        logger.warning(
            f"Serialization conflict in {operation} "
            f"(attempt {retry_state.attempt_number}/{max_attempts}), retrying"
        )
    return before_sleep


def _attempt(db: Session, operation: str, work: Callable[[Session], T], timeout: float, attempt: int) -> T:
    """One try of ``work``: commit on success, roll back and re-raise on any error"""
    started = time.monotonic()
    db.info[DEPTH_KEY] = 1
    with billing_span("transaction", operation=operation, attempt=attempt) as span:
        try:
            result = work(db)
            elapsed = time.monotonic() - started
            if elapsed > timeout:
                raise TimeoutError(f"{operation} ran for {elapsed:.1f}s (limit {timeout}s)")
            db.commit()
        except Exception as e:
            db.rollback()
            _discard_after_commit(db)
            if is_serialization_conflict(e):
                span.set_attribute("shopmeter.conflict", True)
            raise
        finally:
            db.info.pop(DEPTH_KEY, None)
    return result


def run_in_transaction(
    db: Session,
    operation: str,
    work: Callable[[Session], T],
    max_attempts: Optional[int] = None,
    retry_delay: Optional[float] = None,
    timeout: Optional[float] = None,
) -> T:
    """
    Run ``work(db)`` and commit, retrying the whole callable on serialization conflicts.

    Args:
        db: Session bound to a SERIALIZABLE engine
        operation: Name used in logs and metrics
        work: Callable doing all reads and writes of the operation. It is re-run
            from scratch on retry, so it must not rely on state read before the call.
        max_attempts: Attempts before giving up (default TRANSACTION_MAX_ATTEMPTS)
        retry_delay: Fixed pause between attempts in seconds
        timeout: Abort if one attempt runs longer than this many seconds

    Returns:
        Whatever ``work`` returned

    Raises:
        TransactionFailed: conflicts exhausted the attempt budget, the attempt
            timed out, or the store raised any other error
        BillingError: raised by ``work`` itself; the transaction is rolled back
    """
    # Nested call: join the enclosing transaction, which owns commit/retry
    if db.info.get(DEPTH_KEY):
        return work(db)

    max_attempts = max_attempts or settings.TRANSACTION_MAX_ATTEMPTS
    retry_delay = settings.TRANSACTION_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
    timeout = timeout or settings.TRANSACTION_TIMEOUT_SECONDS

    attempts = 0
    try:
        for attempt in Retrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_fixed(retry_delay),
            retry=retry_if_exception(is_serialization_conflict),
            before_sleep=_log_retry(operation, max_attempts),
            reraise=True,
        ):
            with attempt:
                attempts = attempt.retry_state.attempt_number
                result = _attempt(db, operation, work, timeout, attempts)
    except SQLAlchemyError as e:
        transaction_failures_counter.labels(operation=operation).inc()
        logger.error(f"Transaction {operation} failed after {attempts} attempt(s): {e}")
        raise TransactionFailed(operation, cause=e, attempts=attempts) from e
    except TimeoutError as e:
        transaction_failures_counter.labels(operation=operation).inc()
        logger.error(f"Transaction {operation} timed out: {e}")
        raise TransactionFailed(operation, cause=e, attempts=attempts) from e

    if attempts > 1:
        logger.info(f"Transaction {operation} committed on attempt {attempts}")
    _run_after_commit(db, operation)
    return result
