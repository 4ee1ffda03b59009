from contextlib import contextmanager
import logging
import time
from typing import Callable, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Query, Session
from sqlalchemy.orm.exc import StaleDataError

from fulfillment import config
from fulfillment.errors import ConcurrencyConflictError, DataIntegrityError, StorageUnavailableError


logger = logging.getLogger(__name__)

T = TypeVar("T")

_LOCK_CONFLICT_MARKERS = (
    "database is locked",
    "deadlock",
    "could not obtain lock",
    "lock wait timeout",
    "could not serialize access",
)
# serialization_failure, deadlock_detected, lock_not_available
_LOCK_CONFLICT_PGCODES = {"40001", "40P01", "55P03"}


def lock_for_update(query: Query) -> Query:
    """Row-level lock for contended rows. SQLite ignores FOR UPDATE; other databases honor it."""
    return query.with_for_update()


def is_lock_conflict(exc: OperationalError) -> bool:
    if getattr(exc.orig, "pgcode", None) in _LOCK_CONFLICT_PGCODES:
        return True
    message = str(exc.orig).lower()
    return any(marker in message for marker in _LOCK_CONFLICT_MARKERS)


@contextmanager
def translate_storage_errors():
    try:
        yield
    except StaleDataError as exc:
        raise ConcurrencyConflictError("Record was modified by a concurrent transaction.") from exc
    except IntegrityError as exc:
        raise DataIntegrityError(f"Constraint violation: {exc.orig}") from exc
    except OperationalError as exc:
        if is_lock_conflict(exc):
            raise ConcurrencyConflictError("Record is locked by a concurrent transaction.") from exc
        raise StorageUnavailableError("Storage is unavailable.") from exc


def run_in_transaction(
    db: Session,
    func: Callable[[], T],
    *,
    attempts: int | None = None,
    backoff_base: float | None = None,
) -> T:
    """Run one unit of work and commit it.

    Any failure rolls the whole transaction back. Concurrency conflicts are
    retried with exponential backoff and surfaced once attempts run out.
    """
    attempts = attempts or config.DB_RETRY_ATTEMPTS
    backoff_base = config.DB_RETRY_BACKOFF_SECONDS if backoff_base is None else backoff_base

    for attempt in range(attempts):
        try:
            with translate_storage_errors():
                result = func()
                db.commit()
            return result
        except ConcurrencyConflictError:
            db.rollback()
            if attempt >= attempts - 1:
                logger.warning("Concurrency conflict persisted after %s attempts", attempts)
                raise
            delay = backoff_base * (2 ** attempt)
            logger.info("Concurrency conflict on attempt %s; retrying in %.3fs", attempt + 1, delay)
            time.sleep(delay)
        except Exception:
            db.rollback()
            raise
    raise ConcurrencyConflictError("Transaction could not be completed.")
