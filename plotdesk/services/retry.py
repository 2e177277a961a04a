"""
Database retry wrapper for service operations.

Connection-class failures are retried with exponential backoff before being
reported as ServiceUnavailable; everything else from the store is reported
immediately so callers can tell "try again shortly" from "this is broken".
"""
import functools
import time

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import AppError, Conflict, InternalError, ServiceUnavailable
from ..logging import get_logger


logger = get_logger(__name__)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and bool(getattr(exc, "connection_invalidated", False))


def _find_session(args, kwargs) -> Session:
    db = kwargs.get("db")
    if db is None:
        db = next((a for a in args if isinstance(a, Session)), None)
    return db


def _rollback(db) -> None:
    if db is None:
        return
    try:
        db.rollback()
    except SQLAlchemyError as e:
        logger.warning("db_rollback_failed", error=str(e))


def with_db_retry(func=None, *, attempts: int = None, base_delay_ms: int = None):
    """
    Decorate a service function taking a Session.

    Args:
        attempts: Total attempts (defaults to DB_RETRY_ATTEMPTS)
        base_delay_ms: Delay before the 2nd attempt; doubles each time (defaults to DB_RETRY_BASE_DELAY_MS)
    """
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            max_attempts = max(1, attempts if attempts is not None else settings.db_retry_attempts)
            base_ms = base_delay_ms if base_delay_ms is not None else settings.db_retry_base_delay_ms
            db = _find_session(args, kwargs)
            last_error = None
            for attempt in range(max_attempts):
                try:
                    return fn(*args, **kwargs)
                except AppError:
                    _rollback(db)
                    raise
                except IntegrityError as e:
                    _rollback(db)
                    logger.warning("db_integrity_error", operation=fn.__name__, error=str(e.orig))
                    raise Conflict("Duplicate or conflicting record") from e
                except SQLAlchemyError as e:
                    _rollback(db)
                    if not is_retryable(e):
                        logger.error("db_error", operation=fn.__name__, error=str(e))
                        raise InternalError() from e
                    last_error = e
                    if attempt + 1 < max_attempts:
                        delay_s = (base_ms * (2 ** attempt)) / 1000.0
                        logger.warning(
                            "db_retry",
                            operation=fn.__name__,
                            attempt=attempt + 1,
                            max_attempts=max_attempts,
                            delay_s=delay_s,
                            error=str(e),
                        )
                        time.sleep(delay_s)
            logger.error("db_retries_exhausted", operation=fn.__name__, error=str(last_error))
            raise ServiceUnavailable() from last_error

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator
