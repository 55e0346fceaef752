# Overview: Row locking and retry helpers shared by the session and sale services.

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..validation import CashDeskError, ConflictError


logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; the version_id column on the
    locked models still turns a lost update into StaleDataError there.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on transient lock failures.

    Retries OperationalError (deadlocks, lock timeouts). An IntegrityError
    (e.g. two writers taking the same sale number) is retried too, since the
    next attempt re-reads the committed state; once attempts run out it
    becomes ConflictError. A StaleDataError means another writer changed the
    same row first; that is surfaced as ConflictError so the caller can
    re-fetch and decide.
    """
    for attempt in range(attempts):
        try:
            return func()
        except CashDeskError:
            db.session.rollback()
            raise
        except StaleDataError as exc:
            db.session.rollback()
            raise ConflictError("Record was modified concurrently; reload and retry") from exc
        except IntegrityError as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise ConflictError("Record conflicts with one written concurrently; retry") from exc
            logger.warning("Integrity conflict, retrying (attempt %s/%s)", attempt + 1, attempts)
        except OperationalError:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            logger.warning("Transient database error, retrying (attempt %s/%s)", attempt + 1, attempts)
            time.sleep(backoff_base * (2 ** attempt))
