# Overview: Service-layer helpers for row locking and retrying writes that race with other checkouts.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import Sale


RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def lock_sale(sale_id: int) -> Sale | None:
    """
    Load a sale with SELECT ... FOR UPDATE, bypassing the identity map.

    Serializes two reconcile runs of the same sale on databases that honor
    row locks. SQLite ignores the clause; the reconciled_at stamp still
    makes the second run a no-op.
    """
    return (
        db.session.query(Sale)
        .filter_by(id=sale_id)
        .populate_existing()
        .with_for_update()
        .first()
    )


def run_with_retry(func, *, label: str, attempts: int = 3, backoff_base: float = 0.1):
    """
    Run func in its own transaction, retrying lock and stale-row conflicts.

    Every failure rolls the session back. Non-retryable errors are re-raised
    at once; retryable ones are re-raised after the last attempt.
    """
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            if attempt == attempts:
                current_app.logger.error("%s failed after %d attempts: %s", label, attempts, exc)
                raise
            current_app.logger.warning("%s conflicted (attempt %d/%d), retrying", label, attempt, attempts)
            time.sleep(backoff_base * (2 ** (attempt - 1)))
        except Exception:
            db.session.rollback()
            raise
