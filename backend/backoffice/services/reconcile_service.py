# Overview: Service-layer operations for stock reconciliation; encapsulates business logic and database work.

"""
Stock Reconciler

Applies the stock decrements of one completed sale as a single
all-or-nothing transaction. This is the only checkout step with
transactional semantics.

INVARIANTS:
- Only non-cancelled items are decremented. Each decremented item is stamped
  with stock_applied_at in the same transaction; cancellation restores only
  stamped items.
- Quantities are summed per product, then each product is decremented with
  the guarded delta update; no product is ever driven below zero.
- A missing product or an exhausted stock rolls back every decrement.
- Exactly once per sale: stock_reconciled_at is stamped in the same
  transaction, and a sale that already carries it is returned untouched.
  Retrying after a timeout therefore never double-decrements.
- Only sales whose items are durable (ITEMS_PERSISTED, STOCK_SYNC_FAILED)
  are reconciled; anything else raises and is left as found.
- Runs without site scoping. Callers that expose it must gate it.
"""

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import Sale, SaleItem, Product
from ..models.sales import (
    STATE_ITEMS_PERSISTED,
    STATE_STOCK_SYNC_FAILED,
    STATE_STOCK_RECONCILED,
)
from ..signals import product_updated
from ..time_utils import utcnow
from .concurrency import lock_sale, run_with_retry
from . import inventory_service
from .inventory_service import InsufficientStockError


# A sale is reconcilable once its items are durable. Orphaned headers
# (ITEMS_FAILED) and headers still being written (HEADER_PERSISTED) are not.
RECONCILABLE_STATES = (STATE_ITEMS_PERSISTED, STATE_STOCK_SYNC_FAILED)


class StockReconcileError(Exception):
    """
    Raised when a sale's stock could not be applied.

    oversell is True when the failure is a concurrent sale having already
    exhausted stock, as opposed to a missing product or a database fault.
    """
    def __init__(self, message: str, details: dict | None = None, *, oversell: bool = False):
        super().__init__(message)
        self.details = details or {}
        self.oversell = oversell


class SaleNotReconcilableError(StockReconcileError):
    """The sale has no durable items to apply: orphaned, or still being written."""
    code = "SALE_NOT_RECONCILABLE"


def reconcile_sale_stock(sale_id: int) -> Sale:
    """
    Decrement stock for every non-cancelled item of the sale.

    Returns the sale. Raises StockReconcileError with nothing applied on
    failure.
    """
    def _op():
        sale = lock_sale(sale_id)
        if not sale:
            raise StockReconcileError("Sale not found", details={"sale_id": sale_id})

        if sale.stock_reconciled_at is not None:
            db.session.rollback()
            return sale, []

        if sale.checkout_state not in RECONCILABLE_STATES:
            raise SaleNotReconcilableError(
                "Sale is not ready for stock reconciliation",
                details={"sale_id": sale_id, "checkout_state": sale.checkout_state},
            )

        items = (
            db.session.query(SaleItem)
            .filter(SaleItem.sale_id == sale_id, SaleItem.is_cancelled.is_(False))
            .order_by(SaleItem.id.asc())
            .all()
        )

        per_product: dict[int, int] = {}
        for item in items:
            per_product[item.product_id] = per_product.get(item.product_id, 0) + item.quantity

        found = {
            row.id: row.site_id
            for row in db.session.query(Product.id, Product.site_id).filter(Product.id.in_(list(per_product))).all()
        }
        missing = sorted(pid for pid in per_product if pid not in found)
        if missing:
            raise StockReconcileError(
                "Product not found",
                details={"sale_id": sale_id, "missing_product_ids": missing},
            )

        shortages = []
        for product_id, quantity in sorted(per_product.items()):
            try:
                inventory_service.adjust_stock(product_id, -quantity, commit=False)
            except InsufficientStockError as exc:
                shortages.append(exc.details)

        if shortages:
            raise StockReconcileError(
                "Insufficient stock to apply sale",
                details={"sale_id": sale_id, "items": shortages},
                oversell=True,
            )

        now = utcnow()
        item_ids = [item.id for item in items]
        if item_ids:
            stamped = db.session.execute(
                update(SaleItem)
                .where(
                    SaleItem.id.in_(item_ids),
                    SaleItem.is_cancelled.is_(False),
                    SaleItem.stock_applied_at.is_(None),
                )
                .values(stock_applied_at=now)
                .execution_options(synchronize_session=False)
            )
            if stamped.rowcount != len(item_ids):
                # An item was cancelled after it was read; decrements must be recomputed
                raise StaleDataError(f"Items of sale {sale_id} changed during reconciliation")

        sale.stock_reconciled_at = now
        sale.checkout_state = STATE_STOCK_RECONCILED
        db.session.commit()
        return sale, [(product_id, found[product_id]) for product_id in sorted(per_product)]

    try:
        sale, touched = run_with_retry(_op, label=f"Reconcile of sale {sale_id}")
    except StockReconcileError:
        raise
    except SQLAlchemyError as exc:
        raise StockReconcileError(
            "Stock reconciliation failed",
            details={"sale_id": sale_id, "reason": exc.__class__.__name__},
        ) from exc

    for product_id, site_id in touched:
        product_updated.send(None, product_id=product_id, site_id=site_id)

    return sale


def list_unreconciled_sales(site_ids: list[int] | None = None) -> list[Sale]:
    """
    Sales whose items are durable but whose stock was never applied.

    These are the "critical stock desynchronization" cases that need an
    administrator to run the reconciler again.
    """
    query = db.session.query(Sale).filter(
        Sale.stock_reconciled_at.is_(None),
        Sale.checkout_state.in_(RECONCILABLE_STATES),
    )
    if site_ids is not None:
        query = query.filter(Sale.site_id.in_(site_ids))
    return query.order_by(Sale.created_at.asc(), Sale.id.asc()).all()
