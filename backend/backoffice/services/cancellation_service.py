# Overview: Service-layer operations for sale item cancellation; encapsulates business logic and database work.

"""
Cancellation Compensator

Reverses one sale item: flags it cancelled, then puts its quantity back
into stock. The two steps are separate commits and fail separately:

1. Flag. A guarded UPDATE (... WHERE is_cancelled = false) so an item is
   cancelled at most once; a second attempt is rejected and never restores
   stock again.
2. Restore. The atomic stock delta from inventory_service, plus a
   stock_restored_at stamp. If this fails the item stays cancelled and
   retry_stock_restore() re-runs only this step.

Whether to restore is decided per item, from stock_applied_at (stamped by the
reconciler in the transaction that decrements stock), never from the state
of the sale. An item cancelled before its stock was applied is flagged but
not restored: the reconciler skips cancelled items, so it never will be
applied and there is nothing to give back, now or on any retry.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Sale, SaleItem
from ..models.inventory import MOVEMENT_IN
from ..signals import product_updated, sale_item_updated
from ..time_utils import utcnow
from . import inventory_service
from .inventory_service import InventoryError
from .sales_service import SaleLedgerError


class CancellationError(Exception):
    code = "CANCELLATION_FAILED"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class FlagError(CancellationError):
    """The item could not be marked cancelled. Stock untouched."""
    code = "CANCEL_FLAG_FAILED"


class AlreadyCancelledError(FlagError):
    code = "ALREADY_CANCELLED"


class StockRestoreError(CancellationError):
    """The item is cancelled but its stock was not restored."""
    code = "STOCK_RESTORE_FAILED"


@dataclass
class CancellationResult:
    sale_item_id: int
    product_id: int
    quantity: int
    stock_restored: bool
    stock_after: int | None
    stock_applied: bool = True

    def to_dict(self) -> dict:
        return {
            "sale_item_id": self.sale_item_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "stock_restored": self.stock_restored,
            "stock_after": self.stock_after,
            "stock_applied": self.stock_applied,
        }


def _load_item(sale_item_id: int) -> tuple[SaleItem, Sale]:
    item = db.session.get(SaleItem, sale_item_id, populate_existing=True)
    if item is None:
        raise SaleLedgerError("Sale item not found", details={"sale_item_id": sale_item_id})
    return item, item.sale


def _flag_cancelled(item: SaleItem, sale: Sale, user_id: int | None) -> None:
    try:
        result = db.session.execute(
            update(SaleItem)
            .where(SaleItem.id == item.id, SaleItem.is_cancelled.is_(False))
            .values(is_cancelled=True, cancelled_at=utcnow(), cancelled_by_user_id=user_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.session.rollback()
            raise AlreadyCancelledError("Sale item is already cancelled", details={"sale_item_id": item.id})
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error("Could not flag sale item %s as cancelled: %s", item.id, exc)
        raise FlagError("Sale item could not be cancelled", details={"sale_item_id": item.id}) from exc

    sale_item_updated.send(None, sale_item_id=item.id, sale_id=sale.id, site_id=sale.site_id)


def _restore_stock(sale_item_id: int, *, user_id: int | None = None) -> CancellationResult:
    item, sale = _load_item(sale_item_id)

    if not item.is_cancelled:
        raise StockRestoreError("Sale item is not cancelled", details={"sale_item_id": item.id})

    if item.stock_applied_at is None:
        return CancellationResult(
            sale_item_id=item.id,
            product_id=item.product_id,
            quantity=item.quantity,
            stock_restored=False,
            stock_after=None,
            stock_applied=False,
        )

    if item.stock_restored_at is not None:
        return CancellationResult(item.id, item.product_id, item.quantity, True, None)

    try:
        stamped = db.session.execute(
            update(SaleItem)
            .where(
                SaleItem.id == item.id,
                SaleItem.stock_applied_at.is_not(None),
                SaleItem.stock_restored_at.is_(None),
            )
            .values(stock_restored_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if stamped.rowcount == 0:
            # Another request restored it between our read and this write
            db.session.rollback()
            return CancellationResult(item.id, item.product_id, item.quantity, True, None)

        stock_after = inventory_service.adjust_stock(item.product_id, item.quantity, commit=False)
        db.session.commit()
    except (InventoryError, SQLAlchemyError) as exc:
        db.session.rollback()
        current_app.logger.error(
            "Sale item %s cancelled but %s unit(s) of product %s not restored: %s",
            item.id, item.quantity, item.product_id, exc,
        )
        raise StockRestoreError(
            "Sale item cancelled but stock was not restored; retry the restore",
            details={"sale_item_id": item.id, "product_id": item.product_id, "quantity": item.quantity},
        ) from exc

    product_updated.send(None, product_id=item.product_id, site_id=sale.site_id)

    try:
        inventory_service.record_stock_movement(
            product_id=item.product_id,
            site_id=sale.site_id,
            movement_type=MOVEMENT_IN,
            quantity=item.quantity,
            user_id=user_id,
            note=f"Cancelled item #{item.id} of sale #{sale.id}",
            sale_id=sale.id,
        )
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.warning("Stock movement not recorded for cancelled item %s", item.id, exc_info=True)

    return CancellationResult(
        sale_item_id=item.id,
        product_id=item.product_id,
        quantity=item.quantity,
        stock_restored=True,
        stock_after=stock_after,
    )


def cancel_sale_item(sale_item_id: int, product_id: int, quantity: int, *, user_id: int | None = None) -> CancellationResult:
    """
    Cancel one sale item and restore its stock.

    product_id and quantity must match the stored item; they are checked
    rather than trusted.
    """
    item, sale = _load_item(sale_item_id)
    if item.product_id != product_id or item.quantity != quantity:
        raise FlagError(
            "Product or quantity does not match the sale item",
            details={
                "sale_item_id": item.id,
                "expected_product_id": item.product_id,
                "expected_quantity": item.quantity,
            },
        )

    _flag_cancelled(item, sale, user_id)
    return _restore_stock(item.id, user_id=user_id)


def retry_stock_restore(sale_item_id: int, *, user_id: int | None = None) -> CancellationResult:
    """Re-run only the restore step for an already cancelled item."""
    return _restore_stock(sale_item_id, user_id=user_id)
