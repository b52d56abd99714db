# Overview: Service-layer operations for the sale ledger; encapsulates business logic and database work.

"""
Sale Ledger

Append-only store of sale headers and their line items. Each write function
here is one durable step (one commit); the checkout saga sequences them and
classifies their failures.

Line items are never deleted. Cancellation is a flag flip owned by
cancellation_service.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import func, update

from ..extensions import db
from ..models import Sale, SaleItem
from ..models.sales import STATE_ITEMS_FAILED
from ..signals import sale_inserted
from ..time_utils import utcnow


class SaleLedgerError(Exception):
    """Raised for sale ledger errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


@dataclass(frozen=True)
class LineInput:
    """One line to persist; prices are the snapshot taken at checkout."""
    product_id: int
    quantity: int
    unit_price_cents: int
    unit_cost_cents: int

    @property
    def subtotal_cents(self) -> int:
        return self.unit_price_cents * self.quantity


def create_sale_header(*, site_id: int, cashier_id: int, total_cents: int, profit_cents: int) -> Sale:
    """Insert the sale header. Its totals are snapshots and never rewritten."""
    sale = Sale(
        site_id=site_id,
        cashier_id=cashier_id,
        total_cents=total_cents,
        profit_cents=profit_cents,
        created_at=utcnow(),
    )
    db.session.add(sale)
    db.session.commit()

    sale_inserted.send(None, sale_id=sale.id, site_id=sale.site_id)
    return sale


def create_sale_items(sale_id: int, lines: Iterable[LineInput], *, checkout_state: str | None = None) -> list[SaleItem]:
    """
    Insert every line of a sale in a single commit.

    When checkout_state is given, the header's state is advanced in the
    same transaction.
    """
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise SaleLedgerError("Sale not found", details={"sale_id": sale_id})

    items = [
        SaleItem(
            sale_id=sale_id,
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price_cents=line.unit_price_cents,
            unit_cost_cents=line.unit_cost_cents,
            subtotal_cents=line.subtotal_cents,
            is_cancelled=False,
        )
        for line in lines
    ]
    if not items:
        raise SaleLedgerError("Cannot record a sale with no items", details={"sale_id": sale_id})

    db.session.add_all(items)
    if checkout_state:
        sale.checkout_state = checkout_state
    db.session.commit()
    return items


def set_checkout_state(sale_id: int, state: str) -> None:
    db.session.execute(
        update(Sale)
        .where(Sale.id == sale_id)
        .values(checkout_state=state)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()


def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise SaleLedgerError("Sale not found", details={"sale_id": sale_id})
    return sale


def get_sale_item(sale_item_id: int) -> SaleItem:
    item = db.session.get(SaleItem, sale_item_id)
    if item is None:
        raise SaleLedgerError("Sale item not found", details={"sale_item_id": sale_item_id})
    return item


def list_items(sale_id: int, *, include_cancelled: bool = True) -> list[SaleItem]:
    query = db.session.query(SaleItem).filter(SaleItem.sale_id == sale_id)
    if not include_cancelled:
        query = query.filter(SaleItem.is_cancelled.is_(False))
    return query.order_by(SaleItem.id.asc()).all()


def live_totals(sale_id: int) -> dict:
    """
    Recompute a sale's figures from its non-cancelled items.

    Unlike Sale.total_cents/profit_cents this reflects later cancellations.
    """
    row = db.session.query(
        func.coalesce(func.sum(SaleItem.subtotal_cents), 0).label("total"),
        func.coalesce(
            func.sum((SaleItem.unit_price_cents - SaleItem.unit_cost_cents) * SaleItem.quantity),
            0,
        ).label("profit"),
        func.coalesce(func.sum(SaleItem.quantity), 0).label("items"),
    ).filter(
        SaleItem.sale_id == sale_id,
        SaleItem.is_cancelled.is_(False),
    ).one()

    return {
        "total_cents": int(row.total or 0),
        "profit_cents": int(row.profit or 0),
        "items_sold": int(row.items or 0),
    }


def list_inconsistent_sales(site_ids: list[int] | None = None) -> list[Sale]:
    """Headers whose items could not be written (orphaned by a failed checkout)."""
    query = db.session.query(Sale).filter(Sale.checkout_state == STATE_ITEMS_FAILED)
    if site_ids is not None:
        query = query.filter(Sale.site_id.in_(site_ids))
    return query.order_by(Sale.created_at.asc(), Sale.id.asc()).all()
