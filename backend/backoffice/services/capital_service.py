# Overview: Service-layer operations for the capital ledger; encapsulates business logic and database work.

"""
Capital Ledger

Manual investments and withdrawals, combined with realized sale profit:

    total capital = investments - withdrawals + realized profit

Realized profit is the live figure from non-cancelled sale items, so a
cancellation lowers capital immediately.

Site filter: site_id=None means every site and every transaction, including
those recorded without a site. A single site sees only the transactions
recorded against it.

Admin scope only. Transactions are inserted, never edited or deleted.
"""

from __future__ import annotations

from sqlalchemy import case, func

from ..extensions import db
from ..models import CapitalTransaction, Sale, SaleItem, Site
from ..models.capital import CAPITAL_INVESTMENT, CAPITAL_WITHDRAWAL
from ..validation import require_amount_cents, optional_str, ValidationError
from .scope_service import ScopeContext, require_admin


class CapitalError(Exception):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def record_capital_transaction(
    scope: ScopeContext,
    *,
    amount_cents,
    transaction_type: str,
    description: str | None = None,
    site_id: int | None = None,
) -> CapitalTransaction:
    require_admin(scope)

    amount_cents = require_amount_cents(amount_cents)
    if transaction_type not in (CAPITAL_INVESTMENT, CAPITAL_WITHDRAWAL):
        raise ValidationError("type must be 'investment' or 'withdrawal'")
    description = optional_str(description, "description")

    if site_id is not None and db.session.get(Site, site_id) is None:
        raise CapitalError("Site not found", details={"site_id": site_id})

    tx = CapitalTransaction(
        site_id=site_id,
        amount_cents=amount_cents,
        type=transaction_type,
        description=description,
        created_by_user_id=scope.user_id,
    )
    db.session.add(tx)
    db.session.commit()
    return tx


def _transactions_query(site_id: int | None):
    query = db.session.query(CapitalTransaction)
    if site_id is not None:
        query = query.filter(CapitalTransaction.site_id == site_id)
    return query


def get_capital_balance(site_id: int | None = None) -> int:
    """Investments minus withdrawals."""
    signed = case(
        (CapitalTransaction.type == CAPITAL_INVESTMENT, CapitalTransaction.amount_cents),
        else_=-CapitalTransaction.amount_cents,
    )
    query = db.session.query(func.coalesce(func.sum(signed), 0))
    if site_id is not None:
        query = query.filter(CapitalTransaction.site_id == site_id)
    return int(query.scalar() or 0)


def get_total_sale_profit(site_id: int | None = None) -> int:
    """Realized profit over all time, from non-cancelled items."""
    query = db.session.query(
        func.coalesce(
            func.sum((SaleItem.unit_price_cents - SaleItem.unit_cost_cents) * SaleItem.quantity),
            0,
        )
    ).join(Sale, Sale.id == SaleItem.sale_id).filter(SaleItem.is_cancelled.is_(False))
    if site_id is not None:
        query = query.filter(Sale.site_id == site_id)
    return int(query.scalar() or 0)


def get_total_capital(site_id: int | None = None) -> int:
    return get_capital_balance(site_id) + get_total_sale_profit(site_id)


def recent_withdrawals(site_id: int | None = None, limit: int = 5) -> list[CapitalTransaction]:
    return (
        _transactions_query(site_id)
        .filter(CapitalTransaction.type == CAPITAL_WITHDRAWAL)
        .order_by(CapitalTransaction.created_at.desc(), CapitalTransaction.id.desc())
        .limit(limit)
        .all()
    )


def list_transactions(site_id: int | None = None, limit: int = 50) -> list[CapitalTransaction]:
    return (
        _transactions_query(site_id)
        .order_by(CapitalTransaction.created_at.desc(), CapitalTransaction.id.desc())
        .limit(limit)
        .all()
    )


def capital_summary(scope: ScopeContext) -> dict:
    require_admin(scope)
    site_id = scope.selected_site_id
    balance = get_capital_balance(site_id)
    profit = get_total_sale_profit(site_id)
    return {
        "site_id": site_id,
        "capital_balance_cents": balance,
        "total_profit_cents": profit,
        "total_capital_cents": balance + profit,
    }
