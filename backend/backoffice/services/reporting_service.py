# Overview: Service-layer operations for reporting; encapsulates business logic and database work.

"""
Aggregation Engine

Read-side projections recomputed from Sale/SaleItem and Product on every
call. Nothing here is materialized or cached.

RULES:
- Cancelled items are excluded from every figure. Sale.total_cents and
  Sale.profit_cents (checkout snapshots) are shown next to the live
  figures in history, but never summed.
- Every query goes through the caller's ScopeContext (see scope_service).
- Profit figures are only returned to admins; others get None.
- Windows are half-open [start, end) for dashboard stats and reports, and
  inclusive [from, to] for sales history.
"""

from __future__ import annotations

from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Iterator

from flask import current_app
from sqlalchemy import and_, func, or_

from ..extensions import db
from ..models import Product, Sale, SaleItem, User
from ..signals import product_updated, sale_inserted, sale_item_updated
from ..time_utils import day_window, start_of_day, to_utc_z, utcnow
from . import capital_service, inventory_service
from .scope_service import (
    ScopeContext,
    apply_site_filter,
    can_see_profit,
    effective_site_ids,
)


class ReportError(Exception):
    """Raised when report generation fails."""
    pass


_line_profit = (SaleItem.unit_price_cents - SaleItem.unit_cost_cents) * SaleItem.quantity


def _live_items_query(scope: ScopeContext, *columns):
    query = db.session.query(*columns).select_from(SaleItem).join(Sale, Sale.id == SaleItem.sale_id).filter(
        SaleItem.is_cancelled.is_(False),
    )
    return apply_site_filter(query, Sale.site_id, scope)


def _check_window(start: datetime | None, end: datetime | None) -> None:
    if start and end and end < start:
        raise ReportError("Window end is before its start")


def get_dashboard_stats(
    scope: ScopeContext,
    window_start: datetime | None = None,
    window_end: datetime | None = None,
) -> dict:
    """
    Sales, profit and items sold in [window_start, window_end), plus stock
    alerts. Defaults to today.

    Admins also get capital figures for the selected site (or all sites).
    """
    if window_start is None and window_end is None:
        window_start, window_end = day_window()
    _check_window(window_start, window_end)

    query = _live_items_query(
        scope,
        func.coalesce(func.sum(SaleItem.subtotal_cents), 0).label("sales"),
        func.coalesce(func.sum(_line_profit), 0).label("profit"),
        func.coalesce(func.sum(SaleItem.quantity), 0).label("items"),
    )
    if window_start is not None:
        query = query.filter(Sale.created_at >= window_start)
    if window_end is not None:
        query = query.filter(Sale.created_at < window_end)
    row = query.one()

    site_ids = effective_site_ids(scope)
    low_stock = inventory_service.list_low_stock(site_ids)
    show_profit = can_see_profit(scope)

    stats = {
        "window_start": to_utc_z(window_start),
        "window_end": to_utc_z(window_end),
        "site_ids": site_ids,
        "today_sales_cents": int(row.sales or 0),
        "today_profit_cents": int(row.profit or 0) if show_profit else None,
        "items_sold": int(row.items or 0),
        "low_stock_count": len(low_stock),
        "total_products": inventory_service.count_products(site_ids),
        "low_stock_alerts": [
            {
                "product_id": p.id,
                "site_id": p.site_id,
                "name": p.name,
                "stock": p.stock,
                "alert_threshold": p.alert_threshold,
                "message": f"Low stock for {p.name} ({p.stock} left)",
            }
            for p in low_stock
        ],
    }

    if scope.is_admin:
        site_id = scope.selected_site_id
        balance = capital_service.get_capital_balance(site_id)
        profit = capital_service.get_total_sale_profit(site_id)
        stats["total_profit_cents"] = profit
        stats["total_capital_cents"] = balance + profit
        stats["recent_withdrawals"] = [tx.to_dict() for tx in capital_service.recent_withdrawals(site_id)]

    return stats


def get_sales_history(
    scope: ScopeContext,
    start: datetime | None = None,
    end: datetime | None = None,
    *,
    batch_size: int | None = None,
) -> Iterator[dict]:
    """
    Lazily yield sales newest first, each with its non-cancelled items.

    Sales whose items are all cancelled are skipped. Pages through the
    database with a (created_at, id) keyset, so a consumer can stop at any
    point; re-query with new bounds to restart.
    """
    _check_window(start, end)
    batch_size = batch_size or current_app.config.get("SALES_HISTORY_BATCH_SIZE", 200)
    show_profit = can_see_profit(scope)

    base = db.session.query(Sale, User).join(User, User.id == Sale.cashier_id)
    base = apply_site_filter(base, Sale.site_id, scope)
    if start is not None:
        base = base.filter(Sale.created_at >= start)
    if end is not None:
        base = base.filter(Sale.created_at <= end)

    cursor: tuple[datetime, int] | None = None
    while True:
        page_query = base
        if cursor is not None:
            last_created, last_id = cursor
            page_query = page_query.filter(or_(
                Sale.created_at < last_created,
                and_(Sale.created_at == last_created, Sale.id < last_id),
            ))
        page = page_query.order_by(Sale.created_at.desc(), Sale.id.desc()).limit(batch_size).all()
        if not page:
            return

        sale_ids = [sale.id for sale, _ in page]
        rows = (
            db.session.query(SaleItem, Product.name)
            .join(Product, Product.id == SaleItem.product_id)
            .filter(SaleItem.sale_id.in_(sale_ids), SaleItem.is_cancelled.is_(False))
            .order_by(SaleItem.id.asc())
            .all()
        )
        items_by_sale: dict[int, list[dict]] = {}
        for item, product_name in rows:
            data = item.to_dict(include_profit=show_profit)
            data["product_name"] = product_name
            items_by_sale.setdefault(item.sale_id, []).append(data)

        for sale, cashier in page:
            items = items_by_sale.get(sale.id)
            if not items:
                continue
            entry = {
                "sale": sale.to_dict(include_profit=show_profit),
                "items": items,
                "cashier_name": cashier.display_name,
                "live_total_cents": sum(i["subtotal_cents"] for i in items),
            }
            if show_profit:
                entry["live_profit_cents"] = sum(i["profit_cents"] for i in items)
            yield entry

        if len(page) < batch_size:
            return
        last_sale = page[-1][0]
        cursor = (last_sale.created_at, last_sale.id)


def daily_sales_report(scope: ScopeContext, *, days: int = 7, now: datetime | None = None) -> dict:
    """Per-day totals over the last `days` days, oldest first."""
    if days <= 0:
        raise ReportError("days must be positive")
    end = start_of_day(now or utcnow()) + timedelta(days=1)
    start = end - timedelta(days=days)
    show_profit = can_see_profit(scope)

    rows = _live_items_query(
        scope,
        Sale.id,
        Sale.created_at,
        SaleItem.subtotal_cents,
        SaleItem.quantity,
        _line_profit.label("profit"),
    ).filter(Sale.created_at >= start, Sale.created_at < end).all()

    buckets: "OrderedDict[str, dict]" = OrderedDict()
    for offset in range(days):
        day = (start + timedelta(days=offset)).strftime("%Y-%m-%d")
        buckets[day] = {"date": day, "total_cents": 0, "profit_cents": 0, "items_sold": 0, "sale_ids": set()}

    for row in rows:
        bucket = buckets[row.created_at.strftime("%Y-%m-%d")]
        bucket["total_cents"] += int(row.subtotal_cents)
        bucket["profit_cents"] += int(row.profit)
        bucket["items_sold"] += int(row.quantity)
        bucket["sale_ids"].add(row.id)

    out = []
    for bucket in buckets.values():
        out.append({
            "date": bucket["date"],
            "total_cents": bucket["total_cents"],
            "profit_cents": bucket["profit_cents"] if show_profit else None,
            "items_sold": bucket["items_sold"],
            "sales_count": len(bucket["sale_ids"]),
        })

    return {
        "start": to_utc_z(start),
        "end": to_utc_z(end),
        "site_ids": effective_site_ids(scope),
        "rows": out,
    }


def top_products(scope: ScopeContext, *, days: int = 7, limit: int = 5, now: datetime | None = None) -> list[dict]:
    """Best sellers by quantity over the last `days` days."""
    end = start_of_day(now or utcnow()) + timedelta(days=1)
    start = end - timedelta(days=days)

    qty = func.sum(SaleItem.quantity).label("quantity")
    rows = (
        _live_items_query(scope, Product.id, Product.name, qty)
        .join(Product, Product.id == SaleItem.product_id)
        .filter(Sale.created_at >= start, Sale.created_at < end)
        .group_by(Product.id, Product.name)
        .order_by(qty.desc(), Product.name.asc())
        .limit(limit)
        .all()
    )
    return [{"product_id": r.id, "name": r.name, "quantity": int(r.quantity)} for r in rows]


def cashier_items(scope: ScopeContext, cashier_id: int, start: datetime | None = None) -> list[dict]:
    """The cashier's own non-cancelled items since start (today by default)."""
    start = start or start_of_day()
    rows = (
        _live_items_query(scope, SaleItem, Product.name, Sale.created_at)
        .join(Product, Product.id == SaleItem.product_id)
        .filter(Sale.cashier_id == cashier_id, Sale.created_at >= start)
        .order_by(Sale.created_at.desc(), SaleItem.id.desc())
        .all()
    )
    return [
        {
            "sale_item_id": item.id,
            "sale_id": item.sale_id,
            "product_name": name,
            "quantity": item.quantity,
            "subtotal_cents": item.subtotal_cents,
            "sold_at": to_utc_z(created_at),
        }
        for item, name, created_at in rows
    ]


class DashboardFeed:
    """
    Keeps dashboard stats current for one scope.

    Recomputes on start() and whenever a sale is inserted, a product is
    updated or a sale item is updated within the scope's sites, so that
    activity from other sessions shows up without polling. on_change is
    called with the fresh stats after each recompute.
    """

    def __init__(
        self,
        scope: ScopeContext,
        *,
        window: tuple[datetime | None, datetime | None] | None = None,
        on_change: Callable[[dict], None] | None = None,
    ):
        self.scope = scope
        self.window = window
        self.on_change = on_change
        self.stats: dict | None = None
        self.refresh_count = 0
        self._site_ids = effective_site_ids(scope)
        self._connected = False

    def __enter__(self) -> "DashboardFeed":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()

    def start(self) -> None:
        if not self._connected:
            sale_inserted.connect(self._on_change, weak=False)
            product_updated.connect(self._on_change, weak=False)
            sale_item_updated.connect(self._on_change, weak=False)
            self._connected = True
        self.refresh()

    def stop(self) -> None:
        if self._connected:
            sale_inserted.disconnect(self._on_change)
            product_updated.disconnect(self._on_change)
            sale_item_updated.disconnect(self._on_change)
            self._connected = False

    def refresh(self) -> dict:
        start, end = self.window or (None, None)
        self.stats = get_dashboard_stats(self.scope, start, end)
        self.refresh_count += 1
        if self.on_change:
            self.on_change(self.stats)
        return self.stats

    def _on_change(self, sender, **kwargs) -> None:
        site_id = kwargs.get("site_id")
        if self._site_ids is not None and site_id not in self._site_ids:
            return
        try:
            self.refresh()
        except Exception:
            current_app.logger.exception("Dashboard refresh failed")
