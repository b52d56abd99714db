# Overview: Pytest coverage for stock reconciliation.

import pytest

from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from backoffice.models import SaleItem
from backoffice.models.sales import (
    STATE_HEADER_PERSISTED,
    STATE_ITEMS_FAILED,
    STATE_ITEMS_PERSISTED,
    STATE_STOCK_RECONCILED,
)
from backoffice.services import concurrency, inventory_service, reconcile_service, sales_service
from backoffice.services.inventory_service import get_stock
from backoffice.services.reconcile_service import (
    SaleNotReconcilableError,
    StockReconcileError,
    reconcile_sale_stock,
)
from backoffice.services.sales_service import LineInput


def record_sale(site, cashier, lines):
    """Write a header and its items without touching stock."""
    sale = sales_service.create_sale_header(
        site_id=site.id,
        cashier_id=cashier.id,
        total_cents=sum(p.selling_price_cents * q for p, q in lines),
        profit_cents=sum((p.selling_price_cents - p.purchase_price_cents) * q for p, q in lines),
    )
    sales_service.create_sale_items(
        sale.id,
        [LineInput(p.id, q, p.selling_price_cents, p.purchase_price_cents) for p, q in lines],
        checkout_state=STATE_ITEMS_PERSISTED,
    )
    return sale


class TestReconcileSaleStock:
    def test_decrements_every_item(self, site_a, cashier_a, beer, chips):
        sale = record_sale(site_a, cashier_a, [(beer, 2), (chips, 3)])

        reconciled = reconcile_sale_stock(sale.id)

        assert get_stock(beer.id) == 3
        assert get_stock(chips.id) == 7
        assert reconciled.stock_reconciled_at is not None
        assert reconciled.checkout_state == STATE_STOCK_RECONCILED

    def test_same_product_on_two_lines_is_summed(self, site_a, cashier_a, beer):
        sale = record_sale(site_a, cashier_a, [(beer, 2), (beer, 3)])
        reconcile_sale_stock(sale.id)
        assert get_stock(beer.id) == 0

    def test_second_run_is_a_no_op(self, site_a, cashier_a, beer):
        sale = record_sale(site_a, cashier_a, [(beer, 2)])

        reconcile_sale_stock(sale.id)
        reconcile_sale_stock(sale.id)

        assert get_stock(beer.id) == 3

    def test_cancelled_items_are_skipped(self, db_session, site_a, cashier_a, beer, chips):
        sale = record_sale(site_a, cashier_a, [(beer, 2), (chips, 3)])
        item = db_session.query(SaleItem).filter_by(sale_id=sale.id, product_id=chips.id).one()
        item.is_cancelled = True
        db_session.commit()

        reconcile_sale_stock(sale.id)

        assert get_stock(beer.id) == 3
        assert get_stock(chips.id) == 10

    def test_shortage_rolls_back_every_decrement(self, site_a, cashier_a, beer, chips):
        sale = record_sale(site_a, cashier_a, [(beer, 2), (chips, 3)])
        inventory_service.adjust_stock(chips.id, -9)

        with pytest.raises(StockReconcileError) as exc_info:
            reconcile_sale_stock(sale.id)

        assert exc_info.value.oversell is True
        assert exc_info.value.details["items"][0]["product_id"] == chips.id
        assert get_stock(beer.id) == 5
        assert get_stock(chips.id) == 1
        assert sales_service.get_sale(sale.id).stock_reconciled_at is None

    def test_missing_product(self, db_session, site_a, cashier_a, beer):
        sale = record_sale(site_a, cashier_a, [(beer, 1)])
        db_session.execute(update(SaleItem).where(SaleItem.sale_id == sale.id).values(product_id=987654))
        db_session.commit()

        with pytest.raises(StockReconcileError) as exc_info:
            reconcile_sale_stock(sale.id)

        assert exc_info.value.oversell is False
        assert exc_info.value.details["missing_product_ids"] == [987654]
        assert get_stock(beer.id) == 5

    def test_unknown_sale(self, db_session):
        with pytest.raises(StockReconcileError):
            reconcile_sale_stock(31337)


class TestUnreconciledSales:
    def test_lists_sales_waiting_for_stock(self, site_a, site_b, cashier_a, cashier_b, beer, make_product):
        pending = record_sale(site_a, cashier_a, [(beer, 1)])
        done = record_sale(site_a, cashier_a, [(beer, 1)])
        reconcile_sale_stock(done.id)
        other = make_product(stock=5, site=site_b, name="Cider")
        other_site = record_sale(site_b, cashier_b, [(other, 1)])

        assert [s.id for s in reconcile_service.list_unreconciled_sales([site_a.id])] == [pending.id]
        assert {s.id for s in reconcile_service.list_unreconciled_sales()} == {pending.id, other_site.id}


class TestRetry:
    def test_lock_conflict_is_retried(self, db_session, monkeypatch, site_a, cashier_a, beer):
        sale = record_sale(site_a, cashier_a, [(beer, 2)])
        real_adjust = inventory_service.adjust_stock
        calls = {"n": 0}

        def flaky(product_id, delta, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("UPDATE products", {}, Exception("database is locked"))
            return real_adjust(product_id, delta, **kwargs)
        monkeypatch.setattr(inventory_service, "adjust_stock", flaky)
        monkeypatch.setattr(concurrency.time, "sleep", lambda seconds: None)

        reconcile_sale_stock(sale.id)

        assert calls["n"] == 2
        assert get_stock(beer.id) == 3

    def test_gives_up_after_last_attempt(self, db_session, monkeypatch, site_a, cashier_a, beer):
        sale = record_sale(site_a, cashier_a, [(beer, 2)])

        def locked(product_id, delta, **kwargs):
            raise OperationalError("UPDATE products", {}, Exception("database is locked"))
        monkeypatch.setattr(inventory_service, "adjust_stock", locked)
        monkeypatch.setattr(concurrency.time, "sleep", lambda seconds: None)

        with pytest.raises(StockReconcileError) as exc_info:
            reconcile_sale_stock(sale.id)

        assert exc_info.value.details["reason"] == "OperationalError"
        assert get_stock(beer.id) == 5


class TestStockApplied:
    def test_stamps_decremented_items_only(self, db_session, site_a, cashier_a, beer, chips):
        sale = record_sale(site_a, cashier_a, [(beer, 2), (chips, 3)])
        cancelled = db_session.query(SaleItem).filter_by(sale_id=sale.id, product_id=chips.id).one()
        cancelled.is_cancelled = True
        db_session.commit()

        reconcile_sale_stock(sale.id)

        items = {i.product_id: i for i in db_session.query(SaleItem).filter_by(sale_id=sale.id)}
        assert items[beer.id].stock_applied_at is not None
        assert items[chips.id].stock_applied_at is None

    def test_item_cancelled_mid_run_is_recomputed(self, db_session, monkeypatch, site_a, cashier_a, beer, chips):
        sale = record_sale(site_a, cashier_a, [(beer, 2), (chips, 3)])
        chips_item = db_session.query(SaleItem).filter_by(sale_id=sale.id, product_id=chips.id).one()
        real_adjust = inventory_service.adjust_stock
        calls = {"n": 0}

        def cancel_during_first_run(product_id, delta, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                db_session.execute(
                    update(SaleItem).where(SaleItem.id == chips_item.id).values(is_cancelled=True)
                )
            return real_adjust(product_id, delta, **kwargs)
        monkeypatch.setattr(inventory_service, "adjust_stock", cancel_during_first_run)
        monkeypatch.setattr(concurrency.time, "sleep", lambda seconds: None)

        reconcile_sale_stock(sale.id)

        # The first run's decrements were rolled back with its cancellation;
        # the retry sees both items live again and applies both.
        assert get_stock(beer.id) == 3
        assert get_stock(chips.id) == 7
        assert db_session.query(SaleItem).filter(SaleItem.stock_applied_at.is_(None)).count() == 0


class TestNotReconcilable:
    def test_orphaned_header_is_refused(self, db_session, site_a, cashier_a, beer):
        sale = sales_service.create_sale_header(
            site_id=site_a.id, cashier_id=cashier_a.id, total_cents=400, profit_cents=250,
        )
        sales_service.set_checkout_state(sale.id, STATE_ITEMS_FAILED)

        with pytest.raises(SaleNotReconcilableError) as exc_info:
            reconcile_sale_stock(sale.id)

        assert exc_info.value.code == "SALE_NOT_RECONCILABLE"
        assert exc_info.value.details["checkout_state"] == STATE_ITEMS_FAILED
        stored = sales_service.get_sale(sale.id)
        assert stored.stock_reconciled_at is None
        assert stored.checkout_state == STATE_ITEMS_FAILED
        assert [s.id for s in sales_service.list_inconsistent_sales()] == [sale.id]
        assert reconcile_service.list_unreconciled_sales() == []

    def test_header_still_being_written_is_refused(self, db_session, site_a, cashier_a, beer):
        sale = sales_service.create_sale_header(
            site_id=site_a.id, cashier_id=cashier_a.id, total_cents=800, profit_cents=500,
        )
        assert sales_service.get_sale(sale.id).checkout_state == STATE_HEADER_PERSISTED

        with pytest.raises(SaleNotReconcilableError):
            reconcile_sale_stock(sale.id)
        assert sales_service.get_sale(sale.id).stock_reconciled_at is None

        sales_service.create_sale_items(
            sale.id,
            [LineInput(beer.id, 2, beer.selling_price_cents, beer.purchase_price_cents)],
            checkout_state=STATE_ITEMS_PERSISTED,
        )
        reconciled = reconcile_sale_stock(sale.id)

        assert reconciled.stock_reconciled_at is not None
        assert get_stock(beer.id) == 3

    def test_already_reconciled_sale_is_returned_untouched(self, site_a, cashier_a, beer):
        sale = record_sale(site_a, cashier_a, [(beer, 1)])
        reconcile_sale_stock(sale.id)

        assert reconcile_sale_stock(sale.id).checkout_state == STATE_STOCK_RECONCILED
        assert get_stock(beer.id) == 4
