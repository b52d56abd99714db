# Overview: Pytest coverage for sale item cancellation and stock restore.

import pytest

from backoffice.models import SaleItem, StockMovement
from backoffice.models.inventory import MOVEMENT_IN
from backoffice.services import inventory_service, reconcile_service, sales_service
from backoffice.services.cancellation_service import (
    AlreadyCancelledError,
    FlagError,
    StockRestoreError,
    cancel_sale_item,
    retry_stock_restore,
)
from backoffice.services.checkout_service import Cart, StockSyncError, add_to_cart, checkout
from backoffice.services.inventory_service import InventoryError, get_stock
from backoffice.services.reconcile_service import StockReconcileError
from backoffice.services.sales_service import SaleLedgerError


@pytest.fixture
def sold(db_session, site_a, cashier_a, beer):
    """Two Lager sold from a stock of five."""
    cart = Cart()
    add_to_cart(cart, beer, 2)
    result = checkout(cart, cashier_a.id, site_a.id)
    return db_session.query(SaleItem).filter_by(sale_id=result.sale_id).one()


class TestCancelSaleItem:
    def test_restores_stock(self, db_session, sold, beer, manager_a):
        assert get_stock(beer.id) == 3

        result = cancel_sale_item(sold.id, beer.id, 2, user_id=manager_a.id)

        assert result.stock_restored is True
        assert result.stock_after == 5
        assert get_stock(beer.id) == 5

        item = db_session.get(SaleItem, sold.id)
        assert item.is_cancelled is True
        assert item.cancelled_by_user_id == manager_a.id
        assert item.stock_restored_at is not None

        movement = db_session.query(StockMovement).filter_by(type=MOVEMENT_IN).one()
        assert movement.quantity == 2
        assert movement.sale_id == item.sale_id

    def test_second_cancel_is_rejected(self, sold, beer):
        cancel_sale_item(sold.id, beer.id, 2)

        with pytest.raises(AlreadyCancelledError):
            cancel_sale_item(sold.id, beer.id, 2)

        assert get_stock(beer.id) == 5

    def test_mismatched_quantity_is_rejected(self, db_session, sold, beer):
        with pytest.raises(FlagError):
            cancel_sale_item(sold.id, beer.id, 1)

        assert db_session.get(SaleItem, sold.id).is_cancelled is False
        assert get_stock(beer.id) == 3

    def test_unknown_item(self, db_session):
        with pytest.raises(SaleLedgerError):
            cancel_sale_item(999, 1, 1)

    def test_retry_unknown_item(self, db_session):
        with pytest.raises(SaleLedgerError):
            retry_stock_restore(999)

    def test_live_totals_exclude_cancelled_but_snapshot_stays(self, sold, beer):
        sale = sales_service.get_sale(sold.sale_id)
        cancel_sale_item(sold.id, beer.id, 2)

        assert sales_service.live_totals(sale.id) == {"total_cents": 0, "profit_cents": 0, "items_sold": 0}
        assert sales_service.get_sale(sale.id).total_cents == 800


class TestPartialFailure:
    def test_restore_failure_keeps_item_cancelled(self, db_session, monkeypatch, sold, beer):
        def boom(product_id, delta, **kwargs):
            raise InventoryError("update failed")
        monkeypatch.setattr(inventory_service, "adjust_stock", boom)

        with pytest.raises(StockRestoreError) as exc_info:
            cancel_sale_item(sold.id, beer.id, 2)

        assert exc_info.value.code == "STOCK_RESTORE_FAILED"
        item = db_session.get(SaleItem, sold.id)
        assert item.is_cancelled is True
        assert item.stock_restored_at is None
        assert get_stock(beer.id) == 3

        monkeypatch.undo()
        result = retry_stock_restore(sold.id)
        assert result.stock_restored is True
        assert get_stock(beer.id) == 5

    def test_retry_after_success_does_nothing(self, sold, beer):
        cancel_sale_item(sold.id, beer.id, 2)

        result = retry_stock_restore(sold.id)

        assert result.stock_restored is True
        assert result.stock_after is None
        assert get_stock(beer.id) == 5

    def test_retry_requires_cancelled_item(self, sold):
        with pytest.raises(StockRestoreError):
            retry_stock_restore(sold.id)


class TestUnreconciledSale:
    def test_cancel_without_applied_stock_restores_nothing(self, db_session, monkeypatch, site_a, cashier_a, beer):
        def boom(sale_id):
            raise StockReconcileError("rpc failed")
        monkeypatch.setattr(reconcile_service, "reconcile_sale_stock", boom)

        cart = Cart()
        add_to_cart(cart, beer, 2)
        with pytest.raises(StockSyncError):
            checkout(cart, cashier_a.id, site_a.id)
        monkeypatch.undo()

        item = db_session.query(SaleItem).one()
        result = cancel_sale_item(item.id, beer.id, 2)

        assert result.stock_restored is False
        assert get_stock(beer.id) == 5

        # The reconciler now has nothing left to apply
        reconcile_service.reconcile_sale_stock(item.sale_id)
        assert get_stock(beer.id) == 5

        item = db_session.get(SaleItem, item.id)
        assert item.stock_applied_at is None
        assert item.stock_restored_at is None

    def test_retry_after_late_reconcile_does_not_inflate_stock(self, db_session, monkeypatch, site_a, cashier_a, beer):
        def boom(sale_id):
            raise StockReconcileError("rpc failed")
        monkeypatch.setattr(reconcile_service, "reconcile_sale_stock", boom)

        cart = Cart()
        add_to_cart(cart, beer, 2)
        with pytest.raises(StockSyncError):
            checkout(cart, cashier_a.id, site_a.id)
        monkeypatch.undo()

        item = db_session.query(SaleItem).one()
        cancel_sale_item(item.id, beer.id, 2)
        sale = reconcile_service.reconcile_sale_stock(item.sale_id)
        assert sale.stock_reconciled_at is not None

        result = retry_stock_restore(item.id)

        assert result.stock_restored is False
        assert result.stock_applied is False
        assert get_stock(beer.id) == 5
        assert db_session.query(StockMovement).filter_by(type=MOVEMENT_IN).count() == 0

    def test_applied_item_is_restored_after_late_reconcile(self, db_session, monkeypatch, site_a, cashier_a, beer, chips):
        def boom(sale_id):
            raise StockReconcileError("rpc failed")
        monkeypatch.setattr(reconcile_service, "reconcile_sale_stock", boom)

        cart = Cart()
        add_to_cart(cart, beer, 2)
        add_to_cart(cart, chips, 3)
        with pytest.raises(StockSyncError):
            checkout(cart, cashier_a.id, site_a.id)
        monkeypatch.undo()

        beer_item = db_session.query(SaleItem).filter_by(product_id=beer.id).one()
        chips_item = db_session.query(SaleItem).filter_by(product_id=chips.id).one()
        cancel_sale_item(beer_item.id, beer.id, 2)
        reconcile_service.reconcile_sale_stock(beer_item.sale_id)
        assert get_stock(chips.id) == 7

        result = cancel_sale_item(chips_item.id, chips.id, 3)

        assert result.stock_restored is True
        assert result.stock_after == 10
        assert get_stock(beer.id) == 5
        assert retry_stock_restore(chips_item.id).stock_after is None
        assert get_stock(chips.id) == 10


class TestStockApplied:
    def test_checkout_stamps_items(self, db_session, sold):
        item = db_session.get(SaleItem, sold.id)
        assert item.stock_applied_at is not None
        assert item.to_dict()["stock_applied_at"] is not None

    def test_result_reports_applied_stock(self, sold, beer):
        result = cancel_sale_item(sold.id, beer.id, 2)
        assert result.to_dict()["stock_applied"] is True
