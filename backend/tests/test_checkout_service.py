# Overview: Pytest coverage for the checkout saga and its failure classification.

"""
Checkout saga tests.

Each failure point is forced by patching the ledger or reconciler function
the saga calls, then the durable state left behind is checked.
"""

import pytest
from sqlalchemy.exc import OperationalError

from backoffice.models import Sale, SaleItem, StockMovement
from backoffice.models.inventory import MOVEMENT_OUT
from backoffice.models.sales import (
    STATE_AUDIT_WRITTEN,
    STATE_HEADER_FAILED,
    STATE_HEADER_PERSISTED,
    STATE_ITEMS_FAILED,
    STATE_ITEMS_PERSISTED,
    STATE_STARTED,
    STATE_STOCK_RECONCILED,
    STATE_STOCK_SYNC_FAILED,
)
from backoffice.services import checkout_service, inventory_service, reconcile_service, sales_service
from backoffice.services.checkout_service import (
    Cart,
    CartValidationError,
    CheckoutSaga,
    InconsistentSaleError,
    SaleNotRecordedError,
    StockError,
    StockSyncError,
    add_to_cart,
    checkout,
)
from backoffice.services.inventory_service import get_stock
from backoffice.services.reconcile_service import StockReconcileError
from backoffice.services.sales_service import SaleLedgerError


def _db_error():
    return OperationalError("INSERT", {}, Exception("database is locked"))


@pytest.fixture
def cart_of(db_session):
    def _cart(*lines):
        cart = Cart()
        for product, quantity in lines:
            add_to_cart(cart, product, quantity)
        return cart
    return _cart


class TestAddToCart:
    def test_merges_same_product(self, beer, cart_of):
        cart = cart_of((beer, 2), (beer, 1))
        assert len(cart.lines) == 1
        assert cart.lines[0].quantity == 3
        assert cart.total_cents == 1200

    def test_rejects_more_than_known_stock(self, beer):
        cart = Cart()
        with pytest.raises(StockError) as exc_info:
            add_to_cart(cart, beer, 6)
        assert str(exc_info.value) == "Only 5 Lager in stock"
        assert cart.is_empty

    def test_merged_quantity_is_checked(self, beer, cart_of):
        cart = cart_of((beer, 4))
        with pytest.raises(StockError):
            add_to_cart(cart, beer, 2)
        assert cart.lines[0].quantity == 4

    def test_rejects_products_from_another_site(self, beer, make_product, site_b, cart_of):
        cart = cart_of((beer, 1))
        cider = make_product(site=site_b, name="Cider")
        with pytest.raises(CartValidationError):
            add_to_cart(cart, cider, 1)


class TestCheckoutHappyPath:
    def test_records_sale_and_decrements_stock(self, db_session, site_a, cashier_a, beer, cart_of):
        cart = cart_of((beer, 2))

        result = checkout(cart, cashier_a.id, site_a.id)

        assert result.total_cents == 800
        assert result.profit_cents == 500
        assert result.state == STATE_AUDIT_WRITTEN
        assert result.history == [
            STATE_STARTED,
            STATE_HEADER_PERSISTED,
            STATE_ITEMS_PERSISTED,
            STATE_STOCK_RECONCILED,
            STATE_AUDIT_WRITTEN,
        ]
        assert get_stock(beer.id) == 3
        assert cart.is_empty

        sale = db_session.get(Sale, result.sale_id)
        assert sale.total_cents == 800
        assert sale.stock_reconciled_at is not None
        assert sale.checkout_state == STATE_AUDIT_WRITTEN

        movement = db_session.query(StockMovement).filter_by(sale_id=sale.id).one()
        assert movement.type == MOVEMENT_OUT
        assert movement.quantity == 2
        assert movement.note == f"Sale #{sale.id}"

    def test_prices_are_snapshotted(self, db_session, site_a, cashier_a, beer, cart_of):
        cart = cart_of((beer, 1))
        result = checkout(cart, cashier_a.id, site_a.id)

        beer.selling_price_cents = 999
        db_session.commit()

        item = db_session.query(SaleItem).filter_by(sale_id=result.sale_id).one()
        assert item.unit_price_cents == 400
        assert item.unit_cost_cents == 150


class TestValidation:
    def test_empty_cart(self, site_a, cashier_a):
        with pytest.raises(CartValidationError):
            checkout(Cart(), cashier_a.id, site_a.id)

    def test_live_stock_dropped_since_cart_was_built(self, db_session, site_a, cashier_a, beer, cart_of):
        cart = cart_of((beer, 4))
        inventory_service.adjust_stock(beer.id, -3)

        with pytest.raises(StockError) as exc_info:
            checkout(cart, cashier_a.id, site_a.id)

        assert exc_info.value.details["items"][0]["on_hand"] == 2
        assert db_session.query(Sale).count() == 0
        assert not cart.is_empty

    def test_wrong_site(self, site_b, cashier_a, beer, cart_of):
        cart = cart_of((beer, 1))
        with pytest.raises(CartValidationError):
            checkout(cart, cashier_a.id, site_b.id)


class TestFailurePoints:
    def test_header_failure_leaves_nothing(self, db_session, monkeypatch, site_a, cashier_a, beer, cart_of):
        def boom(**kwargs):
            raise _db_error()
        monkeypatch.setattr(sales_service, "create_sale_header", boom)

        saga = CheckoutSaga(cart_of((beer, 2)), cashier_a.id, site_a.id)
        with pytest.raises(SaleNotRecordedError):
            saga.run()

        assert saga.state == STATE_HEADER_FAILED
        assert db_session.query(Sale).count() == 0
        assert get_stock(beer.id) == 5

    def test_items_failure_is_inconsistent_sale(self, db_session, monkeypatch, site_a, cashier_a, beer, cart_of):
        def boom(sale_id, lines, **kwargs):
            raise SaleLedgerError("insert failed")
        monkeypatch.setattr(sales_service, "create_sale_items", boom)

        saga = CheckoutSaga(cart_of((beer, 2)), cashier_a.id, site_a.id)
        with pytest.raises(InconsistentSaleError) as exc_info:
            saga.run()

        sale_id = exc_info.value.sale_id
        assert saga.state == STATE_ITEMS_FAILED
        assert db_session.get(Sale, sale_id).checkout_state == STATE_ITEMS_FAILED
        assert db_session.query(SaleItem).count() == 0
        assert get_stock(beer.id) == 5
        assert [s.id for s in sales_service.list_inconsistent_sales()] == [sale_id]

    def test_reconcile_failure_keeps_sale_and_stock(self, db_session, monkeypatch, site_a, cashier_a, beer, cart_of):
        def boom(sale_id):
            raise StockReconcileError("rpc failed", details={"sale_id": sale_id})
        monkeypatch.setattr(reconcile_service, "reconcile_sale_stock", boom)

        saga = CheckoutSaga(cart_of((beer, 2)), cashier_a.id, site_a.id)
        with pytest.raises(StockSyncError) as exc_info:
            saga.run()

        err = exc_info.value
        assert err.code == "STOCK_DESYNC"
        assert err.oversell is False
        assert saga.state == STATE_STOCK_SYNC_FAILED

        sale = db_session.get(Sale, err.sale_id)
        assert sale.checkout_state == STATE_STOCK_SYNC_FAILED
        assert db_session.query(SaleItem).filter_by(sale_id=sale.id).count() == 1
        assert get_stock(beer.id) == 5
        assert db_session.query(StockMovement).count() == 0

        monkeypatch.undo()
        assert [s.id for s in reconcile_service.list_unreconciled_sales()] == [sale.id]
        reconcile_service.reconcile_sale_stock(sale.id)
        assert get_stock(beer.id) == 3

    def test_audit_failure_is_not_reported(self, db_session, monkeypatch, site_a, cashier_a, beer, chips, cart_of):
        def boom(**kwargs):
            raise _db_error()
        monkeypatch.setattr(inventory_service, "record_stock_movement", boom)

        result = checkout(cart_of((beer, 2), (chips, 1)), cashier_a.id, site_a.id)

        assert result.state == STATE_AUDIT_WRITTEN
        assert result.audit_failures == 2
        assert get_stock(beer.id) == 3
        assert get_stock(chips.id) == 9
        assert db_session.query(StockMovement).count() == 0


class TestConcurrentCheckouts:
    def test_oversell_is_detected_at_reconcile(self, db_session, site_a, cashier_a, make_product, cart_of):
        last_one = make_product(stock=1, name="Last bottle")

        first = CheckoutSaga(cart_of((last_one, 1)), cashier_a.id, site_a.id)
        second = CheckoutSaga(cart_of((last_one, 1)), cashier_a.id, site_a.id)

        # Both pass validation against the same stock level
        first.validate()
        second.validate()

        for saga in (first, second):
            saga.persist_header()
            saga.persist_items()

        first.reconcile_stock()
        with pytest.raises(StockSyncError) as exc_info:
            second.reconcile_stock()

        assert exc_info.value.oversell is True
        assert exc_info.value.sale_id == second.sale_id
        assert get_stock(last_one.id) == 0
        assert db_session.get(Sale, first.sale_id).stock_reconciled_at is not None
        assert db_session.get(Sale, second.sale_id).checkout_state == STATE_STOCK_SYNC_FAILED

    def test_checkout_module_entry_point(self, site_a, cashier_a, beer, cart_of):
        assert checkout_service.checkout(cart_of((beer, 5)), cashier_a.id, site_a.id).total_cents == 2000
        assert get_stock(beer.id) == 0
