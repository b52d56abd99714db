# Overview: Service-layer operations for checkout; sequences the sale saga and classifies its failures.

"""
Checkout Orchestrator

WHY: Turning a cart into a sale takes several separately committed writes
(header, items, stock, audit). There is no transaction spanning them, so
each step's failure leaves a different, named state behind and is reported
with its own exception instead of one generic "checkout failed".

STATE MACHINE:

    STARTED -> HEADER_PERSISTED -> ITEMS_PERSISTED -> STOCK_RECONCILED -> AUDIT_WRITTEN
       |              |                   |
       v              v                   v
  HEADER_FAILED  ITEMS_FAILED      STOCK_SYNC_FAILED

- Validation failures happen in STARTED, before any write.
- HEADER_FAILED: nothing was written; retrying the whole checkout is safe.
- ITEMS_FAILED: the header exists without items. Surfaced as an
  inconsistent sale for manual cleanup, never retried automatically since a
  retry would create a second header.
- STOCK_SYNC_FAILED: the sale is financially recorded but stock was not
  decremented. Nothing is rolled back; an administrator re-runs the
  reconciler (which is idempotent per sale).
- Audit rows (stock movements) are best effort: failures are logged and
  never reach the cashier.

Steps run strictly in order; each waits for the previous one. Duplicate
submission from one session is the caller's concern (disable the action
while checkout runs).
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Product
from ..models.inventory import MOVEMENT_OUT
from ..models.sales import (
    STATE_STARTED,
    STATE_HEADER_PERSISTED,
    STATE_ITEMS_PERSISTED,
    STATE_STOCK_RECONCILED,
    STATE_AUDIT_WRITTEN,
    STATE_HEADER_FAILED,
    STATE_ITEMS_FAILED,
    STATE_STOCK_SYNC_FAILED,
)
from . import inventory_service, reconcile_service, sales_service
from .reconcile_service import StockReconcileError
from .sales_service import LineInput, SaleLedgerError


class CheckoutError(Exception):
    """Base class for checkout failures; code identifies the failure point."""
    code = "CHECKOUT_FAILED"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class CartValidationError(CheckoutError):
    """Rejected before any write; fully recoverable."""
    code = "CART_INVALID"


class StockError(CartValidationError):
    """Requested quantity exceeds the stock known for the product."""
    code = "INSUFFICIENT_STOCK"


class SaleNotRecordedError(CheckoutError):
    """The sale header could not be written. No side effects."""
    code = "SALE_NOT_RECORDED"


class InconsistentSaleError(CheckoutError):
    """The header was written but its items were not."""
    code = "INCONSISTENT_SALE"

    def __init__(self, message: str, sale_id: int, details: dict | None = None):
        super().__init__(message, details)
        self.sale_id = sale_id


class StockSyncError(CheckoutError):
    """The sale and its items are durable but stock was not decremented."""
    code = "STOCK_DESYNC"

    def __init__(self, message: str, sale_id: int, *, oversell: bool = False, details: dict | None = None):
        super().__init__(message, details)
        self.sale_id = sale_id
        self.oversell = oversell


@dataclass
class CartLine:
    """A product snapshot as the cashier saw it, plus the requested quantity."""
    product_id: int
    site_id: int
    name: str
    unit_price_cents: int
    unit_cost_cents: int
    known_stock: int
    quantity: int

    @classmethod
    def from_product(cls, product: Product, quantity: int) -> "CartLine":
        return cls(
            product_id=product.id,
            site_id=product.site_id,
            name=product.name,
            unit_price_cents=product.selling_price_cents,
            unit_cost_cents=product.purchase_price_cents,
            known_stock=product.stock,
            quantity=quantity,
        )

    @property
    def subtotal_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    @property
    def profit_cents(self) -> int:
        return (self.unit_price_cents - self.unit_cost_cents) * self.quantity

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "subtotal_cents": self.subtotal_cents,
            "known_stock": self.known_stock,
        }


@dataclass
class Cart:
    lines: list[CartLine] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def total_cents(self) -> int:
        return sum(line.subtotal_cents for line in self.lines)

    @property
    def profit_cents(self) -> int:
        return sum(line.profit_cents for line in self.lines)

    def find(self, product_id: int) -> CartLine | None:
        for line in self.lines:
            if line.product_id == product_id:
                return line
        return None

    def clear(self) -> None:
        self.lines.clear()

    def to_dict(self) -> dict:
        return {
            "lines": [line.to_dict() for line in self.lines],
            "total_cents": self.total_cents,
        }


@dataclass
class CheckoutResult:
    sale_id: int
    total_cents: int
    profit_cents: int
    state: str
    history: list[str]
    audit_failures: int = 0

    def to_dict(self, *, include_profit: bool = True) -> dict:
        data = {
            "sale_id": self.sale_id,
            "total_cents": self.total_cents,
            "state": self.state,
            "audit_failures": self.audit_failures,
        }
        if include_profit:
            data["profit_cents"] = self.profit_cents
        return data


def add_to_cart(cart: Cart, product: Product, quantity: int) -> Cart:
    """
    Add quantity of product to the cart, merging with an existing line.

    Checks against the product's stock as currently known; the live check
    happens again at checkout.
    """
    if quantity <= 0:
        raise CartValidationError("Quantity must be greater than zero", details={"product_id": product.id})
    if not product.is_active:
        raise CartValidationError("Product is inactive", details={"product_id": product.id})
    if cart.lines and cart.lines[0].site_id != product.site_id:
        raise CartValidationError(
            "All products in a cart must belong to the same site",
            details={"product_id": product.id, "site_id": product.site_id},
        )

    line = cart.find(product.id)
    requested = quantity + (line.quantity if line else 0)
    if requested > product.stock:
        raise StockError(
            f"Only {product.stock} {product.name} in stock",
            details={"product_id": product.id, "requested_quantity": requested, "on_hand": product.stock},
        )

    if line:
        line.quantity = requested
        line.known_stock = product.stock
    else:
        cart.lines.append(CartLine.from_product(product, quantity))
    return cart


class CheckoutSaga:
    """
    One checkout run. Call run(), or the individual steps in order.

    state is the current saga state; history lists every state reached.
    """

    def __init__(self, cart: Cart, cashier_id: int, site_id: int):
        self.cart = cart
        self.cashier_id = cashier_id
        self.site_id = site_id
        self.sale_id: int | None = None
        self.state = STATE_STARTED
        self.history = [STATE_STARTED]
        self.audit_failures = 0
        self._total_cents = 0
        self._profit_cents = 0

    def _advance(self, state: str) -> None:
        self.state = state
        self.history.append(state)

    def _mark_sale(self, state: str) -> None:
        """Record a failure state on the header; never masks the original error."""
        try:
            sales_service.set_checkout_state(self.sale_id, state)
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception("Could not record state %s on sale %s", state, self.sale_id)

    def validate(self) -> None:
        """Check the cart against live stock. No writes."""
        if self.cart.is_empty:
            raise CartValidationError("Cart is empty")

        requested: dict[int, int] = {}
        for line in self.cart.lines:
            if line.quantity <= 0:
                raise CartValidationError(
                    "Quantity must be greater than zero",
                    details={"product_id": line.product_id, "quantity": line.quantity},
                )
            if line.site_id != self.site_id:
                raise CartValidationError(
                    "Product does not belong to the checkout site",
                    details={"product_id": line.product_id, "site_id": self.site_id},
                )
            requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity

        products = {
            p.id: p
            for p in db.session.query(Product).filter(Product.id.in_(list(requested))).all()
        }

        insufficient = []
        for product_id, quantity in requested.items():
            product = products.get(product_id)
            if product is None or product.site_id != self.site_id:
                raise CartValidationError("Product not found", details={"product_id": product_id})
            if not product.is_active:
                raise CartValidationError("Product is inactive", details={"product_id": product_id})
            if quantity > product.stock:
                insufficient.append({
                    "product_id": product_id,
                    "name": product.name,
                    "requested_quantity": quantity,
                    "on_hand": product.stock,
                })

        if insufficient:
            raise StockError("Insufficient stock for checkout", details={"items": insufficient})

        self._total_cents = self.cart.total_cents
        self._profit_cents = self.cart.profit_cents

    def persist_header(self) -> None:
        try:
            sale = sales_service.create_sale_header(
                site_id=self.site_id,
                cashier_id=self.cashier_id,
                total_cents=self._total_cents,
                profit_cents=self._profit_cents,
            )
        except (SQLAlchemyError, SaleLedgerError) as exc:
            db.session.rollback()
            self._advance(STATE_HEADER_FAILED)
            current_app.logger.warning("Sale header write failed: %s", exc)
            raise SaleNotRecordedError("Sale not recorded") from exc

        self.sale_id = sale.id
        self._advance(STATE_HEADER_PERSISTED)

    def persist_items(self) -> None:
        lines = [
            LineInput(
                product_id=line.product_id,
                quantity=line.quantity,
                unit_price_cents=line.unit_price_cents,
                unit_cost_cents=line.unit_cost_cents,
            )
            for line in self.cart.lines
        ]
        try:
            sales_service.create_sale_items(self.sale_id, lines, checkout_state=STATE_ITEMS_PERSISTED)
        except (SQLAlchemyError, SaleLedgerError) as exc:
            db.session.rollback()
            self._advance(STATE_ITEMS_FAILED)
            self._mark_sale(STATE_ITEMS_FAILED)
            current_app.logger.error("Sale %s has no items after a failed item write: %s", self.sale_id, exc)
            raise InconsistentSaleError(
                "Sale recorded without its items; it needs manual cleanup",
                sale_id=self.sale_id,
                details={"sale_id": self.sale_id},
            ) from exc

        self._advance(STATE_ITEMS_PERSISTED)

    def reconcile_stock(self) -> None:
        try:
            reconcile_service.reconcile_sale_stock(self.sale_id)
        except (StockReconcileError, SQLAlchemyError) as exc:
            db.session.rollback()
            oversell = getattr(exc, "oversell", False)
            details = dict(getattr(exc, "details", {}) or {})
            details["sale_id"] = self.sale_id
            self._advance(STATE_STOCK_SYNC_FAILED)
            self._mark_sale(STATE_STOCK_SYNC_FAILED)
            current_app.logger.error(
                "Critical stock desynchronization on sale %s (oversell=%s): %s",
                self.sale_id, oversell, exc,
            )
            raise StockSyncError(
                "The sale was recorded but stock could not be updated. Contact an administrator.",
                sale_id=self.sale_id,
                oversell=oversell,
                details=details,
            ) from exc

        self._advance(STATE_STOCK_RECONCILED)

    def write_audit(self) -> None:
        for line in self.cart.lines:
            try:
                inventory_service.record_stock_movement(
                    product_id=line.product_id,
                    site_id=self.site_id,
                    movement_type=MOVEMENT_OUT,
                    quantity=line.quantity,
                    user_id=self.cashier_id,
                    note=f"Sale #{self.sale_id}",
                    sale_id=self.sale_id,
                )
            except SQLAlchemyError:
                db.session.rollback()
                self.audit_failures += 1
                current_app.logger.warning(
                    "Stock movement not recorded for sale %s, product %s",
                    self.sale_id, line.product_id, exc_info=True,
                )

        try:
            sales_service.set_checkout_state(self.sale_id, STATE_AUDIT_WRITTEN)
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.warning("Could not record audit state on sale %s", self.sale_id, exc_info=True)

        self._advance(STATE_AUDIT_WRITTEN)

    def run(self) -> CheckoutResult:
        self.validate()
        self.persist_header()
        self.persist_items()
        self.reconcile_stock()
        self.write_audit()
        return CheckoutResult(
            sale_id=self.sale_id,
            total_cents=self._total_cents,
            profit_cents=self._profit_cents,
            state=self.state,
            history=list(self.history),
            audit_failures=self.audit_failures,
        )


def checkout(cart: Cart, cashier_id: int, site_id: int) -> CheckoutResult:
    """
    Turn a cart into a sale. Empties the cart on success.

    Raises CartValidationError/StockError, SaleNotRecordedError,
    InconsistentSaleError or StockSyncError; see the module docstring.
    """
    result = CheckoutSaga(cart, cashier_id, site_id).run()
    cart.clear()
    return result
