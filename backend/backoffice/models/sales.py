from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


# Checkout saga states recorded on the sale header
STATE_STARTED = "STARTED"
STATE_HEADER_PERSISTED = "HEADER_PERSISTED"
STATE_ITEMS_PERSISTED = "ITEMS_PERSISTED"
STATE_STOCK_RECONCILED = "STOCK_RECONCILED"
STATE_AUDIT_WRITTEN = "AUDIT_WRITTEN"

# Failure states, one per step that can fail
STATE_HEADER_FAILED = "HEADER_FAILED"
STATE_ITEMS_FAILED = "ITEMS_FAILED"
STATE_STOCK_SYNC_FAILED = "STOCK_SYNC_FAILED"


class Sale(db.Model):
    """
    Sale header.

    total_cents and profit_cents are snapshots taken at checkout and are
    never rewritten, not even when line items are cancelled later. Live
    figures are recomputed from non-cancelled items by the reporting layer.

    checkout_state records the last step the checkout saga reached for this
    sale (see checkout_service.CheckoutState). stock_reconciled_at is set
    once, by the stock reconciler, in the same transaction that decrements
    stock; a sale with it set is never reconciled again.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_site_created", "site_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    site_id = db.Column(db.Integer, db.ForeignKey("sites.id"), nullable=False, index=True)
    cashier_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    # Snapshots (cents)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    profit_cents = db.Column(db.Integer, nullable=False, default=0)

    checkout_state = db.Column(db.String(32), nullable=False, default=STATE_HEADER_PERSISTED, index=True)
    stock_reconciled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    site = db.relationship("Site", backref=db.backref("sales", lazy=True))
    cashier = db.relationship("User", foreign_keys=[cashier_id])

    def to_dict(self, *, include_profit: bool = True) -> dict:
        data = {
            "id": self.id,
            "site_id": self.site_id,
            "cashier_id": self.cashier_id,
            "created_at": to_utc_z(self.created_at),
            "total_cents": self.total_cents,
            "checkout_state": self.checkout_state,
            "stock_reconciled_at": to_utc_z(self.stock_reconciled_at) if self.stock_reconciled_at else None,
        }
        if include_profit:
            data["profit_cents"] = self.profit_cents
        return data


class SaleItem(db.Model):
    """
    Line item on a sale.

    Items are never deleted. Cancellation flips is_cancelled exactly once
    (false -> true); cancelled items are excluded from every aggregate but
    kept for audit. stock_applied_at is stamped by the reconciler when the
    item's quantity is taken out of stock; stock_restored_at when a cancelled
    item's quantity has been put back. Only items with stock applied are
    ever restored.
    """
    __tablename__ = "sale_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_items_quantity_positive"),
        db.Index("ix_sale_items_sale_cancelled", "sale_id", "is_cancelled"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)

    # Price snapshots at sale time (cents)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    subtotal_cents = db.Column(db.Integer, nullable=False)

    is_cancelled = db.Column(db.Boolean, nullable=False, default=False)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    stock_applied_at = db.Column(db.DateTime(timezone=True), nullable=True)
    stock_restored_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    sale = db.relationship("Sale", backref=db.backref("items", lazy=True))
    product = db.relationship("Product")

    @property
    def profit_cents(self) -> int:
        return (self.unit_price_cents - self.unit_cost_cents) * self.quantity

    def to_dict(self, *, include_profit: bool = True) -> dict:
        data = {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "subtotal_cents": self.subtotal_cents,
            "is_cancelled": self.is_cancelled,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "stock_applied_at": to_utc_z(self.stock_applied_at) if self.stock_applied_at else None,
            "stock_restored_at": to_utc_z(self.stock_restored_at) if self.stock_restored_at else None,
            "created_at": to_utc_z(self.created_at),
        }
        if include_profit:
            data["unit_cost_cents"] = self.unit_cost_cents
            data["profit_cents"] = self.profit_cents
        return data
