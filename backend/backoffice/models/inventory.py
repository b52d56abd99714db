from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


PRODUCT_CATEGORIES = ("alcoholic", "non_alcoholic", "cocktail", "snack")

MOVEMENT_IN = "in"
MOVEMENT_OUT = "out"


class Product(db.Model):
    """
    Product master data and its live stock level.

    Stock is a mutable counter owned by the inventory store. It is only
    changed through inventory_service.adjust_stock, which applies a
    guarded delta in a single UPDATE so it can never go negative.

    Prices are snapshotted onto sale items at checkout; editing a product
    never rewrites past sales.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        db.CheckConstraint("purchase_price_cents >= 0", name="ck_products_purchase_price"),
        db.CheckConstraint("selling_price_cents >= 0", name="ck_products_selling_price"),
        db.CheckConstraint("alert_threshold >= 0", name="ck_products_alert_threshold"),
        db.CheckConstraint(
            "category IN ('alcoholic', 'non_alcoholic', 'cocktail', 'snack')",
            name="ck_products_category",
        ),
        db.Index("ix_products_site_name", "site_id", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    site_id = db.Column(db.Integer, db.ForeignKey("sites.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(32), nullable=False)

    # Authoritative storage in cents
    purchase_price_cents = db.Column(db.Integer, nullable=False, default=0)
    selling_price_cents = db.Column(db.Integer, nullable=False, default=0)

    stock = db.Column(db.Integer, nullable=False, default=0)
    alert_threshold = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    site = db.relationship("Site", backref=db.backref("products", lazy=True))

    @property
    def is_low_stock(self) -> bool:
        return self.stock <= self.alert_threshold

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} site_id={self.site_id} stock={self.stock}>"

    def to_dict(self, *, include_cost: bool = True) -> dict:
        data = {
            "id": self.id,
            "site_id": self.site_id,
            "name": self.name,
            "category": self.category,
            "selling_price_cents": self.selling_price_cents,
            "stock": self.stock,
            "alert_threshold": self.alert_threshold,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_cost:
            data["purchase_price_cents"] = self.purchase_price_cents
        return data


class StockMovement(db.Model):
    """
    Append-only audit trail of stock changes.

    Never consulted for correctness; Product.stock is the source of truth.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint("type IN ('in', 'out')", name="ck_stock_movements_type"),
        db.Index("ix_stock_movements_site_created", "site_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    site_id = db.Column(db.Integer, db.ForeignKey("sites.id"), nullable=False, index=True)

    type = db.Column(db.String(8), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    note = db.Column(db.String(255), nullable=True)

    # Set for movements written by checkout and cancellation
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "site_id": self.site_id,
            "type": self.type,
            "quantity": self.quantity,
            "user_id": self.user_id,
            "note": self.note,
            "sale_id": self.sale_id,
            "created_at": to_utc_z(self.created_at),
        }
