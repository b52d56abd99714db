# Overview: Service-layer operations for inventory; encapsulates business logic and database work.

# backend/backoffice/services/inventory_service.py

from __future__ import annotations

from flask import current_app
from sqlalchemy import func, update

from ..extensions import db
from ..models import Product, StockMovement
from ..models.inventory import MOVEMENT_IN, MOVEMENT_OUT, PRODUCT_CATEGORIES
from ..signals import product_updated
from ..validation import MAX_AMOUNT_CENTS, ValidationError, coerce_int, optional_str, require_positive_int
"""
Inventory Store Invariants (authoritative)

- Product.stock is the live on-hand quantity for one product at one site.
- Stock only changes through adjust_stock(), which applies a signed delta
  in one UPDATE guarded by "stock + delta >= 0". There is no read-then-write
  path, so concurrent sales and cancellations cannot lose updates and stock
  can never be driven below zero.
- StockMovement rows are an audit trail only; nothing reads them back to
  compute stock.
"""


class InventoryError(Exception):
    """Raised for inventory operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ProductNotFoundError(InventoryError):
    pass


class InsufficientStockError(InventoryError):
    pass


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise ProductNotFoundError("Product not found", details={"product_id": product_id})
    return product


def get_stock(product_id: int) -> int:
    stock = db.session.query(Product.stock).filter(Product.id == product_id).scalar()
    if stock is None:
        raise ProductNotFoundError("Product not found", details={"product_id": product_id})
    return int(stock)


def _non_negative_int(value, field: str) -> int:
    number = coerce_int(value, field)
    if number < 0:
        raise ValidationError(f"{field} must not be negative")
    return number


def create_product(
    *,
    site_id: int,
    name,
    category: str,
    purchase_price_cents,
    selling_price_cents,
    stock=0,
    alert_threshold=None,
) -> Product:
    """
    Add a product to a site's catalog.

    alert_threshold falls back to LOW_STOCK_DEFAULT_THRESHOLD. Initial stock
    is written directly; later changes go through adjust_stock().
    """
    name = optional_str(name, "name")
    if not name:
        raise ValidationError("name is required")
    if category not in PRODUCT_CATEGORIES:
        raise ValidationError(f"category must be one of: {', '.join(PRODUCT_CATEGORIES)}")

    purchase_price_cents = _non_negative_int(purchase_price_cents, "purchase_price_cents")
    selling_price_cents = _non_negative_int(selling_price_cents, "selling_price_cents")
    for field, value in (("purchase_price_cents", purchase_price_cents), ("selling_price_cents", selling_price_cents)):
        if value > MAX_AMOUNT_CENTS:
            raise ValidationError(f"{field} exceeds maximum of {MAX_AMOUNT_CENTS}")

    if alert_threshold is None:
        alert_threshold = current_app.config.get("LOW_STOCK_DEFAULT_THRESHOLD", 5)

    product = Product(
        site_id=site_id,
        name=name,
        category=category,
        purchase_price_cents=purchase_price_cents,
        selling_price_cents=selling_price_cents,
        stock=_non_negative_int(stock, "stock"),
        alert_threshold=_non_negative_int(alert_threshold, "alert_threshold"),
    )
    db.session.add(product)
    db.session.commit()

    product_updated.send(None, product_id=product.id, site_id=product.site_id)
    return product


UPDATABLE_FIELDS = (
    "name",
    "category",
    "purchase_price_cents",
    "selling_price_cents",
    "alert_threshold",
    "is_active",
)


def update_product(product_id: int, patch: dict) -> Product:
    """
    Edit catalog fields of a product.

    Stock is not editable here; it changes only through adjust_stock()
    (sales, cancellations, receive_stock). Past sales keep their price
    snapshots.
    """
    if "stock" in patch:
        raise ValidationError("stock cannot be edited; receive stock instead")
    unknown = sorted(set(patch) - set(UPDATABLE_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(unknown)}")

    product = get_product(product_id)
    values = {}

    if "name" in patch:
        name = optional_str(patch["name"], "name")
        if not name:
            raise ValidationError("name is required")
        values["name"] = name
    if "category" in patch:
        if patch["category"] not in PRODUCT_CATEGORIES:
            raise ValidationError(f"category must be one of: {', '.join(PRODUCT_CATEGORIES)}")
        values["category"] = patch["category"]
    for field in ("purchase_price_cents", "selling_price_cents"):
        if field in patch:
            value = _non_negative_int(patch[field], field)
            if value > MAX_AMOUNT_CENTS:
                raise ValidationError(f"{field} exceeds maximum of {MAX_AMOUNT_CENTS}")
            values[field] = value
    if "alert_threshold" in patch:
        values["alert_threshold"] = _non_negative_int(patch["alert_threshold"], "alert_threshold")
    if "is_active" in patch:
        if not isinstance(patch["is_active"], bool):
            raise ValidationError("is_active must be a boolean")
        values["is_active"] = patch["is_active"]

    if not values:
        return product

    for field, value in values.items():
        setattr(product, field, value)
    db.session.commit()

    product_updated.send(None, product_id=product.id, site_id=product.site_id)
    return product


def adjust_stock(product_id: int, delta: int, *, commit: bool = True) -> int:
    """
    Atomically add delta (may be negative) to a product's stock.

    Returns the new stock level. Raises InsufficientStockError, leaving the
    row untouched, when the result would be negative.

    With commit=False the caller owns the transaction and is responsible
    for sending product_updated after it commits.
    """
    stmt = (
        update(Product)
        .where(Product.id == product_id, Product.stock + delta >= 0)
        .values(stock=Product.stock + delta)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)

    if result.rowcount == 0:
        on_hand = db.session.query(Product.stock).filter(Product.id == product_id).scalar()
        if on_hand is None:
            raise ProductNotFoundError("Product not found", details={"product_id": product_id})
        raise InsufficientStockError(
            "Insufficient stock",
            details={
                "product_id": product_id,
                "requested_quantity": -delta,
                "on_hand": int(on_hand),
            },
        )

    new_stock, site_id = db.session.query(Product.stock, Product.site_id).filter(Product.id == product_id).one()

    if commit:
        db.session.commit()
        product_updated.send(None, product_id=product_id, site_id=site_id)

    return int(new_stock)


def record_stock_movement(
    *,
    product_id: int,
    site_id: int,
    movement_type: str,
    quantity: int,
    user_id: int | None = None,
    note: str | None = None,
    sale_id: int | None = None,
    commit: bool = True,
) -> StockMovement:
    """Append an audit row. Never changes stock."""
    if movement_type not in (MOVEMENT_IN, MOVEMENT_OUT):
        raise InventoryError(f"Unknown movement type {movement_type!r}")

    movement = StockMovement(
        product_id=product_id,
        site_id=site_id,
        type=movement_type,
        quantity=quantity,
        user_id=user_id,
        note=note,
        sale_id=sale_id,
    )
    db.session.add(movement)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return movement


def receive_stock(product_id: int, quantity, *, user_id: int | None = None, note: str | None = None) -> Product:
    """Restock: increment stock and log an 'in' movement in one transaction."""
    quantity = require_positive_int(quantity, "quantity")
    product = get_product(product_id)

    try:
        adjust_stock(product.id, quantity, commit=False)
        record_stock_movement(
            product_id=product.id,
            site_id=product.site_id,
            movement_type=MOVEMENT_IN,
            quantity=quantity,
            user_id=user_id,
            note=note or "Stock received",
            commit=False,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    product_updated.send(None, product_id=product.id, site_id=product.site_id)
    db.session.refresh(product)
    return product


def list_products(site_ids: list[int] | None, *, include_inactive: bool = False) -> list[Product]:
    query = db.session.query(Product)
    if site_ids is not None:
        query = query.filter(Product.site_id.in_(site_ids))
    if not include_inactive:
        query = query.filter(Product.is_active.is_(True))
    return query.order_by(Product.name.asc(), Product.id.asc()).all()


def list_low_stock(site_ids: list[int] | None) -> list[Product]:
    """Active products at or below their alert threshold."""
    query = db.session.query(Product).filter(
        Product.is_active.is_(True),
        Product.stock <= Product.alert_threshold,
    )
    if site_ids is not None:
        query = query.filter(Product.site_id.in_(site_ids))
    return query.order_by(Product.stock.asc(), Product.name.asc()).all()


def count_products(site_ids: list[int] | None) -> int:
    query = db.session.query(func.count(Product.id)).filter(Product.is_active.is_(True))
    if site_ids is not None:
        query = query.filter(Product.site_id.in_(site_ids))
    return int(query.scalar() or 0)
