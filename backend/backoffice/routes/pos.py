# Overview: Flask API routes for the point of sale; parses input and returns JSON responses.

# backend/backoffice/routes/pos.py
"""Cart validation and checkout"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import checkout_service, inventory_service
from ..services.checkout_service import (
    Cart,
    CartValidationError,
    CheckoutError,
    InconsistentSaleError,
    SaleNotRecordedError,
    StockSyncError,
)
from ..services.inventory_service import ProductNotFoundError
from ..services.scope_service import (
    ScopeError,
    can_see_profit,
    default_write_site_id,
    require_site_access,
    site_in_scope,
)
from ..validation import ValidationError, coerce_int, require_positive_int
from ..decorators import require_auth


pos_bp = Blueprint("pos", __name__, url_prefix="/api/pos")


def _checkout_error(exc: CheckoutError, status: int):
    body = {"error": str(exc), "code": exc.code, "details": exc.details}
    sale_id = getattr(exc, "sale_id", None)
    if sale_id is not None:
        body["sale_id"] = sale_id
    if isinstance(exc, StockSyncError):
        body["oversell"] = exc.oversell
    return jsonify(body), status


def _build_cart(data: dict) -> Cart:
    lines = data.get("lines")
    if not isinstance(lines, list):
        raise ValidationError("lines must be a list")

    cart = Cart()
    for raw in lines:
        if not isinstance(raw, dict):
            raise ValidationError("each line must be an object")
        product_id = coerce_int(raw.get("product_id"), "product_id")
        quantity = require_positive_int(raw.get("quantity"), "quantity")

        product = inventory_service.get_product(product_id)
        if not site_in_scope(g.scope, product.site_id):
            raise ProductNotFoundError("Product not found", details={"product_id": product_id})

        checkout_service.add_to_cart(cart, product, quantity)
    return cart


@pos_bp.post("/cart/validate")
@require_auth
def validate_cart_route():
    """
    Build a cart from lines, checking each against known stock.

    Body: {"lines": [{"product_id": 1, "quantity": 2}, ...]}
    """
    try:
        cart = _build_cart(request.get_json() or {})
        return jsonify({"cart": cart.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ProductNotFoundError as e:
        return jsonify({"error": str(e), "details": e.details}), 404
    except CartValidationError as e:
        return _checkout_error(e, 400)
    except Exception:
        current_app.logger.exception("Failed to validate cart")
        return jsonify({"error": "Internal server error"}), 500


@pos_bp.post("/checkout")
@require_auth
def checkout_route():
    """
    Record a sale for the cart and decrement stock.

    Body: {"site_id": 1 (optional), "lines": [...]}

    Responses:
    - 201: sale recorded and stock applied
    - 400: cart rejected, nothing written
    - 503: sale not recorded, safe to retry
    - 409: sale header recorded without items (INCONSISTENT_SALE)
    - 502: sale recorded but stock not updated (STOCK_DESYNC); do not retry,
      an administrator must reconcile
    """
    try:
        data = request.get_json() or {}
        site_id = data.get("site_id")
        site_id = coerce_int(site_id, "site_id") if site_id is not None else default_write_site_id(g.scope)
        require_site_access(g.scope, site_id)

        cart = _build_cart(data)
        result = checkout_service.checkout(cart, g.current_user.id, site_id)

        return jsonify({"sale": result.to_dict(include_profit=can_see_profit(g.scope))}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ScopeError as e:
        return jsonify({"error": str(e), "details": e.details}), 403
    except ProductNotFoundError as e:
        return jsonify({"error": str(e), "details": e.details}), 404
    except CartValidationError as e:
        return _checkout_error(e, 400)
    except SaleNotRecordedError as e:
        return _checkout_error(e, 503)
    except InconsistentSaleError as e:
        return _checkout_error(e, 409)
    except StockSyncError as e:
        return _checkout_error(e, 502)
    except Exception:
        current_app.logger.exception("Checkout failed")
        return jsonify({"error": "Internal server error"}), 500
