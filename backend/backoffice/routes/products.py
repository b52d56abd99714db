# Overview: Flask API routes for products operations; parses input and returns JSON responses.

# backend/backoffice/routes/products.py
"""
Product listing, editing and restock routes.

Products are filtered to the caller's effective sites. Purchase prices are
only returned to admins.
"""
from flask import Blueprint, request, jsonify, g, current_app

from ..models.auth import ROLE_ADMIN, ROLE_MANAGER
from ..services import inventory_service
from ..services.inventory_service import InventoryError, ProductNotFoundError
from ..services.scope_service import (
    ScopeError,
    can_see_profit,
    default_write_site_id,
    effective_site_ids,
    require_site_access,
)
from ..validation import ValidationError, coerce_int, optional_str
from ..decorators import require_auth, require_role

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("")
@require_auth
def list_products():
    """
    Query params:
    - site_id: site picker value
    - include_inactive: "true" to include deactivated products
    """
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    products = inventory_service.list_products(effective_site_ids(g.scope), include_inactive=include_inactive)
    show_cost = can_see_profit(g.scope)
    return jsonify({"products": [p.to_dict(include_cost=show_cost) for p in products]}), 200


@products_bp.post("/<int:product_id>/receive")
@require_auth
@require_role(ROLE_ADMIN, ROLE_MANAGER)
def receive_product(product_id: int):
    """
    Add received units to stock.

    Body: {"quantity": 12, "note": "Delivery 14"}
    """
    try:
        data = request.get_json() or {}
        product = inventory_service.get_product(product_id)
        require_site_access(g.scope, product.site_id)

        product = inventory_service.receive_stock(
            product.id,
            data.get("quantity"),
            user_id=g.current_user.id,
            note=optional_str(data.get("note"), "note"),
        )
        return jsonify({"product": product.to_dict(include_cost=can_see_profit(g.scope))}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ProductNotFoundError as e:
        return jsonify({"error": str(e), "details": e.details}), 404
    except ScopeError as e:
        return jsonify({"error": str(e), "details": e.details}), 403
    except InventoryError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to receive stock")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.patch("/<int:product_id>")
@require_auth
@require_role(ROLE_ADMIN, ROLE_MANAGER)
def update_product(product_id: int):
    """
    Edit catalog fields. Stock is not accepted here; use /receive.

    Body: any of {"name", "category", "purchase_price_cents",
                  "selling_price_cents", "alert_threshold", "is_active"}
    """
    try:
        data = request.get_json() or {}
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        product = inventory_service.get_product(product_id)
        require_site_access(g.scope, product.site_id)

        product = inventory_service.update_product(product.id, data)
        return jsonify({"product": product.to_dict(include_cost=can_see_profit(g.scope))}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ProductNotFoundError as e:
        return jsonify({"error": str(e), "details": e.details}), 404
    except ScopeError as e:
        return jsonify({"error": str(e), "details": e.details}), 403
    except Exception:
        current_app.logger.exception("Failed to update product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.post("")
@require_auth
@require_role(ROLE_ADMIN, ROLE_MANAGER)
def create_product():
    """
    Body: {"name", "category", "purchase_price_cents", "selling_price_cents",
           "stock" (optional), "alert_threshold" (optional), "site_id" (optional)}
    """
    try:
        data = request.get_json() or {}
        site_id = data.get("site_id")
        site_id = coerce_int(site_id, "site_id") if site_id is not None else default_write_site_id(g.scope)
        require_site_access(g.scope, site_id)

        product = inventory_service.create_product(
            site_id=site_id,
            name=data.get("name"),
            category=data.get("category"),
            purchase_price_cents=data.get("purchase_price_cents"),
            selling_price_cents=data.get("selling_price_cents"),
            stock=data.get("stock", 0),
            alert_threshold=data.get("alert_threshold"),
        )
        return jsonify({"product": product.to_dict(include_cost=can_see_profit(g.scope))}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ScopeError as e:
        return jsonify({"error": str(e), "details": e.details}), 403
    except Exception:
        current_app.logger.exception("Failed to create product")
        return jsonify({"error": "Internal server error"}), 500
