# Overview: Flask API routes for sales history, cancellation and stock recovery; parses input and returns JSON responses.

# backend/backoffice/routes/sales.py
"""Sales API routes with scope enforcement"""

from itertools import islice

from flask import Blueprint, request, jsonify, g, current_app

from ..models.auth import ROLE_ADMIN
from ..services import cancellation_service, reconcile_service, reporting_service, sales_service
from ..services.cancellation_service import AlreadyCancelledError, CancellationError, StockRestoreError
from ..services.reconcile_service import SaleNotReconcilableError, StockReconcileError
from ..services.reporting_service import ReportError
from ..services.sales_service import SaleLedgerError
from ..services.scope_service import (
    ScopeError,
    can_see_profit,
    effective_site_ids,
    require_site_access,
)
from ..time_utils import parse_iso_datetime
from ..validation import ValidationError, coerce_int, require_positive_int
from ..decorators import require_auth, require_role


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


def _error(exc, status: int):
    return jsonify({
        "error": str(exc),
        "code": getattr(exc, "code", None),
        "details": getattr(exc, "details", {}),
    }), status


def _load_item_in_scope(sale_item_id: int):
    item = sales_service.get_sale_item(sale_item_id)
    require_site_access(g.scope, item.sale.site_id)
    return item


@sales_bp.get("/history")
@require_auth
def history_route():
    """
    Sales with their live items, newest first.

    Query params:
    - from, to: ISO 8601 bounds, both inclusive
    - site_id: site picker value ("all" for every site, admins only)
    - limit: max sales returned (default 100)
    """
    try:
        start = parse_iso_datetime(request.args.get("from"), "from")
        end = parse_iso_datetime(request.args.get("to"), "to")
        limit = request.args.get("limit")
        limit = require_positive_int(limit, "limit") if limit is not None else 100

        entries = list(islice(reporting_service.get_sales_history(g.scope, start, end), limit))
        return jsonify({
            "sales": entries,
            "site_ids": effective_site_ids(g.scope),
            "count": len(entries),
        }), 200

    except (ValueError, ReportError) as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to load sales history")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<int:sale_id>")
@require_auth
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id)
        require_site_access(g.scope, sale.site_id)

        show_profit = can_see_profit(g.scope)
        live = sales_service.live_totals(sale.id)
        if not show_profit:
            live.pop("profit_cents", None)

        return jsonify({
            "sale": sale.to_dict(include_profit=show_profit),
            "items": [i.to_dict(include_profit=show_profit) for i in sales_service.list_items(sale.id)],
            "live": live,
        }), 200

    except SaleLedgerError as e:
        return _error(e, 404)
    except ScopeError as e:
        return _error(e, 403)
    except Exception:
        current_app.logger.exception("Failed to load sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/items/<int:sale_item_id>/cancel")
@require_auth
def cancel_item_route(sale_item_id: int):
    """
    Cancel a sale item and return its quantity to stock.

    Body: {"product_id": 3, "quantity": 2} (must match the stored item)

    Responses:
    - 200: cancelled; stock_restored tells whether stock was put back
    - 409: already cancelled
    - 502: cancelled but stock not restored (STOCK_RESTORE_FAILED); call
      /restore-stock to retry
    """
    try:
        data = request.get_json() or {}
        product_id = coerce_int(data.get("product_id"), "product_id")
        quantity = require_positive_int(data.get("quantity"), "quantity")

        _load_item_in_scope(sale_item_id)
        result = cancellation_service.cancel_sale_item(
            sale_item_id, product_id, quantity, user_id=g.current_user.id,
        )
        return jsonify({"cancellation": result.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except SaleLedgerError as e:
        return _error(e, 404)
    except ScopeError as e:
        return _error(e, 403)
    except StockRestoreError as e:
        return _error(e, 502)
    except AlreadyCancelledError as e:
        return _error(e, 409)
    except CancellationError as e:
        return _error(e, 400)
    except Exception:
        current_app.logger.exception("Failed to cancel sale item")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/items/<int:sale_item_id>/restore-stock")
@require_auth
def restore_stock_route(sale_item_id: int):
    """Retry the stock restore of an item that is already cancelled."""
    try:
        _load_item_in_scope(sale_item_id)
        result = cancellation_service.retry_stock_restore(sale_item_id, user_id=g.current_user.id)
        return jsonify({"cancellation": result.to_dict()}), 200

    except SaleLedgerError as e:
        return _error(e, 404)
    except ScopeError as e:
        return _error(e, 403)
    except StockRestoreError as e:
        return _error(e, 502)
    except CancellationError as e:
        return _error(e, 400)
    except Exception:
        current_app.logger.exception("Failed to restore stock")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/unreconciled")
@require_auth
@require_role(ROLE_ADMIN)
def unreconciled_route():
    """Sales recorded without their stock applied, plus headers without items."""
    site_ids = effective_site_ids(g.scope)
    return jsonify({
        "unreconciled": [s.to_dict() for s in reconcile_service.list_unreconciled_sales(site_ids)],
        "inconsistent": [s.to_dict() for s in sales_service.list_inconsistent_sales(site_ids)],
    }), 200


@sales_bp.post("/<int:sale_id>/reconcile")
@require_auth
@require_role(ROLE_ADMIN)
def reconcile_route(sale_id: int):
    """
    Apply a desynchronized sale's stock decrement. Safe to repeat.

    409 SALE_NOT_RECONCILABLE for headers without durable items (orphaned or
    still being written); they stay listed for manual cleanup.
    """
    try:
        sales_service.get_sale(sale_id)
        sale = reconcile_service.reconcile_sale_stock(sale_id)
        return jsonify({"sale": sale.to_dict()}), 200

    except SaleLedgerError as e:
        return _error(e, 404)
    except SaleNotReconcilableError as e:
        return _error(e, 409)
    except StockReconcileError as e:
        body = {
            "error": str(e),
            "code": "STOCK_DESYNC",
            "details": e.details,
            "oversell": e.oversell,
        }
        return jsonify(body), 409
    except Exception:
        current_app.logger.exception("Failed to reconcile sale %s", sale_id)
        return jsonify({"error": "Internal server error"}), 500
