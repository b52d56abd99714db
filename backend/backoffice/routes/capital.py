# Overview: Flask API routes for the capital ledger; parses input and returns JSON responses.

"""Capital investments, withdrawals and totals. Admin only."""

from flask import Blueprint, request, jsonify, g, current_app

from ..models.auth import ROLE_ADMIN
from ..services import capital_service
from ..services.capital_service import CapitalError
from ..services.scope_service import ScopeError
from ..validation import ValidationError, coerce_int, require_positive_int
from ..decorators import require_auth, require_role


capital_bp = Blueprint("capital", __name__, url_prefix="/api/capital")


@capital_bp.post("/transactions")
@require_auth
@require_role(ROLE_ADMIN)
def create_transaction():
    """
    Body: {"amount_cents": 50000, "type": "investment"|"withdrawal",
           "description": "...", "site_id": 1 (optional)}
    """
    try:
        data = request.get_json() or {}
        site_id = data.get("site_id")
        tx = capital_service.record_capital_transaction(
            g.scope,
            amount_cents=data.get("amount_cents"),
            transaction_type=data.get("type"),
            description=data.get("description"),
            site_id=coerce_int(site_id, "site_id") if site_id is not None else None,
        )
        return jsonify({"transaction": tx.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ScopeError as e:
        return jsonify({"error": str(e), "details": e.details}), 403
    except CapitalError as e:
        return jsonify({"error": str(e), "details": e.details}), 404
    except Exception:
        current_app.logger.exception("Failed to record capital transaction")
        return jsonify({"error": "Internal server error"}), 500


@capital_bp.get("/transactions")
@require_auth
@require_role(ROLE_ADMIN)
def list_transactions():
    try:
        raw_limit = request.args.get("limit")
        limit = require_positive_int(raw_limit, "limit") if raw_limit is not None else 50
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    txs = capital_service.list_transactions(g.scope.selected_site_id, limit=limit)
    return jsonify({"transactions": [tx.to_dict() for tx in txs]}), 200


@capital_bp.get("/total")
@require_auth
@require_role(ROLE_ADMIN)
def total():
    try:
        return jsonify(capital_service.capital_summary(g.scope)), 200
    except ScopeError as e:
        return jsonify({"error": str(e), "details": e.details}), 403
