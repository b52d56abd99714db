# Overview: Flask API routes for dashboard and reports; parses input and returns JSON responses.

from flask import Blueprint, jsonify, request, g, current_app

from ..decorators import require_auth
from ..services import reporting_service
from ..services.reporting_service import ReportError
from ..time_utils import day_window, parse_iso_datetime
from ..validation import require_positive_int


reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    return require_positive_int(raw, name) if raw is not None else default


@reports_bp.get("/dashboard")
@require_auth
def dashboard():
    """Today's figures for the selected site, or ?start=&end= for another window."""
    try:
        start = parse_iso_datetime(request.args.get("start"), "start")
        end = parse_iso_datetime(request.args.get("end"), "end")
        if start is None and end is None:
            start, end = day_window()
        return jsonify(reporting_service.get_dashboard_stats(g.scope, start, end)), 200
    except (ValueError, ReportError) as exc:
        return jsonify({"error": str(exc)}), 400
    except Exception:
        current_app.logger.exception("Failed to build dashboard")
        return jsonify({"error": "Internal server error"}), 500


@reports_bp.get("/daily")
@require_auth
def daily():
    try:
        report = reporting_service.daily_sales_report(g.scope, days=_int_arg("days", 7))
        return jsonify(report), 200
    except (ValueError, ReportError) as exc:
        return jsonify({"error": str(exc)}), 400


@reports_bp.get("/top-products")
@require_auth
def top_products():
    try:
        rows = reporting_service.top_products(
            g.scope,
            days=_int_arg("days", 7),
            limit=_int_arg("limit", 5),
        )
        return jsonify({"products": rows}), 200
    except (ValueError, ReportError) as exc:
        return jsonify({"error": str(exc)}), 400


@reports_bp.get("/my-items")
@require_auth
def my_items():
    """The current user's own sold items today."""
    return jsonify({"items": reporting_service.cashier_items(g.scope, g.current_user.id)}), 200
