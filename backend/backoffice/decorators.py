# Overview: Request and role decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .services import session_service
from .services.scope_service import ScopeError, parse_site_selection, resolve_scope
from .validation import ValidationError


def _selected_site_raw():
    """Site picker value: ?site_id= wins over the X-Site-Id header."""
    raw = request.args.get("site_id")
    if raw is None:
        raw = request.headers.get("X-Site-Id")
    return raw


def require_auth(f):
    """
    Require authentication and establish the request's scope.

    Sets the following Flask g attributes:
    - g.current_user: The authenticated User object
    - g.scope: The ScopeContext resolved from the user's role, assigned
      site and the site picker value sent with this request

    Returns 401 without a valid bearer token, 400 for a malformed site
    selection and 403 for a selection the role cannot make.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]
        user = session_service.validate_session(token)

        if not user:
            return jsonify({"error": "Invalid or expired token"}), 401

        try:
            selected = parse_site_selection(_selected_site_raw())
            scope = resolve_scope(user, selected)
        except ValidationError as e:
            return jsonify({"error": str(e)}), 400
        except ScopeError as e:
            return jsonify({"error": str(e), "details": e.details}), 403

        g.current_user = user
        g.scope = scope

        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """
    Require one of the given roles. Must be applied after @require_auth.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not hasattr(g, "current_user"):
                return jsonify({"error": "Authentication required"}), 401

            if g.current_user.role not in roles:
                return jsonify({
                    "error": "Permission denied",
                    "required_roles": list(roles),
                }), 403

            return f(*args, **kwargs)

        return decorated_function

    return decorator
