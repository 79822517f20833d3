# Overview: Request decorators for API routes; actor identity from gateway headers.

from functools import wraps
from flask import request, jsonify, g


STAFF_ROLES = {"admin", "staff"}


def _load_actor() -> bool:
    """
    Populate g.user_id / g.user_role from the trusted gateway headers.

    Authentication happens upstream; this layer only reads the result.
    Returns False when X-User-Id is missing or malformed.
    """
    raw_id = (request.headers.get("X-User-Id") or "").strip()
    if not raw_id.isdigit():
        return False
    g.user_id = int(raw_id)
    g.user_role = (request.headers.get("X-User-Role") or "customer").strip().lower()
    return True


def is_staff() -> bool:
    return getattr(g, "user_role", None) in STAFF_ROLES


def current_user_id() -> int | None:
    return getattr(g, "user_id", None)


def optional_actor(f):
    """Attach actor identity when present; guests pass through with g.user_id = None."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _load_actor():
            g.user_id = None
            g.user_role = None
        return f(*args, **kwargs)

    return decorated_function


def require_actor(f):
    """Require a caller identity (401 otherwise)."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _load_actor():
            return jsonify({"error": "Authentication required"}), 401
        return f(*args, **kwargs)

    return decorated_function


def require_staff(f):
    """Require an admin / staff caller (401 without identity, 403 for customers)."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _load_actor():
            return jsonify({"error": "Authentication required"}), 401
        if not is_staff():
            return jsonify({"error": "Permission denied", "required_role": sorted(STAFF_ROLES)}), 403
        return f(*args, **kwargs)

    return decorated_function
