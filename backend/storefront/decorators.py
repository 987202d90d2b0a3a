# Overview: Request decorators establishing tenant context for API routes.

from functools import wraps
from flask import request, jsonify, g


def _header_int(name: str):
    raw = request.headers.get(name)
    if raw is None or not raw.strip():
        return None
    raw = raw.strip()
    if not raw.isdigit() or int(raw) <= 0:
        raise ValueError(f"{name} header must be a positive integer")
    return int(raw)


def require_store_context(f):
    """
    Establish tenant context from the authentication layer's headers.

    MULTI-TENANT: Sets the following Flask g attributes:
    - g.store_id: store the caller is acting for (X-Store-Id) - REQUIRED
    - g.operator_id: staff member keying the order (X-Operator-Id), or None

    Session issuance lives upstream; the headers are trusted as given.
    Returns 400 if X-Store-Id is missing or malformed.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            store_id = _header_int("X-Store-Id")
            operator_id = _header_int("X-Operator-Id")
        except ValueError as e:
            return jsonify({"error": str(e), "kind": "INVALID_REQUEST", "details": {}}), 400

        if store_id is None:
            return jsonify({"error": "X-Store-Id header required", "kind": "INVALID_REQUEST", "details": {}}), 400

        g.store_id = store_id
        g.operator_id = operator_id
        return f(*args, **kwargs)

    return decorated_function
