# Overview: Flask API routes for order settlement; parses input and returns JSON responses.

"""Order settlement API routes"""

from flask import Blueprint, request, jsonify, g
from flask import current_app

from ..services import settlement_service
from ..services.errors import SettlementError
from ..validation import ValidationError, parse_settlement_payload
from ..decorators import require_store_context


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def error_response(exc: SettlementError):
    return jsonify(exc.to_dict()), exc.http_status


def validation_response(exc: ValidationError):
    return jsonify({"error": str(exc), "kind": "INVALID_REQUEST", "details": {}}), 400


@orders_bp.post("")
@require_store_context
def create_order_route():
    """
    Settle a cart into an order.

    Returns:
    - 201: order created
    - 200: Idempotency-Key replay; body is the order created earlier
    - 4xx/500: {"error", "kind", "details"}
    """
    try:
        settlement_request = parse_settlement_payload(
            request.get_json(silent=True),
            idempotency_key=request.headers.get("Idempotency-Key"),
        )
        result = settlement_service.settle_order(
            g.store_id,
            settlement_request,
            operator_id=g.operator_id,
        )
        return jsonify({"order": result.order.to_dict(), "replayed": result.replayed}), 200 if result.replayed else 201

    except ValidationError as e:
        return validation_response(e)
    except SettlementError as e:
        if e.http_status >= 500:
            current_app.logger.error("Order settlement failed: %s", e.message)
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to settle order")
        return jsonify({"error": "Internal server error", "kind": "INTERNAL", "details": {}}), 500


@orders_bp.get("/<int:order_id>")
@require_store_context
def get_order_route(order_id: int):
    """Get one order of the caller's store, with lines and payments."""
    try:
        order = settlement_service.get_order(g.store_id, order_id)
        return jsonify({"order": order.to_dict()}), 200
    except SettlementError as e:
        return error_response(e)
