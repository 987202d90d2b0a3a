# Overview: Flask API routes for discount codes; previews a code against a cart.

from flask import Blueprint, request, jsonify, g
from flask import current_app

from ..services import promotions_service
from ..services.catalog_service import VALID_CHANNELS
from ..services.errors import DiscountInvalidError, SettlementError
from ..validation import (
    ValidationError,
    coerce_optional_int,
    coerce_optional_str,
    parse_cart_lines,
    parse_channel,
)
from ..decorators import require_store_context
from storefront.time_utils import utcnow


discount_codes_bp = Blueprint("discount_codes", __name__, url_prefix="/api/discount-codes")


@discount_codes_bp.post("/validate")
@require_store_context
def validate_code_route():
    """
    Dry-run a discount code against a cart. Nothing is written.

    Returns:
    - 200 {"valid": true, ...}: code applies; amount and covered variants
    - 200 {"valid": false, "error", "details"}: code rejected
    - 400/404: malformed cart or unknown items
    """
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")

        code = coerce_optional_str(data.get("code"), "code", 64)
        if code is None:
            raise ValidationError("code is required")
        channel = parse_channel(data.get("channel"))
        if channel not in VALID_CHANNELS:
            raise ValidationError(f"channel must be one of {VALID_CHANNELS}")

        preview = promotions_service.preview_discount_code(
            g.store_id,
            parse_cart_lines(data),
            code,
            channel,
            utcnow(),
            coerce_optional_int(data.get("customer_id"), "customer_id", minimum=1),
        )
        return jsonify(preview), 200

    except ValidationError as e:
        return jsonify({"error": str(e), "kind": "INVALID_REQUEST", "details": {}}), 400
    except DiscountInvalidError as e:
        return jsonify({"valid": False, "error": e.message, "details": e.details}), 200
    except SettlementError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to validate discount code")
        return jsonify({"error": "Internal server error", "kind": "INTERNAL", "details": {}}), 500
