from __future__ import annotations

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from .services.catalog_service import CHANNEL_ONLINE, CartLine
from .services.payment_service import PaymentInstrument
from .services.pricing_service import (
    ORDER_DISCOUNT_FIXED,
    ORDER_DISCOUNT_PERCENTAGE,
    VALID_ORDER_DISCOUNT_TYPES,
    OrderDiscount,
)
from .services.settlement_service import SettlementRequest


# Maximum single amount: $9,999,999.99 (999,999,999 cents)
MAX_AMOUNT_CENTS = 999_999_999

MAX_QUANTITY = 100_000


class ValidationError(ValueError):
    """400-level input problem."""


def coerce_int(value: Any, field: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
    """
    Strict integer coercion for JSON input.

    Accepts ints and plain digit strings. Rejects bools, floats, decimals
    and scientific notation so "1e3" or 12.5 never silently become counts.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    elif isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    else:
        raise ValidationError(f"{field} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    if maximum is not None and result > maximum:
        raise ValidationError(f"{field} must be <= {maximum}")
    return result


def coerce_optional_int(value: Any, field: str, **bounds) -> int | None:
    if value is None or value == "":
        return None
    return coerce_int(value, field, **bounds)


def coerce_optional_str(value: Any, field: str, max_length: int | None = None) -> str | None:
    if value is None:
        return None
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise ValidationError(f"{field} must be a string")
    text = str(value).strip()
    if not text:
        return None
    if max_length is not None and len(text) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters")
    return text


def coerce_decimal(value: Any, field: str) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number")
    try:
        result = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"{field} must be a number")
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return result


def parse_date(value: Any, field: str) -> date | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be an ISO-8601 date")
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 date")


def parse_channel(value: Any) -> str:
    if value is None or value == "":
        return CHANNEL_ONLINE
    if not isinstance(value, str):
        raise ValidationError("channel must be a string")
    return value.strip().upper()


def parse_cart_lines(payload: dict) -> list[CartLine]:
    raw_lines = payload.get("items")
    if raw_lines is None:
        raw_lines = payload.get("lines")
    if raw_lines is None:
        raise ValidationError("items is required")
    if not isinstance(raw_lines, list):
        raise ValidationError("items must be a list")

    lines = []
    for index, raw in enumerate(raw_lines):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        lines.append(CartLine(
            product_id=coerce_int(raw.get("product_id"), f"items[{index}].product_id", minimum=1),
            variant_id=coerce_int(raw.get("variant_id"), f"items[{index}].variant_id", minimum=1),
            quantity=coerce_int(raw.get("quantity"), f"items[{index}].quantity", minimum=1, maximum=MAX_QUANTITY),
        ))
    return lines


def _parse_instrument(raw: dict, field: str) -> PaymentInstrument:
    method = raw.get("method")
    if not isinstance(method, str) or not method.strip():
        raise ValidationError(f"{field}.method is required")
    return PaymentInstrument(
        method=method.strip().upper(),
        amount_cents=coerce_optional_int(raw.get("amount_cents"), f"{field}.amount_cents", minimum=0, maximum=MAX_AMOUNT_CENTS),
        cash_given_cents=coerce_optional_int(raw.get("cash_given_cents"), f"{field}.cash_given_cents", minimum=0, maximum=MAX_AMOUNT_CENTS),
        check_number=coerce_optional_str(raw.get("check_number"), f"{field}.check_number", 64),
        check_bank_name=coerce_optional_str(raw.get("check_bank_name"), f"{field}.check_bank_name", 128),
        check_date=parse_date(raw.get("check_date"), f"{field}.check_date"),
        reference_number=coerce_optional_str(raw.get("reference_number"), f"{field}.reference_number", 128),
        notes=coerce_optional_str(raw.get("notes"), f"{field}.notes", 255),
    )


def parse_payments(payload: dict) -> list[PaymentInstrument]:
    """
    Payment instruments from either form:
    - payments: [{method, amount_cents, ...}, ...]
    - legacy single tender: payment_method (+ cash_given_cents), amount inferred
    """
    raw_payments = payload.get("payments")
    if raw_payments is not None:
        if not isinstance(raw_payments, list):
            raise ValidationError("payments must be a list")
        instruments = []
        for index, raw in enumerate(raw_payments):
            if not isinstance(raw, dict):
                raise ValidationError(f"payments[{index}] must be an object")
            instruments.append(_parse_instrument(raw, f"payments[{index}]"))
        return instruments

    if payload.get("payment_method"):
        legacy = {
            "method": payload.get("payment_method"),
            "cash_given_cents": payload.get("cash_given_cents"),
            "reference_number": payload.get("reference_number"),
        }
        return [_parse_instrument(legacy, "payment_method")]

    return []


def parse_order_discount(raw: Any) -> OrderDiscount | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValidationError("order_discount must be an object")
    discount_type = str(raw.get("type") or "").strip().upper()
    if discount_type not in VALID_ORDER_DISCOUNT_TYPES:
        raise ValidationError(f"order_discount.type must be one of {VALID_ORDER_DISCOUNT_TYPES}")
    if discount_type == ORDER_DISCOUNT_PERCENTAGE:
        value = coerce_decimal(raw.get("value"), "order_discount.value")
        if value < 0 or value > 100:
            raise ValidationError("order_discount.value must be between 0 and 100")
        return OrderDiscount(ORDER_DISCOUNT_PERCENTAGE, value)
    amount = coerce_int(raw.get("amount_cents"), "order_discount.amount_cents", minimum=0, maximum=MAX_AMOUNT_CENTS)
    return OrderDiscount(ORDER_DISCOUNT_FIXED, Decimal(amount))


def parse_settlement_payload(payload: Any, idempotency_key: str | None = None) -> SettlementRequest:
    """
    Validate a checkout request body into a SettlementRequest.

    The Idempotency-Key header, when present, wins over the body field.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")

    key = coerce_optional_str(idempotency_key, "Idempotency-Key", 128) or coerce_optional_str(
        payload.get("idempotency_key"), "idempotency_key", 128
    )

    return SettlementRequest(
        lines=parse_cart_lines(payload),
        payments=parse_payments(payload),
        channel=parse_channel(payload.get("channel")),
        discount_code=coerce_optional_str(payload.get("discount_code"), "discount_code", 64),
        customer_id=coerce_optional_int(payload.get("customer_id"), "customer_id", minimum=1),
        order_discount=parse_order_discount(payload.get("order_discount")),
        idempotency_key=key,
        notes=coerce_optional_str(payload.get("notes"), "notes"),
    )
